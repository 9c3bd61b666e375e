"""
Loop detector for the agent control loop.

Keeps a rolling window of action keys ('action:{json args}') and visited
URLs and recognises repetition patterns, checked in priority order:

1. sameActionDifferentArgs - one action name >3 times in the last 10 with varying args
2. pageNavigation          - last four navigations alternate A, B, A, B
3. consecutiveSnapshots    - 3+ snapshots in a row (waits do not break the run)
4. snapshotWaitPattern     - [snapshot, wait, snapshot] twice in the last 6
5. legacy                  - exact repeats and per-action counts

Each hit carries a confidence, discounted when the iteration still looks
productive. Escalation on repeated hits is the agent loop's job.
"""

import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from .execution_optimizer import action_key
from .models.schemas import SubGoal
from .utils.logger import get_logger


logger = get_logger(__name__)


# ============================================================================
# Constants
# ============================================================================

ACTION_WINDOW = 15
NAVIGATION_WINDOW = 10
OBSERVATION_WINDOW = 5
ANALYSIS_WINDOW = 10

PATTERN_SAME_ACTION_DIFFERENT_ARGS = "sameActionDifferentArgs"
PATTERN_PAGE_NAVIGATION = "pageNavigation"
PATTERN_CONSECUTIVE_SNAPSHOTS = "consecutiveSnapshots"
PATTERN_SNAPSHOT_WAIT = "snapshotWaitPattern"
PATTERN_LEGACY = "legacy"

PROGRESS_INDICATORS = [
    "success",
    "completed",
    "extracted",
    "found",
    "loaded",
    "opened",
    "clicked",
    "filled",
    "navigated",
]


@dataclass
class LoopResult:
    """Outcome of one detect_loop call."""
    detected: bool = False
    reason: str = ""
    pattern: Optional[str] = None
    confidence: float = 0.0
    productive: bool = False
    action_name: Optional[str] = None
    count: int = 0
    urls: List[str] = field(default_factory=list)
    can_finish: bool = False

    @property
    def key(self) -> str:
        """Escalation key: the pattern, or the reason when there is none."""
        return self.pattern or self.reason


@dataclass
class Alternative:
    """A suggested way out of a loop."""
    action: str
    suggestion: str


def _split_key(key: str):
    name, _, raw_args = key.partition(":")
    return name, raw_args


def _arg_value(key: str, *fields: str) -> Optional[str]:
    _, raw_args = _split_key(key)
    try:
        args = json.loads(raw_args)
    except (TypeError, ValueError):
        return None
    if not isinstance(args, dict):
        return None
    for name in fields:
        if args.get(name) is not None:
            return str(args[name])
    return None


class LoopDetector:
    """
    Recognises unproductive repetition in the agent's recent actions.

    Attributes:
        last_actions: Rolling window of action keys
        navigation_history: Rolling window of navigate() URLs
        observations: Rolling window of raw observation strings
        state: Per-pattern {count, detected} bookkeeping
    """

    def __init__(self):
        self.last_actions: Deque[str] = deque(maxlen=ACTION_WINDOW)
        self.navigation_history: Deque[str] = deque(maxlen=NAVIGATION_WINDOW)
        self.observations: Deque[str] = deque(maxlen=OBSERVATION_WINDOW)
        self.state: Dict[str, Dict[str, Any]] = {
            PATTERN_SAME_ACTION_DIFFERENT_ARGS: {"count": 0, "detected": False},
            PATTERN_PAGE_NAVIGATION: {"count": 0, "detected": False},
            PATTERN_CONSECUTIVE_SNAPSHOTS: {"count": 0, "detected": False},
            PATTERN_SNAPSHOT_WAIT: {"count": 0, "detected": False},
        }

    def record_observation(self, observation: str) -> None:
        """Feed the observation of the latest action; used by the productivity check."""
        self.observations.append(observation or "")

    def _mark(self, pattern: str) -> None:
        self.state[pattern]["count"] += 1
        self.state[pattern]["detected"] = True

    def detect_loop(
        self,
        action: str,
        args: Optional[Dict[str, Any]] = None,
        observation: str = "",
        sub_goals_completed: int = 0,
    ) -> LoopResult:
        """
        Register an executed action and check for loops.

        Args:
            action: Action name just executed
            args: Its arguments
            observation: Observation text derived from its result
            sub_goals_completed: Sub-goals completed so far in the run

        Returns:
            LoopResult for the first matching pattern, or a non-detection
        """
        observation = observation or ""
        self.last_actions.append(action_key(action, args))
        if action == "navigate" and args and args.get("url"):
            self.navigation_history.append(str(args["url"]))

        recent = list(self.last_actions)[-ANALYSIS_WINDOW:]
        productive = self.is_productive_iteration(action, observation, recent, sub_goals_completed)

        name_counts: Dict[str, int] = {}
        for key in recent:
            name = _split_key(key)[0]
            name_counts[name] = name_counts.get(name, 0) + 1

        last4 = list(self.navigation_history)[-4:]
        alternating = (
            len(last4) == 4
            and len(set(last4)) == 2
            and last4[2] == last4[0]
            and last4[3] == last4[1]
        )

        # Pattern 1: same action, different arguments
        for name, count in name_counts.items():
            # Strict A, B, A, B navigation is reported as pattern 2
            if name == "navigate" and alternating:
                continue
            if count > 3 and name != "wait":
                distinct = {key for key in recent if _split_key(key)[0] == name}
                if len(distinct) > 1:
                    self._mark(PATTERN_SAME_ACTION_DIFFERENT_ARGS)
                    result = LoopResult(
                        detected=True,
                        reason="same_action_different_args",
                        pattern=PATTERN_SAME_ACTION_DIFFERENT_ARGS,
                        confidence=0.5 if productive else 0.9,
                        productive=productive,
                        action_name=name,
                        count=count,
                    )
                    return self._log(result)

        # Pattern 2: A, B, A, B navigation
        if alternating:
            self._mark(PATTERN_PAGE_NAVIGATION)
            result = LoopResult(
                detected=True,
                reason="page_navigation_loop",
                pattern=PATTERN_PAGE_NAVIGATION,
                confidence=0.95,
                productive=False,
                urls=[last4[0], last4[1]],
            )
            return self._log(result)

        # Pattern 3: consecutive snapshots, waits tolerated
        streak = 0
        for key in reversed(recent):
            name = _split_key(key)[0]
            if name == "snapshot":
                streak += 1
            elif name != "wait":
                break
        if streak >= 3:
            self._mark(PATTERN_CONSECUTIVE_SNAPSHOTS)
            result = LoopResult(
                detected=True,
                reason="consecutive_snapshots",
                pattern=PATTERN_CONSECUTIVE_SNAPSHOTS,
                confidence=0.6 if productive else 0.85,
                productive=productive,
                count=streak,
            )
            return self._log(result)

        # Pattern 4: snapshot, wait, snapshot twice in the last six
        last6 = [_split_key(key)[0] for key in recent[-6:]]
        triples = sum(
            1
            for i in range(len(last6) - 2)
            if last6[i] == "snapshot" and last6[i + 1] == "wait" and last6[i + 2] == "snapshot"
        )
        if triples >= 2:
            self._mark(PATTERN_SNAPSHOT_WAIT)
            result = LoopResult(
                detected=True,
                reason="snapshot_wait_pattern",
                pattern=PATTERN_SNAPSHOT_WAIT,
                confidence=0.5 if productive else 0.8,
                productive=productive,
                count=triples,
            )
            return self._log(result)

        # Legacy fallbacks
        key_counts: Dict[str, int] = {}
        for key in recent:
            key_counts[key] = key_counts.get(key, 0) + 1
        if any(count >= 3 for count in key_counts.values()):
            return self._log(LoopResult(
                detected=True, reason="same_action_repeated", pattern=PATTERN_LEGACY,
                confidence=1.0, productive=False,
            ))
        if name_counts.get("getUrl", 0) >= 2:
            return self._log(LoopResult(
                detected=True, reason="too_many_getUrl", pattern=PATTERN_LEGACY,
                confidence=0.9, productive=False,
            ))
        if name_counts.get("snapshot", 0) >= 5:
            return self._log(LoopResult(
                detected=True, reason="too_many_snapshots", pattern=PATTERN_LEGACY,
                confidence=0.85, productive=productive,
            ))
        if name_counts.get("wait", 0) >= 4:
            return self._log(LoopResult(
                detected=True, reason="too_many_waits", pattern=PATTERN_LEGACY,
                confidence=0.7, productive=productive,
            ))

        # A playing video is a terminal success, not a loop
        if "videoOpened" in observation or "Video opened" in observation:
            return LoopResult(detected=False, can_finish=True, reason="video_playing")

        return LoopResult(detected=False)

    def _log(self, result: LoopResult) -> LoopResult:
        logger.info(
            f"[LoopDetector] {result.pattern}/{result.reason} "
            f"confidence={result.confidence:.2f} productive={result.productive} "
            f"recent={list(self.last_actions)[-5:]}"
        )
        return result

    def is_productive_iteration(
        self,
        action: str,
        observation: str,
        recent: List[str],
        sub_goals_completed: int = 0,
    ) -> bool:
        """Heuristic: does the repetition still look like progress?"""
        if len(self.observations) >= 2:
            previous, latest = list(self.observations)[-2:]
            if previous != latest:
                return True

        if action in ("getText", "getMarkdown"):
            keys = [key for key in recent if _split_key(key)[0] in ("getText", "getMarkdown")]
            if len(keys) >= 2:
                refs = {_arg_value(key, "ref", "selector") for key in keys} - {None}
                if len(refs) >= 2:
                    return True

        if action == "navigate" and self.navigation_history:
            recent_urls = list(self.navigation_history)[-3:]
            if len(set(recent_urls)) == len(recent_urls):
                return True

        if action == "click":
            keys = [key for key in recent if _split_key(key)[0] == "click"]
            if len(keys) >= 2:
                refs = {_arg_value(key, "ref") for key in keys} - {None}
                if len(refs) >= 2:
                    return True

        if observation:
            lower = observation.lower()
            if any(indicator in lower for indicator in PROGRESS_INDICATORS):
                return True

        return sub_goals_completed > 0

    def get_alternatives(self, loop_result: LoopResult, current_sub_goal: Optional[SubGoal] = None) -> List[Alternative]:
        """Pattern-specific suggestions, always ending with the finish option."""
        if not loop_result.detected:
            return []

        alternatives: List[Alternative] = []
        pattern = loop_result.pattern

        if pattern == PATTERN_SAME_ACTION_DIFFERENT_ARGS:
            alternatives.append(Alternative(
                "Try a completely different action type",
                f"You've tried {loop_result.action_name} multiple times with different arguments. "
                "Consider using a different approach entirely.",
            ))
            if loop_result.action_name == "click":
                alternatives.append(Alternative(
                    "Use getText or getMarkdown",
                    "Instead of clicking, try extracting content directly with getText() or getMarkdown().",
                ))
            elif loop_result.action_name == "getText":
                alternatives.append(Alternative(
                    "Take a snapshot to reassess",
                    "Take a fresh snapshot() to see the current page state and identify better elements.",
                ))
            elif loop_result.action_name == "fill":
                alternatives.append(Alternative(
                    "Look for alternative input methods",
                    "Try finding a different search box or input field, or use the search() action if available.",
                ))
            if current_sub_goal is not None:
                alternatives.append(Alternative(
                    "Skip to next sub-goal",
                    "Current sub-goal may not be achievable. Consider moving to the next sub-goal.",
                ))

        elif pattern == PATTERN_PAGE_NAVIGATION:
            first, second = (loop_result.urls + ["", ""])[:2]
            alternatives.append(Alternative(
                "Stop navigating back and forth",
                f"You're navigating between {first} and {second} repeatedly. "
                "Stay on one page and complete the task there.",
            ))
            alternatives.append(Alternative(
                "Extract content from current page",
                "Use getMarkdown() or getText() to extract what you need from the current page instead of navigating.",
            ))
            alternatives.append(Alternative(
                "Call finished() if task is complete",
                "If you already have the information needed, call finished() with the results.",
            ))

        elif pattern == PATTERN_CONSECUTIVE_SNAPSHOTS:
            alternatives.append(Alternative(
                "Take action instead of observing",
                f"You've taken {loop_result.count} snapshots without acting. "
                "Use the information from your last snapshot to take action.",
            ))
            alternatives.append(Alternative(
                "Use getText() for specific content",
                "If you need specific content, use getText(ref) instead of taking more snapshots.",
            ))
            alternatives.append(Alternative(
                "Use getMarkdown() for full content",
                "If you need full page content, use getMarkdown() instead of repeated snapshots.",
            ))

        elif pattern == PATTERN_SNAPSHOT_WAIT:
            alternatives.append(Alternative(
                "Stop waiting for changes",
                "The page is not changing. Take action based on what you see instead of waiting.",
            ))
            alternatives.append(Alternative(
                "Interact with the page",
                "Click, fill, or navigate to make progress instead of passively observing.",
            ))
            alternatives.append(Alternative(
                "Extract content and finish",
                "If the page has the information you need, extract it with getText() or getMarkdown() "
                "and call finished().",
            ))

        elif pattern == PATTERN_LEGACY:
            if loop_result.reason == "too_many_getUrl":
                alternatives.append(Alternative(
                    "Stop checking URL",
                    "You already know the current URL. Focus on taking action instead of checking it again.",
                ))
            elif loop_result.reason == "too_many_snapshots":
                alternatives.append(Alternative(
                    "Act on your observations",
                    "You have enough information from previous snapshots. Take action now.",
                ))
            elif loop_result.reason == "too_many_waits":
                alternatives.append(Alternative(
                    "Stop waiting",
                    "Waiting is not helping. Take action or try a different approach.",
                ))
            else:
                alternatives.append(Alternative(
                    "Try a different approach",
                    "You are repeating the same action. Try something completely different.",
                ))

        alternatives.append(Alternative(
            "Call finished() if done",
            "If you have gathered the information needed to complete the task, "
            "call finished() with your results.",
        ))
        return alternatives

    def recent_action_names(self, window: int = ANALYSIS_WINDOW) -> List[str]:
        return [_split_key(key)[0] for key in list(self.last_actions)[-window:]]
