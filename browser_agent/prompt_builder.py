"""
Prompt builder: turns run state into the chat message list sent each step.

Also parses the LLM reply back into {thought, action, args}.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .models.schemas import ActionRecord, Heuristic, SubGoal
from .progress_tracker import ProgressTracker
from .prompts.system_prompt import SYSTEM_PROMPT
from .utils.logger import get_logger


logger = get_logger(__name__)


# ============================================================================
# Constants
# ============================================================================

TRUNCATION_SUFFIX = "\n...[content truncated to save tokens]"
SNAPSHOT_LIMIT = 2000
OBSERVATION_LIMIT = 800
HISTORY_SUMMARY_THRESHOLD = 10
RECENT_ACTIONS = 5

VALID_REGIONS = ("main-content", "search-results", "navigation", "full-page")
REGION_SELECTORS = {
    "main-content": ["main", "article", '[role="main"]', ".content", "#content", ".main-content"],
    "search-results": [".search-result", ".result", '[role="listitem"]', ".search-item", ".result-item"],
    "navigation": ["nav", '[role="navigation"]', ".nav", ".menu", "header"],
}

SNAPSHOT_HINTS = [
    ("[FOLLOW]", "🎯 [FOLLOW] found! Click it then call finished()."),
    ("[USER]", "👤 [USER] found! Click to visit profile."),
    ("[VIDEO]", "🎬 [VIDEO] found! Click to open video."),
]

NEXT_ACTION_PROMPT = "What is your next action? Return JSON only."

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class StepContext:
    """Counters the prompt reports for the current step."""
    task: str
    step: int
    max_steps: int
    completed_actions: int = 0
    failed_actions: int = 0

    @property
    def steps_remaining(self) -> int:
        return self.max_steps - self.step

    @property
    def budget_percentage(self) -> int:
        if self.max_steps <= 0:
            return 0
        return round(self.steps_remaining / self.max_steps * 100)


def truncate_content(content: Optional[str], max_length: int = 2500) -> str:
    if not content:
        return ""
    if len(content) <= max_length:
        return content
    return content[:max_length] + TRUNCATION_SUFFIX


def _normalize(text: str) -> str:
    text = re.sub(r"[^\w\s]", "", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def remove_redundant_info(current: Optional[str], previous: Optional[str]) -> Optional[str]:
    """
    Compress an observation that repeats the previous one.

    Returns:
        "Same as previous" for identical text after normalization,
        "Similar to previous, new: <tail>" when the shared prefix covers more
        than 80% and the new tail is short, otherwise the observation unchanged
    """
    if not current or not previous:
        return current

    current_norm = _normalize(current)
    previous_norm = _normalize(previous)
    if current_norm == previous_norm:
        return "Same as previous"

    min_length = min(len(current_norm), len(previous_norm))
    max_length = max(len(current_norm), len(previous_norm))
    if min_length == 0:
        return current

    matching = 0
    for a, b in zip(current_norm, previous_norm):
        if a != b:
            break
        matching += 1

    if matching / max_length > 0.8:
        unique_part = current[matching:].strip()
        if unique_part and len(unique_part) < len(current) * 0.3:
            return f"Similar to previous, new: {unique_part}"

    return current


def summarize_history(history: List[ActionRecord]) -> Optional[str]:
    """Group older actions by name once the history is longer than ten entries."""
    if len(history) <= HISTORY_SUMMARY_THRESHOLD:
        return None

    older = history[:-RECENT_ACTIONS]
    recent = history[-RECENT_ACTIONS:]

    counts: Dict[str, int] = {}
    for record in older:
        counts[record.action] = counts.get(record.action, 0) + 1

    older_summary = ", ".join(f"{count}× {action}" for action, count in counts.items())
    recent_summary = " → ".join(
        f"{record.action}({json.dumps(record.args, ensure_ascii=False)})" for record in recent
    )
    return f"Earlier actions ({len(older)} total): {older_summary}\nRecent actions: {recent_summary}"


def filter_snapshot_by_region(snapshot_tree: Optional[str], region: str) -> Optional[str]:
    """
    Keep only snapshot lines that mention one of the region's selectors.

    Falls back to the full tree when fewer than five lines survive.
    """
    if not snapshot_tree or region == "full-page":
        return snapshot_tree

    # Selectors match as bare words: snapshot lines carry "[in=<landmark>]", not CSS
    selectors = [re.sub(r"[\[\]\"'.#]", "", s.lower()) for s in REGION_SELECTORS.get(region, [])]
    lines = snapshot_tree.split("\n")
    kept = [line for line in lines if any(sel in line.lower() for sel in selectors)]

    if len(kept) < 5:
        logger.warning(
            f"[PromptBuilder] Region filtering for '{region}' kept {len(kept)} lines, using full snapshot"
        )
        return snapshot_tree
    return "\n".join(kept)


def format_heuristic(heuristic: Heuristic) -> str:
    lines = [f"### Task Pattern Guidance: {heuristic.name}", heuristic.description]
    if heuristic.guidance:
        lines.append(heuristic.guidance)
    if heuristic.steps:
        lines.append("Suggested steps:")
        lines.extend(f"{i}. {step}" for i, step in enumerate(heuristic.steps, 1))
    if heuristic.tips:
        lines.append("Tips:")
        lines.extend(f"- {tip}" for tip in heuristic.tips)
    return "\n".join(lines)


def parse_response(content: Optional[str]) -> Dict[str, Any]:
    """
    Extract {thought, action, args} from an LLM reply.

    Takes the outermost {...} span. Anything unparseable becomes
    action "unknown" with the raw reply as the thought.
    """
    raw = content or ""
    match = _JSON_OBJECT.search(raw)
    if match:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            logger.warning(f"[PromptBuilder] Could not parse LLM reply: {exc}")
        else:
            if isinstance(parsed, dict):
                args = parsed.get("args")
                return {
                    "thought": str(parsed.get("thought") or ""),
                    "action": str(parsed.get("action") or "unknown"),
                    "args": args if isinstance(args, dict) else {},
                }
    return {"thought": raw, "action": "unknown", "args": {}}


class PromptBuilder:
    """
    Builds the per-step message list.

    Remembers the previous observation so repeated results are compressed.
    """

    def __init__(self, system_prompt: str = SYSTEM_PROMPT):
        self.system_prompt = system_prompt
        self.last_observation: Optional[str] = None

    def reset(self) -> None:
        self.last_observation = None

    # ------------------------------------------------------------------
    # System prompt
    # ------------------------------------------------------------------

    def _dynamic_context(self, ctx: StepContext, tracker: Optional[ProgressTracker],
                         sub_goal: Optional[SubGoal], heuristic: Optional[Heuristic]) -> str:
        if sub_goal is not None and tracker is not None:
            context = f"**Current Sub-Goal Status:**\n{tracker.get_context()}"
            if tracker.is_stuck():
                context += (
                    f"\n\n⚠️ **STUCK WARNING**: You have taken more than {tracker.stuck_threshold} "
                    f"steps on this sub-goal without completing it.\n"
                    f"**Action Required**: 1) Try a completely different approach, "
                    f"2) Skip to next sub-goal, 3) Call askUser() for help"
                )
        else:
            context = (
                f"**Task Progress:**\n"
                f"- Current Step: {ctx.step}/{ctx.max_steps}\n"
                f"- Remaining Steps: {ctx.steps_remaining} ({ctx.budget_percentage}% of budget)"
            )

        if heuristic is not None:
            context += "\n\n" + format_heuristic(heuristic)
        return context

    @staticmethod
    def step_budget_warning(ctx: StepContext) -> str:
        remaining, pct = ctx.steps_remaining, ctx.budget_percentage
        if pct < 20:
            return f"⚠️ **CRITICAL**: Only {remaining} steps remaining ({pct}%)! Prioritize completion NOW."
        if pct < 50:
            return f"⚠️ **WARNING**: {remaining} steps remaining ({pct}%). Focus on completing current sub-goal."
        return f"Remaining steps: {remaining} ({pct}% of budget)"

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def build_messages(
        self,
        ctx: StepContext,
        observation: Optional[str],
        snapshot: Optional[str],
        history: List[ActionRecord],
        tracker: Optional[ProgressTracker] = None,
        sub_goal: Optional[SubGoal] = None,
        heuristic: Optional[Heuristic] = None,
    ) -> List[Dict[str, str]]:
        """
        Assemble the chat messages for one step.

        Args:
            ctx: Task text and step counters
            observation: Result text of the previous action
            snapshot: Latest snapshot tree, if any
            history: Actions taken so far
            tracker: Sub-goal tracker when the task was decomposed
            sub_goal: Current sub-goal
            heuristic: Pattern guidance for the task

        Returns:
            System message followed by user messages, ending with the
            next-action request
        """
        system = (
            self.system_prompt
            .replace("{DYNAMIC_CONTEXT}", self._dynamic_context(ctx, tracker, sub_goal, heuristic))
            .replace("{STEP_BUDGET_WARNING}", self.step_budget_warning(ctx))
        )
        messages = [{"role": "system", "content": system}]

        progress = (
            f"Task: {ctx.task}\n\n"
            f"Progress: Step {ctx.step}/{ctx.max_steps}\n"
            f"Completed: {ctx.completed_actions} | Failed: {ctx.failed_actions}\n"
            f"Remaining steps: {ctx.steps_remaining} ({ctx.budget_percentage}% of budget)"
        )
        if sub_goal is not None and tracker is not None:
            progress += f"\n\n📋 Current Sub-Goal:\n{tracker.get_context()}"
            if tracker.is_stuck():
                progress += (
                    f"\n\n⚠️ STUCK WARNING: You have taken more than {tracker.stuck_threshold} "
                    f"steps on this sub-goal without completing it."
                    f"\nConsider: 1) Try a completely different approach, "
                    f"2) Skip to next sub-goal, 3) Call askUser() for help"
                )
        messages.append({"role": "user", "content": progress})

        summary = summarize_history(history)
        if summary:
            messages.append({"role": "user", "content": summary})

        if snapshot:
            messages.append({
                "role": "user",
                "content": f"Page snapshot:\n{truncate_content(snapshot, SNAPSHOT_LIMIT)}",
            })
            for marker, hint in SNAPSHOT_HINTS:
                if marker in snapshot:
                    messages.append({"role": "user", "content": hint})
                    break

        if observation:
            processed = remove_redundant_info(observation, self.last_observation)
            self.last_observation = observation
            messages.append({
                "role": "user",
                "content": f"Result: {truncate_content(processed, OBSERVATION_LIMIT)}",
            })
            messages.extend({"role": "user", "content": hint} for hint in self._observation_hints(observation))

        messages.append({"role": "user", "content": NEXT_ACTION_PROMPT})
        return messages

    @staticmethod
    def _observation_hints(observation: str) -> List[str]:
        hints = []
        if "No search input found" in observation:
            hints.append(
                "⚠️ search() failed. Use snapshot() to find textbox, then fill(ref, text) "
                "and click submit button."
            )
        if "followClicked" in observation:
            hints.append("✅ Follow button clicked successfully! Call finished() now.")
        if "userPageOpened" in observation:
            hints.append("📍 Now on user profile page. Look for [FOLLOW] button in next snapshot.")
        if "videoOpened" in observation:
            hints.append("✅ Video opened! Call finished() if this completes your task.")
        if "LOOP DETECTED" in observation:
            hints.append(
                "⚠️ LOOP WARNING! You are repeating actions. Either call finished() "
                "or try a completely different approach NOW."
            )
        if "Error:" in observation or "failed" in observation:
            hints.append(
                "❌ Last action failed. Try: 1) Different element, 2) Scroll to find more, "
                "3) Wait longer, 4) askUser() for help"
            )
        return hints
