"""
Execution optimizer: local guardrails consulted before every action.

Blocks provably wasteful actions without another LLM round-trip:
- a third consecutive snapshot()
- a second getUrl() within one sub-goal

Also tracks per-(action, args) retry counts and caches the latest snapshot
for the current sub-goal.
"""

import json
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional
from urllib.parse import urlsplit

from .utils.logger import get_logger


logger = get_logger(__name__)


# ============================================================================
# Constants
# ============================================================================

MAX_CONSECUTIVE_SNAPSHOTS = 2
MAX_GET_URL_PER_SUB_GOAL = 1
MAX_RETRIES = 2
ACTION_HISTORY_SIZE = 20


def action_key(action: str, args: Optional[Dict[str, Any]]) -> str:
    """Stable 'action:{json}' key used for retry and loop bookkeeping."""
    return f"{action}:{json.dumps(args or {}, ensure_ascii=False, sort_keys=True, separators=(',', ':'))}"


@dataclass
class ValidationResult:
    """Verdict of validate_action."""
    valid: bool
    reason: str = ""
    alternative: str = ""


class ExecutionOptimizer:
    """
    Per-run guardrail state.

    Attributes:
        consecutive_snapshots: Snapshots since the last non-snapshot action
        get_url_count: getUrl calls in the current sub-goal
        current_sub_goal_id: Sub-goal the counters belong to
        failure_retries: Attempts per action key; survives sub-goal resets
        action_history: Last 20 recorded actions
    """

    def __init__(self):
        self.consecutive_snapshots = 0
        self.get_url_count = 0
        self.current_sub_goal_id: Optional[int] = None
        self.failure_retries: Dict[str, int] = {}
        self.action_history: Deque[Dict[str, Any]] = deque(maxlen=ACTION_HISTORY_SIZE)
        self._snapshot_cache: Optional[Dict[str, Any]] = None
        self._cache_sub_goal_id: Optional[int] = None

    def validate_action(self, action: str, args: Optional[Dict[str, Any]] = None, current_sub_goal: Any = None) -> ValidationResult:
        """
        Check an action against the guardrails.

        Args:
            action: Action name
            args: Action arguments
            current_sub_goal: Current sub-goal, if any

        Returns:
            ValidationResult; when invalid, carries the reason and a suggested alternative
        """
        if action == "snapshot" and self.consecutive_snapshots >= MAX_CONSECUTIVE_SNAPSHOTS:
            logger.info(f"[Optimizer] Blocked snapshot after {self.consecutive_snapshots} in a row")
            return ValidationResult(
                valid=False,
                reason="Too many consecutive snapshot() calls without taking action",
                alternative=(
                    "Take an action based on the previous snapshot (click, fill, navigate, etc.) "
                    "or call finished() if task is complete"
                ),
            )

        if action == "getUrl" and self.get_url_count >= MAX_GET_URL_PER_SUB_GOAL:
            logger.info("[Optimizer] Blocked repeated getUrl in sub-goal")
            return ValidationResult(
                valid=False,
                reason="getUrl() already called once in this sub-goal",
                alternative="Use cached URL information or proceed with other actions",
            )

        return ValidationResult(valid=True)

    def record_action(self, action: str, args: Optional[Dict[str, Any]], result: Any) -> None:
        """Update counters after an action, whether it ran or was blocked."""
        if action == "snapshot":
            self.consecutive_snapshots += 1
        else:
            self.consecutive_snapshots = 0

        if action == "getUrl":
            self.get_url_count += 1

        self.action_history.append({
            "action": action,
            "args": args,
            "result": result,
            "timestamp": time.time(),
        })

    def can_retry(self, action: str, args: Optional[Dict[str, Any]]) -> bool:
        """Count an attempt for this key; True while fewer than two were made before."""
        key = action_key(action, args)
        retries = self.failure_retries.get(key, 0)
        self.failure_retries[key] = retries + 1
        return retries < MAX_RETRIES

    # ------------------------------------------------------------------
    # Snapshot cache
    # ------------------------------------------------------------------

    def get_cached_snapshot(self, sub_goal_id: Optional[int]) -> Optional[Dict[str, Any]]:
        if self._snapshot_cache is not None and self._cache_sub_goal_id == sub_goal_id:
            return self._snapshot_cache
        return None

    def cache_snapshot(self, sub_goal_id: Optional[int], snapshot: Dict[str, Any]) -> None:
        self._snapshot_cache = snapshot
        self._cache_sub_goal_id = sub_goal_id

    def clear_cache(self) -> None:
        self._snapshot_cache = None
        self._cache_sub_goal_id = None

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize_url(url: str) -> str:
        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            return url.split("#")[0].rstrip("/")
        normalized = f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path.rstrip('/')}"
        if parts.query:
            normalized += f"?{parts.query}"
        return normalized

    def is_navigation_needed(self, target_url: Optional[str], current_url: Optional[str]) -> bool:
        """False only when both URLs normalize to the same page."""
        if not target_url or not current_url:
            return True
        return self._normalize_url(target_url) != self._normalize_url(current_url)

    def reset_for_sub_goal(self, sub_goal_id: Optional[int]) -> None:
        """Zero per-sub-goal counters and drop the cache. Retry counts persist."""
        self.current_sub_goal_id = sub_goal_id
        self.get_url_count = 0
        self.consecutive_snapshots = 0
        self.clear_cache()
        logger.debug(f"[Optimizer] Reset for sub-goal {sub_goal_id}")
