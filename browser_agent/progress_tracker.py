"""
Progress tracker: a sequencer over a plan's sub-goals.

Holds a single cursor into the sub-goal list plus per-sub-goal step counts.
The tracker never decides whether a sub-goal is done; the agent loop does
that and calls complete_current_sub_goal / skip_current_sub_goal.
"""

import time
from typing import Any, Dict, List, Optional

from .models.schemas import SubGoal
from .utils.logger import get_logger


logger = get_logger(__name__)


STUCK_THRESHOLD = 8


class ProgressTracker:
    """
    Tracks which sub-goal is current and how many steps it has used.

    Attributes:
        sub_goals: Sub-goals being tracked (mutated in place)
        current_sub_goal_index: Cursor, 0..len(sub_goals); terminal at len
        sub_goal_step_counts: Steps recorded against each sub-goal
        stuck_threshold: Steps on one sub-goal beyond which it counts as stuck
    """

    def __init__(self, sub_goals: List[SubGoal], stuck_threshold: int = STUCK_THRESHOLD):
        self.sub_goals = sub_goals
        self.current_sub_goal_index = 0
        self.sub_goal_step_counts = [0] * len(sub_goals)
        self.stuck_threshold = stuck_threshold

    def get_current_sub_goal(self) -> Optional[SubGoal]:
        if self.current_sub_goal_index >= len(self.sub_goals):
            return None
        return self.sub_goals[self.current_sub_goal_index]

    def record_step(self) -> None:
        if self.is_complete():
            logger.warning("[ProgressTracker] Cannot record step: all sub-goals complete")
            return
        self.sub_goal_step_counts[self.current_sub_goal_index] += 1

    def current_step_count(self) -> int:
        if self.is_complete():
            return 0
        return self.sub_goal_step_counts[self.current_sub_goal_index]

    def is_stuck(self) -> bool:
        return self.current_step_count() > self.stuck_threshold

    def complete_current_sub_goal(self, result: Any = None) -> None:
        """Mark the current sub-goal completed and advance the cursor."""
        sub_goal = self.get_current_sub_goal()
        if sub_goal is None:
            logger.warning("[ProgressTracker] Cannot complete: no current sub-goal")
            return
        sub_goal.completed = True
        sub_goal.completed_at = time.time()
        sub_goal.result = result
        self.current_sub_goal_index += 1
        logger.info(
            f"[ProgressTracker] Completed sub-goal {sub_goal.id}: {sub_goal.description} "
            f"({self.current_sub_goal_index}/{len(self.sub_goals)})"
        )

    def skip_current_sub_goal(self, reason: str) -> None:
        """Mark the current sub-goal skipped and advance the cursor."""
        sub_goal = self.get_current_sub_goal()
        if sub_goal is None:
            logger.warning("[ProgressTracker] Cannot skip: no current sub-goal")
            return
        sub_goal.skipped = True
        sub_goal.skip_reason = reason
        self.current_sub_goal_index += 1
        logger.warning(f"[ProgressTracker] Skipped sub-goal {sub_goal.id}: {reason}")

    def is_complete(self) -> bool:
        return self.current_sub_goal_index >= len(self.sub_goals)

    def get_progress(self) -> int:
        """Percentage of sub-goals passed, 0-100."""
        if not self.sub_goals:
            return 100
        return round(self.current_sub_goal_index / len(self.sub_goals) * 100)

    def get_context(self) -> str:
        """Human-readable status block for the prompt."""
        if self.is_complete():
            return "All sub-goals complete (100%)"

        current = self.get_current_sub_goal()
        return (
            f"Sub-Goal {self.current_sub_goal_index + 1}/{len(self.sub_goals)} "
            f"({self.get_progress()}%): {current.description}\n"
            f"Steps on current sub-goal: {self.current_step_count()}\n"
            f"Completion criteria: {current.completion_criteria}"
        )

    def get_completion_data(self, sub_goal: Optional[SubGoal]) -> Optional[Dict[str, Any]]:
        """Reporting data for a completed sub-goal, None otherwise."""
        if sub_goal is None or not sub_goal.completed:
            return None
        index = next((i for i, sg in enumerate(self.sub_goals) if sg is sub_goal), -1)
        if index == -1:
            return None
        return {
            "steps_taken": self.sub_goal_step_counts[index],
            "completion_time": sub_goal.completed_at or time.time(),
            "summary": f"Completed: {sub_goal.description}",
            "result": sub_goal.result if sub_goal.result is not None else {},
        }

    def get_summary(self) -> Dict[str, Any]:
        """Aggregate counts plus a per-sub-goal status list."""
        return {
            "total": len(self.sub_goals),
            "completed": sum(1 for sg in self.sub_goals if sg.completed),
            "skipped": sum(1 for sg in self.sub_goals if sg.skipped),
            "sub_goals": [
                {
                    "id": sg.id,
                    "description": sg.description,
                    "status": "completed" if sg.completed else ("skipped" if sg.skipped else "incomplete"),
                    "steps_taken": self.sub_goal_step_counts[index],
                    "skip_reason": sg.skip_reason,
                    "completion_criteria": sg.completion_criteria,
                }
                for index, sg in enumerate(self.sub_goals)
            ],
        }
