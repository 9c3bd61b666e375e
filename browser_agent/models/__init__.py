"""Models package."""
from .schemas import (
    TaskCategory,
    SubGoalType,
    TaskPattern,
    SubGoal,
    Heuristic,
    Plan,
    ActionKind,
    ActionRecord,
    Annotation,
    ActionOutcome,
    RunStatus,
    RunResult,
    EventType,
    ProgressEvent,
)

__all__ = [
    "TaskCategory",
    "SubGoalType",
    "TaskPattern",
    "SubGoal",
    "Heuristic",
    "Plan",
    "ActionKind",
    "ActionRecord",
    "Annotation",
    "ActionOutcome",
    "RunStatus",
    "RunResult",
    "EventType",
    "ProgressEvent",
]
