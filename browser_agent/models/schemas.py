"""
Data models and schemas for the browser agent.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from ..errors import UnknownActionError


# ============================================================================
# Task planning
# ============================================================================

class TaskCategory(str, Enum):
    """Coarse classification of a task by keyword family."""
    NAVIGATION = "navigation"
    SEARCH = "search"
    CONTENT_EXTRACTION = "content_extraction"
    INTERACTION = "interaction"
    COMPOSITE = "composite"


# Sub-goals share the category vocabulary.
SubGoalType = TaskCategory


class TaskPattern(str, Enum):
    """Task shapes that have an advisory heuristic."""
    SIMPLE_SEARCH = "simple_search"
    SEARCH_AND_EXTRACT = "search_and_extract"
    NAVIGATION = "navigation"
    MULTI_PAGE_EXTRACTION = "multi_page_extraction"
    INTERACTION = "interaction"


class SubGoal(BaseModel):
    """One decomposed unit of a multi-step task."""
    id: int
    description: str
    type: SubGoalType = SubGoalType.COMPOSITE
    completion_criteria: str = ""
    estimated_steps: int = 3
    completed: bool = False
    skipped: bool = False
    skip_reason: Optional[str] = None
    completed_at: Optional[float] = None
    result: Optional[Any] = None

    class Config:
        use_enum_values = True


class Heuristic(BaseModel):
    """Advisory guidance attached to a task pattern."""
    name: str
    description: str
    steps: List[str] = Field(default_factory=list)
    guidance: str = ""
    estimated_steps: int = 3
    tips: List[str] = Field(default_factory=list)


class Plan(BaseModel):
    """Execution plan produced by the task planner."""
    category: TaskCategory = TaskCategory.COMPOSITE
    sub_goals: List[SubGoal] = Field(default_factory=list)
    step_budget: int = 30
    pattern: Optional[TaskPattern] = None
    heuristic: Optional[Heuristic] = None

    class Config:
        use_enum_values = True


# ============================================================================
# Actions
# ============================================================================

class ActionKind(str, Enum):
    """Actions the LLM may choose. Values are the wire names."""
    SNAPSHOT = "snapshot"
    CLICK = "click"
    FILL = "fill"
    SEARCH = "search"
    NAVIGATE = "navigate"
    SCROLL = "scroll"
    WAIT = "wait"
    GET_TEXT = "getText"
    GET_MARKDOWN = "getMarkdown"
    GET_URL = "getUrl"
    GET_TITLE = "getTitle"
    ASK_USER = "askUser"
    EXTRACT_MULTIPLE_ITEMS = "extractMultipleItems"
    GENERATE_DOCUMENT = "generateDocument"
    FINISHED = "finished"

    @classmethod
    def parse(cls, name: str) -> "ActionKind":
        """Resolve a wire name, raising UnknownActionError when it has no kind."""
        try:
            return cls(name)
        except ValueError:
            raise UnknownActionError(str(name)) from None


class ActionRecord(BaseModel):
    """One parsed LLM decision, appended to the run history."""
    step: int
    thought: str = ""
    action: str = "unknown"
    args: Dict[str, Any] = Field(default_factory=dict)


class Annotation(str, Enum):
    """Semantic markers attached to an action outcome."""
    VALIDATION_FAILED = "validation_failed"
    VIDEO_OPENED = "video_opened"
    FOLLOW_CLICKED = "follow_clicked"
    USER_PAGE_OPENED = "user_page_opened"
    SUMMARIZED = "summarized"


@dataclass
class ActionOutcome:
    """Result of executing (or refusing) one action."""
    success: bool
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    annotations: Set[Annotation] = field(default_factory=set)

    @classmethod
    def from_result(cls, result: Optional[Dict[str, Any]]) -> "ActionOutcome":
        """Wrap an environment result dict. A missing success flag counts as success."""
        if result is None:
            return cls(success=False, error="No result")
        data = dict(result)
        success = data.pop("success", True) is not False
        error = data.pop("error", None)
        return cls(success=success, error=error, data=data)

    @classmethod
    def failure(cls, error: str, **data: Any) -> "ActionOutcome":
        return cls(success=False, error=error, data=data)

    def has(self, annotation: Annotation) -> bool:
        return annotation in self.annotations

    def to_dict(self) -> Dict[str, Any]:
        """Flatten back to the dict shape shown to the LLM."""
        out: Dict[str, Any] = {"success": self.success}
        if self.error:
            out["error"] = self.error
        out.update(self.data)
        return out


# ============================================================================
# Run results and progress events
# ============================================================================

class RunStatus(str, Enum):
    """Terminal state of a run."""
    SUCCESS = "success"
    STOPPED = "stopped"
    INCOMPLETE = "incomplete"
    ERROR = "error"


class RunResult(BaseModel):
    """Outcome of BrowserAgent.run()."""
    status: RunStatus
    success: bool = False
    result: Optional[Any] = None
    error: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None
    history: List[ActionRecord] = Field(default_factory=list)
    steps_taken: int = 0

    class Config:
        use_enum_values = True


class EventType(str, Enum):
    """Progress event kinds delivered to observers."""
    START = "start"
    PLAN_CREATED = "planCreated"
    STEP = "step"
    THOUGHT = "thought"
    ACTION = "action"
    COMPLETE = "complete"
    STOPPED = "stopped"
    INCOMPLETE = "incomplete"
    ASK_USER = "askUser"
    WARNING = "warning"
    SUB_GOAL_COMPLETE = "subGoalComplete"
    CONTENT_EXTRACTED = "contentExtracted"
    CONTENT_SUMMARY = "contentSummary"
    ERROR = "error"


class ProgressEvent(BaseModel):
    """A single progress notification."""
    type: EventType
    step: int = 0
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)

    class Config:
        use_enum_values = True
