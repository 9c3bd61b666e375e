"""
Browser agent package.

An LLM-driven agent that plans a browser task into sub-goals and drives a
browser step by step until the task is finished.
"""

__version__ = "1.0.0"

from .agent import BrowserAgent
from .environment import BrowserEnvironment
from .errors import AgentError, LLMError, StateCorruptionError, UnknownActionError
from .llm_client import LLMClient
from .models.schemas import EventType, Plan, ProgressEvent, RunResult, RunStatus, SubGoal
from .observer import AgentObserver, CallbackObserver, LoggingObserver, RecordingObserver

__all__ = [
    "BrowserAgent",
    "BrowserEnvironment",
    "AgentError",
    "LLMError",
    "StateCorruptionError",
    "UnknownActionError",
    "LLMClient",
    "EventType",
    "Plan",
    "ProgressEvent",
    "RunResult",
    "RunStatus",
    "SubGoal",
    "AgentObserver",
    "CallbackObserver",
    "LoggingObserver",
    "RecordingObserver",
]
