"""
Exception types raised by the browser agent.
"""


class AgentError(Exception):
    """Base class for all agent errors."""


class LLMError(AgentError):
    """The LLM endpoint could not produce a response after all retries."""


class UnknownActionError(AgentError):
    """An action name has no entry in the dispatch table."""

    def __init__(self, action: str):
        super().__init__(f"Unknown action: {action}")
        self.action = action


class StateCorruptionError(AgentError):
    """Run state failed validation and could not be restored."""

    def __init__(self, field: str, detail: str = ""):
        message = f"State corruption in '{field}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.field = field
