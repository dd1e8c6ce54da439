"""
Exception hierarchy for the evaluation run engine.

All project-specific exceptions inherit from WorkbenchError. Validation and
lookup errors also subclass the matching builtin so callers that only know
about ValueError / LookupError keep working.
"""


class WorkbenchError(Exception):
    """Base exception for the workbench."""

    pass


class EvaluationValidationError(WorkbenchError, ValueError):
    """A run precondition or user edit was rejected. No run is created."""

    pass


class NotFoundError(WorkbenchError, LookupError):
    """Referenced evaluation, test case, criterion or run does not exist."""

    pass


class InvalidTransitionError(WorkbenchError):
    """Run status change not allowed by the run state machine."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Invalid run transition: {current} -> {target}")


class ProviderError(WorkbenchError):
    """Model or judge call failed (network, non-2xx, malformed response)."""

    def __init__(self, message: str, model_id: str = ""):
        self.model_id = model_id
        super().__init__(message)


class PersistenceError(WorkbenchError):
    """Durable write of a run or result failed."""

    pass
