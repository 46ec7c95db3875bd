# errors.py
# Exception hierarchy for the plan execution engine.
#
# Step-level failures are recorded in ExecutionState.errors and never escape
# execute(). Everything else here propagates to the caller.


class PlanEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(PlanEngineError):
    """Raised at construction time for invalid budgets or missing credentials."""


class PlanValidationError(PlanEngineError):
    """Raised when a plan cannot be executed (e.g. no steps) or a run id is mismatched."""


class StateTransitionError(PlanEngineError):
    """Raised on an illegal status transition. Terminal states never revert."""


class StorageError(PlanEngineError):
    """
    Raised when a snapshot or artifact cannot be persisted or read.

    When raised out of execute(), `state` holds the run's final (failed) state.
    """

    def __init__(self, message: str, state=None) -> None:
        super().__init__(message)
        self.state = state


class ProviderError(PlanEngineError):
    """Raised by a model provider when the backend call fails."""


class StepFailureError(PlanEngineError):
    """Raised by a model provider for a failure scoped to one step."""

    def __init__(self, message: str, step_id: str | None = None) -> None:
        super().__init__(message)
        self.step_id = step_id
