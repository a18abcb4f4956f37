from __future__ import annotations


class ForemanError(RuntimeError):
    """Base class for orchestrator failures surfaced to the operator."""


class UnknownRoleError(ForemanError):
    """Raised when a phase names a role missing from the contract registry."""

    def __init__(self, role: str) -> None:
        super().__init__(f"Unknown worker role: {role!r}")
        self.role = role


class MalformedPipelineError(ForemanError):
    """Raised when a pipeline definition cannot be loaded."""


class RunNotFoundError(ForemanError):
    """Raised when no state document exists for a run id."""


class StateDocumentCorruptError(ForemanError):
    """Raised when a persisted state document is unreadable or invalid."""


class InvalidTransitionError(ForemanError):
    """Raised when a phase status change violates the lifecycle."""

    def __init__(self, phase_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Phase '{phase_id}' cannot move from {current} to {requested}."
        )
        self.phase_id = phase_id
        self.current = current
        self.requested = requested
