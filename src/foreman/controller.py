"""Bounded retry loop around a single phase, plus the escalation vocabulary.

The controller never touches the progress store. It reports what happened
through an optional event hook and leaves commits to the runner.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from foreman.backends.base import BackendExecutionError, BackendTimeoutError
from foreman.contracts import Contract
from foreman.extraction import WorkerResult, extract_result
from foreman.gate import NO_COMPLETION_MARKER, ValidationReport, validate
from foreman.pipeline import Phase
from foreman.workers.base import WorkerAgent, WorkerRequest

logger = logging.getLogger(__name__)

ControllerEventHook = Callable[[dict[str, Any]], None]


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    ESCALATED = "escalated"


class EscalationDecision(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


@dataclass(slots=True)
class RetryState:
    attempt: int = 0
    max_attempts: int = 3
    feedback_history: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ControllerResult:
    outcome: Outcome
    state: RetryState
    result: WorkerResult | None = None
    last_report: ValidationReport | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome is Outcome.ACCEPTED


@dataclass(frozen=True, slots=True)
class EscalationRequest:
    phase_id: str
    role: str
    attempts: int
    missing: tuple[str, ...]
    feedback_history: tuple[str, ...]


EscalationHandler = Callable[[EscalationRequest], Awaitable[EscalationDecision]]


def fixed_decision(decision: EscalationDecision | str) -> EscalationHandler:
    """Escalation handler that always answers ``decision``."""

    resolved = EscalationDecision(decision)

    async def _handler(request: EscalationRequest) -> EscalationDecision:
        logger.info("Escalation for phase %s resolved as %s", request.phase_id, resolved.value)
        return resolved

    return _handler


class RetryController:
    def __init__(
        self,
        max_attempts: int = 3,
        *,
        timeout_seconds: float | None = None,
        backoff_seconds: float = 0.0,
        event_hook: ControllerEventHook | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self.backoff_seconds = max(0.0, backoff_seconds)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def execute(
        self,
        phase: Phase,
        contract: Contract,
        worker: WorkerAgent,
        *,
        context_refs: list[str] | None = None,
        feedback_history: list[str] | None = None,
    ) -> ControllerResult:
        """Invoke ``worker`` until its output passes the gate or attempts run out.

        ``feedback_history`` carries notes from earlier ``execute`` calls for
        the same phase (after an escalation retry); the attempt counter always
        starts from zero.
        """

        state = RetryState(
            max_attempts=self.max_attempts,
            feedback_history=list(feedback_history or []),
        )
        refs = list(context_refs if context_refs is not None else phase.context_refs)
        report: ValidationReport | None = None

        while state.attempt < state.max_attempts:
            state.attempt += 1
            if state.attempt > 1 and self.backoff_seconds > 0:
                await asyncio.sleep(self.backoff_seconds * (2 ** (state.attempt - 2)))

            request = WorkerRequest(
                phase_id=phase.id,
                role=phase.role,
                task_description=phase.task_description,
                context_refs=refs,
                feedback_history=list(state.feedback_history),
                required_markers=list(contract.markers),
                workflow_mode=contract.workflow_mode,
                requires_artifacts=contract.requires_artifacts,
            )
            self._emit({"event": "attempt_started", "phase_id": phase.id, "attempt": state.attempt})

            error_note: str | None = None
            try:
                output = await worker.invoke(request, self.timeout_seconds)
            except BackendExecutionError as exc:
                kind = "timeout" if isinstance(exc, BackendTimeoutError) else "unavailable"
                error_note = f"worker {kind}: {exc}"
                report = ValidationReport(passed=False, missing=(NO_COMPLETION_MARKER,))
                output = ""
            else:
                report = validate(output, contract)

            if report.passed:
                logger.info("Phase %s accepted on attempt %d", phase.id, state.attempt)
                self._emit(
                    {"event": "attempt_accepted", "phase_id": phase.id, "attempt": state.attempt}
                )
                return ControllerResult(
                    outcome=Outcome.ACCEPTED,
                    state=state,
                    result=extract_result(phase.id, phase.role, output),
                    last_report=report,
                )

            note = report.feedback()
            if error_note:
                note = f"{note} ({error_note})"
            state.feedback_history.append(note)
            logger.warning(
                "Phase %s attempt %d/%d rejected: %s",
                phase.id,
                state.attempt,
                state.max_attempts,
                note,
            )
            self._emit(
                {
                    "event": "attempt_failed",
                    "phase_id": phase.id,
                    "attempt": state.attempt,
                    "feedback": note,
                }
            )

        logger.warning("Phase %s escalated after %d attempts", phase.id, state.attempt)
        return ControllerResult(outcome=Outcome.ESCALATED, state=state, last_report=report)
