import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from foreman.backends.base import BackendUnavailableError, WorkerBackend
from foreman.contracts import Contract, WorkflowMode
from foreman.controller import (
    EscalationDecision,
    EscalationRequest,
    Outcome,
    RetryController,
    fixed_decision,
)
from foreman.gate import NO_COMPLETION_MARKER
from foreman.pipeline import Phase
from foreman.workers.base import WorkerAgent

CONTRACT = Contract(role="custom", workflow_mode=WorkflowMode.LIGHT, markers=("A", "B"))
PHASE = Phase(id="p1", role="custom", estimated_minutes=10, task_description="Do A and B")


class ScriptedBackend(WorkerBackend):
    def __init__(self, replies: list[str | Exception]) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, context
        self.prompts.append(user_prompt)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        yield reply


def _execute(backend: ScriptedBackend, **kwargs: Any):
    controller = RetryController(max_attempts=3)
    worker = WorkerAgent(backend, role="custom")
    return asyncio.run(controller.execute(PHASE, CONTRACT, worker, **kwargs))


def test_accepts_on_first_attempt() -> None:
    backend = ScriptedBackend(["A done, B done, ✅ complete\nFiles: src/x.py"])

    result = _execute(backend)

    assert result.outcome is Outcome.ACCEPTED
    assert result.state.attempt == 1
    assert result.result is not None
    assert result.result.files_touched == ["src/x.py"]
    assert len(backend.prompts) == 1


def test_retries_with_feedback_until_markers_appear() -> None:
    backend = ScriptedBackend(["A done", "A done, B done, ✅ complete"])

    result = _execute(backend)

    assert result.accepted
    assert result.state.attempt == 2
    assert "missing: B" in result.state.feedback_history[0]
    assert "missing: B" in backend.prompts[1]
    assert "Previous attempts" not in backend.prompts[0]


def test_escalates_after_max_attempts() -> None:
    backend = ScriptedBackend(["A done ✅ done"])

    result = _execute(backend)

    assert result.outcome is Outcome.ESCALATED
    assert result.result is None
    assert result.state.attempt == 3
    assert len(backend.prompts) == 3
    assert result.last_report is not None
    assert result.last_report.missing == ("B",)


def test_worker_errors_use_the_same_attempt_budget() -> None:
    backend = ScriptedBackend(
        [BackendUnavailableError("no binary", backend="claude"), "A B ✅ complete"]
    )

    result = _execute(backend)

    assert result.accepted
    assert result.state.attempt == 2
    note = result.state.feedback_history[0]
    assert note.startswith(f"missing: {NO_COMPLETION_MARKER}")
    assert "worker unavailable" in note


def test_prior_feedback_is_carried_but_attempts_reset() -> None:
    backend = ScriptedBackend(["A"])

    result = _execute(backend, feedback_history=["missing: B"])

    assert result.state.attempt == 3
    assert result.state.feedback_history[0] == "missing: B"
    assert len(result.state.feedback_history) == 4


def test_events_are_reported() -> None:
    events: list[dict[str, Any]] = []
    controller = RetryController(max_attempts=2, event_hook=events.append)
    worker = WorkerAgent(ScriptedBackend(["A", "A B ✅ done"]), role="custom")

    asyncio.run(controller.execute(PHASE, CONTRACT, worker))

    assert [event["event"] for event in events] == [
        "attempt_started",
        "attempt_failed",
        "attempt_started",
        "attempt_accepted",
    ]


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RetryController(max_attempts=0)


def test_fixed_decision_handler() -> None:
    handler = fixed_decision("skip")
    request = EscalationRequest(
        phase_id="p1", role="custom", attempts=3, missing=("B",), feedback_history=()
    )

    assert asyncio.run(handler(request)) is EscalationDecision.SKIP
