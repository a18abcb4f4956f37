import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from foreman.backends.base import WorkerBackend
from foreman.config import RoleConfig
from foreman.contracts import STRICT_LOOP_MARKERS, ContractRegistry
from foreman.controller import EscalationDecision, EscalationRequest, RetryController
from foreman.errors import UnknownRoleError
from foreman.models import PhaseStatus, RunStatus
from foreman.pipeline import Pipeline, pipeline_from_dict
from foreman.runner import PipelineRunner
from foreman.state import ProgressStore
from foreman.workers import build_workers

GOOD = "A done, B done, ✅ complete"
REGISTRY = ContractRegistry.from_config(
    {"custom": RoleConfig(markers=["A", "B"], strict_markers=[], produces_artifacts=False)}
)


class PhaseScriptBackend(WorkerBackend):
    """Replies per phase id; the last reply repeats once the script runs out."""

    def __init__(
        self,
        scripts: dict[str, list[str]],
        delays: dict[str, float] | None = None,
        on_finish: Any = None,
    ) -> None:
        self.scripts = {key: list(value) for key, value in scripts.items()}
        self.delays = delays or {}
        self.on_finish = on_finish
        self.calls: list[tuple[str, str]] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt
        phase_id = context["phase_id"]
        self.calls.append((phase_id, user_prompt))
        await asyncio.sleep(self.delays.get(phase_id, 0))
        script = self.scripts.get(phase_id, [GOOD])
        reply = script.pop(0) if len(script) > 1 else script[0]
        if self.on_finish is not None:
            self.on_finish(phase_id)
        yield reply


def _pipeline(*phases: dict) -> Pipeline:
    return pipeline_from_dict({"id": "demo", "phases": list(phases)}, REGISTRY)


def _phase(phase_id: str, role: str = "custom", **extra: Any) -> dict:
    payload = {"id": phase_id, "role": role, "estimated_minutes": 10, "task": "Do the work"}
    payload.update(extra)
    return payload


def _runner(tmp_path: Path, backend: WorkerBackend, decisions: list[str] | None = None):
    answers = list(decisions or [])
    requests: list[EscalationRequest] = []

    async def handler(request: EscalationRequest) -> EscalationDecision:
        requests.append(request)
        return EscalationDecision(answers.pop(0))

    runner = PipelineRunner(
        REGISTRY,
        build_workers(backend, REGISTRY),
        RetryController(max_attempts=3),
        tmp_path,
        escalation_handler=handler,
    )
    return runner, requests


def test_single_phase_passes_first_time(tmp_path: Path) -> None:
    backend = PhaseScriptBackend({"only": [GOOD]})
    runner, _ = _runner(tmp_path, backend)

    summary = asyncio.run(runner.run(_pipeline(_phase("only")), run_id="r1"))

    assert summary.status is RunStatus.COMPLETE
    assert summary.snapshot.percentage == 100
    assert len(backend.calls) == 1
    document = ProgressStore.load(tmp_path, "r1").document()
    assert document["readyToArchive"] is True
    assert document["currentPhaseId"] is None
    assert document["phases"]["only"]["status"] == "completed"
    assert document["phases"]["only"]["classification"]["workflowMode"] == "light"


def test_retry_with_feedback_then_complete(tmp_path: Path) -> None:
    backend = PhaseScriptBackend({"only": ["A done", GOOD]})
    runner, requests = _runner(tmp_path, backend)

    asyncio.run(runner.run(_pipeline(_phase("only")), run_id="r1"))

    store = ProgressStore.load(tmp_path, "r1")
    assert store.phase_status("only") is PhaseStatus.COMPLETED
    assert len(backend.calls) == 2
    assert "missing: B" in backend.calls[1][1]
    failures = [event for event in store.history() if event.event_type == "attempt_failed"]
    assert len(failures) == 1
    assert requests == []


def test_escalation_skip_continues_pipeline(tmp_path: Path) -> None:
    backend = PhaseScriptBackend({"first": ["A only"], "second": [GOOD]})
    runner, requests = _runner(tmp_path, backend, decisions=["skip"])

    summary = asyncio.run(
        runner.run(_pipeline(_phase("first"), _phase("second")), run_id="r1")
    )

    assert [call[0] for call in backend.calls] == ["first"] * 3 + ["second"]
    assert requests[0].phase_id == "first"
    assert requests[0].attempts == 3
    assert "B" in requests[0].missing
    assert summary.status is RunStatus.COMPLETE
    assert summary.escalations[0]["decision"] == "skip"
    store = ProgressStore.load(tmp_path, "r1")
    assert store.phase_status("first") is PhaseStatus.SKIPPED
    assert store.phase_status("second") is PhaseStatus.COMPLETED
    assert summary.snapshot.percentage == 50


def test_escalation_retry_resets_attempt_budget(tmp_path: Path) -> None:
    backend = PhaseScriptBackend({"only": ["A", "A", "A", "A", GOOD]})
    runner, requests = _runner(tmp_path, backend, decisions=["retry"])

    summary = asyncio.run(runner.run(_pipeline(_phase("only")), run_id="r1"))

    assert summary.status is RunStatus.COMPLETE
    assert len(requests) == 1
    assert len(backend.calls) == 5
    assert "attempt 4:" in backend.calls[-1][1]


def test_parallel_group_joins_before_counting(tmp_path: Path) -> None:
    snapshots: list[int] = []

    def _record_completed(phase_id: str) -> None:
        if phase_id.startswith("par"):
            store = ProgressStore.load(tmp_path, "r1")
            snapshots.append(store.snapshot().completed_count)

    backend = PhaseScriptBackend(
        {},
        delays={"par-slow": 0.05, "par-fast": 0.0},
        on_finish=_record_completed,
    )
    runner, _ = _runner(tmp_path, backend)
    pipeline = _pipeline(
        _phase("setup"),
        _phase("par-slow", parallel_group="g"),
        _phase("par-fast", parallel_group="g"),
        _phase("after"),
    )

    summary = asyncio.run(runner.run(pipeline, run_id="r1"))

    assert [call[0] for call in backend.calls][:3] == ["setup", "par-slow", "par-fast"]
    assert [call[0] for call in backend.calls][-1] == "after"
    # Only "setup" is committed while either group member is still running.
    assert snapshots == [1, 1]
    assert summary.snapshot.completed_count == 4
    history = ProgressStore.load(tmp_path, "r1").history()
    completed = [event.phase_id for event in history if event.event_type == "phase_completed"]
    assert completed.index("after") > completed.index("par-slow")
    assert completed.index("after") > completed.index("par-fast")


def test_group_member_keeps_running_while_state_lock_is_held(tmp_path: Path) -> None:
    lock_file = tmp_path / "r1.json.lock"
    order: list[str] = []

    def _release() -> None:
        lock_file.unlink()
        order.append("released")

    def _on_finish(phase_id: str) -> None:
        order.append(phase_id)
        if phase_id == "fast":
            # Another foreman process holds the run's lock for a moment.
            lock_file.write_text("4242", encoding="utf-8")
            asyncio.get_running_loop().call_later(0.3, _release)

    backend = PhaseScriptBackend(
        {}, delays={"fast": 0.05, "slow": 0.1}, on_finish=_on_finish
    )
    runner, _ = _runner(tmp_path, backend)
    pipeline = _pipeline(_phase("fast", parallel_group="g"), _phase("slow", parallel_group="g"))

    summary = asyncio.run(runner.run(pipeline, run_id="r1"))

    assert order == ["fast", "slow", "released"]
    assert summary.status is RunStatus.COMPLETE
    assert summary.snapshot.completed_count == 2


def test_strict_loop_phase_requires_loop_markers(tmp_path: Path) -> None:
    strict_reply = "\n".join(
        [
            "## Pre-Work Report",
            "Context loaded: docs/auth.md",
            "Patterns reviewed: yes",
            "API contract: POST /login",
            "Error handling: 401 on bad password",
            *[f"{marker} step" for marker in STRICT_LOOP_MARKERS],
            "Files: src/auth.py",
            "✅ Complete",
        ]
    )
    backend = PhaseScriptBackend({"auth": ["## Pre-Work Report ✅ done", strict_reply]})
    runner, _ = _runner(tmp_path, backend)
    pipeline = _pipeline(
        _phase(
            "auth",
            role="backend",
            estimated_minutes=120,
            task="Implement user authentication endpoints",
        )
    )

    asyncio.run(runner.run(pipeline, run_id="r1"))

    first_prompt = backend.calls[0][1]
    for marker in STRICT_LOOP_MARKERS:
        assert f"- {marker}" in first_prompt
    store = ProgressStore.load(tmp_path, "r1")
    assert store.classification("auth")["workflowMode"] == "strict-loop"
    assert store.phase_status("auth") is PhaseStatus.COMPLETED
    assert store.phase_record("auth")["filesTouched"] == ["src/auth.py", "docs/auth.md"]


def test_abort_blocks_phase_and_resume_finishes(tmp_path: Path) -> None:
    backend = PhaseScriptBackend({"first": [GOOD], "second": ["nope"]})
    runner, _ = _runner(tmp_path, backend, decisions=["abort"])
    pipeline = _pipeline(_phase("first"), _phase("second"), _phase("third"))

    summary = asyncio.run(runner.run(pipeline, run_id="r1"))

    assert summary.status is RunStatus.ABORTED
    store = ProgressStore.load(tmp_path, "r1")
    assert store.phase_status("first") is PhaseStatus.COMPLETED
    assert store.phase_status("second") is PhaseStatus.BLOCKED
    assert store.phase_status("third") is PhaseStatus.PENDING
    assert store.document()["status"] == "aborted"
    classification = store.classification("second")

    backend.scripts["second"] = [GOOD]
    resumed_runner, _ = _runner(tmp_path, backend)
    resumed = asyncio.run(resumed_runner.resume("r1"))

    assert resumed.status is RunStatus.COMPLETE
    store = ProgressStore.load(tmp_path, "r1")
    assert store.ready_to_archive is True
    assert store.classification("second") == classification
    assert [call[0] for call in backend.calls].count("first") == 1
    event_types = [event.event_type for event in store.history()]
    assert "run_aborted" in event_types
    assert event_types.index("run_resumed") > event_types.index("run_aborted")
    assert event_types[-1] == "run_completed"


def test_external_pause_stops_between_phases(tmp_path: Path) -> None:
    def _pause_after_first(phase_id: str) -> None:
        if phase_id == "first":
            ProgressStore.load(tmp_path, "r1").request_abort()

    backend = PhaseScriptBackend({}, on_finish=_pause_after_first)
    runner, _ = _runner(tmp_path, backend)

    summary = asyncio.run(
        runner.run(_pipeline(_phase("first"), _phase("second")), run_id="r1")
    )

    assert summary.status is RunStatus.ABORTED
    store = ProgressStore.load(tmp_path, "r1")
    assert store.phase_status("first") is PhaseStatus.COMPLETED
    assert store.phase_status("second") is PhaseStatus.PENDING


def test_resume_of_finished_run_is_a_no_op(tmp_path: Path) -> None:
    backend = PhaseScriptBackend({})
    runner, _ = _runner(tmp_path, backend)
    asyncio.run(runner.run(_pipeline(_phase("only")), run_id="r1"))

    summary = asyncio.run(runner.resume("r1"))

    assert summary.status is RunStatus.COMPLETE
    assert len(backend.calls) == 1


def test_bounded_invocations_per_escalation(tmp_path: Path) -> None:
    backend = PhaseScriptBackend({"only": ["never"]})
    runner, requests = _runner(tmp_path, backend, decisions=["retry", "skip"])

    asyncio.run(runner.run(_pipeline(_phase("only")), run_id="r1"))

    assert len(requests) == 2
    assert len(backend.calls) == 6


def test_missing_worker_for_role_is_reported(tmp_path: Path) -> None:
    runner = PipelineRunner(REGISTRY, {}, RetryController(), tmp_path)

    with pytest.raises(UnknownRoleError):
        asyncio.run(runner.run(_pipeline(_phase("only")), run_id="r1"))
