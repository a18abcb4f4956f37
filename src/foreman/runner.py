"""Sequential pipeline execution with barrier-joined parallel groups."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from foreman.classifier import ClassificationResult, classify
from foreman.config import ClassifierConfig
from foreman.contracts import ContractRegistry
from foreman.controller import (
    ControllerResult,
    EscalationDecision,
    EscalationHandler,
    EscalationRequest,
    RetryController,
    fixed_decision,
)
from foreman.extraction import WorkerResult
from foreman.errors import ForemanError, UnknownRoleError
from foreman.metrics import ProgressSnapshot
from foreman.models import FINAL_STATUSES, PhaseStatus, RunStatus
from foreman.pipeline import Phase, Pipeline, pipeline_from_dict
from foreman.state.store import Clock, ProgressStore
from foreman.workers.base import WorkerAgent

logger = logging.getLogger(__name__)

RUNNABLE_STATUSES = frozenset(
    {PhaseStatus.PENDING, PhaseStatus.BLOCKED, PhaseStatus.IN_PROGRESS}
)


@dataclass(slots=True)
class RunSummary:
    run_id: str
    pipeline_id: str
    status: RunStatus
    snapshot: ProgressSnapshot
    escalations: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "pipelineId": self.pipeline_id,
            "status": self.status.value,
            "meta": self.snapshot.to_dict(),
            "escalations": list(self.escalations),
        }


@dataclass(frozen=True, slots=True)
class _Completion:
    phase: Phase
    result: WorkerResult
    actual_minutes: float


class PipelineRunner:
    def __init__(
        self,
        registry: ContractRegistry,
        workers: dict[str, WorkerAgent],
        controller: RetryController,
        state_dir: Path,
        *,
        escalation_handler: EscalationHandler | None = None,
        classifier_config: ClassifierConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.registry = registry
        self.workers = workers
        self.controller = controller
        self.state_dir = state_dir
        self.escalation_handler = escalation_handler or fixed_decision(EscalationDecision.ABORT)
        self.classifier_config = classifier_config or ClassifierConfig()
        self.clock = clock
        self._commit_lock = asyncio.Lock()
        self._escalation_lock = asyncio.Lock()
        self._escalations: list[dict[str, Any]] = []

    async def run(self, pipeline: Pipeline, *, run_id: str | None = None) -> RunSummary:
        store = ProgressStore.create(self.state_dir, pipeline, run_id=run_id, clock=self.clock)
        store.record_event("run_started", detail=f"pipeline={pipeline.id}")
        logger.info("Starting run %s (%d phases)", store.run_id, len(pipeline))
        return await self._drive(store, pipeline)

    async def resume(self, run_id: str) -> RunSummary:
        store = ProgressStore.load(self.state_dir, run_id, clock=self.clock)
        if store.ready_to_archive:
            logger.info("Run %s already finished; nothing to resume", run_id)
            return self._summary(store, RunStatus.COMPLETE)
        pipeline = pipeline_from_dict(store.pipeline_definition(), self.registry)
        store.clear_abort()
        store.set_run_status(RunStatus.IN_PROGRESS)
        store.record_event("run_resumed")
        logger.info("Resuming run %s", run_id)
        return await self._drive(store, pipeline)

    def _summary(self, store: ProgressStore, status: RunStatus) -> RunSummary:
        return RunSummary(
            run_id=store.run_id,
            pipeline_id=store.pipeline_id,
            status=status,
            snapshot=store.snapshot(),
            escalations=list(self._escalations),
        )

    @staticmethod
    def _is_ready(phase: Phase, statuses: dict[str, PhaseStatus]) -> bool:
        if statuses[phase.id] not in RUNNABLE_STATUSES:
            return False
        return all(statuses[dep] in FINAL_STATUSES for dep in phase.depends_on)

    def _next_batch(self, pipeline: Pipeline, store: ProgressStore) -> list[Phase]:
        statuses = store.statuses()
        for phase in pipeline:
            if not self._is_ready(phase, statuses):
                continue
            if phase.parallel_group is None:
                return [phase]
            return [
                member
                for member in pipeline.group_members(phase.parallel_group)
                if self._is_ready(member, statuses)
            ]
        return []

    async def _drive(self, store: ProgressStore, pipeline: Pipeline) -> RunSummary:
        self._escalations = []
        while True:
            if store.poll_abort_requested():
                store.set_current_phase(None)
                store.set_run_status(RunStatus.ABORTED)
                store.record_event("run_aborted")
                logger.warning(
                    "Run %s aborted; continue with `foreman resume %s`", store.run_id, store.run_id
                )
                return self._summary(store, RunStatus.ABORTED)

            batch = self._next_batch(pipeline, store)
            if not batch:
                break
            if len(batch) == 1:
                await self._commit(store, [await self._run_phase(store, batch[0])])
            else:
                logger.info(
                    "Dispatching parallel group %s: %s",
                    batch[0].parallel_group,
                    ", ".join(phase.id for phase in batch),
                )
                completions = await asyncio.gather(
                    *(self._run_phase(store, phase) for phase in batch)
                )
                await self._commit(store, list(completions))

        stuck = [
            phase_id
            for phase_id, status in store.statuses().items()
            if status not in FINAL_STATUSES
        ]
        if stuck:
            raise ForemanError(
                f"Run {store.run_id} cannot make progress; phases waiting on "
                f"unfinished dependencies: {stuck}"
            )
        store.mark_ready_to_archive()
        store.set_run_status(RunStatus.COMPLETE)
        store.record_event("run_completed")
        logger.info("Run %s complete", store.run_id)
        return self._summary(store, RunStatus.COMPLETE)

    def _classification_for(self, store: ProgressStore, phase: Phase) -> ClassificationResult:
        persisted = store.classification(phase.id)
        if persisted is not None:
            return ClassificationResult.from_dict(persisted)
        result = classify(phase, self.registry, self.classifier_config)
        store.record_classification(phase.id, result.to_dict())
        store.record_event(
            "classified",
            phase.id,
            detail=(
                f"score={result.complexity_score} risk={result.risk_level.value} "
                f"mode={result.workflow_mode.value}"
            ),
        )
        return result

    def _worker_for(self, role: str) -> WorkerAgent:
        try:
            return self.workers[role]
        except KeyError:
            raise UnknownRoleError(role) from None

    def _start_phase(self, store: ProgressStore, phase: Phase) -> ClassificationResult:
        store.transition(phase.id, PhaseStatus.IN_PROGRESS)
        store.set_current_phase(phase.id)
        store.record_event("phase_started", phase.id)
        return self._classification_for(store, phase)

    @staticmethod
    def _settle_attempts(
        store: ProgressStore,
        phase: Phase,
        outcome: ControllerResult,
        new_notes: list[str],
    ) -> _Completion | None:
        for note in new_notes:
            store.record_event("attempt_failed", phase.id, detail=note)
        if outcome.accepted and outcome.result is not None:
            return _Completion(
                phase=phase,
                result=outcome.result,
                actual_minutes=store.elapsed_minutes(phase.id),
            )
        store.record_event(
            "escalated", phase.id, detail=f"after {outcome.state.attempt} attempts"
        )
        return None

    @staticmethod
    def _settle_escalation(
        store: ProgressStore, phase: Phase, decision: EscalationDecision
    ) -> None:
        if decision is EscalationDecision.SKIP:
            store.transition(phase.id, PhaseStatus.SKIPPED)
            store.record_event("phase_skipped", phase.id)
        else:
            store.transition(phase.id, PhaseStatus.BLOCKED)
            store.request_abort()

    async def _run_phase(self, store: ProgressStore, phase: Phase) -> _Completion | None:
        """Drive one phase until it is accepted, skipped or blocked.

        Acceptance is returned rather than committed so that parallel group
        members only count as completed once the whole group has joined.
        Store writes may wait on the run's lock file, so they run in a
        worker thread and other group members keep going meanwhile.
        """

        async with self._commit_lock:
            classification = await asyncio.to_thread(self._start_phase, store, phase)

        contract = self.registry.contract_for(phase.role, classification.workflow_mode)
        worker = self._worker_for(phase.role)
        feedback: list[str] = []

        while True:
            outcome = await self.controller.execute(
                phase,
                contract,
                worker,
                context_refs=list(phase.context_refs),
                feedback_history=feedback,
            )
            new_notes = outcome.state.feedback_history[len(feedback) :]
            feedback = list(outcome.state.feedback_history)

            async with self._commit_lock:
                completion = await asyncio.to_thread(
                    self._settle_attempts, store, phase, outcome, new_notes
                )
            if completion is not None:
                return completion

            missing = outcome.last_report.missing if outcome.last_report else ()
            decision = await self._escalate(
                store, phase, outcome.state.attempt, missing, feedback
            )
            if decision is EscalationDecision.RETRY:
                logger.info("Retrying phase %s after escalation", phase.id)
                continue

            async with self._commit_lock:
                await asyncio.to_thread(self._settle_escalation, store, phase, decision)
            return None

    @staticmethod
    def _apply_completions(store: ProgressStore, completions: list[_Completion | None]) -> None:
        for completion in completions:
            if completion is None:
                continue
            evidence = completion.result.to_evidence()
            evidence["actual_minutes"] = completion.actual_minutes
            store.transition(completion.phase.id, PhaseStatus.COMPLETED, evidence)
            store.record_event(
                "phase_completed",
                completion.phase.id,
                duration_minutes=completion.actual_minutes,
            )

    async def _commit(self, store: ProgressStore, completions: list[_Completion | None]) -> None:
        async with self._commit_lock:
            await asyncio.to_thread(self._apply_completions, store, completions)

    async def _escalate(
        self,
        store: ProgressStore,
        phase: Phase,
        attempts: int,
        missing: tuple[str, ...],
        feedback: list[str],
    ) -> EscalationDecision:
        request = EscalationRequest(
            phase_id=phase.id,
            role=phase.role,
            attempts=attempts,
            missing=missing,
            feedback_history=tuple(feedback),
        )
        # One escalation prompt at a time, even inside a parallel group.
        async with self._escalation_lock:
            if await asyncio.to_thread(store.poll_abort_requested):
                decision = EscalationDecision.ABORT
            else:
                decision = EscalationDecision(await self.escalation_handler(request))
        self._escalations.append(
            {
                "phaseId": phase.id,
                "attempts": attempts,
                "missing": list(missing),
                "decision": decision.value,
            }
        )
        async with self._commit_lock:
            await asyncio.to_thread(
                store.record_event, "escalation_decision", phase.id, detail=decision.value
            )
        logger.warning("Phase %s escalation decision: %s", phase.id, decision.value)
        return decision
