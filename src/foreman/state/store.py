from __future__ import annotations

import copy
import json
import logging
import os
import re
import tempfile
import threading
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from foreman.errors import (
    ForemanError,
    InvalidTransitionError,
    RunNotFoundError,
    StateDocumentCorruptError,
)
from foreman.metrics import PhaseProgress, ProgressSnapshot, compute_snapshot
from foreman.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    HistoryEvent,
    PhaseStatus,
    RunStatus,
)
from foreman.pipeline import Pipeline

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
REQUIRED_KEYS = (
    "pipelineId",
    "runId",
    "pipeline",
    "phases",
    "meta",
    "history",
    "currentPhaseId",
    "readyToArchive",
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(moment: datetime) -> str:
    return moment.replace(microsecond=0).isoformat()


def new_run_id(clock: Clock = _utcnow) -> str:
    return f"run-{clock().strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class ProgressStore:
    """Single-writer progress document for one pipeline run.

    Every mutation is validated, applied in memory and written back to disk
    before the call returns. History is append-only and phase statuses only
    move along :data:`ALLOWED_TRANSITIONS`.
    """

    SCHEMA_VERSION = 1

    def __init__(self, path: Path, document: dict[str, Any], *, clock: Clock | None = None):
        self.path = path
        self.lock_file = path.with_name(f"{path.name}.lock")
        self._document = document
        self._clock = clock or _utcnow
        self._lock = threading.RLock()

    @staticmethod
    def run_path(state_dir: Path, run_id: str) -> Path:
        if not RUN_ID_PATTERN.match(run_id):
            raise RunNotFoundError(f"Invalid run id: {run_id!r}")
        return state_dir / f"{run_id}.json"

    @staticmethod
    def list_runs(state_dir: Path) -> list[str]:
        if not state_dir.exists():
            return []
        return sorted(path.stem for path in state_dir.glob("*.json"))

    @classmethod
    def create(
        cls,
        state_dir: Path,
        pipeline: Pipeline,
        *,
        run_id: str | None = None,
        clock: Clock | None = None,
    ) -> ProgressStore:
        now_fn = clock or _utcnow
        resolved_id = run_id or new_run_id(now_fn)
        path = cls.run_path(state_dir, resolved_id)
        if path.exists():
            raise StateDocumentCorruptError(
                f"Run '{resolved_id}' already exists at {path}; use `foreman resume`."
            )
        state_dir.mkdir(parents=True, exist_ok=True)
        now = _iso(now_fn())
        document: dict[str, Any] = {
            "schemaVersion": cls.SCHEMA_VERSION,
            "pipelineId": pipeline.id,
            "runId": resolved_id,
            "status": RunStatus.IN_PROGRESS.value,
            "createdAt": now,
            "updatedAt": now,
            "pipeline": pipeline.to_dict(),
            "phases": {
                phase.id: {
                    "status": PhaseStatus.PENDING.value,
                    "startedAt": None,
                    "completedAt": None,
                    "actualMinutes": None,
                    "filesTouched": [],
                    "notes": "",
                    "classification": None,
                }
                for phase in pipeline
            },
            "meta": {},
            "history": [],
            "currentPhaseId": None,
            "readyToArchive": False,
            "abortRequested": False,
        }
        store = cls(path, document, clock=now_fn)
        store._persist()
        logger.info("Created run %s for pipeline %s", resolved_id, pipeline.id)
        return store

    @classmethod
    def load(cls, state_dir: Path, run_id: str, *, clock: Clock | None = None) -> ProgressStore:
        path = cls.run_path(state_dir, run_id)
        if not path.exists():
            raise RunNotFoundError(f"No state document for run '{run_id}' in {state_dir}")
        document = cls._read_document(path)
        return cls(path, document, clock=clock)

    @classmethod
    def _read_document(cls, path: Path) -> dict[str, Any]:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateDocumentCorruptError(f"Cannot read state document {path}: {exc}") from exc
        cls._check_document(payload, path)
        return payload

    @staticmethod
    def _check_document(payload: Any, path: Path) -> None:
        def _fail(reason: str) -> None:
            raise StateDocumentCorruptError(f"State document {path} is invalid: {reason}")

        if not isinstance(payload, dict):
            _fail("top level is not an object")
        missing = [key for key in REQUIRED_KEYS if key not in payload]
        if missing:
            _fail(f"missing keys {missing}")
        phases = payload["phases"]
        if not isinstance(phases, dict):
            _fail("'phases' is not an object")
        for phase_id, record in phases.items():
            if not isinstance(record, dict):
                _fail(f"phase '{phase_id}' is not an object")
            try:
                PhaseStatus(record.get("status"))
            except ValueError:
                _fail(f"phase '{phase_id}' has unknown status {record.get('status')!r}")
            actual = record.get("actualMinutes")
            if actual is not None and (
                isinstance(actual, bool) or not isinstance(actual, (int, float))
            ):
                _fail(f"phase '{phase_id}' has non-numeric actualMinutes {actual!r}")
        definition = payload["pipeline"]
        if not isinstance(definition, dict) or not isinstance(definition.get("phases"), list):
            _fail("'pipeline' definition is missing")
        declared: list[str] = []
        for item in definition["phases"]:
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                _fail("pipeline definition contains a phase without an id")
            estimate = item.get("estimated_minutes", 0)
            if isinstance(estimate, bool) or not isinstance(estimate, (int, float)):
                _fail(f"phase '{item['id']}' has non-numeric estimated_minutes {estimate!r}")
            declared.append(item["id"])
        if sorted(declared) != sorted(phases):
            _fail("phase records do not match the pipeline definition")
        history = payload["history"]
        if not isinstance(history, list):
            _fail("'history' is not a list")
        for item in history:
            if not isinstance(item, dict) or "timestamp" not in item or "eventType" not in item:
                _fail("history contains a malformed event")

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise ForemanError(
                        f"Timed out waiting for state lock {self.lock_file}; "
                        "remove it if no other foreman process is running."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _abort_flag_on_disk(self) -> bool:
        if not self.path.exists():
            return False
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return False
        return isinstance(payload, dict) and bool(payload.get("abortRequested"))

    def _persist(self, *, merge_abort: bool = True) -> None:
        with self._lock, self._state_lock():
            if merge_abort and self._abort_flag_on_disk():
                self._document["abortRequested"] = True
            self._document["updatedAt"] = _iso(self._clock())
            self._document["meta"] = self.snapshot().to_dict()
            self._write_atomic(self._document)

    def _write_atomic(self, document: dict[str, Any]) -> None:
        serialized = json.dumps(document, ensure_ascii=False, indent=2)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self.path.stem}-", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(temp_name, self.path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

    @property
    def run_id(self) -> str:
        return str(self._document["runId"])

    @property
    def pipeline_id(self) -> str:
        return str(self._document["pipelineId"])

    @property
    def run_status(self) -> RunStatus:
        return RunStatus(self._document.get("status", RunStatus.IN_PROGRESS.value))

    @property
    def current_phase_id(self) -> str | None:
        return self._document.get("currentPhaseId")

    @property
    def ready_to_archive(self) -> bool:
        return bool(self._document.get("readyToArchive"))

    def pipeline_definition(self) -> dict[str, Any]:
        return copy.deepcopy(self._document["pipeline"])

    def document(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._document)

    def _record(self, phase_id: str) -> dict[str, Any]:
        try:
            return self._document["phases"][phase_id]
        except KeyError:
            raise KeyError(f"Unknown phase id: {phase_id}") from None

    def phase_status(self, phase_id: str) -> PhaseStatus:
        return PhaseStatus(self._record(phase_id)["status"])

    def statuses(self) -> dict[str, PhaseStatus]:
        return {
            phase_id: PhaseStatus(record["status"])
            for phase_id, record in self._document["phases"].items()
        }

    def phase_record(self, phase_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._record(phase_id))

    def transition(
        self,
        phase_id: str,
        new_status: PhaseStatus,
        evidence: dict[str, Any] | None = None,
    ) -> None:
        target = PhaseStatus(new_status)
        with self._lock:
            record = self._record(phase_id)
            current = PhaseStatus(record["status"])
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(phase_id, current.value, target.value)

            now = self._clock()
            # Re-entering in_progress after a crash drops the interrupted interval.
            if current is PhaseStatus.IN_PROGRESS and target is not PhaseStatus.IN_PROGRESS:
                self._accumulate_minutes(record, now)
            if target is PhaseStatus.IN_PROGRESS:
                record["startedAt"] = _iso(now)
                record["completedAt"] = None
            elif target in TERMINAL_STATUSES:
                record["completedAt"] = _iso(now)

            if evidence:
                if "actual_minutes" in evidence and evidence["actual_minutes"] is not None:
                    record["actualMinutes"] = round(float(evidence["actual_minutes"]), 2)
                files = evidence.get("files_touched")
                if files:
                    merged = list(record.get("filesTouched") or [])
                    for item in files:
                        if str(item) not in merged:
                            merged.append(str(item))
                    record["filesTouched"] = merged
                notes = evidence.get("notes")
                if notes:
                    record["notes"] = str(notes)

            record["status"] = target.value
            self._persist()
        logger.info("Phase %s: %s -> %s", phase_id, current.value, target.value)

    @staticmethod
    def _minutes_until(record: dict[str, Any], now: datetime) -> float:
        previous = float(record.get("actualMinutes") or 0.0)
        started_raw = record.get("startedAt")
        if not started_raw:
            return round(previous, 2)
        try:
            started = datetime.fromisoformat(str(started_raw))
        except ValueError:
            return round(previous, 2)
        elapsed = max(0.0, (now - started).total_seconds() / 60.0)
        return round(previous + elapsed, 2)

    def _accumulate_minutes(self, record: dict[str, Any], now: datetime) -> None:
        record["actualMinutes"] = self._minutes_until(record, now)

    def elapsed_minutes(self, phase_id: str) -> float:
        """Minutes spent on an in-progress phase so far, including earlier sessions."""
        record = self._record(phase_id)
        if PhaseStatus(record["status"]) is not PhaseStatus.IN_PROGRESS:
            return float(record.get("actualMinutes") or 0.0)
        return self._minutes_until(record, self._clock())

    def append(self, event: HistoryEvent) -> None:
        with self._lock:
            self._document["history"].append(event.to_dict())
            self._persist()

    def record_event(
        self,
        event_type: str,
        phase_id: str | None = None,
        *,
        duration_minutes: float | None = None,
        detail: str | None = None,
    ) -> HistoryEvent:
        event = HistoryEvent(
            timestamp=_iso(self._clock()),
            event_type=event_type,
            phase_id=phase_id,
            duration_minutes=duration_minutes,
            detail=detail,
        )
        self.append(event)
        return event

    def history(self) -> list[HistoryEvent]:
        return [HistoryEvent.from_dict(item) for item in self._document["history"]]

    def classification(self, phase_id: str) -> dict[str, Any] | None:
        payload = self._record(phase_id).get("classification")
        return copy.deepcopy(payload) if isinstance(payload, dict) else None

    def record_classification(self, phase_id: str, classification: dict[str, Any]) -> None:
        with self._lock:
            record = self._record(phase_id)
            if record.get("classification"):
                return
            record["classification"] = dict(classification)
            self._persist()

    def set_current_phase(self, phase_id: str | None) -> None:
        with self._lock:
            self._document["currentPhaseId"] = phase_id
            self._persist()

    def set_run_status(self, status: RunStatus) -> None:
        with self._lock:
            self._document["status"] = RunStatus(status).value
            self._persist()

    def request_abort(self) -> None:
        """Set the abort flag on disk without rewriting anything else.

        Another process may own the run and have written newer phase data
        since this store was loaded, so only ``abortRequested`` changes.
        """
        with self._lock, self._state_lock():
            self._document["abortRequested"] = True
            on_disk = self._read_document(self.path) if self.path.exists() else self._document
            on_disk["abortRequested"] = True
            on_disk["updatedAt"] = _iso(self._clock())
            self._write_atomic(on_disk)

    def clear_abort(self) -> None:
        with self._lock:
            self._document["abortRequested"] = False
            self._persist(merge_abort=False)

    def poll_abort_requested(self) -> bool:
        with self._lock:
            if self._abort_flag_on_disk():
                self._document["abortRequested"] = True
            return bool(self._document.get("abortRequested"))

    def mark_ready_to_archive(self) -> None:
        with self._lock:
            open_phases = [
                phase_id
                for phase_id, status in self.statuses().items()
                if status not in TERMINAL_STATUSES
            ]
            if open_phases:
                raise ForemanError(
                    f"Run {self.run_id} still has open phases: {open_phases}"
                )
            self._document["readyToArchive"] = True
            self._document["currentPhaseId"] = None
            self._persist()

    def snapshot(self) -> ProgressSnapshot:
        estimates: dict[str, int] = {}
        for item in self._document["pipeline"]["phases"]:
            estimates[str(item["id"])] = int(item.get("estimated_minutes", 0))
        records = []
        for phase_id, record in self._document["phases"].items():
            actual = record.get("actualMinutes")
            records.append(
                PhaseProgress(
                    status=PhaseStatus(record["status"]),
                    estimated_minutes=estimates.get(phase_id, 0),
                    actual_minutes=float(actual) if actual is not None else None,
                )
            )
        return compute_snapshot(records)
