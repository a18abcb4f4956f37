"""Shared lifecycle types for phases and run history."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class PhaseStatus(str, Enum):
    """Phase lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


FINAL_STATUSES = frozenset({PhaseStatus.COMPLETED, PhaseStatus.SKIPPED})
TERMINAL_STATUSES = frozenset({PhaseStatus.COMPLETED, PhaseStatus.SKIPPED, PhaseStatus.BLOCKED})
OPEN_STATUSES = frozenset({PhaseStatus.PENDING, PhaseStatus.IN_PROGRESS})

ALLOWED_TRANSITIONS: dict[PhaseStatus, frozenset[PhaseStatus]] = {
    PhaseStatus.PENDING: frozenset({PhaseStatus.IN_PROGRESS, PhaseStatus.SKIPPED}),
    PhaseStatus.IN_PROGRESS: frozenset(
        {
            PhaseStatus.IN_PROGRESS,
            PhaseStatus.COMPLETED,
            PhaseStatus.BLOCKED,
            PhaseStatus.SKIPPED,
        }
    ),
    PhaseStatus.BLOCKED: frozenset({PhaseStatus.IN_PROGRESS, PhaseStatus.SKIPPED}),
    PhaseStatus.COMPLETED: frozenset(),
    PhaseStatus.SKIPPED: frozenset(),
}


class RunStatus(str, Enum):
    """Run-level states stored in the progress document."""

    IN_PROGRESS = "in_progress"
    ABORTED = "aborted"
    COMPLETE = "complete"


@dataclass(frozen=True, slots=True)
class HistoryEvent:
    timestamp: str
    event_type: str
    phase_id: str | None = None
    duration_minutes: float | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "phaseId": self.phase_id,
            "eventType": self.event_type,
        }
        if self.duration_minutes is not None:
            payload["durationMinutes"] = self.duration_minutes
        if self.detail:
            payload["detail"] = self.detail
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistoryEvent:
        duration = payload.get("durationMinutes")
        return cls(
            timestamp=str(payload["timestamp"]),
            event_type=str(payload["eventType"]),
            phase_id=payload.get("phaseId"),
            duration_minutes=float(duration) if duration is not None else None,
            detail=payload.get("detail"),
        )
