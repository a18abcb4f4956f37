"""Progress metrics derived from phase records."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from foreman.models import OPEN_STATUSES, PhaseStatus


@dataclass(frozen=True, slots=True)
class PhaseProgress:
    status: PhaseStatus
    estimated_minutes: int
    actual_minutes: float | None = None


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    completed_count: int
    total_count: int
    percentage: int
    actual_minutes_spent: float
    estimated_minutes_total: int
    efficiency_percent: int | None
    remaining_minutes_estimate: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "completedCount": self.completed_count,
            "totalCount": self.total_count,
            "percentage": self.percentage,
            "actualMinutesTotal": self.actual_minutes_spent,
            "estimatedMinutesTotal": self.estimated_minutes_total,
            "efficiencyPercent": self.efficiency_percent,
            "remainingMinutesEstimate": self.remaining_minutes_estimate,
        }


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentage(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round_half_up(completed / total * 100)


def compute_snapshot(phases: Iterable[PhaseProgress]) -> ProgressSnapshot:
    records = list(phases)
    completed = [item for item in records if item.status is PhaseStatus.COMPLETED]
    actual_spent = round(sum(item.actual_minutes or 0.0 for item in completed), 2)
    estimated_completed = sum(item.estimated_minutes for item in completed)
    efficiency: int | None = None
    if actual_spent > 0:
        efficiency = round_half_up(estimated_completed / actual_spent * 100)
    remaining = sum(
        item.estimated_minutes for item in records if item.status in OPEN_STATUSES
    )
    return ProgressSnapshot(
        completed_count=len(completed),
        total_count=len(records),
        percentage=percentage(len(completed), len(records)),
        actual_minutes_spent=actual_spent,
        estimated_minutes_total=sum(item.estimated_minutes for item in records),
        efficiency_percent=efficiency,
        remaining_minutes_estimate=remaining,
    )
