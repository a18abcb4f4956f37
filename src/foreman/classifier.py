"""Deterministic complexity/risk scoring for pipeline phases."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from foreman.config import ClassifierConfig
from foreman.contracts import ContractRegistry, WorkflowMode
from foreman.pipeline import Phase

CLASSIFIER_VERSION = 1

_CRITICAL_TERMS: tuple[str, ...] = (
    "auth",
    "authentication",
    "authenticate",
    "login",
    "logout",
    "sign in",
    "sign-in",
    "signup",
    "jwt",
    "oauth",
    "sso",
    "password",
    "session token",
    "payment",
    "payments",
    "billing",
    "checkout",
    "invoice",
    "refund",
    "subscription",
    "authorization",
    "authorize",
    "permission",
    "permissions",
    "rbac",
    "role-based",
    "access control",
    "webhook",
    "webhooks",
    "third-party",
    "third party",
    "external api",
    "integration",
    "multi-step",
    "multistep",
    "wizard",
    "workflow",
    "state machine",
    "stateful",
    "transaction",
    "transactions",
)
_BUSINESS_TERMS: tuple[str, ...] = (
    "validation",
    "validate",
    "validator",
    "business rule",
    "business rules",
    "business logic",
    "constraint",
    "constraints",
    "calculation",
    "calculate",
    "eligibility",
    "policy",
    "quota",
)


def _term_pattern(terms: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = sorted((re.escape(term) for term in terms), key=len, reverse=True)
    return re.compile(r"(?<![\w-])(?:" + "|".join(alternatives) + r")(?![\w-])", re.IGNORECASE)


CRITICAL_PATTERN = _term_pattern(_CRITICAL_TERMS)
BUSINESS_PATTERN = _term_pattern(_BUSINESS_TERMS)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    complexity_score: int
    risk_level: RiskLevel
    workflow_mode: WorkflowMode
    signals: tuple[tuple[str, int], ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "complexityScore": self.complexity_score,
            "riskLevel": self.risk_level.value,
            "workflowMode": self.workflow_mode.value,
            "signals": dict(self.signals),
            "classifierVersion": CLASSIFIER_VERSION,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ClassificationResult:
        signals = payload.get("signals") or {}
        return cls(
            complexity_score=int(payload["complexityScore"]),
            risk_level=RiskLevel(payload["riskLevel"]),
            workflow_mode=WorkflowMode(payload["workflowMode"]),
            signals=tuple((str(key), int(value)) for key, value in signals.items()),
        )


def time_signal(estimated_minutes: int) -> int:
    if estimated_minutes < 30:
        return 0
    if estimated_minutes <= 90:
        return 1
    return 2


def lexical_signal(description: str) -> int:
    score = 0
    if CRITICAL_PATTERN.search(description):
        score += 2
    if BUSINESS_PATTERN.search(description):
        score += 1
    return score


def shape_signal(description: str, config: ClassifierConfig) -> int:
    stripped = description.strip()
    if len(stripped) > config.long_description_chars:
        return 1
    if len(stripped.splitlines()) > config.long_description_lines:
        return 1
    return 0


def risk_for_score(score: int) -> RiskLevel:
    if score <= 2:
        return RiskLevel.LOW
    if score <= 5:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


def classify(
    phase: Phase,
    registry: ContractRegistry,
    config: ClassifierConfig | None = None,
) -> ClassificationResult:
    """Score a phase and decide its workflow mode.

    Only ``role``, ``task_description`` and ``estimated_minutes`` are read, so
    the result is stable across retries and resumed runs. Medium and high risk
    both run in strict-loop mode; declarative or evaluative roles are always
    light.
    """

    settings = config or ClassifierConfig()
    spec = registry.spec_for(phase.role)
    description = phase.task_description or ""

    if not description.strip():
        return ClassificationResult(
            complexity_score=0,
            risk_level=RiskLevel.LOW,
            workflow_mode=WorkflowMode.LIGHT,
            signals=(("time", 0), ("lexical", 0), ("shape", 0)),
        )

    shape = shape_signal(description, settings)
    if spec.always_light:
        return ClassificationResult(
            complexity_score=shape,
            risk_level=risk_for_score(shape),
            workflow_mode=WorkflowMode.LIGHT,
            signals=(("time", 0), ("lexical", 0), ("shape", shape)),
        )

    timing = time_signal(phase.estimated_minutes)
    lexical = lexical_signal(description)
    score = timing + lexical + shape
    risk = risk_for_score(score)
    mode = WorkflowMode.LIGHT if risk is RiskLevel.LOW else WorkflowMode.STRICT_LOOP
    return ClassificationResult(
        complexity_score=score,
        risk_level=risk,
        workflow_mode=mode,
        signals=(("time", timing), ("lexical", lexical), ("shape", shape)),
    )
