"""Structural validation of worker output against a role contract.

The gate only checks that required disclosures are present. Markers are
matched as exact, case-sensitive substrings, so a worker that phrases the
same evidence differently fails the gate and is retried.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from foreman.contracts import Contract

NO_COMPLETION_MARKER = "<no completion marker>"
NO_ARTIFACT_REFERENCE = "<no artifact reference>"

COMPLETION_PATTERN = re.compile(
    r"(?:✅\s*(?:complete|completed|done)\b"
    r"|\bstatus:\s*(?:complete|completed|done)\b"
    r"|\[(?:complete|done)\])",
    re.IGNORECASE,
)
ARTIFACT_EXTENSIONS = (
    "py",
    "pyi",
    "ts",
    "tsx",
    "js",
    "jsx",
    "mjs",
    "vue",
    "svelte",
    "css",
    "scss",
    "html",
    "sql",
    "prisma",
    "go",
    "rs",
    "java",
    "kt",
    "rb",
    "php",
    "cs",
    "json",
    "yaml",
    "yml",
    "toml",
    "md",
    "sh",
)
ARTIFACT_PATTERN = re.compile(
    r"(?<![\w/.-])((?:[\w.-]+/)*[\w.-]+\.(?:" + "|".join(ARTIFACT_EXTENSIONS) + r"))\b"
)


@dataclass(frozen=True, slots=True)
class ValidationReport:
    passed: bool
    missing: tuple[str, ...] = field(default=())

    def feedback(self) -> str:
        return "missing: " + ", ".join(self.missing)


def has_completion_marker(output_text: str) -> bool:
    return COMPLETION_PATTERN.search(output_text) is not None


def has_artifact_reference(output_text: str) -> bool:
    return ARTIFACT_PATTERN.search(output_text) is not None


def validate(output_text: str, contract: Contract) -> ValidationReport:
    missing = [marker for marker in contract.markers if marker not in output_text]
    if not has_completion_marker(output_text):
        missing.append(NO_COMPLETION_MARKER)
    if contract.requires_artifacts and not has_artifact_reference(output_text):
        missing.append(NO_ARTIFACT_REFERENCE)
    return ValidationReport(passed=not missing, missing=tuple(missing))
