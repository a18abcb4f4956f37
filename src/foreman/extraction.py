"""Best-effort scraping of structured facts from worker output.

Nothing here can fail a phase: a pattern that finds nothing yields an empty
field plus a warning, and only the validation gate decides acceptance.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from foreman.gate import ARTIFACT_PATTERN, COMPLETION_PATTERN

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 280
MAX_FILES = 200
MAX_ITEMS = 200

FILES_HEADING_PATTERN = re.compile(
    r"^\s*(?:#+\s*)?(?:files?(?:\s+(?:touched|changed|modified|created))?)\s*:\s*(.*)$",
    re.IGNORECASE,
)
BULLET_PATTERN = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+`?([^`\s]+)`?")
COMPLETED_ITEM_PATTERN = re.compile(
    r"(?:✅|\[x\])\s*(?:task\s+|step\s+)?"
    r"((?:[A-Za-z]{1,8}-)?\d+(?:\.\d+)*)(?=[\s:.)\]-]|$)",
    re.IGNORECASE,
)
SUMMARY_HEADING_PATTERN = re.compile(r"^\s*#+\s*summary\s*$", re.IGNORECASE)
HEADING_PATTERN = re.compile(r"^\s*#+\s+")


@dataclass(slots=True)
class WorkerResult:
    phase_id: str
    role: str
    raw_text: str
    files_touched: list[str] = field(default_factory=list)
    completed_items: list[str] = field(default_factory=list)
    summary: str = ""
    extraction_warnings: list[str] = field(default_factory=list)

    def to_evidence(self) -> dict[str, Any]:
        return {
            "files_touched": list(self.files_touched),
            "notes": self.summary,
            "completed_items": list(self.completed_items),
        }


def _unique(items: list[str], limit: int) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        ordered.append(item)
        if len(ordered) >= limit:
            break
    return ordered


def extract_files(text: str) -> list[str]:
    found: list[str] = []
    in_files_block = False
    for raw_line in text.splitlines():
        heading = FILES_HEADING_PATTERN.match(raw_line)
        if heading:
            in_files_block = True
            inline = heading.group(1).strip()
            if inline:
                found.extend(
                    part.strip(" `") for part in inline.split(",") if part.strip(" `")
                )
            continue
        if in_files_block:
            bullet = BULLET_PATTERN.match(raw_line)
            if bullet:
                found.append(bullet.group(1))
                continue
            if raw_line.strip():
                in_files_block = False
    found.extend(match.group(1) for match in ARTIFACT_PATTERN.finditer(text))
    return _unique([item.rstrip(".,;:") for item in found], MAX_FILES)


def extract_completed_items(text: str) -> list[str]:
    return _unique(
        [match.group(1) for match in COMPLETED_ITEM_PATTERN.finditer(text)],
        MAX_ITEMS,
    )


def _clip(text: str) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= SUMMARY_LIMIT:
        return collapsed
    return collapsed[: SUMMARY_LIMIT - 3].rstrip() + "..."


def extract_summary(text: str) -> str:
    lines = text.splitlines()
    for index, line in enumerate(lines):
        if not SUMMARY_HEADING_PATTERN.match(line):
            continue
        body: list[str] = []
        for follow in lines[index + 1 :]:
            if HEADING_PATTERN.match(follow):
                break
            if not follow.strip():
                if body:
                    break
                continue
            body.append(follow.strip())
        if body:
            return _clip(" ".join(body))
    for line in lines:
        candidate = line.strip()
        if not candidate or HEADING_PATTERN.match(candidate):
            continue
        if COMPLETION_PATTERN.fullmatch(candidate):
            continue
        if candidate.endswith(":") and len(candidate) < 40:
            continue
        return _clip(candidate)
    return ""


def extract_result(phase_id: str, role: str, text: str) -> WorkerResult:
    result = WorkerResult(phase_id=phase_id, role=role, raw_text=text)
    result.files_touched = extract_files(text)
    result.completed_items = extract_completed_items(text)
    result.summary = extract_summary(text)
    if not result.files_touched:
        result.extraction_warnings.append("no file references found")
    if not result.summary:
        result.extraction_warnings.append("no summary found")
    if result.extraction_warnings:
        logger.debug(
            "Extraction for phase %s incomplete: %s",
            phase_id,
            "; ".join(result.extraction_warnings),
        )
    return result
