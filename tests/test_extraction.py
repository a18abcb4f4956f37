from foreman.extraction import (
    extract_completed_items,
    extract_files,
    extract_result,
    extract_summary,
)

REPORT = """## Pre-Work Report
Context loaded: docs/api.md

## Summary
Added the login endpoint and its tests.

Files:
- src/auth/login.py
- `tests/test_login.py`

✅ 1.2 login endpoint
[x] T-3 tests
✅ Complete
"""


def test_extracts_files_from_heading_and_inline_paths() -> None:
    files = extract_files(REPORT)

    assert files[:2] == ["src/auth/login.py", "tests/test_login.py"]
    assert "docs/api.md" in files
    assert len(files) == len(set(files))


def test_extracts_completed_items() -> None:
    assert extract_completed_items(REPORT) == ["1.2", "T-3"]


def test_summary_prefers_summary_section() -> None:
    assert extract_summary(REPORT) == "Added the login endpoint and its tests."


def test_summary_falls_back_to_first_prose_line() -> None:
    text = "# Heading\nSteps:\nRefactored the cache layer.\n✅ done"

    assert extract_summary(text) == "Refactored the cache layer."


def test_summary_is_clipped() -> None:
    summary = extract_summary("word " * 200)

    assert len(summary) <= 280
    assert summary.endswith("...")


def test_extraction_never_raises_and_records_warnings() -> None:
    result = extract_result("p1", "backend", "")

    assert result.files_touched == []
    assert result.summary == ""
    assert result.extraction_warnings == ["no file references found", "no summary found"]
    assert result.to_evidence()["notes"] == ""
