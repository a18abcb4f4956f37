from foreman.contracts import Contract, ContractRegistry, WorkflowMode
from foreman.gate import (
    NO_ARTIFACT_REFERENCE,
    NO_COMPLETION_MARKER,
    has_artifact_reference,
    has_completion_marker,
    validate,
)


def _contract(*markers: str, artifacts: bool = False) -> Contract:
    return Contract(
        role="custom",
        workflow_mode=WorkflowMode.LIGHT,
        markers=markers,
        requires_artifacts=artifacts,
    )


def test_all_markers_present_passes() -> None:
    report = validate("A then B\n✅ Complete", _contract("A", "B"))

    assert report.passed is True
    assert report.missing == ()


def test_missing_markers_are_reported_in_contract_order() -> None:
    report = validate("only B here\nStatus: done", _contract("A", "B", "C"))

    assert report.passed is False
    assert report.missing == ("A", "C")
    assert report.feedback() == "missing: A, C"


def test_marker_matching_is_case_sensitive() -> None:
    report = validate("red: wrote test\n✅ done", _contract("RED:"))

    assert report.missing == ("RED:",)


def test_synthetic_markers() -> None:
    contract = _contract("A", artifacts=True)

    report = validate("A", contract)

    assert report.missing == (NO_COMPLETION_MARKER, NO_ARTIFACT_REFERENCE)
    assert validate("A\nsrc/app.py\n[done]", contract).passed is True


def test_heuristics() -> None:
    assert has_completion_marker("✅ Completed the work")
    assert has_completion_marker("status: COMPLETE")
    assert not has_completion_marker("not complete yet")
    assert has_artifact_reference("edited api/routes/users.ts")
    assert not has_artifact_reference("no files here")


def test_validate_is_pure() -> None:
    contract = ContractRegistry.default().contract_for("backend", WorkflowMode.STRICT_LOOP)
    text = "## Pre-Work Report\nContext loaded: yes\nRED: x\n✅ done"

    assert validate(text, contract) == validate(text, contract)
