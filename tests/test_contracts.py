import pytest

from foreman.config import RoleConfig
from foreman.contracts import (
    PRE_WORK_MARKERS,
    STRICT_LOOP_MARKERS,
    ContractRegistry,
    RoleSpec,
    WorkflowMode,
)
from foreman.errors import UnknownRoleError


def test_default_registry_knows_builtin_roles() -> None:
    registry = ContractRegistry.default()

    assert set(registry.roles) == {
        "uxui-frontend",
        "frontend",
        "backend",
        "database",
        "integration",
        "test-debug",
    }
    assert "backend" in registry
    assert "poet" not in registry


def test_strict_loop_appends_loop_markers_in_order() -> None:
    registry = ContractRegistry.default()

    light = registry.contract_for("backend", WorkflowMode.LIGHT)
    strict = registry.contract_for("backend", "strict-loop")

    assert light.markers[: len(PRE_WORK_MARKERS)] == PRE_WORK_MARKERS
    assert strict.markers == (*light.markers, *STRICT_LOOP_MARKERS)
    assert strict.workflow_mode is WorkflowMode.STRICT_LOOP
    assert strict.requires_artifacts is True


def test_integration_role_does_not_require_artifacts() -> None:
    contract = ContractRegistry.default().contract_for("integration", WorkflowMode.LIGHT)

    assert contract.requires_artifacts is False


def test_unknown_role_raises() -> None:
    registry = ContractRegistry.default()

    with pytest.raises(UnknownRoleError, match="poet"):
        registry.contract_for("poet", WorkflowMode.LIGHT)


def test_config_overrides_add_roles_and_dedupe_markers() -> None:
    registry = ContractRegistry.from_config(
        {
            "docs": RoleConfig(markers=["A", "B", "A"], strict_markers=["B", "C"]),
            "backend": RoleConfig(markers=["Only:"], produces_artifacts=False),
        }
    )

    docs = registry.contract_for("docs", WorkflowMode.STRICT_LOOP)
    backend = registry.contract_for("backend", WorkflowMode.LIGHT)

    assert docs.markers == ("A", "B", "C")
    assert backend.markers == ("Only:",)
    assert backend.requires_artifacts is False
    assert "frontend" in registry


def test_registry_is_read_only() -> None:
    registry = ContractRegistry([RoleSpec(name="solo", markers=("X",))])

    with pytest.raises(TypeError):
        registry._roles["other"] = RoleSpec(name="other", markers=())  # type: ignore[index]
