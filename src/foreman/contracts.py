"""Role to required-evidence contract lookup."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

from foreman.config import RoleConfig
from foreman.errors import UnknownRoleError


class WorkflowMode(str, Enum):
    STRICT_LOOP = "strict-loop"
    LIGHT = "light"


PRE_WORK_MARKERS: tuple[str, ...] = (
    "## Pre-Work Report",
    "Context loaded:",
    "Patterns reviewed:",
)
STRICT_LOOP_MARKERS: tuple[str, ...] = (
    "RED:",
    "GREEN:",
    "REFACTOR:",
)


@dataclass(frozen=True, slots=True)
class RoleSpec:
    """Static description of a worker role.

    ``markers`` must literally appear in every accepted output. ``strict_markers``
    are appended when the phase runs in strict-loop mode. ``always_light`` marks
    purely declarative or evaluative roles whose phases never need the loop.
    """

    name: str
    markers: tuple[str, ...]
    strict_markers: tuple[str, ...] = STRICT_LOOP_MARKERS
    produces_artifacts: bool = False
    always_light: bool = False


@dataclass(frozen=True, slots=True)
class Contract:
    role: str
    workflow_mode: WorkflowMode
    markers: tuple[str, ...]
    requires_artifacts: bool = False


BUILTIN_ROLES: tuple[RoleSpec, ...] = (
    RoleSpec(
        name="uxui-frontend",
        markers=(*PRE_WORK_MARKERS, "Design tokens:", "Components reused:"),
        produces_artifacts=True,
    ),
    RoleSpec(
        name="frontend",
        markers=(*PRE_WORK_MARKERS, "Components reused:", "API contract:"),
        produces_artifacts=True,
    ),
    RoleSpec(
        name="backend",
        markers=(*PRE_WORK_MARKERS, "API contract:", "Error handling:"),
        produces_artifacts=True,
    ),
    RoleSpec(
        name="database",
        markers=(*PRE_WORK_MARKERS, "Schema reviewed:", "Migration plan:"),
        produces_artifacts=True,
        always_light=True,
    ),
    RoleSpec(
        name="integration",
        markers=(*PRE_WORK_MARKERS, "Contracts checked:", "Mismatches:"),
        always_light=True,
    ),
    RoleSpec(
        name="test-debug",
        markers=(*PRE_WORK_MARKERS, "Failing tests:", "Root cause:"),
        produces_artifacts=True,
    ),
)


def _dedupe(markers: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    ordered: list[str] = []
    for marker in markers:
        if marker and marker not in seen:
            seen.add(marker)
            ordered.append(marker)
    return tuple(ordered)


class ContractRegistry:
    """Read-only mapping from role name to its :class:`RoleSpec`."""

    def __init__(self, roles: Iterable[RoleSpec]) -> None:
        by_name: dict[str, RoleSpec] = {}
        for role in roles:
            by_name[role.name] = role
        self._roles: Mapping[str, RoleSpec] = MappingProxyType(by_name)

    @classmethod
    def default(cls) -> ContractRegistry:
        return cls(BUILTIN_ROLES)

    @classmethod
    def from_config(cls, overrides: Mapping[str, RoleConfig]) -> ContractRegistry:
        roles = {role.name: role for role in BUILTIN_ROLES}
        for name, override in overrides.items():
            strict = (
                STRICT_LOOP_MARKERS
                if override.strict_markers is None
                else tuple(override.strict_markers)
            )
            roles[name] = RoleSpec(
                name=name,
                markers=_dedupe(override.markers),
                strict_markers=_dedupe(strict),
                produces_artifacts=override.produces_artifacts,
                always_light=override.always_light,
            )
        return cls(roles.values())

    @property
    def roles(self) -> tuple[str, ...]:
        return tuple(self._roles)

    def __contains__(self, role: object) -> bool:
        return role in self._roles

    def spec_for(self, role: str) -> RoleSpec:
        try:
            return self._roles[role]
        except KeyError:
            raise UnknownRoleError(role) from None

    def contract_for(self, role: str, workflow_mode: WorkflowMode | str) -> Contract:
        spec = self.spec_for(role)
        mode = WorkflowMode(workflow_mode)
        markers = spec.markers
        if mode is WorkflowMode.STRICT_LOOP:
            markers = (*markers, *spec.strict_markers)
        return Contract(
            role=spec.name,
            workflow_mode=mode,
            markers=_dedupe(markers),
            requires_artifacts=spec.produces_artifacts,
        )
