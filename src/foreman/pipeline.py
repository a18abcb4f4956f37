"""Pipeline definition loading.

A pipeline file is TOML or JSON with a top-level ``id`` and an ordered
``phases`` array. Each phase declares ``id``, ``role``, ``estimated_minutes``
and ``task``; ``depends_on``, ``parallel_group`` and ``context_refs`` are
optional. Without ``depends_on`` a phase waits for the phase declared before
it, or for every member of the preceding parallel group.
"""

from __future__ import annotations

import json
import tomllib
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from foreman.contracts import ContractRegistry
from foreman.errors import MalformedPipelineError


@dataclass(frozen=True, slots=True)
class Phase:
    id: str
    role: str
    estimated_minutes: int
    task_description: str
    depends_on: tuple[str, ...] = ()
    parallel_group: str | None = None
    context_refs: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "estimated_minutes": self.estimated_minutes,
            "task": self.task_description,
            "depends_on": list(self.depends_on),
            "context_refs": list(self.context_refs),
        }
        if self.parallel_group:
            payload["parallel_group"] = self.parallel_group
        return payload


@dataclass(frozen=True, slots=True)
class Pipeline:
    id: str
    phases: tuple[Phase, ...]

    def __iter__(self) -> Iterator[Phase]:
        return iter(self.phases)

    def __len__(self) -> int:
        return len(self.phases)

    def get(self, phase_id: str) -> Phase:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise KeyError(phase_id)

    def group_members(self, group: str) -> tuple[Phase, ...]:
        return tuple(phase for phase in self.phases if phase.parallel_group == group)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            # Dependencies are already resolved; reloading keeps them explicit.
            "phases": [phase.to_dict() for phase in self.phases],
        }


def _require_str(payload: dict[str, Any], key: str, where: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MalformedPipelineError(f"{where}: '{key}' must be a non-empty string.")
    return value.strip()


def _str_list(payload: dict[str, Any], key: str, where: str) -> tuple[str, ...] | None:
    if key not in payload:
        return None
    value = payload[key]
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise MalformedPipelineError(f"{where}: '{key}' must be a list of strings.")
    return tuple(item.strip() for item in value if item.strip())


def _parse_estimate(payload: dict[str, Any], where: str) -> int:
    value = payload.get("estimated_minutes")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedPipelineError(f"{where}: 'estimated_minutes' must be a number.")
    if value < 0:
        raise MalformedPipelineError(f"{where}: 'estimated_minutes' must not be negative.")
    if isinstance(value, float) and not value.is_integer():
        raise MalformedPipelineError(
            f"{where}: 'estimated_minutes' must be a whole number of minutes, got {value}."
        )
    return int(value)


def _check_groups(phases: list[Phase]) -> None:
    closed: set[str] = set()
    current: str | None = None
    for phase in phases:
        group = phase.parallel_group
        if group != current:
            if current is not None:
                closed.add(current)
            if group is not None and group in closed:
                raise MalformedPipelineError(
                    f"Parallel group '{group}' must be declared contiguously "
                    f"(phase '{phase.id}')."
                )
            current = group
    for phase in phases:
        if phase.parallel_group is None:
            continue
        members = {item.id for item in phases if item.parallel_group == phase.parallel_group}
        overlap = members.intersection(phase.depends_on)
        if overlap:
            raise MalformedPipelineError(
                f"Phase '{phase.id}' depends on members of its own parallel group: "
                f"{sorted(overlap)}"
            )
    first_deps: dict[str, set[str]] = {}
    for phase in phases:
        if phase.parallel_group is None:
            continue
        expected = first_deps.setdefault(phase.parallel_group, set(phase.depends_on))
        if set(phase.depends_on) != expected:
            raise MalformedPipelineError(
                f"Members of parallel group '{phase.parallel_group}' must share the same "
                f"dependencies; phase '{phase.id}' declares {sorted(phase.depends_on)}, "
                f"expected {sorted(expected)}."
            )


def _check_acyclic(phases: list[Phase]) -> None:
    graph = {phase.id: phase.depends_on for phase in phases}
    visiting: set[str] = set()
    done: set[str] = set()

    def _visit(node: str, trail: list[str]) -> None:
        if node in done:
            return
        if node in visiting:
            cycle = " -> ".join([*trail[trail.index(node):], node])
            raise MalformedPipelineError(f"Dependency cycle detected: {cycle}")
        visiting.add(node)
        for dep in graph[node]:
            _visit(dep, [*trail, node])
        visiting.discard(node)
        done.add(node)

    for phase_id in graph:
        _visit(phase_id, [])


def pipeline_from_dict(data: Any, registry: ContractRegistry) -> Pipeline:
    if not isinstance(data, dict):
        raise MalformedPipelineError("Pipeline definition must be a mapping.")
    pipeline_id = _require_str(data, "id", "pipeline")
    raw_phases = data.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        raise MalformedPipelineError("pipeline: 'phases' must be a non-empty list.")

    phases: list[Phase] = []
    seen: set[str] = set()
    previous_barrier: tuple[str, ...] = ()
    group_deps: dict[str, tuple[str, ...]] = {}
    for index, raw in enumerate(raw_phases):
        where = f"phases[{index}]"
        if not isinstance(raw, dict):
            raise MalformedPipelineError(f"{where}: phase must be a mapping.")
        phase_id = _require_str(raw, "id", where)
        where = f"phase '{phase_id}'"
        if phase_id in seen:
            raise MalformedPipelineError(f"Duplicate phase id: {phase_id}")
        role = _require_str(raw, "role", where)
        registry.spec_for(role)
        task = raw.get("task", raw.get("task_description", ""))
        if not isinstance(task, str):
            raise MalformedPipelineError(f"{where}: 'task' must be a string.")
        group = raw.get("parallel_group")
        if group is not None and (not isinstance(group, str) or not group.strip()):
            raise MalformedPipelineError(f"{where}: 'parallel_group' must be a string.")
        group = group.strip() if isinstance(group, str) else None

        depends_on = _str_list(raw, "depends_on", where)
        if depends_on is None:
            if group is not None and group in group_deps:
                depends_on = group_deps[group]
            else:
                depends_on = previous_barrier
        if group is not None:
            group_deps.setdefault(group, depends_on)

        phase = Phase(
            id=phase_id,
            role=role,
            estimated_minutes=_parse_estimate(raw, where),
            task_description=task,
            depends_on=depends_on,
            parallel_group=group,
            context_refs=_str_list(raw, "context_refs", where) or (),
        )
        phases.append(phase)
        seen.add(phase_id)

        if group is None:
            previous_barrier = (phase_id,)
        else:
            members = [item.id for item in phases if item.parallel_group == group]
            previous_barrier = tuple(members)

    for phase in phases:
        unknown = [dep for dep in phase.depends_on if dep not in seen]
        if unknown:
            raise MalformedPipelineError(
                f"Phase '{phase.id}' depends on unknown phase(s): {unknown}"
            )
        if phase.id in phase.depends_on:
            raise MalformedPipelineError(f"Phase '{phase.id}' depends on itself.")

    _check_groups(phases)
    _check_acyclic(phases)
    return Pipeline(id=pipeline_id, phases=tuple(phases))


def load_pipeline(path: Path, registry: ContractRegistry) -> Pipeline:
    if not path.exists():
        raise MalformedPipelineError(f"Pipeline file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = tomllib.loads(text)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise MalformedPipelineError(f"Cannot parse pipeline file {path}: {exc}") from exc
    return pipeline_from_dict(data, registry)
