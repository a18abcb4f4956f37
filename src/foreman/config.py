from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex"]
EscalationPolicy = Literal["prompt", "skip", "abort"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"


@dataclass(slots=True)
class WorkerConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    timeout_seconds: float = 900.0
    model: str = ""
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    prompt_dir: str = ""


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3
    backoff_seconds: float = 0.0


@dataclass(slots=True)
class ClassifierConfig:
    long_description_chars: int = 600
    long_description_lines: int = 12


@dataclass(slots=True)
class StateConfig:
    directory: str = ".foreman/runs"


@dataclass(slots=True)
class EscalationConfig:
    default: EscalationPolicy = "prompt"


@dataclass(slots=True)
class RoleConfig:
    markers: list[str] = field(default_factory=list)
    strict_markers: list[str] | None = None
    produces_artifacts: bool = False
    always_light: bool = False


@dataclass(slots=True)
class ForemanConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    state: StateConfig = field(default_factory=StateConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    roles: dict[str, RoleConfig] = field(default_factory=dict)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        roles = {
            str(name): RoleConfig(**payload)
            for name, payload in data.get("roles", {}).items()
            if isinstance(payload, dict)
        }
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            worker=WorkerConfig(**data.get("worker", {})),
            retry=RetryConfig(**data.get("retry", {})),
            classifier=ClassifierConfig(**data.get("classifier", {})),
            state=StateConfig(**data.get("state", {})),
            escalation=EscalationConfig(**data.get("escalation", {})),
            roles=roles,
        )

    def to_dict(self) -> dict:
        roles: dict[str, dict] = {}
        for name, role in self.roles.items():
            payload: dict = {
                "markers": list(role.markers),
                "produces_artifacts": role.produces_artifacts,
                "always_light": role.always_light,
            }
            # TOML has no null; an absent key means "use the default loop markers".
            if role.strict_markers is not None:
                payload["strict_markers"] = list(role.strict_markers)
            roles[name] = payload
        return {
            "project": {
                "name": self.project.name,
            },
            "worker": {
                "primary": self.worker.primary,
                "fallback": self.worker.fallback,
                "timeout_seconds": self.worker.timeout_seconds,
                "model": self.worker.model,
                "claude_binary": self.worker.claude_binary,
                "codex_binary": self.worker.codex_binary,
                "prompt_dir": self.worker.prompt_dir,
            },
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "backoff_seconds": self.retry.backoff_seconds,
            },
            "classifier": {
                "long_description_chars": self.classifier.long_description_chars,
                "long_description_lines": self.classifier.long_description_lines,
            },
            "state": {
                "directory": self.state.directory,
            },
            "escalation": {
                "default": self.escalation.default,
            },
            "roles": roles,
        }

    def state_directory(self, repo_root: Path) -> Path:
        directory = Path(self.state.directory)
        if not directory.is_absolute():
            directory = repo_root / directory
        return directory.resolve()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "worker", "retry", "classifier", "state", "escalation"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for role_name, role in data["roles"].items():
        lines.append(f"[roles.{json.dumps(role_name)}]")
        for key, value in role.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
