from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from foreman.backends.process import BackendEventHook, StreamJsonBackend


class CodexBackend(StreamJsonBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        model: str = "",
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, working_directory, event_hook)
        self.model = model

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        requested_model = context.get("model") or self.model
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["-m", requested_model.strip()])
        command.append(self._render_prompt(user_prompt, context))
        return command

    @staticmethod
    def _render_prompt(user_prompt: str, context: dict[str, Any]) -> str:
        payload = {key: value for key, value in context.items() if key != "model"}
        if not payload:
            return user_prompt
        return "\n\n".join(
            [user_prompt, "Context JSON:", json.dumps(payload, ensure_ascii=False, indent=2)]
        )

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict) and item.get("type") in {"agent_message", "assistant_message"}:
            text = item.get("text")
            if isinstance(text, str):
                return text
        return StreamJsonBackend._extract_content(event)
