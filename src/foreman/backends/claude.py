from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from foreman.backends.process import BackendEventHook, StreamJsonBackend


class ClaudeCodeBackend(StreamJsonBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
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
        if context:
            user_prompt = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(context, ensure_ascii=False, indent=2)}"
            )
        command = [
            self.binary,
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        if self.model:
            command.extend(["--model", self.model])
        return command
