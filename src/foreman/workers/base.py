from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from foreman.backends.base import BackendTimeoutError, WorkerBackend
from foreman.contracts import WorkflowMode

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRequest:
    phase_id: str
    role: str
    task_description: str
    context_refs: list[str] = field(default_factory=list)
    feedback_history: list[str] = field(default_factory=list)
    required_markers: list[str] = field(default_factory=list)
    workflow_mode: WorkflowMode = WorkflowMode.LIGHT
    requires_artifacts: bool = False


class WorkerAgent:
    role: str = "worker"
    prompt_file: str | None = None
    fallback_prompt: str = (
        "You are a software engineering worker. Do exactly the task you are given."
    )

    def __init__(
        self,
        backend: WorkerBackend,
        *,
        role: str | None = None,
        model: str | None = None,
        prompt_dir: Path | None = None,
    ) -> None:
        self.backend = backend
        if role:
            self.role = role
        self.model = model
        self.prompt_dir = prompt_dir
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if self.prompt_dir is None:
            return self.fallback_prompt.strip()
        prompt_path = self.prompt_dir / (self.prompt_file or f"{self.role}.md")
        try:
            return prompt_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return self.fallback_prompt.strip()

    def build_prompt(self, request: WorkerRequest) -> str:
        sections = [
            f"# Phase {request.phase_id} ({request.role})",
            request.task_description.strip(),
        ]
        if request.context_refs:
            sections.append(
                "Read these documents before starting:\n"
                + "\n".join(f"- {ref}" for ref in request.context_refs)
            )
        if request.workflow_mode is WorkflowMode.STRICT_LOOP:
            sections.append(
                "This phase runs in strict-loop mode: write a failing test first (RED:), "
                "make it pass (GREEN:), then clean up (REFACTOR:). Report each step."
            )
        if request.required_markers:
            sections.append(
                "Your report must contain each of these lines verbatim:\n"
                + "\n".join(f"- {marker}" for marker in request.required_markers)
            )
        if request.requires_artifacts:
            sections.append("List every file you created or changed under a `Files:` heading.")
        sections.append("Finish with `✅ Complete` once the work is done.")
        if request.feedback_history:
            sections.append(
                "Previous attempts were rejected:\n"
                + "\n".join(
                    f"- attempt {index}: {note}"
                    for index, note in enumerate(request.feedback_history, start=1)
                )
            )
        return "\n\n".join(section for section in sections if section)

    async def invoke(self, request: WorkerRequest, timeout_seconds: float | None = None) -> str:
        """Run one worker call and return its raw text.

        Raises :class:`BackendTimeoutError` when ``timeout_seconds`` elapses;
        other backend failures propagate unchanged.
        """

        context: dict[str, Any] = {
            "phase_id": request.phase_id,
            "role": request.role,
            "workflow_mode": request.workflow_mode.value,
        }
        if self.model:
            context["model"] = self.model
        prompt = self.build_prompt(request)

        async def _consume() -> str:
            chunks: list[str] = []
            async for chunk in self.backend.execute(self.system_prompt, prompt, context):
                chunks.append(chunk)
            return "".join(chunks).strip()

        if not timeout_seconds:
            return await _consume()
        try:
            return await asyncio.wait_for(_consume(), timeout=timeout_seconds)
        except TimeoutError as exc:
            logger.warning(
                "Worker for phase %s timed out after %.1fs", request.phase_id, timeout_seconds
            )
            raise BackendTimeoutError(
                f"Worker timed out after {timeout_seconds:.1f}s",
                backend=getattr(self.backend, "name", None),
                retriable=True,
            ) from exc
