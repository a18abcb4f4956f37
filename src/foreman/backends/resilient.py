from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from foreman.backends.base import BackendExecutionError, BackendUnavailableError, WorkerBackend
from foreman.backends.process import BackendEventHook

logger = logging.getLogger(__name__)


class ResilientBackend(WorkerBackend):
    """Primary/fallback failover for a single worker call.

    Each backend is tried once. Retrying the phase is the retry controller's
    job, so a failure here only decides which process answers this attempt.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: WorkerBackend,
        fallback_name: str | None = None,
        fallback_backend: WorkerBackend | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _candidates(self) -> list[tuple[str, WorkerBackend]]:
        candidates = [(self.primary_name, self.primary_backend)]
        if (
            self.fallback_backend is not None
            and self.fallback_name
            and self.fallback_name != self.primary_name
        ):
            candidates.append((self.fallback_name, self.fallback_backend))
        return candidates

    async def _collect(
        self,
        backend: WorkerBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        chunks: list[str] = []
        async for chunk in backend.execute(system_prompt, user_prompt, context):
            chunks.append(chunk)
        return chunks

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        errors: list[str] = []
        all_unavailable = True
        for backend_name, backend in self._candidates():
            try:
                chunks = await self._collect(backend, system_prompt, user_prompt, context)
            except BackendExecutionError as exc:
                errors.append(f"{backend_name}: {exc}")
                all_unavailable = all_unavailable and isinstance(exc, BackendUnavailableError)
                logger.warning("Worker backend %s failed: %s", backend_name, exc)
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": backend_name,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                continue
            if backend_name != self.primary_name:
                self._emit({"event": "backend_fallback_success", "backend": backend_name})
            for chunk in chunks:
                yield chunk
            return

        error_type = BackendUnavailableError if all_unavailable else BackendExecutionError
        raise error_type(
            f"All worker backends failed. {'; '.join(errors)}",
            backend=self.name,
            retriable=not all_unavailable,
        )
