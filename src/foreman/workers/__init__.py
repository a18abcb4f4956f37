from __future__ import annotations

from pathlib import Path

from foreman.backends.base import WorkerBackend
from foreman.config import WorkerConfig
from foreman.contracts import ContractRegistry
from foreman.workers.backend import BackendWorker
from foreman.workers.base import WorkerAgent, WorkerRequest
from foreman.workers.database import DatabaseWorker
from foreman.workers.frontend import FrontendWorker
from foreman.workers.integration import IntegrationWorker
from foreman.workers.debug import TestDebugWorker
from foreman.workers.uxui_frontend import UxUiFrontendWorker

WORKER_CLASSES: dict[str, type[WorkerAgent]] = {
    cls.role: cls
    for cls in (
        UxUiFrontendWorker,
        FrontendWorker,
        BackendWorker,
        DatabaseWorker,
        IntegrationWorker,
        TestDebugWorker,
    )
}


def build_workers(
    backend: WorkerBackend,
    registry: ContractRegistry,
    config: WorkerConfig | None = None,
    *,
    repo_root: Path | None = None,
) -> dict[str, WorkerAgent]:
    """One worker per registered role; roles without a class get a generic worker."""

    settings = config or WorkerConfig()
    prompt_dir: Path | None = None
    if settings.prompt_dir:
        prompt_dir = Path(settings.prompt_dir)
        if not prompt_dir.is_absolute() and repo_root is not None:
            prompt_dir = repo_root / prompt_dir
    workers: dict[str, WorkerAgent] = {}
    for role in registry.roles:
        worker_cls = WORKER_CLASSES.get(role, WorkerAgent)
        workers[role] = worker_cls(
            backend,
            role=role,
            model=settings.model or None,
            prompt_dir=prompt_dir,
        )
    return workers


__all__ = [
    "BackendWorker",
    "DatabaseWorker",
    "FrontendWorker",
    "IntegrationWorker",
    "TestDebugWorker",
    "UxUiFrontendWorker",
    "WORKER_CLASSES",
    "WorkerAgent",
    "WorkerRequest",
    "build_workers",
]
