from __future__ import annotations

from foreman.workers.base import WorkerAgent


class BackendWorker(WorkerAgent):
    role = "backend"
    prompt_file = "backend.md"
    fallback_prompt = """
You are the backend worker.
Implement endpoints against the documented API contract.
State how each error path is handled.
""".strip()
