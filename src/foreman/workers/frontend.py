from __future__ import annotations

from foreman.workers.base import WorkerAgent


class FrontendWorker(WorkerAgent):
    role = "frontend"
    prompt_file = "frontend.md"
    fallback_prompt = """
You are the frontend worker.
Wire screens to the agreed API contract and reuse existing components.
""".strip()
