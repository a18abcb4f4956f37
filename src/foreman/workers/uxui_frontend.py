from __future__ import annotations

from foreman.workers.base import WorkerAgent


class UxUiFrontendWorker(WorkerAgent):
    role = "uxui-frontend"
    prompt_file = "uxui-frontend.md"
    fallback_prompt = """
You are the UX/UI frontend worker.
Reuse the existing design tokens and components before creating new ones.
Report which tokens and components you used.
""".strip()
