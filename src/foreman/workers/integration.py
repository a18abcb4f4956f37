from __future__ import annotations

from foreman.workers.base import WorkerAgent


class IntegrationWorker(WorkerAgent):
    role = "integration"
    prompt_file = "integration.md"
    fallback_prompt = """
You are the integration reviewer.
Compare frontend calls with backend contracts and list every mismatch.
Do not change code.
""".strip()
