from __future__ import annotations

from foreman.workers.base import WorkerAgent


class DatabaseWorker(WorkerAgent):
    role = "database"
    prompt_file = "database.md"
    fallback_prompt = """
You are the database worker.
Review the current schema, then write migrations that can be applied and rolled back.
""".strip()
