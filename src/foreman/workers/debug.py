from __future__ import annotations

from foreman.workers.base import WorkerAgent


class TestDebugWorker(WorkerAgent):
    __test__ = False

    role = "test-debug"
    prompt_file = "test-debug.md"
    fallback_prompt = """
You are the test and debug worker.
Reproduce failures, name the root cause, and fix it with a regression test.
""".strip()
