from foreman.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    BackendUnavailableError,
    WorkerBackend,
)
from foreman.backends.claude import ClaudeCodeBackend
from foreman.backends.codex import CodexBackend
from foreman.backends.process import StreamJsonBackend
from foreman.backends.resilient import ResilientBackend

__all__ = [
    "BackendExecutionError",
    "BackendTimeoutError",
    "BackendUnavailableError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "StreamJsonBackend",
    "WorkerBackend",
]
