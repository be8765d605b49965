from __future__ import annotations

"""Error taxonomy shared by every worker process supervised through :mod:`ipc`.

Clients built on :class:`ipc.process_manager.WorkerProcessManager` catch these
*manager-level* errors and translate them into their own domain errors before
they reach the orchestration layer.
"""

__all__ = [
    "WorkerError",
    "SpawnError",
    "WorkerTimeoutError",
    "WorkerCrashed",
    "ProtocolError",
    "RemoteError",
]


class WorkerError(Exception):
    """Base-class for all worker supervision failures."""


class SpawnError(WorkerError):
    """The worker executable is missing, not executable or died on start-up."""


class WorkerTimeoutError(WorkerError, TimeoutError):
    """A request did not receive its response within the caller's timeout."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"Call '{method}' timed out after {timeout:.3f}s")
        self.method = method
        self.timeout = timeout


class WorkerCrashed(WorkerError):
    """The worker process exited while requests were still pending."""

    def __init__(self, returncode: int | None, message: str | None = None):
        super().__init__(message or f"Worker process exited (returncode={returncode})")
        self.returncode = returncode


class ProtocolError(WorkerError):
    """A frame on the wire could not be decoded into a known message shape."""


class RemoteError(WorkerError):
    """The worker answered a request with an ``{error: {code, message}}`` payload."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
