from __future__ import annotations

"""Inter-process communication helpers for Voice Scribe.

This package provides the wire messages, the stdio process transport and the
supervising :class:`WorkerProcessManager` shared by the transcription worker
and the native capability helper.  Keeping the IPC layer in a dedicated
top-level package lets the worker processes import it without pulling in the
application package.
"""

# Export public symbols so ``from ipc import *`` exposes them.
from .errors import (  # noqa: F401
    ProtocolError,
    RemoteError,
    SpawnError,
    WorkerCrashed,
    WorkerError,
    WorkerTimeoutError,
)
from .messages import (  # noqa: F401
    ErrorPayload,
    Message,
    WorkerEvent,
    WorkerRequest,
    WorkerResponse,
    decode_message,
    decode_samples,
    encode_message,
    encode_samples,
)
from .process_manager import RestartPolicy, WorkerHandle, WorkerProcessManager, WorkerState  # noqa: F401
from .queue_wrapper import DropOldestQueue  # noqa: F401
from .transport import ProcessTransport, default_env  # noqa: F401
