from __future__ import annotations

"""Typed messages exchanged with worker processes and their wire codec.

Every message travels as one line of JSON terminated by ``\\n``:

* request  – ``{"id": str, "method": str, "params": object}``
* response – ``{"id": str, "result": any}`` or
  ``{"id": str, "error": {"code": str, "message": str}}``
* event    – ``{"method": str, "params": object}`` (no id)

Using `dataclass` keeps the in-process representation explicit while the
codec helpers below own the single JSON mapping used by both sides.
"""

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import numpy as np

from .errors import ProtocolError

__all__ = [
    "WorkerRequest",
    "WorkerResponse",
    "WorkerEvent",
    "ErrorPayload",
    "Message",
    "encode_message",
    "decode_message",
    "encode_samples",
    "decode_samples",
]


@dataclass(slots=True)
class ErrorPayload:
    """Structured error carried by a failed :class:`WorkerResponse`."""

    code: str
    message: str


@dataclass(slots=True)
class WorkerRequest:
    """Request for the worker to run *method* with *params*."""

    id: str
    method: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkerResponse:
    """Reply to a :class:`WorkerRequest` – carries either *result* or *error*."""

    id: str
    result: Any = None
    error: Optional[ErrorPayload] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class WorkerEvent:
    """Unsolicited notification pushed by the worker (no correlation id)."""

    method: str
    params: Dict[str, Any] = field(default_factory=dict)


Message = Union[WorkerRequest, WorkerResponse, WorkerEvent]


# ---------------------------------------------------------------------------
# Wire codec
# ---------------------------------------------------------------------------

def encode_message(message: Message) -> bytes:
    """Serialise *message* into a single newline-terminated JSON frame."""

    if isinstance(message, WorkerRequest):
        body: Dict[str, Any] = {"id": message.id, "method": message.method, "params": message.params}
    elif isinstance(message, WorkerResponse):
        body = {"id": message.id}
        if message.error is not None:
            body["error"] = {"code": message.error.code, "message": message.error.message}
        else:
            body["result"] = message.result
    elif isinstance(message, WorkerEvent):
        body = {"method": message.method, "params": message.params}
    else:
        raise TypeError(f"Cannot encode {type(message).__name__}")
    return (json.dumps(body, separators=(",", ":")) + "\n").encode("utf-8")


def decode_message(line: bytes | str) -> Message:
    """Parse one frame into a typed message or raise :class:`ProtocolError`.

    Classification follows the shape of the object: an ``id`` together with
    ``result``/``error`` is a response, an ``id`` with a ``method`` is a
    request and a ``method`` without ``id`` is an event.
    """

    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"Frame is not valid UTF-8: {exc}") from exc

    try:
        body = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Frame is not valid JSON: {exc.msg}") from exc

    if not isinstance(body, dict):
        raise ProtocolError(f"Frame must be a JSON object, got {type(body).__name__}")

    msg_id = body.get("id")
    method = body.get("method")
    params = body.get("params") or {}
    if not isinstance(params, dict):
        raise ProtocolError("'params' must be an object")

    if msg_id is not None:
        if not isinstance(msg_id, str):
            raise ProtocolError("'id' must be a string")
        if "error" in body and body["error"] is not None:
            err = body["error"]
            if not isinstance(err, dict):
                raise ProtocolError("'error' must be an object")
            return WorkerResponse(
                id=msg_id,
                error=ErrorPayload(code=str(err.get("code", "unknown")), message=str(err.get("message", ""))),
            )
        if "result" in body:
            return WorkerResponse(id=msg_id, result=body["result"])
        if isinstance(method, str):
            return WorkerRequest(id=msg_id, method=method, params=params)
        raise ProtocolError("Frame with 'id' carries neither 'result', 'error' nor 'method'")

    if isinstance(method, str):
        return WorkerEvent(method=method, params=params)
    raise ProtocolError("Frame carries neither 'id' nor 'method'")


# ---------------------------------------------------------------------------
# Audio payload helpers
# ---------------------------------------------------------------------------

def encode_samples(samples: np.ndarray) -> str:
    """Return *samples* as base64 of little-endian float32 (JSON friendly)."""
    return base64.b64encode(np.asarray(samples, dtype="<f4").tobytes()).decode("ascii")


def decode_samples(payload: str) -> np.ndarray:
    try:
        raw = base64.b64decode(payload.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as exc:
        raise ProtocolError(f"Invalid sample payload: {exc}") from exc
    if len(raw) % 4:
        raise ProtocolError("Sample payload length is not a multiple of 4 bytes")
    return np.frombuffer(raw, dtype="<f4").astype(np.float32)
