from __future__ import annotations

"""Domain errors raised by :mod:`scribe_core` components.

Manager-level failures from :mod:`ipc` (timeouts, crashes, spawn errors) are
translated into these types by the clients before they reach the recording
and orchestration layer.
"""

__all__ = [
    "ScribeError",
    "ModelMissingError",
    "LocalTranscriptionFailedError",
    "SegmentDroppedError",
    "CapabilityUnavailable",
    "WavFormatError",
    "SequenceGapError",
]


class ScribeError(Exception):
    """Base-class for domain errors of the dictation core."""


class ModelMissingError(ScribeError):
    """The configured speech model path does not exist or cannot be loaded."""

    def __init__(self, path: str | None, message: str | None = None):
        super().__init__(message or f"Speech model not found: {path}")
        self.path = path


class LocalTranscriptionFailedError(ScribeError):
    """Transcribing a segment failed; the segment's audio is lost.

    ``retryable`` is *True* when the failure came from the worker process
    (crash, timeout) rather than from the audio itself, so resubmitting the
    whole segment can succeed.
    """

    def __init__(
        self,
        trace_id: str,
        segment_id: str,
        lost_ms: float,
        *,
        retryable: bool = True,
        reason: str = "",
    ):
        super().__init__(
            f"Transcription of segment {segment_id} failed"
            + (f": {reason}" if reason else "")
            + f" (trace={trace_id}, lost={lost_ms:.0f} ms)"
        )
        self.trace_id = trace_id
        self.segment_id = segment_id
        self.lost_ms = lost_ms
        self.retryable = retryable
        self.reason = reason


class SegmentDroppedError(LocalTranscriptionFailedError):
    """Part of the segment was evicted by backpressure before reaching the worker."""

    def __init__(self, trace_id: str, segment_id: str, lost_ms: float):
        super().__init__(trace_id, segment_id, lost_ms, retryable=False, reason="dropped by backpressure")


class CapabilityUnavailable(ScribeError):
    """The native helper is not running on this system or refused the call."""

    def __init__(self, capability: str, reason: str = "native helper unavailable"):
        super().__init__(f"{capability}: {reason}")
        self.capability = capability
        self.reason = reason


class WavFormatError(ScribeError, ValueError):
    """The input is not a PCM 16-bit RIFF/WAVE file."""


class SequenceGapError(ScribeError, ValueError):
    """A frame appended to a segment does not follow the previous one."""
