from __future__ import annotations

"""Contracts of the collaborators around the dictation core.

The core never renders UI, persists settings beyond the JSON config or stores
transcripts durably.  It talks to those collaborators through the small
protocols below.  Reference implementations – :class:`InMemoryTranscriptStore`
and :class:`LoggingEventSink` – are used by the CLI and by tests;
:class:`~scribe_core.config_manager.ConfigManager` satisfies
:class:`SettingsStore`.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Protocol, Union

__all__ = [
    "TranscriptRecord",
    "TranscriptStore",
    "InMemoryTranscriptStore",
    "SettingsStore",
    "LostSegment",
    "StateChanged",
    "TranscriptUpdated",
    "RecordingEnded",
    "RecordingFailed",
    "RecordingEvent",
    "EventSink",
    "LoggingEventSink",
    "CollectingEventSink",
]


# ---------------------------------------------------------------------------
# Transcript storage
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TranscriptRecord:
    text: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    session_id: Optional[str] = None
    duration_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


class TranscriptStore(Protocol):
    def create(self, record: TranscriptRecord) -> TranscriptRecord:
        ...

    def get(self, record_id: str) -> Optional[TranscriptRecord]:
        ...

    def update(self, record_id: str, **changes: Any) -> TranscriptRecord:
        ...

    def delete(self, record_id: str) -> bool:
        ...


class InMemoryTranscriptStore:
    """Thread-safe dictionary-backed :class:`TranscriptStore`."""

    def __init__(self) -> None:
        self._records: Dict[str, TranscriptRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: TranscriptRecord) -> TranscriptRecord:
        with self._lock:
            if record.id in self._records:
                raise KeyError(f"Transcript {record.id} already exists")
            self._records[record.id] = record
        return record

    def get(self, record_id: str) -> Optional[TranscriptRecord]:
        with self._lock:
            return self._records.get(record_id)

    def update(self, record_id: str, **changes: Any) -> TranscriptRecord:
        with self._lock:
            current = self._records[record_id]
            updated = replace(current, **changes)
            self._records[record_id] = updated
            return updated

    def delete(self, record_id: str) -> bool:
        with self._lock:
            return self._records.pop(record_id, None) is not None

    def all(self) -> List[TranscriptRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda rec: rec.created_at)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class SettingsStore(Protocol):
    def get(self, key: str, default: Optional[Any] = None) -> Any:
        ...

    def set(self, key: str, value: Any, *, auto_save: bool = True) -> None:
        ...


# ---------------------------------------------------------------------------
# Events pushed to the presentation layer
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class LostSegment:
    segment_id: str
    trace_id: str
    lost_ms: float
    reason: str = ""


@dataclass(frozen=True, slots=True)
class StateChanged:
    session_id: Optional[str]
    state: str
    previous: str


@dataclass(frozen=True, slots=True)
class TranscriptUpdated:
    session_id: str
    segment_id: str
    text: str


@dataclass(frozen=True, slots=True)
class RecordingEnded:
    session_id: str
    transcript: str
    reason: str
    delivery: str = "none"
    lost_segments: tuple = ()
    transcript_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RecordingFailed:
    session_id: Optional[str]
    message: str


RecordingEvent = Union[StateChanged, TranscriptUpdated, RecordingEnded, RecordingFailed]


class EventSink(Protocol):
    def publish(self, event: RecordingEvent) -> None:
        ...


class LoggingEventSink:
    """Default sink: writes every event to the log."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._log = logger or logging.getLogger("voice_scribe.events")

    def publish(self, event: RecordingEvent) -> None:
        if isinstance(event, RecordingFailed):
            self._log.error("Recording failed: %s", event.message)
        elif isinstance(event, RecordingEnded):
            self._log.info(
                "Recording %s ended (%s): %d chars, delivery=%s, lost segments=%d",
                event.session_id, event.reason, len(event.transcript), event.delivery, len(event.lost_segments),
            )
        else:
            self._log.debug("%s", event)


class CollectingEventSink:
    """Sink keeping events in memory (UI previews and tests)."""

    def __init__(self) -> None:
        self.events: List[RecordingEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: RecordingEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, kind) -> List[RecordingEvent]:
        with self._lock:
            return [event for event in self.events if isinstance(event, kind)]
