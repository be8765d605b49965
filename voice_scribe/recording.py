from __future__ import annotations

"""Recording session state machine.

``Idle → Starting → Recording → Stopping → Idle``

A session owns one capture collaborator feeding the shared frame queue.  The
*pump* thread is the sole consumer of that queue and the sole owner of the
segmenter: it streams every open segment to the transcription client in chunks
of ``stream_chunk_frames`` frames and, once the capture is stopped and the
queue drained, flushes the segmenter and finishes the session:

1. wait for every segment's final transcription (one retry for retryable
   failures),
2. restore system audio,
3. paste or copy the transcript and persist it,
4. publish :class:`~scribe_core.interfaces.RecordingEnded` with the lost
   segments and return to *Idle*.

Triggers arriving while *Stopping* are remembered as a pending restart that
runs as soon as the machine is idle again.
"""

import enum
import logging
import threading
import time
import uuid
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from scribe_core.audio_listener import FrameQueue, make_frame_queue
from scribe_core.audio_types import Segment
from scribe_core.clipboard_manager import deliver_text
from scribe_core.errors import LocalTranscriptionFailedError, ModelMissingError
from scribe_core.interfaces import (
    EventSink,
    LoggingEventSink,
    LostSegment,
    RecordingEnded,
    RecordingFailed,
    StateChanged,
    TranscriptRecord,
    TranscriptStore,
    TranscriptUpdated,
)
from scribe_core.vad_segmenter import SegmentEnded, SegmentEvent, SegmentStarted, VoiceActivitySegmenter

__all__ = [
    "RecordingMode",
    "RecordingState",
    "RecordingStateMachine",
]


class RecordingState(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"


class RecordingMode(str, enum.Enum):
    HANDS_FREE = "hands_free"
    PUSH_TO_TALK = "push_to_talk"


class CaptureSource(Protocol):
    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


CaptureFactory = Callable[[FrameQueue], CaptureSource]


@dataclass(slots=True)
class _TrackedSegment:
    segment: Segment
    shipped: int = 0
    final: Optional[Future] = None


@dataclass(slots=True)
class _Session:
    mode: RecordingMode
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.monotonic)
    stop_reason: str = "user"
    cancelled: bool = False
    muted: bool = False
    failure: Optional[str] = None
    capture: Optional[CaptureSource] = None
    pump: Optional[threading.Thread] = None
    timer: Optional[threading.Timer] = None
    segments: Dict[str, _TrackedSegment] = field(default_factory=dict)


class RecordingStateMachine:  # pylint: disable=too-many-instance-attributes
    """Drive one recording session at a time.

    Parameters
    ----------
    client
        :class:`~scribe_core.transcription_client.TranscriptionWorkerClient`
        (anything exposing ``submit``, ``retry_segment`` and ``cancel_segment``).
    capture_factory
        ``factory(frame_queue)`` returning an object with ``start()`` / ``stop()``;
        ``start()`` raises when the device cannot be opened.
    segmenter
        :class:`~scribe_core.vad_segmenter.VoiceActivitySegmenter` reused by
        every session.
    helper
        Optional :class:`~scribe_core.native_helper.NativeHelperClient` used
        for muting and pasting.
    """

    def __init__(
        self,
        client,
        *,
        capture_factory: CaptureFactory,
        segmenter: VoiceActivitySegmenter,
        frame_queue: Optional[FrameQueue] = None,
        helper=None,
        event_sink: Optional[EventSink] = None,
        transcript_store: Optional[TranscriptStore] = None,
        stream_chunk_frames: int = 32,
        max_recording_s: float = 600.0,
        mute_while_recording: bool = True,
        paste_result: bool = True,
        clipboard_fallback_dir: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if stream_chunk_frames < 1:
            raise ValueError("stream_chunk_frames must be >= 1")
        self._log = logger or logging.getLogger(__name__)
        self._client = client
        self._capture_factory = capture_factory
        self._segmenter = segmenter
        self._frames = frame_queue if frame_queue is not None else make_frame_queue(logger=self._log)
        self._helper = helper
        self._events = event_sink or LoggingEventSink()
        self._store = transcript_store
        self.stream_chunk_frames = stream_chunk_frames
        self.max_recording_s = max_recording_s
        self.mute_while_recording = mute_while_recording
        self.paste_result = paste_result
        self.clipboard_fallback_dir = clipboard_fallback_dir

        self._lock = threading.RLock()
        self._state = RecordingState.IDLE
        self._session: Optional[_Session] = None
        self._pending_restart: Optional[RecordingMode] = None
        self._idle = threading.Event()
        self._idle.set()

    @classmethod
    def from_config(cls, config, client, **kwargs) -> "RecordingStateMachine":
        kwargs.setdefault("stream_chunk_frames", int(config.get("stream_chunk_frames", 32)))
        kwargs.setdefault("max_recording_s", float(config.get("max_recording_s", 600)))
        kwargs.setdefault("mute_while_recording", bool(config.get("mute_while_recording", True)))
        kwargs.setdefault("paste_result", bool(config.get("paste_result", True)))
        kwargs.setdefault("clipboard_fallback_dir", config.get("clipboard_fallback_dir"))
        if "frame_queue" not in kwargs:
            kwargs["frame_queue"] = make_frame_queue(int(config.get("frame_queue_size", 256)))
        return cls(client, **kwargs)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        session = self._session
        return session.id if session else None

    @property
    def mode(self) -> Optional[RecordingMode]:
        session = self._session
        return session.mode if session else None

    @property
    def pending_restart(self) -> Optional[RecordingMode]:
        return self._pending_restart

    @property
    def frame_queue(self) -> FrameQueue:
        return self._frames

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the machine is *Idle*; returns *False* on timeout."""
        return self._idle.wait(timeout)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------
    def start(self, mode: RecordingMode | str = RecordingMode.HANDS_FREE) -> bool:  # noqa: D401 – imperative API
        """Begin a session.  Returns *True* once capture is running."""

        mode = RecordingMode(mode)
        with self._lock:
            if self._state in (RecordingState.STARTING, RecordingState.RECORDING):
                self._log.debug("Recording already active – start() ignored")
                return False
            if self._state is RecordingState.STOPPING:
                self._pending_restart = mode
                self._log.info("Recording is stopping – %s restart queued", mode.value)
                return False
            session = _Session(mode=mode)
            self._session = session
            self._state = RecordingState.STARTING
            self._idle.clear()
        self._announce(session, RecordingState.STARTING, RecordingState.IDLE)

        if self.mute_while_recording and self._helper is not None:
            session.muted = self._helper.mute_system_audio()
        self._frames.reopen()
        self._segmenter.reset()

        try:
            capture = self._capture_factory(self._frames)
            capture.start()
        except Exception as exc:  # pylint: disable=broad-except
            # Device errors differ per backend (PortAudio, WAV, test doubles).
            self._log.error("Could not open audio input: %s", exc)
            self._restore_audio(session)
            self._finalize(session, RecordingFailed(session.id, f"Could not open audio input: {exc}"))
            return False

        session.capture = capture
        session.pump = threading.Thread(target=self._pump, args=(session,), name="recording-pump", daemon=True)
        session.pump.start()

        with self._lock:
            promoted = self._state is RecordingState.STARTING and self._session is session
            if promoted:
                self._state = RecordingState.RECORDING
        if not promoted:
            # stop() or cancel() arrived while the device was opening.
            self._begin_stop(session)
            return False

        self._announce(session, RecordingState.RECORDING, RecordingState.STARTING)
        self._arm_timer(session)
        self._log.info("Recording %s started (%s)", session.id, mode.value)
        return True

    def stop(self, reason: str = "user") -> bool:  # noqa: D401 – imperative API
        """Stop capturing; transcription finishes in the background."""

        with self._lock:
            session = self._session
            previous = self._state
            if session is None or previous not in (RecordingState.STARTING, RecordingState.RECORDING):
                return False
            self._state = RecordingState.STOPPING
            session.stop_reason = reason
        self._announce(session, RecordingState.STOPPING, previous)
        self._cancel_timer(session)
        self._log.info("Recording %s stopping (%s)", session.id, reason)
        if previous is RecordingState.RECORDING:
            self._begin_stop(session)
        return True

    def cancel(self) -> bool:  # noqa: D401 – imperative API
        """Abort the session, discarding the open segment and its transcription."""

        with self._lock:
            session = self._session
            if session is None:
                return False
            previous = self._state
            session.cancelled = True
            self._pending_restart = None
            if previous in (RecordingState.STARTING, RecordingState.RECORDING):
                self._state = RecordingState.STOPPING
                session.stop_reason = "cancelled"
            segment_ids = list(session.segments)

        if previous in (RecordingState.STARTING, RecordingState.RECORDING):
            self._announce(session, RecordingState.STOPPING, previous)
            self._cancel_timer(session)
            if previous is RecordingState.RECORDING:
                self._begin_stop(session)
        for segment_id in segment_ids:
            self._client.cancel_segment(segment_id)
        self._log.info("Recording %s cancelled", session.id)
        return True

    def toggle(self) -> bool:
        """Hands-free shortcut: start, stop, or take over a push-to-talk session."""

        with self._lock:
            session = self._session
            state = self._state
            if session is not None and state in (RecordingState.STARTING, RecordingState.RECORDING):
                if session.mode is RecordingMode.PUSH_TO_TALK:
                    session.mode = RecordingMode.HANDS_FREE
                    self._log.info("Recording %s switched to hands-free", session.id)
                    return True
        if state in (RecordingState.STARTING, RecordingState.RECORDING):
            return self.stop("toggle")
        return self.start(RecordingMode.HANDS_FREE)

    def push_to_talk(self, pressed: bool) -> bool:
        """Push-to-talk edge.  Ignored while a hands-free session runs."""

        if pressed:
            if self._state in (RecordingState.STARTING, RecordingState.RECORDING):
                return False
            return self.start(RecordingMode.PUSH_TO_TALK)

        with self._lock:
            if self._pending_restart is RecordingMode.PUSH_TO_TALK:
                self._pending_restart = None
            session = self._session
            ptt_active = (
                session is not None
                and session.mode is RecordingMode.PUSH_TO_TALK
                and self._state in (RecordingState.STARTING, RecordingState.RECORDING)
            )
        if ptt_active:
            return self.stop("push_to_talk_released")
        return False

    def close(self, timeout: float = 10.0) -> bool:
        """Stop any session and wait for it to finish."""
        with self._lock:
            self._pending_restart = None
        self.stop("shutdown")
        return self.wait_until_idle(timeout)

    # ------------------------------------------------------------------
    # Pump thread
    # ------------------------------------------------------------------
    def _pump(self, session: _Session) -> None:
        try:
            while True:
                try:
                    frame = self._frames.get(timeout=0.1)
                except TimeoutError:
                    if session.cancelled:
                        break
                    continue
                except EOFError:
                    break
                if session.cancelled:
                    break
                self._handle_events(session, self._segmenter.process(frame))
                self._ship_open_segment(session)

            if session.cancelled:
                discarded = self._frames.drain()
                if discarded:
                    self._log.debug("Discarded %d queued frame(s) of cancelled recording", len(discarded))
                self._segmenter.reset()
            else:
                self._handle_events(session, self._segmenter.flush())
        except Exception as exc:  # pylint: disable=broad-except
            self._log.exception("Recording pump failed")
            session.failure = str(exc)
            self._segmenter.reset()
        self._finish(session)

    def _handle_events(self, session: _Session, events: List[SegmentEvent]) -> None:
        for event in events:
            if isinstance(event, SegmentStarted):
                with self._lock:
                    session.segments[event.segment.id] = _TrackedSegment(event.segment)
            elif isinstance(event, SegmentEnded):
                tracked = session.segments.get(event.segment.id)
                if tracked is not None:
                    self._ship(tracked, final=True)

    def _ship_open_segment(self, session: _Session) -> None:
        segment = self._segmenter.open_segment
        if segment is None:
            return
        tracked = session.segments.get(segment.id)
        if tracked is not None and len(segment) - tracked.shipped >= self.stream_chunk_frames:
            self._ship(tracked, final=False)

    def _ship(self, tracked: _TrackedSegment, *, final: bool) -> None:
        segment = tracked.segment
        frames = segment.frames[tracked.shipped:]
        tracked.shipped += len(frames)
        try:
            future = self._client.submit(segment.id, frames, final, sample_rate=segment.sample_rate)
        except RuntimeError as exc:
            # Client is shutting down.
            future = Future()
            future.set_exception(exc)
        if final:
            tracked.final = future

    # ------------------------------------------------------------------
    # Finishing
    # ------------------------------------------------------------------
    def _finish(self, session: _Session) -> None:
        texts: List[str] = []
        lost: List[LostSegment] = []
        delivery = "none"
        record_id: Optional[str] = None
        transcript = ""
        try:
            tracked_segments = list(session.segments.values())
            if session.cancelled:
                for tracked in tracked_segments:
                    self._client.cancel_segment(tracked.segment.id)
            else:
                for tracked in tracked_segments:
                    text = self._collect(session, tracked, lost)
                    if text:
                        texts.append(text)
            transcript = " ".join(texts)

            self._restore_audio(session)

            if transcript and not session.cancelled:
                if self.paste_result:
                    delivery = deliver_text(transcript, self._helper, fallback_dir=self.clipboard_fallback_dir)
                if self._store is not None:
                    record = self._store.create(
                        TranscriptRecord(
                            transcript,
                            session_id=session.id,
                            duration_ms=1000.0 * (time.monotonic() - session.started_at),
                            metadata={"mode": session.mode.value, "lost_segments": len(lost)},
                        )
                    )
                    record_id = record.id
        except Exception as exc:  # pylint: disable=broad-except
            self._log.exception("Finishing recording %s failed", session.id)
            session.failure = session.failure or str(exc)
            self._restore_audio(session)

        for item in lost:
            self._log.warning(
                "Segment %s lost (trace=%s, %.0f ms): %s", item.segment_id, item.trace_id, item.lost_ms, item.reason
            )
        if session.failure is not None:
            self._events.publish(RecordingFailed(session.id, session.failure))
        ended = RecordingEnded(
            session_id=session.id,
            transcript=transcript,
            reason="cancelled" if session.cancelled else session.stop_reason,
            delivery=delivery,
            lost_segments=tuple(lost),
            transcript_id=record_id,
        )
        self._finalize(session, ended)

    def _collect(self, session: _Session, tracked: _TrackedSegment, lost: List[LostSegment]) -> Optional[str]:
        """Wait for the transcript of *tracked*; record it in *lost* on failure."""

        segment = tracked.segment
        future = tracked.final
        if future is None:
            lost.append(LostSegment(segment.id, "", segment.duration_ms, "segment was never submitted"))
            return None

        retried = False
        while True:
            try:
                result = future.result()
            except CancelledError:
                return None
            except LocalTranscriptionFailedError as exc:
                if exc.retryable and not retried and not session.cancelled:
                    retried = True
                    self._log.warning("Segment %s failed (%s) – retrying once", segment.id, exc.reason or exc)
                    try:
                        future = self._client.retry_segment(segment.id, segment.frames, sample_rate=segment.sample_rate)
                    except RuntimeError as retry_exc:
                        lost.append(LostSegment(segment.id, exc.trace_id, exc.lost_ms, str(retry_exc)))
                        return None
                    continue
                lost.append(LostSegment(segment.id, exc.trace_id, exc.lost_ms, exc.reason or str(exc)))
                return None
            except (ModelMissingError, RuntimeError) as exc:
                lost.append(LostSegment(segment.id, "", segment.duration_ms, str(exc)))
                return None

            text = (result.text if result is not None else "").strip()
            self._events.publish(TranscriptUpdated(session.id, segment.id, text))
            return text

    def _finalize(self, session: _Session, event) -> None:
        """Publish *event*, return to *Idle* and run a queued restart."""

        self._events.publish(event)
        with self._lock:
            previous = self._state
            self._state = RecordingState.IDLE
            if self._session is session:
                self._session = None
            pending = self._pending_restart
            self._pending_restart = None
            self._idle.set()
        self._announce(session, RecordingState.IDLE, previous)
        if pending is not None:
            self._log.info("Running queued %s restart", pending.value)
            self.start(pending)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _begin_stop(self, session: _Session) -> None:
        capture = session.capture
        if capture is not None:
            try:
                capture.stop()
            except Exception as exc:  # pylint: disable=broad-except
                self._log.warning("Error while stopping audio input: %s", exc)
        self._frames.close()

    def _arm_timer(self, session: _Session) -> None:
        if not self.max_recording_s or self.max_recording_s <= 0:
            return
        timer = threading.Timer(self.max_recording_s, self._on_max_duration, args=(session,))
        timer.daemon = True
        session.timer = timer
        timer.start()

    def _cancel_timer(self, session: _Session) -> None:
        timer = session.timer
        if timer is not None:
            timer.cancel()
            session.timer = None

    def _on_max_duration(self, session: _Session) -> None:
        if self._session is not session:
            return
        self._log.warning("Recording %s reached the %.0fs limit – stopping", session.id, self.max_recording_s)
        self.stop("max_duration")

    def _restore_audio(self, session: _Session) -> None:
        if session.muted and self._helper is not None:
            self._helper.restore_system_audio()
            session.muted = False

    def _announce(self, session: _Session, state: RecordingState, previous: RecordingState) -> None:
        self._log.debug("Recording state %s → %s", previous.value, state.value)
        self._events.publish(StateChanged(session.id, state.value, previous.value))
