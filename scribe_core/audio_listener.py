"""Realtime audio capture feeding the recording pipeline.

``AudioCaptureSession`` opens a PyAudio float32 microphone stream and turns
every buffer into an immutable :class:`~scribe_core.audio_types.AudioFrame`.
The PortAudio callback only *enqueues* – segmentation happens on the
recording pump thread – and the frame queue drops the oldest frame instead of
blocking when the consumer falls behind.

``WavCaptureSession`` replays a WAV file through the same interface for the
offline path and for tests (no hardware required).
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Union

try:
    import pyaudio  # type: ignore
except ModuleNotFoundError:  # pragma: no cover – optional at runtime / in CI
    pyaudio = None  # type: ignore

import numpy as np

from ipc.queue_wrapper import DropOldestQueue

from .audio_types import FRAME_SAMPLES, SAMPLE_RATE, AudioFrame
from .wav_reader import WavAudio, iter_frames, read_wav

__all__ = [
    "FrameQueue",
    "make_frame_queue",
    "AudioCaptureSession",
    "WavCaptureSession",
]

FrameQueue = DropOldestQueue[AudioFrame]

_DROP_WARN_INTERVAL_S = 5.0


def make_frame_queue(maxsize: int = 256, *, logger: Optional[logging.Logger] = None) -> FrameQueue:
    """Return a bounded drop-oldest frame queue with a rate-limited warning."""

    log = logger or logging.getLogger(__name__)
    last_warning = [0.0]

    def _on_drop(frame: AudioFrame, total: int) -> None:
        now = time.monotonic()
        if now - last_warning[0] >= _DROP_WARN_INTERVAL_S:
            last_warning[0] = now
            log.warning("Frame queue full – dropped frame #%d (%d dropped so far)", frame.sequence, total)

    return DropOldestQueue(maxsize, on_drop=_on_drop)


# ---------------------------------------------------------------------------
# High-level microphone capture
# ---------------------------------------------------------------------------


class AudioCaptureSession:
    """Microphone capture producing :class:`AudioFrame` objects in real-time."""

    def __init__(
        self,
        frame_queue: FrameQueue,
        *,
        sample_rate: int = SAMPLE_RATE,
        frame_samples: int = FRAME_SAMPLES,
        device_index: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._queue = frame_queue
        self._sample_rate = sample_rate
        self._frame_samples = frame_samples
        self._device_index = device_index
        self._log = logger or logging.getLogger(__name__)

        self._pyaudio_instance = None  # created lazily to avoid module requirement in tests
        self._stream = None
        self._lock = threading.Lock()
        self._sequence = 0
        self._samples_seen = 0

    @classmethod
    def from_config(cls, config, frame_queue: FrameQueue, **kwargs) -> "AudioCaptureSession":
        return cls(
            frame_queue,
            sample_rate=int(config.get("sample_rate", SAMPLE_RATE)),
            frame_samples=int(config.get("frame_samples", FRAME_SAMPLES)),
            device_index=config.get("input_device_index"),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Open the microphone stream; raises when the device cannot be opened."""
        if pyaudio is None:  # pragma: no cover – runtime dependency absent
            raise RuntimeError("pyaudio module not available – microphone capture cannot be started")

        with self._lock:
            if self._stream and self._stream.is_active():
                self._log.debug("AudioCaptureSession already running – start() ignored")
                return

            self._sequence = 0
            self._samples_seen = 0
            self._pyaudio_instance = pyaudio.PyAudio()
            try:
                self._stream = self._pyaudio_instance.open(
                    format=pyaudio.paFloat32,
                    channels=1,
                    rate=self._sample_rate,
                    input=True,
                    input_device_index=self._device_index,
                    frames_per_buffer=self._frame_samples,
                    stream_callback=self._pyaudio_callback,
                )
                self._stream.start_stream()
            except Exception:
                self._pyaudio_instance.terminate()
                self._pyaudio_instance = None
                self._stream = None
                raise
            self._log.info(
                "Microphone stream started (rate=%d Hz, frame=%d samples)", self._sample_rate, self._frame_samples
            )

    def stop(self) -> None:
        """Stop and close the microphone stream."""
        with self._lock:
            if not self._stream:
                return
            try:
                self._stream.stop_stream()
                self._stream.close()
            finally:
                if self._pyaudio_instance:
                    self._pyaudio_instance.terminate()
                self._stream = None
                self._pyaudio_instance = None
            self._log.info("Microphone stream stopped")

    @property
    def active(self) -> bool:
        return self._stream is not None

    # ------------------------------------------------------------------
    # Internal PyAudio callback
    # ------------------------------------------------------------------

    def _pyaudio_callback(self, in_data, frame_count, _time_info, status):  # noqa: D401 – PyAudio API
        try:
            if status:
                self._log.debug("PortAudio status flags: %s", status)
            self._emit(np.frombuffer(in_data, dtype=np.float32), frame_count)
        except Exception as exc:  # pragma: no cover – safety
            self._log.exception("Error in audio capture callback: %s", exc)
        return (None, pyaudio.paContinue)  # type: ignore

    def _emit(self, samples: np.ndarray, frame_count: int) -> None:
        frame = AudioFrame(
            samples=samples,
            sample_rate=self._sample_rate,
            timestamp_ms=1000.0 * self._samples_seen / self._sample_rate,
            sequence=self._sequence,
        )
        self._sequence += 1
        self._samples_seen += frame_count
        try:
            self._queue.put(frame)
        except ValueError:
            pass  # queue closed while the stream was shutting down

    # ------------------------------------------------------------------
    # Context-manager helpers for convenience "with" usage
    # ------------------------------------------------------------------

    def __enter__(self):  # noqa: D401 – context manager boilerplate
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # noqa: D401 – context manager boilerplate
        self.stop()
        return False  # propagate exceptions


# ---------------------------------------------------------------------------
# WAV replay
# ---------------------------------------------------------------------------


class WavCaptureSession:
    """Replay a WAV file as a frame stream.

    *speed* of ``1.0`` paces frames in real time; ``0`` pushes them as fast as
    the queue accepts them.  *on_finished* fires once the last frame is queued.
    """

    def __init__(
        self,
        source: Union[str, Path, WavAudio],
        frame_queue: FrameQueue,
        *,
        frame_samples: int = FRAME_SAMPLES,
        speed: float = 0.0,
        on_finished: Optional[Callable[[], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._audio = source if isinstance(source, WavAudio) else read_wav(source)
        self._queue = frame_queue
        self._frame_samples = frame_samples
        self._speed = speed
        self._on_finished = on_finished
        self._log = logger or logging.getLogger(__name__)
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self.finished = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self.finished.clear()
        self._thread = threading.Thread(target=self._run, name="wav-capture", daemon=True)
        self._thread.start()
        self._log.info(
            "WAV replay started (%.2fs @ %d Hz)", self._audio.duration, self._audio.sample_rate
        )

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=5)
        self._thread = None

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        try:
            for frame in iter_frames(
                self._audio.samples, self._audio.sample_rate, frame_samples=self._frame_samples
            ):
                if self._stop.is_set():
                    break
                try:
                    self._queue.put(frame)
                except ValueError:
                    break  # queue closed
                if self._speed > 0:
                    time.sleep(frame.duration_ms / 1000.0 / self._speed)
        finally:
            self.finished.set()
            if self._on_finished is not None:
                self._on_finished()

    def __enter__(self):  # noqa: D401 – context manager boilerplate
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # noqa: D401 – context manager boilerplate
        self.stop()
        return False
