from __future__ import annotations

"""Host-side client of the transcription worker process.

The client sits on top of :class:`ipc.process_manager.WorkerProcessManager`
and adds the transcription semantics:

* **Model lifecycle** – :meth:`TranscriptionWorkerClient.load_model` must
  complete before transcription.  The path is remembered and re-issued after a
  worker respawn through an ``on_spawn`` hook.
* **Streaming** – segments are shipped as chunks; only the final chunk
  returns a :class:`TranscriptionResult`.
* **One in-flight call** – a single dispatcher thread drains a FIFO job queue,
  so the worker never sees more than one ``transcribe`` call at a time.
* **Backpressure** – the job queue is bounded by ``max_pending_segments``.
  Overflow applies the configured :class:`EvictionPolicy`.  Losing any chunk
  *poisons* its segment: the remaining chunks are discarded and the final
  future fails with :class:`~scribe_core.errors.SegmentDroppedError`.
* **Error mapping** – crashes and timeouts become
  :class:`~scribe_core.errors.LocalTranscriptionFailedError` carrying a trace
  id and the amount of lost audio.
"""

import enum
import logging
import sys
import threading
import uuid
from collections import deque
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Sequence, Union

import numpy as np

from ipc.errors import RemoteError, SpawnError, WorkerCrashed, WorkerError, WorkerTimeoutError
from ipc.messages import WorkerEvent, encode_samples
from ipc.process_manager import RestartPolicy, WorkerHandle, WorkerProcessManager
from ipc.transport import default_env

from .audio_types import SAMPLE_RATE, AudioFrame, frames_to_samples
from .errors import LocalTranscriptionFailedError, ModelMissingError, SegmentDroppedError

__all__ = [
    "EvictionPolicy",
    "TimedText",
    "TranscriptionResult",
    "TranscriptionWorkerClient",
    "worker_command",
]

_REPO_ROOT = Path(__file__).resolve().parent.parent


class EvictionPolicy(str, enum.Enum):
    DROP_OLDEST_NON_FINAL = "drop_oldest_non_final"
    DROP_OLDEST = "drop_oldest"
    REJECT_NEW = "reject_new"


@dataclass(slots=True)
class TimedText:
    start: float
    end: float
    text: str


@dataclass(slots=True)
class TranscriptionResult:
    """Transcript of one finished segment."""

    segment_id: str
    text: str
    segments: List[TimedText] = field(default_factory=list)
    duration_ms: float = 0.0
    trace_id: str = ""


@dataclass(slots=True)
class _Job:
    segment_id: str
    samples: np.ndarray
    sample_rate: int
    is_final: bool
    future: Future
    duration_ms: float


@dataclass(slots=True)
class _SegmentTracker:
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submitted_ms: float = 0.0
    delivered_chunks: int = 0
    error: Optional[Exception] = None
    cancelled: bool = False


def worker_command(*, use_stub: bool = False, stub_delay: float = 0.0, python: Optional[str] = None) -> List[str]:
    """Return the argv that starts the transcription worker module."""
    command = [python or sys.executable, "-m", "scribe_core.transcription_worker"]
    if use_stub:
        command.append("--stub")
        if stub_delay:
            command += ["--stub-delay", str(stub_delay)]
    return command


def _worker_env() -> dict:
    existing = default_env().get("PYTHONPATH")
    pythonpath = str(_REPO_ROOT) + ((":" if sys.platform != "win32" else ";") + existing if existing else "")
    return default_env(PYTHONPATH=pythonpath, PYTHONUNBUFFERED="1")


class TranscriptionWorkerClient:  # pylint: disable=too-many-instance-attributes
    """Facade managing the transcription worker process."""

    def __init__(
        self,
        manager: Optional[WorkerProcessManager] = None,
        *,
        use_stub: bool = False,
        stub_delay: float = 0.0,
        max_pending_segments: int = 64,
        eviction_policy: Union[EvictionPolicy, str] = EvictionPolicy.DROP_OLDEST_NON_FINAL,
        call_timeout: float = 30.0,
        load_timeout: float = 120.0,
        restart_policy: Optional[RestartPolicy] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._log = logger or logging.getLogger(__name__)
        self._manager = manager or WorkerProcessManager(
            worker_command(use_stub=use_stub, stub_delay=stub_delay),
            name="transcription-worker",
            restart_policy=restart_policy,
            env=_worker_env(),
            cwd=str(_REPO_ROOT),
            logger=self._log,
        )
        if max_pending_segments < 1:
            raise ValueError("max_pending_segments must be >= 1")
        self.max_pending_segments = max_pending_segments
        self.eviction_policy = EvictionPolicy(eviction_policy)
        self.call_timeout = call_timeout
        self.load_timeout = load_timeout

        self._cond = threading.Condition()
        self._jobs: Deque[_Job] = deque()
        self._segments: Dict[str, _SegmentTracker] = {}
        self._in_flight: Optional[_Job] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._closing = False
        self._model_path: Optional[str] = None
        self._model_wanted = False
        self.dropped_chunks = 0

        self._manager.on_spawn(self._reload_after_spawn)
        self._manager.on_crash(self._on_worker_crash)
        self._manager.subscribe(self._on_worker_event)

    @classmethod
    def from_config(cls, config, **kwargs) -> "TranscriptionWorkerClient":
        kwargs.setdefault("max_pending_segments", int(config.get("max_pending_segments", 64)))
        kwargs.setdefault("eviction_policy", config.get("eviction_policy", EvictionPolicy.DROP_OLDEST_NON_FINAL))
        kwargs.setdefault("call_timeout", float(config.get("transcribe_timeout_sec", 30.0)))
        kwargs.setdefault("load_timeout", float(config.get("load_model_timeout_sec", 120.0)))
        kwargs.setdefault("restart_policy", RestartPolicy.from_config(config))
        return cls(**kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the worker and the dispatcher thread (idempotent)."""
        try:
            self._manager.start()
        except SpawnError:
            self._log.error("Transcription worker failed to start")
            raise
        with self._cond:
            self._closing = False
            if self._dispatcher is None or not self._dispatcher.is_alive():
                self._dispatcher = threading.Thread(
                    target=self._dispatch_loop, name="transcription-dispatcher", daemon=True
                )
                self._dispatcher.start()

    def stop(self, *, drain: bool = True, timeout: float = 10.0) -> None:
        """Stop the dispatcher (optionally after draining queued jobs) and the worker."""
        with self._cond:
            self._closing = True
            if not drain:
                dropped = list(self._jobs)
                self._jobs.clear()
            else:
                dropped = []
            self._cond.notify_all()
        for job in dropped:
            self._fail(job, CancelledError())

        dispatcher = self._dispatcher
        if dispatcher is not None:
            dispatcher.join(timeout=timeout)
            if dispatcher.is_alive():
                self._log.warning("Transcription dispatcher did not finish within %.1fs", timeout)
        self._dispatcher = None
        self._manager.shutdown()
        self._log.info("Transcription worker stopped")

    # ------------------------------------------------------------------
    # Model management
    # ------------------------------------------------------------------

    def load_model(self, path: Optional[Union[str, Path]]) -> None:
        """Load the speech model at *path*; raises :class:`ModelMissingError`."""
        path_str = str(path) if path is not None else None
        try:
            self._manager.call("loadModel", {"path": path_str}, timeout=self.load_timeout)
        except RemoteError as exc:
            if exc.code == "model_missing":
                raise ModelMissingError(path_str, str(exc)) from exc
            raise
        self._model_path = path_str
        self._model_wanted = True
        self._log.info("Speech model loaded (%s)", path_str or "stub")

    def unload_model(self) -> None:
        self._model_wanted = False
        self._manager.call("unloadModel", timeout=self.call_timeout)

    @property
    def model_path(self) -> Optional[str]:
        return self._model_path

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------

    def submit(
        self,
        segment_id: str,
        frames: Union[Sequence[AudioFrame], np.ndarray],
        is_final: bool,
        *,
        sample_rate: Optional[int] = None,
    ) -> Future:
        """Queue a chunk of *segment_id*.

        The returned future resolves to ``None`` for intermediate chunks and to
        a :class:`TranscriptionResult` for the final one.
        """

        samples, rate = self._as_samples(frames, sample_rate)
        future: Future = Future()
        job = _Job(
            segment_id=segment_id,
            samples=samples,
            sample_rate=rate,
            is_final=is_final,
            future=future,
            duration_ms=1000.0 * samples.shape[0] / rate,
        )

        dropped: List[tuple] = []
        victim: Optional[_Job] = None
        with self._cond:
            if self._closing:
                raise RuntimeError("TranscriptionWorkerClient is stopping")
            tracker = self._segments.setdefault(segment_id, _SegmentTracker())
            tracker.submitted_ms += job.duration_ms
            if tracker.error is None and not tracker.cancelled and len(self._jobs) >= self.max_pending_segments:
                victim = self._choose_victim(job)
                if victim is not job:
                    self._jobs.remove(victim)
                dropped = self._drop(victim)
                self.dropped_chunks += 1
            if tracker.error is not None or tracker.cancelled:
                if is_final:
                    self._segments.pop(segment_id, None)
                if not any(lost is job for lost, _ in dropped):
                    dropped.append((job, tracker.error or CancelledError()))
            else:
                self._jobs.append(job)
                self._cond.notify()

        for lost, error in dropped:
            if lost is victim:
                self._log.warning(
                    "Transcription queue full (%d) – %s chunk of segment %s dropped (%s)",
                    self.max_pending_segments,
                    "final" if lost.is_final else "partial",
                    lost.segment_id,
                    self.eviction_policy.value,
                )
            self._fail(lost, error)
        for seg_id in {lost.segment_id for lost, error in dropped if isinstance(error, SegmentDroppedError)}:
            self._manager.notify("cancelSegment", {"segmentId": seg_id})
        return future

    def transcribe(
        self,
        segment_id: str,
        frames: Union[Sequence[AudioFrame], np.ndarray],
        *,
        sample_rate: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> TranscriptionResult:
        """Synchronous convenience wrapper – transcribe a whole segment."""
        future = self.submit(segment_id, frames, True, sample_rate=sample_rate)
        return future.result(timeout=timeout)

    def retry_segment(
        self,
        segment_id: str,
        frames: Union[Sequence[AudioFrame], np.ndarray],
        *,
        sample_rate: Optional[int] = None,
    ) -> Future:
        """Resubmit a *whole* failed segment as one final chunk."""
        with self._cond:
            self._segments.pop(segment_id, None)
        self._manager.notify("cancelSegment", {"segmentId": segment_id})
        self._log.info("Retrying segment %s", segment_id)
        return self.submit(segment_id, frames, True, sample_rate=sample_rate)

    def cancel_segment(self, segment_id: str) -> None:
        """Drop queued chunks of *segment_id* and discard its in-flight result."""
        with self._cond:
            tracker = self._segments.get(segment_id)
            if tracker is not None:
                tracker.cancelled = True
            queued = [job for job in self._jobs if job.segment_id == segment_id]
            for job in queued:
                self._jobs.remove(job)
            in_flight = self._in_flight is not None and self._in_flight.segment_id == segment_id
            if not in_flight:
                self._segments.pop(segment_id, None)
        for job in queued:
            job.future.cancel()
        self._manager.notify("cancelSegment", {"segmentId": segment_id})
        self._log.debug("Segment %s cancelled (%d queued chunk(s) dropped)", segment_id, len(queued))

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._jobs) + (1 if self._in_flight is not None else 0)

    @property
    def manager(self) -> WorkerProcessManager:
        return self._manager

    # ------------------------------------------------------------------
    # Dispatcher thread
    # ------------------------------------------------------------------

    def _dispatch_loop(self) -> None:
        while True:
            with self._cond:
                while not self._jobs and not self._closing:
                    self._cond.wait()
                if not self._jobs:
                    return  # closing and drained
                job = self._jobs.popleft()
                tracker = self._segments.get(job.segment_id)
                if tracker is None or tracker.cancelled or tracker.error is not None:
                    skip_error = tracker.error if tracker and tracker.error else CancelledError()
                    if job.is_final:
                        self._segments.pop(job.segment_id, None)
                    skip = True
                else:
                    skip = False
                    self._in_flight = job
            if skip:
                self._fail(job, skip_error)
                continue
            if not job.future.set_running_or_notify_cancel():
                with self._cond:
                    self._in_flight = None
                continue
            try:
                self._run_job(job, tracker)
            finally:
                with self._cond:
                    self._in_flight = None
                    if job.is_final:
                        self._segments.pop(job.segment_id, None)

    def _run_job(self, job: _Job, tracker: _SegmentTracker) -> None:
        params = {
            "segmentId": job.segment_id,
            "samples": encode_samples(job.samples),
            "sampleRate": job.sample_rate,
            "isFinal": job.is_final,
        }
        try:
            result = self._manager.call("transcribe", params, timeout=self.call_timeout)
        except WorkerTimeoutError as exc:
            self._log.error("Worker did not answer segment %s within %.1fs – restarting it", job.segment_id, exc.timeout)
            handle = self._manager.handle
            if handle is not None:
                handle.kill()
            self._fail_segment(job, tracker, LocalTranscriptionFailedError(
                tracker.trace_id, job.segment_id, tracker.submitted_ms, retryable=True, reason="worker timed out"
            ))
            return
        except (WorkerCrashed, SpawnError) as exc:
            self._fail_segment(job, tracker, LocalTranscriptionFailedError(
                tracker.trace_id, job.segment_id, tracker.submitted_ms, retryable=True, reason=str(exc)
            ))
            return
        except RemoteError as exc:
            if exc.code in ("model_missing", "model_not_loaded"):
                error: Exception = ModelMissingError(self._model_path, str(exc))
            else:
                error = LocalTranscriptionFailedError(
                    tracker.trace_id, job.segment_id, tracker.submitted_ms,
                    retryable=False, reason=f"{exc.code}: {exc}",
                )
            self._fail_segment(job, tracker, error)
            return
        except WorkerError as exc:  # pragma: no cover – protocol level surprises
            self._fail_segment(job, tracker, LocalTranscriptionFailedError(
                tracker.trace_id, job.segment_id, tracker.submitted_ms, retryable=True, reason=str(exc)
            ))
            return

        with self._cond:
            tracker.delivered_chunks += 1
            discarded = tracker.cancelled

        if discarded:
            job.future.set_exception(CancelledError())
            return
        if not job.is_final:
            job.future.set_result(None)
            return

        result = result or {}
        job.future.set_result(
            TranscriptionResult(
                segment_id=job.segment_id,
                text=str(result.get("text", "")),
                segments=[
                    TimedText(float(item.get("start", 0.0)), float(item.get("end", 0.0)), str(item.get("text", "")))
                    for item in result.get("segments", [])
                ],
                duration_ms=tracker.submitted_ms,
                trace_id=tracker.trace_id,
            )
        )

    # ------------------------------------------------------------------
    # Failure helpers
    # ------------------------------------------------------------------

    def _choose_victim(self, new_job: _Job) -> _Job:
        # Caller holds self._cond.
        if self.eviction_policy is EvictionPolicy.DROP_OLDEST:
            return self._jobs[0]
        if self.eviction_policy is EvictionPolicy.DROP_OLDEST_NON_FINAL:
            for job in self._jobs:
                if not job.is_final:
                    return job
        return new_job

    def _drop(self, victim: _Job) -> List[tuple]:
        """Evict *victim* and poison its segment.  Caller holds the lock."""
        tracker = self._segments.get(victim.segment_id)
        if tracker is None:
            return [(victim, SegmentDroppedError("", victim.segment_id, victim.duration_ms))]
        if tracker.error is None:
            tracker.error = SegmentDroppedError(tracker.trace_id, victim.segment_id, tracker.submitted_ms)
        rest = self._poison(victim.segment_id, tracker.error)
        if victim.is_final:
            self._segments.pop(victim.segment_id, None)
        return [(job, tracker.error) for job in (victim, *rest)]

    def _poison(self, segment_id: str, error: Exception) -> List[_Job]:
        """Mark *segment_id* failed and pull its queued jobs.  Caller holds the lock."""
        tracker = self._segments.get(segment_id)
        if tracker is not None and tracker.error is None:
            tracker.error = error
        queued = [job for job in self._jobs if job.segment_id == segment_id]
        for job in queued:
            self._jobs.remove(job)
        if any(job.is_final for job in queued):
            self._segments.pop(segment_id, None)
        return queued

    def _fail_segment(self, job: _Job, tracker: _SegmentTracker, error: Exception) -> None:
        with self._cond:
            if tracker.error is None:
                tracker.error = error
            error = tracker.error
            rest = self._poison(job.segment_id, error)
        self._log.warning("Segment %s failed: %s", job.segment_id, error)
        job.future.set_exception(error)
        for other in rest:
            self._fail(other, error)

    @staticmethod
    def _fail(job: _Job, error: BaseException) -> None:
        if job.future.done():
            return
        if isinstance(error, CancelledError):
            job.future.cancel()
        else:
            job.future.set_exception(error)

    # ------------------------------------------------------------------
    # Manager callbacks
    # ------------------------------------------------------------------

    def _reload_after_spawn(self, handle: WorkerHandle) -> None:
        if not self._model_wanted:
            return
        self._log.info("Re-loading speech model after worker respawn")
        handle.call("loadModel", {"path": self._model_path}, timeout=self.load_timeout)

    def _on_worker_crash(self, _handle: WorkerHandle, returncode: Optional[int]) -> None:
        # Audio already buffered by the dead worker is gone.
        with self._cond:
            for segment_id, tracker in self._segments.items():
                if tracker.delivered_chunks and tracker.error is None:
                    tracker.error = LocalTranscriptionFailedError(
                        tracker.trace_id, segment_id, tracker.submitted_ms,
                        retryable=True, reason=f"worker crashed (returncode={returncode})",
                    )

    def _on_worker_event(self, event: WorkerEvent) -> None:
        if event.method == "ready":
            self._log.debug("Transcription worker ready: %s", event.params)
        else:
            self._log.debug("Transcription worker event %s: %s", event.method, event.params)

    # ------------------------------------------------------------------
    # Utility helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _as_samples(frames: Any, sample_rate: Optional[int]) -> tuple:
        if isinstance(frames, np.ndarray):
            return frames.astype(np.float32, copy=False).reshape(-1), int(sample_rate or SAMPLE_RATE)
        frames = list(frames)
        rate = sample_rate or (frames[0].sample_rate if frames else SAMPLE_RATE)
        return frames_to_samples(frames), int(rate)

    # ------------------------------------------------------------------
    # Context-manager helpers
    # ------------------------------------------------------------------

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # noqa: D401 – context manager boilerplate
        self.stop()
        return False
