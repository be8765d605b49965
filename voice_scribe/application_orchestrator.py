# Orchestrator module wiring all sub-components of Voice Scribe.
#
#   • spins up the transcription worker, the native helper and the shortcut
#     listener, then hands recording triggers to the state machine
#   • graceful shutdown – stop recording, stop shortcuts, stop both processes
#   • offline mode (``--wav``) replays a file through the same pipeline
#
# Hardware-bound components (microphone, native helper, global hotkeys) are
# optional: the orchestrator logs and continues in degraded mode when one of
# them is unavailable so that it stays importable and testable on any CI
# runner.

from __future__ import annotations

import argparse
import logging
import math
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional, Sequence

from scribe_core.audio_listener import AudioCaptureSession, WavCaptureSession, make_frame_queue
from scribe_core.audio_types import FRAME_SAMPLES, SAMPLE_RATE
from scribe_core.config_manager import ConfigManager
from scribe_core.errors import ModelMissingError
from scribe_core.interfaces import (
    CollectingEventSink,
    EventSink,
    InMemoryTranscriptStore,
    LoggingEventSink,
    RecordingEnded,
    RecordingEvent,
    RecordingFailed,
    TranscriptStore,
)
from scribe_core.native_helper import NativeHelperClient
from scribe_core.shortcut_manager import ShortcutManager
from scribe_core.transcription_client import TranscriptionWorkerClient
from scribe_core.vad_segmenter import VoiceActivitySegmenter
from scribe_core.wav_reader import read_wav, resample

from . import __version__, crash_reporter
from .logging_config import setup_logging
from .recording import RecordingStateMachine

__all__ = [
    "VoiceScribeApp",
    "main",
]


class _FanOutSink:  # pylint: disable=too-few-public-methods
    """Publish every event to several sinks."""

    def __init__(self, *sinks: EventSink) -> None:
        self._sinks = sinks

    def publish(self, event: RecordingEvent) -> None:
        for sink in self._sinks:
            sink.publish(event)


class VoiceScribeApp:  # pylint: disable=too-many-instance-attributes
    """High-level *application orchestrator* tying all components together."""

    # ---------------------------------------------------------------------
    # Construction helpers
    # ---------------------------------------------------------------------
    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        use_stub_worker: bool = False,
        model_path: Optional[str] = None,
        client: Optional[TranscriptionWorkerClient] = None,
        helper: Optional[NativeHelperClient] = None,
        event_sink: Optional[EventSink] = None,
        transcript_store: Optional[TranscriptStore] = None,
        enable_helper: bool = True,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._log = logger or logging.getLogger(self.__class__.__name__)
        self._lock = threading.Lock()
        self._is_running = False
        self._shutdown_event = threading.Event()

        # Core singletons -------------------------------------------------
        self.config = config if config is not None else ConfigManager()
        self.model_path = model_path or self.config.get("model_path")
        self.events: EventSink = event_sink or LoggingEventSink()
        self.transcripts: TranscriptStore = transcript_store or InMemoryTranscriptStore()
        self.client = client or TranscriptionWorkerClient.from_config(self.config, use_stub=use_stub_worker)
        if helper is None and enable_helper:
            helper = NativeHelperClient.from_config(self.config)
        self.helper: Optional[NativeHelperClient] = helper

        self.recorder = RecordingStateMachine.from_config(
            self.config,
            self.client,
            capture_factory=self._open_microphone,
            segmenter=VoiceActivitySegmenter.from_config(self.config),
            helper=self.helper,
            event_sink=self.events,
            transcript_store=self.transcripts,
        )
        self.shortcuts = ShortcutManager(
            self.config,
            helper=self.helper,
            on_toggle=self.recorder.toggle,
            on_push_to_talk=self.recorder.push_to_talk,
        )

    # ------------------------------------------------------------------
    # Lifecycle management
    # ------------------------------------------------------------------
    def start(self) -> None:  # noqa: D401 – imperative API
        """Start the worker, load the model and bind shortcuts (idempotent).

        Raises :class:`~scribe_core.errors.ModelMissingError` when the
        configured model cannot be found.
        """
        with self._lock:
            if self._is_running:
                return
            self._is_running = True

        self._log.info("Voice Scribe %s starting …", __version__)
        try:
            self._start_transcription()
        except Exception:
            with self._lock:
                self._is_running = False
            self.client.stop(drain=False)
            raise

        # UI / I-O layers are best-effort – log but continue on failure.
        if self.helper is not None and not self.helper.start():
            self._log.warning("Native helper unavailable – paste, mute and accessibility disabled")
        if not self.shortcuts.start():
            self._log.warning("No global shortcut available – recording must be triggered programmatically")

        self._log.info("Voice Scribe started")

    def shutdown(self) -> None:  # noqa: D401 – imperative API
        """Attempt graceful shutdown of all subsystems."""
        with self._lock:
            if not self._is_running:
                self._shutdown_event.set()
                return
            self._is_running = False

        self._log.info("Shutting down …")
        # Order matters – stop producer of new work first.
        if not self.recorder.close(timeout=float(self.config.get("transcribe_timeout_sec", 30.0))):
            self._log.warning("Recording did not finish before shutdown – cancelling")
            self.recorder.cancel()
        self.shortcuts.stop()
        if self.helper is not None:
            self.helper.stop()
        self.client.stop()
        self._shutdown_event.set()
        self._log.info("Shutdown complete")

    @property
    def running(self) -> bool:
        return self._is_running

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until :meth:`shutdown` ran."""
        return self._shutdown_event.wait(timeout)

    # ------------------------------------------------------------------
    # Offline transcription
    # ------------------------------------------------------------------
    def transcribe_file(self, path: str | Path, *, timeout: Optional[float] = None) -> RecordingEnded:
        """Run *path* through capture → segmenter → worker and return the result.

        Nothing is pasted; the transcript is persisted like a live recording.
        """

        audio = resample(read_wav(path), int(self.config.get("sample_rate", SAMPLE_RATE)))
        frame_samples = int(self.config.get("frame_samples", FRAME_SAMPLES))
        collected = CollectingEventSink()
        recorder = RecordingStateMachine.from_config(
            self.config,
            self.client,
            capture_factory=lambda queue: WavCaptureSession(
                audio,
                queue,
                frame_samples=frame_samples,
                on_finished=lambda: recorder.stop("end_of_input"),
            ),
            segmenter=VoiceActivitySegmenter.from_config(self.config),
            # Replay is faster than real time; size the queue to the file.
            frame_queue=make_frame_queue(max(256, math.ceil(audio.samples.shape[0] / frame_samples) + 1)),
            event_sink=_FanOutSink(self.events, collected),
            transcript_store=self.transcripts,
            mute_while_recording=False,
            paste_result=False,
            max_recording_s=0,
        )

        if not self._is_running:
            self._start_transcription()
        self._log.info("Transcribing %s (%.2fs)", path, audio.duration)
        # A short file may finish before start() returns; only a failure aborts.
        if not recorder.start() and collected.of_type(RecordingFailed):
            failures = [event.message for event in collected.of_type(RecordingFailed)]
            raise RuntimeError(f"Could not replay {path}: {failures[-1] if failures else 'unknown error'}")
        if not recorder.wait_until_idle(timeout):
            recorder.cancel()
            raise TimeoutError(f"Transcription of {path} did not finish within {timeout}s")
        ended = collected.of_type(RecordingEnded)
        return ended[-1]  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Internal handlers
    # ------------------------------------------------------------------
    def _start_transcription(self) -> None:
        self.client.start()
        try:
            self.client.load_model(self.model_path)
        except ModelMissingError:
            self._log.error("Speech model not found (%s) – configure 'model_path' or pass --model", self.model_path)
            raise

    def _open_microphone(self, frame_queue) -> AudioCaptureSession:
        return AudioCaptureSession.from_config(self.config, frame_queue, logger=self._log)

    def _handle_signal(self, signum: int, _frame: Any) -> None:  # noqa: D401 – signal handler
        self._log.info("Signal %s received – initiating shutdown.", signum)
        threading.Thread(target=self.shutdown, name="shutdown", daemon=True).start()

    def install_signal_handlers(self) -> None:
        """Handle SIGINT / SIGTERM for graceful Ctrl-C & service shutdown."""
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            if hasattr(signal, "SIGTERM"):
                signal.signal(signal.SIGTERM, self._handle_signal)
        except ValueError:  # not called from the main thread – ignore
            pass

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # noqa: D401 – context manager boilerplate
        self.shutdown()
        return False


# ---------------------------------------------------------------------------
# *console-script* entry-point
# ---------------------------------------------------------------------------

def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="voice-scribe", description="Voice Scribe dictation")
    parser.add_argument(
        "--stub-worker",
        action="store_true",
        help="Run with the stub (CPU-only) transcription worker – useful for tests.",
    )
    parser.add_argument("--model", help="Path to the .nemo speech model (overrides 'model_path').")
    parser.add_argument("--wav", type=Path, help="Transcribe this WAV file offline and exit.")
    parser.add_argument("--no-helper", action="store_true", help="Do not start the native capability helper.")
    parser.add_argument("--log-level", default="INFO", help="Root log level (default: INFO).")
    parser.add_argument("--log-file", default="logs/app.log", help="Rotating log file (default: logs/app.log).")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:  # noqa: D401 – script entry
    """Console entry-point – parses CLI flags then runs the app.

    Exit codes: ``0`` success, ``1`` runtime failure, ``2`` model missing.
    """

    args = _parse_args(argv)
    setup_logging(log_file=args.log_file, level=args.log_level)
    crash_reporter.install()
    log = logging.getLogger("voice_scribe")

    app = VoiceScribeApp(
        use_stub_worker=args.stub_worker,
        model_path=args.model,
        enable_helper=not args.no_helper and args.wav is None,
    )

    if args.wav is not None:
        try:
            result = app.transcribe_file(args.wav)
        except ModelMissingError:
            return 2
        except (OSError, ValueError, RuntimeError, TimeoutError) as exc:
            log.error("Offline transcription failed: %s", exc)
            return 1
        finally:
            app.client.stop()
        print(result.transcript)
        for lost in result.lost_segments:
            log.warning("Lost %.0f ms of audio (segment %s, trace %s)", lost.lost_ms, lost.segment_id, lost.trace_id)
        return 0 if not result.lost_segments else 1

    try:
        app.start()
    except ModelMissingError:
        return 2
    app.install_signal_handlers()

    # Block main thread until shutdown; the helper / hotkey threads keep the
    # process alive.
    try:
        while not app.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:  # pragma: no cover – manual stop
        app.shutdown()
    return 0


if __name__ == "__main__":  # pragma: no cover – manual execution helper
    sys.exit(main())
