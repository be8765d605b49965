from __future__ import annotations

"""Speech transcription worker process powered by NVIDIA NeMo.

Run as ``python -m scribe_core.transcription_worker [--stub]``.  The process
speaks the newline-delimited JSON protocol of :mod:`ipc.messages` on
stdin/stdout and logs to stderr (the host mirrors those lines into its own
log).  Supported methods:

``loadModel {path}``
    Restore a NeMo ``.nemo`` checkpoint.  A missing path answers with the
    error code ``model_missing``.
``unloadModel``
    Drop the model and release cached VRAM.
``transcribe {segmentId, samples, sampleRate, isFinal}``
    Buffer base64 float32 samples per segment.  The final chunk triggers
    decoding and returns ``{text, segments: [{start, end, text}]}``.
``cancelSegment {segmentId}``
    Discard buffered audio of a segment.
``shutdown``
    Exit the request loop.

The heavy NeMo dependency is imported lazily inside
:meth:`TranscriptionEngine.load_model`.  Passing ``--stub`` selects a
deterministic fake model so the full protocol is testable without the GPU
toolchain or model files.
"""

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ipc.errors import ProtocolError
from ipc.messages import (
    ErrorPayload,
    WorkerEvent,
    WorkerRequest,
    WorkerResponse,
    decode_message,
    decode_samples,
    encode_message,
)

_LOG = logging.getLogger("scribe_core.transcription_worker")

MODEL_SAMPLE_RATE = 16_000
MIN_AUDIO_SECONDS = 1.25  # shorter clips are zero-padded before decoding


class TranscriptionError(Exception):  # pylint: disable=too-few-public-methods
    """Failure reported to the host as ``{error: {code, message}}``."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


# ---------------------------------------------------------------------------
# Stub model
# ---------------------------------------------------------------------------


class _StubHypothesis:  # pylint: disable=too-few-public-methods
    """Very small stand-in replicating the bits of NeMo's Hypothesis API"""

    def __init__(self, text: str, duration: float):
        self.text = text
        self.timestamp = {"segment": [{"start": 0.0, "end": round(duration, 3), "segment": text}]}


class StubASRModel:  # pylint: disable=too-few-public-methods
    """Fake ASR model exposing a *transcribe()* method matching NeMo."""

    def __init__(self, *, delay: float = 0.0):
        self.delay = delay

    def transcribe(  # noqa: D401 – signature mirrors real API
        self,
        audio: Sequence[np.ndarray],
        batch_size: int = 1,
        timestamps: bool | None = None,
        **_kwargs,
    ) -> List[Any]:
        """Return fixed results so tests are deterministic."""
        if self.delay:
            time.sleep(self.delay)
        return [_StubHypothesis("hello world", len(clip) / MODEL_SAMPLE_RATE) for clip in audio]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TranscriptionEngine:
    """Thin OO wrapper around a NeMo ASR model."""

    def __init__(self, *, use_stub: bool = False, stub_delay: float = 0.0) -> None:
        self.use_stub = use_stub
        self.stub_delay = stub_delay
        self.model: Any | None = None
        self.model_path: Optional[str] = None

    # ------------------------------------------------------------------
    # Model lifecycle helpers
    # ------------------------------------------------------------------

    def load_model(self, path: Optional[str]) -> None:
        """Load the checkpoint at *path* into GPU/CPU memory.

        The stub still validates *path* when one is given so that the
        ``model_missing`` contract is testable without NeMo.
        """

        if path is not None and not Path(path).exists():
            raise TranscriptionError("model_missing", f"Model file not found: {path}")

        if self.use_stub:
            _LOG.info("Using stub ASR model")
            self.model = StubASRModel(delay=self.stub_delay)
            self.model_path = path
            return

        if path is None:
            raise TranscriptionError("model_missing", "No model path configured")

        try:
            from nemo.collections.asr.models import ASRModel  # pylint: disable=import-outside-toplevel
        except ImportError as exc:
            raise TranscriptionError("engine_unavailable", f"NeMo ASR is not installed: {exc}") from exc

        _LOG.info("Loading ASR model from %s – this can take a while on first run …", path)
        try:
            model = ASRModel.restore_from(restore_path=str(path))
            model.eval()
        except Exception as exc:
            _LOG.critical("Failed to load ASR model: %s", exc)
            self.model = None
            raise TranscriptionError("model_load_failed", str(exc)) from exc
        self.model = model
        self.model_path = path
        _LOG.info("Model loaded – performing warm-up inference")
        self._warm_up()

    def _warm_up(self) -> None:
        """Run a short inference pass to pay the JIT & CUDA launch costs up-front."""
        if self.model is None:
            return
        silence = np.zeros(int(MODEL_SAMPLE_RATE * MIN_AUDIO_SECONDS), dtype=np.float32)
        try:
            self.model.transcribe(audio=[silence], batch_size=1)
        except Exception as exc:  # pragma: no cover – warm-up failures non-fatal
            _LOG.warning("Warm-up inference failed: %s", exc)

    def unload_model(self) -> None:  # noqa: D401 – imperative API
        """Free GPU/CPU memory by discarding the loaded model."""

        if self.model is None:
            return  # Already unloaded – idempotent

        self.model = None
        if self.use_stub:
            return

        try:
            import torch  # pylint: disable=import-error,import-outside-toplevel
        except ImportError:  # pragma: no cover – CPU-only install
            return
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    @property
    def loaded(self) -> bool:
        return self.model is not None

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def transcribe(self, samples: np.ndarray, sample_rate: int = MODEL_SAMPLE_RATE) -> Tuple[str, List[Dict[str, Any]]]:
        """Return the transcript and its segment-level timestamps."""

        if self.model is None:
            raise TranscriptionError("model_not_loaded", "ASR model not loaded – call loadModel first")

        audio = prepare_audio(samples, sample_rate)
        try:
            hypotheses = self.model.transcribe(audio=[audio], batch_size=1, timestamps=True)
        except RuntimeError as exc:
            if "CUDA out of memory" in str(exc):
                raise TranscriptionError("cuda_oom", "CUDA out of memory during inference") from exc
            raise
        if isinstance(hypotheses, tuple):  # RNNT models return (best, all)
            hypotheses = hypotheses[0]
        if not hypotheses:
            return "", []

        first = hypotheses[0]
        text = getattr(first, "text", first if isinstance(first, str) else str(first)).strip()
        timestamp = getattr(first, "timestamp", None) or {}
        segments = [
            {
                "start": float(item.get("start", 0.0)),
                "end": float(item.get("end", 0.0)),
                "text": str(item.get("segment", "")).strip(),
            }
            for item in timestamp.get("segment", [])
        ]
        return text, segments

    def benchmark_rtf(self, samples: np.ndarray, sample_rate: int = MODEL_SAMPLE_RATE) -> float:
        """Return *Real-Time Factor* (RTFx).  > 1 => faster than real-time."""
        start = time.perf_counter()
        self.transcribe(samples, sample_rate)
        duration = time.perf_counter() - start
        if duration == 0:
            return float("inf")
        return (len(samples) / sample_rate) / duration


def prepare_audio(samples: np.ndarray, sample_rate: int) -> np.ndarray:
    """Resample to 16 kHz mono float32 and pad to :data:`MIN_AUDIO_SECONDS`."""

    audio = np.asarray(samples, dtype=np.float32).reshape(-1)
    if sample_rate != MODEL_SAMPLE_RATE and audio.size:
        target_len = int(round(audio.size * MODEL_SAMPLE_RATE / sample_rate))
        positions = np.linspace(0, audio.size - 1, num=max(target_len, 1))
        audio = np.interp(positions, np.arange(audio.size), audio).astype(np.float32)
    min_len = int(MODEL_SAMPLE_RATE * MIN_AUDIO_SECONDS)
    if audio.size < min_len:
        audio = np.pad(audio, (0, min_len - audio.size))
    return audio


# ---------------------------------------------------------------------------
# Worker process loop
# ---------------------------------------------------------------------------


class WorkerLoop:
    """Request dispatcher running inside the worker process."""

    def __init__(self, engine: TranscriptionEngine, output: BinaryIO) -> None:
        self.engine = engine
        self._out = output
        self._buffers: Dict[str, List[np.ndarray]] = {}
        self._running = True

    def emit(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        self._write(WorkerEvent(method=method, params=params or {}))

    def run(self, stream: BinaryIO) -> None:
        self.emit("ready", {"pid": os.getpid(), "stub": self.engine.use_stub})
        for raw in iter(stream.readline, b""):
            line = raw.strip()
            if not line:
                continue
            try:
                message = decode_message(line)
            except ProtocolError as exc:
                _LOG.warning("Malformed request skipped: %s", exc)
                continue
            if not isinstance(message, WorkerRequest):
                _LOG.warning("Ignoring non-request frame %r", message)
                continue
            self.handle(message)
            if not self._running:
                break
        _LOG.info("Transcription worker shutting down")
        self.engine.unload_model()

    def handle(self, request: WorkerRequest) -> None:
        handler = getattr(self, f"_on_{request.method}", None)
        if handler is None:
            self._reply_error(request.id, "unknown_method", f"Unknown method '{request.method}'")
            return
        try:
            result = handler(request.params)
        except TranscriptionError as exc:
            _LOG.warning("%s failed: [%s] %s", request.method, exc.code, exc)
            self._reply_error(request.id, exc.code, str(exc))
        except (KeyError, TypeError, ValueError, ProtocolError) as exc:
            self._reply_error(request.id, "invalid_params", f"{type(exc).__name__}: {exc}")
        except Exception as exc:  # pylint: disable=broad-except – report, keep serving
            _LOG.exception("%s failed unexpectedly", request.method)
            self._reply_error(request.id, "internal", str(exc))
        else:
            self._write(WorkerResponse(id=request.id, result=result))

    # ------------------------------------------------------------------
    # Method handlers
    # ------------------------------------------------------------------

    def _on_loadModel(self, params: Dict[str, Any]) -> Dict[str, Any]:  # pylint: disable=invalid-name
        self.engine.load_model(params.get("path"))
        return {"state": "loaded", "path": self.engine.model_path}

    def _on_unloadModel(self, _params: Dict[str, Any]) -> Dict[str, Any]:  # pylint: disable=invalid-name
        self.engine.unload_model()
        self._buffers.clear()
        return {"state": "unloaded"}

    def _on_transcribe(self, params: Dict[str, Any]) -> Dict[str, Any]:  # pylint: disable=invalid-name
        if not self.engine.loaded:
            raise TranscriptionError("model_not_loaded", "ASR model not loaded – call loadModel first")
        segment_id = str(params["segmentId"])
        sample_rate = int(params.get("sampleRate", MODEL_SAMPLE_RATE))
        chunk = decode_samples(params.get("samples", ""))
        buffered = self._buffers.setdefault(segment_id, [])
        if chunk.size:
            buffered.append(chunk)

        if not params.get("isFinal", False):
            return {"segmentId": segment_id, "buffered": int(sum(part.size for part in buffered))}

        parts = self._buffers.pop(segment_id, [])
        samples = np.concatenate(parts) if parts else np.zeros(0, dtype=np.float32)
        start = time.perf_counter()
        text, segments = self.engine.transcribe(samples, sample_rate)
        _LOG.info(
            "Segment %s: %.2fs audio transcribed in %.2fs",
            segment_id, samples.size / sample_rate, time.perf_counter() - start,
        )
        return {"segmentId": segment_id, "text": text, "segments": segments}

    def _on_cancelSegment(self, params: Dict[str, Any]) -> Dict[str, Any]:  # pylint: disable=invalid-name
        segment_id = str(params["segmentId"])
        return {"segmentId": segment_id, "cancelled": self._buffers.pop(segment_id, None) is not None}

    def _on_shutdown(self, _params: Dict[str, Any]) -> Dict[str, Any]:  # pylint: disable=invalid-name
        self._running = False
        return {"state": "stopping"}

    # ------------------------------------------------------------------
    # Output helpers
    # ------------------------------------------------------------------

    def _reply_error(self, request_id: str, code: str, message: str) -> None:
        self._write(WorkerResponse(id=request_id, error=ErrorPayload(code=code, message=message)))

    def _write(self, message) -> None:
        self._out.write(encode_message(message))
        self._out.flush()


def _protocol_stdout() -> BinaryIO:
    """Reserve the real stdout for protocol frames.

    File descriptor 1 is redirected to stderr so that prints from native
    libraries cannot corrupt the frame stream.
    """
    sys.stdout.flush()
    proto_fd = os.dup(1)
    os.dup2(2, 1)
    sys.stdout = sys.stderr
    return os.fdopen(proto_fd, "wb")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Voice Scribe transcription worker")
    parser.add_argument("--stub", action="store_true", help="use the deterministic stub model")
    parser.add_argument("--stub-delay", type=float, default=0.0, help="seconds the stub model sleeps per call")
    parser.add_argument("--log-level", default=os.environ.get("VOICE_SCRIBE_WORKER_LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )

    output = _protocol_stdout()
    engine = TranscriptionEngine(use_stub=args.stub, stub_delay=args.stub_delay)
    loop = WorkerLoop(engine, output)
    try:
        loop.run(sys.stdin.buffer)
    except KeyboardInterrupt:  # pragma: no cover – interactive use
        pass
    finally:
        output.close()
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())


__all__ = [
    "TranscriptionEngine",
    "TranscriptionError",
    "StubASRModel",
    "WorkerLoop",
    "prepare_audio",
    "main",
]
