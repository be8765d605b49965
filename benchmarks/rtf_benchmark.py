"""Benchmark script measuring the Real-Time-Factor (RTF) of the speech model.

This module can be executed as a CLI or imported as a library.

• Measures the median RTFx (audio seconds per wall-clock second) for a WAV
  file or a generated 30-second sample.
• ``--via-worker`` runs the measurement through the transcription worker
  process so the IPC round trip (base64 framing, JSON, pipe latency) is
  included.
• Persists a baseline in ``benchmark_baselines.json`` and fails the process
  (non-zero exit status) when the current RTF regresses by more than 10 %.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import numpy as np

# ---------------------------------------------------------------------------
# Ensure repository root is importable so that ``scribe_core`` etc. resolve
# regardless of where the script is invoked from.
# ---------------------------------------------------------------------------
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from scribe_core.transcription_client import TranscriptionWorkerClient  # noqa: E402
from scribe_core.transcription_worker import MODEL_SAMPLE_RATE, TranscriptionEngine  # noqa: E402
from scribe_core.wav_reader import read_wav  # noqa: E402

# ---------------------------------------------------------------------------
# Constants & helpers
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent
_DEFAULT_BASELINE_FILE = _THIS_DIR / "benchmark_baselines.json"
_SAMPLE_DURATION = 30  # seconds
_REGRESSION_TOLERANCE = 0.10  # 10 %

_LOG = logging.getLogger("benchmarks.rtf")


def _generate_sample(duration_sec: int = _SAMPLE_DURATION) -> np.ndarray:
    """Return *duration_sec* of low-level noise (float32, 16 kHz)."""

    rng = np.random.default_rng(0)
    return (rng.standard_normal(MODEL_SAMPLE_RATE * duration_sec) * 0.01).astype(np.float32)


def _load_audio(wav: Optional[Path]) -> tuple:
    if wav is None:
        return _generate_sample(), MODEL_SAMPLE_RATE
    audio = read_wav(wav)
    return audio.samples, audio.sample_rate


# ---------------------------------------------------------------------------
# Core benchmark logic
# ---------------------------------------------------------------------------

def run_benchmark(
    *,
    repeats: int = 3,
    use_stub: bool = False,
    model_path: Optional[str] = None,
    wav: Optional[Path] = None,
) -> float:
    """Measure the *median* in-process RTF across *repeats* runs and return it."""

    samples, sample_rate = _load_audio(wav)
    engine = TranscriptionEngine(use_stub=use_stub)
    engine.load_model(model_path)

    rtf_values: List[float] = []
    for _ in range(repeats):
        rtf_values.append(engine.benchmark_rtf(samples, sample_rate))

    engine.unload_model()
    return _summarise(rtf_values)


def run_worker_benchmark(
    *,
    repeats: int = 3,
    use_stub: bool = False,
    model_path: Optional[str] = None,
    wav: Optional[Path] = None,
) -> float:
    """Like :func:`run_benchmark` but through the transcription worker process."""

    samples, sample_rate = _load_audio(wav)
    audio_seconds = samples.shape[0] / sample_rate
    rtf_values: List[float] = []
    with TranscriptionWorkerClient(use_stub=use_stub, call_timeout=600.0) as client:
        client.load_model(model_path)
        for index in range(repeats):
            start = time.perf_counter()
            client.transcribe(f"benchmark-{index}", samples, sample_rate=sample_rate)
            elapsed = time.perf_counter() - start
            rtf_values.append(audio_seconds / elapsed if elapsed else float("inf"))
    return _summarise(rtf_values)


def _summarise(rtf_values: List[float]) -> float:
    median_rtf = float(np.median(rtf_values))
    _LOG.info("RTF samples: %s", ", ".join(f"{v:.2f}" for v in rtf_values))
    _LOG.info("Median RTFx: %.2f", median_rtf)
    return median_rtf


# ---------------------------------------------------------------------------
# Baseline helpers
# ---------------------------------------------------------------------------

def _read_baseline(path: Path) -> float | None:
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
            return float(data.get("rtf_median", 0.0))
    except FileNotFoundError:
        return None


def _write_baseline(path: Path, rtf: float) -> None:
    with path.open("w", encoding="utf-8") as fh:
        json.dump({"rtf_median": rtf, "timestamp": datetime.now(timezone.utc).isoformat()}, fh, indent=2)
    _LOG.info("Baseline updated → %.2f (saved to %s)", rtf, path)


def check_regression(median_rtf: float, baseline_rtf: float, tolerance: float = _REGRESSION_TOLERANCE) -> bool:
    """Return *True* when *median_rtf* is within *tolerance* of the baseline."""
    return median_rtf >= baseline_rtf * (1 - tolerance)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Voice Scribe RTF benchmark")
    parser.add_argument("--repeats", type=int, default=3, help="Number of benchmark iterations")
    parser.add_argument("--baseline", type=Path, default=_DEFAULT_BASELINE_FILE, help="Path to baseline JSON")
    parser.add_argument("--update-baseline", action="store_true", help="Overwrite baseline with new results")
    parser.add_argument("--use-stub", action="store_true", help="Force stub ASR engine (fast, GPU-less)")
    parser.add_argument("--model", help="Path to the .nemo checkpoint")
    parser.add_argument("--wav", type=Path, help="Benchmark this 16-bit PCM WAV instead of a generated sample")
    parser.add_argument("--via-worker", action="store_true", help="Measure through the worker process")
    parser.add_argument("--output-json", type=Path, help="Write current results JSON to this path")
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> None:
    """Entry-point used by ``python -m benchmarks.rtf_benchmark``."""

    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    runner = run_worker_benchmark if args.via_worker else run_benchmark
    median_rtf = runner(repeats=args.repeats, use_stub=args.use_stub, model_path=args.model, wav=args.wav)

    # ------------------------------------------------------------------
    # Baseline handling (fail CI on regression)
    # ------------------------------------------------------------------
    baseline_rtf = _read_baseline(args.baseline)
    if args.update_baseline or baseline_rtf is None:
        _write_baseline(args.baseline, median_rtf)
        baseline_rtf = median_rtf

    if not check_regression(median_rtf, baseline_rtf):
        _LOG.error(
            "Performance regression detected! Current RTFx %.2f < allowed %.2f (baseline %.2f)",
            median_rtf,
            baseline_rtf * (1 - _REGRESSION_TOLERANCE),
            baseline_rtf,
        )
        sys.exit(1)

    _LOG.info("Benchmark passed – performance within acceptable range")

    if args.output_json:
        payload = {
            "rtf_median": median_rtf,
            "baseline_rtf": baseline_rtf,
            "via_worker": args.via_worker,
        }
        with args.output_json.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
        _LOG.info("Results written to %s", args.output_json)


if __name__ == "__main__":
    main()
