from __future__ import annotations

"""Minimal RIFF/WAVE reader for offline transcription.

Only uncompressed 16-bit PCM is accepted.  The header is validated *before*
any sample is decoded so unsupported files fail fast with
:class:`~scribe_core.errors.WavFormatError`.  Multi-channel audio is averaged
down to mono float32 in ``[-1, 1]``.
"""

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Union

import numpy as np

from .audio_types import FRAME_SAMPLES, SAMPLE_RATE, AudioFrame
from .errors import WavFormatError

__all__ = ["WavAudio", "read_wav", "parse_wav", "iter_frames", "resample"]

_LOG = logging.getLogger(__name__)

_DATA_SCAN_START = 36  # first byte after a canonical 16-byte fmt chunk


@dataclass(slots=True)
class WavAudio:
    samples: np.ndarray
    sample_rate: int
    duration: float
    channels: int = 1


def read_wav(path: Union[str, Path]) -> WavAudio:
    """Read *path* and return mono float32 samples plus format information."""
    data = Path(path).read_bytes()
    audio = parse_wav(data)
    _LOG.debug(
        "Read %s: %d samples @ %d Hz (%.2fs, %d channel(s))",
        path, audio.samples.shape[0], audio.sample_rate, audio.duration, audio.channels,
    )
    return audio


def parse_wav(buffer: bytes) -> WavAudio:
    """Decode an in-memory WAV file.  See :func:`read_wav`."""

    if len(buffer) < 44:
        raise WavFormatError("Invalid WAV file: header truncated")
    if buffer[0:4] != b"RIFF":
        raise WavFormatError("Invalid WAV file: missing RIFF header")
    if buffer[8:12] != b"WAVE":
        raise WavFormatError("Invalid WAV file: missing WAVE format")
    if buffer[12:16] != b"fmt ":
        raise WavFormatError("Invalid WAV file: missing fmt chunk")

    audio_format, channels, sample_rate = struct.unpack_from("<HHI", buffer, 20)
    (bit_depth,) = struct.unpack_from("<H", buffer, 34)

    if audio_format != 1:
        raise WavFormatError(f"Unsupported audio format: {audio_format} (only PCM is supported)")
    if bit_depth != 16:
        raise WavFormatError(f"Unsupported bit depth: {bit_depth} (only 16-bit is supported)")
    if channels < 1:
        raise WavFormatError("Invalid WAV file: zero channels")
    if sample_rate <= 0:
        raise WavFormatError("Invalid WAV file: zero sample rate")

    # The data chunk is not necessarily directly after fmt (LIST/fact chunks).
    offset = _DATA_SCAN_START
    data_start = data_size = None
    while offset + 8 <= len(buffer):
        chunk_id = buffer[offset:offset + 4]
        (chunk_size,) = struct.unpack_from("<I", buffer, offset + 4)
        if chunk_id == b"data":
            data_start = offset + 8
            data_size = chunk_size
            break
        offset += 8 + chunk_size + (chunk_size & 1)  # chunks are word aligned

    if data_start is None:
        raise WavFormatError("Invalid WAV file: data chunk not found")

    payload = buffer[data_start:data_start + data_size]
    frame_bytes = 2 * channels
    usable = len(payload) - (len(payload) % frame_bytes)
    pcm = np.frombuffer(payload[:usable], dtype="<i2").astype(np.float32) / 32768.0
    if channels > 1:
        pcm = pcm.reshape(-1, channels).mean(axis=1)

    samples = pcm.astype(np.float32, copy=False)
    return WavAudio(
        samples=samples,
        sample_rate=int(sample_rate),
        duration=samples.shape[0] / float(sample_rate),
        channels=int(channels),
    )


def iter_frames(
    samples: np.ndarray,
    sample_rate: int,
    *,
    frame_samples: int = FRAME_SAMPLES,
    start_sequence: int = 0,
    pad_last: bool = True,
) -> Iterator[AudioFrame]:
    """Split *samples* into consecutive :class:`AudioFrame` objects.

    The trailing partial frame is zero-padded when *pad_last* is set, otherwise
    it is dropped.
    """

    total = int(samples.shape[0])
    sequence = start_sequence
    for start in range(0, total, frame_samples):
        chunk = samples[start:start + frame_samples]
        if chunk.shape[0] < frame_samples:
            if not pad_last:
                break
            chunk = np.pad(chunk, (0, frame_samples - chunk.shape[0]))
        yield AudioFrame(
            samples=chunk,
            sample_rate=sample_rate,
            timestamp_ms=1000.0 * start / sample_rate,
            sequence=sequence,
        )
        sequence += 1


def resample(audio: WavAudio, target_rate: int = SAMPLE_RATE) -> WavAudio:
    """Return *audio* linearly resampled to *target_rate* (no-op when equal)."""

    if audio.sample_rate == target_rate or audio.samples.shape[0] == 0:
        return audio
    duration = audio.samples.shape[0] / float(audio.sample_rate)
    target_len = int(round(duration * target_rate))
    positions = np.linspace(0, audio.samples.shape[0] - 1, num=target_len)
    samples = np.interp(positions, np.arange(audio.samples.shape[0]), audio.samples).astype(np.float32)
    _LOG.debug("Resampled %d Hz → %d Hz (%d samples)", audio.sample_rate, target_rate, target_len)
    return WavAudio(samples=samples, sample_rate=target_rate, duration=duration, channels=audio.channels)
