from __future__ import annotations

"""Audio data model shared by capture, segmentation and transcription.

Audio is always mono float32 in ``[-1, 1]``.  :class:`AudioFrame` is immutable
once produced; :class:`Segment` collects a gap-free run of frames between a
speech onset and its offset.
"""

import uuid
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import numpy as np

from .errors import SequenceGapError

__all__ = [
    "SAMPLE_RATE",
    "FRAME_SAMPLES",
    "AudioFrame",
    "Segment",
    "frames_to_samples",
]

SAMPLE_RATE = 16_000
FRAME_SAMPLES = 512  # 32 ms @ 16 kHz


@dataclass(frozen=True, slots=True)
class AudioFrame:
    """One capture buffer of mono float32 samples."""

    samples: np.ndarray
    sample_rate: int
    timestamp_ms: float
    sequence: int

    def __post_init__(self) -> None:
        data = np.array(self.samples, dtype=np.float32, copy=True).reshape(-1)
        data.setflags(write=False)
        object.__setattr__(self, "samples", data)

    @property
    def num_samples(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration_ms(self) -> float:
        return 1000.0 * self.num_samples / self.sample_rate

    @property
    def end_ms(self) -> float:
        return self.timestamp_ms + self.duration_ms


def frames_to_samples(frames: Iterable[AudioFrame]) -> np.ndarray:
    """Concatenate the samples of *frames* into one float32 array."""
    chunks = [frame.samples for frame in frames]
    if not chunks:
        return np.zeros(0, dtype=np.float32)
    return np.concatenate(chunks).astype(np.float32, copy=False)


@dataclass(slots=True)
class Segment:
    """Ordered, gap-free frames between a speech onset and offset."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    frames: List[AudioFrame] = field(default_factory=list)
    closed: bool = False
    partial: bool = False
    reason: Optional[str] = None

    def append(self, frame: AudioFrame) -> None:
        """Add *frame*; raises :class:`SequenceGapError` on a sequence gap."""
        if self.closed:
            raise ValueError(f"Segment {self.id} is closed")
        if self.frames and frame.sequence != self.frames[-1].sequence + 1:
            raise SequenceGapError(
                f"Frame #{frame.sequence} does not follow #{self.frames[-1].sequence} in segment {self.id}"
            )
        self.frames.append(frame)

    def extend(self, frames: Iterable[AudioFrame]) -> None:
        for frame in frames:
            self.append(frame)

    def close(self, *, partial: bool = False, reason: str = "silence") -> None:
        self.closed = True
        self.partial = partial
        self.reason = reason

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------
    @property
    def start_ms(self) -> float:
        return self.frames[0].timestamp_ms if self.frames else 0.0

    @property
    def end_ms(self) -> float:
        return self.frames[-1].end_ms if self.frames else 0.0

    @property
    def duration_ms(self) -> float:
        return sum(frame.duration_ms for frame in self.frames)

    @property
    def sample_rate(self) -> int:
        return self.frames[0].sample_rate if self.frames else SAMPLE_RATE

    def samples(self) -> np.ndarray:
        return frames_to_samples(self.frames)

    def __len__(self) -> int:
        return len(self.frames)
