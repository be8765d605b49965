"""Voice Activity Detection (VAD) segmenter.

Frames are classified into a speech probability and fed through a hysteresis
state-machine with four phases::

    SILENCE -> POSSIBLE_SPEECH -> SPEECH <-> TRAILING -> SILENCE

The machine itself is the pure function :func:`transition` operating on the
immutable :class:`SegmenterState`, so it can be unit-tested with synthetic
probability sequences.  :class:`VoiceActivitySegmenter` wraps it with the I/O
side: it owns the open :class:`~scribe_core.audio_types.Segment`, keeps the
onset (and optional pre-roll) frames and handles stream discontinuities.

Two classifiers ship with the module – :class:`WebRtcClassifier` (webrtcvad)
and :class:`EnergyClassifier` (RMS level) – selected through the
``vad_backend`` config key.
"""

from __future__ import annotations

import enum
import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Protocol, Tuple, Union

import numpy as np

from .audio_types import AudioFrame, Segment

__all__ = [
    "Phase",
    "SegmenterConfig",
    "SegmenterState",
    "SegmentStarted",
    "SegmentEnded",
    "transition",
    "SpeechClassifier",
    "WebRtcClassifier",
    "EnergyClassifier",
    "build_classifier",
    "VoiceActivitySegmenter",
]

_LOG = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pure state-machine
# ---------------------------------------------------------------------------


class Phase(str, enum.Enum):
    SILENCE = "silence"
    POSSIBLE_SPEECH = "possible_speech"
    SPEECH = "speech"
    TRAILING = "trailing"


@dataclass(frozen=True, slots=True)
class SegmenterConfig:
    on_threshold: float = 0.5
    off_threshold: float = 0.35
    min_consecutive_speech_frames: int = 3
    silence_timeout_ms: float = 800.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.off_threshold <= self.on_threshold <= 1.0:
            raise ValueError("thresholds must satisfy 0 <= off_threshold <= on_threshold <= 1")
        if self.min_consecutive_speech_frames < 1:
            raise ValueError("min_consecutive_speech_frames must be >= 1")
        if self.silence_timeout_ms <= 0:
            raise ValueError("silence_timeout_ms must be positive")


@dataclass(frozen=True, slots=True)
class SegmenterState:
    phase: Phase = Phase.SILENCE
    speech_run: int = 0
    """Consecutive frames >= on threshold while in POSSIBLE_SPEECH."""
    trailing_ms: float = 0.0
    """Accumulated low-probability time while in TRAILING."""


@dataclass(frozen=True, slots=True)
class SegmentStarted:
    reason: str = "speech"
    segment: Optional[Segment] = None


@dataclass(frozen=True, slots=True)
class SegmentEnded:
    final: bool = True
    reason: str = "silence"
    segment: Optional[Segment] = None


SegmentEvent = Union[SegmentStarted, SegmentEnded]


def transition(
    state: SegmenterState,
    probability: float,
    elapsed_ms: float,
    config: SegmenterConfig,
) -> Tuple[SegmenterState, Tuple[SegmentEvent, ...]]:
    """Advance *state* by one frame of *elapsed_ms* with speech *probability*.

    Returns the new state and the events emitted by the step.  The function
    has no side effects.
    """

    speech = probability >= config.on_threshold
    phase = state.phase

    if phase is Phase.SILENCE:
        if not speech:
            return state, ()
        if config.min_consecutive_speech_frames <= 1:
            return SegmenterState(Phase.SPEECH), (SegmentStarted(),)
        return SegmenterState(Phase.POSSIBLE_SPEECH, speech_run=1), ()

    if phase is Phase.POSSIBLE_SPEECH:
        if not speech:
            # False trigger – no event.
            return SegmenterState(Phase.SILENCE), ()
        run = state.speech_run + 1
        if run >= config.min_consecutive_speech_frames:
            return SegmenterState(Phase.SPEECH), (SegmentStarted(),)
        return SegmenterState(Phase.POSSIBLE_SPEECH, speech_run=run), ()

    if phase is Phase.SPEECH:
        if probability >= config.off_threshold:
            return state, ()
        return _accumulate_trailing(0.0, elapsed_ms, config)

    # Phase.TRAILING
    if speech:
        return SegmenterState(Phase.SPEECH), ()
    return _accumulate_trailing(state.trailing_ms, elapsed_ms, config)


def _accumulate_trailing(
    trailing_ms: float, elapsed_ms: float, config: SegmenterConfig
) -> Tuple[SegmenterState, Tuple[SegmentEvent, ...]]:
    total = trailing_ms + elapsed_ms
    if total >= config.silence_timeout_ms:
        return SegmenterState(Phase.SILENCE), (SegmentEnded(final=True, reason="silence"),)
    return SegmenterState(Phase.TRAILING, trailing_ms=total), ()


# ---------------------------------------------------------------------------
# Classifiers
# ---------------------------------------------------------------------------


class SpeechClassifier(Protocol):
    def speech_probability(self, frame: AudioFrame) -> float:
        ...


class WebRtcClassifier:
    """Speech probability = fraction of voiced WebRTC VAD sub-frames.

    webrtcvad only accepts 10/20/30 ms of 16-bit PCM, so each frame is split
    into *sub_frame_ms* windows; a trailing remainder shorter than one window
    is ignored.
    """

    _SUPPORTED_RATES = (8000, 16000, 32000, 48000)

    def __init__(self, aggressiveness: int = 2, *, sub_frame_ms: int = 10) -> None:
        if sub_frame_ms not in (10, 20, 30):
            raise ValueError("sub_frame_ms must be 10, 20 or 30 ms for webrtcvad")
        import webrtcvad  # pylint: disable=import-outside-toplevel

        self.sub_frame_ms = sub_frame_ms
        self._vad = webrtcvad.Vad(int(aggressiveness))

    def speech_probability(self, frame: AudioFrame) -> float:
        if frame.sample_rate not in self._SUPPORTED_RATES:
            raise ValueError(f"webrtcvad does not support {frame.sample_rate} Hz audio")
        window = frame.sample_rate * self.sub_frame_ms // 1000
        pcm = (np.clip(frame.samples, -1.0, 1.0) * 32767.0).astype("<i2")
        windows = pcm.shape[0] // window
        if windows == 0:
            return 0.0
        voiced = 0
        for idx in range(windows):
            chunk = pcm[idx * window:(idx + 1) * window].tobytes()
            if self._vad.is_speech(chunk, frame.sample_rate):
                voiced += 1
        return voiced / windows


class EnergyClassifier:
    """Map the frame's RMS level (dBFS) linearly onto ``[0, 1]``."""

    def __init__(self, *, floor_db: float = -50.0, ceiling_db: float = -20.0) -> None:
        if ceiling_db <= floor_db:
            raise ValueError("ceiling_db must be greater than floor_db")
        self.floor_db = floor_db
        self.ceiling_db = ceiling_db

    def speech_probability(self, frame: AudioFrame) -> float:
        if frame.num_samples == 0:
            return 0.0
        rms = float(np.sqrt(np.mean(np.square(frame.samples, dtype=np.float64))))
        if rms <= 0.0:
            return 0.0
        level = 20.0 * math.log10(rms)
        return (level - self.floor_db) / (self.ceiling_db - self.floor_db)


def build_classifier(config) -> SpeechClassifier:
    """Instantiate the classifier named by the ``vad_backend`` config key."""
    backend = str(config.get("vad_backend", "webrtc")).lower()
    if backend == "energy":
        return EnergyClassifier()
    if backend == "webrtc":
        return WebRtcClassifier(int(config.get("vad_aggressiveness", 2)))
    raise ValueError(f"Unknown vad_backend '{backend}'")


# ---------------------------------------------------------------------------
# Stateful wrapper
# ---------------------------------------------------------------------------


class VoiceActivitySegmenter:  # pylint: disable=too-many-instance-attributes
    """Turn a frame stream into :class:`Segment` objects.

    The segmenter is not thread-safe; the recording pump thread owns it
    exclusively.
    """

    def __init__(
        self,
        classifier: SpeechClassifier,
        *,
        config: Optional[SegmenterConfig] = None,
        pre_roll_frames: int = 0,
        max_segment_ms: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._classifier = classifier
        self.config = config or SegmenterConfig()
        self.max_segment_ms = max_segment_ms
        self._log = logger or _LOG

        self._state = SegmenterState()
        self._segment: Optional[Segment] = None
        self._onset: List[AudioFrame] = []
        self._pre_roll: Deque[AudioFrame] = deque(maxlen=max(0, pre_roll_frames))
        self._last: Optional[AudioFrame] = None
        self._split_pending = False

    @classmethod
    def from_config(cls, config, classifier: Optional[SpeechClassifier] = None, **kwargs) -> "VoiceActivitySegmenter":
        seg_config = SegmenterConfig(
            on_threshold=float(config.get("vad_on_threshold", 0.5)),
            off_threshold=float(config.get("vad_off_threshold", 0.35)),
            min_consecutive_speech_frames=int(config.get("min_consecutive_speech_frames", 3)),
            silence_timeout_ms=float(config.get("silence_timeout_ms", 800)),
        )
        max_segment_ms = config.get("max_segment_ms")
        return cls(
            classifier or build_classifier(config),
            config=seg_config,
            pre_roll_frames=int(config.get("pre_roll_frames", 0) or 0),
            max_segment_ms=float(max_segment_ms) if max_segment_ms else None,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def classify(self, frame: AudioFrame) -> float:
        """Return the clamped speech probability for *frame*."""
        probability = float(self._classifier.speech_probability(frame))
        if math.isnan(probability):
            return 0.0
        return min(1.0, max(0.0, probability))

    def process(self, frame: AudioFrame) -> List[SegmentEvent]:
        """Feed one frame; return the events it caused (usually none)."""

        events: List[SegmentEvent] = []
        if self._is_discontinuous(frame):
            if self._handle_discontinuity(frame, events):
                self._last = frame
                return events

        self._last = frame
        previous = self._state.phase
        probability = self.classify(frame)
        self._state, emitted = transition(self._state, probability, frame.duration_ms, self.config)
        current = self._state.phase

        started = any(isinstance(ev, SegmentStarted) for ev in emitted)
        ended = any(isinstance(ev, SegmentEnded) for ev in emitted)

        if started:
            segment = self._open_segment([*self._pre_roll, *self._onset, frame])
            self._pre_roll.clear()
            self._onset.clear()
            events.append(SegmentStarted(reason="speech", segment=segment))
        elif previous in (Phase.SPEECH, Phase.TRAILING):
            if self._segment is None:
                # Previous segment was split on max length.
                self._split_pending = False
                if ended:
                    # Only trailing silence was left after the split.
                    self._pre_roll.append(frame)
                else:
                    segment = self._open_segment([frame])
                    events.append(SegmentStarted(reason="max_length", segment=segment))
            else:
                self._segment.append(frame)
                if ended:
                    events.append(self._close_segment(final=True, reason="silence"))
        elif current is Phase.POSSIBLE_SPEECH:
            self._onset.append(frame)
        else:
            # Silence, including a false trigger: onset frames become pre-roll.
            for held in self._onset:
                self._pre_roll.append(held)
            self._onset.clear()
            self._pre_roll.append(frame)

        self._enforce_max_length(events)
        return events

    def flush(self) -> List[SegmentEvent]:
        """Close the open segment (end of recording) and reset the machine."""
        events: List[SegmentEvent] = []
        if self._segment is not None:
            events.append(self._close_segment(final=True, reason="flush"))
        self._state = SegmenterState()
        self._onset.clear()
        self._pre_roll.clear()
        self._split_pending = False
        return events

    def reset(self) -> None:
        """Drop all state including the open segment, emitting nothing."""
        if self._segment is not None:
            self._log.debug("Discarding open segment %s on reset", self._segment.id)
        self._state = SegmenterState()
        self._segment = None
        self._onset.clear()
        self._pre_roll.clear()
        self._last = None
        self._split_pending = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> SegmenterState:
        return self._state

    @property
    def open_segment(self) -> Optional[Segment]:
        return self._segment

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _is_discontinuous(self, frame: AudioFrame) -> bool:
        last = self._last
        if last is None:
            return False
        if frame.sequence != last.sequence + 1:
            return True
        return frame.timestamp_ms - last.timestamp_ms > 2 * last.duration_ms

    def _handle_discontinuity(self, frame: AudioFrame, events: List[SegmentEvent]) -> bool:
        """Return *True* when *frame* was consumed by opening a new segment."""
        self._log.warning(
            "Audio discontinuity: frame #%d at %.1f ms after #%d at %.1f ms",
            frame.sequence, frame.timestamp_ms, self._last.sequence, self._last.timestamp_ms,
        )
        if self._segment is None and not self._split_pending:
            # Nothing open: held onset/pre-roll frames are no longer contiguous.
            self._state = SegmenterState()
            self._onset.clear()
            self._pre_roll.clear()
            return False

        if self._segment is not None:
            events.append(self._close_segment(final=False, reason="discontinuity"))
        self._split_pending = False
        segment = self._open_segment([frame])
        self._state = SegmenterState(Phase.SPEECH)
        events.append(SegmentStarted(reason="discontinuity", segment=segment))
        return True

    def _enforce_max_length(self, events: List[SegmentEvent]) -> None:
        segment = self._segment
        if segment is None or self.max_segment_ms is None:
            return
        if segment.duration_ms >= self.max_segment_ms:
            events.append(self._close_segment(final=True, reason="max_length"))
            self._split_pending = True

    def _open_segment(self, frames: List[AudioFrame]) -> Segment:
        segment = Segment()
        segment.extend(frames)
        self._segment = segment
        self._log.debug("Segment %s started at %.1f ms", segment.id, segment.start_ms)
        return segment

    def _close_segment(self, *, final: bool, reason: str) -> SegmentEnded:
        segment = self._segment
        assert segment is not None
        segment.close(partial=not final, reason=reason)
        self._segment = None
        self._log.debug(
            "Segment %s ended (%s, %d frames, %.0f ms)", segment.id, reason, len(segment), segment.duration_ms
        )
        return SegmentEnded(final=final, reason=reason, segment=segment)
