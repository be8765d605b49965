import inspect
import logging
import sys
import threading
from pathlib import Path

import numpy as np
import pytest

# Ensure repo root is on sys.path so local imports work when running via `python -m pytest` from subdir
ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import scribe_core.audio_listener as al  # noqa: E402
from scribe_core.audio_listener import AudioCaptureSession, WavCaptureSession, make_frame_queue  # noqa: E402
from scribe_core.audio_types import AudioFrame  # noqa: E402
from scribe_core.wav_reader import WavAudio  # noqa: E402

# ---------------------------------------------------------------------------
# PyAudio stub
# ---------------------------------------------------------------------------


class _StubStream:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs["stream_callback"]
        self.started = False
        self.closed = False

    def start_stream(self):
        self.started = True

    def is_active(self):
        return self.started and not self.closed

    def stop_stream(self):
        self.started = False

    def close(self):
        self.closed = True


class _StubPyAudioModule:
    paFloat32 = 1
    paContinue = 0

    def __init__(self, *, fail_open: bool = False):
        self.fail_open = fail_open
        self.streams = []
        self.terminated = 0

    def PyAudio(self):  # noqa: N802 – mirrors the real API
        module = self

        class _Instance:
            def open(self, **kwargs):  # noqa: D401 – stub
                if module.fail_open:
                    raise OSError("Invalid input device")
                stream = _StubStream(**kwargs)
                module.streams.append(stream)
                return stream

            def terminate(self):  # noqa: D401 – stub
                module.terminated += 1

        return _Instance()


@pytest.fixture()
def stub_pyaudio(monkeypatch):
    module = _StubPyAudioModule()
    monkeypatch.setattr(al, "pyaudio", module)
    return module


def _buffer(value: float, samples: int = 512) -> bytes:
    return np.full(samples, value, dtype=np.float32).tobytes()


# ---------------------------------------------------------------------------
# Microphone capture
# ---------------------------------------------------------------------------


def test_capture_callback_enqueues_sequenced_frames(stub_pyaudio):
    # GIVEN a running capture session on the stubbed PyAudio backend
    queue = make_frame_queue(8)
    session = AudioCaptureSession(queue, device_index=3)
    session.start()
    stream = stub_pyaudio.streams[0]

    # WHEN PortAudio delivers two buffers
    assert stream.callback(_buffer(0.25), 512, None, 0) == (None, stub_pyaudio.paContinue)
    stream.callback(_buffer(-0.5), 512, None, 0)

    # THEN two immutable frames with consecutive sequence numbers are queued
    first, second = queue.get(timeout=1), queue.get(timeout=1)
    assert (first.sequence, second.sequence) == (0, 1)
    assert first.timestamp_ms == 0.0
    assert second.timestamp_ms == pytest.approx(32.0)
    assert first.samples[0] == pytest.approx(0.25)
    assert not first.samples.flags.writeable

    assert stream.kwargs["rate"] == 16_000
    assert stream.kwargs["channels"] == 1
    assert stream.kwargs["frames_per_buffer"] == 512
    assert stream.kwargs["format"] == stub_pyaudio.paFloat32
    assert stream.kwargs["input_device_index"] == 3

    session.stop()
    assert stream.closed
    assert stub_pyaudio.terminated == 1
    assert not session.active


def test_capture_start_is_idempotent(stub_pyaudio):
    session = AudioCaptureSession(make_frame_queue(4))

    session.start()
    session.start()

    assert len(stub_pyaudio.streams) == 1
    session.stop()


def test_capture_device_failure_raises_and_releases(monkeypatch):
    module = _StubPyAudioModule(fail_open=True)
    monkeypatch.setattr(al, "pyaudio", module)
    session = AudioCaptureSession(make_frame_queue(4))

    with pytest.raises(OSError):
        session.start()

    assert module.terminated == 1
    assert not session.active


def test_callback_after_queue_closed_is_ignored(stub_pyaudio):
    queue = make_frame_queue(4)
    session = AudioCaptureSession(queue)
    session.start()
    queue.close()

    stub_pyaudio.streams[0].callback(_buffer(0.1), 512, None, 0)

    with pytest.raises(EOFError):
        queue.get(timeout=0.1)
    session.stop()


def test_from_config_reads_capture_keys(stub_pyaudio):
    config = {"sample_rate": 8000, "frame_samples": 256, "input_device_index": 1}
    session = AudioCaptureSession.from_config(config, make_frame_queue(4))

    session.start()

    kwargs = stub_pyaudio.streams[0].kwargs
    assert (kwargs["rate"], kwargs["frames_per_buffer"], kwargs["input_device_index"]) == (8000, 256, 1)
    session.stop()


# ---------------------------------------------------------------------------
# Frame queue
# ---------------------------------------------------------------------------


def test_frame_queue_drops_oldest_with_single_warning(caplog):
    queue = make_frame_queue(2)
    frames = [AudioFrame(np.zeros(4), 16_000, 0.0, seq) for seq in range(5)]

    with caplog.at_level(logging.WARNING, logger="scribe_core.audio_listener"):
        for frame in frames:
            queue.put(frame)

    assert [queue.get(timeout=0.1).sequence for _ in range(2)] == [3, 4]
    assert queue.dropped == 3
    # Drop warnings are rate-limited.
    assert len([r for r in caplog.records if "Frame queue full" in r.message]) == 1


# ---------------------------------------------------------------------------
# WAV replay
# ---------------------------------------------------------------------------


def _audio(samples: int = 1300) -> WavAudio:
    data = np.linspace(-0.5, 0.5, samples, dtype=np.float32)
    return WavAudio(samples=data, sample_rate=16_000, duration=samples / 16_000)


def test_wav_replay_pushes_all_frames_then_finishes():
    queue = make_frame_queue(16)
    finished = threading.Event()
    session = WavCaptureSession(_audio(), queue, on_finished=finished.set)

    session.start()

    assert finished.wait(2)
    assert session.finished.is_set()
    frames = queue.drain()
    # 1300 samples → two full frames plus one zero-padded frame.
    assert [frame.sequence for frame in frames] == [0, 1, 2]
    assert all(frame.num_samples == 512 for frame in frames)
    assert frames[-1].samples[-1] == 0.0
    session.stop()
    assert not session.active


def test_wav_replay_stops_when_queue_closes():
    queue = make_frame_queue(16)
    queue.close()
    finished = threading.Event()
    session = WavCaptureSession(_audio(), queue, on_finished=finished.set)

    session.start()

    assert finished.wait(2)
    assert len(queue) == 0
