import inspect
import sys
import threading
import time
from concurrent.futures import Future
from pathlib import Path

import numpy as np
import pytest

# ---------------------------------------------------------------------------
# Ensure repository root is on sys.path
# ---------------------------------------------------------------------------
ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from scribe_core.errors import LocalTranscriptionFailedError, ModelMissingError  # noqa: E402
from scribe_core.interfaces import (  # noqa: E402
    CollectingEventSink,
    InMemoryTranscriptStore,
    RecordingEnded,
    RecordingFailed,
    StateChanged,
    TranscriptUpdated,
)
from scribe_core.transcription_client import TranscriptionResult, TranscriptionWorkerClient  # noqa: E402
from scribe_core.vad_segmenter import EnergyClassifier, SegmenterConfig, VoiceActivitySegmenter  # noqa: E402
from scribe_core.wav_reader import iter_frames  # noqa: E402
from voice_scribe.recording import RecordingMode, RecordingState, RecordingStateMachine  # noqa: E402

FRAME = 512


def _speech_frames():
    """3 silent frames, 10 tone frames, 5 silent frames (32 ms each)."""
    t = np.arange(10 * FRAME) / 16_000
    tone = (0.5 * np.sin(2 * np.pi * 220 * t)).astype(np.float32)
    silence = np.zeros(3 * FRAME, dtype=np.float32)
    tail = np.zeros(5 * FRAME, dtype=np.float32)
    return list(iter_frames(np.concatenate([silence, tone, tail]), 16_000))


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class _FakeClient:
    """Resolves chunks immediately; final chunks get the next scripted text."""

    def __init__(self, texts=("first", "second", "third"), failures=()):
        self.submissions = []
        self.retries = []
        self.cancelled = []
        self.texts = list(texts)
        self.failures = list(failures)
        self.submit_error = None
        self.hold = False
        self.held = []
        self._lock = threading.Lock()

    def _final_future(self, segment_id):
        future = Future()
        with self._lock:
            if self.failures:
                future.set_exception(self.failures.pop(0))
                return future
            result = TranscriptionResult(segment_id, self.texts.pop(0) if self.texts else "")
            if self.hold:
                self.held.append((future, result))
                return future
        future.set_result(result)
        return future

    def submit(self, segment_id, frames, is_final, *, sample_rate=None):
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append((segment_id, len(frames), is_final))
        if not is_final:
            future = Future()
            future.set_result(None)
            return future
        return self._final_future(segment_id)

    def retry_segment(self, segment_id, frames, *, sample_rate=None):
        self.retries.append((segment_id, len(frames)))
        return self._final_future(segment_id)

    def cancel_segment(self, segment_id):
        self.cancelled.append(segment_id)

    def release(self):
        with self._lock:
            self.hold = False
            held, self.held = self.held, []
        for future, result in held:
            future.set_result(result)


class _FakeHelper:
    def __init__(self, pastes=True):
        self.pastes = pastes
        self.mute_calls = 0
        self.restore_calls = 0
        self.pasted = []

    def mute_system_audio(self):
        self.mute_calls += 1
        return True

    def restore_system_audio(self):
        self.restore_calls += 1
        return True

    def paste_text(self, text):
        self.pasted.append(text)
        return self.pastes


class _ListCapture:
    def __init__(self, queue, frames):
        self.queue = queue
        self.frames = frames
        self.stopped = False

    def start(self):
        for frame in self.frames:
            self.queue.put(frame)

    def stop(self):
        self.stopped = True


@pytest.fixture()
def sink():
    return CollectingEventSink()


@pytest.fixture()
def store():
    return InMemoryTranscriptStore()


def _machine(client, frames=(), *, sink=None, helper=None, store=None, **kwargs):
    captures = []

    def factory(queue):
        capture = _ListCapture(queue, list(frames))
        captures.append(capture)
        return capture

    segmenter = VoiceActivitySegmenter(
        EnergyClassifier(),
        config=SegmenterConfig(min_consecutive_speech_frames=1, silence_timeout_ms=96),
    )
    recorder = RecordingStateMachine(
        client,
        capture_factory=factory,
        segmenter=segmenter,
        helper=helper,
        event_sink=sink,
        transcript_store=store,
        stream_chunk_frames=4,
        **kwargs,
    )
    return recorder, captures


def _ended(sink):
    return sink.of_type(RecordingEnded)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_start_stop_delivers_and_persists_transcript(sink, store):
    # GIVEN a recorder fed with one utterance
    client, helper = _FakeClient(), _FakeHelper()
    recorder, captures = _machine(client, _speech_frames(), sink=sink, helper=helper, store=store)

    # WHEN the user starts and stops recording
    assert recorder.start()
    assert recorder.state is RecordingState.RECORDING
    assert recorder.stop()
    assert recorder.wait_until_idle(3)

    # THEN the transcript is pasted, stored and announced
    ended = _ended(sink)[-1]
    assert ended.transcript == "first"
    assert ended.reason == "user"
    assert ended.delivery == "pasted"
    assert ended.lost_segments == ()
    record = store.get(ended.transcript_id)
    assert record.text == "first"
    assert record.metadata == {"mode": "hands_free", "lost_segments": 0}
    assert helper.pasted == ["first"]
    assert (helper.mute_calls, helper.restore_calls) == (1, 1)
    assert captures[0].stopped
    assert recorder.state is RecordingState.IDLE and recorder.session_id is None

    # AND the segment was streamed in chunks ending with one final chunk
    assert [final for _, _, final in client.submissions] == [False, False, False, True]
    assert sum(count for _, count, _ in client.submissions) == 13
    assert [event.state for event in sink.of_type(StateChanged)] == ["starting", "recording", "stopping", "idle"]
    assert [event.text for event in sink.of_type(TranscriptUpdated)] == ["first"]


def test_start_while_recording_is_ignored(sink):
    recorder, captures = _machine(_FakeClient(), sink=sink, paste_result=False)
    assert recorder.start()

    assert recorder.start() is False
    assert len(captures) == 1

    recorder.stop()
    assert recorder.wait_until_idle(3)


def test_no_mute_when_disabled(sink):
    helper = _FakeHelper()
    recorder, _ = _machine(_FakeClient(), sink=sink, helper=helper, mute_while_recording=False)

    recorder.start()
    recorder.stop()
    assert recorder.wait_until_idle(3)

    assert helper.mute_calls == 0


def test_stop_when_idle_returns_false(sink):
    recorder, _ = _machine(_FakeClient(), sink=sink)

    assert recorder.stop() is False
    assert recorder.cancel() is False


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_capture_failure_returns_to_idle(sink):
    helper = _FakeHelper()

    def broken(_queue):
        raise OSError("no input device")

    recorder = RecordingStateMachine(
        _FakeClient(),
        capture_factory=broken,
        segmenter=VoiceActivitySegmenter(EnergyClassifier()),
        helper=helper,
        event_sink=sink,
    )

    assert recorder.start() is False

    assert recorder.state is RecordingState.IDLE
    failures = sink.of_type(RecordingFailed)
    assert len(failures) == 1 and "no input device" in failures[0].message
    assert helper.restore_calls == 1
    assert [event.state for event in sink.of_type(StateChanged)] == ["starting", "idle"]
    assert recorder.wait_until_idle(0)


def test_retryable_failure_is_retried_once(sink):
    error = LocalTranscriptionFailedError("trace-1", "seg", 416.0, retryable=True, reason="worker crashed")
    client = _FakeClient(texts=["recovered"], failures=[error])
    recorder, _ = _machine(client, _speech_frames(), sink=sink, paste_result=False)

    recorder.start()
    recorder.stop()
    assert recorder.wait_until_idle(3)

    assert [count for _, count in client.retries] == [13]
    ended = _ended(sink)[-1]
    assert ended.transcript == "recovered"
    assert ended.lost_segments == ()


def test_second_failure_loses_the_segment(sink, store):
    errors = [
        LocalTranscriptionFailedError("trace-1", "seg", 416.0, retryable=True, reason="worker crashed"),
        LocalTranscriptionFailedError("trace-2", "seg", 416.0, retryable=True, reason="worker timed out"),
    ]
    client = _FakeClient(failures=errors)
    helper = _FakeHelper()
    recorder, _ = _machine(client, _speech_frames(), sink=sink, helper=helper, store=store)

    recorder.start()
    recorder.stop()
    assert recorder.wait_until_idle(3)

    assert len(client.retries) == 1
    ended = _ended(sink)[-1]
    assert ended.transcript == "" and ended.delivery == "none"
    assert len(ended.lost_segments) == 1
    lost = ended.lost_segments[0]
    assert (lost.trace_id, lost.lost_ms, lost.reason) == ("trace-2", 416.0, "worker timed out")
    assert helper.pasted == [] and len(store) == 0


def test_non_retryable_failure_is_not_retried(sink):
    error = LocalTranscriptionFailedError("trace-3", "seg", 100.0, retryable=False, reason="cuda_oom")
    client = _FakeClient(failures=[error])
    recorder, _ = _machine(client, _speech_frames(), sink=sink, paste_result=False)

    recorder.start()
    recorder.stop()
    assert recorder.wait_until_idle(3)

    assert client.retries == []
    assert _ended(sink)[-1].lost_segments[0].reason == "cuda_oom"


def test_model_missing_is_reported_as_lost(sink):
    client = _FakeClient(failures=[ModelMissingError("/models/absent.nemo")])
    recorder, _ = _machine(client, _speech_frames(), sink=sink, paste_result=False)

    recorder.start()
    recorder.stop()
    assert recorder.wait_until_idle(3)

    lost = _ended(sink)[-1].lost_segments
    assert len(lost) == 1 and "absent.nemo" in lost[0].reason


def test_pump_failure_publishes_recording_failed(sink):
    client = _FakeClient()
    client.submit_error = ValueError("bad chunk")
    recorder, _ = _machine(client, _speech_frames(), sink=sink, paste_result=False)

    recorder.start()
    recorder.stop()
    assert recorder.wait_until_idle(3)

    assert [event.message for event in sink.of_type(RecordingFailed)] == ["bad chunk"]
    assert len(_ended(sink)) == 1
    assert recorder.state is RecordingState.IDLE


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


def test_push_to_talk_release_stops(sink):
    recorder, _ = _machine(_FakeClient(), sink=sink)

    assert recorder.push_to_talk(True)
    assert recorder.mode is RecordingMode.PUSH_TO_TALK
    assert recorder.push_to_talk(False)
    assert recorder.wait_until_idle(3)

    assert _ended(sink)[-1].reason == "push_to_talk_released"


def test_toggle_takes_over_push_to_talk(sink):
    recorder, _ = _machine(_FakeClient(), sink=sink)
    recorder.push_to_talk(True)

    # WHEN the toggle shortcut arrives during push-to-talk
    assert recorder.toggle()

    # THEN releasing push-to-talk no longer stops the session
    assert recorder.mode is RecordingMode.HANDS_FREE
    assert recorder.push_to_talk(False) is False
    assert recorder.state is RecordingState.RECORDING

    assert recorder.toggle()
    assert recorder.wait_until_idle(3)
    assert _ended(sink)[-1].reason == "toggle"


def test_toggle_starts_hands_free(sink):
    recorder, _ = _machine(_FakeClient(), sink=sink)

    assert recorder.toggle()
    assert recorder.mode is RecordingMode.HANDS_FREE
    recorder.stop()
    assert recorder.wait_until_idle(3)


def test_start_while_stopping_queues_restart(sink):
    # GIVEN a session whose final transcription is still pending
    client = _FakeClient()
    client.hold = True
    recorder, captures = _machine(client, _speech_frames(), sink=sink, paste_result=False)
    recorder.start()
    first_session = recorder.session_id
    recorder.stop()
    assert recorder.state is RecordingState.STOPPING

    # WHEN a new start arrives
    assert recorder.start() is False
    assert recorder.pending_restart is RecordingMode.HANDS_FREE

    # THEN it runs once the first session is finished
    client.release()
    assert _wait_for(
        lambda: recorder.state is RecordingState.RECORDING and recorder.session_id != first_session
    )
    assert len(captures) == 2
    recorder.stop()
    assert _wait_for(lambda: len(_ended(sink)) == 2)
    assert recorder.wait_until_idle(3)
    assert [event.transcript for event in _ended(sink)] == ["first", "second"]


def test_push_to_talk_release_clears_queued_restart(sink):
    client = _FakeClient()
    client.hold = True
    recorder, captures = _machine(client, _speech_frames(), sink=sink, paste_result=False)
    recorder.push_to_talk(True)
    recorder.push_to_talk(False)
    assert recorder.state is RecordingState.STOPPING

    recorder.push_to_talk(True)
    assert recorder.pending_restart is RecordingMode.PUSH_TO_TALK
    recorder.push_to_talk(False)
    assert recorder.pending_restart is None

    client.release()
    assert _wait_for(lambda: len(_ended(sink)) == 1)
    assert recorder.wait_until_idle(3)
    assert len(captures) == 1


def test_cancel_discards_transcript(sink, store):
    client = _FakeClient()
    client.hold = True
    helper = _FakeHelper()
    recorder, _ = _machine(client, _speech_frames(), sink=sink, helper=helper, store=store)
    recorder.start()

    assert recorder.cancel()
    assert recorder.wait_until_idle(3)

    ended = _ended(sink)[-1]
    assert ended.reason == "cancelled"
    assert ended.transcript == ""
    assert helper.pasted == [] and len(store) == 0
    assert helper.restore_calls == 1


class _LateFramesCapture(_ListCapture):
    """Delivers a burst of frames while the device is being stopped."""

    def stop(self):
        for frame in _speech_frames():
            self.queue.put(frame)
        super().stop()


def test_cancel_discards_frames_still_queued(sink):
    # GIVEN a device that keeps delivering frames while it is being stopped
    client = _FakeClient()
    recorder = RecordingStateMachine(
        client,
        capture_factory=lambda queue: _LateFramesCapture(queue, []),
        segmenter=VoiceActivitySegmenter(EnergyClassifier()),
        event_sink=sink,
    )
    recorder.start()

    # WHEN the session is cancelled
    assert recorder.cancel()
    assert recorder.wait_until_idle(3)

    # THEN the late frames were thrown away instead of transcribed
    assert recorder.frame_queue.drain() == []
    assert client.submissions == []
    assert _ended(sink)[-1].reason == "cancelled"


def test_max_duration_stops_recording(sink):
    recorder, _ = _machine(_FakeClient(), sink=sink, max_recording_s=0.1)

    recorder.start()

    assert recorder.wait_until_idle(3)
    assert _ended(sink)[-1].reason == "max_duration"


def test_close_stops_active_session(sink):
    recorder, _ = _machine(_FakeClient(), sink=sink)
    recorder.start()

    assert recorder.close(timeout=3)
    assert _ended(sink)[-1].reason == "shutdown"


def test_from_config_applies_settings():
    config = {"stream_chunk_frames": 8, "max_recording_s": 30, "paste_result": False, "frame_queue_size": 16}

    recorder = RecordingStateMachine.from_config(
        config,
        _FakeClient(),
        capture_factory=lambda queue: _ListCapture(queue, []),
        segmenter=VoiceActivitySegmenter(EnergyClassifier()),
    )

    assert recorder.stream_chunk_frames == 8
    assert recorder.max_recording_s == 30.0
    assert recorder.paste_result is False
    assert recorder.frame_queue.maxsize == 16


# ---------------------------------------------------------------------------
# Real worker process (stub model)
# ---------------------------------------------------------------------------


class _SteppedCapture(_ListCapture):
    """Delivers its initial frames on start and the rest on demand."""

    def push(self, frames):
        for frame in frames:
            self.queue.put(frame)


def test_worker_killed_mid_session_is_retried_from_segment_audio(sink):
    frames = _speech_frames()
    with TranscriptionWorkerClient(use_stub=True, call_timeout=30.0) as client:
        client.load_model(None)
        crashed = threading.Event()
        client.manager.on_crash(lambda _handle, _code: crashed.set())

        futures = []
        submit = client.submit

        def _recording_submit(*args, **kwargs):
            future = submit(*args, **kwargs)
            futures.append(future)
            return future

        client.submit = _recording_submit

        captures = []

        def factory(queue):
            capture = _SteppedCapture(queue, frames[:9])
            captures.append(capture)
            return capture

        recorder = RecordingStateMachine(
            client,
            capture_factory=factory,
            segmenter=VoiceActivitySegmenter(
                EnergyClassifier(),
                config=SegmenterConfig(min_consecutive_speech_frames=1, silence_timeout_ms=96),
            ),
            event_sink=sink,
            paste_result=False,
            stream_chunk_frames=4,
        )

        # GIVEN a recording whose first chunk already reached the worker
        assert recorder.start()
        assert _wait_for(lambda: futures and futures[0].done(), timeout=30)
        assert futures[0].exception() is None

        # WHEN the worker dies in the middle of the utterance
        client.manager.handle.kill()
        assert crashed.wait(10)
        captures[0].push(frames[9:])
        assert recorder.stop()
        assert recorder.wait_until_idle(30)

        # THEN the segment is retried as a whole on a fresh worker
        ended = _ended(sink)[-1]
        assert ended.transcript == "hello world"
        assert ended.lost_segments == ()
        assert client.manager.restarts == 1
