import inspect
import logging
import sys
import threading
import time
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Ensure repository root is on sys.path
# ---------------------------------------------------------------------------
ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ipc import (  # noqa: E402
    RemoteError,
    RestartPolicy,
    SpawnError,
    WorkerCrashed,
    WorkerProcessManager,
    WorkerState,
    WorkerTimeoutError,
)

SCRIPTED_WORKER = ROOT_DIR / "tests" / "helpers" / "scripted_worker.py"
FAST_POLICY = RestartPolicy(max_restarts=3, initial_backoff=0.05, multiplier=2.0, max_backoff=0.2)


def _command(*extra):
    return [sys.executable, str(SCRIPTED_WORKER), *extra]


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def make_manager():
    managers = []

    def _factory(*extra, **kwargs):
        kwargs.setdefault("restart_policy", FAST_POLICY)
        kwargs.setdefault("startup_grace", 0.1)
        manager = WorkerProcessManager(_command(*extra), name="scripted", **kwargs)
        managers.append(manager)
        return manager

    yield _factory
    for manager in managers:
        manager.shutdown(timeout=1.0)


# ---------------------------------------------------------------------------
# Request / response correlation
# ---------------------------------------------------------------------------


def test_call_round_trip_and_ready_event(make_manager):
    manager = make_manager()
    events = []
    manager.subscribe(events.append)

    manager.start()

    assert manager.call("echo", {"value": 42}) == {"value": 42}
    assert _wait_for(lambda: any(ev.method == "ready" for ev in events))
    assert manager.handle.state is WorkerState.READY


def test_remote_error_is_raised_with_code(make_manager):
    manager = make_manager()
    manager.start()

    with pytest.raises(RemoteError) as exc_info:
        manager.call("fail", {"code": "model_missing", "message": "no file"})

    assert exc_info.value.code == "model_missing"
    # The worker keeps serving after an error reply.
    assert manager.call("echo", {"ok": 1}) == {"ok": 1}


def test_unknown_response_id_is_ignored(make_manager):
    manager = make_manager()
    manager.start()

    assert manager.call("unknownReply") == {"ok": True}
    assert manager.handle.pending_count == 0


def test_malformed_frame_is_logged_and_skipped(make_manager, caplog):
    manager = make_manager()
    manager.start()

    with caplog.at_level(logging.WARNING):
        assert manager.call("malformed") == {"ok": True}

    assert any("malformed frame" in rec.getMessage() for rec in caplog.records)
    assert manager.call("echo", {"still": "alive"}) == {"still": "alive"}


def test_events_reach_subscribers_in_order(make_manager):
    manager = make_manager()
    seen = []
    manager.subscribe(lambda event: seen.append((event.method, event.params)))
    manager.start()

    manager.call("emit", {"event": "progress", "payload": {"step": 1}})
    manager.call("emit", {"event": "progress", "payload": {"step": 2}})

    progress = [params for method, params in seen if method == "progress"]
    assert progress == [{"step": 1}, {"step": 2}]


def test_stderr_lines_are_mirrored_into_the_log(make_manager, caplog):
    with caplog.at_level(logging.DEBUG):
        manager = make_manager(logger=logging.getLogger("mirror-test"))
        manager.start()
        manager.call("echo")
        assert _wait_for(lambda: any("scripted worker" in rec.getMessage() for rec in caplog.records))

    assert any(rec.name == "mirror-test" and "[scripted]" in rec.getMessage() for rec in caplog.records)


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


def test_timeout_rejects_within_bounds_and_discards_late_response(make_manager):
    manager = make_manager()
    handle = manager.start()

    start = time.monotonic()
    with pytest.raises(WorkerTimeoutError) as exc_info:
        manager.call("sleep", {"seconds": 0.6}, timeout=0.2)
    elapsed = time.monotonic() - start

    # THEN the rejection happens after T but well before the worker answers
    assert 0.2 <= elapsed < 0.55
    assert exc_info.value.method == "sleep"
    assert isinstance(exc_info.value, TimeoutError)
    assert handle.pending_count == 0

    # WHEN the late response arrives it is dropped; the next call is unaffected
    time.sleep(0.5)
    assert manager.call("echo", {"after": True}) == {"after": True}
    assert handle.pending_count == 0


# ---------------------------------------------------------------------------
# Crashes & restarts
# ---------------------------------------------------------------------------


def test_kill_rejects_all_pending_calls_promptly(make_manager):
    manager = make_manager()
    handle = manager.start()
    crashes = []
    manager.on_crash(lambda h, code: crashes.append(code))

    first = handle.call_async("sleep", {"seconds": 5})
    second = handle.call_async("sleep", {"seconds": 5})
    start = time.monotonic()
    handle.kill()

    for future in (first, second):
        with pytest.raises(WorkerCrashed):
            future.result(timeout=2)
    assert time.monotonic() - start < 2
    assert handle.state is WorkerState.CRASHED
    assert _wait_for(lambda: len(crashes) == 1)
    assert handle.pending_count == 0


def test_crash_then_lazy_respawn(make_manager):
    manager = make_manager()
    spawned = []
    manager.on_spawn(lambda handle: spawned.append(handle.pid))
    manager.start()
    first_pid = manager.call("pid")["pid"]

    with pytest.raises(WorkerCrashed):
        manager.call("crash", {"code": 7})
    assert not manager.running

    # WHEN the next call arrives the worker is respawned transparently
    second_pid = manager.call("pid")["pid"]

    assert second_pid != first_pid
    assert manager.restarts == 1
    assert spawned == [first_pid, second_pid]


def test_restart_budget_is_bounded(make_manager):
    manager = make_manager(restart_policy=RestartPolicy(max_restarts=1, initial_backoff=0.01, max_backoff=0.01))
    manager.start()

    with pytest.raises(WorkerCrashed):
        manager.call("crash")
    manager.call("echo")  # first restart succeeds
    with pytest.raises(WorkerCrashed):
        manager.call("crash")

    with pytest.raises(SpawnError, match="budget exhausted"):
        manager.call("echo")


def test_restart_backoff_grows_exponentially():
    policy = RestartPolicy(initial_backoff=0.5, multiplier=2.0, max_backoff=3.0)

    assert [policy.delay_for(n) for n in range(1, 5)] == [0.5, 1.0, 2.0, 3.0]


def test_restart_policy_from_config():
    policy = RestartPolicy.from_config({"worker_max_restarts": 5, "worker_restart_backoff_sec": 0.1})

    assert policy.max_restarts == 5
    assert policy.initial_backoff == 0.1
    assert policy.max_backoff == 10.0


# ---------------------------------------------------------------------------
# Spawn failures & shutdown
# ---------------------------------------------------------------------------


def test_immediate_exit_is_a_spawn_error_with_stderr(make_manager):
    manager = make_manager("--exit-at-start", "4", startup_grace=3.0)

    with pytest.raises(SpawnError) as exc_info:
        manager.start()

    message = str(exc_info.value)
    assert "returncode=4" in message
    assert "scripted startup failure" in message


def test_missing_executable_is_a_spawn_error():
    manager = WorkerProcessManager([str(ROOT_DIR / "does-not-exist-binary")], name="ghost")

    with pytest.raises(SpawnError):
        manager.start()


def test_failing_spawn_hook_aborts_spawn(make_manager):
    manager = make_manager()

    def _hook(_handle):
        raise RuntimeError("hook failed")

    manager.on_spawn(_hook)

    with pytest.raises(RuntimeError):
        manager.start()
    assert manager.handle is None


def test_shutdown_terminates_and_refuses_new_calls(make_manager):
    manager = make_manager()
    handle = manager.start()
    crashes = []
    manager.on_crash(lambda h, code: crashes.append(code))

    manager.shutdown(timeout=2.0)

    assert handle.state is WorkerState.TERMINATED
    assert not manager.running
    assert crashes == []
    with pytest.raises(SpawnError):
        manager.call("echo")
    # notify() on a stopped manager is a silent no-op
    manager.notify("cancelSegment", {"segmentId": "x"})


def test_concurrent_callers_get_their_own_results(make_manager):
    manager = make_manager()
    manager.start()
    results = {}

    def _call(index):
        results[index] = manager.call("echo", {"index": index})

    threads = [threading.Thread(target=_call, args=(idx,)) for idx in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert results == {idx: {"index": idx} for idx in range(8)}


def test_concurrent_callers_after_crash_share_one_respawn(make_manager):
    # GIVEN a crashed worker
    manager = make_manager()
    spawned = []
    manager.on_spawn(lambda handle: spawned.append(handle.pid))
    manager.start()
    with pytest.raises(WorkerCrashed):
        manager.call("crash", {"code": 5})
    assert _wait_for(lambda: not manager.running)

    # WHEN several threads call at the same moment
    barrier = threading.Barrier(4)
    pids = []
    lock = threading.Lock()

    def _call():
        barrier.wait()
        pid = manager.call("pid")["pid"]
        with lock:
            pids.append(pid)

    threads = [threading.Thread(target=_call) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    # THEN exactly one replacement process serves all of them
    assert len(pids) == 4
    assert len(set(pids)) == 1
    assert manager.restarts == 1
    assert len(spawned) == 2
    assert spawned[-1] == pids[0] == manager.handle.pid


def test_failed_first_spawn_counts_against_restart_budget():
    manager = WorkerProcessManager(
        [str(ROOT_DIR / "does-not-exist-binary")],
        name="ghost",
        restart_policy=RestartPolicy(max_restarts=1, initial_backoff=0.01, max_backoff=0.01),
    )

    with pytest.raises(SpawnError):
        manager.start()
    with pytest.raises(SpawnError, match="Cannot launch"):
        manager.call("echo")  # the single allowed restart
    with pytest.raises(SpawnError, match="budget exhausted"):
        manager.call("echo")

    assert manager.restarts == 1
    manager.shutdown()
