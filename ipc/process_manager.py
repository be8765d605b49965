from __future__ import annotations

"""Supervision and request/response correlation for external workers.

The module is shared by every out-of-process worker of the application – the
speech transcription engine and the native capability helper both run on top
of it.  It layers three concerns over :class:`ipc.transport.ProcessTransport`:

1. **Correlation** – :meth:`WorkerHandle.call` tags each request with a fresh
   id, parks a :class:`concurrent.futures.Future` in the pending map and
   resolves it when the matching response arrives.  Timeouts remove the entry;
   a response that arrives afterwards is dropped.
2. **Crash handling** – process exit fails every pending future with
   :class:`~ipc.errors.WorkerCrashed` and notifies crash listeners.  Frames that
   arrive after the handle left the *Ready/Busy* states are discarded.
3. **Restart policy** – :class:`WorkerProcessManager` respawns a crashed worker
   lazily on the next call, bounded by :class:`RestartPolicy` with exponential
   backoff.  Calls are never resubmitted on the caller's behalf.
"""

import enum
import logging
import threading
import time
import uuid
from concurrent.futures import Future
from concurrent.futures import TimeoutError as _FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import ProtocolError, RemoteError, SpawnError, WorkerCrashed, WorkerTimeoutError
from .messages import WorkerEvent, WorkerRequest, WorkerResponse, decode_message, encode_message
from .transport import ProcessTransport

__all__ = [
    "WorkerState",
    "WorkerHandle",
    "RestartPolicy",
    "WorkerProcessManager",
]

EventCallback = Callable[[WorkerEvent], None]
CrashCallback = Callable[["WorkerHandle", Optional[int]], None]


class WorkerState(str, enum.Enum):
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    CRASHED = "crashed"
    TERMINATED = "terminated"


# ---------------------------------------------------------------------------
# Single process handle
# ---------------------------------------------------------------------------


class WorkerHandle:  # pylint: disable=too-many-instance-attributes
    """One running worker process plus its pending-request map.

    The handle owns its transport exclusively.  All inbound frames are parsed
    on the transport's single reader thread, so responses and events are
    dispatched strictly in arrival order.
    """

    def __init__(
        self,
        transport: ProcessTransport,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._transport = transport
        self._log = logger or logging.getLogger("ipc.worker")
        self._lock = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self._event_callbacks: List[EventCallback] = []
        self._crash_callbacks: List[CrashCallback] = []
        self._state = WorkerState.STARTING
        self._shutdown_requested = False
        self.started_at: float = 0.0

        transport.on_message(self._dispatch)
        transport.on_exit(self._handle_exit)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> "WorkerHandle":
        """Start the process; raises :class:`SpawnError` on failure."""
        try:
            self._transport.start()
        except SpawnError:
            with self._lock:
                self._state = WorkerState.CRASHED
            raise
        with self._lock:
            # The reader may already have observed an exit in between.
            if self._state is WorkerState.STARTING:
                self._state = WorkerState.READY
        self.started_at = time.monotonic()
        return self

    def shutdown(self, *, timeout: float = 2.0, notify_method: Optional[str] = "shutdown") -> None:
        """Signal, wait, then kill.  Pipes are released on every path."""

        with self._lock:
            if self._state is WorkerState.TERMINATED:
                return
            already_dead = self._state is WorkerState.CRASHED
            self._shutdown_requested = True
        try:
            if not already_dead:
                if notify_method:
                    try:
                        self.notify(notify_method)
                    except BrokenPipeError:
                        pass
                self._transport.close_stdin()
                if not self._transport.wait_exit(timeout):
                    self._log.debug("%s still running after EOF – terminating", self.name)
        finally:
            self._transport.terminate(grace=timeout)
            with self._lock:
                self._state = WorkerState.TERMINATED
            # Anything still pending (e.g. exit callback never ran) is failed here.
            self._fail_pending(WorkerCrashed(self._transport.returncode, f"{self.name} terminated"))

    def kill(self) -> None:
        """Hard kill – exercised by crash tests and by emergency shutdown."""
        self._transport.kill()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def call(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout: float = 5.0) -> Any:
        """Send a request and block for its result.

        Raises
        ------
        WorkerTimeoutError
            No response within *timeout* seconds.  The pending entry is removed.
        WorkerCrashed
            The process exited before answering, or is not running.
        RemoteError
            The worker replied with an error payload.
        """

        future = self.call_async(method, params)
        request_id = future.request_id  # type: ignore[attr-defined]
        try:
            return future.result(timeout=timeout)
        except _FutureTimeout:
            with self._lock:
                self._pending.pop(request_id, None)
                self._refresh_busy_state()
            # The response may have landed between the timeout and the pop.
            if future.done() and not future.cancelled():
                return future.result()
            future.cancel()
            self._log.warning("%s call '%s' (id=%s) timed out after %.2fs", self.name, method, request_id, timeout)
            raise WorkerTimeoutError(method, timeout) from None

    def call_async(self, method: str, params: Optional[Dict[str, Any]] = None) -> Future:
        """Send a request and return the pending :class:`Future`.

        The caller owns the future; if it gives up waiting it must call
        :meth:`forget` so the pending map does not grow.
        """

        request = WorkerRequest(id=uuid.uuid4().hex, method=method, params=params or {})
        future: Future = Future()
        future.request_id = request.id  # type: ignore[attr-defined]
        with self._lock:
            if self._state not in (WorkerState.READY, WorkerState.BUSY):
                raise WorkerCrashed(self._transport.returncode, f"{self.name} is {self._state.value}")
            self._pending[request.id] = future
            self._state = WorkerState.BUSY

        self._log.debug("-> %s %s (id=%s)", self.name, method, request.id)
        try:
            self._transport.send(encode_message(request))
        except BrokenPipeError as exc:
            with self._lock:
                self._pending.pop(request.id, None)
                self._refresh_busy_state()
            raise WorkerCrashed(self._transport.returncode, str(exc)) from exc
        return future

    def forget(self, future: Future) -> None:
        """Drop *future* from the pending map; a late response is discarded."""
        request_id = getattr(future, "request_id", None)
        with self._lock:
            self._pending.pop(request_id, None)
            self._refresh_busy_state()

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Fire-and-forget request – no id is tracked for a reply."""
        request = WorkerRequest(id=uuid.uuid4().hex, method=method, params=params or {})
        self._transport.send(encode_message(request))

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register *callback* for worker events; returns an unsubscribe function."""
        self._event_callbacks.append(callback)

        def _unsubscribe() -> None:
            try:
                self._event_callbacks.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def on_crash(self, callback: CrashCallback) -> None:
        self._crash_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def name(self) -> str:
        return self._transport.name

    @property
    def pid(self) -> Optional[int]:
        return self._transport.pid

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def alive(self) -> bool:
        return self._state in (WorkerState.READY, WorkerState.BUSY)

    # ------------------------------------------------------------------
    # Reader-thread callbacks
    # ------------------------------------------------------------------
    def _dispatch(self, line: bytes) -> None:
        if self._state in (WorkerState.CRASHED, WorkerState.TERMINATED):
            return  # frames after crash/termination are discarded

        try:
            message = decode_message(line)
        except ProtocolError as exc:
            self._log.warning("%s sent a malformed frame – skipped: %s", self.name, exc)
            return

        if isinstance(message, WorkerResponse):
            with self._lock:
                future = self._pending.pop(message.id, None)
                self._refresh_busy_state()
            if future is None:
                self._log.debug("%s: dropping response for unknown id %s", self.name, message.id)
                return
            if not future.set_running_or_notify_cancel():
                return
            if message.error is not None:
                future.set_exception(RemoteError(message.error.code, message.error.message))
            else:
                future.set_result(message.result)
        elif isinstance(message, WorkerEvent):
            for callback in list(self._event_callbacks):
                try:
                    callback(message)
                except Exception:  # pylint: disable=broad-except
                    self._log.exception("%s event subscriber failed for '%s'", self.name, message.method)
        else:
            self._log.warning("%s sent an unexpected request frame '%s' – skipped", self.name, message.method)

    def _handle_exit(self, returncode: Optional[int]) -> None:
        with self._lock:
            if self._shutdown_requested:
                self._state = WorkerState.TERMINATED
            else:
                self._state = WorkerState.CRASHED
            crashed = self._state is WorkerState.CRASHED

        if crashed:
            self._log.error("%s crashed (returncode=%s)", self.name, returncode)
        self._fail_pending(WorkerCrashed(returncode))
        if crashed:
            for callback in list(self._crash_callbacks):
                try:
                    callback(self, returncode)
                except Exception:  # pylint: disable=broad-except
                    self._log.exception("%s crash listener failed", self.name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _fail_pending(self, error: Exception) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if future.set_running_or_notify_cancel():
                future.set_exception(error)

    def _refresh_busy_state(self) -> None:
        # Caller holds self._lock.
        if self._state is WorkerState.BUSY and not self._pending:
            self._state = WorkerState.READY


# ---------------------------------------------------------------------------
# Restart policy
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RestartPolicy:
    """Bounded respawn budget with exponential backoff.

    ``max_restarts`` consecutive crashes are tolerated; the counter is reset
    once a worker has stayed up for ``reset_after`` seconds.
    """

    max_restarts: int = 3
    initial_backoff: float = 0.5
    multiplier: float = 2.0
    max_backoff: float = 10.0
    reset_after: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Return the backoff (seconds) before restart number *attempt* (1-based)."""
        if attempt <= 0:
            return 0.0
        return min(self.max_backoff, self.initial_backoff * (self.multiplier ** (attempt - 1)))

    @classmethod
    def from_config(cls, config) -> "RestartPolicy":
        return cls(
            max_restarts=int(config.get("worker_max_restarts", 3)),
            initial_backoff=float(config.get("worker_restart_backoff_sec", 0.5)),
            max_backoff=float(config.get("worker_restart_backoff_max_sec", 10.0)),
        )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class WorkerProcessManager:  # pylint: disable=too-many-instance-attributes
    """Supervise one *kind* of worker: spawn, call, respawn, shut down."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        name: str = "worker",
        restart_policy: Optional[RestartPolicy] = None,
        env: Optional[dict] = None,
        cwd: Optional[str] = None,
        startup_grace: float = 0.2,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.command = list(command)
        self.name = name
        self.restart_policy = restart_policy or RestartPolicy()
        self._env = env
        self._cwd = cwd
        self._startup_grace = startup_grace
        self._log = logger or logging.getLogger(f"ipc.{name}")

        self._lock = threading.RLock()
        # Held across check-and-spawn so one crash yields one replacement process.
        self._spawn_lock = threading.RLock()
        self._handle: Optional[WorkerHandle] = None
        self._restarts = 0
        self._last_crash_at: Optional[float] = None
        self._closed = False
        self._event_callbacks: List[EventCallback] = []
        self._crash_callbacks: List[CrashCallback] = []
        self._spawn_hooks: List[Callable[[WorkerHandle], None]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def spawn(self, command: Optional[Sequence[str]] = None) -> WorkerHandle:
        """Start a fresh worker process and return its handle.

        Any previous handle is shut down first.  Registered event/crash
        subscribers are re-attached and spawn hooks run against the new
        handle before it is published.
        """

        with self._spawn_lock:
            return self._spawn(command)

    def _spawn(self, command: Optional[Sequence[str]]) -> WorkerHandle:
        with self._lock:
            if self._closed:
                raise SpawnError(f"{self.name} manager is closed")
            if command is not None:
                self.command = list(command)
            old = self._handle
            self._handle = None
        if old is not None:
            old.shutdown(timeout=max(1.0, self._startup_grace * 5))

        transport = ProcessTransport(
            self.command,
            name=self.name,
            env=self._env,
            cwd=self._cwd,
            startup_grace=self._startup_grace,
            logger=self._log,
        )
        handle = WorkerHandle(transport, logger=self._log)
        for callback in self._event_callbacks:
            handle.subscribe(callback)
        handle.on_crash(self._on_handle_crash)
        handle.start()

        try:
            for hook in self._spawn_hooks:
                hook(handle)
        except Exception:
            handle.shutdown(timeout=max(1.0, self._startup_grace * 5))
            raise

        with self._lock:
            self._handle = handle
        return handle

    def start(self) -> WorkerHandle:
        """Spawn unless a live handle exists (idempotent)."""
        with self._spawn_lock:
            with self._lock:
                handle = self._handle
            if handle is not None and handle.alive:
                self._log.debug("%s already running – start() ignored", self.name)
                return handle
            return self._spawn_recording_failure()

    def ensure_running(self) -> WorkerHandle:
        """Return a live handle, respawning within the restart budget.

        Concurrent callers are serialised: the first one respawns, the others
        wait and share the new handle.  A failed spawn counts like a crash, so
        later calls go through the same budget and backoff.
        """

        handle = self._handle
        if handle is not None and handle.alive:
            return handle

        with self._spawn_lock:
            with self._lock:
                handle = self._handle
                if handle is not None and handle.alive:
                    return handle
                if self._closed:
                    raise SpawnError(f"{self.name} manager is closed")
                first_spawn = handle is None and self._last_crash_at is None

            if first_spawn:
                return self._spawn_recording_failure()

            with self._lock:
                if self._restarts >= self.restart_policy.max_restarts:
                    raise SpawnError(
                        f"{self.name} restart budget exhausted ({self._restarts} restarts)"
                    )
                self._restarts += 1
                delay = self.restart_policy.delay_for(self._restarts)
                since_crash = time.monotonic() - (self._last_crash_at or 0.0)
                wait = max(0.0, delay - since_crash)
                attempt = self._restarts

            if wait:
                self._log.info("Restarting %s in %.2fs (attempt %d)", self.name, wait, attempt)
                time.sleep(wait)
            else:
                self._log.info("Restarting %s (attempt %d)", self.name, attempt)
            return self._spawn_recording_failure()

    def _spawn_recording_failure(self) -> WorkerHandle:
        # Caller holds self._spawn_lock.
        try:
            return self._spawn(None)
        except SpawnError:
            with self._lock:
                self._last_crash_at = time.monotonic()
            raise

    def shutdown(self, *, timeout: float = 2.0) -> None:
        """Stop the worker and refuse further spawns."""
        with self._lock:
            self._closed = True
            handle = self._handle
            self._handle = None
        if handle is not None:
            handle.shutdown(timeout=timeout)
            self._log.info("%s stopped", self.name)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    def call(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout: float = 5.0) -> Any:
        """Run *method* on a live worker, respawning it first if needed."""
        return self.ensure_running().call(method, params, timeout=timeout)

    def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        handle = self._handle
        if handle is None or not handle.alive:
            return
        try:
            handle.notify(method, params)
        except BrokenPipeError:
            self._log.debug("%s notify '%s' dropped – worker gone", self.name, method)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, callback: EventCallback) -> None:
        """Receive events from the current *and every future* handle."""
        self._event_callbacks.append(callback)
        handle = self._handle
        if handle is not None:
            handle.subscribe(callback)

    def on_crash(self, callback: CrashCallback) -> None:
        self._crash_callbacks.append(callback)

    def on_spawn(self, hook: Callable[[WorkerHandle], None]) -> None:
        """Run *hook(handle)* after every successful (re)spawn."""
        self._spawn_hooks.append(hook)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def handle(self) -> Optional[WorkerHandle]:
        return self._handle

    @property
    def restarts(self) -> int:
        return self._restarts

    @property
    def running(self) -> bool:
        handle = self._handle
        return handle is not None and handle.alive

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------
    def _on_handle_crash(self, handle: WorkerHandle, returncode: Optional[int]) -> None:
        now = time.monotonic()
        with self._lock:
            if handle.started_at and now - handle.started_at >= self.restart_policy.reset_after:
                self._restarts = 0
            self._last_crash_at = now
        for callback in list(self._crash_callbacks):
            try:
                callback(handle, returncode)
            except Exception:  # pylint: disable=broad-except
                self._log.exception("%s crash listener failed", self.name)

    # ------------------------------------------------------------------
    # Context-manager helpers
    # ------------------------------------------------------------------
    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # noqa: D401 – context manager boilerplate
        self.shutdown()
        return False
