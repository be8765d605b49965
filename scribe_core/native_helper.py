from __future__ import annotations

"""Client for the sandboxed native capability helper.

The helper (``bin/SwiftHelper`` on macOS, ``bin/WindowsHelper.exe`` on
Windows) performs the privileged operating-system work: reading the focused
UI element, pasting text into it, muting system audio and reporting raw key
events for global shortcuts.  It speaks the same newline-delimited JSON
protocol as the transcription worker and is supervised by its own
:class:`ipc.process_manager.WorkerProcessManager`.

The client degrades gracefully.  On an unsupported OS, with a missing binary
or after the helper exhausted its restart budget, every capability resolves
to its default (``None`` / ``False`` / ``available=False``) instead of
raising.  Only :meth:`NativeHelperClient.call` is strict and raises
:class:`~scribe_core.errors.CapabilityUnavailable`.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Set

from ipc.errors import RemoteError, SpawnError, WorkerError
from ipc.messages import WorkerEvent
from ipc.process_manager import RestartPolicy, WorkerHandle, WorkerProcessManager

from .errors import CapabilityUnavailable
from .resource_manager import native_helper_name, resource_path

__all__ = [
    "AccessibilityContext",
    "FoundationModelAvailability",
    "NativeHelperClient",
]

ActiveKeysCallback = Callable[[FrozenSet[int]], None]

_STOP_DISPATCH = object()


@dataclass(slots=True)
class AccessibilityContext:
    """Snapshot of the UI element that currently has keyboard focus."""

    application: Optional[Dict[str, Any]] = None
    focused_element: Optional[Dict[str, Any]] = None
    text_selection: Optional[Dict[str, Any]] = None
    window: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> Optional["AccessibilityContext"]:
        if not payload:
            return None
        return cls(
            application=payload.get("application"),
            focused_element=payload.get("focusedElement"),
            text_selection=payload.get("textSelection"),
            window=payload.get("windowInfo") or payload.get("window"),
        )


@dataclass(slots=True)
class FoundationModelAvailability:
    available: bool
    reason: Optional[str] = None


class NativeHelperClient:  # pylint: disable=too-many-instance-attributes
    """Capability calls and key-event stream of the native helper."""

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        *,
        helper_path: Optional[str | Path] = None,
        call_timeout: float = 2.0,
        restart_policy: Optional[RestartPolicy] = None,
        platform: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._log = logger or logging.getLogger(__name__)
        self.call_timeout = call_timeout
        self._command = list(command) if command else self._resolve_command(helper_path, platform)
        self._manager: Optional[WorkerProcessManager] = None
        if self._command is not None:
            self._manager = WorkerProcessManager(
                self._command,
                name="native-helper",
                restart_policy=restart_policy,
                logger=self._log,
            )
            self._manager.subscribe(self._on_event)
            self._manager.on_crash(self._on_crash)

        self._lock = threading.Lock()
        self._active_keys: Set[int] = set()
        self._key_callbacks: List[ActiveKeysCallback] = []
        self._key_queue: "queue.Queue[Any]" = queue.Queue()
        self._key_thread: Optional[threading.Thread] = None
        self._muted = False
        self._available = False
        self.unavailable_reason: Optional[str] = None if self._command else "unsupported platform"

    @classmethod
    def from_config(cls, config, **kwargs) -> "NativeHelperClient":
        kwargs.setdefault("helper_path", config.get("native_helper_path"))
        kwargs.setdefault("call_timeout", float(config.get("helper_call_timeout_sec", 2.0)))
        kwargs.setdefault("restart_policy", RestartPolicy.from_config(config))
        return cls(**kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> bool:  # noqa: D401 – imperative API
        """Spawn the helper.

        Returns *True* when the helper is running, *False* when the client
        runs in degraded mode.
        """

        if self._manager is None:
            self._log.info("Native helper not supported on this platform – capabilities disabled")
            return False
        try:
            self._manager.start()
        except SpawnError as exc:
            self.unavailable_reason = str(exc)
            self._available = False
            self._log.warning("Native helper unavailable – capabilities disabled: %s", exc)
            return False
        self._available = True
        self.unavailable_reason = None
        return True

    def stop(self) -> None:
        if self._manager is None:
            return
        if self._muted:
            self.restore_system_audio()
        self._manager.shutdown(timeout=self.call_timeout)
        self._available = False
        self._clear_active_keys()
        self._stop_key_dispatch()

    @property
    def available(self) -> bool:
        return self._available and self._manager is not None

    # ------------------------------------------------------------------
    # Strict call
    # ------------------------------------------------------------------
    def call(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Any:
        """Invoke *method* on the helper; raises :class:`CapabilityUnavailable`."""

        if not self.available:
            raise CapabilityUnavailable(method, self.unavailable_reason or "native helper unavailable")
        try:
            return self._manager.call(method, params, timeout=timeout or self.call_timeout)
        except SpawnError as exc:
            # Restart budget exhausted: stay degraded from here on.
            self._available = False
            self.unavailable_reason = str(exc)
            raise CapabilityUnavailable(method, str(exc)) from exc
        except RemoteError as exc:
            raise CapabilityUnavailable(method, f"{exc.code}: {exc}") from exc
        except WorkerError as exc:
            raise CapabilityUnavailable(method, str(exc)) from exc

    def _call_or_default(self, method: str, params: Optional[Dict[str, Any]], default: Any) -> Any:
        try:
            return self.call(method, params)
        except CapabilityUnavailable as exc:
            self._log.debug("Capability %s unavailable: %s", method, exc.reason)
            return default

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------
    def get_accessibility_context(self, editable_only: bool = False) -> Optional[AccessibilityContext]:
        result = self._call_or_default("getAccessibilityContext", {"editableOnly": editable_only}, None)
        if not isinstance(result, dict):
            return None
        return AccessibilityContext.from_payload(result.get("context"))

    def get_accessibility_tree_details(self, root_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        params = {"rootId": root_id} if root_id is not None else {}
        result = self._call_or_default("getAccessibilityTreeDetails", params, None)
        if not isinstance(result, dict):
            return None
        return result.get("data")

    def paste_text(self, text: str) -> bool:
        result = self._call_or_default("pasteText", {"transcript": text}, None)
        return bool(isinstance(result, dict) and result.get("success"))

    def mute_system_audio(self) -> bool:
        """Mute system output; a second mute while muted is a no-op."""
        with self._lock:
            if self._muted:
                return True
        result = self._call_or_default("muteSystemAudio", {}, None)
        success = bool(isinstance(result, dict) and result.get("success"))
        if success:
            with self._lock:
                self._muted = True
        return success

    def restore_system_audio(self) -> bool:
        """Undo :meth:`mute_system_audio`; a no-op when not muted."""
        with self._lock:
            if not self._muted:
                return True
        result = self._call_or_default("restoreSystemAudio", {}, None)
        success = bool(isinstance(result, dict) and result.get("success"))
        if success:
            with self._lock:
                self._muted = False
        return success

    @property
    def muted(self) -> bool:
        return self._muted

    def check_foundation_model_availability(self) -> FoundationModelAvailability:
        result = self._call_or_default("checkFoundationModelAvailability", {}, None)
        if not isinstance(result, dict):
            return FoundationModelAvailability(False, self.unavailable_reason or "native helper unavailable")
        return FoundationModelAvailability(bool(result.get("available")), result.get("reason"))

    # ------------------------------------------------------------------
    # Key events
    # ------------------------------------------------------------------
    @property
    def active_keys(self) -> FrozenSet[int]:
        with self._lock:
            return frozenset(self._active_keys)

    def subscribe_active_keys(self, callback: ActiveKeysCallback) -> Callable[[], None]:
        """Call *callback(keys)* whenever the pressed-key set changes."""
        self._key_callbacks.append(callback)

        def _unsubscribe() -> None:
            try:
                self._key_callbacks.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def _on_event(self, event: WorkerEvent) -> None:
        if event.method not in ("key-down", "key-up"):
            self._log.debug("Native helper event %s", event.method)
            return
        try:
            key_code = int(event.params["keyCode"])
        except (KeyError, TypeError, ValueError):
            self._log.warning("Key event without a valid keyCode: %s", event.params)
            return
        with self._lock:
            before = len(self._active_keys)
            if event.method == "key-down":
                self._active_keys.add(key_code)
            else:
                self._active_keys.discard(key_code)
            changed = len(self._active_keys) != before
            snapshot = frozenset(self._active_keys)
        if changed:
            self._publish_keys(snapshot)

    def _on_crash(self, _handle: WorkerHandle, returncode: Optional[int]) -> None:
        self._log.warning("Native helper crashed (returncode=%s) – it restarts on the next call", returncode)
        with self._lock:
            # The dead helper cannot restore audio any more.
            self._muted = False
        self._clear_active_keys()

    def _clear_active_keys(self) -> None:
        with self._lock:
            had_keys = bool(self._active_keys)
            self._active_keys.clear()
        if had_keys:
            self._publish_keys(frozenset())

    def _publish_keys(self, keys: FrozenSet[int]) -> None:
        """Queue *keys* for the dispatch thread.

        Subscribers start recordings and call back into the helper, so they
        must never run on the helper's reader thread: that thread is the only
        one able to deliver the responses they wait for.
        """
        with self._lock:
            if self._key_thread is None or not self._key_thread.is_alive():
                self._key_thread = threading.Thread(
                    target=self._dispatch_keys, name="helper-key-dispatch", daemon=True
                )
                self._key_thread.start()
        self._key_queue.put(keys)

    def _dispatch_keys(self) -> None:
        while True:
            keys = self._key_queue.get()
            try:
                if keys is _STOP_DISPATCH:
                    return
                for callback in list(self._key_callbacks):
                    try:
                        callback(keys)
                    except Exception:  # pylint: disable=broad-except
                        self._log.exception("Active-keys subscriber failed")
            finally:
                self._key_queue.task_done()

    def _stop_key_dispatch(self) -> None:
        with self._lock:
            thread = self._key_thread
            self._key_thread = None
        if thread is None:
            return
        self._key_queue.put(_STOP_DISPATCH)
        if thread is not threading.current_thread():
            thread.join(timeout=self.call_timeout)

    def wait_for_key_dispatch(self) -> None:
        """Block until every queued key snapshot reached the subscribers."""
        self._key_queue.join()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _resolve_command(self, helper_path: Optional[str | Path], platform: Optional[str]) -> Optional[List[str]]:
        if helper_path:
            return [str(helper_path)]
        name = native_helper_name(platform)
        if name is None:
            return None
        return [str(resource_path(Path("bin") / name))]

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # noqa: D401 – context manager boilerplate
        self.stop()
        return False
