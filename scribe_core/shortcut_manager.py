from __future__ import annotations

"""Global shortcut detection for push-to-talk and hands-free toggling.

When the native helper is running, shortcuts are matched against its live
set of pressed key codes:

* **push-to-talk** is a *subset* match – all configured keys held, extra keys
  allowed – and reports press/release edges;
* **toggle** is an *exact* match and fires once per press (edge-triggered).

While the UI records a new shortcut (:meth:`ShortcutManager.set_recording_shortcut`)
detection is suspended.  Without a helper the manager falls back to a single
global hotkey registered through the *keyboard* package, which only drives the
toggle action.

The *keyboard* import stays local to keep startup fast and to let unit-tests
stub the library before the first import.
"""

import logging
import threading
from typing import Callable, FrozenSet, Iterable, Optional, Tuple

__all__ = ["ShortcutManager"]


def _as_keys(value) -> Tuple[int, ...]:
    if not value:
        return ()
    if isinstance(value, (int, str)):
        value = [value]
    return tuple(int(item) for item in value)


class ShortcutManager:  # pylint: disable=too-many-instance-attributes
    """Turn key state into ``on_toggle`` / ``on_push_to_talk`` callbacks.

    Parameters
    ----------
    config_manager
        Source of ``toggle_shortcut``, ``push_to_talk_shortcut`` and
        ``fallback_hotkey`` (any object exposing *get()*).
    helper
        Optional :class:`~scribe_core.native_helper.NativeHelperClient`.
    on_toggle
        Invoked when the toggle shortcut is pressed.
    on_push_to_talk
        Invoked with *True* when push-to-talk engages and *False* on release.
    """

    def __init__(
        self,
        config_manager,
        *,
        helper=None,
        on_toggle: Callable[[], None],
        on_push_to_talk: Optional[Callable[[bool], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config_manager
        self._helper = helper
        self._on_toggle = on_toggle
        self._on_ptt = on_push_to_talk or (lambda _pressed: None)
        self._log = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._toggle_keys: Tuple[int, ...] = ()
        self._ptt_keys: Tuple[int, ...] = ()
        self._toggle_matched = False
        self._ptt_pressed = False
        self._recording_shortcut = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._hotkey_handle = None
        self._current_hotkey: Optional[str] = None
        self._load_shortcuts()

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def start(self) -> bool:  # noqa: D401 – imperative API
        """Begin listening.  Returns *False* when no input source is usable."""

        if self._unsubscribe is not None or self._hotkey_handle is not None:
            self._log.debug("ShortcutManager already running – start() ignored")
            return True

        if self._helper is not None and self._helper.available:
            self._unsubscribe = self._helper.subscribe_active_keys(self.handle_active_keys)
            self._log.info(
                "Shortcuts bound to native helper (toggle=%s, push-to-talk=%s)", self._toggle_keys, self._ptt_keys
            )
            return True
        return self._register_fallback_hotkey()

    def stop(self) -> None:  # noqa: D401 – imperative API
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._remove_fallback_hotkey()
        with self._lock:
            self._toggle_matched = False
            self._ptt_pressed = False

    def reload(self) -> bool:  # noqa: D401 – imperative API
        """Re-read shortcut settings; re-register the fallback hotkey if it changed."""
        try:
            self._config.reload()  # type: ignore[attr-defined]
        except AttributeError:
            # Duck-type configs used in tests may not implement *reload()*.
            pass
        self._load_shortcuts()

        if self._hotkey_handle is None:
            return True
        new_hotkey = str(self._config.get("fallback_hotkey", "ctrl+alt+f"))
        if new_hotkey == self._current_hotkey:
            return True
        self._remove_fallback_hotkey()
        return self._register_fallback_hotkey()

    def set_recording_shortcut(self, recording: bool) -> None:
        """Suspend detection while the UI captures a new shortcut."""
        with self._lock:
            self._recording_shortcut = recording
            if recording:
                self._toggle_matched = False
        self._log.info("Shortcut recording state changed: %s", recording)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------
    def handle_active_keys(self, keys: Iterable[int]) -> None:
        """Evaluate both shortcuts against the currently pressed *keys*."""

        active: FrozenSet[int] = frozenset(keys)
        with self._lock:
            if self._recording_shortcut:
                return
            ptt = bool(self._ptt_keys) and set(self._ptt_keys).issubset(active)
            toggle = bool(self._toggle_keys) and set(self._toggle_keys) == active

            ptt_changed = ptt != self._ptt_pressed
            self._ptt_pressed = ptt
            toggle_fired = toggle and not self._toggle_matched
            self._toggle_matched = toggle

        if ptt_changed:
            self._safe_call(self._on_ptt, ptt)
        if toggle_fired:
            self._safe_call(self._on_toggle)

    @property
    def push_to_talk_pressed(self) -> bool:
        return self._ptt_pressed

    @property
    def uses_fallback(self) -> bool:
        return self._hotkey_handle is not None

    # ------------------------------------------------------------------
    # Implementation details
    # ------------------------------------------------------------------
    def _load_shortcuts(self) -> None:
        with self._lock:
            self._toggle_keys = _as_keys(self._config.get("toggle_shortcut"))
            self._ptt_keys = _as_keys(self._config.get("push_to_talk_shortcut"))

    def _register_fallback_hotkey(self) -> bool:
        hotkey = str(self._config.get("fallback_hotkey", "ctrl+alt+f"))
        try:
            import keyboard  # local import keeps startup fast & mock-friendly

            self._hotkey_handle = keyboard.add_hotkey(hotkey, self._on_toggle)
            self._current_hotkey = hotkey
            self._log.info("Registered fallback global hotkey: %s", hotkey)
            return True
        except Exception as exc:  # pylint: disable=broad-except
            # Unsupported platform, missing permissions or a duplicate binding.
            self._log.warning("Failed to register hotkey '%s': %s", hotkey, exc)
            self._hotkey_handle = None
            self._current_hotkey = None
            return False

    def _remove_fallback_hotkey(self) -> None:
        if self._hotkey_handle is None:
            return
        try:
            import keyboard  # import here to match *start()* locality

            keyboard.remove_hotkey(self._hotkey_handle)
            self._log.info("Unregistered fallback global hotkey: %s", self._current_hotkey)
        except Exception as exc:  # pylint: disable=broad-except
            self._log.debug("Ignoring error while removing hotkey: %s", exc)
        finally:
            self._hotkey_handle = None
            self._current_hotkey = None

    def _safe_call(self, callback, *args) -> None:
        try:
            callback(*args)
        except Exception:  # pylint: disable=broad-except
            self._log.exception("Shortcut callback failed")

    # ------------------------------------------------------------------
    # Convenience dunders
    # ------------------------------------------------------------------
    def __enter__(self):  # noqa: D401 – context manager for with-statement
        if not self.start():
            raise RuntimeError("Unable to register any shortcut source")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):  # noqa: D401 – context manager
        self.stop()
        return False
