import inspect
import sys
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Ensure repository root is on sys.path
# ---------------------------------------------------------------------------
ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from scribe_core.shortcut_manager import ShortcutManager  # noqa: E402

FN, SPACE, SHIFT = 63, 49, 56


class _StubKeyboard:
    """Stub replacement for the *keyboard* module used in tests."""

    def __init__(self, *, raise_on_add: bool = False):
        self.registered = []  # list of (hotkey, callback)
        self.removed = []  # list of handles removed
        self._next_handle = 1
        self._raise = raise_on_add

    def add_hotkey(self, hotkey, callback):  # noqa: D401 – stub signature
        if self._raise:
            raise RuntimeError("registration failed (simulated)")
        handle = self._next_handle
        self._next_handle += 1
        self.registered.append((hotkey, callback))
        return handle

    def remove_hotkey(self, handle):  # noqa: D401 – stub
        self.removed.append(handle)


class _DummyConfig:
    """Minimal config manager stub supporting get / set / reload."""

    def __init__(self, **overrides):
        self._data = {
            "toggle_shortcut": [FN, SPACE],
            "push_to_talk_shortcut": [FN],
            "fallback_hotkey": "ctrl+alt+f",
        }
        self._data.update(overrides)

    def get(self, key, default=None):
        return self._data.get(key, default)

    def set(self, key, value, *, auto_save=True):  # noqa: D401 – signature match
        self._data[key] = value

    def reload(self):  # noqa: D401 – no-op for tests
        pass


class _StubHelper:
    def __init__(self, available=True):
        self.available = available
        self.callbacks = []

    def subscribe_active_keys(self, callback):
        self.callbacks.append(callback)
        return lambda: self.callbacks.remove(callback)

    def press(self, *keys):
        for callback in list(self.callbacks):
            callback(frozenset(keys))


@pytest.fixture()
def recorder():
    calls = {"toggle": 0, "ptt": []}

    def on_toggle():
        calls["toggle"] += 1

    def on_ptt(pressed):
        calls["ptt"].append(pressed)

    return calls, on_toggle, on_ptt


def _manager(config, helper, recorder):
    _, on_toggle, on_ptt = recorder
    return ShortcutManager(config, helper=helper, on_toggle=on_toggle, on_push_to_talk=on_ptt)


def test_push_to_talk_is_a_subset_match(recorder):
    calls, _, _ = recorder
    helper = _StubHelper()
    manager = _manager(_DummyConfig(toggle_shortcut=[SHIFT, SPACE]), helper, recorder)
    assert manager.start()

    # GIVEN Fn held, THEN Fn+Shift (extra key) still counts as held
    helper.press(FN)
    helper.press(FN, SHIFT)
    assert manager.push_to_talk_pressed
    helper.press()

    assert calls["ptt"] == [True, False]


def test_toggle_is_exact_and_edge_triggered(recorder):
    calls, _, _ = recorder
    helper = _StubHelper()
    manager = _manager(_DummyConfig(push_to_talk_shortcut=[]), helper, recorder)
    manager.start()

    helper.press(FN)
    helper.press(FN, SPACE)
    helper.press(FN, SPACE)  # still held – no second fire
    helper.press(FN, SPACE, SHIFT)  # superset is not an exact match
    helper.press(FN, SPACE)  # exact again after leaving the match
    helper.press()

    assert calls["toggle"] == 2


def test_both_shortcuts_share_keys(recorder):
    calls, _, _ = recorder
    helper = _StubHelper()
    manager = _manager(_DummyConfig(), helper, recorder)
    manager.start()

    helper.press(FN)
    helper.press(FN, SPACE)
    helper.press()

    assert calls["ptt"] == [True, False]
    assert calls["toggle"] == 1


def test_detection_is_suspended_while_recording_a_shortcut(recorder):
    calls, _, _ = recorder
    helper = _StubHelper()
    manager = _manager(_DummyConfig(), helper, recorder)
    manager.start()

    manager.set_recording_shortcut(True)
    helper.press(FN, SPACE)
    manager.set_recording_shortcut(False)

    assert calls == {"toggle": 0, "ptt": []}


def test_stop_unsubscribes_from_helper(recorder):
    helper = _StubHelper()
    manager = _manager(_DummyConfig(), helper, recorder)
    manager.start()

    manager.stop()

    assert helper.callbacks == []


def test_failing_callback_is_contained(caplog):
    helper = _StubHelper()

    def _boom():
        raise RuntimeError("callback failed")

    manager = ShortcutManager(_DummyConfig(push_to_talk_shortcut=[]), helper=helper, on_toggle=_boom)
    manager.start()

    helper.press(FN, SPACE)

    assert "Shortcut callback failed" in caplog.text


# ---------------------------------------------------------------------------
# keyboard fallback
# ---------------------------------------------------------------------------


def test_fallback_hotkey_without_helper(monkeypatch, recorder):
    stub_keyboard = _StubKeyboard()
    monkeypatch.setitem(sys.modules, "keyboard", stub_keyboard)
    calls, on_toggle, _ = recorder

    manager = _manager(_DummyConfig(fallback_hotkey="ctrl+alt+g"), _StubHelper(available=False), recorder)
    assert manager.start() is True

    assert manager.uses_fallback
    assert stub_keyboard.registered == [("ctrl+alt+g", on_toggle)]
    stub_keyboard.registered[0][1]()
    assert calls["toggle"] == 1


def test_fallback_reload_re_registers_changed_hotkey(monkeypatch, recorder):
    stub_keyboard = _StubKeyboard()
    monkeypatch.setitem(sys.modules, "keyboard", stub_keyboard)
    config = _DummyConfig()
    manager = _manager(config, None, recorder)
    manager.start()

    config.set("fallback_hotkey", "ctrl+shift+h")
    assert manager.reload()

    assert stub_keyboard.removed == [1]
    assert stub_keyboard.registered[-1][0] == "ctrl+shift+h"


def test_fallback_failure_returns_false(monkeypatch, recorder):
    monkeypatch.setitem(sys.modules, "keyboard", _StubKeyboard(raise_on_add=True))

    manager = _manager(_DummyConfig(), None, recorder)

    assert manager.start() is False
    assert not manager.uses_fallback
    with pytest.raises(RuntimeError):
        with manager:
            pass
