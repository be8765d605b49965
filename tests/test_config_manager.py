import os
import json
from pathlib import Path

import pytest

# Ensure the root of the repo is on sys.path if tests run via `python -m pytest` from subdir
import sys, inspect
ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from scribe_core.config_manager import ConfigManager  # noqa: E402


@pytest.fixture()
def temp_appdata(monkeypatch, tmp_path):
    """Redirect %APPDATA% to a temporary directory for test isolation."""
    monkeypatch.setenv("APPDATA", str(tmp_path))
    return tmp_path


def test_save_load_round_trip(temp_appdata):
    """Settings saved by one instance should be visible when reloaded by another."""
    # GIVEN a pristine configuration environment
    cm1 = ConfigManager(app_name="TestApp")

    # WHEN we mutate a setting and rely on the default auto-save behaviour
    cm1.set("fallback_hotkey", "ctrl+shift+h")

    # THEN a brand-new instance should observe the persisted value
    cm2 = ConfigManager(app_name="TestApp")
    assert cm2.get("fallback_hotkey") == "ctrl+shift+h"

    # AND the config file should exist on disk inside the redirected %APPDATA%
    expected_path = Path(os.environ["APPDATA"]) / "TestApp" / "config.json"
    assert expected_path.is_file()
    assert cm2.path == expected_path

    data = json.loads(expected_path.read_text(encoding="utf-8"))
    assert data["fallback_hotkey"] == "ctrl+shift+h"


def test_first_run_writes_defaults(temp_appdata):
    cm = ConfigManager(app_name="Voice Scribe")

    assert cm.path == temp_appdata / "Voice_Scribe" / "config.json"
    assert cm["silence_timeout_ms"] == 800
    assert cm.get("eviction_policy") == "drop_oldest_non_final"
    assert json.loads(cm.path.read_text(encoding="utf-8"))["toggle_shortcut"] == [63, 49]


def test_missing_keys_are_filled_from_defaults(temp_appdata):
    path = temp_appdata / "TestApp" / "config.json"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"silence_timeout_ms": 1200}), encoding="utf-8")

    cm = ConfigManager(app_name="TestApp")

    assert cm.get("silence_timeout_ms") == 1200
    assert cm.get("vad_on_threshold") == 0.5


@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
def test_corrupted_file_falls_back_to_defaults(temp_appdata, content):
    path = temp_appdata / "TestApp" / "config.json"
    path.parent.mkdir(parents=True)
    path.write_text(content, encoding="utf-8")

    cm = ConfigManager(app_name="TestApp")

    assert cm.settings == ConfigManager.DEFAULTS
    assert json.loads(path.read_text(encoding="utf-8")) == ConfigManager.DEFAULTS


def test_set_without_auto_save_and_reload_discards(temp_appdata):
    cm = ConfigManager(app_name="TestApp")

    cm.set("max_recording_s", 5, auto_save=False)
    assert "max_recording_s" in cm and cm["max_recording_s"] == 5
    cm.reload()

    assert cm["max_recording_s"] == 600
