import sys
from pathlib import Path

import pytest

# Ensure repo root is on sys.path when running via `python -m pytest` from subdir
import inspect
ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from scribe_core.resource_manager import _determine_base_path, native_helper_name, resource_path  # noqa: E402


@pytest.fixture(autouse=True)
def _no_override(monkeypatch):
    monkeypatch.delenv("VOICE_SCRIBE_RESOURCE_ROOT", raising=False)


def test_dev_mode_path_resolution():
    """When *not* frozen, ``resource_path`` should resolve inside repo root."""
    # GIVEN we are in development mode (no special flags set)
    assert not getattr(sys, "frozen", False), "Test assumes interpreter is not frozen!"

    base = _determine_base_path()
    # THEN base path should be the repository root directory
    assert (base / "scribe_core").is_dir(), "Expected package folder under repo root"

    # AND resource_path("") should return the same base path
    assert resource_path("") == base


def test_frozen_mode_path_resolution(monkeypatch, tmp_path):
    """In frozen mode, helper should use *sys._MEIPASS* to build paths."""
    # GIVEN a simulated PyInstaller environment
    monkeypatch.setattr(sys, "frozen", True, raising=False)
    monkeypatch.setattr(sys, "_MEIPASS", str(tmp_path), raising=False)
    dummy = tmp_path / "bin" / "SwiftHelper"
    dummy.parent.mkdir()
    dummy.write_text("dummy", encoding="utf-8")

    # WHEN we ask for a resource path
    resolved_path = resource_path("bin/SwiftHelper")

    # THEN the resolved path should match the file inside _MEIPASS
    assert resolved_path == dummy.resolve()


def test_environment_override_wins(monkeypatch, tmp_path):
    monkeypatch.setenv("VOICE_SCRIBE_RESOURCE_ROOT", str(tmp_path))

    assert resource_path("bin") == (tmp_path / "bin").resolve()


@pytest.mark.parametrize(
    "platform, expected",
    [("darwin", "SwiftHelper"), ("win32", "WindowsHelper.exe"), ("linux", None)],
)
def test_native_helper_name(platform, expected):
    assert native_helper_name(platform) == expected
