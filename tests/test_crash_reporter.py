import inspect
import os
import sys
import threading
import zipfile
from pathlib import Path

import pytest

ROOT_DIR = Path(inspect.getfile(inspect.currentframe())).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import voice_scribe.crash_reporter as crash_reporter  # noqa: E402


@pytest.fixture(autouse=True)
def _crash_paths(tmp_path, monkeypatch):  # noqa: D401 – auto-cleanup
    """Redirect crash log & reports to *tmp_path* to keep repo clean."""
    monkeypatch.setenv("VOICE_SCRIBE_CRASH_LOG", str(tmp_path / "logs" / "crash.log"))
    monkeypatch.setenv("VOICE_SCRIBE_REPORTS_DIR", str(tmp_path / "reports"))
    yield
    crash_reporter.close()


def test_install_is_idempotent_and_close_restores_hooks():
    previous_hook, previous_thread_hook = sys.excepthook, threading.excepthook

    crash_reporter.install()
    crash_reporter.install()

    assert sys.excepthook is crash_reporter._handle_exception
    assert threading.excepthook is crash_reporter._handle_thread_exception
    crash_reporter.close()
    assert sys.excepthook is previous_hook
    assert threading.excepthook is previous_thread_hook


def test_uncaught_exception_is_logged_and_bundled(tmp_path):
    crash_reporter.install()

    # Trigger unhandled exception via the installed excepthook
    try:
        1 / 0
    except ZeroDivisionError as exc:  # noqa: B017 – intentional
        sys.excepthook(type(exc), exc, exc.__traceback__)

    contents = (tmp_path / "logs" / "crash.log").read_text(encoding="utf-8")
    assert "Uncaught exception" in contents
    assert "ZeroDivisionError" in contents

    reports = list((tmp_path / "reports").glob("crash_report_*.zip"))
    assert len(reports) == 1
    with zipfile.ZipFile(reports[0]) as zf:
        assert zf.namelist() == ["crash.log"]
        assert b"ZeroDivisionError" in zf.read("crash.log")


def test_thread_exception_names_the_thread(tmp_path):
    crash_reporter.install()

    def _boom():
        raise RuntimeError("pump exploded")

    worker = threading.Thread(target=_boom, name="recording-pump")
    worker.start()
    worker.join()

    contents = (tmp_path / "logs" / "crash.log").read_text(encoding="utf-8")
    assert "Uncaught exception in thread recording-pump" in contents
    assert "pump exploded" in contents


def test_keyboard_interrupt_is_passed_through(tmp_path, monkeypatch):
    seen = []
    monkeypatch.setattr(sys, "excepthook", lambda *args: seen.append(args[0]))
    crash_reporter.install()

    sys.excepthook(KeyboardInterrupt, KeyboardInterrupt(), None)

    assert seen == [KeyboardInterrupt]
    assert not list((tmp_path / "reports").glob("*.zip"))


def test_generate_report_zip_without_log(tmp_path):
    zip_path = crash_reporter.generate_report_zip()

    assert zip_path.parent == tmp_path / "reports"
    with zipfile.ZipFile(zip_path) as zf:
        assert zf.namelist() == []


@pytest.mark.skipif(os.name == "nt", reason="POSIX default location")
def test_default_reports_dir_is_under_home(tmp_path, monkeypatch):
    monkeypatch.delenv("VOICE_SCRIBE_REPORTS_DIR")
    monkeypatch.setenv("HOME", str(tmp_path))

    assert crash_reporter.reports_dir() == tmp_path / ".voice_scribe" / "reports"
