from __future__ import annotations

"""Centralised *crash reporting* utility.

This module installs a global ``sys.excepthook`` (and ``threading.excepthook``
for the capture, dispatcher and reader threads) capturing *all* uncaught
exceptions into a dedicated rotating log file (``logs/crash.log``) capped at
*10 × 1 MiB*.

It can also bundle the most-recent ``crash.log`` into a timestamped ZIP
archive so that end-users can easily share diagnostic information.

* ``install()`` – register the exception hooks (idempotent).
* ``generate_report_zip()`` – create & return a ``Path`` to a ZIP containing
  the freshest crash log.
* ``close()`` – restore the previous hooks and close the handlers.

Paths are read from the environment when :func:`install` runs:
``VOICE_SCRIBE_CRASH_LOG``, ``VOICE_SCRIBE_REPORTS_DIR``,
``VOICE_SCRIBE_CRASH_MAX_BYTES`` and ``VOICE_SCRIBE_CRASH_BACKUP_COUNT``.
"""

import datetime as _dt
import logging
import os
import sys
import threading
import traceback
import zipfile
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import TracebackType
from typing import Optional, Type

from .logging_config import LOG_FORMAT

__all__ = [
    "install",
    "generate_report_zip",
    "close",
    "crash_log_path",
    "reports_dir",
]

_logger = logging.getLogger("voice_scribe.crash_reporter")
_logger.propagate = False  # Avoid duplicate entries if root logger also logs
_logger.setLevel(logging.ERROR)

_installed: bool = False
_previous_excepthook = None
_previous_thread_hook = None


# ---------------------------------------------------------------------------
# Configuration – overridable via *env* -------------------------------------
# ---------------------------------------------------------------------------


def crash_log_path() -> Path:
    return Path(os.getenv("VOICE_SCRIBE_CRASH_LOG", "logs/crash.log"))


def reports_dir() -> Path:
    override = os.getenv("VOICE_SCRIBE_REPORTS_DIR")
    if override:
        return Path(override)
    if os.name == "nt":
        return Path(os.getenv("APPDATA", str(Path.home()))) / "Voice Scribe" / "reports"
    return Path.home() / ".voice_scribe" / "reports"


def _attach_handler() -> None:
    log_path = crash_log_path()
    if any(isinstance(h, RotatingFileHandler) and h.baseFilename == str(log_path.resolve()) for h in _logger.handlers):
        return
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(log_path),
        maxBytes=int(os.getenv("VOICE_SCRIBE_CRASH_MAX_BYTES", str(1 * 1024 * 1024))),
        backupCount=int(os.getenv("VOICE_SCRIBE_CRASH_BACKUP_COUNT", "10")),
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    _logger.addHandler(handler)


# ---------------------------------------------------------------------------
# Exception hooks ------------------------------------------------------------
# ---------------------------------------------------------------------------


def _handle_exception(
    exc_type: Type[BaseException] | None,
    exc_value: BaseException | None,
    exc_tb: TracebackType | None,
    *,
    thread_name: Optional[str] = None,
) -> None:
    """Write the traceback to the crash log and refresh the report ZIP."""

    if exc_type is not None and issubclass(exc_type, KeyboardInterrupt):
        if _previous_excepthook is not None:
            _previous_excepthook(exc_type, exc_value, exc_tb)
        return

    where = f" in thread {thread_name}" if thread_name else ""
    _logger.critical("Uncaught exception%s", where, exc_info=(exc_type, exc_value, exc_tb))
    for handler in _logger.handlers:
        handler.flush()

    if not _logger.handlers:
        # Handler could not be attached – write directly as a last resort.
        try:
            log_path = crash_log_path()
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as fh:
                traceback.print_exception(exc_type, exc_value, exc_tb, file=fh)
        except OSError:
            pass

    # We are already in a crash state; report bundling must not raise.
    try:
        generate_report_zip()
    except OSError as exc:
        logging.getLogger(__name__).debug("Could not bundle crash report: %s", exc)


def _handle_thread_exception(args: threading.ExceptHookArgs) -> None:
    if args.exc_type is SystemExit:
        return
    name = args.thread.name if args.thread is not None else None
    _handle_exception(args.exc_type, args.exc_value, args.exc_traceback, thread_name=name)


def install() -> None:  # noqa: D401 – imperative API
    """Register the crash-reporter as ``sys.excepthook`` (idempotent)."""
    global _installed, _previous_excepthook, _previous_thread_hook  # noqa: PLW0603
    if _installed:
        return
    _attach_handler()
    _previous_excepthook = sys.excepthook
    _previous_thread_hook = threading.excepthook
    sys.excepthook = _handle_exception  # type: ignore[assignment]
    threading.excepthook = _handle_thread_exception
    _installed = True


# ---------------------------------------------------------------------------
# Report ZIP creation --------------------------------------------------------
# ---------------------------------------------------------------------------


def generate_report_zip() -> Path:  # noqa: D401 – public API
    """Bundle the *latest* ``crash.log`` into a ZIP inside :func:`reports_dir`.

    Returns
    -------
    Path
        Filesystem path to the generated ZIP archive.
    """
    target_dir = reports_dir()
    target_dir.mkdir(parents=True, exist_ok=True)
    timestamp = _dt.datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    zip_path = target_dir / f"crash_report_{timestamp}.zip"

    log_path = crash_log_path()
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        if log_path.exists():
            zf.write(log_path, arcname="crash.log")
    return zip_path


# ---------------------------------------------------------------------------
# Helpers for tests / graceful shutdown -------------------------------------
# ---------------------------------------------------------------------------


def close() -> None:  # noqa: D401 – public API
    """Restore the previous hooks and close all crash-log handlers."""
    global _installed  # noqa: PLW0603

    if _installed:
        sys.excepthook = _previous_excepthook or sys.__excepthook__
        threading.excepthook = _previous_thread_hook or threading.__excepthook__
        _installed = False

    for handler in list(_logger.handlers):
        try:
            handler.flush()
            handler.close()
        finally:
            _logger.removeHandler(handler)
