from __future__ import annotations

"""Clipboard fallback for delivering transcripts.

The preferred delivery path is the native helper pasting straight into the
focused element.  When that fails – no helper, no focused text field, helper
crashed – :func:`deliver_text` falls back to :func:`copy_with_verification`,
which guarantees that the transcript ends up on the clipboard **or** in a
plain-text file on disk.

``pyperclip`` is imported at call time so unit-tests can patch it after this
module has been imported.
"""

import logging
import re
import time
import zlib
from pathlib import Path
from typing import Optional

__all__ = ["copy_with_verification", "deliver_text", "DELIVERY_OUTCOMES"]

_LOG = logging.getLogger(__name__)

DELIVERY_OUTCOMES = ("pasted", "clipboard", "file", "failed")

# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def _slugify(text: str, max_words: int = 7, max_len: int = 64) -> str:
    """Convert the first *max_words* of *text* into a safe filename slug."""

    words = re.split(r"\s+", text.strip())[:max_words]
    slug = "_".join(words)
    slug = re.sub(r"[^0-9A-Za-z_-]", "", slug)
    return slug[:max_len] or "transcript"


def _crc32(text: str) -> int:
    return zlib.crc32(text.encode("utf-8")) & 0xFFFFFFFF


def _write_fallback_file(payload: str, fallback_dir: str | Path | None) -> Optional[Path]:
    dest_dir = Path(fallback_dir or Path.cwd())
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        _LOG.warning("Failed to create fallback directory %s: %s", dest_dir, exc)
        dest_dir = Path.cwd()

    slug = _slugify(payload)
    file_path = dest_dir / f"{slug}.txt"
    # Guard against overwriting – append a counter if file exists.
    counter = 1
    while file_path.exists():
        file_path = dest_dir / f"{slug}_{counter}.txt"
        counter += 1

    try:
        file_path.write_text(payload, encoding="utf-8")
    except OSError as exc:
        _LOG.error("Failed to write fallback file %s: %s", file_path, exc)
        return None
    _LOG.info("Clipboard unavailable – wrote fallback file: %s", file_path)
    return file_path


def _copy_to_clipboard(payload: str, max_retries: int, retry_delay: float) -> bool:
    import pyperclip  # pylint: disable=import-outside-toplevel

    expected = _crc32(payload)
    for attempt in range(1, max_retries + 1):
        try:
            pyperclip.copy(payload)
            # Some clipboard back-ends complete asynchronously.
            time.sleep(retry_delay)
            if _crc32(pyperclip.paste() or "") == expected:
                _LOG.debug("Clipboard CRC32 verification succeeded on attempt %d", attempt)
                return True
            _LOG.debug("Clipboard verification mismatch on attempt %d", attempt)
        except pyperclip.PyperclipException as exc:
            _LOG.debug("Clipboard access failed on attempt %d/%d: %s", attempt, max_retries, exc)
        if attempt < max_retries:
            time.sleep(retry_delay)
    return False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def copy_with_verification(
    payload: str,
    *,
    max_retries: int = 3,
    retry_delay: float = 0.1,
    fallback_dir: str | Path | None = None,
) -> bool:
    """Copy *payload* to the clipboard and verify round-trip integrity.

    Parameters
    ----------
    payload
        The text that should be placed on the system clipboard.
    max_retries
        Number of attempts when either the copy or verification step fails.
    retry_delay
        Delay *(seconds)* between copy and verification and between retries.
    fallback_dir
        Directory where a ``.txt`` fallback file will be written if the
        clipboard cannot be used.  Defaults to the current working directory.

    Returns
    -------
    bool
        *True* when the clipboard now contains *payload*, otherwise *False*
        (a fallback file has been attempted).
    """

    if not payload:
        _LOG.debug("Nothing to copy – empty payload")
        return True
    if _copy_to_clipboard(payload, max_retries, retry_delay):
        return True
    _write_fallback_file(payload, fallback_dir)
    return False


def deliver_text(
    text: str,
    helper=None,
    *,
    fallback_dir: str | Path | None = None,
    max_retries: int = 3,
    retry_delay: float = 0.1,
) -> str:
    """Paste *text* via the native helper, falling back to the clipboard.

    Returns one of :data:`DELIVERY_OUTCOMES`.
    """

    if not text:
        return "pasted"
    if helper is not None and helper.paste_text(text):
        return "pasted"
    if _copy_to_clipboard(text, max_retries, retry_delay):
        _LOG.info("Transcript copied to clipboard (%d chars)", len(text))
        return "clipboard"
    return "file" if _write_fallback_file(text, fallback_dir) is not None else "failed"
