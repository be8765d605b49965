"""Resource helper utilities.

This module centralises the logic for locating non-Python *data files* that
ship with Voice Scribe – most importantly the platform native helper binaries
under ``bin/``.  In the normal development environment (running the source
checkout directly) resources live on disk relative to the repository root.
Once the application is packaged with **PyInstaller** the files are embedded
inside the frozen bundle and are unpacked into a temporary directory exposed
via the :pydataattr:`sys._MEIPASS` attribute.

>>> resource_path("bin/SwiftHelper")
PosixPath('/abs/path/to/bin/SwiftHelper')

``VOICE_SCRIBE_RESOURCE_ROOT`` overrides the root for tests and custom
installs.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Union

__all__ = ["resource_path", "native_helper_name"]

_PathLike = Union[str, Path, "os.PathLike[str]"]


def _determine_base_path() -> Path:
    """Return the directory that forms the root for bundled data files.

    * An explicit ``VOICE_SCRIBE_RESOURCE_ROOT`` environment variable wins.
    * In **frozen** mode (PyInstaller, cx_Freeze, etc.) we rely on the private
      :pydataattr:`sys._MEIPASS` path exposed by the bootloader.
    * Otherwise the repository root (parent of the *scribe_core* package).
    """
    override = os.environ.get("VOICE_SCRIBE_RESOURCE_ROOT")
    if override:
        return Path(override)

    if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
        # noinspection PyProtectedMember
        return Path(sys._MEIPASS)  # type: ignore[arg-type] – provided by bootloader

    return Path(__file__).resolve().parent.parent


def resource_path(relative_path: _PathLike) -> Path:
    """Resolve *relative_path* against the application bundle root.

    The returned :class:`~pathlib.Path` is **always absolute**.  An empty
    string returns the root directory itself.
    """

    base_path = _determine_base_path()
    return (base_path / Path(relative_path)).resolve()


def native_helper_name(platform: str | None = None) -> str | None:
    """Return the helper executable name for *platform* (default: current).

    ``None`` means the platform has no native helper.
    """
    platform = platform or sys.platform
    if platform == "darwin":
        return "SwiftHelper"
    if platform.startswith("win"):
        return "WindowsHelper.exe"
    return None
