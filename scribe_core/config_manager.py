import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional


class ConfigManager:
    """Simple JSON-backed configuration loader / saver.

    The config file is stored in the user-specific application data directory.
    On Windows we honour the %APPDATA% convention. On *nix platforms we use
    $XDG_CONFIG_HOME and fall back to ~/.config.

    Values missing from the file are filled in from :attr:`DEFAULTS`, so a
    config written by an older version keeps working after new keys are added.
    The class also satisfies the ``SettingsStore`` collaborator contract.
    """

    _FILENAME = "config.json"

    #: Default configuration values shipped with Voice Scribe.
    DEFAULTS: Dict[str, Any] = {
        # Shortcuts
        "toggle_shortcut": [63, 49],       # helper key codes: Fn + Space
        "push_to_talk_shortcut": [63],     # Fn
        "fallback_hotkey": "ctrl+alt+f",
        # Voice activity detection
        "vad_backend": "webrtc",          # "webrtc" | "energy"
        "vad_aggressiveness": 2,
        "vad_on_threshold": 0.5,
        "vad_off_threshold": 0.35,
        "min_consecutive_speech_frames": 3,
        "silence_timeout_ms": 800,
        "pre_roll_frames": 0,
        "max_segment_ms": 30000,
        # Audio capture
        "sample_rate": 16000,
        "frame_samples": 512,
        "frame_queue_size": 256,
        "input_device_index": None,
        # Transcription worker
        "model_path": None,
        "stream_chunk_frames": 32,
        "max_pending_segments": 64,
        "eviction_policy": "drop_oldest_non_final",
        "transcribe_timeout_sec": 30.0,
        "load_model_timeout_sec": 120.0,
        "worker_max_restarts": 3,
        "worker_restart_backoff_sec": 0.5,
        "worker_restart_backoff_max_sec": 10.0,
        # Native helper
        "native_helper_path": None,
        "helper_call_timeout_sec": 2.0,
        # Recording
        "max_recording_s": 600,
        "mute_while_recording": True,
        "paste_result": True,
        "clipboard_fallback_dir": None,
    }

    def __init__(self, app_name: str = "Voice Scribe") -> None:
        self.app_name = app_name
        self._config_path: Path = self._resolve_config_path()
        self.settings: Dict[str, Any] = {}
        self._load()

    # ---------------------------------------------------------------------
    # Public helpers
    # ---------------------------------------------------------------------
    def get(self, key: str, default: Optional[Any] = None) -> Any:
        """Return the configuration value for *key*, or *default* if missing."""
        return self.settings.get(key, default)

    def set(self, key: str, value: Any, *, auto_save: bool = True) -> None:
        """Set *key* to *value*. Optionally persist immediately."""
        self.settings[key] = value
        if auto_save:
            self._save()

    def reload(self) -> None:
        """Force reload configuration from disk, discarding local changes."""
        self._load()

    @property
    def path(self) -> Path:
        return self._config_path

    # ------------------------------------------------------------------
    # Implementation details
    # ------------------------------------------------------------------
    def _resolve_config_path(self) -> Path:
        """Compute platform-appropriate path for the JSON config."""
        # %APPDATA% wins whenever it is set so tests can redirect the file on
        # any host OS.
        if os.environ.get("APPDATA"):
            base_dir = Path(os.environ["APPDATA"])
        elif os.name == "nt":
            base_dir = Path(Path.home())
        else:
            base_dir = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")

        return base_dir / self.app_name.replace(" ", "_") / self._FILENAME

    def _load(self) -> None:
        """Load settings from disk, creating the file with defaults if absent."""
        try:
            if self._config_path.exists():
                with self._config_path.open("r", encoding="utf-8") as fh:
                    stored = json.load(fh)
                if not isinstance(stored, dict):
                    raise ValueError(f"expected a JSON object, got {type(stored).__name__}")
                self.settings = {**self.DEFAULTS, **stored}
            else:
                self.settings = self.DEFAULTS.copy()
                self._write_to_disk(self.settings)
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logging.warning("Failed to load config – using defaults: %s", exc)
            self.settings = self.DEFAULTS.copy()
            # Attempt to overwrite the corrupted file with defaults.
            try:
                self._write_to_disk(self.settings)
            except OSError as write_exc:
                logging.error("Unable to write default config: %s", write_exc)

    def _save(self) -> None:
        """Persist current *settings* to disk."""
        self._write_to_disk(self.settings)

    def _write_to_disk(self, data: Dict[str, Any]) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        with self._config_path.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=4)

    # ------------------------------------------------------------------
    # Convenience dunder methods
    # ------------------------------------------------------------------
    def __getitem__(self, item: str) -> Any:  # dict-style access
        return self.settings[item]

    def __setitem__(self, key: str, value: Any) -> None:
        self.set(key, value)

    def __contains__(self, item: str) -> bool:
        return item in self.settings

    def __repr__(self) -> str:  # pragma: no cover
        return f"<ConfigManager path={self._config_path!s} keys={list(self.settings.keys())}>"
