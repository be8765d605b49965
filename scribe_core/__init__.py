"""Voice Scribe dictation core.

Exposes commonly used helpers at the package root for convenience.  Modules
with native or hardware dependencies (PyAudio capture, webrtcvad, keyboard)
import those libraries lazily, so importing the package stays cheap – the
transcription worker process imports it on every start.
"""

from .audio_types import AudioFrame, Segment  # noqa: F401
from .config_manager import ConfigManager  # noqa: F401
from .errors import (  # noqa: F401
    CapabilityUnavailable,
    LocalTranscriptionFailedError,
    ModelMissingError,
    SegmentDroppedError,
    WavFormatError,
)
from .resource_manager import resource_path  # noqa: F401
