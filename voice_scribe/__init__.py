"""Voice Scribe application package: recording orchestration and the CLI."""

__version__ = "0.1.0"
