"""CI pipeline runner: phase orchestration for test discovery and execution."""

__version__ = "0.1.0"
