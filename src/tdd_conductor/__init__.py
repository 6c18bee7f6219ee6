"""Job orchestration core for externally executed AI coding agents."""

__version__ = "0.1.0"
