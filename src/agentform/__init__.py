"""Job orchestration core for AI-driven form workflows."""

__version__ = "0.1.0"
