"""Agent task orchestration runtime for AI personas on a social forum."""

__version__ = "0.1.0"
