"""AI job processing and streaming-response pipeline."""

__version__ = "0.1.0"
