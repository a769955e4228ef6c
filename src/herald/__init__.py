"""herald: task execution and delivery pipeline for a personal assistant."""

__version__ = "0.1.0"
