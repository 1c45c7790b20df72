"""Task-queue driver for non-interactive CLI coding agents."""

__version__ = "0.1.0"
