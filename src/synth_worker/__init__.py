"""Queue-draining synthesis engine workers."""

__version__ = "0.1.0"
