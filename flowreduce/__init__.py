"""Session-window reduce handlers, task management and message types."""

__version__ = "0.1.0"

__all__ = [
    "datum",
    "message",
    "options",
    "protocol",
    "sessionreducer",
]