"""tsk - terminal task manager with remote sync."""

__version__ = "0.1.0"
