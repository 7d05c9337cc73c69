"""LessonUp - Resumable, fault-tolerant upload queue for lesson materials."""

__version__ = "0.1.0"
