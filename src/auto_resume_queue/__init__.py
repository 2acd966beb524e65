"""Persistent task queue with cross-process locking and resumable workflows."""

__version__ = "0.3.0"
