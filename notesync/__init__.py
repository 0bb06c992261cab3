"""NoteSync: multi-device note synchronization server."""

__version__ = "0.1.0"
