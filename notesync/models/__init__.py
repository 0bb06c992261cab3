"""SQLAlchemy ORM models for NoteSync."""

from notesync.models.base import Base
from notesync.models.note import Note
from notesync.models.sync import SyncManifest
from notesync.models.user import AccessToken, User

__all__ = [
    "AccessToken",
    "Base",
    "Note",
    "SyncManifest",
    "User",
]
