"""Note storage adapter: one user's notes on top of the record store."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete

from notesync.models.note import Note

if TYPE_CHECKING:
    from notesync.models.user import User
    from notesync.services.record_store import RecordStore

logger = logging.getLogger(__name__)


class NoteStorage:
    """CRUD over the notes owned by a single user.

    Deletions leave a tombstone row (``is_deleted``) so they can propagate to
    other clients through ``list_changed_since``; tombstones are only removed
    by ``purge_tombstones``.
    """

    def __init__(self, store: RecordStore, user: User) -> None:
        self._store = store
        self._user_id = user.id

    @property
    def store(self) -> RecordStore:
        return self._store

    async def load(self, guid: str) -> Note | None:
        """Return the note (or its tombstone), or None if this user has no such note."""
        return await self._store.get(Note, Note.user_id == self._user_id, Note.guid == guid)

    async def save(self, note: Note) -> None:
        """Insert or update a note, binding it to this user."""
        if note.user_id is None:
            note.user_id = self._user_id
        elif note.user_id != self._user_id:
            raise ValueError(f"Note {note.guid} belongs to another user")
        await self._store.put(note)

    async def delete(self, guid: str, *, revision: int, changed_at: str) -> Note | None:
        """Turn a note into a tombstone at ``revision``. Returns None if absent."""
        note = await self.load(guid)
        if note is None:
            return None
        note.is_deleted = True
        note.body = ""
        note.revision = revision
        note.changed_at = changed_at
        await self._store.put(note)
        return note

    async def list_changed_since(self, revision: int) -> list[Note]:
        """Notes and tombstones modified after ``revision``, oldest revision first."""
        return await self._store.get_all(
            Note,
            Note.user_id == self._user_id,
            Note.revision > revision,
            order_by=(Note.revision, Note.guid),
        )

    async def purge_tombstones(self, up_to_revision: int) -> int:
        """Physically remove tombstones at or below ``up_to_revision``."""
        result = await self._store.execute(
            delete(Note)
            .where(
                Note.user_id == self._user_id,
                Note.is_deleted.is_(True),
                Note.revision <= up_to_revision,
            )
            .execution_options(synchronize_session=False)
        )
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d tombstones up to revision %d", purged, up_to_revision)
        return purged

    async def close(self) -> None:
        """Release the transaction, discarding anything not committed."""
        await self._store.rollback()
