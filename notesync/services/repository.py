"""Note repository: a sync session scoped to one authenticated user."""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from notesync.exceptions import StorageFailure, SyncAborted, UnknownUser
from notesync.models.sync import SyncManifest
from notesync.models.user import User
from notesync.services.auth_service import CredentialVerifier, DatabaseCredentialVerifier
from notesync.services.datetime_service import format_iso, now_utc
from notesync.services.note_storage import NoteStorage
from notesync.services.record_store import RecordStore
from notesync.services.sync_service import (
    ClientManifest,
    ConflictReport,
    NoteChange,
    NoteSnapshot,
    ServerManifest,
    SyncEngine,
)
from notesync.services.token_service import DatabaseTokenHandler, TokenHandler
from notesync.services.user_service import reset_note_collection

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Sequence
    from contextlib import AbstractAsyncContextManager

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from notesync.config import Settings

logger = logging.getLogger(__name__)


class UserLockRegistry:
    """Per-username mutual exclusion for sync sessions within one process.

    Thread-safety: safe under asyncio's single-threaded cooperative model only.
    Sessions in other processes are kept honest by the manifest
    compare-and-swap in ``SyncEngine.commit``.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, username: str) -> asyncio.Lock:
        lock = self._locks.get(username)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[username] = lock
        return lock

    @asynccontextmanager
    async def hold(self, username: str, timeout: float | None) -> AsyncIterator[None]:
        """Hold the user's lock, waiting at most ``timeout`` seconds for it."""
        lock = self.lock_for(username)
        try:
            async with asyncio.timeout(timeout):
                await lock.acquire()
        except TimeoutError as exc:
            logger.warning("Timed out waiting for the sync lock of %s", username)
            raise StorageFailure(
                "Timed out waiting for another sync session", transient=True
            ) from exc
        try:
            yield
        finally:
            lock.release()


async def load_or_create_manifest(store: RecordStore, user: User) -> SyncManifest:
    """Return the user's manifest, assigning a server id the first time.

    The server id is committed immediately so it is assigned exactly once,
    whether or not the session that triggered it goes on to commit.
    """
    manifest = await store.get(SyncManifest, SyncManifest.user_id == user.id)
    if manifest is not None and manifest.server_id:
        return manifest

    now = format_iso(now_utc())
    if manifest is None:
        manifest = SyncManifest(user_id=user.id, current_revision=0, updated_at=now)
    manifest.server_id = str(uuid.uuid4())
    manifest.updated_at = now
    await store.put(manifest)
    await store.commit()
    logger.info("Assigned server id %s to user %s", manifest.server_id, user.username)
    return manifest


class NoteRepository:
    """Storage and sync engine bound to one user for one session.

    Open it with ``NoteRepository.open``. ``commit()`` is the only durability
    point; leaving the context just releases the transaction, session and
    per-user lock, discarding anything not committed.
    """

    def __init__(
        self,
        store: RecordStore,
        user: User,
        manifest: SyncManifest,
        *,
        tombstone_retention: int = 0,
    ) -> None:
        self._user = user
        self._storage = NoteStorage(store, user)
        self._engine = SyncEngine(
            self._storage, manifest, tombstone_retention=tombstone_retention
        )

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        username: str,
        *,
        locks: UserLockRegistry,
        timeout: float | None = None,
        tombstone_retention: int = 0,
    ) -> AsyncGenerator[NoteRepository]:
        """Open a repository for ``username``; raises ``UnknownUser`` if absent."""
        async with locks.hold(username, timeout), session_factory() as session:
            store = RecordStore(session, timeout)
            try:
                user = await store.get(User, User.username == username)
                if user is None:
                    raise UnknownUser(username)
                manifest = await load_or_create_manifest(store, user)
                repository = cls(store, user, manifest, tombstone_retention=tombstone_retention)
                try:
                    yield repository
                finally:
                    await repository.close()
            finally:
                await store.rollback()

    @property
    def user(self) -> User:
        return self._user

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    @property
    def storage(self) -> NoteStorage:
        return self._storage

    @property
    def manifest(self) -> ServerManifest:
        return self._engine.manifest

    async def commit(self) -> int:
        """Persist the session's note changes, the manifest and the user record."""
        if self._engine.has_changes:
            self._user.updated_at = format_iso(now_utc())
        return await self._engine.commit()

    async def close(self) -> None:
        """Discard uncommitted work and release the transaction."""
        await self._engine.abort()
        await self._storage.close()


@dataclass
class SyncResult:
    """What a completed sync hands back to the client."""

    manifest: ServerManifest
    notes: list[NoteSnapshot]
    report: ConflictReport
    attempts: int = 1


class DataBackend(Protocol):
    """Capabilities the API layer needs from a storage backend."""

    credentials: CredentialVerifier
    tokens: TokenHandler

    def open_repository(self, username: str) -> AbstractAsyncContextManager[NoteRepository]: ...

    async def sync(
        self,
        username: str,
        client_manifest: ClientManifest,
        changes: Sequence[NoteChange],
    ) -> SyncResult: ...

    async def reset_collection(self, username: str) -> str: ...


class DatabaseBackend:
    """Backend storing users, notes and tokens through SQLAlchemy."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        locks: UserLockRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._locks = locks if locks is not None else UserLockRegistry()
        self.credentials: CredentialVerifier = DatabaseCredentialVerifier(session_factory)
        self.tokens: TokenHandler = DatabaseTokenHandler(session_factory, settings.secret_key)

    def open_repository(self, username: str) -> AbstractAsyncContextManager[NoteRepository]:
        return NoteRepository.open(
            self._session_factory,
            username,
            locks=self._locks,
            timeout=self._settings.storage_timeout_seconds,
            tombstone_retention=self._settings.tombstone_retention_revisions,
        )

    async def sync(
        self,
        username: str,
        client_manifest: ClientManifest,
        changes: Sequence[NoteChange],
    ) -> SyncResult:
        """Run a full sync session, retrying transient failures.

        Each retry opens a fresh session, so the delta and the conflict
        decisions are recomputed against whatever revision won the race.
        """
        max_retries = self._settings.sync_max_retries
        attempt = 0
        while True:
            attempt += 1
            async with self.open_repository(username) as repository:
                delta = await repository.engine.begin_sync(client_manifest)
                try:
                    report = await repository.engine.apply_client_changes(changes)
                    revision = await repository.commit()
                except SyncAborted as exc:
                    if not exc.retryable or attempt > max_retries:
                        raise
                    logger.warning(
                        "Sync for %s aborted (%s), retry %d of %d",
                        username,
                        exc.cause,
                        attempt,
                        max_retries,
                    )
                    continue

                applied = set(report.applied)
                notes = [note for note in delta.notes if note.guid not in applied]
                # The client needs the winning server version of every superseded note.
                delivered = {note.guid for note in notes}
                for guid in report.superseded:
                    if guid in delivered:
                        continue
                    stored = await repository.storage.load(guid)
                    if stored is not None:
                        notes.append(NoteSnapshot.from_note(stored))
                        delivered.add(guid)
                notes.sort(key=lambda note: (note.revision, note.guid))

                return SyncResult(
                    manifest=ServerManifest(
                        server_id=delta.manifest.server_id, current_revision=revision
                    ),
                    notes=notes,
                    report=report,
                    attempts=attempt,
                )

    async def reset_collection(self, username: str) -> str:
        """Start a new collection instance for ``username`` while no sync is running."""
        async with (
            self._locks.hold(username, self._settings.storage_timeout_seconds),
            self._session_factory() as session,
        ):
            return await reset_note_collection(session, username)
