"""Sync engine: manifest comparison, delta computation, and conflict policy.

A sync session runs through ``IDLE -> MANIFEST_LOADED -> DELTA_COMPUTED ->
DELTA_APPLIED -> COMMITTED``. Any failure after client changes start being
applied rolls the transaction back and leaves the engine ``ABORTED``.

Revisions count committed sync transactions per user. Every note touched by
a session is stamped with ``current_revision + 1``; the manifest is advanced
to that value by a compare-and-swap in the same transaction, so either all
of a session's writes become visible or none do.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value

from notesync.exceptions import (
    InternalServerError,
    RevisionConflict,
    ServerIdMismatch,
    SyncAborted,
)
from notesync.models.note import Note
from notesync.models.sync import SyncManifest
from notesync.services.datetime_service import format_iso, now_utc, parse_datetime, parse_iso

if TYPE_CHECKING:
    from collections.abc import Iterable

    from notesync.services.note_storage import NoteStorage

logger = logging.getLogger(__name__)


class SyncState(StrEnum):
    """Lifecycle of one sync session."""

    IDLE = "idle"
    MANIFEST_LOADED = "manifest_loaded"
    DELTA_COMPUTED = "delta_computed"
    DELTA_APPLIED = "delta_applied"
    COMMITTED = "committed"
    ABORTED = "aborted"


_TERMINAL_STATES = frozenset({SyncState.COMMITTED, SyncState.ABORTED})


class ChangeOutcome(StrEnum):
    """What happens to one incoming client change."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SUPERSEDED = "superseded"
    IGNORE = "ignore"


@dataclass(frozen=True)
class ClientManifest:
    """Sync state the client reports: which collection, and the last revision it saw.

    ``server_id`` is None for a client that has never synced; such a client
    also leaves ``last_sync_revision`` at 0 and so receives every note.
    """

    server_id: str | None
    last_sync_revision: int = 0


@dataclass(frozen=True)
class ServerManifest:
    """Sync state the server reports back."""

    server_id: str
    current_revision: int


@dataclass(frozen=True)
class NoteChange:
    """One note as sent by a client, relative to the revision it was based on."""

    guid: str
    title: str
    body: str
    base_revision: int
    client_timestamp: datetime
    deleted: bool = False
    tags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        # Naive timestamps are taken as UTC, matching how they are stored.
        object.__setattr__(self, "client_timestamp", parse_datetime(self.client_timestamp))


@dataclass(frozen=True)
class NoteVersion:
    """The server-side facts the conflict policy looks at."""

    revision: int
    changed_at: datetime
    is_deleted: bool


@dataclass(frozen=True)
class NoteSnapshot:
    """Detached copy of a stored note, safe to use after the session closes."""

    guid: str
    title: str
    body: str
    tags: tuple[str, ...]
    created_at: str
    changed_at: str
    revision: int
    deleted: bool

    @classmethod
    def from_note(cls, note: Note) -> NoteSnapshot:
        return cls(
            guid=note.guid,
            title=note.title,
            body=note.body,
            tags=tuple(note.tags or ()),
            created_at=note.created_at,
            changed_at=note.changed_at,
            revision=note.revision,
            deleted=note.is_deleted,
        )


@dataclass
class ServerDelta:
    """Everything on the server the client has not seen yet."""

    manifest: ServerManifest
    notes: list[NoteSnapshot] = field(default_factory=list)


@dataclass
class ConflictReport:
    """Outcome of applying client changes.

    ``superseded`` lists client notes that lost a conflict; the server version
    is kept and the client must surface the loss (e.g. keep a renamed copy).
    """

    applied: list[str] = field(default_factory=list)
    superseded: list[str] = field(default_factory=list)


def note_version(note: Note) -> NoteVersion:
    return NoteVersion(
        revision=note.revision,
        changed_at=parse_iso(note.changed_at),
        is_deleted=note.is_deleted,
    )


def decide_change(server: NoteVersion | None, change: NoteChange) -> ChangeOutcome:
    """Conflict policy for one client change.

    - No server note: create it (a deletion of an unknown note is a no-op).
    - Server revision not past the client's base revision: the client saw
      the latest server state, so its version is applied.
    - Server revision past the base revision: both sides changed the note.
      Last writer wins by wall-clock timestamp; the client only wins when
      strictly newer, otherwise its change is superseded.

    Independently created notes with colliding ids follow the same rule.
    """
    if server is None:
        return ChangeOutcome.IGNORE if change.deleted else ChangeOutcome.CREATE

    if server.revision > change.base_revision and change.client_timestamp <= server.changed_at:
        return ChangeOutcome.SUPERSEDED

    if change.deleted:
        return ChangeOutcome.IGNORE if server.is_deleted else ChangeOutcome.DELETE
    return ChangeOutcome.UPDATE


def collapse_changes(changes: Iterable[NoteChange]) -> list[NoteChange]:
    """Keep one change per guid: the newest by timestamp, the later one on ties.

    Surviving changes stay in the order their guids first appeared.
    """
    latest: dict[str, NoteChange] = {}
    for change in changes:
        kept = latest.get(change.guid)
        if kept is None or change.client_timestamp >= kept.client_timestamp:
            latest[change.guid] = change
    return list(latest.values())


class SyncEngine:
    """Reconciles one client's changes with one user's stored notes."""

    def __init__(
        self,
        storage: NoteStorage,
        manifest: SyncManifest,
        *,
        tombstone_retention: int = 0,
    ) -> None:
        self._storage = storage
        self._manifest = manifest
        self._tombstone_retention = tombstone_retention
        self._state = SyncState.IDLE
        self._base_revision = manifest.current_revision
        self._changed: list[str] = []

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def manifest(self) -> ServerManifest:
        return ServerManifest(
            server_id=self._manifest.server_id,
            current_revision=self._base_revision,
        )

    @property
    def has_changes(self) -> bool:
        return bool(self._changed)

    def _require(self, *states: SyncState) -> None:
        if self._state not in states:
            expected = ", ".join(states)
            raise InternalServerError(f"Sync engine is {self._state}, expected {expected}")

    async def begin_sync(self, client_manifest: ClientManifest) -> ServerDelta:
        """Load the manifest and compute the delta the client has not seen.

        Raises ``ServerIdMismatch`` before any delta is computed when the
        client last synced against a different collection instance.
        """
        self._require(SyncState.IDLE)
        await self._storage.store.refresh(self._manifest)
        self._base_revision = self._manifest.current_revision
        self._state = SyncState.MANIFEST_LOADED

        server_id = self._manifest.server_id
        if client_manifest.server_id is not None and client_manifest.server_id != server_id:
            self._state = SyncState.ABORTED
            logger.info(
                "Client manifest for %s does not match server id %s",
                client_manifest.server_id,
                server_id,
            )
            raise ServerIdMismatch(client_manifest.server_id, server_id)

        since = client_manifest.last_sync_revision
        notes = await self._storage.list_changed_since(since)
        self._state = SyncState.DELTA_COMPUTED
        logger.debug(
            "Delta since revision %d: %d notes (server at %d)",
            since,
            len(notes),
            self._base_revision,
        )
        return ServerDelta(
            manifest=self.manifest,
            notes=[NoteSnapshot.from_note(note) for note in notes],
        )

    async def apply_client_changes(self, changes: Iterable[NoteChange]) -> ConflictReport:
        """Apply client changes in order, pending commit.

        A guid sent more than once counts only with its latest change.
        """
        self._require(SyncState.DELTA_COMPUTED)
        report = ConflictReport()
        try:
            for change in collapse_changes(changes):
                await self._apply_change(change, report)
        except Exception as exc:
            await self._abort()
            raise SyncAborted(exc) from exc
        self._state = SyncState.DELTA_APPLIED
        if report.superseded:
            logger.info("Superseded %d client changes", len(report.superseded))
        return report

    async def _apply_change(self, change: NoteChange, report: ConflictReport) -> None:
        note = await self._storage.load(change.guid)
        outcome = decide_change(None if note is None else note_version(note), change)
        pending_revision = self._base_revision + 1
        changed_at = format_iso(change.client_timestamp)

        if outcome is ChangeOutcome.SUPERSEDED:
            report.superseded.append(change.guid)
            return
        if outcome is ChangeOutcome.IGNORE:
            return

        if outcome is ChangeOutcome.DELETE:
            await self._storage.delete(
                change.guid, revision=pending_revision, changed_at=changed_at
            )
        else:
            if note is None:
                note = Note(guid=change.guid, created_at=changed_at)
            note.title = change.title
            note.body = change.body
            note.tags = list(change.tags)
            note.changed_at = changed_at
            note.revision = pending_revision
            note.is_deleted = False
            await self._storage.save(note)

        report.applied.append(change.guid)
        if change.guid not in self._changed:
            self._changed.append(change.guid)

    async def commit(self) -> int:
        """Make the session's changes durable and return the resulting revision.

        Without changes this is a no-op. Otherwise the manifest revision is
        advanced by exactly one, guarded by a compare-and-swap against the
        revision read in ``begin_sync``.
        """
        self._require(SyncState.DELTA_COMPUTED, SyncState.DELTA_APPLIED)
        if not self._changed:
            self._state = SyncState.COMMITTED
            return self._base_revision

        expected = self._base_revision
        new_revision = expected + 1
        updated_at = format_iso(now_utc())
        try:
            if self._tombstone_retention:
                await self._storage.purge_tombstones(new_revision - self._tombstone_retention)
            result = await self._storage.store.execute(
                update(SyncManifest)
                .where(
                    SyncManifest.user_id == self._manifest.user_id,
                    SyncManifest.current_revision == expected,
                )
                .values(current_revision=new_revision, updated_at=updated_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise RevisionConflict(expected)
            await self._storage.store.commit()
        except Exception as exc:
            await self._abort()
            raise SyncAborted(exc) from exc

        set_committed_value(self._manifest, "current_revision", new_revision)
        set_committed_value(self._manifest, "updated_at", updated_at)
        self._base_revision = new_revision
        self._state = SyncState.COMMITTED
        logger.info("Committed revision %d (%d notes)", new_revision, len(self._changed))
        return new_revision

    async def abort(self) -> None:
        """Discard all uncommitted work. No-op once the session has ended."""
        if self._state not in _TERMINAL_STATES:
            await self._abort()

    async def _abort(self) -> None:
        self._state = SyncState.ABORTED
        self._changed.clear()
        await self._storage.store.rollback()
