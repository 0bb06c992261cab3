"""Tests for the note repository, the per-user lock and the database backend."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from notesync.exceptions import (
    RevisionConflict,
    ServerIdMismatch,
    StorageFailure,
    SyncAborted,
    UnknownUser,
)
from notesync.models.sync import SyncManifest
from notesync.services.datetime_service import parse_iso
from notesync.services.record_store import RecordStore
from notesync.services.repository import (
    DatabaseBackend,
    NoteRepository,
    UserLockRegistry,
    load_or_create_manifest,
)
from notesync.services.sync_service import ClientManifest, NoteChange
from tests.conftest import TEST_PASSWORD, TEST_SECRET_KEY

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from notesync.models.user import User

T0 = datetime(2024, 6, 1, 8, 0, tzinfo=UTC)
FIRST_SYNC = ClientManifest(server_id=None)


def _change(guid: str, *, base: int = 0, at: datetime = T0, body: str = "body") -> NoteChange:
    return NoteChange(
        guid=guid, title=guid.upper(), body=body, base_revision=base, client_timestamp=at
    )


@pytest.fixture
async def alice(user_factory: Callable[..., Awaitable[User]]) -> User:
    return await user_factory("alice")


class TestUserLockRegistry:
    def test_same_lock_per_username(self) -> None:
        registry = UserLockRegistry()
        assert registry.lock_for("alice") is registry.lock_for("alice")
        assert registry.lock_for("alice") is not registry.lock_for("bob")

    async def test_hold_times_out(self) -> None:
        registry = UserLockRegistry()
        async with registry.hold("alice", 1.0):
            with pytest.raises(StorageFailure) as exc_info:
                async with registry.hold("alice", 0.05):
                    pass
        assert exc_info.value.transient

    async def test_hold_releases_on_error(self) -> None:
        registry = UserLockRegistry()
        with pytest.raises(ValueError):
            async with registry.hold("alice", 1.0):
                raise ValueError("boom")
        assert not registry.lock_for("alice").locked()

    async def test_other_users_are_not_blocked(self) -> None:
        registry = UserLockRegistry()
        async with registry.hold("alice", 1.0), registry.hold("bob", 0.05):
            assert registry.lock_for("alice").locked()
            assert registry.lock_for("bob").locked()


class TestManifest:
    async def test_server_id_assigned_once(self, db_session: AsyncSession, alice: User) -> None:
        store = RecordStore(db_session, timeout=5.0)
        first = await load_or_create_manifest(store, alice)
        second = await load_or_create_manifest(store, alice)
        assert first.server_id
        assert first.server_id == second.server_id
        assert first.current_revision == 0

    async def test_server_id_survives_rollback(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        alice: User,
    ) -> None:
        async with session_factory() as session:
            store = RecordStore(session, timeout=5.0)
            server_id = (await load_or_create_manifest(store, alice)).server_id
            await store.rollback()

        async with session_factory() as session:
            manifest = await RecordStore(session).get(
                SyncManifest, SyncManifest.user_id == alice.id
            )
        assert manifest is not None
        assert manifest.server_id == server_id

    async def test_server_ids_differ_between_users(
        self,
        db_session: AsyncSession,
        user_factory: Callable[..., Awaitable[User]],
    ) -> None:
        store = RecordStore(db_session, timeout=5.0)
        alice = await user_factory("alice")
        bob = await user_factory("bob")
        alice_manifest = await load_or_create_manifest(store, alice)
        bob_manifest = await load_or_create_manifest(store, bob)
        assert alice_manifest.server_id != bob_manifest.server_id


class TestNoteRepository:
    async def test_unknown_user(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        with pytest.raises(UnknownUser):
            async with NoteRepository.open(
                session_factory, "nobody", locks=UserLockRegistry(), timeout=1.0
            ):
                pass

    async def test_lock_is_released_after_close(
        self, session_factory: async_sessionmaker[AsyncSession], alice: User
    ) -> None:
        locks = UserLockRegistry()
        async with NoteRepository.open(session_factory, "alice", locks=locks, timeout=1.0):
            assert locks.lock_for("alice").locked()
        assert not locks.lock_for("alice").locked()

    async def test_commit_touches_user_record(
        self, session_factory: async_sessionmaker[AsyncSession], alice: User
    ) -> None:
        async with NoteRepository.open(
            session_factory, "alice", locks=UserLockRegistry(), timeout=1.0
        ) as repository:
            await repository.engine.begin_sync(FIRST_SYNC)
            await repository.engine.apply_client_changes([_change("n1")])
            await repository.commit()
            updated_at = repository.user.updated_at
        assert parse_iso(updated_at) > parse_iso(alice.updated_at)

    async def test_storage_refuses_foreign_notes(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        user_factory: Callable[..., Awaitable[User]],
        alice: User,
    ) -> None:
        from notesync.models.note import Note

        bob = await user_factory("bob")
        async with NoteRepository.open(
            session_factory, "alice", locks=UserLockRegistry(), timeout=1.0
        ) as repository:
            note = Note(
                user_id=bob.id,
                guid="n1",
                created_at=T0.isoformat(),
                changed_at=T0.isoformat(),
                revision=1,
            )
            with pytest.raises(ValueError, match="another user"):
                await repository.storage.save(note)

    async def test_notes_are_scoped_per_user(
        self,
        backend: DatabaseBackend,
        user_factory: Callable[..., Awaitable[User]],
        alice: User,
    ) -> None:
        await user_factory("bob")
        await backend.sync("alice", FIRST_SYNC, [_change("shared", body="alice")])
        result = await backend.sync("bob", FIRST_SYNC, [_change("shared", body="bob")])

        assert result.report.applied == ["shared"]
        assert result.manifest.current_revision == 1
        async with backend.open_repository("alice") as repository:
            note = await repository.storage.load("shared")
            assert note is not None
            assert note.body == "alice"


class TestDatabaseBackendSync:
    async def test_first_sync_returns_server_notes(
        self, backend: DatabaseBackend, alice: User
    ) -> None:
        await backend.sync("alice", FIRST_SYNC, [_change("from-phone")])

        result = await backend.sync("alice", FIRST_SYNC, [_change("from-laptop")])

        assert result.manifest.current_revision == 2
        assert result.report.applied == ["from-laptop"]
        assert [note.guid for note in result.notes] == ["from-phone"]

    async def test_superseded_note_returns_server_version(
        self, backend: DatabaseBackend, alice: User
    ) -> None:
        first = await backend.sync(
            "alice", FIRST_SYNC, [_change("n1", at=T0 + timedelta(hours=1), body="phone")]
        )
        client = ClientManifest(server_id=first.manifest.server_id, last_sync_revision=1)
        # Already knows revision 1, so the conflicting note is not part of the delta.
        result = await backend.sync("alice", client, [_change("n1", body="laptop")])

        assert result.report.superseded == ["n1"]
        assert [(note.guid, note.body) for note in result.notes] == [("n1", "phone")]
        assert result.manifest.current_revision == 1

    async def test_mismatched_manifest(self, backend: DatabaseBackend, alice: User) -> None:
        await backend.sync("alice", FIRST_SYNC, [_change("n1")])
        with pytest.raises(ServerIdMismatch) as exc_info:
            await backend.sync(
                "alice", ClientManifest(server_id="stale", last_sync_revision=1), []
            )
        assert exc_info.value.server_id != "stale"

    async def test_retries_transient_failures(
        self,
        backend: DatabaseBackend,
        alice: User,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original_commit = NoteRepository.commit
        calls = 0

        async def _flaky_commit(self: NoteRepository) -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                await self.engine.abort()
                raise SyncAborted(RevisionConflict(0))
            return await original_commit(self)

        monkeypatch.setattr(NoteRepository, "commit", _flaky_commit)
        result = await backend.sync("alice", FIRST_SYNC, [_change("n1")])

        assert result.attempts == 2
        assert result.manifest.current_revision == 1
        assert result.report.applied == ["n1"]

    async def test_gives_up_after_max_retries(
        self,
        backend: DatabaseBackend,
        alice: User,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        calls = 0

        async def _failing_commit(self: NoteRepository) -> int:
            nonlocal calls
            calls += 1
            await self.engine.abort()
            raise SyncAborted(StorageFailure("locked", transient=True))

        monkeypatch.setattr(NoteRepository, "commit", _failing_commit)
        with pytest.raises(SyncAborted):
            await backend.sync("alice", FIRST_SYNC, [_change("n1")])
        # One attempt plus sync_max_retries=2 retries.
        assert calls == 3

    async def test_permanent_failure_is_not_retried(
        self,
        backend: DatabaseBackend,
        alice: User,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        calls = 0

        async def _failing_commit(self: NoteRepository) -> int:
            nonlocal calls
            calls += 1
            await self.engine.abort()
            raise SyncAborted(StorageFailure("constraint violated"))

        monkeypatch.setattr(NoteRepository, "commit", _failing_commit)
        with pytest.raises(SyncAborted) as exc_info:
            await backend.sync("alice", FIRST_SYNC, [_change("n1")])
        assert not exc_info.value.retryable
        assert calls == 1

    async def test_concurrent_syncs_are_serialized(
        self, backend: DatabaseBackend, alice: User
    ) -> None:
        results = await asyncio.gather(
            backend.sync("alice", FIRST_SYNC, [_change("a")]),
            backend.sync("alice", FIRST_SYNC, [_change("b")]),
        )
        assert sorted(result.manifest.current_revision for result in results) == [1, 2]

    async def test_backend_exposes_credentials_and_tokens(
        self, backend: DatabaseBackend, alice: User
    ) -> None:
        from notesync.services.auth_service import create_jwt_access_token

        assert await backend.credentials.verify_credentials("alice", TEST_PASSWORD)
        token = create_jwt_access_token({"sub": str(alice.id)}, TEST_SECRET_KEY)
        assert await backend.tokens.resolve_username(token) == "alice"


class TestResetCollection:
    async def test_reset_forces_full_resync(self, backend: DatabaseBackend, alice: User) -> None:
        first = await backend.sync("alice", FIRST_SYNC, [_change("n1"), _change("n2")])
        old_client = ClientManifest(server_id=first.manifest.server_id, last_sync_revision=1)

        new_server_id = await backend.reset_collection("alice")

        assert new_server_id != first.manifest.server_id
        with pytest.raises(ServerIdMismatch):
            await backend.sync("alice", old_client, [])
        result = await backend.sync("alice", FIRST_SYNC, [])
        assert result.manifest.server_id == new_server_id
        assert result.manifest.current_revision == 0
        assert result.notes == []

    async def test_reset_unknown_user(self, backend: DatabaseBackend) -> None:
        with pytest.raises(UnknownUser):
            await backend.reset_collection("nobody")
