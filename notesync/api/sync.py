"""Sync API endpoints: manifest exchange, delta download, and change upload."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from notesync.api.deps import get_backend, require_username
from notesync.schemas.sync import (
    BodyFormat,
    ManifestResponse,
    NoteResponse,
    NotesResponse,
    SyncRequest,
    SyncResponse,
)
from notesync.services.datetime_service import parse_datetime
from notesync.services.markup_service import to_html, to_note_markup
from notesync.services.repository import DataBackend
from notesync.services.sync_service import (
    ClientManifest,
    NoteChange,
    NoteSnapshot,
    ServerManifest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _manifest_response(manifest: ServerManifest) -> ManifestResponse:
    return ManifestResponse(
        server_id=manifest.server_id, current_revision=manifest.current_revision
    )


def _note_response(note: NoteSnapshot, body_format: BodyFormat) -> NoteResponse:
    return NoteResponse(
        guid=note.guid,
        title=note.title,
        body=to_html(note.body) if body_format == "html" else note.body,
        tags=list(note.tags),
        created_at=note.created_at,
        changed_at=note.changed_at,
        revision=note.revision,
        deleted=note.deleted,
    )


@router.get("/manifest", response_model=ManifestResponse)
async def get_manifest(
    username: Annotated[str, Depends(require_username)],
    backend: Annotated[DataBackend, Depends(get_backend)],
) -> ManifestResponse:
    """Return the server manifest, assigning a server id on first access."""
    async with backend.open_repository(username) as repository:
        return _manifest_response(repository.manifest)


@router.get("/notes", response_model=NotesResponse)
async def get_notes(
    username: Annotated[str, Depends(require_username)],
    backend: Annotated[DataBackend, Depends(get_backend)],
    since: Annotated[int, Query(ge=0)] = 0,
    server_id: Annotated[str | None, Query(max_length=64)] = None,
    body_format: Annotated[BodyFormat, Query(alias="format")] = "raw",
) -> NotesResponse:
    """Download notes and tombstones changed after revision ``since``."""
    async with backend.open_repository(username) as repository:
        delta = await repository.engine.begin_sync(
            ClientManifest(server_id=server_id, last_sync_revision=since)
        )
        await repository.commit()
    return NotesResponse(
        manifest=_manifest_response(delta.manifest),
        notes=[_note_response(note, body_format) for note in delta.notes],
    )


@router.post("", response_model=SyncResponse)
async def sync(
    body: SyncRequest,
    username: Annotated[str, Depends(require_username)],
    backend: Annotated[DataBackend, Depends(get_backend)],
) -> SyncResponse:
    """Exchange manifests, apply client changes, and return what the client must merge.

    Responds 409 when the client manifest belongs to a different collection
    instance; the client must then resync from scratch.
    """
    changes = [
        NoteChange(
            guid=item.guid,
            title=item.title,
            body=to_note_markup(item.body) if body.body_format == "html" else item.body,
            tags=tuple(item.tags),
            base_revision=item.base_revision,
            deleted=item.deleted,
            client_timestamp=parse_datetime(item.client_timestamp),
        )
        for item in body.changes
    ]
    client_manifest = ClientManifest(
        server_id=body.manifest.server_id,
        last_sync_revision=body.manifest.last_sync_revision,
    )

    result = await backend.sync(username, client_manifest, changes)
    logger.info(
        "Sync for %s: revision %d, %d applied, %d superseded, %d sent back",
        username,
        result.manifest.current_revision,
        len(result.report.applied),
        len(result.report.superseded),
        len(result.notes),
    )
    return SyncResponse(
        manifest=_manifest_response(result.manifest),
        notes=[_note_response(note, body.body_format) for note in result.notes],
        applied=result.report.applied,
        superseded=result.report.superseded,
    )
