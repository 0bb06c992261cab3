"""Sync request and response schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

BodyFormat = Literal["raw", "html"]


class ClientManifestModel(BaseModel):
    """The client's view of its last sync. ``server_id`` is omitted on first sync."""

    server_id: str | None = Field(default=None, min_length=1, max_length=64)
    last_sync_revision: int = Field(default=0, ge=0)


class NoteChangeModel(BaseModel):
    """A note created, edited or deleted on the client since its last sync."""

    guid: str = Field(min_length=1, max_length=200)
    title: str = Field(default="", max_length=1000)
    body: str = ""
    tags: list[str] = Field(default_factory=list)
    base_revision: int = Field(default=0, ge=0)
    deleted: bool = False
    client_timestamp: str = Field(min_length=1, max_length=64)


class SyncRequest(BaseModel):
    """Client manifest plus the client's pending changes."""

    manifest: ClientManifestModel
    changes: list[NoteChangeModel] = Field(default_factory=list)
    body_format: BodyFormat = "raw"


class ManifestResponse(BaseModel):
    """Server manifest."""

    server_id: str
    current_revision: int


class NoteResponse(BaseModel):
    """A server-side note or tombstone the client has to merge."""

    guid: str
    title: str
    body: str
    tags: list[str]
    created_at: str
    changed_at: str
    revision: int
    deleted: bool


class NotesResponse(BaseModel):
    """Notes changed since a revision."""

    manifest: ManifestResponse
    notes: list[NoteResponse]


class SyncResponse(BaseModel):
    """Result of a sync: new manifest, server changes, and conflict report."""

    manifest: ManifestResponse
    notes: list[NoteResponse]
    applied: list[str] = Field(default_factory=list)
    superseded: list[str] = Field(default_factory=list)
