"""Sync manifest model."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from notesync.models.base import Base

if TYPE_CHECKING:
    from notesync.models.user import User


class SyncManifest(Base):
    """Per-user versioning state of the note collection."""

    __tablename__ = "sync_manifests"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    server_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    current_revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

    user: Mapped[User] = relationship(back_populates="manifest")
