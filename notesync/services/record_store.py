"""Record store: bounded get/put/delete/query over one database session."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from notesync.exceptions import StorageFailure
from notesync.models.base import Base

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from sqlalchemy import ColumnElement, Executable, Result
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=Base)
_T = TypeVar("_T")


class RecordStore:
    """Persistence for User, Note, SyncManifest and AccessToken records.

    Every operation is bounded by ``timeout`` seconds. Database errors are
    translated to ``StorageFailure``; timeouts and operational errors (locked
    database, dropped connection) are flagged transient so callers may retry.
    Writes are only durable after ``commit()``.
    """

    def __init__(self, session: AsyncSession, timeout: float | None = None) -> None:
        self._session = session
        self._timeout = timeout

    @property
    def session(self) -> AsyncSession:
        return self._session

    async def _run(self, operation: str, awaitable: Awaitable[_T]) -> _T:
        try:
            async with asyncio.timeout(self._timeout):
                return await awaitable
        except TimeoutError as exc:
            logger.warning("Record store %s timed out after %ss", operation, self._timeout)
            raise StorageFailure(f"{operation} timed out", transient=True) from exc
        except OperationalError as exc:
            logger.warning("Record store %s failed: %s", operation, exc)
            raise StorageFailure(f"{operation} failed", transient=True) from exc
        except SQLAlchemyError as exc:
            logger.error("Record store %s failed: %s", operation, exc)
            raise StorageFailure(f"{operation} failed") from exc

    async def get(self, model: type[RecordT], *criteria: ColumnElement[bool]) -> RecordT | None:
        """Return the single record matching ``criteria``, or None."""
        result = await self._run("get", self._session.execute(select(model).where(*criteria)))
        return result.scalar_one_or_none()

    async def get_all(
        self,
        model: type[RecordT],
        *criteria: ColumnElement[bool],
        order_by: tuple[Any, ...] = (),
    ) -> list[RecordT]:
        """Return all records matching ``criteria``."""
        stmt = select(model).where(*criteria).order_by(*order_by)
        result = await self._run("get_all", self._session.execute(stmt))
        return list(result.scalars().all())

    async def put(self, record: Base) -> None:
        """Insert or update a record within the current transaction."""
        self._session.add(record)
        await self._run("put", self._session.flush())

    async def delete(self, record: Base) -> None:
        """Delete a record within the current transaction."""
        await self._run("delete", self._session.delete(record))
        await self._run("delete", self._session.flush())

    async def execute(self, statement: Executable) -> Result[Any]:
        """Execute a bulk or conditional statement within the current transaction."""
        return await self._run("execute", self._session.execute(statement))

    async def refresh(self, record: Base) -> None:
        """Reload a record's state from the database."""
        await self._run("refresh", self._session.refresh(record))

    async def commit(self) -> None:
        await self._run("commit", self._session.commit())

    async def rollback(self) -> None:
        """Discard uncommitted work. Never raises for an idle session."""
        if self._session.in_transaction():
            await self._session.rollback()
