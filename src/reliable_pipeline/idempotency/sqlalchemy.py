"""SQLAlchemyIdempotencyStore — unique-key inserts that can join a business transaction."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import DateTime, String, delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..exceptions import ConflictError, StoreUnavailableError
from ..models import utcnow
from ..ports.idempotency import IIdempotencyStore

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import timedelta

    from ..models import IdempotencyKey

    AsyncSessionFactory = Callable[[], Any]

logger = logging.getLogger("reliable_pipeline.idempotency.sqlalchemy")


class Base(DeclarativeBase):
    """Declarative base for the idempotency table."""


class ProcessedMessageModel(Base):
    """One row per processed idempotency key."""

    __tablename__ = "processed_messages"

    idempotency_key: Mapped[str] = mapped_column(String(512), primary_key=True)
    first_processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class SQLAlchemyIdempotencyStore(IIdempotencyStore):
    """
    Relational idempotency store.

    The primary key on ``idempotency_key`` provides the compare-and-set: a
    second insert fails with ``IntegrityError`` and is reported as
    ``ConflictError``. Pass the business transaction's session (or a unit of
    work exposing ``.session``) as ``uow`` to ``mark_processed`` so the mark
    commits or rolls back together with the side effect; without it the store
    uses its own short transaction.
    """

    def __init__(
        self,
        session_factory: AsyncSessionFactory,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def _get_session(self, uow: Any) -> AsyncSession | None:
        if uow is None:
            return None
        if isinstance(uow, AsyncSession):
            return uow
        return getattr(uow, "session", None)

    async def has_processed(self, key: IdempotencyKey) -> bool:
        stmt = select(ProcessedMessageModel.idempotency_key).where(
            ProcessedMessageModel.idempotency_key == str(key),
            ProcessedMessageModel.expires_at > self._clock(),
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return result.first() is not None
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Idempotency lookup failed: {e}") from e

    async def mark_processed(
        self,
        key: IdempotencyKey,
        ttl: timedelta,
        *,
        uow: Any = None,
    ) -> None:
        session = self._get_session(uow)
        if session is not None:
            await self._insert(session, key, ttl)
            return
        async with self._session_factory() as session:
            await self._insert(session, key, ttl)
            try:
                await session.commit()
            except IntegrityError as e:
                raise ConflictError(str(key)) from e
            except SQLAlchemyError as e:
                raise StoreUnavailableError(f"Idempotency commit failed: {e}") from e

    async def _insert(
        self, session: AsyncSession, key: IdempotencyKey, ttl: timedelta
    ) -> None:
        now = self._clock()
        try:
            # An expired row for the same key no longer protects anything.
            await session.execute(
                delete(ProcessedMessageModel).where(
                    ProcessedMessageModel.idempotency_key == str(key),
                    ProcessedMessageModel.expires_at <= now,
                )
            )
            session.add(
                ProcessedMessageModel(
                    idempotency_key=str(key),
                    first_processed_at=now,
                    expires_at=now + ttl,
                )
            )
            await session.flush()
        except IntegrityError as e:
            raise ConflictError(str(key)) from e
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Idempotency insert failed: {e}") from e

    async def sweep_expired(self) -> int:
        stmt = delete(ProcessedMessageModel).where(
            ProcessedMessageModel.expires_at <= self._clock()
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Idempotency sweep failed: {e}") from e
        removed = result.rowcount or 0
        if removed:
            logger.info("Swept %d expired idempotency rows", removed)
        return removed


async def create_schema(engine: Any) -> None:
    """Create the ``processed_messages`` table on an ``AsyncEngine``."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
