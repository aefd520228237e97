from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quickdrop_client.exceptions import DatabaseError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSACTION_ATTEMPTS = 3


class AsyncUnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sf = session_factory
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self):
        self.session = self._sf()
        await self.session.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            if exc:
                await self.session.rollback()
            else:
                await self.session.commit()
        finally:
            await self.session.__aexit__(exc_type, exc, tb)

    @property
    def dialect_name(self) -> str:
        return self.session.bind.dialect.name

    async def advisory_lock(self, key: str | None):
        """Транзакционный advisory-lock по строковому ключу. В SQLite запись и так сериализована."""
        if not key or self.dialect_name != "postgresql":
            return
        await self.session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:k))"), {"k": key})


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    body: Callable[[AsyncUnitOfWork], Awaitable[T]],
    attempts: int = TRANSACTION_ATTEMPTS,
) -> T:
    """
    Runs `body` inside one transaction and commits it.

    Lock timeouts and serialization failures (OperationalError) abort the
    transaction and the whole body is replayed, up to `attempts` times.
    Domain exceptions raised by `body` roll back and propagate untouched.
    """
    last_error: SQLAlchemyError | None = None
    for attempt in range(1, attempts + 1):
        try:
            async with AsyncUnitOfWork(session_factory) as uow:
                return await body(uow)
        except OperationalError as e:
            last_error = e
            logger.warning(f"Transaction attempt {attempt}/{attempts} aborted: {e.orig!r}")
            await asyncio.sleep(0.05 * attempt)
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            raise DatabaseError(f"Transaction failed: {e}") from e
    raise DatabaseError(f"Transaction failed after {attempts} attempts: {last_error}") from last_error
