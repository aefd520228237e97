import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quickdrop_client.db.rate_limit_orm import RateLimitORM
from quickdrop_client.db.uow import AsyncUnitOfWork, run_in_transaction

logger = logging.getLogger(__name__)


class RateLimitRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def hit(
        self, principal_hash: str, now_fn: Callable[[], datetime], window: timedelta, ceiling: int
    ) -> bool:
        """
        Считает запрос в фиксированном окне. True: пропускаем, False: лимит исчерпан.
        Ошибки хранилища летят наружу, решение fail-open принимает RateLimiter.
        """

        async def _body(uow: AsyncUnitOfWork) -> bool:
            await uow.advisory_lock(f"quickdrop-rl:{principal_hash}")
            now = now_fn()
            res = await uow.session.execute(
                select(RateLimitORM)
                .where(RateLimitORM.principal_hash == principal_hash)
                .with_for_update()
            )
            counter = res.scalar_one_or_none()
            if counter is None:
                uow.session.add(
                    RateLimitORM(principal_hash=principal_hash, window_start=now, count=1, updated_at=now)
                )
                return True

            if now - counter.window_start >= window:
                counter.window_start = now
                counter.count = 1
                counter.updated_at = now
                return True

            if counter.count >= ceiling:
                return False

            counter.count += 1
            counter.updated_at = now
            return True

        return await run_in_transaction(self._session_factory, _body)
