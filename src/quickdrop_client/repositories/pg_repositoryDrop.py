import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, delete, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quickdrop_client.db.base import get_session
from quickdrop_client.db.drop_orm import DropORM, DropStatus
from quickdrop_client.db.uow import AsyncUnitOfWork, run_in_transaction
from quickdrop_client.exceptions import (
    DatabaseError,
    DropNotFoundError,
    ExpiredError,
    StateConflictError,
)
from quickdrop_client.models.drop import DropInDB

logger = logging.getLogger(__name__)


class DropRepository:
    """
    Записи quickdrop_drops. Все переходы состояний делаются условным UPDATE
    (compare-and-swap по status) внутри транзакции: выигрывает ровно один.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def check_connection(self):
        """Проверяет соединение с базой данных, выполняя простой запрос."""
        logger.debug("Checking record store connection...")
        async with get_session(self._session_factory) as session:
            try:
                await session.execute(text("SELECT 1"))
                logger.debug("Record store connection successful.")
            except SQLAlchemyError as e:
                logger.error(f"Record store connection failed: {e}")
                raise DatabaseError("Failed to connect to the database.") from e

    async def exists(self, token: str) -> bool:
        async with get_session(self._session_factory) as session:
            try:
                res = await session.execute(select(DropORM.token).where(DropORM.token == token))
                return res.scalar_one_or_none() is not None
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to look up drop: {e}") from e

    async def insert_pending(self, drop: DropORM) -> bool:
        """False, если токен (или storage_path) уже занят."""
        async with get_session(self._session_factory) as session:
            try:
                session.add(drop)
                await session.commit()
                return True
            except IntegrityError as e:
                await session.rollback()
                logger.warning(f"Token collision on insert for {drop.token[:6]}...: {e.orig!r}")
                return False
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to save drop: {e}") from e

    async def get(self, token: str) -> Optional[DropInDB]:
        async with get_session(self._session_factory) as session:
            try:
                res = await session.execute(select(DropORM).where(DropORM.token == token))
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to read drop: {e}") from e
            orm = res.scalar_one_or_none()
            return orm.to_pydantic() if orm else None

    async def _locked(self, uow: AsyncUnitOfWork, token: str) -> Optional[DropORM]:
        res = await uow.session.execute(
            select(DropORM).where(DropORM.token == token).with_for_update()
        )
        return res.scalar_one_or_none()

    async def activate(self, token: str, now_fn: Callable[[], datetime], ttl: timedelta) -> DropInDB:
        """pending -> active. Повторная активация -> StateConflictError, expires_at не трогаем."""

        async def _body(uow: AsyncUnitOfWork) -> DropInDB:
            # время берём внутри транзакции: повтор после OperationalError видит свежее now
            expires_at = now_fn() + ttl
            res = await uow.session.execute(
                update(DropORM)
                .where(DropORM.token == token, DropORM.status == DropStatus.pending.value)
                .values(status=DropStatus.active.value, expires_at=expires_at)
                .returning(DropORM)
                .execution_options(synchronize_session=False)
            )
            orm = res.scalar_one_or_none()
            if orm is not None:
                return orm.to_pydantic()

            current = await self._locked(uow, token)
            if current is None:
                raise DropNotFoundError("Not found")
            raise StateConflictError(f"QuickDrop already {current.status}")

        return await run_in_transaction(self._session_factory, _body)

    async def claim_for_consumption(self, token: str, now_fn: Callable[[], datetime]) -> DropInDB:
        """
        active -> consumed для единственного победителя.

        Проигравшие получают NotFound / StateConflict. Просроченная запись
        переводится в expired в той же транзакции, и только после коммита
        наружу уходит ExpiredError.
        """

        async def _body(uow: AsyncUnitOfWork) -> DropInDB | None:
            now = now_fn()
            res = await uow.session.execute(
                update(DropORM)
                .where(
                    DropORM.token == token,
                    DropORM.status == DropStatus.active.value,
                    DropORM.expires_at > now,
                )
                .values(status=DropStatus.consumed.value, consumed_at=now)
                .returning(DropORM)
                .execution_options(synchronize_session=False)
            )
            orm = res.scalar_one_or_none()
            if orm is not None:
                return orm.to_pydantic()

            current = await self._locked(uow, token)
            if current is None:
                raise DropNotFoundError("Not found")
            if current.status != DropStatus.active.value:
                raise StateConflictError("Unavailable")
            # active, но время вышло
            await uow.session.execute(
                update(DropORM)
                .where(DropORM.token == token, DropORM.status == DropStatus.active.value)
                .values(status=DropStatus.expired.value)
                .execution_options(synchronize_session=False)
            )
            return None

        claimed = await run_in_transaction(self._session_factory, _body)
        if claimed is None:
            raise ExpiredError("Expired")
        return claimed

    async def mark_expired(self, token: str) -> bool:
        async with get_session(self._session_factory) as session:
            try:
                res = await session.execute(
                    update(DropORM)
                    .where(DropORM.token == token, DropORM.status == DropStatus.active.value)
                    .values(status=DropStatus.expired.value)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                return res.rowcount > 0
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to expire drop: {e}") from e

    async def delete(self, token: str) -> bool:
        async with get_session(self._session_factory) as session:
            try:
                res = await session.execute(delete(DropORM).where(DropORM.token == token))
                await session.commit()
                return res.rowcount > 0
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to delete drop: {e}") from e

    async def find_reclaimable(
        self,
        expired_before: datetime,
        pending_before: datetime,
        consumed_before: datetime,
        limit: int | None = None,
    ) -> List[DropInDB]:
        """
        Кандидаты для Reaper'а:
        - active/expired с expires_at <= now - grace;
        - pending, созданные раньше pending_before;
        - consumed, чей download так и не дочитали.
        """
        stmt = (
            select(DropORM)
            .where(
                or_(
                    and_(
                        DropORM.status.in_((DropStatus.active.value, DropStatus.expired.value)),
                        DropORM.expires_at <= expired_before,
                    ),
                    and_(
                        DropORM.status == DropStatus.pending.value,
                        DropORM.created_at <= pending_before,
                    ),
                    and_(
                        DropORM.status == DropStatus.consumed.value,
                        DropORM.consumed_at <= consumed_before,
                    ),
                )
            )
            .order_by(DropORM.created_at)
        )
        if limit:
            stmt = stmt.limit(limit)
        async with get_session(self._session_factory) as session:
            try:
                res = await session.execute(stmt)
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to query reclaimable drops: {e}") from e
            return [orm.to_pydantic() for orm in res.scalars().all()]
