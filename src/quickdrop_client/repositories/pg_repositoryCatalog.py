import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quickdrop_client.db.base import get_session
from quickdrop_client.db.catalog_orm import CatalogFileORM
from quickdrop_client.db.uow import AsyncUnitOfWork, run_in_transaction
from quickdrop_client.exceptions import (
    AlreadyConsumedError,
    DatabaseError,
    ExpiredError,
    FileNotFoundInCatalogError,
    InvalidInputError,
    StateConflictError,
)
from quickdrop_client.models.catalog import CatalogFileCreate, CatalogFileInDB

logger = logging.getLogger(__name__)

AUTO_DELETE_ACTOR = "download:auto-delete"


class CatalogRepository:
    """
    Только то, что нужно auto-delete потоку: регистрация строки каталога,
    чтение и атомарные переходы вокруг auto_delete_token.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def add(self, data: CatalogFileCreate, now: datetime) -> CatalogFileInDB:
        orm = CatalogFileORM(**data.model_dump(), created_at=now, updated_at=now)
        async with get_session(self._session_factory) as session:
            try:
                session.add(orm)
                await session.commit()
                return orm.to_pydantic()
            except IntegrityError as e:
                await session.rollback()
                raise InvalidInputError(f"File '{data.id}' already exists") from e
            except SQLAlchemyError as e:
                await session.rollback()
                raise DatabaseError(f"Failed to save catalog file: {e}") from e

    async def get(self, file_id: str) -> Optional[CatalogFileInDB]:
        async with get_session(self._session_factory) as session:
            try:
                orm = await session.get(CatalogFileORM, file_id)
            except SQLAlchemyError as e:
                raise DatabaseError(f"Failed to read catalog file: {e}") from e
            return orm.to_pydantic() if orm else None

    async def issue_token(
        self,
        file_id: str,
        now: datetime,
        reusable_after: datetime,
        mint: Callable[[], str],
    ) -> CatalogFileInDB:
        """
        Выдаёт (или переиспользует) одноразовый токен.
        Токен, выданный позже `reusable_after`, ещё жив и возвращается как есть.
        """

        async def _body(uow: AsyncUnitOfWork) -> CatalogFileInDB:
            res = await uow.session.execute(
                select(CatalogFileORM).where(CatalogFileORM.id == file_id).with_for_update()
            )
            orm = res.scalar_one_or_none()
            if orm is None:
                raise FileNotFoundInCatalogError("File not found.")
            if orm.is_consumed():
                raise AlreadyConsumedError("File is no longer available.")
            if not orm.delete_after_download:
                raise StateConflictError("File is not marked for deletion after download.")

            if orm.auto_delete_token and not orm.token_issued_before(reusable_after):
                return orm.to_pydantic()

            orm.auto_delete_token = mint()
            orm.auto_delete_issued_at = now
            orm.updated_at = now
            return orm.to_pydantic()

        return await run_in_transaction(self._session_factory, _body)

    async def mark_consumed(
        self, file_id: str, secret: str, now_fn: Callable[[], datetime], ttl: timedelta
    ) -> CatalogFileInDB:
        """Soft-delete строки по токену. Выигрывает ровно одна транзакция."""

        async def _body(uow: AsyncUnitOfWork) -> CatalogFileInDB:
            now = now_fn()
            issued_after = now - ttl
            res = await uow.session.execute(
                update(CatalogFileORM)
                .where(
                    CatalogFileORM.id == file_id,
                    CatalogFileORM.deleted_at.is_(None),
                    CatalogFileORM.auto_delete_consumed_at.is_(None),
                    CatalogFileORM.auto_delete_token == secret,
                    CatalogFileORM.auto_delete_issued_at >= issued_after,
                )
                .values(
                    deleted_at=now,
                    updated_at=now,
                    updated_by=AUTO_DELETE_ACTOR,
                    auto_delete_consumed_at=now,
                    auto_delete_token=None,
                )
                .returning(CatalogFileORM)
                .execution_options(synchronize_session=False)
            )
            orm = res.scalar_one_or_none()
            if orm is None:
                current = await uow.session.get(CatalogFileORM, file_id)
                if current is None:
                    raise FileNotFoundInCatalogError("File missing.")
                if (
                    not current.is_consumed()
                    and current.auto_delete_token == secret
                    and current.token_issued_before(issued_after)
                ):
                    raise ExpiredError("Token has expired.")
                raise AlreadyConsumedError("File already consumed.")
            return orm.to_pydantic()

        return await run_in_transaction(self._session_factory, _body)
