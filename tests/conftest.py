import asyncio
import itertools
import sys
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

from quickdrop_client import DropClient, create_drop_client
from quickdrop_client.clock import ManualClock
from quickdrop_client.db.uow import AsyncUnitOfWork
from quickdrop_client.config import (
    DropClientConfig,
    DropConfig,
    LocalStorageConfig,
    PostgresConfig,
    reset_settings,
)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def drop_settings() -> DropConfig:
    """Настройки по умолчанию, но без фонового Reaper'а: тесты гоняют sweep() руками."""
    return DropConfig(reaper_enabled=False)


@pytest.fixture
def client_config(tmp_path, drop_settings) -> DropClientConfig:
    return DropClientConfig(
        postgres=PostgresConfig(dsn=f"sqlite+aiosqlite:///{tmp_path / 'drops.db'}"),
        local=LocalStorageConfig(root=str(tmp_path / "blobs")),
        drops=drop_settings,
        blob_backend="local",
    )


@pytest_asyncio.fixture(scope="function")
async def drop_client(client_config, clock) -> DropClient:
    """
    Собирает DropClient поверх SQLite + локального диска через ту же фабрику,
    что и приложение, и создаёт таблицы.
    """
    client = create_drop_client(client_config, clock=clock)
    await client.init_storage()
    yield client
    await client.aclose()


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def make_active_drop(drop_client):
    seq = itertools.count(1)

    async def _make(payload: bytes = b"secret payload", file_name: str = "notes.txt"):
        """create -> upload -> activate; возвращает (DropTicket, ActivationResult)."""
        # свой principal на каждый drop, чтобы не упираться в rate limit
        principal = f"10.0.0.{next(seq)}"
        ticket = await drop_client.create_drop(file_name, len(payload), "text/plain", principal=principal)
        await drop_client.upload_payload(ticket.token, payload)
        result = await drop_client.activate_drop(ticket.token)
        return ticket, result

    return _make


@pytest.fixture
def flaky_first_transaction(monkeypatch):
    """
    Первая транзакция после установки падает с OperationalError (как при
    lock timeout); перед падением вызывается hook, например сдвиг часов.
    """

    def _install(before_failure):
        original_aenter = AsyncUnitOfWork.__aenter__
        state = {"attempts": 0}

        async def _aenter(self):
            state["attempts"] += 1
            if state["attempts"] == 1:
                before_failure()
                raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))
            return await original_aenter(self)

        monkeypatch.setattr(AsyncUnitOfWork, "__aenter__", _aenter)
        return state

    return _install
