import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from quickdrop_client.client import DropClient
from quickdrop_client.engine import DropLifecycleEngine
from quickdrop_client.exceptions import (
    AllocationExhaustedError,
    DropNotFoundError,
    ExpiredError,
    InvalidInputError,
    PayloadUnavailableError,
    RateLimitedError,
    StateConflictError,
)
from quickdrop_client.models.drop import DropInDB

# Помечаем все тесты в этом файле для работы с asyncio
pytestmark = pytest.mark.asyncio

MAX_SIZE = 25 * 1024 * 1024


# ――― create ――― #

async def test_create_rejects_oversized_payload(drop_client: DropClient):
    with pytest.raises(InvalidInputError, match="25MB"):
        await drop_client.create_drop("big.bin", MAX_SIZE + 1)


async def test_create_accepts_exact_limit(drop_client: DropClient):
    ticket = await drop_client.create_drop("limit.bin", MAX_SIZE)
    assert ticket.storage_path == f"quickdrop/{ticket.token}/limit.bin"


@pytest.mark.parametrize("size", [0, -5, 1.5, float("nan"), float("inf"), None, "abc"])
async def test_create_rejects_invalid_sizes(drop_client: DropClient, size):
    with pytest.raises(InvalidInputError, match="sizeBytes"):
        await drop_client.create_drop("file.txt", size)


async def test_create_requires_file_name(drop_client: DropClient):
    with pytest.raises(InvalidInputError, match="fileName"):
        await drop_client.create_drop("   ", 10)


async def test_create_builds_pending_record(drop_client: DropClient, clock):
    ticket = await drop_client.create_drop("../../etc/passwd", 42, "  text/plain  ", principal="1.2.3.4")

    # 32 байта энтропии в base64url
    assert len(ticket.token) == 43
    assert ticket.storage_path == f"quickdrop/{ticket.token}/passwd"

    record = await drop_client.lifecycle.drops.get(ticket.token)
    assert record.status == "pending"
    assert record.file_name == "../../etc/passwd"
    assert record.content_type == "text/plain"
    assert record.size_bytes == 42
    assert record.expires_at is None
    assert record.created_at == clock.now()
    assert record.created_by != "1.2.3.4"
    assert len(record.created_by) == 64


async def test_create_defaults_content_type(drop_client: DropClient):
    ticket = await drop_client.create_drop("blob", 10, None)
    record = await drop_client.lifecycle.drops.get(ticket.token)
    assert record.content_type == "application/octet-stream"


async def test_create_is_rate_limited_per_principal(drop_client: DropClient):
    for _ in range(5):
        await drop_client.create_drop("a.txt", 1, principal="203.0.113.7")

    with pytest.raises(RateLimitedError):
        await drop_client.create_drop("a.txt", 1, principal="203.0.113.7")

    # другой principal не затронут
    await drop_client.create_drop("a.txt", 1, principal="203.0.113.8")


async def test_allocation_exhausted_when_every_token_exists(drop_client: DropClient, monkeypatch):
    monkeypatch.setattr("quickdrop_client.engine.generate_token", lambda nbytes=32: "always-the-same")

    first = await drop_client.create_drop("one.txt", 1)
    assert first.token == "always-the-same"

    with pytest.raises(AllocationExhaustedError):
        await drop_client.create_drop("two.txt", 1)


async def test_allocation_exhausted_on_insert_collisions(drop_client: DropClient, monkeypatch):
    """Гонка между exists() и INSERT: коллизию ловит уникальный ключ."""
    monkeypatch.setattr("quickdrop_client.engine.generate_token", lambda nbytes=32: "colliding")
    await drop_client.create_drop("one.txt", 1)

    async def _never_exists(token):
        return False

    monkeypatch.setattr(drop_client.lifecycle.drops, "exists", _never_exists)
    with pytest.raises(AllocationExhaustedError):
        await drop_client.create_drop("two.txt", 1)


# ――― upload ――― #

async def test_upload_rules(drop_client: DropClient):
    ticket = await drop_client.create_drop("u.txt", 5)

    with pytest.raises(DropNotFoundError):
        await drop_client.upload_payload("missing", b"abc")
    with pytest.raises(InvalidInputError):
        await drop_client.upload_payload(ticket.token, b"")
    with pytest.raises(InvalidInputError):
        await drop_client.upload_payload(ticket.token, b"123456")

    await drop_client.upload_payload(ticket.token, b"12345")
    assert await drop_client.blobs.list_all() == [ticket.storage_path]

    await drop_client.activate_drop(ticket.token)
    with pytest.raises(StateConflictError):
        await drop_client.upload_payload(ticket.token, b"xx")


# ――― activate ――― #

async def test_activate_sets_sixty_second_window(drop_client: DropClient, make_active_drop, clock):
    ticket, result = await make_active_drop()

    assert result.token == ticket.token
    assert result.expires_in_ms == 60_000
    assert result.share_path == f"/quickdrop/{ticket.token}"
    assert result.expires_at == clock.now() + timedelta(seconds=60)


async def test_second_activation_conflicts_and_keeps_expiry(drop_client: DropClient, make_active_drop, clock):
    ticket, result = await make_active_drop()
    clock.advance(10)

    with pytest.raises(StateConflictError, match="already active"):
        await drop_client.activate_drop(ticket.token)

    view = await drop_client.get_drop_status(ticket.token)
    assert view.expires_at == result.expires_at
    assert view.remaining_ms == 50_000


async def test_activate_unknown_token(drop_client: DropClient):
    with pytest.raises(DropNotFoundError):
        await drop_client.activate_drop("nope")


# ――― consume ――― #

async def test_consume_round_trip_then_gone(drop_client: DropClient, make_active_drop):
    payload = "привет, quickdrop".encode("utf-8")
    ticket, _ = await make_active_drop(payload, file_name="отчёт.txt")

    download = await drop_client.consume_drop(ticket.token)
    assert download.file_name == "отчёт.txt"
    assert download.content_type == "text/plain"
    assert download.size == len(payload)

    assert await download.read_all() == payload
    assert download.closed

    # после выдачи не осталось ни записи, ни blob'а
    with pytest.raises(DropNotFoundError):
        await drop_client.consume_drop(ticket.token)
    with pytest.raises(DropNotFoundError):
        await drop_client.get_drop_status(ticket.token)
    assert await drop_client.blobs.list_all() == []


async def test_consume_download_headers(drop_client: DropClient, make_active_drop):
    ticket, _ = await make_active_drop(b"data", file_name="my report.txt")
    download = await drop_client.consume_drop(ticket.token)

    headers = download.headers("X-QuickDrop-Filename")
    assert headers["Content-Type"] == "text/plain"
    assert headers["Content-Length"] == "4"
    assert headers["Cache-Control"] == "no-store"
    assert headers["X-QuickDrop-Filename"] == "my%20report.txt"
    assert headers["Content-Disposition"] == (
        "attachment; filename=\"my report.txt\"; filename*=UTF-8''my%20report.txt"
    )
    await download.aclose()


async def test_consume_stream_is_single_use(drop_client: DropClient, make_active_drop):
    ticket, _ = await make_active_drop()
    download = await drop_client.consume_drop(ticket.token)
    await download.read_all()

    with pytest.raises(StateConflictError):
        await download.read_all()


async def test_closing_unread_download_still_cleans_up(drop_client: DropClient, make_active_drop):
    ticket, _ = await make_active_drop()
    download = await drop_client.consume_drop(ticket.token)

    await download.aclose()
    await download.aclose()

    assert await drop_client.lifecycle.drops.get(ticket.token) is None
    assert await drop_client.blobs.list_all() == []


async def test_consume_pending_drop_conflicts(drop_client: DropClient):
    ticket = await drop_client.create_drop("p.txt", 3)
    await drop_client.upload_payload(ticket.token, b"abc")

    with pytest.raises(StateConflictError, match="Unavailable"):
        await drop_client.consume_drop(ticket.token)


async def test_consume_unknown_token(drop_client: DropClient):
    with pytest.raises(DropNotFoundError):
        await drop_client.consume_drop("does-not-exist")


async def test_consume_after_expiry(drop_client: DropClient, make_active_drop, clock):
    ticket, _ = await make_active_drop()
    clock.advance(61)

    with pytest.raises(ExpiredError):
        await drop_client.consume_drop(ticket.token)

    record = await drop_client.lifecycle.drops.get(ticket.token)
    assert record.status == "expired"

    # повторная попытка: запись уже не active
    with pytest.raises(StateConflictError):
        await drop_client.consume_drop(ticket.token)


async def test_consume_expires_exactly_at_deadline(drop_client: DropClient, make_active_drop, clock):
    ticket, _ = await make_active_drop()
    clock.advance(60)

    with pytest.raises(ExpiredError):
        await drop_client.consume_drop(ticket.token)


async def test_consume_just_before_deadline(drop_client: DropClient, make_active_drop, clock):
    ticket, _ = await make_active_drop(b"in time")
    clock.advance(59.999)

    download = await drop_client.consume_drop(ticket.token)
    assert await download.read_all() == b"in time"


async def test_consume_without_uploaded_payload(drop_client: DropClient):
    ticket = await drop_client.create_drop("ghost.bin", 10)
    await drop_client.activate_drop(ticket.token)

    with pytest.raises(PayloadUnavailableError):
        await drop_client.consume_drop(ticket.token)

    assert await drop_client.lifecycle.drops.get(ticket.token) is None


async def test_concurrent_consumers_have_single_winner(drop_client: DropClient, make_active_drop):
    payload = b"only once" * 100
    ticket, _ = await make_active_drop(payload)

    results = await asyncio.gather(
        *(drop_client.consume_drop(ticket.token) for _ in range(5)),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 4
    assert all(isinstance(e, (StateConflictError, DropNotFoundError, ExpiredError)) for e in losers)

    assert await winners[0].read_all() == payload
    assert await drop_client.lifecycle.drops.get(ticket.token) is None


# ――― status ――― #

async def test_status_of_pending_drop(drop_client: DropClient):
    ticket = await drop_client.create_drop("s.txt", 7)
    view = await drop_client.get_drop_status(ticket.token)

    assert view.status == "pending"
    assert view.remaining_ms == 0
    assert view.to_wire() == {
        "status": "pending",
        "fileName": "s.txt",
        "sizeBytes": 7,
        "expiresAt": None,
        "remainingMs": 0,
    }


async def test_status_of_active_drop(drop_client: DropClient, make_active_drop, clock):
    ticket, result = await make_active_drop()
    clock.advance(15)

    wire = (await drop_client.get_drop_status(ticket.token)).to_wire()
    assert wire["status"] == "active"
    assert wire["remainingMs"] == 45_000
    assert wire["expiresAt"] == result.expires_at.isoformat()


async def test_status_read_collects_expired_drop(drop_client: DropClient, make_active_drop, clock):
    ticket, _ = await make_active_drop()
    clock.advance(61)

    view = await drop_client.get_drop_status(ticket.token)
    assert view.status == "expired"
    assert view.remaining_ms == 0

    with pytest.raises(DropNotFoundError):
        await drop_client.get_drop_status(ticket.token)
    assert await drop_client.blobs.list_all() == []


def _drop(status: str, expires_at=None) -> DropInDB:
    return DropInDB(
        token="t",
        file_name="f",
        size_bytes=1,
        content_type="text/plain",
        storage_path="quickdrop/t/f",
        status=status,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        expires_at=expires_at,
    )


@pytest.mark.parametrize(
    "status, expires_in, expected",
    [
        ("pending", None, "pending"),
        ("active", 30, "active"),
        ("active", 0, "expired"),
        ("active", -1, "expired"),
        ("expired", 30, "expired"),
        ("consumed", 30, "consumed"),
        ("consumed", -30, "consumed"),
    ],
)
async def test_derive_status(status, expires_in, expected):
    now = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
    expires_at = now + timedelta(seconds=expires_in) if expires_in is not None else None
    assert DropLifecycleEngine.derive_status(_drop(status, expires_at), now) == expected


# ――― время внутри транзакции ――― #

async def test_consume_retry_judges_expiry_at_retry_time(
    drop_client: DropClient, make_active_drop, clock, flaky_first_transaction
):
    ticket, _ = await make_active_drop()
    clock.advance(59)

    # первая попытка упала, пока она ждала, дедлайн прошёл
    state = flaky_first_transaction(lambda: clock.advance(5))
    with pytest.raises(ExpiredError):
        await drop_client.consume_drop(ticket.token)

    assert state["attempts"] >= 2
    record = await drop_client.lifecycle.drops.get(ticket.token)
    assert record.status == "expired"


async def test_consume_stamps_time_of_winning_attempt(
    drop_client: DropClient, make_active_drop, clock, flaky_first_transaction
):
    ticket, _ = await make_active_drop()
    clock.advance(10)
    flaky_first_transaction(lambda: clock.advance(3))

    download = await drop_client.consume_drop(ticket.token)
    record = await drop_client.lifecycle.drops.get(ticket.token)
    assert record.consumed_at == clock.now()
    await download.aclose()


async def test_activation_retry_starts_window_at_retry_time(
    drop_client: DropClient, clock, flaky_first_transaction
):
    ticket = await drop_client.create_drop("late.txt", 1)
    flaky_first_transaction(lambda: clock.advance(7))

    result = await drop_client.activate_drop(ticket.token)
    assert result.expires_at == clock.now() + timedelta(seconds=60)
    assert result.expires_in_ms == 60_000


# ――― потоковая загрузка ――― #

async def _chunks(*parts: bytes, seen: list | None = None):
    for part in parts:
        if seen is not None:
            seen.append(part)
        yield part


async def test_stream_upload_stops_once_declared_size_is_exceeded(drop_client: DropClient):
    ticket = await drop_client.create_drop("s.bin", 8)
    seen = []

    with pytest.raises(InvalidInputError, match="declared 8 bytes"):
        await drop_client.upload_payload_stream(
            ticket.token, _chunks(b"1234", b"56789", b"never read", seen=seen)
        )

    assert seen == [b"1234", b"56789"]
    assert await drop_client.blobs.list_all() == []


async def test_stream_upload_rejects_oversized_content_length_before_reading(drop_client: DropClient):
    ticket = await drop_client.create_drop("s.bin", 8)
    seen = []

    with pytest.raises(InvalidInputError):
        await drop_client.upload_payload_stream(ticket.token, _chunks(b"x", seen=seen), declared_length=9)
    assert seen == []


async def test_stream_upload_stores_payload(drop_client: DropClient):
    ticket = await drop_client.create_drop("s.bin", 8)
    await drop_client.upload_payload_stream(ticket.token, _chunks(b"1234", b"5678"), declared_length=8)

    await drop_client.activate_drop(ticket.token)
    download = await drop_client.consume_drop(ticket.token)
    assert await download.read_all() == b"12345678"


async def test_declared_content_type_wins_over_file_extension(drop_client: DropClient):
    ticket = await drop_client.create_drop("x.txt", 4, "application/pdf")
    await drop_client.upload_payload(ticket.token, b"%PDF")
    await drop_client.activate_drop(ticket.token)

    download = await drop_client.consume_drop(ticket.token)
    assert download.content_type == "application/pdf"
    assert download.headers()["Content-Type"] == "application/pdf"
    await download.aclose()
