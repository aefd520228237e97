import asyncio

import pytest

from quickdrop_client.client import DropClient
from quickdrop_client.exceptions import BlobStoreError, DropNotFoundError, ExpiredError

pytestmark = pytest.mark.asyncio


async def test_sweep_waits_for_grace_period(drop_client: DropClient, make_active_drop, clock):
    ticket, _ = await make_active_drop()

    # истёк, но grace (15s) ещё не прошёл
    clock.advance(70)
    report = await drop_client.sweep()
    assert report.reclaimed == 0
    assert await drop_client.lifecycle.drops.get(ticket.token) is not None

    clock.advance(6)
    report = await drop_client.sweep()
    assert report.examined == 1
    assert report.reclaimed == 1
    assert report.tokens == [ticket.token]

    with pytest.raises(DropNotFoundError):
        await drop_client.consume_drop(ticket.token)
    assert await drop_client.blobs.list_all() == []


async def test_sweep_reclaims_drops_marked_expired(drop_client: DropClient, make_active_drop, clock):
    ticket, _ = await make_active_drop()
    clock.advance(61)
    with pytest.raises(ExpiredError):
        await drop_client.consume_drop(ticket.token)

    clock.advance(15)
    report = await drop_client.sweep()
    assert report.reclaimed == 1
    assert await drop_client.lifecycle.drops.get(ticket.token) is None


async def test_sweep_reclaims_abandoned_pending_drops(drop_client: DropClient, clock):
    ticket = await drop_client.create_drop("never-activated.txt", 4)
    await drop_client.upload_payload(ticket.token, b"abcd")

    clock.advance(599)
    assert (await drop_client.sweep()).reclaimed == 0

    clock.advance(2)
    report = await drop_client.sweep()
    assert report.reclaimed == 1
    assert await drop_client.lifecycle.drops.get(ticket.token) is None
    assert await drop_client.blobs.list_all() == []


async def test_sweep_reclaims_consumed_drop_whose_download_was_abandoned(
    drop_client: DropClient, make_active_drop, clock
):
    ticket, _ = await make_active_drop()
    download = await drop_client.consume_drop(ticket.token)

    clock.advance(601)
    report = await drop_client.sweep()
    assert report.reclaimed == 1
    assert await drop_client.lifecycle.drops.get(ticket.token) is None

    # поздний cleanup от handle'а ничего не ломает
    await download.aclose()


async def test_sweep_leaves_live_drops_alone(drop_client: DropClient, make_active_drop, clock):
    ticket, _ = await make_active_drop()
    pending = await drop_client.create_drop("fresh.txt", 1)

    clock.advance(30)
    report = await drop_client.sweep()
    assert report.examined == 0

    assert (await drop_client.lifecycle.drops.get(ticket.token)).status == "active"
    assert (await drop_client.lifecycle.drops.get(pending.token)).status == "pending"


async def test_sweep_respects_limit(drop_client: DropClient, clock):
    for i in range(3):
        await drop_client.create_drop(f"f{i}.txt", 1)
    clock.advance(601)

    first = await drop_client.sweep(limit=2)
    assert first.examined == 2
    second = await drop_client.sweep(limit=2)
    assert second.examined == 1


async def test_sweep_counts_blob_failures(drop_client: DropClient, make_active_drop, clock, monkeypatch):
    await make_active_drop()
    clock.advance(120)

    async def _broken_delete(path, ignore_not_found=True):
        raise BlobStoreError("disk on fire")

    monkeypatch.setattr(drop_client.blobs, "delete", _broken_delete)
    report = await drop_client.sweep()
    assert report.examined == 1
    assert report.failed == 1
    assert report.reclaimed == 0


async def test_background_reaper_start_and_stop(drop_client: DropClient, clock):
    ticket = await drop_client.create_drop("bg.txt", 1)
    clock.advance(601)

    drop_client.reaper.start(interval=0.01)
    assert drop_client.reaper.running

    for _ in range(200):
        if await drop_client.lifecycle.drops.get(ticket.token) is None:
            break
        await asyncio.sleep(0.01)
    assert await drop_client.lifecycle.drops.get(ticket.token) is None

    await drop_client.reaper.stop()
    assert not drop_client.reaper.running
    # повторный stop безопасен
    await drop_client.reaper.stop()


async def test_background_reaper_survives_failing_sweep(drop_client: DropClient, monkeypatch):
    calls = 0

    async def _failing_sweep(limit=None):
        nonlocal calls
        calls += 1
        raise RuntimeError("boom")

    monkeypatch.setattr(drop_client.reaper, "sweep", _failing_sweep)
    drop_client.reaper.start(interval=0.01)
    await asyncio.sleep(0.1)

    assert drop_client.reaper.running
    assert calls >= 2
    await drop_client.reaper.stop()
