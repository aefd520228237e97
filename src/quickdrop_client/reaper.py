import asyncio
import logging
from datetime import timedelta
from typing import Optional

from quickdrop_client.clock import Clock, SystemClock
from quickdrop_client.config import DropConfig
from quickdrop_client.db.drop_orm import DropStatus
from quickdrop_client.engine import DropLifecycleEngine
from quickdrop_client.exceptions import DropClientError
from quickdrop_client.models.drop import SweepReport

logger = logging.getLogger(__name__)


class Reaper:
    """
    Периодически убирает просроченные и брошенные drop'ы.

    Безопасен при параллельном запуске с самим собой и с consume: удаление
    уже удалённого blob'а или записи ничего не делает.
    """

    def __init__(
        self,
        engine: DropLifecycleEngine,
        settings: Optional[DropConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.engine = engine
        self.settings = settings or engine.settings
        self.clock = clock or engine.clock or SystemClock()
        self._task: Optional[asyncio.Task] = None

    async def sweep(self, limit: Optional[int] = None) -> SweepReport:
        now = self.clock.now()
        s = self.settings
        report = SweepReport()
        candidates = await self.engine.drops.find_reclaimable(
            expired_before=now - timedelta(seconds=s.cleanup_grace_seconds),
            pending_before=now - timedelta(seconds=s.pending_ttl_seconds),
            consumed_before=now - timedelta(seconds=s.consumed_grace_seconds),
            limit=limit or s.reaper_batch_size,
        )
        for drop in candidates:
            report.examined += 1
            try:
                if drop.status == DropStatus.active.value:
                    # payload не должен пропасть, пока запись ещё active
                    await self.engine.drops.mark_expired(drop.token)
                if await self.engine.discard(drop.token, drop.storage_path):
                    report.reclaimed += 1
                    report.tokens.append(drop.token)
                else:
                    report.failed += 1
            except DropClientError as e:
                report.failed += 1
                logger.error(f"Reaper failed to reclaim QuickDrop {drop.token[:6]}...: {e}")

        if report.examined:
            logger.info(
                f"Reaper sweep: examined={report.examined} reclaimed={report.reclaimed} failed={report.failed}"
            )
        return report

    async def run_forever(self, interval: Optional[float] = None):
        period = interval if interval is not None else self.settings.reaper_interval_seconds
        logger.info(f"Reaper started, interval {period}s")
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Reaper sweep failed")
            await asyncio.sleep(period)

    def start(self, interval: Optional[float] = None) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(interval), name="quickdrop-reaper")
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reaper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
