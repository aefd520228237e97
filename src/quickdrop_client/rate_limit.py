import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from quickdrop_client.clock import Clock, SystemClock
from quickdrop_client.config import DropConfig
from quickdrop_client.exceptions import StorageUnavailableError
from quickdrop_client.repositories.pg_repositoryRateLimit import RateLimitRepository
from quickdrop_client.tokens import hash_principal

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window counter per hashed principal (usually the client IP)."""

    def __init__(
        self,
        repo: RateLimitRepository,
        settings: Optional[DropConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.repo = repo
        self.settings = settings or DropConfig()
        self.clock = clock or SystemClock()

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.settings.rate_limit_window_seconds)

    async def allow(self, principal: str) -> bool:
        key = hash_principal(principal)
        try:
            return await self.repo.hit(
                key,
                now_fn=self.clock.now,
                window=self.window,
                ceiling=self.settings.rate_limit_max_requests,
            )
        except (StorageUnavailableError, SQLAlchemyError) as e:
            fail_open = self.settings.rate_limit_fail_open
            logger.error(
                f"Unable to evaluate QuickDrop rate limit ({e}); "
                f"{'allowing' if fail_open else 'denying'} request"
            )
            return fail_open
