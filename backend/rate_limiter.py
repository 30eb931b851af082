"""
Request pacing for Shopify order pulls.

Shopify's REST quota is per credential, so a job spaces its page requests with a
fixed delay (long for the backfill, short for the daily catch-up). A 429 puts the
job into a fixed cooldown and the same page is retried; retries per page are capped.
Waiting is always asyncio.sleep so other tenants keep running.
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sync_settings import SyncSettings
from sync_status import SyncMode

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Too many consecutive 429s for the same page."""


class SyncPacer:
    """Per-job pacing state. Create one per job; do not share across tenants."""

    def __init__(
        self,
        settings: SyncSettings,
        mode: str,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings
        self.mode = mode
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._requests_made = 0
        self.rate_limit_attempts = 0

    @property
    def page_delay(self) -> float:
        if self.mode == SyncMode.FULL:
            return self.settings.full_sync_delay
        return self.settings.incremental_delay

    @property
    def needs_wait(self) -> bool:
        """The first request of a job goes out immediately."""
        return self._requests_made > 0

    async def wait_before_request(self):
        if self.needs_wait and self.page_delay > 0:
            logger.debug(f"Pacing: waiting {self.page_delay:.0f}s before next page")
            await self._sleep(self.page_delay)

    def record_request(self):
        self._requests_made += 1

    def record_success(self):
        self.rate_limit_attempts = 0

    def cooldown_seconds(self) -> float:
        jitter = self.settings.rate_limit_jitter
        extra = self._rng.uniform(0, jitter) if jitter > 0 else 0.0
        return self.settings.rate_limit_cooldown + extra

    def begin_cooldown(self, retry_after: Optional[float] = None) -> float:
        """
        Register one 429 for the current page and return the cooldown length.

        The cooldown is the fixed window, stretched if Shopify's Retry-After asks
        for longer. Raises RateLimitExceeded once the page has been throttled more
        than max_rate_limit_retries times in a row.
        """
        self.rate_limit_attempts += 1
        if self.rate_limit_attempts > self.settings.max_rate_limit_retries:
            raise RateLimitExceeded(
                f"Rate limited {self.rate_limit_attempts} times on the same page"
            )
        seconds = max(self.cooldown_seconds(), retry_after or 0.0)
        logger.info(
            f"Rate limit hit (attempt {self.rate_limit_attempts}/"
            f"{self.settings.max_rate_limit_retries}), cooling down {seconds:.0f}s"
        )
        return seconds

    async def sleep(self, seconds: float):
        await self._sleep(seconds)

    async def wait_until(self, resume_at: datetime, now: datetime) -> float:
        """Sleep out whatever is left of a delay that started in an earlier process."""
        remaining = (resume_at - now).total_seconds()
        if remaining <= 0:
            return 0.0
        logger.info(f"Resuming: {remaining:.0f}s left of the previous delay")
        await self._sleep(remaining)
        return remaining
