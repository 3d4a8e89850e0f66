# preflight/rate_limit.py
"""
Per-IP limit on anonymous upload inits.

Each source IP gets a fixed window that opens on its first attempt. Inside the
window at most ``limit`` attempts are allowed; the first attempt at or after
``window_reset_at`` starts a fresh window with count 1.

Every change to a record is a single conditional UPDATE (or an INSERT that
loses to a concurrent one and is retried), so simultaneous attempts from one
IP never push ``count`` past ``limit``.

The limiter fails open: if the record cannot be read or written the attempt is
allowed.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from preflight import metrics
from preflight.models import RateLimitRecord, as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: Optional[int] = None


class RateLimiter:
    # conditional update, read, insert; repeated only when a concurrent request moves the record
    max_attempts = 3

    def __init__(
        self,
        session: AsyncSession,
        limit: int = 3,
        window_seconds: int = 60 * 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session = session
        self._limit = limit
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock

    async def check_and_consume(self, source_ip: str) -> RateLimitDecision:
        try:
            return await self._consume(source_ip)
        except Exception:
            logger.exception("Rate limit check failed for ip=%s; allowing upload", source_ip)
            metrics.rate_limit_errors.inc()
            await self._session.rollback()
            return RateLimitDecision(allowed=True)

    async def _consume(self, source_ip: str) -> RateLimitDecision:
        now = self._clock()
        for _ in range(self.max_attempts):
            if await self._increment(source_ip, now) or await self._restart_window(source_ip, now):
                return RateLimitDecision(allowed=True)

            record = await self._session.scalar(
                select(RateLimitRecord)
                .where(RateLimitRecord.source_ip == source_ip)
                .execution_options(populate_existing=True)
            )
            if record is None:
                if await self._create(source_ip, now):
                    return RateLimitDecision(allowed=True)
                continue

            reset_at = as_utc(record.window_reset_at)
            count = record.count
            await self._session.commit()
            if now >= reset_at or count < self._limit:
                # the record moved between the conditional update and the read
                continue

            retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
            logger.info("Rate limit hit for ip=%s (count=%d, retry_after=%ds)", source_ip, count, retry_after)
            return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)

        raise RuntimeError(f"Rate limit record for ip={source_ip} kept changing")

    async def _increment(self, source_ip: str, now: datetime) -> bool:
        result = await self._session.execute(
            update(RateLimitRecord)
            .where(
                RateLimitRecord.source_ip == source_ip,
                RateLimitRecord.window_reset_at > now,
                RateLimitRecord.count < self._limit,
            )
            .values(count=RateLimitRecord.count + 1)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return result.rowcount == 1

    async def _restart_window(self, source_ip: str, now: datetime) -> bool:
        result = await self._session.execute(
            update(RateLimitRecord)
            .where(RateLimitRecord.source_ip == source_ip, RateLimitRecord.window_reset_at <= now)
            .values(count=1, window_reset_at=now + self._window)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return result.rowcount == 1

    async def _create(self, source_ip: str, now: datetime) -> bool:
        try:
            await self._session.execute(
                insert(RateLimitRecord).values(source_ip=source_ip, count=1, window_reset_at=now + self._window)
            )
            await self._session.commit()
        except IntegrityError:
            # a concurrent first attempt from the same ip created the record
            await self._session.rollback()
            return False
        return True

    async def clear(self, source_ip: str) -> int:
        result = await self._session.execute(delete(RateLimitRecord).where(RateLimitRecord.source_ip == source_ip))
        await self._session.commit()
        return result.rowcount or 0

    async def clear_all(self) -> int:
        result = await self._session.execute(delete(RateLimitRecord))
        await self._session.commit()
        return result.rowcount or 0
