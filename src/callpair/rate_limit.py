"""Per-caller lockout for wrong pairing codes.

Keyed by the caller's phone number rather than the session or the code, so
a caller cannot reset their budget by opening a new browser tab.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callpair.models import RateLimit, utcnow
from callpair.normalizer import mask_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    remaining_attempts: int | None = None
    locked_until: datetime | None = None


@dataclass(frozen=True)
class FailedAttempt:
    locked: bool
    failed_attempts: int
    locked_until: datetime | None = None


class RateLimiter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 3,
        lockout_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = session_factory
        self.max_attempts = max_attempts
        self.lockout = timedelta(seconds=lockout_seconds)
        self._clock = clock

    async def check_rate_limit(self, caller_id: str) -> RateLimitStatus:
        now = self._clock()
        async with self._db() as db, db.begin():
            record = await db.get(RateLimit, caller_id)
            if record is None:
                return RateLimitStatus(allowed=True, remaining_attempts=self.max_attempts)

            if record.locked_until is not None:
                if record.locked_until > now:
                    return RateLimitStatus(allowed=False, locked_until=record.locked_until)
                # Lockout served: start the caller over with a full budget.
                record.failed_attempts = 0
                record.locked_until = None
                record.last_attempt_at = now
                logger.info("Lockout expired for %s", mask_phone(caller_id))
                return RateLimitStatus(allowed=True, remaining_attempts=self.max_attempts)

            remaining = max(self.max_attempts - record.failed_attempts, 0)
            return RateLimitStatus(allowed=remaining > 0, remaining_attempts=remaining)

    async def record_failed_attempt(self, caller_id: str) -> FailedAttempt:
        try:
            return await self._record_failed_attempt(caller_id)
        except IntegrityError:
            # Another request inserted the first failure row; count against it instead.
            return await self._record_failed_attempt(caller_id)

    async def _record_failed_attempt(self, caller_id: str) -> FailedAttempt:
        now = self._clock()
        async with self._db() as db, db.begin():
            record = await db.get(RateLimit, caller_id, with_for_update=True)
            if record is None:
                record = RateLimit(caller_number=caller_id, failed_attempts=0, last_attempt_at=now)
                db.add(record)
            elif record.locked_until is not None and record.locked_until <= now:
                record.failed_attempts = 0
                record.locked_until = None

            record.failed_attempts += 1
            record.last_attempt_at = now
            if record.failed_attempts >= self.max_attempts and record.locked_until is None:
                record.locked_until = now + self.lockout
                logger.warning(
                    "Caller %s locked out until %s after %d failed codes",
                    mask_phone(caller_id), record.locked_until.isoformat(), record.failed_attempts,
                )

            return FailedAttempt(
                locked=record.locked_until is not None and record.locked_until > now,
                failed_attempts=record.failed_attempts,
                locked_until=record.locked_until,
            )

    async def clear_rate_limit(self, caller_id: str) -> None:
        async with self._db() as db, db.begin():
            await db.execute(delete(RateLimit).where(RateLimit.caller_number == caller_id))
