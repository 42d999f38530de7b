"""
Master password rate limiting.

Failed master-password attempts are counted in a single record kept in the
encryption store. Reaching the threshold locks further attempts; each
consecutive lockout doubles the previous duration up to a cap:

    lockout n lasts min(base * 2 ** (n - 1), cap)

When a lockout expires the failure counter starts over, the lockout count
does not. ``reset()`` (after a successful unlock) clears everything.
"""
import time
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from ..exceptions import LockedError

logger = logging.getLogger("peervault.vault")

RATE_LIMIT_KEY = "master-password-rate-limit"

DEFAULT_THRESHOLD = 5
DEFAULT_LOCKOUT_BASE_MS = 30_000
DEFAULT_LOCKOUT_MAX_MS = 3_600_000

StorageGet = Callable[[str], Awaitable[Any]]
StorageAdd = Callable[[str, Any], Awaitable[None]]


class RateLimitRecord(BaseModel):
    """Persisted attempt bookkeeping."""

    failure_count: int = 0
    locked_until: Optional[int] = None  # epoch milliseconds
    lockout_count: int = 0


class RateLimitStatus(BaseModel):
    is_locked: bool
    lockout_remaining_ms: int
    remaining_attempts: int

    def to_wire(self) -> dict:
        return {
            "isLocked": self.is_locked,
            "lockoutRemainingMs": self.lockout_remaining_ms,
            "remainingAttempts": self.remaining_attempts,
        }


class RateLimiter:
    """Tracks failed master-password attempts through a key/value backend.

    The backend is a pair of ``get(key)`` / ``add(key, data)`` coroutines.
    Until one is set the limiter is not durable: status reports "not
    locked, full attempts" and failures are not counted.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_THRESHOLD,
        lockout_base_ms: int = DEFAULT_LOCKOUT_BASE_MS,
        lockout_max_ms: int = DEFAULT_LOCKOUT_MAX_MS,
        clock: Callable[[], float] = time.time,
    ):
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = threshold
        self.lockout_base_ms = lockout_base_ms
        self.lockout_max_ms = max(lockout_max_ms, lockout_base_ms)
        self._clock = clock
        self._get: Optional[StorageGet] = None
        self._add: Optional[StorageAdd] = None
        self._lock = asyncio.Lock()

    @property
    def is_durable(self) -> bool:
        return self._get is not None and self._add is not None

    def set_storage(self, get: StorageGet, add: StorageAdd) -> None:
        self._get = get
        self._add = add

    def clear_storage(self) -> None:
        self._get = None
        self._add = None

    def _now(self) -> int:
        return int(self._clock() * 1000)

    def lockout_duration(self, lockout_count: int) -> int:
        """Duration in ms of the ``lockout_count``-th consecutive lockout."""
        exponent = max(lockout_count - 1, 0)
        # cap the exponent before shifting, the cap is hit long before
        duration = self.lockout_base_ms * (2 ** min(exponent, 32))
        return min(duration, self.lockout_max_ms)

    def _default_status(self) -> RateLimitStatus:
        return RateLimitStatus(
            is_locked=False,
            lockout_remaining_ms=0,
            remaining_attempts=self.threshold,
        )

    def _status(self, record: RateLimitRecord, now: int) -> RateLimitStatus:
        if record.locked_until is not None and now < record.locked_until:
            return RateLimitStatus(
                is_locked=True,
                lockout_remaining_ms=record.locked_until - now,
                remaining_attempts=0,
            )
        return RateLimitStatus(
            is_locked=False,
            lockout_remaining_ms=0,
            remaining_attempts=max(0, self.threshold - record.failure_count),
        )

    @staticmethod
    def _expire(record: RateLimitRecord, now: int) -> None:
        if record.locked_until is not None and now >= record.locked_until:
            record.failure_count = 0
            record.locked_until = None

    async def _load(self) -> RateLimitRecord:
        raw = await self._get(RATE_LIMIT_KEY)
        if raw is None:
            return RateLimitRecord()
        try:
            return RateLimitRecord.model_validate(raw)
        except ValidationError as err:
            logger.warning("Discarding malformed rate limit record: %s", err)
            return RateLimitRecord()

    async def _save(self, record: RateLimitRecord) -> None:
        await self._add(RATE_LIMIT_KEY, record.model_dump())

    async def record_failure(self) -> RateLimitStatus:
        """Count one failed attempt, locking once the threshold is reached.

        Raises:
            LockedError: If attempts are currently locked.
        """
        if not self.is_durable:
            logger.warning("Failed attempt not recorded: encryption store not open")
            return self._default_status()
        async with self._lock:
            record = await self._load()
            now = self._now()
            self._expire(record, now)
            if record.locked_until is not None:
                raise LockedError(
                    "Too many failed attempts",
                    lockout_remaining_ms=record.locked_until - now,
                )
            record.failure_count += 1
            if record.failure_count >= self.threshold:
                record.lockout_count += 1
                duration = self.lockout_duration(record.lockout_count)
                record.locked_until = now + duration
                logger.warning(
                    "Master password locked for %d ms (lockout #%d)",
                    duration, record.lockout_count,
                )
            await self._save(record)
            return self._status(record, now)

    async def get_status(self) -> RateLimitStatus:
        if not self.is_durable:
            return self._default_status()
        record = await self._load()
        now = self._now()
        self._expire(record, now)
        return self._status(record, now)

    async def ensure_unlocked(self) -> RateLimitStatus:
        """Return the current status, raising if attempts are locked.

        Raises:
            LockedError: While a lockout is running.
        """
        status = await self.get_status()
        if status.is_locked:
            raise LockedError(
                "Too many failed attempts",
                lockout_remaining_ms=status.lockout_remaining_ms,
            )
        return status

    async def reset(self) -> RateLimitStatus:
        if not self.is_durable:
            return self._default_status()
        async with self._lock:
            await self._save(RateLimitRecord())
        logger.debug("Master password attempts reset")
        return self._default_status()
