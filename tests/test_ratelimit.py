"""
Tests for master password rate limiting.

Storage is a plain dict behind the get/add coroutines; time comes from a
manually advanced clock.
"""
import pytest

from peervault.exceptions import LockedError
from peervault.vault.ratelimit import RATE_LIMIT_KEY, RateLimiter


class DictStorage:
    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def add(self, key, value):
        self.data[key] = value


@pytest.fixture
def storage():
    return DictStorage()


@pytest.fixture
def limiter(rate_limiter, storage):
    rate_limiter.set_storage(storage.get, storage.add)
    return rate_limiter


async def fail(limiter, times):
    status = None
    for _ in range(times):
        status = await limiter.record_failure()
    return status


class TestWithoutStorage:
    """The limiter is inert until storage is bound."""

    async def test_default_status(self, rate_limiter):
        status = await rate_limiter.get_status()
        assert status.is_locked is False
        assert status.remaining_attempts == 5
        assert rate_limiter.is_durable is False

    async def test_failures_not_counted(self, rate_limiter):
        """Failures without storage are ignored."""
        await fail(rate_limiter, 10)
        status = await rate_limiter.get_status()
        assert status.is_locked is False


class TestThreshold:
    """Tests for counting and locking."""

    async def test_counts_down(self, limiter):
        status = await fail(limiter, 2)
        assert status.remaining_attempts == 3
        assert status.is_locked is False

    async def test_locks_at_threshold(self, limiter, storage):
        """The fifth failure locks for the base duration."""
        status = await fail(limiter, 5)
        assert status.is_locked is True
        assert status.remaining_attempts == 0
        assert status.lockout_remaining_ms == 30_000
        assert storage.data[RATE_LIMIT_KEY]["lockout_count"] == 1

    async def test_failure_while_locked_raises(self, limiter, storage):
        """Attempts during a lockout raise LockedError and are not counted."""
        await fail(limiter, 5)
        before = dict(storage.data[RATE_LIMIT_KEY])
        with pytest.raises(LockedError) as exc:
            await limiter.record_failure()
        assert exc.value.lockout_remaining_ms == 30_000
        assert exc.value.to_dict()["kind"] == "locked"
        assert storage.data[RATE_LIMIT_KEY] == before

    async def test_ensure_unlocked(self, limiter, clock):
        await fail(limiter, 5)
        clock.advance_ms(10_000)
        with pytest.raises(LockedError) as exc:
            await limiter.ensure_unlocked()
        assert exc.value.lockout_remaining_ms == 20_000

    async def test_lockout_expires(self, limiter, clock):
        """After the lockout the counter starts over."""
        await fail(limiter, 5)
        clock.advance_ms(30_000)
        status = await limiter.get_status()
        assert status.is_locked is False
        assert status.remaining_attempts == 5

    async def test_consecutive_lockouts_double(self, limiter, clock):
        """Each consecutive lockout is twice as long."""
        await fail(limiter, 5)
        clock.advance_ms(30_000)
        status = await fail(limiter, 5)
        assert status.lockout_remaining_ms == 60_000
        clock.advance_ms(60_000)
        status = await fail(limiter, 5)
        assert status.lockout_remaining_ms == 120_000

    def test_lockout_duration_capped(self, rate_limiter):
        assert rate_limiter.lockout_duration(1) == 30_000
        assert rate_limiter.lockout_duration(4) == 240_000
        assert rate_limiter.lockout_duration(10) == 3_600_000
        assert rate_limiter.lockout_duration(500) == 3_600_000

    async def test_reset_clears_everything(self, limiter, clock):
        """reset() unlocks and forgets previous lockouts."""
        await fail(limiter, 5)
        status = await limiter.reset()
        assert status.is_locked is False
        assert status.remaining_attempts == 5
        status = await fail(limiter, 5)
        assert status.lockout_remaining_ms == 30_000

    async def test_malformed_record_discarded(self, limiter, storage):
        storage.data[RATE_LIMIT_KEY] = {"failure_count": "many"}
        status = await limiter.get_status()
        assert status.remaining_attempts == 5

    async def test_wire_format(self, limiter):
        status = await fail(limiter, 1)
        assert status.to_wire() == {
            "isLocked": False,
            "lockoutRemainingMs": 0,
            "remainingAttempts": 4,
        }


def test_threshold_must_be_positive():
    with pytest.raises(ValueError):
        RateLimiter(threshold=0)
