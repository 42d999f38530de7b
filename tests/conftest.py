"""Shared fixtures for the vault test-suite."""
import base64
import asyncio
import secrets

import pytest

from peervault.conf import VaultSettings
from peervault.commands import CommandDispatcher
from peervault.vault.engine import MemoryEngine, MemoryInstance
from peervault.vault.orchestrator import VaultOrchestrator
from peervault.vault.ratelimit import RateLimiter

STORAGE_ROOT = "/data/vaults"


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: int) -> None:
        self.now += ms / 1000


class FailingReadyEngine(MemoryEngine):
    """Engine whose instances fail while becoming ready."""

    def __init__(self):
        super().__init__()
        self.stores = []

    def create_store(self, path, **options):
        store = super().create_store(path, **options)
        self.stores.append(store)
        return store

    def open(self, store, encryption_key=None, **options):
        instance = super().open(store, encryption_key, **options)

        async def ready():
            raise RuntimeError("disk unavailable")

        instance.ready = ready
        return instance


class FailingCloseInstance(MemoryInstance):
    async def close(self):
        await super().close()
        raise RuntimeError("close exploded")


class FailingCloseEngine(MemoryEngine):
    """Engine whose instances at ``failing_path`` raise on close."""

    def __init__(self, failing_suffix: str):
        super().__init__()
        self.failing_suffix = failing_suffix

    def open(self, store, encryption_key=None, **options):
        if store.path.endswith(self.failing_suffix):
            return FailingCloseInstance(
                self, store, encryption_key, read_only=options.get("read_only", False),
            )
        return super().open(store, encryption_key, **options)


class GatedInstance(MemoryInstance):
    """Instance whose ``get`` blocks until the gate opens."""

    gate: asyncio.Event

    async def get(self, key):
        await self.gate.wait()
        return await super().get(key)


class GatedEngine(MemoryEngine):
    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    def open(self, store, encryption_key=None, **options):
        instance = GatedInstance(self, store, encryption_key)
        instance.gate = self.gate
        return instance


def make_key() -> str:
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


@pytest.fixture
def settings():
    return VaultSettings(storage_path=STORAGE_ROOT)


@pytest.fixture
def engine():
    return MemoryEngine()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(threshold=5, lockout_base_ms=30_000, lockout_max_ms=3_600_000, clock=clock)


@pytest.fixture
async def orchestrator(engine, settings, rate_limiter):
    orch = VaultOrchestrator(engine, settings=settings, rate_limiter=rate_limiter)
    yield orch
    await orch.shutdown()


@pytest.fixture
def dispatcher(orchestrator):
    notifications = []
    dispatcher = CommandDispatcher(
        orchestrator, notifier=lambda: notifications.append("update"),
    )
    dispatcher.notifications = notifications
    return dispatcher


@pytest.fixture
def vault_key():
    return make_key()
