"""Vault core — Stores, pairing, attempt limiting and key envelopes.

Security Note (Threat Model):
    Vault keys and hashed passwords live in process memory while a store is
    open. They are never logged nor written outside the engine's stores.
"""

from .orchestrator import StoreKind, VaultOrchestrator
from .sandbox import PathSandbox
from .ratelimit import RateLimiter, RateLimitStatus
from .pairing import PairingCoordinator, PairingResult
from .mirrors import MirrorEntry, MirrorManager
from .engine import MemoryEngine, StorageEngine

__all__ = [
    "StoreKind",
    "VaultOrchestrator",
    "PathSandbox",
    "RateLimiter",
    "RateLimitStatus",
    "PairingCoordinator",
    "PairingResult",
    "MirrorEntry",
    "MirrorManager",
    "MemoryEngine",
    "StorageEngine",
]
