"""
Vault Pairing — Obtain a vault encryption key from an invite.

Pairing only harvests the key: the paired instance is closed as soon as its
key is read, the caller opens the vault itself afterwards.

Security Note:
    Never log invite secrets or harvested keys. Only log vault ids.
"""
import base64
import asyncio
import logging
from enum import Enum
from typing import Any, Optional
from dataclasses import dataclass

from ..exceptions import PairingFailedError
from .engine import StorageEngine

logger = logging.getLogger("peervault.vault")


class PairingState(str, Enum):
    IDLE = "idle"
    PAIRING = "pairing"
    COMPLETING = "completing"
    CANCELLING = "cancelling"


@dataclass(frozen=True)
class PairingResult:
    vault_id: str
    encryption_key: str  # base64

    def to_wire(self) -> dict:
        return {"vaultId": self.vault_id, "encryptionKey": self.encryption_key}


class PairingCoordinator:
    """Drives at most one pairing session at a time.

    Every teardown holds a single lock so that an explicit ``cancel()``
    racing the ``finally`` of ``pair()`` runs strictly after it, never over
    the same resources at once. A ``pair()`` superseded by a newer one only
    releases its own session.
    """

    def __init__(self, engine: StorageEngine, options: Optional[dict] = None):
        self._engine = engine
        self._options = dict(options or {})
        self._store: Optional[Any] = None
        self._pair: Optional[Any] = None
        self._cleanup_lock = asyncio.Lock()
        self.state = PairingState.IDLE

    @property
    def has_session(self) -> bool:
        return self._store is not None or self._pair is not None

    async def pair(self, vault_id: str, path: str, invite_secret: str) -> PairingResult:
        """Pair the store at ``path`` using ``invite_secret``.

        Raises:
            PairingFailedError: Wrapping any failure of the handshake.
        """
        # start from a clean state, previous attempts may have timed out
        await self.cancel()
        store = None
        try:
            store = self._engine.create_store(path, **self._options)
            self._store = store
            self.state = PairingState.PAIRING
            pair = self._engine.pair(store, invite_secret, **self._options)
            self._pair = pair
            instance = await pair.finished()
            self.state = PairingState.COMPLETING
            try:
                await instance.ready()
                encryption_key = base64.b64encode(instance.encryption_key).decode("ascii")
            finally:
                await self._close_quietly(instance, "paired instance")
            logger.info("Pairing completed for vault=%s", vault_id)
            return PairingResult(vault_id=vault_id, encryption_key=encryption_key)
        except Exception as err:
            logger.error("Pairing failed for vault=%s: %s", vault_id, err)
            raise PairingFailedError(f"Pairing failed: {err}") from err
        finally:
            await self._end_session(store)

    async def cancel(self) -> None:
        """Release the current session, if any. Never raises."""
        async with self._cleanup_lock:
            await self._release_locked()

    async def _end_session(self, store: Optional[Any]) -> None:
        # a newer pair() may own the session by now
        async with self._cleanup_lock:
            if store is None or self._store is not store:
                return
            await self._release_locked()

    async def _release_locked(self) -> None:
        pair = self._pair
        store = self._store
        # clear references first so nobody reuses half-closed resources
        self._pair = None
        self._store = None
        if pair is None and store is None:
            return
        self.state = PairingState.CANCELLING
        await self._close_quietly(pair, "pair handle")
        await self._close_quietly(store, "pairing store")
        self.state = PairingState.IDLE
        logger.debug("Pairing session released")

    @staticmethod
    async def _close_quietly(resource: Optional[Any], name: str) -> None:
        if resource is None:
            return
        try:
            await resource.close()
        except Exception as err:
            logger.warning("Ignoring error closing %s: %s", name, err)
