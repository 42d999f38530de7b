"""
Blind mirror management for the active vault.

The engine keeps the set of mirror keys; whether that set is the built-in
default one is stored once, as the ``mirror-metadata`` record of the active
vault, and applied to every entry on read.

Callers restart the active vault after every mutation, the engine only
reads its replication topology when a store is (re)opened.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Sequence

from ..exceptions import EmptyInputError, NotInitializedError, StoreOperationError, VaultError

if TYPE_CHECKING:
    from .orchestrator import VaultOrchestrator

logger = logging.getLogger("peervault.vault")

MIRROR_METADATA_KEY = "mirror-metadata"

_ACTIVE = "active"


@dataclass(frozen=True)
class MirrorEntry:
    key: str
    is_default: bool = False

    def to_wire(self) -> dict:
        return {"key": self.key, "isDefault": self.is_default}


class MirrorManager:
    def __init__(self, orchestrator: "VaultOrchestrator", default_keys: Sequence[str] = ()):
        self._orchestrator = orchestrator
        self.default_keys = tuple(default_keys)

    def _require_active(self) -> None:
        if not self._orchestrator.is_open(_ACTIVE):
            raise NotInitializedError("Vault not initialised")

    async def _current_keys(self) -> list[str]:
        async with self._orchestrator.acquire(_ACTIVE) as instance:
            mirrors = await instance.get_mirrors()
        if not isinstance(mirrors, list):
            return []
        return [mirror["key"] for mirror in mirrors if isinstance(mirror, dict) and mirror.get("key")]

    async def _set_default_flag(self, is_default: bool) -> None:
        await self._orchestrator.add(_ACTIVE, MIRROR_METADATA_KEY, {"isDefault": is_default})

    async def list(self) -> list[MirrorEntry]:
        """Return the mirrors of the active vault with their default flag."""
        self._require_active()
        keys = await self._current_keys()
        try:
            metadata = await self._orchestrator.get(_ACTIVE, MIRROR_METADATA_KEY)
        except VaultError:
            raise
        except Exception as err:
            logger.error("Failed to get mirror metadata: %s", err)
            raise StoreOperationError(f"Failed to get mirror metadata: {err}") from err
        is_default = bool(metadata.get("isDefault", False)) if isinstance(metadata, dict) else False
        return [MirrorEntry(key=key, is_default=is_default) for key in keys]

    async def _add_keys(self, keys: Iterable[str]) -> None:
        async with self._orchestrator.acquire(_ACTIVE) as instance:
            await asyncio.gather(*(instance.add_mirror(key) for key in keys))

    async def add(self, keys: Sequence[str]) -> None:
        """Add user supplied mirrors.

        Raises:
            EmptyInputError: If ``keys`` is empty.
        """
        self._require_active()
        if not isinstance(keys, (list, tuple)) or not keys:
            raise EmptyInputError("No mirrors provided")
        if any(not isinstance(key, str) or not key for key in keys):
            raise EmptyInputError("Mirror keys cannot be empty")
        await self._add_keys(keys)
        await self._set_default_flag(False)
        logger.info("Added %d blind mirrors", len(keys))

    async def add_defaults(self) -> None:
        self._require_active()
        await self._add_keys(self.default_keys)
        await self._set_default_flag(True)
        logger.info("Added %d default blind mirrors", len(self.default_keys))

    async def remove(self, key: str) -> None:
        self._require_active()
        if not key:
            raise EmptyInputError("Mirror key not provided")
        async with self._orchestrator.acquire(_ACTIVE) as instance:
            await instance.remove_mirror(key)
        logger.info("Removed blind mirror")

    async def remove_all(self) -> None:
        """Remove every mirror and forget the default flag."""
        self._require_active()
        keys = await self._current_keys()
        async with self._orchestrator.acquire(_ACTIVE) as instance:
            await asyncio.gather(*(instance.remove_mirror(key) for key in keys))
        await self._orchestrator.remove(_ACTIVE, MIRROR_METADATA_KEY)
        logger.info("Removed %d blind mirrors", len(keys))
