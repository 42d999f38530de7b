"""
VaultOrchestrator — Owner of the catalog, active and encryption stores.

Provides the store-level API of the vault core:
- ``open(kind, ...)`` / ``close(kind)`` / ``close_all()`` — handle lifecycle
- ``restart_active()`` — reopen the active vault with its cached identity
- ``get`` / ``add`` / ``remove`` / ``list`` — record access per store kind
- ``init_listener(vault_id, callback)`` — change notifications
- ``create_invite()`` / ``pair(invite_code)`` — peer pairing

Each store kind has one handle guarded by its own lock: open, close,
restart and the restart cache / listener binding only change under that
lock. Record operations run concurrently and are counted per handle so a
close waits for them to settle.

Security Note:
    Never log encryption keys or record payloads. Only log store kinds,
    vault ids and counts.
"""
import re
import base64
import asyncio
import logging
import binascii
from enum import Enum
from functools import partial
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from ..conf import VaultSettings
from ..exceptions import (
    AlreadyOpenError,
    EmptyInputError,
    InvalidInputError,
    InvalidPathError,
    MissingKeyError,
    NoRestartTargetError,
    NotInitializedError,
    RecordNotFoundError,
    StoreOperationError,
    VaultError,
)
from .engine import UPDATE_EVENT, EngineInstance, StorageEngine
from .invite import parse_invite_code
from .mirrors import MirrorManager
from .pairing import PairingCoordinator, PairingResult
from .ratelimit import RateLimiter, RateLimitStatus
from .records import deserialize_value, load_record, serialize_value
from .sandbox import PathSandbox

logger = logging.getLogger("peervault.vault")

_VAULT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

VAULT_RECORD_KEY = "vault"


class StoreKind(str, Enum):
    CATALOG = "catalog"
    ACTIVE = "active"
    ENCRYPTION = "encryption"


class HandleState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"


_NOT_INITIALISED = {
    StoreKind.CATALOG: "Vaults not initialised",
    StoreKind.ACTIVE: "Vault not initialised",
    StoreKind.ENCRYPTION: "Encryption not initialised",
}


class StoreHandle:
    """The single engine instance of one store kind, plus its state."""

    def __init__(self, kind: StoreKind):
        self.kind = kind
        self.instance: Optional[EngineInstance] = None
        self.state = HandleState.CLOSED
        self.lock = asyncio.Lock()
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def ready(self) -> bool:
        return self.state is HandleState.OPEN

    @property
    def inflight(self) -> int:
        return self._inflight

    @asynccontextmanager
    async def operation(self) -> AsyncIterator[EngineInstance]:
        """Run one record operation against the open instance."""
        if self.state is not HandleState.OPEN:
            raise NotInitializedError(_NOT_INITIALISED[self.kind])
        self._inflight += 1
        self._idle.clear()
        try:
            yield self.instance
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    async def drain(self) -> None:
        await self._idle.wait()


@dataclass
class ListenerBinding:
    vault_id: str
    callback: Callable[[], Any]


@dataclass
class RestartCache:
    vault_id: Optional[str] = None
    encryption_key: Optional[str] = None
    options: dict = field(default_factory=dict)
    listener: Optional[Callable[[], Any]] = None

    def clear(self) -> None:
        self.vault_id = None
        self.encryption_key = None
        self.options = {}
        self.listener = None


class VaultOrchestrator:
    """Top-level owner of the three store handles.

    Delegates path resolution to ``PathSandbox``, attempt bookkeeping to
    ``RateLimiter``, topology to ``MirrorManager`` and pairing to
    ``PairingCoordinator``.
    """

    def __init__(
        self,
        engine: StorageEngine,
        settings: Optional[VaultSettings] = None,
        sandbox: Optional[PathSandbox] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.settings = settings or VaultSettings()
        self._engine = engine
        self.sandbox = sandbox or PathSandbox(
            extra_forbidden_roots=self.settings.extra_forbidden_roots,
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            threshold=self.settings.rate_limit_threshold,
            lockout_base_ms=self.settings.lockout_base_ms,
            lockout_max_ms=self.settings.lockout_max_ms,
        )
        self.pairing = PairingCoordinator(engine, options=self.settings.engine_options())
        self.mirrors = MirrorManager(self, default_keys=self.settings.default_mirrors)
        self._handles = {kind: StoreHandle(kind) for kind in StoreKind}
        self._restart = RestartCache()
        self._binding: Optional[ListenerBinding] = None
        if self.settings.storage_path:
            self.sandbox.set_root(self.settings.storage_path)

    # ------------------------------------------------------------------
    # State inspection
    # ------------------------------------------------------------------

    def handle(self, kind: StoreKind) -> StoreHandle:
        return self._handles[StoreKind(kind)]

    def is_open(self, kind: StoreKind) -> bool:
        return self.handle(kind).ready

    @property
    def listening_vault_id(self) -> Optional[str]:
        return self._binding.vault_id if self._binding else None

    @property
    def restart_target(self) -> Optional[str]:
        return self._restart.vault_id

    def set_storage_path(self, path: str) -> str:
        return self.sandbox.set_root(path)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _store_path(kind: StoreKind, vault_id: Optional[str]) -> str:
        if kind is StoreKind.CATALOG:
            return "vaults"
        if kind is StoreKind.ENCRYPTION:
            return "encryption"
        return f"vault/{vault_id}"

    @staticmethod
    def _decode_key(encryption_key: Optional[str]) -> Optional[bytes]:
        if not encryption_key:
            return None
        try:
            return base64.b64decode(encryption_key, validate=True)
        except (binascii.Error, ValueError) as err:
            raise InvalidInputError("Encryption key must be base64 encoded") from err

    def _check_open_args(
        self,
        kind: StoreKind,
        vault_id: Optional[str],
        encryption_key: Optional[str],
    ) -> None:
        if kind is StoreKind.CATALOG and not encryption_key:
            raise MissingKeyError("Password is required")
        if kind is StoreKind.ACTIVE:
            if not vault_id:
                raise MissingKeyError("Vault id is required")
            if not isinstance(vault_id, str) or not _VAULT_ID_PATTERN.match(vault_id):
                raise InvalidPathError("Invalid vault id")

    async def open(
        self,
        kind: StoreKind,
        vault_id: Optional[str] = None,
        encryption_key: Optional[str] = None,
        options: Optional[dict] = None,
    ) -> EngineInstance:
        """Open the store of ``kind``.

        Args:
            kind: Store kind to open.
            vault_id: Vault identifier, required for the active vault.
            encryption_key: base64 encryption key, required for the catalog.
            options: Extra engine options (e.g. ``read_only``).

        Raises:
            AlreadyOpenError: If the store is already open.
            NotConfiguredError: If no storage path is set.
            StoreOperationError: If the engine fails to open the store.
        """
        handle = self.handle(kind)
        async with handle.lock:
            return await self._open_locked(handle, vault_id, encryption_key, options)

    async def _open_locked(
        self,
        handle: StoreHandle,
        vault_id: Optional[str],
        encryption_key: Optional[str],
        options: Optional[dict],
    ) -> EngineInstance:
        kind = handle.kind
        if handle.state is not HandleState.CLOSED:
            raise AlreadyOpenError(f"{kind.value} store is already open")
        self._check_open_args(kind, vault_id, encryption_key)
        path = self.sandbox.resolve(self._store_path(kind, vault_id))
        key_bytes = self._decode_key(encryption_key)
        engine_options = {**self.settings.engine_options(), **(options or {})}

        handle.state = HandleState.OPENING
        store = None
        instance = None
        try:
            store = self._engine.create_store(path, **engine_options)
            instance = self._engine.open(store, encryption_key=key_bytes, **engine_options)
            await instance.ready()
        except BaseException as err:
            handle.state = HandleState.CLOSED
            await self._close_quietly(instance if instance is not None else store)
            if isinstance(err, Exception) and not isinstance(err, VaultError):
                logger.error("Error initializing %s store: %s", kind.value, err)
                raise StoreOperationError(
                    f"Error initializing instance: {err}"
                ) from err
            raise

        handle.instance = instance
        handle.state = HandleState.OPEN
        if kind is StoreKind.ACTIVE:
            self._restart.vault_id = vault_id
            self._restart.encryption_key = encryption_key
            self._restart.options = dict(options or {})
            logger.info("Opened active vault=%s", vault_id)
        else:
            logger.info("Opened %s store", kind.value)
        if kind is StoreKind.ENCRYPTION:
            self.rate_limiter.set_storage(
                partial(self.get, StoreKind.ENCRYPTION),
                partial(self.add, StoreKind.ENCRYPTION),
            )
        return instance

    async def close(self, kind: StoreKind, clear_restart_cache: bool = False) -> None:
        """Close the store of ``kind``.

        Raises:
            NotInitializedError: If the store is not open.
        """
        handle = self.handle(kind)
        async with handle.lock:
            await self._close_locked(handle, clear_restart_cache)

    async def _close_locked(self, handle: StoreHandle, clear_restart_cache: bool = False) -> None:
        if handle.state is not HandleState.OPEN:
            raise NotInitializedError(_NOT_INITIALISED[handle.kind])
        handle.state = HandleState.CLOSING
        instance = handle.instance
        try:
            await handle.drain()
            instance.remove_all_listeners()
            await instance.close()
        finally:
            handle.instance = None
            handle.state = HandleState.CLOSED
            if handle.kind is StoreKind.ACTIVE:
                # a future init_listener must rebind
                self._binding = None
                if clear_restart_cache:
                    self._restart.clear()
            if handle.kind is StoreKind.ENCRYPTION:
                self.rate_limiter.clear_storage()
            logger.info("Closed %s store", handle.kind.value)

    async def restart_active(self) -> None:
        """Close and reopen the active vault with its cached identity.

        Raises:
            NoRestartTargetError: If no active vault was opened since the
                last ``close_all()``.
        """
        handle = self.handle(StoreKind.ACTIVE)
        async with handle.lock:
            if not self._restart.vault_id:
                raise NoRestartTargetError("No previous active vault to restart")
            vault_id = self._restart.vault_id
            encryption_key = self._restart.encryption_key
            options = dict(self._restart.options)
            listener = self._restart.listener
            if handle.state is HandleState.OPEN:
                await self._close_locked(handle)
            await self._open_locked(handle, vault_id, encryption_key, options)
            if listener is not None:
                self._bind_listener_locked(handle, vault_id, listener)
            logger.info("Restarted active vault=%s", vault_id)

    async def _close_if_open(self, handle: StoreHandle) -> None:
        async with handle.lock:
            if handle.state is HandleState.OPEN:
                await self._close_locked(handle)

    async def close_all(self) -> None:
        """Close every open store concurrently and clear the restart cache.

        All closes settle before the cache is cleared; the first close error,
        if any, is raised afterwards.
        """
        results = await asyncio.gather(
            *(self._close_if_open(handle) for handle in self._handles.values()),
            return_exceptions=True,
        )
        async with self.handle(StoreKind.ACTIVE).lock:
            self._restart.clear()
        errors = [result for result in results if isinstance(result, BaseException)]
        for err in errors:
            logger.error("Error closing store during close_all: %s", err)
        if errors:
            raise errors[0]

    async def shutdown(self) -> None:
        """Release the pairing session and every store."""
        await self.pairing.cancel()
        await self.close_all()

    @staticmethod
    async def _close_quietly(resource: Optional[Any]) -> None:
        if resource is None:
            return
        try:
            await resource.close()
        except Exception as err:
            logger.warning("Ignoring error closing partially opened store: %s", err)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def acquire(self, kind: StoreKind) -> AsyncIterator[EngineInstance]:
        """Borrow the open instance of ``kind`` for one operation."""
        async with self.handle(kind).operation() as instance:
            yield instance

    async def get(self, kind: StoreKind, key: str) -> Any:
        """Return the deserialized record at ``key``, or None.

        A binary attachment is exposed as the read-only ``file`` attribute.
        """
        async with self.acquire(kind) as instance:
            record = await instance.get(key)
        if record is None or record.value is None:
            return None
        return load_record(record.value, record.file)

    async def add(
        self,
        kind: StoreKind,
        key: str,
        data: Any,
        file: Optional[bytes] = None,
    ) -> None:
        if not key:
            raise EmptyInputError("Record key is required")
        if file is not None and StoreKind(kind) is not StoreKind.ACTIVE:
            raise InvalidInputError("Attachments are only supported by the active vault")
        payload = serialize_value(data)
        async with self.acquire(kind) as instance:
            await instance.add(key, payload, file)

    async def add_file(self, key: str, file: bytes, name: Optional[str] = None) -> None:
        """Store ``file`` as the attachment of an empty active vault record."""
        try:
            await self.add(StoreKind.ACTIVE, key, {}, file)
        except VaultError:
            raise
        except Exception as err:
            logger.error("Error adding attachment to active vault: %s", err)
            raise StoreOperationError(
                f"Could not add {name or 'file'} to the active vault: {err}",
                fileName=name,
            ) from err

    async def get_file(self, key: str) -> Optional[bytes]:
        async with self.acquire(StoreKind.ACTIVE) as instance:
            record = await instance.get(key)
        return record.file if record is not None else None

    async def remove(self, kind: StoreKind, key: str) -> None:
        if not key:
            raise EmptyInputError("Record key is required")
        async with self.acquire(kind) as instance:
            await instance.remove(key)

    async def remove_file(self, key: str) -> None:
        await self.remove(StoreKind.ACTIVE, key)

    async def list(self, kind: StoreKind, filter_key: Optional[str] = None) -> list:
        """Return every deserialized value whose key starts with ``filter_key``.

        Null and malformed entries are skipped.
        """
        results = []
        async with self.acquire(kind) as instance:
            async for key, value in instance.list():
                if value is None:
                    continue
                if filter_key and not (isinstance(key, str) and key.startswith(filter_key)):
                    continue
                try:
                    parsed = deserialize_value(value)
                except (ValueError, TypeError):
                    logger.debug("Skipping malformed %s record", StoreKind(kind).value)
                    continue
                if parsed is None:
                    continue
                results.append(parsed)
        return results

    # ------------------------------------------------------------------
    # Listener
    # ------------------------------------------------------------------

    def _bind_listener_locked(
        self,
        handle: StoreHandle,
        vault_id: str,
        callback: Callable[[], Any],
    ) -> bool:
        if self._binding is not None and self._binding.vault_id == vault_id:
            return False
        instance = handle.instance
        instance.remove_all_listeners()
        instance.on(UPDATE_EVENT, callback)
        self._binding = ListenerBinding(vault_id=vault_id, callback=callback)
        self._restart.listener = callback
        logger.debug("Listening for updates on vault=%s", vault_id)
        return True

    async def init_listener(self, vault_id: str, callback: Callable[[], Any]) -> bool:
        """Bind ``callback`` to changes of the active vault.

        Returns:
            False if ``vault_id`` was already bound (no-op), True otherwise.

        Raises:
            NotInitializedError: If the active vault is not open.
        """
        handle = self.handle(StoreKind.ACTIVE)
        async with handle.lock:
            if handle.state is not HandleState.OPEN:
                raise NotInitializedError("Active vault not initialized")
            return self._bind_listener_locked(handle, vault_id, callback)

    # ------------------------------------------------------------------
    # Invites & pairing
    # ------------------------------------------------------------------

    async def _vault_record_id(self, instance: EngineInstance) -> str:
        record = await instance.get(VAULT_RECORD_KEY)
        vault = deserialize_value(record.value) if record and record.value else None
        if not isinstance(vault, dict) or not vault.get("id"):
            raise RecordNotFoundError("Vault not found")
        return vault["id"]

    async def create_invite(self) -> str:
        """Replace the active vault's invite and return ``vaultId/secret``."""
        async with self.acquire(StoreKind.ACTIVE) as instance:
            vault_id = await self._vault_record_id(instance)
            await instance.delete_invite()
            secret = await instance.create_invite()
        logger.info("Created invite for vault=%s", vault_id)
        return f"{vault_id}/{secret}"

    async def delete_invite(self) -> None:
        async with self.acquire(StoreKind.ACTIVE) as instance:
            await instance.delete_invite()
        logger.info("Deleted invite for vault=%s", self._restart.vault_id)

    async def pair(self, invite_code: str) -> PairingResult:
        """Obtain a vault's encryption key from an invite code.

        The active vault is closed first; its restart cache is kept.

        Raises:
            InvalidInviteFormatError: Before any pairing attempt.
            PairingFailedError: If the handshake fails.
        """
        vault_id, secret = parse_invite_code(invite_code)
        path = self.sandbox.resolve(self._store_path(StoreKind.ACTIVE, vault_id))
        handle = self.handle(StoreKind.ACTIVE)
        async with handle.lock:
            if handle.state is HandleState.OPEN:
                await self._close_locked(handle)
        return await self.pairing.pair(vault_id, path, secret)

    async def cancel_pair(self) -> None:
        await self.pairing.cancel()

    # ------------------------------------------------------------------
    # Master password attempts
    # ------------------------------------------------------------------

    async def record_failed_password(self) -> RateLimitStatus:
        return await self.rate_limiter.record_failure()

    async def get_password_status(self) -> RateLimitStatus:
        return await self.rate_limiter.get_status()

    async def reset_password_attempts(self) -> RateLimitStatus:
        return await self.rate_limiter.reset()

    async def ensure_password_unlocked(self) -> RateLimitStatus:
        """Raise ``LockedError`` while master password attempts are locked."""
        return await self.rate_limiter.ensure_unlocked()
