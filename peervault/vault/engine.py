"""
Storage engine boundary.

The replicated storage / pairing engine is an external collaborator. The
vault core only talks to it through the protocols below:

- ``StorageEngine.create_store(path)`` — backing store at an on-disk path
- ``StorageEngine.open(store, encryption_key)`` — record instance on a store
- ``StorageEngine.pair(store, invite)`` — pairing handshake with an invite

``MemoryEngine`` implements the protocols in-process, without replication
or persistence. Stores opened at the same path share their records, so a
pairing performed against an invite created by another instance of the same
engine obtains that vault's encryption key.
"""
import asyncio
import logging
import secrets
import string
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional, Protocol

logger = logging.getLogger("peervault.vault")

UPDATE_EVENT = "update"

_INVITE_ALPHABET = string.ascii_lowercase + string.digits
_INVITE_SECRET_LENGTH = 104


@dataclass
class EngineRecord:
    """A stored record as returned by ``EngineInstance.get``."""

    value: Any
    file: Optional[bytes] = None


class BackingStore(Protocol):
    path: str

    async def close(self) -> None: ...


class EngineInstance(Protocol):
    encryption_key: bytes

    async def ready(self) -> None: ...

    async def close(self) -> None: ...

    async def get(self, key: str) -> Optional[EngineRecord]: ...

    async def add(self, key: str, value: Any, file: Optional[bytes] = None) -> None: ...

    async def remove(self, key: str) -> None: ...

    def on(self, event: str, callback: Callable[[], Any]) -> None: ...

    def remove_all_listeners(self) -> None: ...

    async def create_invite(self) -> str: ...

    async def delete_invite(self) -> None: ...

    async def get_mirrors(self) -> list[dict]: ...

    async def add_mirror(self, key: str) -> None: ...

    async def remove_mirror(self, key: str) -> None: ...

    def list(self) -> AsyncIterator[tuple[str, Any]]: ...


class PairHandle(Protocol):
    async def finished(self) -> EngineInstance: ...

    async def close(self) -> None: ...


class StorageEngine(Protocol):
    def create_store(self, path: str, **options) -> BackingStore: ...

    def open(
        self,
        store: BackingStore,
        encryption_key: Optional[bytes] = None,
        **options,
    ) -> EngineInstance: ...

    def pair(self, store: BackingStore, invite: str, **options) -> PairHandle: ...


# ---------------------------------------------------------------------------
# In-process engine
# ---------------------------------------------------------------------------

class _StoreState:
    """Records shared by every instance opened at one path."""

    def __init__(self, encryption_key: bytes):
        self.encryption_key = encryption_key
        self.records: dict[str, EngineRecord] = {}
        self.mirrors: list[str] = []
        self.invite: Optional[str] = None


class MemoryStore:
    def __init__(self, path: str, **options):
        self.path = path
        self.options = options
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class MemoryInstance:
    """Record instance over a ``MemoryStore``."""

    def __init__(
        self,
        engine: "MemoryEngine",
        store: MemoryStore,
        encryption_key: Optional[bytes] = None,
        read_only: bool = False,
    ):
        self._engine = engine
        self._store = store
        self._requested_key = encryption_key
        self._read_only = read_only
        self._state: Optional[_StoreState] = None
        self._listeners: dict[str, list[Callable[[], Any]]] = {}
        self.closed = False

    @property
    def path(self) -> str:
        return self._store.path

    @property
    def encryption_key(self) -> bytes:
        return self._live_state().encryption_key

    def _live_state(self) -> _StoreState:
        if self.closed:
            raise RuntimeError("Instance closed")
        if self._state is None:
            raise RuntimeError("Instance not ready")
        return self._state

    def _writable_state(self) -> _StoreState:
        state = self._live_state()
        if self._read_only:
            raise PermissionError("Store is read-only")
        return state

    async def ready(self) -> None:
        await asyncio.sleep(0)
        self._state = self._engine._attach(self, self._requested_key)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._listeners.clear()
        self._engine._detach(self)
        await self._store.close()

    async def get(self, key: str) -> Optional[EngineRecord]:
        state = self._live_state()
        await asyncio.sleep(0)
        return state.records.get(key)

    async def add(self, key: str, value: Any, file: Optional[bytes] = None) -> None:
        state = self._writable_state()
        await asyncio.sleep(0)
        state.records[key] = EngineRecord(value=value, file=file)
        self._engine._emit(self.path, UPDATE_EVENT)

    async def remove(self, key: str) -> None:
        state = self._writable_state()
        await asyncio.sleep(0)
        if state.records.pop(key, None) is not None:
            self._engine._emit(self.path, UPDATE_EVENT)

    def on(self, event: str, callback: Callable[[], Any]) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def listener_count(self, event: str = UPDATE_EVENT) -> int:
        return len(self._listeners.get(event, ()))

    def _dispatch(self, event: str) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                callback()
            except Exception as err:
                logger.error("Listener for %s on %s failed: %s", event, self.path, err)

    async def create_invite(self) -> str:
        state = self._writable_state()
        secret = "".join(
            secrets.choice(_INVITE_ALPHABET) for _ in range(_INVITE_SECRET_LENGTH)
        )
        self._engine._register_invite(self.path, state, secret)
        return secret

    async def delete_invite(self) -> None:
        state = self._writable_state()
        self._engine._revoke_invite(state)

    async def get_mirrors(self) -> list[dict]:
        state = self._live_state()
        await asyncio.sleep(0)
        return [{"key": key} for key in state.mirrors]

    async def add_mirror(self, key: str) -> None:
        state = self._writable_state()
        await asyncio.sleep(0)
        if key not in state.mirrors:
            state.mirrors.append(key)

    async def remove_mirror(self, key: str) -> None:
        state = self._writable_state()
        await asyncio.sleep(0)
        if key in state.mirrors:
            state.mirrors.remove(key)

    async def list(self) -> AsyncIterator[tuple[str, Any]]:
        state = self._live_state()
        for key, record in list(state.records.items()):
            await asyncio.sleep(0)
            yield key, record.value


class MemoryPairHandle:
    """Pairing handshake that completes once its invite is known.

    There is no timeout: an unknown invite keeps ``finished()`` waiting until
    the invite appears or the handle is closed.
    """

    def __init__(self, engine: "MemoryEngine", store: MemoryStore, invite: str, **options):
        self._engine = engine
        self._store = store
        self._invite = invite
        self._options = options
        self._wake = asyncio.Event()
        self.closed = False

    def wake(self) -> None:
        self._wake.set()

    async def finished(self) -> MemoryInstance:
        self._engine._pending.add(self)
        try:
            while True:
                if self.closed:
                    raise ConnectionAbortedError("Pairing closed before completion")
                source = self._engine._invites.get(self._invite)
                if source is not None:
                    break
                self._wake.clear()
                await self._wake.wait()
        finally:
            self._engine._pending.discard(self)
        self._engine._replicate(source, self._store.path)
        return MemoryInstance(
            self._engine,
            self._store,
            encryption_key=source.encryption_key,
            read_only=self._options.get("read_only", False),
        )

    async def close(self) -> None:
        self.closed = True
        self._wake.set()


class MemoryEngine:
    """In-process ``StorageEngine`` used for local development and tests."""

    def __init__(self):
        self._states: dict[str, _StoreState] = {}
        self._instances: dict[str, list[MemoryInstance]] = {}
        self._invites: dict[str, _StoreState] = {}
        self._pending: set[MemoryPairHandle] = set()

    def create_store(self, path: str, **options) -> MemoryStore:
        return MemoryStore(path, **options)

    def open(
        self,
        store: MemoryStore,
        encryption_key: Optional[bytes] = None,
        **options,
    ) -> MemoryInstance:
        return MemoryInstance(
            self, store, encryption_key, read_only=options.get("read_only", False),
        )

    def pair(self, store: MemoryStore, invite: str, **options) -> MemoryPairHandle:
        return MemoryPairHandle(self, store, invite, **options)

    def exists(self, path: str) -> bool:
        return path in self._states

    def open_instances(self, path: str) -> list[MemoryInstance]:
        return list(self._instances.get(path, ()))

    # -- internals used by instances and pair handles --

    def _attach(self, instance: MemoryInstance, encryption_key: Optional[bytes]) -> _StoreState:
        state = self._states.get(instance.path)
        if state is None:
            state = _StoreState(encryption_key or secrets.token_bytes(32))
            self._states[instance.path] = state
        elif encryption_key is not None and encryption_key != state.encryption_key:
            raise ValueError("Invalid encryption key for store")
        self._instances.setdefault(instance.path, []).append(instance)
        return state

    def _detach(self, instance: MemoryInstance) -> None:
        instances = self._instances.get(instance.path, [])
        if instance in instances:
            instances.remove(instance)

    def _emit(self, path: str, event: str) -> None:
        for instance in list(self._instances.get(path, ())):
            instance._dispatch(event)

    def _register_invite(self, path: str, state: _StoreState, secret: str) -> None:
        self._revoke_invite(state)
        state.invite = secret
        self._invites[secret] = state
        for handle in list(self._pending):
            handle.wake()

    def _revoke_invite(self, state: _StoreState) -> None:
        if state.invite is not None:
            self._invites.pop(state.invite, None)
            state.invite = None

    def _replicate(self, source: _StoreState, path: str) -> None:
        target = self._states.get(path)
        if target is source:
            return
        if target is None:
            target = _StoreState(source.encryption_key)
            self._states[path] = target
        target.encryption_key = source.encryption_key
        target.records = dict(source.records)
        target.mirrors = list(source.mirrors)
