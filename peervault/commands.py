"""
Command surface of the vault core.

Every command is one request/response pair: ``handle(command, data)``
returns ``{"success": True}``, ``{"data": ...}`` or
``{"error": {"kind": ..., "message": ...}}`` and never raises.

Security Note:
    Request payloads carry passwords and keys; only command names are logged.
"""
import base64
import asyncio
import binascii
import logging
from typing import Any, Awaitable, Callable, Optional

from .exceptions import (
    DecryptionFailedError,
    EmptyInputError,
    ErrorKind,
    InvalidInputError,
    UnknownCommandError,
    VaultError,
)
from .vault import crypto
from .vault.crypto import Envelope
from .vault.orchestrator import StoreKind, VaultOrchestrator

logger = logging.getLogger("peervault.commands")

ACK = object()

CommandHandler = Callable[["CommandDispatcher", dict], Awaitable[Any]]

_COMMANDS: dict[str, CommandHandler] = {}


def command(name: str):
    """Register a dispatcher method as the handler of ``name``."""
    def decorator(func: CommandHandler) -> CommandHandler:
        _COMMANDS[name] = func
        return func
    return decorator


def registered_commands() -> list[str]:
    return sorted(_COMMANDS)


def _require(data: dict, field: str) -> Any:
    value = data.get(field)
    if value is None or value == "":
        raise EmptyInputError(f"{field} is required")
    return value


def _b64decode(value: Any, field: str) -> bytes:
    if not isinstance(value, str):
        raise InvalidInputError(f"{field} must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise InvalidInputError(f"{field} must be a base64 string") from err


def _hexdecode(value: Any, field: str) -> bytes:
    if not isinstance(value, str):
        raise InvalidInputError(f"{field} must be a hex string")
    try:
        key = bytes.fromhex(value)
    except ValueError as err:
        raise InvalidInputError(f"{field} must be a hex string") from err
    if len(key) != crypto.KEY_LENGTH:
        raise InvalidInputError(f"{field} must be {crypto.KEY_LENGTH} bytes")
    return key


def _plain(value: Any) -> Any:
    """Drop the attachment side channel so the value is JSON serializable."""
    if hasattr(value, "file") and isinstance(value, dict):
        return dict(value)
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    return value


class CommandDispatcher:
    """Maps command names onto orchestrator and crypto operations.

    Args:
        orchestrator: The VaultOrchestrator serving store commands.
        notifier: Called without arguments on every change of the bound
            active vault.
        cipher_backend: Envelope backend for the key wrapping commands.
    """

    def __init__(
        self,
        orchestrator: VaultOrchestrator,
        notifier: Optional[Callable[[], Any]] = None,
        cipher_backend: Optional[str] = None,
    ):
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.cipher_backend = cipher_backend or orchestrator.settings.cipher_backend

    @staticmethod
    def commands() -> list[str]:
        return registered_commands()

    async def handle(self, name: str, data: Optional[dict] = None) -> dict:
        """Run command ``name`` and return its reply payload."""
        logger.debug("Received command: %s", name)
        handler = _COMMANDS.get(name)
        try:
            if handler is None:
                raise UnknownCommandError(f"Unknown command: {name}")
            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise InvalidInputError("Command payload must be an object")
            result = await handler(self, data)
        except VaultError as err:
            logger.warning("Command %s failed: [%s] %s", name, err.kind.value, err.message)
            return {"error": err.to_dict()}
        except Exception as err:
            logger.exception("Unexpected error running command %s", name)
            return {"error": {"kind": ErrorKind.INTERNAL.value, "message": str(err)}}
        if result is ACK:
            return {"success": True}
        return {"data": result}

    def _on_update(self) -> None:
        if self.notifier is None:
            logger.debug("Active vault updated, no subscriber")
            return
        self.notifier()

    # -- storage --

    @command("set-storage-path")
    async def set_storage_path(self, data: dict):
        self.orchestrator.set_storage_path(_require(data, "path"))
        return ACK

    # -- catalog --

    @command("catalog-init")
    async def catalog_init(self, data: dict):
        await self.orchestrator.open(
            StoreKind.CATALOG, encryption_key=data.get("encryptionKey"),
        )
        return ACK

    @command("catalog-close")
    async def catalog_close(self, data: dict):
        await self.orchestrator.close(StoreKind.CATALOG)
        return ACK

    @command("catalog-get-status")
    async def catalog_get_status(self, data: dict):
        return {"status": self.orchestrator.is_open(StoreKind.CATALOG)}

    @command("catalog-add")
    async def catalog_add(self, data: dict):
        await self.orchestrator.add(StoreKind.CATALOG, _require(data, "key"), data.get("data"))
        return ACK

    @command("catalog-get")
    async def catalog_get(self, data: dict):
        return _plain(await self.orchestrator.get(StoreKind.CATALOG, _require(data, "key")))

    @command("catalog-list")
    async def catalog_list(self, data: dict):
        values = await self.orchestrator.list(StoreKind.CATALOG, data.get("filterKey"))
        return [_plain(value) for value in values]

    @command("catalog-remove")
    async def catalog_remove(self, data: dict):
        await self.orchestrator.remove(StoreKind.CATALOG, _require(data, "key"))
        return ACK

    # -- active vault --

    @command("active-init")
    async def active_init(self, data: dict):
        await self.orchestrator.open(
            StoreKind.ACTIVE,
            vault_id=data.get("id"),
            encryption_key=data.get("encryptionKey"),
        )
        return ACK

    @command("active-close")
    async def active_close(self, data: dict):
        await self.orchestrator.close(StoreKind.ACTIVE, clear_restart_cache=True)
        return ACK

    @command("active-get-status")
    async def active_get_status(self, data: dict):
        return {"status": self.orchestrator.is_open(StoreKind.ACTIVE)}

    @command("active-add")
    async def active_add(self, data: dict):
        await self.orchestrator.add(StoreKind.ACTIVE, _require(data, "key"), data.get("data"))
        return ACK

    @command("active-get")
    async def active_get(self, data: dict):
        return _plain(await self.orchestrator.get(StoreKind.ACTIVE, _require(data, "key")))

    @command("active-list")
    async def active_list(self, data: dict):
        values = await self.orchestrator.list(StoreKind.ACTIVE, data.get("filterKey"))
        return [_plain(value) for value in values]

    @command("active-remove")
    async def active_remove(self, data: dict):
        await self.orchestrator.remove(StoreKind.ACTIVE, _require(data, "key"))
        return ACK

    @command("active-remove-file")
    async def active_remove_file(self, data: dict):
        await self.orchestrator.remove_file(_require(data, "key"))
        return ACK

    async def add_file(self, key: str, file: bytes, name: Optional[str] = None) -> dict:
        """Attach ``file`` to ``key``; used by the streaming host route."""
        try:
            if not key:
                raise EmptyInputError("key is required")
            await self.orchestrator.add_file(key, file, name)
        except VaultError as err:
            logger.warning("active-add-file failed: [%s] %s", err.kind.value, err.message)
            return {"error": err.to_dict()}
        return {"success": True, "metaData": {"key": key, "name": name}}

    async def get_file(self, key: str) -> Optional[bytes]:
        """Return the attachment of ``key``; used by the streaming host route.

        Raises:
            VaultError: When the active vault is not open.
        """
        if not key:
            raise EmptyInputError("key is required")
        return await self.orchestrator.get_file(key)

    # -- invites & pairing --

    @command("create-invite")
    async def create_invite(self, data: dict):
        return await self.orchestrator.create_invite()

    @command("delete-invite")
    async def delete_invite(self, data: dict):
        await self.orchestrator.delete_invite()
        return ACK

    @command("pair")
    async def pair(self, data: dict):
        result = await self.orchestrator.pair(data.get("inviteCode"))
        return result.to_wire()

    @command("cancel-pair")
    async def cancel_pair(self, data: dict):
        await self.orchestrator.cancel_pair()
        return ACK

    # -- master password attempts --

    @command("record-failed-password")
    async def record_failed_password(self, data: dict):
        status = await self.orchestrator.record_failed_password()
        return status.to_wire()

    @command("get-password-status")
    async def get_password_status(self, data: dict):
        status = await self.orchestrator.get_password_status()
        return status.to_wire()

    @command("reset-password-attempts")
    async def reset_password_attempts(self, data: dict):
        status = await self.orchestrator.reset_password_attempts()
        return status.to_wire()

    # -- listener --

    @command("init-listener")
    async def init_listener(self, data: dict):
        await self.orchestrator.init_listener(_require(data, "vaultId"), self._on_update)
        return ACK

    # -- blind mirrors --

    @command("mirrors-get")
    async def mirrors_get(self, data: dict):
        entries = await self.orchestrator.mirrors.list()
        return [entry.to_wire() for entry in entries]

    @command("mirrors-add")
    async def mirrors_add(self, data: dict):
        await self.orchestrator.mirrors.add(data.get("blindMirrors") or [])
        await self.orchestrator.restart_active()
        return ACK

    @command("mirror-remove")
    async def mirror_remove(self, data: dict):
        await self.orchestrator.mirrors.remove(data.get("key"))
        await self.orchestrator.restart_active()
        return ACK

    @command("mirrors-add-defaults")
    async def mirrors_add_defaults(self, data: dict):
        await self.orchestrator.mirrors.add_defaults()
        await self.orchestrator.restart_active()
        return ACK

    @command("mirrors-remove-all")
    async def mirrors_remove_all(self, data: dict):
        await self.orchestrator.mirrors.remove_all()
        await self.orchestrator.restart_active()
        return ACK

    # -- encryption store --

    @command("encryption-init")
    async def encryption_init(self, data: dict):
        await self.orchestrator.open(StoreKind.ENCRYPTION)
        return ACK

    @command("encryption-close")
    async def encryption_close(self, data: dict):
        await self.orchestrator.close(StoreKind.ENCRYPTION)
        return ACK

    @command("encryption-get-status")
    async def encryption_get_status(self, data: dict):
        return {"status": self.orchestrator.is_open(StoreKind.ENCRYPTION)}

    @command("encryption-get")
    async def encryption_get(self, data: dict):
        return _plain(await self.orchestrator.get(StoreKind.ENCRYPTION, _require(data, "key")))

    @command("encryption-add")
    async def encryption_add(self, data: dict):
        await self.orchestrator.add(StoreKind.ENCRYPTION, _require(data, "key"), data.get("data"))
        return ACK

    # -- key wrapping --

    @command("hash-password")
    async def hash_password(self, data: dict):
        password = _require(data, "password")
        if not isinstance(password, str):
            raise InvalidInputError("password must be a string")
        return await asyncio.to_thread(crypto.hash_password, password)

    @command("derive-key")
    async def derive_key(self, data: dict):
        password = _require(data, "password")
        if not isinstance(password, str):
            raise InvalidInputError("password must be a string")
        salt = _b64decode(_require(data, "salt"), "salt")
        if len(salt) != crypto.SALT_SIZE:
            raise InvalidInputError(f"salt must be {crypto.SALT_SIZE} bytes")
        derived = await asyncio.to_thread(crypto.derive_key, password.encode("utf-8"), salt)
        return derived.hex()

    @command("wrap-vault-key")
    async def wrap_vault_key(self, data: dict):
        derived_key = _hexdecode(_require(data, "hashedPassword"), "hashedPassword")
        envelope = crypto.wrap_new_vault_key(derived_key, backend=self.cipher_backend)
        return envelope.to_wire()

    @command("wrap-existing-vault-key")
    async def wrap_existing_vault_key(self, data: dict):
        derived_key = _hexdecode(_require(data, "hashedPassword"), "hashedPassword")
        vault_key = _b64decode(_require(data, "key"), "key")
        envelope = crypto.wrap_key(derived_key, vault_key, backend=self.cipher_backend)
        return envelope.to_wire()

    @command("unwrap-vault-key")
    async def unwrap_vault_key(self, data: dict):
        # no password checks while a lockout runs
        await self.orchestrator.ensure_password_unlocked()
        derived_key = _hexdecode(_require(data, "hashedPassword"), "hashedPassword")
        envelope = Envelope.from_wire(data)
        vault_key = crypto.unwrap_key(derived_key, envelope, backend=self.cipher_backend)
        if vault_key is None:
            raise DecryptionFailedError("Unable to decrypt vault key")
        return base64.b64encode(vault_key).decode("ascii")

    # -- teardown --

    @command("close-all")
    async def close_all(self, data: dict):
        await self.orchestrator.close_all()
        return ACK
