"""
Vault Exceptions — Typed failures carrying an explicit error kind.

Callers decide how to react from ``err.kind``, never from the message.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Wire identifiers for every failure the core reports."""

    NOT_CONFIGURED = "not_configured"
    INVALID_PATH = "invalid_path"
    RESTRICTED_PATH = "restricted_path"
    PATH_ESCAPE = "path_escape"
    NOT_INITIALIZED = "not_initialized"
    ALREADY_OPEN = "already_open"
    MISSING_KEY = "missing_key"
    RECORD_NOT_FOUND = "record_not_found"
    PAIRING_FAILED = "pairing_failed"
    NO_RESTART_TARGET = "no_restart_target"
    LOCKED = "locked"
    DECRYPTION_FAILED = "decryption_failed"
    INVALID_INVITE = "invalid_invite"
    EMPTY_INPUT = "empty_input"
    INVALID_INPUT = "invalid_input"
    STORE_FAILURE = "store_failure"
    UNKNOWN_COMMAND = "unknown_command"
    INTERNAL = "internal"


class VaultError(Exception):
    """Base class for every error raised by the vault core."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str = "", **details):
        self.message = message or (self.__class__.__doc__ or "").strip()
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"kind": self.kind.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotConfiguredError(VaultError):
    """Storage path not set."""

    kind = ErrorKind.NOT_CONFIGURED


class InvalidPathError(VaultError):
    """Storage path is not a usable absolute path."""

    kind = ErrorKind.INVALID_PATH


class RestrictedPathError(VaultError):
    """Storage path points to a restricted system directory."""

    kind = ErrorKind.RESTRICTED_PATH


class PathEscapeError(VaultError):
    """Resolved path escapes storage root."""

    kind = ErrorKind.PATH_ESCAPE


class NotInitializedError(VaultError):
    """Store not initialised."""

    kind = ErrorKind.NOT_INITIALIZED


class AlreadyOpenError(VaultError):
    """Store is already open."""

    kind = ErrorKind.ALREADY_OPEN


class MissingKeyError(VaultError):
    """A required encryption key or identifier was not provided."""

    kind = ErrorKind.MISSING_KEY


class RecordNotFoundError(VaultError):
    """Record not found."""

    kind = ErrorKind.RECORD_NOT_FOUND


class PairingFailedError(VaultError):
    """Pairing failed."""

    kind = ErrorKind.PAIRING_FAILED


class NoRestartTargetError(VaultError):
    """No previous active vault to restart."""

    kind = ErrorKind.NO_RESTART_TARGET


class LockedError(VaultError):
    """Too many failed master password attempts."""

    kind = ErrorKind.LOCKED

    def __init__(self, message: str = "", lockout_remaining_ms: Optional[int] = None):
        super().__init__(message, lockout_remaining_ms=lockout_remaining_ms or 0)
        self.lockout_remaining_ms = lockout_remaining_ms or 0


class DecryptionFailedError(VaultError):
    """Authenticated decryption failed."""

    kind = ErrorKind.DECRYPTION_FAILED


class InvalidInviteFormatError(VaultError):
    """Invalid invite code format."""

    kind = ErrorKind.INVALID_INVITE


class EmptyInputError(VaultError):
    """Required input is empty."""

    kind = ErrorKind.EMPTY_INPUT


class UnknownCommandError(VaultError):
    """Unknown command."""

    kind = ErrorKind.UNKNOWN_COMMAND


class InvalidInputError(VaultError):
    """Command input is malformed."""

    kind = ErrorKind.INVALID_INPUT


class StoreOperationError(VaultError):
    """The storage engine failed to complete the operation."""

    kind = ErrorKind.STORE_FAILURE
