"""
Vault Configuration — Validated settings loaded from the environment.

Reads settings from ``VAULT_*`` environment variables, e.g.:
    VAULT_STORAGE_PATH = /var/lib/peervault
    VAULT_CIPHER_BACKEND = secretbox | aesgcm | chacha20
    VAULT_RATE_LIMIT_THRESHOLD = <integer>

Security Note:
    Settings never carry key material. Encryption keys arrive per command.
"""
import os
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("peervault")

# Built-in blind mirror set used by ``mirrors-add-defaults``.
DEFAULT_MIRROR_KEYS: tuple[str, ...] = (
    "6wbicm1ykqd3xzm1bu7e8i6pdmyy3ekt4dunehw3zr49yjjbbiyo",
    "ejkhcgsk7mdtzqbrs3tdnjx83ip1yfbpbwqxn3mxh6nzr1j7ywgy",
)

CIPHER_BACKENDS = ("secretbox", "aesgcm", "chacha20")


def _env_list(name: str) -> Optional[list[str]]:
    """Read a comma separated list from the environment, None if unset."""
    raw = os.environ.get(name)
    if raw is None:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class VaultSettings(BaseModel):
    """Validated vault configuration."""

    storage_path: Optional[str] = None
    cipher_backend: str = Field(default="secretbox")
    rate_limit_threshold: int = Field(default=5, ge=1, le=100)
    lockout_base_ms: int = Field(default=30_000, ge=1)
    lockout_max_ms: int = Field(default=3_600_000, ge=1)
    read_only: bool = False
    blind_relays: list[str] = Field(default_factory=list)
    default_mirrors: list[str] = Field(
        default_factory=lambda: list(DEFAULT_MIRROR_KEYS)
    )
    extra_forbidden_roots: list[str] = Field(default_factory=list)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8765, ge=1, le=65535)
    debug: bool = False

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in CIPHER_BACKENDS:
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @field_validator("default_mirrors")
    @classmethod
    def validate_default_mirrors(cls, v: list[str]) -> list[str]:
        """Default mirror keys must be non-empty strings."""
        if any(not key for key in v):
            raise ValueError("Default mirror keys cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_lockout_window(self) -> "VaultSettings":
        """Ensure the lockout cap is not below the first lockout."""
        if self.lockout_max_ms < self.lockout_base_ms:
            raise ValueError(
                f"lockout_max_ms ({self.lockout_max_ms}) must be >= "
                f"lockout_base_ms ({self.lockout_base_ms})"
            )
        return self

    def engine_options(self) -> dict:
        """Options forwarded to the storage engine on every store open."""
        options: dict = {}
        if self.blind_relays:
            options["relay_through"] = list(self.blind_relays)
        if self.read_only:
            options["read_only"] = True
        return options

    @classmethod
    def from_env(cls) -> "VaultSettings":
        """Create VaultSettings by loading values from environment.

        Returns:
            Populated VaultSettings instance.
        """
        values: dict = {
            "storage_path": os.environ.get("VAULT_STORAGE_PATH") or None,
            "cipher_backend": os.environ.get("VAULT_CIPHER_BACKEND", "secretbox"),
            "read_only": _env_bool("VAULT_READ_ONLY"),
            "debug": _env_bool("VAULT_DEBUG"),
            "host": os.environ.get("VAULT_HOST", "127.0.0.1"),
        }
        for field_name, env_name in (
            ("rate_limit_threshold", "VAULT_RATE_LIMIT_THRESHOLD"),
            ("lockout_base_ms", "VAULT_LOCKOUT_BASE_MS"),
            ("lockout_max_ms", "VAULT_LOCKOUT_MAX_MS"),
            ("port", "VAULT_PORT"),
        ):
            raw = os.environ.get(env_name)
            if raw is not None:
                values[field_name] = int(raw)
        for field_name, env_name in (
            ("blind_relays", "VAULT_BLIND_RELAYS"),
            ("default_mirrors", "VAULT_DEFAULT_MIRRORS"),
            ("extra_forbidden_roots", "VAULT_EXTRA_FORBIDDEN_ROOTS"),
        ):
            items = _env_list(env_name)
            if items is not None:
                values[field_name] = items
        settings = cls(**values)
        logger.debug(
            "Loaded vault settings: cipher=%s threshold=%d read_only=%s",
            settings.cipher_backend,
            settings.rate_limit_threshold,
            settings.read_only,
        )
        return settings
