"""
Vault Crypto Core — Password key derivation and vault key envelopes.

Implements two-step password protection for vault keys:
- Derivation: Argon2id(password, salt) → 32-byte hashed password
- Envelope: AEAD(hashed password, random nonce) → {ciphertext, nonce}

The hashed password is the wrapping key, so a single expensive derivation
can both wrap a freshly generated vault key and re-wrap an existing one.

Security Note:
    Never log passwords, hashed passwords, plaintext or ciphertext values.
    Nonces are random per envelope; secretbox nonces are 192-bit, AEAD
    backend nonces are 96-bit.
"""
import os
import base64
import logging
from typing import Optional

import nacl.secret
import nacl.utils
from nacl.pwhash import argon2id
from nacl.exceptions import CryptoError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from pydantic import BaseModel

from ..exceptions import DecryptionFailedError

logger = logging.getLogger("peervault.vault")

KEY_LENGTH = nacl.secret.SecretBox.KEY_SIZE  # 32 bytes
SALT_SIZE = argon2id.SALTBYTES  # 16 bytes
VAULT_KEY_SIZE = 32
AEAD_NONCE_SIZE = 12

# Sensitive work factor with interactive memory cost.
OPSLIMIT = argon2id.OPSLIMIT_SENSITIVE
MEMLIMIT = argon2id.MEMLIMIT_INTERACTIVE

_AEAD_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


DEFAULT_CIPHER_BACKEND = "secretbox"


def _resolve_backend(backend: Optional[str]) -> str:
    backend = (backend or DEFAULT_CIPHER_BACKEND).lower()
    if backend != DEFAULT_CIPHER_BACKEND and backend not in _AEAD_CIPHERS:
        raise ValueError(f"Unknown cipher backend: {backend}")
    return backend


class Envelope(BaseModel):
    """Authenticated-encryption output wrapping a key."""

    ciphertext: bytes
    nonce: bytes

    def to_wire(self) -> dict:
        return {
            "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
        }

    @classmethod
    def from_wire(cls, data: dict) -> "Envelope":
        """Build an Envelope from its base64 wire form.

        Raises:
            DecryptionFailedError: If either field is missing or not base64.
        """
        try:
            return cls(
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
                nonce=base64.b64decode(data["nonce"], validate=True),
            )
        except (KeyError, TypeError, ValueError) as err:
            raise DecryptionFailedError(
                "Malformed envelope"
            ) from err


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(
    password: bytes,
    salt: bytes,
    opslimit: int = OPSLIMIT,
    memlimit: int = MEMLIMIT,
) -> bytes:
    """Derive a 32-byte wrapping key from a password using Argon2id.

    Args:
        password: Raw password bytes.
        salt: 16-byte salt.
        opslimit: Argon2id work factor.
        memlimit: Argon2id memory cost in bytes.

    Returns:
        32-byte derived key, deterministic for identical inputs.
    """
    if len(salt) != SALT_SIZE:
        raise ValueError(f"salt must be exactly {SALT_SIZE} bytes, got {len(salt)}")
    return argon2id.kdf(
        KEY_LENGTH, password, salt, opslimit=opslimit, memlimit=memlimit,
    )


def hash_password(
    password: str,
    opslimit: int = OPSLIMIT,
    memlimit: int = MEMLIMIT,
) -> dict:
    """Hash a new master password under a freshly generated salt.

    Returns:
        ``{"hashedPassword": <hex>, "salt": <base64>}``.
    """
    salt = nacl.utils.random(SALT_SIZE)
    hashed = derive_key(
        password.encode("utf-8"), salt, opslimit=opslimit, memlimit=memlimit,
    )
    return {
        "hashedPassword": hashed.hex(),
        "salt": base64.b64encode(salt).decode("ascii"),
    }


# ---------------------------------------------------------------------------
# Envelope encryption
# ---------------------------------------------------------------------------

def _check_key(derived_key: bytes) -> None:
    if len(derived_key) != KEY_LENGTH:
        raise ValueError(
            f"derived key must be exactly {KEY_LENGTH} bytes, got {len(derived_key)}"
        )


def wrap_key(
    derived_key: bytes,
    payload: bytes,
    backend: Optional[str] = None,
) -> Envelope:
    """Encrypt ``payload`` under ``derived_key`` with a fresh random nonce.

    Args:
        derived_key: 32-byte wrapping key (hashed password).
        payload: Raw key bytes or encoded key string.
        backend: ``secretbox`` (default), ``aesgcm`` or ``chacha20``.

    Returns:
        Envelope with ciphertext (including tag) and nonce.
    """
    _check_key(derived_key)
    backend = _resolve_backend(backend)
    if backend in _AEAD_CIPHERS:
        nonce = os.urandom(AEAD_NONCE_SIZE)
        ct = _AEAD_CIPHERS[backend](derived_key).encrypt(nonce, payload, None)
        return Envelope(ciphertext=ct, nonce=nonce)
    box = nacl.secret.SecretBox(derived_key)
    nonce = nacl.utils.random(nacl.secret.SecretBox.NONCE_SIZE)
    encrypted = box.encrypt(payload, nonce)
    return Envelope(ciphertext=encrypted.ciphertext, nonce=encrypted.nonce)


def open_envelope(
    derived_key: bytes,
    envelope: Envelope,
    backend: Optional[str] = None,
) -> bytes:
    """Authenticated-decrypt an envelope.

    Raises:
        DecryptionFailedError: On a wrong key, tampered data or bad sizes.
    """
    backend = _resolve_backend(backend)
    try:
        if backend in _AEAD_CIPHERS:
            _check_key(derived_key)
            cipher = _AEAD_CIPHERS[backend](derived_key)
            return cipher.decrypt(envelope.nonce, envelope.ciphertext, None)
        box = nacl.secret.SecretBox(derived_key)
        return box.decrypt(envelope.ciphertext, envelope.nonce)
    except (CryptoError, InvalidTag, ValueError) as err:
        raise DecryptionFailedError("Unable to decrypt envelope") from err


def unwrap_key(
    derived_key: bytes,
    envelope: Envelope,
    backend: Optional[str] = None,
) -> Optional[bytes]:
    """Decrypt an envelope, returning None when authentication fails.

    A None result means "wrong password"; partial plaintext is never returned.
    """
    try:
        return open_envelope(derived_key, envelope, backend=backend)
    except DecryptionFailedError:
        logger.debug("Envelope authentication failed")
        return None


def generate_vault_key() -> bytes:
    """Return a new random 32-byte vault key."""
    return nacl.utils.random(VAULT_KEY_SIZE)


def wrap_new_vault_key(derived_key: bytes, backend: Optional[str] = None) -> Envelope:
    """Generate a vault key and wrap it under ``derived_key``."""
    return wrap_key(derived_key, generate_vault_key(), backend=backend)
