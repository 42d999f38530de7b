"""
Tests for password derivation and vault key envelopes.

Argon2id runs with the minimum work factor here; the production
parameters are exercised by the constants test only.
"""
import base64

import pytest
from nacl.pwhash import argon2id

from peervault.exceptions import DecryptionFailedError
from peervault.vault import crypto
from peervault.vault.crypto import Envelope

FAST = {"opslimit": argon2id.OPSLIMIT_MIN, "memlimit": argon2id.MEMLIMIT_MIN}
BACKENDS = ["secretbox", "aesgcm", "chacha20"]


@pytest.fixture
def derived_key():
    return crypto.derive_key(b"correct horse", b"\x01" * crypto.SALT_SIZE, **FAST)


class TestDeriveKey:
    """Tests for Argon2id key derivation."""

    def test_production_parameters(self):
        """Sensitive work factor with interactive memory cost."""
        assert crypto.OPSLIMIT == argon2id.OPSLIMIT_SENSITIVE
        assert crypto.MEMLIMIT == argon2id.MEMLIMIT_INTERACTIVE
        assert crypto.SALT_SIZE == 16

    def test_deterministic(self):
        """Identical password and salt give the same key."""
        salt = b"\x02" * crypto.SALT_SIZE
        first = crypto.derive_key(b"secret", salt, **FAST)
        second = crypto.derive_key(b"secret", salt, **FAST)
        assert first == second
        assert len(first) == crypto.KEY_LENGTH

    def test_salt_changes_key(self):
        """A different salt gives a different key."""
        a = crypto.derive_key(b"secret", b"\x02" * 16, **FAST)
        b = crypto.derive_key(b"secret", b"\x03" * 16, **FAST)
        assert a != b

    def test_bad_salt_length(self):
        """Salts must be exactly 16 bytes."""
        with pytest.raises(ValueError):
            crypto.derive_key(b"secret", b"short", **FAST)

    def test_hash_password_shape(self):
        """hash_password returns a hex hash and a base64 salt."""
        result = crypto.hash_password("hunter2", **FAST)
        salt = base64.b64decode(result["salt"])
        assert len(salt) == crypto.SALT_SIZE
        assert len(bytes.fromhex(result["hashedPassword"])) == crypto.KEY_LENGTH
        # the hash is reproducible from the returned salt
        again = crypto.derive_key(b"hunter2", salt, **FAST)
        assert again.hex() == result["hashedPassword"]


class TestEnvelope:
    """Tests for wrapping and unwrapping keys."""

    @pytest.mark.parametrize("backend", BACKENDS)
    def test_round_trip(self, derived_key, backend):
        """unwrap(wrap(x)) == x for every backend."""
        payload = b"\xaa" * 32
        envelope = crypto.wrap_key(derived_key, payload, backend=backend)
        assert crypto.unwrap_key(derived_key, envelope, backend=backend) == payload

    @pytest.mark.parametrize("backend", BACKENDS)
    def test_wrong_key_returns_none(self, derived_key, backend):
        """A different key never yields plaintext."""
        envelope = crypto.wrap_new_vault_key(derived_key, backend=backend)
        other = bytes(b ^ 0xFF for b in derived_key)
        assert crypto.unwrap_key(other, envelope, backend=backend) is None

    def test_tampered_ciphertext(self, derived_key):
        """A flipped ciphertext bit fails authentication."""
        envelope = crypto.wrap_key(derived_key, b"vault key", backend="secretbox")
        tampered = bytearray(envelope.ciphertext)
        tampered[0] ^= 0x01
        bad = Envelope(ciphertext=bytes(tampered), nonce=envelope.nonce)
        assert crypto.unwrap_key(derived_key, bad, backend="secretbox") is None
        with pytest.raises(DecryptionFailedError):
            crypto.open_envelope(derived_key, bad, backend="secretbox")

    def test_nonce_sizes(self, derived_key):
        """secretbox uses 24-byte nonces, AEAD backends 12-byte ones."""
        assert len(crypto.wrap_key(derived_key, b"k", backend="secretbox").nonce) == 24
        assert len(crypto.wrap_key(derived_key, b"k", backend="aesgcm").nonce) == 12

    def test_fresh_nonce_per_envelope(self, derived_key):
        """Wrapping twice never reuses a nonce."""
        a = crypto.wrap_key(derived_key, b"same", backend="secretbox")
        b = crypto.wrap_key(derived_key, b"same", backend="secretbox")
        assert a.nonce != b.nonce
        assert a.ciphertext != b.ciphertext

    def test_new_vault_key_is_32_bytes(self, derived_key):
        """wrap_new_vault_key wraps a random 32-byte key."""
        envelope = crypto.wrap_new_vault_key(derived_key, backend="secretbox")
        assert len(crypto.unwrap_key(derived_key, envelope, backend="secretbox")) == 32

    def test_wire_round_trip(self, derived_key):
        """Envelopes travel as base64 fields."""
        envelope = crypto.wrap_key(derived_key, b"payload", backend="secretbox")
        wire = envelope.to_wire()
        assert set(wire) == {"ciphertext", "nonce"}
        assert Envelope.from_wire(wire) == envelope

    @pytest.mark.parametrize("wire", [{}, {"ciphertext": "abc"}, {"ciphertext": "!!", "nonce": "??"}])
    def test_malformed_wire(self, wire):
        """Missing or non-base64 fields are a decryption failure."""
        with pytest.raises(DecryptionFailedError):
            Envelope.from_wire(wire)

    def test_wrong_key_length(self):
        """Wrapping keys must be 32 bytes."""
        with pytest.raises(ValueError):
            crypto.wrap_key(b"short", b"payload", backend="secretbox")

    def test_default_backend_ignores_environment(self, derived_key, monkeypatch):
        """Backend selection comes from settings, not the process environment."""
        monkeypatch.setenv("VAULT_CIPHER_BACKEND", "aesgcm")
        envelope = crypto.wrap_key(derived_key, b"k")
        assert len(envelope.nonce) == 24
        assert crypto.unwrap_key(derived_key, envelope) == b"k"

    def test_unknown_backend(self, derived_key):
        envelope = crypto.wrap_key(derived_key, b"k", backend="secretbox")
        with pytest.raises(ValueError):
            crypto.wrap_key(derived_key, b"k", backend="rot13")
        with pytest.raises(ValueError):
            crypto.open_envelope(derived_key, envelope, backend="rot13")
