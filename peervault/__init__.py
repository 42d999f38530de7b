"""PeerVault.

Orchestration core of an encrypted, peer-replicated record vault.
"""
from .version import __version__
from .conf import VaultSettings
from .exceptions import ErrorKind, VaultError
from .vault import VaultOrchestrator, StoreKind

__all__ = (
    "__version__",
    "VaultSettings",
    "ErrorKind",
    "VaultError",
    "VaultOrchestrator",
    "StoreKind",
)
