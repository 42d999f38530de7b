"""
Path Sandbox — Storage root validation and vault-relative path resolution.

Every store path is resolved below a single storage root. The root itself may
not live inside system configuration, binary or ephemeral directories: vault
data must survive a reboot and must never shadow system files.
"""
import os
import sys
import ntpath
import logging
import posixpath
from typing import Optional

from ..exceptions import (
    InvalidPathError,
    NotConfiguredError,
    PathEscapeError,
    RestrictedPathError,
)

logger = logging.getLogger("peervault.vault")

_POSIX_FORBIDDEN_ROOTS = (
    "/bin",
    "/boot",
    "/dev",
    "/etc",
    "/lib",
    "/lib64",
    "/proc",
    "/run",
    "/sbin",
    "/sys",
    "/tmp",
    "/usr/bin",
    "/usr/lib",
    "/usr/sbin",
    "/var/run",
    "/var/tmp",
)

_DARWIN_FORBIDDEN_ROOTS = _POSIX_FORBIDDEN_ROOTS + (
    "/System",
    "/Library",
    "/private/etc",
    "/private/tmp",
    "/private/var/tmp",
    "/private/var/folders",
    "/var/folders",
)


def _windows_forbidden_roots(env: dict) -> tuple[str, ...]:
    system_root = env.get("SystemRoot") or env.get("WINDIR") or "C:\\Windows"
    roots = [
        system_root,
        env.get("ProgramFiles") or "C:\\Program Files",
        env.get("ProgramFiles(x86)") or "C:\\Program Files (x86)",
        env.get("ProgramData") or "C:\\ProgramData",
    ]
    for name in ("TEMP", "TMP"):
        if env.get(name):
            roots.append(env[name])
    return tuple(roots)


def get_forbidden_roots(
    platform: Optional[str] = None,
    env: Optional[dict] = None,
) -> tuple[str, ...]:
    """Return the restricted system roots for ``platform``.

    Args:
        platform: ``sys.platform`` style identifier, defaults to the host.
        env: Environment used for Windows well-known folders.
    """
    platform = platform or sys.platform
    if platform == "win32":
        return _windows_forbidden_roots(dict(os.environ) if env is None else env)
    if platform == "darwin":
        return _DARWIN_FORBIDDEN_ROOTS
    return _POSIX_FORBIDDEN_ROOTS


def is_case_insensitive(platform: str) -> bool:
    return platform in ("win32", "darwin")


class PathSandbox:
    """Confines store paths to a configured storage root.

    The platform decides both the path flavour (``ntpath`` on Windows,
    ``posixpath`` elsewhere) and whether forbidden roots compare
    case-insensitively.
    """

    def __init__(
        self,
        platform: Optional[str] = None,
        extra_forbidden_roots: Optional[list[str]] = None,
        env: Optional[dict] = None,
    ):
        self._platform = platform or sys.platform
        self._path = ntpath if self._platform == "win32" else posixpath
        self._forbidden = tuple(
            self._path.normpath(root)
            for root in get_forbidden_roots(self._platform, env)
            + tuple(extra_forbidden_roots or ())
        )
        self._root: Optional[str] = None

    @property
    def root(self) -> Optional[str]:
        return self._root

    @property
    def is_configured(self) -> bool:
        return self._root is not None

    def _fold(self, path: str) -> str:
        if is_case_insensitive(self._platform):
            return path.lower()
        return path

    def sanitize(self, path: str) -> str:
        """Validate ``path`` and return its normalized absolute form.

        Raises:
            InvalidPathError: If path is not a non-empty absolute string.
        """
        if not isinstance(path, str) or not path.strip():
            raise InvalidPathError("Storage path must be a non-empty string")
        if "\x00" in path:
            raise InvalidPathError("Storage path cannot contain NUL bytes")
        path = path.strip()
        if not self._path.isabs(path):
            raise InvalidPathError("Storage path must be absolute")
        return self._path.normpath(path)

    def is_restricted(self, path: str) -> bool:
        """True if ``path`` equals or lives under a forbidden root."""
        candidate = self._fold(path)
        sep = self._path.sep
        for root in self._forbidden:
            folded = self._fold(root)
            if candidate == folded or candidate.startswith(folded.rstrip(sep) + sep):
                return True
        return False

    def set_root(self, path: str) -> str:
        """Sanitize and store the storage root.

        Raises:
            InvalidPathError: If path is malformed.
            RestrictedPathError: If path is or is nested under a forbidden root.
        """
        sanitized = self.sanitize(path)
        if self.is_restricted(sanitized):
            raise RestrictedPathError(
                "Storage path points to a restricted system directory"
            )
        self._root = sanitized
        logger.info("Storage root configured")
        return sanitized

    def resolve(self, relative_path: str) -> str:
        """Resolve ``relative_path`` below the storage root.

        Raises:
            NotConfiguredError: If no root is set.
            PathEscapeError: If the result leaves the root.
        """
        if self._root is None:
            raise NotConfiguredError("Storage path not set")
        root = self._root
        resolved = self._path.normpath(self._path.join(root, relative_path or ""))
        prefix = root if root.endswith(self._path.sep) else root + self._path.sep
        if resolved != root and not resolved.startswith(prefix):
            raise PathEscapeError("Resolved path escapes storage root")
        return resolved
