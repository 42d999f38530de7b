"""
Tests for PathSandbox.

Tests cover:
- Storage root validation (absolute, non-empty, no NUL bytes)
- Forbidden system roots on Linux, macOS and Windows
- Resolution of store paths below the root and escape detection
"""
import pytest

from peervault.exceptions import (
    InvalidPathError,
    NotConfiguredError,
    PathEscapeError,
    RestrictedPathError,
)
from peervault.vault.sandbox import PathSandbox, get_forbidden_roots


WINDOWS_ENV = {
    "SystemRoot": "C:\\Windows",
    "ProgramFiles": "C:\\Program Files",
    "ProgramData": "C:\\ProgramData",
    "TEMP": "C:\\Users\\alice\\AppData\\Local\\Temp",
}


@pytest.fixture
def sandbox():
    box = PathSandbox(platform="linux")
    box.set_root("/data/vaults")
    return box


class TestSetRoot:
    """Tests for configuring the storage root."""

    def test_unconfigured_by_default(self):
        """A new sandbox has no root."""
        box = PathSandbox(platform="linux")
        assert box.is_configured is False
        assert box.root is None

    def test_root_is_normalized(self):
        """Redundant separators and dot segments are collapsed."""
        box = PathSandbox(platform="linux")
        assert box.set_root("/data//vaults/./app/") == "/data/vaults/app"
        assert box.root == "/data/vaults/app"

    @pytest.mark.parametrize("path", ["", "   ", None, 42, "relative/dir", "/data/\x00vault"])
    def test_invalid_paths_rejected(self, path):
        """Empty, non-string, relative and NUL-containing paths are invalid."""
        box = PathSandbox(platform="linux")
        with pytest.raises(InvalidPathError):
            box.set_root(path)
        assert box.is_configured is False

    @pytest.mark.parametrize("path", ["/etc", "/etc/peervault", "/tmp/x", "/proc/1", "/usr/bin"])
    def test_linux_forbidden_roots(self, path):
        """System directories and their children are refused."""
        box = PathSandbox(platform="linux")
        with pytest.raises(RestrictedPathError) as exc:
            box.set_root(path)
        assert exc.value.message == "Storage path points to a restricted system directory"

    def test_similar_prefix_is_allowed(self):
        """Only whole path segments match a forbidden root."""
        box = PathSandbox(platform="linux")
        assert box.set_root("/etcetera/vaults") == "/etcetera/vaults"

    def test_dot_segments_cannot_reach_forbidden_root(self):
        """Normalization happens before the forbidden-root check."""
        box = PathSandbox(platform="linux")
        with pytest.raises(RestrictedPathError):
            box.set_root("/data/../etc/vaults")

    def test_darwin_is_case_insensitive(self):
        """macOS roots compare case-insensitively."""
        box = PathSandbox(platform="darwin")
        with pytest.raises(RestrictedPathError):
            box.set_root("/system/Library/vaults")
        with pytest.raises(RestrictedPathError):
            box.set_root("/private/var/folders/xy/T")
        assert box.set_root("/Users/alice/Vaults") == "/Users/alice/Vaults"

    def test_windows_forbidden_roots(self):
        """Windows roots come from the environment and ignore case."""
        box = PathSandbox(platform="win32", env=WINDOWS_ENV)
        with pytest.raises(RestrictedPathError):
            box.set_root("c:\\windows\\system32")
        with pytest.raises(RestrictedPathError):
            box.set_root("C:\\Users\\alice\\AppData\\Local\\Temp\\vault")
        assert box.set_root("D:\\Vaults") == "D:\\Vaults"

    def test_extra_forbidden_roots(self):
        """Configured extra roots are refused as well."""
        box = PathSandbox(platform="linux", extra_forbidden_roots=["/srv/secret"])
        with pytest.raises(RestrictedPathError):
            box.set_root("/srv/secret/vaults")

    def test_forbidden_roots_per_platform(self):
        """Each platform has its own list."""
        assert "/etc" in get_forbidden_roots("linux")
        assert "/System" in get_forbidden_roots("darwin")
        assert "/System" not in get_forbidden_roots("linux")
        assert "C:\\Windows" in get_forbidden_roots("win32", WINDOWS_ENV)


class TestResolve:
    """Tests for resolving store paths."""

    def test_resolve_requires_root(self):
        """Resolving without a root fails with NotConfiguredError."""
        box = PathSandbox(platform="linux")
        with pytest.raises(NotConfiguredError) as exc:
            box.resolve("vaults")
        assert exc.value.message == "Storage path not set"

    def test_resolve_below_root(self, sandbox):
        """Store paths are joined onto the root."""
        assert sandbox.resolve("vaults") == "/data/vaults/vaults"
        assert sandbox.resolve("vault/abc-123") == "/data/vaults/vault/abc-123"

    @pytest.mark.parametrize("relative", ["../other", "vault/../../etc", "/etc/passwd"])
    def test_escape_is_rejected(self, sandbox, relative):
        """Paths leaving the root raise PathEscapeError."""
        with pytest.raises(PathEscapeError):
            sandbox.resolve(relative)

    def test_sibling_prefix_is_an_escape(self, sandbox):
        """A sibling directory sharing the root's prefix is outside it."""
        with pytest.raises(PathEscapeError):
            sandbox.resolve("../vaults-evil")

    def test_resolved_paths_stay_below_root(self, sandbox):
        """Every accepted path starts with the root."""
        for relative in ("encryption", "vault/x", "a/./b", "a/b/../c"):
            assert sandbox.resolve(relative).startswith("/data/vaults/")
