"""Trusted resolution of agent CLI binaries."""

from __future__ import annotations

import logging
import os
import re
import shutil
from typing import Callable, Iterable

from ..errors import AvailabilityError, ConfigurationError

logger = logging.getLogger(__name__)

_BINARY_NAME = re.compile(r"^[A-Za-z0-9._-]+$")

UNTRUSTED_PREFIXES: tuple[str, ...] = ("/tmp", "/var/tmp", "/dev/shm")

_SYSTEM_PREFIXES: tuple[str, ...] = ("/usr/local/bin", "/usr/bin", "/bin", "/opt/homebrew/")
_HOME_PREFIXES: tuple[str, ...] = (
    ".local/bin",
    ".nvm/",
    ".cargo/bin",
    ".npm-global/bin",
    ".bun/bin",
)


class UnsafeBinaryError(ConfigurationError):
    """Raised when a binary reference is neither absolute nor a plain name."""


class UntrustedBinaryError(ConfigurationError):
    """Raised when a binary resolves into a shared temporary directory."""


class BinaryNotFoundError(AvailabilityError):
    """Raised when a binary cannot be found on PATH."""


def is_untrusted_path(path: str) -> bool:
    normalized = os.path.normpath(path)
    return any(
        normalized == prefix or normalized.startswith(prefix + "/") for prefix in UNTRUSTED_PREFIXES
    )


class BinaryResolver:
    """Resolve agent binaries to absolute paths and cache the results.

    ``strict`` resolution raises on missing or untrusted binaries and is used
    before launching a worker. Lenient resolution logs and falls back to the
    bare name so availability checks never fail hard.
    """

    def __init__(
        self,
        trusted_dirs: Iterable[str] | None = None,
        *,
        home: str | None = None,
        which: Callable[[str], str | None] | None = None,
    ) -> None:
        self._extra_dirs = [entry for entry in (trusted_dirs or []) if os.path.isabs(entry)]
        self._home = home if home is not None else os.environ.get("HOME")
        self._which = which or shutil.which
        self._cache: dict[str, str] = {}

    def trusted_prefixes(self) -> list[str]:
        prefixes = list(_SYSTEM_PREFIXES)
        if self._home:
            home = self._home.rstrip("/")
            prefixes.extend(f"{home}/{suffix}" for suffix in _HOME_PREFIXES)
        prefixes.extend(self._extra_dirs)
        return prefixes

    def is_trusted(self, path: str) -> bool:
        normalized = os.path.normpath(path)
        for prefix in self.trusted_prefixes():
            base = prefix.rstrip("/")
            if normalized == base or normalized.startswith(base + "/"):
                return True
        return False

    def resolve(self, binary: str, *, strict: bool = True) -> str:
        """Return the absolute path of ``binary``.

        In lenient mode a missing or untrusted binary yields the bare name.
        """

        if not (os.path.isabs(binary) or _BINARY_NAME.match(binary)):
            raise UnsafeBinaryError(f"Unsafe CLI binary reference: {binary!r}")

        cached = self._cache.get(binary)
        if cached is not None:
            return cached

        if os.path.isabs(binary):
            resolved: str | None = binary
        else:
            found = self._which(binary)
            resolved = found.strip() if found else None
            if resolved and not os.path.isabs(resolved):
                resolved = None

        if resolved is None:
            if strict:
                raise BinaryNotFoundError(f"CLI binary '{binary}' not found in PATH")
            logger.debug("Binary not found, using bare name", extra={"binary": binary})
            return binary

        resolved = os.path.normpath(resolved)
        if is_untrusted_path(resolved):
            if strict:
                raise UntrustedBinaryError(
                    f"CLI binary '{binary}' resolved to untrusted location: {resolved}"
                )
            logger.warning(
                "CLI binary resolved to untrusted location, falling back to bare name",
                extra={"binary": binary, "resolved_path": resolved},
            )
            return binary

        if not self.is_trusted(resolved):
            logger.warning(
                "CLI binary resolved to non-standard path",
                extra={"binary": binary, "resolved_path": resolved},
            )

        self._cache[binary] = resolved
        return resolved

    def invalidate(self, binary: str | None = None) -> None:
        """Drop one cached resolution, or all of them."""

        if binary is None:
            self._cache.clear()
        else:
            self._cache.pop(binary, None)

    @property
    def cached(self) -> dict[str, str]:
        return dict(self._cache)


__all__ = [
    "BinaryNotFoundError",
    "BinaryResolver",
    "UNTRUSTED_PREFIXES",
    "UnsafeBinaryError",
    "UntrustedBinaryError",
    "is_untrusted_path",
]
