"""Per-session X authority file ownership."""

from __future__ import annotations

import logging as py_logging
import os
import secrets
import socket
import struct
import tempfile
from collections.abc import Callable, Iterable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

FAMILY_LOCAL = 256
COOKIE_NAME = b"MIT-MAGIC-COOKIE-1"
COOKIE_LENGTH = 16
AUTH_FILE_PREFIX = "xauth_"

_SHORT = struct.Struct(">H")


@dataclass(frozen=True)
class AuthorityEntry:
    family: int
    address: bytes
    number: bytes
    name: bytes
    data: bytes

    def pack(self) -> bytes:
        parts = [_SHORT.pack(self.family)]
        for value in (self.address, self.number, self.name, self.data):
            parts.append(_SHORT.pack(len(value)))
            parts.append(value)
        return b"".join(parts)

    def same_target(self, other: AuthorityEntry) -> bool:
        return (self.family, self.address, self.number, self.name) == (
            other.family,
            other.address,
            other.number,
            other.name,
        )


def pack_entries(entries: Iterable[AuthorityEntry]) -> bytes:
    return b"".join(entry.pack() for entry in entries)


def parse_entries(payload: bytes) -> list[AuthorityEntry]:
    """Decode an Xauthority file body; raise ``ValueError`` when truncated."""
    entries: list[AuthorityEntry] = []
    offset = 0

    def _take(size: int) -> bytes:
        nonlocal offset
        end = offset + size
        if end > len(payload):
            raise ValueError(f"Truncated authority record at byte {offset}")
        chunk = payload[offset:end]
        offset = end
        return chunk

    def _counted() -> bytes:
        (length,) = _SHORT.unpack(_take(_SHORT.size))
        return _take(length)

    while offset < len(payload):
        (family,) = _SHORT.unpack(_take(_SHORT.size))
        entries.append(
            AuthorityEntry(
                family=family,
                address=_counted(),
                number=_counted(),
                name=_counted(),
                data=_counted(),
            )
        )
    return entries


def display_number(display: str) -> str:
    """``":7"``, ``"host:7"`` and ``":7.0"`` all map to ``"7"``."""
    _, _, tail = display.rpartition(":")
    number, _, _ = tail.partition(".")
    return number.strip()


def default_runtime_directory(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    runtime_dir = env.get("XDG_RUNTIME_DIR", "").strip()
    if runtime_dir:
        return Path(runtime_dir)
    return Path(tempfile.gettempdir()) / f"runtime-{os.getuid()}"


class AuthorityManager:
    """Creates, fills and removes the authority file of one session.

    The file is created once by :meth:`setup` and removed once by
    :meth:`remove`; cookies written in between are bound to the session's
    display handle.
    """

    def __init__(
        self,
        directory: str | Path | None = None,
        *,
        hostname: str | None = None,
        token: Callable[[int], bytes] = secrets.token_bytes,
        logger: py_logging.Logger | None = None,
    ) -> None:
        self._directory = Path(directory) if directory else default_runtime_directory()
        self._hostname = hostname if hostname is not None else socket.gethostname()
        self._token = token
        self._logger = logger or py_logging.getLogger(__name__)
        self._path: Path | None = None
        self._removed = False
        self._cookie: bytes | None = None

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def path(self) -> Path | None:
        return self._path

    def setup(self) -> bool:
        if self._path is not None:
            return True
        try:
            self._directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(prefix=AUTH_FILE_PREFIX, dir=self._directory)
        except OSError as exc:
            self._logger.error("Failed to create authority file in %s: %s", self._directory, exc)
            return False
        with suppress(OSError):
            os.fchmod(fd, 0o600)
        os.close(fd)
        self._path = Path(name)
        self._removed = False
        self._logger.debug("Authority file: %s", self._path)
        return True

    def add_cookie(self, display: str) -> bool:
        """Bind the session secret to ``display``.

        The secret is minted on the first call and reused afterwards: the
        server reads its ``-auth`` file once at startup, so every record the
        session writes must carry the secret it saw. An empty ``display``
        writes a record matching any display number.
        """
        path = self._path
        if path is None or self._removed:
            self._logger.error("Cannot add cookie for %r: authority file not set up", display)
            return False

        cookie = self._cookie if self._cookie is not None else self._token(COOKIE_LENGTH)
        entry = AuthorityEntry(
            family=FAMILY_LOCAL,
            address=self._hostname.encode("utf-8"),
            number=display_number(display).encode("ascii", errors="replace"),
            name=COOKIE_NAME,
            data=cookie,
        )
        try:
            entries = self._read_entries(path)
            kept = [item for item in entries if not item.same_target(entry)]
            self._write_entries(path, [*kept, entry])
        except OSError as exc:
            self._logger.error("Failed to write authority file %s: %s", path, exc)
            return False
        self._cookie = cookie
        self._logger.debug("Added cookie for display %r to %s", display or "*", path)
        return True

    def read_entries(self) -> list[AuthorityEntry]:
        if self._path is None:
            return []
        return self._read_entries(self._path)

    def remove(self) -> bool:
        """Delete the authority file. Only the first call has an effect."""
        if self._path is None or self._removed:
            return False
        self._removed = True
        try:
            self._path.unlink()
        except FileNotFoundError:
            self._logger.warning("Authority file already gone: %s", self._path)
        except OSError as exc:
            self._logger.error("Failed to remove authority file %s: %s", self._path, exc)
            return False
        self._logger.debug("Removed authority file %s", self._path)
        return True

    def _read_entries(self, path: Path) -> list[AuthorityEntry]:
        try:
            payload = path.read_bytes()
        except FileNotFoundError:
            return []
        try:
            return parse_entries(payload)
        except ValueError as exc:
            self._logger.warning("Discarding corrupt authority file %s: %s", path, exc)
            return []

    def _write_entries(self, path: Path, entries: list[AuthorityEntry]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(pack_entries(entries))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError:
            with suppress(OSError):
                os.unlink(tmp_name)
            raise
