"""Display handle negotiation over the server's -displayfd pipe."""

from __future__ import annotations

import logging as py_logging
import os
import selectors
import threading
import time
from contextlib import suppress
from types import TracebackType

from displaysupervisor.errors import HandleReadFailed, PipeCreationFailed
from displaysupervisor.waits import DEFAULT_POLL_INTERVAL, Cancelled

DEFAULT_HANDLE_TIMEOUT = 30.0
HANDLE_SEPARATOR = b":"
_MAX_LINE = 64


class DisplayHandleNegotiator:
    """Reads the display number the server picked and relays it.

    The server gets the write end of a private pipe on its command line and
    writes its display number followed by a newline once it is ready.
    """

    def __init__(
        self,
        *,
        handoff_fd: int = -1,
        cancel: threading.Event | None = None,
        logger: py_logging.Logger | None = None,
    ) -> None:
        self.handoff_fd = handoff_fd
        self._cancel = cancel
        self._logger = logger or py_logging.getLogger(__name__)
        self._read_fd: int | None = None
        self._write_fd: int | None = None

    def __enter__(self) -> DisplayHandleNegotiator:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def write_fd(self) -> int | None:
        return self._write_fd

    @property
    def is_open(self) -> bool:
        return self._read_fd is not None or self._write_fd is not None

    def open(self) -> int:
        if self.is_open:
            raise PipeCreationFailed(
                "Display handle pipe is already open.",
                hint="Close the previous negotiation first.",
            )
        try:
            read_fd, write_fd = os.pipe()
        except OSError as exc:
            self._logger.critical("Could not create pipe to start the display server: %s", exc)
            raise PipeCreationFailed(
                "Could not create pipe to start the display server.",
                hint=str(exc),
            ) from exc
        self._read_fd = read_fd
        self._write_fd = write_fd
        return write_fd

    def close_write_end(self) -> None:
        """Drop our copy of the write end so EOF is seen once the server exits."""
        fd, self._write_fd = self._write_fd, None
        if fd is not None:
            with suppress(OSError):
                os.close(fd)

    def close(self) -> None:
        self.close_write_end()
        fd, self._read_fd = self._read_fd, None
        if fd is not None:
            with suppress(OSError):
                os.close(fd)

    def read_handle(self, timeout: float = DEFAULT_HANDLE_TIMEOUT) -> str:
        if self._read_fd is None:
            raise HandleReadFailed(
                "Display handle pipe is not open.",
                hint="Open the negotiator before starting the server.",
            )
        try:
            raw = self._read_line(self._read_fd, timeout)
            if len(raw) < 2:
                # Nothing, or a lone whitespace byte.
                self._logger.critical("Failed to read display number from pipe")
                raise HandleReadFailed(
                    "Failed to read display number from pipe.",
                    hint="The display server exited or reported no display.",
                )
            normalized = HANDLE_SEPARATOR + raw[:-1]
            handle = os.fsdecode(normalized)
            self._logger.debug("Display handle: %s", handle)
            self._relay(normalized)
            return handle
        finally:
            self.close()

    def _read_line(self, fd: int, timeout: float) -> bytes:
        buffer = bytearray()
        deadline = time.monotonic() + max(timeout, 0.0)
        with selectors.DefaultSelector() as selector:
            selector.register(fd, selectors.EVENT_READ)
            while len(buffer) < _MAX_LINE:
                if self._cancel is not None and self._cancel.is_set():
                    raise Cancelled("Display handle read cancelled by stop request.")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._logger.critical("Timed out after %ss waiting for display number", timeout)
                    raise HandleReadFailed(
                        f"Timed out waiting for the display number after {timeout} seconds.",
                        hint="Check the display server log for startup errors.",
                    )
                if not selector.select(min(DEFAULT_POLL_INTERVAL, remaining)):
                    continue
                try:
                    chunk = os.read(fd, 1)
                except OSError as exc:
                    raise HandleReadFailed(
                        "Failed to read display number from pipe.",
                        hint=str(exc),
                    ) from exc
                if not chunk:
                    break
                buffer += chunk
                if chunk == b"\n":
                    break
        return bytes(buffer)

    def _relay(self, payload: bytes) -> None:
        if self.handoff_fd <= 0:
            return
        view = memoryview(payload)
        try:
            while view:
                written = os.write(self.handoff_fd, view)
                view = view[written:]
        except OSError as exc:
            self._logger.warning("Could not relay display handle to fd %s: %s", self.handoff_fd, exc)
