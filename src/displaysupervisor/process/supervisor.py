"""Bounded start/stop lifecycle for a single supervised child process."""

from __future__ import annotations

import logging as py_logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field

from displaysupervisor.errors import SpawnFailed
from displaysupervisor.waits import Cancelled, wait_until

DEFAULT_START_TIMEOUT = 10.0
DEFAULT_STOP_TIMEOUT = 5.0
KILL_CONFIRM_TIMEOUT = 5.0

Popen = Callable[..., "subprocess.Popen[bytes]"]


@dataclass(frozen=True)
class ExitStatus:
    returncode: int

    @property
    def signaled(self) -> bool:
        return self.returncode < 0

    @property
    def signal_number(self) -> int | None:
        return -self.returncode if self.signaled else None

    @property
    def abnormal(self) -> bool:
        return self.returncode != 0

    @property
    def exit_code(self) -> int:
        signum = self.signal_number
        return self.returncode if signum is None else 128 + signum

    def describe(self) -> str:
        signum = self.signal_number
        if signum is not None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = f"signal {signum}"
            return f"killed by {name}"
        return f"exited with code {self.returncode}"


@dataclass
class ChildProcess:
    name: str
    program: str
    arguments: tuple[str, ...]
    environment: dict[str, str] = field(repr=False)
    pid: int
    running: bool = True
    status: ExitStatus | None = None

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.arguments]


ExitCallback = Callable[[ChildProcess, ExitStatus], None]


def split_command(command: str | Sequence[str]) -> list[str]:
    """Split a legacy command string on whitespace; sequences pass through."""
    if isinstance(command, str):
        argv = command.split()
    else:
        argv = [str(item) for item in command]
    if not argv:
        raise SpawnFailed(
            "Command cannot be empty.",
            hint="Configure a program to run.",
        )
    return argv


def build_environment(
    overrides: Mapping[str, str] | None = None,
    *,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    if overrides:
        env.update(overrides)
    return env


class ProcessSupervisor:
    """Owns one child process from spawn to confirmed exit."""

    def __init__(
        self,
        name: str,
        *,
        popen: Popen = subprocess.Popen,
        cancel: threading.Event | None = None,
        logger: py_logging.Logger | None = None,
        start_timeout: float = DEFAULT_START_TIMEOUT,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
    ) -> None:
        self.name = name
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout
        self._popen = popen
        self._cancel = cancel
        self._logger = logger or py_logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._exited = threading.Event()
        self._process: subprocess.Popen[bytes] | None = None
        self._child: ChildProcess | None = None
        self._stopping = False

    @property
    def child(self) -> ChildProcess | None:
        return self._child

    @property
    def running(self) -> bool:
        child = self._child
        return child is not None and child.running

    @property
    def status(self) -> ExitStatus | None:
        child = self._child
        return child.status if child is not None else None

    def start(
        self,
        command: str | Sequence[str],
        environment: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
        pass_fds: Sequence[int] = (),
        on_exit: ExitCallback | None = None,
    ) -> ChildProcess:
        if self.running:
            raise SpawnFailed(
                f"Process already running: {self.name}",
                hint="Stop the current process before starting a new one.",
            )
        argv = split_command(command)
        env = build_environment(base=environment)
        limit = self.start_timeout if timeout is None else timeout
        display_command = " ".join(argv)

        holder: dict[str, subprocess.Popen[bytes]] = {}
        error: dict[str, BaseException] = {}
        done = threading.Event()
        abandoned = threading.Event()

        def _worker() -> None:
            try:
                process = self._popen(
                    argv,
                    env=env,
                    stdin=None,
                    stdout=None,
                    stderr=None,
                    pass_fds=tuple(pass_fds),
                )
            except BaseException as exc:  # pragma: no cover - passthrough
                error["exc"] = exc
            else:
                holder["process"] = process
            finally:
                done.set()
            if abandoned.is_set():
                late = holder.pop("process", None)
                if late is not None:
                    self._discard(late)

        thread = threading.Thread(target=_worker, name=f"spawn-{self.name}", daemon=True)
        thread.start()

        try:
            confirmed = wait_until(done.is_set, timeout=limit, cancel=self._cancel)
        except Cancelled:
            self._abandon(abandoned, done, holder)
            raise
        if not confirmed:
            self._abandon(abandoned, done, holder)
            self._logger.warning('Failed to start "%s": timed out after %ss', display_command, limit)
            raise SpawnFailed(
                f"Timed out starting {self.name}: {display_command}",
                hint=f"The process did not start within {limit} seconds.",
            )

        if "exc" in error:
            exc = error["exc"]
            self._logger.warning('Failed to start "%s": %s', display_command, exc)
            raise SpawnFailed(
                f"Failed to start {self.name}: {display_command}",
                hint=str(exc) or "Check that the program exists and is executable.",
            ) from exc

        process = holder["process"]
        child = ChildProcess(
            name=self.name,
            program=argv[0],
            arguments=tuple(argv[1:]),
            environment=env,
            pid=process.pid,
        )
        with self._lock:
            self._process = process
            self._child = child
            self._stopping = False
            self._exited.clear()
        self._logger.debug("Started %s pid=%s argv=%s", self.name, process.pid, child.argv)

        watcher = threading.Thread(
            target=self._watch,
            args=(process, child, on_exit),
            name=f"watch-{self.name}",
            daemon=True,
        )
        watcher.start()
        return child

    def wait(self, timeout: float) -> ExitStatus | None:
        """Wait up to ``timeout`` seconds for the child to exit."""
        if self._child is None:
            return None
        if wait_until(self._exited.is_set, timeout=timeout, cancel=self._cancel):
            return self._child.status
        return None

    def stop(self) -> ExitStatus | None:
        """Terminate gracefully, escalate to SIGKILL after ``stop_timeout``."""
        return self._shutdown(graceful=True)

    def kill(self) -> ExitStatus | None:
        return self._shutdown(graceful=False)

    def _shutdown(self, *, graceful: bool) -> ExitStatus | None:
        with self._lock:
            process = self._process
            child = self._child
            if process is None or child is None:
                return None
            if not child.running or self._stopping:
                return child.status
            self._stopping = True

        try:
            if graceful:
                self._logger.info("Stopping %s...", self.name)
                with suppress(ProcessLookupError):
                    process.terminate()
                if not self._exited.wait(self.stop_timeout):
                    self._logger.warning(
                        "%s did not exit within %ss; killing pid=%s",
                        self.name,
                        self.stop_timeout,
                        child.pid,
                    )
                    self._force_kill(process, child)
            else:
                self._force_kill(process, child)
            with self._lock:
                child.running = False
        finally:
            # A failed signal leaves the child running; a later stop may retry.
            with self._lock:
                self._stopping = False
        return child.status

    def _force_kill(self, process: subprocess.Popen[bytes], child: ChildProcess) -> None:
        with suppress(ProcessLookupError):
            process.kill()
        if not self._exited.wait(KILL_CONFIRM_TIMEOUT):
            self._logger.error("%s pid=%s did not exit after SIGKILL", self.name, child.pid)

    def _watch(
        self,
        process: subprocess.Popen[bytes],
        child: ChildProcess,
        on_exit: ExitCallback | None,
    ) -> None:
        returncode = process.wait()
        status = ExitStatus(returncode)
        with self._lock:
            child.running = False
            child.status = status
        self._exited.set()
        if status.abnormal:
            self._logger.warning("%s pid=%s %s", self.name, child.pid, status.describe())
        else:
            self._logger.debug("%s pid=%s %s", self.name, child.pid, status.describe())
        if on_exit is not None:
            on_exit(child, status)

    def _abandon(
        self,
        abandoned: threading.Event,
        done: threading.Event,
        holder: dict[str, subprocess.Popen[bytes]],
    ) -> None:
        abandoned.set()
        # The worker may have finished between the wait and the flag.
        if done.is_set():
            late = holder.pop("process", None)
            if late is not None:
                self._discard(late)

    def _discard(self, process: subprocess.Popen[bytes]) -> None:
        self._logger.warning("Killing late-starting %s pid=%s", self.name, process.pid)
        with suppress(ProcessLookupError):
            process.kill()
        with suppress(subprocess.TimeoutExpired):
            process.wait(timeout=KILL_CONFIRM_TIMEOUT)
