from __future__ import annotations

import subprocess
import threading
import time

import pytest

from displaysupervisor.errors import SpawnFailed
from displaysupervisor.process import (
    ChildProcess,
    ExitStatus,
    ProcessSupervisor,
    build_environment,
    split_command,
)
from displaysupervisor.waits import Cancelled


class _FakeProcess:
    _next_pid = 4000

    def __init__(self, argv: list[str], *, exit_on_terminate: bool = True) -> None:
        _FakeProcess._next_pid += 1
        self.pid = _FakeProcess._next_pid
        self.argv = argv
        self.exit_on_terminate = exit_on_terminate
        self.signals: list[str] = []
        self.terminate_error: OSError | None = None
        self.returncode: int | None = None
        self.killed = threading.Event()
        self._exited = threading.Event()

    def finish(self, returncode: int) -> None:
        if self.returncode is None:
            self.returncode = returncode
        self._exited.set()

    def wait(self, timeout: float | None = None) -> int:
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.argv, timeout)
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("TERM")
        if self.terminate_error is not None:
            raise self.terminate_error
        if self.exit_on_terminate:
            self.finish(-15)

    def kill(self) -> None:
        self.signals.append("KILL")
        self.killed.set()
        self.finish(-9)


class _FakePopen:
    def __init__(self, *, exit_on_terminate: bool = True, gate: threading.Event | None = None) -> None:
        self.exit_on_terminate = exit_on_terminate
        self.gate = gate
        self.calls: list[tuple[list[str], dict[str, object]]] = []
        self.processes: list[_FakeProcess] = []

    def __call__(self, argv: list[str], **kwargs: object) -> _FakeProcess:
        self.calls.append((argv, kwargs))
        if self.gate is not None:
            self.gate.wait(5)
        process = _FakeProcess(argv, exit_on_terminate=self.exit_on_terminate)
        self.processes.append(process)
        return process


def test_split_command_accepts_strings_and_sequences() -> None:
    assert split_command("  /usr/bin/startplasma-x11  --flag ") == ["/usr/bin/startplasma-x11", "--flag"]
    assert split_command(["/bin/sh", "-c", "echo a b"]) == ["/bin/sh", "-c", "echo a b"]


@pytest.mark.parametrize("command", ["", "   ", []])
def test_split_command_rejects_empty_commands(command: object) -> None:
    with pytest.raises(SpawnFailed):
        split_command(command)  # type: ignore[arg-type]


def test_build_environment_overlays_base() -> None:
    env = build_environment({"DISPLAY": ":1"}, base={"HOME": "/home/u", "DISPLAY": ":0"})

    assert env == {"HOME": "/home/u", "DISPLAY": ":1"}


def test_exit_status_reports_signals_with_shell_convention() -> None:
    crashed = ExitStatus(-11)

    assert crashed.signaled
    assert crashed.signal_number == 11
    assert crashed.exit_code == 139
    assert crashed.describe() == "killed by SIGSEGV"

    clean = ExitStatus(0)
    assert not clean.abnormal
    assert clean.describe() == "exited with code 0"
    assert ExitStatus(3).exit_code == 3


def test_start_spawns_child_with_environment_and_fds() -> None:
    popen = _FakePopen()
    supervisor = ProcessSupervisor("server", popen=popen)

    child = supervisor.start(["/usr/bin/X", "-seat", "seat0"], {"HOME": "/home/u"}, pass_fds=(9,))

    assert isinstance(child, ChildProcess)
    assert child.argv == ["/usr/bin/X", "-seat", "seat0"]
    assert child.pid == popen.processes[0].pid
    assert supervisor.running
    argv, kwargs = popen.calls[0]
    assert argv == ["/usr/bin/X", "-seat", "seat0"]
    assert kwargs["env"] == {"HOME": "/home/u"}
    assert kwargs["pass_fds"] == (9,)
    supervisor.kill()


def test_exit_is_reported_once_through_callback_and_wait() -> None:
    popen = _FakePopen()
    notified: list[tuple[str, ExitStatus]] = []
    done = threading.Event()

    def on_exit(child: ChildProcess, status: ExitStatus) -> None:
        notified.append((child.name, status))
        done.set()

    supervisor = ProcessSupervisor("client", popen=popen)
    supervisor.start("startplasma-x11", {}, on_exit=on_exit)
    popen.processes[0].finish(0)

    assert supervisor.wait(1.0) == ExitStatus(0)
    assert done.wait(1.0)
    assert notified == [("client", ExitStatus(0))]
    assert not supervisor.running
    assert supervisor.stop() == ExitStatus(0)
    assert popen.processes[0].signals == []


def test_wait_returns_none_while_child_runs() -> None:
    popen = _FakePopen()
    supervisor = ProcessSupervisor("client", popen=popen)
    supervisor.start("sleep 10", {})

    assert supervisor.wait(0.05) is None
    supervisor.kill()


def test_stop_terminates_gracefully() -> None:
    popen = _FakePopen()
    supervisor = ProcessSupervisor("server", popen=popen, stop_timeout=1.0)
    supervisor.start("X", {})

    status = supervisor.stop()

    assert status == ExitStatus(-15)
    assert popen.processes[0].signals == ["TERM"]
    assert not supervisor.running


def test_stop_escalates_to_kill_when_child_ignores_terminate() -> None:
    popen = _FakePopen(exit_on_terminate=False)
    supervisor = ProcessSupervisor("server", popen=popen, stop_timeout=0.05)
    supervisor.start("X", {})

    status = supervisor.stop()

    assert status == ExitStatus(-9)
    assert popen.processes[0].signals == ["TERM", "KILL"]


def test_stop_is_idempotent() -> None:
    popen = _FakePopen()
    supervisor = ProcessSupervisor("server", popen=popen)
    supervisor.start("X", {})

    first = supervisor.stop()
    second = supervisor.stop()

    assert first == second == ExitStatus(-15)
    assert popen.processes[0].signals == ["TERM"]


def test_failed_terminate_can_be_retried() -> None:
    popen = _FakePopen()
    supervisor = ProcessSupervisor("server", popen=popen, stop_timeout=1.0)
    supervisor.start("X", {})
    process = popen.processes[0]
    process.terminate_error = PermissionError(1, "Operation not permitted")

    with pytest.raises(PermissionError):
        supervisor.stop()
    assert supervisor.running

    process.terminate_error = None
    assert supervisor.stop() == ExitStatus(-15)
    assert process.signals == ["TERM", "TERM"]
    assert not supervisor.running


def test_stop_without_child_is_noop() -> None:
    assert ProcessSupervisor("server", popen=_FakePopen()).stop() is None


def test_kill_skips_terminate() -> None:
    popen = _FakePopen()
    supervisor = ProcessSupervisor("hook", popen=popen)
    supervisor.start("xsetroot", {})

    assert supervisor.kill() == ExitStatus(-9)
    assert popen.processes[0].signals == ["KILL"]


def test_start_rejects_second_child_while_running() -> None:
    popen = _FakePopen()
    supervisor = ProcessSupervisor("server", popen=popen)
    supervisor.start("X", {})

    with pytest.raises(SpawnFailed):
        supervisor.start("X", {})
    supervisor.kill()


def test_spawn_errors_become_spawn_failed() -> None:
    def popen(argv: list[str], **_: object) -> _FakeProcess:
        raise FileNotFoundError(2, "No such file or directory", argv[0])

    supervisor = ProcessSupervisor("client", popen=popen)

    with pytest.raises(SpawnFailed) as excinfo:
        supervisor.start("/missing/program", {})

    assert isinstance(excinfo.value.__cause__, FileNotFoundError)
    assert supervisor.child is None


def test_start_timeout_discards_late_child() -> None:
    gate = threading.Event()
    popen = _FakePopen(gate=gate)
    supervisor = ProcessSupervisor("server", popen=popen, start_timeout=0.05)

    with pytest.raises(SpawnFailed, match="Timed out"):
        supervisor.start("X", {})
    gate.set()

    for _ in range(100):
        if popen.processes:
            break
        time.sleep(0.01)
    assert popen.processes[0].killed.wait(1.0)
    assert supervisor.child is None


def test_cancelled_start_raises_cancelled() -> None:
    gate = threading.Event()
    cancel = threading.Event()
    cancel.set()
    supervisor = ProcessSupervisor("server", popen=_FakePopen(gate=gate), cancel=cancel)

    try:
        with pytest.raises(Cancelled):
            supervisor.start("X", {})
    finally:
        gate.set()


def test_cancelled_wait_propagates() -> None:
    cancel = threading.Event()
    popen = _FakePopen()
    supervisor = ProcessSupervisor("hook", popen=popen, cancel=cancel)
    supervisor.start("Xsetup", {})
    cancel.set()

    with pytest.raises(Cancelled):
        supervisor.wait(5.0)
    supervisor.kill()
