"""End-to-end display session orchestration.

A session starts the display server, learns its display handle, provisions
an authority cookie for it, runs the setup hooks and finally the session
client. When the client exits (or a stop is requested) everything is torn
down in reverse: client, server, teardown hook, authority file.

All state transitions happen on the thread that calls :meth:`run`. Child
exit notifications and stop requests arrive from other threads (or signal
handlers) and are only ever enqueued; the controlling thread consumes them.
Other threads end a session with :meth:`SessionCoordinator.request_stop`.
"""

from __future__ import annotations

import logging as py_logging
import os
import queue
import threading
from collections.abc import Callable, Mapping
from pathlib import Path

from displaysupervisor.authority import AuthorityManager, default_runtime_directory
from displaysupervisor.config import AppConfig
from displaysupervisor.errors import (
    CredentialWriteFailed,
    ExitCode,
    SpawnFailed,
    SupervisorError,
)
from displaysupervisor.hooks.runner import Hook, HookRunner
from displaysupervisor.negotiator import DisplayHandleNegotiator
from displaysupervisor.process.supervisor import (
    ChildProcess,
    ExitStatus,
    ProcessSupervisor,
    build_environment,
    split_command,
)
from displaysupervisor.server_command import build_server_arguments, build_xorg_user_command
from displaysupervisor.session.models import (
    ProcessExited,
    ProcessRole,
    SessionEvent,
    SessionState,
    StopRequested,
)
from displaysupervisor.waits import Cancelled

SERVER_ENVIRONMENT = {"XORG_RUN_AS_USER_OK": "1"}
TEARDOWN_ENVIRONMENT = {"QT_QPA_PLATFORM": "xcb"}
# Upper bound on how long a pending signal handler waits to run.
MONITOR_POLL_INTERVAL = 0.5

SupervisorFactory = Callable[..., ProcessSupervisor]
NegotiatorFactory = Callable[..., DisplayHandleNegotiator]


class SessionCoordinator:
    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        client_command: str,
        server_command: str | None = None,
        seat: str = "seat0",
        testing: bool = False,
        handoff_fd: int = -1,
        environ: Mapping[str, str] | None = None,
        authority: AuthorityManager | None = None,
        supervisor_factory: SupervisorFactory = ProcessSupervisor,
        negotiator_factory: NegotiatorFactory = DisplayHandleNegotiator,
        hook_runner: HookRunner | None = None,
        logger: py_logging.Logger | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.client_command = client_command
        self.server_command = server_command
        self.seat = seat
        self.testing = testing
        self.handoff_fd = handoff_fd
        self._environ = dict(os.environ if environ is None else environ)
        self._logger = logger or py_logging.getLogger(__name__)
        self._supervisor_factory = supervisor_factory
        self._negotiator_factory = negotiator_factory

        runtime_dir = self.config.runtime_directory or default_runtime_directory(self._environ)
        self._authority = authority or AuthorityManager(runtime_dir, logger=self._logger)
        self._hooks = hook_runner or HookRunner(
            start_timeout=self.config.timeouts.auxiliary_start,
            supervisor_factory=supervisor_factory,
            logger=self._logger,
        )

        self._cancel = threading.Event()
        self._events: queue.SimpleQueue[SessionEvent] = queue.SimpleQueue()
        self._teardown_lock = threading.Lock()
        self._control_lock = threading.RLock()
        self._finished = False
        self._authority_ready = False
        self._negotiator: DisplayHandleNegotiator | None = None
        self._server: ProcessSupervisor | None = None
        self._client: ProcessSupervisor | None = None

        self.display: str | None = None
        self.outcome: int | None = None
        self.state = SessionState.IDLE
        self.history: list[SessionState] = [SessionState.IDLE]

    @property
    def authority_path(self) -> Path | None:
        return self._authority.path

    def request_stop(self, reason: str = "stop requested") -> None:
        """Ask the session to end. Safe to call from signal handlers."""
        self._cancel.set()
        self._events.put(StopRequested(reason))

    def run(self) -> int:
        with self._control_lock:
            try:
                self.start()
            except SupervisorError as exc:
                return int(exc.code)
            if self.state is not SessionState.RUNNING:
                return self.outcome if self.outcome is not None else int(ExitCode.SUCCESS)

            self.outcome = self._monitor()
            self._teardown(SessionState.STOPPED)
            return self.outcome

    def start(self) -> None:
        with self._control_lock:
            self._start()

    def stop(self) -> None:
        """Tear the session down. Repeated calls are no-ops.

        While another thread is inside :meth:`run` or :meth:`start` this only
        calls :meth:`request_stop`; the controlling thread does the teardown.
        """
        if not self._control_lock.acquire(blocking=False):
            self.request_stop()
            return
        try:
            self._cancel.set()
            self._teardown(SessionState.STOPPED)
        finally:
            self._control_lock.release()

    def _start(self) -> None:
        if self.state is not SessionState.IDLE:
            raise SupervisorError(
                f"Session cannot start from state {self.state.value}.",
                hint="Create a new coordinator for each login attempt.",
            )
        try:
            negotiator = self._start_server()
            display = self._await_display_handle(negotiator)
            self._provision_credential(display)
            self._run_setup_hooks()
            self._start_client()
        except Cancelled:
            self._logger.info("Stop requested during startup; tearing down")
            self.outcome = int(ExitCode.SUCCESS)
            self._teardown(SessionState.STOPPED)
            return
        except Exception as exc:
            self._logger.error(
                "Session startup failed in state %s: %s",
                self.state.value,
                exc,
                exc_info=not isinstance(exc, SupervisorError),
            )
            self._teardown(SessionState.FAILED)
            raise
        self._set_state(SessionState.RUNNING)

    def _start_server(self) -> DisplayHandleNegotiator:
        self._set_state(SessionState.STARTING_SERVER)
        if not self._authority.setup():
            raise CredentialWriteFailed(
                "Failed to create the authority file.",
                hint=f"Check that {self._authority.directory} is writable.",
            )
        self._authority_ready = True
        # An empty -auth file would leave the server without access control.
        if not self._authority.add_cookie(""):
            raise CredentialWriteFailed(
                "Failed to write xauth file.",
                hint=f"Check permissions of {self._authority.path}.",
            )

        negotiator = self._negotiator_factory(
            handoff_fd=self.handoff_fd,
            cancel=self._cancel,
            logger=self._logger,
        )
        self._negotiator = negotiator
        write_fd = negotiator.open()

        vtnr = self._environ.get("XDG_VTNR", "")
        if not vtnr.strip():
            self._logger.warning("XDG_VTNR is not set; starting server without a vt argument")
        argv = [
            *self._base_server_command(),
            *build_server_arguments(
                auth_path=str(self._authority.path),
                display_fd=write_fd,
                vtnr=vtnr,
            ),
        ]
        env = build_environment(SERVER_ENVIRONMENT, base=self._environ)

        self._logger.info("Running server: %s", " ".join(argv))
        self._server = self._new_supervisor(ProcessRole.SERVER)
        try:
            self._server.start(
                argv,
                env,
                pass_fds=(write_fd,),
                on_exit=self._exit_notifier(ProcessRole.SERVER),
            )
        except SpawnFailed:
            negotiator.close()
            raise
        negotiator.close_write_end()
        return negotiator

    def _await_display_handle(self, negotiator: DisplayHandleNegotiator) -> str:
        self._set_state(SessionState.AWAITING_DISPLAY_HANDLE)
        display = negotiator.read_handle(self.config.timeouts.display_handle)
        self.display = display
        self._logger.info("Display server ready on %s", display)
        self._check_interrupts()
        return display

    def _provision_credential(self, display: str) -> None:
        self._set_state(SessionState.PROVISIONING_CREDENTIAL)
        if not self._authority.add_cookie(display):
            raise CredentialWriteFailed(
                "Failed to write xauth file.",
                hint=f"Check permissions of {self._authority.path}.",
            )

    def _run_setup_hooks(self) -> None:
        self._set_state(SessionState.RUNNING_SETUP_HOOK)
        x11 = self.config.x11
        timeouts = self.config.timeouts
        self._run_hooks(
            "setup",
            [
                Hook("cursor", x11.cursor_command, timeouts.cursor),
                Hook("display-setup", x11.display_command, timeouts.display_setup),
            ],
            self._display_environment(),
            cancel=self._cancel,
        )
        self._check_interrupts()

    def _run_teardown_hook(self) -> None:
        self._set_state(SessionState.RUNNING_TEARDOWN_HOOK)
        self._run_hooks(
            "teardown",
            [Hook("display-stop", self.config.x11.display_stop_command, self.config.timeouts.display_stop)],
            self._display_environment(TEARDOWN_ENVIRONMENT),
        )

    def _run_hooks(
        self,
        stage: str,
        hooks: list[Hook],
        environment: Mapping[str, str],
        *,
        cancel: threading.Event | None = None,
    ) -> None:
        result = self._hooks.run(stage=stage, hooks=hooks, environment=environment, cancel=cancel)
        if result.has_failures:
            failed = [execution.name for execution in result.executions if not execution.success]
            self._logger.warning("Continuing after failed %s hooks: %s", stage, ", ".join(failed))

    def _start_client(self) -> None:
        self._set_state(SessionState.STARTING_CLIENT)
        self._logger.info("Running client: %s", self.client_command)
        self._client = self._new_supervisor(ProcessRole.CLIENT)
        self._client.start(
            self.client_command,
            self._display_environment(),
            on_exit=self._exit_notifier(ProcessRole.CLIENT),
        )

    def _monitor(self) -> int:
        while True:
            try:
                event = self._events.get(timeout=MONITOR_POLL_INTERVAL)
            except queue.Empty:
                continue
            if isinstance(event, StopRequested):
                self._logger.info("Quitting: %s", event.reason)
                return int(ExitCode.SUCCESS)
            if event.role is ProcessRole.CLIENT:
                self._logger.info("Session finished: client %s", event.status.describe())
                return event.status.exit_code
            self._logger.warning("Display server %s; ending session", event.status.describe())
            return event.status.exit_code or int(ExitCode.FAILURE)

    def _check_interrupts(self) -> None:
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            if isinstance(event, StopRequested):
                raise Cancelled(event.reason)
            if event.role is ProcessRole.SERVER:
                raise SpawnFailed(
                    "Display server exited during session startup.",
                    hint=event.status.describe(),
                )
        if self._cancel.is_set():
            raise Cancelled("stop requested")

    def _teardown(self, final_state: SessionState) -> None:
        with self._teardown_lock:
            if self._finished:
                return
            self._finished = True
        self._cancel.set()

        # Client first: the server must outlive every display connection.
        steps: list[tuple[str, Callable[[], object]]] = []
        if self._client is not None:
            steps.append(("stop client", self._client.stop))
        if self._server is not None:
            steps.append(("stop server", self._server.stop))
        if self.display is not None:
            steps.append(("run teardown hook", self._run_teardown_hook))
        steps.append(("record final state", lambda: self._set_state(final_state)))
        if self._authority_ready:
            steps.append(("remove authority file", self._authority.remove))
        if self._negotiator is not None:
            steps.append(("close display pipe", self._negotiator.close))

        # Every step runs; the first failure is raised once all are done.
        first_error: Exception | None = None
        for label, step in steps:
            try:
                step()
            except Exception as exc:
                self._logger.error("Teardown step '%s' failed: %s", label, exc, exc_info=True)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    def _base_server_command(self) -> list[str]:
        if self.server_command:
            return split_command(self.server_command)
        return split_command(build_xorg_user_command(self.config.x11, seat=self.seat, testing=self.testing))

    def _display_environment(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        overrides = {
            "DISPLAY": self.display or "",
            "XAUTHORITY": str(self._authority.path or ""),
        }
        if extra:
            overrides.update(extra)
        return build_environment(overrides, base=self._environ)

    def _new_supervisor(self, role: ProcessRole) -> ProcessSupervisor:
        timeouts = self.config.timeouts
        return self._supervisor_factory(
            role.value,
            cancel=self._cancel,
            logger=self._logger,
            start_timeout=timeouts.process_start,
            stop_timeout=timeouts.process_stop,
        )

    def _exit_notifier(self, role: ProcessRole) -> Callable[[ChildProcess, ExitStatus], None]:
        def _notify(child: ChildProcess, status: ExitStatus) -> None:
            del child
            self._events.put(ProcessExited(role, status))

        return _notify

    def _set_state(self, state: SessionState) -> None:
        self._logger.debug("Session state %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)
