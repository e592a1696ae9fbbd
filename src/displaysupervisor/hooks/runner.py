"""Display setup/teardown hook runner."""

from __future__ import annotations

import logging as py_logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from displaysupervisor.errors import AuxiliaryCommandFailed, SpawnFailed
from displaysupervisor.process.supervisor import ProcessSupervisor
from displaysupervisor.waits import Cancelled

TIMEOUT_RETURNCODE = 124
SPAWN_FAILED_RETURNCODE = 127

SupervisorFactory = Callable[..., ProcessSupervisor]


@dataclass(frozen=True)
class Hook:
    name: str
    command: str
    timeout: float


@dataclass(frozen=True)
class HookExecution:
    name: str
    command: str
    success: bool
    returncode: int
    error: AuxiliaryCommandFailed | None = None


@dataclass
class HookRunResult:
    stage: str
    executions: list[HookExecution]

    @property
    def has_failures(self) -> bool:
        return any(not execution.success for execution in self.executions)


class HookRunner:
    def __init__(
        self,
        *,
        start_timeout: float = 5.0,
        supervisor_factory: SupervisorFactory = ProcessSupervisor,
        logger: py_logging.Logger | None = None,
    ) -> None:
        self.start_timeout = start_timeout
        self._supervisor_factory = supervisor_factory
        self._logger = logger or py_logging.getLogger(__name__)

    def run(
        self,
        *,
        stage: str,
        hooks: list[Hook],
        environment: Mapping[str, str],
        cancel: threading.Event | None = None,
    ) -> HookRunResult:
        """Run ``hooks`` in order. Failures are recorded, never raised.

        Only a stop request (``Cancelled``) escapes, after the hook that was
        running has been killed.
        """
        executions: list[HookExecution] = []
        self._logger.debug("Running %s %s hooks", len(hooks), stage)
        for hook in hooks:
            if not hook.command.strip():
                self._logger.debug("Skipping empty %s hook %s", stage, hook.name)
                continue
            executions.append(self._run_one(stage, hook, environment, cancel))
        return HookRunResult(stage=stage, executions=executions)

    def _run_one(
        self,
        stage: str,
        hook: Hook,
        environment: Mapping[str, str],
        cancel: threading.Event | None,
    ) -> HookExecution:
        self._logger.info("Running %s hook %s: %s", stage, hook.name, hook.command)
        supervisor = self._supervisor_factory(
            hook.name,
            cancel=cancel,
            logger=self._logger,
            start_timeout=self.start_timeout,
        )
        try:
            supervisor.start(hook.command, environment)
        except SpawnFailed as exc:
            return self._failed(
                hook,
                SPAWN_FAILED_RETURNCODE,
                AuxiliaryCommandFailed(f"Could not start {hook.name} hook.", hint=exc.hint),
            )

        try:
            status = supervisor.wait(hook.timeout)
        except Cancelled:
            supervisor.kill()
            raise
        if status is None:
            supervisor.kill()
            return self._failed(
                hook,
                TIMEOUT_RETURNCODE,
                AuxiliaryCommandFailed(
                    f"{hook.name} hook timed out.",
                    hint=f"The command did not finish within {hook.timeout} seconds.",
                ),
            )
        if status.abnormal:
            return self._failed(
                hook,
                status.exit_code,
                AuxiliaryCommandFailed(f"{hook.name} hook {status.describe()}."),
            )
        return HookExecution(
            name=hook.name,
            command=hook.command,
            success=True,
            returncode=status.exit_code,
        )

    def _failed(self, hook: Hook, returncode: int, error: AuxiliaryCommandFailed) -> HookExecution:
        self._logger.warning("%s command=%s", error, hook.command)
        return HookExecution(
            name=hook.name,
            command=hook.command,
            success=False,
            returncode=returncode,
            error=error,
        )
