"""Session state machine domain models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from displaysupervisor.process.supervisor import ExitStatus


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING_SERVER = "starting-server"
    AWAITING_DISPLAY_HANDLE = "awaiting-display-handle"
    PROVISIONING_CREDENTIAL = "provisioning-credential"
    RUNNING_SETUP_HOOK = "running-setup-hook"
    STARTING_CLIENT = "starting-client"
    RUNNING = "running"
    RUNNING_TEARDOWN_HOOK = "running-teardown-hook"
    STOPPED = "stopped"
    FAILED = "failed"


class ProcessRole(str, Enum):
    SERVER = "server"
    CLIENT = "client"


@dataclass(frozen=True)
class ProcessExited:
    role: ProcessRole
    status: ExitStatus


@dataclass(frozen=True)
class StopRequested:
    reason: str = "stop requested"


SessionEvent = ProcessExited | StopRequested
