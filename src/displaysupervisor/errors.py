"""Session error kinds and the helper exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class ExitCode(IntEnum):
    SUCCESS = 0
    FAILURE = 1
    INVALID_ARGS = 127


@dataclass
class SupervisorError(Exception):
    message: str
    code: ExitCode = ExitCode.FAILURE
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message


class SpawnFailed(SupervisorError):
    """A child process could not be started or did not confirm in time."""


class PipeCreationFailed(SupervisorError):
    """The display handle pipe could not be created."""


class HandleReadFailed(SupervisorError):
    """The display server did not report a usable display handle."""


class CredentialWriteFailed(SupervisorError):
    """The authority file could not be created or written."""


class AuxiliaryCommandFailed(SupervisorError):
    """A setup/teardown hook failed. Never fatal to the session."""


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
