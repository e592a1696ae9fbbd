"""Child process supervision."""

from .supervisor import (
    ChildProcess,
    ExitStatus,
    ProcessSupervisor,
    build_environment,
    split_command,
)

__all__ = [
    "build_environment",
    "ChildProcess",
    "ExitStatus",
    "ProcessSupervisor",
    "split_command",
]
