from __future__ import annotations

import pytest

from displaysupervisor.errors import (
    AuxiliaryCommandFailed,
    CredentialWriteFailed,
    ExitCode,
    HandleReadFailed,
    PipeCreationFailed,
    SpawnFailed,
    SupervisorError,
    user_facing_error,
)
from displaysupervisor.logging import LOG_LEVELS, configure_logging


def test_exit_codes_are_deterministic() -> None:
    assert int(ExitCode.SUCCESS) == 0
    assert int(ExitCode.FAILURE) == 1
    assert int(ExitCode.INVALID_ARGS) == 127


def test_supervisor_error_string_contains_hint() -> None:
    err = SupervisorError("Xorg not found", hint="Install the X server")
    assert "Install the X server" in str(err)


def test_supervisor_error_str_without_hint() -> None:
    assert str(SupervisorError("msg")) == "msg"


@pytest.mark.parametrize(
    "error_type",
    [SpawnFailed, PipeCreationFailed, HandleReadFailed, CredentialWriteFailed, AuxiliaryCommandFailed],
)
def test_error_kinds_share_the_base_contract(error_type: type[SupervisorError]) -> None:
    err = error_type("boom", hint="retry")
    assert isinstance(err, SupervisorError)
    assert err.code == ExitCode.FAILURE
    assert err.message == "boom"
    assert str(err) == "boom Hint: retry"


def test_user_facing_error_template() -> None:
    assert user_facing_error("something went wrong") == "Error: something went wrong."
    text = user_facing_error("Display server failed", hint="Check Xorg.log")
    assert text == "Error: Display server failed. Next step: Check Xorg.log"


def test_logging_levels() -> None:
    logger = configure_logging("WARN")
    assert logger.level == LOG_LEVELS["WARN"]
