from __future__ import annotations

from displaysupervisor.process.supervisor import ExitStatus
from displaysupervisor.session.models import ProcessExited, ProcessRole, SessionState, StopRequested


def test_state_values_are_stable_identifiers() -> None:
    assert SessionState("awaiting-display-handle") is SessionState.AWAITING_DISPLAY_HANDLE
    assert SessionState.RUNNING_TEARDOWN_HOOK.value == "running-teardown-hook"


def test_events_are_value_objects() -> None:
    assert ProcessExited(ProcessRole.CLIENT, ExitStatus(0)) == ProcessExited(ProcessRole.CLIENT, ExitStatus(0))
    assert StopRequested().reason == "stop requested"
