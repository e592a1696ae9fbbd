"""Stand-in programs for end-to-end sessions, run with the test interpreter."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

FAKE_SERVER = """\
import os
import signal
import sys
import time

args = sys.argv[1:]
record = os.environ.get("FAKE_X_RECORD")
if record:
    with open(record, "w", encoding="utf-8") as handle:
        handle.write("\\n".join(args))
fd = int(args[args.index("-displayfd") + 1])
os.write(fd, os.environ.get("FAKE_X_DISPLAY", "5").encode() + b"\\n")
os.close(fd)
signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))
while True:
    time.sleep(0.05)
"""

FAKE_CLIENT = """\
import os
import sys

out = sys.argv[1]
auth = os.environ.get("XAUTHORITY", "")
size = os.path.getsize(auth) if auth and os.path.exists(auth) else -1
with open(out, "w", encoding="utf-8") as handle:
    handle.write(f"{os.environ.get('DISPLAY', '')}\\n{auth}\\n{size}\\n")
sys.exit(int(os.environ.get("FAKE_CLIENT_EXIT", "0")))
"""

FAKE_HOOK = """\
import os
import sys

with open(sys.argv[2], "a", encoding="utf-8") as handle:
    handle.write(f"{sys.argv[1]} {os.environ.get('DISPLAY', '')}\\n")
"""


def write_program(directory: Path, name: str, source: str) -> str:
    """Write ``source`` to ``directory`` and return a command line running it."""
    path = directory / f"{name}.py"
    path.write_text(source, encoding="utf-8")
    return f"{sys.executable} {path}"


@dataclass(frozen=True)
class FakePrograms:
    server: str
    client: str
    hook: str


@pytest.fixture
def fake_programs(tmp_path: Path) -> FakePrograms:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return FakePrograms(
        server=write_program(bin_dir, "fake_x", FAKE_SERVER),
        client=write_program(bin_dir, "fake_client", FAKE_CLIENT),
        hook=write_program(bin_dir, "fake_hook", FAKE_HOOK),
    )
