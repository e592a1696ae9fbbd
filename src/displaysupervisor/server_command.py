"""Display server command lines."""

from __future__ import annotations

from displaysupervisor.config import X11Config

NESTED_SERVER_ARGUMENTS = ("-br", "-screen", "800x600")
SERVER_SAFETY_ARGUMENTS = ("-noreset", "-keeptty", "-novtswitch", "-verbose", "3")
SERVER_LOG_DESTINATION = "/dev/null"


def split_server_arguments(value: str) -> list[str]:
    return [token for token in value.split(" ") if token]


def build_server_command(
    *,
    seat: str,
    testing: bool,
    server_path: str,
    server_arguments: str = "",
    xephyr_path: str = "",
) -> list[str]:
    """Return the argument vector that starts the display server for ``seat``.

    Testing mode runs a nested server in a fixed window instead of driving
    real hardware; the configured server path and arguments are ignored.
    """
    if testing:
        return [xephyr_path, *NESTED_SERVER_ARGUMENTS]
    return [
        server_path,
        *split_server_arguments(server_arguments),
        "-background",
        "none",
        "-seat",
        seat,
        *SERVER_SAFETY_ARGUMENTS,
    ]


def build_server_arguments(*, auth_path: str, display_fd: int, vtnr: str = "") -> list[str]:
    args = ["-auth", auth_path, "-displayfd", str(display_fd)]
    if vtnr.strip():
        args.append(f"vt{vtnr.strip()}")
    args.extend(["-logfile", SERVER_LOG_DESTINATION])
    return args


def build_xorg_user_command(x11: X11Config, *, seat: str, testing: bool = False) -> str:
    return " ".join(
        build_server_command(
            seat=seat,
            testing=testing,
            server_path=x11.server_path,
            server_arguments=x11.server_arguments,
            xephyr_path=x11.xephyr_path,
        )
    )
