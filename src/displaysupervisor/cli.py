"""``displaysupervisor-helper``: the per-login helper entrypoint.

The login daemon starts one helper per session; it is not meant to be run by
hand, and any malformed invocation exits with status 127.
"""

from __future__ import annotations

import argparse
import logging as py_logging
import signal
import sys
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from .config import load_config
from .errors import ExitCode, SupervisorError, user_facing_error
from .logging import LOG_LEVELS, configure_logging, default_log_path, shutdown_logging
from .session.coordinator import SessionCoordinator

FORWARDED_SIGNALS = (signal.SIGTERM, signal.SIGINT)
NOT_FOR_MANUAL_USE = "This application is not supposed to be executed manually"

CoordinatorFactory = Callable[..., SessionCoordinator]


def _descriptor(value: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"--fd expects a file descriptor number, got {value!r}") from exc


def _level_name(value: str) -> str:
    name = value.strip().upper()
    name = "WARN" if name == "WARNING" else name
    if name not in LOG_LEVELS:
        raise argparse.ArgumentTypeError(f"unknown log level {value!r} (choose from {', '.join(LOG_LEVELS)})")
    return name


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="displaysupervisor-helper",
        description="Run a user display server and session client.",
    )
    parser.add_argument("--fd", type=_descriptor, default=-1, help="Descriptor receiving the display name")
    parser.add_argument("--server", help="Display server command line (built from config when omitted)")
    parser.add_argument("--client", required=True, help="Session client command line")
    parser.add_argument("--seat", default="seat0", help="Seat the display server drives")
    parser.add_argument("--testing", action="store_true", help="Run a nested display server")
    parser.add_argument("--config", type=Path, help="TOML configuration file")
    parser.add_argument("--log-level", type=_level_name, default="INFO")
    parser.add_argument("--log-file", type=Path, help="Helper log file (DEBUG and above)")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def _usable(namespace: argparse.Namespace) -> bool:
    if not namespace.client.strip():
        return False
    return namespace.server is None or bool(namespace.server.strip())


def install_signal_handlers(coordinator: SessionCoordinator) -> dict[int, Any]:
    """Route SIGTERM/SIGINT to ``coordinator.request_stop``.

    Returns the replaced handlers; empty off the main thread, where Python
    does not allow installing handlers.
    """
    if threading.current_thread() is not threading.main_thread():
        return {}

    def _forward(signum: int, _frame: object) -> None:
        coordinator.request_stop(f"received {signal.Signals(signum).name}")

    return {signum: signal.signal(signum, _forward) for signum in FORWARDED_SIGNALS}


def restore_signal_handlers(previous: dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _run_session(
    namespace: argparse.Namespace,
    coordinator_factory: CoordinatorFactory,
    logger: py_logging.Logger,
) -> int:
    coordinator = coordinator_factory(
        load_config(namespace.config),
        client_command=namespace.client,
        server_command=namespace.server,
        seat=namespace.seat,
        testing=namespace.testing,
        handoff_fd=namespace.fd,
        logger=logger,
    )
    previous = install_signal_handlers(coordinator)
    try:
        return coordinator.run()
    finally:
        restore_signal_handlers(previous)
        logger.info("Quitting...")


def main(
    argv: Sequence[str] | None = None,
    *,
    coordinator_factory: CoordinatorFactory = SessionCoordinator,
) -> int:
    log_path = default_log_path()
    logger = configure_logging(log_file=log_path)
    try:
        try:
            namespace = parse_args(argv)
        except SystemExit as exc:
            if exc.code in (None, 0):
                return int(ExitCode.SUCCESS)
            namespace = None
        if namespace is None or not _usable(namespace):
            logger.critical(NOT_FOR_MANUAL_USE)
            return int(ExitCode.INVALID_ARGS)

        if namespace.log_file is not None:
            log_path = namespace.log_file
        logger = configure_logging(namespace.log_level, log_file=log_path)
        return _run_session(namespace, coordinator_factory, logger)
    except SupervisorError as exc:
        logger.error("Session failed (code=%s): %s", int(exc.code), exc.message)
        logger.debug("Session failure traceback", exc_info=True)
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        return int(exc.code)
    except Exception:
        logger.exception("Unhandled exception in helper")
        print(user_facing_error("Unexpected runtime failure", hint=f"Inspect logs: {log_path}"), file=sys.stderr)
        return int(ExitCode.FAILURE)
    finally:
        shutdown_logging(logger)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
