"""TOML configuration loading for the session helper."""

from __future__ import annotations

import logging as py_logging
import os
import sys
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

logger = py_logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/displaysupervisor/config.toml")
CONFIG_PATH_ENV = "DISPLAYSUPERVISOR_CONFIG"
DEFAULT_SCRIPTS_DIR = "/usr/share/displaysupervisor/scripts"


class X11Config(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    server_path: str = "/usr/bin/X"
    server_arguments: str = "-nolisten tcp"
    xephyr_path: str = "/usr/bin/Xephyr"
    display_command: str = f"{DEFAULT_SCRIPTS_DIR}/Xsetup"
    display_stop_command: str = f"{DEFAULT_SCRIPTS_DIR}/Xstop"
    cursor_command: str = "xsetroot -cursor_name left_ptr"


class TimeoutConfig(BaseModel):
    """Bounds, in seconds, for every blocking step of a session."""

    model_config = ConfigDict(validate_assignment=True)

    process_start: float = Field(default=10.0, gt=0, le=300)
    process_stop: float = Field(default=5.0, gt=0, le=300)
    auxiliary_start: float = Field(default=5.0, gt=0, le=300)
    cursor: float = Field(default=1.0, gt=0, le=300)
    display_setup: float = Field(default=30.0, gt=0, le=600)
    display_stop: float = Field(default=5.0, gt=0, le=600)
    display_handle: float = Field(default=30.0, gt=0, le=600)


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    runtime_directory: str = ""
    x11: X11Config = Field(default_factory=X11Config)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)


def get_config_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path).expanduser()
    env_path = os.getenv(CONFIG_PATH_ENV, "").strip()
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def _sanitize_section(model: BaseModel, raw: object, section: str) -> None:
    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("Ignoring non-table config section [%s]", section)
        return
    for key, value in raw.items():
        if key not in type(model).model_fields:
            logger.debug("Ignoring unknown config key %s.%s", section, key)
            continue
        try:
            setattr(model, key, value)
        except ValidationError:
            logger.warning("Invalid config value %s.%s=%r; using default", section, key, value)


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()

    runtime_directory = raw.get("runtime_directory", cfg.runtime_directory)
    if isinstance(runtime_directory, str):
        cfg.runtime_directory = runtime_directory.strip()

    _sanitize_section(cfg.x11, raw.get("x11"), "x11")
    _sanitize_section(cfg.timeouts, raw.get("timeouts"), "timeouts")
    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        logger.debug("No config file at %s; using defaults", resolved)
        return AppConfig()
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        logger.warning("Could not read config %s: %s; using defaults", resolved, exc)
        return AppConfig()
    if not isinstance(raw, dict):
        return AppConfig()
    return _sanitize(raw)
