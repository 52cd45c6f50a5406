from __future__ import annotations

import logging
import sys
from typing import Mapping, Optional, TextIO, Union

from .exceptions import ConfigError

Level = Union[int, str]

ROOT_LOGGER = "Credpool"

# Short component names accepted by `configure_logging(levels=...)`.
COMPONENTS = ("importer", "store", "verifier", "batching", "parsers", "repos")

_PROFILES = ("simple", "detailed")

# Per-component defaults. "simple" keeps import/check flow and persistence
# summaries; "detailed" adds per-chunk, per-request and per-row diagnostics.
_PROFILE_LEVELS: dict[str, dict[str, Level]] = {
    "simple": {
        "importer": "INFO",
        "store": "INFO",
        "verifier": "INFO",
        "batching": "INFO",
        "parsers": "INFO",
        "repos": "WARNING",
    },
    "detailed": {
        "importer": "DEBUG",
        "store": "DEBUG",
        "verifier": "DEBUG",
        "batching": "DEBUG",
        "parsers": "DEBUG",
        "repos": "DEBUG",
    },
}

_SIMPLE_FMT = "%(asctime)s %(levelname)s %(name)s | %(message)s"
_DETAILED_FMT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s"


def component_logger_name(component: str) -> str:
    name = str(component or "").strip().lower()
    if name not in COMPONENTS:
        raise ConfigError(f"Unknown log component {component!r} (expected one of: {', '.join(COMPONENTS)})")
    return f"{ROOT_LOGGER}.core.{name}"


def _resolve_level(component: str, level: Level) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ConfigError(f"Unknown log level {level!r} for component {component!r}")
    return resolved


def parse_component_levels(specs: Optional[list[str]]) -> dict[str, Level]:
    """Turn CLI-style `component=LEVEL` strings into a `levels` mapping."""

    levels: dict[str, Level] = {}
    for spec in specs or []:
        component, sep, level = str(spec).partition("=")
        if not sep or not component.strip() or not level.strip():
            raise ConfigError(f"Invalid log component spec {spec!r} (expected component=LEVEL)")
        levels[component.strip().lower()] = level.strip().upper()
    return levels


def configure_logging(
    *,
    level: Level = "INFO",
    profile: str = "simple",
    force: bool = False,
    stream: Optional[TextIO] = None,
    fmt: Optional[str] = None,
    datefmt: str = "%Y-%m-%d %H:%M:%S",
    levels: Optional[Mapping[str, Level]] = None,
    show_http: Optional[bool] = None,
    http_level: Optional[Level] = None,
) -> dict[str, int]:
    """Configure Credpool logging (opt-in).

    The library never touches global logging on its own; call this from scripts
    or the CLI to get readable output.

    Args:
        level: Base log level for the "Credpool" logger tree. Simple profile
            defaults are raised to at least this level.
        profile:
            - "simple": import, check and store flow; repository chatter muted.
            - "detailed": file/line in every record plus chunk, request and row diagnostics.
        force: Replace handlers already attached to the "Credpool" logger.
        stream: Output stream (defaults to sys.stderr).
        fmt: Custom formatter string.
        datefmt: datetime format string.
        levels: Per-component overrides keyed by name from `COMPONENTS`,
            e.g. {"importer": "DEBUG", "store": "WARNING"}.
        show_http: Force per-request verifier logs on or off. None follows the profile.
        http_level: Explicit level for the verifier; beats `show_http` and `levels`.

    Returns:
        The numeric level applied to each component logger.

    Raises:
        ConfigError: unknown component name or level.
    """

    profile_value = str(profile or "simple").strip().lower()
    if profile_value not in _PROFILES:
        profile_value = "simple"

    base_level = _resolve_level(ROOT_LOGGER, level)
    component_levels: dict[str, Level] = dict(_PROFILE_LEVELS[profile_value])
    if profile_value == "simple":
        # Simple defaults never open a component below the base level.
        for name, default in component_levels.items():
            component_levels[name] = max(base_level, _resolve_level(name, default))
    for component, component_level in (levels or {}).items():
        component_logger_name(component)
        component_levels[str(component).strip().lower()] = component_level
    if show_http is not None:
        component_levels["verifier"] = "DEBUG" if show_http else "INFO"
    if http_level is not None:
        component_levels["verifier"] = http_level

    resolved = {name: _resolve_level(name, value) for name, value in component_levels.items()}

    if stream is None:
        stream = sys.stderr

    if fmt is None:
        fmt = _DETAILED_FMT if profile_value == "detailed" else _SIMPLE_FMT

    root_logger = logging.getLogger(ROOT_LOGGER)
    if force:
        root_logger.handlers.clear()

    if not any(not isinstance(handler, logging.NullHandler) for handler in root_logger.handlers):
        handler = logging.StreamHandler(stream)
        handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        root_logger.addHandler(handler)

    root_logger.setLevel(base_level)
    root_logger.propagate = False

    for name, numeric in resolved.items():
        logging.getLogger(component_logger_name(name)).setLevel(numeric)
    return resolved
