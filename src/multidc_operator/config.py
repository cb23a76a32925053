"""Config file loading and auto-discovery for multidc-operator.

Searches for ``multidc-operator.yaml`` in the current directory and parent
directories, parses it, and resolves relative paths against the config
file's location.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "multidc-operator.yaml"


@dataclass(frozen=True)
class OperatorConfig:
    """Parsed multidc-operator configuration."""

    config_path: Path | None = None
    kubeconfig: str | None = None
    control_plane_context: str | None = None
    in_cluster: bool = False
    status_file: str | None = None
    requeue_delay: float = 15.0
    backoff_base: float = 5.0
    backoff_max: float = 300.0
    max_workers: int = 4
    log_level: str = "INFO"


def find_config(start: Path | None = None) -> Path | None:
    """Return the nearest ``multidc-operator.yaml`` at or above *start* (default cwd)."""
    here = (start or Path.cwd()).resolve()
    for directory in (here, *here.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> OperatorConfig:
    """Load the operator config.

    An explicit *path* must exist.  Without one the file is auto-discovered
    (unless *auto_discover* is False); with no file at all every setting
    keeps its default.
    """
    if path is None:
        found = find_config() if auto_discover else None
        return _parse_config(found) if found is not None else OperatorConfig()

    config_path = Path(path).resolve()
    if not config_path.is_file():
        msg = f"Config file not found: {config_path}"
        raise FileNotFoundError(msg)
    return _parse_config(config_path)


# Numeric settings: key -> (integer only, smallest allowed value)
_NUMBERS: dict[str, tuple[bool, float]] = {
    "requeue_delay": (False, 0),
    "backoff_base": (False, 0),
    "backoff_max": (False, 0),
    "max_workers": (True, 1),
}
_PATHS = ("kubeconfig", "status_file")
_KNOWN_KEYS = frozenset({*_NUMBERS, *_PATHS, "control_plane_context", "in_cluster", "log_level"})


def _parse_config(config_path: Path) -> OperatorConfig:
    """Read and validate a YAML config file, resolving relative paths."""
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ValueError(msg)

    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        msg = f"Unknown key(s) in {config_path}: {', '.join(map(str, unknown))}"
        raise ValueError(msg)

    settings: dict[str, Any] = {"config_path": config_path}
    for key, (integer, minimum) in _NUMBERS.items():
        if key in data:
            settings[key] = _number(data[key], key, integer, minimum, config_path)
    for key in _PATHS:
        if data.get(key) is not None:
            settings[key] = str((config_path.parent / Path(data[key]).expanduser()).resolve())
    if data.get("control_plane_context") is not None:
        settings["control_plane_context"] = str(data["control_plane_context"])
    settings["in_cluster"] = bool(data.get("in_cluster", False))
    if "log_level" in data:
        settings["log_level"] = _log_level(data["log_level"], config_path)

    config = OperatorConfig(**settings)
    if config.backoff_max < config.backoff_base:
        msg = f"'backoff_max' must not be below 'backoff_base' in {config_path}"
        raise ValueError(msg)
    return config


def _number(value: Any, key: str, integer: bool, minimum: float, config_path: Path) -> float:
    allowed = (int,) if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, allowed) or value < minimum:
        kind = "an integer" if integer else "a number"
        msg = f"'{key}' must be {kind} >= {minimum:g} in {config_path}"
        raise ValueError(msg)
    return value if integer else float(value)


def _log_level(value: Any, config_path: Path) -> str:
    level = str(value).upper()
    if level not in logging.getLevelNamesMapping():
        msg = f"'log_level' must be a logging level name in {config_path}, got {value!r}"
        raise ValueError(msg)
    return level
