"""Analyzer configuration.

Tunable thresholds and tool timeouts, loaded from an optional YAML file:

    stack_overflow_min_frames: 50
    stack_overflow_min_repeats: 10
    atos_timeout: 30
    dsym_search_paths:
      - ~/builds/dsyms

Lookup order: explicit path, then ``$CRASHDX_CONFIG``, then defaults.
``$CRASHDX_TIMEOUT`` (seconds) overrides ``atos_timeout``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CRASHDX_CONFIG"
TIMEOUT_ENV_VAR = "CRASHDX_TIMEOUT"


@dataclass
class CrashDxConfig:
    """Configuration for parsing, symbolication and pattern detection."""

    # Stack overflow heuristic: a crashed thread at least this deep...
    stack_overflow_min_frames: int = 50
    # ...with one symbol repeated more than this many times.
    stack_overflow_min_repeats: int = 10
    # Fault addresses below this are treated as null-pointer dereferences.
    null_page_limit: int = 0x1000
    key_frame_limit: int = 5
    atos_timeout: float = 30.0
    uuid_timeout: float = 10.0
    default_arch: str = "arm64"
    dsym_search_paths: list[str] = field(default_factory=list)


_INT_FIELDS = ("stack_overflow_min_frames", "stack_overflow_min_repeats", "null_page_limit", "key_frame_limit")
_FLOAT_FIELDS = ("atos_timeout", "uuid_timeout")


def _coerce(name: str, value: Any) -> Any:
    if name in _INT_FIELDS:
        if isinstance(value, bool):
            raise ConfigError(f"{name} must be an integer, got {value!r}")
        if isinstance(value, str):
            try:
                value = int(value, 0)
            except ValueError:
                raise ConfigError(f"{name} must be an integer, got {value!r}") from None
        if not isinstance(value, int) or value < 0:
            raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")
        return value
    if name in _FLOAT_FIELDS:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"{name} must be a positive number, got {value!r}")
        return float(value)
    if name == "default_arch":
        if not isinstance(value, str) or not value:
            raise ConfigError(f"default_arch must be a non-empty string, got {value!r}")
        return value
    if name == "dsym_search_paths":
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
            raise ConfigError("dsym_search_paths must be a list of paths")
        return [os.path.expanduser(p) for p in value]
    return value


def config_from_dict(data: dict[str, Any]) -> CrashDxConfig:
    """Build a config from a mapping, ignoring unknown keys."""
    known = {f.name for f in fields(CrashDxConfig)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            logger.warning("Ignoring unknown config key: %s", key)
            continue
        if value is None:
            continue
        kwargs[key] = _coerce(key, value)
    return CrashDxConfig(**kwargs)


def load_config(path: Optional[str] = None) -> CrashDxConfig:
    """Load configuration from YAML, the environment, or defaults."""
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if path:
        try:
            with open(os.path.expanduser(path), "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Invalid config file (expected mapping): {path}")
        config = config_from_dict(data)
    else:
        config = CrashDxConfig()

    timeout = os.environ.get(TIMEOUT_ENV_VAR)
    if timeout:
        try:
            config.atos_timeout = _coerce("atos_timeout", float(timeout))
        except ValueError:
            logger.warning("Ignoring invalid %s=%r", TIMEOUT_ENV_VAR, timeout)

    return config
