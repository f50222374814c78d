"""Engine configuration.

The ``config:`` section of a declaration file is turned into an
EngineConfig. Unknown keys are rejected so that typos do not silently
fall back to defaults.

Example:
    config:
      max_host_workers: 16
      fail_fast: true
      poll_tick: 500ms
"""

import re
from dataclasses import dataclass, fields
from typing import Any, Dict, Union

from .exceptions import ConfigError

_DURATION_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$')
_UNITS = {
    'ms': 0.001,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
    'd': 86400.0,
    None: 1.0,
}


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) or strings such as ``'500ms'``,
    ``'30s'``, ``'1m'``, ``'2h'`` and ``'1d'``.

    Raises:
        ConfigError: If the value is not a valid duration.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigError(f"Duration must not be negative: {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"Invalid duration: {value!r}")

    match = _DURATION_RE.match(value)
    if match is None:
        raise ConfigError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _UNITS[unit]


@dataclass
class EngineConfig:
    """Tunable engine settings."""

    max_proc_workers: int = 4
    """Triggered procs running at the same time."""

    max_host_workers: int = 8
    """Hosts of one run block running at the same time."""

    fail_fast: bool = False
    """Skip hosts not yet started once a non-recoverable error occurs."""

    hosts_key: str = 'hosts'
    """Model key holding the host entries (bound as ``$$hosts``)."""

    max_exec_depth: int = 16
    """Maximum nesting of ``exec`` delegation."""

    poll_tick: float = 1.0
    """Resolution of the poll timer, in seconds."""

    default_cache_interval: float = 60.0
    """TTL used by queries declaring no ``cache_interval``."""

    default_output_format: str = 'yaml'
    """Format used to parse captured output when none is given."""

    shell: str = '/bin/sh'
    """Interpreter used for scripts without an explicit interpreter."""

    _DURATIONS = ('poll_tick', 'default_cache_interval')
    _POSITIVE_INTS = ('max_proc_workers', 'max_host_workers', 'max_exec_depth')
    _FORMATS = ('json', 'yaml', 'text')

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> 'EngineConfig':
        """Build a config from a parsed ``config:`` mapping.

        Raises:
            ConfigError: On unknown keys or invalid values.
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError("'config' must be a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

        values = dict(data)
        for name in cls._DURATIONS:
            if name in values:
                values[name] = parse_duration(values[name])
        for name in cls._POSITIVE_INTS:
            if name in values:
                value = values[name]
                if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                    raise ConfigError(f"'{name}' must be a positive integer")
        if 'fail_fast' in values and not isinstance(values['fail_fast'], bool):
            raise ConfigError("'fail_fast' must be a boolean")
        fmt = values.get('default_output_format')
        if fmt is not None and fmt not in cls._FORMATS:
            raise ConfigError(
                f"'default_output_format' must be one of {', '.join(cls._FORMATS)}"
            )
        return cls(**values)
