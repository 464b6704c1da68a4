# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Process-wide option defaults.

A small number of settings are allowed to vary between sessions rather than
between calls: the number of cores used to run chains in parallel and whether
chains should be dispatched as independent futures. Their initial values are
read from the environment when the package is imported:

    - ``HIERSTAN_CORES``: integer, defaults to 1
    - ``HIERSTAN_FUTURE``: one of ``1/0``, ``true/false``, ``yes/no``, defaults
      to false

and can be changed at runtime with :py:func:`set_option`. The pipeline never
reads these values mid-run. Instead it takes a :py:func:`snapshot_options` once
at call entry and threads the resulting immutable :py:class:`RunOptions`
through every stage.

Example:
    >>> import hierstan
    >>> hierstan.set_option("cores", 4)
    >>> hierstan.options.snapshot_options()
    RunOptions(cores=4, future=False)
"""

from __future__ import annotations

import os
import threading

from dataclasses import dataclass
from typing import Any

from hierstan.exceptions import ConfigurationError

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class RunOptions:
    """Immutable snapshot of the process-wide options.

    :ivar cores: Number of cores available for running chains in parallel
    :ivar future: Whether chains are dispatched as independent futures
    """

    cores: int = 1
    future: bool = False


def _parse_cores(value: Any) -> int:
    """Validates a core count."""
    try:
        cores = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"'cores' must be an integer, got {value!r}") from e
    if cores < 1:
        raise ConfigurationError(f"'cores' must be at least 1, got {cores}")
    return cores


def _parse_future(value: Any) -> bool:
    """Validates a futures flag, accepting the usual string spellings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConfigurationError(f"'future' must be a boolean, got {value!r}")


_PARSERS = {"cores": _parse_cores, "future": _parse_future}

_lock = threading.Lock()
_current: dict[str, Any] = {}


def _from_environment() -> dict[str, Any]:
    """Reads the initial option values from the environment."""
    return {
        "cores": _parse_cores(os.environ.get("HIERSTAN_CORES", "1")),
        "future": _parse_future(os.environ.get("HIERSTAN_FUTURE", "false")),
    }


def set_option(name: str, value: Any) -> None:
    """Set a process-wide option.

    :param name: One of ``"cores"`` or ``"future"``
    :param value: New value for the option

    :raises ConfigurationError: If the option is unknown or the value is invalid
    """
    if name not in _PARSERS:
        raise ConfigurationError(
            f"Unknown option '{name}'. Valid options are: {', '.join(_PARSERS)}"
        )
    parsed = _PARSERS[name](value)
    with _lock:
        _current[name] = parsed


def get_option(name: str) -> Any:
    """Get the current value of a process-wide option."""
    if name not in _PARSERS:
        raise ConfigurationError(f"Unknown option '{name}'")
    with _lock:
        return _current[name]


def reset_options() -> None:
    """Restore every option to the value found in the environment."""
    values = _from_environment()
    with _lock:
        _current.clear()
        _current.update(values)


def snapshot_options() -> RunOptions:
    """Freeze the current option values for the duration of one call."""
    with _lock:
        return RunOptions(**_current)


reset_options()
