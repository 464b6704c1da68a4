# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Utility functions and classes for the hierstan package.

This module provides various utilities that support the core functionality of
hierstan, including:

    - Lazy importing mechanisms for performance and to avoid circular imports
    - Content hashing used to identify compiled programs
    - A context manager capturing (and optionally silencing) library loggers

Users will not typically need to interact with this module directly--it is designed
to be used internally by hierstan.
"""

from __future__ import annotations

import hashlib
import importlib.util
import json
import logging
import sys

from typing import Any, Mapping


def lazy_import(name: str):
    """Import a module only when it is first needed.

    This function implements lazy module importing to improve package import
    performance by deferring module loading until actual use.

    :param name: The fully qualified module name to import
    :type name: str

    :returns: The imported module
    :rtype: module

    :raises ImportError: If the specified module cannot be found

    .. note::
        If the module is already imported, returns the cached version
        from sys.modules for efficiency.
    """
    # Check if the module is already imported
    if name in sys.modules:
        return sys.modules[name]

    # If not, import it lazily (modified from here:
    # https://docs.python.org/3/library/importlib.html#implementing-lazy-imports)
    spec = importlib.util.find_spec(name)

    # If the spec is None, raise an ImportError
    if spec is None:
        raise ImportError(f"Module '{name}' not found.")

    # Create the module with a lazy loader
    spec.loader = importlib.util.LazyLoader(spec.loader)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


def canonical_json(obj: Any) -> str:
    """Serialize an options mapping deterministically.

    Keys are sorted and non-JSON values are rendered through ``repr`` so that two
    equal option bags always produce the same string.

    :param obj: Object to serialize
    :returns: Canonical JSON text
    :rtype: str
    """
    return json.dumps(obj, sort_keys=True, default=repr, separators=(",", ":"))


def content_hash(source: str, options: Mapping[str, Any] | None = None) -> str:
    """Compute a content-derived identity for a program and its build options.

    :param source: Program source text
    :type source: str
    :param options: Builder options that influence the produced executable
    :type options: Optional[Mapping[str, Any]]

    :returns: Hexadecimal SHA-256 digest
    :rtype: str

    Example:
        >>> content_hash("model {}") == content_hash("model {}")
        True
    """
    digest = hashlib.sha256()
    digest.update(source.encode("utf-8"))
    digest.update(b"\0")
    digest.update(canonical_json(dict(options or {})).encode("utf-8"))
    return digest.hexdigest()


class _RecordCollector(logging.Handler):
    """Logging handler that keeps formatted records in memory."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.messages: list[str] = []
        self.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(self.format(record))


class capture_logger:  # pylint: disable=invalid-name
    """Context manager capturing the records of a library logger.

    While active, every record emitted on the named logger is collected on the
    ``messages`` attribute. When ``silent`` is true, propagation to the root
    logger and the logger's own handlers is suspended, so nothing reaches the
    console. The logger's state is restored on exit, also when an exception is
    raised inside the block.

    :param name: Name of the logger to capture, e.g. ``"cmdstanpy"``
    :type name: str
    :param silent: Whether to keep captured records off the console
    :type silent: bool

    Example:
        >>> with capture_logger("cmdstanpy", silent=True) as captured:
        ...     model = CmdStanModel(stan_file="model.stan")
        >>> captured.messages
        ['INFO: compiling stan file ...']
    """

    def __init__(self, name: str, silent: bool = True):
        self.logger = logging.getLogger(name)
        self.silent = silent
        self._collector = _RecordCollector()
        self._saved: tuple[int, bool, list[logging.Handler]] | None = None

    @property
    def messages(self) -> list[str]:
        """Messages captured so far."""
        return self._collector.messages

    def __enter__(self):
        self._saved = (
            self.logger.level,
            self.logger.propagate,
            list(self.logger.handlers),
        )
        if self.silent:
            self.logger.propagate = False
            for handler in self._saved[2]:
                self.logger.removeHandler(handler)
            self.logger.setLevel(logging.INFO)
        self.logger.addHandler(self._collector)
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.logger.removeHandler(self._collector)
        level, propagate, handlers = self._saved
        self.logger.setLevel(level)
        self.logger.propagate = propagate
        for handler in handlers:
            if handler not in self.logger.handlers:
                self.logger.addHandler(handler)
