# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Compilation of Stan programs into executables.

:py:func:`build_model` obtains an executable for a Stan program. The program is
identified by a content hash over its source and the builder options, so that
an identical program is never compiled twice: the program file and executable
are named ``<model_name>_<hash>`` inside the output directory and an existing
executable is reused unless recompilation is forced.

Compiler output emitted on the ``cmdstanpy`` logger is captured on the returned
:py:class:`CompiledModel`. Unless the caller passed builder options explicitly,
that output is kept off the console; compilation failures are always raised as
:py:class:`~hierstan.exceptions.BuildError`.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import os.path
import warnings
import weakref

from dataclasses import dataclass, field
from tempfile import TemporaryDirectory
from typing import Any, Optional

from hierstan import defaults, utils
from hierstan.exceptions import BuildError, ConfigurationError
from hierstan.model.stan.engine import InferenceEngine

logger = logging.getLogger(__name__)

# Builder options that are forwarded to the engine's compiler
BUILDER_OPTIONS = ("stanc_options", "cpp_options", "user_header", "force_compile", "model_name")


@dataclass(frozen=True, eq=False)
class CompiledModel:
    """An executable Stan program.

    Two compiled models are equal when they were built from the same source with
    the same options, regardless of where the executable lives.

    :ivar identity: Content hash of the source and builder options
    :ivar source: Stan program source
    :ivar stan_file: Path of the Stan program file
    :ivar exe_file: Path of the executable
    :ivar diagnostics: Compiler messages captured during the build
    :ivar options: Builder options used for the build
    :ivar handle: Engine-specific handle; not persisted with fits
    """

    identity: str
    source: str
    stan_file: str
    exe_file: Optional[str]
    diagnostics: tuple[str, ...] = ()
    options: dict[str, Any] = field(default_factory=dict)
    handle: Any = field(default=None, repr=False)

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, CompiledModel):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)

    def __getstate__(self) -> dict[str, Any]:
        # Engine handles may hold process-local state
        state = dict(self.__dict__)
        state["handle"] = None
        return state

    def __setstate__(self, state: dict[str, Any]) -> None:
        self.__dict__.update(state)


def _compiler_options(options: dict[str, Any]) -> dict[str, Any]:
    """Completes user builder options with the package defaults."""
    unknown = set(options) - set(BUILDER_OPTIONS)
    if unknown:
        raise ConfigurationError(
            f"Unknown builder options: {', '.join(sorted(unknown))}. Valid options "
            f"are: {', '.join(BUILDER_OPTIONS)}"
        )
    return {
        "stanc_options": dict(options.get("stanc_options") or defaults.DEFAULT_STANC_OPTIONS),
        "cpp_options": dict(options.get("cpp_options") or defaults.DEFAULT_CPP_OPTIONS),
        "user_header": options.get("user_header"),
        "force_compile": bool(options.get("force_compile", defaults.DEFAULT_FORCE_COMPILE)),
        "model_name": options.get("model_name", defaults.DEFAULT_MODEL_NAME),
    }


def _write_stan_file(path: str, source: str) -> None:
    """Writes the program unless an identical file already exists."""
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            if f.read() == source:
                return
    with open(path, "w", encoding="utf-8") as f:
        f.write(source)


class _TemporaryOutput:
    """Temporary output directory removed when its owner is garbage collected."""

    def __init__(self):
        self.tempdir = TemporaryDirectory()
        self.name = self.tempdir.name

    def attach(self, owner: Any) -> None:
        """Ties the lifetime of the directory to ``owner``."""
        weakref.finalize(owner, self.tempdir.cleanup)


def build_model(
    source: str,
    engine: InferenceEngine,
    options: Optional[dict[str, Any]] = None,
    output_dir: Optional[str] = None,
    save_dso: bool = True,
) -> CompiledModel:
    """Compile a Stan program, reusing a previously built executable if possible.

    :param source: Stan program source
    :type source: str
    :param engine: Engine performing the compilation
    :type engine: InferenceEngine
    :param options: Builder options (``stanc_options``, ``cpp_options``,
        ``user_header``, ``force_compile``, ``model_name``). When empty, compiler
        output is not shown.
    :type options: Optional[dict[str, Any]]
    :param output_dir: Directory receiving the program and executable. Defaults
        to :py:data:`hierstan.defaults.DEFAULT_OUTPUT_DIR`.
    :type output_dir: Optional[str]
    :param save_dso: Deprecated. If False, the executable is built in a temporary
        directory and discarded with the compiled model.
    :type save_dso: bool

    :returns: The compiled model
    :rtype: CompiledModel

    :raises BuildError: If the compiler fails
    """
    options = dict(options or {})
    silent = len(options) == 0
    resolved = _compiler_options(options)

    identity = utils.content_hash(
        source, {k: v for k, v in resolved.items() if k not in ("force_compile", "model_name")}
    )
    stem = f"{resolved['model_name']}_{identity[: defaults.HASH_PREFIX_LENGTH]}"

    temporary = None
    if not save_dso:
        warnings.warn(
            "Argument 'save_dso' is deprecated. The executable is built in a "
            "temporary directory and removed with the model.",
            FutureWarning,
            stacklevel=3,
        )
        temporary = _TemporaryOutput()
        output_dir = temporary.name
    elif output_dir is None:
        output_dir = os.path.expanduser(defaults.DEFAULT_OUTPUT_DIR)
    os.makedirs(output_dir, exist_ok=True)

    stan_file = os.path.join(output_dir, f"{stem}.stan")
    exe_file = os.path.join(output_dir, stem)
    _write_stan_file(stan_file, source)

    logger.info("Compiling the Stan program %s", stem)
    with utils.capture_logger("cmdstanpy", silent=silent) as captured:
        try:
            handle = engine.compile(
                stan_file,
                exe_file=exe_file,
                force_compile=resolved["force_compile"],
                stanc_options=resolved["stanc_options"],
                cpp_options=resolved["cpp_options"],
                user_header=resolved["user_header"],
            )
        except (ValueError, RuntimeError, OSError) as e:
            raise BuildError(
                f"Compilation of the Stan program failed: {e}",
                diagnostics="\n".join(captured.messages),
            ) from e

    compiled = CompiledModel(
        identity=identity,
        source=source,
        stan_file=stan_file,
        exe_file=engine.exe_file(handle),
        diagnostics=tuple(captured.messages),
        options=resolved,
        handle=handle,
    )
    if temporary is not None:
        temporary.attach(compiled)
    return compiled


def reload_model(compiled: CompiledModel, engine: InferenceEngine) -> CompiledModel:
    """Reattach an engine handle to a compiled model restored from disk.

    The executable is reused if it still exists; otherwise the program is
    rebuilt from the stored source.

    :raises BuildError: If the program has to be rebuilt and the compiler fails
    """
    if compiled.handle is not None:
        return compiled

    os.makedirs(os.path.dirname(compiled.stan_file) or ".", exist_ok=True)
    _write_stan_file(compiled.stan_file, compiled.source)
    with utils.capture_logger("cmdstanpy", silent=True) as captured:
        try:
            handle = engine.compile(
                compiled.stan_file,
                exe_file=compiled.exe_file,
                stanc_options=compiled.options.get("stanc_options"),
                cpp_options=compiled.options.get("cpp_options"),
                user_header=compiled.options.get("user_header"),
            )
        except (ValueError, RuntimeError, OSError) as e:
            raise BuildError(
                f"Reloading the Stan program failed: {e}",
                diagnostics="\n".join(captured.messages),
            ) from e
    return dataclasses.replace(compiled, exe_file=engine.exe_file(handle), handle=handle)
