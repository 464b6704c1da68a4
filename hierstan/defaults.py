# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Default configuration values for hierstan package components.

This module centralizes default values used across the model-building and
chain-orchestration pipeline, including sampling parameters, prior defaults,
and Stan compilation settings.

The module is organized into logical groups covering:
    - Sampling and variational inference defaults
    - Default priors for each parameter class
    - Stan model compilation settings
    - Fit persistence conventions

Default values cannot be programmatically altered. Process-wide settings that
*can* be changed at runtime (the number of cores and the use of futures) live in
:py:mod:`hierstan.options` instead.
"""

from typing import Any

# Sampling defaults
DEFAULT_CHAINS: int = 4
"""Default number of Markov chains.

:type: int
"""

DEFAULT_ITER: int = 2000
"""Default number of total iterations per chain, warmup included.

:type: int
"""

DEFAULT_THIN: int = 1
"""Default thinning rate.

:type: int
"""

DEFAULT_ALGORITHM: str = "sampling"
"""Default estimation algorithm.

:type: str
"""

ALGORITHMS: tuple[str, ...] = ("sampling", "meanfield", "fullrank")
"""Estimation algorithms understood by the pipeline. ``"sampling"`` runs NUTS,
the remaining two are variational approximations.

:type: tuple[str, ...]
"""

CONTROL_KEYS: tuple[str, ...] = (
    "adapt_delta",
    "max_treedepth",
    "step_size",
    "adapt_engaged",
    "metric",
)
"""Sampler control parameters that may be passed through ``control``.

:type: tuple[str, ...]
"""

DEFAULT_INITS: str = "random"
"""Default initial value strategy. Stan draws initial values uniformly on
(-2, 2) on the unconstrained scale.

:type: str
"""

# Priors
DEFAULT_PRIORS: dict[str, str] = {
    "b": "",
    "Intercept": "student_t(3, 0, 10)",
    "sd": "student_t(3, 0, 10)",
    "cor": "lkj(1)",
    "sigma": "student_t(3, 0, 10)",
    "nu": "gamma(2, 0.1)",
    "shape": "gamma(0.01, 0.01)",
    "ar": "",
}
"""Default prior for every parameter class. An empty string denotes an improper
flat prior.

:type: dict[str, str]
"""

SAMPLE_PRIOR_OPTIONS: tuple[str, ...] = ("no", "yes", "only")
"""Legal values of the ``sample_prior`` argument.

:type: tuple[str, ...]
"""

# Defaults for the Stan model
DEFAULT_FORCE_COMPILE: bool = False
"""Default setting for forcing Stan model recompilation.

When False, executables whose content hash matches the generated program are
reused. When True, the program is always recompiled.

:type: bool
"""

DEFAULT_STANC_OPTIONS: dict[str, Any] = {"O1": True}
"""Default options passed to the Stan compiler (stanc).

:type: dict[str, Any]
"""

DEFAULT_CPP_OPTIONS: dict[str, Any] = {}
"""Default C++ compilation options for Stan models.

:type: dict[str, Any]
"""

DEFAULT_MODEL_NAME: str = "model"
"""Default prefix of generated Stan program and executable files.

:type: str
"""

HASH_PREFIX_LENGTH: int = 12
"""Number of hexadecimal characters of the content hash appended to model names.

:type: int
"""

# Persistence
FIT_FILE_EXTENSION: str = ".pkl"
"""Extension appended to the ``file`` argument when persisting fits.

:type: str
"""

DEFAULT_OUTPUT_DIR: str = "~/.cache/hierstan"
"""Default directory receiving generated Stan programs and their executables.
Executables are named after the content hash of their program, so one directory
can be shared by all models.

:type: str
"""
