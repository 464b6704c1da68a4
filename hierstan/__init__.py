# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""
hierstan: Bayesian hierarchical regression models fit with Stan.

hierstan turns a model formula, a data frame and a handful of options into a
Stan program, compiles it (reusing executables of identical programs), runs the
requested Markov chains sequentially, in parallel processes, or as independent
futures, and returns a single immutable fit object with user-facing parameter
names.

Key Features:
    - Mixed-model formula syntax with correlated and uncorrelated group terms
    - Gaussian, Student-t, Poisson, negative binomial, Bernoulli and binomial
      families
    - Priors on any parameter class, coefficient or grouping factor
    - Content-addressed compilation cache
    - Futures-based dispatch of chains with in-order merging
    - Persistence of fits to disk
    - Type-safe API with runtime type checking

Global Variables:
    __version__: Package version string

Example:
    >>> import hierstan
    >>> fit = hierstan.fit_model(
    ...     "y ~ x + (1 | g)",
    ...     data=df,
    ...     prior=hierstan.set_prior("normal(0, 5)", class_="b"),
    ...     chains=4,
    ... )
    >>> fit.summary()
"""

from typeguard import install_import_hook

# Define the version
__version__ = "0.1.0"

# Set up type checking
install_import_hook("hierstan")

# Import objects that should be easily accessible from the package level
# pylint: disable=wrong-import-position
from hierstan import utils
from hierstan.exceptions import (
    BuildError,
    ChainExecutionError,
    ConfigurationError,
    HierStanError,
    MergeError,
    SpecificationError,
)
from hierstan.model.autocor import cor_ar
from hierstan.model.families import (
    bernoulli,
    binomial,
    gaussian,
    negbinomial,
    poisson,
    student,
)
from hierstan.model.fitting import brm, fit_model
from hierstan.model.formula import parse_formula
from hierstan.model.inits import register_init
from hierstan.model.priors import Prior, PriorSet, get_prior, set_prior
from hierstan.model.results.fit import FitResult
from hierstan.model.spec import normalize_spec
from hierstan.model.stan.program import make_stancode, make_standata
from hierstan.model.stanvars import StanVar, StanVars, stanvar
from hierstan.options import get_option, set_option

# Lazy imports for performance
results = utils.lazy_import("hierstan.model.results")
