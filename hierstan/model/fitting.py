# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Fitting hierarchical regression models.

:py:func:`fit_model` (also available as :py:func:`brm`) is the single entry
point of the package. It runs the complete pipeline:

    1. If ``file`` is given and holds a valid fit, that fit is returned
       immediately.
    2. The process-wide options are frozen and the run configuration, including
       initial values, is validated.
    3. Unless an existing ``fit`` is reused, the model specification is
       normalized, the Stan program and its data are generated (the data first,
       so that invalid data never cost a compilation) and the program is
       compiled.
    4. The chains are dispatched, their draws merged, excluded parameters
       dropped and the remaining parameters renamed.
    5. The fit is stored under ``file`` if one was given.

Example:
    >>> import hierstan
    >>> fit = hierstan.fit_model(
    ...     "count ~ age + (1 | patient)",
    ...     data=df,
    ...     family="poisson",
    ...     prior=hierstan.set_prior("normal(0, 2)", class_="b"),
    ...     chains=4,
    ...     future=True,
    ...     file="fits/epilepsy",
    ... )
"""

from __future__ import annotations

import logging
import warnings

from concurrent.futures import Executor
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

from hierstan import defaults
from hierstan.custom_types import InitSpec
from hierstan.exceptions import ConfigurationError, SpecificationError
from hierstan.model.autocor import CorAR
from hierstan.model.cache import load_fit, save_fit
from hierstan.model.dispatch import (
    RunConfig,
    SamplingConfig,
    VariationalConfig,
    dispatch,
    resolve_strategy,
)
from hierstan.model.families import Family
from hierstan.model.formula import Formula
from hierstan.model.inits import resolve_inits
from hierstan.model.priors import Prior, PriorSet
from hierstan.model.results.draws import exclude_draws, rename_pars
from hierstan.model.results.fit import FitResult
from hierstan.model.spec import check_reuse, normalize_spec
from hierstan.model.stan.compiler import build_model, reload_model
from hierstan.model.stan.engine import CmdStanEngine, InferenceEngine
from hierstan.model.stan.program import BuildArtifacts, make_stancode, make_standata
from hierstan.model.stanvars import StanVar, StanVars
from hierstan.options import snapshot_options

logger = logging.getLogger(__name__)


def _variational_init_count(inits: Optional[InitSpec], chains: Optional[int]) -> int:
    """Number of per-chain initial values a variational run accepts.

    A variational run is a single job, so one set of initial values is expected.
    A list matching an explicitly requested number of chains is accepted as
    well; only its first element is used.
    """
    if (
        chains is not None
        and isinstance(inits, (list, tuple))
        and len(inits) == chains
    ):
        return chains
    return 1


def _run_config(
    algorithm: str,
    inits: Optional[InitSpec],
    chains: Optional[int],
    iter: int,  # pylint: disable=redefined-builtin
    warmup: Optional[int],
    thin: Optional[int],
    cores: Optional[int],
    control: Optional[Mapping[str, Any]],
    future: Optional[bool],
    silent: bool,
    seed: Optional[int],
    engine_kwargs: dict[str, Any],
) -> RunConfig:
    """Builds and validates the run configuration from the call arguments."""
    if algorithm not in defaults.ALGORITHMS:
        raise ConfigurationError(
            f"Unknown algorithm '{algorithm}'. Valid algorithms are: "
            + ", ".join(defaults.ALGORITHMS)
        )

    # Process-wide defaults are resolved once, here
    options = snapshot_options()
    n_chains = defaults.DEFAULT_CHAINS if chains is None else chains

    if algorithm == "sampling":
        cores = options.cores if cores is None else cores
        use_future = options.future if future is None else future
        config: RunConfig = SamplingConfig(
            chains=n_chains,
            iter=iter,
            warmup=iter // 2 if warmup is None else warmup,
            thin=defaults.DEFAULT_THIN if thin is None else thin,
            cores=cores,
            control=dict(control or {}),
            seed=seed,
            inits=resolve_inits(inits, n_chains),
            silent=silent,
            strategy=resolve_strategy(use_future, cores),
            engine_kwargs=engine_kwargs,
        )
    else:
        if future:
            raise ConfigurationError(
                "Variational inference runs as a single job and cannot use futures"
            )
        sampling_only = [
            name
            for name, value in (("warmup", warmup), ("thin", thin), ("control", control))
            if value is not None
        ]
        if sampling_only:
            raise ConfigurationError(
                f"Arguments {', '.join(repr(name) for name in sampling_only)} only "
                f"apply to sampling and cannot be used with algorithm '{algorithm}'"
            )
        if chains is not None and chains > 1:
            warnings.warn(
                "Variational inference runs as a single job. Argument 'chains' is "
                "ignored.",
                UserWarning,
            )
        engine_kwargs = dict(engine_kwargs)
        config = VariationalConfig(
            algorithm=algorithm,
            iter=iter,
            output_samples=engine_kwargs.pop("output_samples", 1000),
            seed=seed,
            inits=resolve_inits(inits, _variational_init_count(inits, chains)),
            silent=silent,
            engine_kwargs=engine_kwargs,
        )

    config.validate()
    return config


def fit_model(
    formula: Union[str, Formula, None] = None,
    data: Any = None,
    family: Union[str, Family, None] = None,
    prior: Union[Prior, PriorSet, Iterable[Prior], None] = None,
    autocor: Optional[CorAR] = None,
    cov_ranef: Optional[Mapping[str, Any]] = None,
    sample_prior: Union[str, bool, None] = None,
    sparse: Optional[bool] = None,
    knots: Optional[Mapping[str, Iterable[float]]] = None,
    stanvars: Union[StanVar, StanVars, None] = None,
    stan_funs: Optional[str] = None,
    fit: Optional[FitResult] = None,
    save_ranef: bool = True,
    save_all_pars: bool = False,
    inits: Optional[InitSpec] = defaults.DEFAULT_INITS,
    chains: Optional[int] = None,
    iter: int = defaults.DEFAULT_ITER,  # pylint: disable=redefined-builtin
    warmup: Optional[int] = None,
    thin: Optional[int] = None,
    cores: Optional[int] = None,
    control: Optional[Mapping[str, Any]] = None,
    algorithm: str = defaults.DEFAULT_ALGORITHM,
    future: Optional[bool] = None,
    silent: bool = True,
    seed: Optional[int] = None,
    save_model: Optional[Union[str, Path]] = None,
    stan_model_args: Optional[Mapping[str, Any]] = None,
    save_dso: bool = True,
    file: Optional[Union[str, Path]] = None,
    output_dir: Optional[str] = None,
    engine: Optional[InferenceEngine] = None,
    executor: Optional[Executor] = None,
    rename: bool = True,
    **engine_kwargs: Any,
) -> FitResult:
    """Fit a Bayesian hierarchical regression model with Stan.

    :param formula: Model formula, e.g. ``"y ~ x + (1 | g)"``. Required unless
        ``fit`` is given.
    :type formula: Union[str, Formula, None]
    :param data: Data frame holding all variables of the formula. Required
        unless ``fit`` is given.
    :param family: Response family, by name or object. Defaults to gaussian.
    :type family: Union[str, Family, None]
    :param prior: Priors, see :py:func:`hierstan.set_prior`
    :param autocor: Autocorrelation structure, see :py:func:`hierstan.cor_ar`
    :param cov_ranef: Known covariance matrices of grouping factors, keyed by
        factor name. Data frames are matched to the factor levels by their index.
    :param sample_prior: ``"no"`` (default), ``"yes"`` to additionally draw from
        the priors, or ``"only"`` to ignore the likelihood
    :param sparse: Whether to pass the population-level design matrix in sparse
        format. Defaults to False.
    :param knots: Knot values per variable, passed to the program as data
    :param stanvars: Extra Stan code fragments, see :py:func:`hierstan.stanvar`
    :param stan_funs: Deprecated. Stan functions; use ``stanvars`` instead.
    :param fit: An existing fit whose compiled model and data are reused. Model
        arguments that are given must match that fit.
    :type fit: Optional[FitResult]
    :param save_ranef: Whether to keep group-level effects in the output.
        Defaults to True.
    :param save_all_pars: Whether to keep internal parameters in the output.
        Defaults to False.
    :param inits: Initial values, see :py:mod:`hierstan.model.inits`. Defaults to
        ``"random"``.
    :param chains: Number of chains. Defaults to 4.
    :param iter: Iterations per chain, including warmup. Defaults to 2000.
    :param warmup: Warmup iterations per chain. Defaults to ``iter // 2``.
        Sampling only.
    :param thin: Thinning rate. Defaults to 1. Sampling only.
    :param cores: Number of cores for running chains in parallel. Defaults to the
        ``cores`` option.
    :param control: Sampler control parameters such as ``adapt_delta``.
        Sampling only.
    :param algorithm: ``"sampling"`` (default), ``"meanfield"`` or ``"fullrank"``
    :param future: Whether to run every chain as an independent future. Defaults
        to the ``future`` option.
    :param silent: Whether to suppress progress output. Defaults to True.
    :param seed: Seed for reproducible results. Defaults to an engine-chosen seed.
    :param save_model: Path the generated Stan program is written to
    :param stan_model_args: Builder options (``stanc_options``, ``cpp_options``,
        ``user_header``, ``force_compile``, ``model_name``). Compiler output is
        shown only when this is given.
    :param save_dso: Deprecated. If False, the executable is discarded with the
        fit.
    :param file: Path (without or with the ``.pkl`` extension) the fit is loaded
        from if it exists and stored to otherwise
    :param output_dir: Directory for Stan programs and executables
    :param engine: Inference engine. Defaults to :py:class:`CmdStanEngine`.
    :param executor: Executor running the chains when ``future`` is True
    :param rename: Whether to rename parameters after the model's terms.
        Defaults to True.
    :param engine_kwargs: Further keyword arguments for the engine

    :returns: The fitted model
    :rtype: FitResult

    :raises SpecificationError: If the model specification is invalid
    :raises ConfigurationError: If the run configuration is invalid
    :raises BuildError: If the Stan program fails to compile
    :raises ChainExecutionError: If a chain fails
    """
    if file is not None:
        cached = load_fit(file)
        if cached is not None:
            return cached

    config = _run_config(
        algorithm=algorithm,
        inits=inits,
        chains=chains,
        iter=iter,
        warmup=warmup,
        thin=thin,
        cores=cores,
        control=control,
        future=future,
        silent=silent,
        seed=seed,
        engine_kwargs=engine_kwargs,
    )
    engine = CmdStanEngine() if engine is None else engine

    if fit is not None:
        # Model comparison statistics are not valid for the refit
        fit = fit.reset_criteria()
        check_reuse(
            fit.spec,
            formula=formula,
            data=data,
            family=family,
            prior=prior,
            autocor=autocor,
            cov_ranef=cov_ranef,
            sample_prior=sample_prior,
            sparse=sparse,
            knots=knots,
            stanvars=stanvars,
            stan_funs=stan_funs,
        )
        spec = fit.spec
        artifacts = fit.artifacts
        if save_model is not None:
            Path(save_model).write_text(artifacts.code, encoding="utf-8")
        compiled = reload_model(fit.compiled, engine)
        logger.info("Reusing the compiled model of an existing fit")
    else:
        if formula is None or data is None:
            raise SpecificationError("'formula' and 'data' are required unless 'fit' is given")
        if stan_model_args is not None and not isinstance(stan_model_args, Mapping):
            raise ConfigurationError("'stan_model_args' must be a mapping")
        spec = normalize_spec(
            formula,
            data,
            family=family,
            prior=prior,
            autocor=autocor,
            cov_ranef=cov_ranef,
            sample_prior="no" if sample_prior is None else sample_prior,
            sparse=bool(sparse),
            knots=knots,
            stanvars=stanvars,
            stan_funs=stan_funs,
            save_ranef=save_ranef,
            save_all_pars=save_all_pars,
        )
        code = make_stancode(spec, save_model=save_model)

        # Data are generated before compiling so that invalid data fail early
        standata = make_standata(spec)
        artifacts = BuildArtifacts(
            code=code,
            data=standata,
            exclude=spec.exclude,
            ranef=spec.terms.groups,
            population=spec.terms.population,
            intercept=spec.terms.intercept,
        )
        compiled = build_model(
            code,
            engine,
            options=dict(stan_model_args or {}),
            output_dir=output_dir,
            save_dso=save_dso,
        )

    logger.info("Start sampling")
    draws = dispatch(engine, compiled, artifacts.data, config, executor=executor)
    draws = exclude_draws(draws, artifacts.exclude)
    if rename:
        draws = rename_pars(draws, artifacts)

    result = FitResult(
        spec=spec,
        artifacts=artifacts,
        compiled=compiled,
        draws=draws,
        algorithm=algorithm,
    )
    if file is not None:
        result = save_fit(result, file)
    return result


brm = fit_model
