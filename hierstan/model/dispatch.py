# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Dispatching of inference runs across chains.

A run is described by one of two configurations:

    - :py:class:`SamplingConfig` for NUTS sampling, which splits into chains
    - :py:class:`VariationalConfig` for variational approximations, which always
      run as a single job

Sampling runs are executed under one of three strategies:

    - ``SEQUENTIAL``: all chains are handed to the engine in a single call and
      run one after the other
    - ``FORKED``: all chains are handed to the engine in a single call together
      with the number of cores, and the engine runs them in parallel processes
    - ``FUTURES``: every chain is submitted as an independent job to an
      :py:class:`concurrent.futures.Executor`. All jobs are submitted before
      any result is collected; results are then collected in chain order and
      merged with :py:func:`~hierstan.model.results.draws.merge_chains`.

Under the first two strategies a failing chain fails the whole call. Under
futures, a failing chain is reported with its index once all submitted jobs
have finished.
"""

from __future__ import annotations

import enum
import logging
import warnings

from concurrent.futures import Executor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from tqdm import tqdm

from hierstan import defaults
from hierstan.custom_types import ResolvedInits, StanData
from hierstan.exceptions import ChainExecutionError, ConfigurationError, InitError, MergeError
from hierstan.model.inits import chain_inits
from hierstan.model.results.draws import ChainResult, PosteriorDraws, merge_chains
from hierstan.model.stan.compiler import CompiledModel
from hierstan.model.stan.engine import InferenceEngine

logger = logging.getLogger(__name__)

VARIATIONAL_ALGORITHMS = tuple(a for a in defaults.ALGORITHMS if a != "sampling")


class ExecutionStrategy(enum.Enum):
    """How the chains of a sampling run are executed."""

    SEQUENTIAL = "sequential"
    FORKED = "forked"
    FUTURES = "futures"


def resolve_strategy(future: bool, cores: int) -> ExecutionStrategy:
    """Select the execution strategy from the futures flag and core count."""
    if future:
        return ExecutionStrategy.FUTURES
    return ExecutionStrategy.FORKED if cores > 1 else ExecutionStrategy.SEQUENTIAL


@dataclass(frozen=True)
class SamplingConfig:
    """Configuration of a NUTS sampling run.

    :ivar chains: Number of chains
    :ivar iter: Iterations per chain, warmup included
    :ivar warmup: Warmup iterations per chain
    :ivar thin: Thinning rate
    :ivar cores: Number of cores used by the engine under the forked strategy
    :ivar control: Sampler control parameters
    :ivar seed: Seed shared by all chains; chains draw from distinct streams
    :ivar inits: Resolved initial values
    :ivar silent: Whether to suppress progress output
    :ivar strategy: Execution strategy
    :ivar engine_kwargs: Further keyword arguments for the engine
    """

    chains: int = defaults.DEFAULT_CHAINS
    iter: int = defaults.DEFAULT_ITER
    warmup: int = defaults.DEFAULT_ITER // 2
    thin: int = defaults.DEFAULT_THIN
    cores: int = 1
    control: dict[str, Any] = field(default_factory=dict)
    seed: Optional[int] = None
    inits: ResolvedInits = None
    silent: bool = False
    strategy: ExecutionStrategy = ExecutionStrategy.SEQUENTIAL
    engine_kwargs: dict[str, Any] = field(default_factory=dict)

    @property
    def iter_sampling(self) -> int:
        """Post-warmup iterations per chain."""
        return self.iter - self.warmup

    def validate(self) -> None:
        """Check the configuration before anything is run.

        :raises ConfigurationError: For invalid iteration counts, chain numbers
            or control parameters
        :raises InitError: If per-chain initial values do not match the number of
            chains
        """
        if self.chains < 1:
            raise ConfigurationError(f"'chains' must be at least 1, got {self.chains}")
        if self.warmup < 0:
            raise ConfigurationError(f"'warmup' must be non-negative, got {self.warmup}")
        if self.iter <= self.warmup:
            raise ConfigurationError(
                f"'iter' ({self.iter}) must be larger than 'warmup' ({self.warmup})"
            )
        if self.thin < 1:
            raise ConfigurationError(f"'thin' must be at least 1, got {self.thin}")
        if self.cores < 1:
            raise ConfigurationError(f"'cores' must be at least 1, got {self.cores}")
        unknown = set(self.control) - set(defaults.CONTROL_KEYS)
        if unknown:
            raise ConfigurationError(
                f"Unknown control parameters: {', '.join(sorted(unknown))}. Valid "
                f"parameters are: {', '.join(defaults.CONTROL_KEYS)}"
            )
        if isinstance(self.inits, list) and len(self.inits) != self.chains:
            raise InitError(
                f"Initial values were given for {len(self.inits)} chains, but "
                f"{self.chains} chains were requested"
            )


@dataclass(frozen=True)
class VariationalConfig:
    """Configuration of a variational run.

    :ivar algorithm: ``"meanfield"`` or ``"fullrank"``
    :ivar iter: Maximum number of optimization iterations
    :ivar output_samples: Number of draws taken from the approximation
    :ivar seed: Seed of the run
    :ivar inits: Resolved initial values; only the first chain's are used
    :ivar silent: Whether to suppress console output
    :ivar engine_kwargs: Further keyword arguments for the engine
    """

    algorithm: str = "meanfield"
    iter: int = defaults.DEFAULT_ITER
    output_samples: int = 1000
    seed: Optional[int] = None
    inits: ResolvedInits = None
    silent: bool = False
    engine_kwargs: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Check the configuration before anything is run.

        :raises ConfigurationError: For unknown algorithms or invalid counts
        """
        if self.algorithm not in VARIATIONAL_ALGORITHMS:
            raise ConfigurationError(
                f"Unknown variational algorithm '{self.algorithm}'. Valid "
                f"algorithms are: {', '.join(VARIATIONAL_ALGORITHMS)}"
            )
        if self.iter < 1:
            raise ConfigurationError(f"'iter' must be at least 1, got {self.iter}")
        if self.output_samples < 1:
            raise ConfigurationError(
                f"'output_samples' must be at least 1, got {self.output_samples}"
            )


RunConfig = Union[SamplingConfig, VariationalConfig]


@dataclass(frozen=True)
class ChainJob:
    """A single chain of a sampling run.

    :ivar chain_id: 1-based index of the chain
    :ivar seed: Seed of the run
    :ivar inits: Initial values of this chain
    """

    chain_id: int
    seed: Optional[int]
    inits: Union[None, int, float, dict[str, Any]]


def make_chain_jobs(config: SamplingConfig) -> list[ChainJob]:
    """Partition a sampling run into one job per chain."""
    return [
        ChainJob(chain_id=i, seed=config.seed, inits=chain_inits(config.inits, i - 1))
        for i in range(1, config.chains + 1)
    ]


def run_chain_job(
    engine: InferenceEngine,
    handle: Any,
    data: StanData,
    job: ChainJob,
    config: SamplingConfig,
) -> ChainResult:
    """Run a single chain.

    Defined at module level so that it can be shipped to process-based
    executors.
    """
    draws = engine.sample(
        handle,
        data,
        chains=1,
        chain_ids=[job.chain_id],
        parallel_chains=1,
        seed=job.seed,
        inits=[job.inits] if isinstance(job.inits, dict) else job.inits,
        iter_warmup=config.warmup,
        iter_sampling=config.iter_sampling,
        thin=config.thin,
        control=config.control,
        silent=config.silent,
        **config.engine_kwargs,
    )
    return draws.chain(job.chain_id)


def _run_batch(
    engine: InferenceEngine,
    compiled: CompiledModel,
    data: StanData,
    config: SamplingConfig,
) -> PosteriorDraws:
    """Delegates all chains to the engine in a single call."""
    chain_ids = list(range(1, config.chains + 1))
    parallel_chains = config.cores if config.strategy is ExecutionStrategy.FORKED else 1
    try:
        draws = engine.sample(
            compiled.handle,
            data,
            chains=config.chains,
            chain_ids=chain_ids,
            parallel_chains=parallel_chains,
            seed=config.seed,
            inits=config.inits,
            iter_warmup=config.warmup,
            iter_sampling=config.iter_sampling,
            thin=config.thin,
            control=config.control,
            silent=config.silent,
            **config.engine_kwargs,
        )
    except (RuntimeError, ValueError, OSError) as e:
        raise ChainExecutionError(f"Sampling failed: {e}") from e

    if draws.chain_ids != tuple(chain_ids):
        raise MergeError(
            f"The engine returned chains {list(draws.chain_ids)}, expected {chain_ids}"
        )
    return draws


def _run_futures(
    engine: InferenceEngine,
    compiled: CompiledModel,
    data: StanData,
    config: SamplingConfig,
    executor: Optional[Executor],
) -> PosteriorDraws:
    """Runs every chain as an independent future."""
    if config.cores > 1:
        warnings.warn("Argument 'cores' is ignored when using futures.", UserWarning)

    jobs = make_chain_jobs(config)
    own_executor = executor is None
    if own_executor:
        executor = ThreadPoolExecutor(max_workers=len(jobs))

    try:
        # Fan out: every job is submitted before any result is awaited
        futures = [
            executor.submit(run_chain_job, engine, compiled.handle, data, job, config)
            for job in jobs
        ]
        logger.debug("Submitted %d chains", len(futures))

        # Fan in, strictly in chain order
        results = []
        for job, future in tqdm(
            zip(jobs, futures),
            total=len(jobs),
            desc="Collecting chains",
            disable=config.silent,
        ):
            try:
                results.append(future.result())
            except Exception as e:  # pylint: disable=broad-except
                wait(futures)
                raise ChainExecutionError(
                    f"Chain {job.chain_id} failed: {e}", chain_id=job.chain_id
                ) from e
    finally:
        if own_executor:
            executor.shutdown(wait=True)

    return merge_chains(results, len(jobs))


def _run_variational(
    engine: InferenceEngine,
    compiled: CompiledModel,
    data: StanData,
    config: VariationalConfig,
) -> PosteriorDraws:
    """Runs a variational approximation as a single job."""
    inits = chain_inits(config.inits, 0)
    try:
        return engine.variational(
            compiled.handle,
            data,
            algorithm=config.algorithm,
            iter=config.iter,
            output_samples=config.output_samples,
            seed=config.seed,
            inits=[inits] if isinstance(inits, dict) else inits,
            silent=config.silent,
            **config.engine_kwargs,
        )
    except (RuntimeError, ValueError, OSError) as e:
        raise ChainExecutionError(f"Variational inference failed: {e}") from e


def dispatch(
    engine: InferenceEngine,
    compiled: CompiledModel,
    data: StanData,
    config: RunConfig,
    executor: Optional[Executor] = None,
) -> PosteriorDraws:
    """Run a compiled model and return the draws of all chains.

    :param engine: Engine running the model
    :type engine: InferenceEngine
    :param compiled: Compiled model
    :type compiled: CompiledModel
    :param data: Build data
    :type data: StanData
    :param config: Sampling or variational configuration
    :type config: Union[SamplingConfig, VariationalConfig]
    :param executor: Executor used under the futures strategy. Defaults to a
        thread pool with one worker per chain, created for this call.
    :type executor: Optional[Executor]

    :returns: Draws of all chains, ordered by chain index
    :rtype: PosteriorDraws

    :raises ConfigurationError: If the configuration is invalid
    :raises ChainExecutionError: If the engine fails; under futures the error
        carries the index of the failed chain
    :raises MergeError: If per-chain results cannot be combined
    """
    config.validate()
    if isinstance(config, VariationalConfig):
        logger.info("Running variational inference (%s)", config.algorithm)
        return _run_variational(engine, compiled, data, config)

    logger.info(
        "Running %d chains with strategy %s", config.chains, config.strategy.value
    )
    if config.strategy is ExecutionStrategy.FUTURES:
        return _run_futures(engine, compiled, data, config, executor)
    return _run_batch(engine, compiled, data, config)
