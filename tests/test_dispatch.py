# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Tests for the dispatch of chains."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from hierstan.exceptions import ChainExecutionError, ConfigurationError, InitError
from hierstan.model.dispatch import (
    ExecutionStrategy,
    SamplingConfig,
    VariationalConfig,
    dispatch,
    make_chain_jobs,
    resolve_strategy,
)
from hierstan.model.spec import normalize_spec
from hierstan.model.stan.compiler import build_model
from hierstan.model.stan.program import make_stancode, make_standata

from conftest import FakeEngine


@pytest.fixture
def model(df, output_dir):
    """Build data and a compiled model factory for a small hierarchical model."""
    spec = normalize_spec("y ~ x + (1 | g)", df)
    code = make_stancode(spec)

    def compile_with(engine):
        return build_model(code, engine, output_dir=output_dir)

    return make_standata(spec), compile_with


def config(**kwargs):
    settings = {"chains": 4, "iter": 20, "warmup": 10, "seed": 3, "silent": True}
    settings.update(kwargs)
    return SamplingConfig(**settings)


def test_resolve_strategy():
    assert resolve_strategy(False, 1) is ExecutionStrategy.SEQUENTIAL
    assert resolve_strategy(False, 4) is ExecutionStrategy.FORKED
    assert resolve_strategy(True, 4) is ExecutionStrategy.FUTURES


def test_sequential_runs_a_single_batch(model):
    data, compile_with = model
    engine = FakeEngine()
    draws = dispatch(engine, compile_with(engine), data, config())
    assert draws.chain_ids == (1, 2, 3, 4)
    assert draws.n_draws == 10
    assert len(engine.calls) == 1
    assert engine.calls[0]["chain_ids"] == [1, 2, 3, 4]
    assert engine.calls[0]["parallel_chains"] == 1


def test_forked_passes_cores_to_the_engine(model):
    data, compile_with = model
    engine = FakeEngine()
    dispatch(
        engine,
        compile_with(engine),
        data,
        config(cores=2, strategy=ExecutionStrategy.FORKED),
    )
    assert len(engine.calls) == 1
    assert engine.calls[0]["parallel_chains"] == 2


def test_futures_issue_one_job_per_chain(model):
    data, compile_with = model
    engine = FakeEngine(delays={1: 0.3, 2: 0.2})
    draws = dispatch(
        engine, compile_with(engine), data, config(strategy=ExecutionStrategy.FUTURES)
    )
    assert sorted(call["chain_ids"][0] for call in engine.calls) == [1, 2, 3, 4]
    assert all(call["chains"] == 1 for call in engine.calls)
    assert all(call["seed"] == 3 for call in engine.calls)
    # Chains finished out of order but are merged by index
    assert engine.completed[-1] == 1
    assert draws.chain_ids == (1, 2, 3, 4)
    assert draws.n_draws == 10


def test_futures_ignore_cores(model):
    data, compile_with = model
    engine = FakeEngine()
    with pytest.warns(UserWarning, match="Argument 'cores' is ignored when using futures."):
        dispatch(
            engine,
            compile_with(engine),
            data,
            config(cores=2, strategy=ExecutionStrategy.FUTURES),
        )


def test_futures_with_custom_executor(model):
    data, compile_with = model
    engine = FakeEngine()
    with ThreadPoolExecutor(max_workers=2) as executor:
        draws = dispatch(
            engine,
            compile_with(engine),
            data,
            config(strategy=ExecutionStrategy.FUTURES),
            executor=executor,
        )
        assert not executor._shutdown  # pylint: disable=protected-access
    assert draws.n_chains == 4


def test_failing_chain_is_reported_after_all_jobs_finish(model):
    data, compile_with = model
    engine = FakeEngine(fail_chains=(3,), delays={4: 0.2})
    with pytest.raises(ChainExecutionError) as excinfo:
        dispatch(
            engine, compile_with(engine), data, config(strategy=ExecutionStrategy.FUTURES)
        )
    assert excinfo.value.chain_id == 3
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert len(engine.calls) == 4
    assert sorted(engine.completed) == [1, 2, 4]


def test_failing_batch(model):
    data, compile_with = model
    engine = FakeEngine(fail_chains=(2,))
    with pytest.raises(ChainExecutionError) as excinfo:
        dispatch(engine, compile_with(engine), data, config())
    assert excinfo.value.chain_id is None


def test_per_chain_inits(model):
    data, compile_with = model
    engine = FakeEngine()
    inits = [{"sigma": float(i)} for i in range(1, 5)]
    dispatch(
        engine,
        compile_with(engine),
        data,
        config(inits=inits, strategy=ExecutionStrategy.FUTURES),
    )
    received = {call["chain_ids"][0]: call["inits"] for call in engine.calls}
    assert received == {i: [{"sigma": float(i)}] for i in range(1, 5)}


def test_make_chain_jobs():
    jobs = make_chain_jobs(config(chains=2, inits=0))
    assert [(job.chain_id, job.seed, job.inits) for job in jobs] == [(1, 3, 0), (2, 3, 0)]


def test_variational_runs_a_single_job(model):
    data, compile_with = model
    engine = FakeEngine()
    draws = dispatch(
        engine,
        compile_with(engine),
        data,
        VariationalConfig(algorithm="fullrank", iter=100, output_samples=50, silent=True),
    )
    assert len(engine.calls) == 1
    assert engine.calls[0]["algorithm"] == "fullrank"
    assert draws.chain_ids == (1,)
    assert draws.n_draws == 50


@pytest.mark.parametrize(
    "kwargs",
    [
        {"chains": 0},
        {"iter": 10, "warmup": 10},
        {"warmup": -1},
        {"thin": 0},
        {"cores": 0},
        {"control": {"adapt_delta": 0.9, "tree_depth": 12}},
    ],
)
def test_invalid_sampling_config(model, kwargs):
    data, compile_with = model
    engine = FakeEngine()
    with pytest.raises(ConfigurationError):
        dispatch(engine, compile_with(engine), data, config(**kwargs))
    assert engine.calls == []


def test_inits_must_match_chains():
    with pytest.raises(InitError):
        config(chains=2, inits=[{"b": 1.0}]).validate()


def test_invalid_variational_config():
    with pytest.raises(ConfigurationError):
        VariationalConfig(algorithm="sampling").validate()


@pytest.mark.parametrize("silent", [True, False])
def test_futures_forward_the_silent_flag(model, silent):
    data, compile_with = model
    engine = FakeEngine()
    dispatch(
        engine,
        compile_with(engine),
        data,
        config(silent=silent, strategy=ExecutionStrategy.FUTURES),
    )
    assert [call["silent"] for call in engine.calls] == [silent] * 4
