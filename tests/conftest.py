# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Shared fixtures, including an inference engine that needs no Stan toolchain."""

import logging
import os
import os.path
import re
import threading
import time

from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
import pandas as pd
import pytest
import xarray as xr

from hierstan import options
from hierstan.model.results.draws import PosteriorDraws
from hierstan.model.stan.engine import InferenceEngine

_AUX = re.compile(r"^\s*real<lower=[^>]+> (\w+);", re.MULTILINE)
_PRIOR_DRAWS = re.compile(r"^\s*real (prior_\w+) =", re.MULTILINE)


@dataclass
class FakeHandle:
    """Stand-in for a compiled executable."""

    stan_file: str
    exe_file: str
    source: str
    reused: bool


class FakeEngine(InferenceEngine):
    """Engine producing deterministic draws shaped after the build data.

    :param fail_chains: Chains whose sampling raises a RuntimeError
    :param fail_compile: Whether compilation raises
    :param delays: Seconds each chain sleeps before returning, to reorder
        completion
    """

    name = "fake"

    def __init__(
        self,
        fail_chains: tuple[int, ...] = (),
        fail_compile: bool = False,
        delays: Optional[dict[int, float]] = None,
    ):
        self.fail_chains = tuple(fail_chains)
        self.fail_compile = fail_compile
        self.delays = dict(delays or {})
        self.compiled: list[FakeHandle] = []
        self.calls: list[dict[str, Any]] = []
        self.completed: list[int] = []
        self._lock = threading.Lock()

    def compile(
        self,
        stan_file,
        exe_file=None,
        force_compile=False,
        stanc_options=None,
        cpp_options=None,
        user_header=None,
    ):
        logging.getLogger("cmdstanpy").info("compiling %s", stan_file)
        if self.fail_compile:
            logging.getLogger("cmdstanpy").error("Syntax error in '%s'", stan_file)
            raise RuntimeError("stanc failed")

        exe_file = exe_file or os.path.splitext(stan_file)[0]
        reused = os.path.exists(exe_file) and not force_compile
        if not reused:
            with open(exe_file, "w", encoding="utf-8") as f:
                f.write("executable")
        with open(stan_file, "r", encoding="utf-8") as f:
            source = f.read()

        handle = FakeHandle(
            stan_file=stan_file, exe_file=exe_file, source=source, reused=reused
        )
        self.compiled.append(handle)
        return handle

    def exe_file(self, handle):
        return handle.exe_file

    def _posterior(self, handle, data, chain_ids, n_draws, seed) -> xr.Dataset:
        """Draws of every parameter the program declares."""
        n_chains = len(chain_ids)
        rng = np.random.default_rng([seed or 0] + list(chain_ids))

        def draws(*shape):
            return rng.normal(size=(n_chains, n_draws) + shape)

        def variable(name, *shape):
            dims = ("chain", "draw") + tuple(f"{name}_dim_{i}" for i in range(len(shape)))
            return dims, draws(*shape)

        variables = {}
        if data["K"] > 0:
            variables["b"] = variable("b", data["K"])
        if "temp_Intercept" in handle.source:
            variables["temp_Intercept"] = variable("temp_Intercept")
        for name in _AUX.findall(handle.source):
            variables[name] = ("chain", "draw"), np.abs(draws()) + 0.1
        if "Kar" in data:
            variables["ar"] = variable("ar", data["Kar"])

        i = 1
        while f"N_{i}" in data:
            n_levels, n_coefs = data[f"N_{i}"], data[f"M_{i}"]
            variables[f"sd_{i}"] = variable(f"sd_{i}", n_coefs)
            variables[f"z_{i}"] = variable(f"z_{i}", n_coefs, n_levels)
            if f"L_{i};" in handle.source:
                variables[f"L_{i}"] = variable(f"L_{i}", n_coefs, n_coefs)
            variables[f"r_{i}"] = variable(f"r_{i}", n_levels, n_coefs)
            for k in range(1, n_coefs + 1):
                variables[f"r_{i}_{k}"] = variable(f"r_{i}_{k}", n_levels)
            i += 1

        if "b_Intercept" in handle.source:
            variables["b_Intercept"] = variable("b_Intercept")
        i = 1
        while f"N_{i}" in data:
            if f"Cor_{i}" in handle.source:
                variables[f"Cor_{i}"] = variable(f"Cor_{i}", data[f"M_{i}"], data[f"M_{i}"])
            i += 1
        for name in _PRIOR_DRAWS.findall(handle.source):
            variables[name] = variable(name)

        return xr.Dataset(
            variables, coords={"chain": list(chain_ids), "draw": np.arange(n_draws)}
        )

    @staticmethod
    def _sample_stats(chain_ids, n_draws) -> xr.Dataset:
        return xr.Dataset(
            {
                "lp": (("chain", "draw"), np.zeros((len(chain_ids), n_draws))),
                "divergent": (
                    ("chain", "draw"),
                    np.zeros((len(chain_ids), n_draws), dtype=bool),
                ),
            },
            coords={"chain": list(chain_ids), "draw": np.arange(n_draws)},
        )

    def sample(
        self,
        handle,
        data,
        chains,
        chain_ids,
        parallel_chains,
        seed,
        inits,
        iter_warmup,
        iter_sampling,
        thin,
        control,
        silent,
        **kwargs,
    ):
        with self._lock:
            self.calls.append(
                {
                    "method": "sample",
                    "chains": chains,
                    "chain_ids": list(chain_ids),
                    "parallel_chains": parallel_chains,
                    "seed": seed,
                    "inits": inits,
                    "silent": silent,
                    "kwargs": kwargs,
                }
            )
        for chain_id in chain_ids:
            time.sleep(self.delays.get(chain_id, 0.0))
        failed = [chain_id for chain_id in chain_ids if chain_id in self.fail_chains]
        if failed:
            raise RuntimeError(f"chain {failed[0]} diverged irrecoverably")

        n_draws = len(range(0, iter_sampling, thin))
        draws = PosteriorDraws(
            posterior=self._posterior(handle, data, chain_ids, n_draws, seed),
            sample_stats=self._sample_stats(chain_ids, n_draws),
        )
        with self._lock:
            self.completed.extend(chain_ids)
        return draws

    def variational(
        self,
        handle,
        data,
        algorithm,
        iter,  # pylint: disable=redefined-builtin
        output_samples,
        seed,
        inits,
        silent,
        **kwargs,
    ):
        self.calls.append(
            {"method": "variational", "algorithm": algorithm, "inits": inits}
        )
        return PosteriorDraws(
            posterior=self._posterior(handle, data, [1], output_samples, seed),
            sample_stats=self._sample_stats([1], output_samples),
        )


@pytest.fixture(autouse=True)
def _reset_options(monkeypatch):
    """Every test starts from the environment defaults."""
    monkeypatch.delenv("HIERSTAN_CORES", raising=False)
    monkeypatch.delenv("HIERSTAN_FUTURE", raising=False)
    options.reset_options()
    yield
    options.reset_options()


@pytest.fixture
def df() -> pd.DataFrame:
    """Twenty observations of a gaussian response in four groups."""
    rng = np.random.default_rng(1)
    x = rng.normal(size=20)
    return pd.DataFrame(
        {
            "y": 1.0 + 0.5 * x + rng.normal(scale=0.3, size=20),
            "x": x,
            "g": np.repeat(["a", "b", "c", "d"], 5),
            "count": rng.poisson(3, size=20),
            "t": np.tile(np.arange(5), 4),
        }
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def output_dir(tmp_path) -> str:
    path = tmp_path / "build"
    path.mkdir()
    return str(path)


@pytest.fixture
def fit_kwargs(engine, output_dir) -> dict[str, Any]:
    """Arguments keeping fits small and off the default output directory."""
    return {
        "engine": engine,
        "output_dir": output_dir,
        "chains": 2,
        "iter": 20,
        "seed": 1,
    }
