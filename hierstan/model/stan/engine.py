# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Interface to the external inference engine.

The pipeline talks to the engine that compiles and runs Stan programs through
the narrow :py:class:`InferenceEngine` contract:

    - :py:meth:`InferenceEngine.compile` turns a Stan file into an executable
      handle, reusing an existing executable where allowed
    - :py:meth:`InferenceEngine.sample` runs one or more NUTS chains
    - :py:meth:`InferenceEngine.variational` runs a variational approximation

Both running methods return :py:class:`~hierstan.model.results.draws.PosteriorDraws`
so that the rest of the pipeline never sees engine-specific result objects.

:py:class:`CmdStanEngine`, the default, is backed by CmdStanPy. Other engines
(for example a fake engine in tests) only need to implement the same three
methods.
"""

from __future__ import annotations

import os.path

from abc import ABC, abstractmethod
from typing import Any, Optional

import numpy as np
import xarray as xr

from cmdstanpy import CmdStanModel

from hierstan.custom_types import ResolvedInits, StanData
from hierstan.model.results.draws import PosteriorDraws


class InferenceEngine(ABC):
    """Contract between the pipeline and an engine compiling and running Stan
    programs."""

    name: str = "abstract"

    @abstractmethod
    def compile(
        self,
        stan_file: str,
        exe_file: Optional[str] = None,
        force_compile: bool = False,
        stanc_options: Optional[dict[str, Any]] = None,
        cpp_options: Optional[dict[str, Any]] = None,
        user_header: Optional[str] = None,
    ) -> Any:
        """Compile a Stan file, or load the given executable.

        :returns: An engine-specific handle to the executable
        """

    @abstractmethod
    def exe_file(self, handle: Any) -> Optional[str]:
        """Path of the executable behind a handle."""

    @abstractmethod
    def sample(
        self,
        handle: Any,
        data: StanData,
        chains: int,
        chain_ids: list[int],
        parallel_chains: int,
        seed: Optional[int],
        inits: ResolvedInits,
        iter_warmup: int,
        iter_sampling: int,
        thin: int,
        control: dict[str, Any],
        silent: bool,
        **kwargs: Any,
    ) -> PosteriorDraws:
        """Run NUTS chains.

        :returns: Draws whose ``chain`` coordinate equals ``chain_ids``
        """

    @abstractmethod
    def variational(
        self,
        handle: Any,
        data: StanData,
        algorithm: str,
        iter: int,  # pylint: disable=redefined-builtin
        output_samples: int,
        seed: Optional[int],
        inits: ResolvedInits,
        silent: bool,
        **kwargs: Any,
    ) -> PosteriorDraws:
        """Run a variational approximation.

        :returns: Draws from the approximation, as a single chain with index 1
        """


def _stats_dataset(
    values: dict[str, np.ndarray], chain_ids: list[int]
) -> xr.Dataset:
    """Builds a sample statistics dataset from (draw, chain) arrays."""
    return xr.Dataset(
        {
            name.rstrip("_"): (("chain", "draw"), np.asarray(array).T)
            for name, array in values.items()
        },
        coords={"chain": chain_ids},
    )


class CmdStanEngine(InferenceEngine):
    """Inference engine backed by CmdStanPy.

    Example:
        >>> engine = CmdStanEngine()
        >>> handle = engine.compile("model_0123456789ab.stan")
        >>> draws = engine.sample(handle, data, chains=4, chain_ids=[1, 2, 3, 4], ...)
    """

    name = "cmdstanpy"

    def compile(
        self,
        stan_file: str,
        exe_file: Optional[str] = None,
        force_compile: bool = False,
        stanc_options: Optional[dict[str, Any]] = None,
        cpp_options: Optional[dict[str, Any]] = None,
        user_header: Optional[str] = None,
    ) -> CmdStanModel:
        return CmdStanModel(
            stan_file=stan_file,
            exe_file=(
                exe_file
                if exe_file is not None and os.path.exists(exe_file) and not force_compile
                else None
            ),
            force_compile=force_compile,
            stanc_options=stanc_options,
            cpp_options=cpp_options,
            user_header=user_header,
        )

    def exe_file(self, handle: CmdStanModel) -> Optional[str]:
        return handle.exe_file

    def sample(
        self,
        handle: CmdStanModel,
        data: StanData,
        chains: int,
        chain_ids: list[int],
        parallel_chains: int,
        seed: Optional[int],
        inits: ResolvedInits,
        iter_warmup: int,
        iter_sampling: int,
        thin: int,
        control: dict[str, Any],
        silent: bool,
        **kwargs: Any,
    ) -> PosteriorDraws:
        fit = handle.sample(
            data=data,
            chains=chains,
            chain_ids=chain_ids,
            parallel_chains=parallel_chains,
            seed=seed,
            inits=inits,
            iter_warmup=iter_warmup,
            iter_sampling=iter_sampling,
            thin=thin,
            show_progress=not silent,
            show_console=False,
            **control,
            **kwargs,
        )
        posterior = fit.draws_xr().assign_coords(chain=chain_ids)
        return PosteriorDraws(
            posterior=posterior,
            sample_stats=_stats_dataset(fit.method_variables(), chain_ids).assign_coords(
                draw=posterior["draw"].values
            ),
        )

    def variational(
        self,
        handle: CmdStanModel,
        data: StanData,
        algorithm: str,
        iter: int,  # pylint: disable=redefined-builtin
        output_samples: int,
        seed: Optional[int],
        inits: ResolvedInits,
        silent: bool,
        **kwargs: Any,
    ) -> PosteriorDraws:
        fit = handle.variational(
            data=data,
            algorithm=algorithm,
            iter=iter,
            output_samples=output_samples,
            seed=seed,
            inits=inits,
            show_console=not silent,
            **kwargs,
        )

        # Approximate draws are stored as a single chain
        variables = {}
        for name, values in fit.stan_variables(mean=False).items():
            values = np.asarray(values)[np.newaxis, ...]
            dims = ("chain", "draw") + tuple(
                f"{name}_dim_{i}" for i in range(values.ndim - 2)
            )
            variables[name] = (dims, values)
        posterior = xr.Dataset(variables, coords={"chain": [1]})

        samples = fit.variational_sample_pd
        stats = {
            column: samples[column].to_numpy()[:, np.newaxis]
            for column in samples.columns
            if column.endswith("__")
        }
        return PosteriorDraws(
            posterior=posterior, sample_stats=_stats_dataset(stats, [1])
        )
