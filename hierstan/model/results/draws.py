# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Posterior draw collections and the merging of per-chain results.

Draws are held as :py:class:`xarray.Dataset` objects whose leading dimensions
are ``("chain", "draw")``. Two containers are used:

    - :py:class:`ChainResult` holds the draws of a single chain, without a
      ``chain`` dimension, together with the index of the chain that produced
      them.
    - :py:class:`PosteriorDraws` holds the combined draws of all chains of a run.

Runs dispatched as independent futures produce one :py:class:`ChainResult` per
chain; :py:func:`merge_chains` validates and combines them. After merging,
:py:func:`rename_pars` replaces the engine's internal parameter names with names
that refer to the model's terms, e.g. ``b[1]`` becomes ``b_x``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np
import pandas as pd
import xarray as xr

from hierstan.exceptions import MergeError

# Dimensions shared by all variables of a draw collection
SAMPLE_DIMS = ("chain", "draw")


@dataclass(frozen=True, eq=False)
class ChainResult:
    """Draws of a single chain.

    :ivar chain_id: 1-based index of the chain
    :ivar draws: Parameter draws with leading dimension ``draw``
    :ivar sample_stats: Per-iteration sampler diagnostics with leading
        dimension ``draw``
    """

    chain_id: int
    draws: xr.Dataset
    sample_stats: xr.Dataset


@dataclass(frozen=True, eq=False)
class PosteriorDraws:
    """Combined draws of all chains of a run.

    :ivar posterior: Parameter draws with leading dimensions ``(chain, draw)``
    :ivar sample_stats: Sampler diagnostics with leading dimensions
        ``(chain, draw)``
    """

    posterior: xr.Dataset
    sample_stats: xr.Dataset

    @property
    def chain_ids(self) -> tuple[int, ...]:
        """Indices of the chains, in storage order."""
        return tuple(int(c) for c in self.posterior["chain"].values)

    @property
    def n_chains(self) -> int:
        """Number of chains."""
        return self.posterior.sizes["chain"]

    @property
    def n_draws(self) -> int:
        """Number of draws per chain."""
        return self.posterior.sizes["draw"]

    @property
    def variables(self) -> tuple[str, ...]:
        """Names of all parameters."""
        return tuple(str(name) for name in self.posterior.data_vars)

    def chain(self, chain_id: int) -> ChainResult:
        """Extract the draws of a single chain."""
        if chain_id not in self.chain_ids:
            raise KeyError(f"Chain {chain_id} is not part of these draws")
        return ChainResult(
            chain_id=chain_id,
            draws=self.posterior.sel(chain=chain_id, drop=True),
            sample_stats=self.sample_stats.sel(chain=chain_id, drop=True),
        )

    def drop_vars(self, names: Iterable[str]) -> "PosteriorDraws":
        """Copy of the draws without the given parameters; unknown names are
        ignored."""
        return PosteriorDraws(
            posterior=self.posterior.drop_vars(list(names), errors="ignore"),
            sample_stats=self.sample_stats,
        )

    def equals(self, other: Any) -> bool:
        """Whether two collections hold the same values and coordinates."""
        return (
            isinstance(other, PosteriorDraws)
            and self.posterior.equals(other.posterior)
            and self.sample_stats.equals(other.sample_stats)
        )


def _schema(dataset: xr.Dataset) -> dict[str, tuple[tuple[str, int], ...]]:
    """Variable names mapped to their dimension names and sizes."""
    return {
        str(name): tuple(zip(map(str, variable.dims), variable.shape))
        for name, variable in dataset.data_vars.items()
    }


def merge_chains(results: Sequence[ChainResult], n_chains: int) -> PosteriorDraws:
    """Combine the results of independently run chains.

    The results are ordered by chain index, independent of the order in which
    they are passed.

    :param results: One result per chain
    :type results: Sequence[ChainResult]
    :param n_chains: Number of chains that were issued
    :type n_chains: int

    :returns: The combined draws with ``chain`` coordinates ``1..n_chains``
    :rtype: PosteriorDraws

    :raises MergeError: If a chain index is missing, duplicated or out of range,
        or if the chains do not hold the same parameters with the same shapes
    """
    ids = [result.chain_id for result in results]
    duplicated = sorted({i for i in ids if ids.count(i) > 1})
    if duplicated:
        raise MergeError(f"Duplicated chain indices: {duplicated}")
    out_of_range = sorted(i for i in ids if not 1 <= i <= n_chains)
    if out_of_range:
        raise MergeError(
            f"Chain indices {out_of_range} are outside of the issued range 1..{n_chains}"
        )
    missing = sorted(set(range(1, n_chains + 1)) - set(ids))
    if missing:
        raise MergeError(f"Results of chains {missing} are missing")

    ordered = sorted(results, key=lambda result: result.chain_id)
    reference = ordered[0]
    for result in ordered[1:]:
        if _schema(result.draws) != _schema(reference.draws) or _schema(
            result.sample_stats
        ) != _schema(reference.sample_stats):
            raise MergeError(
                f"Chain {result.chain_id} holds different parameters than chain "
                f"{reference.chain_id}"
            )

    chain_index = pd.Index([result.chain_id for result in ordered], name="chain")
    return PosteriorDraws(
        posterior=xr.concat([result.draws for result in ordered], dim=chain_index),
        sample_stats=xr.concat([result.sample_stats for result in ordered], dim=chain_index),
    )


def exclude_draws(draws: PosteriorDraws, exclude: Iterable[str]) -> PosteriorDraws:
    """Drop excluded parameters from a draw collection."""
    return draws.drop_vars(exclude)


def _extra_dims(variable: xr.DataArray) -> tuple[str, ...]:
    """Dimensions of a variable besides chain and draw."""
    return tuple(str(dim) for dim in variable.dims if dim not in SAMPLE_DIMS)


def _split(variable: xr.DataArray, names: Sequence[str]) -> dict[str, xr.DataArray]:
    """Splits a vector-valued variable into one scalar variable per element."""
    dim = _extra_dims(variable)[0]
    return {
        name: variable.isel({dim: k}, drop=True) for k, name in enumerate(names)
    }


def rename_pars(draws: PosteriorDraws, artifacts) -> PosteriorDraws:
    """Replace engine parameter names with names referring to model terms.

    The following renamings are applied:

        - ``b`` is split into ``b_<coefficient>``
        - ``sd_<i>`` is split into ``sd_<group>__<coefficient>``
        - ``Cor_<i>`` is split into ``cor_<group>__<coef1>__<coef2>`` for every
          pair of coefficients
        - ``r_<i>_<k>`` becomes ``r_<group>__<coefficient>`` with a dimension
          named after the grouping factor whose coordinates are its levels
        - ``prior_sd_<i>`` becomes ``prior_sd_<group>``

    :param draws: Draws as returned by the engine
    :param artifacts: Build artifacts of the model
    :type artifacts: BuildArtifacts

    :returns: Renamed draws
    :rtype: PosteriorDraws
    """
    replacements: dict[str, dict[str, xr.DataArray]] = {}
    posterior = draws.posterior

    if "b" in posterior.data_vars and artifacts.population:
        replacements["b"] = _split(
            posterior["b"], [f"b_{coef}" for coef in artifacts.population]
        )

    for group in artifacts.ranef:
        i = group.id
        if f"sd_{i}" in posterior.data_vars:
            replacements[f"sd_{i}"] = _split(
                posterior[f"sd_{i}"], [f"sd_{group.group}__{coef}" for coef in group.coefs]
            )
        if f"Cor_{i}" in posterior.data_vars:
            cor = posterior[f"Cor_{i}"]
            row_dim, col_dim = _extra_dims(cor)
            replacements[f"Cor_{i}"] = {
                f"cor_{group.group}__{group.coefs[j]}__{group.coefs[k]}": cor.isel(
                    {row_dim: j, col_dim: k}, drop=True
                )
                for j in range(group.n_coefs)
                for k in range(j + 1, group.n_coefs)
            }
        for k, coef in enumerate(group.coefs, start=1):
            name = f"r_{i}_{k}"
            if name not in posterior.data_vars:
                continue
            effects = posterior[name]
            level_dim = _extra_dims(effects)[0]
            effects = effects.rename({level_dim: group.group})
            effects = effects.assign_coords({group.group: np.asarray(group.levels)})
            replacements[name] = {f"r_{group.group}__{coef}": effects}
        if f"prior_sd_{i}" in posterior.data_vars:
            replacements[f"prior_sd_{i}"] = {
                f"prior_sd_{group.group}": posterior[f"prior_sd_{i}"]
            }

    renamed: dict[str, xr.DataArray] = {}
    for name, variable in posterior.data_vars.items():
        for new_name, new_variable in replacements.get(str(name), {str(name): variable}).items():
            renamed[new_name] = new_variable

    return PosteriorDraws(
        posterior=xr.Dataset(renamed, attrs=posterior.attrs),
        sample_stats=draws.sample_stats,
    )
