# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""The final product of a fitting run.

A :py:class:`FitResult` joins the immutable pieces produced along the pipeline:
the model specification, the generated build artifacts, the compiled model and
the merged, renamed draws. It is never modified; bookkeeping such as the file
the fit was stored in produces a new object via :py:meth:`FitResult.with_file`.
"""

from __future__ import annotations

import dataclasses

from dataclasses import dataclass, field
from typing import Any, Optional

import arviz as az
import numpy as np
import pandas as pd
import xarray as xr

from hierstan.model.results.draws import SAMPLE_DIMS, PosteriorDraws
from hierstan.model.spec import ModelSpec
from hierstan.model.stan.compiler import CompiledModel
from hierstan.model.stan.program import BuildArtifacts


@dataclass(frozen=True, eq=False)
class FitResult:
    """Results of fitting a model.

    :ivar spec: Model specification
    :ivar artifacts: Program, build data and term metadata
    :ivar compiled: The compiled model the draws were produced with
    :ivar draws: Merged draws of all chains
    :ivar algorithm: Estimation algorithm
    :ivar file: Path the fit is stored at, if any
    :ivar criteria: Model comparison statistics attached after fitting
    """

    spec: ModelSpec
    artifacts: BuildArtifacts
    compiled: CompiledModel
    draws: PosteriorDraws
    algorithm: str
    file: Optional[str] = None
    criteria: dict[str, Any] = field(default_factory=dict)

    @property
    def posterior(self) -> xr.Dataset:
        """Parameter draws."""
        return self.draws.posterior

    @property
    def sample_stats(self) -> xr.Dataset:
        """Per-iteration sampler diagnostics."""
        return self.draws.sample_stats

    @property
    def code(self) -> str:
        """Stan program of the model."""
        return self.artifacts.code

    @property
    def n_chains(self) -> int:
        """Number of chains."""
        return self.draws.n_chains

    @property
    def inference_obj(self) -> az.InferenceData:
        """The draws as an ArviZ InferenceData object."""
        return az.InferenceData(posterior=self.posterior, sample_stats=self.sample_stats)

    def summary(self, quantiles: tuple[float, ...] = (0.025, 0.975)) -> pd.DataFrame:
        """Posterior mean, standard deviation and quantiles of every parameter.

        Draws of all chains are pooled. Elements of vector-valued parameters are
        reported on separate rows labeled with their coordinates, e.g.
        ``r_g__Intercept[a]``.

        :param quantiles: Quantiles to report. Defaults to (0.025, 0.975).
        :type quantiles: tuple[float, ...]

        :returns: One row per parameter element
        :rtype: pd.DataFrame
        """
        rows = {}
        for name, variable in self.posterior.data_vars.items():
            extra = [dim for dim in variable.dims if dim not in SAMPLE_DIMS]
            values = variable.transpose(*SAMPLE_DIMS, *extra).values
            pooled = values.reshape(values.shape[0] * values.shape[1], -1)
            if extra:
                labels = [
                    f"{name}[{','.join(str(variable[d].values[i]) for d, i in zip(extra, index))}]"
                    for index in np.ndindex(*values.shape[2:])
                ]
            else:
                labels = [str(name)]
            for label, column in zip(labels, pooled.T):
                row = {"mean": column.mean(), "sd": column.std(ddof=1)}
                for q, value in zip(quantiles, np.quantile(column, quantiles)):
                    row[f"q{100 * q:g}"] = value
                rows[label] = row

        frame = pd.DataFrame.from_dict(rows, orient="index")
        frame.index.name = "parameter"
        return frame

    def with_file(self, file: Optional[str]) -> "FitResult":
        """Copy of the fit recording the file it is stored at."""
        return dataclasses.replace(self, file=file)

    def with_criteria(self, **criteria: Any) -> "FitResult":
        """Copy of the fit with additional model comparison statistics."""
        return dataclasses.replace(self, criteria={**self.criteria, **criteria})

    def reset_criteria(self) -> "FitResult":
        """Copy of the fit without model comparison statistics."""
        return dataclasses.replace(self, criteria={})

    def equals(self, other: Any) -> bool:
        """Whether two fits are identical, ignoring the file they are stored at."""
        if not isinstance(other, FitResult):
            return False
        return (
            self.spec.equals(other.spec)
            and self.artifacts.equals(other.artifacts)
            and self.compiled == other.compiled
            and self.draws.equals(other.draws)
            and self.algorithm == other.algorithm
            and self.criteria.keys() == other.criteria.keys()
        )

    def __repr__(self) -> str:
        return (
            f"FitResult(formula='{self.spec.formula}', family={self.spec.family.name}, "
            f"algorithm={self.algorithm}, chains={self.draws.n_chains}, "
            f"draws={self.draws.n_draws}, file={self.file!r})"
        )
