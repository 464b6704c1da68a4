# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Autocorrelation structures of the response.

Only latent autoregressive residuals of order ``p`` are supported. Residuals
``e[n] = Y[n] - mu[n]`` of preceding observations of the same group are fed
back into the linear predictor through the coefficients ``ar``. Observations
are ordered by ``time`` within ``group`` before the model is built.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import numpy.typing as npt
import pandas as pd

from hierstan.exceptions import SpecificationError


@dataclass(frozen=True)
class CorAR:
    """Autoregressive residual structure of order ``p``.

    :ivar p: Order of the autoregressive process
    :ivar time: Column giving the ordering of observations, or None to use the
        order of the data
    :ivar group: Column defining independent series, or None for a single series
    """

    p: int = 1
    time: Optional[str] = None
    group: Optional[str] = None

    def __post_init__(self):
        if self.p < 1:
            raise SpecificationError(f"The AR order must be at least 1, got {self.p}")

    @property
    def variables(self) -> tuple[str, ...]:
        """Data columns the structure depends on."""
        return tuple(name for name in (self.time, self.group) if name is not None)

    def __str__(self) -> str:
        return f"ar(p={self.p}, time={self.time}, group={self.group})"


def cor_ar(p: int = 1, time: Optional[str] = None, group: Optional[str] = None) -> CorAR:
    """Create an autoregressive residual structure.

    Example:
        >>> fit = hierstan.fit_model(
        ...     "y ~ x", data=df, autocor=hierstan.cor_ar(p=1, time="t", group="id")
        ... )
    """
    return CorAR(p=p, time=time, group=group)


def order_data(data: pd.DataFrame, autocor: CorAR) -> pd.DataFrame:
    """Stably sort the data by group and time."""
    keys = [name for name in (autocor.group, autocor.time) if name is not None]
    if not keys:
        return data
    return data.sort_values(keys, kind="mergesort").reset_index(drop=True)


def compute_lags(data: pd.DataFrame, autocor: CorAR) -> npt.NDArray[np.int64]:
    """Number of lagged residuals each observation passes on to its successor.

    The returned array is 0 for the last observation of every series and
    otherwise the number of residuals (at most ``p``) the next observation can
    look back on. The data must already be ordered by :py:func:`order_data`.

    Example:
        >>> df = pd.DataFrame({"g": ["a", "a", "a", "b", "b"]})
        >>> compute_lags(df, CorAR(p=2, group="g"))
        array([1, 2, 0, 1, 0])
    """
    n = len(data)
    if autocor.group is None:
        series = np.zeros(n, dtype=np.int64)
    else:
        series = pd.factorize(data[autocor.group])[0]

    lags = np.zeros(n, dtype=np.int64)
    position = 0
    for i in range(n):
        position = position + 1 if i > 0 and series[i] == series[i - 1] else 1
        if i + 1 < n and series[i + 1] == series[i]:
            lags[i] = min(autocor.p, position)
    return lags
