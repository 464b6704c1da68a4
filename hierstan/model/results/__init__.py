# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Draws and fits produced by hierstan.

Results are held in two layers:

   1. :py:class:`hierstan.model.results.draws.PosteriorDraws`, the draws of all
      chains as xarray Datasets with leading dimensions ``(chain, draw)``,
      assembled from per-chain
      :py:class:`~hierstan.model.results.draws.ChainResult` objects when chains
      run independently.
   2. :py:class:`hierstan.model.results.fit.FitResult`, returned by
      :py:func:`hierstan.fit_model`, which joins the draws with the model
      specification, the Stan program and the compiled model.

The ``inference_obj`` property of a fit provides an ArviZ InferenceData object,
allowing for further analysis using ArviZ's diagnostics and plotting functions:

    >>> fit = hierstan.fit_model("y ~ x", data=df)
    >>> fit.summary()
    >>> az.plot_trace(fit.inference_obj)
"""

from hierstan.model.results.draws import ChainResult, PosteriorDraws
