# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Persistence of fits.

A fit requested with a ``file`` argument is looked up on disk before anything
else is done. If a valid fit is found it is returned as is; otherwise the model
is fit and the result stored under that file. Stored fits are never
overwritten by a successful lookup, so the file has to be removed to force
refitting.
"""

from __future__ import annotations

import logging
import os
import os.path
import pickle
import tempfile
import warnings

from typing import Optional, Union

from hierstan import defaults
from hierstan.model.results.fit import FitResult

logger = logging.getLogger(__name__)


def fit_file_path(file: Union[str, os.PathLike]) -> str:
    """Append the fit file extension unless it is already present.

    Example:
        >>> fit_file_path("fits/model")
        'fits/model.pkl'
    """
    path = os.fspath(file)
    if not path.endswith(defaults.FIT_FILE_EXTENSION):
        path += defaults.FIT_FILE_EXTENSION
    return path


def load_fit(file: Union[str, os.PathLike]) -> Optional[FitResult]:
    """Load a stored fit.

    :param file: Path of the fit, with or without extension

    :returns: The fit, with ``file`` set to the resolved path, or None if no
        valid fit is stored there. Unreadable files and files holding other
        objects are reported with a warning.
    """
    path = fit_file_path(file)
    if not os.path.exists(path):
        return None

    # Corrupted pickles fail with arbitrary exception types
    try:
        with open(path, "rb") as f:
            fit = pickle.load(f)
    except Exception as e:  # pylint: disable=broad-except
        warnings.warn(
            f"Could not read the fit stored in '{path}' ({type(e).__name__}: {e}). "
            "Refitting."
        )
        return None

    if not isinstance(fit, FitResult):
        warnings.warn(
            f"'{path}' does not hold a fit (found {type(fit).__name__}). Refitting."
        )
        return None

    try:
        fit = fit.with_file(path)
    except Exception as e:  # pylint: disable=broad-except
        warnings.warn(f"The fit stored in '{path}' is malformed ({e}). Refitting.")
        return None

    logger.info("Loaded fit from %s", path)
    return fit


def save_fit(fit: FitResult, file: Union[str, os.PathLike]) -> FitResult:
    """Store a fit.

    :param fit: The fit to store
    :param file: Path of the fit, with or without extension

    :returns: The fit with ``file`` set to the resolved path
    """
    path = fit_file_path(file)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    fit = fit.with_file(path)

    # The entry only appears once it is completely written
    fd, temp_path = tempfile.mkstemp(
        dir=directory or ".", prefix=".tmp-", suffix=defaults.FIT_FILE_EXTENSION
    )
    try:
        with os.fdopen(fd, "wb") as f:
            pickle.dump(fit, f)
        os.replace(temp_path, path)
    except BaseException:
        os.remove(temp_path)
        raise
    logger.info("Saved fit to %s", path)
    return fit
