# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Normalization of raw model specifications.

This module turns the user-facing arguments of :py:func:`hierstan.fit_model`
(formula, family, data, priors, autocorrelation, covariance matrices of
grouping factors, knots and extra program fragments) into a single immutable
:py:class:`ModelSpec`. All checks that can be made without generating or
compiling a program happen here, so that a malformed specification fails before
any expensive work is done.

The steps are run in a fixed order:

    1. :py:func:`validate_formula` checks the formula against the data, family
       and autocorrelation structure.
    2. :py:func:`update_data` reduces the data to what the model needs, removes
       incomplete rows and converts factors.
    3. :py:func:`hierstan.model.terms.build_terms` builds the term tree.
    4. :py:func:`hierstan.model.priors.check_prior` validates the priors.
    5. :py:func:`exclude_pars` decides which parameters are dropped from the
       output.
"""

from __future__ import annotations

import warnings

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Union

import numpy as np
import numpy.typing as npt
import pandas as pd

from hierstan import defaults
from hierstan.exceptions import DataError, FormulaError, SpecificationError
from hierstan.model.autocor import CorAR, order_data
from hierstan.model.families import Family, resolve_family
from hierstan.model.formula import Formula, parse_formula
from hierstan.model.priors import Prior, PriorSet, as_prior_set, check_prior
from hierstan.model.stanvars import StanVar, StanVars, as_stanvars
from hierstan.model.terms import TermTree, as_factor, build_terms, is_categorical


@dataclass(frozen=True, eq=False)
class ModelSpec:
    """A validated, canonical model specification.

    Instances are never modified once created. Equality of two specifications is
    tested with :py:meth:`equals`, which compares data frames and matrices by
    value.

    :ivar formula: Parsed formula
    :ivar family: Canonical response family
    :ivar data: Cleaned data, ordered as the model sees it
    :ivar terms: Term tree of the model
    :ivar priors: Complete prior set, user priors merged into the defaults
    :ivar user_priors: Priors as supplied by the user
    :ivar autocor: Autocorrelation structure, if any
    :ivar cov_ranef: Covariance matrices of grouping factors, ordered by level
    :ivar sparse: Whether the population-level design matrix is passed sparse
    :ivar knots: Knot values per variable
    :ivar stanvars: Extra program fragments
    :ivar sample_prior: One of ``"no"``, ``"yes"`` or ``"only"``
    :ivar exclude: Names of parameters dropped from the output
    """

    formula: Formula
    family: Family
    data: pd.DataFrame
    terms: TermTree
    priors: PriorSet
    user_priors: PriorSet = field(default_factory=PriorSet)
    autocor: Optional[CorAR] = None
    cov_ranef: dict[str, npt.NDArray[np.float64]] = field(default_factory=dict)
    sparse: bool = False
    knots: dict[str, tuple[float, ...]] = field(default_factory=dict)
    stanvars: StanVars = field(default_factory=StanVars)
    sample_prior: str = "no"
    exclude: tuple[str, ...] = ()

    def equals(self, other: Any) -> bool:
        """Whether two specifications describe the same model and data."""
        if not isinstance(other, ModelSpec):
            return False
        if set(self.cov_ranef) != set(other.cov_ranef):
            return False
        return (
            self.formula == other.formula
            and self.family == other.family
            and self.data.equals(other.data)
            and self.terms == other.terms
            and self.priors == other.priors
            and self.autocor == other.autocor
            and all(
                np.array_equal(matrix, other.cov_ranef[name])
                for name, matrix in self.cov_ranef.items()
            )
            and self.sparse == other.sparse
            and self.knots == other.knots
            and _stanvars_equal(self.stanvars, other.stanvars)
            and self.sample_prior == other.sample_prior
            and self.exclude == other.exclude
        )


def _stanvars_equal(first: StanVars, second: StanVars) -> bool:
    """Compares fragments, treating array values by content."""
    if len(first) != len(second):
        return False
    for a, b in zip(first, second):
        if (a.scode, a.block, a.name) != (b.scode, b.block, b.name):
            return False
        if not np.array_equal(np.asarray(a.value), np.asarray(b.value)):
            return False
    return True


def as_data_frame(data: Any) -> pd.DataFrame:
    """Coerce the user's data into a data frame."""
    if isinstance(data, pd.DataFrame):
        return data
    if isinstance(data, Mapping):
        try:
            return pd.DataFrame(dict(data))
        except ValueError as e:
            raise DataError(f"Cannot convert the data into a data frame: {e}") from e
    raise DataError(
        f"'data' must be a pandas DataFrame or a mapping, got {type(data).__name__}"
    )


def validate_formula(
    formula: Formula,
    data: pd.DataFrame,
    family: Family,
    autocor: Optional[CorAR] = None,
) -> None:
    """Check a parsed formula against the data, family and autocorrelation.

    :raises FormulaError: If variables are missing from the data, the response is
        used as a predictor, or ``trials()`` does not match the family
    :raises SpecificationError: If autocorrelation is combined with an
        unsupported family or link
    """
    needed = list(formula.variables)
    if autocor is not None:
        needed.extend(autocor.variables)
    missing = [name for name in dict.fromkeys(needed) if name not in data.columns]
    if missing:
        raise FormulaError(
            f"The following variables are missing in 'data': {', '.join(missing)}"
        )

    predictors = {name for term in formula.terms for name in term.variables}
    for group_term in formula.group_terms:
        predictors.update(name for term in group_term.terms for name in term.variables)
        predictors.add(group_term.group)
    if formula.response in predictors:
        raise FormulaError(
            f"The response '{formula.response}' cannot also be used as a predictor"
        )

    if family.response_type == "trials" and formula.trials is None:
        raise FormulaError(
            f"Family '{family.name}' requires the number of trials, e.g. "
            f"'{formula.response} | trials(n) ~ ...'"
        )
    if family.response_type != "trials" and formula.trials is not None:
        raise FormulaError(f"'trials()' is not allowed with family '{family.name}'")

    if autocor is not None and (
        family.name not in ("gaussian", "student") or family.link != "identity"
    ):
        raise SpecificationError(
            "Autocorrelation structures are only implemented for the gaussian and "
            "student families with identity link"
        )


def _check_response(data: pd.DataFrame, formula: Formula, family: Family) -> pd.DataFrame:
    """Ensures that the response satisfies the constraints of the family."""
    response = data[formula.response]
    if pd.api.types.is_bool_dtype(response.dtype) and family.response_type == "binary":
        data[formula.response] = response.astype(np.int64)
        response = data[formula.response]
    if not pd.api.types.is_numeric_dtype(response.dtype) or pd.api.types.is_bool_dtype(
        response.dtype
    ):
        raise DataError(f"The response '{formula.response}' must be numeric")

    values = response.to_numpy(dtype=np.float64)
    if not np.all(np.isfinite(values)):
        raise DataError(f"The response '{formula.response}' must be finite")
    if family.response_type == "real":
        return data

    if not np.all(values == np.round(values)):
        raise DataError(
            f"Family '{family.name}' requires an integer response, but "
            f"'{formula.response}' has fractional values"
        )
    data[formula.response] = values.astype(np.int64)
    if family.response_type == "count" and np.any(values < 0):
        raise DataError(f"Family '{family.name}' requires a non-negative response")
    if family.response_type == "binary" and not np.all(np.isin(values, (0, 1))):
        raise DataError(f"Family '{family.name}' requires a response of 0s and 1s")
    if family.response_type == "trials":
        trials = data[formula.trials].to_numpy(dtype=np.float64)
        if not np.all(trials == np.round(trials)) or np.any(trials < 1):
            raise DataError(f"'{formula.trials}' must hold positive integers")
        if np.any(values < 0) or np.any(values > trials):
            raise DataError(
                f"The response must lie between 0 and '{formula.trials}' for "
                f"family '{family.name}'"
            )
        data[formula.trials] = trials.astype(np.int64)
    return data


def update_data(
    data: pd.DataFrame,
    formula: Formula,
    family: Family,
    autocor: Optional[CorAR] = None,
    knots: Optional[Mapping[str, Iterable[float]]] = None,
) -> pd.DataFrame:
    """Reduce the data to the columns a model needs and clean them.

    Rows with missing values in any needed column are removed with a warning.
    Grouping factors and non-numeric predictors are converted to categoricals
    with sorted levels. With an autocorrelation structure the rows are stably
    sorted by group and time.

    :param data: Raw data
    :param formula: Validated formula
    :param family: Response family
    :param autocor: Autocorrelation structure, if any
    :param knots: Knot values, whose variables must appear in the formula

    :returns: A new data frame with a fresh integer index
    :raises DataError: If the data violate the family's constraints, knots
        reference unknown variables, or no rows remain
    """
    columns = list(formula.variables)
    if autocor is not None:
        columns.extend(autocor.variables)
    columns = list(dict.fromkeys(columns))

    updated = data[columns].copy()
    n_before = len(updated)
    updated = updated.dropna().reset_index(drop=True)
    if len(updated) < n_before:
        warnings.warn(
            f"Rows containing NAs were excluded from the model: {n_before - len(updated)}",
            UserWarning,
        )
    if updated.empty:
        raise DataError("No observations are left after removing missing values")

    factors = set(formula.groups)
    if autocor is not None and autocor.group is not None:
        factors.add(autocor.group)
    for name in columns:
        if name in (formula.response, formula.trials):
            continue
        if name in factors or is_categorical(updated[name]):
            updated[name] = as_factor(updated[name])

    updated = _check_response(updated, formula, family)

    for name in knots or {}:
        if name not in formula.variables:
            raise DataError(f"Knots were given for '{name}', which is not in the formula")

    if autocor is not None:
        updated = order_data(updated, autocor)
    return updated


def _check_knots(
    knots: Optional[Mapping[str, Iterable[float]]], formula: Formula
) -> dict[str, tuple[float, ...]]:
    """Converts knots into sorted tuples of finite floats."""
    result = {}
    for name, values in sorted((knots or {}).items()):
        if name not in formula.variables:
            raise DataError(f"Knots were given for '{name}', which is not in the formula")
        array = np.asarray(list(values), dtype=np.float64)
        if array.size == 0 or not np.all(np.isfinite(array)):
            raise DataError(f"Knots of '{name}' must be a non-empty set of finite values")
        result[name] = tuple(float(v) for v in np.sort(array))
    return result


def _check_cov_ranef(
    cov_ranef: Optional[Mapping[str, Any]], tree: TermTree
) -> dict[str, npt.NDArray[np.float64]]:
    """Validates covariance matrices and orders them by factor level."""
    result = {}
    for name, matrix in sorted((cov_ranef or {}).items()):
        if name not in tree.grouping_factors:
            raise DataError(f"'cov_ranef' refers to '{name}', which is not a grouping factor")
        levels = next(iter(tree.groups_of(name))).levels
        if isinstance(matrix, pd.DataFrame):
            index = [str(i) for i in matrix.index]
            columns = [str(c) for c in matrix.columns]
            missing = [level for level in levels if level not in index or level not in columns]
            if missing:
                raise DataError(
                    f"Levels of '{name}' are missing in its covariance matrix: "
                    + ", ".join(missing)
                )
            frame = matrix.copy()
            frame.index, frame.columns = index, columns
            array = frame.loc[list(levels), list(levels)].to_numpy(dtype=np.float64)
        else:
            array = np.asarray(matrix, dtype=np.float64)
        if array.shape != (len(levels), len(levels)):
            raise DataError(
                f"The covariance matrix of '{name}' must be of shape "
                f"({len(levels)}, {len(levels)}), got {array.shape}"
            )
        if not np.allclose(array, array.T):
            raise DataError(f"The covariance matrix of '{name}' must be symmetric")
        try:
            np.linalg.cholesky(array)
        except np.linalg.LinAlgError as e:
            raise DataError(
                f"The covariance matrix of '{name}' must be positive definite"
            ) from e

        for group in tree.groups_of(name):
            if group.has_cor:
                raise SpecificationError(
                    f"'cov_ranef' cannot be combined with correlated group-level "
                    f"effects of '{name}'. Use '||' to model them as uncorrelated."
                )
        result[name] = array
    return result


def exclude_pars(
    tree: TermTree, save_ranef: bool = True, save_all_pars: bool = False
) -> tuple[str, ...]:
    """Names of the Stan variables dropped from the output.

    :param tree: Term tree of the model
    :param save_ranef: Whether to keep the group-level effects ``r_*``
    :param save_all_pars: Whether to keep the standardized effects ``z_*`` and
        Cholesky factors ``L_*``

    :returns: Excluded variable names in program order
    """
    exclude = []
    if tree.intercept:
        exclude.append("temp_Intercept")
    for group in tree.groups:
        exclude.append(f"r_{group.id}")
        if not save_all_pars:
            exclude.append(f"z_{group.id}")
            if group.has_cor:
                exclude.append(f"L_{group.id}")
        if not save_ranef:
            exclude.extend(f"r_{group.id}_{k}" for k in range(1, group.n_coefs + 1))
    return tuple(exclude)


def _resolve_sample_prior(sample_prior: Union[str, bool]) -> str:
    """Maps logical values onto the string options of ``sample_prior``."""
    if isinstance(sample_prior, bool):
        return "yes" if sample_prior else "no"
    value = str(sample_prior).strip().lower()
    if value not in defaults.SAMPLE_PRIOR_OPTIONS:
        raise SpecificationError(
            f"'sample_prior' must be one of {', '.join(defaults.SAMPLE_PRIOR_OPTIONS)}, "
            f"got {sample_prior!r}"
        )
    return value


def build_tree(
    formula: Union[str, Formula],
    data: Any,
    family: Union[str, Family, None] = None,
    autocor: Optional[CorAR] = None,
) -> TermTree:
    """Run the cheap normalization steps and return the resulting term tree."""
    parsed = parse_formula(formula)
    resolved = resolve_family(family)
    frame = as_data_frame(data)
    validate_formula(parsed, frame, resolved, autocor)
    return build_terms(parsed, resolved, autocor, update_data(frame, parsed, resolved, autocor))


def normalize_spec(
    formula: Union[str, Formula],
    data: Any,
    family: Union[str, Family, None] = None,
    prior: Union[Prior, PriorSet, Iterable[Prior], None] = None,
    autocor: Optional[CorAR] = None,
    cov_ranef: Optional[Mapping[str, Any]] = None,
    sample_prior: Union[str, bool] = "no",
    sparse: bool = False,
    knots: Optional[Mapping[str, Iterable[float]]] = None,
    stanvars: Union[StanVar, StanVars, None] = None,
    stan_funs: Optional[str] = None,
    save_ranef: bool = True,
    save_all_pars: bool = False,
) -> ModelSpec:
    """Validate and canonicalize a raw model specification.

    :param formula: Model formula, as text or parsed
    :param data: Data frame, or a mapping convertible into one
    :param family: Response family. Defaults to gaussian.
    :param prior: User priors
    :param autocor: Autocorrelation structure
    :param cov_ranef: Covariance matrices of grouping factors, keyed by factor
    :param sample_prior: Whether to sample from the priors as well (``"yes"``)
        or only (``"only"``)
    :param sparse: Whether to pass the population-level design matrix sparse
    :param knots: Knot values per variable
    :param stanvars: Extra program fragments
    :param stan_funs: Deprecated. Stan functions, use ``stanvars`` instead.
    :param save_ranef: Whether to keep group-level effects in the output
    :param save_all_pars: Whether to keep all internal parameters in the output

    :returns: The canonical specification
    :rtype: ModelSpec

    :raises SpecificationError: Or one of its subclasses, for any invalid input
    """
    parsed = parse_formula(formula)
    resolved = resolve_family(family)
    frame = as_data_frame(data)
    sample_prior = _resolve_sample_prior(sample_prior)

    validate_formula(parsed, frame, resolved, autocor)
    updated = update_data(frame, parsed, resolved, autocor, knots)
    checked_knots = _check_knots(knots, parsed)

    cov_factors = tuple(sorted(cov_ranef or {}))
    tree = build_terms(parsed, resolved, autocor, updated, cov_factors=cov_factors)
    checked_cov = _check_cov_ranef(cov_ranef, tree)

    user_priors = as_prior_set(prior)
    priors = check_prior(user_priors, tree, sample_prior)

    return ModelSpec(
        formula=parsed,
        family=resolved,
        data=updated,
        terms=tree,
        priors=priors,
        user_priors=user_priors,
        autocor=autocor,
        cov_ranef=checked_cov,
        sparse=bool(sparse),
        knots=checked_knots,
        stanvars=as_stanvars(stanvars, stan_funs),
        sample_prior=sample_prior,
        exclude=exclude_pars(tree, save_ranef=save_ranef, save_all_pars=save_all_pars),
    )


def check_reuse(
    spec: ModelSpec,
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
) -> None:
    """Ensure that arguments passed alongside an existing fit match its model.

    Reusing a fit never regenerates its program. Every model argument that is
    given must therefore describe the model the fit was built from.

    :raises SpecificationError: If an argument differs from the fit's model
    """

    def differs(name: str) -> SpecificationError:
        return SpecificationError(
            f"Argument '{name}' differs from the model of the fit being reused. "
            "Fit the model anew to change it."
        )

    if formula is not None and parse_formula(formula) != spec.formula:
        raise differs("formula")
    if family is not None and resolve_family(family) != spec.family:
        raise differs("family")
    if autocor is not None and autocor != spec.autocor:
        raise differs("autocor")
    if data is not None:
        updated = update_data(
            as_data_frame(data), spec.formula, spec.family, spec.autocor, spec.knots
        )
        if not updated.equals(spec.data):
            raise differs("data")
    if prior is not None and as_prior_set(prior) != spec.user_priors:
        raise differs("prior")
    if cov_ranef is not None:
        checked = _check_cov_ranef(cov_ranef, spec.terms)
        if set(checked) != set(spec.cov_ranef) or not all(
            np.array_equal(matrix, spec.cov_ranef[name]) for name, matrix in checked.items()
        ):
            raise differs("cov_ranef")
    if sample_prior is not None and _resolve_sample_prior(sample_prior) != spec.sample_prior:
        raise differs("sample_prior")
    if sparse is not None and bool(sparse) != spec.sparse:
        raise differs("sparse")
    if knots is not None and _check_knots(knots, spec.formula) != spec.knots:
        raise differs("knots")
    if stanvars is not None or stan_funs is not None:
        if not _stanvars_equal(as_stanvars(stanvars, stan_funs), spec.stanvars):
            raise differs("stanvars")
