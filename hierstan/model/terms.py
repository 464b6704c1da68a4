# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Internal term representation of a model and design matrix construction.

A :py:class:`TermTree` combines the parsed formula with the data it will be
fit to. It records the names of all population-level coefficients (after
categorical predictors have been expanded into treatment-coded columns) and
one :py:class:`GroupInfo` per group-level term, holding the coefficient names
and the levels of the grouping factor. The tree fully determines which
parameters exist in the generated program, and is therefore what priors are
validated against.

Design matrices are built by the same functions both when the tree is created
and when the build data is generated, so the column order in the program and in
the data always agree.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import numpy.typing as npt
import pandas as pd

from hierstan.exceptions import FormulaError
from hierstan.model.autocor import CorAR
from hierstan.model.families import Family
from hierstan.model.formula import Formula, GroupTerm, PopulationTerm


@dataclass(frozen=True)
class GroupInfo:
    """Metadata of one group-level term.

    :ivar id: 1-based index of the term, used in Stan variable names
    :ivar group: Name of the grouping factor
    :ivar coefs: Names of the varying coefficients
    :ivar levels: Levels of the grouping factor
    :ivar correlated: Whether the term was declared with a single bar
    :ivar has_cov: Whether a within-group covariance matrix was supplied
    """

    id: int
    group: str
    coefs: tuple[str, ...]
    levels: tuple[str, ...]
    correlated: bool
    term: GroupTerm
    has_cov: bool = False

    @property
    def n_coefs(self) -> int:
        """Number of varying coefficients."""
        return len(self.coefs)

    @property
    def has_cor(self) -> bool:
        """Whether correlations between coefficients are estimated."""
        return self.correlated and self.n_coefs > 1


@dataclass(frozen=True)
class TermTree:
    """Internal term representation of a fully specified model.

    :ivar formula: Parsed formula
    :ivar family: Response family
    :ivar autocor: Autocorrelation structure, if any
    :ivar population: Names of the population-level coefficients, without the
        intercept
    :ivar intercept: Whether a population-level intercept is estimated
    :ivar groups: Group-level terms
    """

    formula: Formula
    family: Family
    autocor: Optional[CorAR]
    population: tuple[str, ...]
    intercept: bool
    groups: tuple[GroupInfo, ...]

    @property
    def aux(self) -> tuple[str, ...]:
        """Auxiliary (distributional) parameters, including ``ar``."""
        return self.family.aux + (("ar",) if self.autocor is not None else ())

    @property
    def grouping_factors(self) -> tuple[str, ...]:
        """Names of the grouping factors, in order of appearance."""
        return tuple(dict.fromkeys(g.group for g in self.groups))

    def groups_of(self, factor: str) -> tuple[GroupInfo, ...]:
        """All group-level terms using the given grouping factor."""
        return tuple(g for g in self.groups if g.group == factor)


def is_categorical(series: pd.Series) -> bool:
    """Whether a column is treated as a factor rather than a numeric predictor."""
    return (
        isinstance(series.dtype, pd.CategoricalDtype)
        or pd.api.types.is_bool_dtype(series.dtype)
        or pd.api.types.is_object_dtype(series.dtype)
        or pd.api.types.is_string_dtype(series.dtype)
    )


def as_factor(series: pd.Series) -> pd.Series:
    """Convert a column to a categorical with string levels.

    Existing categorical orderings are kept, unused levels are dropped, and
    other columns get their distinct values sorted as levels.
    """
    if isinstance(series.dtype, pd.CategoricalDtype):
        present = set(series.astype(str))
        levels = [str(c) for c in series.cat.categories if str(c) in present]
    else:
        levels = sorted(set(series.astype(str)))
    return pd.Series(
        pd.Categorical(series.astype(str), categories=levels),
        index=series.index,
        name=series.name,
    )


def _variable_columns(
    name: str, data: pd.DataFrame, full_coding: bool
) -> list[tuple[str, npt.NDArray[np.float64]]]:
    """Columns contributed by one variable."""
    series = data[name]
    if not isinstance(series.dtype, pd.CategoricalDtype):
        return [(name, series.to_numpy(dtype=np.float64))]
    levels = list(series.cat.categories)
    used = levels if full_coding else levels[1:]
    return [(f"{name}{level}", (series == level).to_numpy(dtype=np.float64)) for level in used]


def _term_columns(
    term: PopulationTerm, data: pd.DataFrame, full_coding: tuple[bool, ...]
) -> list[tuple[str, npt.NDArray[np.float64]]]:
    """Columns contributed by a main effect or interaction.

    ``full_coding`` holds one flag per variable of the term.
    """
    columns = [("", np.ones(len(data), dtype=np.float64))]
    for name, full in zip(term.variables, full_coding):
        columns = [
            (f"{label}:{new_label}" if label else new_label, values * new_values)
            for label, values in columns
            for new_label, new_values in _variable_columns(name, data, full)
        ]
    return columns


def design_matrix(
    intercept: bool, terms: tuple[PopulationTerm, ...], data: pd.DataFrame
) -> tuple[npt.NDArray[np.float64], tuple[str, ...]]:
    """Build a treatment-coded design matrix without the intercept column.

    When no intercept is estimated, the first purely categorical main effect is
    coded with one column per level so that the model stays full rank. Within an
    interaction, a factor is coded with one column per level unless the term
    left after removing it is also part of the model, e.g. ``f`` in ``x:f`` is
    fully coded while in ``x + x:f`` it is treatment coded.

    :param intercept: Whether the model estimates an intercept
    :param terms: Population-level terms
    :param data: Data whose factor columns have been converted with
        :py:func:`as_factor`

    :returns: Matrix of shape (N, K) and the K column labels
    :raises FormulaError: If two terms produce the same column
    """
    columns: list[tuple[str, npt.NDArray[np.float64]]] = []
    present = {frozenset(term.variables) for term in terms}
    full_coding_used = intercept
    for term in terms:
        if len(term.variables) > 1:
            full_coding = tuple(
                frozenset(v for v in term.variables if v != name) not in present
                for name in term.variables
            )
        elif not full_coding_used and isinstance(
            data[term.variables[0]].dtype, pd.CategoricalDtype
        ):
            full_coding = (True,)
            full_coding_used = True
        else:
            full_coding = (False,)
        columns.extend(_term_columns(term, data, full_coding))

    labels = tuple(label for label, _ in columns)
    if len(labels) != len(set(labels)):
        raise FormulaError(f"Duplicated design matrix columns: {', '.join(labels)}")
    if columns:
        matrix = np.column_stack([values for _, values in columns])
    else:
        matrix = np.zeros((len(data), 0), dtype=np.float64)
    return matrix, labels


def group_design(
    term: GroupTerm, data: pd.DataFrame
) -> tuple[npt.NDArray[np.float64], tuple[str, ...]]:
    """Design matrix of a group-level term, including its intercept column."""
    matrix, labels = design_matrix(term.intercept, term.terms, data)
    if term.intercept:
        matrix = np.column_stack([np.ones(len(data), dtype=np.float64), matrix])
        labels = ("Intercept",) + labels
    return matrix, labels


def group_index(data: pd.DataFrame, factor: str) -> npt.NDArray[np.int64]:
    """1-based level index of every observation for a grouping factor."""
    return data[factor].cat.codes.to_numpy(dtype=np.int64) + 1


def build_terms(
    formula: Formula,
    family: Family,
    autocor: Optional[CorAR],
    data: pd.DataFrame,
    cov_factors: tuple[str, ...] = (),
) -> TermTree:
    """Create the term tree of a model from updated data.

    :param formula: Parsed formula
    :param family: Response family
    :param autocor: Autocorrelation structure, if any
    :param data: Data returned by :py:func:`hierstan.model.spec.update_data`
    :param cov_factors: Grouping factors with a user-supplied covariance matrix

    :returns: The term tree
    :raises FormulaError: If a group-level coefficient is declared twice for the
        same grouping factor
    """
    _, population = design_matrix(formula.intercept, formula.terms, data)

    groups = []
    seen: set[tuple[str, str]] = set()
    for group_id, term in enumerate(formula.group_terms, start=1):
        _, coefs = group_design(term, data)
        for coef in coefs:
            if (term.group, coef) in seen:
                raise FormulaError(
                    f"Group-level coefficient '{coef}' is specified more than once "
                    f"for grouping factor '{term.group}'"
                )
            seen.add((term.group, coef))
        groups.append(
            GroupInfo(
                id=group_id,
                group=term.group,
                coefs=coefs,
                levels=tuple(data[term.group].cat.categories),
                correlated=term.correlated,
                term=term,
                has_cov=term.group in cov_factors,
            )
        )

    return TermTree(
        formula=formula,
        family=family,
        autocor=autocor,
        population=population,
        intercept=formula.intercept,
        groups=tuple(groups),
    )
