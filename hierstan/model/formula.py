# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Parsing of model formulas into a structural term representation.

Formulas follow the familiar mixed-model notation::

    response [| trials(n)] ~ 1 + x + z + x:z + (1 + x | group) + (1 || other)

Supported right-hand-side terms are the intercept (``1``), intercept removal
(``0`` or ``-1``), column names, interactions (``a:b``), crossings (``a*b``,
expanding to ``a + b + a:b``) and group-level terms. Group-level terms use a
single bar for correlated effects and a double bar for uncorrelated effects.

The parser is purely syntactic. Checking that the named variables exist in the
data, and expanding categorical predictors into columns, happens later in
:py:mod:`hierstan.model.terms`.
"""

from __future__ import annotations

import itertools
import re

from dataclasses import dataclass
from typing import Union

from hierstan.exceptions import FormulaError

_NAME = re.compile(r"^[A-Za-z_.][A-Za-z0-9_.]*$")
_RESPONSE = re.compile(
    r"^\s*(?P<response>[A-Za-z_.][A-Za-z0-9_.]*)\s*"
    r"(?:\|\s*(?P<addition>[A-Za-z_]+)\s*\(\s*(?P<argument>[A-Za-z_.][A-Za-z0-9_.]*)\s*\)\s*)?$"
)
_ADDITION_TERMS = ("trials",)


@dataclass(frozen=True)
class PopulationTerm:
    """A main effect or an interaction of one or more variables.

    :ivar variables: Names of the interacting variables in the order written
    """

    variables: tuple[str, ...]

    @property
    def label(self) -> str:
        """Label of the term as written in a formula."""
        return ":".join(self.variables)

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True)
class GroupTerm:
    """A group-level (varying) effects term such as ``(1 + x | g)``.

    :ivar group: Name of the grouping factor
    :ivar intercept: Whether a varying intercept is included
    :ivar terms: Varying slopes
    :ivar correlated: Whether the effects are modeled as correlated
    """

    group: str
    intercept: bool
    terms: tuple[PopulationTerm, ...]
    correlated: bool = True

    def __str__(self) -> str:
        parts = ["1" if self.intercept else "0"] + [t.label for t in self.terms]
        bar = "|" if self.correlated else "||"
        return f"({' + '.join(parts)} {bar} {self.group})"


@dataclass(frozen=True)
class Formula:
    """Structural representation of a model formula.

    Two formulas are equal when they describe the same model, independent of
    whitespace and duplicated terms.

    :ivar response: Name of the response variable
    :ivar trials: Name of the variable holding the number of trials, if any
    :ivar intercept: Whether a population-level intercept is included
    :ivar terms: Population-level terms in order of first appearance
    :ivar group_terms: Group-level terms in order of appearance
    """

    response: str
    trials: str | None
    intercept: bool
    terms: tuple[PopulationTerm, ...]
    group_terms: tuple[GroupTerm, ...]

    @property
    def variables(self) -> tuple[str, ...]:
        """All data columns referenced by the formula, in order of appearance."""
        names = [self.response]
        if self.trials is not None:
            names.append(self.trials)
        for term in self.terms:
            names.extend(term.variables)
        for group_term in self.group_terms:
            for term in group_term.terms:
                names.extend(term.variables)
            names.append(group_term.group)
        return tuple(dict.fromkeys(names))

    @property
    def groups(self) -> tuple[str, ...]:
        """Names of the grouping factors, in order of appearance."""
        return tuple(dict.fromkeys(gt.group for gt in self.group_terms))

    def __str__(self) -> str:
        lhs = self.response
        if self.trials is not None:
            lhs += f" | trials({self.trials})"
        rhs = ["1" if self.intercept else "0"]
        rhs.extend(term.label for term in self.terms)
        rhs.extend(str(group_term) for group_term in self.group_terms)
        return f"{lhs} ~ {' + '.join(rhs)}"


def _split_top_level(text: str) -> list[tuple[str, str]]:
    """Split an expression on top-level ``+`` and ``-`` signs.

    Returns pairs of (sign, term). Parenthesized group terms are kept whole.
    """
    parts: list[tuple[str, str]] = []
    depth = 0
    sign = "+"
    current: list[str] = []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise FormulaError(f"Unbalanced parentheses in '{text}'")
        if depth == 0 and char in "+-":
            term = "".join(current).strip()
            if term:
                parts.append((sign, term))
            elif parts or sign == "-" or char == "+":
                raise FormulaError(f"Empty term in '{text}'")
            sign = char
            current = []
            continue
        current.append(char)

    if depth != 0:
        raise FormulaError(f"Unbalanced parentheses in '{text}'")
    term = "".join(current).strip()
    if not term:
        raise FormulaError(f"Formula '{text}' ends with a dangling operator")
    parts.append((sign, term))
    return parts


def _check_name(name: str, context: str) -> str:
    """Ensures that a variable name is syntactically valid."""
    name = name.strip()
    if not _NAME.match(name):
        raise FormulaError(f"Invalid variable name '{name}' in '{context}'")
    return name


def _expand_term(term: str) -> list[PopulationTerm]:
    """Expand a single population-level term into its constituent terms."""
    if "*" in term:
        names = [_check_name(n, term) for n in term.split("*")]
        expanded = []
        for size in range(1, len(names) + 1):
            for combination in itertools.combinations(names, size):
                expanded.append(PopulationTerm(combination))
        return expanded
    if ":" in term:
        return [PopulationTerm(tuple(_check_name(n, term) for n in term.split(":")))]
    return [PopulationTerm((_check_name(term, term),))]


def _parse_rhs(
    text: str, allow_groups: bool
) -> tuple[bool, list[PopulationTerm], list[GroupTerm]]:
    """Parse the right-hand side of a formula or the left side of a group term."""
    intercept = True
    terms: list[PopulationTerm] = []
    group_terms: list[GroupTerm] = []
    for sign, term in _split_top_level(text):
        if term in ("0", "1"):
            if sign == "-" and term == "0":
                raise FormulaError(f"Cannot remove '0' in '{text}'")
            intercept = term == "1" and sign == "+"
            continue
        if sign == "-":
            raise FormulaError(
                f"Removing terms other than the intercept is not supported: '-{term}'"
            )
        if term.startswith("(") and term.endswith(")"):
            if not allow_groups:
                raise FormulaError(f"Group-level terms cannot be nested: '{term}'")
            group_terms.append(_parse_group_term(term[1:-1]))
            continue
        if "(" in term or ")" in term or "|" in term:
            raise FormulaError(f"Unsupported term '{term}'")
        terms.extend(_expand_term(term))

    return intercept, list(dict.fromkeys(terms)), group_terms


def _parse_group_term(text: str) -> GroupTerm:
    """Parse the contents of a parenthesized group-level term."""
    if "||" in text:
        correlated = False
        pieces = text.split("||")
    else:
        correlated = True
        pieces = text.split("|")
    if len(pieces) != 2:
        raise FormulaError(f"Group-level term '({text})' must contain a single bar")
    lhs, group = pieces
    intercept, terms, _ = _parse_rhs(lhs, allow_groups=False)
    if not intercept and not terms:
        raise FormulaError(f"Group-level term '({text})' has no coefficients")
    return GroupTerm(
        group=_check_name(group, text),
        intercept=intercept,
        terms=tuple(terms),
        correlated=correlated,
    )


def parse_formula(formula: Union[str, Formula]) -> Formula:
    """Parse a formula string into a :py:class:`Formula`.

    :param formula: Formula text, or an already parsed formula which is returned
        unchanged
    :type formula: Union[str, Formula]

    :returns: Parsed formula
    :rtype: Formula

    :raises FormulaError: If the formula is malformed

    Example:
        >>> f = parse_formula("count ~ age * treat + (1 | patient)")
        >>> [t.label for t in f.terms]
        ['age', 'treat', 'age:treat']
        >>> f.group_terms[0].group
        'patient'
    """
    if isinstance(formula, Formula):
        return formula
    if not isinstance(formula, str):
        raise FormulaError(
            f"A formula must be a string or Formula, got {type(formula).__name__}"
        )

    sides = formula.split("~")
    if len(sides) != 2:
        raise FormulaError(f"Formula '{formula}' must contain exactly one '~'")
    lhs, rhs = sides

    match = _RESPONSE.match(lhs)
    if match is None:
        raise FormulaError(f"Invalid response specification '{lhs.strip()}'")
    addition = match.group("addition")
    if addition is not None and addition not in _ADDITION_TERMS:
        raise FormulaError(
            f"Unsupported addition term '{addition}'. Supported: "
            + ", ".join(_ADDITION_TERMS)
        )

    if not rhs.strip():
        raise FormulaError(f"Formula '{formula}' has an empty right-hand side")
    intercept, terms, group_terms = _parse_rhs(rhs, allow_groups=True)

    return Formula(
        response=match.group("response"),
        trials=match.group("argument"),
        intercept=intercept,
        terms=tuple(terms),
        group_terms=tuple(group_terms),
    )
