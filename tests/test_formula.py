# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Tests for formula parsing."""

import pytest

from hierstan.exceptions import FormulaError
from hierstan.model.formula import PopulationTerm, parse_formula


def test_population_terms_and_crossing():
    formula = parse_formula("y ~ x * z + w")
    assert formula.response == "y"
    assert formula.intercept
    assert [t.label for t in formula.terms] == ["x", "z", "x:z", "w"]
    assert formula.group_terms == ()


def test_intercept_removal():
    assert not parse_formula("y ~ 0 + x").intercept
    assert not parse_formula("y ~ -1 + x").intercept
    assert not parse_formula("y ~ x - 1").intercept
    assert parse_formula("y ~ 1 + x").intercept


def test_group_terms():
    formula = parse_formula("y ~ x + (1 + x | g) + (1 || h)")
    correlated, uncorrelated = formula.group_terms
    assert correlated.group == "g"
    assert correlated.intercept
    assert correlated.terms == (PopulationTerm(("x",)),)
    assert correlated.correlated
    assert uncorrelated.group == "h"
    assert not uncorrelated.correlated
    assert formula.groups == ("g", "h")
    assert formula.variables == ("y", "x", "g", "h")


def test_group_term_without_intercept():
    term = parse_formula("y ~ (0 + x | g)").group_terms[0]
    assert not term.intercept
    assert [t.label for t in term.terms] == ["x"]


def test_trials():
    formula = parse_formula("k | trials(n) ~ x")
    assert formula.response == "k"
    assert formula.trials == "n"
    assert formula.variables == ("k", "n", "x")


def test_equal_spellings_compare_equal():
    assert parse_formula("y~x+x+(1|g)") == parse_formula(" y ~ 1 + x + ( 1 | g ) ")
    assert parse_formula("y ~ x") != parse_formula("y ~ 0 + x")


def test_str_is_canonical():
    assert str(parse_formula("y~x*z+(x||g)")) == "y ~ 1 + x + z + x:z + (1 + x || g)"


def test_parsed_formula_is_returned_unchanged():
    formula = parse_formula("y ~ x")
    assert parse_formula(formula) is formula


@pytest.mark.parametrize(
    "text",
    [
        "y x",
        "y ~ x ~ z",
        "y ~ ",
        "y ~ x +",
        "y ~ (1 | g",
        "y ~ x - z",
        "y ~ log(x)",
        "y | weights(w) ~ x",
        "y ~ (1 | g | h)",
        "y ~ (0 | g)",
        "1y ~ x",
    ],
)
def test_malformed_formulas(text):
    with pytest.raises(FormulaError):
        parse_formula(text)
