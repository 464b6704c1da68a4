# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Tests for design matrices, term trees and autocorrelation helpers."""

import numpy as np
import pandas as pd
import pytest

from hierstan.exceptions import FormulaError
from hierstan.model.autocor import CorAR, compute_lags, order_data
from hierstan.model.families import gaussian
from hierstan.model.formula import parse_formula
from hierstan.model.terms import as_factor, build_terms, design_matrix, group_index


@pytest.fixture
def frame():
    return pd.DataFrame(
        {
            "x": [1.0, 2.0, 3.0, 4.0],
            "f": as_factor(pd.Series(["b", "a", "c", "a"])),
            "g": as_factor(pd.Series(["u", "v", "u", "v"])),
        }
    )


def test_as_factor_sorts_levels():
    factor = as_factor(pd.Series([3, 1, 2, 1]))
    assert list(factor.cat.categories) == ["1", "2", "3"]


def test_as_factor_keeps_categorical_order():
    series = pd.Series(pd.Categorical(["lo", "hi"], categories=["lo", "mid", "hi"]))
    assert list(as_factor(series).cat.categories) == ["lo", "hi"]


def test_treatment_coding(frame):
    formula = parse_formula("y ~ x + f")
    matrix, labels = design_matrix(formula.intercept, formula.terms, frame)
    assert labels == ("x", "fb", "fc")
    np.testing.assert_array_equal(matrix[:, 1], [1.0, 0.0, 0.0, 0.0])
    np.testing.assert_array_equal(matrix[:, 2], [0.0, 0.0, 1.0, 0.0])


def test_full_coding_without_intercept(frame):
    formula = parse_formula("y ~ 0 + f + x")
    _, labels = design_matrix(formula.intercept, formula.terms, frame)
    assert labels == ("fa", "fb", "fc", "x")


def test_interaction_without_main_effect_codes_every_level(frame):
    formula = parse_formula("y ~ x:f")
    matrix, labels = design_matrix(formula.intercept, formula.terms, frame)
    assert labels == ("x:fa", "x:fb", "x:fc")
    np.testing.assert_array_equal(matrix[:, 0], [0.0, 2.0, 0.0, 4.0])
    np.testing.assert_array_equal(matrix[:, 1], [1.0, 0.0, 0.0, 0.0])


def test_interaction_with_main_effect_is_treatment_coded(frame):
    formula = parse_formula("y ~ x + x:f")
    _, labels = design_matrix(formula.intercept, formula.terms, frame)
    assert labels == ("x", "x:fb", "x:fc")


def test_factor_interaction_codes_against_present_margins(frame):
    formula = parse_formula("y ~ f + f:g")
    _, labels = design_matrix(formula.intercept, formula.terms, frame)
    assert labels == ("fb", "fc", "fa:gv", "fb:gv", "fc:gv")


def test_empty_design(frame):
    matrix, labels = design_matrix(True, (), frame)
    assert matrix.shape == (4, 0)
    assert labels == ()


def test_group_index_is_one_based(frame):
    np.testing.assert_array_equal(group_index(frame, "g"), [1, 2, 1, 2])


def test_build_terms(frame):
    frame = frame.assign(y=[0.1, 0.2, 0.3, 0.4])
    tree = build_terms(
        parse_formula("y ~ x + (1 + x | g) + (1 || f)"), gaussian(), None, frame
    )
    assert tree.population == ("x",)
    assert tree.intercept
    first, second = tree.groups
    assert (first.id, first.group, first.coefs) == (1, "g", ("Intercept", "x"))
    assert first.levels == ("u", "v")
    assert first.has_cor
    assert (second.id, second.coefs, second.has_cor) == (2, ("Intercept",), False)
    assert tree.aux == ("sigma",)
    assert tree.grouping_factors == ("g", "f")


def test_duplicated_group_coefficient(frame):
    frame = frame.assign(y=[0.1, 0.2, 0.3, 0.4])
    with pytest.raises(FormulaError):
        build_terms(parse_formula("y ~ (1 | g) + (1 + x || g)"), gaussian(), None, frame)


def test_compute_lags():
    data = pd.DataFrame({"g": ["a", "a", "a", "b", "b"]})
    np.testing.assert_array_equal(
        compute_lags(data, CorAR(p=2, group="g")), [1, 2, 0, 1, 0]
    )
    np.testing.assert_array_equal(compute_lags(data, CorAR(p=1)), [1, 1, 1, 1, 0])


def test_order_data_is_stable():
    data = pd.DataFrame({"g": ["b", "a", "b", "a"], "t": [2, 1, 1, 2], "v": [0, 1, 2, 3]})
    ordered = order_data(data, CorAR(time="t", group="g"))
    assert list(ordered["v"]) == [1, 3, 2, 0]
