# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Tests for the normalization of model specifications."""

import numpy as np
import pandas as pd
import pytest

import hierstan

from hierstan.exceptions import DataError, FormulaError, SpecificationError
from hierstan.model.families import resolve_family
from hierstan.model.formula import parse_formula
from hierstan.model.spec import check_reuse, exclude_pars, normalize_spec, update_data


def test_normalize_spec(df):
    spec = normalize_spec("y ~ x + (1 | g)", df)
    assert spec.family == hierstan.gaussian()
    assert list(spec.data.columns) == ["y", "x", "g"]
    assert list(spec.data["g"].cat.categories) == ["a", "b", "c", "d"]
    assert spec.sample_prior == "no"
    assert spec.exclude == ("temp_Intercept", "r_1", "z_1")


def test_normalization_is_deterministic(df):
    first = normalize_spec("y ~ x + (1 | g)", df, prior=hierstan.set_prior("normal(0, 1)"))
    second = normalize_spec("y ~ x + (1 | g)", df, prior=hierstan.set_prior("normal(0, 1)"))
    assert first.equals(second)
    assert not first.equals(normalize_spec("y ~ x + (1 | g)", df))


def test_mapping_data_is_accepted(df):
    spec = normalize_spec("y ~ x", df.to_dict(orient="list"))
    assert len(spec.data) == 20


def test_rows_with_missing_values_are_dropped(df):
    df.loc[[0, 3], "x"] = np.nan
    with pytest.warns(UserWarning, match="Rows containing NAs were excluded from the model: 2"):
        spec = normalize_spec("y ~ x", df)
    assert len(spec.data) == 18


def test_no_rows_left(df):
    df["x"] = np.nan
    with pytest.warns(UserWarning), pytest.raises(DataError):
        normalize_spec("y ~ x", df)


@pytest.mark.parametrize(
    "formula, family",
    [
        ("y ~ missing", None),
        ("y ~ y", None),
        ("count ~ x", "binomial"),
        ("count | trials(t) ~ x", "poisson"),
    ],
)
def test_formula_does_not_match_data(df, formula, family):
    with pytest.raises(FormulaError):
        normalize_spec(formula, df, family=family)


@pytest.mark.parametrize(
    "formula, family",
    [
        ("y ~ x", "poisson"),
        ("x ~ count", "bernoulli"),
        ("g ~ x", None),
    ],
)
def test_response_violates_family(df, formula, family):
    with pytest.raises(DataError):
        normalize_spec(formula, df, family=family)


def test_boolean_response_for_bernoulli(df):
    df["hit"] = df["y"] > 1.0
    spec = normalize_spec("hit ~ x", df, family="bernoulli")
    assert spec.data["hit"].dtype == np.int64


def test_trials_bound_the_response(df):
    df["n"] = df["count"] + 1
    spec = normalize_spec("count | trials(n) ~ x", df, family="binomial")
    assert spec.formula.trials == "n"
    df["n"] = 1
    with pytest.raises(DataError):
        normalize_spec("count | trials(n) ~ x", df, family="binomial")


def test_autocor_only_for_gaussian_like_families(df):
    autocor = hierstan.cor_ar(time="t", group="g")
    spec = normalize_spec("y ~ x", df, autocor=autocor)
    assert list(spec.data["t"]) == list(range(5)) * 4
    with pytest.raises(SpecificationError):
        normalize_spec("count ~ x", df, family="poisson", autocor=autocor)


def test_sample_prior_values(df):
    prior = hierstan.set_prior("normal(0, 1)")
    assert normalize_spec("y ~ x", df, sample_prior=True).sample_prior == "yes"
    assert normalize_spec("y ~ x", df, prior=prior, sample_prior="only").sample_prior == "only"
    with pytest.raises(SpecificationError):
        normalize_spec("y ~ x", df, sample_prior="sometimes")


def test_cov_ranef_is_ordered_by_level(df):
    levels = ["d", "c", "b", "a"]
    cov = pd.DataFrame(np.diag([4.0, 3.0, 2.0, 1.0]), index=levels, columns=levels)
    spec = normalize_spec("y ~ x + (1 | g)", df, cov_ranef={"g": cov})
    np.testing.assert_array_equal(np.diag(spec.cov_ranef["g"]), [1.0, 2.0, 3.0, 4.0])
    assert spec.terms.groups[0].has_cov


@pytest.mark.parametrize(
    "cov",
    [
        np.eye(3),
        np.array([[1.0, 2.0, 0, 0], [2.0, 1.0, 0, 0], [0, 0, 1.0, 0], [0, 0, 0, 1.0]]),
        np.triu(np.ones((4, 4))),
    ],
)
def test_invalid_cov_ranef(df, cov):
    with pytest.raises(DataError):
        normalize_spec("y ~ x + (1 | g)", df, cov_ranef={"g": cov})


def test_cov_ranef_needs_a_grouping_factor(df):
    with pytest.raises(DataError):
        normalize_spec("y ~ x + (1 | g)", df, cov_ranef={"h": np.eye(4)})


def test_cov_ranef_with_correlated_effects(df):
    with pytest.raises(SpecificationError, match="cannot be combined"):
        normalize_spec("y ~ x + (1 + x | g)", df, cov_ranef={"g": np.eye(4)})
    spec = normalize_spec("y ~ x + (1 + x || g)", df, cov_ranef={"g": np.eye(4)})
    assert spec.cov_ranef["g"].shape == (4, 4)


def test_knots(df):
    spec = normalize_spec("y ~ x", df, knots={"x": [1.0, -1.0, 0.0]})
    assert spec.knots == {"x": (-1.0, 0.0, 1.0)}
    with pytest.raises(DataError):
        normalize_spec("y ~ x", df, knots={"t": [0.0]})


def test_stan_funs_is_deprecated(df):
    with pytest.warns(FutureWarning, match="stan_funs"):
        spec = normalize_spec("y ~ x", df, stan_funs="real two() { return 2; }")
    assert spec.stanvars.code("functions") == "real two() { return 2; }"


def test_exclude_pars(df):
    spec = normalize_spec("y ~ x + (1 + x | g)", df)
    assert exclude_pars(spec.terms) == ("temp_Intercept", "r_1", "z_1", "L_1")
    assert exclude_pars(spec.terms, save_all_pars=True) == ("temp_Intercept", "r_1")
    assert exclude_pars(spec.terms, save_ranef=False) == (
        "temp_Intercept",
        "r_1",
        "z_1",
        "L_1",
        "r_1_1",
        "r_1_2",
    )


def test_update_data_keeps_needed_columns(df):
    formula = parse_formula("y ~ x")
    updated = update_data(df, formula, resolve_family("gaussian"))
    assert list(updated.columns) == ["y", "x"]
    assert "count" in df.columns


def test_check_reuse(df):
    spec = normalize_spec("y ~ x + (1 | g)", df)
    check_reuse(spec, formula="y ~ 1 + x + (1 | g)", data=df, family="gaussian")
    with pytest.raises(SpecificationError, match="'formula'"):
        check_reuse(spec, formula="y ~ x")
    with pytest.raises(SpecificationError, match="'data'"):
        check_reuse(spec, data=df.assign(y=df["y"] + 1))
    with pytest.raises(SpecificationError, match="'prior'"):
        check_reuse(spec, prior=hierstan.set_prior("normal(0, 1)"))
