# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Tests for prior specification and validation."""

import pytest

import hierstan

from hierstan.exceptions import PriorError
from hierstan.model.priors import Prior, PriorSet, check_prior
from hierstan.model.spec import build_tree


def test_set_prior_and_combination():
    priors = hierstan.set_prior("normal(0, 5)") + hierstan.set_prior(
        "normal(0, 1)", class_="b", coef="x"
    )
    assert isinstance(priors, PriorSet)
    assert len(priors) == 2
    assert priors.get("b", "x").prior == "normal(0, 1)"
    assert priors.get("sd") is None


def test_prior_parts():
    prior = Prior("student_t(3, 0, 10)", "sd")
    assert prior.distribution == "student_t"
    assert prior.arguments == "3, 0, 10"
    assert Prior("").distribution == ""


def test_lookup_falls_back_to_class():
    priors = PriorSet(
        (
            Prior("normal(0, 5)", "b"),
            Prior("", "b", "x"),
            Prior("normal(0, 1)", "b", "z"),
        )
    )
    assert priors.lookup("b", "x").prior == "normal(0, 5)"
    assert priors.lookup("b", "z").prior == "normal(0, 1)"
    assert priors.lookup("sigma").prior == ""


@pytest.mark.parametrize(
    "args",
    [
        ("normal(0, 1)", "beta"),
        ("normal 0 1", "b"),
        ("normal(0, 1)", "cor"),
        ("lkj(2)", "sd"),
    ],
)
def test_malformed_priors(args):
    with pytest.raises(PriorError):
        hierstan.set_prior(*args)


def test_get_prior_lists_all_slots(df):
    frame = hierstan.get_prior("y ~ x + (1 + x | g)", data=df).to_frame()
    assert list(frame.columns) == ["prior", "class", "coef", "group"]
    slots = list(zip(frame["class"], frame["coef"], frame["group"]))
    assert slots == [
        ("b", "", ""),
        ("b", "x", ""),
        ("Intercept", "", ""),
        ("sd", "", ""),
        ("sd", "", "g"),
        ("sd", "Intercept", "g"),
        ("sd", "x", "g"),
        ("cor", "", ""),
        ("cor", "", "g"),
        ("sigma", "", ""),
    ]
    defaults = dict(zip(frame["class"] + frame["coef"] + frame["group"], frame["prior"]))
    assert defaults["Intercept"] == "student_t(3, 0, 10)"
    assert defaults["cor"] == "lkj(1)"
    assert defaults["b"] == ""


def test_get_prior_with_family_and_autocor(df):
    frame = hierstan.get_prior(
        "y ~ x", data=df, family="student", autocor=hierstan.cor_ar(time="t", group="g")
    ).to_frame()
    assert list(frame["class"])[-3:] == ["sigma", "nu", "ar"]


def test_check_prior_merges_user_priors(df):
    tree = build_tree("y ~ x + (1 | g)", df)
    priors = check_prior(
        hierstan.set_prior("normal(0, 2)", class_="b")
        + hierstan.set_prior("exponential(1)", class_="sd", group="g"),
        tree,
    )
    assert priors.lookup("b", "x").prior == "normal(0, 2)"
    assert priors.lookup("sd", "Intercept", "g").prior == "exponential(1)"
    assert priors.lookup("sigma").prior == "student_t(3, 0, 10)"


@pytest.mark.parametrize(
    "prior",
    [
        Prior("normal(0, 1)", "b", "z"),
        Prior("normal(0, 1)", "sd", "", "h"),
        Prior("lkj(2)", "cor"),
        Prior("gamma(2, 0.1)", "nu"),
    ],
)
def test_check_prior_rejects_missing_slots(df, prior):
    tree = build_tree("y ~ x + (1 | g)", df)
    with pytest.raises(PriorError, match="does not exist"):
        check_prior(prior, tree)


def test_check_prior_rejects_duplicates(df):
    tree = build_tree("y ~ x", df)
    with pytest.raises(PriorError, match="Duplicated"):
        check_prior(
            hierstan.set_prior("normal(0, 1)") + hierstan.set_prior("normal(0, 2)"), tree
        )


def test_sample_prior_only_requires_proper_priors(df):
    tree = build_tree("y ~ x", df)
    with pytest.raises(PriorError, match="Sampling from priors is not possible"):
        check_prior(None, tree, sample_prior="only")
    check_prior(hierstan.set_prior("normal(0, 1)"), tree, sample_prior="only")
