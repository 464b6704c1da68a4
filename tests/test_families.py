# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Tests for response families."""

import pytest

import hierstan

from hierstan.exceptions import FamilyError
from hierstan.model.families import Family, available_families, resolve_family


def test_resolve_by_name_uses_default_link():
    assert resolve_family("Poisson") == Family("poisson", "log")
    assert resolve_family("bernoulli").link == "logit"
    assert resolve_family(None) == hierstan.gaussian()


def test_resolve_family_object():
    family = hierstan.binomial(link="probit")
    assert resolve_family(family) is family


def test_aux_parameters():
    assert hierstan.gaussian().aux == ("sigma",)
    assert hierstan.student().aux == ("sigma", "nu")
    assert hierstan.student().aux_bounds == {"sigma": "0", "nu": "1"}
    assert hierstan.poisson().aux == ()
    assert hierstan.negbinomial().aux == ("shape",)


def test_likelihood_applies_inverse_link():
    assert hierstan.gaussian().likelihood("mu") == "normal_lpdf(Y | mu, sigma)"
    assert hierstan.poisson().likelihood("mu") == "poisson_lpmf(Y | exp(mu))"
    assert (
        hierstan.binomial().likelihood("mu")
        == "binomial_lpmf(Y | trials, inv_logit(mu))"
    )


@pytest.mark.parametrize(
    "make", [lambda: Family("weibull", "log"), lambda: hierstan.gaussian("logit")]
)
def test_invalid_family_or_link(make):
    with pytest.raises(FamilyError):
        make()


def test_unknown_name():
    with pytest.raises(FamilyError):
        resolve_family("zero_inflated_poisson")


def test_available_families():
    assert set(available_families()) == {
        "gaussian",
        "student",
        "poisson",
        "negbinomial",
        "bernoulli",
        "binomial",
    }
