# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Tests for the resolution of initial values."""

import pytest

import hierstan

from hierstan.exceptions import InitError
from hierstan.model.inits import (
    chain_inits,
    registered_inits,
    resolve_inits,
    unregister_init,
)


@pytest.fixture
def registered():
    """Registers an init function for the duration of a test."""

    @hierstan.register_init("small")
    def small(chain_id):
        return {"sigma": 0.1 * chain_id}

    yield "small"
    unregister_init("small")


def test_scalar_specifications():
    assert resolve_inits("random", 4) is None
    assert resolve_inits(None, 4) is None
    assert resolve_inits("0", 4) == 0
    assert resolve_inits("0.5", 4) == 0.5
    assert resolve_inits(2, 4) == 2


def test_list_of_dicts():
    inits = resolve_inits([{"b": 1.0}, {"b": 2.0}], 2)
    assert inits == [{"b": 1.0}, {"b": 2.0}]
    assert chain_inits(inits, 1) == {"b": 2.0}
    assert chain_inits(0, 3) == 0


def test_list_length_must_match_chains():
    with pytest.raises(InitError, match="3 chains"):
        resolve_inits([{"b": 1.0}, {"b": 2.0}], 3)


def test_callables_are_evaluated_per_chain():
    assert resolve_inits(lambda: {"b": 0.0}, 2) == [{"b": 0.0}, {"b": 0.0}]
    assert resolve_inits(lambda chain_id: {"b": chain_id}, 3) == [
        {"b": 1},
        {"b": 2},
        {"b": 3},
    ]


def test_callable_must_return_mapping():
    with pytest.raises(InitError, match="mapping"):
        resolve_inits(lambda: [1.0], 2)


def test_callable_signature_is_checked():
    with pytest.raises(InitError, match="requires"):
        resolve_inits(lambda a, b: {"b": a}, 2)


def test_registered_names(registered):
    assert registered in registered_inits()
    assert resolve_inits(registered, 2) == [{"sigma": 0.1}, {"sigma": 0.2}]


def test_registering_twice_fails(registered):
    with pytest.raises(InitError):
        hierstan.register_init(registered)(lambda: {})


@pytest.mark.parametrize("name", ["random", "0"])
def test_reserved_names(name):
    with pytest.raises(InitError):
        hierstan.register_init(name)(lambda: {})


def test_unknown_name():
    with pytest.raises(InitError, match="Unknown initial values"):
        resolve_inits("jittered", 2)


def test_boolean_is_rejected():
    with pytest.raises(InitError):
        resolve_inits(True, 2)


def test_positive_number_is_a_radius_shared_by_every_chain():
    radius = resolve_inits("0.5", 3)
    assert radius == 0.5
    assert [chain_inits(radius, i) for i in range(3)] == [0.5, 0.5, 0.5]


@pytest.mark.parametrize("inits", [-1, -0.5, "-2"])
def test_negative_radius_is_rejected(inits):
    with pytest.raises(InitError, match="non-negative"):
        resolve_inits(inits, 2)
