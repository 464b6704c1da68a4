# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Tests for the process-wide options."""

import pytest

import hierstan

from hierstan.exceptions import ConfigurationError
from hierstan.options import RunOptions, reset_options, snapshot_options


def test_defaults():
    assert snapshot_options() == RunOptions(cores=1, future=False)


def test_set_and_get():
    hierstan.set_option("cores", 3)
    hierstan.set_option("future", True)
    assert hierstan.get_option("cores") == 3
    assert hierstan.get_option("future") is True
    assert snapshot_options() == RunOptions(cores=3, future=True)


@pytest.mark.parametrize(
    "value, expected",
    [("yes", True), ("TRUE", True), ("1", True), ("no", False), ("off", False)],
)
def test_future_strings(value, expected):
    hierstan.set_option("future", value)
    assert hierstan.get_option("future") is expected


@pytest.mark.parametrize(
    "name, value",
    [
        ("cores", 0),
        ("cores", "many"),
        ("future", "maybe"),
        ("future", 2),
        ("threads", 4),
    ],
)
def test_invalid_options(name, value):
    with pytest.raises(ConfigurationError):
        hierstan.set_option(name, value)


def test_unknown_option_lookup():
    with pytest.raises(ConfigurationError):
        hierstan.get_option("threads")


def test_environment(monkeypatch):
    monkeypatch.setenv("HIERSTAN_CORES", "6")
    monkeypatch.setenv("HIERSTAN_FUTURE", "true")
    hierstan.set_option("cores", 2)
    reset_options()
    assert snapshot_options() == RunOptions(cores=6, future=True)


def test_snapshot_is_frozen():
    snapshot = snapshot_options()
    hierstan.set_option("cores", 8)
    assert snapshot.cores == 1
    with pytest.raises(AttributeError):
        snapshot.cores = 2
