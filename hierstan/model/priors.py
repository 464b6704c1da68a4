# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Prior specifications for model parameters.

Priors are attached to *slots* identified by a parameter class (``b``,
``Intercept``, ``sd``, ``cor``, ``sigma``, ``nu``, ``shape`` or ``ar``) and,
optionally, a coefficient and a grouping factor. A prior set on a more specific
slot overrides the prior of the enclosing class:

    >>> priors = hierstan.set_prior("normal(0, 5)", class_="b") + hierstan.set_prior(
    ...     "normal(0, 1)", class_="b", coef="x"
    ... )

The prior itself is an opaque Stan distribution call such as ``"normal(0, 5)"``.
An empty string denotes an improper flat prior. :py:func:`get_prior` lists all
slots a model exposes together with their defaults, and :py:func:`check_prior`
merges user priors into those defaults, rejecting priors on slots that do not
exist.
"""

from __future__ import annotations

import re

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Union

import pandas as pd

from hierstan import defaults
from hierstan.exceptions import PriorError
from hierstan.model.terms import TermTree

PRIOR_CLASSES: tuple[str, ...] = tuple(defaults.DEFAULT_PRIORS)

_CALL = re.compile(r"^(?P<name>[A-Za-z_][A-Za-z0-9_]*)\s*\((?P<args>.*)\)$")


@dataclass(frozen=True)
class Prior:
    """A prior distribution attached to one parameter slot.

    :ivar prior: Stan distribution call such as ``"normal(0, 5)"``, or ``""``
        for a flat prior
    :ivar class_: Parameter class
    :ivar coef: Coefficient name, or ``""`` for the whole class
    :ivar group: Grouping factor, or ``""`` for all factors
    """

    prior: str
    class_: str = "b"
    coef: str = ""
    group: str = ""

    @property
    def slot(self) -> tuple[str, str, str]:
        """The (class, coef, group) triple this prior is attached to."""
        return (self.class_, self.coef, self.group)

    @property
    def distribution(self) -> str:
        """Name of the distribution, or ``""`` for a flat prior."""
        match = _CALL.match(self.prior.strip())
        return match.group("name") if match else ""

    @property
    def arguments(self) -> str:
        """Argument list of the distribution call."""
        match = _CALL.match(self.prior.strip())
        return match.group("args").strip() if match else ""

    def __add__(self, other: Union["Prior", "PriorSet"]) -> "PriorSet":
        return PriorSet((self,)) + other


@dataclass(frozen=True)
class PriorSet:
    """An ordered collection of priors."""

    priors: tuple[Prior, ...] = ()

    def __add__(self, other: Union[Prior, "PriorSet"]) -> "PriorSet":
        if isinstance(other, Prior):
            return PriorSet(self.priors + (other,))
        return PriorSet(self.priors + other.priors)

    def __iter__(self) -> Iterator[Prior]:
        return iter(self.priors)

    def __len__(self) -> int:
        return len(self.priors)

    def get(self, class_: str, coef: str = "", group: str = "") -> Optional[Prior]:
        """Return the prior of exactly the given slot, if present."""
        for prior in self.priors:
            if prior.slot == (class_, coef, group):
                return prior
        return None

    def lookup(self, class_: str, coef: str = "", group: str = "") -> Prior:
        """Resolve the effective prior of a slot.

        The coefficient-specific prior wins over the group-specific prior, which
        in turn wins over the class prior. Empty priors on more specific slots
        fall through to the enclosing slot.
        """
        candidates = [(class_, coef, group), (class_, "", group), (class_, "", "")]
        for slot in dict.fromkeys(candidates):
            prior = self.get(*slot)
            if prior is not None and prior.prior:
                return prior
        return Prior("", class_, coef, group)

    def to_frame(self) -> pd.DataFrame:
        """Tabular view with the columns prior, class, coef and group."""
        return pd.DataFrame(
            [
                {"prior": p.prior, "class": p.class_, "coef": p.coef, "group": p.group}
                for p in self.priors
            ],
            columns=["prior", "class", "coef", "group"],
        )


def set_prior(prior: str, class_: str = "b", coef: str = "", group: str = "") -> Prior:
    """Define a prior for a parameter slot.

    :param prior: Stan distribution call, e.g. ``"normal(0, 5)"``
    :param class_: Parameter class. Defaults to ``"b"``.
    :param coef: Name of a coefficient within the class. Defaults to ``""``.
    :param group: Grouping factor for group-level classes. Defaults to ``""``.

    :returns: The prior
    :rtype: Prior

    :raises PriorError: If the prior is malformed or the class unknown
    """
    result = Prior(prior=prior.strip(), class_=class_, coef=coef, group=group)
    _validate_prior(result)
    return result


def _validate_prior(prior: Prior) -> None:
    """Checks the syntax of a single prior."""
    if prior.class_ not in PRIOR_CLASSES:
        raise PriorError(
            f"Unknown parameter class '{prior.class_}'. Valid classes are: "
            + ", ".join(PRIOR_CLASSES)
        )
    text = prior.prior.strip()
    if text and _CALL.match(text) is None:
        raise PriorError(f"Malformed prior '{prior.prior}'; expected 'name(args)'")
    if text and (prior.class_ == "cor") != (prior.distribution == "lkj"):
        raise PriorError(
            "Correlation matrices require an 'lkj' prior, and 'lkj' is only valid "
            f"for class 'cor'; got '{prior.prior}' for class '{prior.class_}'"
        )


def prior_slots(tree: TermTree) -> list[tuple[str, str, str]]:
    """Every (class, coef, group) slot a model exposes, in canonical order."""
    slots: list[tuple[str, str, str]] = []
    if tree.population:
        slots.append(("b", "", ""))
        slots.extend(("b", coef, "") for coef in tree.population)
    if tree.intercept:
        slots.append(("Intercept", "", ""))
    if tree.groups:
        slots.append(("sd", "", ""))
        for factor in tree.grouping_factors:
            slots.append(("sd", "", factor))
            for group in tree.groups_of(factor):
                slots.extend(("sd", coef, factor) for coef in group.coefs)
    if any(group.has_cor for group in tree.groups):
        slots.append(("cor", "", ""))
        for factor in tree.grouping_factors:
            if any(group.has_cor for group in tree.groups_of(factor)):
                slots.append(("cor", "", factor))
    slots.extend((name, "", "") for name in tree.aux)
    return slots


def default_priors(tree: TermTree) -> PriorSet:
    """Default priors of every slot; specific slots inherit from their class."""
    return PriorSet(
        tuple(
            Prior(
                defaults.DEFAULT_PRIORS[class_] if not coef and not group else "",
                class_,
                coef,
                group,
            )
            for class_, coef, group in prior_slots(tree)
        )
    )


def get_prior(formula, data: pd.DataFrame, family=None, autocor=None) -> PriorSet:
    """List every prior slot of a model together with its default prior.

    :param formula: Model formula
    :param data: Data the model will be fit to
    :param family: Response family. Defaults to gaussian.
    :param autocor: Autocorrelation structure, if any

    :returns: Default priors for all slots
    :rtype: PriorSet

    Example:
        >>> hierstan.get_prior("y ~ x + (1 | g)", data=df).to_frame()
                        prior      class       coef group
        0                              b
        1                              b          x
        2  student_t(3, 0, 10)  Intercept
        ...
    """
    # Imported here to avoid a circular import with the spec module
    from hierstan.model.spec import build_tree  # pylint: disable=import-outside-toplevel

    return default_priors(build_tree(formula, data, family, autocor))


def as_prior_set(prior: Union[Prior, PriorSet, Iterable[Prior], None]) -> PriorSet:
    """Normalize user input into a :py:class:`PriorSet`."""
    if prior is None:
        return PriorSet()
    if isinstance(prior, Prior):
        return PriorSet((prior,))
    if isinstance(prior, PriorSet):
        return prior
    priors = tuple(prior)
    for item in priors:
        if not isinstance(item, Prior):
            raise PriorError(f"Expected Prior objects, got {type(item).__name__}")
    return PriorSet(priors)


def check_prior(
    prior: Union[Prior, PriorSet, Iterable[Prior], None],
    tree: TermTree,
    sample_prior: str = "no",
) -> PriorSet:
    """Validate user priors against a model and merge them into the defaults.

    :param prior: User-supplied priors
    :param tree: Term tree of the model
    :param sample_prior: One of ``"no"``, ``"yes"`` or ``"only"``

    :returns: The complete prior set of the model
    :rtype: PriorSet

    :raises PriorError: If a prior targets a slot that does not exist, the same
        slot is given twice, or a prior is malformed. Also raised when
        ``sample_prior="only"`` is requested while a population-level parameter
        keeps an improper flat prior.
    """
    user = as_prior_set(prior)
    merged = {p.slot: p for p in default_priors(tree)}

    seen: set[tuple[str, str, str]] = set()
    for item in user:
        _validate_prior(item)
        if item.slot in seen:
            raise PriorError(
                f"Duplicated prior specification for class '{item.class_}', "
                f"coef '{item.coef}', group '{item.group}'"
            )
        seen.add(item.slot)
        if item.slot not in merged:
            raise PriorError(
                f"Prior '{item.prior}' is assigned to class '{item.class_}', "
                f"coef '{item.coef}', group '{item.group}', which does not exist "
                "in the model. See get_prior for the valid slots."
            )
        merged[item.slot] = item

    result = PriorSet(tuple(merged.values()))
    if sample_prior == "only":
        flat = [
            f"b_{coef}"
            for coef in tree.population
            if not result.lookup("b", coef).prior
        ]
        if tree.intercept and not result.lookup("Intercept").prior:
            flat.append("Intercept")
        if flat:
            raise PriorError(
                "Sampling from priors is not possible as some parameters have no "
                f"proper priors: {', '.join(flat)}"
            )
    return result
