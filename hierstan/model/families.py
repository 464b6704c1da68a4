# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Response distribution families and link functions.

Each family couples a Stan likelihood with a set of admissible link functions,
the auxiliary parameters it introduces (for example the residual standard
deviation ``sigma`` of the gaussian family), and the constraints the response
variable must satisfy.

Families can be requested by name or through the constructor functions
defined here, each of which accepts a ``link`` argument:

    >>> import hierstan
    >>> hierstan.poisson()
    Family(name='poisson', link='log')
    >>> hierstan.model.families.resolve_family("bernoulli")
    Family(name='bernoulli', link='logit')
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

from hierstan.exceptions import FamilyError

# Maps each link function to the Stan expression applying its inverse
INVERSE_LINKS: dict[str, str] = {
    "identity": "{}",
    "log": "exp({})",
    "inverse": "inv({})",
    "sqrt": "square({})",
    "logit": "inv_logit({})",
    "probit": "Phi({})",
    "cloglog": "inv_cloglog({})",
}


@dataclass(frozen=True)
class FamilyInfo:
    """Static description of a response family.

    :ivar links: Admissible links; the first one is the default
    :ivar aux: Auxiliary parameters as (name, Stan lower bound) pairs
    :ivar response: Constraint on the response variable
    :ivar likelihood: Stan log density template; ``{mu}`` is replaced with the
        mean on the response scale
    """

    links: tuple[str, ...]
    aux: tuple[tuple[str, str], ...]
    response: Literal["real", "count", "binary", "trials"]
    likelihood: str


_FAMILIES: dict[str, FamilyInfo] = {
    "gaussian": FamilyInfo(
        links=("identity", "log", "inverse"),
        aux=(("sigma", "0"),),
        response="real",
        likelihood="normal_lpdf(Y | {mu}, sigma)",
    ),
    "student": FamilyInfo(
        links=("identity", "log", "inverse"),
        aux=(("sigma", "0"), ("nu", "1")),
        response="real",
        likelihood="student_t_lpdf(Y | nu, {mu}, sigma)",
    ),
    "poisson": FamilyInfo(
        links=("log", "identity", "sqrt"),
        aux=(),
        response="count",
        likelihood="poisson_lpmf(Y | {mu})",
    ),
    "negbinomial": FamilyInfo(
        links=("log", "identity", "sqrt"),
        aux=(("shape", "0"),),
        response="count",
        likelihood="neg_binomial_2_lpmf(Y | {mu}, shape)",
    ),
    "bernoulli": FamilyInfo(
        links=("logit", "probit", "cloglog"),
        aux=(),
        response="binary",
        likelihood="bernoulli_lpmf(Y | {mu})",
    ),
    "binomial": FamilyInfo(
        links=("logit", "probit", "cloglog"),
        aux=(),
        response="trials",
        likelihood="binomial_lpmf(Y | trials, {mu})",
    ),
}


@dataclass(frozen=True)
class Family:
    """A response family together with its link function.

    :ivar name: Name of the family, e.g. ``"gaussian"``
    :ivar link: Name of the link function, e.g. ``"identity"``

    :raises FamilyError: If the family is unknown or the link is not supported
    """

    name: str
    link: str

    def __post_init__(self):
        if self.name not in _FAMILIES:
            raise FamilyError(
                f"Unknown family '{self.name}'. Supported families are: "
                + ", ".join(_FAMILIES)
            )
        if self.link not in self.info.links:
            raise FamilyError(
                f"Link '{self.link}' is not supported by family '{self.name}'. "
                f"Supported links are: {', '.join(self.info.links)}"
            )

    @property
    def info(self) -> FamilyInfo:
        """Static description of the family."""
        return _FAMILIES[self.name]

    @property
    def aux(self) -> tuple[str, ...]:
        """Names of the auxiliary parameters of the family."""
        return tuple(name for name, _ in self.info.aux)

    @property
    def aux_bounds(self) -> dict[str, str]:
        """Lower bound of each auxiliary parameter."""
        return dict(self.info.aux)

    @property
    def response_type(self) -> str:
        """Constraint on the response variable."""
        return self.info.response

    def inverse_link(self, expression: str) -> str:
        """Wrap a Stan expression in the inverse of the link function."""
        return INVERSE_LINKS[self.link].format(expression)

    def likelihood(self, mu: str = "mu") -> str:
        """Stan log density of the response given the linear predictor ``mu``."""
        return self.info.likelihood.format(mu=self.inverse_link(mu))


def _make(name: str, link: str | None) -> Family:
    """Builds a family, falling back to its default link."""
    if name not in _FAMILIES:
        raise FamilyError(f"Unknown family '{name}'")
    return Family(name=name, link=link or _FAMILIES[name].links[0])


def gaussian(link: str = "identity") -> Family:
    """Gaussian family with residual standard deviation ``sigma``."""
    return _make("gaussian", link)


def student(link: str = "identity") -> Family:
    """Student-t family with scale ``sigma`` and degrees of freedom ``nu``."""
    return _make("student", link)


def poisson(link: str = "log") -> Family:
    """Poisson family for counts."""
    return _make("poisson", link)


def negbinomial(link: str = "log") -> Family:
    """Negative binomial family for overdispersed counts, with ``shape``."""
    return _make("negbinomial", link)


def bernoulli(link: str = "logit") -> Family:
    """Bernoulli family for binary responses."""
    return _make("bernoulli", link)


def binomial(link: str = "logit") -> Family:
    """Binomial family; requires ``trials()`` in the formula."""
    return _make("binomial", link)


def resolve_family(family: Union[str, Family, None]) -> Family:
    """Convert a family name or object into a canonical :py:class:`Family`.

    :param family: Family name, family object, or None for gaussian
    :returns: Canonical family
    :rtype: Family

    :raises FamilyError: If the family cannot be resolved
    """
    if family is None:
        return gaussian()
    if isinstance(family, Family):
        return family
    if isinstance(family, str):
        return _make(family.strip().lower(), None)
    raise FamilyError(f"Cannot interpret {family!r} as a family")


def available_families() -> tuple[str, ...]:
    """Names of every supported family."""
    return tuple(_FAMILIES)
