# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""User-supplied fragments of Stan code.

Fragments are pasted verbatim at the end of the requested program block. A
fragment in the ``data`` block may carry a value, which is then added to the
build data under the fragment's name:

    >>> extra = hierstan.stanvar(
    ...     scode="real<lower=0> tau_scale;", block="data", name="tau_scale", value=2.5
    ... ) + hierstan.stanvar(scode="real half(real x) { return x / 2; }", block="functions")
"""

from __future__ import annotations

import warnings

from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union

from hierstan.exceptions import SpecificationError

BLOCKS: tuple[str, ...] = (
    "functions",
    "data",
    "tdata",
    "parameters",
    "tparameters",
    "model",
    "genquant",
)


@dataclass(frozen=True)
class StanVar:
    """A single Stan code fragment.

    :ivar scode: Stan code to insert
    :ivar block: Program block receiving the code
    :ivar name: Name of the data variable, required when ``value`` is given
    :ivar value: Value of the data variable
    """

    scode: str
    block: str = "data"
    name: Optional[str] = None
    value: Any = None

    def __post_init__(self):
        if self.block not in BLOCKS:
            raise SpecificationError(
                f"Unknown block '{self.block}' for stanvar. Valid blocks are: "
                + ", ".join(BLOCKS)
            )
        if self.value is not None:
            if self.block != "data":
                raise SpecificationError(
                    "Values can only be attached to stanvars in the 'data' block"
                )
            if not self.name:
                raise SpecificationError("Stanvars carrying a value need a name")

    def __add__(self, other: Union["StanVar", "StanVars"]) -> "StanVars":
        return StanVars((self,)) + other


@dataclass(frozen=True)
class StanVars:
    """An ordered collection of :py:class:`StanVar` fragments."""

    items: tuple[StanVar, ...] = ()

    def __post_init__(self):
        names = [item.name for item in self.items if item.name]
        if len(names) != len(set(names)):
            raise SpecificationError("Duplicated stanvar names")

    def __add__(self, other: Union[StanVar, "StanVars", None]) -> "StanVars":
        if other is None:
            return self
        if isinstance(other, StanVar):
            return StanVars(self.items + (other,))
        return StanVars(self.items + other.items)

    def __iter__(self) -> Iterator[StanVar]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def code(self, block: str) -> str:
        """Concatenated code of all fragments targeting ``block``."""
        return "\n".join(item.scode for item in self.items if item.block == block)

    def data(self) -> dict[str, Any]:
        """Values of data fragments keyed by name."""
        return {
            item.name: item.value
            for item in self.items
            if item.block == "data" and item.value is not None
        }

    @property
    def names(self) -> tuple[str, ...]:
        """Names of all named fragments."""
        return tuple(item.name for item in self.items if item.name)


def stanvar(
    value: Any = None,
    name: Optional[str] = None,
    scode: Optional[str] = None,
    block: str = "data",
) -> StanVars:
    """Create a collection holding a single Stan code fragment.

    When ``scode`` is omitted for a data fragment, a declaration is derived from
    the value: ``int`` or ``real`` for scalars, ``vector`` or ``array[] int``
    for one-dimensional sequences.

    :raises SpecificationError: If no code is given and none can be derived
    """
    if scode is None:
        scode = _declare(value, name)
    return StanVars((StanVar(scode=scode, block=block, name=name, value=value),))


def _declare(value: Any, name: Optional[str]) -> str:
    """Derives a Stan declaration for a data value."""
    if value is None or not name:
        raise SpecificationError("Either 'scode' or both 'value' and 'name' are needed")
    if isinstance(value, bool):
        return f"int {name};"
    if isinstance(value, int):
        return f"int {name};"
    if isinstance(value, float):
        return f"real {name};"
    values = list(value)
    if all(isinstance(v, int) and not isinstance(v, bool) for v in values):
        return f"array[{len(values)}] int {name};"
    return f"vector[{len(values)}] {name};"


def as_stanvars(
    stanvars: Union[StanVar, StanVars, None], stan_funs: Optional[str] = None
) -> StanVars:
    """Normalize user input into a :py:class:`StanVars` collection.

    The deprecated ``stan_funs`` string is appended as a ``functions`` fragment.
    """
    if stanvars is None:
        collection = StanVars()
    elif isinstance(stanvars, StanVar):
        collection = StanVars((stanvars,))
    else:
        collection = stanvars

    if stan_funs is not None:
        warnings.warn(
            "Argument 'stan_funs' is deprecated. Please use argument 'stanvars' "
            "instead.",
            FutureWarning,
            stacklevel=3,
        )
        collection = collection + StanVar(scode=stan_funs, block="functions")
    return collection
