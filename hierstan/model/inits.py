# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Initial values of chains.

Initial values can be given in several forms, all of which are resolved once,
when a fit is requested, into either ``None`` (let the engine draw random
initial values), a scalar shared by every chain, or one dictionary per chain:

    - ``"random"``: random initial values drawn by the engine
    - ``"0"``: every parameter starts at zero on the unconstrained scale
    - A positive number ``x``: initial values are drawn uniformly from
      ``(-x, x)`` on the unconstrained scale
    - A list of dictionaries: element ``i`` initializes chain ``i + 1``
    - A callable: called once per chain, either without arguments or with the
      keyword argument ``chain_id``
    - The name of a function registered with :py:func:`register_init`

Registering a function makes it usable by name, for example from the command
line:

    >>> @hierstan.register_init("small")
    ... def small_inits(chain_id):
    ...     return {"sigma": 0.1 * chain_id}
    >>> fit = hierstan.fit_model("y ~ x", data=df, inits="small")
"""

from __future__ import annotations

import inspect

from typing import Any, Callable, Mapping, Optional

from hierstan import defaults
from hierstan.custom_types import InitSpec, ResolvedInits
from hierstan.exceptions import InitError

_REGISTRY: dict[str, Callable[..., Mapping[str, Any]]] = {}


def register_init(name: str) -> Callable:
    """Decorator registering a function generating initial values under a name.

    :param name: Name under which the function can be passed as ``inits``
    :type name: str

    :raises InitError: If the name is reserved or already registered
    """

    def decorator(func: Callable[..., Mapping[str, Any]]) -> Callable[..., Mapping[str, Any]]:
        if name in (defaults.DEFAULT_INITS, "0") or name in _REGISTRY:
            raise InitError(f"An initial value function named '{name}' already exists")
        _check_signature(func)
        _REGISTRY[name] = func
        return func

    return decorator


def unregister_init(name: str) -> None:
    """Remove a registered function."""
    _REGISTRY.pop(name, None)


def registered_inits() -> tuple[str, ...]:
    """Names of all registered functions."""
    return tuple(_REGISTRY)


def _check_signature(func: Callable) -> bool:
    """Whether ``func`` takes a ``chain_id`` argument; raises if it cannot be
    called with either no arguments or ``chain_id`` alone."""
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError) as e:
        raise InitError(f"Cannot inspect the initial value function {func!r}") from e

    parameters = signature.parameters
    takes_chain_id = "chain_id" in parameters or any(
        p.kind is inspect.Parameter.VAR_KEYWORD for p in parameters.values()
    )
    required = [
        name
        for name, p in parameters.items()
        if p.default is inspect.Parameter.empty
        and p.kind not in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)
        and name != "chain_id"
    ]
    if required:
        raise InitError(
            "Initial value functions may take no arguments besides 'chain_id', but "
            f"{getattr(func, '__name__', func)!r} requires: {', '.join(required)}"
        )
    return takes_chain_id


def _as_init_dict(value: Any, chain_id: int) -> dict[str, Any]:
    """Checks the initial values of one chain."""
    if not isinstance(value, Mapping):
        raise InitError(
            f"Initial values of chain {chain_id} must be a mapping from parameter "
            f"names to values, got {type(value).__name__}"
        )
    return dict(value)


def resolve_inits(inits: Optional[InitSpec], chains: int) -> ResolvedInits:
    """Resolve an initial value specification for a number of chains.

    :param inits: Initial value specification. None is treated as ``"random"``.
    :type inits: Optional[InitSpec]
    :param chains: Number of chains
    :type chains: int

    :returns: None for random inits, a scalar, or one dictionary per chain
    :rtype: ResolvedInits

    :raises InitError: If a list does not hold exactly one element per chain, a
        name is not registered, or a function returns something other than a
        mapping

    Example:
        >>> resolve_inits([{"sigma": 1.0}, {"sigma": 2.0}], chains=2)
        [{'sigma': 1.0}, {'sigma': 2.0}]
        >>> resolve_inits("0", chains=4)
        0
    """
    if inits is None:
        return None

    if isinstance(inits, str):
        if inits == defaults.DEFAULT_INITS:
            return None
        if inits == "0":
            return 0
        if inits in _REGISTRY:
            return resolve_inits(_REGISTRY[inits], chains)
        try:
            radius = float(inits)
        except ValueError:
            raise InitError(
                f"Unknown initial values '{inits}'. Use 'random', '0', a number or "
                f"one of the registered names: {', '.join(_REGISTRY) or 'none'}"
            ) from None
        return resolve_inits(radius, chains)

    if isinstance(inits, bool):
        raise InitError("Initial values cannot be a boolean")

    if isinstance(inits, (int, float)):
        if inits < 0:
            raise InitError(
                f"Initial values must be drawn from a non-negative range, got {inits}"
            )
        return inits

    if callable(inits):
        takes_chain_id = _check_signature(inits)
        return [
            _as_init_dict(inits(chain_id=chain_id) if takes_chain_id else inits(), chain_id)
            for chain_id in range(1, chains + 1)
        ]

    if isinstance(inits, Mapping):
        raise InitError(
            "A single dictionary of initial values is ambiguous; pass a list with "
            "one dictionary per chain"
        )

    values = list(inits)
    if len(values) != chains:
        raise InitError(
            f"Initial values were given for {len(values)} chains, but {chains} "
            "chains were requested"
        )
    return [_as_init_dict(value, i) for i, value in enumerate(values, start=1)]


def chain_inits(inits: ResolvedInits, index: int) -> Any:
    """Initial values of the chain at 0-based position ``index``.

    Scalars and ``None`` are shared by every chain.
    """
    if isinstance(inits, list):
        return inits[index]
    return inits
