# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Custom type definitions for hierstan.

This module provides type aliases used throughout the package for type hints
and documentation. The aliases are plain runtime objects so that they can be
checked by the typeguard import hook.
"""

from typing import Any, Callable, Mapping, Sequence, Union

import numpy as np
import numpy.typing as npt

# Scalar types
Integer = Union[int, np.integer]
"""Type alias for integer values.

Accepts both Python's built-in int and NumPy integer types.

:type: Union[int, np.integer]
"""

Float = Union[float, np.floating]
"""Type alias for floating-point values.

:type: Union[float, np.floating]
"""

# Build data
StanDataValue = Union[int, float, np.integer, np.floating, npt.NDArray]
"""Type alias for a single entry of the Stan build data.

:type: Union[int, float, np.integer, np.floating, npt.NDArray]
"""

StanData = dict[str, Any]
"""Build data handed to the inference engine, keyed by Stan variable name.

:type: dict[str, Any]
"""

# Initial values
InitDict = Mapping[str, Any]
"""Initial values of one chain, keyed by parameter name.

:type: Mapping[str, Any]
"""

InitSpec = Union[str, int, float, Sequence[InitDict], Callable[..., InitDict]]
"""Every form of initial-value specification accepted by the pipeline.

:type: Union[str, int, float, Sequence[InitDict], Callable[..., InitDict]]
"""

ResolvedInits = Union[None, int, float, list[dict[str, Any]]]
"""Initial values after resolution: ``None`` for engine-random inits, a scalar
shared by all chains, or one dictionary per chain.

:type: Union[None, int, float, list[dict[str, Any]]]
"""
