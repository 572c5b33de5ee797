"""
initializers.py
~~~~~~~~~~~~~~~

Weight initializers for trainable layers.

Each initializer owns its own random generator, seeded at construction,
so two instances never share random state.
"""

import logging
from enum import Enum
from numbers import Integral
from typing import Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class InitializerKind(str, Enum):
    """Names accepted by :func:`make_initializer`."""

    UNIFORM = 'uniform'
    XAVIER = 'xavier'
    HE = 'he'


def _validate_shape(shape: Sequence[int]) -> tuple:
    """Return ``shape`` as a ``(rows, cols)`` tuple or raise ValueError."""
    try:
        dims = tuple(shape)
    except TypeError:
        raise ValueError(f"shape must be a sequence of two ints, got {shape!r}")

    if len(dims) != 2:
        raise ValueError(
            f"shape must have exactly two dimensions (rows and columns), "
            f"got {len(dims)}"
        )
    # numpy integer scalars are Integral; bools are not accepted as sizes
    if any(isinstance(d, bool) or not isinstance(d, Integral) for d in dims):
        raise ValueError(f"shape dimensions must be integers, got {shape!r}")
    dims = tuple(int(d) for d in dims)
    if dims[0] < 0 or dims[1] < 0:
        raise ValueError(f"shape dimensions must be non-negative, got {dims}")
    return dims


class Initializer:
    """Base class: produces an initial weight matrix of a requested shape."""

    kind: InitializerKind

    def __init__(self, seed: Optional[int] = None):
        """
        Args:
            seed: Seed for this instance's generator. ``None`` draws one
                from the operating system's entropy source.
        """
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def initialize(
        self,
        shape: Sequence[int],
        fan_in: float = 0,
        fan_out: float = 0
    ) -> np.ndarray:
        """
        Create a ``rows x cols`` matrix.

        Args:
            shape: ``(rows, cols)``
            fan_in: Number of input connections of the layer
            fan_out: Number of output connections of the layer

        Returns:
            np.ndarray of shape ``shape``

        Raises:
            ValueError: If ``shape`` is not two-dimensional
        """
        rows, cols = _validate_shape(shape)
        return self._sample(rows, cols, fan_in, fan_out)

    def _sample(self, rows: int, cols: int, fan_in: float, fan_out: float) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(seed={self.seed!r})"


class UniformRandom(Initializer):
    """Entries drawn uniformly from ``[-1, 1]``; fan-in/out are ignored."""

    kind = InitializerKind.UNIFORM

    def _sample(self, rows, cols, fan_in, fan_out):
        return self._rng.uniform(-1.0, 1.0, size=(rows, cols))


class Xavier(Initializer):
    """Glorot normal: std = sqrt(2 / (fan_in + fan_out))."""

    kind = InitializerKind.XAVIER

    def _sample(self, rows, cols, fan_in, fan_out):
        if fan_in + fan_out <= 0:
            raise ValueError(
                f"fan_in + fan_out must be positive, got {fan_in} + {fan_out}"
            )
        stddev = np.sqrt(2.0 / (fan_in + fan_out))
        return self._rng.normal(0.0, stddev, size=(rows, cols))


class He(Initializer):
    """He normal: std = sqrt(2 / fan_in)."""

    kind = InitializerKind.HE

    def _sample(self, rows, cols, fan_in, fan_out):
        if fan_in <= 0:
            raise ValueError(f"fan_in must be positive, got {fan_in}")
        stddev = np.sqrt(2.0 / fan_in)
        return self._rng.normal(0.0, stddev, size=(rows, cols))


_INITIALIZERS = {
    InitializerKind.UNIFORM: UniformRandom,
    InitializerKind.XAVIER: Xavier,
    InitializerKind.HE: He,
}


def make_initializer(kind, seed: Optional[int] = None) -> Initializer:
    """
    Build an initializer by name.

    Args:
        kind: An :class:`InitializerKind` or its string value
        seed: Optional seed for the new instance

    Returns:
        Initializer

    Raises:
        ValueError: If ``kind`` is not a known initializer
    """
    try:
        kind = InitializerKind(kind)
    except ValueError:
        valid = ', '.join(k.value for k in InitializerKind)
        raise ValueError(f"Unknown initializer '{kind}'. Expected one of: {valid}")

    logger.debug(f"Creating {kind.value} initializer with seed={seed}")
    return _INITIALIZERS[kind](seed=seed)
