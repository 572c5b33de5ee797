"""
optimizers.py
~~~~~~~~~~~~~

Gradient-based weight update rules.

An optimizer keeps per-instance state (velocity, moment estimates) that
is sized lazily from the first gradient it receives. Every trainable
layer owns a private optimizer built from a shared, immutable
:class:`OptimizerConfig`, so state never leaks between layers.
"""

import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np

logger = logging.getLogger(__name__)

# Numerical stability floor shared with the cross-entropy loss
EPSILON = np.finfo(np.float64).eps


class OptimizerKind(str, Enum):
    """Names accepted by :class:`OptimizerConfig`."""

    SGD = 'sgd'
    MOMENTUM = 'momentum'
    ADAM = 'adam'


@dataclass(frozen=True)
class OptimizerConfig:
    """
    Hyperparameters shared by every optimizer built from this config.

    Attributes:
        kind: Update rule to use
        learning_rate: Step size
        momentum: Velocity decay for the momentum rule
        mu: First moment decay for Adam
        rho: Second moment decay for Adam
    """

    kind: OptimizerKind = OptimizerKind.ADAM
    learning_rate: float = 1e-3
    momentum: float = 0.9
    mu: float = 0.9
    rho: float = 0.999

    def __post_init__(self):
        try:
            kind = OptimizerKind(self.kind)
        except ValueError:
            valid = ', '.join(k.value for k in OptimizerKind)
            raise ValueError(
                f"Unknown optimizer '{self.kind}'. Expected one of: {valid}"
            )
        object.__setattr__(self, 'kind', kind)

        if self.learning_rate <= 0:
            raise ValueError(
                f"learning_rate must be positive, got {self.learning_rate}"
            )
        for name in ('momentum', 'mu', 'rho'):
            value = getattr(self, name)
            if not 0.0 <= value < 1.0:
                raise ValueError(f"{name} must be in [0, 1), got {value}")

    def build(self) -> 'Optimizer':
        """Construct a fresh optimizer with zeroed state."""
        return _OPTIMIZERS[self.kind](self)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable form of the config."""
        data = asdict(self)
        data['kind'] = self.kind.value
        return data


class Optimizer:
    """Base class for update rules."""

    kind: OptimizerKind

    def __init__(self, config: Optional[OptimizerConfig] = None, **kwargs):
        """
        Args:
            config: Full configuration. When omitted, one is built from
                ``kwargs`` with this class's update rule.
        """
        if config is None:
            config = OptimizerConfig(kind=self.kind, **kwargs)
        elif not isinstance(config, OptimizerConfig):
            raise TypeError(
                f"config must be an OptimizerConfig, got {type(config).__name__}"
            )
        elif kwargs:
            raise TypeError("Pass either a config or keyword hyperparameters, not both")
        elif config.kind != self.kind:
            raise ValueError(
                f"{type(self).__name__} cannot be built from a "
                f"'{config.kind.value}' config"
            )
        self.config = config

    @property
    def learning_rate(self) -> float:
        return self.config.learning_rate

    def update(self, weights: np.ndarray, gradient: np.ndarray) -> np.ndarray:
        """
        Compute updated weights.

        Args:
            weights: Current weight matrix
            gradient: Gradient of the loss with respect to ``weights``

        Returns:
            New weight matrix of the same shape as ``weights``

        Raises:
            ValueError: If the shapes of ``weights`` and ``gradient`` differ,
                or ``gradient`` does not match previously stored state
        """
        if weights.shape != gradient.shape:
            raise ValueError(
                f"Weight tensor and gradient tensor must have the same shape, "
                f"got {weights.shape} and {gradient.shape}"
            )
        return self._step(weights, gradient)

    def _step(self, weights: np.ndarray, gradient: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _check_state(self, state: np.ndarray, gradient: np.ndarray) -> None:
        if state.shape != gradient.shape:
            raise ValueError(
                f"{type(self).__name__} state was sized for {state.shape}, "
                f"got a gradient of shape {gradient.shape}"
            )

    def clone(self) -> 'Optimizer':
        """Independent optimizer with the same hyperparameters and fresh state."""
        return self.config.build()

    def __repr__(self) -> str:
        params = ', '.join(
            f"{k}={v}" for k, v in self.config.to_dict().items() if k != 'kind'
        )
        return f"{type(self).__name__}({params})"


class GradientDescent(Optimizer):
    """Plain gradient descent: ``w - lr * g``."""

    kind = OptimizerKind.SGD

    def _step(self, weights, gradient):
        return weights - self.learning_rate * gradient


class MomentumGradientDescent(Optimizer):
    """Gradient descent with a velocity term."""

    kind = OptimizerKind.MOMENTUM

    def __init__(self, config: Optional[OptimizerConfig] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.velocity: Optional[np.ndarray] = None

    def _step(self, weights, gradient):
        if self.velocity is None:
            self.velocity = np.zeros_like(gradient, dtype=np.float64)
        self._check_state(self.velocity, gradient)

        self.velocity = (
            self.config.momentum * self.velocity
            - self.learning_rate * gradient
        )
        return weights + self.velocity


class Adam(Optimizer):
    """Adaptive moment estimation with bias correction."""

    kind = OptimizerKind.ADAM

    def __init__(self, config: Optional[OptimizerConfig] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.m: Optional[np.ndarray] = None
        self.s: Optional[np.ndarray] = None
        self.t = 0

    def _step(self, weights, gradient):
        if self.m is None:
            self.m = np.zeros_like(gradient, dtype=np.float64)
            self.s = np.zeros_like(gradient, dtype=np.float64)
        self._check_state(self.m, gradient)

        mu = self.config.mu
        rho = self.config.rho

        self.t += 1
        self.m = mu * self.m + (1 - mu) * gradient
        self.s = rho * self.s + (1 - rho) * np.square(gradient)

        m_hat = self.m / (1 - mu ** self.t)
        s_hat = self.s / (1 - rho ** self.t)

        return weights - self.learning_rate * m_hat / (np.sqrt(s_hat) + EPSILON)


_OPTIMIZERS = {
    OptimizerKind.SGD: GradientDescent,
    OptimizerKind.MOMENTUM: MomentumGradientDescent,
    OptimizerKind.ADAM: Adam,
}
