"""
layers.py
~~~~~~~~~

Differentiable layers: a fully connected layer and two activations.

Every layer caches exactly one tensor between a training ``forward`` and
the matching ``backward``. A small state flag enforces that pairing:
a second training forward before backward, or a backward with no
forward, raises :class:`~ffnet.errors.LayerStateError`.
"""

import logging
from typing import Any, Dict, Optional, Union

import numpy as np

from .errors import LayerStateError
from .initializers import Initializer
from .optimizers import Optimizer, OptimizerConfig

logger = logging.getLogger(__name__)


def _as_matrix(tensor: np.ndarray, name: str) -> np.ndarray:
    array = np.asarray(tensor, dtype=np.float64)
    if array.ndim != 2:
        raise ValueError(f"{name} must be a 2-D matrix, got shape {array.shape}")
    return array


class Layer:
    """Base class for all layers."""

    trainable = False

    def __init__(self):
        self._cache: Optional[np.ndarray] = None
        self._awaiting_backward = False

    def is_trainable(self) -> bool:
        return self.trainable

    @property
    def awaiting_backward(self) -> bool:
        """True between a training forward and its backward."""
        return self._awaiting_backward

    def forward(self, input_tensor: np.ndarray, training: bool = True) -> np.ndarray:
        """
        Compute the layer output.

        Args:
            input_tensor: ``B x In`` matrix
            training: When False the call is side-effect free: nothing is
                cached and no backward is expected.

        Returns:
            ``B x Out`` matrix

        Raises:
            LayerStateError: If a training forward is still waiting for
                its backward
            ValueError: If ``input_tensor`` has the wrong shape
        """
        input_tensor = _as_matrix(input_tensor, 'input_tensor')
        if not training:
            output, _ = self._forward(input_tensor)
            return output

        if self._awaiting_backward:
            raise LayerStateError(
                f"{type(self).__name__}.forward called twice without backward"
            )
        output, cache = self._forward(input_tensor)
        self._cache = cache
        self._awaiting_backward = True
        return output

    def backward(self, error_tensor: np.ndarray) -> np.ndarray:
        """
        Gradient of the loss with respect to this layer's input.

        Args:
            error_tensor: Gradient with respect to this layer's output

        Returns:
            Gradient with respect to this layer's input

        Raises:
            LayerStateError: If there is no preceding training forward
            ValueError: If ``error_tensor`` does not match the forward output
        """
        if not self._awaiting_backward:
            raise LayerStateError(
                f"{type(self).__name__}.backward called without a preceding forward"
            )
        error_tensor = _as_matrix(error_tensor, 'error_tensor')
        grad = self._backward(error_tensor, self._cache)
        self._cache = None
        self._awaiting_backward = False
        return grad

    def reset(self) -> None:
        """Drop any cached forward data and return to the idle state."""
        self._cache = None
        self._awaiting_backward = False

    def _forward(self, input_tensor):
        """Return ``(output, cache)``."""
        raise NotImplementedError

    def _backward(self, error_tensor, cache):
        raise NotImplementedError

    def _check_error_shape(self, error_tensor, expected_shape):
        if error_tensor.shape != expected_shape:
            raise ValueError(
                f"{type(self).__name__}.backward expected an error tensor of "
                f"shape {expected_shape}, got {error_tensor.shape}"
            )

    def describe(self) -> Dict[str, Any]:
        """JSON-serializable description of the layer."""
        return {'type': type(self).__name__}

    def __getstate__(self):
        # caches are transient; a pickled layer is always idle
        state = self.__dict__.copy()
        state['_cache'] = None
        state['_awaiting_backward'] = False
        return state

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Linear(Layer):
    """
    Fully connected layer.

    Weights and bias share one ``(in_features + 1) x out_features`` matrix
    whose last row is the bias. The forward pass appends a column of ones
    to the input so the whole transform is a single matrix product.
    """

    trainable = True

    def __init__(
        self,
        in_features: int,
        out_features: int,
        update_before_backprop: bool = False
    ):
        """
        Args:
            in_features: Width of the input
            out_features: Width of the output
            update_before_backprop: When True, ``backward`` applies the
                optimizer update first and computes the returned input
                gradient from the updated weights. The default uses the
                weights the forward pass actually saw.
        """
        super().__init__()
        if in_features < 1 or out_features < 1:
            raise ValueError(
                f"Layer dimensions must be positive, got {in_features}x{out_features}"
            )
        self.in_features = int(in_features)
        self.out_features = int(out_features)
        self.update_before_backprop = update_before_backprop
        self._weights = np.zeros((self.in_features + 1, self.out_features))
        self.grad_weights: Optional[np.ndarray] = None
        self.optimizer: Optional[Optimizer] = None

    @property
    def weights(self) -> np.ndarray:
        """Combined weight and bias matrix."""
        return self._weights

    @weights.setter
    def weights(self, value: np.ndarray) -> None:
        value = _as_matrix(value, 'weights')
        if value.shape != self._weights.shape:
            raise ValueError(
                f"Weights must have shape {self._weights.shape}, got {value.shape}"
            )
        self._weights = value.copy()

    @property
    def bias(self) -> np.ndarray:
        return self._weights[-1]

    def bind_optimizer(self, optimizer: Union[Optimizer, OptimizerConfig]) -> None:
        """Store a private optimizer built from ``optimizer``'s configuration."""
        if isinstance(optimizer, OptimizerConfig):
            self.optimizer = optimizer.build()
        else:
            self.optimizer = optimizer.clone()
        logger.debug(f"Bound {self.optimizer!r} to {self!r}")

    def initialize(
        self,
        weights_initializer: Initializer,
        bias_initializer: Initializer
    ) -> None:
        """Fill the weight rows and the bias row from the given initializers."""
        fan_in, fan_out = self.in_features, self.out_features
        self._weights[:-1] = weights_initializer.initialize(
            (fan_in, fan_out), fan_in, fan_out
        )
        self._weights[-1] = bias_initializer.initialize(
            (1, fan_out), fan_in, fan_out
        )

    def _forward(self, input_tensor):
        if input_tensor.shape[1] != self.in_features:
            raise ValueError(
                f"Linear layer expected {self.in_features} input features, "
                f"got {input_tensor.shape[1]}"
            )
        batch_size = input_tensor.shape[0]
        augmented = np.hstack([input_tensor, np.ones((batch_size, 1))])
        return augmented @ self._weights, augmented

    def _backward(self, error_tensor, augmented):
        self._check_error_shape(
            error_tensor, (augmented.shape[0], self.out_features)
        )
        self.grad_weights = augmented.T @ error_tensor

        if self.update_before_backprop:
            self._apply_update()
            return error_tensor @ self._weights[:-1].T

        input_grad = error_tensor @ self._weights[:-1].T
        self._apply_update()
        return input_grad

    def _apply_update(self):
        if self.optimizer is not None:
            self._weights = self.optimizer.update(self._weights, self.grad_weights)

    def describe(self):
        return {
            'type': 'Linear',
            'in_features': self.in_features,
            'out_features': self.out_features,
        }

    def __repr__(self):
        return f"Linear({self.in_features}, {self.out_features})"


class ReLU(Layer):
    """Rectified linear unit; caches its input."""

    def _forward(self, input_tensor):
        return np.maximum(input_tensor, 0.0), input_tensor

    def _backward(self, error_tensor, input_tensor):
        self._check_error_shape(error_tensor, input_tensor.shape)
        return error_tensor * (input_tensor > 0)


class SoftMax(Layer):
    """Row-wise softmax; caches its output."""

    def _forward(self, input_tensor):
        shifted = input_tensor - np.max(input_tensor, axis=1, keepdims=True)
        exp_values = np.exp(shifted)
        output = exp_values / np.sum(exp_values, axis=1, keepdims=True)
        return output, output

    def _backward(self, error_tensor, output):
        self._check_error_shape(error_tensor, output.shape)
        # Jacobian-vector product without building the Jacobian
        weighted_sum = np.sum(error_tensor * output, axis=1, keepdims=True)
        return output * (error_tensor - weighted_sum)
