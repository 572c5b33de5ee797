"""
loss.py
~~~~~~~

Cross-entropy loss over one-hot labels.
"""

from typing import Optional

import numpy as np

from .errors import LayerStateError
from .optimizers import EPSILON


class CrossEntropyLoss:
    """
    Summed cross-entropy between predicted class probabilities and
    one-hot labels.

    The loss is summed over the whole batch, not averaged, so its scale
    grows with the batch size.
    """

    def __init__(self):
        self.epsilon = EPSILON
        self.prediction_tensor: Optional[np.ndarray] = None
        self.label_tensor: Optional[np.ndarray] = None

    def forward(self, prediction_tensor: np.ndarray, label_tensor: np.ndarray) -> float:
        """
        Compute the loss and cache the inputs for :meth:`backward`.

        Args:
            prediction_tensor: ``B x C`` class probabilities
            label_tensor: ``B x C`` one-hot labels

        Returns:
            float: ``-sum(label * log(prediction + eps))``

        Raises:
            ValueError: If the shapes differ
        """
        prediction_tensor = np.asarray(prediction_tensor, dtype=np.float64)
        label_tensor = np.asarray(label_tensor, dtype=np.float64)
        if prediction_tensor.shape != label_tensor.shape:
            raise ValueError(
                f"Prediction and label tensors must have the same shape, "
                f"got {prediction_tensor.shape} and {label_tensor.shape}"
            )

        self.prediction_tensor = prediction_tensor
        self.label_tensor = label_tensor
        return float(-np.sum(label_tensor * np.log(prediction_tensor + self.epsilon)))

    def backward(self, label_tensor: np.ndarray) -> np.ndarray:
        """
        Gradient of the loss with respect to the cached prediction.

        Raises:
            LayerStateError: If :meth:`forward` has not been called
            ValueError: If ``label_tensor`` does not match the prediction
        """
        if self.prediction_tensor is None:
            raise LayerStateError("CrossEntropyLoss.backward called before forward")

        label_tensor = np.asarray(label_tensor, dtype=np.float64)
        if label_tensor.shape != self.prediction_tensor.shape:
            raise ValueError(
                f"Label tensor shape {label_tensor.shape} does not match "
                f"prediction shape {self.prediction_tensor.shape}"
            )
        return -(label_tensor / (self.prediction_tensor + self.epsilon))
