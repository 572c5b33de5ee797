"""
network.py
~~~~~~~~~~

Network orchestration: an ordered stack of layers, a loss and a data
source, trained one batch at a time by backpropagation.

A training step is a FORWARD phase (pull a batch, thread it through the
layers, compute the loss) followed by a BACKWARD phase (seed gradient
from the loss, thread it through the layers in reverse; trainable layers
update their own weights).
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np

from .errors import LayerStateError
from .initializers import Initializer
from .layers import Layer, Linear
from .loss import CrossEntropyLoss
from .optimizers import Optimizer, OptimizerConfig

logger = logging.getLogger(__name__)


class Network:
    """
    Feed-forward network.

    Example:
        >>> net = Network(Adam(), He(seed=1), He(seed=2), train_data)
        >>> net.append_layer(Linear(784, 500))
        >>> net.append_layer(ReLU())
        >>> net.append_layer(Linear(500, 10))
        >>> net.append_layer(SoftMax())
        >>> losses = net.train(100)
    """

    def __init__(
        self,
        optimizer: Union[Optimizer, OptimizerConfig],
        weights_initializer: Initializer,
        bias_initializer: Initializer,
        data_layer=None,
        loss_layer: Optional[CrossEntropyLoss] = None
    ):
        """
        Args:
            optimizer: Prototype optimizer or config; each trainable layer
                gets its own instance built from it
            weights_initializer: Initializer for weight rows
            bias_initializer: Initializer for bias rows
            data_layer: Object with a ``next()`` method returning
                ``(input, one_hot_labels)``
            loss_layer: Loss; a fresh CrossEntropyLoss when omitted
        """
        self.optimizer = optimizer
        self.weights_initializer = weights_initializer
        self.bias_initializer = bias_initializer
        self.data_layer = data_layer
        self.loss_layer = loss_layer if loss_layer is not None else CrossEntropyLoss()
        self.layers: List[Layer] = []
        self.loss: List[float] = []
        self._current_label_tensor: Optional[np.ndarray] = None

    def append_layer(self, layer: Layer) -> Layer:
        """
        Add a layer to the end of the stack.

        Trainable layers are bound to a private optimizer and initialized
        immediately.

        Returns:
            The appended layer
        """
        if layer.is_trainable():
            layer.bind_optimizer(self.optimizer)
            layer.initialize(self.weights_initializer, self.bias_initializer)
        self.layers.append(layer)
        logger.debug(f"Appended {layer!r} (trainable={layer.is_trainable()})")
        return layer

    def attach_data(self, data_layer) -> None:
        """Replace the training data source."""
        self.data_layer = data_layer

    def forward(self) -> float:
        """
        Run the FORWARD phase on the next batch.

        Returns:
            float: Loss of the batch

        Raises:
            RuntimeError: If no data source is attached
        """
        if self.data_layer is None:
            raise RuntimeError("No data source attached to the network")

        input_tensor, label_tensor = self.data_layer.next()
        self._current_label_tensor = label_tensor

        for layer in self.layers:
            input_tensor = layer.forward(input_tensor)

        return self.loss_layer.forward(input_tensor, label_tensor)

    def backward(self) -> None:
        """
        Run the BACKWARD phase for the batch seen by the last forward.

        Raises:
            LayerStateError: If no forward is pending, including after a
                failed step has reset the network
        """
        if self._current_label_tensor is None:
            raise LayerStateError("Network.backward called without a pending forward")
        error_tensor = self.loss_layer.backward(self._current_label_tensor)

        for layer in reversed(self.layers):
            error_tensor = layer.backward(error_tensor)

    def train(
        self,
        iterations: int,
        callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> List[float]:
        """
        Run ``iterations`` forward/backward steps.

        Args:
            iterations: Number of batches to train on
            callback: Optional function called after each step with a
                progress dictionary
            yield_func: Optional function called after each step so that
                cooperative schedulers can run other tasks

        Returns:
            list: Loss of each step, in order
        """
        if iterations < 0:
            raise ValueError(f"iterations must be non-negative, got {iterations}")

        start_time = time.time()
        step_losses = []

        for i in range(iterations):
            try:
                step_loss = self.forward()
                self.backward()
            except Exception:
                self.reset_state()
                raise

            self.loss.append(step_loss)
            step_losses.append(step_loss)
            logger.info(f"Iteration: {i}    Loss = {step_loss}")

            if callback:
                callback({
                    'iteration': i + 1,
                    'total_iterations': iterations,
                    'loss': step_loss,
                    'elapsed_time': time.time() - start_time
                })

            if yield_func:
                yield_func()

        return step_losses

    def test(self, input_tensor: np.ndarray) -> np.ndarray:
        """
        Forward-only pass; returns raw predictions.

        Skips the loss and leaves weights and layer caches untouched.
        """
        for layer in self.layers:
            input_tensor = layer.forward(input_tensor, training=False)
        return input_tensor

    def predict(self, input_tensor: np.ndarray) -> np.ndarray:
        """Predicted class index for each row of ``input_tensor``."""
        return np.argmax(self.test(input_tensor), axis=1)

    def evaluate(self, data_layer, num_batches: int) -> Tuple[int, int]:
        """
        Count correct predictions over ``num_batches`` batches.

        Returns:
            tuple: ``(correct, total)``
        """
        correct = 0
        total = 0
        for _ in range(num_batches):
            input_tensor, label_tensor = data_layer.next()
            predicted = self.predict(input_tensor)
            correct += int(np.sum(predicted == np.argmax(label_tensor, axis=1)))
            total += len(predicted)
        return correct, total

    def reset_state(self) -> None:
        """Return every layer to the idle state, discarding caches."""
        for layer in self.layers:
            layer.reset()
        self._current_label_tensor = None

    @property
    def sizes(self) -> List[int]:
        """Widths of the linear layers, input first, e.g. ``[784, 500, 10]``."""
        linear = [layer for layer in self.layers if isinstance(layer, Linear)]
        if not linear:
            return []
        return [linear[0].in_features] + [layer.out_features for layer in linear]

    def architecture(self) -> List[Dict[str, Any]]:
        """Description of each layer in order."""
        return [layer.describe() for layer in self.layers]

    def __getstate__(self):
        # the data source holds the dataset; it is not part of the model
        state = self.__dict__.copy()
        state['data_layer'] = None
        state['_current_label_tensor'] = None
        return state
