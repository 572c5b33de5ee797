"""
test_network.py
~~~~~~~~~~~~~~~

Tests for network assembly, the training loop and inference.
"""

import pickle

import numpy as np
import pytest

from conftest import StaticDataLayer, build_network, one_hot

from ffnet.errors import DataSourceExhausted, LayerStateError
from ffnet.initializers import He
from ffnet.layers import Linear, ReLU, SoftMax
from ffnet.network import Network
from ffnet.optimizers import EPSILON, GradientDescent, OptimizerConfig


class FailingDataLayer:
    """Delivers ``batches`` good batches, then raises."""

    def __init__(self, inputs, labels, batches):
        self.inputs = inputs
        self.labels = labels
        self.remaining = batches

    def next(self):
        if self.remaining == 0:
            raise DataSourceExhausted("no more batches")
        self.remaining -= 1
        return self.inputs, self.labels


def _softmax(z):
    e = np.exp(z - z.max(axis=1, keepdims=True))
    return e / e.sum(axis=1, keepdims=True)


@pytest.mark.unit
class TestAssembly:

    def test_trainable_layers_are_wired(self, simple_network):
        first, relu, second, softmax = simple_network.layers

        assert first.optimizer is not None
        assert second.optimizer is not None
        assert first.optimizer is not second.optimizer
        assert not hasattr(relu, 'optimizer')
        assert not hasattr(softmax, 'optimizer')

    def test_append_initializes_weights(self):
        net = Network(GradientDescent(), He(seed=0), He(seed=1))
        layer = net.append_layer(Linear(3, 2))
        assert np.any(layer.weights != 0)

    def test_sizes_and_architecture(self, simple_network):
        assert simple_network.sizes == [3, 4, 2]
        assert [d['type'] for d in simple_network.architecture()] == [
            'Linear', 'ReLU', 'Linear', 'SoftMax'
        ]

    def test_default_loss_layer(self):
        net = Network(GradientDescent(), He(seed=0), He(seed=1))
        assert net.loss_layer is not None


@pytest.mark.unit
class TestTraining:

    def test_train_runs_exact_number_of_steps(self, simple_network):
        losses = simple_network.train(7)
        assert len(losses) == 7
        assert simple_network.loss == losses
        assert simple_network.data_layer.calls == 7

    def test_losses_accumulate_across_calls(self, simple_network):
        simple_network.train(2)
        simple_network.train(3)
        assert len(simple_network.loss) == 5

    def test_train_zero_iterations(self, simple_network):
        assert simple_network.train(0) == []

    def test_negative_iterations(self, simple_network):
        with pytest.raises(ValueError):
            simple_network.train(-1)

    def test_loss_decreases_on_fixed_batch(self, small_batch):
        net = build_network(
            [3, 8, 2], StaticDataLayer(*small_batch),
            optimizer=OptimizerConfig(kind='adam', learning_rate=0.01)
        )
        losses = net.train(100)
        assert losses[-1] < losses[0]

    def test_training_changes_weights(self, simple_network):
        before = [layer.weights.copy() for layer in simple_network.layers
                  if layer.is_trainable()]
        simple_network.train(1)
        after = [layer.weights for layer in simple_network.layers
                 if layer.is_trainable()]
        assert all(not np.allclose(b, a) for b, a in zip(before, after))

    def test_callback_and_yield(self, simple_network):
        events = []
        yields = []
        simple_network.train(
            3, callback=events.append, yield_func=lambda: yields.append(1)
        )
        assert [e['iteration'] for e in events] == [1, 2, 3]
        assert all(e['total_iterations'] == 3 for e in events)
        assert events[-1]['loss'] == simple_network.loss[-1]
        assert len(yields) == 3

    def test_data_source_errors_propagate(self, small_batch):
        net = build_network([3, 4, 2], FailingDataLayer(*small_batch, batches=2))
        with pytest.raises(DataSourceExhausted):
            net.train(5)
        assert len(net.loss) == 2

    def test_failed_step_resets_layers(self, small_batch):
        inputs, _ = small_batch
        # label width does not match the network output
        net = build_network([3, 4, 2], StaticDataLayer(inputs, one_hot([0, 1, 2, 0], 3)))

        with pytest.raises(ValueError):
            net.train(1)
        assert all(not layer.awaiting_backward for layer in net.layers)

    def test_backward_after_failed_step(self, small_batch):
        inputs, _ = small_batch
        net = build_network([3, 4, 2], StaticDataLayer(inputs, one_hot([0, 1, 2, 0], 3)))

        with pytest.raises(ValueError):
            net.train(1)
        with pytest.raises(LayerStateError):
            net.backward()

    def test_backward_without_forward(self, simple_network):
        with pytest.raises(LayerStateError):
            simple_network.backward()

    def test_forward_twice_without_backward(self, simple_network):
        simple_network.forward()
        with pytest.raises(LayerStateError):
            simple_network.forward()

    def test_forward_without_data(self):
        net = Network(GradientDescent(), He(seed=0), He(seed=1))
        net.append_layer(Linear(2, 2))
        with pytest.raises(RuntimeError):
            net.forward()


@pytest.mark.unit
class TestInference:

    def test_test_does_not_mutate_weights(self, simple_network, small_batch):
        before = [layer.weights.copy() for layer in simple_network.layers
                  if layer.is_trainable()]

        simple_network.test(small_batch[0])
        simple_network.test(small_batch[0])

        after = [layer.weights for layer in simple_network.layers
                 if layer.is_trainable()]
        assert all(np.array_equal(b, a) for b, a in zip(before, after))
        assert all(not layer.awaiting_backward for layer in simple_network.layers)

    def test_training_works_after_test(self, simple_network, small_batch):
        simple_network.test(small_batch[0])
        assert len(simple_network.train(2)) == 2

    def test_test_returns_probabilities(self, simple_network, small_batch):
        output = simple_network.test(small_batch[0])
        assert output.shape == (4, 2)
        assert np.allclose(output.sum(axis=1), 1.0)

    def test_predict_and_evaluate(self, simple_network, small_batch):
        inputs, labels = small_batch
        predicted = simple_network.predict(inputs)
        expected_correct = int(np.sum(predicted == np.argmax(labels, axis=1)))

        correct, total = simple_network.evaluate(StaticDataLayer(inputs, labels), 3)
        assert total == 12
        assert correct == 3 * expected_correct

    def test_pickle_drops_data_source(self, trained_network, small_batch):
        restored = pickle.loads(pickle.dumps(trained_network))

        assert restored.data_layer is None
        assert restored.loss == trained_network.loss
        assert np.allclose(
            restored.test(small_batch[0]), trained_network.test(small_batch[0])
        )


@pytest.mark.integration
class TestGoldenStep:
    """One SGD step of a 2-layer network checked against a hand derivation."""

    def _build(self):
        x = np.array([[0.5, -1.0, 2.0]])
        y = np.array([[0.0, 1.0]])
        return build_network(
            [3, 4, 2], StaticDataLayer(x, y),
            optimizer=GradientDescent(learning_rate=0.1), seed=11
        ), x, y

    def test_matches_manual_backpropagation(self):
        net, x, y = self._build()
        w1 = net.layers[0].weights.copy()
        w2 = net.layers[2].weights.copy()
        lr = 0.1

        # forward
        a1 = np.hstack([x, np.ones((1, 1))])
        h = a1 @ w1
        r = np.maximum(h, 0)
        a2 = np.hstack([r, np.ones((1, 1))])
        s = _softmax(a2 @ w2)
        expected_loss = -np.sum(y * np.log(s + EPSILON))

        # backward
        ds = -y / (s + EPSILON)
        dz = s * (ds - np.sum(s * ds, axis=1, keepdims=True))
        grad_w2 = a2.T @ dz
        dr = dz @ w2[:-1].T
        dh = dr * (h > 0)
        grad_w1 = a1.T @ dh

        losses = net.train(1)

        assert losses[0] == pytest.approx(expected_loss)
        assert np.allclose(net.layers[2].weights - w2, -lr * grad_w2)
        assert np.allclose(net.layers[0].weights - w1, -lr * grad_w1)

    def test_hand_worked_values(self):
        # logits come out [0, 0], so the step is easy to do on paper
        net = build_network(
            [3, 4, 2], StaticDataLayer([[1.0, 0.0, 0.0]], [[0.0, 1.0]]),
            optimizer=GradientDescent(learning_rate=0.1)
        )
        first, _, second, _ = net.layers
        first.weights = [
            [1.0, 2.0, -1.0, 0.0],
            [0.0, 0.0, 0.0, 0.0],
            [0.0, 0.0, 0.0, 0.0],
            [0.0, 0.0, 1.0, 0.0],
        ]
        second.weights = [
            [2.0, 1.0],
            [-1.0, -0.5],
            [3.0, 3.0],
            [3.0, 3.0],
            [0.0, 0.0],
        ]

        losses = net.train(1)

        assert losses[0] == pytest.approx(0.6931471805599453)
        assert np.allclose(second.weights, [
            [1.95, 1.05],
            [-1.1, -0.4],
            [3.0, 3.0],
            [3.0, 3.0],
            [-0.05, 0.05],
        ])
        assert np.allclose(first.weights, [
            [0.95, 2.025, -1.0, 0.0],
            [0.0, 0.0, 0.0, 0.0],
            [0.0, 0.0, 0.0, 0.0],
            [-0.05, 0.025, 1.0, 0.0],
        ])

    def test_is_reproducible(self):
        net_a, _, _ = self._build()
        net_b, _, _ = self._build()

        assert net_a.train(1) == net_b.train(1)
        for layer_a, layer_b in zip(net_a.layers, net_b.layers):
            if layer_a.is_trainable():
                assert np.array_equal(layer_a.weights, layer_b.weights)

    def test_unused_hidden_units_get_no_update(self):
        net, x, _ = self._build()
        w1 = net.layers[0].weights.copy()
        inactive = (np.hstack([x, np.ones((1, 1))]) @ w1)[0] <= 0

        net.train(1)

        delta = net.layers[0].weights - w1
        assert np.allclose(delta[:, inactive], 0.0)


@pytest.mark.unit
def test_layers_without_trainable_flag_are_not_wired():
    net = Network(GradientDescent(), He(seed=0), He(seed=1))
    relu = net.append_layer(ReLU())
    softmax = net.append_layer(SoftMax())
    assert net.layers == [relu, softmax]
    assert net.sizes == []
