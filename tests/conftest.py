"""
conftest.py
~~~~~~~~~~~

Shared fixtures for the test suite.
"""

import os
import sys

import numpy as np
import pytest

# Make the package importable without installing it
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ffnet.initializers import He  # noqa: E402
from ffnet.layers import Linear, ReLU, SoftMax  # noqa: E402
from ffnet.network import Network  # noqa: E402
from ffnet.optimizers import OptimizerConfig  # noqa: E402


class StaticDataLayer:
    """Data source that returns the same batch on every call."""

    def __init__(self, inputs, labels):
        self.inputs = np.asarray(inputs, dtype=np.float64)
        self.labels = np.asarray(labels, dtype=np.float64)
        self.calls = 0

    def next(self):
        self.calls += 1
        return self.inputs.copy(), self.labels.copy()


def one_hot(indices, num_classes):
    labels = np.zeros((len(indices), num_classes))
    labels[np.arange(len(indices)), indices] = 1.0
    return labels


def build_network(sizes, data_layer=None, optimizer=None, seed=0):
    """Linear/ReLU stack ending in SoftMax, e.g. ``sizes=[3, 4, 2]``."""
    if optimizer is None:
        optimizer = OptimizerConfig(kind='sgd', learning_rate=0.1)
    net = Network(optimizer, He(seed=seed), He(seed=seed + 1), data_layer)
    for i, (fan_in, fan_out) in enumerate(zip(sizes[:-1], sizes[1:])):
        net.append_layer(Linear(fan_in, fan_out))
        if i < len(sizes) - 2:
            net.append_layer(ReLU())
    net.append_layer(SoftMax())
    return net


@pytest.fixture
def small_batch():
    """Four samples, three features, two classes."""
    rng = np.random.default_rng(42)
    inputs = rng.normal(size=(4, 3))
    labels = one_hot([0, 1, 1, 0], 2)
    return inputs, labels


@pytest.fixture
def simple_network(small_batch):
    """A 3-4-2 network wired to a static batch."""
    return build_network([3, 4, 2], StaticDataLayer(*small_batch))


@pytest.fixture
def trained_network(simple_network):
    """The simple network after a few training steps."""
    simple_network.train(5)
    return simple_network
