"""
ffnet package
~~~~~~~~~~~~~

Feed-forward neural network trainer for MNIST digit recognition.
Contains the layer, optimizer and initializer implementations, the
training loop, data loading utilities, model persistence, and API server.
"""

__version__ = "1.0.0"
