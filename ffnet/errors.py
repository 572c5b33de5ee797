"""
errors.py
~~~~~~~~~

Exception types raised by the network core and its data sources.
"""


class LayerStateError(RuntimeError):
    """A forward/backward call arrived out of order for a layer or loss."""


class DataSourceExhausted(Exception):
    """A non-cycling data source has no complete batch left to deliver."""


class MalformedRecordError(ValueError):
    """A dataset file does not match the expected IDX layout."""
