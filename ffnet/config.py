"""
config.py
~~~~~~~~~

Training configuration file loader and logging setup.

The configuration file holds one ``key = value`` pair per line::

    num_epochs = 50
    batch_size = 64
    learning_rate = 1E-3
    rel_path_train_images = data/train-images-idx3-ubyte
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

from .optimizers import OptimizerConfig

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: Optional[str] = None) -> None:
    """
    Set up logging.

    Args:
        level: Level name such as ``'DEBUG'``. Falls back to the
            ``LOG_LEVEL`` environment variable, then INFO.
    """
    level_str = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    log_level = getattr(logging, level_str, logging.INFO)

    logging.basicConfig(level=log_level, format=LOG_FORMAT)
    logging.getLogger('ffnet').setLevel(log_level)


@dataclass
class TrainingConfig:
    """Hyperparameters and file paths for one training run."""

    num_epochs: int = 50
    batch_size: int = 64
    hidden_size: int = 500
    learning_rate: float = 1e-3
    mu: float = 0.9
    rho: float = 0.999
    momentum: float = 0.9
    optimizer: str = 'adam'
    initializer: str = 'he'
    seed: Optional[int] = None
    train_images_path: str = ''
    train_labels_path: str = ''
    test_images_path: str = ''
    test_labels_path: str = ''
    log_file_path: str = ''

    def optimizer_config(self) -> OptimizerConfig:
        """Build the optimizer configuration described by this run."""
        return OptimizerConfig(
            kind=self.optimizer,
            learning_rate=self.learning_rate,
            momentum=self.momentum,
            mu=self.mu,
            rho=self.rho
        )


# File keys that differ from the attribute they set
_KEY_ALIASES = {
    'rel_path_train_images': 'train_images_path',
    'rel_path_train_labels': 'train_labels_path',
    'rel_path_test_images': 'test_images_path',
    'rel_path_test_labels': 'test_labels_path',
    'rel_path_log_file': 'log_file_path',
}

_FIELD_TYPES = {f.name: f.type for f in fields(TrainingConfig)}


def _convert(key: str, attr: str, value: str):
    field_type = _FIELD_TYPES[attr]
    try:
        if field_type is int or attr == 'seed':
            return int(value)
        if field_type is float:
            return float(value)
    except ValueError:
        raise ValueError(f"Invalid value for '{key}': {value!r}")
    if attr in ('optimizer', 'initializer'):
        return value.lower()
    return value


def load_config(config_file: str) -> TrainingConfig:
    """
    Load a training configuration file.

    Args:
        config_file: Path to the ``key = value`` file

    Returns:
        TrainingConfig with defaults for keys not present

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If a numeric value cannot be parsed
    """
    config = TrainingConfig()

    with open(config_file, 'r') as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue

            key, value = line.split('=', 1)
            key = ''.join(key.split())
            value = ''.join(value.split())

            attr = _KEY_ALIASES.get(key, key)
            if attr not in _FIELD_TYPES:
                logger.warning(
                    f"{config_file}:{line_number}: ignoring unknown key '{key}'"
                )
                continue

            setattr(config, attr, _convert(key, attr, value))

    logger.info(f"Loaded configuration from {config_file}")
    return config
