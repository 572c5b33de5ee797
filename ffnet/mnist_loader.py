"""
mnist_loader.py
~~~~~~~~~~~~~~~

Loading MNIST data and serving it in one-hot labelled batches.

Two on-disk formats are supported: the original big-endian IDX files
and the compressed NPZ archive written by
``scripts/convert_mnist_to_npz.py``.
"""

import logging
import os
from typing import Optional, Tuple

import numpy as np

from .errors import DataSourceExhausted, MalformedRecordError

logger = logging.getLogger(__name__)

IMAGE_MAGIC = 2051
LABEL_MAGIC = 2049

DEFAULT_NPZ_PATH = os.path.join('data', 'mnist.npz')


def _read_header(raw: bytes, count: int, path: str) -> np.ndarray:
    header_size = 4 * count
    if len(raw) < header_size:
        raise MalformedRecordError(
            f"{path}: file too short for a {header_size}-byte IDX header"
        )
    return np.frombuffer(raw, dtype='>u4', count=count)


def read_idx_images(path: str) -> np.ndarray:
    """
    Read an IDX image file.

    Args:
        path: Path to e.g. ``train-images-idx3-ubyte``

    Returns:
        np.ndarray: ``N x (rows * cols)`` float64 array scaled to [0, 1]

    Raises:
        FileNotFoundError: If the file does not exist
        MalformedRecordError: If the magic number or size is wrong
    """
    with open(path, 'rb') as f:
        raw = f.read()

    magic, num_images, rows, cols = (int(v) for v in _read_header(raw, 4, path))
    if magic != IMAGE_MAGIC:
        raise MalformedRecordError(
            f"{path}: invalid magic number {magic} in image file "
            f"(expected {IMAGE_MAGIC})"
        )

    pixel_count = num_images * rows * cols
    pixels = np.frombuffer(raw, dtype=np.uint8, offset=16)
    if pixels.size < pixel_count:
        raise MalformedRecordError(
            f"{path}: expected {pixel_count} pixels for {num_images} images, "
            f"found {pixels.size}"
        )

    images = pixels[:pixel_count].reshape(num_images, rows * cols)
    logger.debug(f"Read {num_images} images of {rows}x{cols} from {path}")
    return images.astype(np.float64) / 255.0


def read_idx_labels(path: str) -> np.ndarray:
    """
    Read an IDX label file.

    Returns:
        np.ndarray: ``N`` integer labels

    Raises:
        FileNotFoundError: If the file does not exist
        MalformedRecordError: If the magic number or size is wrong
    """
    with open(path, 'rb') as f:
        raw = f.read()

    magic, num_labels = (int(v) for v in _read_header(raw, 2, path))
    if magic != LABEL_MAGIC:
        raise MalformedRecordError(
            f"{path}: invalid magic number {magic} in label file "
            f"(expected {LABEL_MAGIC})"
        )

    labels = np.frombuffer(raw, dtype=np.uint8, offset=8)
    if labels.size < num_labels:
        raise MalformedRecordError(
            f"{path}: expected {num_labels} labels, found {labels.size}"
        )
    return labels[:num_labels].astype(np.int64)


class MnistDataLayer:
    """
    Serves ``(images, one_hot_labels)`` batches from in-memory arrays.

    When the end of the dataset is reached the position wraps to the
    start (reshuffling first when ``shuffle`` is set). With ``cycle=False``
    a batch that cannot be filled raises :class:`DataSourceExhausted`.
    """

    def __init__(
        self,
        images: np.ndarray,
        labels: np.ndarray,
        batch_size: int,
        shuffle: bool = False,
        cycle: bool = True,
        num_classes: int = 10,
        seed: Optional[int] = None
    ):
        images = np.asarray(images, dtype=np.float64)
        labels = np.asarray(labels).astype(np.int64).ravel()

        if images.ndim != 2:
            images = images.reshape(images.shape[0], -1)
        if len(images) != len(labels):
            raise MalformedRecordError(
                f"Mismatch between number of images ({len(images)}) "
                f"and labels ({len(labels)})"
            )
        if len(images) == 0:
            raise ValueError("Dataset is empty")
        if batch_size < 1:
            raise ValueError(f"batch_size must be a positive integer, got {batch_size}")
        if labels.min() < 0 or labels.max() >= num_classes:
            raise MalformedRecordError(
                f"Labels must lie in [0, {num_classes}), "
                f"got range [{labels.min()}, {labels.max()}]"
            )

        self.images = images
        self.labels = labels
        self.batch_size = int(batch_size)
        self.shuffle = shuffle
        self.cycle = cycle
        self.num_classes = num_classes
        self._rng = np.random.default_rng(seed)
        self._indices = np.arange(len(labels))
        self._position = 0

        if self.shuffle:
            self._rng.shuffle(self._indices)

    @classmethod
    def from_idx(
        cls,
        image_file: str,
        label_file: str,
        batch_size: int,
        **kwargs
    ) -> 'MnistDataLayer':
        """Build a data layer from a pair of IDX files."""
        images = read_idx_images(image_file)
        labels = read_idx_labels(label_file)
        logger.info(
            f"Loaded {len(labels)} samples from {image_file} and {label_file}"
        )
        return cls(images, labels, batch_size, **kwargs)

    def __len__(self) -> int:
        return len(self.labels)

    @property
    def input_size(self) -> int:
        return self.images.shape[1]

    def next(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Fetch the next batch.

        Returns:
            tuple: ``(B x F images, B x C one-hot labels)``

        Raises:
            DataSourceExhausted: If ``cycle`` is False and fewer than
                ``batch_size`` samples remain
        """
        if not self.cycle and self._position + self.batch_size > len(self):
            raise DataSourceExhausted(
                f"Only {len(self) - self._position} samples left, "
                f"batch size is {self.batch_size}"
            )

        batch_indices = np.empty(self.batch_size, dtype=np.int64)
        for i in range(self.batch_size):
            if self._position >= len(self):
                self._position = 0
                if self.shuffle:
                    self._rng.shuffle(self._indices)
            batch_indices[i] = self._indices[self._position]
            self._position += 1

        one_hot = np.zeros((self.batch_size, self.num_classes))
        one_hot[np.arange(self.batch_size), self.labels[batch_indices]] = 1.0
        return self.images[batch_indices], one_hot

    def reset(self) -> None:
        """Restart from the beginning of the dataset."""
        self._position = 0

    def sample(self, index: int) -> Tuple[np.ndarray, int]:
        """Single image (as a ``1 x F`` matrix) and its integer label."""
        return self.images[index:index + 1], int(self.labels[index])


def load_npz(path: str = DEFAULT_NPZ_PATH):
    """
    Load the raw arrays from an MNIST NPZ archive.

    Returns:
        tuple: ``(training, validation, test)``, each ``(images, labels)``
    """
    with np.load(path) as data:
        training = (data['train_images'], data['train_labels'])
        validation = (data['val_images'], data['val_labels'])
        test = (data['test_images'], data['test_labels'])
    return training, validation, test


def load_data_wrapper(
    path: str = DEFAULT_NPZ_PATH,
    batch_size: int = 64,
    seed: Optional[int] = None
) -> Tuple[MnistDataLayer, MnistDataLayer, MnistDataLayer]:
    """
    Load MNIST from an NPZ archive as three data layers.

    The training layer shuffles and cycles; the validation and test
    layers keep their file order. ``validation_data`` is None when the
    archive holds no validation split.

    Returns:
        tuple: ``(training_data, validation_data, test_data)``
    """
    training, validation, test = load_npz(path)

    training_data = MnistDataLayer(*training, batch_size, shuffle=True, seed=seed)
    validation_data = (
        MnistDataLayer(*validation, batch_size) if len(validation[1]) else None
    )
    test_data = MnistDataLayer(*test, batch_size)

    logger.info(
        f"Loaded {path}: {len(training_data)} training, "
        f"{len(validation[1])} validation, {len(test_data)} test"
    )
    return training_data, validation_data, test_data
