"""
cli.py
~~~~~~

Command-line training run.

Builds a ``Linear -> ReLU -> Linear -> SoftMax`` network from a
configuration file, trains it on the MNIST training set, then writes
one prediction line per test image to the configured log file.

Usage:
    ffnet-train config.txt [--save-id ID] [--model-dir DIR] [--plot-loss loss.png]
"""

import argparse
import logging
import sys
from typing import List, Optional

import numpy as np

from .config import TrainingConfig, configure_logging, load_config
from .errors import DataSourceExhausted
from .initializers import make_initializer
from .layers import Linear, ReLU, SoftMax
from .mnist_loader import MnistDataLayer
from .model_persistence import DEFAULT_MODEL_DIR, save_network
from .network import Network

logger = logging.getLogger(__name__)

NUM_CLASSES = 10
TEST_SET_SIZE = 10000


def build_network(
    config: TrainingConfig,
    input_size: int,
    data_layer=None,
    num_classes: int = NUM_CLASSES
) -> Network:
    """Assemble the two-layer classifier described by ``config``."""
    seed = config.seed
    # weights and biases draw from separate generators
    weights_initializer = make_initializer(config.initializer, seed)
    bias_initializer = make_initializer(
        config.initializer, None if seed is None else seed + 1
    )

    net = Network(
        config.optimizer_config(),
        weights_initializer,
        bias_initializer,
        data_layer
    )
    net.append_layer(Linear(input_size, config.hidden_size))
    net.append_layer(ReLU())
    net.append_layer(Linear(config.hidden_size, num_classes))
    net.append_layer(SoftMax())
    return net


def write_predictions(
    net: Network,
    test_data: MnistDataLayer,
    log_file_path: str,
    num_batches: int
) -> float:
    """
    Run the test batches, logging prediction and label per image.

    Stops early if the test data runs out.

    Returns:
        float: Accuracy in percent
    """
    correct_predictions = 0
    total_predictions = 0

    with open(log_file_path, 'w') as log_file:
        for current_batch in range(num_batches):
            try:
                test_images, test_labels = test_data.next()
            except DataSourceExhausted:
                break

            predicted = net.predict(test_images)
            actual = np.argmax(test_labels, axis=1)

            log_file.write(f"Current batch: {current_batch}\n")
            for i, (p, label) in enumerate(zip(predicted, actual)):
                image_index = current_batch * test_data.batch_size + i
                log_file.write(
                    f" - image {image_index}: Prediction={p}. Label={label}\n"
                )

            correct_predictions += int(np.sum(predicted == actual))
            total_predictions += len(predicted)

    if total_predictions == 0:
        return 0.0
    return correct_predictions / total_predictions * 100.0


def plot_loss(losses: List[float], path: str) -> None:
    """Save the training loss curve as a PNG."""
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    plt.figure(figsize=(6, 4))
    plt.plot(range(1, len(losses) + 1), losses)
    plt.xlabel('Iteration')
    plt.ylabel('Cross-entropy loss')
    plt.title('Training loss')
    plt.savefig(path, bbox_inches='tight')
    plt.close()
    logger.info(f"Loss curve written to {path}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='ffnet-train',
        description='Train a feed-forward MNIST classifier from a config file.'
    )
    parser.add_argument('config_file', help='Path to the key = value config file')
    parser.add_argument('--save-id', help='Save the trained network under this id')
    parser.add_argument('--model-dir', default=DEFAULT_MODEL_DIR,
                        help='Directory of the network database')
    parser.add_argument('--plot-loss', metavar='PNG',
                        help='Write the loss curve to this file')
    parser.add_argument('--log-level', help='Logging level (default: $LOG_LEVEL or INFO)')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = load_config(args.config_file)

        train_data = MnistDataLayer.from_idx(
            config.train_images_path, config.train_labels_path,
            config.batch_size, shuffle=True, seed=config.seed
        )
        test_data = MnistDataLayer.from_idx(
            config.test_images_path, config.test_labels_path,
            config.batch_size, cycle=False
        )

        net = build_network(config, train_data.input_size, train_data)

        print("Training the Neural Network...")
        net.train(config.num_epochs)

        print("Testing the Neural Network...")
        num_batches = min(TEST_SET_SIZE, len(test_data)) // config.batch_size
        accuracy = write_predictions(
            net, test_data, config.log_file_path, num_batches
        )

        print(f"Testing completed. Accuracy: {accuracy}%")
        print(f"Results logged to {config.log_file_path}")

        if args.plot_loss:
            plot_loss(net.loss, args.plot_loss)

        if args.save_id:
            saved = save_network(
                net, args.save_id, model_dir=args.model_dir,
                trained=True, accuracy=accuracy / 100.0
            )
            if not saved:
                logger.error(f"Failed to save network '{args.save_id}'")
                return 1

    except Exception as e:
        logger.exception(f"An error occurred: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
