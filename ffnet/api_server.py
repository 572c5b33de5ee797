"""
api_server.py
~~~~~~~~~~~~~

REST + WebSocket front end for training feed-forward MNIST classifiers.

Routes:
- ``/api/status``                      server health
- ``/api/networks``                    create, list and bulk-delete networks
- ``/api/networks/<id>/train``         background training, progress over Socket.IO
- ``/api/training/<job_id>``           job status
- ``/api/networks/<id>/loss_plot``     loss curve as base64 PNG
- ``/api/networks/<id>/*_example``     a classified test digit as base64 PNG

Networks live in ``active_networks`` while the process runs and are
written to the SQLite store once trained. Training runs in gevent
greenlets started through Flask-SocketIO.
"""

import os
import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

# Agg must be selected before pyplot is imported
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from .config import configure_logging
from .initializers import make_initializer
from .layers import Linear, ReLU, SoftMax
from .mnist_loader import DEFAULT_NPZ_PATH, MnistDataLayer, load_npz
from .model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)
from .network import Network
from .optimizers import OptimizerConfig

configure_logging()
logger = logging.getLogger(__name__)

is_production = os.getenv('FLASK_ENV') == 'production'

_CHATTY_LOGGERS = ('socketio', 'engineio', 'engineio.server', 'socketio.server', 'werkzeug')
if is_production:
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

MODEL_DIR = os.getenv('FFNET_MODEL_DIR', 'models')
DATA_PATH = os.getenv('FFNET_DATA_PATH', DEFAULT_NPZ_PATH)

INPUT_SIZE = 784
NUM_CLASSES = 10
MAX_NETWORK_AGE_DAYS = 2
CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60

# network_id -> {'network', 'architecture', 'optimizer', 'trained', 'accuracy', 'training'}
active_networks: Dict[str, Dict[str, Any]] = {}

# job_id -> {'network_id', 'status', 'progress', 'iterations', ...}
training_jobs: Dict[str, Dict[str, Any]] = {}

# (images, labels), filled by get_datasets()
training_data: Optional[tuple] = None
test_data: Optional[tuple] = None

_cleanup_started = False


def _error(message: str, status: int):
    return jsonify({'error': message}), status


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _register(network_id: str, net: Network, optimizer: Dict[str, Any],
              trained: bool = False, accuracy: Optional[float] = None) -> None:
    active_networks[network_id] = {
        'network': net,
        'architecture': net.sizes,
        'optimizer': optimizer,
        'trained': trained,
        'accuracy': accuracy,
        'training': False
    }


# ----------------------------------------------------------------------------
# Data and startup state
# ----------------------------------------------------------------------------

def get_datasets() -> bool:
    """
    Load the MNIST archive on first use.

    Returns:
        bool: Whether training and test arrays are available
    """
    global training_data, test_data

    if training_data is not None:
        return True

    try:
        training_data, _, test_data = load_npz(DATA_PATH)
    except FileNotFoundError:
        logger.warning(f"No MNIST archive at {DATA_PATH}; training is unavailable")
        return False

    logger.info(
        f"Loaded MNIST from {DATA_PATH}: {len(training_data[1])} training / "
        f"{len(test_data[1])} test images"
    )
    return True


def reload_saved_networks() -> int:
    """Bring every stored network back into memory; returns how many loaded."""
    restored = 0
    for record in list_saved_networks(MODEL_DIR):
        network_id = record['network_id']
        net = load_network(network_id, MODEL_DIR)
        if net is None:
            logger.warning(f"Skipping unreadable stored network {network_id}")
            continue
        _register(network_id, net, record['optimizer'],
                  record['trained'], record['accuracy'])
        restored += 1

    logger.info(f"{restored} stored network(s) restored from {MODEL_DIR}")
    return restored


reload_saved_networks()


# ----------------------------------------------------------------------------
# Housekeeping
# ----------------------------------------------------------------------------

def _stored_ids() -> set:
    return {record['network_id'] for record in list_saved_networks(MODEL_DIR)}


def expire_networks(days: float) -> int:
    """
    Delete stored networks older than ``days`` and forget the idle
    in-memory copies of the ones that were removed.

    Returns:
        int: Rows deleted, or -1 if the database failed
    """
    before = _stored_ids()
    removed = delete_old_networks(days=days, model_dir=MODEL_DIR)
    if removed <= 0:
        return removed

    for network_id in before - _stored_ids():
        entry = active_networks.get(network_id)
        if entry is not None and not entry['training']:
            del active_networks[network_id]
    logger.info(f"Expired {removed} network(s) older than {days} day(s)")
    return removed


def cleanup_finished_training_jobs() -> int:
    """Discard completed and failed jobs; returns how many were removed."""
    done = [job_id for job_id, job in training_jobs.items()
            if job.get('status') in ('completed', 'failed')]
    for job_id in done:
        training_jobs.pop(job_id)
    if done:
        logger.debug(f"Discarded {len(done)} finished job(s)")
    return len(done)


def cleanup_old_networks_task() -> None:
    """Periodic greenlet: expire old networks and finished jobs."""
    while True:
        if expire_networks(MAX_NETWORK_AGE_DAYS) < 0:
            logger.error("Scheduled cleanup failed, will retry next cycle")
        cleanup_finished_training_jobs()
        gevent.sleep(CLEANUP_INTERVAL_SECONDS)


def start_cleanup_task() -> None:
    """Spawn the cleanup greenlet unless it is already running."""
    global _cleanup_started

    if _cleanup_started:
        return
    _cleanup_started = True
    gevent.spawn(cleanup_old_networks_task)
    logger.info(
        f"Cleanup greenlet started (every {CLEANUP_INTERVAL_SECONDS}s, "
        f"max age {MAX_NETWORK_AGE_DAYS} days)"
    )


# ----------------------------------------------------------------------------
# Network lifecycle
# ----------------------------------------------------------------------------

@app.route('/api/status', methods=['GET'])
def get_status():
    running = [job for job in training_jobs.values()
               if job.get('status') in ('pending', 'training')]
    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': len(running),
        'data_loaded': training_data is not None
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Build a new, untrained network.

    JSON body, every field optional::

        {"hidden_sizes": [500], "optimizer": "adam", "learning_rate": 0.001,
         "momentum": 0.9, "mu": 0.9, "rho": 0.999,
         "initializer": "he", "seed": null}

    Hidden layers are followed by ReLU, the output layer by SoftMax.
    """
    body = request.get_json(silent=True) or {}
    hidden_sizes = body.get('hidden_sizes', [500])
    seed = body.get('seed')

    if not (isinstance(hidden_sizes, list)
            and all(_is_positive_int(width) for width in hidden_sizes)):
        return _error('hidden_sizes must be a list of positive integers', 400)
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
        return _error('seed must be an integer', 400)

    try:
        optimizer_config = OptimizerConfig(
            kind=body.get('optimizer', 'adam'),
            learning_rate=body.get('learning_rate', 1e-3),
            momentum=body.get('momentum', 0.9),
            mu=body.get('mu', 0.9),
            rho=body.get('rho', 0.999)
        )
        initializer_kind = body.get('initializer', 'he')
        net = Network(
            optimizer_config,
            make_initializer(initializer_kind, seed),
            make_initializer(initializer_kind, None if seed is None else seed + 1)
        )
    except (ValueError, TypeError) as e:
        return _error(str(e), 400)

    widths = [INPUT_SIZE, *hidden_sizes, NUM_CLASSES]
    for index in range(len(widths) - 1):
        if index:
            net.append_layer(ReLU())
        net.append_layer(Linear(widths[index], widths[index + 1]))
    net.append_layer(SoftMax())

    network_id = str(uuid.uuid4())
    _register(network_id, net, optimizer_config.to_dict())
    logger.info(f"Network {network_id}: {net.sizes} with {optimizer_config.kind.value}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'optimizer': optimizer_config.to_dict(),
        'status': 'created'
    }), 201


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """Networks held in memory followed by ones only present in the database."""
    listing = [
        {
            'network_id': network_id,
            'architecture': entry['architecture'],
            'optimizer': entry['optimizer'],
            'trained': entry['trained'],
            'accuracy': entry['accuracy'],
            'iterations': len(entry['network'].loss),
            'status': 'training' if entry['training'] else 'in_memory'
        }
        for network_id, entry in active_networks.items()
    ]
    for record in list_saved_networks(MODEL_DIR):
        if record['network_id'] not in active_networks:
            listing.append(dict(record, status='saved'))

    return jsonify({'networks': listing}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    entry = active_networks.get(network_id)
    if entry is not None and entry['training']:
        return _error('Network is training', 409)

    in_memory = active_networks.pop(network_id, None) is not None
    on_disk = delete_network(network_id, MODEL_DIR)
    if not (in_memory or on_disk):
        return _error('Network not found', 404)

    logger.info(f"Network {network_id} deleted (memory={in_memory}, disk={on_disk})")
    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': in_memory,
        'deleted_from_disk': on_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete every network that is not currently training."""
    busy = {nid for nid, entry in active_networks.items() if entry['training']}
    targets = (set(active_networks)
               | {record['network_id'] for record in list_saved_networks(MODEL_DIR)})
    targets -= busy

    from_memory = sum(active_networks.pop(nid, None) is not None for nid in targets)
    from_disk = sum(delete_network(nid, MODEL_DIR) for nid in targets)

    logger.info(f"Bulk delete: {len(targets)} network(s), {len(busy)} left training")
    return jsonify({
        'deleted_count': len(targets),
        'deleted_from_memory': from_memory,
        'deleted_from_disk': from_disk,
        'message': f'Deleted {len(targets)} network(s)'
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """Expire stored networks older than ``days`` (JSON body, default 2)."""
    days = (request.get_json(silent=True) or {}).get('days', MAX_NETWORK_AGE_DAYS)
    if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
        return _error('days must be a non-negative number', 400)

    removed = expire_networks(days)
    if removed < 0:
        return _error('Cleanup failed', 500)

    return jsonify({
        'deleted_count': removed,
        'days': days,
        'message': f'Deleted {removed} network(s) older than {days} day(s)'
    }), 200


# ----------------------------------------------------------------------------
# Training
# ----------------------------------------------------------------------------

@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Queue a training run. JSON body: ``{"iterations": 500, "batch_size": 64}``.

    Answers 202 with the job id; progress arrives as ``training_update``
    events followed by ``training_complete`` or ``training_error``.
    """
    entry = active_networks.get(network_id)
    if entry is None:
        return _error('Network not found', 404)

    body = request.get_json(silent=True) or {}
    iterations = body.get('iterations', 500)
    batch_size = body.get('batch_size', 64)
    for name, value in (('iterations', iterations), ('batch_size', batch_size)):
        if not _is_positive_int(value):
            return _error(f'{name} must be a positive integer', 400)

    if entry['training']:
        return _error('Network is already training', 409)
    if not get_datasets():
        return _error('Training data not available', 503)

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'iterations': iterations
    }
    entry['training'] = True

    logger.info(f"Job {job_id}: {iterations} iterations of {batch_size} on {network_id}")
    socketio.start_background_task(
        train_network_task, network_id, job_id, iterations, batch_size
    )
    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(network_id: str, job_id: str, iterations: int, batch_size: int) -> None:
    """Greenlet body: train, evaluate on the test set, persist, report."""
    entry = active_networks[network_id]
    net = entry['network']
    job = training_jobs[job_id]
    every = max(1, iterations // 100)

    def report(step: Dict[str, Any]) -> None:
        if step['iteration'] % every and step['iteration'] != iterations:
            return
        job['status'] = 'training'
        job['progress'] = step['iteration'] / step['total_iterations'] * 100
        socketio.emit('training_update', dict(
            step, job_id=job_id, network_id=network_id, progress=job['progress']
        ))

    try:
        net.attach_data(MnistDataLayer(*training_data, batch_size, shuffle=True))
        net.train(iterations, callback=report, yield_func=lambda: gevent.sleep(0))

        evaluation = MnistDataLayer(*test_data, batch_size, cycle=False)
        correct, total = net.evaluate(evaluation, len(evaluation) // batch_size)
        accuracy = correct / total if total else 0.0
        net.attach_data(None)

        entry.update(trained=True, accuracy=accuracy)
        job.update(status='completed', accuracy=accuracy, progress=100)
        save_network(net, network_id, model_dir=MODEL_DIR, trained=True, accuracy=accuracy)

        logger.info(f"Job {job_id} finished, test accuracy {accuracy:.2%}")
        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': float(accuracy),
            'final_loss': net.loss[-1],
            'progress': 100
        })

    except Exception as e:
        logger.exception(f"Job {job_id} failed: {e}")
        net.attach_data(None)
        job.update(status='failed', error=str(e))
        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })

    finally:
        entry['training'] = False
        gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    job = training_jobs.get(job_id)
    if job is None:
        return _error('Training job not found', 404)
    return jsonify(job), 200


# ----------------------------------------------------------------------------
# Images
# ----------------------------------------------------------------------------

def array_to_float_list(array: np.ndarray) -> List[float]:
    """JSON-friendly flat list of Python floats."""
    return np.asarray(array, dtype=float).ravel().tolist()


def figure_to_base64() -> str:
    """Encode the current pyplot figure as base64 PNG, then close it."""
    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    plt.close()
    return base64.b64encode(buffer.getvalue()).decode('ascii')


def create_digit_image(pixels: np.ndarray, predicted: int, actual: int) -> str:
    plt.figure(figsize=(3, 3))
    plt.imshow(np.reshape(pixels, (28, 28)), cmap='gray')
    plt.title(f"predicted {predicted}, label {actual}")
    plt.axis('off')
    return figure_to_base64()


def create_loss_plot(losses: List[float]) -> str:
    plt.figure(figsize=(6, 4))
    plt.plot(range(1, len(losses) + 1), losses)
    plt.xlabel('Iteration')
    plt.ylabel('Cross-entropy loss')
    plt.title('Training loss')
    return figure_to_base64()


@app.route('/api/networks/<network_id>/loss_plot', methods=['GET'])
def get_loss_plot(network_id: str):
    entry = active_networks.get(network_id)
    if entry is None:
        return _error('Network not found', 404)

    losses = entry['network'].loss
    if not losses:
        return _error('Network has not been trained', 409)

    return jsonify({
        'network_id': network_id,
        'iterations': len(losses),
        'final_loss': losses[-1],
        'image_data': create_loss_plot(losses)
    }), 200


def _find_example(network_id: str, want_correct: bool, max_attempts: int):
    """Sample test images until one is classified right (or wrong)."""
    entry = active_networks.get(network_id)
    if entry is None:
        return _error('Network not found', 404)
    if not get_datasets():
        return _error('Test data not available', 503)

    images, labels = test_data
    for index in np.random.randint(0, len(labels), size=max_attempts):
        index = int(index)
        x = np.asarray(images[index], dtype=np.float64).reshape(1, -1)
        output = entry['network'].test(x)[0]
        predicted, actual = int(np.argmax(output)), int(labels[index])

        if (predicted == actual) == want_correct:
            return jsonify({
                'network_id': network_id,
                'example_index': index,
                'predicted_digit': predicted,
                'actual_digit': actual,
                'image_data': create_digit_image(x, predicted, actual),
                'network_output': array_to_float_list(output)
            }), 200

    outcome = 'correct' if want_correct else 'incorrect'
    return _error(f'No {outcome} prediction in {max_attempts} samples', 404)


@app.route('/api/networks/<network_id>/successful_example', methods=['GET'])
def get_successful_example(network_id: str):
    return _find_example(network_id, want_correct=True, max_attempts=100)


@app.route('/api/networks/<network_id>/unsuccessful_example', methods=['GET'])
def get_unsuccessful_example(network_id: str):
    return _find_example(network_id, want_correct=False, max_attempts=200)


def main() -> None:
    port = int(os.environ.get('PORT', 8000))
    start_cleanup_task()
    logger.info(f"Serving on http://0.0.0.0:{port}/")

    try:
        socketio.run(app, host='0.0.0.0', port=port,
                     debug=not is_production, use_reloader=False)
    except OSError as e:
        if "Address already in use" not in str(e):
            raise
        logger.error(f"Port {port} is busy")
        sys.exit(1)


if __name__ == '__main__':
    main()
