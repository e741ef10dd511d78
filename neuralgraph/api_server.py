"""
api_server.py
~~~~~~~~~~~~~

HTTP and WebSocket front end for building, training and querying graph
networks.

Networks live in memory under a generated id and are mirrored to the SQLite
registry once trained, so a restart reloads them. Training runs as a gevent
task; each epoch is pushed to Socket.IO clients as ``training_update``.
Registry entries older than two days are pruned once a day.
"""

import os
import sys
import uuid
import logging
from typing import Dict, Any, Optional, Tuple

import gevent
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from neuralgraph import gmath
from neuralgraph.data_input import NumberInput
from neuralgraph.layer_builder import NET_TYPES, is_recurrent, parse_net_type
from neuralgraph.network import NNetwork
from neuralgraph.topology import NNInfo
from neuralgraph.training_config import LearningRateSchedule, Terminator, TrainingConfig
from neuralgraph.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Configure root logging from LOG_LEVEL.

    With FLASK_ENV=production the Socket.IO, Engine.IO and werkzeug loggers
    are cut down to warnings.
    """
    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    noisy = ('socketio', 'engineio', 'engineio.server', 'socketio.server', 'werkzeug')
    if os.getenv('FLASK_ENV') == 'production':
        for name in noisy:
            logging.getLogger(name).setLevel(logging.WARNING)
        logging.getLogger('neuralgraph').setLevel(logging.INFO)
    else:
        for name in noisy[:2]:
            logging.getLogger(name).setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

# Directory holding the networks.db registry
MODEL_DIR = os.getenv('MODEL_DIR', 'models')

socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Loaded networks by id: network, architecture, net_type, trained, accuracy, last_job_id
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs by id; finished jobs are dropped once reported
training_jobs: Dict[str, Dict[str, Any]] = {}


def register_network(
    network_id: str,
    net: NNetwork,
    net_type: str,
    trained: bool = False,
    accuracy: Optional[float] = None
) -> Dict[str, Any]:
    entry = {
        'network': net,
        'architecture': net.sizes,
        'net_type': net_type,
        'trained': trained,
        'accuracy': accuracy,
        'last_job_id': None
    }
    active_networks[network_id] = entry
    return entry


def reload_saved_networks() -> int:
    """
    Load every registry entry into memory.

    Runs at import so a restarted server keeps serving the networks it had
    saved. Entries that fail to load are skipped and logged.

    Returns:
        int: Number of networks loaded
    """
    loaded = 0
    for saved in list_saved_networks(model_dir=MODEL_DIR):
        network_id = saved['network_id']
        net = load_network(network_id, model_dir=MODEL_DIR)
        if net is None:
            logger.warning(f"Skipping unreadable registry entry {network_id}")
            continue
        register_network(network_id, net, saved['net_type'], saved['trained'], saved['accuracy'])
        loaded += 1

    logger.info(f"Loaded {loaded} network(s) from the registry in {MODEL_DIR}")
    return loaded


reload_saved_networks()


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

CLEANUP_AGE_DAYS = 2
CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60
CLEANUP_RETRY_SECONDS = 60 * 60

FINISHED_JOB_STATUSES = ('completed', 'stopped', 'failed')

_cleanup_greenlet = None


def cleanup_old_networks_task() -> None:
    """
    Registry housekeeping loop.

    The first pass runs as soon as the greenlet is scheduled; later passes
    run every CLEANUP_INTERVAL_SECONDS, or after CLEANUP_RETRY_SECONDS when a
    pass raised.
    """
    while True:
        try:
            run_cleanup_once()
        except Exception as e:
            logger.exception(f"Registry cleanup raised: {e}")
            gevent.sleep(CLEANUP_RETRY_SECONDS)
            continue
        gevent.sleep(CLEANUP_INTERVAL_SECONDS)


def run_cleanup_once(days: float = CLEANUP_AGE_DAYS) -> int:
    """
    Delete registry entries older than ``days`` and forget what they backed.

    Returns:
        int: Number of registry entries deleted, or -1 if the registry failed
    """
    deleted_count = delete_old_networks(days=days, model_dir=MODEL_DIR)
    if deleted_count < 0:
        logger.error(f"Registry cleanup failed for {MODEL_DIR}")
    else:
        logger.info(f"Registry cleanup removed {deleted_count} network(s) older than {days} day(s)")
        if deleted_count:
            sync_active_networks()

    cleanup_finished_training_jobs()
    return deleted_count


def sync_active_networks() -> None:
    """Unload trained, idle networks whose registry entry is gone."""
    saved_ids = {saved['network_id'] for saved in list_saved_networks(model_dir=MODEL_DIR)}
    stale = [
        network_id for network_id, info in active_networks.items()
        if info['trained'] and not info['network'].running and network_id not in saved_ids
    ]
    for network_id in stale:
        active_networks.pop(network_id)
        logger.info(f"Unloaded network {network_id}: no longer in the registry")


def cleanup_finished_training_jobs() -> None:
    finished = [
        job_id for job_id, job in training_jobs.items()
        if job.get('status') in FINISHED_JOB_STATUSES
    ]
    for job_id in finished:
        training_jobs.pop(job_id)
    if finished:
        logger.info(f"Dropped {len(finished)} finished training job(s)")


def start_cleanup_task() -> None:
    """
    Spawn the housekeeping greenlet once per process.

    ``gevent.spawn`` is used instead of ``socketio.start_background_task`` so
    the task also starts when a WSGI server imports the module.
    """
    global _cleanup_greenlet

    if _cleanup_greenlet is not None:
        return
    logger.info(f"Starting registry cleanup every {CLEANUP_INTERVAL_SECONDS // 3600} h")
    _cleanup_greenlet = gevent.spawn(cleanup_old_networks_task)


start_cleanup_task()


# ============================================================================
# REQUEST PARSING
# ============================================================================

def parse_topology(data: Dict[str, Any]) -> NNInfo:
    """
    Build a topology descriptor from a create-network request.

    Either ``topology`` (the full descriptor dict) or ``layer_sizes`` plus
    optional ``layer_defaults`` must be given.

    Raises:
        ValueError: If the request does not describe a usable topology
    """
    if 'topology' in data:
        topology = data['topology']
        if not isinstance(topology, dict):
            raise ValueError('topology must be an object')
        return NNInfo.from_dict(topology)

    layer_sizes = data.get('layer_sizes')
    if not isinstance(layer_sizes, list) or len(layer_sizes) < 2:
        raise ValueError('Invalid architecture. Must have at least 2 layers.')
    if not all(isinstance(size, int) and size > 0 for size in layer_sizes):
        raise ValueError('Layer sizes must be positive integers.')

    info = NNInfo.from_sizes(
        data.get('name', 'network'), layer_sizes, **data.get('layer_defaults', {})
    )
    if 'output_type' in data:
        output_type = data['output_type']
        if isinstance(output_type, str):
            output_type = gmath.CLASSIFICATION if output_type.lower() == 'classification' else gmath.REGRESSION
        info.output_type = int(output_type)
    if 'batch_size' in data:
        info.batch_size = int(data['batch_size'])
    return info


def parse_schedule(data: Optional[Dict[str, Any]]) -> LearningRateSchedule:
    if not data:
        return LearningRateSchedule()
    kind = str(data.get('type', 'none')).lower()
    if kind == 'step':
        return LearningRateSchedule.step(int(data.get('step_size', 0)), float(data.get('gamma', 1.0)))
    if kind in ('exp', 'exponential'):
        return LearningRateSchedule.exponential(float(data.get('gamma', 1.0)))
    if kind == 'cosine':
        return LearningRateSchedule.cosine(int(data.get('t_max', 0)), float(data.get('min_multiplier', 0.0)))
    if kind == 'none':
        return LearningRateSchedule()
    raise ValueError(f"Unknown lr_schedule type '{kind}'")


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and counts of networks and active jobs."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network.

    Request body:
        {
            'layer_sizes': [2, 4, 1],
            'net_type': 'dff',            # dff, rnn, gru or lstm
            'layer_defaults': {'learning_rate': 0.5, 'activation_type': 'sigmoid'},
            'output_type': 'regression',  # or 'classification'
            'batch_size': 1,
            'seed': 42
        }

    ``topology`` (a full descriptor) may replace ``layer_sizes``.

    Returns:
        JSON with network_id, architecture, net_type and status
    """
    data = request.get_json() or {}

    try:
        skeleton = parse_topology(data)
        net_type = parse_net_type(data.get('net_type', 'dff'))
        seed = data.get('seed')
        if seed is not None and not isinstance(seed, int):
            raise ValueError('seed must be an integer')
    except (ValueError, TypeError, KeyError) as e:
        logger.warning(f"Invalid network requested: {e}")
        return jsonify({'error': str(e)}), 400

    net = NNetwork(skeleton, net_type=net_type, seed=seed)
    if not net.build():
        logger.warning(f"Network build failed: {net.builder.last_error}")
        return jsonify({'error': net.builder.last_error}), 400

    network_id = str(uuid.uuid4())
    type_name = next(name for name, value in NET_TYPES.items() if value == net_type)
    register_network(network_id, net, type_name)
    logger.info(f"Created {type_name} network {network_id} with layers {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'net_type': type_name,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body:
        {
            'train_features': [[0, 0], [0, 1], ...],
            'train_expected': [[0], [1], ...],
            'test_features': [...],         # optional
            'test_expected': [...],         # optional
            'epochs': 5,
            'max_time_ms': 0,               # optional wall-clock limit
            'target_accuracy': 0.0,         # optional early stop
            'mini_batch_size': 0,           # 0 keeps the topology's batch size
            'grad_clip': 10.0,
            'lr_schedule': {'type': 'step', 'step_size': 10, 'gamma': 0.5},
            'standardize': false            # defaults to the network's current setting
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Cannot train unknown network {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    net: NNetwork = active_networks[network_id]['network']
    if net.running:
        return jsonify({'error': 'Network is already training'}), 409

    data = request.get_json() or {}
    epochs = data.get('epochs', 5)
    max_time_ms = data.get('max_time_ms', 0)
    target_accuracy = data.get('target_accuracy', 0.0)
    mini_batch_size = data.get('mini_batch_size', 0)
    grad_clip = data.get('grad_clip', 10.0)

    if not isinstance(epochs, int) or epochs < 0:
        return jsonify({'error': 'epochs must be a non-negative integer'}), 400
    if not isinstance(max_time_ms, int) or max_time_ms < 0:
        return jsonify({'error': 'max_time_ms must be a non-negative integer'}), 400
    if not isinstance(target_accuracy, (int, float)) or not 0.0 <= target_accuracy <= 1.0:
        return jsonify({'error': 'target_accuracy must be between 0 and 1'}), 400
    if not isinstance(mini_batch_size, int) or mini_batch_size < 0:
        return jsonify({'error': 'mini_batch_size must be a non-negative integer'}), 400
    if not isinstance(grad_clip, (int, float)):
        return jsonify({'error': 'grad_clip must be a number'}), 400

    terminator = Terminator(epoch=epochs, timestamp=max_time_ms, accuracy=target_accuracy)
    if not terminator.is_set():
        return jsonify({'error': 'At least one stop condition is required'}), 400

    if 'train_features' not in data or 'train_expected' not in data:
        return jsonify({'error': 'train_features and train_expected are required'}), 400

    try:
        dataset = NumberInput(
            data['train_features'],
            data['train_expected'],
            data.get('test_features'),
            data.get('test_expected')
        )
        schedule = parse_schedule(data.get('lr_schedule'))
    except (ValueError, TypeError) as e:
        return jsonify({'error': str(e)}), 400

    if dataset.get_train_size() == 0:
        return jsonify({'error': 'train_features is empty'}), 400
    if dataset.get_feature_count() != net.skeleton.get_input_layer_size():
        return jsonify({
            'error': f'Network expects {net.skeleton.get_input_layer_size()} features, '
                     f'got {dataset.get_feature_count()}'
        }), 400
    if dataset.get_expected_count() != net.skeleton.get_output_layer_size():
        return jsonify({
            'error': f'Network has {net.skeleton.get_output_layer_size()} outputs, '
                     f'got {dataset.get_expected_count()} target column(s)'
        }), 400

    net.config = TrainingConfig(
        minibatch_size_override=mini_batch_size,
        per_element_grad_clip=float(grad_clip),
        lr_schedule=schedule
    )
    net.standardize = bool(data.get('standardize', net.standardize))

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }
    active_networks[network_id]['last_job_id'] = job_id

    logger.info(
        f"Queued job {job_id} on network {network_id}: "
        f"{terminator}, rows={dataset.get_train_size()}, batch_size={mini_batch_size}"
    )

    socketio.start_background_task(
        train_network_task,
        network_id, job_id, dataset, terminator
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def _update_job(job_id: str, **fields: Any) -> None:
    job = training_jobs.get(job_id)
    if job is not None:
        job.update(fields)


def _close_job(job_id: str, event: str, payload: Dict[str, Any]) -> None:
    """Emit the final event for a job and forget it; its network keeps the result."""
    socketio.emit(event, payload)
    gevent.sleep(0)
    training_jobs.pop(job_id, None)
    logger.debug(f"Job {job_id} closed with {event}")


def train_network_task(
    network_id: str,
    job_id: str,
    dataset: NumberInput,
    terminator: Terminator
) -> None:
    """
    Run one training job on the gevent loop.

    Every finished epoch is pushed to clients as ``training_update``; the
    job ends with ``training_complete`` (result saved to the registry) or
    ``training_error``.
    """
    net: NNetwork = active_networks[network_id]['network']
    event_base = {'job_id': job_id, 'network_id': network_id}

    def report_epoch(stats: Dict[str, Any]) -> None:
        total = stats['total_epochs']
        progress = stats['epoch'] * 100.0 / total if total else None
        _update_job(
            job_id, status='training', progress=progress,
            accuracy=stats['accuracy'], metrics=stats.get('metrics', {})
        )
        socketio.emit('training_update', dict(
            event_base,
            epoch=stats['epoch'],
            total_epochs=total,
            accuracy=stats['accuracy'],
            error=stats['error'],
            elapsed_time=stats['elapsed_time'],
            progress=progress,
            correct=stats.get('correct'),
            total=stats.get('total'),
            metrics=stats.get('metrics', {})
        ))
        gevent.sleep(0)

    logger.info(f"Job {job_id} running on network {network_id}")
    try:
        # gevent.sleep(0) between rows keeps HTTP requests served during training
        result = net.train(dataset, terminator, callback=report_epoch, yield_func=lambda: gevent.sleep(0))
        if result['status'] == 'failed':
            raise RuntimeError(result['error'])
    except Exception as e:
        logger.exception(f"Job {job_id} on network {network_id} failed: {e}")
        _update_job(job_id, status='failed', error=str(e))
        _close_job(job_id, 'training_error', dict(event_base, status='failed', error=str(e)))
        return

    accuracy = float(result['accuracy'])
    active_networks[network_id].update(trained=True, accuracy=accuracy)
    _update_job(job_id, status=result['status'], accuracy=accuracy, progress=100)
    save_network(net, network_id, model_dir=MODEL_DIR, trained=True, accuracy=accuracy)
    logger.info(
        f"Job {job_id} {result['status']} after {result['epochs']} epoch(s), accuracy {accuracy:.2%}"
    )

    _close_job(job_id, 'training_complete', dict(
        event_base,
        status=result['status'],
        epochs=result['epochs'],
        accuracy=accuracy,
        error=result['error'],
        metrics=result.get('metrics', {}),
        progress=100
    ))


@app.route('/api/networks/<network_id>/stop', methods=['POST'])
def stop_training(network_id: str):
    """Ask a running training job to stop after the current row."""
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    net: NNetwork = active_networks[network_id]['network']
    if not net.running:
        return jsonify({'error': 'Network is not training'}), 409

    net.stop()
    logger.info(f"Stop requested for network {network_id}")
    return jsonify({'network_id': network_id, 'status': 'stopping'}), 200


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """
    Report where a training job stands.

    Finished jobs are removed from memory; their status is then reported
    from the network that ran them.
    """
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    for network_id, net_info in active_networks.items():
        if net_info.get('last_job_id') == job_id and net_info.get('trained'):
            return jsonify({
                'network_id': network_id,
                'status': 'completed',
                'progress': 100,
                'accuracy': net_info.get('accuracy'),
                'message': 'Job finished; result is kept on the network'
            }), 200

    logger.warning(f"No job or network result for job {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict(network_id: str):
    """
    Evaluate a network.

    Request body:
        {'features': [0.0, 1.0]}             # one row
        {'sequence': [[...], [...], ...]}    # recurrent networks, fresh context

    Returns:
        JSON with ``output`` (one row) or ``outputs`` (sequence)
    """
    if network_id not in active_networks:
        logger.warning(f"Prediction requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    net: NNetwork = active_networks[network_id]['network']
    if net.running:
        return jsonify({'error': 'Network is training'}), 409

    data = request.get_json() or {}
    width = net.skeleton.get_input_layer_size()

    if 'sequence' in data:
        rows = data['sequence']
        if not isinstance(rows, list) or not all(
            isinstance(row, list) and len(row) == width for row in rows
        ):
            return jsonify({'error': f'sequence must be a list of rows of {width} values'}), 400
        outputs = net.predict_sequence(rows)
        return jsonify({'network_id': network_id, 'outputs': outputs}), 200

    features = data.get('features')
    if not isinstance(features, list) or len(features) != width:
        return jsonify({'error': f'features must be a list of {width} values'}), 400

    output = net.predict(features)
    response: Dict[str, Any] = {'network_id': network_id, 'output': output}
    if net.skeleton.output_type == gmath.CLASSIFICATION and len(output) > 1:
        response['predicted_class'] = max(range(len(output)), key=output.__getitem__)
    return jsonify(response), 200


@app.route('/api/networks/<network_id>/activations', methods=['GET'])
def get_activations(network_id: str):
    """Return every node's last activation, input layer first."""
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    net: NNetwork = active_networks[network_id]['network']
    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'recurrent': is_recurrent(net.net_type),
        'activations': net.node_activations(),
        'learning_curve': net.get_learning_curve()
    }), 200


def describe_active_network(network_id: str, info: Dict[str, Any]) -> Dict[str, Any]:
    net: NNetwork = info['network']
    return {
        'network_id': network_id,
        'architecture': info['architecture'],
        'net_type': info['net_type'],
        'trained': info['trained'],
        'accuracy': info['accuracy'],
        'epochs': net.epochs,
        'status': 'training' if net.running else 'in_memory'
    }


def forget_network(network_id: str) -> Tuple[bool, bool]:
    """
    Drop a network from memory and from the registry.

    A running training loop is asked to stop first.

    Returns:
        (removed from memory, removed from the registry)
    """
    info = active_networks.pop(network_id, None)
    if info is not None:
        info['network'].stop()
    return info is not None, delete_network(network_id, model_dir=MODEL_DIR)


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """
    List networks, in-memory ones first.

    Registry entries that are not loaded are reported with status ``saved``
    and carry the registry metadata (topology, weights_shape, timestamps).
    """
    networks = [describe_active_network(nid, info) for nid, info in active_networks.items()]

    for saved in list_saved_networks(model_dir=MODEL_DIR):
        if saved['network_id'] in active_networks:
            continue
        saved['status'] = 'saved'
        networks.append(saved)

    logger.debug(f"Listing {len(networks)} network(s), {len(active_networks)} loaded")
    return jsonify({'networks': networks}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Remove one network from memory and from the registry."""
    from_memory, from_disk = forget_network(network_id)

    if not (from_memory or from_disk):
        logger.warning(f"Cannot delete unknown network {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Network {network_id} removed (memory={from_memory}, registry={from_disk})")
    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': from_memory,
        'deleted_from_disk': from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Remove every network, loaded or only saved."""
    network_ids = set(active_networks)
    network_ids.update(saved['network_id'] for saved in list_saved_networks(model_dir=MODEL_DIR))

    memory_count = 0
    disk_count = 0
    for network_id in network_ids:
        from_memory, from_disk = forget_network(network_id)
        memory_count += from_memory
        disk_count += from_disk

    logger.info(f"Removed {len(network_ids)} network(s): {memory_count} loaded, {disk_count} saved")
    return jsonify({
        'deleted_count': len(network_ids),
        'deleted_from_memory': memory_count,
        'deleted_from_disk': disk_count,
        'message': f'Removed {len(network_ids)} network(s)'
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Run the registry cleanup now instead of waiting for the daily task.

    Request body (optional):
        {'days': 2}    # age threshold, defaults to CLEANUP_AGE_DAYS
    """
    days = (request.get_json(silent=True) or {}).get('days', CLEANUP_AGE_DAYS)
    # bool is an int subclass; reject it explicitly
    if isinstance(days, bool) or not isinstance(days, (int, float)) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = run_cleanup_once(days)
    if deleted_count < 0:
        return jsonify({'error': 'Cleanup failed, see server log'}), 500

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': f'Removed {deleted_count} network(s) older than {days} day(s)'
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    is_cloud = bool(os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Serving on port {port} (production)")
    else:
        logger.info(f"Development server on http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_cloud,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is taken; set PORT to another value")
            sys.exit(1)
        else:
            raise
