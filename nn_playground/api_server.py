"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for the playground.

This module provides endpoints for:
- Creating and managing playground sessions
- Editing network, training and data configuration
- Training with real-time progress updates via WebSockets
- Fetching training history and rendered surfaces

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for cooperative background training tasks
"""

import os
import sys
import uuid
import logging
from typing import Any, Dict, Optional

import gevent
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from nn_playground.config import DataConfig, NetworkConfig, TrainingConfig
from nn_playground.controller import PlaygroundController, PlaygroundStatus
from nn_playground.data import GridData
from nn_playground.initializers import INITIALIZERS
from nn_playground.network import TrainingHistory
from nn_playground.optimizers import OPTIMIZER_NAMES
from nn_playground.visualization import render_training_figure, training_update_payload

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('nn_playground').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO streams per-epoch telemetry to connected clients
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

# Playground sessions in memory: {playground_id: controller}
playgrounds: Dict[str, PlaygroundController] = {}

# Background training greenlets: {playground_id: greenlet}
training_tasks: Dict[str, Any] = {}


class RequestError(ValueError):
    """A request body that cannot be applied."""


def get_playground(playground_id: str) -> Optional[PlaygroundController]:
    return playgrounds.get(playground_id)


def not_found(playground_id: str, action: str):
    logger.warning(f"{action} requested for non-existent playground: {playground_id}")
    return jsonify({'error': 'Playground not found'}), 404


def require_name(data: Dict[str, Any], key: str, allowed) -> str:
    value = data.get(key)
    if not isinstance(value, str) or value.lower() not in allowed:
        raise RequestError(f"{key} must be one of {sorted(allowed)}")
    return value.lower()


def attach_telemetry(playground_id: str, controller: PlaygroundController) -> None:
    """Stream every epoch of this playground to WebSocket clients."""

    def emit_update(history: TrainingHistory, grid_data: GridData, epoch: int, total_epochs: int) -> None:
        payload = training_update_payload(history, grid_data, epoch, total_epochs)
        payload['playground_id'] = playground_id
        payload['progress'] = controller.state.progress
        socketio.emit('training_update', payload)

    controller.set_visualization_consumer(emit_update)


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

def train_playground_task(playground_id: str) -> None:
    """
    Background task that trains one playground.

    The controller yields to the gevent hub between epochs, so HTTP
    requests (including stop) are served while training runs.
    """
    controller = playgrounds.get(playground_id)
    if controller is None:
        return

    def on_complete(status: PlaygroundStatus, history: TrainingHistory) -> None:
        if status == PlaygroundStatus.ERRORED:
            socketio.emit('training_error', {
                'playground_id': playground_id,
                'status': status.value,
                'error': controller.state.last_error
            })
        else:
            socketio.emit('training_complete', {
                'playground_id': playground_id,
                'status': status.value,
                'epoch': controller.state.current_epoch,
                'progress': controller.state.progress,
                'loss': float(history.loss[-1]) if history.loss else None
            })
        # Let gevent send the message immediately
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for playground {playground_id}")
        controller.start_training(on_complete=on_complete)
    except Exception as e:
        logger.exception(f"Training task failed for playground {playground_id}: {e}")
        socketio.emit('training_error', {
            'playground_id': playground_id,
            'status': PlaygroundStatus.ERRORED.value,
            'error': str(e)
        })
    finally:
        training_tasks.pop(playground_id, None)


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status with playground and training counts."""
    active_training = sum(1 for c in playgrounds.values() if c.state.is_training)

    return jsonify({
        'status': 'online',
        'playgrounds': len(playgrounds),
        'training_jobs': active_training
    }), 200


@app.route('/api/playgrounds', methods=['POST'])
def create_playground():
    """
    Create and initialize a playground session.

    Request body (all optional):
        {
            'network': {'hidden_dims': [10, 5], 'optimizer': 'adam', ...},
            'training': {'learning_rate': 0.01, 'num_epochs': 1000, ...},
            'data': {'data_function': 'saddle', 'seed': 42, ...}
        }

    Returns:
        JSON with playground_id and the session summary
    """
    data = request.get_json(silent=True) or {}

    try:
        controller = PlaygroundController(
            network_config=NetworkConfig.from_dict(data.get('network')),
            training_config=TrainingConfig.from_dict(data.get('training')),
            data_config=DataConfig.from_dict(data.get('data'))
        )
        controller.initialize()
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid playground configuration: {e}")
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.exception(f"Error creating playground: {e}")
        return jsonify({'error': f'Failed to create playground: {str(e)}'}), 500

    playground_id = str(uuid.uuid4())
    attach_telemetry(playground_id, controller)
    playgrounds[playground_id] = controller

    logger.info(f"Created playground {playground_id}")

    return jsonify({'playground_id': playground_id, **controller.summary()}), 201


@app.route('/api/playgrounds', methods=['GET'])
def list_playgrounds():
    """List all playground sessions."""
    return jsonify({
        'playgrounds': [
            {'playground_id': pid, **controller.summary()}
            for pid, controller in playgrounds.items()
        ]
    }), 200


@app.route('/api/playgrounds/<playground_id>', methods=['GET'])
def get_playground_endpoint(playground_id: str):
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'State')
    return jsonify({'playground_id': playground_id, **controller.summary()}), 200


@app.route('/api/playgrounds/<playground_id>', methods=['DELETE'])
def delete_playground(playground_id: str):
    """Stop any running training and drop the session."""
    controller = playgrounds.pop(playground_id, None)
    if controller is None:
        return not_found(playground_id, 'Delete')

    controller.stop_training()
    controller.set_visualization_consumer(None)
    logger.info(f"Deleted playground {playground_id}")

    return jsonify({'playground_id': playground_id, 'deleted': True}), 200


@app.route('/api/playgrounds/<playground_id>/config', methods=['PUT'])
def update_config(playground_id: str):
    """
    Apply partial config updates.

    Request body (each section optional):
        {'network': {...}, 'training': {...}, 'data': {...}}

    Network and data changes are rejected while training.
    """
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'Config update')

    data = request.get_json(silent=True) or {}
    if controller.state.is_training and ('network' in data or 'data' in data):
        return jsonify({'error': 'Cannot change network or data while training'}), 409

    try:
        if data.get('network'):
            controller.update_network_config(data['network'])
        if data.get('training'):
            controller.update_training_config(data['training'])
        if data.get('data'):
            controller.update_data_config(data['data'])
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid config update for {playground_id}: {e}")
        return jsonify({'error': str(e)}), 400

    return jsonify({'playground_id': playground_id, **controller.summary()}), 200


@app.route('/api/playgrounds/<playground_id>/initialize', methods=['POST'])
def initialize_playground(playground_id: str):
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'Initialize')
    if controller.state.is_training:
        return jsonify({'error': 'Playground is training'}), 409

    try:
        controller.initialize()
    except Exception as e:
        logger.exception(f"Error initializing playground {playground_id}: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return jsonify({'playground_id': playground_id, **controller.summary()}), 200


@app.route('/api/playgrounds/<playground_id>/train', methods=['POST'])
def train_playground(playground_id: str):
    """
    Start training in the background.

    Request body (optional): training config overrides, e.g.
        {'num_epochs': 200, 'learning_rate': 0.01}

    Returns:
        202 once the background task is scheduled
    """
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'Training')
    if controller.state.is_training or playground_id in training_tasks:
        return jsonify({'error': 'Playground is already training'}), 409

    data = request.get_json(silent=True) or {}
    try:
        if data:
            controller.update_training_config(data)
        if controller.state.network is None:
            controller.initialize()
    except (TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    logger.info(f"Scheduling training for playground {playground_id}: {controller.training_config}")

    # Run training in background so we can return immediately
    training_tasks[playground_id] = socketio.start_background_task(
        train_playground_task, playground_id
    )

    return jsonify({
        'playground_id': playground_id,
        'status': 'training_started'
    }), 202


@app.route('/api/playgrounds/<playground_id>/stop', methods=['POST'])
def stop_playground(playground_id: str):
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'Stop')

    controller.stop_training()
    return jsonify({'playground_id': playground_id, **controller.summary()}), 200


@app.route('/api/playgrounds/<playground_id>/reset', methods=['POST'])
def reset_playground(playground_id: str):
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'Reset')

    try:
        controller.reset()
    except Exception as e:
        logger.exception(f"Error resetting playground {playground_id}: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return jsonify({'playground_id': playground_id, **controller.summary()}), 200


@app.route('/api/playgrounds/<playground_id>/optimizer', methods=['PUT'])
def set_optimizer(playground_id: str):
    """Request body: {'optimizer': 'adam'}"""
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'Optimizer change')

    try:
        name = require_name(request.get_json(silent=True) or {}, 'optimizer', OPTIMIZER_NAMES)
    except RequestError as e:
        return jsonify({'error': str(e)}), 400

    controller.set_optimizer(name)
    return jsonify({'playground_id': playground_id, **controller.summary()}), 200


@app.route('/api/playgrounds/<playground_id>/weight_initializer', methods=['PUT'])
def set_weight_initializer(playground_id: str):
    """Request body: {'initializer': 'xavier'}"""
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'Initializer change')

    try:
        name = require_name(request.get_json(silent=True) or {}, 'initializer', INITIALIZERS)
    except RequestError as e:
        return jsonify({'error': str(e)}), 400

    controller.set_weight_initializer(name)
    return jsonify({'playground_id': playground_id, **controller.summary()}), 200


@app.route('/api/playgrounds/<playground_id>/layers/<int:layer_index>/initializer', methods=['PUT'])
def set_layer_initializer(playground_id: str, layer_index: int):
    """Request body: {'initializer': 'he'}"""
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'Layer initializer change')

    if layer_index >= controller.network_config.num_layers:
        return jsonify({'error': f'Layer index {layer_index} out of range'}), 400

    try:
        name = require_name(request.get_json(silent=True) or {}, 'initializer', INITIALIZERS)
    except RequestError as e:
        return jsonify({'error': str(e)}), 400

    controller.set_layer_initializer(layer_index, name)
    return jsonify({'playground_id': playground_id, **controller.summary()}), 200


@app.route('/api/playgrounds/<playground_id>/normalization', methods=['PUT'])
def set_normalization(playground_id: str):
    """Request body: {'use_normalization': true}. A change resets the playground."""
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'Normalization change')

    data = request.get_json(silent=True) or {}
    value = data.get('use_normalization')
    if not isinstance(value, bool):
        return jsonify({'error': 'use_normalization must be a boolean'}), 400

    controller.set_use_normalization(value)
    return jsonify({'playground_id': playground_id, **controller.summary()}), 200


@app.route('/api/playgrounds/<playground_id>/history', methods=['GET'])
def get_history(playground_id: str):
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'History')

    return jsonify({
        'playground_id': playground_id,
        'history': controller.display_history().to_dict()
    }), 200


@app.route('/api/playgrounds/<playground_id>/surface', methods=['GET'])
def get_surface(playground_id: str):
    """
    Render the current predicted surface next to the true surface.

    Returns JSON with a base64-encoded PNG.
    """
    controller = get_playground(playground_id)
    if controller is None:
        return not_found(playground_id, 'Surface')

    state = controller.state
    if state.network is None or state.grid_data is None:
        return jsonify({'error': 'Playground not initialized'}), 409

    try:
        predictions = controller.to_display(state.network.predict(state.grid_points_for_prediction))
        image = render_training_figure(
            state.grid_data, state.true_surface, controller.display_history(), predictions
        )
    except Exception as e:
        logger.exception(f"Error rendering surface for {playground_id}: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return jsonify({
        'playground_id': playground_id,
        'epoch': state.current_epoch,
        'image_data': image
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    is_cloud = bool(os.environ.get('PORT'))
    port = int(os.environ.get('PORT', 8000))

    if is_cloud:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

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
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
