"""
controller.py
~~~~~~~~~~~~~

Playground controller: owns the configuration, builds the network and the
data, runs the training loop and publishes telemetry.

Lifecycle:

    IDLE -> INITIALIZED -> TRAINING -> COMPLETED | STOPPED | ERRORED
                 ^                                   |
                 +------------- reset() -------------+

Training is cooperative. ``start_training`` runs in the calling greenlet
and yields to the gevent hub between epochs, so other greenlets (HTTP
handlers, WebSocket emitters) run while a model trains. ``stop_training``
sets the run's stop event, which the loop polls once per epoch.
"""

import copy
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

import gevent
import numpy as np
from gevent.event import Event

from nn_playground.config import DataConfig, NetworkConfig, TrainingConfig
from nn_playground.data import (
    GeneratedData,
    GridData,
    StandardScaler,
    calculate_true_surface,
    generate_data,
    generate_grid_data,
    split_train_test
)
from nn_playground.network import EpochCallback, NeuralNetwork, TrainingHistory

logger = logging.getLogger(__name__)

# Fields whose change requires rebuilding the network
ARCHITECTURE_FIELDS = (
    'input_dim', 'hidden_dims', 'output_dim', 'hidden_activations',
    'output_activation', 'use_bias', 'loss'
)

VisualizationConsumer = Callable[[TrainingHistory, GridData, int, int], None]
CompletionCallback = Callable[['PlaygroundStatus', TrainingHistory], None]


class PlaygroundStatus(str, Enum):
    IDLE = 'idle'
    INITIALIZED = 'initialized'
    TRAINING = 'training'
    COMPLETED = 'completed'
    STOPPED = 'stopped'
    ERRORED = 'errored'


@dataclass
class PlaygroundState:
    """Mutable runtime state of one playground."""
    status: PlaygroundStatus = PlaygroundStatus.IDLE
    is_training: bool = False
    current_epoch: int = 0
    progress: float = 0.0
    network: Optional[NeuralNetwork] = None
    raw_train_data: Optional[GeneratedData] = None
    train_data: Optional[GeneratedData] = None
    test_data: Optional[GeneratedData] = None
    grid_data: Optional[GridData] = None
    grid_points_for_prediction: Optional[np.ndarray] = None
    true_surface: Optional[np.ndarray] = None
    use_normalization: bool = False
    scaler: Optional[StandardScaler] = None
    last_error: Optional[str] = None


def gevent_yield() -> None:
    """Give other greenlets a turn."""
    gevent.sleep(0)


class PlaygroundController:
    """
    Owns one playground: configs, network, data and the training loop.
    """

    def __init__(
        self,
        network_config: Optional[NetworkConfig] = None,
        training_config: Optional[TrainingConfig] = None,
        data_config: Optional[DataConfig] = None,
        yield_func: Optional[Callable[[], None]] = None
    ):
        self.network_config = network_config or NetworkConfig()
        self.training_config = training_config or TrainingConfig()
        self.data_config = data_config or DataConfig()
        self.state = PlaygroundState(use_normalization=self.data_config.use_normalization)

        self._yield_func = yield_func or gevent_yield
        self._stop_event: Optional[Event] = None
        self._visualization_consumer: Optional[VisualizationConsumer] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_visualization_consumer(self, consumer: Optional[VisualizationConsumer]) -> None:
        self._visualization_consumer = consumer

    def update_network_config(self, updates: Union[NetworkConfig, Dict[str, Any]]) -> None:
        """
        Replace the network config.

        When the number of hidden layers changes, per-layer activation and
        initializer lists are resized to match unless the update supplies
        them. Architecture changes rebuild an existing network via reset().
        """
        old = self.network_config
        if isinstance(updates, NetworkConfig):
            new = updates
        else:
            updates = dict(updates)
            if 'hidden_dims' in updates:
                num_hidden = len(updates['hidden_dims'])
                if 'hidden_activations' not in updates:
                    fill = old.hidden_activations[-1] if old.hidden_activations else 'tanh'
                    activations = list(old.hidden_activations[:num_hidden])
                    activations += [fill] * (num_hidden - len(activations))
                    updates['hidden_activations'] = activations
                if 'layer_initializers' not in updates and old.layer_initializers is not None:
                    default = updates.get('weight_initializer', old.weight_initializer) or 'he'
                    initializers = list(old.layer_initializers[:num_hidden + 1])
                    initializers += [default] * (num_hidden + 1 - len(initializers))
                    updates['layer_initializers'] = initializers
            new = old.merged(updates)

        self.network_config = new
        logger.info(f"Network config updated: {new}")

        architecture_changed = any(
            getattr(old, name) != getattr(new, name) for name in ARCHITECTURE_FIELDS
        )
        if architecture_changed and self.state.network is not None:
            self.reset()
        elif new.optimizer != old.optimizer:
            self.set_optimizer(new.optimizer)

    def update_training_config(self, updates: Union[TrainingConfig, Dict[str, Any]]) -> None:
        """
        Replace the training config.

        A new learning rate is pushed into the network's optimizers
        immediately, since optimizers do not read live configuration. A
        run already in progress keeps the config it started with.
        """
        old = self.training_config
        new = updates if isinstance(updates, TrainingConfig) else old.merged(updates)
        self.training_config = new

        if (new.learning_rate != old.learning_rate and self.state.network is not None
                and not self.state.is_training):
            self.state.network.set_optimizer(
                self.network_config.optimizer, {'learning_rate': new.learning_rate}
            )
        logger.info(f"Training config updated: {new}")

    def update_data_config(self, updates: Union[DataConfig, Dict[str, Any]]) -> None:
        """
        Replace the data config.

        A normalization change forces reset(); other changes apply on the
        next initialize() or reset().
        """
        old = self.data_config
        new = updates if isinstance(updates, DataConfig) else old.merged(updates)

        if new.use_normalization != old.use_normalization:
            self.data_config = replace(new, use_normalization=old.use_normalization)
            self.set_use_normalization(new.use_normalization)
        else:
            self.data_config = new
        logger.info(f"Data config updated: {self.data_config}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Build fresh data, scaler and network from the current configs.

        The network is always constructed from scratch; there is no
        in-place architecture change.
        """
        data_config = self.data_config
        rng = np.random.default_rng(data_config.seed)

        try:
            raw_data = generate_data(
                data_config.data_function,
                data_config.samples,
                data_config.x_range,
                data_config.y_range,
                self.training_config.noise,
                rng=rng
            )
            raw_train, raw_test = split_train_test(raw_data, data_config.test_ratio, rng=rng)
            grid_data = generate_grid_data(data_config.x_range, data_config.y_range, data_config.grid_size)

            train_data, test_data = raw_train, raw_test
            grid_points = grid_data.grid_points
            scaler = None

            if data_config.use_normalization:
                scaler = StandardScaler().fit(raw_train.X, raw_train.Y)
                train_data = GeneratedData(scaler.transform_x(raw_train.X), scaler.transform_y(raw_train.Y))
                test_data = GeneratedData(scaler.transform_x(raw_test.X), scaler.transform_y(raw_test.Y))
                grid_points = scaler.transform_x(grid_data.grid_points)

            network = NeuralNetwork.from_config(self.network_config, rng=rng)
            network.set_optimizer(
                self.network_config.optimizer,
                {'learning_rate': self.training_config.learning_rate}
            )
        except Exception as e:
            logger.exception(f"Failed to initialize playground: {e}")
            raise

        self.state.network = network
        self.state.raw_train_data = raw_train
        self.state.train_data = train_data
        self.state.test_data = test_data
        self.state.grid_data = grid_data
        self.state.grid_points_for_prediction = grid_points
        self.state.true_surface = calculate_true_surface(
            data_config.data_function, grid_data.x_grid, grid_data.y_grid
        )
        self.state.scaler = scaler
        self.state.use_normalization = data_config.use_normalization
        self.state.status = PlaygroundStatus.INITIALIZED
        self.state.last_error = None

        logger.info(
            f"Initialized playground: {network}, {len(train_data.X)} train / "
            f"{len(test_data.X)} test samples of '{data_config.data_function}', "
            f"normalization={data_config.use_normalization}"
        )

    def start_training(
        self,
        on_epoch_end: Optional[EpochCallback] = None,
        on_complete: Optional[CompletionCallback] = None
    ) -> PlaygroundStatus:
        """
        Run the training loop until it completes, is stopped or fails.

        A run that was stopped part-way (0 < current_epoch < num_epochs - 1)
        resumes after its last completed epoch and keeps its history;
        otherwise training restarts from epoch 0.

        Args:
            on_epoch_end: Called with (epoch, loss, progress) after each epoch
            on_complete: Called with (status, history) when the run ends

        Returns:
            The status the run ended with (or the current status when the
            request was ignored)
        """
        network = self.state.network
        if self.state.is_training:
            logger.warning("Cannot start training: already training")
            return self.state.status
        if network is None or self.state.train_data is None:
            logger.warning("Cannot start training: playground not initialized")
            return self.state.status

        config = self.training_config
        current = self.state.current_epoch
        if 0 < current < config.num_epochs - 1:
            start_epoch = current + 1
            logger.info(f"Resuming training at epoch {start_epoch}/{config.num_epochs}")
        else:
            start_epoch = 0
            self.state.current_epoch = 0
            self.state.progress = 0.0
            logger.info(f"Starting training for {config.num_epochs} epoch(s)")

        run_config = replace(config, start_epoch=start_epoch)
        stop_event = Event()
        self._stop_event = stop_event
        self.state.is_training = True
        self.state.status = PlaygroundStatus.TRAINING
        self.state.last_error = None

        test_data = self.state.test_data
        if test_data is not None and len(test_data.X) == 0:
            test_data = None

        def handle_epoch_end(epoch: int, loss: float, progress: float) -> None:
            # A run orphaned by reset() must not touch the new state
            if self._stop_event is not stop_event:
                return
            self.state.current_epoch = epoch
            self.state.progress = progress
            logger.debug(f"Epoch {epoch}: loss={loss:.6f} progress={progress:.1f}%")
            if on_epoch_end is not None:
                on_epoch_end(epoch, loss, progress)
            # The callback may have reset the playground
            if self._stop_event is not stop_event:
                return
            self._publish(network, epoch, run_config.num_epochs)

        status = PlaygroundStatus.STOPPED
        try:
            history = network.train(
                self.state.train_data.X,
                self.state.train_data.Y,
                run_config,
                grid_points=self.state.grid_points_for_prediction,
                on_epoch_end=handle_epoch_end,
                test_data=test_data,
                should_continue=lambda: not stop_event.is_set(),
                yield_func=self._yield_func
            )
            finished = bool(history.epochs) and history.epochs[-1] == run_config.num_epochs - 1
            status = PlaygroundStatus.COMPLETED if finished else PlaygroundStatus.STOPPED
            logger.info(f"Training {status.value} after epoch {self.state.current_epoch}")
        except Exception as e:
            logger.exception(f"Training failed: {e}")
            status = PlaygroundStatus.ERRORED
            if self._stop_event is stop_event:
                self.state.last_error = str(e)
        finally:
            is_current_run = self._stop_event is stop_event
            if is_current_run:
                self.state.is_training = False
                self.state.status = status
                self._stop_event = None

        if is_current_run and on_complete is not None:
            on_complete(status, network.get_history())
        return status

    def stop_training(self) -> None:
        """Ask the running loop to stop at the next epoch boundary."""
        if self._stop_event is not None and not self._stop_event.is_set():
            logger.info("Requesting training to stop...")
            self._stop_event.set()

    def reset(self) -> None:
        """Stop training, zero the counters and rebuild everything."""
        self.stop_training()
        self._stop_event = None
        self.state.is_training = False
        self.state.current_epoch = 0
        self.state.progress = 0.0
        self.initialize()

    # ------------------------------------------------------------------
    # Per-field setters
    # ------------------------------------------------------------------

    def set_optimizer(self, optimizer_name: str) -> None:
        self.network_config = replace(self.network_config, optimizer=optimizer_name)
        if self.state.network is not None:
            self.state.network.set_optimizer(
                optimizer_name, {'learning_rate': self.training_config.learning_rate}
            )
        logger.info(f"Optimizer set to '{optimizer_name}'")

    def set_weight_initializer(self, initializer: str) -> None:
        """Apply a network-wide initializer and reinitialize every layer."""
        num_layers = self.network_config.num_layers
        self.network_config = replace(
            self.network_config,
            weight_initializer=initializer,
            layer_initializers=(initializer,) * num_layers
        )
        if self.state.network is not None:
            self.state.network.reinitialize_weights(initializer)
            self.state.network.layer_initializers = [initializer] * num_layers
        logger.info(f"Weight initializer set to '{initializer}'")

    def set_layer_initializer(self, layer_index: int, initializer: str) -> None:
        """Apply an initializer to one layer and reinitialize it."""
        num_layers = self.network_config.num_layers
        if not 0 <= layer_index < num_layers:
            logger.warning(f"Ignoring initializer for out-of-range layer {layer_index}")
            return

        default = self.network_config.weight_initializer or 'he'
        initializers = list(self.network_config.layer_initializers or [default] * num_layers)
        initializers[layer_index] = initializer
        self.network_config = replace(self.network_config, layer_initializers=tuple(initializers))

        if self.state.network is not None:
            self.state.network.set_layer_initializer(layer_index, initializer)
        logger.info(f"Layer {layer_index} initializer set to '{initializer}'")

    def set_use_normalization(self, use_normalization: bool) -> None:
        """Toggle normalization; a change rebuilds data and network."""
        if self.data_config.use_normalization == use_normalization:
            return
        self.data_config = replace(self.data_config, use_normalization=use_normalization)
        logger.info(f"Normalization {'enabled' if use_normalization else 'disabled'}; resetting")
        self.reset()

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def to_display(self, predictions: np.ndarray) -> np.ndarray:
        """Map network outputs back to the original target scale."""
        if self.state.use_normalization and self.state.scaler is not None:
            return self.state.scaler.inverse_transform_y(predictions)
        return np.asarray(predictions)

    def display_history(self, network: Optional[NeuralNetwork] = None) -> TrainingHistory:
        """
        Snapshot of the history with every grid prediction mapped to
        display space. The network keeps its own history normalized.
        """
        network = network or self.state.network
        if network is None:
            return TrainingHistory()
        history = network.get_history().snapshot()
        history.predictions = [self.to_display(p) for p in history.predictions]
        return history

    def _publish(self, network: NeuralNetwork, epoch: int, total_epochs: int) -> None:
        if self._visualization_consumer is None or self.state.grid_data is None:
            return
        self._visualization_consumer(
            self.display_history(network), self.state.grid_data, epoch, total_epochs
        )

    def get_state(self) -> PlaygroundState:
        return copy.copy(self.state)

    def summary(self) -> Dict[str, Any]:
        """JSON-ready description of configs and state."""
        history = self.state.network.get_history() if self.state.network else None
        return {
            'status': self.state.status.value,
            'is_training': self.state.is_training,
            'current_epoch': self.state.current_epoch,
            'progress': self.state.progress,
            'last_loss': float(history.loss[-1]) if history and history.loss else None,
            'last_error': self.state.last_error,
            'network': self.network_config.to_dict(),
            'training': self.training_config.to_dict(),
            'data': self.data_config.to_dict(),
        }
