"""
network.py
~~~~~~~~~~

Feedforward neural network built from dense layers.

The network owns an ordered list of layers, one optimizer per layer, one
shared loss and a training history. Training is mini-batch gradient
descent where every batch gradient is the average of single-sample
backward passes.

``train`` runs one epoch at a time and hands control back to the caller
between epochs through ``yield_func``, so a host (a gevent greenlet
serving WebSocket clients, for example) stays responsive during long runs.
"""

import copy
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np

from nn_playground.activation import ActivationFunction, get_activation
from nn_playground.config import NetworkConfig, TrainingConfig
from nn_playground.data import GeneratedData
from nn_playground.initializers import WeightInitializer
from nn_playground.layer import Layer
from nn_playground.losses import get_loss
from nn_playground.optimizers import Gradients, OptimizerConfig

logger = logging.getLogger(__name__)

# Grid predictions are recorded at most this many times per run
PREDICTION_SNAPSHOTS = 50
# The first-layer weight subset is recorded every this many epochs
WEIGHT_TRACE_INTERVAL = 5
# Number of first-layer weights in each trace entry
WEIGHT_TRACE_SIZE = 5
ACCURACY_THRESHOLD = 0.5

EpochCallback = Callable[[int, float, float], None]


@dataclass
class TrainingHistory:
    """
    Telemetry accumulated during training.

    The lists do not have equal lengths. ``loss``, ``gradient_norm`` and
    ``epochs`` get one entry per epoch; the accuracies only when test data
    is given; ``predictions`` and ``selected_weights_trace`` are throttled
    and carry their own epoch indices in ``prediction_epochs`` and
    ``weight_trace_epochs``. Always correlate through the index lists,
    never by position.
    """
    loss: List[float] = field(default_factory=list)
    gradient_norm: List[float] = field(default_factory=list)
    epochs: List[int] = field(default_factory=list)
    train_accuracy: List[float] = field(default_factory=list)
    test_accuracy: List[float] = field(default_factory=list)
    predictions: List[np.ndarray] = field(default_factory=list)
    prediction_epochs: List[int] = field(default_factory=list)
    selected_weights_trace: List[np.ndarray] = field(default_factory=list)
    weight_trace_epochs: List[int] = field(default_factory=list)

    def snapshot(self) -> 'TrainingHistory':
        """Deep copy that later training cannot mutate."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable form."""
        return {
            'loss': [float(v) for v in self.loss],
            'gradient_norm': [float(v) for v in self.gradient_norm],
            'epochs': [int(v) for v in self.epochs],
            'train_accuracy': [float(v) for v in self.train_accuracy],
            'test_accuracy': [float(v) for v in self.test_accuracy],
            'predictions': [np.asarray(p).tolist() for p in self.predictions],
            'prediction_epochs': [int(v) for v in self.prediction_epochs],
            'selected_weights_trace': [np.asarray(w).tolist() for w in self.selected_weights_trace],
            'weight_trace_epochs': [int(v) for v in self.weight_trace_epochs],
        }


class NeuralNetwork:
    """
    A sequence of dense layers trained with per-layer optimizers.

    Example:
        >>> net = NeuralNetwork(optimizer='adam')
        >>> net.add_layer(8, get_activation('relu'), input_dim=2)
        >>> net.add_layer(1, get_activation('linear'))
        >>> net.predict(np.zeros((3, 2))).shape
        (3, 1)
    """

    def __init__(
        self,
        use_bias: bool = True,
        seed: Optional[int] = None,
        weight_initializer: Optional[str] = None,
        optimizer: Optional[str] = None,
        layer_initializers: Optional[List[str]] = None,
        loss: str = 'mse',
        rng: Optional[np.random.Generator] = None
    ):
        """
        Create an empty network.

        Args:
            use_bias: Whether layers add a bias term
            seed: Seed for initialization and shuffling (ignored if rng given)
            weight_initializer: Network-wide initializer name
            optimizer: Optimizer name attached to every layer
            layer_initializers: Per-layer initializer names
            loss: Loss name
            rng: Random generator shared with the caller
        """
        self.use_bias = use_bias
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.weight_initializer = weight_initializer
        self.layer_initializers = list(layer_initializers) if layer_initializers else None
        self.optimizer_name = optimizer
        self.optimizer_config = OptimizerConfig()
        self.loss = get_loss(loss)
        self.layers: List[Layer] = []
        self.history = TrainingHistory()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: NetworkConfig,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None
    ) -> 'NeuralNetwork':
        """Build a network with hidden layers followed by the output layer."""
        model = cls(
            use_bias=config.use_bias,
            seed=seed,
            weight_initializer=config.weight_initializer,
            optimizer=config.optimizer,
            layer_initializers=config.layer_initializers,
            loss=config.loss,
            rng=rng
        )

        for i, hidden_dim in enumerate(config.hidden_dims):
            input_dim = config.input_dim if i == 0 else None
            model.add_layer(hidden_dim, get_activation(config.hidden_activations[i]), input_dim, i)

        input_dim = config.input_dim if not config.hidden_dims else None
        model.add_layer(
            config.output_dim,
            get_activation(config.output_activation),
            input_dim,
            len(config.hidden_dims)
        )
        return model

    def add_layer(
        self,
        output_dim: int,
        activation: ActivationFunction,
        input_dim: Optional[int] = None,
        layer_index: Optional[int] = None
    ) -> Layer:
        """
        Append a dense layer.

        Initializer resolution order: the per-layer override at
        ``layer_index``, then the network-wide initializer, then the
        initializer recommended for the activation.

        Args:
            output_dim: Number of neurons
            activation: Activation function
            input_dim: Required for the first layer; inferred afterwards
            layer_index: Position used to look up a per-layer initializer

        Returns:
            The new layer

        Raises:
            ValueError: If the first layer has no input dimension, or an
                explicit input dimension does not match the previous layer
        """
        if not self.layers and input_dim is None:
            raise ValueError("Input dimension must be specified for the first layer")

        if self.layers:
            previous_dim = self.layers[-1].output_dim
            if input_dim is not None and input_dim != previous_dim:
                raise ValueError(
                    f"Layer input dimension {input_dim} does not match the "
                    f"previous layer's output dimension {previous_dim}"
                )
            input_dim = previous_dim

        initializer = self.weight_initializer
        if (self.layer_initializers is not None and layer_index is not None
                and layer_index < len(self.layer_initializers)):
            initializer = self.layer_initializers[layer_index]

        layer = Layer(input_dim, output_dim, activation, self.use_bias, initializer, self.rng)
        if self.optimizer_name:
            layer.set_optimizer(self.optimizer_name, self.optimizer_config)

        self.layers.append(layer)
        logger.debug(f"Added {layer} with {layer.initializer!r}")
        return layer

    # ------------------------------------------------------------------
    # Forward / backward
    # ------------------------------------------------------------------

    def _require_layers(self) -> None:
        if not self.layers:
            raise ValueError("Network has no layers; call add_layer first")

    def forward(self, x) -> np.ndarray:
        """Propagate one sample through every layer."""
        self._require_layers()
        activations = np.asarray(x, dtype=float)
        for layer in self.layers:
            activations = layer.forward(activations)
        return activations

    def predict(self, X) -> np.ndarray:
        """Forward every row of X independently; returns (N, output_dim)."""
        self._require_layers()
        X = np.asarray(X, dtype=float)
        if len(X) == 0:
            return np.zeros((0, self.layers[-1].output_dim))
        return np.array([self.forward(x) for x in X])

    def backward(self, x, y) -> List[Gradients]:
        """
        Compute single-sample gradients for every layer.

        Runs a forward pass on ``x`` first, so each layer's cache belongs
        to this sample.

        Returns:
            One Gradients record per layer, in layer order
        """
        output = self.forward(x)
        d_activation = self.loss.backward(output, y)[0]

        gradients: List[Gradients] = []
        for layer in reversed(self.layers):
            d_activation, layer_gradients = layer.backward(d_activation)
            gradients.append(layer_gradients)
        gradients.reverse()
        return gradients

    def update_parameters(self, gradients: List[Gradients]) -> None:
        for layer, layer_gradients in zip(self.layers, gradients):
            layer.update_parameters(layer_gradients)

    def compute_gradient_norm(self, gradients: List[Gradients]) -> float:
        """
        Frobenius norm over all weight (and bias) gradients.

        Used as a training-health metric only; gradients are never clipped.
        """
        total = 0.0
        for layer_gradients in gradients:
            total += float(np.sum(layer_gradients.d_weights ** 2))
            if self.use_bias:
                total += float(np.sum(layer_gradients.d_bias ** 2))
        return math.sqrt(total)

    # ------------------------------------------------------------------
    # Strategy management
    # ------------------------------------------------------------------

    def set_optimizer(
        self,
        optimizer: str,
        config: Union[OptimizerConfig, Dict[str, Any], None] = None
    ) -> None:
        """
        Give every layer a fresh optimizer, discarding all optimizer state.

        Optimizers do not read live configuration, so this must be called
        again whenever the learning rate changes.
        """
        if not isinstance(config, OptimizerConfig):
            config = OptimizerConfig.from_dict(config)

        self.optimizer_name = optimizer
        self.optimizer_config = config
        for layer in self.layers:
            layer.set_optimizer(optimizer, config)

        logger.debug(
            f"Optimizer set to '{optimizer}' (lr={config.learning_rate}) "
            f"on {len(self.layers)} layer(s)"
        )

    def _reset_layer_optimizer(self, layer: Layer) -> None:
        layer.set_optimizer(self.optimizer_name or 'sgd', self.optimizer_config)

    def reinitialize_weights(
        self,
        initializer: Union[WeightInitializer, str, None] = None,
        layer_index: Optional[int] = None
    ) -> None:
        """
        Reinitialize one layer (``layer_index``) or all layers.

        Optimizer state of every reinitialized layer is discarded.
        """
        if layer_index is not None and 0 <= layer_index < len(self.layers):
            layer = self.layers[layer_index]
            layer.reinitialize_weights(initializer)
            self._reset_layer_optimizer(layer)

            if isinstance(initializer, str) and self.layer_initializers is not None:
                while len(self.layer_initializers) <= layer_index:
                    self.layer_initializers.append(self.weight_initializer or 'he')
                self.layer_initializers[layer_index] = initializer
            return

        for layer in self.layers:
            layer.reinitialize_weights(initializer)
            self._reset_layer_optimizer(layer)

        if isinstance(initializer, str):
            self.weight_initializer = initializer
            if self.layer_initializers is None:
                self.layer_initializers = [initializer] * len(self.layers)

    def set_layer_initializer(self, layer_index: int, initializer: str) -> None:
        """Record a per-layer initializer and reinitialize that layer."""
        if not 0 <= layer_index < len(self.layers):
            logger.warning(f"Ignoring initializer for out-of-range layer {layer_index}")
            return

        default = self.weight_initializer or 'he'
        if self.layer_initializers is None:
            self.layer_initializers = [default] * len(self.layers)
        while len(self.layer_initializers) <= layer_index:
            self.layer_initializers.append(default)

        self.layer_initializers[layer_index] = initializer
        self.reinitialize_weights(initializer, layer_index)

    # ------------------------------------------------------------------
    # Parameters and metrics
    # ------------------------------------------------------------------

    def get_parameters(self) -> Dict[str, np.ndarray]:
        """Copies of all parameters keyed W1, b1, W2, b2, ..."""
        parameters = {}
        for i, layer in enumerate(self.layers, start=1):
            layer_parameters = layer.get_parameters()
            parameters[f'W{i}'] = layer_parameters['weights']
            parameters[f'b{i}'] = layer_parameters['bias']
        return parameters

    def set_parameters(self, parameters: Dict[str, np.ndarray]) -> None:
        for i, layer in enumerate(self.layers, start=1):
            layer.set_parameters({'weights': parameters[f'W{i}'], 'bias': parameters[f'b{i}']})

    def get_input_dim(self) -> int:
        return self.layers[0].input_dim if self.layers else 0

    def get_history(self) -> TrainingHistory:
        return self.history

    def get_selected_weights(self) -> np.ndarray:
        """The first few entries of the flattened first-layer weights."""
        if not self.layers:
            return np.zeros(0)
        return self.layers[0].weights.ravel()[:WEIGHT_TRACE_SIZE].copy()

    @staticmethod
    def compute_accuracy(predictions, targets, threshold: float = ACCURACY_THRESHOLD) -> float:
        """
        Regression accuracy proxy.

        A sample counts as correct when every output dimension is within
        ``threshold`` of its target.
        """
        predictions = np.asarray(predictions, dtype=float)
        targets = np.asarray(targets, dtype=float)
        if len(predictions) == 0:
            return 0.0
        correct = np.all(np.abs(predictions - targets) <= threshold, axis=1)
        return float(np.mean(correct))

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train_one_epoch(self, X, Y, batch_size: int) -> Tuple[float, float]:
        """
        Run one epoch of mini-batch updates.

        The sample order is shuffled once, then split into
        ceil(N / batch_size) batches (the last may be short). Each batch
        gradient is the mean of the single-sample gradients, applied with
        one optimizer step.

        Returns:
            Tuple of (mean batch loss, mean batch gradient norm)
        """
        X = np.asarray(X, dtype=float)
        Y = np.asarray(Y, dtype=float)
        num_samples = len(X)
        if num_samples == 0:
            raise ValueError("Cannot train on an empty dataset")

        batch_size = min(batch_size, num_samples)
        num_batches = math.ceil(num_samples / batch_size)
        order = self.rng.permutation(num_samples)

        total_loss = 0.0
        total_gradient_norm = 0.0

        for batch in range(num_batches):
            batch_indices = order[batch * batch_size:(batch + 1) * batch_size]

            sum_weights = [np.zeros_like(layer.weights) for layer in self.layers]
            sum_bias = [np.zeros_like(layer.bias) for layer in self.layers]
            for index in batch_indices:
                for i, sample_gradients in enumerate(self.backward(X[index], Y[index])):
                    sum_weights[i] += sample_gradients.d_weights
                    sum_bias[i] += sample_gradients.d_bias

            actual_size = len(batch_indices)
            averaged = [
                Gradients(dw / actual_size, db / actual_size)
                for dw, db in zip(sum_weights, sum_bias)
            ]

            self.update_parameters(averaged)

            batch_predictions = self.predict(X[batch_indices])
            total_loss += self.loss.forward(batch_predictions, Y[batch_indices])
            total_gradient_norm += self.compute_gradient_norm(averaged)

        return total_loss / num_batches, total_gradient_norm / num_batches

    def train(
        self,
        X,
        Y,
        config: TrainingConfig,
        grid_points: Optional[np.ndarray] = None,
        on_epoch_end: Optional[EpochCallback] = None,
        test_data: Optional[GeneratedData] = None,
        should_continue: Optional[Callable[[], bool]] = None,
        yield_func: Optional[Callable[[], None]] = None
    ) -> TrainingHistory:
        """
        Train for ``config.num_epochs`` epochs, one epoch at a time.

        Before each epoch ``should_continue`` is polled; returning False
        ends the run with the history recorded so far. After each epoch
        the history is updated, ``on_epoch_end(epoch, loss, progress)`` is
        called and ``yield_func`` gives the caller's scheduler a turn.

        Exceptions raised while training an epoch propagate to the caller;
        parameters keep whatever updates were already applied.

        Args:
            X: Training inputs
            Y: Training targets
            config: Training settings; ``start_epoch > 0`` resumes and
                keeps the existing history
            grid_points: Points whose predictions are snapshotted
            on_epoch_end: Per-epoch progress callback
            test_data: Held-out data for the accuracy proxy
            should_continue: Cooperative cancellation check
            yield_func: Called between epochs

        Returns:
            The training history
        """
        start_epoch = config.start_epoch or 0
        if start_epoch == 0:
            self.history = TrainingHistory()

        if self.optimizer_name:
            self.set_optimizer(
                self.optimizer_name,
                replace(self.optimizer_config, learning_rate=config.learning_rate)
            )

        prediction_interval = max(1, config.num_epochs // PREDICTION_SNAPSHOTS)
        last_epoch = config.num_epochs - 1
        epoch_range = config.num_epochs - start_epoch

        logger.debug(
            f"Training epochs {start_epoch}..{last_epoch} with batch size "
            f"{config.batch_size} and lr {config.learning_rate}"
        )

        for epoch in range(start_epoch, config.num_epochs):
            if should_continue is not None and not should_continue():
                logger.info(f"Training interrupted before epoch {epoch}")
                break

            loss, gradient_norm = self.train_one_epoch(X, Y, config.batch_size)

            self.history.loss.append(loss)
            self.history.gradient_norm.append(gradient_norm)
            self.history.epochs.append(epoch)

            if epoch % WEIGHT_TRACE_INTERVAL == 0 or epoch == last_epoch:
                self.history.selected_weights_trace.append(self.get_selected_weights())
                self.history.weight_trace_epochs.append(epoch)

            if grid_points is not None and (epoch % prediction_interval == 0 or epoch == last_epoch):
                self.history.predictions.append(self.predict(grid_points))
                self.history.prediction_epochs.append(epoch)

            if test_data is not None:
                self.history.train_accuracy.append(self.compute_accuracy(self.predict(X), Y))
                self.history.test_accuracy.append(
                    self.compute_accuracy(self.predict(test_data.X), test_data.Y)
                )

            progress = (epoch - start_epoch + 1) / epoch_range * 100
            if on_epoch_end is not None:
                on_epoch_end(epoch, loss, progress)

            if yield_func is not None and epoch < last_epoch:
                yield_func()

        return self.history

    def __repr__(self) -> str:
        sizes = [self.get_input_dim()] + [layer.output_dim for layer in self.layers]
        return f"NeuralNetwork(sizes={sizes}, optimizer={self.optimizer_name}, loss={self.loss.name})"
