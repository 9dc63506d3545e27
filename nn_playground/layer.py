"""
layer.py
~~~~~~~~

A fully-connected layer: one affine transform followed by an activation.

The layer keeps a single-slot cache of its last forward pass (input,
pre-activation, output). ``backward`` reads that cache, so a forward call
must immediately precede the backward call for the same sample. Batching
and gradient averaging are the network's job, not the layer's.
"""

import logging
from typing import Dict, Optional, Tuple, Union

import numpy as np

from nn_playground.activation import ActivationFunction
from nn_playground.initializers import (
    WeightInitializer,
    get_initializer,
    get_initializer_for_activation
)
from nn_playground.optimizers import (
    Gradients,
    Optimizer,
    OptimizerConfig,
    SGDOptimizer,
    get_optimizer
)

logger = logging.getLogger(__name__)


class Layer:
    """
    Dense layer with weights shaped (output_dim, input_dim).

    The bias vector always exists; when ``use_bias`` is False it is left
    out of the forward pass and receives zero gradients.
    """

    def __init__(
        self,
        input_dim: int,
        output_dim: int,
        activation: ActivationFunction,
        use_bias: bool = True,
        initializer: Union[WeightInitializer, str, None] = None,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Create a layer and initialize its parameters.

        Args:
            input_dim: Number of inputs
            output_dim: Number of neurons
            activation: Activation applied to the pre-activation values
            use_bias: Whether the bias takes part in the forward pass
            initializer: Initializer instance or name; defaults to the
                initializer recommended for the activation
            rng: Random generator used for weight initialization
        """
        self.input_dim = input_dim
        self.output_dim = output_dim
        self.activation = activation
        self.use_bias = use_bias
        self.rng = rng

        if initializer is None:
            self.initializer = get_initializer_for_activation(activation.name)
        elif isinstance(initializer, str):
            self.initializer = get_initializer(initializer)
        else:
            self.initializer = initializer

        self.weights = self.initializer.initialize(input_dim, output_dim, self.rng)
        self.bias = np.zeros(output_dim)

        self._cache: Dict[str, np.ndarray] = {}

        self.optimizer: Optimizer = SGDOptimizer()
        self.optimizer.allocate(self.weights.shape, self.bias.shape)

    def forward(self, x) -> np.ndarray:
        """
        Compute activation(W @ x + b) and cache the values backward needs.
        """
        x = np.asarray(x, dtype=float)
        z = self.weights @ x
        if self.use_bias:
            z = z + self.bias

        output = self.activation.activate(z)
        self._cache = {'input': x.copy(), 'z': z, 'output': output.copy()}
        return output

    def backward(self, d_output) -> Tuple[np.ndarray, Gradients]:
        """
        Backpropagate one sample through the layer.

        Args:
            d_output: Gradient of the loss w.r.t. this layer's output

        Returns:
            Tuple of (d_input, Gradients) where the gradients are for this
            single sample and are not averaged

        Raises:
            RuntimeError: If no forward pass is cached
        """
        if 'z' not in self._cache:
            raise RuntimeError(
                "Layer.backward called without a preceding forward pass"
            )

        x = self._cache['input']
        z = self._cache['z']

        d_z = np.asarray(d_output, dtype=float) * self.activation.derivative(z)
        d_weights = np.outer(d_z, x)
        d_bias = d_z.copy() if self.use_bias else np.zeros(self.output_dim)
        d_input = self.weights.T @ d_z

        return d_input, Gradients(d_weights, d_bias)

    def set_optimizer(
        self,
        optimizer: Union[Optimizer, str],
        config=None
    ) -> None:
        """
        Attach a fresh optimizer, discarding any previous optimizer state.

        Args:
            optimizer: Optimizer instance or name
            config: OptimizerConfig or dict used when a name is given
        """
        if isinstance(optimizer, str):
            optimizer = get_optimizer(optimizer, config if config is not None else OptimizerConfig())
        optimizer.allocate(self.weights.shape, self.bias.shape)
        self.optimizer = optimizer

    def update_parameters(self, gradients: Gradients) -> None:
        """Apply averaged gradients through this layer's optimizer."""
        self.weights, self.bias = self.optimizer.update(self.weights, self.bias, gradients)

    def reinitialize_weights(
        self,
        initializer: Union[WeightInitializer, str, None] = None
    ) -> None:
        """
        Replace the weights using the given (or current) initializer and
        zero the bias. Optimizer state is left untouched.
        """
        if isinstance(initializer, str):
            self.initializer = get_initializer(initializer)
        elif initializer is not None:
            self.initializer = initializer

        self.weights = self.initializer.initialize(self.input_dim, self.output_dim, self.rng)
        self.bias = np.zeros(self.output_dim)

    def get_parameters(self) -> Dict[str, np.ndarray]:
        return {'weights': self.weights.copy(), 'bias': self.bias.copy()}

    def set_parameters(self, parameters: Dict[str, np.ndarray]) -> None:
        weights = np.array(parameters['weights'], dtype=float)
        bias = np.array(parameters['bias'], dtype=float)
        if weights.shape != self.weights.shape or bias.shape != self.bias.shape:
            raise ValueError(
                f"Parameter shapes {weights.shape}/{bias.shape} do not match "
                f"layer shapes {self.weights.shape}/{self.bias.shape}"
            )
        self.weights = weights
        self.bias = bias

    def __repr__(self) -> str:
        return (
            f"Layer({self.input_dim} -> {self.output_dim}, "
            f"activation={self.activation.name}, use_bias={self.use_bias})"
        )
