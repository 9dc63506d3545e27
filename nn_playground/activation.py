"""
activation.py
~~~~~~~~~~~~~

Elementwise activation functions applied after a layer's affine transform.

Each activation exposes ``activate`` and ``derivative``; the derivative is
evaluated on the pre-activation values ``z`` cached by the layer.
"""

import logging
from typing import Dict, Type

import numpy as np

logger = logging.getLogger(__name__)


class ActivationFunction:
    """Base class for elementwise activation functions."""

    name = 'base'

    def activate(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def derivative(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class Sigmoid(ActivationFunction):
    """Sigmoid activation: 1 / (1 + e^(-x))."""

    name = 'sigmoid'

    def activate(self, x: np.ndarray) -> np.ndarray:
        # Clamp before exponentiation so large magnitudes cannot overflow
        clipped = np.clip(np.asarray(x, dtype=float), -500.0, 500.0)
        return 1.0 / (1.0 + np.exp(-clipped))

    def derivative(self, x: np.ndarray) -> np.ndarray:
        activated = self.activate(x)
        return activated * (1.0 - activated)


class ReLU(ActivationFunction):
    """Rectified linear unit: max(0, x)."""

    name = 'relu'

    def activate(self, x: np.ndarray) -> np.ndarray:
        return np.maximum(0.0, np.asarray(x, dtype=float))

    def derivative(self, x: np.ndarray) -> np.ndarray:
        return (np.asarray(x, dtype=float) > 0).astype(float)


class Tanh(ActivationFunction):
    """Hyperbolic tangent activation."""

    name = 'tanh'

    def activate(self, x: np.ndarray) -> np.ndarray:
        return np.tanh(np.asarray(x, dtype=float))

    def derivative(self, x: np.ndarray) -> np.ndarray:
        return 1.0 - np.tanh(np.asarray(x, dtype=float)) ** 2


class Linear(ActivationFunction):
    """Identity activation; the derivative is constantly 1."""

    name = 'linear'

    def activate(self, x: np.ndarray) -> np.ndarray:
        return np.array(x, dtype=float, copy=True)

    def derivative(self, x: np.ndarray) -> np.ndarray:
        return np.ones_like(np.asarray(x, dtype=float))


ACTIVATIONS: Dict[str, Type[ActivationFunction]] = {
    'sigmoid': Sigmoid,
    'relu': ReLU,
    'tanh': Tanh,
    'linear': Linear,
}


def get_activation(name: str) -> ActivationFunction:
    """
    Get an activation function by name.

    Names come from free-form UI selections, so unknown names fall back
    to Tanh instead of raising.

    Args:
        name: Activation name (case-insensitive)

    Returns:
        A new activation instance
    """
    key = (name or '').lower()
    if key not in ACTIVATIONS:
        logger.debug(f"Unknown activation '{name}', falling back to tanh")
        return Tanh()
    return ACTIVATIONS[key]()
