"""
initializers.py
~~~~~~~~~~~~~~~

Weight initialization strategies.

Every initializer returns a matrix shaped ``(output_dim, input_dim)`` and
accepts an optional ``numpy.random.Generator`` so runs can be reproduced
from a seed.
"""

import logging
from typing import Dict, Optional, Type

import numpy as np

logger = logging.getLogger(__name__)


def randn(size, rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """
    Draw standard normal samples with the Box-Muller transform.

    Args:
        size: Output shape
        rng: Random generator (a fresh default generator if omitted)

    Returns:
        Array of samples with mean 0 and variance 1
    """
    rng = rng if rng is not None else np.random.default_rng()
    # 1 - U keeps u1 in (0, 1] so the log is always finite
    u1 = 1.0 - rng.random(size)
    u2 = rng.random(size)
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


class WeightInitializer:
    """Base class for weight initialization strategies."""

    name = 'base'

    def initialize(
        self,
        input_dim: int,
        output_dim: int,
        rng: Optional[np.random.Generator] = None
    ) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class RandomInitializer(WeightInitializer):
    """Uniform weights in [-scale, scale]."""

    name = 'random'

    def __init__(self, scale: float = 0.01):
        self.scale = scale

    def initialize(self, input_dim, output_dim, rng=None):
        rng = rng if rng is not None else np.random.default_rng()
        return (rng.random((output_dim, input_dim)) * 2.0 - 1.0) * self.scale

    def __repr__(self) -> str:
        return f"RandomInitializer(scale={self.scale})"


class HeInitializer(WeightInitializer):
    """He initialization: normal(0, sqrt(2 / input_dim)), suited to ReLU."""

    name = 'he'

    def initialize(self, input_dim, output_dim, rng=None):
        std = np.sqrt(2.0 / input_dim)
        return randn((output_dim, input_dim), rng) * std


class XavierInitializer(WeightInitializer):
    """Xavier/Glorot initialization: normal(0, sqrt(1 / (in + out)))."""

    name = 'xavier'

    def initialize(self, input_dim, output_dim, rng=None):
        std = np.sqrt(1.0 / (input_dim + output_dim))
        return randn((output_dim, input_dim), rng) * std


class XavierUniformInitializer(WeightInitializer):
    """Xavier/Glorot uniform initialization: uniform(+-sqrt(6 / (in + out)))."""

    name = 'xavier_uniform'

    def initialize(self, input_dim, output_dim, rng=None):
        rng = rng if rng is not None else np.random.default_rng()
        limit = np.sqrt(6.0 / (input_dim + output_dim))
        return (rng.random((output_dim, input_dim)) * 2.0 - 1.0) * limit


class ZeroInitializer(WeightInitializer):
    """All-zero weights."""

    name = 'zero'

    def initialize(self, input_dim, output_dim, rng=None):
        return np.zeros((output_dim, input_dim))


INITIALIZERS: Dict[str, Type[WeightInitializer]] = {
    'random': RandomInitializer,
    'he': HeInitializer,
    'xavier': XavierInitializer,
    'glorot': XavierInitializer,
    'xavier_uniform': XavierUniformInitializer,
    'zero': ZeroInitializer,
}


def get_initializer(name: str) -> WeightInitializer:
    """
    Get a weight initializer by name.

    Args:
        name: Initializer name (case-insensitive). Unknown names fall
            back to He initialization.

    Returns:
        A new initializer instance
    """
    key = (name or '').lower()
    if key not in INITIALIZERS:
        logger.debug(f"Unknown initializer '{name}', falling back to he")
        return HeInitializer()
    return INITIALIZERS[key]()


def get_initializer_for_activation(activation_name: str) -> WeightInitializer:
    """
    Get the recommended initializer for an activation function.

    relu -> He, sigmoid/tanh -> Xavier, linear -> Random(0.1),
    anything else -> He.
    """
    key = (activation_name or '').lower()
    if key == 'relu':
        return HeInitializer()
    if key in ('sigmoid', 'tanh'):
        return XavierInitializer()
    if key == 'linear':
        return RandomInitializer(0.1)
    return HeInitializer()
