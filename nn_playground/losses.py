"""
losses.py
~~~~~~~~~

Loss functions for regression-style training.

``forward`` reduces a batch of predictions to a scalar. ``backward``
returns the gradient with respect to the predictions with the same shape
(one row per sample); the network calls it with a single-sample batch.
"""

import logging
from typing import Dict, Type

import numpy as np

logger = logging.getLogger(__name__)


def _as_batch(values) -> np.ndarray:
    """Promote a vector to a one-row batch."""
    array = np.asarray(values, dtype=float)
    if array.ndim == 1:
        array = array.reshape(1, -1)
    return array


class LossFunction:
    """Base class for loss functions."""

    name = 'base'

    def forward(self, predictions, targets) -> float:
        raise NotImplementedError

    def backward(self, predictions, targets) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class MSELoss(LossFunction):
    """Mean squared error: mean((pred - target)^2)."""

    name = 'mse'

    def forward(self, predictions, targets) -> float:
        predictions, targets = _as_batch(predictions), _as_batch(targets)
        if predictions.size == 0:
            return 0.0
        return float(np.mean((predictions - targets) ** 2))

    def backward(self, predictions, targets) -> np.ndarray:
        predictions, targets = _as_batch(predictions), _as_batch(targets)
        output_dim = predictions.shape[1]
        return 2.0 * (predictions - targets) / output_dim


class MAELoss(LossFunction):
    """Mean absolute error: mean(|pred - target|)."""

    name = 'mae'

    def forward(self, predictions, targets) -> float:
        predictions, targets = _as_batch(predictions), _as_batch(targets)
        if predictions.size == 0:
            return 0.0
        return float(np.mean(np.abs(predictions - targets)))

    def backward(self, predictions, targets) -> np.ndarray:
        predictions, targets = _as_batch(predictions), _as_batch(targets)
        output_dim = predictions.shape[1]
        # np.sign is 0 at exact equality
        return np.sign(predictions - targets) / output_dim


class BinaryCrossEntropyLoss(LossFunction):
    """Binary cross-entropy: -(t*log(p) + (1-t)*log(1-p))."""

    name = 'binary_cross_entropy'

    def __init__(self, epsilon: float = 1e-10):
        self.epsilon = epsilon

    def _clip(self, predictions: np.ndarray) -> np.ndarray:
        return np.clip(predictions, self.epsilon, 1.0 - self.epsilon)

    def forward(self, predictions, targets) -> float:
        predictions, targets = _as_batch(predictions), _as_batch(targets)
        if predictions.size == 0:
            return 0.0
        p = self._clip(predictions)
        losses = -(targets * np.log(p) + (1.0 - targets) * np.log(1.0 - p))
        return float(np.mean(losses))

    def backward(self, predictions, targets) -> np.ndarray:
        predictions, targets = _as_batch(predictions), _as_batch(targets)
        p = self._clip(predictions)
        return (p - targets) / (p * (1.0 - p))


class CrossEntropyLoss(LossFunction):
    """Categorical cross-entropy: -sum(t * log(p)), averaged over samples."""

    name = 'cross_entropy'

    def __init__(self, epsilon: float = 1e-10):
        self.epsilon = epsilon

    def forward(self, predictions, targets) -> float:
        predictions, targets = _as_batch(predictions), _as_batch(targets)
        num_samples = predictions.shape[0]
        if num_samples == 0:
            return 0.0
        p = np.clip(predictions, self.epsilon, 1.0 - self.epsilon)
        return float(-np.sum(targets * np.log(p)) / num_samples)

    def backward(self, predictions, targets) -> np.ndarray:
        predictions, targets = _as_batch(predictions), _as_batch(targets)
        p = np.clip(predictions, self.epsilon, 1.0 - self.epsilon)
        return -targets / p


LOSSES: Dict[str, Type[LossFunction]] = {
    'mse': MSELoss,
    'mean_squared_error': MSELoss,
    'mae': MAELoss,
    'mean_absolute_error': MAELoss,
    'bce': BinaryCrossEntropyLoss,
    'binary_cross_entropy': BinaryCrossEntropyLoss,
    'cross_entropy': CrossEntropyLoss,
}


def get_loss(name: str) -> LossFunction:
    """
    Get a loss function by name. Unknown names fall back to MSE.

    Args:
        name: Loss name or alias (case-insensitive)

    Returns:
        A new loss instance
    """
    key = (name or '').lower()
    if key not in LOSSES:
        logger.debug(f"Unknown loss '{name}', falling back to mse")
        return MSELoss()
    return LOSSES[key]()
