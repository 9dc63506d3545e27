"""
optimizers.py
~~~~~~~~~~~~~

Per-layer stateful optimizers.

Each layer owns exactly one optimizer instance. The optimizer keeps state
shaped like that layer's weights and bias (velocities, moment estimates,
squared-gradient caches) and turns averaged mini-batch gradients into new
parameter values:

    new_weights, new_bias = optimizer.update(weights, bias, gradients)

State is allocated when the optimizer is attached to a layer via
``allocate``. When an optimizer is used on its own, the first ``update``
call allocates it from the parameter shapes.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, NamedTuple, Optional, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_LEARNING_RATE = 0.01


class Gradients(NamedTuple):
    """Gradients of the loss with respect to one layer's parameters."""
    d_weights: np.ndarray
    d_bias: np.ndarray


@dataclass(frozen=True)
class OptimizerConfig:
    """Hyperparameters shared by the optimizer factory."""
    learning_rate: float = DEFAULT_LEARNING_RATE
    epsilon: float = 1e-8
    weight_decay: float = 0.0
    initial_accumulator_value: float = 0.0
    # VSGD priors
    ghattg: float = 30.0
    ps: float = 1e-8
    tau1: float = 0.81
    tau2: float = 0.9

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'OptimizerConfig':
        """Build a config from a dict, ignoring unknown keys."""
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class Optimizer:
    """Base class for per-layer optimizers."""

    name = 'base'

    def __init__(self, learning_rate: float = DEFAULT_LEARNING_RATE):
        self.learning_rate = learning_rate
        self._weights_shape: Optional[Tuple[int, ...]] = None
        self._bias_shape: Optional[Tuple[int, ...]] = None

    @property
    def is_allocated(self) -> bool:
        return self._weights_shape is not None

    def allocate(self, weights_shape, bias_shape) -> None:
        """
        Allocate zeroed state for parameters of the given shapes.

        Any previous state is discarded.
        """
        self._weights_shape = tuple(weights_shape)
        self._bias_shape = tuple(bias_shape)
        self._allocate_state(self._weights_shape, self._bias_shape)

    def _allocate_state(self, weights_shape, bias_shape) -> None:
        pass

    def update(
        self,
        weights: np.ndarray,
        bias: np.ndarray,
        gradients: Gradients
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Apply one optimization step.

        Args:
            weights: Current weight matrix (output_dim x input_dim)
            bias: Current bias vector (output_dim)
            gradients: Averaged gradients for the same parameters

        Returns:
            Tuple of (new_weights, new_bias); the inputs are not modified
        """
        if self._weights_shape != weights.shape or self._bias_shape != bias.shape:
            self.allocate(weights.shape, bias.shape)
        return self._step(weights, bias, gradients)

    def _step(self, weights, bias, gradients):
        raise NotImplementedError

    def get_config(self) -> Dict[str, Any]:
        return {'learning_rate': self.learning_rate}

    def __repr__(self) -> str:
        params = ', '.join(f"{k}={v}" for k, v in self.get_config().items())
        return f"{self.__class__.__name__}({params})"


class SGDOptimizer(Optimizer):
    """
    Stochastic gradient descent with optional momentum.

    Without momentum: w -= lr * g.
    With momentum: v = momentum * v - lr * g; w += v.
    """

    name = 'sgd'

    def __init__(self, learning_rate: float = DEFAULT_LEARNING_RATE, momentum: float = 0.0):
        super().__init__(learning_rate)
        self.momentum = momentum
        self.v_weights: Optional[np.ndarray] = None
        self.v_bias: Optional[np.ndarray] = None

    def _allocate_state(self, weights_shape, bias_shape):
        self.v_weights = np.zeros(weights_shape)
        self.v_bias = np.zeros(bias_shape)

    def _step(self, weights, bias, gradients):
        if self.momentum > 0:
            self.v_weights = self.momentum * self.v_weights - self.learning_rate * gradients.d_weights
            self.v_bias = self.momentum * self.v_bias - self.learning_rate * gradients.d_bias
            return weights + self.v_weights, bias + self.v_bias

        return (
            weights - self.learning_rate * gradients.d_weights,
            bias - self.learning_rate * gradients.d_bias
        )

    def get_config(self):
        return {'learning_rate': self.learning_rate, 'momentum': self.momentum}


class RMSPropOptimizer(Optimizer):
    """
    RMSProp: scales each step by a moving average of squared gradients.
    """

    name = 'rmsprop'

    def __init__(
        self,
        learning_rate: float = 0.001,
        decay: float = 0.9,
        epsilon: float = 1e-8
    ):
        super().__init__(learning_rate)
        self.decay = decay
        self.epsilon = epsilon
        self.cache_weights: Optional[np.ndarray] = None
        self.cache_bias: Optional[np.ndarray] = None

    def _allocate_state(self, weights_shape, bias_shape):
        self.cache_weights = np.zeros(weights_shape)
        self.cache_bias = np.zeros(bias_shape)

    def _step(self, weights, bias, gradients):
        dw, db = gradients.d_weights, gradients.d_bias
        self.cache_weights = self.decay * self.cache_weights + (1 - self.decay) * dw ** 2
        self.cache_bias = self.decay * self.cache_bias + (1 - self.decay) * db ** 2

        new_weights = weights - self.learning_rate * dw / np.sqrt(self.cache_weights + self.epsilon)
        new_bias = bias - self.learning_rate * db / np.sqrt(self.cache_bias + self.epsilon)
        return new_weights, new_bias

    def get_config(self):
        return {
            'learning_rate': self.learning_rate,
            'decay': self.decay,
            'epsilon': self.epsilon
        }


class AdamOptimizer(Optimizer):
    """
    Adam: bias-corrected first and second moment estimates.

    The bias correction is folded into the step size:
    alpha = lr * sqrt(1 - beta2^t) / (1 - beta1^t).
    """

    name = 'adam'

    def __init__(
        self,
        learning_rate: float = 0.001,
        beta1: float = 0.9,
        beta2: float = 0.999,
        epsilon: float = 1e-8
    ):
        super().__init__(learning_rate)
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon
        self.iteration = 0
        self.m_weights: Optional[np.ndarray] = None
        self.m_bias: Optional[np.ndarray] = None
        self.v_weights: Optional[np.ndarray] = None
        self.v_bias: Optional[np.ndarray] = None

    def _allocate_state(self, weights_shape, bias_shape):
        self.iteration = 0
        self.m_weights = np.zeros(weights_shape)
        self.m_bias = np.zeros(bias_shape)
        self.v_weights = np.zeros(weights_shape)
        self.v_bias = np.zeros(bias_shape)

    def _step(self, weights, bias, gradients):
        dw, db = gradients.d_weights, gradients.d_bias
        self.iteration += 1
        alpha = (
            self.learning_rate
            * np.sqrt(1 - self.beta2 ** self.iteration)
            / (1 - self.beta1 ** self.iteration)
        )

        self.m_weights = self.beta1 * self.m_weights + (1 - self.beta1) * dw
        self.v_weights = self.beta2 * self.v_weights + (1 - self.beta2) * dw ** 2
        self.m_bias = self.beta1 * self.m_bias + (1 - self.beta1) * db
        self.v_bias = self.beta2 * self.v_bias + (1 - self.beta2) * db ** 2

        new_weights = weights - alpha * self.m_weights / (np.sqrt(self.v_weights) + self.epsilon)
        new_bias = bias - alpha * self.m_bias / (np.sqrt(self.v_bias) + self.epsilon)
        return new_weights, new_bias

    def get_config(self):
        return {
            'learning_rate': self.learning_rate,
            'beta1': self.beta1,
            'beta2': self.beta2,
            'epsilon': self.epsilon
        }


class AdagradOptimizer(Optimizer):
    """
    Adagrad: monotonically accumulating squared-gradient cache.

    When ``weight_decay`` is positive, the L2 term is folded into the
    gradient before it is accumulated.
    """

    name = 'adagrad'

    def __init__(
        self,
        learning_rate: float = DEFAULT_LEARNING_RATE,
        epsilon: float = 1e-8,
        weight_decay: float = 0.0,
        initial_accumulator_value: float = 0.0
    ):
        super().__init__(learning_rate)
        self.epsilon = epsilon
        self.weight_decay = weight_decay
        self.initial_accumulator_value = initial_accumulator_value
        self.cache_weights: Optional[np.ndarray] = None
        self.cache_bias: Optional[np.ndarray] = None

    def _allocate_state(self, weights_shape, bias_shape):
        self.cache_weights = np.full(weights_shape, self.initial_accumulator_value, dtype=float)
        self.cache_bias = np.full(bias_shape, self.initial_accumulator_value, dtype=float)

    def _step(self, weights, bias, gradients):
        dw, db = gradients.d_weights, gradients.d_bias
        if self.weight_decay > 0:
            dw = dw + self.weight_decay * weights
            db = db + self.weight_decay * bias

        self.cache_weights = self.cache_weights + dw ** 2
        self.cache_bias = self.cache_bias + db ** 2

        new_weights = weights - self.learning_rate * dw / np.sqrt(self.cache_weights + self.epsilon)
        new_bias = bias - self.learning_rate * db / np.sqrt(self.cache_bias + self.epsilon)
        return new_weights, new_bias

    def get_config(self):
        return {
            'learning_rate': self.learning_rate,
            'epsilon': self.epsilon,
            'weight_decay': self.weight_decay,
            'initial_accumulator_value': self.initial_accumulator_value
        }


class VSGDOptimizer(Optimizer):
    """
    Variational SGD.

    Treats the true gradient as a latent variable and the observed
    mini-batch gradient as a noisy measurement of it. Each step forms a
    precision-weighted average of the observed gradient and the previous
    posterior mean, then refreshes the gamma precision parameters with
    decaying rates step^-tau1 and step^-tau2.
    """

    name = 'vsgd'

    def __init__(
        self,
        learning_rate: float = 0.1,
        ghattg: float = 30.0,
        ps: float = 1e-8,
        tau1: float = 0.81,
        tau2: float = 0.9,
        weight_decay: float = 0.0,
        epsilon: float = 1e-8
    ):
        super().__init__(learning_rate)
        self.ghattg = ghattg
        self.ps = ps
        self.tau1 = tau1
        self.tau2 = tau2
        self.weight_decay = weight_decay
        self.epsilon = epsilon

        self.pa2 = 2.0 * ps + 1.0 + 1e-4
        self.pbg2 = 2.0 * ps
        self.pbhg2 = 2.0 * ghattg * ps
        self.step = 0
        self.state: Dict[str, np.ndarray] = {}

    def _allocate_state(self, weights_shape, bias_shape):
        self.step = 0
        self.state = {
            'mug': np.zeros(weights_shape),
            'bg': np.zeros(weights_shape),
            'bhg': np.zeros(weights_shape),
            'mug_bias': np.zeros(bias_shape),
            'bg_bias': np.zeros(bias_shape),
            'bhg_bias': np.zeros(bias_shape),
        }

    def _update_param(self, param, grad, mug, bg, bhg):
        """Return (new_param, new_mug, new_bg, new_bhg) for one tensor."""
        mug_prev = mug
        param_decayed = param * (1 - self.learning_rate * self.weight_decay)

        if self.step == 1:
            sg = np.full_like(param, self.pbg2 / (self.pa2 - 1.0), dtype=float)
            shg = np.full_like(param, self.pbhg2 / (self.pa2 - 1.0), dtype=float)
        else:
            sg = bg / self.pa2
            shg = bhg / self.pa2

        new_mug = (grad * sg + mug_prev * shg) / (sg + shg)
        sigg = sg * shg / (sg + shg)

        mug_sq = sigg + new_mug ** 2
        bg2 = self.pbg2 + mug_sq - 2.0 * new_mug * mug_prev + mug_prev ** 2
        bhg2 = self.pbhg2 + mug_sq - 2.0 * grad * new_mug + grad ** 2

        rho1 = self.step ** (-self.tau1)
        rho2 = self.step ** (-self.tau2)
        new_bg = bg * (1.0 - rho1) + bg2 * rho1
        new_bhg = bhg * (1.0 - rho2) + bhg2 * rho2

        new_param = param_decayed - self.learning_rate * new_mug / (np.sqrt(mug_sq) + self.epsilon)
        return new_param, new_mug, new_bg, new_bhg

    def _step(self, weights, bias, gradients):
        self.step += 1
        s = self.state

        new_weights, s['mug'], s['bg'], s['bhg'] = self._update_param(
            weights, gradients.d_weights, s['mug'], s['bg'], s['bhg']
        )
        new_bias, s['mug_bias'], s['bg_bias'], s['bhg_bias'] = self._update_param(
            bias, gradients.d_bias, s['mug_bias'], s['bg_bias'], s['bhg_bias']
        )
        return new_weights, new_bias

    def get_config(self):
        return {
            'learning_rate': self.learning_rate,
            'ghattg': self.ghattg,
            'ps': self.ps,
            'tau1': self.tau1,
            'tau2': self.tau2,
            'weight_decay': self.weight_decay,
            'epsilon': self.epsilon
        }


OPTIMIZER_NAMES = ('sgd', 'sgd_momentum', 'rmsprop', 'adam', 'adagrad', 'vsgd')


def get_optimizer(
    name: str,
    config: Union[OptimizerConfig, Dict[str, Any], None] = None
) -> Optimizer:
    """
    Create an optimizer by name.

    Args:
        name: One of OPTIMIZER_NAMES (case-insensitive). Unknown names fall
            back to plain SGD.
        config: OptimizerConfig or dict of hyperparameters; the learning
            rate defaults to 0.01

    Returns:
        A new optimizer with unallocated state
    """
    if not isinstance(config, OptimizerConfig):
        config = OptimizerConfig.from_dict(config)

    learning_rate = config.learning_rate or DEFAULT_LEARNING_RATE
    key = (name or '').lower()

    if key == 'sgd':
        return SGDOptimizer(learning_rate)
    if key == 'sgd_momentum':
        return SGDOptimizer(learning_rate, momentum=0.9)
    if key == 'rmsprop':
        return RMSPropOptimizer(learning_rate)
    if key == 'adam':
        return AdamOptimizer(learning_rate)
    if key == 'adagrad':
        return AdagradOptimizer(
            learning_rate,
            epsilon=config.epsilon,
            weight_decay=config.weight_decay,
            initial_accumulator_value=config.initial_accumulator_value
        )
    if key == 'vsgd':
        return VSGDOptimizer(
            learning_rate,
            ghattg=config.ghattg,
            ps=config.ps,
            tau1=config.tau1,
            tau2=config.tau2,
            weight_decay=config.weight_decay,
            epsilon=config.epsilon
        )

    logger.debug(f"Unknown optimizer '{name}', falling back to sgd")
    return SGDOptimizer(learning_rate)
