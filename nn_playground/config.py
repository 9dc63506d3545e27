"""
config.py
~~~~~~~~~

Immutable configuration values for the playground.

Configs are frozen dataclasses. Edits never mutate a config in place; they
produce a new value (``dataclasses.replace`` or ``merged``) which the
controller swaps in wholesale.
"""

from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Dict, Optional, Tuple


def _known_fields(cls, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only the keys that are fields of ``cls``."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names}


class _ConfigMixin:
    """Dict conversion helpers shared by the config dataclasses."""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        """Build a config from a dict, ignoring unknown keys."""
        return cls(**_known_fields(cls, data))

    def merged(self, updates: Optional[Dict[str, Any]]):
        """Return a copy with the known keys of ``updates`` applied."""
        return replace(self, **_known_fields(type(self), updates))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {k: list(v) if isinstance(v, tuple) else v for k, v in data.items()}


@dataclass(frozen=True)
class NetworkConfig(_ConfigMixin):
    """
    Network architecture and strategy selection.

    Attributes:
        input_dim: Number of input features
        hidden_dims: Neuron count of every hidden layer
        output_dim: Number of outputs
        hidden_activations: Activation name per hidden layer
        output_activation: Activation name of the output layer
        use_bias: Whether layers add a bias term
        weight_initializer: Network-wide initializer name (optional)
        layer_initializers: Initializer name per layer, hidden layers
            first and the output layer last (optional)
        optimizer: Optimizer name
        loss: Loss name
    """
    input_dim: int = 2
    hidden_dims: Tuple[int, ...] = (10, 5)
    output_dim: int = 1
    hidden_activations: Tuple[str, ...] = ('tanh', 'tanh')
    output_activation: str = 'linear'
    use_bias: bool = True
    # He for every layer unless overridden; set None to use the initializer
    # recommended for each layer's activation
    weight_initializer: Optional[str] = 'he'
    layer_initializers: Optional[Tuple[str, ...]] = None
    optimizer: str = 'adam'
    loss: str = 'mse'

    def __post_init__(self):
        object.__setattr__(self, 'hidden_dims', tuple(int(d) for d in self.hidden_dims))
        object.__setattr__(self, 'hidden_activations', tuple(self.hidden_activations))
        if self.layer_initializers is not None:
            object.__setattr__(self, 'layer_initializers', tuple(self.layer_initializers))

        if self.input_dim < 1 or self.output_dim < 1:
            raise ValueError(
                f"input_dim and output_dim must be positive, got "
                f"{self.input_dim} and {self.output_dim}"
            )
        if any(d < 1 for d in self.hidden_dims):
            raise ValueError(f"hidden_dims must be positive, got {list(self.hidden_dims)}")
        if len(self.hidden_activations) != len(self.hidden_dims):
            raise ValueError(
                f"hidden_activations has {len(self.hidden_activations)} entries "
                f"but there are {len(self.hidden_dims)} hidden layers"
            )
        if (self.layer_initializers is not None
                and len(self.layer_initializers) != len(self.hidden_dims) + 1):
            raise ValueError(
                f"layer_initializers has {len(self.layer_initializers)} entries "
                f"but the network has {len(self.hidden_dims) + 1} layers"
            )

    @property
    def num_layers(self) -> int:
        return len(self.hidden_dims) + 1


@dataclass(frozen=True)
class TrainingConfig(_ConfigMixin):
    """
    Training loop settings.

    ``start_epoch`` is the resume point; 0 (the default) starts a fresh
    history.
    """
    learning_rate: float = 0.01
    num_epochs: int = 1000
    batch_size: int = 32
    noise: float = 0.1
    start_epoch: int = 0

    def __post_init__(self):
        if not self.learning_rate > 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.num_epochs < 1:
            raise ValueError(f"num_epochs must be at least 1, got {self.num_epochs}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.noise < 0:
            raise ValueError(f"noise must be non-negative, got {self.noise}")
        if self.start_epoch < 0:
            raise ValueError(f"start_epoch must be non-negative, got {self.start_epoch}")


@dataclass(frozen=True)
class DataConfig(_ConfigMixin):
    """
    Synthetic dataset settings.

    ``seed`` makes data generation, splitting, weight initialization and
    shuffling reproducible; None draws fresh entropy on every initialize.
    """
    data_function: str = 'saddle'
    samples: int = 1000
    test_ratio: float = 0.1
    x_range: Tuple[float, float] = (-3.0, 3.0)
    y_range: Tuple[float, float] = (-3.0, 3.0)
    grid_size: int = 20
    use_normalization: bool = False
    seed: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, 'x_range', tuple(float(v) for v in self.x_range))
        object.__setattr__(self, 'y_range', tuple(float(v) for v in self.y_range))

        if self.samples < 1:
            raise ValueError(f"samples must be at least 1, got {self.samples}")
        if not 0.0 <= self.test_ratio < 1.0:
            raise ValueError(f"test_ratio must be in [0, 1), got {self.test_ratio}")
        if len(self.x_range) != 2 or len(self.y_range) != 2:
            raise ValueError("x_range and y_range must each have two values")
        if self.grid_size < 2:
            raise ValueError(f"grid_size must be at least 2, got {self.grid_size}")
