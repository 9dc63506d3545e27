"""
data.py
~~~~~~~

Synthetic regression data for the playground.

Provides four bivariate test functions, random sampling with optional
noise, a train/test split, a regular evaluation grid and a standard
scaler for optional normalization.
"""

import logging
import math
from typing import Callable, Dict, NamedTuple, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

Range = Tuple[float, float]


class GeneratedData(NamedTuple):
    """Input features X (N x input_dim) and targets Y (N x output_dim)."""
    X: np.ndarray
    Y: np.ndarray


class GridData(NamedTuple):
    """
    Regular mesh over the input ranges.

    ``grid_points`` holds one (x, y) row per mesh node, iterating x fastest
    and y slowest, so it reshapes to (grid_size, grid_size) like the grids.
    """
    grid_points: np.ndarray
    x_grid: np.ndarray
    y_grid: np.ndarray


# ============================================================================
# TEST FUNCTIONS
# ============================================================================

def saddle_function(x, y):
    """f(x, y) = x^2 - y^2"""
    return x * x - y * y


def rosenbrock_function(x, y):
    """f(x, y) = (1 - x)^2 + 100 * (y - x^2)^2"""
    return (1 - x) ** 2 + 100 * (y - x * x) ** 2


def sine_function(x, y):
    """f(x, y) = sin(x) * cos(y)"""
    return np.sin(x) * np.cos(y)


def circle_function(x, y):
    """f(x, y) = x^2 + y^2"""
    return x * x + y * y


FUNCTIONS: Dict[str, Callable] = {
    'saddle': saddle_function,
    'rosenbrock': rosenbrock_function,
    'sine': sine_function,
    'circle': circle_function,
}


def get_function_by_name(name: str) -> Callable:
    """Look up a test function; unknown names fall back to saddle."""
    key = (name or '').lower()
    if key not in FUNCTIONS:
        logger.debug(f"Unknown data function '{name}', falling back to saddle")
        return saddle_function
    return FUNCTIONS[key]


# ============================================================================
# SAMPLING
# ============================================================================

def generate_data(
    function_name: str,
    samples: int,
    x_range: Range = (-3.0, 3.0),
    y_range: Range = (-3.0, 3.0),
    noise: float = 0.0,
    rng: Optional[np.random.Generator] = None
) -> GeneratedData:
    """
    Sample a test function at uniformly random points.

    The noise term approximates a Gaussian with the Irwin-Hall sum of four
    U(0, 1) draws: noise * (u1 + u2 + u3 + u4 - 2) / 2.

    Args:
        function_name: Name of the test function
        samples: Number of points to draw
        x_range: (low, high) for the first input
        y_range: (low, high) for the second input
        noise: Noise scale; 0 disables noise
        rng: Random generator

    Returns:
        GeneratedData with X of shape (samples, 2) and Y of shape (samples, 1)
    """
    rng = rng if rng is not None else np.random.default_rng()
    func = get_function_by_name(function_name)

    x = rng.random(samples) * (x_range[1] - x_range[0]) + x_range[0]
    y = rng.random(samples) * (y_range[1] - y_range[0]) + y_range[0]
    z = func(x, y)

    if noise > 0:
        z = z + noise * (rng.random((samples, 4)).sum(axis=1) - 2.0) / 2.0

    X = np.column_stack([x, y])
    Y = np.asarray(z, dtype=float).reshape(-1, 1)
    return GeneratedData(X, Y)


def split_train_test(
    data: GeneratedData,
    test_ratio: float = 0.2,
    rng: Optional[np.random.Generator] = None
) -> Tuple[GeneratedData, GeneratedData]:
    """
    Shuffle the samples and split off floor(N * test_ratio) for testing.

    Args:
        data: Samples to split
        test_ratio: Fraction of samples held out
        rng: Random generator

    Returns:
        Tuple of (train_data, test_data)
    """
    rng = rng if rng is not None else np.random.default_rng()
    num_samples = len(data.X)
    num_test = int(math.floor(num_samples * test_ratio))
    num_train = num_samples - num_test

    # Generator.permutation is a Fisher-Yates shuffle
    order = rng.permutation(num_samples)
    X, Y = data.X[order], data.Y[order]

    train_data = GeneratedData(X[:num_train], Y[:num_train])
    test_data = GeneratedData(X[num_train:], Y[num_train:])
    return train_data, test_data


def generate_grid_data(
    x_range: Range = (-3.0, 3.0),
    y_range: Range = (-3.0, 3.0),
    grid_size: int = 20
) -> GridData:
    """Build a grid_size x grid_size mesh for surface display and evaluation."""
    x_values = np.linspace(x_range[0], x_range[1], grid_size)
    y_values = np.linspace(y_range[0], y_range[1], grid_size)
    x_grid, y_grid = np.meshgrid(x_values, y_values)
    grid_points = np.column_stack([x_grid.ravel(), y_grid.ravel()])
    return GridData(grid_points, x_grid, y_grid)


def calculate_true_surface(
    function_name: str,
    x_grid: np.ndarray,
    y_grid: np.ndarray
) -> np.ndarray:
    """Evaluate the noiseless test function on a mesh."""
    func = get_function_by_name(function_name)
    return np.asarray(func(x_grid, y_grid), dtype=float)


# ============================================================================
# NORMALIZATION
# ============================================================================

class StandardScaler:
    """
    Per-feature standardization of X and Y.

    Uses the population standard deviation; a zero deviation is replaced
    by 1 so constant features pass through centred but unscaled.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.x_mean: Optional[np.ndarray] = None
        self.x_std: Optional[np.ndarray] = None
        self.y_mean: Optional[np.ndarray] = None
        self.y_std: Optional[np.ndarray] = None

    @property
    def is_x_fit(self) -> bool:
        return self.x_mean is not None

    @property
    def is_y_fit(self) -> bool:
        return self.y_mean is not None

    @staticmethod
    def _moments(values) -> Tuple[np.ndarray, np.ndarray]:
        values = np.asarray(values, dtype=float)
        mean = values.mean(axis=0)
        std = values.std(axis=0)
        std[std == 0] = 1.0
        return mean, std

    def fit(self, X, Y=None) -> 'StandardScaler':
        """Compute the statistics of X and, when given, Y."""
        self.fit_x(X)
        if Y is not None:
            self.fit_y(Y)
        return self

    def fit_x(self, X) -> None:
        if len(X) == 0:
            return
        self.x_mean, self.x_std = self._moments(X)

    def fit_y(self, Y) -> None:
        if len(Y) == 0:
            return
        self.y_mean, self.y_std = self._moments(Y)

    def _check_x(self) -> None:
        if not self.is_x_fit:
            raise RuntimeError("Scaler not fit for X. Call fit_x first.")

    def _check_y(self) -> None:
        if not self.is_y_fit:
            raise RuntimeError("Scaler not fit for Y. Call fit_y first.")

    def transform_x(self, X) -> np.ndarray:
        self._check_x()
        return (np.asarray(X, dtype=float) - self.x_mean) / self.x_std

    def transform_y(self, Y) -> np.ndarray:
        self._check_y()
        return (np.asarray(Y, dtype=float) - self.y_mean) / self.y_std

    def inverse_transform_x(self, X) -> np.ndarray:
        self._check_x()
        return np.asarray(X, dtype=float) * self.x_std + self.x_mean

    def inverse_transform_y(self, Y) -> np.ndarray:
        self._check_y()
        return np.asarray(Y, dtype=float) * self.y_std + self.y_mean

    def get_params(self) -> Dict[str, Optional[np.ndarray]]:
        """Copies of the fitted statistics (None where not fit)."""
        def copy(value):
            return None if value is None else value.copy()

        return {
            'x_mean': copy(self.x_mean),
            'x_std': copy(self.x_std),
            'y_mean': copy(self.y_mean),
            'y_std': copy(self.y_std),
        }
