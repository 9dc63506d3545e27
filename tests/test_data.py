"""
test_data.py
~~~~~~~~~~~~

Unit tests for synthetic data generation and the standard scaler.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nn_playground.data import (
    FUNCTIONS,
    GeneratedData,
    StandardScaler,
    calculate_true_surface,
    generate_data,
    generate_grid_data,
    get_function_by_name,
    saddle_function,
    split_train_test
)


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


@pytest.mark.unit
class TestFunctions:

    @pytest.mark.parametrize('name,x,y,expected', [
        ('saddle', 2.0, 1.0, 3.0),
        ('rosenbrock', 1.0, 1.0, 0.0),
        ('rosenbrock', 0.0, 0.0, 1.0),
        ('sine', 0.0, 0.0, 0.0),
        ('sine', np.pi / 2, 0.0, 1.0),
        ('circle', 3.0, 4.0, 25.0),
    ])
    def test_values(self, name, x, y, expected):
        assert FUNCTIONS[name](x, y) == pytest.approx(expected, abs=1e-12)

    def test_unknown_function_falls_back_to_saddle(self):
        assert get_function_by_name('mexican_hat') is saddle_function


@pytest.mark.unit
class TestGenerateData:

    def test_shapes_and_ranges(self, rng):
        data = generate_data('circle', 500, (-1.0, 2.0), (0.0, 5.0), rng=rng)

        assert data.X.shape == (500, 2)
        assert data.Y.shape == (500, 1)
        assert np.all((data.X[:, 0] >= -1.0) & (data.X[:, 0] <= 2.0))
        assert np.all((data.X[:, 1] >= 0.0) & (data.X[:, 1] <= 5.0))

    def test_noiseless_targets_are_exact(self, rng):
        data = generate_data('saddle', 50, noise=0.0, rng=rng)
        expected = data.X[:, 0] ** 2 - data.X[:, 1] ** 2

        assert np.allclose(data.Y[:, 0], expected)

    def test_noise_is_bounded_and_centred(self, rng):
        """Test the Irwin-Hall noise: |noise| <= scale, mean ~ 0."""
        data = generate_data('saddle', 20000, noise=0.5, rng=rng)
        residual = data.Y[:, 0] - (data.X[:, 0] ** 2 - data.X[:, 1] ** 2)

        assert np.all(np.abs(residual) <= 1.0)
        assert residual.mean() == pytest.approx(0.0, abs=0.01)
        # Var = scale^2 * (4 / 12) / 4
        assert residual.var() == pytest.approx(0.25 / 12, rel=0.05)


@pytest.mark.unit
class TestSplitTrainTest:

    def test_eighty_twenty_split_without_overlap(self, rng):
        X = np.arange(200, dtype=float).reshape(100, 2)
        Y = np.arange(100, dtype=float).reshape(100, 1)

        train, test = split_train_test(GeneratedData(X, Y), test_ratio=0.2, rng=rng)

        assert len(train.X) == 80
        assert len(test.X) == 20
        ids = np.concatenate([train.Y[:, 0], test.Y[:, 0]])
        assert sorted(ids.tolist()) == list(range(100))

    def test_rows_stay_paired(self, rng):
        X = np.arange(20, dtype=float).reshape(10, 2)
        Y = X[:, :1] * 10

        train, test = split_train_test(GeneratedData(X, Y), 0.3, rng=rng)

        for part in (train, test):
            assert np.allclose(part.Y[:, 0], part.X[:, 0] * 10)

    def test_test_count_is_floored(self, rng):
        data = GeneratedData(np.zeros((7, 2)), np.zeros((7, 1)))
        train, test = split_train_test(data, 0.5, rng=rng)

        assert (len(train.X), len(test.X)) == (4, 3)


@pytest.mark.unit
class TestGrid:

    def test_grid_shapes_and_order(self):
        grid = generate_grid_data((-1.0, 1.0), (0.0, 2.0), grid_size=3)

        assert grid.grid_points.shape == (9, 2)
        assert grid.x_grid.shape == (3, 3)
        # x varies fastest
        assert np.allclose(grid.grid_points[:3, 0], [-1.0, 0.0, 1.0])
        assert np.allclose(grid.grid_points[:3, 1], [0.0, 0.0, 0.0])
        assert np.allclose(grid.grid_points[:, 0].reshape(3, 3), grid.x_grid)

    def test_true_surface(self):
        grid = generate_grid_data(grid_size=4)
        surface = calculate_true_surface('circle', grid.x_grid, grid.y_grid)

        assert surface.shape == (4, 4)
        assert np.allclose(surface, grid.x_grid ** 2 + grid.y_grid ** 2)


@pytest.mark.unit
class TestStandardScaler:

    def test_round_trip(self, rng):
        X = rng.normal(5.0, 3.0, size=(100, 2))
        Y = rng.normal(-2.0, 0.5, size=(100, 1))
        scaler = StandardScaler().fit(X, Y)

        assert np.allclose(scaler.inverse_transform_x(scaler.transform_x(X)), X)
        assert np.allclose(scaler.inverse_transform_y(scaler.transform_y(Y)), Y)

    def test_transform_standardizes(self, rng):
        X = rng.normal(5.0, 3.0, size=(1000, 2))
        transformed = StandardScaler().fit(X).transform_x(X)

        assert np.allclose(transformed.mean(axis=0), 0.0, atol=1e-12)
        assert np.allclose(transformed.std(axis=0), 1.0)

    def test_constant_feature_is_not_scaled(self):
        X = np.array([[1.0, 4.0], [1.0, 6.0]])
        scaler = StandardScaler().fit(X)

        assert scaler.x_std[0] == 1.0
        assert np.allclose(scaler.transform_x(X)[:, 0], 0.0)

    def test_unfit_transform_raises(self):
        scaler = StandardScaler()
        with pytest.raises(RuntimeError):
            scaler.transform_x(np.zeros((1, 2)))
        with pytest.raises(RuntimeError):
            scaler.inverse_transform_y(np.zeros((1, 1)))

    def test_fit_without_y_leaves_y_unfit(self):
        scaler = StandardScaler().fit(np.ones((3, 2)))

        assert scaler.is_x_fit
        assert not scaler.is_y_fit

    def test_reset_and_get_params(self):
        scaler = StandardScaler().fit(np.array([[0.0], [2.0]]), np.array([[1.0], [3.0]]))
        params = scaler.get_params()

        assert params['x_mean'][0] == pytest.approx(1.0)
        assert params['y_std'][0] == pytest.approx(1.0)

        scaler.reset()
        assert not scaler.is_x_fit
        assert scaler.get_params()['x_mean'] is None
