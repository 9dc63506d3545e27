"""
test_network.py
~~~~~~~~~~~~~~~

Unit and integration tests for the neural network and its training loop.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nn_playground.activation import get_activation
from nn_playground.config import NetworkConfig, TrainingConfig
from nn_playground.data import GeneratedData, generate_data, generate_grid_data
from nn_playground.network import NeuralNetwork, TrainingHistory
from nn_playground.optimizers import AdamOptimizer, Gradients


@pytest.fixture
def small_config():
    return NetworkConfig(
        input_dim=2,
        hidden_dims=[4],
        output_dim=1,
        hidden_activations=['relu'],
        output_activation='linear',
        use_bias=True,
        optimizer='adam'
    )


@pytest.fixture
def four_samples():
    X = np.array([[1.0, 2.0], [-1.0, -2.0], [0.5, -1.0], [-0.5, 1.0]])
    Y = np.array([[1.0], [0.0], [-1.0], [2.0]])
    return X, Y


@pytest.mark.unit
class TestConstruction:

    def test_from_config_builds_layers(self, small_config):
        net = NeuralNetwork.from_config(small_config, seed=0)

        assert len(net.layers) == 2
        assert net.layers[0].weights.shape == (4, 2)
        assert net.layers[1].weights.shape == (1, 4)
        assert net.get_input_dim() == 2

    def test_every_layer_gets_its_own_optimizer(self, small_config):
        net = NeuralNetwork.from_config(small_config, seed=0)

        assert all(isinstance(layer.optimizer, AdamOptimizer) for layer in net.layers)
        assert net.layers[0].optimizer is not net.layers[1].optimizer

    def test_first_layer_requires_input_dim(self):
        net = NeuralNetwork()
        with pytest.raises(ValueError):
            net.add_layer(3, get_activation('relu'))

    def test_input_dim_inferred_after_first_layer(self):
        net = NeuralNetwork(seed=0)
        net.add_layer(3, get_activation('relu'), input_dim=2)
        layer = net.add_layer(1, get_activation('linear'))

        assert layer.input_dim == 3

    def test_mismatched_input_dim_raises(self):
        net = NeuralNetwork(seed=0)
        net.add_layer(3, get_activation('relu'), input_dim=2)
        with pytest.raises(ValueError):
            net.add_layer(1, get_activation('linear'), input_dim=5)

    def test_predict_on_empty_network_raises(self):
        with pytest.raises(ValueError):
            NeuralNetwork().predict(np.zeros((2, 2)))

    def test_same_seed_same_weights(self, small_config):
        first = NeuralNetwork.from_config(small_config, seed=3).get_parameters()
        second = NeuralNetwork.from_config(small_config, seed=3).get_parameters()

        for key in first:
            assert np.array_equal(first[key], second[key])

    def test_default_config_uses_he_everywhere(self):
        net = NeuralNetwork.from_config(NetworkConfig(), seed=0)
        assert all(layer.initializer.name == 'he' for layer in net.layers)

    def test_without_global_initializer_activation_decides(self):
        """Test that weight_initializer=None falls through to the per-activation choice."""
        config = NetworkConfig(
            hidden_dims=[3, 3], hidden_activations=['relu', 'tanh'],
            output_activation='linear', weight_initializer=None
        )
        net = NeuralNetwork.from_config(config, seed=0)

        assert [layer.initializer.name for layer in net.layers] == ['he', 'xavier', 'random']
        assert net.layers[2].initializer.scale == pytest.approx(0.1)

    def test_layer_initializers_override_global(self):
        config = NetworkConfig(
            hidden_dims=[3], hidden_activations=['tanh'],
            weight_initializer='he', layer_initializers=['zero', 'he']
        )
        net = NeuralNetwork.from_config(config, seed=0)

        assert not np.any(net.layers[0].weights)
        assert np.any(net.layers[1].weights)


@pytest.mark.unit
class TestBackpropagation:

    def test_backward_matches_finite_difference(self, small_config):
        """Test that network gradients equal d(loss)/d(weights) for one sample."""
        net = NeuralNetwork.from_config(small_config, seed=1)
        x = np.array([0.3, -0.8])
        y = np.array([0.5])

        gradients = net.backward(x, y)

        h = 1e-6
        for layer, layer_gradients in zip(net.layers, gradients):
            numeric = np.zeros_like(layer.weights)
            for i in range(layer.weights.shape[0]):
                for j in range(layer.weights.shape[1]):
                    original = layer.weights[i, j]
                    layer.weights[i, j] = original + h
                    plus = net.loss.forward(net.forward(x), y)
                    layer.weights[i, j] = original - h
                    minus = net.loss.forward(net.forward(x), y)
                    layer.weights[i, j] = original
                    numeric[i, j] = (plus - minus) / (2 * h)

            assert np.allclose(layer_gradients.d_weights, numeric, atol=1e-5)

    def test_gradient_norm(self):
        net = NeuralNetwork(use_bias=True)
        gradients = [
            Gradients(np.array([[3.0]]), np.array([0.0])),
            Gradients(np.array([[0.0]]), np.array([4.0])),
        ]
        assert net.compute_gradient_norm(gradients) == pytest.approx(5.0)

    def test_gradient_norm_ignores_bias_when_disabled(self):
        net = NeuralNetwork(use_bias=False)
        gradients = [Gradients(np.array([[3.0]]), np.array([4.0]))]

        assert net.compute_gradient_norm(gradients) == pytest.approx(3.0)

    def test_accuracy_threshold(self):
        predictions = np.array([[0.0], [1.0], [2.0], [3.0]])
        targets = np.array([[0.4], [1.6], [2.0], [2.5]])

        assert NeuralNetwork.compute_accuracy(predictions, targets) == pytest.approx(0.75)


@pytest.mark.unit
class TestOneEpoch:

    def test_one_epoch_scenario(self, small_config, four_samples):
        """Test that one epoch appends one loss and moves every layer."""
        X, Y = four_samples
        net = NeuralNetwork.from_config(small_config, seed=5)
        before = [layer.weights.copy() for layer in net.layers]
        config = TrainingConfig(learning_rate=0.01, num_epochs=1, batch_size=4, noise=0)

        history = net.train(X, Y, config)

        assert len(history.loss) == 1
        assert history.epochs == [0]
        for weights, layer in zip(before, net.layers):
            assert not np.allclose(weights, layer.weights)

    def test_short_last_batch_is_averaged(self, four_samples):
        """Test that a batch of one sample equals a single-sample update."""
        X, Y = four_samples
        net = NeuralNetwork(seed=0, optimizer='sgd')
        net.add_layer(1, get_activation('linear'), input_dim=2)
        net.layers[0].weights = np.zeros((1, 2))

        net.train(X[:1], Y[:1], TrainingConfig(learning_rate=0.1, num_epochs=1, batch_size=8))

        # d(loss)/dW = 2 * (0 - 1) * x
        assert np.allclose(net.layers[0].weights, [[0.2, 0.4]])

    def test_batch_gradient_is_mean_of_samples(self, four_samples):
        X, Y = four_samples
        net = NeuralNetwork(seed=0, optimizer='sgd')
        net.add_layer(1, get_activation('linear'), input_dim=2)
        net.layers[0].weights = np.zeros((1, 2))

        net.train(X, Y, TrainingConfig(learning_rate=0.1, num_epochs=1, batch_size=4))

        expected_gradient = np.mean([2.0 * (0.0 - y[0]) * x for x, y in zip(X, Y)], axis=0)
        assert np.allclose(net.layers[0].weights[0], -0.1 * expected_gradient)

    def test_empty_dataset_raises(self, small_config):
        net = NeuralNetwork.from_config(small_config, seed=0)
        with pytest.raises(ValueError):
            net.train_one_epoch(np.zeros((0, 2)), np.zeros((0, 1)), 4)


@pytest.mark.unit
class TestTrainingLoop:

    def test_history_throttling(self, small_config, four_samples):
        """Test that snapshots are throttled and carry their epoch indices."""
        X, Y = four_samples
        net = NeuralNetwork.from_config(small_config, seed=0)
        grid = generate_grid_data(grid_size=3)
        config = TrainingConfig(num_epochs=120, batch_size=4)

        history = net.train(X, Y, config, grid_points=grid.grid_points)

        assert len(history.loss) == 120
        assert len(history.gradient_norm) == 120
        # Every 120 // 50 = 2 epochs, plus the last epoch
        assert history.prediction_epochs[:3] == [0, 2, 4]
        assert history.prediction_epochs[-1] == 119
        assert len(history.predictions) == len(history.prediction_epochs)
        assert history.predictions[0].shape == (9, 1)
        assert history.weight_trace_epochs[:3] == [0, 5, 10]
        assert history.weight_trace_epochs[-1] == 119
        assert history.selected_weights_trace[0].shape == (5,)

    def test_accuracy_only_recorded_with_test_data(self, small_config, four_samples):
        X, Y = four_samples
        config = TrainingConfig(num_epochs=3, batch_size=2)

        net = NeuralNetwork.from_config(small_config, seed=0)
        history = net.train(X, Y, config)
        assert history.train_accuracy == []

        net = NeuralNetwork.from_config(small_config, seed=0)
        history = net.train(X, Y, config, test_data=GeneratedData(X, Y))
        assert len(history.train_accuracy) == 3
        assert len(history.test_accuracy) == 3

    def test_callback_and_yield_order(self, small_config, four_samples):
        """Test that progress reaches 100 and the loop yields between epochs only."""
        X, Y = four_samples
        net = NeuralNetwork.from_config(small_config, seed=0)
        events = []

        net.train(
            X, Y, TrainingConfig(num_epochs=3, batch_size=4),
            on_epoch_end=lambda epoch, loss, progress: events.append(('epoch', epoch, progress)),
            yield_func=lambda: events.append(('yield',))
        )

        assert [e[0] for e in events] == ['epoch', 'yield', 'epoch', 'yield', 'epoch']
        assert events[-1][2] == pytest.approx(100.0)

    def test_should_continue_stops_before_next_epoch(self, small_config, four_samples):
        X, Y = four_samples
        net = NeuralNetwork.from_config(small_config, seed=0)
        completed = []

        history = net.train(
            X, Y, TrainingConfig(num_epochs=10, batch_size=4),
            on_epoch_end=lambda epoch, loss, progress: completed.append(epoch),
            should_continue=lambda: len(completed) < 2
        )

        assert history.epochs == [0, 1]

    def test_resume_keeps_history(self, small_config, four_samples):
        X, Y = four_samples
        net = NeuralNetwork.from_config(small_config, seed=0)
        net.train(X, Y, TrainingConfig(num_epochs=10, batch_size=4),
                  should_continue=lambda: len(net.history.loss) < 4)

        progress = []
        history = net.train(
            X, Y, TrainingConfig(num_epochs=10, batch_size=4, start_epoch=4),
            on_epoch_end=lambda epoch, loss, p: progress.append(p)
        )

        assert history.epochs == list(range(10))
        assert progress[0] == pytest.approx(100.0 / 6)

    def test_history_snapshot_is_independent(self):
        history = TrainingHistory(loss=[1.0], predictions=[np.zeros(2)])
        snapshot = history.snapshot()
        history.loss.append(2.0)
        history.predictions[0][0] = 5.0

        assert snapshot.loss == [1.0]
        assert snapshot.predictions[0][0] == 0.0

    def test_history_to_dict_is_plain(self):
        history = TrainingHistory(loss=[np.float64(0.5)], predictions=[np.ones((2, 1))])
        data = history.to_dict()

        assert data['loss'] == [0.5]
        assert data['predictions'] == [[[1.0], [1.0]]]


@pytest.mark.integration
class TestConvergence:

    def test_circle_relu_adam_converges(self):
        """Test that circle + ReLU + Adam reaches < 10% of the initial loss."""
        rng = np.random.default_rng(0)
        data = generate_data('circle', 200, noise=0.0, rng=rng)
        config = NetworkConfig(
            hidden_dims=[16], hidden_activations=['relu'],
            output_activation='linear', optimizer='adam', weight_initializer='he'
        )
        net = NeuralNetwork.from_config(config, rng=rng)

        history = net.train(
            data.X, data.Y,
            TrainingConfig(learning_rate=0.01, num_epochs=300, batch_size=16)
        )

        assert history.loss[-1] < 0.1 * history.loss[0]

    def test_set_optimizer_discards_state(self, small_config, four_samples):
        X, Y = four_samples
        net = NeuralNetwork.from_config(small_config, seed=0)
        net.train(X, Y, TrainingConfig(num_epochs=2, batch_size=4))
        assert net.layers[0].optimizer.iteration > 0

        net.set_optimizer('adam', {'learning_rate': 0.02})

        assert net.layers[0].optimizer.iteration == 0
        assert net.layers[0].optimizer.learning_rate == pytest.approx(0.02)

    def test_reinitialize_single_layer(self, small_config):
        net = NeuralNetwork.from_config(small_config, seed=0)
        output_before = net.layers[1].weights.copy()

        net.reinitialize_weights('zero', layer_index=0)

        assert not np.any(net.layers[0].weights)
        assert np.array_equal(net.layers[1].weights, output_before)
