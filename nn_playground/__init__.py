"""
nn_playground package
~~~~~~~~~~~~~~~~~~~~~

From-scratch feedforward neural network engine for an interactive
playground. Contains the layer, network and strategy implementations,
synthetic data generation, the training controller and the API server.
"""

from nn_playground.config import DataConfig, NetworkConfig, TrainingConfig
from nn_playground.controller import PlaygroundController, PlaygroundState, PlaygroundStatus
from nn_playground.network import NeuralNetwork, TrainingHistory

__version__ = "1.0.0"

__all__ = [
    'DataConfig',
    'NetworkConfig',
    'TrainingConfig',
    'NeuralNetwork',
    'TrainingHistory',
    'PlaygroundController',
    'PlaygroundState',
    'PlaygroundStatus',
]
