"""
visualization.py
~~~~~~~~~~~~~~~~

Rendering and telemetry helpers for playground clients.

- ``render_training_figure`` draws the predicted surface next to the true
  surface plus the loss curve and returns a base64-encoded PNG
- ``training_update_payload`` builds the JSON-ready dict streamed to
  clients after each epoch
"""

import base64
import logging
from io import BytesIO
from typing import Any, Dict, List, Optional

import numpy as np

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from nn_playground.data import GridData
from nn_playground.network import TrainingHistory

logger = logging.getLogger(__name__)


def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.asarray(array).flatten()]


def prediction_to_surface(predictions: np.ndarray, grid_data: GridData) -> np.ndarray:
    """
    Reshape grid predictions (one row per grid point) to the mesh shape.

    Only the first output dimension is drawn.
    """
    values = np.asarray(predictions, dtype=float)
    if values.ndim > 1:
        values = values[:, 0]
    return values.reshape(grid_data.x_grid.shape)


def render_training_figure(
    grid_data: GridData,
    true_surface: np.ndarray,
    history: TrainingHistory,
    predictions: Optional[np.ndarray] = None
) -> str:
    """
    Draw predicted vs true surface and the loss curve.

    Args:
        grid_data: Evaluation mesh
        true_surface: Noiseless function values on the mesh
        history: Training history (for the loss curve)
        predictions: Grid predictions in display space; defaults to the
            newest snapshot in ``history``

    Returns:
        Base64-encoded PNG image string
    """
    if predictions is None and history.predictions:
        predictions = history.predictions[-1]

    fig, (ax_pred, ax_true, ax_loss) = plt.subplots(1, 3, figsize=(12, 3.6))

    levels = 20
    vmin, vmax = float(np.min(true_surface)), float(np.max(true_surface))

    if predictions is not None:
        surface = prediction_to_surface(predictions, grid_data)
        ax_pred.contourf(grid_data.x_grid, grid_data.y_grid, surface,
                         levels=levels, cmap='viridis', vmin=vmin, vmax=vmax)
        epoch = history.prediction_epochs[-1] if history.prediction_epochs else None
        ax_pred.set_title(f"Predicted (epoch {epoch})" if epoch is not None else "Predicted")
    else:
        ax_pred.set_title("Predicted (not trained)")

    contour = ax_true.contourf(grid_data.x_grid, grid_data.y_grid, true_surface,
                               levels=levels, cmap='viridis')
    ax_true.set_title("True surface")
    fig.colorbar(contour, ax=[ax_pred, ax_true], shrink=0.85)

    if history.loss:
        ax_loss.plot(history.epochs, history.loss, color='tab:red')
        ax_loss.set_yscale('log')
    ax_loss.set_title("Loss")
    ax_loss.set_xlabel("Epoch")

    # Save image to a bytes buffer instead of a file
    buffer = BytesIO()
    fig.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close(fig)

    return img_base64


def training_update_payload(
    history: TrainingHistory,
    grid_data: GridData,
    epoch: int,
    total_epochs: int
) -> Dict[str, Any]:
    """
    Summarize the latest epoch for streaming.

    The grid surface is only included when a prediction snapshot was taken
    at this epoch, which keeps most messages small.
    """
    payload: Dict[str, Any] = {
        'epoch': epoch,
        'total_epochs': total_epochs,
        'loss': float(history.loss[-1]) if history.loss else None,
        'gradient_norm': float(history.gradient_norm[-1]) if history.gradient_norm else None,
        'train_accuracy': float(history.train_accuracy[-1]) if history.train_accuracy else None,
        'test_accuracy': float(history.test_accuracy[-1]) if history.test_accuracy else None,
    }

    if history.prediction_epochs and history.prediction_epochs[-1] == epoch:
        surface = prediction_to_surface(history.predictions[-1], grid_data)
        payload['surface'] = surface.tolist()

    if history.weight_trace_epochs and history.weight_trace_epochs[-1] == epoch:
        payload['selected_weights'] = array_to_float_list(history.selected_weights_trace[-1])

    return payload
