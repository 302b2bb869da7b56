"""
Compact feed-forward network used as the per-user ranking model.

Serialized form (the opaque blob stored by the model cache):

  {
    "sizes":      [11, 18, 10, 6, 1],
    "activation": "sigmoid",
    "layers": [                                  # one entry per non-input layer
      {"weights": [[w, ...], ...],               # rows = layer width
       "biases":  [b, ...]},                     # len  = layer width
      ...
    ]
  }

Any implementation that reads and writes this shape can replace this one.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import numpy as np

from feedranker.ranking.features import FEATURE_DIM

logger = logging.getLogger(__name__)

ACTIVATION = "sigmoid"


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(x, -60.0, 60.0)))


def validate_model_dict(data: Any, input_dim: int = FEATURE_DIM) -> bool:
    """Check the serialized shape contract without building a network."""
    if not isinstance(data, dict):
        return False
    layers = data.get("layers")
    if not isinstance(layers, list) or len(layers) < 2:
        return False

    prev_width = input_dim
    for layer in layers:
        if not isinstance(layer, dict):
            return False
        weights = layer.get("weights")
        biases = layer.get("biases")
        if not isinstance(weights, list) or not isinstance(biases, list):
            return False
        if len(weights) != len(biases) or not weights:
            return False
        for row in weights:
            if not isinstance(row, list) or len(row) != prev_width:
                return False
        prev_width = len(biases)

    return prev_width == 1


@dataclass
class TrainingStats:
    error: float
    iterations: int


class FeedForwardNetwork:
    """Fully connected sigmoid network with a single sigmoid output."""

    def __init__(
        self,
        weights: Sequence[np.ndarray],
        biases: Sequence[np.ndarray],
    ) -> None:
        if len(weights) != len(biases) or len(weights) < 2:
            raise ValueError("network needs at least two weight layers")
        self.weights = [np.asarray(w, dtype=np.float64) for w in weights]
        self.biases = [np.asarray(b, dtype=np.float64) for b in biases]

    @classmethod
    def initialise(
        cls,
        input_dim: int,
        hidden_layers: Sequence[int],
        seed: Optional[int] = None,
    ) -> "FeedForwardNetwork":
        rng = np.random.default_rng(seed)
        sizes = [input_dim, *hidden_layers, 1]
        weights = [
            rng.uniform(-0.2, 0.2, size=(n_out, n_in))
            for n_in, n_out in zip(sizes[:-1], sizes[1:])
        ]
        biases = [rng.uniform(-0.2, 0.2, size=n_out) for n_out in sizes[1:]]
        return cls(weights, biases)

    @property
    def sizes(self) -> list[int]:
        return [self.weights[0].shape[1], *(b.shape[0] for b in self.biases)]

    # ── Inference ─────────────────────────────────────────────────────────

    def _forward(self, x: np.ndarray) -> list[np.ndarray]:
        activations = [x]
        for w, b in zip(self.weights, self.biases):
            activations.append(_sigmoid(activations[-1] @ w.T + b))
        return activations

    def predict(self, x: np.ndarray) -> np.ndarray:
        """Score each row of x; returns a 1-D array in (0, 1)."""
        x = np.atleast_2d(np.asarray(x, dtype=np.float64))
        if x.shape[0] == 0:
            return np.zeros(0, dtype=np.float64)
        return self._forward(x)[-1][:, 0]

    # ── Training ──────────────────────────────────────────────────────────

    def train(
        self,
        x: np.ndarray,
        y: np.ndarray,
        *,
        learning_rate: float,
        momentum: float,
        iterations: int,
        error_threshold: float,
    ) -> TrainingStats:
        """
        Full-batch gradient descent with momentum on mean squared error.
        Stops at error_threshold or after `iterations` passes.
        """
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64).reshape(-1, 1)
        n = x.shape[0]

        w_velocity = [np.zeros_like(w) for w in self.weights]
        b_velocity = [np.zeros_like(b) for b in self.biases]
        error = float("inf")
        iteration = 0

        while iteration < iterations:
            activations = self._forward(x)
            output = activations[-1]
            error = float(np.mean((output - y) ** 2))
            if not np.isfinite(error):
                break
            if error < error_threshold:
                break
            iteration += 1

            delta = (output - y) * output * (1.0 - output)
            for layer in range(len(self.weights) - 1, -1, -1):
                grad_w = delta.T @ activations[layer] / n
                grad_b = delta.mean(axis=0)
                if layer > 0:
                    a = activations[layer]
                    delta = (delta @ self.weights[layer]) * a * (1.0 - a)
                w_velocity[layer] = momentum * w_velocity[layer] - learning_rate * grad_w
                b_velocity[layer] = momentum * b_velocity[layer] - learning_rate * grad_b
                self.weights[layer] += w_velocity[layer]
                self.biases[layer] += b_velocity[layer]

        return TrainingStats(error=error, iterations=iteration)

    def is_finite(self) -> bool:
        return all(np.isfinite(w).all() for w in self.weights) and all(
            np.isfinite(b).all() for b in self.biases
        )

    # ── Serialization ─────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "sizes": self.sizes,
            "activation": ACTIVATION,
            "layers": [
                {"weights": w.tolist(), "biases": b.tolist()}
                for w, b in zip(self.weights, self.biases)
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FeedForwardNetwork":
        if not validate_model_dict(data):
            raise ValueError("serialized model does not match the layer shape contract")
        return cls(
            [np.array(layer["weights"], dtype=np.float64) for layer in data["layers"]],
            [np.array(layer["biases"], dtype=np.float64) for layer in data["layers"]],
        )
