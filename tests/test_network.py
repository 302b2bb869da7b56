import numpy as np
import pytest

from feedranker.ranking.features import FEATURE_DIM
from feedranker.ranking.network import FeedForwardNetwork, validate_model_dict


def _separable(n: int = 80):
    rng = np.random.default_rng(0)
    x = rng.uniform(0.0, 1.0, size=(n, FEATURE_DIM))
    y = (x[:, 7] > 0.5).astype(float)
    return x, y


def test_initialised_network_matches_shape_contract():
    net = FeedForwardNetwork.initialise(FEATURE_DIM, [18, 10, 6], seed=1)
    data = net.to_dict()
    assert data["sizes"] == [FEATURE_DIM, 18, 10, 6, 1]
    assert data["activation"] == "sigmoid"
    assert len(data["layers"]) == 4
    assert validate_model_dict(data)


def test_serialized_model_predicts_identically():
    net = FeedForwardNetwork.initialise(FEATURE_DIM, [18, 10, 6], seed=2)
    x, _ = _separable(5)
    restored = FeedForwardNetwork.from_dict(net.to_dict())
    np.testing.assert_allclose(restored.predict(x), net.predict(x))


def test_predictions_are_probabilities():
    net = FeedForwardNetwork.initialise(FEATURE_DIM, [4, 3], seed=3)
    x, _ = _separable(10)
    scores = net.predict(x)
    assert scores.shape == (10,)
    assert ((scores > 0) & (scores < 1)).all()
    assert net.predict(np.zeros((0, FEATURE_DIM))).shape == (0,)


def test_training_reduces_error():
    x, y = _separable()
    net = FeedForwardNetwork.initialise(FEATURE_DIM, [18, 10, 6], seed=4)
    before = float(np.mean((net.predict(x) - y) ** 2))
    stats = net.train(
        x, y, learning_rate=0.5, momentum=0.1, iterations=500, error_threshold=0.0
    )
    assert stats.iterations == 500
    assert stats.error < before


def test_training_stops_at_error_threshold():
    x, y = _separable()
    net = FeedForwardNetwork.initialise(FEATURE_DIM, [4], seed=5)
    stats = net.train(
        x, y, learning_rate=0.1, momentum=0.1, iterations=1000, error_threshold=1.0
    )
    assert stats.iterations == 0


@pytest.mark.parametrize(
    "data",
    [
        None,
        [],
        {"layers": "nope"},
        {"layers": [{"weights": [[0.0] * FEATURE_DIM], "biases": [0.0]}]},
        {"layers": [{"weights": [[0.0] * FEATURE_DIM]}, {"weights": [[0.0]], "biases": [0.0]}]},
        # wrong input width
        {"layers": [{"weights": [[0.0] * 3], "biases": [0.0]}, {"weights": [[0.0]], "biases": [0.0]}]},
        # more than one output
        {
            "layers": [
                {"weights": [[0.0] * FEATURE_DIM], "biases": [0.0]},
                {"weights": [[0.0], [0.0]], "biases": [0.0, 0.0]},
            ]
        },
    ],
)
def test_shape_contract_rejects_malformed_models(data):
    assert not validate_model_dict(data)


def test_from_dict_rejects_bad_shape():
    with pytest.raises(ValueError):
        FeedForwardNetwork.from_dict({"layers": []})
