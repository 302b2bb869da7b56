import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import NOW, NeverRandom, StaticMeta, hours_ago
from feedranker.clients.meta_client import FeatureFlags
from feedranker.ranking.assembler import FeedAssembler
from feedranker.ranking.features import FEATURE_DIM
from feedranker.ranking.network import FeedForwardNetwork, TrainingStats
from feedranker.routers import feed


@pytest.fixture
def meta():
    return StaticMeta()


@pytest.fixture
def client(store, model_cache, trainer, meta):
    store.add_user("me", school_id="S1")
    store.add_user("friend", school_id="S1")
    store.follow("me", "friend")
    for h in range(1, 6):
        store.add_post("friend", hours_ago(h), suffix=f"f{h}", reaction_count=h)
    store.add_user("mod", is_moderator=True)

    app = FastAPI()
    app.include_router(feed.router, prefix="/feed")
    app.dependency_overrides[feed.get_model_cache] = lambda: model_cache
    app.dependency_overrides[feed.get_assembler] = lambda: FeedAssembler(
        store, model_cache, trainer, None, meta, rng=NeverRandom(), clock=lambda: NOW
    )
    with TestClient(app) as client:
        yield client


def test_feed_returns_ranked_page(client):
    response = client.get("/feed/", params={"user_id": "me", "limit": 3})
    assert response.status_code == 200
    body = response.json()

    assert body["user_id"] == "me"
    assert len(body["posts"]) == 3
    assert len({p["post_id"] for p in body["posts"]}) == 3
    assert all(p["source"] == "timeline" for p in body["posts"])
    assert body["candidates_timeline"] == 5
    assert body["latency_ms"] >= 0


@pytest.mark.parametrize(
    "params",
    [
        {"user_id": "me", "limit": 0},
        {"user_id": "me", "limit": 500},
        {"user_id": "me", "since_id": "b", "until_id": "a"},
    ],
)
def test_invalid_parameters_are_bad_requests(client, params):
    assert client.get("/feed/", params=params).status_code == 400


def test_unknown_user_is_not_found(client):
    assert client.get("/feed/", params={"user_id": "ghost"}).status_code == 404


def test_disabled_timeline_is_forbidden_except_for_moderators(client, meta):
    meta.flags = FeatureFlags(disable_local_timeline=True)
    assert client.get("/feed/", params={"user_id": "me"}).status_code == 403
    assert client.get("/feed/", params={"user_id": "mod"}).status_code == 200


def test_model_stats_and_clear(client, model_cache):
    assert client.get("/feed/model/me/stats").status_code == 404

    network = FeedForwardNetwork.initialise(FEATURE_DIM, [4], seed=1)
    client.portal.call(
        model_cache.set, "me", network, 150, TrainingStats(error=0.1, iterations=20)
    )

    stats = client.get("/feed/model/me/stats").json()
    assert stats["training_examples"] == 150
    assert stats["iterations"] == 20

    assert client.delete("/feed/model/me").status_code == 204
    assert client.get("/feed/model/me/stats").status_code == 404


def test_cache_metrics_endpoint(client):
    body = client.get("/feed/model-cache/metrics").json()
    assert set(body) == {
        "cache_hits",
        "cache_misses",
        "errors",
        "invalid_models",
        "model_updates",
        "cache_size",
        "total_requests",
        "hit_rate",
    }
