from collections import Counter

import pytest

from conftest import NOW, NeverRandom, StaticMeta, StaticProximity, hours_ago
from feedranker.clients.meta_client import FeatureFlags
from feedranker.errors import InvalidFeedRequest, TimelineDisabled, UserNotFound
from feedranker.ranking.assembler import FeedAssembler, parse_params
from feedranker.ranking.diversity import apply_soft_user_limit, author_cap
from feedranker.schemas import FeedParams


def keep_order(posts: list) -> None:
    """Shuffle stand-in that leaves the ranked order visible to assertions."""


def _assembler(store, model_cache, trainer, proximity=None, meta=None, shuffle=keep_order):
    return FeedAssembler(
        store,
        model_cache,
        trainer,
        proximity,
        meta,
        rng=NeverRandom(),
        shuffle=shuffle,
        clock=lambda: NOW,
    )


@pytest.fixture
def busy_store(store):
    """One prolific author plus several occasional ones, all public local."""
    store.add_user("me", school_id="S1")
    store.add_user("loud", school_id="S3")
    store.follow("me", "loud")
    for i in range(12):
        store.add_post("loud", hours_ago(i + 1), suffix=f"loud{i:02d}")
    for i in range(6):
        author = f"quiet{i}"
        store.add_user(author, school_id="S3")
        store.add_post(author, hours_ago(i + 0.5), suffix=author)
    return store


async def test_page_never_exceeds_limit_and_has_no_duplicates(busy_store, model_cache, trainer):
    assembler = _assembler(busy_store, model_cache, trainer)
    for limit in (1, 3, 5, 10):
        result = await assembler.get_personalized_feed("me", FeedParams(limit=limit))
        assert len(result.posts) <= limit
        assert len(set(result.post_ids)) == len(result.post_ids)


async def test_author_cap_holds_when_other_authors_exist(busy_store, model_cache, trainer):
    assembler = _assembler(busy_store, model_cache, trainer)
    result = await assembler.get_personalized_feed("me", FeedParams(limit=5))

    assert len(result.posts) == 5
    counts = Counter(p.user_id for p in result.posts)
    assert counts["loud"] <= author_cap(5)


async def test_same_school_posts_come_first_before_shuffle(store, model_cache, trainer):
    store.add_user("me", school_id="S1")
    store.add_user("local", school_id="S1")
    store.add_user("nearby", school_id="S2")
    store.add_user("far", school_id="S3")
    store.follow("me", "far")
    far = [store.add_post("far", hours_ago(h), suffix=f"far{h}") for h in (1, 2)]
    near = store.add_post("nearby", hours_ago(3))
    local = store.add_post("local", hours_ago(4))

    assembler = _assembler(
        store, model_cache, trainer, proximity=StaticProximity({"S1": ["S2"]})
    )
    result = await assembler.get_personalized_feed("me", FeedParams(limit=10))

    assert result.post_ids[:2] == [local.post_id, near.post_id]
    assert set(result.post_ids[2:]) == {p.post_id for p in far}


async def test_shuffle_applied_to_page(busy_store, model_cache, trainer):
    seen = []

    def reverse(posts):
        seen.append(list(posts))
        posts.reverse()

    assembler = _assembler(busy_store, model_cache, trainer, shuffle=reverse)
    result = await assembler.get_personalized_feed("me", FeedParams(limit=5))

    assert len(seen) == 1
    assert result.posts == list(reversed(seen[0]))[:5]


async def test_unknown_user_raises(store, model_cache, trainer):
    assembler = _assembler(store, model_cache, trainer)
    with pytest.raises(UserNotFound):
        await assembler.get_personalized_feed("ghost", FeedParams())


async def test_disabled_timeline_rejects_regular_users(busy_store, model_cache, trainer):
    meta = StaticMeta(FeatureFlags(disable_local_timeline=True))
    assembler = _assembler(busy_store, model_cache, trainer, meta=meta)
    with pytest.raises(TimelineDisabled):
        await assembler.get_personalized_feed("me", FeedParams())


async def test_disabled_timeline_still_serves_moderators(busy_store, model_cache, trainer):
    busy_store.add_user("mod", school_id="S1", is_moderator=True)
    meta = StaticMeta(FeatureFlags(disable_local_timeline=True))
    assembler = _assembler(busy_store, model_cache, trainer, meta=meta)
    result = await assembler.get_personalized_feed("mod", FeedParams(limit=5))
    assert len(result.posts) == 5


async def test_flag_lookup_failure_falls_back_to_settings(busy_store, model_cache, trainer):
    assembler = _assembler(busy_store, model_cache, trainer, meta=StaticMeta(fail=True))
    result = await assembler.get_personalized_feed("me", FeedParams(limit=3))
    assert len(result.posts) == 3


async def test_sources_and_pool_counts_reported(busy_store, model_cache, trainer):
    assembler = _assembler(busy_store, model_cache, trainer)
    result = await assembler.get_personalized_feed("me", FeedParams(limit=5))

    assert result.candidates_timeline == 10
    assert result.candidates_second_degree == 0
    assert all(result.sources[pid] == "timeline" for pid in result.post_ids)


@pytest.mark.parametrize(
    "raw",
    [
        {"limit": 0},
        {"limit": 101},
        {"since_id": "b", "until_id": "a"},
        {"since_date": 2000, "until_date": 1000},
    ],
)
def test_invalid_params_rejected(raw):
    with pytest.raises(InvalidFeedRequest):
        parse_params(**raw)


def test_parse_params_ignores_missing_values():
    params = parse_params(limit=7, since_id=None, with_files=None)
    assert params.limit == 7
    assert params.since_id is None
    assert params.with_files is False


async def test_followee_posts_and_nearby_engaged_post_reach_the_page(
    store, model_cache, trainer
):
    store.add_user("U", school_id="S1")
    store.add_user("A", school_id="S3")
    store.add_user("B", school_id="S3")
    store.add_user("C", school_id="S2")
    store.add_user("D", school_id="S4")
    store.follow("U", "A")
    store.follow("U", "B")
    a_posts = [store.add_post("A", hours_ago(h)) for h in (5, 20, 40)]
    p = store.add_post("C", hours_ago(10))
    unrelated = store.add_post("D", hours_ago(10), suffix="D")
    store.reactions.append(("B", p.post_id, hours_ago(9)))

    assembler = _assembler(
        store, model_cache, trainer, proximity=StaticProximity({"S1": ["S2"]})
    )
    result = await assembler.get_personalized_feed("U", FeedParams(limit=10))

    ids = result.post_ids
    assert {post.post_id for post in a_posts} | {p.post_id} <= set(ids)
    assert ids.index(p.post_id) < ids.index(unrelated.post_id)


async def test_without_engagement_page_is_the_capped_timeline(store, model_cache, trainer):
    store.add_user("lurker")
    store.add_user("loud")
    loud = [store.add_post("loud", hours_ago(h), suffix=f"loud{h}") for h in range(1, 9)]
    quiet = []
    for i, h in enumerate((2.5, 4.5, 9.5)):
        store.add_user(f"quiet{i}")
        quiet.append(store.add_post(f"quiet{i}", hours_ago(h), suffix=f"quiet{i}"))

    assembler = _assembler(store, model_cache, trainer)
    params = FeedParams(limit=5)
    result = await assembler.get_personalized_feed("lurker", params)

    timeline = await store.timeline_posts("lurker", params, limit=10)
    assert result.posts == apply_soft_user_limit(timeline, 5, author_cap(5))
    assert result.post_ids == [
        loud[0].post_id,
        quiet[0].post_id,
        quiet[1].post_id,
        loud[1].post_id,
        loud[2].post_id,
    ]
    assert result.candidates_recommended == 0
    assert result.candidates_second_degree == 0
    assert "second_degree" not in store.calls
