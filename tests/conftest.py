"""
Shared fixtures and in-memory doubles for the engine's external
collaborators: the post store, Redis, the nearby-school lookup and the
feature-flag source.
"""
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Collection, Optional

import pytest

from feedranker.clients.meta_client import FeatureFlags
from feedranker.clients.store import UserRecord
from feedranker.ranking.model_cache import CacheMetrics, RankingModelCache
from feedranker.ranking.posts import CandidatePost
from feedranker.ranking.trainer import ModelTrainer

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def post_id_at(created_at: datetime, suffix: str = "") -> str:
    """Time-sortable test id, matching the production id ordering."""
    return f"{int(created_at.timestamp() * 1000):012x}{suffix}"


# ─────────────────────────── Redis double ────────────────────────────────

class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: list = []

    def set(self, key, value, ex=None):
        self._ops.append(("set", key, value, ex))
        return self

    def hset(self, key, mapping=None):
        self._ops.append(("hset", key, mapping))
        return self

    def expire(self, key, seconds):
        self._ops.append(("expire", key, seconds))
        return self

    def delete(self, *keys):
        self._ops.append(("delete", keys))
        return self

    async def execute(self):
        if self._redis.fail:
            raise ConnectionError("redis unavailable")
        results = []
        for op in self._ops:
            if op[0] == "set":
                await self._redis.set(op[1], op[2], ex=op[3])
            elif op[0] == "hset":
                await self._redis.hset(op[1], mapping=op[2])
            elif op[0] == "expire":
                self._redis.expiries[op[1]] = op[2]
            elif op[0] == "delete":
                await self._redis.delete(*op[1])
            results.append(True)
        self._redis.pipelines_executed += 1
        return results


class FakeRedis:
    """Subset of redis.asyncio.Redis (decode_responses=True) used by the cache."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.expiries: dict[str, int] = {}
        self.fail = False
        self.pipelines_executed = 0

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, key):
        self._check()
        return self.strings.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.strings[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    async def hset(self, key, mapping=None):
        self._check()
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            removed += int(self.strings.pop(key, None) is not None)
            removed += int(self.hashes.pop(key, None) is not None)
        return removed

    def pipeline(self, transaction=True):
        return FakePipeline(self)


# ─────────────────────────── Store double ────────────────────────────────

@dataclass
class InMemoryPostStore:
    users: dict[str, UserRecord] = field(default_factory=dict)
    posts: dict[str, CandidatePost] = field(default_factory=dict)
    remote_post_ids: set[str] = field(default_factory=set)
    follows: set[tuple[str, str]] = field(default_factory=set)
    # (user_id, post_id, engaged_at)
    reactions: list[tuple[str, str, datetime]] = field(default_factory=list)
    replies: list[tuple[str, str, datetime]] = field(default_factory=list)
    renotes: list[tuple[str, str, datetime]] = field(default_factory=list)
    fail_second_degree: bool = False
    calls: list[str] = field(default_factory=list)
    sampler: random.Random = field(default_factory=lambda: random.Random(7))

    # ── fixture helpers ──
    def add_user(self, user_id: str, school_id: Optional[str] = None, **kwargs) -> UserRecord:
        user = UserRecord(user_id=user_id, school_id=school_id, **kwargs)
        self.users[user_id] = user
        return user

    def add_post(
        self,
        author: str,
        created_at: datetime,
        suffix: str = "",
        **kwargs,
    ) -> CandidatePost:
        post = CandidatePost(
            post_id=post_id_at(created_at, suffix or author),
            user_id=author,
            user_school_id=self.users[author].school_id if author in self.users else None,
            created_at=created_at,
            **kwargs,
        )
        self.posts[post.post_id] = post
        return post

    def follow(self, follower: str, followee: str) -> None:
        self.follows.add((follower, followee))

    # ── PostStore protocol ──
    def _followees(self, user_id: str) -> set[str]:
        return {b for a, b in self.follows if a == user_id}

    def _in_window(self, post: CandidatePost, since: datetime, until: datetime) -> bool:
        return since < post.created_at <= until

    def _public_local(self, post: CandidatePost) -> bool:
        return post.visibility == "public" and post.post_id not in self.remote_post_ids

    async def get_user(self, user_id):
        return self.users.get(user_id)

    async def get_post(self, post_id):
        return self.posts.get(post_id)

    async def followee_ids(self, user_id):
        return self._followees(user_id)

    async def timeline_posts(self, user_id, params, limit, created_before=None):
        self.calls.append("timeline")
        followees = self._followees(user_id)
        selected = [
            p for p in self.posts.values()
            if p.user_id in followees or p.user_id == user_id or self._public_local(p)
        ]
        if params.since_id:
            selected = [p for p in selected if p.post_id > params.since_id]
        if params.until_id:
            selected = [p for p in selected if p.post_id < params.until_id]
        if created_before is not None:
            selected = [p for p in selected if p.created_at < created_before]
        selected.sort(key=lambda p: p.post_id, reverse=True)
        return selected[:limit]

    async def reacted_posts(self, user_id, since):
        return [self.posts[pid] for uid, pid, at in self.reactions if uid == user_id and at > since]

    async def replied_posts(self, user_id, since):
        return [self.posts[pid] for uid, pid, at in self.replies if uid == user_id and at > since]

    async def renoted_posts(self, user_id, since):
        return [self.posts[pid] for uid, pid, at in self.renotes if uid == user_id and at > since]

    async def followee_posts(self, user_id, since, until, limit):
        followees = self._followees(user_id)
        found = [
            p for p in self.posts.values()
            if p.user_id in followees and self._in_window(p, since, until)
        ]
        return sorted(found, key=lambda p: p.post_id, reverse=True)[:limit]

    async def followee_engaged_posts(self, user_id, since, until, limit):
        followees = self._followees(user_id)
        engaged_ids = {pid for uid, pid, _ in self.reactions if uid in followees}
        found = [
            self.posts[pid] for pid in engaged_ids
            if self._in_window(self.posts[pid], since, until)
        ]
        return sorted(found, key=lambda p: p.post_id, reverse=True)[:limit]

    async def public_local_posts(
        self,
        since,
        until,
        limit,
        exclude_ids: Collection[str] = (),
        exclude_user_id=None,
        viewer_id=None,
    ):
        found = [
            p for p in self.posts.values()
            if self._public_local(p)
            and self._in_window(p, since, until)
            and p.post_id not in exclude_ids
            and p.user_id != exclude_user_id
        ]
        return sorted(found, key=lambda p: p.post_id, reverse=True)[:limit]

    async def sample_public_local_posts(
        self, since, until, limit, exclude_ids: Collection[str] = (), exclude_user_id=None
    ):
        found = await self.public_local_posts(
            since, until, len(self.posts), exclude_ids, exclude_user_id
        )
        return self.sampler.sample(found, min(limit, len(found)))

    async def second_degree_posts(self, user_id, since, until, limit):
        self.calls.append("second_degree")
        if self.fail_second_degree:
            raise ConnectionError("store unavailable")
        second = {b for a, b in self.follows if a in self._followees(user_id)}
        found = [
            p for p in self.posts.values()
            if p.user_id in second
            and p.user_id != user_id
            and p.visibility == "public"
            and self._in_window(p, since, until)
        ]
        return sorted(found, key=lambda p: p.post_id, reverse=True)[:limit]


# ─────────────────────────── Proximity / flags doubles ───────────────────

class StaticProximity:
    def __init__(self, nearby: Optional[dict[str, list[str]]] = None, fail: bool = False) -> None:
        self.nearby = nearby or {}
        self.fail = fail
        self.calls = 0

    async def get_nearby_school_ids(self, school_id, radius_miles=None):
        self.calls += 1
        if self.fail:
            raise ConnectionError("proximity lookup unavailable")
        return list(self.nearby.get(school_id, []))


class StaticMeta:
    def __init__(self, flags: Optional[FeatureFlags] = None, fail: bool = False) -> None:
        self.flags = flags or FeatureFlags()
        self.fail = fail

    async def get_flags(self):
        if self.fail:
            raise ConnectionError("meta unavailable")
        return self.flags


class NeverRandom(random.Random):
    """random() always returns 0.99 so the second-degree pool never fires."""

    def random(self):
        return 0.99


class AlwaysRandom(random.Random):
    def random(self):
        return 0.0


# ─────────────────────────── Fixtures ────────────────────────────────────

@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache_metrics() -> CacheMetrics:
    return CacheMetrics()


@pytest.fixture
def model_cache(fake_redis, cache_metrics) -> RankingModelCache:
    return RankingModelCache(fake_redis, cache_metrics, clock=lambda: NOW.timestamp())


@pytest.fixture
def store() -> InMemoryPostStore:
    return InMemoryPostStore()


@pytest.fixture
def trainer():
    trainer = ModelTrainer(iterations=300, timeout_seconds=30, seed=7)
    yield trainer
    trainer.shutdown()


def hours_ago(hours: float) -> datetime:
    return NOW - timedelta(hours=hours)
