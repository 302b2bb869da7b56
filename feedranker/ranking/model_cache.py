"""
Ranking Model Cache — per-user trained networks persisted in Redis.

Keys:
  algo:user:{user_id}:model — STRING (JSON) with the serialized network and
                              metadata; expires after model_cache_ttl
  algo:user:{user_id}:stats — HASH with the training metadata only

Both keys are written in a single MULTI/EXEC pipeline so a reader never sees
a model without its stats. Every write replaces the whole entry.

Reads fail soft: absence, lookup errors, version mismatch, expiry, too few
training examples and shape failures all come back as None. Each outcome is
counted separately in CacheMetrics and Prometheus.
"""
import json
import logging
import time
from typing import Callable, Optional

import redis.asyncio as aioredis

from feedranker.config import settings
from feedranker.ranking.network import FeedForwardNetwork, TrainingStats, validate_model_dict
from feedranker.telemetry import MODEL_CACHE_EVENTS_TOTAL

logger = logging.getLogger(__name__)

MODEL_KEY = "algo:user:{user_id}:model"
STATS_KEY = "algo:user:{user_id}:stats"

# Outcomes counted as plain misses vs. rejected (invalid) entries
_MISS_OUTCOMES = {"miss", "expired", "version_mismatch"}
_INVALID_OUTCOMES = {"insufficient_examples", "invalid_model"}
# A rejected write counts as a failed set, not an invalid read
_ERROR_OUTCOMES = {"write_rejected"}


class CacheMetrics:
    """
    Process-scoped cache counters. One instance is created at startup and
    injected into RankingModelCache; tests build their own and reset() it.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.cache_hits = 0
        self.cache_misses = 0
        self.errors = 0
        self.invalid_models = 0
        self.model_updates = 0
        self.cache_size = 0
        self.outcomes: dict[str, int] = {}

    def record(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1
        if outcome == "hit":
            self.cache_hits += 1
        elif outcome in _MISS_OUTCOMES:
            self.cache_misses += 1
        elif outcome in _INVALID_OUTCOMES:
            self.invalid_models += 1
        elif outcome == "updated":
            self.model_updates += 1
        elif outcome in _ERROR_OUTCOMES or outcome.endswith("error"):
            self.errors += 1
        MODEL_CACHE_EVENTS_TOTAL.labels(outcome=outcome).inc()

    def snapshot(self) -> dict:
        total = self.cache_hits + self.cache_misses
        hit_rate = (self.cache_hits / total) * 100 if total > 0 else 0.0
        return {
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "errors": self.errors,
            "invalid_models": self.invalid_models,
            "model_updates": self.model_updates,
            "cache_size": self.cache_size,
            "total_requests": total,
            "hit_rate": f"{hit_rate:.2f}%",
        }

    def log_metrics(self) -> None:
        logger.info("Model cache metrics: %s", self.snapshot())


class RankingModelCache:
    def __init__(
        self,
        redis: aioredis.Redis,
        metrics: Optional[CacheMetrics] = None,
        *,
        version: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        min_training_examples: Optional[int] = None,
        max_model_bytes: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self.metrics = metrics or CacheMetrics()
        self.version = version or settings.model_version
        self.ttl_seconds = ttl_seconds or settings.model_cache_ttl
        self.min_training_examples = (
            min_training_examples
            if min_training_examples is not None
            else settings.model_min_training_examples
        )
        self.max_model_bytes = max_model_bytes or settings.model_max_size_bytes
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _validate(self, model_data: dict) -> bool:
        size = len(json.dumps(model_data))
        if size > self.max_model_bytes:
            logger.warning("Model too large: %d bytes", size)
            return False
        return validate_model_dict(model_data)

    async def get(self, user_id: str) -> Optional[FeedForwardNetwork]:
        key = MODEL_KEY.format(user_id=user_id)
        try:
            raw = await self._redis.get(key)
            if not raw:
                self.metrics.record("miss")
                logger.info("Cache miss for user %s", user_id)
                return None

            cached = json.loads(raw)

            if cached.get("version") != self.version:
                self.metrics.record("version_mismatch")
                logger.info("Cache miss for user %s (version mismatch)", user_id)
                return None

            age_ms = self._now_ms() - int(cached.get("last_updated", 0))
            if age_ms > self.ttl_seconds * 1000:
                self.metrics.record("expired")
                logger.info("Cache miss for user %s (expired)", user_id)
                return None

            examples = int(cached.get("training_examples", 0))
            if examples < self.min_training_examples:
                self.metrics.record("insufficient_examples")
                logger.warning(
                    "Model for user %s has insufficient training examples: %d",
                    user_id, examples,
                )
                return None

            model_data = cached.get("model")
            if not self._validate(model_data):
                self.metrics.record("invalid_model")
                logger.warning("Invalid model found for user %s", user_id)
                return None

            network = FeedForwardNetwork.from_dict(model_data)
        except Exception as exc:
            self.metrics.record("error")
            logger.error("Error getting model for user %s: %s", user_id, exc)
            return None

        self.metrics.record("hit")
        logger.info("Cache hit for user %s", user_id)
        return network

    async def set(
        self,
        user_id: str,
        model: FeedForwardNetwork,
        training_examples: int,
        performance: Optional[TrainingStats] = None,
    ) -> None:
        """Persist a trained model. Best-effort: failures are logged, not raised."""
        key = MODEL_KEY.format(user_id=user_id)
        stats_key = STATS_KEY.format(user_id=user_id)
        try:
            model_data = model.to_dict()
            if not self._validate(model_data):
                self.metrics.record("write_rejected")
                logger.warning("Refusing to cache invalid model for user %s", user_id)
                return

            error = performance.error if performance else 0.0
            iterations = performance.iterations if performance else 0
            last_updated = self._now_ms()
            serialized = json.dumps(
                {
                    "version": self.version,
                    "model": model_data,
                    "last_updated": last_updated,
                    "training_examples": training_examples,
                    "performance": {"error": error, "iterations": iterations},
                }
            )

            pipe = self._redis.pipeline(transaction=True)
            pipe.set(key, serialized, ex=self.ttl_seconds)
            pipe.hset(
                stats_key,
                mapping={
                    "last_updated": last_updated,
                    "training_examples": training_examples,
                    "error": error,
                    "iterations": iterations,
                },
            )
            pipe.expire(stats_key, self.ttl_seconds)
            await pipe.execute()
        except Exception as exc:
            self.metrics.record("write_error")
            logger.error("Error setting model for user %s: %s", user_id, exc)
            return

        self.metrics.cache_size = len(serialized)
        self.metrics.record("updated")
        logger.info(
            "Model cached for user %s with %d examples", user_id, training_examples
        )

    async def clear(self, user_id: str) -> None:
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.delete(MODEL_KEY.format(user_id=user_id))
            pipe.delete(STATS_KEY.format(user_id=user_id))
            await pipe.execute()
            logger.info("Cache cleared for user %s", user_id)
        except Exception as exc:
            self.metrics.record("clear_error")
            logger.error("Error clearing model for user %s: %s", user_id, exc)

    async def get_stats(self, user_id: str) -> Optional[dict]:
        try:
            raw = await self._redis.hgetall(STATS_KEY.format(user_id=user_id))
            if not raw:
                return None
            return {
                "last_updated": int(raw["last_updated"]),
                "training_examples": int(raw["training_examples"]),
                "error": float(raw["error"]),
                "iterations": int(raw["iterations"]),
            }
        except Exception as exc:
            logger.error("Error getting model stats for user %s: %s", user_id, exc)
            return None
