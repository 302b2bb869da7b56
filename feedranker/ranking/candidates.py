"""
Candidate Aggregator.

Gathers the three candidate pools for one feed request:

  Pool 1 │ Direct timeline
  ───────┼────────────────────────────────────────────────────────────────
         │  Followees' posts, the user's own posts and public local posts,
         │  filtered by visibility / mute / block rules and the request's
         │  cursors. Over-fetched at 2 × limit.

  Pool 2 │ Recommendations
  ───────┼────────────────────────────────────────────────────────────────
         │  Up to floor(limit × 0.4) unseen public local posts scored by the
         │  user's ranking model (cached, or trained on a miss).

  Pool 3 │ Second-degree sample
  ───────┼────────────────────────────────────────────────────────────────
         │  On 15% of requests, up to floor(limit × 0.15) random public posts
         │  by accounts the user's followees follow.

Pools 2 and 3 look back 7 days from the oldest Pool-1 post so the three pools
cover comparable time ranges.
"""
import logging
import math
import random
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from opentelemetry import trace

from feedranker.clients.store import PostStore, UserRecord
from feedranker.config import settings
from feedranker.ranking.features import UserContext, extract_matrix
from feedranker.ranking.model_cache import RankingModelCache
from feedranker.ranking.posts import CandidatePools, CandidatePost, ScoredCandidate
from feedranker.ranking.trainer import ModelTrainer, TrainedModel
from feedranker.schemas import FeedParams
from feedranker.telemetry import FEED_CANDIDATES_TOTAL, RANKING_ERRORS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def rank_scored(scored: list[ScoredCandidate]) -> list[ScoredCandidate]:
    """Highest score first; equal scores fall back to newest id first."""
    by_id = sorted(scored, key=lambda s: s.post.post_id, reverse=True)
    return sorted(by_id, key=lambda s: s.score, reverse=True)


class CandidateAggregator:
    def __init__(
        self,
        store: PostStore,
        model_cache: RankingModelCache,
        trainer: ModelTrainer,
        proximity=None,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._cache = model_cache
        self._trainer = trainer
        self._proximity = proximity
        self._rng = rng or random.Random()
        self._clock = clock

    async def build_context(self, user: UserRecord) -> UserContext:
        """Resolve follow graph and nearby schools once per request."""
        followees = await self._store.followee_ids(user.user_id)

        nearby: frozenset[str] = frozenset()
        if user.school_id and self._proximity is not None:
            try:
                nearby = frozenset(
                    await self._proximity.get_nearby_school_ids(user.school_id)
                )
            except Exception as exc:
                logger.warning("Failed to get nearby schools for recommendations: %s", exc)

        return UserContext(
            user_id=user.user_id,
            school_id=user.school_id,
            nearby_school_ids=nearby,
            followee_ids=frozenset(followees),
            is_privileged=user.is_admin or user.is_moderator,
        )

    # ── Pool 1 ────────────────────────────────────────────────────────────

    async def timeline_posts(
        self, context: UserContext, params: FeedParams
    ) -> list[CandidatePost]:
        created_before = None
        if params.since_id:
            since_post = await self._store.get_post(params.since_id)
            if since_post:
                created_before = since_post.created_at + timedelta(days=settings.window_days)

        return await self._store.timeline_posts(
            context.user_id,
            params,
            limit=params.limit * settings.timeline_overfetch,
            created_before=created_before,
        )

    # ── Pool 2 ────────────────────────────────────────────────────────────

    async def recommended_posts(
        self, context: UserContext, limit: int, reference_time: datetime
    ) -> list[CandidatePost]:
        """
        Score unseen public local posts with the user's model. Training
        faults propagate; the caller decides how to degrade.
        """
        if limit <= 0:
            return []

        training_set = await self._trainer.build_training_set(
            self._store, context, reference_time
        )
        if training_set.is_empty:
            logger.debug("No engagement for user %s — skipping recommendations", context.user_id)
            return []

        network = await self._cache.get(context.user_id)
        if network is None:
            logger.info("Training new model for user %s", context.user_id)

            async def persist(trained: TrainedModel) -> None:
                await self._cache.set(
                    context.user_id,
                    trained.network,
                    trained.training_examples,
                    trained.stats,
                )

            trained = await self._trainer.train_async(training_set, on_trained=persist)
            network = trained.network

        since = reference_time - timedelta(days=settings.window_days)
        candidates = await self._store.public_local_posts(
            since,
            reference_time,
            settings.recommendation_candidate_limit,
            exclude_ids=training_set.seen_ids,
            viewer_id=context.user_id,
        )
        if not candidates:
            return []

        features = extract_matrix(candidates, training_set.context, reference_time)
        scores = network.predict(features)
        scored = [
            ScoredCandidate(score=float(score), post=post)
            for score, post in zip(scores, candidates)
        ]
        return [s.post for s in rank_scored(scored)[:limit]]

    # ── Pool 3 ────────────────────────────────────────────────────────────

    async def second_degree_posts(
        self, context: UserContext, limit: int, reference_time: datetime
    ) -> list[CandidatePost]:
        if limit <= 0:
            return []
        since = reference_time - timedelta(days=settings.window_days)
        try:
            return await self._store.second_degree_posts(
                context.user_id, since, reference_time, limit
            )
        except Exception as exc:
            logger.warning("Second-degree lookup failed for user %s: %s", context.user_id, exc)
            RANKING_ERRORS_TOTAL.labels(stage="second_degree").inc()
            return []

    # ── All pools ─────────────────────────────────────────────────────────

    def reference_time(self, timeline: list[CandidatePost]) -> datetime:
        if not timeline:
            return self._clock()
        return min(p.created_at for p in timeline)

    async def aggregate(self, context: UserContext, params: FeedParams) -> CandidatePools:
        with tracer.start_as_current_span("pool_timeline"):
            timeline = await self.timeline_posts(context, params)

        reference_time = self.reference_time(timeline)

        recommended: list[CandidatePost] = []
        with tracer.start_as_current_span("pool_recommended") as span:
            try:
                recommended = await self.recommended_posts(
                    context,
                    math.floor(params.limit * settings.recommendation_ratio),
                    reference_time,
                )
            except Exception as exc:
                # The timeline does not depend on the model; serve without it
                logger.warning(
                    "Recommendations skipped for user %s: %s", context.user_id, exc
                )
                RANKING_ERRORS_TOTAL.labels(stage="recommendation").inc()
                span.record_exception(exc)

        second_degree: list[CandidatePost] = []
        if self._rng.random() < settings.second_degree_probability:
            with tracer.start_as_current_span("pool_second_degree"):
                second_degree = await self.second_degree_posts(
                    context,
                    math.floor(params.limit * settings.second_degree_ratio),
                    reference_time,
                )

        FEED_CANDIDATES_TOTAL.labels(pool="timeline").inc(len(timeline))
        FEED_CANDIDATES_TOTAL.labels(pool="recommended").inc(len(recommended))
        FEED_CANDIDATES_TOTAL.labels(pool="second_degree").inc(len(second_degree))

        return CandidatePools(
            timeline=timeline,
            recommended=recommended,
            second_degree=second_degree,
        )
