"""
Final Assembler — the engine's single entry point.

  1. Candidate aggregation (timeline, recommendations, second-degree)
  2. Merge + dedupe by post id, first occurrence wins
  3. Proximity boost
  4. Soft per-author cap at the requested page size
  5. Uniform shuffle, so the deterministic order of 3–4 is not user-visible
  6. Truncate to the requested limit

Nothing is kept between requests except what the model cache persists.
"""
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from opentelemetry import trace
from pydantic import ValidationError

from feedranker.clients.meta_client import FeatureFlags
from feedranker.clients.store import PostStore
from feedranker.errors import InvalidFeedRequest, TimelineDisabled, UserNotFound
from feedranker.ranking.candidates import CandidateAggregator
from feedranker.ranking.diversity import apply_soft_user_limit, author_cap
from feedranker.ranking.model_cache import RankingModelCache
from feedranker.ranking.posts import CandidatePost
from feedranker.ranking.proximity import apply_proximity_boost
from feedranker.ranking.trainer import ModelTrainer
from feedranker.schemas import FeedParams

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def parse_params(**raw: Any) -> FeedParams:
    """Build FeedParams, turning validation failures into a request error."""
    try:
        return FeedParams(**{k: v for k, v in raw.items() if v is not None})
    except ValidationError as exc:
        raise InvalidFeedRequest(str(exc)) from exc


@dataclass
class FeedResult:
    user_id: str
    posts: list[CandidatePost]
    sources: dict[str, str] = field(default_factory=dict)
    candidates_timeline: int = 0
    candidates_recommended: int = 0
    candidates_second_degree: int = 0

    @property
    def post_ids(self) -> list[str]:
        return [p.post_id for p in self.posts]


class FeedAssembler:
    def __init__(
        self,
        store: PostStore,
        model_cache: RankingModelCache,
        trainer: ModelTrainer,
        proximity=None,
        meta=None,
        *,
        rng: Optional[random.Random] = None,
        shuffle: Optional[Callable[[list], None]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._proximity = proximity
        self._meta = meta
        self._rng = rng or random.Random()
        self._shuffle = shuffle or self._rng.shuffle
        self.aggregator = CandidateAggregator(
            store,
            model_cache,
            trainer,
            proximity,
            rng=self._rng,
            clock=clock or (lambda: datetime.now(timezone.utc)),
        )

    async def _flags(self) -> FeatureFlags:
        if self._meta is None:
            return FeatureFlags.from_settings()
        try:
            return await self._meta.get_flags()
        except Exception as exc:
            logger.warning("Feature flag lookup failed: %s — using defaults", exc)
            return FeatureFlags.from_settings()

    async def get_personalized_feed(self, user_id: str, params: FeedParams) -> FeedResult:
        if params.limit < 1:
            raise InvalidFeedRequest("limit must be at least 1")

        user = await self._store.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)

        flags = await self._flags()
        if flags.disable_local_timeline and not (user.is_admin or user.is_moderator):
            raise TimelineDisabled("Hybrid timeline has been disabled.")

        context = await self.aggregator.build_context(user)
        pools = await self.aggregator.aggregate(context, params)
        merged = pools.merged()

        with tracer.start_as_current_span("proximity_boost"):
            boosted = await apply_proximity_boost(merged, context, flags, self._proximity)

        limited = apply_soft_user_limit(boosted, params.limit, author_cap(params.limit))

        shuffled = list(limited)
        self._shuffle(shuffled)
        final = shuffled[: params.limit]

        logger.debug(
            "Feed for user %s: %d merged → %d served", user_id, len(merged), len(final)
        )
        return FeedResult(
            user_id=user_id,
            posts=final,
            sources=pools.source_of(),
            candidates_timeline=len(pools.timeline),
            candidates_recommended=len(pools.recommended),
            candidates_second_degree=len(pools.second_degree),
        )
