"""
Feed endpoints.

  GET    /feed/                        — personalised home timeline
  GET    /feed/model/{user_id}/stats   — training stats of the cached model
  DELETE /feed/model/{user_id}         — drop a user's cached model
  GET    /feed/model-cache/metrics     — in-process model cache counters
"""
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from feedranker.clients.store import SqlPostStore
from feedranker.database import get_db
from feedranker.errors import InvalidFeedRequest, TimelineDisabled, UserNotFound
from feedranker.ranking.assembler import FeedAssembler, parse_params
from feedranker.ranking.model_cache import RankingModelCache
from feedranker.schemas import CacheMetricsResponse, FeedPost, FeedResponse, ModelStats
from feedranker.telemetry import FEED_LATENCY

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


def get_model_cache(request: Request) -> RankingModelCache:
    return request.app.state.model_cache


def get_assembler(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> FeedAssembler:
    state = request.app.state
    return FeedAssembler(
        SqlPostStore(db),
        state.model_cache,
        state.trainer,
        state.proximity,
        state.meta,
    )


@router.get("/", response_model=FeedResponse)
async def get_feed(
    user_id: str = Query(..., description="ID of the requesting user"),
    limit: int = Query(10),
    since_id: Optional[str] = Query(None),
    until_id: Optional[str] = Query(None),
    since_date: Optional[int] = Query(None, description="Unix epoch milliseconds"),
    until_date: Optional[int] = Query(None, description="Unix epoch milliseconds"),
    include_my_renotes: bool = Query(True),
    include_renoted_my_notes: bool = Query(True),
    include_local_renotes: bool = Query(True),
    with_files: bool = Query(False),
    assembler: FeedAssembler = Depends(get_assembler),
):
    start_time = time.time()

    with tracer.start_as_current_span("get_feed") as span:
        span.set_attribute("user.id", user_id)

        try:
            params = parse_params(
                limit=limit,
                since_id=since_id,
                until_id=until_id,
                since_date=since_date,
                until_date=until_date,
                include_my_renotes=include_my_renotes,
                include_renoted_my_notes=include_renoted_my_notes,
                include_local_renotes=include_local_renotes,
                with_files=with_files,
            )
            result = await assembler.get_personalized_feed(user_id, params)
        except InvalidFeedRequest as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except UserNotFound:
            raise HTTPException(status_code=404, detail="User not found")
        except TimelineDisabled as exc:
            raise HTTPException(status_code=403, detail=str(exc))

        posts = [
            FeedPost(
                post_id=p.post_id,
                user_id=p.user_id,
                user_school_id=p.user_school_id,
                created_at=p.created_at,
                visibility=p.visibility,
                reaction_count=p.reaction_count,
                reply_count=p.reply_count,
                renote_count=p.renote_count,
                source=result.sources.get(p.post_id, "timeline"),
            )
            for p in result.posts
        ]

        latency_ms = (time.time() - start_time) * 1000
        FEED_LATENCY.observe(latency_ms / 1000)
        span.set_attribute("feed.latency_ms", latency_ms)
        span.set_attribute("feed.posts_returned", len(posts))

        return FeedResponse(
            user_id=user_id,
            posts=posts,
            candidates_timeline=result.candidates_timeline,
            candidates_recommended=result.candidates_recommended,
            candidates_second_degree=result.candidates_second_degree,
            latency_ms=round(latency_ms, 2),
        )


@router.get("/model/{user_id}/stats", response_model=ModelStats)
async def get_model_stats(
    user_id: str, cache: RankingModelCache = Depends(get_model_cache)
):
    stats = await cache.get_stats(user_id)
    if stats is None:
        raise HTTPException(status_code=404, detail="No cached model for user")
    return ModelStats(user_id=user_id, **stats)


@router.delete("/model/{user_id}", status_code=204)
async def clear_model(user_id: str, cache: RankingModelCache = Depends(get_model_cache)):
    await cache.clear(user_id)
    return Response(status_code=204)


@router.get("/model-cache/metrics", response_model=CacheMetricsResponse)
async def get_cache_metrics(cache: RankingModelCache = Depends(get_model_cache)):
    return CacheMetricsResponse(**cache.metrics.snapshot())
