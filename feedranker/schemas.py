"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models to avoid coupling transport to storage.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator


# ──────────────────────────── Feed request ────────────────────────────────

class FeedParams(BaseModel):
    """Pagination and content filters for one feed page."""
    limit: int = Field(10, ge=1, le=100)
    since_id: Optional[str] = None
    until_id: Optional[str] = None
    # Unix epoch milliseconds
    since_date: Optional[int] = None
    until_date: Optional[int] = None
    include_my_renotes: bool = True
    include_renoted_my_notes: bool = True
    include_local_renotes: bool = True
    with_files: bool = False

    @model_validator(mode="after")
    def _check_bounds(self) -> "FeedParams":
        if self.since_id and self.until_id and self.since_id >= self.until_id:
            raise ValueError("since_id must be lower than until_id")
        if (
            self.since_date is not None
            and self.until_date is not None
            and self.since_date >= self.until_date
        ):
            raise ValueError("since_date must be earlier than until_date")
        return self


# ──────────────────────────── Feed response ───────────────────────────────

class FeedPost(BaseModel):
    """A ranked post returned in the feed."""
    post_id: str
    user_id: str
    user_school_id: Optional[str]
    created_at: datetime
    visibility: str
    reaction_count: int
    reply_count: int
    renote_count: int
    source: str   # 'timeline' | 'recommended' | 'second_degree'


class FeedResponse(BaseModel):
    user_id: str
    posts: list[FeedPost]
    # Metadata useful for understanding the pipeline
    candidates_timeline: int
    candidates_recommended: int
    candidates_second_degree: int
    latency_ms: float


# ──────────────────────────── Model cache ─────────────────────────────────

class ModelStats(BaseModel):
    user_id: str
    last_updated: int
    training_examples: int
    error: float
    iterations: int


class CacheMetricsResponse(BaseModel):
    cache_hits: int
    cache_misses: int
    errors: int
    invalid_models: int
    model_updates: int
    cache_size: int
    total_requests: int
    hit_rate: str
