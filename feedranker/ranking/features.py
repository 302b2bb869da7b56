"""
Feature Extractor.

Turns a (candidate post, requesting user, batch statistics) triple into the
fixed 11-dimension vector the ranking network consumes. The same function is
used for training and inference so the dimension order cannot drift between
the two.

  idx │ feature               │ range
  ────┼───────────────────────┼──────────────────────────────────────────
   0  │ text_length           │ chars / 1000, clamped to 1
   1  │ reactions             │ count / batch max  (0 if batch max is 0)
   2  │ replies               │ count / batch max
   3  │ renotes               │ count / batch max
   4  │ recency               │ max(0, 1 − age / 7 days), age vs reference
   5  │ from_followed_author  │ 0 / 1
   6  │ engaged_by_followed   │ 0 / 1
   7  │ user_reacted          │ 0 / 1
   8  │ user_replied          │ 0 / 1
   9  │ user_renoted          │ 0 / 1
  10  │ school_proximity      │ 1.0 same school, 0.7 nearby, else 0
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

import numpy as np

from feedranker.ranking.posts import CandidatePost

FEATURE_NAMES: tuple[str, ...] = (
    "text_length",
    "reactions",
    "replies",
    "renotes",
    "recency",
    "from_followed_author",
    "engaged_by_followed",
    "user_reacted",
    "user_replied",
    "user_renoted",
    "school_proximity",
)
FEATURE_DIM = len(FEATURE_NAMES)

TEXT_LENGTH_SCALE = 1000
RECENCY_WINDOW = timedelta(days=7)
SAME_SCHOOL_SCORE = 1.0
NEARBY_SCHOOL_SCORE = 0.7


@dataclass(frozen=True)
class EngagementSignals:
    """Post ids the user (or their followees) engaged with in the window."""
    followee_engaged_ids: frozenset[str] = frozenset()
    reacted_ids: frozenset[str] = frozenset()
    replied_ids: frozenset[str] = frozenset()
    renoted_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class UserContext:
    user_id: str
    school_id: Optional[str] = None
    nearby_school_ids: frozenset[str] = frozenset()
    followee_ids: frozenset[str] = frozenset()
    signals: EngagementSignals = field(default_factory=EngagementSignals)
    is_privileged: bool = False   # admin or moderator


@dataclass(frozen=True)
class BatchStats:
    max_reactions: int = 0
    max_replies: int = 0
    max_renotes: int = 0

    @classmethod
    def from_posts(cls, posts: Iterable[CandidatePost]) -> "BatchStats":
        max_reactions = max_replies = max_renotes = 0
        for post in posts:
            max_reactions = max(max_reactions, post.reaction_count)
            max_replies = max(max_replies, post.reply_count)
            max_renotes = max(max_renotes, post.renote_count)
        return cls(max_reactions, max_replies, max_renotes)


def _ratio(count: int, maximum: int) -> float:
    if maximum <= 0:
        return 0.0
    return min(count / maximum, 1.0)


def proximity_score(post: CandidatePost, context: UserContext) -> float:
    school = post.user_school_id
    if not school:
        return 0.0
    if context.school_id and school == context.school_id:
        return SAME_SCHOOL_SCORE
    if school in context.nearby_school_ids:
        return NEARBY_SCHOOL_SCORE
    return 0.0


def recency_score(created_at: datetime, reference_time: datetime) -> float:
    age = (reference_time - created_at) / RECENCY_WINDOW
    return min(1.0, max(0.0, 1.0 - age))


def extract_features(
    post: CandidatePost,
    context: UserContext,
    stats: BatchStats,
    reference_time: datetime,
) -> list[float]:
    signals = context.signals
    return [
        min(post.text_length / TEXT_LENGTH_SCALE, 1.0),
        _ratio(post.reaction_count, stats.max_reactions),
        _ratio(post.reply_count, stats.max_replies),
        _ratio(post.renote_count, stats.max_renotes),
        recency_score(post.created_at, reference_time),
        1.0 if post.user_id in context.followee_ids else 0.0,
        1.0 if post.post_id in signals.followee_engaged_ids else 0.0,
        1.0 if post.post_id in signals.reacted_ids else 0.0,
        1.0 if post.post_id in signals.replied_ids else 0.0,
        1.0 if post.post_id in signals.renoted_ids else 0.0,
        proximity_score(post, context),
    ]


def extract_matrix(
    posts: Sequence[CandidatePost],
    context: UserContext,
    reference_time: datetime,
    stats: Optional[BatchStats] = None,
) -> np.ndarray:
    """Stack feature vectors row-wise; stats default to the batch itself."""
    if stats is None:
        stats = BatchStats.from_posts(posts)
    if not posts:
        return np.zeros((0, FEATURE_DIM), dtype=np.float64)
    return np.array(
        [extract_features(p, context, stats, reference_time) for p in posts],
        dtype=np.float64,
    )
