"""
Proximity Booster — moves posts from the user's school and nearby schools to
the front of the merged candidate list.
"""
import logging
from typing import Optional

from feedranker.clients.meta_client import FeatureFlags
from feedranker.ranking.features import UserContext
from feedranker.ranking.posts import CandidatePost
from feedranker.telemetry import RANKING_ERRORS_TOTAL

logger = logging.getLogger(__name__)

SAME_SCHOOL_PRIORITY = 2
NEARBY_SCHOOL_PRIORITY = 1


def proximity_priority(
    post: CandidatePost, user_school_id: str, nearby_school_ids: frozenset[str]
) -> int:
    if not post.user_school_id:
        return 0
    if post.user_school_id == user_school_id:
        return SAME_SCHOOL_PRIORITY
    if post.user_school_id in nearby_school_ids:
        return NEARBY_SCHOOL_PRIORITY
    return 0


async def apply_proximity_boost(
    posts: list[CandidatePost],
    context: UserContext,
    flags: FeatureFlags,
    proximity=None,
) -> list[CandidatePost]:
    """
    Sort by proximity priority, then newest first, then id descending.
    Returns the input unchanged when the flag is off, the user has no
    school, or the nearby-school lookup fails.
    """
    if not flags.enable_school_proximity_boost:
        return posts
    if not context.school_id:
        return posts

    nearby: Optional[frozenset[str]] = None
    if proximity is not None:
        try:
            nearby = frozenset(await proximity.get_nearby_school_ids(context.school_id))
        except Exception as exc:
            logger.warning("Failed to apply proximity boost: %s", exc)
            RANKING_ERRORS_TOTAL.labels(stage="proximity").inc()
            return posts
    if nearby is None:
        nearby = context.nearby_school_ids

    school_id = context.school_id
    # Python's sort is stable, so the later keys only break earlier ties
    by_id = sorted(posts, key=lambda p: p.post_id, reverse=True)
    return sorted(
        by_id,
        key=lambda p: (proximity_priority(p, school_id, nearby), p.created_at),
        reverse=True,
    )
