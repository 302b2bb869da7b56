"""Diversity Limiter — soft per-author cap on one feed page."""
import math
from collections import defaultdict

from feedranker.config import settings
from feedranker.ranking.posts import CandidatePost


def author_cap(limit: int) -> int:
    return max(1, math.floor(limit * settings.author_cap_ratio))


def apply_soft_user_limit(
    posts: list[CandidatePost], limit: int, max_posts_per_user: int
) -> list[CandidatePost]:
    """
    Keep at most `max_posts_per_user` posts per author, in input order. If
    that leaves fewer than `limit` posts, top up with the held-back posts in
    their original order.
    """
    author_post_count: dict[str, int] = defaultdict(int)
    limited: list[CandidatePost] = []
    overflow: list[CandidatePost] = []

    for post in posts:
        if author_post_count[post.user_id] < max_posts_per_user:
            author_post_count[post.user_id] += 1
            limited.append(post)
        else:
            overflow.append(post)

    limited = limited[:limit]
    for post in overflow:
        if len(limited) >= limit:
            break
        limited.append(post)
    return limited
