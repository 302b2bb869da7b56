"""
Read-only post views flowing through the ranking pipeline.

Every value here is built fresh per request from storage rows and discarded
after the response; nothing in the pipeline mutates them.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional


@dataclass(frozen=True)
class CandidatePost:
    post_id: str
    user_id: str
    user_school_id: Optional[str]
    created_at: datetime
    text_length: int = 0
    reaction_count: int = 0
    reply_count: int = 0
    renote_count: int = 0
    visibility: str = "public"


@dataclass(frozen=True)
class ScoredCandidate:
    score: float
    post: CandidatePost


@dataclass(frozen=True)
class CandidatePools:
    """The three acquisition strategies' output for one request."""
    timeline: list[CandidatePost] = field(default_factory=list)
    recommended: list[CandidatePost] = field(default_factory=list)
    second_degree: list[CandidatePost] = field(default_factory=list)

    def merged(self) -> list[CandidatePost]:
        return dedupe_posts([*self.timeline, *self.recommended, *self.second_degree])

    def source_of(self) -> dict[str, str]:
        """post_id → pool name, first pool wins."""
        sources: dict[str, str] = {}
        for name, pool in (
            ("timeline", self.timeline),
            ("recommended", self.recommended),
            ("second_degree", self.second_degree),
        ):
            for post in pool:
                sources.setdefault(post.post_id, name)
        return sources


def dedupe_posts(posts: Iterable[CandidatePost]) -> list[CandidatePost]:
    """Drop repeated post ids, keeping the first occurrence in place."""
    seen: set[str] = set()
    unique: list[CandidatePost] = []
    for post in posts:
        if post.post_id not in seen:
            seen.add(post.post_id)
            unique.append(post)
    return unique
