"""
Post / User / Engagement store.

PostStore is the boundary the ranking engine reads through; SqlPostStore
implements it over an async SQLAlchemy session. Every query returns
CandidatePost views, never ORM rows, so nothing downstream can lazy-load or
mutate storage state.

Visibility rules applied to user-facing pools:
  • public / home posts           → everyone
  • followers posts               → the author's followers and the author
  • specified posts               → the author only
  • authors the viewer muted      → hidden (also as the renoted author)
  • authors who blocked the viewer → hidden
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Collection, Optional, Protocol

from sqlalchemy import and_, func, not_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from feedranker.models import Blocking, Follow, Muting, Post, Reaction, User
from feedranker.ranking.posts import CandidatePost
from feedranker.schemas import FeedParams

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    school_id: Optional[str] = None
    is_admin: bool = False
    is_moderator: bool = False


class PostStore(Protocol):
    async def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    async def get_post(self, post_id: str) -> Optional[CandidatePost]: ...

    async def followee_ids(self, user_id: str) -> set[str]: ...

    async def timeline_posts(
        self,
        user_id: str,
        params: FeedParams,
        limit: int,
        created_before: Optional[datetime] = None,
    ) -> list[CandidatePost]: ...

    async def reacted_posts(self, user_id: str, since: datetime) -> list[CandidatePost]: ...

    async def replied_posts(self, user_id: str, since: datetime) -> list[CandidatePost]: ...

    async def renoted_posts(self, user_id: str, since: datetime) -> list[CandidatePost]: ...

    async def followee_posts(
        self, user_id: str, since: datetime, until: datetime, limit: int
    ) -> list[CandidatePost]: ...

    async def followee_engaged_posts(
        self, user_id: str, since: datetime, until: datetime, limit: int
    ) -> list[CandidatePost]: ...

    async def public_local_posts(
        self,
        since: datetime,
        until: datetime,
        limit: int,
        exclude_ids: Collection[str] = (),
        exclude_user_id: Optional[str] = None,
        viewer_id: Optional[str] = None,
    ) -> list[CandidatePost]: ...

    async def sample_public_local_posts(
        self,
        since: datetime,
        until: datetime,
        limit: int,
        exclude_ids: Collection[str] = (),
        exclude_user_id: Optional[str] = None,
    ) -> list[CandidatePost]: ...

    async def second_degree_posts(
        self, user_id: str, since: datetime, until: datetime, limit: int
    ) -> list[CandidatePost]: ...


def as_utc(value: datetime) -> datetime:
    """Rows come back naive (stored as UTC); make them aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _db_time(value: datetime) -> datetime:
    """Naive UTC for comparison against DateTime columns."""
    return as_utc(value).replace(tzinfo=None)


def _from_millis(millis: int) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def _to_candidate(post: Post) -> CandidatePost:
    return CandidatePost(
        post_id=post.post_id,
        user_id=post.user_id,
        user_school_id=post.author.school_id if post.author else None,
        created_at=as_utc(post.created_at),
        text_length=len(post.text or ""),
        reaction_count=post.reaction_count,
        reply_count=post.replies_count,
        renote_count=post.renote_count,
        visibility=post.visibility,
    )


def _followees(user_id: str):
    edge = aliased(Follow)
    return select(edge.followee_id).where(edge.follower_id == user_id)


def _in_window(since: datetime, until: datetime):
    return and_(Post.created_at > _db_time(since), Post.created_at <= _db_time(until))


def _visible_to(user_id: str):
    return or_(
        Post.visibility.in_(("public", "home")),
        Post.user_id == user_id,
        and_(Post.visibility == "followers", Post.user_id.in_(_followees(user_id))),
    )


def _not_muted_or_blocked(user_id: str):
    muted = select(Muting.mutee_id).where(Muting.muter_id == user_id)
    blockers = select(Blocking.blocker_id).where(Blocking.blockee_id == user_id)
    return and_(
        Post.user_id.not_in(muted),
        or_(Post.renote_user_id.is_(None), Post.renote_user_id.not_in(muted)),
        Post.user_id.not_in(blockers),
    )


def _pure_renote():
    return and_(Post.renote_id.is_not(None), Post.text.is_(None), Post.file_count == 0)


def _public_local(
    since: datetime,
    until: datetime,
    exclude_ids: Collection[str] = (),
    exclude_user_id: Optional[str] = None,
    viewer_id: Optional[str] = None,
):
    query = select(Post).where(
        Post.visibility == "public",
        Post.user_host.is_(None),
        _in_window(since, until),
    )
    if exclude_ids:
        query = query.where(Post.post_id.not_in(list(exclude_ids)))
    if exclude_user_id:
        query = query.where(Post.user_id != exclude_user_id)
    if viewer_id:
        query = query.where(_not_muted_or_blocked(viewer_id))
    return query


class SqlPostStore:
    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def _fetch(self, query) -> list[CandidatePost]:
        rows = await self._db.execute(query)
        return [_to_candidate(p) for p in rows.scalars().all()]

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        user = await self._db.get(User, user_id)
        if not user:
            return None
        return UserRecord(
            user_id=user.user_id,
            school_id=user.school_id,
            is_admin=user.is_admin,
            is_moderator=user.is_moderator,
        )

    async def get_post(self, post_id: str) -> Optional[CandidatePost]:
        posts = await self._fetch(select(Post).where(Post.post_id == post_id))
        return posts[0] if posts else None

    async def followee_ids(self, user_id: str) -> set[str]:
        rows = await self._db.execute(_followees(user_id))
        return set(rows.scalars().all())

    async def timeline_posts(
        self,
        user_id: str,
        params: FeedParams,
        limit: int,
        created_before: Optional[datetime] = None,
    ) -> list[CandidatePost]:
        query = select(Post).where(
            or_(
                Post.user_id.in_(_followees(user_id)),
                Post.user_id == user_id,
                and_(Post.visibility == "public", Post.user_host.is_(None)),
            ),
            _visible_to(user_id),
            _not_muted_or_blocked(user_id),
        )

        # Cursor pagination over time-sortable ids / creation dates
        if params.since_id:
            query = query.where(Post.post_id > params.since_id)
        if params.until_id:
            query = query.where(Post.post_id < params.until_id)
        if params.since_date is not None:
            query = query.where(Post.created_at > _db_time(_from_millis(params.since_date)))
        if params.until_date is not None:
            query = query.where(Post.created_at < _db_time(_from_millis(params.until_date)))
        if created_before is not None:
            query = query.where(Post.created_at < _db_time(created_before))

        if not params.include_my_renotes:
            query = query.where(not_(and_(_pure_renote(), Post.user_id == user_id)))
        if not params.include_renoted_my_notes:
            query = query.where(not_(and_(_pure_renote(), Post.renote_user_id == user_id)))
        if not params.include_local_renotes:
            query = query.where(not_(and_(_pure_renote(), Post.renote_user_host.is_(None))))
        if params.with_files:
            query = query.where(Post.file_count > 0)

        ascending = (params.since_id or params.since_date is not None) and not (
            params.until_id or params.until_date is not None
        )
        order = Post.post_id.asc() if ascending else Post.post_id.desc()
        return await self._fetch(query.order_by(order).limit(limit))

    async def reacted_posts(self, user_id: str, since: datetime) -> list[CandidatePost]:
        query = (
            select(Post)
            .join(Reaction, Reaction.post_id == Post.post_id)
            .where(Reaction.user_id == user_id, Reaction.created_at > _db_time(since))
            .order_by(Post.post_id.desc())
        )
        return await self._fetch(query)

    async def _referenced_by(self, column_name: str, user_id: str, since: datetime):
        mine = aliased(Post)
        target = getattr(mine, column_name)
        referenced = select(target).where(
            mine.user_id == user_id,
            target.is_not(None),
            mine.created_at > _db_time(since),
        )
        query = select(Post).where(Post.post_id.in_(referenced)).order_by(Post.post_id.desc())
        return await self._fetch(query)

    async def replied_posts(self, user_id: str, since: datetime) -> list[CandidatePost]:
        return await self._referenced_by("reply_id", user_id, since)

    async def renoted_posts(self, user_id: str, since: datetime) -> list[CandidatePost]:
        return await self._referenced_by("renote_id", user_id, since)

    async def followee_posts(
        self, user_id: str, since: datetime, until: datetime, limit: int
    ) -> list[CandidatePost]:
        query = (
            select(Post)
            .where(Post.user_id.in_(_followees(user_id)), _in_window(since, until))
            .order_by(Post.post_id.desc())
            .limit(limit)
        )
        return await self._fetch(query)

    async def followee_engaged_posts(
        self, user_id: str, since: datetime, until: datetime, limit: int
    ) -> list[CandidatePost]:
        engaged = select(Reaction.post_id).where(Reaction.user_id.in_(_followees(user_id)))
        query = (
            select(Post)
            .where(Post.post_id.in_(engaged), _in_window(since, until))
            .order_by(Post.post_id.desc())
            .limit(limit)
        )
        return await self._fetch(query)

    async def public_local_posts(
        self,
        since: datetime,
        until: datetime,
        limit: int,
        exclude_ids: Collection[str] = (),
        exclude_user_id: Optional[str] = None,
        viewer_id: Optional[str] = None,
    ) -> list[CandidatePost]:
        query = _public_local(since, until, exclude_ids, exclude_user_id, viewer_id)
        return await self._fetch(query.order_by(Post.post_id.desc()).limit(limit))

    async def sample_public_local_posts(
        self,
        since: datetime,
        until: datetime,
        limit: int,
        exclude_ids: Collection[str] = (),
        exclude_user_id: Optional[str] = None,
    ) -> list[CandidatePost]:
        """Uniform sample over the whole window, not just its newest slice."""
        query = _public_local(since, until, exclude_ids, exclude_user_id)
        return await self._fetch(query.order_by(func.random()).limit(limit))

    async def second_degree_posts(
        self, user_id: str, since: datetime, until: datetime, limit: int
    ) -> list[CandidatePost]:
        hop = aliased(Follow)
        second_degree = select(hop.followee_id).where(hop.follower_id.in_(_followees(user_id)))
        query = (
            select(Post)
            .where(
                Post.user_id.in_(second_degree),
                Post.user_id != user_id,
                Post.visibility == "public",
                _in_window(since, until),
                _not_muted_or_blocked(user_id),
            )
            .order_by(func.random())
            .limit(limit)
        )
        return await self._fetch(query)
