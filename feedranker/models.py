"""
SQLAlchemy ORM models for the relational store.

Tables:
  schools   — school directory + coordinates used for proximity
  users     — user profiles (local users have host = NULL)
  follows   — social graph edges (follower → followee)
  posts     — post metadata with denormalised engagement counters
  reactions — user × post engagement
  mutings   — muter → mutee
  blockings — blocker → blockee
  meta      — single-row instance configuration (feature flags)
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from feedranker.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def new_post_id(created_at: Optional[datetime] = None) -> str:
    """
    Time-sortable id: 12 hex chars of epoch millis + 12 random hex chars.
    Cursor pagination compares ids, so id order must follow creation order.
    """
    moment = created_at or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    millis = int(moment.timestamp() * 1000)
    return f"{millis:012x}{uuid.uuid4().hex[:12]}"


def _post_id() -> str:
    return new_post_id()


class School(Base):
    __tablename__ = "schools"

    school_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    # NULL for local users, the remote instance host otherwise
    host: Mapped[Optional[str]] = mapped_column(String(255))
    school_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("schools.school_id")
    )
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_moderator: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    posts = relationship("Post", back_populates="author", lazy="noload")


class Follow(Base):
    __tablename__ = "follows"

    follower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    followee_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        # Second-degree lookups walk follower → followee → followee
        Index("idx_followee", "followee_id"),
    )


class Post(Base):
    __tablename__ = "posts"

    post_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_post_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    # Copied from the author so the local-timeline filter needs no join
    user_host: Mapped[Optional[str]] = mapped_column(String(255))
    text: Mapped[Optional[str]] = mapped_column(Text)
    visibility: Mapped[str] = mapped_column(
        String(20), default="public", nullable=False
    )  # 'public' | 'home' | 'followers' | 'specified'
    reply_id: Mapped[Optional[str]] = mapped_column(String(36))
    renote_id: Mapped[Optional[str]] = mapped_column(String(36))
    renote_user_id: Mapped[Optional[str]] = mapped_column(String(36))
    renote_user_host: Mapped[Optional[str]] = mapped_column(String(255))
    file_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reaction_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    replies_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    renote_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    author = relationship("User", back_populates="posts", lazy="joined")

    __table_args__ = (
        Index("idx_posts_user", "user_id"),
        Index("idx_posts_created", "created_at"),
    )


class Reaction(Base):
    __tablename__ = "reactions"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.post_id"), primary_key=True
    )
    reaction: Mapped[str] = mapped_column(String(64), default="like", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )


class Muting(Base):
    __tablename__ = "mutings"

    muter_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    mutee_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )


class Blocking(Base):
    __tablename__ = "blockings"

    blocker_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    blockee_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )


class Meta(Base):
    __tablename__ = "meta"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default="x")
    enable_school_proximity_boost: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    disable_local_timeline: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
