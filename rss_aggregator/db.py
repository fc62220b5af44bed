"""Database layer holding users, feeds, follows and ingested posts."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    String,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .models import (
    Duplicate,
    Failed,
    FeedSnapshot,
    Inserted,
    InsertResult,
    NewPost,
)

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 255
URL_MAX_LENGTH = 512
DESCRIPTION_MAX_LENGTH = 1024


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


def _new_api_key() -> str:
    return secrets.token_hex(32)


class Base(DeclarativeBase):
    pass


class UserModel(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
    name = Column(String(255), nullable=False)
    api_key = Column(String(64), unique=True, nullable=False, default=_new_api_key)


class FeedModel(Base):
    """A subscribed feed and its fetch watermark."""

    __tablename__ = "feeds"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
    name = Column(String(255), nullable=False)
    url = Column(String(255), nullable=False, unique=True)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    last_fetched_at = Column(DateTime(timezone=True), nullable=True)


class FeedFollowModel(Base):
    __tablename__ = "feed_follows"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    feed_id = Column(
        String(36), ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False
    )


class PostModel(Base):
    """An ingested feed entry, unique by its link."""

    __tablename__ = "posts"

    id = Column(String(36), primary_key=True)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))
    title = Column(String(TITLE_MAX_LENGTH), nullable=False)
    url = Column(String(URL_MAX_LENGTH), nullable=False, unique=True)
    description = Column(String(DESCRIPTION_MAX_LENGTH), nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=True)
    feed_id = Column(
        String(36), ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False
    )


def init_engine(connection_string: Optional[str]) -> Optional[Engine]:
    """Initialize the database engine and create missing tables."""
    if not connection_string:
        return None

    logger.info("Initializing database connection: %s", connection_string)
    engine = create_engine(connection_string)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory for the given engine."""
    return sessionmaker(bind=engine)


def _to_snapshot(feed: FeedModel) -> FeedSnapshot:
    return FeedSnapshot(
        id=feed.id,
        name=feed.name,
        url=feed.url,
        last_fetched_at=feed.last_fetched_at,
    )


def create_user(session: Session, name: str) -> str:
    """Insert a user and return its id."""
    user = UserModel(id=_new_id(), name=name)
    session.add(user)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    return user.id


def follow_feed(session: Session, user_id: str, feed_id: str) -> str:
    """Subscribe a user to a feed and return the follow id."""
    follow = FeedFollowModel(id=_new_id(), user_id=user_id, feed_id=feed_id)
    session.add(follow)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    return follow.id


def create_feed(session: Session, name: str, url: str, user_id: str) -> FeedSnapshot:
    """Register a feed owned by ``user_id``; the owner automatically follows it."""
    feed = FeedModel(id=_new_id(), name=name, url=url, user_id=user_id)
    session.add(feed)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise

    snapshot = _to_snapshot(feed)
    follow_feed(session, user_id, snapshot.id)
    logger.info("Created feed '%s' (%s)", name, url)
    return snapshot


def get_feed_by_url(session: Session, url: str) -> Optional[FeedSnapshot]:
    stmt = select(FeedModel).where(FeedModel.url == url)
    feed = session.execute(stmt).scalar_one_or_none()
    if not feed:
        return None
    return _to_snapshot(feed)


def next_due_feeds(session: Session, limit: int) -> List[FeedSnapshot]:
    """Return up to ``limit`` feeds, least recently fetched first.

    Feeds that were never fetched sort ahead of every fetched feed.
    """
    if limit <= 0:
        raise ValueError("limit must be positive.")

    stmt = (
        select(FeedModel)
        .order_by(
            FeedModel.last_fetched_at.asc().nulls_first(),
            FeedModel.created_at.asc(),
        )
        .limit(limit)
    )
    feeds = session.execute(stmt).scalars().all()
    return [_to_snapshot(feed) for feed in feeds]


def mark_feed_fetched(
    session: Session, url: str, fetched_at: Optional[datetime] = None
) -> bool:
    """Advance the watermark of the feed at ``url``.

    Returns False when no feed has that URL.
    """
    timestamp = fetched_at or _utcnow()
    stmt = (
        update(FeedModel)
        .where(FeedModel.url == url)
        .values(last_fetched_at=timestamp, updated_at=timestamp)
    )
    try:
        result = session.execute(stmt)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return result.rowcount > 0


def _post_exists(session: Session, url: str) -> bool:
    stmt = select(PostModel.id).where(PostModel.url == url)
    return session.execute(stmt).first() is not None


def insert_post(session: Session, post: NewPost) -> InsertResult:
    """Insert a post, reporting a URL collision as ``Duplicate``.

    Integrity errors are only treated as duplicates when a post with the
    same URL is visible after the rollback; anything else is ``Failed``.
    """
    now = _utcnow()
    post_id = _new_id()
    session.add(
        PostModel(
            id=post_id,
            created_at=now,
            updated_at=now,
            title=post.title,
            url=post.url,
            description=post.description,
            published_at=post.published_at,
            feed_id=post.feed_id,
        )
    )

    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        try:
            exists = _post_exists(session, post.url)
        except SQLAlchemyError as lookup_exc:
            return Failed(reason=str(lookup_exc))
        if exists:
            return Duplicate(url=post.url)
        return Failed(reason=str(exc.orig))
    except SQLAlchemyError as exc:
        session.rollback()
        return Failed(reason=str(exc))

    return Inserted(post_id=post_id)


def get_posts_for_user(session: Session, user_id: str, limit: int = 20) -> List[dict]:
    """Return the newest posts from the feeds ``user_id`` follows."""
    stmt = (
        select(PostModel)
        .join(FeedFollowModel, FeedFollowModel.feed_id == PostModel.feed_id)
        .where(FeedFollowModel.user_id == user_id)
        .order_by(
            PostModel.published_at.desc().nulls_last(),
            PostModel.created_at.desc(),
        )
        .limit(limit)
    )
    posts = session.execute(stmt).scalars().all()
    return [
        {
            "id": post.id,
            "title": post.title,
            "url": post.url,
            "description": post.description,
            "published_at": post.published_at,
            "feed_id": post.feed_id,
        }
        for post in posts
    ]


def get_user_by_api_key(session: Session, api_key: str) -> Optional[dict]:
    """Look up the user owning ``api_key``."""
    stmt = select(UserModel).where(UserModel.api_key == api_key)
    user = session.execute(stmt).scalar_one_or_none()
    if not user:
        return None

    return {
        "id": user.id,
        "name": user.name,
        "api_key": user.api_key,
        "created_at": user.created_at,
    }


def get_feeds(session: Session) -> List[FeedSnapshot]:
    stmt = select(FeedModel).order_by(FeedModel.created_at.asc())
    return [_to_snapshot(feed) for feed in session.execute(stmt).scalars().all()]


def get_feed_follows(session: Session, user_id: str) -> List[dict]:
    """Return the follows of ``user_id``, oldest first."""
    stmt = (
        select(FeedFollowModel)
        .where(FeedFollowModel.user_id == user_id)
        .order_by(FeedFollowModel.created_at.asc())
    )
    follows = session.execute(stmt).scalars().all()
    return [
        {
            "id": follow.id,
            "user_id": follow.user_id,
            "feed_id": follow.feed_id,
            "created_at": follow.created_at,
        }
        for follow in follows
    ]


def unfollow_feed(session: Session, user_id: str, feed_id: str) -> bool:
    """Remove the user's follow of ``feed_id``; False when there was none."""
    stmt = delete(FeedFollowModel).where(
        FeedFollowModel.user_id == user_id,
        FeedFollowModel.feed_id == feed_id,
    )
    try:
        result = session.execute(stmt)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return result.rowcount > 0
