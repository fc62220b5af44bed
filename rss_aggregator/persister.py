"""Persist normalised entries as posts and advance the feed watermark."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

from sqlalchemy.orm import Session

from . import db
from .models import Duplicate, Failed, FeedSnapshot, NewPost, NormalizedEntry

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a post cannot be stored for a reason other than a duplicate."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


@dataclass
class PersistReport:
    feed_url: str
    inserted: int = 0
    duplicates: int = 0
    marked_fetched: bool = False


def persist_entries(
    session_factory: Callable[[], Session],
    feed: FeedSnapshot,
    entries: Sequence[NormalizedEntry],
) -> PersistReport:
    """Store ``entries`` for ``feed`` in order, then mark the feed fetched.

    Each post is committed on its own, so a hard failure part way through
    keeps the posts stored before it and leaves the watermark untouched.
    """
    report = PersistReport(feed_url=feed.url)

    with session_factory() as session:
        for entry in entries:
            result = db.insert_post(
                session,
                NewPost(
                    feed_id=feed.id,
                    title=entry.title,
                    url=entry.link,
                    description=entry.description,
                    published_at=entry.published,
                ),
            )
            if isinstance(result, Duplicate):
                report.duplicates += 1
                continue
            if isinstance(result, Failed):
                raise PersistenceError(entry.link, result.reason)
            report.inserted += 1

        report.marked_fetched = db.mark_feed_fetched(session, feed.url)

    if not report.marked_fetched:
        logger.warning("Feed %s vanished before it could be marked fetched", feed.url)

    logger.info(
        "Stored %d new posts for %s (%d already known)",
        report.inserted,
        feed.url,
        report.duplicates,
    )
    return report
