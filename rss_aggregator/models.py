"""Shared data models for rss_aggregator."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


@dataclass(frozen=True)
class FeedSnapshot:
    """A feed row as selected for one ingestion cycle."""

    id: str
    name: str
    url: str
    last_fetched_at: Optional[datetime] = None


@dataclass
class NormalizedEntry:
    """Feed item reduced to the fields persisted as a post."""

    title: str
    link: str
    description: str
    published: Optional[datetime] = None


@dataclass
class NewPost:
    """Candidate post record handed to the post store."""

    feed_id: str
    title: str
    url: str
    description: str
    published_at: Optional[datetime] = None


@dataclass(frozen=True)
class Inserted:
    post_id: str


@dataclass(frozen=True)
class Duplicate:
    url: str


@dataclass(frozen=True)
class Failed:
    reason: str


InsertResult = Union[Inserted, Duplicate, Failed]
