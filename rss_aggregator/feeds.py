"""Feed retrieval and entry normalisation."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

import feedparser
import requests
from bs4 import BeautifulSoup

from .db import DESCRIPTION_MAX_LENGTH, TITLE_MAX_LENGTH, URL_MAX_LENGTH
from .models import NormalizedEntry

logger = logging.getLogger(__name__)

# RFC 1123 with a numeric zone, e.g. "Mon, 02 Jan 2006 15:04:05 -0700".
RFC1123Z = "%a, %d %b %Y %H:%M:%S %z"

USER_AGENT = "rss-aggregator/0.1"


class FeedFetchError(Exception):
    """Raised when a feed cannot be retrieved."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url


class FeedParseError(FeedFetchError):
    """Raised when a retrieved feed document cannot be turned into entries."""


def parse_published(value: Optional[str], fmt: str = RFC1123Z) -> Optional[datetime]:
    """Parse a published-date string into UTC; empty values mean "not provided".

    Formats without a zone are taken to be UTC already.
    """
    if value is None or not value.strip():
        return None
    parsed = datetime.strptime(value.strip(), fmt)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _strip_html(raw_value: str) -> str:
    """Return text content extracted from HTML fragments."""
    soup = BeautifulSoup(raw_value, "html.parser")
    text = soup.get_text(separator=" ", strip=True)
    text = re.sub(r"\s+([.,;:!?])", r"\1", text)
    text = re.sub(r"\s{2,}", " ", text)
    return text.strip()


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit]


def download_feed(url: str, timeout: float = 10.0) -> bytes:
    """Fetch the raw feed document."""
    try:
        response = requests.get(
            url, timeout=timeout, headers={"User-Agent": USER_AGENT}
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FeedFetchError(url, str(exc)) from exc
    return response.content


def parse_feed_entries(
    url: str, content: bytes, published_format: str = RFC1123Z
) -> List[NormalizedEntry]:
    """Parse a feed document into entries, preserving source order.

    Every published date is parsed before anything is returned so that a
    single bad date rejects the whole document.
    """
    parsed = feedparser.parse(content)
    if parsed.bozo and not parsed.entries:
        reason = getattr(parsed, "bozo_exception", None) or "malformed feed"
        raise FeedParseError(url, str(reason))

    entries: List[NormalizedEntry] = []
    for item in parsed.entries:
        link = item.get("link")
        if not link:
            logger.debug("Skipping entry without link in feed %s", url)
            continue
        if len(link) > URL_MAX_LENGTH:
            logger.warning(
                "Skipping entry with link longer than %d characters in feed %s",
                URL_MAX_LENGTH,
                url,
            )
            continue

        raw_published = item.get("published")
        try:
            published = parse_published(raw_published, published_format)
        except ValueError as exc:
            raise FeedParseError(
                url, f"unparseable published time {raw_published!r}: {exc}"
            ) from exc

        description = item.get("description") or ""
        if description:
            description = _strip_html(description)

        entries.append(
            NormalizedEntry(
                title=_truncate(item.get("title") or "", TITLE_MAX_LENGTH),
                link=link,
                description=_truncate(description, DESCRIPTION_MAX_LENGTH),
                published=published,
            )
        )

    return entries


def fetch_feed_entries(
    url: str, timeout: float = 10.0, published_format: str = RFC1123Z
) -> List[NormalizedEntry]:
    """Download and parse the feed at ``url``."""
    logger.info("Fetching feed %s", url)
    content = download_feed(url, timeout=timeout)
    entries = parse_feed_entries(url, content, published_format=published_format)
    logger.info("Collected %d entries from feed %s", len(entries), url)
    return entries
