"""Scheduled ingestion of due feeds."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set

from sqlalchemy.orm import Session

from . import db
from .feeds import RFC1123Z, FeedFetchError, fetch_feed_entries
from .models import FeedSnapshot
from .persister import PersistenceError, persist_entries

logger = logging.getLogger(__name__)


@dataclass
class PollerConfig:
    """Runtime options for the ingestion loop."""

    interval: float = 60.0
    batch_size: int = 10
    concurrency: int = 10
    fetch_timeout: float = 10.0
    published_format: str = RFC1123Z


@dataclass
class FeedResult:
    """Outcome of one feed's fetch-and-persist task."""

    url: str
    ok: bool
    inserted: int = 0
    duplicates: int = 0
    error: Optional[str] = None


class FeedPoller:
    """Periodically fetches the least recently fetched feeds.

    Each tick selects ``batch_size`` feeds and hands one task per feed to a
    thread pool capped at ``concurrency`` workers. A tick never waits for its
    tasks, so slow feeds from one tick may still be running during the next;
    such feeds are not dispatched again until their task has finished.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: Optional[PollerConfig] = None,
    ):
        self.session_factory = session_factory
        self.config = config or PollerConfig()
        if self.config.batch_size <= 0:
            raise ValueError("batch_size must be positive.")
        if self.config.concurrency <= 0:
            raise ValueError("concurrency must be positive.")
        if self.config.interval <= 0:
            raise ValueError("interval must be positive.")

        self._stop = threading.Event()
        self._closed = False
        self._in_flight: Set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.concurrency,
            thread_name_prefix="feed-worker",
        )

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def process_feed(self, feed: FeedSnapshot) -> FeedResult:
        """Fetch one feed and persist its entries, containing any failure."""
        try:
            entries = fetch_feed_entries(
                feed.url,
                timeout=self.config.fetch_timeout,
                published_format=self.config.published_format,
            )
            report = persist_entries(self.session_factory, feed, entries)
        except FeedFetchError as exc:
            logger.warning("Failed to fetch feed %s: %s", feed.url, exc)
            return FeedResult(url=feed.url, ok=False, error=str(exc))
        except PersistenceError as exc:
            logger.error("Failed to store posts for feed %s: %s", feed.url, exc)
            return FeedResult(url=feed.url, ok=False, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error while processing feed %s", feed.url)
            return FeedResult(url=feed.url, ok=False, error=str(exc))

        return FeedResult(
            url=feed.url,
            ok=True,
            inserted=report.inserted,
            duplicates=report.duplicates,
        )

    def run_once(self) -> List[concurrent.futures.Future]:
        """Run a single tick and return the futures of the submitted tasks."""
        try:
            with self.session_factory() as session:
                batch = db.next_due_feeds(session, self.config.batch_size)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to select feeds to fetch; skipping this cycle")
            return []

        if not batch:
            logger.debug("No feeds due for fetching")
            return []

        with self._in_flight_lock:
            due = [feed for feed in batch if feed.url not in self._in_flight]
            self._in_flight.update(feed.url for feed in due)

        skipped = len(batch) - len(due)
        if skipped:
            logger.info(
                "Skipping %d feeds still being fetched from an earlier cycle", skipped
            )
        if not due:
            return []

        logger.info("Dispatching %d feeds for fetching", len(due))
        futures = []
        for index, feed in enumerate(due):
            try:
                futures.append(self._executor.submit(self._process_tracked, feed))
            except RuntimeError:
                self._release(pending.url for pending in due[index:])
                raise
        return futures

    def _release(self, urls: Iterable[str]) -> None:
        with self._in_flight_lock:
            self._in_flight.difference_update(urls)

    def _process_tracked(self, feed: FeedSnapshot) -> FeedResult:
        try:
            return self.process_feed(feed)
        finally:
            self._release([feed.url])

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.config.interval)
        logger.info("Feed poller loop stopped")

    def start(self) -> None:
        """Start ticking in a background thread; the first tick runs immediately."""
        if self.running:
            raise RuntimeError("Feed poller is already running.")
        if self._closed:
            raise RuntimeError("Feed poller has been stopped.")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="feed-poller", daemon=True
        )
        self._thread.start()
        logger.info(
            "Feed poller started (interval=%ss, batch_size=%d, concurrency=%d)",
            self.config.interval,
            self.config.batch_size,
            self.config.concurrency,
        )

    def stop(self, wait: bool = True) -> None:
        """Stop scheduling new ticks and let dispatched tasks finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self._closed = True
        self._executor.shutdown(wait=wait)

    def run_forever(self) -> None:
        """Block in the current thread until ``stop`` is called or interrupted."""
        self.start()
        try:
            while self.running:
                self._stop.wait(1.0)
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down feed poller")
        finally:
            self.stop()


def run_single_cycle(poller: FeedPoller) -> List[FeedResult]:
    """Run one tick and wait for every dispatched task."""
    futures = poller.run_once()
    results = [future.result() for future in concurrent.futures.as_completed(futures)]
    ok = sum(1 for result in results if result.ok)
    logger.info(
        "Cycle finished: %d feeds fetched, %d failed, %d new posts",
        ok,
        len(results) - ok,
        sum(result.inserted for result in results),
    )
    return results
