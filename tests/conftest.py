from typing import Iterable, Optional, Tuple

import pytest

from rss_aggregator import db


def build_rss(items: Iterable[Tuple[str, str, Optional[str]]]) -> bytes:
    """Render (title, link, pubDate) tuples into a minimal RSS 2.0 document."""
    rendered = []
    for title, link, published in items:
        pub = f"<pubDate>{published}</pubDate>" if published else ""
        rendered.append(
            f"<item><title>{title}</title><link>{link}</link>"
            f"<description>&lt;p&gt;About {title}&lt;/p&gt;</description>{pub}</item>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel><title>Test</title>'
        "<link>https://x.test/</link><description>Test feed</description>"
        + "".join(rendered)
        + "</channel></rss>"
    ).encode("utf-8")


@pytest.fixture
def rss():
    return build_rss


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so worker threads each get their own connection."""
    engine = db.init_engine(f"sqlite:///{tmp_path / 'aggregator.db'}")
    yield db.get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def owner_id(session_factory):
    with session_factory() as session:
        return db.create_user(session, "owner")


@pytest.fixture
def make_feed(session_factory, owner_id):
    def _make(url, name=None, last_fetched_at=None):
        with session_factory() as session:
            feed = db.create_feed(session, name or url, url, owner_id)
            if last_fetched_at is not None:
                db.mark_feed_fetched(session, url, fetched_at=last_fetched_at)
                feed = db.get_feed_by_url(session, url)
        return feed

    return _make
