"""Shared fixtures for Price Harvester tests."""

import tempfile
from pathlib import Path
from uuid import UUID

import pytest
from sqlalchemy.orm import Session

from price_harvester.core.enums import RunTrigger
from price_harvester.core.schema import Feed, FeedRun, Retailer
from price_harvester.db.engine import Database
from price_harvester.db.repositories import FeedRepository, FeedRunRepository, RetailerRepository
from price_harvester.ingestion.notifications import FeedEvent, NotificationEmitter
from price_harvester.ingestion.queue import EnqueuedRun, WorkQueue


class FakeQueue(WorkQueue):
    """In-memory work queue that refuses duplicate job ids like arq does."""

    def __init__(self) -> None:
        self.jobs: dict[str, EnqueuedRun] = {}
        self.fail_enqueue = False

    async def enqueue(self, feed_id: UUID, trigger: RunTrigger, job_id: str) -> EnqueuedRun:
        if self.fail_enqueue:
            raise ConnectionError("redis unavailable")
        if job_id in self.jobs:
            return EnqueuedRun(feed_id=feed_id, trigger=trigger, job_id=job_id, enqueued=False)
        run = EnqueuedRun(feed_id=feed_id, trigger=trigger, job_id=job_id)
        self.jobs[job_id] = run
        return run

    async def has_pending(self, feed_id: UUID, trigger: RunTrigger | None = None) -> bool:
        return any(
            run.feed_id == feed_id and (trigger is None or run.trigger == trigger)
            for run in self.jobs.values()
        )


class FakeEmitter(NotificationEmitter):
    """Collects emitted events."""

    def __init__(self) -> None:
        self.events: list[FeedEvent] = []

    async def emit(self, event: FeedEvent) -> None:
        self.events.append(event)

    @property
    def kinds(self) -> list:
        return [e.kind for e in self.events]


@pytest.fixture
def temp_db_path():
    """Create a temporary database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.db"


@pytest.fixture
def database(temp_db_path):
    """Create a test database client with all tables."""
    database = Database(f"sqlite:///{temp_db_path}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def session(database):
    """Create a database session for testing."""
    with database.session() as session:
        yield session


@pytest.fixture
def retailer(session: Session) -> Retailer:
    """A committed retailer."""
    retailer = RetailerRepository(session).create(Retailer(name="Acme Ammo"))
    session.commit()
    return retailer


@pytest.fixture
def make_feed(session: Session, retailer: Retailer):
    """Factory for committed feeds of the test retailer."""

    def _make(name: str = "acme-daily", **overrides) -> Feed:
        fields = {"url": "https://feeds.acme-ammo.com/products.csv"}
        fields.update(overrides)
        feed = FeedRepository(session).create(Feed(name=name, retailer_id=retailer.id, **fields))
        session.commit()
        return feed

    return _make


@pytest.fixture
def feed(make_feed) -> Feed:
    """A committed URL feed."""
    return make_feed()


@pytest.fixture
def run(session: Session, feed: Feed) -> FeedRun:
    """A committed RUNNING run of the test feed."""
    run = FeedRunRepository(session).create(FeedRun(feed_id=feed.id))
    session.commit()
    return run


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def emitter() -> FakeEmitter:
    return FakeEmitter()
