"""
Pytest configuration and shared fixtures.
"""

import pytest
from datetime import datetime

from sqlalchemy import insert

from massindex.checkpoint import CheckpointManager
from massindex.config import MassIndexingParameters
from massindex.database import create_database_engine, init_database, sqlite_url
from massindex.index_writer import InMemoryIndexWriter
from massindex.keys import PrimaryKeyEnumerator
from massindex.logger import get_logger
from massindex.monitor import RecordingProgressMonitor
from massindex.store import EntityRegistry, HandleRegistry, RecordStore

from sample_models import Author, Base, Book


def populate(store: RecordStore, books: int = 0, authors: int = 0, tenant_of=None) -> None:
    """Insert Book rows with ids 1..books and Author rows with ids 1..authors."""
    with store.engine.begin() as connection:
        if books:
            connection.execute(insert(Book), [
                {
                    "id": i,
                    "title": f"Book {i}",
                    "tenant_id": tenant_of(i) if tenant_of else None,
                    "pages": 100 + i,
                    "published_at": datetime(2020, 1, 1),
                }
                for i in range(1, books + 1)
            ])
        if authors:
            connection.execute(insert(Author), [
                {"id": i, "name": f"Author {i}"} for i in range(1, authors + 1)
            ])


@pytest.fixture(autouse=True)
def clean_metrics():
    """Start each test with fresh logger metrics."""
    get_logger().reset_metrics()
    yield


@pytest.fixture
def record_store(tmp_path) -> RecordStore:
    """Empty record store with the sample schema."""
    engine = create_database_engine(sqlite_url(tmp_path / "records.db"))
    Base.metadata.create_all(engine)
    store = RecordStore(engine, name="default")
    yield store
    engine.dispose()


@pytest.fixture
def checkpoint_engine(tmp_path):
    """Checkpoint database, separate from the record store."""
    engine = init_database(tmp_path / "checkpoints.db")
    yield engine
    engine.dispose()


@pytest.fixture
def checkpoints(checkpoint_engine) -> CheckpointManager:
    return CheckpointManager(checkpoint_engine)


@pytest.fixture
def entities() -> EntityRegistry:
    return EntityRegistry.from_base(Base)


@pytest.fixture
def handles(record_store) -> HandleRegistry:
    registry = HandleRegistry()
    registry.register("default", record_store)
    return registry


@pytest.fixture
def enumerator(record_store) -> PrimaryKeyEnumerator:
    return PrimaryKeyEnumerator(record_store, fetch_size=100)


@pytest.fixture
def writer() -> InMemoryIndexWriter:
    return InMemoryIndexWriter()


@pytest.fixture
def recorder() -> RecordingProgressMonitor:
    return RecordingProgressMonitor()


@pytest.fixture
def small_params():
    """Parameters sized for a few hundred records."""
    def make(entity_types=("Book",), **overrides):
        values = dict(
            entity_types=list(entity_types),
            rows_per_partition=100,
            checkpoint_interval=10,
            max_threads=2,
        )
        values.update(overrides)
        return MassIndexingParameters(**values)
    return make


@pytest.fixture
def populate_store(record_store):
    """populate() bound to the record_store fixture."""
    def fill(**kwargs):
        populate(record_store, **kwargs)
    return fill
