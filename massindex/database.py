"""
Checkpoint database schema and connection management.

Job executions, their partition plans and per-partition checkpoints
are stored with SQLAlchemy, by default in a SQLite file kept apart
from the record store being indexed.
"""

from datetime import datetime
from pathlib import Path
from typing import Union

from sqlalchemy import (
    create_engine, Boolean, Column, DateTime, ForeignKey, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class JobExecutionRow(Base):
    """One run (and its restarts) of the mass indexing job."""

    __tablename__ = "job_executions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    status = Column(String, nullable=False)
    parameters = Column(Text, nullable=False)  # JSON of job-parameter strings
    entity_types = Column(Text, nullable=False)  # comma-separated, scope order
    purge_done = Column(Boolean, nullable=False, default=False)
    optimize_after_purge_done = Column(Boolean, nullable=False, default=False)
    planned = Column(Boolean, nullable=False, default=False)
    optimize_on_finish_done = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    restart_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


class PartitionRow(Base):
    """A planned partition together with its checkpoint."""

    __tablename__ = "partitions"
    __table_args__ = (
        UniqueConstraint("execution_id", "entity_type", "partition_index"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    execution_id = Column(Integer, ForeignKey("job_executions.id"), nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    partition_index = Column(Integer, nullable=False)
    first_key = Column(Text, nullable=False)  # JSON-encoded primary key
    last_key = Column(Text, nullable=False)
    key_count = Column(Integer, nullable=False)
    bounded = Column(Boolean, nullable=False, default=True)  # False for opaque-query partitions
    status = Column(String, nullable=False)
    last_committed_chunk = Column(Integer, nullable=False, default=-1)
    last_committed_key = Column(Text, nullable=True)
    processed_count = Column(Integer, nullable=False, default=0)
    read_count = Column(Integer, nullable=False, default=0)
    skip_count = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


def create_database_engine(url: str) -> Engine:
    """
    Create an engine usable from several worker threads.

    Args:
        url: SQLAlchemy database URL
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def init_database(target: Union[str, Path]) -> Engine:
    """
    Initialize the checkpoint database and create tables.

    Args:
        target: SQLAlchemy URL, or path to a SQLite database file

    Returns:
        Engine bound to the database
    """
    if isinstance(target, Path):
        target.parent.mkdir(parents=True, exist_ok=True)
        target = sqlite_url(target)
    engine = create_database_engine(target)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine):
    """
    Get a session factory bound to an engine.

    Returns:
        SQLAlchemy sessionmaker
    """
    return sessionmaker(bind=engine, expire_on_commit=False)
