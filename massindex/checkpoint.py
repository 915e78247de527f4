"""
Checkpoint management.

Owns every durable piece of job state: executions, their step flags,
the partition plan and per-partition checkpoints. A chunk commit is a
single transaction; a crash before it leaves the previous checkpoint
intact, so chunks are re-executed at least once and never skipped.

Partition state machine:
    PLANNED -> RUNNING -> (CHECKPOINTED -> RUNNING)* -> COMPLETED
    RUNNING -> CHECKPOINTED is commit(); CHECKPOINTED -> RUNNING is resume(),
    taken before every chunk after the first of a run
    RUNNING / CHECKPOINTED -> FAILED
    PLANNED / RUNNING / CHECKPOINTED -> ABANDONED
    FAILED / ABANDONED / CHECKPOINTED / stale RUNNING -> RUNNING  (restart)
"""

import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .config import MassIndexingParameters
from .database import JobExecutionRow, PartitionRow, get_session_factory
from .errors import CheckpointError, CheckpointPersistError, IllegalStateTransitionError
from .logger import get_logger
from .partitions import Partition

logger = get_logger()


class PartitionStatus(Enum):
    PLANNED = "PLANNED"
    RUNNING = "RUNNING"
    CHECKPOINTED = "CHECKPOINTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"

    @property
    def is_terminal(self) -> bool:
        return self in (PartitionStatus.COMPLETED, PartitionStatus.FAILED, PartitionStatus.ABANDONED)


class JobStatus(Enum):
    STARTING = "STARTING"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"

    @property
    def is_restartable(self) -> bool:
        return self in (JobStatus.FAILED, JobStatus.ABANDONED, JobStatus.STARTED, JobStatus.STARTING)


_TRANSITIONS = {
    PartitionStatus.PLANNED: {PartitionStatus.RUNNING, PartitionStatus.ABANDONED},
    PartitionStatus.RUNNING: {
        PartitionStatus.CHECKPOINTED, PartitionStatus.COMPLETED,
        PartitionStatus.FAILED, PartitionStatus.ABANDONED,
    },
    PartitionStatus.CHECKPOINTED: {
        PartitionStatus.RUNNING, PartitionStatus.COMPLETED,
        PartitionStatus.FAILED, PartitionStatus.ABANDONED,
    },
    PartitionStatus.FAILED: {PartitionStatus.RUNNING},
    PartitionStatus.ABANDONED: {PartitionStatus.RUNNING},
    PartitionStatus.COMPLETED: set(),
}

# Statuses from which a partition (re)starts running
_STARTABLE = {
    PartitionStatus.PLANNED,
    PartitionStatus.CHECKPOINTED,
    PartitionStatus.FAILED,
    PartitionStatus.ABANDONED,
    PartitionStatus.RUNNING,  # left behind by a crashed process
}

PURGE_STEP = "purge_done"
OPTIMIZE_AFTER_PURGE_STEP = "optimize_after_purge_done"
OPTIMIZE_ON_FINISH_STEP = "optimize_on_finish_done"
_STEPS = {PURGE_STEP, OPTIMIZE_AFTER_PURGE_STEP, OPTIMIZE_ON_FINISH_STEP}


@dataclass(frozen=True)
class CheckpointRecord:
    """Durable progress of one partition."""
    partition_id: int
    status: PartitionStatus
    last_committed_chunk: int
    last_committed_key: Any
    processed_count: int
    read_count: int
    skip_count: int
    error: Optional[str] = None

    @property
    def next_chunk(self) -> int:
        return self.last_committed_chunk + 1

    @property
    def has_progress(self) -> bool:
        return self.last_committed_chunk >= 0


@dataclass(frozen=True)
class ExecutionState:
    """Durable state of one job execution."""
    id: int
    status: JobStatus
    entity_types: Tuple[str, ...]
    parameters: Dict[str, str]
    purge_done: bool
    optimize_after_purge_done: bool
    optimize_on_finish_done: bool
    planned: bool
    restart_count: int
    error: Optional[str] = None


def encode_key(key: Any) -> Optional[str]:
    return None if key is None else json.dumps(key)


def decode_key(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


class CheckpointManager:
    """
    Persists job executions, partition plans and checkpoints.

    Args:
        engine: Engine of the checkpoint database (see database.init_database)
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = get_session_factory(engine)
        # SQLite allows a single writer; serialize every access
        self._lock = threading.RLock()

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        with self._lock:
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise CheckpointPersistError(f"Checkpoint database write failed: {e}") from e
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # Executions

    def create_execution(self, parameters: MassIndexingParameters) -> int:
        with self._transaction() as session:
            row = JobExecutionRow(
                status=JobStatus.STARTING.value,
                parameters=json.dumps(parameters.to_mapping(), sort_keys=True),
                entity_types=",".join(parameters.entity_types),
            )
            session.add(row)
            session.flush()
            execution_id = row.id
        logger.info("Created job execution", execution_id=execution_id)
        return execution_id

    def get_execution(self, execution_id: int) -> ExecutionState:
        with self._transaction() as session:
            return _execution_state(self._execution_row(session, execution_id))

    def list_executions(self) -> List[ExecutionState]:
        with self._transaction() as session:
            rows = session.query(JobExecutionRow).order_by(JobExecutionRow.id).all()
            return [_execution_state(row) for row in rows]

    def set_job_status(self, execution_id: int, status: JobStatus, error: Optional[str] = None) -> None:
        with self._transaction() as session:
            row = self._execution_row(session, execution_id)
            row.status = status.value
            row.error = error

    def begin_restart(self, execution_id: int) -> ExecutionState:
        with self._transaction() as session:
            row = self._execution_row(session, execution_id)
            status = JobStatus(row.status)
            if not status.is_restartable:
                raise IllegalStateTransitionError(
                    f"Execution {execution_id} is {status.value} and cannot be restarted"
                )
            row.restart_count += 1
            row.status = JobStatus.STARTING.value
            row.error = None
            session.flush()
            return _execution_state(row)

    def mark_step_done(self, execution_id: int, step: str) -> None:
        if step not in _STEPS:
            raise CheckpointError(f"Unknown job step {step!r}")
        with self._transaction() as session:
            setattr(self._execution_row(session, execution_id), step, True)

    @staticmethod
    def _execution_row(session, execution_id: int) -> JobExecutionRow:
        row = session.get(JobExecutionRow, execution_id)
        if row is None:
            raise CheckpointError(f"Unknown job execution {execution_id}")
        return row

    # Partition plan

    def save_plan(self, execution_id: int, plan: Dict[str, Sequence[Partition]]) -> List[Partition]:
        """Persist a partition plan atomically and return partitions with ids."""
        saved: List[Tuple[PartitionRow, Partition]] = []
        with self._transaction() as session:
            execution = self._execution_row(session, execution_id)
            if execution.planned:
                raise CheckpointError(f"Execution {execution_id} already has a partition plan")
            for partitions in plan.values():
                for partition in partitions:
                    row = PartitionRow(
                        execution_id=execution_id,
                        entity_type=partition.entity_type,
                        partition_index=partition.index,
                        first_key=encode_key(partition.first_key),
                        last_key=encode_key(partition.last_key),
                        key_count=partition.key_count,
                        bounded=partition.bounded,
                        status=PartitionStatus.PLANNED.value,
                    )
                    session.add(row)
                    saved.append((row, partition))
            execution.planned = True
            session.flush()
            return [partition.with_id(row.id) for row, partition in saved]

    def load_plan(self, execution_id: int) -> List[Partition]:
        """Return the persisted plan in scope order, then partition index."""
        with self._transaction() as session:
            execution = self._execution_row(session, execution_id)
            order = {name: i for i, name in enumerate(execution.entity_types.split(","))}
            rows = session.query(PartitionRow).filter_by(execution_id=execution_id).all()
            rows.sort(key=lambda r: (order.get(r.entity_type, len(order)), r.partition_index))
            return [_partition(row) for row in rows]

    # Checkpoints

    def checkpoint(self, partition_id: int) -> CheckpointRecord:
        with self._transaction() as session:
            return _record(self._partition_row(session, partition_id))

    def checkpoints(self, execution_id: int) -> Dict[int, CheckpointRecord]:
        with self._transaction() as session:
            rows = session.query(PartitionRow).filter_by(execution_id=execution_id).all()
            return {row.id: _record(row) for row in rows}

    def begin(self, partition_id: int) -> CheckpointRecord:
        """Move a partition to RUNNING and return where it resumes."""
        with self._transaction() as session:
            row = self._partition_row(session, partition_id)
            current = PartitionStatus(row.status)
            if current not in _STARTABLE:
                raise IllegalStateTransitionError(
                    f"Partition {partition_id} is {current.value} and cannot start"
                )
            row.status = PartitionStatus.RUNNING.value
            row.error = None
            return _record(row)

    def resume(self, partition_id: int) -> CheckpointRecord:
        """Move a CHECKPOINTED partition back to RUNNING before its next chunk."""
        with self._transaction() as session:
            row = self._partition_row(session, partition_id)
            if row.status != PartitionStatus.CHECKPOINTED.value:
                raise IllegalStateTransitionError(
                    f"Partition {partition_id} is {row.status}; only a CHECKPOINTED partition resumes"
                )
            row.status = PartitionStatus.RUNNING.value
            return _record(row)

    def commit(
        self,
        partition_id: int,
        chunk_sequence: int,
        last_key: Any,
        read: int,
        processed: int,
        skipped: int,
    ) -> CheckpointRecord:
        """
        Record a chunk as fully committed.

        Only a RUNNING partition commits; call resume() between chunks.
        Counts are deltas for this chunk and are added to the cumulative
        totals. The chunk must be the one right after the last committed.
        """
        with self._transaction() as session:
            row = self._partition_row(session, partition_id)
            if chunk_sequence != row.last_committed_chunk + 1:
                raise IllegalStateTransitionError(
                    f"Partition {partition_id}: chunk {chunk_sequence} does not follow "
                    f"committed chunk {row.last_committed_chunk}"
                )
            self._transition(row, PartitionStatus.CHECKPOINTED)
            row.last_committed_chunk = chunk_sequence
            row.last_committed_key = encode_key(last_key)
            row.read_count += read
            row.processed_count += processed
            row.skip_count += skipped
            return _record(row)

    def complete(self, partition_id: int) -> CheckpointRecord:
        return self._set_status(partition_id, PartitionStatus.COMPLETED)

    def fail(self, partition_id: int, error: str) -> CheckpointRecord:
        return self._set_status(partition_id, PartitionStatus.FAILED, error)

    def abandon(self, partition_id: int) -> CheckpointRecord:
        return self._set_status(partition_id, PartitionStatus.ABANDONED)

    def _set_status(self, partition_id: int, status: PartitionStatus, error: Optional[str] = None) -> CheckpointRecord:
        with self._transaction() as session:
            row = self._partition_row(session, partition_id)
            self._transition(row, status)
            row.error = error
            return _record(row)

    @staticmethod
    def _transition(row: PartitionRow, target: PartitionStatus) -> None:
        current = PartitionStatus(row.status)
        if target not in _TRANSITIONS[current]:
            raise IllegalStateTransitionError(
                f"Partition {row.id} cannot move from {current.value} to {target.value}"
            )
        row.status = target.value

    @staticmethod
    def _partition_row(session, partition_id: int) -> PartitionRow:
        row = session.get(PartitionRow, partition_id)
        if row is None:
            raise CheckpointError(f"Unknown partition {partition_id}")
        return row


def _execution_state(row: JobExecutionRow) -> ExecutionState:
    return ExecutionState(
        id=row.id,
        status=JobStatus(row.status),
        entity_types=tuple(t for t in row.entity_types.split(",") if t),
        parameters=json.loads(row.parameters),
        purge_done=bool(row.purge_done),
        optimize_after_purge_done=bool(row.optimize_after_purge_done),
        optimize_on_finish_done=bool(row.optimize_on_finish_done),
        planned=bool(row.planned),
        restart_count=row.restart_count or 0,
        error=row.error,
    )


def _partition(row: PartitionRow) -> Partition:
    return Partition(
        entity_type=row.entity_type,
        index=row.partition_index,
        first_key=decode_key(row.first_key),
        last_key=decode_key(row.last_key),
        key_count=row.key_count,
        bounded=bool(row.bounded),
        id=row.id,
    )


def _record(row: PartitionRow) -> CheckpointRecord:
    return CheckpointRecord(
        partition_id=row.id,
        status=PartitionStatus(row.status),
        last_committed_chunk=row.last_committed_chunk,
        last_committed_key=decode_key(row.last_committed_key),
        processed_count=row.processed_count,
        read_count=row.read_count,
        skip_count=row.skip_count,
        error=row.error,
    )
