"""
Chunk processing.

Responsibilities:
- Run one partition end to end, chunk by chunk, in ascending order.
- Per chunk: load records, convert them, flush documents under the
  job-wide flush lock, then commit the checkpoint.

Non-Responsibilities:
- No scheduling across partitions (scheduler.py).
- No decisions about what a document contains (converters.py).

Invariant:
A chunk's checkpoint is committed only after its documents are flushed.
"""

import threading
from dataclasses import dataclass
from itertools import islice
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from .checkpoint import CheckpointManager, CheckpointRecord, PartitionStatus
from .config import CacheMode
from .converters import ConverterRegistry
from .errors import (
    CheckpointError, ConversionError, PartitionAbortedError, RecordLoadError,
)
from .index_writer import SerializedFlusher
from .keys import PrimaryKeyEnumerator
from .logger import get_logger
from .partitions import Chunk, Partition, PartitionPlanner
from .scope import IndexingScope, ScopedType
from .store import RecordStore

logger = get_logger()

# A chunk skipping more than this share of its records (and at least
# MIN_SKIPS_TO_ABORT of them) points at a systemic failure
MAX_SKIP_RATIO = 0.5
MIN_SKIPS_TO_ABORT = 10


@dataclass(frozen=True)
class ChunkCounts:
    read: int
    indexed: int
    skipped: int


@dataclass(frozen=True)
class PartitionOutcome:
    """
    Result of one ChunkProcessor.run call.

    status is None when the partition was not started because a stop
    was requested before it got a worker.
    """
    partition: Partition
    status: Optional[PartitionStatus]
    chunks_processed: int = 0
    error: Optional[str] = None


def batched(keys: Sequence[Any], size: int) -> Iterator[Tuple[Any, ...]]:
    iterator = iter(keys)
    while True:
        batch = tuple(islice(iterator, size))
        if not batch:
            return
        yield batch


class ChunkProcessor:
    """
    Executes partitions.

    One instance is shared by all workers of a job; run() keeps its
    state on the stack, so concurrent calls for different partitions
    are safe.
    """

    def __init__(
        self,
        scope: IndexingScope,
        store: RecordStore,
        enumerator: PrimaryKeyEnumerator,
        planner: PartitionPlanner,
        checkpoints: CheckpointManager,
        flusher: SerializedFlusher,
        converters: ConverterRegistry,
        monitor,
        entity_fetch_size: int,
        session_clear_interval: int,
        cache_mode: CacheMode = CacheMode.IGNORE,
        stop_event: Optional[threading.Event] = None,
    ):
        self.scope = scope
        self.store = store
        self.enumerator = enumerator
        self.planner = planner
        self.checkpoints = checkpoints
        self.flusher = flusher
        self.converters = converters
        self.monitor = monitor
        self.entity_fetch_size = entity_fetch_size
        self.session_clear_interval = session_clear_interval
        self.cache_mode = cache_mode
        self.stop_event = stop_event or threading.Event()

    @property
    def checkpoint_interval(self) -> int:
        return self.planner.checkpoint_interval

    def run(self, partition: Partition) -> PartitionOutcome:
        """
        Process a partition from its last checkpoint to the end.

        Raises:
            CheckpointError: checkpoint state cannot be trusted; fatal to the job
        """
        if self.stop_event.is_set():
            return PartitionOutcome(partition, None)

        record = self.checkpoints.begin(partition.id)
        self.monitor.partition_started(partition, record.next_chunk)
        scoped = self.scope.get(partition.entity_type)
        processed = 0

        try:
            keys = self._remaining_keys(scoped, partition, record)
            for chunk in self.planner.chunks(partition, keys, record.next_chunk):
                if self.stop_event.is_set():
                    self.checkpoints.abandon(partition.id)
                    logger.info("Partition stopped", partition=partition.label, next_chunk=chunk.sequence)
                    self.monitor.partition_finished(partition, PartitionStatus.ABANDONED.value)
                    return PartitionOutcome(partition, PartitionStatus.ABANDONED, processed)

                if processed:
                    self.checkpoints.resume(partition.id)
                counts = self._process_chunk(scoped, chunk)
                self.checkpoints.commit(
                    partition.id, chunk.sequence, chunk.last_key,
                    read=counts.read, processed=counts.indexed, skipped=counts.skipped,
                )
                processed += 1
                self.monitor.chunk_committed(partition, chunk.sequence, counts.read, counts.indexed, counts.skipped)

            self.checkpoints.complete(partition.id)
        except CheckpointError:
            raise
        except Exception as e:
            return self._fail(partition, e, processed)

        self.monitor.partition_finished(partition, PartitionStatus.COMPLETED.value)
        return PartitionOutcome(partition, PartitionStatus.COMPLETED, processed)

    def _fail(self, partition: Partition, error: Exception, processed: int) -> PartitionOutcome:
        message = f"{type(error).__name__}: {error}"
        logger.record_error(type(error).__name__)
        logger.error("Partition failed", partition=partition.label, error=message)
        self.checkpoints.fail(partition.id, message)
        self.monitor.partition_finished(partition, PartitionStatus.FAILED.value, message)
        return PartitionOutcome(partition, PartitionStatus.FAILED, processed, message)

    def _remaining_keys(self, scoped: ScopedType, partition: Partition, record: CheckpointRecord) -> Iterable[Any]:
        if not partition.bounded:
            # Opaque queries have no key order to seek on: re-run and skip by position
            done = min(partition.key_count, record.next_chunk * self.checkpoint_interval)
            remaining = partition.key_count - done
            if remaining <= 0:
                return ()
            return self.enumerator.enumerate(scoped, skip=done, limit=remaining)

        after = record.last_committed_key if record.has_progress else None
        return self._keyset_pages(scoped, partition, after)

    def _keyset_pages(self, scoped: ScopedType, partition: Partition, after: Any) -> Iterator[Any]:
        # One short query per chunk, so no cursor stays open across commits.
        # The key range bounds the partition, not the planned key count.
        while True:
            page = list(self.enumerator.enumerate(
                scoped,
                lower=partition.first_key,
                upper=partition.last_key,
                after=after,
                limit=self.checkpoint_interval,
            ))
            if not page:
                return
            yield from page
            after = page[-1]

    def _process_chunk(self, scoped: ScopedType, chunk: Chunk) -> ChunkCounts:
        converter = self.converters.for_type(scoped.name)
        documents: List[dict] = []
        read = skipped = 0
        since_clear = 0

        with self.store.session() as session:
            for batch in batched(chunk.keys, self.entity_fetch_size):
                records, failed = self._load(session, scoped, batch)
                read += len(batch)
                skipped += failed

                for record in records:
                    try:
                        document = converter.convert(record)
                    except Exception as e:
                        skipped += 1
                        error = e if isinstance(e, ConversionError) else ConversionError(str(e))
                        logger.record_error(type(error).__name__)
                        logger.debug("Record skipped", entity_type=scoped.name, error=str(error))
                        document = None
                    if document is not None:
                        documents.append(document)

                    if self.cache_mode is CacheMode.IGNORE and record in session:
                        session.expunge(record)

                # Records of a batch stay attached until all of them are converted
                since_clear += len(records)
                if since_clear >= self.session_clear_interval:
                    session.expunge_all()
                    since_clear = 0

        if skipped >= MIN_SKIPS_TO_ABORT and skipped > read * MAX_SKIP_RATIO:
            raise PartitionAbortedError(
                f"Chunk {chunk.sequence} of {chunk.partition.label} skipped {skipped} of {read} records"
            )

        self.flusher.flush(documents)
        return ChunkCounts(read=read, indexed=len(documents), skipped=skipped)

    def _load(self, session: Session, scoped: ScopedType, keys: Sequence[Any]) -> Tuple[List[Any], int]:
        """Load a batch; on a non-systemic failure, isolate bad records one by one."""
        try:
            records, missing = self.store.load_records(session, scoped.entity, keys, self.cache_mode)
        except RecordLoadError as e:
            if e.systemic:
                raise PartitionAbortedError(str(e)) from e
            logger.warning("Batch load failed, loading records one by one", entity_type=scoped.name, error=str(e))
            session.rollback()
            return self._load_one_by_one(session, scoped, keys)

        if missing:
            logger.debug("Records vanished since planning", entity_type=scoped.name, missing=len(missing))
        return records, 0

    def _load_one_by_one(self, session: Session, scoped: ScopedType, keys: Sequence[Any]) -> Tuple[List[Any], int]:
        records: List[Any] = []
        failed = 0
        for key in keys:
            try:
                record = self.store.load_record(session, scoped.entity, key)
            except RecordLoadError as e:
                if e.systemic:
                    raise PartitionAbortedError(str(e)) from e
                failed += 1
                logger.record_error(type(e).__name__)
                session.rollback()
                continue
            if record is not None:
                records.append(record)
        return records, failed
