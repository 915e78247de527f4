"""
Mass indexing job.

Sequencing of one execution, strictly in this order:
    purge (optional) -> optimize (optional) -> index every partition
    -> optimize (optional, only once every partition is COMPLETED)

Purge and the first optimize are recorded as done steps, so a restart
never repeats them; the partition plan is persisted on first run and
reused by every restart.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from .checkpoint import (
    OPTIMIZE_AFTER_PURGE_STEP, OPTIMIZE_ON_FINISH_STEP, PURGE_STEP,
    CheckpointManager, CheckpointRecord, ExecutionState, JobStatus, PartitionStatus,
)
from .chunk import ChunkProcessor
from .config import MassIndexingParameters
from .converters import ConverterRegistry
from .errors import CheckpointError, ConfigurationError, MassIndexingError
from .index_writer import IndexWriter, SerializedFlusher
from .keys import PrimaryKeyEnumerator
from .logger import get_logger
from .monitor import LoggingProgressMonitor, ProgressMonitor, SafeMonitor
from .partitions import Partition, PartitionPlanner
from .scheduler import ParallelExecutionScheduler, compute_thread_budget
from .scope import IndexingScope, Restriction, resolve_scope
from .store import EntityRegistry, HandleRegistry, RecordStore

logger = get_logger()


@dataclass(frozen=True)
class PartitionReport:
    entity_type: str
    index: int
    key_count: int
    status: PartitionStatus
    last_committed_chunk: int
    read: int
    indexed: int
    skipped: int
    error: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.entity_type}#{self.index}"


@dataclass
class TypeReport:
    entity_type: str
    partitions: int = 0
    keys: int = 0
    read: int = 0
    indexed: int = 0
    skipped: int = 0


@dataclass
class JobReport:
    """Final (or current) state of an execution."""
    execution_id: int
    status: JobStatus
    partitions: List[PartitionReport] = field(default_factory=list)
    error: Optional[str] = None

    def by_type(self) -> Dict[str, TypeReport]:
        types: Dict[str, TypeReport] = {}
        for p in self.partitions:
            report = types.setdefault(p.entity_type, TypeReport(p.entity_type))
            report.partitions += 1
            report.keys += p.key_count
            report.read += p.read
            report.indexed += p.indexed
            report.skipped += p.skipped
        return types

    @property
    def read(self) -> int:
        return sum(p.read for p in self.partitions)

    @property
    def indexed(self) -> int:
        return sum(p.indexed for p in self.partitions)

    @property
    def skipped(self) -> int:
        return sum(p.skipped for p in self.partitions)


class MassIndexingJob:
    """
    Rebuilds the search index of the in-scope entity types.

    Args:
        parameters: Validated job parameters
        entities: Known entity types
        handles: Record store handles; resolved with the
            entityManagerFactoryReference/Namespace parameters
        checkpoints: Durable job state
        writer: The index being rebuilt
        converters: Record -> document conversion per type
        restrictions: Per-type restrictions, on top of the job-wide
            customQueryHQL / customQueryCriteria shorthands
        monitors: Extra progress monitors
        flush_retries: Retry budget of one flush
        flush_retry_delay: Initial backoff of flush retries, in seconds
    """

    def __init__(
        self,
        parameters: MassIndexingParameters,
        entities: EntityRegistry,
        handles: HandleRegistry,
        checkpoints: CheckpointManager,
        writer: IndexWriter,
        converters: Optional[ConverterRegistry] = None,
        restrictions: Optional[Mapping[str, Restriction]] = None,
        monitors: Optional[Iterable[ProgressMonitor]] = None,
        flush_retries: int = 3,
        flush_retry_delay: float = 0.5,
    ):
        self.parameters = parameters
        self.entities = entities
        self.handles = handles
        self.checkpoints = checkpoints
        self.writer = writer
        self.converters = converters or ConverterRegistry()
        self.restrictions = dict(restrictions or {})
        self.monitor = SafeMonitor([LoggingProgressMonitor()] + list(monitors or []))
        self.flusher = SerializedFlusher(writer, max_retries=flush_retries, base_delay=flush_retry_delay)
        self._stop_event = threading.Event()

    def start(self) -> JobReport:
        """
        Start a new execution.

        Raises:
            ScopeConfigurationError, ConfigurationError: before any work starts
        """
        scope = self._resolve_scope()
        store = self._resolve_store()
        execution_id = self.checkpoints.create_execution(self.parameters)
        return self._execute(execution_id, scope, store, restart=False)

    def restart(self, execution_id: int) -> JobReport:
        """
        Resume an execution that failed, was stopped or crashed.

        COMPLETED partitions are skipped; every other partition resumes
        after its last committed chunk.
        """
        scope = self._resolve_scope()
        store = self._resolve_store()
        state = self.checkpoints.get_execution(execution_id)
        if tuple(scope.names) != tuple(dict.fromkeys(state.entity_types)):
            raise ConfigurationError(
                f"Execution {execution_id} indexed {', '.join(state.entity_types)}; "
                f"cannot restart it with {', '.join(scope.names)}"
            )
        self.checkpoints.begin_restart(execution_id)
        return self._execute(execution_id, scope, store, restart=True)

    def stop(self) -> None:
        """Let in-flight chunks finish and checkpoint; start no new chunk."""
        logger.info("Stop requested")
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def report(self, execution_id: int) -> JobReport:
        return build_report(self.checkpoints, execution_id)

    def _resolve_scope(self) -> IndexingScope:
        return resolve_scope(
            self.parameters.entity_types,
            self.entities,
            restrictions=self.restrictions,
            hql=self.parameters.custom_query_hql,
            criteria=self.parameters.custom_query_criteria,
            tenant_id=self.parameters.tenant_id,
        )

    def _resolve_store(self) -> RecordStore:
        return self.handles.resolve(
            self.parameters.entity_manager_factory_reference,
            self.parameters.entity_manager_factory_namespace,
        )

    def _execute(self, execution_id: int, scope: IndexingScope, store: RecordStore, restart: bool) -> JobReport:
        self._stop_event.clear()
        self.monitor.job_started(execution_id, restart)
        self.checkpoints.set_job_status(execution_id, JobStatus.STARTED)

        params = self.parameters
        enumerator = PrimaryKeyEnumerator(store, params.id_fetch_size, params.max_results_per_entity)
        planner = PartitionPlanner(enumerator, params.rows_per_partition, params.checkpoint_interval)

        try:
            state = self.checkpoints.get_execution(execution_id)
            self._before_indexing(state, scope)
            partitions = self._partition_plan(state, scope, planner)
            self._index(execution_id, scope, store, enumerator, planner, partitions)
        except CheckpointError as e:
            return self._finish(execution_id, JobStatus.FAILED, f"Checkpoint state lost: {e}")
        except MassIndexingError as e:
            return self._finish(execution_id, JobStatus.FAILED, f"{type(e).__name__}: {e}")

        statuses = [r.status for r in self.checkpoints.checkpoints(execution_id).values()]
        if any(s is PartitionStatus.FAILED for s in statuses):
            return self._finish(execution_id, JobStatus.FAILED, "One or more partitions failed")
        if not all(s is PartitionStatus.COMPLETED for s in statuses):
            return self._finish(execution_id, JobStatus.ABANDONED)

        try:
            self._after_indexing(execution_id)
        except MassIndexingError as e:
            return self._finish(execution_id, JobStatus.FAILED, f"{type(e).__name__}: {e}")
        return self._finish(execution_id, JobStatus.COMPLETED)

    def _before_indexing(self, state: ExecutionState, scope: IndexingScope) -> None:
        params = self.parameters
        if params.purge_all_on_start and not state.purge_done:
            logger.info("Purging index", entity_types=list(scope.names))
            self.writer.purge(list(scope.names))
            self.checkpoints.mark_step_done(state.id, PURGE_STEP)

            if params.optimize_after_purge and not state.optimize_after_purge_done:
                logger.info("Optimizing index after purge")
                self.writer.optimize()
                self.checkpoints.mark_step_done(state.id, OPTIMIZE_AFTER_PURGE_STEP)

    def _partition_plan(self, state: ExecutionState, scope: IndexingScope, planner: PartitionPlanner) -> List[Partition]:
        if state.planned:
            partitions = self.checkpoints.load_plan(state.id)
            logger.info("Reusing partition plan", execution_id=state.id, partitions=len(partitions))
        else:
            partitions = self.checkpoints.save_plan(state.id, planner.plan(scope))

        records = self.checkpoints.checkpoints(state.id)
        for name in scope.names:
            of_type = [p for p in partitions if p.entity_type == name]
            self.monitor.type_planned(
                name,
                sum(p.key_count for p in of_type),
                len(of_type),
                already_read=sum(records[p.id].read_count for p in of_type),
            )
        return partitions

    def _index(
        self,
        execution_id: int,
        scope: IndexingScope,
        store: RecordStore,
        enumerator: PrimaryKeyEnumerator,
        planner: PartitionPlanner,
        partitions: List[Partition],
    ) -> None:
        params = self.parameters
        records: Dict[int, CheckpointRecord] = self.checkpoints.checkpoints(execution_id)
        pending: Dict[str, List[Partition]] = {name: [] for name in scope.names}
        for partition in partitions:
            if records[partition.id].status is PartitionStatus.COMPLETED:
                continue
            pending[partition.entity_type].append(partition)

        skipped = len(partitions) - sum(len(p) for p in pending.values())
        if skipped:
            logger.info("Skipping completed partitions", count=skipped)

        budget = compute_thread_budget(
            params.types_to_index_in_parallel,
            params.threads_to_load_objects,
            params.max_threads if params.max_threads is not None else len(partitions),
            active_types=sum(1 for p in pending.values() if p),
        )
        processor = ChunkProcessor(
            scope=scope,
            store=store,
            enumerator=enumerator,
            planner=planner,
            checkpoints=self.checkpoints,
            flusher=self.flusher,
            converters=self.converters,
            monitor=self.monitor,
            entity_fetch_size=params.entity_fetch_size,
            session_clear_interval=params.session_clear_interval,
            cache_mode=params.cache_mode,
            stop_event=self._stop_event,
        )
        scheduler = ParallelExecutionScheduler(budget, self._stop_event)
        scheduler.run(pending, processor.run)

    def _after_indexing(self, execution_id: int) -> None:
        state = self.checkpoints.get_execution(execution_id)
        if self.parameters.optimize_on_finish and not state.optimize_on_finish_done:
            logger.info("Optimizing index after indexing")
            self.writer.optimize()
            self.checkpoints.mark_step_done(execution_id, OPTIMIZE_ON_FINISH_STEP)

    def _finish(self, execution_id: int, status: JobStatus, error: Optional[str] = None) -> JobReport:
        if error:
            logger.error("Mass indexing failed", execution_id=execution_id, error=error)
        try:
            self.checkpoints.set_job_status(execution_id, status, error)
        except CheckpointError as e:
            logger.critical("Could not record job status", execution_id=execution_id, error=str(e))
        self.monitor.job_finished(execution_id, status.value)
        return _safe_report(self.checkpoints, execution_id, status, error)


def build_report(checkpoints: CheckpointManager, execution_id: int) -> JobReport:
    state = checkpoints.get_execution(execution_id)
    records = checkpoints.checkpoints(execution_id)
    partitions = [
        PartitionReport(
            entity_type=p.entity_type,
            index=p.index,
            key_count=p.key_count,
            status=records[p.id].status,
            last_committed_chunk=records[p.id].last_committed_chunk,
            read=records[p.id].read_count,
            indexed=records[p.id].processed_count,
            skipped=records[p.id].skip_count,
            error=records[p.id].error,
        )
        for p in checkpoints.load_plan(execution_id)
    ]
    return JobReport(execution_id, state.status, partitions, state.error)


def _safe_report(
    checkpoints: CheckpointManager, execution_id: int, status: JobStatus, error: Optional[str]
) -> JobReport:
    # The checkpoint database itself may be what failed
    try:
        report = build_report(checkpoints, execution_id)
    except CheckpointError:
        return JobReport(execution_id, status, [], error)
    report.status = status
    report.error = error
    return report
