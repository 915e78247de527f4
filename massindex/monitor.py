"""
Progress monitoring.

A ProgressMonitor only observes: its return values are ignored and its
exceptions are logged, never propagated into the job.
"""

import threading
from typing import Dict, List, Optional, Tuple

from .logger import StructuredLogger, get_logger
from .partitions import Partition

logger = get_logger()


class ProgressMonitor:
    """Receives lifecycle events and counters. Every hook is optional."""

    def job_started(self, execution_id: int, restart: bool) -> None:
        pass

    def type_planned(self, entity_type: str, total_keys: int, partitions: int, already_read: int = 0) -> None:
        """already_read counts records committed by earlier runs of a restarted execution."""

    def partition_started(self, partition: Partition, next_chunk: int) -> None:
        pass

    def chunk_committed(self, partition: Partition, sequence: int, read: int, indexed: int, skipped: int) -> None:
        pass

    def partition_finished(self, partition: Partition, status: str, error: Optional[str] = None) -> None:
        pass

    def job_finished(self, execution_id: int, status: str) -> None:
        pass


class LoggingProgressMonitor(ProgressMonitor):
    """Logs progress per entity type and feeds the logger's metrics."""

    def __init__(self, structured_logger: Optional[StructuredLogger] = None):
        self.log = structured_logger or logger
        self._lock = threading.Lock()
        self._totals: Dict[str, int] = {}
        self._done: Dict[str, int] = {}

    def job_started(self, execution_id: int, restart: bool) -> None:
        self.log.info("Mass indexing restarted" if restart else "Mass indexing started", execution_id=execution_id)

    def type_planned(self, entity_type: str, total_keys: int, partitions: int, already_read: int = 0) -> None:
        with self._lock:
            self._totals[entity_type] = total_keys
            self._done[entity_type] = already_read

    def partition_started(self, partition: Partition, next_chunk: int) -> None:
        self.log.record_partition_started()
        self.log.info("Partition started", partition=partition.label, keys=partition.key_count, next_chunk=next_chunk)

    def chunk_committed(self, partition: Partition, sequence: int, read: int, indexed: int, skipped: int) -> None:
        self.log.record_chunk(partition.entity_type, read, indexed, skipped)
        with self._lock:
            done = self._done.get(partition.entity_type, 0) + read
            self._done[partition.entity_type] = done
            total = self._totals.get(partition.entity_type)
        if total:
            self.log.info(
                f"{partition.entity_type}: {done}/{total} ({done / total * 100:.1f}%)",
                partition=partition.label,
                chunk=sequence,
            )

    def partition_finished(self, partition: Partition, status: str, error: Optional[str] = None) -> None:
        if status in ("COMPLETED", "FAILED"):
            self.log.record_partition_finished(status == "COMPLETED")
        if error:
            self.log.error("Partition finished", partition=partition.label, status=status, error=error)
        else:
            self.log.info("Partition finished", partition=partition.label, status=status)

    def job_finished(self, execution_id: int, status: str) -> None:
        self.log.info("Mass indexing finished", execution_id=execution_id, status=status)
        self.log.log_metrics_summary()


class RecordingProgressMonitor(ProgressMonitor):
    """Keeps every event in memory, in order."""

    def __init__(self):
        self.events: List[Tuple] = []
        self._lock = threading.Lock()

    def _record(self, *event) -> None:
        with self._lock:
            self.events.append(event)

    def job_started(self, execution_id, restart):
        self._record("job_started", execution_id, restart)

    def type_planned(self, entity_type, total_keys, partitions, already_read=0):
        self._record("type_planned", entity_type, total_keys, partitions, already_read)

    def partition_started(self, partition, next_chunk):
        self._record("partition_started", partition.label, next_chunk)

    def chunk_committed(self, partition, sequence, read, indexed, skipped):
        self._record("chunk_committed", partition.label, sequence, read, indexed, skipped)

    def partition_finished(self, partition, status, error=None):
        self._record("partition_finished", partition.label, status)

    def job_finished(self, execution_id, status):
        self._record("job_finished", execution_id, status)

    def of_kind(self, kind: str) -> List[Tuple]:
        with self._lock:
            return [e for e in self.events if e[0] == kind]


class SafeMonitor:
    """Fans events out to monitors, isolating the job from their failures."""

    def __init__(self, monitors: List[ProgressMonitor]):
        self.monitors = list(monitors)

    def __getattr__(self, event: str):
        if event.startswith("_") or not hasattr(ProgressMonitor, event):
            raise AttributeError(event)

        def dispatch(*args, **kwargs):
            for monitor in self.monitors:
                try:
                    getattr(monitor, event)(*args, **kwargs)
                except Exception as e:
                    logger.warning("Progress monitor failed", event=event, error=str(e))
        return dispatch
