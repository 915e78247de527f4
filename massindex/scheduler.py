"""
Parallel execution scheduling.

Each active entity type gets one coordinator thread and a pool of
loader threads running its partitions, so a run uses at most

    typesToIndexInParallel * (threadsToLoadObjects + 1)

worker threads. When that exceeds maxThreads, parallelism is reduced
(never raised) until it fits; one coordinator and one loader is the
floor.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .chunk import PartitionOutcome
from .logger import get_logger
from .partitions import Partition

logger = get_logger()

MIN_THREADS = 2


@dataclass(frozen=True)
class ThreadBudget:
    types_in_parallel: int
    loaders_per_type: int

    @property
    def total_threads(self) -> int:
        return self.types_in_parallel * (self.loaders_per_type + 1)


def compute_thread_budget(
    types_to_index_in_parallel: int,
    threads_to_load_objects: int,
    max_threads: Optional[int],
    active_types: int,
) -> ThreadBudget:
    """
    Fit the requested parallelism under the thread ceiling.

    Args:
        types_to_index_in_parallel: Requested concurrently active types
        threads_to_load_objects: Requested loader threads per active type
        max_threads: Overall ceiling (None: no ceiling)
        active_types: Types that have partitions to run
    """
    types = max(1, min(types_to_index_in_parallel, max(active_types, 1)))
    loaders = max(1, threads_to_load_objects)

    if max_threads is not None:
        ceiling = max_threads
        if ceiling < MIN_THREADS:
            logger.warning(
                "maxThreads is below the minimum of one coordinator and one loader",
                max_threads=max_threads,
                using=MIN_THREADS,
            )
            ceiling = MIN_THREADS
        while types > 1 and types * MIN_THREADS > ceiling:
            types -= 1
        loaders = max(1, min(loaders, ceiling // types - 1))

    budget = ThreadBudget(types, loaders)
    if (types, loaders) != (types_to_index_in_parallel, threads_to_load_objects):
        logger.info(
            "Adjusted indexing parallelism",
            requested_types=types_to_index_in_parallel,
            requested_loaders=threads_to_load_objects,
            max_threads=max_threads,
            types=budget.types_in_parallel,
            loaders=budget.loaders_per_type,
            total_threads=budget.total_threads,
        )
    return budget


class ParallelExecutionScheduler:
    """
    Runs partitions grouped by entity type under a ThreadBudget.

    Types are activated in order; a queued type starts only when an
    active type has all its partitions in a terminal state. Partition
    level failures come back as outcomes; any exception escaping
    run_partition is fatal: the stop event is set so other workers stop
    at their next chunk boundary, and the first such exception is
    re-raised once every worker has returned.
    """

    def __init__(self, budget: ThreadBudget, stop_event: Optional[threading.Event] = None):
        self.budget = budget
        self.stop_event = stop_event or threading.Event()
        self._count_lock = threading.Lock()
        self._active_loaders = 0
        self.peak_active_loaders = 0

    def run(
        self,
        partitions_by_type: Dict[str, Sequence[Partition]],
        run_partition: Callable[[Partition], PartitionOutcome],
    ) -> List[PartitionOutcome]:
        queued = [(name, list(parts)) for name, parts in partitions_by_type.items() if parts]
        if not queued:
            return []

        outcomes: List[PartitionOutcome] = []
        fatal: Optional[BaseException] = None
        with ThreadPoolExecutor(
            max_workers=self.budget.types_in_parallel,
            thread_name_prefix="massindex-type",
        ) as coordinators:
            futures = [
                coordinators.submit(self._run_type, name, parts, run_partition)
                for name, parts in queued
            ]
            for future in as_completed(futures):
                try:
                    outcomes.extend(future.result())
                except Exception as e:
                    self.stop_event.set()
                    fatal = fatal or e

        if fatal is not None:
            raise fatal
        return outcomes

    def _run_type(
        self,
        entity_type: str,
        partitions: List[Partition],
        run_partition: Callable[[Partition], PartitionOutcome],
    ) -> List[PartitionOutcome]:
        logger.info("Entity type activated", entity_type=entity_type, partitions=len(partitions))
        outcomes: List[PartitionOutcome] = []
        fatal: Optional[BaseException] = None

        with ThreadPoolExecutor(
            max_workers=self.budget.loaders_per_type,
            thread_name_prefix=f"massindex-{entity_type}",
        ) as loaders:
            futures = [loaders.submit(self._tracked, run_partition, p) for p in partitions]
            for future in futures:
                try:
                    outcomes.append(future.result())
                except Exception as e:
                    self.stop_event.set()
                    fatal = fatal or e

        if fatal is not None:
            raise fatal
        logger.info("Entity type finished", entity_type=entity_type)
        return outcomes

    def _tracked(self, run_partition: Callable[[Partition], PartitionOutcome], partition: Partition) -> PartitionOutcome:
        with self._count_lock:
            self._active_loaders += 1
            self.peak_active_loaders = max(self.peak_active_loaders, self._active_loaders)
        try:
            return run_partition(partition)
        finally:
            with self._count_lock:
                self._active_loaders -= 1
