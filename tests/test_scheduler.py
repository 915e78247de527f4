"""
Tests for thread budgeting and parallel partition execution.
"""

import threading
import time

import pytest

from massindex.chunk import PartitionOutcome
from massindex.checkpoint import PartitionStatus
from massindex.partitions import Partition
from massindex.scheduler import ParallelExecutionScheduler, ThreadBudget, compute_thread_budget


def partitions(entity_type, count):
    return [Partition(entity_type, i, i, i, 1, id=i) for i in range(count)]


class TestComputeThreadBudget:

    def test_no_ceiling_keeps_request(self):
        budget = compute_thread_budget(1, 6, None, active_types=3)
        assert (budget.types_in_parallel, budget.loaders_per_type) == (1, 6)
        assert budget.total_threads == 7

    def test_loaders_reduced_to_fit(self):
        budget = compute_thread_budget(3, 6, 10, active_types=3)

        assert budget.types_in_parallel == 3
        assert budget.loaders_per_type == 2
        assert budget.total_threads <= 10

    def test_types_reduced_first(self):
        budget = compute_thread_budget(4, 6, 5, active_types=4)

        assert budget == ThreadBudget(2, 1)
        assert budget.total_threads <= 5

    def test_floor_of_two_threads(self):
        budget = compute_thread_budget(2, 6, 1, active_types=2)
        assert budget == ThreadBudget(1, 1)

    def test_never_more_types_than_active(self):
        assert compute_thread_budget(3, 2, None, active_types=1).types_in_parallel == 1

    @pytest.mark.parametrize("max_threads", [2, 3, 7, 8, 20])
    def test_budget_within_ceiling(self, max_threads):
        budget = compute_thread_budget(3, 6, max_threads, active_types=3)
        assert budget.total_threads <= max_threads


class TestParallelExecutionScheduler:

    def test_runs_every_partition(self):
        done = []
        lock = threading.Lock()

        def run(partition):
            time.sleep(0.005)
            with lock:
                done.append(partition.label)
            return PartitionOutcome(partition, PartitionStatus.COMPLETED)

        scheduler = ParallelExecutionScheduler(ThreadBudget(2, 2))
        outcomes = scheduler.run({"A": partitions("A", 4), "B": partitions("B", 4), "C": partitions("C", 4)}, run)

        assert len(outcomes) == 12
        assert sorted(done) == sorted(f"{t}#{i}" for t in "ABC" for i in range(4))
        assert scheduler.peak_active_loaders <= 4

    def test_types_wait_for_a_free_slot(self):
        active_types = set()
        peak = [0]
        lock = threading.Lock()

        def run(partition):
            with lock:
                active_types.add(partition.entity_type)
                peak[0] = max(peak[0], len(active_types))
            time.sleep(0.005)
            with lock:
                active_types.discard(partition.entity_type)
            return PartitionOutcome(partition, PartitionStatus.COMPLETED)

        ParallelExecutionScheduler(ThreadBudget(1, 3)).run({"A": partitions("A", 3), "B": partitions("B", 3)}, run)

        assert peak[0] == 1

    def test_empty_types_are_skipped(self):
        scheduler = ParallelExecutionScheduler(ThreadBudget(1, 1))
        assert scheduler.run({"A": []}, lambda p: None) == []

    def test_fatal_error_stops_everything(self):
        stop = threading.Event()

        def run(partition):
            if partition.index == 0:
                raise RuntimeError("checkpoint store gone")
            return PartitionOutcome(partition, PartitionStatus.COMPLETED)

        scheduler = ParallelExecutionScheduler(ThreadBudget(1, 1), stop)

        with pytest.raises(RuntimeError, match="checkpoint store gone"):
            scheduler.run({"A": partitions("A", 3)}, run)
        assert stop.is_set()
