"""
End-to-end tests of the mass indexing job: sequencing, stop and restart.
"""

import pytest
from sqlalchemy import delete, insert

from massindex.checkpoint import JobStatus, PartitionStatus
from massindex.errors import (
    CheckpointPersistError, ConfigurationError, IllegalStateTransitionError,
    IndexWriterError, ScopeConfigurationError,
)
from massindex.index_writer import InMemoryIndexWriter
from massindex.job import MassIndexingJob
from massindex.monitor import ProgressMonitor, RecordingProgressMonitor
from massindex.scope import Restriction

from sample_models import Book


class StopAt(ProgressMonitor):
    """Requests a stop once a given chunk of a given partition is committed."""

    def __init__(self, label, sequence):
        self.label = label
        self.sequence = sequence
        self.job = None

    def chunk_committed(self, partition, sequence, read, indexed, skipped):
        if partition.label == self.label and sequence == self.sequence:
            self.job.stop()


class FailingFlushWriter(InMemoryIndexWriter):
    """Fails the n-th flush (1-based) once."""

    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on
        self.flushes = 0

    def flush(self):
        self.flushes += 1
        if self.flushes == self.fail_on:
            raise IndexWriterError("node left the cluster")
        super().flush()


class ExplodingMonitor(ProgressMonitor):
    def chunk_committed(self, *args):
        raise RuntimeError("dashboard down")


class ChangeStoreAfterPlanning(ProgressMonitor):
    """Inserts and deletes Book rows right after the plan is made."""

    def __init__(self, store, insert_ids=(), delete_ids=()):
        self.store = store
        self.insert_ids = insert_ids
        self.delete_ids = delete_ids

    def type_planned(self, entity_type, total_keys, partitions, already_read=0):
        change_books(self.store, self.insert_ids, self.delete_ids)


def change_books(store, insert_ids=(), delete_ids=()):
    with store.engine.begin() as connection:
        if insert_ids:
            connection.execute(insert(Book), [{"id": i, "title": f"Book {i}"} for i in insert_ids])
        if delete_ids:
            connection.execute(delete(Book).where(Book.id.in_(list(delete_ids))))


def indexed_book_ids(writer):
    return {int(key.split(":")[1]) for key in writer.documents}


@pytest.fixture
def make_job(entities, handles, checkpoints):
    def make(params, writer, monitors=(), restrictions=None):
        return MassIndexingJob(
            params,
            entities,
            handles,
            checkpoints,
            writer,
            restrictions=restrictions,
            monitors=list(monitors),
            flush_retries=0,
            flush_retry_delay=0,
        )
    return make


class TestFullRun:

    def test_indexes_all_types(self, make_job, small_params, writer, recorder, populate_store, checkpoints):
        populate_store(books=250, authors=30)
        job = make_job(small_params(("Book", "Author")), writer, [recorder])

        report = job.start()

        assert report.status is JobStatus.COMPLETED
        assert writer.count("Book") == 250
        assert writer.count("Author") == 30
        by_type = report.by_type()
        assert (by_type["Book"].partitions, by_type["Book"].read, by_type["Book"].indexed) == (3, 250, 250)
        assert by_type["Author"].partitions == 1
        assert all(p.status is PartitionStatus.COMPLETED for p in report.partitions)
        assert checkpoints.get_execution(report.execution_id).status is JobStatus.COMPLETED

        assert ("type_planned", "Book", 250, 3, 0) in recorder.events
        assert recorder.events[0] == ("job_started", report.execution_id, False)
        assert recorder.events[-1] == ("job_finished", report.execution_id, "COMPLETED")

    def test_purge_optimize_sequencing(self, make_job, small_params, writer, populate_store):
        populate_store(books=250, authors=30)

        make_job(small_params(("Book", "Author")), writer).start()

        assert writer.events[0] == ("purge", ("Book", "Author"))
        assert writer.events[1] == ("optimize",)
        assert writer.events[-1] == ("optimize",)
        assert all(e[0] == "flush" for e in writer.events[2:-1])
        assert len(writer.events[2:-1]) == 28

    def test_purge_removes_stale_documents(self, make_job, small_params, writer, populate_store):
        populate_store(books=20)
        writer.add_documents([{"_id": "Book:999", "_type": "Book"}, {"_id": "Cover:1", "_type": "Cover"}])
        writer.flush()

        make_job(small_params(), writer).start()

        assert "Book:999" not in writer.documents
        assert "Cover:1" in writer.documents

    def test_optimize_after_purge_needs_purge(self, make_job, small_params, writer, populate_store):
        populate_store(books=20)

        make_job(small_params(purge_all_on_start=False, optimize_after_purge=True), writer).start()

        assert [e for e in writer.events if e[0] != "flush"] == [("optimize",)]
        assert writer.events[-1] == ("optimize",)

    def test_no_optional_steps(self, make_job, small_params, writer, populate_store):
        populate_store(books=20)
        params = small_params(purge_all_on_start=False, optimize_on_finish=False)

        make_job(params, writer).start()

        assert all(e[0] == "flush" for e in writer.events)

    def test_parallel_types(self, make_job, small_params, writer, populate_store):
        populate_store(books=250, authors=120)
        params = small_params(("Book", "Author"), max_threads=None, types_to_index_in_parallel=2, threads_to_load_objects=3)

        report = make_job(params, writer).start()

        assert report.status is JobStatus.COMPLETED
        assert writer.count() == 370

    def test_empty_type_completes(self, make_job, small_params, writer):
        report = make_job(small_params(("Author",)), writer).start()

        assert report.status is JobStatus.COMPLETED
        assert report.partitions == []
        assert writer.events == [("purge", ("Author",)), ("optimize",), ("optimize",)]

    def test_report_matches_persisted_state(self, make_job, small_params, writer, populate_store):
        populate_store(books=50)
        job = make_job(small_params(), writer)

        report = job.start()

        assert job.report(report.execution_id) == report


class TestScopeAndRestrictions:

    def test_invalid_scope_fails_before_any_work(self, make_job, small_params, writer, checkpoints):
        with pytest.raises(ScopeConfigurationError):
            make_job(small_params(("Book", "Shelf")), writer).start()

        assert checkpoints.list_executions() == []
        assert writer.events == []

    def test_job_wide_query(self, make_job, small_params, writer, populate_store):
        populate_store(books=250)
        params = small_params(custom_query_hql="SELECT id FROM books WHERE id <= 50")

        report = make_job(params, writer).start()

        assert report.status is JobStatus.COMPLETED
        assert len(report.partitions) == 1
        assert writer.count("Book") == 50

    def test_per_type_criteria(self, make_job, small_params, writer, populate_store):
        populate_store(books=250)
        restrictions = {"Book": Restriction.by_criteria(Book.pages > 300)}

        make_job(small_params(), writer, restrictions=restrictions).start()

        assert writer.count("Book") == 50

    def test_tenant_scoping(self, make_job, small_params, writer, populate_store):
        populate_store(books=250, authors=5, tenant_of=lambda i: "acme" if i % 2 else "globex")

        make_job(small_params(("Book", "Author"), tenant_id="acme"), writer).start()

        assert writer.count("Book") == 125
        assert writer.count("Author") == 5

    def test_broken_query_fails_job(self, make_job, small_params, writer, populate_store):
        populate_store(books=10)
        params = small_params(custom_query_hql="SELECT id FROM no_such_table")

        report = make_job(params, writer).start()

        assert report.status is JobStatus.FAILED
        assert "ScopeQueryError" in report.error


class TestStopAndRestart:

    def test_stop_then_restart_resumes(self, make_job, small_params, writer, populate_store, checkpoints):
        populate_store(books=250)
        params = small_params()
        stopper = StopAt("Book#1", 3)
        job = make_job(params, writer, [stopper])
        stopper.job = job

        stopped = job.start()

        assert stopped.status is JobStatus.ABANDONED
        statuses = {p.label: p.status for p in stopped.partitions}
        assert statuses == {
            "Book#0": PartitionStatus.COMPLETED,
            "Book#1": PartitionStatus.ABANDONED,
            "Book#2": PartitionStatus.PLANNED,
        }
        assert stopped.partitions[1].last_committed_chunk == 3
        assert writer.count() == 140
        assert writer.events.count(("optimize",)) == 1

        recorder = RecordingProgressMonitor()
        resumed = make_job(params, writer, [recorder]).restart(stopped.execution_id)

        assert resumed.status is JobStatus.COMPLETED
        assert ("type_planned", "Book", 250, 3, 140) in recorder.events
        assert recorder.of_kind("partition_started") == [
            ("partition_started", "Book#1", 4),
            ("partition_started", "Book#2", 0),
        ]
        assert writer.count() == 250
        assert resumed.by_type()["Book"].read == 250
        assert writer.events.count(("purge", ("Book",))) == 1
        assert writer.events[-1] == ("optimize",)
        assert checkpoints.get_execution(stopped.execution_id).restart_count == 1

    def test_restart_after_flush_failure(self, make_job, small_params, populate_store):
        populate_store(books=250)
        params = small_params()
        writer = FailingFlushWriter(fail_on=3)

        failed = make_job(params, writer).start()

        assert failed.status is JobStatus.FAILED
        assert failed.partitions[0].status is PartitionStatus.FAILED
        assert failed.partitions[0].last_committed_chunk == 1
        assert "FlushError" in failed.partitions[0].error
        assert [p.status for p in failed.partitions[1:]] == [PartitionStatus.COMPLETED] * 2
        assert writer.events.count(("optimize",)) == 1

        recorder = RecordingProgressMonitor()
        resumed = make_job(params, writer, [recorder]).restart(failed.execution_id)

        assert resumed.status is JobStatus.COMPLETED
        assert recorder.of_kind("partition_started") == [("partition_started", "Book#0", 2)]
        assert writer.count() == 250
        assert resumed.indexed == 250
        assert writer.events[-1] == ("optimize",)

    def test_store_changes_after_planning(self, make_job, small_params, writer, populate_store, record_store):
        populate_store(books=40)
        change_books(record_store, delete_ids=range(1, 41, 2))
        planned = set(range(2, 41, 2))
        changes = ChangeStoreAfterPlanning(record_store, insert_ids=(3, 25), delete_ids=(12,))

        report = make_job(small_params(), writer, [changes]).start()

        assert report.status is JobStatus.COMPLETED
        assert planned - {12} <= indexed_book_ids(writer)
        assert {3, 25} <= indexed_book_ids(writer)
        assert 12 not in indexed_book_ids(writer)
        assert report.read == 21

    def test_store_changes_between_stop_and_restart(self, make_job, small_params, writer, populate_store, record_store):
        populate_store(books=60)
        change_books(record_store, delete_ids=range(1, 61, 2))
        planned = set(range(2, 61, 2))
        params = small_params()
        stopper = StopAt("Book#0", 0)
        job = make_job(params, writer, [stopper])
        stopper.job = job

        stopped = job.start()
        assert stopped.status is JobStatus.ABANDONED
        assert indexed_book_ids(writer) == set(range(2, 21, 2))

        change_books(record_store, insert_ids=(33, 59), delete_ids=(40,))
        resumed = make_job(params, writer).restart(stopped.execution_id)

        assert resumed.status is JobStatus.COMPLETED
        assert planned - {40} <= indexed_book_ids(writer)
        assert {33, 59} <= indexed_book_ids(writer)
        assert 60 in indexed_book_ids(writer)
        assert resumed.read == 31

    def test_checkpoint_loss_fails_job(self, make_job, small_params, writer, populate_store, checkpoints, monkeypatch):
        populate_store(books=30)

        def lost(*args, **kwargs):
            raise CheckpointPersistError("disk full")

        monkeypatch.setattr(checkpoints, "commit", lost)
        report = make_job(small_params(), writer).start()

        assert report.status is JobStatus.FAILED
        assert "Checkpoint state lost" in report.error
        assert checkpoints.get_execution(report.execution_id).status is JobStatus.FAILED

    def test_completed_execution_cannot_restart(self, make_job, small_params, writer, populate_store):
        populate_store(books=10)
        report = make_job(small_params(), writer).start()

        with pytest.raises(IllegalStateTransitionError):
            make_job(small_params(), writer).restart(report.execution_id)

    def test_restart_with_other_types_rejected(self, make_job, small_params, writer, populate_store):
        populate_store(books=30)
        stopper = StopAt("Book#0", 0)
        job = make_job(small_params(), writer, [stopper])
        stopper.job = job
        report = job.start()

        with pytest.raises(ConfigurationError):
            make_job(small_params(("Author",)), writer).restart(report.execution_id)


class TestMonitoring:

    def test_monitor_failures_do_not_affect_job(self, make_job, small_params, writer, populate_store):
        populate_store(books=30)

        report = make_job(small_params(), writer, [ExplodingMonitor()]).start()

        assert report.status is JobStatus.COMPLETED
        assert writer.count() == 30

    def test_chunk_events_in_order_per_partition(self, make_job, small_params, writer, recorder, populate_store):
        populate_store(books=250)

        make_job(small_params(), writer, [recorder]).start()

        for label in ("Book#0", "Book#1", "Book#2"):
            sequences = [e[2] for e in recorder.of_kind("chunk_committed") if e[1] == label]
            assert sequences == sorted(sequences)
            assert sequences[0] == 0
