"""
Tests for scripts/inspect_checkpoints.py.
"""

import importlib.util
from pathlib import Path

import pytest

from massindex.checkpoint import JobStatus
from massindex.config import MassIndexingParameters
from massindex.partitions import Partition

SCRIPT = Path(__file__).parent.parent / "scripts" / "inspect_checkpoints.py"


@pytest.fixture(scope="module")
def inspector():
    spec = importlib.util.spec_from_file_location("inspect_checkpoints", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def execution(checkpoints):
    params = MassIndexingParameters(entity_types=["Book"], rows_per_partition=20, checkpoint_interval=10)
    execution_id = checkpoints.create_execution(params)
    checkpoints.save_plan(execution_id, {"Book": [Partition("Book", 0, 1, 20, 20), Partition("Book", 1, 21, 25, 5)]})
    return execution_id


def test_consistent_execution(inspector, checkpoints, execution, capsys):
    first = checkpoints.load_plan(execution)[0]
    checkpoints.begin(first.id)
    checkpoints.commit(first.id, 0, 10, read=10, processed=9, skipped=1)
    checkpoints.abandon(first.id)
    checkpoints.set_job_status(execution, JobStatus.ABANDONED)

    assert inspector.inspect_execution(checkpoints, execution) == []
    assert "Book#0: ABANDONED chunk 1/2 read=10/20 indexed=9 skipped=1" in capsys.readouterr().out


def test_stale_running_partition_reported(inspector, checkpoints, execution):
    first = checkpoints.load_plan(execution)[0]
    checkpoints.begin(first.id)
    checkpoints.set_job_status(execution, JobStatus.FAILED, "worker crashed")

    problems = inspector.inspect_execution(checkpoints, execution)

    assert problems == ["Book#0: RUNNING while the execution is FAILED (crashed worker)"]


def test_unplanned_execution(inspector, checkpoints, capsys):
    execution_id = checkpoints.create_execution(MassIndexingParameters(entity_types=["Author"]))

    assert inspector.inspect_execution(checkpoints, execution_id) == []
    assert "No partition plan yet" in capsys.readouterr().out


def test_bounded_partition_grown_after_planning_is_consistent(inspector, checkpoints, execution):
    """Rows inserted inside a planned key range add chunks to a bounded partition."""
    second = checkpoints.load_plan(execution)[1]
    checkpoints.begin(second.id)
    checkpoints.commit(second.id, 0, 23, read=10, processed=10, skipped=0)
    checkpoints.resume(second.id)
    checkpoints.commit(second.id, 1, 25, read=2, processed=2, skipped=0)
    checkpoints.complete(second.id)

    assert inspector.inspect_execution(checkpoints, execution) == []
