#!/usr/bin/env python3
"""
Inspect a checkpoint database and check it is consistent.

Usage:
    python scripts/inspect_checkpoints.py --db data/massindex_checkpoints.db
    python scripts/inspect_checkpoints.py --db data/massindex_checkpoints.db --execution 3
"""

import argparse
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from massindex.checkpoint import CheckpointManager, JobStatus, PartitionStatus
from massindex.config import MassIndexingParameters
from massindex.database import init_database


def inspect_execution(checkpoints: CheckpointManager, execution_id: int) -> list:
    """
    Print one execution and return the inconsistencies found.
    """
    state = checkpoints.get_execution(execution_id)
    print(f"\nExecution {state.id}: {state.status.value} (restarts: {state.restart_count})")
    print(f"  Types: {', '.join(state.entity_types)}")
    steps = [name for name, done in (
        ("purge", state.purge_done),
        ("optimize-after-purge", state.optimize_after_purge_done),
        ("optimize-on-finish", state.optimize_on_finish_done),
    ) if done]
    print(f"  Steps done: {', '.join(steps) or 'none'}")
    if state.error:
        print(f"  Error: {state.error}")

    if not state.planned:
        print("  No partition plan yet")
        return []

    interval = MassIndexingParameters.from_mapping(state.parameters).checkpoint_interval
    records = checkpoints.checkpoints(execution_id)
    problems = []

    for partition in checkpoints.load_plan(execution_id):
        record = records[partition.id]
        chunks = partition.chunk_count(interval)
        print(
            f"   - {partition.label}: {record.status.value} "
            f"chunk {record.last_committed_chunk + 1}/{chunks} "
            f"read={record.read_count}/{partition.key_count} "
            f"indexed={record.processed_count} skipped={record.skip_count}"
        )

        # Bounded partitions follow their key range, so rows inserted after
        # planning can add chunks; position-resumed partitions cannot grow
        if not partition.bounded and record.last_committed_chunk >= chunks:
            problems.append(f"{partition.label}: committed chunk {record.last_committed_chunk} beyond plan ({chunks} chunks)")
        if record.processed_count + record.skip_count > record.read_count:
            problems.append(f"{partition.label}: indexed + skipped exceeds read")
        if record.status is PartitionStatus.RUNNING and state.status is not JobStatus.STARTED:
            problems.append(f"{partition.label}: RUNNING while the execution is {state.status.value} (crashed worker)")
        if state.status is JobStatus.COMPLETED and record.status is not PartitionStatus.COMPLETED:
            problems.append(f"{partition.label}: {record.status.value} in a COMPLETED execution")

    return problems


def main():
    parser = argparse.ArgumentParser(description="Inspect mass indexing checkpoints")
    parser.add_argument("--db", type=Path, default=Path("data/massindex_checkpoints.db"),
                        help="Path to the SQLite checkpoint database")
    parser.add_argument("--execution", type=int, help="Only inspect this execution")

    args = parser.parse_args()

    if not args.db.exists():
        print(f"❌ Checkpoint database not found: {args.db}")
        sys.exit(1)

    checkpoints = CheckpointManager(init_database(args.db))
    if args.execution is not None:
        execution_ids = [args.execution]
    else:
        execution_ids = [state.id for state in checkpoints.list_executions()]

    if not execution_ids:
        print("No executions recorded.")
        sys.exit(0)

    problems = []
    for execution_id in execution_ids:
        problems.extend(inspect_execution(checkpoints, execution_id))

    if problems:
        print(f"\n❌ INCONSISTENCIES: {len(problems)}")
        for problem in problems[:10]:
            print(f"   - {problem}")
        if len(problems) > 10:
            print(f"   ... and {len(problems) - 10} more")
        sys.exit(1)

    print("\n✅ Checkpoints are consistent")
    sys.exit(0)


if __name__ == "__main__":
    main()
