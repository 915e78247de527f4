"""
Partition planning.

Responsibilities:
- Slice each type's ordered key sequence into fixed-size partitions.
- Cut a partition's keys into checkpoint-sized chunks.

Non-Responsibilities:
- No persistence (see checkpoint.py).
- No validation of rowsPerPartition against checkpointInterval (config.py).

Invariant:
Partitions of one type are disjoint and together cover every key
enumerated at planning time.
"""

from dataclasses import dataclass, replace
from itertools import islice
from math import ceil
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .keys import PrimaryKeyEnumerator
from .logger import get_logger
from .scope import IndexingScope, ScopedType

logger = get_logger()


@dataclass(frozen=True)
class Partition:
    """
    An independently schedulable slice of one type's keys.

    bounded partitions are re-enumerated by key range; an unbounded
    partition (opaque query) re-runs the query and is sliced by position.
    """
    entity_type: str
    index: int
    first_key: Any
    last_key: Any
    key_count: int
    bounded: bool = True
    id: Optional[int] = None

    @property
    def label(self) -> str:
        return f"{self.entity_type}#{self.index}"

    def chunk_count(self, checkpoint_interval: int) -> int:
        return ceil(self.key_count / checkpoint_interval)

    def chunk_sizes(self, checkpoint_interval: int) -> List[int]:
        full, rest = divmod(self.key_count, checkpoint_interval)
        return [checkpoint_interval] * full + ([rest] if rest else [])

    def with_id(self, partition_id: int) -> "Partition":
        return replace(self, id=partition_id)


@dataclass(frozen=True)
class Chunk:
    """Keys processed and checkpointed as one unit of work."""
    partition: Partition
    sequence: int
    keys: Tuple[Any, ...]

    @property
    def size(self) -> int:
        return len(self.keys)

    @property
    def last_key(self) -> Any:
        return self.keys[-1]


class PartitionPlanner:
    """
    Args:
        enumerator: Key source
        rows_per_partition: Keys per partition (last one may be smaller)
        checkpoint_interval: Keys per chunk
    """

    def __init__(self, enumerator: PrimaryKeyEnumerator, rows_per_partition: int, checkpoint_interval: int):
        self.enumerator = enumerator
        self.rows_per_partition = rows_per_partition
        self.checkpoint_interval = checkpoint_interval

    def plan(self, scope: IndexingScope) -> Dict[str, List[Partition]]:
        """Plan every in-scope type, in scope order."""
        return {scoped.name: self.plan_type(scoped) for scoped in scope}

    def plan_type(self, scoped: ScopedType) -> List[Partition]:
        """
        Plan one type.

        A type with no matching keys yields no partitions. A type
        restricted by an opaque query yields exactly one partition.
        """
        keys = self.enumerator.enumerate(scoped)

        if not scoped.allows_partitioning:
            partitions = _single_partition(scoped.name, keys)
        else:
            partitions = list(_fixed_size_partitions(scoped.name, keys, self.rows_per_partition))

        logger.info(
            "Planned partitions",
            entity_type=scoped.name,
            partitions=len(partitions),
            keys=sum(p.key_count for p in partitions),
            partitioned=scoped.allows_partitioning,
        )
        return partitions

    def chunks(self, partition: Partition, keys: Iterable[Any], first_sequence: int = 0) -> Iterator[Chunk]:
        """
        Cut a partition's remaining keys into chunks.

        Args:
            partition: The owning partition
            keys: Remaining keys, in order
            first_sequence: Sequence number of the first chunk produced
        """
        iterator = iter(keys)
        sequence = first_sequence
        while True:
            batch = tuple(islice(iterator, self.checkpoint_interval))
            if not batch:
                return
            yield Chunk(partition=partition, sequence=sequence, keys=batch)
            sequence += 1


def _fixed_size_partitions(entity_type: str, keys: Iterable[Any], rows_per_partition: int) -> Iterator[Partition]:
    # Only the boundaries are kept, never the keys themselves
    index = 0
    first_key = last_key = None
    count = 0
    for key in keys:
        if count == 0:
            first_key = key
        last_key = key
        count += 1
        if count == rows_per_partition:
            yield Partition(entity_type, index, first_key, last_key, count)
            index += 1
            count = 0
    if count:
        yield Partition(entity_type, index, first_key, last_key, count)


def _single_partition(entity_type: str, keys: Iterable[Any]) -> List[Partition]:
    first_key = last_key = None
    count = 0
    for key in keys:
        if count == 0:
            first_key = key
        last_key = key
        count += 1
    if not count:
        return []
    return [Partition(entity_type, 0, first_key, last_key, count, bounded=False)]
