"""
Checkpointed, partitioned, restartable search index rebuilds.
"""

__version__ = "0.1.0"

from .checkpoint import CheckpointManager, JobStatus, PartitionStatus
from .config import CacheMode, HandleNamespace, MassIndexingParameters
from .converters import ColumnDocumentConverter, ConverterRegistry, DocumentConverter
from .index_writer import InMemoryIndexWriter, IndexWriter, OpenSearchIndexWriter
from .job import JobReport, MassIndexingJob
from .monitor import LoggingProgressMonitor, ProgressMonitor
from .scope import Restriction
from .store import EntityRegistry, HandleRegistry, RecordStore

__all__ = [
    "__version__",
    "CacheMode",
    "CheckpointManager",
    "ColumnDocumentConverter",
    "ConverterRegistry",
    "DocumentConverter",
    "EntityRegistry",
    "HandleNamespace",
    "HandleRegistry",
    "InMemoryIndexWriter",
    "IndexWriter",
    "JobReport",
    "JobStatus",
    "LoggingProgressMonitor",
    "MassIndexingJob",
    "MassIndexingParameters",
    "OpenSearchIndexWriter",
    "PartitionStatus",
    "ProgressMonitor",
    "RecordStore",
    "Restriction",
]
