"""
Exception taxonomy for mass indexing.

Errors fall into three scopes:
- job level (configuration, scope, checkpoint persistence): halt the whole run
- partition level (flush, systemic load failure): fail one partition only
- record level (load, conversion): absorbed into skip counters
"""


class MassIndexingError(Exception):
    """Base class for all mass indexing errors."""
    pass


class ConfigurationError(MassIndexingError):
    """Raised when job parameters are invalid."""
    pass


class ScopeConfigurationError(ConfigurationError):
    """Raised when the set of entity types or their restrictions is invalid."""
    pass


class HandleNotFoundError(ConfigurationError):
    """Raised when no record store handle matches a reference."""
    pass


class ScopeQueryError(MassIndexingError):
    """Raised when a restriction query cannot be executed."""
    pass


class RecordLoadError(MassIndexingError):
    """
    Raised when records cannot be loaded from the record store.

    A systemic error (e.g. lost connectivity) aborts the partition,
    otherwise the affected records are skipped.
    """

    def __init__(self, message: str, systemic: bool = False):
        super().__init__(message)
        self.systemic = systemic


class ConversionError(MassIndexingError):
    """Raised when a record cannot be converted to an index document."""
    pass


class IndexWriterError(MassIndexingError):
    """Raised when the index writer rejects or cannot serve a request."""
    pass


class FlushError(IndexWriterError):
    """Raised when buffered documents cannot be written to the index."""
    pass


class CheckpointError(MassIndexingError):
    """Base class for checkpoint errors."""
    pass


class CheckpointPersistError(CheckpointError):
    """Raised when a checkpoint cannot be persisted. Fatal to the job."""
    pass


class IllegalStateTransitionError(CheckpointError):
    """Raised on a partition status change the state machine does not allow."""
    pass


class PartitionAbortedError(MassIndexingError):
    """Raised when a partition must stop because of a non-recoverable error."""
    pass
