"""
Mass indexing job parameters.

Job parameters arrive as a flat mapping of camelCase keys to strings
(the shape an operator or a job repository hands over). They are parsed
into MassIndexingParameters, derived defaults are applied, and the
relations between sizes are validated before any work starts.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import ConfigurationError, ScopeConfigurationError


ENTITY_MANAGER_FACTORY_NAMESPACE = "entityManagerFactoryNamespace"
ENTITY_MANAGER_FACTORY_REFERENCE = "entityManagerFactoryReference"
ENTITY_TYPES = "entityTypes"
MAX_THREADS = "maxThreads"
MAX_RESULTS_PER_ENTITY = "maxResultsPerEntity"
ID_FETCH_SIZE = "idFetchSize"
ENTITY_FETCH_SIZE = "entityFetchSize"
CACHE_MODE = "cacheMode"
OPTIMIZE_ON_FINISH = "optimizeOnFinish"
OPTIMIZE_AFTER_PURGE = "optimizeAfterPurge"
PURGE_ALL_ON_START = "purgeAllOnStart"
ROWS_PER_PARTITION = "rowsPerPartition"
CHECKPOINT_INTERVAL = "checkpointInterval"
SESSION_CLEAR_INTERVAL = "sessionClearInterval"
CUSTOM_QUERY_HQL = "customQueryHQL"
CUSTOM_QUERY_CRITERIA = "customQueryCriteria"
TENANT_ID = "tenantId"
TYPES_TO_INDEX_IN_PARALLEL = "typesToIndexInParallel"
THREADS_TO_LOAD_OBJECTS = "threadsToLoadObjects"

DEFAULT_ID_FETCH_SIZE = 1000
DEFAULT_ROWS_PER_PARTITION = 20000
DEFAULT_CHECKPOINT_INTERVAL = 2000
DEFAULT_SESSION_CLEAR_INTERVAL = 200
DEFAULT_TYPES_TO_INDEX_IN_PARALLEL = 1
DEFAULT_THREADS_TO_LOAD_OBJECTS = 6

# idFetchSize sentinel: fetch every key in one round trip
LOAD_ALL_KEYS = -1

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


class CacheMode(Enum):
    """How record loading interacts with the session identity map."""
    IGNORE = "IGNORE"
    GET = "GET"
    PUT = "PUT"
    NORMAL = "NORMAL"
    REFRESH = "REFRESH"


class HandleNamespace(Enum):
    """How entityManagerFactoryReference is interpreted."""
    PERSISTENCE_UNIT_NAME = "persistence-unit-name"
    SESSION_FACTORY_NAME = "session-factory-name"


@dataclass
class MassIndexingParameters:
    """
    Validated job parameters.

    checkpoint_interval, session_clear_interval and entity_fetch_size
    are derived when left as None. max_threads None means "one thread
    per partition", resolved once the partition plan is known.
    """
    entity_types: List[str]
    purge_all_on_start: bool = True
    optimize_after_purge: bool = True
    optimize_on_finish: bool = True
    cache_mode: CacheMode = CacheMode.IGNORE
    id_fetch_size: int = DEFAULT_ID_FETCH_SIZE
    entity_fetch_size: Optional[int] = None
    custom_query_hql: Optional[str] = None
    custom_query_criteria: Optional[Sequence[Any]] = None
    max_results_per_entity: Optional[int] = None
    rows_per_partition: int = DEFAULT_ROWS_PER_PARTITION
    max_threads: Optional[int] = None
    checkpoint_interval: Optional[int] = None
    session_clear_interval: Optional[int] = None
    entity_manager_factory_reference: Optional[str] = None
    entity_manager_factory_namespace: Optional[HandleNamespace] = None
    tenant_id: Optional[str] = None
    types_to_index_in_parallel: int = DEFAULT_TYPES_TO_INDEX_IN_PARALLEL
    threads_to_load_objects: int = DEFAULT_THREADS_TO_LOAD_OBJECTS
    extra: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.entity_types = [t.strip() for t in self.entity_types if t and t.strip()]
        if not self.entity_types:
            raise ScopeConfigurationError("entityTypes must name at least one entity type")

        if self.custom_query_hql is not None and self.custom_query_criteria is not None:
            raise ScopeConfigurationError(
                f"{CUSTOM_QUERY_HQL} and {CUSTOM_QUERY_CRITERIA} are mutually exclusive"
            )

        _require_positive(ROWS_PER_PARTITION, self.rows_per_partition)
        _require_positive(TYPES_TO_INDEX_IN_PARALLEL, self.types_to_index_in_parallel)
        _require_positive(THREADS_TO_LOAD_OBJECTS, self.threads_to_load_objects)
        for key, value in (
            (MAX_RESULTS_PER_ENTITY, self.max_results_per_entity),
            (MAX_THREADS, self.max_threads),
            (CHECKPOINT_INTERVAL, self.checkpoint_interval),
            (SESSION_CLEAR_INTERVAL, self.session_clear_interval),
            (ENTITY_FETCH_SIZE, self.entity_fetch_size),
        ):
            if value is not None:
                _require_positive(key, value)

        if self.id_fetch_size != LOAD_ALL_KEYS:
            _require_positive(ID_FETCH_SIZE, self.id_fetch_size)

        if self.checkpoint_interval is None:
            self.checkpoint_interval = min(DEFAULT_CHECKPOINT_INTERVAL, self.rows_per_partition)
        elif self.checkpoint_interval > self.rows_per_partition:
            raise ConfigurationError(
                f"{CHECKPOINT_INTERVAL} ({self.checkpoint_interval}) must be less than "
                f"or equal to {ROWS_PER_PARTITION} ({self.rows_per_partition})"
            )

        if self.session_clear_interval is None:
            self.session_clear_interval = min(DEFAULT_SESSION_CLEAR_INTERVAL, self.checkpoint_interval)
        elif self.session_clear_interval > self.checkpoint_interval:
            raise ConfigurationError(
                f"{SESSION_CLEAR_INTERVAL} ({self.session_clear_interval}) must be less than "
                f"or equal to {CHECKPOINT_INTERVAL} ({self.checkpoint_interval})"
            )

        if self.entity_fetch_size is None:
            self.entity_fetch_size = self.session_clear_interval

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "MassIndexingParameters":
        """
        Parse job parameters keyed by their camelCase names.

        Unknown keys are kept in `extra` so they survive persistence.
        """
        known = {
            ENTITY_TYPES, PURGE_ALL_ON_START, OPTIMIZE_AFTER_PURGE, OPTIMIZE_ON_FINISH,
            CACHE_MODE, ID_FETCH_SIZE, ENTITY_FETCH_SIZE, CUSTOM_QUERY_HQL,
            CUSTOM_QUERY_CRITERIA, MAX_RESULTS_PER_ENTITY, ROWS_PER_PARTITION,
            MAX_THREADS, CHECKPOINT_INTERVAL, SESSION_CLEAR_INTERVAL,
            ENTITY_MANAGER_FACTORY_REFERENCE, ENTITY_MANAGER_FACTORY_NAMESPACE,
            TENANT_ID, TYPES_TO_INDEX_IN_PARALLEL, THREADS_TO_LOAD_OBJECTS,
        }

        raw_types = mapping.get(ENTITY_TYPES)
        if raw_types is None:
            raise ScopeConfigurationError(f"{ENTITY_TYPES} is required")
        if isinstance(raw_types, str):
            entity_types = [t.strip() for t in raw_types.split(",")]
        else:
            entity_types = [str(t) for t in raw_types]

        namespace = _parse_str(mapping, ENTITY_MANAGER_FACTORY_NAMESPACE)
        cache_mode = _parse_str(mapping, CACHE_MODE)
        criteria = mapping.get(CUSTOM_QUERY_CRITERIA)
        if criteria is not None and not isinstance(criteria, (list, tuple)):
            criteria = [criteria]

        try:
            parsed_namespace = HandleNamespace(namespace) if namespace else None
        except ValueError:
            raise ConfigurationError(
                f"Unknown {ENTITY_MANAGER_FACTORY_NAMESPACE}: {namespace!r}"
            )
        try:
            parsed_cache_mode = CacheMode(cache_mode.upper()) if cache_mode else CacheMode.IGNORE
        except ValueError:
            raise ConfigurationError(f"Unknown {CACHE_MODE}: {cache_mode!r}")

        return cls(
            entity_types=entity_types,
            purge_all_on_start=_parse_bool(mapping, PURGE_ALL_ON_START, True),
            optimize_after_purge=_parse_bool(mapping, OPTIMIZE_AFTER_PURGE, True),
            optimize_on_finish=_parse_bool(mapping, OPTIMIZE_ON_FINISH, True),
            cache_mode=parsed_cache_mode,
            id_fetch_size=_parse_int(mapping, ID_FETCH_SIZE, DEFAULT_ID_FETCH_SIZE),
            entity_fetch_size=_parse_int(mapping, ENTITY_FETCH_SIZE),
            custom_query_hql=_parse_str(mapping, CUSTOM_QUERY_HQL),
            custom_query_criteria=criteria,
            max_results_per_entity=_parse_int(mapping, MAX_RESULTS_PER_ENTITY),
            rows_per_partition=_parse_int(mapping, ROWS_PER_PARTITION, DEFAULT_ROWS_PER_PARTITION),
            max_threads=_parse_int(mapping, MAX_THREADS),
            checkpoint_interval=_parse_int(mapping, CHECKPOINT_INTERVAL),
            session_clear_interval=_parse_int(mapping, SESSION_CLEAR_INTERVAL),
            entity_manager_factory_reference=_parse_str(mapping, ENTITY_MANAGER_FACTORY_REFERENCE),
            entity_manager_factory_namespace=parsed_namespace,
            tenant_id=_parse_str(mapping, TENANT_ID),
            types_to_index_in_parallel=_parse_int(
                mapping, TYPES_TO_INDEX_IN_PARALLEL, DEFAULT_TYPES_TO_INDEX_IN_PARALLEL
            ),
            threads_to_load_objects=_parse_int(
                mapping, THREADS_TO_LOAD_OBJECTS, DEFAULT_THREADS_TO_LOAD_OBJECTS
            ),
            extra={k: str(v) for k, v in mapping.items() if k not in known},
        )

    def to_mapping(self) -> Dict[str, str]:
        """Render the parameters back to job-parameter strings."""
        values: Dict[str, Any] = {
            ENTITY_TYPES: ",".join(self.entity_types),
            PURGE_ALL_ON_START: self.purge_all_on_start,
            OPTIMIZE_AFTER_PURGE: self.optimize_after_purge,
            OPTIMIZE_ON_FINISH: self.optimize_on_finish,
            CACHE_MODE: self.cache_mode.value,
            ID_FETCH_SIZE: self.id_fetch_size,
            ENTITY_FETCH_SIZE: self.entity_fetch_size,
            CUSTOM_QUERY_HQL: self.custom_query_hql,
            MAX_RESULTS_PER_ENTITY: self.max_results_per_entity,
            ROWS_PER_PARTITION: self.rows_per_partition,
            MAX_THREADS: self.max_threads,
            CHECKPOINT_INTERVAL: self.checkpoint_interval,
            SESSION_CLEAR_INTERVAL: self.session_clear_interval,
            ENTITY_MANAGER_FACTORY_REFERENCE: self.entity_manager_factory_reference,
            TENANT_ID: self.tenant_id,
            TYPES_TO_INDEX_IN_PARALLEL: self.types_to_index_in_parallel,
            THREADS_TO_LOAD_OBJECTS: self.threads_to_load_objects,
        }
        if self.custom_query_criteria is not None:
            values[CUSTOM_QUERY_CRITERIA] = " AND ".join(str(c) for c in self.custom_query_criteria)
        if self.entity_manager_factory_namespace is not None:
            values[ENTITY_MANAGER_FACTORY_NAMESPACE] = self.entity_manager_factory_namespace.value

        rendered = dict(self.extra)
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            rendered[key] = str(value)
        return rendered


def _require_positive(key: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ConfigurationError(f"{key} must be a positive integer, got {value!r}")


def _parse_str(mapping: Mapping[str, Any], key: str) -> Optional[str]:
    value = mapping.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_bool(mapping: Mapping[str, Any], key: str, default: bool) -> bool:
    value = mapping.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {value!r}")


def _parse_int(mapping: Mapping[str, Any], key: str, default: Optional[int] = None) -> Optional[int]:
    value = mapping.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")
