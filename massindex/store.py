"""
Record store access.

Responsibilities:
- Map entity type identifiers to SQLAlchemy mapped classes.
- Resolve the record store handle from a reference and namespace.
- Load full records for a batch of primary keys.

Non-Responsibilities:
- No key enumeration ordering decisions (see keys.py).
- No document conversion.
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import CacheMode, HandleNamespace
from .database import create_database_engine
from .errors import ConfigurationError, HandleNotFoundError, RecordLoadError, ScopeConfigurationError
from .retry import is_transient_error


class EntityRegistry:
    """Static mapping of entity type identifiers to mapped classes."""

    def __init__(self, entities: Optional[Dict[str, type]] = None):
        self._entities: Dict[str, type] = dict(entities or {})

    @classmethod
    def from_base(cls, base) -> "EntityRegistry":
        """Collect every class mapped by a declarative base, keyed by class name."""
        return cls({mapper.class_.__name__: mapper.class_ for mapper in base.registry.mappers})

    def register(self, entity: type, name: Optional[str] = None) -> None:
        self._entities[name or entity.__name__] = entity

    def get(self, name: str) -> type:
        try:
            return self._entities[name]
        except KeyError:
            raise ScopeConfigurationError(
                f"Unknown entity type {name!r}. Known types: {', '.join(sorted(self._entities)) or 'none'}"
            )

    def names(self) -> List[str]:
        return list(self._entities)

    def __contains__(self, name: str) -> bool:
        return name in self._entities


def primary_key_column(entity: type):
    """Return the single primary key column of a mapped class."""
    columns = inspect(entity).primary_key
    if len(columns) != 1:
        raise ScopeConfigurationError(
            f"Entity type {entity.__name__} has a composite primary key; "
            f"only single-column keys can be partitioned"
        )
    return columns[0]


def primary_key_attribute(entity: type):
    """Return the mapped attribute (e.g. Book.id) of the primary key column."""
    column = primary_key_column(entity)
    prop = inspect(entity).get_property_by_column(column)
    return getattr(entity, prop.key)


class RecordStore:
    """A handle on the authoritative record store."""

    def __init__(self, engine: Engine, name: Optional[str] = None):
        self.engine = engine
        self.name = name
        self._session_factory = sessionmaker(bind=engine)

    @classmethod
    def from_url(cls, url: str, name: Optional[str] = None) -> "RecordStore":
        return cls(create_database_engine(url), name=name)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only unit of work; never commits."""
        session = self._session_factory()
        try:
            yield session
        finally:
            session.rollback()
            session.close()

    def load_records(
        self,
        session: Session,
        entity: type,
        keys: Sequence[Any],
        cache_mode: CacheMode = CacheMode.IGNORE,
    ) -> Tuple[List[Any], List[Any]]:
        """
        Load full records for a batch of keys.

        Returns:
            (records in key order, keys with no matching record)

        Raises:
            RecordLoadError: systemic=True when the store looks unreachable
        """
        if not keys:
            return [], []

        pk = primary_key_attribute(entity)
        query = session.query(entity).filter(pk.in_(list(keys)))
        if cache_mode is CacheMode.REFRESH:
            query = query.populate_existing()

        try:
            loaded = query.all()
        except SQLAlchemyError as e:
            raise RecordLoadError(
                f"Failed to load {len(keys)} {entity.__name__} records: {e}",
                systemic=is_systemic_store_error(e),
            ) from e

        key_name = pk.key
        by_key = {getattr(record, key_name): record for record in loaded}
        records = [by_key[k] for k in keys if k in by_key]
        missing = [k for k in keys if k not in by_key]
        return records, missing

    def load_record(self, session: Session, entity: type, key: Any) -> Optional[Any]:
        """Load one record; used to isolate failures inside a batch."""
        try:
            return session.get(entity, key)
        except SQLAlchemyError as e:
            raise RecordLoadError(
                f"Failed to load {entity.__name__} {key!r}: {e}",
                systemic=is_systemic_store_error(e),
            ) from e


def is_systemic_store_error(error: Exception) -> bool:
    """True when an error means the store itself is unusable, not one record."""
    if isinstance(error, DisconnectionError):
        return True
    if isinstance(error, OperationalError) and getattr(error, "connection_invalidated", False):
        return True
    return is_transient_error(error)


class HandleRegistry:
    """
    Explicit registry of record store handles.

    Passed to the job at start; a job resolves its store with
    entityManagerFactoryReference / entityManagerFactoryNamespace.
    """

    def __init__(self):
        self._handles: Dict[Tuple[HandleNamespace, str], RecordStore] = {}

    def register(
        self,
        name: str,
        store: RecordStore,
        namespace: HandleNamespace = HandleNamespace.PERSISTENCE_UNIT_NAME,
    ) -> None:
        self._handles[(namespace, name)] = store

    def resolve(
        self,
        reference: Optional[str] = None,
        namespace: Optional[HandleNamespace] = None,
    ) -> RecordStore:
        """
        Return the handle matching a reference.

        Without a reference, the only registered handle is returned.

        Raises:
            HandleNotFoundError: nothing matches, or several handles and no reference
            ConfigurationError: the reference is ambiguous across namespaces
        """
        if reference is None:
            stores = list(self._handles.values())
            if len(stores) == 1:
                return stores[0]
            if not stores:
                raise HandleNotFoundError("No record store handle is registered")
            raise HandleNotFoundError(
                "Several record store handles are registered; "
                "set entityManagerFactoryReference to pick one"
            )

        if namespace is not None:
            store = self._handles.get((namespace, reference))
            if store is None:
                raise HandleNotFoundError(
                    f"No record store handle named {reference!r} in namespace {namespace.value}"
                )
            return store

        matches = [store for (ns, name), store in self._handles.items() if name == reference]
        if not matches:
            raise HandleNotFoundError(f"No record store handle named {reference!r}")
        if len(matches) > 1:
            raise ConfigurationError(
                f"Record store reference {reference!r} exists in several namespaces; "
                f"set entityManagerFactoryNamespace"
            )
        return matches[0]
