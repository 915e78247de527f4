"""
Primary key enumeration.

Produces a lazy, forward-only sequence of primary keys for one entity
type. Criteria-restricted and unrestricted types are enumerated in
ascending key order with server-side cursors; opaque queries are
executed as-is and streamed in whatever order they return.
"""

from itertools import islice
from typing import Any, Iterator, Optional

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from .config import LOAD_ALL_KEYS
from .errors import RecordLoadError, ScopeQueryError
from .logger import get_logger
from .scope import ScopedType
from .store import RecordStore, is_systemic_store_error, primary_key_attribute

logger = get_logger()

TENANT_COLUMN = "tenant_id"


class PrimaryKeyEnumerator:
    """
    Enumerates primary keys of in-scope types.

    Args:
        store: Record store handle
        fetch_size: Keys per cursor round trip, or LOAD_ALL_KEYS to fetch
            the whole result in one go
        max_results: Cap on keys enumerated per type
    """

    def __init__(self, store: RecordStore, fetch_size: int = 1000, max_results: Optional[int] = None):
        self.store = store
        self.fetch_size = fetch_size
        self.max_results = max_results

    def enumerate(
        self,
        scoped: ScopedType,
        lower: Any = None,
        upper: Any = None,
        after: Any = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> Iterator[Any]:
        """
        Yield primary keys of one type.

        Args:
            scoped: The in-scope type and its restriction
            lower, upper: Inclusive key bounds (ignored for opaque queries)
            after: Exclusive lower bound used when resuming (ignored for opaque queries)
            skip: Keys to drop from the start of the sequence
            limit: Maximum keys to yield after skipping

        Raises:
            ScopeQueryError: the restriction cannot be executed
            RecordLoadError: the store is unreachable (systemic)
        """
        if scoped.restriction is not None and scoped.restriction.is_opaque:
            keys = self._enumerate_query(scoped)
            stop = None if limit is None else skip + limit
            return islice(keys, skip, stop)

        keys = self._enumerate_ordered(scoped, lower, upper, after, limit if not skip else None)
        if skip:
            stop = None if limit is None else skip + limit
            return islice(keys, skip, stop)
        return keys

    def _enumerate_ordered(
        self, scoped: ScopedType, lower: Any, upper: Any, after: Any, limit: Optional[int]
    ) -> Iterator[Any]:
        entity = scoped.entity
        pk = primary_key_attribute(entity)

        with self.store.session() as session:
            query = session.query(pk)
            if scoped.restriction is not None:
                query = query.filter(*scoped.restriction.criteria)
            if scoped.tenant_id is not None and TENANT_COLUMN in inspect(entity).column_attrs.keys():
                query = query.filter(getattr(entity, TENANT_COLUMN) == scoped.tenant_id)
            if lower is not None:
                query = query.filter(pk >= lower)
            if upper is not None:
                query = query.filter(pk <= upper)
            if after is not None:
                query = query.filter(pk > after)
            query = query.order_by(pk)
            caps = [c for c in (self.max_results, limit) if c is not None]
            if caps:
                query = query.limit(min(caps))

            try:
                if self.fetch_size == LOAD_ALL_KEYS:
                    rows = query.all()
                else:
                    rows = query.yield_per(self.fetch_size)
                for row in rows:
                    yield row[0]
            except SQLAlchemyError as e:
                raise _enumeration_error(scoped, e) from e

    def _enumerate_query(self, scoped: ScopedType) -> Iterator[Any]:
        sql = scoped.restriction.query
        if scoped.tenant_id is not None:
            logger.debug("Tenant scoping does not apply to custom queries", entity_type=scoped.name)

        with self.store.session() as session:
            try:
                connection = session.connection().execution_options(stream_results=True)
                result = connection.execute(text(sql))
                emitted = 0
                while True:
                    if self.fetch_size == LOAD_ALL_KEYS:
                        rows = result.fetchall()
                    else:
                        rows = result.fetchmany(self.fetch_size)
                    if not rows:
                        break
                    for row in rows:
                        if self.max_results is not None and emitted >= self.max_results:
                            return
                        emitted += 1
                        yield row[0]
                    if self.fetch_size == LOAD_ALL_KEYS:
                        break
            except SQLAlchemyError as e:
                raise _enumeration_error(scoped, e) from e


def _enumeration_error(scoped: ScopedType, error: SQLAlchemyError) -> Exception:
    if is_systemic_store_error(error):
        return RecordLoadError(
            f"Record store unreachable while enumerating {scoped.name} keys: {error}",
            systemic=True,
        )
    return ScopeQueryError(f"Restriction for {scoped.name} failed: {error}")
