"""
Indexing scope resolution.

Responsibilities:
- Turn requested entity type names into mapped classes, in request order.
- Attach at most one restriction per type (criteria XOR opaque query).
- Reject invalid combinations before any work starts.

Invariant:
A resolved IndexingScope is immutable.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from .errors import ScopeConfigurationError
from .store import EntityRegistry, primary_key_column


@dataclass(frozen=True, eq=False)
class Restriction:
    """
    Narrows which records of a type are indexed.

    criteria: SQLAlchemy boolean clauses, ANDed; composable with
        partition bounds, so the type stays partitionable.
    query: opaque SQL whose first column is the primary key; executed
        as-is and never validated, so the type gets a single partition.
    """
    criteria: Tuple[Any, ...] = ()
    query: Optional[str] = None

    def __post_init__(self):
        if self.criteria and self.query is not None:
            raise ScopeConfigurationError("A restriction is either criteria or a query, not both")
        if not self.criteria and self.query is None:
            raise ScopeConfigurationError("A restriction needs criteria or a query")

    @classmethod
    def by_criteria(cls, *clauses: Any) -> "Restriction":
        return cls(criteria=tuple(clauses))

    @classmethod
    def by_query(cls, sql: str) -> "Restriction":
        if not sql or not sql.strip():
            raise ScopeConfigurationError("A restriction query must not be empty")
        return cls(query=sql)

    @property
    def is_opaque(self) -> bool:
        return self.query is not None

    @property
    def allows_partitioning(self) -> bool:
        return not self.is_opaque


@dataclass(frozen=True)
class ScopedType:
    """One in-scope entity type."""
    name: str
    entity: type
    restriction: Optional[Restriction] = None
    tenant_id: Optional[str] = None

    @property
    def allows_partitioning(self) -> bool:
        return self.restriction is None or self.restriction.allows_partitioning


class IndexingScope:
    """Ordered, unique set of entity types with their restrictions."""

    def __init__(self, types: Sequence[ScopedType]):
        self._types = tuple(types)
        self._by_name = MappingProxyType({t.name: t for t in self._types})

    @property
    def types(self) -> Tuple[ScopedType, ...]:
        return self._types

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(t.name for t in self._types)

    def get(self, name: str) -> ScopedType:
        return self._by_name[name]

    def __iter__(self):
        return iter(self._types)

    def __len__(self) -> int:
        return len(self._types)

    def __repr__(self) -> str:
        return f"IndexingScope({', '.join(self.names)})"


def resolve_scope(
    entity_types: Iterable[str],
    registry: EntityRegistry,
    restrictions: Optional[Mapping[str, Restriction]] = None,
    hql: Optional[str] = None,
    criteria: Optional[Sequence[Any]] = None,
    tenant_id: Optional[str] = None,
) -> IndexingScope:
    """
    Resolve and validate the indexing scope.

    Args:
        entity_types: Requested type identifiers; duplicates are dropped
        registry: Known mapped classes
        restrictions: Per-type restrictions
        hql: Job-wide opaque query shorthand (single type only)
        criteria: Job-wide criteria shorthand (single type only)
        tenant_id: Tenant scoping applied to types mapping a tenant_id column

    Raises:
        ScopeConfigurationError: empty type set, unknown type, dual restriction
    """
    names: list = []
    for name in entity_types:
        name = (name or "").strip()
        if name and name not in names:
            names.append(name)
    if not names:
        raise ScopeConfigurationError("At least one entity type must be indexed")

    per_type: Dict[str, Restriction] = dict(restrictions or {})
    unknown = set(per_type) - set(names)
    if unknown:
        raise ScopeConfigurationError(
            f"Restrictions given for types outside the scope: {', '.join(sorted(unknown))}"
        )

    if hql is not None and criteria is not None:
        raise ScopeConfigurationError("customQueryHQL and customQueryCriteria are mutually exclusive")
    if hql is not None or criteria is not None:
        if len(names) != 1:
            raise ScopeConfigurationError(
                "A job-wide custom query restricts exactly one entity type, "
                f"got {len(names)}"
            )
        if names[0] in per_type:
            raise ScopeConfigurationError(
                f"Entity type {names[0]} is restricted both by a job-wide custom query "
                f"and a per-type restriction"
            )
        if hql is not None:
            per_type[names[0]] = Restriction.by_query(hql)
        else:
            per_type[names[0]] = Restriction.by_criteria(*criteria)

    scoped = []
    for name in names:
        entity = registry.get(name)
        primary_key_column(entity)
        scoped.append(ScopedType(
            name=name,
            entity=entity,
            restriction=per_type.get(name),
            tenant_id=tenant_id,
        ))
    return IndexingScope(scoped)
