from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
from itertools import count
from typing import Optional, Tuple

from sqlalchemy.sql import operators

from ..errors import UnknownField, UnsupportedAggregate
from .entity import EntityType
from .predicates import (
    ColumnRef, Predicate, make_predicate, resolve_operator,
    SUPPORTED_FUNCTIONS, TARGET, PIVOT,
)
from .relations import Pivot, RelationDescriptor, RelationKind

AGGREGATE_FUNCTIONS = ("count", "sum", "avg", "min", "max")

# Label prefix of pivot columns in rows returned for a pivot join
PIVOT_PREFIX = "pivot__"

# Column holding the result of a root aggregate query
AGGREGATE_ALIAS = "aggregate"

ASC = "asc"
DESC = "desc"


class LockMode(Enum):
    NONE = None
    FOR_UPDATE = "for_update"
    SHARED = "shared"


class LoadMode(Enum):
    LOAD = "load"
    COUNT = "count"
    AGGREGATE = "aggregate"
    EXISTS = "exists"


PUSHDOWN_MODES = (LoadMode.COUNT, LoadMode.AGGREGATE, LoadMode.EXISTS)


@dataclass(frozen=True)
class EagerLoadDirective:
    """
    What to do with one relation path.

    ``LOAD`` fetches the related records in one batch per path. ``COUNT``,
    ``AGGREGATE`` and ``EXISTS`` are pushed down into the query producing the
    parent records and never fetch related rows.
    """
    mode: LoadMode = LoadMode.LOAD
    path: str = ""
    columns: Tuple[str, ...] = ()
    filters: Tuple = ()
    order_by: Tuple[Tuple[str, str], ...] = ()
    function: Optional[str] = None
    column: Optional[str] = None
    alias: Optional[str] = None
    negate: bool = False

    def __post_init__(self):
        if self.mode is LoadMode.COUNT:
            object.__setattr__(self, "function", "count")

        if self.mode in (LoadMode.COUNT, LoadMode.AGGREGATE):
            fn = (self.function or "").lower()
            if fn not in AGGREGATE_FUNCTIONS:
                raise UnsupportedAggregate(
                    f"Unsupported aggregate function {self.function!r}, expected one of {', '.join(AGGREGATE_FUNCTIONS)}"
                )
            if fn != "count" and not self.column:
                raise ValueError(f"Aggregate '{fn}' needs a column")
            object.__setattr__(self, "function", fn)

        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "filters", tuple(self.filters))
        object.__setattr__(self, "order_by", tuple(_order_clause(o) for o in self.order_by))

    @classmethod
    def load(cls, columns=(), filters=(), order_by=()):
        return cls(LoadMode.LOAD, columns=columns, filters=filters, order_by=order_by)

    @classmethod
    def count(cls, filters=(), alias=None):
        return cls(LoadMode.COUNT, filters=filters, alias=alias)

    @classmethod
    def aggregate(cls, function, column, filters=(), alias=None):
        return cls(LoadMode.AGGREGATE, function=function, column=column, filters=filters, alias=alias)

    @classmethod
    def exists(cls, filters=(), negate=False):
        return cls(LoadMode.EXISTS, filters=filters, negate=negate)

    @property
    def segments(self):
        return self.path.split(".")

    @property
    def relation_name(self):
        return self.segments[-1]

    @property
    def is_pushdown(self):
        return self.mode in PUSHDOWN_MODES

    @property
    def result_alias(self):
        if self.alias:
            return self.alias
        return f"{self.relation_name}_{self.function}"


@dataclass(frozen=True)
class PivotJoin:
    """Join of the queried entity with a pivot table on ``related_key``."""
    pivot: Pivot
    related_key: str


@dataclass(frozen=True)
class Hop:
    """One intermediate relation of a nested subquery path."""
    relation: RelationDescriptor
    target: EntityType
    through: Optional[EntityType] = None
    filters: Tuple[Predicate, ...] = ()


@dataclass(frozen=True)
class SubquerySpec:
    """
    Correlated subquery folded into a query: an ``EXISTS`` filter or an
    aggregate column over ``relation``.

    For a nested path ``a.b`` the hops leading to the last relation are kept
    in ``via``: the first hop is correlated with the outer query's row, each
    following one with the previous hop's target.
    """
    relation: RelationDescriptor
    target: EntityType
    mode: LoadMode
    through: Optional[EntityType] = None
    function: Optional[str] = None
    column: Optional[str] = None
    alias: Optional[str] = None
    filters: Tuple[Predicate, ...] = ()
    negate: bool = False
    via: Tuple[Hop, ...] = ()

    @property
    def is_exists(self):
        return self.mode is LoadMode.EXISTS

    @property
    def hops(self) -> Tuple[Hop, ...]:
        return self.via + (Hop(self.relation, self.target, self.through, self.filters),)

    @property
    def correlation_key(self) -> str:
        """Column of the outer row the subquery is correlated on."""
        return self.hops[0].relation.local_key


@dataclass(frozen=True)
class QuerySpec:
    entity: EntityType
    columns: Tuple[str, ...] = ()
    filters: Tuple[Predicate, ...] = ()
    order_by: Tuple[Tuple[str, str], ...] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None
    lock: LockMode = LockMode.NONE
    directives: Tuple[EagerLoadDirective, ...] = ()

    # Filled by the planner / pushdown compiler
    pivot: Optional[PivotJoin] = None
    subqueries: Tuple[SubquerySpec, ...] = ()
    aggregate: Optional[Tuple[str, Optional[str]]] = None

    def replace(self, **changes) -> "QuerySpec":
        return replace(self, **changes)


def _order_clause(clause):
    if isinstance(clause, str):
        return (clause, ASC)
    column, direction = clause
    direction = direction.lower()
    if direction not in (ASC, DESC):
        raise ValueError(f"Invalid sort direction: {direction!r}")
    return (column, direction)


_MISSING = object()


class QueryBuilder:
    """
    Fluent accumulator for a ``QuerySpec``.

    Every field and relation path is checked against the registry when it is
    added, so a spec that builds is a spec the planner can run.
    """

    def __init__(self, registry, entity):
        self.registry = registry
        self.entity = entity if isinstance(entity, EntityType) else registry.lookup(entity)

        self._columns = []
        self._filters = []
        self._order_by = []
        self._limit = None
        self._offset = None
        self._lock = LockMode.NONE
        self._directives = OrderedDict()
        self._exists_counter = count()

    # Projection / filtering

    def select(self, *columns):
        self.entity.check_fields(columns)
        self._columns.extend(c for c in columns if c not in self._columns)
        return self

    def where(self, field, op, value=_MISSING):
        if value is _MISSING:
            op, value = operators.eq, op
        return self._add_filter(make_predicate((field, op, value)))

    def where_in(self, field, values):
        return self.where(field, "in", values)

    def where_not_in(self, field, values):
        return self.where(field, "not in", values)

    def where_null(self, field):
        return self.where(field, "is", None)

    def where_not_null(self, field):
        return self.where(field, "is not", None)

    def where_between(self, field, low, high):
        return self.where(field, "between", (low, high))

    def where_column(self, field, op, other=_MISSING):
        if other is _MISSING:
            op, other = operators.eq, op
        self.entity.check_fields([other])
        return self._add_filter(Predicate(field, resolve_operator(op), ColumnRef(other)))

    def where_date(self, field, op, value=_MISSING):
        if value is _MISSING:
            op, value = operators.eq, op
        return self._add_filter(Predicate(field, resolve_operator(op), value, function="date"))

    def _add_filter(self, predicate: Predicate):
        self.entity.check_fields([predicate.field])
        if predicate.function is not None and predicate.function not in SUPPORTED_FUNCTIONS:
            raise ValueError(f"Unsupported function: {predicate.function}")
        self._filters.append(predicate)
        return self

    # Ordering / paging / locking

    def order_by(self, field, direction=ASC):
        self.entity.check_fields([field])
        self._order_by.append(_order_clause((field, direction)))
        return self

    def latest(self, field="created_at"):
        return self.order_by(field, DESC)

    def oldest(self, field="created_at"):
        return self.order_by(field, ASC)

    def limit(self, n):
        self._limit = n
        return self

    take = limit

    def offset(self, n):
        self._offset = n
        return self

    skip = offset

    def lock_for_update(self):
        self._lock = LockMode.FOR_UPDATE
        return self

    def shared_lock(self):
        self._lock = LockMode.SHARED
        return self

    # Relations

    def with_relation(self, path, directive=None):
        directive = replace(directive or EagerLoadDirective(), path=path)
        directive = self._validate_directive(directive)

        if directive.mode is LoadMode.LOAD:
            key = ("load", path)
        elif directive.mode is LoadMode.EXISTS:
            key = ("exists", path, next(self._exists_counter))
        else:
            key = ("aggregate", path, directive.result_alias)

        self._directives.pop(key, None)
        self._directives[key] = directive
        return self

    def with_(self, *paths, **constraints):
        """
        Eager load relations: ``with_("posts:id,title", "comments.author")``.

        Keyword arguments map a path to a list of filters for that path.
        """
        for item in paths:
            path, _, columns = item.partition(":")
            columns = tuple(c.strip() for c in columns.split(",") if c.strip())
            self.with_relation(path, EagerLoadDirective.load(
                columns=columns,
                filters=constraints.get(path, ()),
            ))
        return self

    def with_count(self, path, filters=(), alias=None):
        return self.with_relation(path, EagerLoadDirective.count(filters=filters, alias=alias))

    def with_aggregate(self, path, function, column, filters=(), alias=None):
        return self.with_relation(path, EagerLoadDirective.aggregate(function, column, filters=filters, alias=alias))

    def with_sum(self, path, column, **kwargs):
        return self.with_aggregate(path, "sum", column, **kwargs)

    def with_avg(self, path, column, **kwargs):
        return self.with_aggregate(path, "avg", column, **kwargs)

    def with_min(self, path, column, **kwargs):
        return self.with_aggregate(path, "min", column, **kwargs)

    def with_max(self, path, column, **kwargs):
        return self.with_aggregate(path, "max", column, **kwargs)

    def where_has(self, path, filters=()):
        return self.with_relation(path, EagerLoadDirective.exists(filters=filters))

    def where_doesnt_have(self, path, filters=()):
        return self.with_relation(path, EagerLoadDirective.exists(filters=filters, negate=True))

    def _validate_directive(self, directive: EagerLoadDirective) -> EagerLoadDirective:
        steps = self.registry.resolve_path(self.entity, directive.path)
        _, relation = steps[-1]
        target = self.registry.target_of(relation)

        target.check_fields(directive.columns)
        target.check_fields([column for column, _ in directive.order_by])
        if directive.column:
            target.check_fields([directive.column])

        filters = tuple(
            scope_predicate(relation, target, make_predicate(f))
            for f in directive.filters
        )
        return replace(directive, filters=filters)

    def build(self) -> QuerySpec:
        return QuerySpec(
            entity=self.entity,
            columns=tuple(self._columns),
            filters=tuple(self._filters),
            order_by=tuple(self._order_by),
            limit=self._limit,
            offset=self._offset,
            lock=self._lock,
            directives=tuple(self._directives.values()),
        )


def scope_predicate(relation: RelationDescriptor, target: EntityType, predicate: Predicate) -> Predicate:
    """
    Decide which table a relation filter applies to.

    Fields of the related entity win; pivot columns of a many-to-many relation
    are accepted as-is or with a ``pivot.`` prefix.
    """
    pivot_columns = relation.pivot.column_names if relation.kind is RelationKind.BELONGS_TO_MANY else ()

    field = predicate.field
    if field.startswith(PIVOT + ".") and predicate.scope == TARGET:
        field = field[len(PIVOT) + 1:]
        if field in pivot_columns:
            return replace(predicate, field=field, scope=PIVOT)
        raise UnknownField(f"Unknown pivot field '{field}' on relation '{relation.name}'")

    if predicate.scope == PIVOT:
        if field in pivot_columns:
            return predicate
        raise UnknownField(f"Unknown pivot field '{field}' on relation '{relation.name}'")

    if target.has_field(field):
        if predicate.is_column_comparison:
            target.check_fields([predicate.value.name])
        return predicate

    if field in pivot_columns:
        return replace(predicate, scope=PIVOT)

    raise UnknownField(f"Unknown field '{field}' on entity '{target.name}' (relation '{relation.name}')")
