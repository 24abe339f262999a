from functools import partial
from itertools import islice
import fnmatch

from sqlalchemy.sql import operators

from ..base.executor import Executor
from ..base.predicates import Predicate, PIVOT
from ..base.query import AGGREGATE_ALIAS, DESC, LockMode, PIVOT_PREFIX, QuerySpec, SubquerySpec
from ..base.relations import RelationKind
from ..errors import ExecutionError
from ..logger import logger
from .resolvers import FUNCTION_RESOLVERS


def _like(pattern):
    return pattern.replace('%', '*').replace('_', '?')


def _null_safe(op):
    return lambda value: lambda x: x is not None and value is not None and op(x, value)


# NULL never compares true, like in SQL. ``= None`` follows SQLAlchemy and
# means IS NULL.
OPERATOR_ADAPTERS = {
    operators.eq: lambda value: (lambda x: x is None) if value is None else (lambda x: x is not None and x == value),
    operators.ne: lambda value: (lambda x: x is not None) if value is None else (lambda x: x is not None and x != value),
    operators.lt: _null_safe(operators.lt),
    operators.le: _null_safe(operators.le),
    operators.gt: _null_safe(operators.gt),
    operators.ge: _null_safe(operators.ge),
    operators.is_: lambda value: lambda x: x is value,
    operators.is_not: lambda value: lambda x: x is not value,
    operators.like_op: lambda value: lambda x: x is not None and fnmatch.fnmatchcase(x, _like(value)),
    operators.not_like_op: lambda value: lambda x: x is not None and not fnmatch.fnmatchcase(x, _like(value)),
    operators.between_op: lambda bounds: lambda x: x is not None and bounds[0] <= x <= bounds[1],
    operators.not_between_op: lambda bounds: lambda x: x is not None and not (bounds[0] <= x <= bounds[1]),
    operators.in_op: lambda values: lambda x: x is not None and x in values,
    operators.not_in_op: lambda values: lambda x: x is not None and x not in values,
}


def _plain_accessor(row, attr_name):
    return row.get(attr_name)


class MemoryExecutor(Executor):
    """
    Executes query specs against a ``MemoryStore``.

    Correlated subqueries are evaluated per parent row, the way a database
    would run them, so pushed-down aggregates never produce a separate
    execute() call.
    """

    name = "memory"
    supports_concurrency = True

    def __init__(self, store):
        self.store = store

    def execute(self, spec: QuerySpec):
        logger.debug(f"Executing query on '{spec.entity.table}' with {len(spec.filters)} filter(s)")
        try:
            return self._execute(spec)
        except (TypeError, ValueError, KeyError) as e:
            raise ExecutionError(f"In-memory query on '{spec.entity.table}' failed: {e}", detail=spec) from e

    def _execute(self, spec: QuerySpec):
        if spec.lock is not LockMode.NONE:
            logger.debug(f"Lock mode '{spec.lock.value}' has no effect on in-memory tables")

        pairs = self._source(spec)

        for subquery in spec.subqueries:
            if subquery.is_exists:
                pairs = [
                    pair for pair in pairs
                    if bool(self._related(subquery, pair[0])) != subquery.negate
                ]

        if spec.aggregate is not None:
            fn, column = spec.aggregate
            return [{AGGREGATE_ALIAS: self._aggregate(fn, column, [row for row, _ in pairs])}]

        # Apply order by
        for column, direction in reversed(spec.order_by):
            pairs = sorted(
                pairs,
                key=lambda pair: (pair[0].get(column) is not None, pair[0].get(column)),
                reverse=direction == DESC,
            )

        # Offset / limit
        if spec.limit is not None or spec.offset:
            start = spec.offset or 0
            stop = start + spec.limit if spec.limit is not None else None
            pairs = islice(pairs, start, stop)

        return [self._project(spec, row, pivot_row) for row, pivot_row in pairs]

    def _source(self, spec: QuerySpec):
        """
        Filtered (row, pivot_row) pairs for the queried table, joined with the
        pivot table when ``spec.pivot`` is set.
        """
        tablename = spec.entity.table

        if spec.pivot is None:
            rows = self._filter_rows(tablename, self.store.rows(tablename), spec.filters)
            return [(row, None) for row in rows]

        pivot = spec.pivot.pivot
        pivot_rows = self._filter_rows(
            pivot.table,
            self.store.rows(pivot.table),
            [p for p in spec.filters if p.scope == PIVOT],
        )

        pairs = [
            (row, pivot_row)
            for pivot_row in pivot_rows
            for row in self.store.lookup(tablename, spec.pivot.related_key, pivot_row[pivot.related_pivot_key])
        ]
        return self._filter_pairs(pairs, [p for p in spec.filters if p.scope != PIVOT])

    def _filter_rows(self, tablename, rows, predicates):
        conditions = sorted(predicates, key=partial(self._get_condition_selectivity, tablename))

        stream = rows
        for idx, predicate in enumerate(conditions):
            if idx == 0 and predicate.function is None and not predicate.is_column_comparison:
                reduced = self.store.query_index(stream, tablename, predicate.field, predicate.operator, predicate.value)
                if reduced is not None:
                    stream = reduced
                    continue

            test = self._row_test(predicate)
            stream = [row for row in stream if test(row)]

        return list(stream)

    def _filter_pairs(self, pairs, predicates):
        for predicate in predicates:
            test = self._row_test(predicate)
            index = 1 if predicate.scope == PIVOT else 0
            pairs = [pair for pair in pairs if test(pair[index])]
        return pairs

    def _row_test(self, predicate: Predicate):
        if predicate.operator not in OPERATOR_ADAPTERS:
            raise NotImplementedError(f"Unsupported operator: {predicate.operator}")

        accessor = _plain_accessor
        value = predicate.value
        if predicate.function is not None:
            if predicate.function not in FUNCTION_RESOLVERS:
                raise NotImplementedError(f"Unsupported function: {predicate.function}")
            resolver = FUNCTION_RESOLVERS[predicate.function]
            accessor = resolver.accessor
            if not predicate.is_column_comparison:
                value = resolver.operand(value)

        field = predicate.field
        adapter = OPERATOR_ADAPTERS[predicate.operator]

        if predicate.is_column_comparison:
            other = predicate.value.name
            # NULL on either side never matches
            return lambda row: row.get(other) is not None and adapter(row.get(other))(accessor(row, field))

        test = adapter(value)
        return lambda row: test(accessor(row, field))

    def _get_condition_selectivity(self, tablename, predicate: Predicate):
        """
        Estimate the selectivity of a single WHERE condition.

        A lower value means the condition is expected to filter out more rows,
        so it should run first and get the index.
        """
        total_count = self.store.count(tablename)

        if predicate.function is not None or predicate.is_column_comparison:
            return total_count

        return self.store.index_manager.get_selectivity(
            tablename=tablename,
            colname=predicate.field,
            operator=predicate.operator,
            value=predicate.value,
            total_count=total_count,
        )

    def _related(self, subquery: SubquerySpec, parent_row):
        """
        (row, pivot_row) pairs reached from one parent row by the subquery's
        hops, filtered hop by hop.
        """
        rows = [parent_row]
        pairs = []
        for hop in subquery.hops:
            pairs = self._filter_pairs(
                [pair for row in rows for pair in self._hop_pairs(hop, row)],
                hop.filters,
            )
            rows = [row for row, _ in pairs]
        return pairs

    def _hop_pairs(self, hop, parent_row):
        relation = hop.relation
        kind = relation.kind
        key = parent_row.get(relation.local_key)
        tablename = hop.target.table

        if kind in (RelationKind.HAS_MANY, RelationKind.MORPH_MANY, RelationKind.BELONGS_TO):
            return [(row, None) for row in self.store.lookup(tablename, relation.foreign_key, key)]

        elif kind is RelationKind.BELONGS_TO_MANY:
            pivot = relation.pivot
            return [
                (row, pivot_row)
                for pivot_row in self.store.lookup(pivot.table, pivot.foreign_pivot_key, key)
                for row in self.store.lookup(tablename, relation.foreign_key, pivot_row[pivot.related_pivot_key])
            ]

        elif kind is RelationKind.HAS_MANY_THROUGH:
            return [
                (row, None)
                for middle in self.store.lookup(hop.through.table, relation.through_key, key)
                for row in self.store.lookup(tablename, relation.foreign_key, middle[relation.through_local_key])
            ]

        raise NotImplementedError(f"Unhandled relation kind: {kind}")

    @staticmethod
    def _aggregate(fn, column, rows):
        if fn == "count":
            if column is None:
                return len(rows)
            return sum(1 for row in rows if row.get(column) is not None)

        values = [row.get(column) for row in rows if row.get(column) is not None]
        if not values:
            return None

        if fn == "sum":
            return sum(values)
        elif fn == "min":
            return min(values)
        elif fn == "max":
            return max(values)
        elif fn == "avg":
            return sum(values) / len(values)

        raise NotImplementedError(f"Function not supported: {fn}")

    def _project(self, spec: QuerySpec, row, pivot_row):
        if spec.columns:
            result = {column: row.get(column) for column in spec.columns}
        else:
            result = dict(row)

        for subquery in spec.subqueries:
            if not subquery.is_exists:
                related = [r for r, _ in self._related(subquery, row)]
                result[subquery.alias] = self._aggregate(subquery.function, subquery.column, related)

        if pivot_row is not None:
            for name in spec.pivot.pivot.column_names:
                result[PIVOT_PREFIX + name] = pivot_row.get(name)

        return result
