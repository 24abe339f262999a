from sqlalchemy import select, func, literal
from sqlalchemy.sql import operators

from ..base.predicates import Predicate, PIVOT
from ..base.query import AGGREGATE_ALIAS, DESC, LockMode, PIVOT_PREFIX, QuerySpec, SubquerySpec
from ..base.relations import RelationKind
from ..errors import ExecutionError


class QueryCompiler:
    """
    Renders a ``QuerySpec`` as one SQLAlchemy ``Select``.

    Pushed-down directives become correlated subqueries of that statement:
    ``EXISTS (...)`` in the WHERE clause, or a labelled scalar subquery in the
    columns clause.
    """

    def __init__(self, metadata):
        self.metadata = metadata

    def table(self, name):
        try:
            return self.metadata.tables[name]
        except KeyError:
            raise ExecutionError(f"No table '{name}' in metadata", detail=sorted(self.metadata.tables))

    def compile(self, spec: QuerySpec):
        table = self.table(spec.entity.table)

        if spec.columns:
            columns = [table.c[name] for name in spec.columns]
        else:
            columns = list(table.c)

        source = table
        pivot_table = None
        if spec.pivot is not None:
            pivot = spec.pivot.pivot
            pivot_table = self.table(pivot.table)
            columns += [pivot_table.c[name].label(PIVOT_PREFIX + name) for name in pivot.column_names]
            source = table.join(
                pivot_table,
                pivot_table.c[pivot.related_pivot_key] == table.c[spec.pivot.related_key],
            )

        stmt = select(*columns).select_from(source)

        for predicate in spec.filters:
            stmt = stmt.where(self.clause(predicate, table, pivot_table))

        for subquery in spec.subqueries:
            if subquery.is_exists:
                exists = self._related_select(subquery, table, literal(1)).exists()
                stmt = stmt.where(~exists if subquery.negate else exists)
            else:
                stmt = stmt.add_columns(self._aggregate_subquery(subquery, table))

        if spec.aggregate is not None:
            return self._root_aggregate(stmt, spec)

        for column, direction in spec.order_by:
            stmt = stmt.order_by(table.c[column].desc() if direction == DESC else table.c[column].asc())

        if spec.limit is not None:
            stmt = stmt.limit(spec.limit)
        if spec.offset:
            stmt = stmt.offset(spec.offset)

        if spec.lock is LockMode.FOR_UPDATE:
            stmt = stmt.with_for_update()
        elif spec.lock is LockMode.SHARED:
            stmt = stmt.with_for_update(read=True)

        return stmt

    def clause(self, predicate: Predicate, table, pivot_table=None):
        source = pivot_table if predicate.scope == PIVOT else table
        if source is None:
            raise ExecutionError(f"Pivot filter {predicate!r} used without a pivot join")

        col = source.c[predicate.field]
        if predicate.function is not None:
            col = getattr(func, predicate.function)(col)

        value = predicate.value
        if predicate.is_column_comparison:
            value = source.c[value.name]

        op = predicate.operator
        if op is operators.in_op:
            return col.in_(value)
        elif op is operators.not_in_op:
            return col.not_in(value)
        elif op is operators.between_op:
            return col.between(value[0], value[1])
        elif op is operators.not_between_op:
            return ~col.between(value[0], value[1])
        elif op is operators.like_op:
            return col.like(value)
        elif op is operators.not_like_op:
            return col.not_like(value)
        elif op is operators.is_:
            return col.is_(value)
        elif op is operators.is_not:
            return col.is_not(value)

        # eq, ne, lt, le, gt, ge
        return op(col, value)

    def _related_select(self, subquery: SubquerySpec, parent, what):
        """
        ``SELECT <what> FROM <hop targets> WHERE <hop links> AND <filters>``,
        the first hop correlated with ``parent``.
        """
        froms = []
        conditions = []
        source = parent
        for hop in subquery.hops:
            target = self.table(hop.target.table).alias()
            from_, link, pivot_table = self._hop(hop, target, source)
            froms.append(from_)
            conditions.append(link)
            conditions.extend(self.clause(p, target, pivot_table) for p in hop.filters)
            source = target

        if callable(what):
            what = what(source)

        stmt = select(what).select_from(*froms).where(*conditions)

        return stmt.correlate(parent)

    def _hop(self, hop, target, source):
        """(FROM item, link to ``source``, pivot alias or None) for one hop."""
        relation = hop.relation
        kind = relation.kind

        if kind in (RelationKind.HAS_MANY, RelationKind.MORPH_MANY, RelationKind.BELONGS_TO):
            return target, target.c[relation.foreign_key] == source.c[relation.local_key], None

        elif kind is RelationKind.BELONGS_TO_MANY:
            pivot = relation.pivot
            pivot_table = self.table(pivot.table).alias()
            from_ = target.join(
                pivot_table,
                pivot_table.c[pivot.related_pivot_key] == target.c[relation.foreign_key],
            )
            return from_, pivot_table.c[pivot.foreign_pivot_key] == source.c[relation.local_key], pivot_table

        elif kind is RelationKind.HAS_MANY_THROUGH:
            through = self.table(hop.through.table).alias()
            from_ = target.join(
                through,
                through.c[relation.through_local_key] == target.c[relation.foreign_key],
            )
            return from_, through.c[relation.through_key] == source.c[relation.local_key], None

        raise NotImplementedError(f"Unhandled relation kind: {kind}")

    def _aggregate_subquery(self, subquery: SubquerySpec, parent):
        def aggregate(target):
            if subquery.column is None:
                return func.count()
            return getattr(func, subquery.function)(target.c[subquery.column])

        stmt = self._related_select(subquery, parent, aggregate)
        return stmt.scalar_subquery().label(subquery.alias)

    @staticmethod
    def _root_aggregate(stmt, spec: QuerySpec):
        fn, column = spec.aggregate
        inner = stmt.subquery()
        if column is None:
            value = func.count()
        else:
            value = getattr(func, fn)(inner.c[column])
        return select(value.label(AGGREGATE_ALIAS)).select_from(inner)
