from typing import Iterable

from .query import EagerLoadDirective, Hop, LoadMode, QuerySpec, SubquerySpec
from .relations import RelationDescriptor, RelationKind


def _through(registry, relation: RelationDescriptor):
    if relation.kind is RelationKind.HAS_MANY_THROUGH:
        return registry.lookup(relation.through)
    return None


def compile_subquery(registry, relation: RelationDescriptor, directive: EagerLoadDirective, via=()) -> SubquerySpec:
    """
    Turn an EXISTS / COUNT / AGGREGATE directive on ``relation`` into a
    correlated subquery description. Nothing is fetched for it: the adapter
    renders it inside the query that produces the parent rows.

    ``via`` lists the relations walked before ``relation`` for a nested path.
    """
    hops = tuple(
        Hop(r, registry.target_of(r), _through(registry, r), r.implicit_filters)
        for r in via
    )
    filters = relation.implicit_filters + directive.filters

    if directive.mode is LoadMode.EXISTS:
        return SubquerySpec(
            relation=relation,
            target=registry.target_of(relation),
            mode=LoadMode.EXISTS,
            through=_through(registry, relation),
            filters=filters,
            negate=directive.negate,
            via=hops,
        )

    return SubquerySpec(
        relation=relation,
        target=registry.target_of(relation),
        mode=directive.mode,
        through=_through(registry, relation),
        function=directive.function,
        column=directive.column,
        alias=directive.alias or f"{relation.name}_{directive.function}",
        filters=filters,
        via=hops,
    )


def compile_path(registry, steps, directive: EagerLoadDirective) -> SubquerySpec:
    """Compile a directive whose path was resolved to ``steps`` by the registry."""
    relations = [relation for _, relation in steps]
    return compile_subquery(registry, relations[-1], directive, via=relations[:-1])


def apply_pushdown(spec: QuerySpec, subqueries: Iterable[SubquerySpec]) -> QuerySpec:
    subqueries = tuple(subqueries)
    if not subqueries:
        return spec
    return spec.replace(subqueries=spec.subqueries + subqueries)
