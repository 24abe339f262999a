from collections import OrderedDict
from typing import Dict, List, Tuple

from sqlalchemy.sql import operators

from ..helpers.ordered_set import OrderedSet
from ..helpers.utils import _dedup_chain, split_prefixed
from ..logger import logger
from .entity import EntityType, Record
from .predicates import Predicate, PIVOT
from .pushdown import apply_pushdown, compile_path
from .query import EagerLoadDirective, LockMode, PivotJoin, QuerySpec, PIVOT_PREFIX
from .relations import RelationDescriptor, RelationKind


class LoadNode:
    """
    One relation path in the load tree.

    ``directive`` is the explicit LOAD directive for the path, or None when
    the path is only loaded because a longer path goes through it.
    """

    def __init__(self, name, relation: RelationDescriptor = None, target: EntityType = None, path=None):
        self.name = name
        self.path = path
        self.relation = relation
        self.target = target
        self.directive = None
        self.children: "OrderedDict[str, LoadNode]" = OrderedDict()
        self.subqueries = []

    def child(self, registry, relation: RelationDescriptor) -> "LoadNode":
        if relation.name not in self.children:
            path = f"{self.path}.{relation.name}" if self.path else relation.name
            self.children[relation.name] = LoadNode(relation.name, relation, registry.target_of(relation), path)
        return self.children[relation.name]

    def __repr__(self):
        return f"LoadNode({self.path or '<root>'})"


# (record, relation name, value) applied once every fetch succeeded
Attachment = Tuple[Record, str, object]


class EagerLoadPlanner:
    """
    Turns the eager directives of a query into batched fetches.

    ``plan()`` is a generator: it yields a wave of independent ``QuerySpec``
    and expects the list of row lists back, in the same order. Every relation
    path costs exactly one fetch (two for has-many-through), whatever the
    number of parent records. Attachments are returned, not applied, so a
    failing fetch leaves every record untouched.
    """

    def __init__(self, registry):
        self.registry = registry

    def build_tree(self, entity: EntityType, directives) -> LoadNode:
        root = LoadNode(None, target=entity)

        for directive in directives:
            steps = self.registry.resolve_path(entity, directive.path)

            # Pushdowns, nested or not, are correlated with the root query
            if directive.is_pushdown:
                root.subqueries.append(compile_path(self.registry, steps, directive))
                continue

            node = root
            for _, relation in steps:
                node = node.child(self.registry, relation)
            node.directive = directive

        return root

    def prepare(self, spec: QuerySpec) -> Tuple[QuerySpec, LoadNode]:
        """
        Split a query into the root query to execute (pushdowns folded in,
        lock kept) and the load tree for its relations.
        """
        tree = self.build_tree(spec.entity, spec.directives)

        root = apply_pushdown(spec.replace(directives=()), tree.subqueries)
        if root.columns:
            root = root.replace(columns=self._with_keys(root.columns, spec.entity, tree))

        return root, tree

    def hydrate(self, entity: EntityType, rows) -> List[Record]:
        records = []
        for row in rows:
            fields, pivot = split_prefixed(row, PIVOT_PREFIX)
            records.append(Record(entity, fields, pivot=pivot or None))
        return records

    @staticmethod
    def attach(attachments: List[Attachment]):
        for record, name, value in attachments:
            record.set_relation(name, value)

    def plan(self, tree: LoadNode, records: List[Record]):
        attachments = []
        active = [self._start(self._load(child, records)) for child in tree.children.values()]

        while active:
            wave, active = active, []
            results = yield [spec for _, spec in wave]

            for (task, _), rows in zip(wave, results):
                try:
                    active.append((task, task.send(rows)))
                except StopIteration as stop:
                    children, staged = stop.value
                    attachments.extend(staged)
                    active.extend(self._start(child) for child in children)

        return attachments

    @staticmethod
    def _start(task):
        return task, next(task)

    def _load(self, node: LoadNode, parents: List[Record]):
        relation = node.relation
        kind = relation.kind
        keys = self._batch_keys(parents, relation.local_key)

        logger.debug(f"Eager loading '{node.path}' ({kind.value}) for {len(keys)} distinct key(s)")

        if kind is RelationKind.HAS_MANY_THROUGH:
            through = self.registry.lookup(relation.through)
            through_rows = yield QuerySpec(
                entity=through,
                columns=(relation.through_local_key, relation.through_key),
                filters=(Predicate(relation.through_key, operators.in_op, tuple(keys)),),
            )

            # intermediate key => parent keys
            links: Dict[object, list] = {}
            for row in through_rows:
                if row[relation.through_local_key] is None:
                    continue
                links.setdefault(row[relation.through_local_key], []).append(row[relation.through_key])

            rows = yield self._fetch_spec(node, Predicate(relation.foreign_key, operators.in_op, tuple(links)))
            records = self.hydrate(node.target, rows)

            groups = {}
            for record in records:
                for parent_key in links.get(record.fields[relation.foreign_key], []):
                    groups.setdefault(parent_key, []).append(record)

        elif kind is RelationKind.BELONGS_TO_MANY:
            pivot = relation.pivot
            rows = yield self._fetch_spec(
                node,
                Predicate(pivot.foreign_pivot_key, operators.in_op, tuple(keys), scope=PIVOT),
                pivot=PivotJoin(pivot, related_key=relation.foreign_key),
            )
            records = self.hydrate(node.target, rows)

            groups = {}
            for record in records:
                groups.setdefault(record.pivot[pivot.foreign_pivot_key], []).append(record)

        elif kind in (RelationKind.HAS_MANY, RelationKind.MORPH_MANY, RelationKind.BELONGS_TO):
            rows = yield self._fetch_spec(node, Predicate(relation.foreign_key, operators.in_op, tuple(keys)))
            records = self.hydrate(node.target, rows)

            groups = {}
            for record in records:
                groups.setdefault(record.fields[relation.foreign_key], []).append(record)

        else:
            raise NotImplementedError(f"Unhandled relation kind: {kind}")

        staged = []
        for parent in parents:
            matches = groups.get(parent.fields.get(relation.local_key), [])
            if relation.is_to_one:
                staged.append((parent, node.name, matches[0] if matches else None))
            else:
                staged.append((parent, node.name, list(matches)))

        loaded = list(_dedup_chain(records))
        children = [self._load(child, loaded) for child in node.children.values()]
        return children, staged

    def _fetch_spec(self, node: LoadNode, key_filter: Predicate, pivot=None) -> QuerySpec:
        directive = node.directive or EagerLoadDirective(path=node.path)
        relation = node.relation

        columns = directive.columns
        if columns:
            required = [node.target.primary_key]
            if pivot is None:
                required.append(relation.foreign_key)
            columns = self._with_keys(tuple(required) + tuple(columns), node.target, node)

        # Never propagate the root lock to secondary fetches
        return QuerySpec(
            entity=node.target,
            columns=columns,
            filters=(key_filter,) + relation.implicit_filters + directive.filters,
            order_by=directive.order_by,
            lock=LockMode.NONE,
            pivot=pivot,
        )

    @staticmethod
    def _with_keys(columns, entity: EntityType, node: LoadNode):
        """Add the local keys the children of ``node`` batch on to a projection."""
        needed = OrderedSet(columns)
        for child in node.children.values():
            needed.add(child.relation.local_key)
        for subquery in node.subqueries:
            needed.add(subquery.correlation_key)
        entity.check_fields(needed)
        return tuple(needed)

    @staticmethod
    def _batch_keys(parents: List[Record], local_key: str) -> OrderedSet:
        keys = OrderedSet()
        for parent in parents:
            value = parent.fields.get(local_key)
            if value is not None:
                keys.add(value)
        return keys


def drive(plan, execute):
    """Run a plan generator to completion with a blocking ``execute(spec)``."""
    try:
        specs = next(plan)
        while True:
            specs = plan.send([execute(spec) for spec in specs])
    except StopIteration as stop:
        return stop.value
