from typing import Iterator, List, Optional

from ..logger import logger
from .entity import Record
from .planner import EagerLoadPlanner, drive
from .query import AGGREGATE_ALIAS, ASC, LoadMode, LockMode, QueryBuilder, QuerySpec


class BaseResolver:
    """Spec preparation shared by the blocking and the asyncio resolvers."""

    def __init__(self, registry, executor):
        self.registry = registry
        self.executor = executor
        self.planner = EagerLoadPlanner(registry)

    def query(self, entity) -> QueryBuilder:
        return QueryBuilder(self.registry, entity)

    @staticmethod
    def _spec(query) -> QuerySpec:
        if isinstance(query, QueryBuilder):
            return query.build()
        return query

    def _find_spec(self, entity, key, with_=()) -> QuerySpec:
        builder = self.query(entity)
        builder.where(builder.entity.primary_key, key)
        builder.with_(*with_)
        return builder.build().replace(limit=1)

    def _load_tree(self, records: List[Record], paths):
        builder = self.query(records[0].entity)
        builder.with_(*paths)
        _, tree = self.planner.prepare(builder.build())
        return tree

    def _filter_only(self, spec: QuerySpec) -> QuerySpec:
        """
        Reduce a spec to what decides which rows match: its filters and
        existence pushdowns, nested ones included. Loads, aggregate columns
        and the lock are dropped.
        """
        exists = tuple(d for d in spec.directives if d.mode is LoadMode.EXISTS)
        root, _ = self.planner.prepare(spec.replace(directives=exists, columns=(), lock=LockMode.NONE))
        return root

    def _count_spec(self, query) -> QuerySpec:
        spec = self._filter_only(self._spec(query))
        return spec.replace(order_by=(), limit=None, offset=None, aggregate=("count", None))

    def _exists_spec(self, query) -> QuerySpec:
        spec = self._spec(query)
        return self._filter_only(spec).replace(columns=(spec.entity.primary_key,), limit=1, order_by=())


class Resolver(BaseResolver):
    """
    Runs queries through an executor adapter and hydrates the results.

    Usage::

        resolver = Resolver(registry, executor)
        users = resolver.get(
            resolver.query("User").with_("posts.comments").with_count("posts")
        )
    """

    def get(self, query) -> List[Record]:
        spec = self._spec(query)

        root, tree = self.planner.prepare(spec)
        records = self.planner.hydrate(spec.entity, self.executor.execute(root))
        logger.debug(f"Fetched {len(records)} '{spec.entity.name}' record(s)")

        self.planner.attach(drive(self.planner.plan(tree, records), self.executor.execute))
        return records

    def first(self, query) -> Optional[Record]:
        records = self.get(self._spec(query).replace(limit=1))
        return records[0] if records else None

    def find(self, entity, key, with_=()) -> Optional[Record]:
        return self.first(self._find_spec(entity, key, with_))

    def count(self, query) -> int:
        """
        Count matching rows with one aggregate query instead of loading them.
        """
        rows = self.executor.execute(self._count_spec(query))
        return rows[0][AGGREGATE_ALIAS] if rows else 0

    def exists(self, query) -> bool:
        return bool(self.executor.execute(self._exists_spec(query)))

    def load(self, records: List[Record], *paths) -> List[Record]:
        """
        Eager load relations on records that were already fetched. Paths
        already loaded are reloaded and replaced.
        """
        if not records:
            return records

        tree = self._load_tree(records, paths)
        self.planner.attach(drive(self.planner.plan(tree, records), self.executor.execute))
        return records

    def load_missing(self, records: List[Record], *paths) -> List[Record]:
        """
        Like ``load`` but only where a path is not loaded yet. Each segment is
        checked: ``load_missing(users, "posts.comments")`` loads the comments
        of already loaded posts that lack them.
        """
        for path in paths:
            self._load_missing(records, path)
        return records

    def _load_missing(self, records: List[Record], path: str):
        segment, _, rest = path.partition(".")
        name = segment.partition(":")[0]

        missing = [r for r in records if not r.is_loaded(name)]
        if missing:
            self.load(missing, path)

        if not rest:
            return

        skipped = {id(r) for r in missing}
        related = []
        for record in records:
            if id(record) in skipped:
                continue
            value = record.relation(name)
            if isinstance(value, list):
                related.extend(value)
            elif value is not None:
                related.append(value)

        if related:
            self._load_missing(related, rest)

    def relation(self, record: Record, name: str):
        """
        Lazily load one relation of one record. Costs one fetch per call: use
        ``load`` or ``with_`` for collections.
        """
        if not record.is_loaded(name):
            self.load([record], name)
        return record.relation(name)

    def chunk(self, query, size: int) -> Iterator[List[Record]]:
        """
        Yield pages of ``size`` hydrated records. Eager loads run per page.
        """
        spec = self._spec(query)
        if not spec.order_by:
            spec = spec.replace(order_by=((spec.entity.primary_key, ASC),))

        offset = spec.offset or 0
        while True:
            page = self.get(spec.replace(limit=size, offset=offset))
            if not page:
                return
            yield page
            if len(page) < size:
                return
            offset += size
