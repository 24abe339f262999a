import asyncio
from typing import List, Optional

from ..base.entity import Record
from ..base.query import AGGREGATE_ALIAS
from ..base.resolver import BaseResolver
from ..logger import logger


class AsyncResolver(BaseResolver):
    """
    asyncio flavour of ``Resolver``.

    Sibling relation paths of one wave are dispatched with
    ``asyncio.gather`` when the executor supports concurrent queries, and one
    after the other otherwise. Either way each path costs one query.
    """

    async def _drive(self, plan):
        try:
            specs = next(plan)
            while True:
                if self.executor.supports_concurrency:
                    results = await self._gather(specs)
                else:
                    results = [await self.executor.execute(spec) for spec in specs]
                specs = plan.send(list(results))
        except StopIteration as stop:
            return stop.value

    async def _gather(self, specs):
        """
        Run one wave concurrently. When a fetch fails the sibling fetches still
        running are cancelled and awaited before the error propagates.
        """
        tasks = [asyncio.ensure_future(self.executor.execute(spec)) for spec in specs]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def get(self, query) -> List[Record]:
        spec = self._spec(query)

        root, tree = self.planner.prepare(spec)
        records = self.planner.hydrate(spec.entity, await self.executor.execute(root))
        logger.debug(f"Fetched {len(records)} '{spec.entity.name}' record(s)")

        self.planner.attach(await self._drive(self.planner.plan(tree, records)))
        return records

    async def first(self, query) -> Optional[Record]:
        records = await self.get(self._spec(query).replace(limit=1))
        return records[0] if records else None

    async def find(self, entity, key, with_=()) -> Optional[Record]:
        return await self.first(self._find_spec(entity, key, with_))

    async def count(self, query) -> int:
        rows = await self.executor.execute(self._count_spec(query))
        return rows[0][AGGREGATE_ALIAS] if rows else 0

    async def exists(self, query) -> bool:
        return bool(await self.executor.execute(self._exists_spec(query)))

    async def load(self, records: List[Record], *paths) -> List[Record]:
        if not records:
            return records

        tree = self._load_tree(records, paths)
        self.planner.attach(await self._drive(self.planner.plan(tree, records)))
        return records
