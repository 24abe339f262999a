from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from ..base.executor import Executor
from ..base.query import QuerySpec
from ..errors import ExecutionError
from ..logger import logger
from ..memory.executor import MemoryExecutor
from ..sql.compiler import QueryCompiler


class AsyncExecutor(Executor):
    """Awaitable counterpart of ``Executor``."""

    async def execute(self, spec: QuerySpec):
        raise NotImplementedError


class AsyncSqlAlchemyExecutor(AsyncExecutor):
    """
    Executes query specs through SQLAlchemy's asyncio extension.

    With an ``AsyncEngine`` every query gets its own connection, so
    independent queries may run concurrently. An ``AsyncConnection`` runs one
    statement at a time.
    """

    name = "sqlalchemy+asyncio"

    def __init__(self, bind, metadata):
        self.bind = bind
        self.compiler = QueryCompiler(metadata)

    @property
    def supports_concurrency(self):
        return isinstance(self.bind, AsyncEngine)

    async def execute(self, spec: QuerySpec):
        stmt = self.compiler.compile(spec)
        logger.debug(f"Executing {stmt}")

        try:
            if isinstance(self.bind, AsyncEngine):
                async with self.bind.connect() as conn:
                    result = await conn.execute(stmt)
                    return [dict(row._mapping) for row in result]

            result = await self.bind.execute(stmt)
            return [dict(row._mapping) for row in result]

        except SQLAlchemyError as e:
            raise ExecutionError(f"Query on '{spec.entity.table}' failed: {e}", detail=str(e)) from e


class AsyncMemoryExecutor(AsyncExecutor):
    name = "memory+asyncio"
    supports_concurrency = True

    def __init__(self, store):
        self._executor = MemoryExecutor(store)

    @property
    def store(self):
        return self._executor.store

    async def execute(self, spec: QuerySpec):
        return self._executor.execute(spec)
