import asyncio

import pytest

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine

from sqlalchemy_relations import Resolver, AsyncResolver, ExecutionError
from sqlalchemy_relations.base.executor import Executor
from sqlalchemy_relations.asyncio.executor import AsyncExecutor, AsyncMemoryExecutor, AsyncSqlAlchemyExecutor
from sqlalchemy_relations.memory.executor import MemoryExecutor
from sqlalchemy_relations.memory.store import MemoryStore
from sqlalchemy_relations.sql.executor import SqlAlchemyExecutor
from sqlalchemy_relations.sql.schema import build_metadata

from models import build_registry, seed_store, seed_connection


class RecordingExecutor(Executor):
    """Delegates to another executor and keeps every spec it was given."""

    def __init__(self, executor, fail_on=None):
        self.executor = executor
        self.fail_on = fail_on
        self.specs = []

    @property
    def name(self):
        return self.executor.name

    def execute(self, spec):
        self.specs.append(spec)
        if spec.entity.name == self.fail_on:
            raise ExecutionError(f"Connection lost while reading '{spec.entity.table}'", detail="simulated")
        return self.executor.execute(spec)

    def specs_for(self, entity_name):
        return [spec for spec in self.specs if spec.entity.name == entity_name]


class AsyncRecordingExecutor(AsyncExecutor):
    """
    Async delegate that tracks how many queries were in flight at once.
    """

    def __init__(self, executor, supports_concurrency=True, fail_on=None, slow_on=None):
        self.executor = executor
        self.supports_concurrency = supports_concurrency
        self.fail_on = fail_on
        self.slow_on = slow_on
        self.specs = []
        self.cancelled = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute(self, spec):
        self.specs.append(spec)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if spec.entity.name == self.slow_on:
                await asyncio.sleep(60)
            if spec.entity.name == self.fail_on:
                raise ExecutionError(f"Connection lost while reading '{spec.entity.table}'", detail="simulated")
            return await self.executor.execute(spec)
        except asyncio.CancelledError:
            self.cancelled.append(spec.entity.name)
            raise
        finally:
            self.in_flight -= 1


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def store(registry):
    return seed_store(MemoryStore(registry))


@pytest.fixture
def executor(store):
    return RecordingExecutor(MemoryExecutor(store))


@pytest.fixture
def resolver(registry, executor):
    return Resolver(registry, executor)


@pytest.fixture
def make_resolver(registry):
    def factory(store):
        return Resolver(registry, RecordingExecutor(MemoryExecutor(store)))
    return factory


@pytest.fixture
def failing_resolver(registry, store):
    def factory(entity_name):
        return Resolver(registry, RecordingExecutor(MemoryExecutor(store), fail_on=entity_name))
    return factory


@pytest.fixture
def metadata(registry):
    return build_metadata(registry)


@pytest.fixture
def engine(registry, metadata):
    engine = create_engine("sqlite://")
    metadata.create_all(engine)
    with engine.begin() as conn:
        seed_connection(conn, registry, metadata)

    yield engine
    engine.dispose()


@pytest.fixture
def sql_executor(engine, metadata):
    return RecordingExecutor(SqlAlchemyExecutor(engine, metadata))


@pytest.fixture
def sql_resolver(registry, sql_executor):
    return Resolver(registry, sql_executor)


@pytest.fixture
def async_executor(store):
    return AsyncRecordingExecutor(AsyncMemoryExecutor(store))


@pytest.fixture
def async_resolver(registry, async_executor):
    return AsyncResolver(registry, async_executor)


@pytest.fixture
async def async_engine(registry, metadata, tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'relations.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        await conn.run_sync(lambda sync_conn: seed_connection(sync_conn, registry, metadata))

    yield engine
    await engine.dispose()


@pytest.fixture
def async_sql_resolver(registry, metadata, async_engine):
    return AsyncResolver(registry, AsyncSqlAlchemyExecutor(async_engine, metadata))
