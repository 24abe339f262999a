from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..base.executor import Executor
from ..base.query import QuerySpec
from ..errors import ExecutionError
from ..logger import logger
from .compiler import QueryCompiler


class SqlAlchemyExecutor(Executor):
    """
    Executes query specs through SQLAlchemy Core.

    ``bind`` is an ``Engine`` (one connection checked out per query) or a
    ``Connection``. Lock modes only mean something inside a transaction the
    caller owns, so locking queries should be run with a ``Connection`` from
    ``engine.begin()``.
    """

    name = "sqlalchemy"

    def __init__(self, bind, metadata):
        self.bind = bind
        self.compiler = QueryCompiler(metadata)

    def execute(self, spec: QuerySpec):
        stmt = self.compiler.compile(spec)
        logger.debug(f"Executing {stmt}")

        try:
            if isinstance(self.bind, Engine):
                with self.bind.connect() as conn:
                    return [dict(row._mapping) for row in conn.execute(stmt)]
            return [dict(row._mapping) for row in self.bind.execute(stmt)]

        except SQLAlchemyError as e:
            raise ExecutionError(f"Query on '{spec.entity.table}' failed: {e}", detail=str(e)) from e
