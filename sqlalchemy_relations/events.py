import re

from sqlalchemy import event


class StatementCounter:
    """
    Records every statement an engine sends to the database.

    Works with ``Engine`` and ``AsyncEngine`` (listening on its sync engine)::

        with StatementCounter(engine) as statements:
            resolver.get(query)

        assert len(statements) == 2
    """

    def __init__(self, engine):
        self.engine = getattr(engine, "sync_engine", engine)
        self.statements = []

    def _before_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        self.statements.append(statement)

    def __enter__(self):
        event.listen(self.engine, "before_cursor_execute", self._before_cursor_execute)
        return self

    def __exit__(self, *exc):
        event.remove(self.engine, "before_cursor_execute", self._before_cursor_execute)

    def __len__(self):
        return len(self.statements)

    def __iter__(self):
        return iter(self.statements)

    def clear(self):
        self.statements = []

    def matching(self, pattern):
        """Statements matching ``pattern`` (a regex, case insensitive)."""
        regex = re.compile(pattern, re.IGNORECASE | re.DOTALL)
        return [s for s in self.statements if regex.search(s)]
