from typing import Any, Dict, List

from .query import QuerySpec


class Executor:
    """
    Adapter between the resolver and a relational store.

    ``execute`` runs one ``QuerySpec`` in a single round trip (filters,
    pivot join, correlated subqueries, ordering, paging and lock mode) and
    returns the rows as mappings. Pivot columns are labelled with
    ``PIVOT_PREFIX``; a spec with ``aggregate`` set returns a single row
    holding ``AGGREGATE_ALIAS``. Failures are raised as ``ExecutionError``.
    """

    name = "base"

    # Whether independent specs may be executed at the same time
    supports_concurrency = False

    def execute(self, spec: QuerySpec) -> List[Dict[str, Any]]:
        raise NotImplementedError
