from collections import defaultdict
from sortedcontainers import SortedDict
from typing import Any, Dict, List
from sqlalchemy.sql import operators


def _intersect(result, collection):
    """Keep the items of ``collection`` present in ``result``, in collection order."""
    ids = {id(row) for row in result}
    return [row for row in collection if id(row) in ids]


def _difference(collection, excluded):
    ids = {id(row) for row in excluded}
    return [row for row in collection if id(row) not in ids]


class IndexManager:
    """
    Single-column indexes over in-memory table rows.

    Every indexed column gets both a hash index (equality, IN) and a range
    index (comparisons, BETWEEN).
    """

    def __init__(self):
        self.hash_index = HashIndex()
        self.range_index = RangeIndex()

        # tablename => set of indexed column names
        self.table_indexes: Dict[str, set] = defaultdict(set)

    def add_index(self, tablename: str, colname: str):
        self.table_indexes[tablename].add(colname)

    def is_indexed(self, tablename: str, colname: str) -> bool:
        return colname in self.table_indexes.get(tablename, ())

    def on_insert(self, tablename: str, row: dict):
        for colname in self.table_indexes.get(tablename, ()):
            value = row.get(colname)
            self.hash_index.add(tablename, colname, value, row)
            self.range_index.add(tablename, colname, value, row)

    def on_delete(self, tablename: str, row: dict):
        for colname in self.table_indexes.get(tablename, ()):
            value = row.get(colname)
            self.hash_index.remove(tablename, colname, value, row)
            self.range_index.remove(tablename, colname, value, row)

    def lookup(self, tablename: str, colname: str, value: Any) -> List[dict]:
        return self.hash_index.query(tablename, colname, value)

    def query(self, collection, tablename, colname, operator, value):
        """
        Narrow ``collection`` with the index on ``colname``. Returns None when
        the column is not indexed or the operator can't use an index.
        """
        if not self.is_indexed(tablename, colname):
            return None

        # Use hash index for = / != / IN / NOT IN operators
        if operator == operators.eq:
            result = self.hash_index.query(tablename, colname, value)
            return _intersect(result, collection)

        elif operator == operators.ne:
            excluded = self.hash_index.query(tablename, colname, value)
            if value is not None:
                excluded = excluded + self.hash_index.query(tablename, colname, None)
            return _difference(collection, excluded)

        elif operator == operators.in_op:
            result = []
            for v in value:
                if v is None:
                    continue
                result.extend(self.hash_index.query(tablename, colname, v))
            return _intersect(result, collection)

        elif operator == operators.not_in_op:
            # NULL is never NOT IN anything
            excluded = list(self.hash_index.query(tablename, colname, None))
            for v in value:
                excluded.extend(self.hash_index.query(tablename, colname, v))
            return _difference(collection, excluded)

        if value is None:
            return None

        # Use range index
        if operator == operators.gt:
            result = self.range_index.query(tablename, colname, gt=value)
            return _intersect(result, collection)

        elif operator == operators.ge:
            result = self.range_index.query(tablename, colname, gte=value)
            return _intersect(result, collection)

        elif operator == operators.lt:
            result = self.range_index.query(tablename, colname, lt=value)
            return _intersect(result, collection)

        elif operator == operators.le:
            result = self.range_index.query(tablename, colname, lte=value)
            return _intersect(result, collection)

        elif operator == operators.between_op and isinstance(value, (tuple, list)) and len(value) == 2:
            result = self.range_index.query(tablename, colname, gte=value[0], lte=value[1])
            return _intersect(result, collection)

        elif operator == operators.not_between_op and isinstance(value, (tuple, list)) and len(value) == 2:
            in_range = self.range_index.query(tablename, colname, gte=value[0], lte=value[1])
            nulls = self.hash_index.query(tablename, colname, None)
            return _difference(collection, in_range + nulls)

    def get_selectivity(self, tablename, colname, operator, value, total_count):
        """
        Estimate selectivity: higher means worst filtering.
        """
        if not self.is_indexed(tablename, colname):
            return total_count

        index = self.hash_index.index[tablename][colname]
        num_keys = len(index) or 1

        if operator == operators.eq:
            return len(index.get(value, []))

        elif operator == operators.ne:
            return total_count - len(index.get(value, []))

        elif operator == operators.in_op:
            return sum(len(index.get(v, [])) for v in value)

        elif operator == operators.not_in_op:
            return total_count - sum(len(index.get(v, [])) for v in value)

        return total_count / num_keys


class HashIndex:
    """
    A hash-based index structure for fast exact-match lookups on table columns.

    Structure:
        index[tablename][colname][value] = [row1, row2, ...]

    Maintains insertion order of rows.
    """

    def __init__(self):
        self.index = defaultdict(lambda: defaultdict(lambda: defaultdict(list)))

    def add(self, tablename: str, colname: str, value: Any, row: Any):
        self.index[tablename][colname][value].append(row)

    def remove(self, tablename: str, colname: str, value: Any, row: Any):
        lst = self.index[tablename][colname].get(value)
        if lst is None:
            return
        for i, candidate in enumerate(lst):
            if candidate is row:
                del lst[i]
                break
        if not lst:
            del self.index[tablename][colname][value]

    def query(self, tablename: str, colname: str, value: Any) -> List[Any]:
        return self.index[tablename][colname].get(value, [])


class RangeIndex:
    """
    A range-based index for fast lookups using comparison operators.

    Internally uses SortedDict to allow efficient bisecting and slicing.
    NULL values are not indexed: they never satisfy a comparison.
    Structure:
        index[tablename][colname] = SortedDict { value: [row1, row2, ...] }
    """

    def __init__(self):
        self.index = defaultdict(lambda: defaultdict(SortedDict))

    def add(self, tablename: str, colname: str, value: Any, row: Any):
        if value is None:
            return
        self.index[tablename][colname].setdefault(value, []).append(row)

    def remove(self, tablename: str, colname: str, value: Any, row: Any):
        col = self.index[tablename][colname]
        if value is None or value not in col:
            return
        col[value] = [candidate for candidate in col[value] if candidate is not row]
        if not col[value]:
            del col[value]

    def query(self, tablename: str, colname: str, gt=None, gte=None, lt=None, lte=None) -> List[Any]:
        sd = self.index[tablename][colname]

        # Define range bounds
        min_key = gte if gte is not None else gt
        max_key = lte if lte is not None else lt
        inclusive_min = gte is not None
        inclusive_max = lte is not None

        irange = sd.irange(
            minimum=min_key,
            maximum=max_key,
            inclusive=(inclusive_min, inclusive_max)
        )

        result = []
        for key in irange:
            result.extend(sd[key])

        return result
