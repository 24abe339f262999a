from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List

from ..base.entity import EntityType, Record
from ..base.relations import RelationKind
from ..errors import UnknownField, UnknownRelation
from ..logger import logger
from .indexes import IndexManager


class MemoryStore:
    """
    In-memory tables for the entities of a registry.

    Rows are plain dicts. Primary keys and ``Field(index=True)`` columns are
    indexed, as are both keys of every pivot table. Writes go through the
    entity's field whitelist.
    """

    def __init__(self, registry):
        self.registry = registry
        self._reset()

    def _reset(self):
        self.data = defaultdict(list)
        self.data_by_pk = defaultdict(dict)

        self.index_manager = IndexManager()

        # Auto increment counter per table
        self._pk_counter = defaultdict(int)

        for entity in self.registry:
            self.index_manager.add_index(entity.table, entity.primary_key)
            for field in entity.fields.values():
                if field.index:
                    self.index_manager.add_index(entity.table, field.name)

            for relation in entity.relations.values():
                if relation.pivot is not None:
                    self.index_manager.add_index(relation.pivot.table, relation.pivot.foreign_pivot_key)
                    self.index_manager.add_index(relation.pivot.table, relation.pivot.related_pivot_key)

    def clear(self):
        self._reset()

    def _entity(self, entity) -> EntityType:
        if isinstance(entity, EntityType):
            return entity
        return self.registry.lookup(entity)

    def rows(self, tablename: str) -> List[dict]:
        return self.data.get(tablename, [])

    def count(self, tablename: str) -> int:
        return len(self.data.get(tablename, []))

    def lookup(self, tablename: str, colname: str, value: Any) -> List[dict]:
        """Rows of ``tablename`` whose ``colname`` equals ``value``."""
        if value is None:
            return []
        if self.index_manager.is_indexed(tablename, colname):
            return self.index_manager.lookup(tablename, colname, value)
        return [row for row in self.rows(tablename) if row.get(colname) == value]

    def query_index(self, collection, tablename, colname, op, value):
        result = self.index_manager.query(collection, tablename, colname, op, value)
        if result is not None:
            logger.debug(f"Reduced '{tablename}' dataset from {len(collection)} items to {len(result)} by using index on '{colname}'")
        return result

    def get_by_primary_key(self, entity, pk_value):
        entity = self._entity(entity)
        return self.data_by_pk[entity.table].get(pk_value)

    def insert(self, entity, values: Dict[str, Any]) -> dict:
        entity = self._entity(entity)
        entity.check_fields(values.keys())

        row = {}
        for field in entity.fields.values():
            if field.name in values:
                row[field.name] = values[field.name]
            else:
                row[field.name] = field.default_value()

        pk_value = self._assign_primary_key_if_needed(entity, row)
        if pk_value in self.data_by_pk[entity.table]:
            raise ValueError(f"Cannot have duplicate PK value {pk_value} for table '{entity.table}'")

        logger.debug(f"Adding {row} to table '{entity.table}'")

        self.data[entity.table].append(row)
        self.data_by_pk[entity.table][pk_value] = row
        self.index_manager.on_insert(entity.table, row)
        return row

    def insert_many(self, entity, rows) -> List[dict]:
        return [self.insert(entity, values) for values in rows]

    def delete(self, entity, pk_value):
        entity = self._entity(entity)
        row = self.data_by_pk[entity.table].pop(pk_value, None)
        if row is None:
            return False

        logger.debug(f"Deleting row from table '{entity.table}' with PK value={pk_value}")
        self.data[entity.table] = [r for r in self.data[entity.table] if r is not row]
        self.index_manager.on_delete(entity.table, row)
        return True

    def create_related(self, record: Record, relation_name: str, values: Dict[str, Any]) -> dict:
        """
        Insert a row related to ``record``, filling the relation keys from it:
        ``store.create_related(user, "posts", {"content": "..."})``.
        """
        relation = self._relation(record.entity, relation_name)
        values = dict(values)
        parent_key = record.fields[relation.local_key]

        if relation.kind is RelationKind.HAS_MANY:
            values[relation.foreign_key] = parent_key
            return self.insert(relation.target, values)

        elif relation.kind is RelationKind.MORPH_MANY:
            values[relation.foreign_key] = parent_key
            values[relation.morph_type] = relation.morph_value
            return self.insert(relation.target, values)

        elif relation.kind is RelationKind.BELONGS_TO_MANY:
            row = self.insert(relation.target, values)
            self.attach(record, relation_name, [row[relation.foreign_key]])
            return row

        raise NotImplementedError(f"Cannot create related rows through a {relation.kind.value} relation")

    def attach(self, record: Record, relation_name: str, related_keys, **pivot_values) -> List[dict]:
        """
        Write pivot rows linking ``record`` to ``related_keys``:
        ``store.attach(post, "tags", [1])``.
        """
        relation = self._relation(record.entity, relation_name)
        if relation.kind is not RelationKind.BELONGS_TO_MANY:
            raise NotImplementedError(f"attach() needs a belongs_to_many relation, '{relation_name}' is {relation.kind.value}")

        pivot = relation.pivot
        allowed = pivot.column_names
        unknown = [k for k in pivot_values if k not in allowed]
        if unknown:
            raise UnknownField(f"Unknown pivot column(s) {', '.join(map(repr, unknown))} on '{pivot.table}'")

        if not isinstance(related_keys, (list, tuple, set)):
            related_keys = [related_keys]

        now = datetime.now(timezone.utc)
        rows = []
        for key in related_keys:
            row = {name: None for name in allowed}
            row.update(pivot_values)
            row[pivot.foreign_pivot_key] = record.fields[relation.local_key]
            row[pivot.related_pivot_key] = key
            if pivot.timestamps:
                row["created_at"] = row["created_at"] or now
                row["updated_at"] = row["updated_at"] or now

            self.data[pivot.table].append(row)
            self.index_manager.on_insert(pivot.table, row)
            rows.append(row)

        return rows

    def detach(self, record: Record, relation_name: str, related_keys=None) -> int:
        relation = self._relation(record.entity, relation_name)
        if relation.kind is not RelationKind.BELONGS_TO_MANY:
            raise NotImplementedError(f"detach() needs a belongs_to_many relation, '{relation_name}' is {relation.kind.value}")

        pivot = relation.pivot
        parent_key = record.fields[relation.local_key]

        def matches(row):
            if row[pivot.foreign_pivot_key] != parent_key:
                return False
            return related_keys is None or row[pivot.related_pivot_key] in related_keys

        removed = [row for row in self.rows(pivot.table) if matches(row)]
        for row in removed:
            self.index_manager.on_delete(pivot.table, row)
        self.data[pivot.table] = [row for row in self.rows(pivot.table) if not matches(row)]
        return len(removed)

    def _relation(self, entity: EntityType, name: str):
        relation = entity.get_relation(name)
        if relation is None:
            raise UnknownRelation(f"Relation '{name}' is not declared on '{entity.name}'")
        return relation

    def _assign_primary_key_if_needed(self, entity: EntityType, row: dict):
        """
        Handle auto-increment primary keys.
        If the caller specifies an ID, use it and update the counter if necessary.
        If no ID is specified, assign the next available one.
        """
        pk_col_name = entity.primary_key
        current_id = row.get(pk_col_name)
        tablename = entity.table

        if current_id is None:
            # Auto-assign next ID
            current_id = self._pk_counter[tablename] = self._pk_counter[tablename] + 1
            row[pk_col_name] = current_id

        elif isinstance(current_id, int):
            # Ensure auto-increment counter stays ahead
            self._pk_counter[tablename] = max(self._pk_counter[tablename], current_id)

        return current_id
