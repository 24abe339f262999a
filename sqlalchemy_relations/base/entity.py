from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from ..errors import UnknownField, InvalidRelation


class FieldType(Enum):
    STRING = "string"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    TIMESTAMP = "timestamp"


@dataclass(frozen=True)
class Field:
    name: str
    type: FieldType = FieldType.STRING
    nullable: bool = True
    default: Any = None
    index: bool = False

    def default_value(self):
        if callable(self.default):
            return self.default()
        return self.default


class EntityType:
    """
    Metadata for one entity type: its table, fields and declared relations.

    Relations can be added until the entity is registered; after that the
    entity is frozen and shared read-only between resolution operations.
    """

    def __init__(self, name: str, fields: Iterable, primary_key: str = "id", table: Optional[str] = None, relations=None):
        self.name = name
        self.table = table or name
        self._primary_key = primary_key
        self._frozen = False

        self.fields: "OrderedDict[str, Field]" = OrderedDict()
        for field in fields:
            if isinstance(field, str):
                field = Field(field)
            self.fields[field.name] = field

        if primary_key not in self.fields:
            self.fields[primary_key] = Field(primary_key, FieldType.INTEGER, nullable=False, index=True)
            self.fields.move_to_end(primary_key, last=False)

        self.relations = OrderedDict()
        for relation in relations or []:
            self.add_relation(relation)

    @property
    def primary_key(self) -> str:
        return self._primary_key

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self):
        self._frozen = True

    def add_relation(self, relation):
        if self._frozen:
            raise InvalidRelation(f"Entity '{self.name}' is registered, relations can no longer be added")

        if relation.name in self.relations:
            raise InvalidRelation(f"Relation '{relation.name}' is declared twice on '{self.name}'")

        if relation.name in self.fields:
            raise InvalidRelation(f"Relation '{relation.name}' clashes with a field of '{self.name}'")

        self.relations[relation.name] = relation
        return self

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def check_fields(self, names: Iterable[str]):
        """
        Field whitelist used by every write path and by the query builder.
        """
        unknown = [name for name in names if name not in self.fields]
        if unknown:
            raise UnknownField(f"Unknown field(s) {', '.join(map(repr, unknown))} on entity '{self.name}'")

    def get_relation(self, name: str):
        return self.relations.get(name)

    def new_record(self, values: Dict[str, Any]) -> "Record":
        self.check_fields(values.keys())
        return Record(self, dict(values))

    def __repr__(self):
        return f"EntityType(name={self.name} table={self.table})"


class Record:
    """
    One fetched row of an entity type.

    ``fields`` holds column values (and pushed-down aggregate columns),
    ``relations`` the loaded relation results. A relation name missing from
    ``relations`` has not been loaded; an empty list means it was loaded and
    nothing matched.
    """

    __slots__ = ("entity", "fields", "relations", "pivot")

    def __init__(self, entity: EntityType, fields: Dict[str, Any], pivot: Optional[Dict[str, Any]] = None):
        self.entity = entity
        self.fields = fields
        self.relations: Dict[str, Any] = {}
        self.pivot = pivot

    @property
    def key(self):
        return self.fields.get(self.entity.primary_key)

    def __getitem__(self, name):
        if name in self.fields:
            return self.fields[name]
        if name in self.relations:
            return self.relations[name]
        raise KeyError(name)

    def get(self, name, default=None):
        try:
            return self[name]
        except KeyError:
            return default

    def is_loaded(self, relation: str) -> bool:
        return relation in self.relations

    def relation(self, name: str):
        if name not in self.relations:
            raise KeyError(f"Relation '{name}' is not loaded on {self!r}")
        return self.relations[name]

    def set_relation(self, name: str, value):
        # Replaces any previous result wholesale.
        self.relations[name] = value

    def unset_relation(self, name: str):
        self.relations.pop(name, None)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.fields)
        for name, value in self.relations.items():
            if isinstance(value, list):
                data[name] = [item.to_dict() for item in value]
            elif value is None:
                data[name] = None
            else:
                data[name] = value.to_dict()
        if self.pivot is not None:
            data["pivot"] = dict(self.pivot)
        return data

    def __repr__(self):
        return f"{self.entity.name}({self.entity.primary_key}={self.key})"
