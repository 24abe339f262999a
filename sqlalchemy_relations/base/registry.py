from collections import OrderedDict
from dataclasses import replace
from typing import Dict, Iterable, List, Tuple

from ..errors import DuplicateEntity, UnknownEntity, InvalidRelation, UnknownRelation
from ..logger import logger
from .entity import EntityType, Field, FieldType
from .predicates import PIVOT
from .relations import (
    RelationDescriptor, RelationKind,
    belongs_to, has_many, has_many_through, belongs_to_many, morph_many,
)


class EntityRegistry:
    """
    Process-wide catalogue of entity types.

    Filled once at startup, read-only afterwards: lookups take no lock.
    """

    def __init__(self):
        self._entities: "OrderedDict[str, EntityType]" = OrderedDict()

    def __contains__(self, name):
        return name in self._entities

    def __iter__(self):
        return iter(self._entities.values())

    def __len__(self):
        return len(self._entities)

    def register(self, entity: EntityType) -> EntityType:
        self.register_all([entity])
        return entity

    def register_all(self, entities: Iterable[EntityType]) -> List[EntityType]:
        """
        Register a batch of entity types.

        Two passes: every entity is made visible first, then every relation is
        validated, so relations may point at entities later in the same batch.
        Nothing is registered unless the whole batch is valid.
        """
        entities = list(entities)

        staged = OrderedDict(self._entities)
        for entity in entities:
            if entity.name in staged:
                raise DuplicateEntity(f"Entity '{entity.name}' is already registered")
            staged[entity.name] = entity

        resolved = {}
        for entity in entities:
            resolved[entity.name] = [
                self._validate_relation(staged, entity, relation)
                for relation in entity.relations.values()
            ]

        for entity in entities:
            for relation in resolved[entity.name]:
                entity.relations[relation.name] = relation
            entity.freeze()
            logger.debug(f"Registered entity '{entity.name}' with relations {list(entity.relations)}")

        self._entities = staged
        return entities

    def lookup(self, name: str) -> EntityType:
        try:
            return self._entities[name]
        except KeyError:
            raise UnknownEntity(f"Unknown entity '{name}'")

    def target_of(self, relation: RelationDescriptor) -> EntityType:
        return self.lookup(relation.target)

    def resolve_path(self, entity: EntityType, path: str) -> List[Tuple[EntityType, RelationDescriptor]]:
        """
        Walk a dotted relation path from ``entity``.

        Returns ``(owner_entity, relation)`` for every segment.
        """
        steps = []
        current = entity
        for segment in path.split("."):
            relation = current.get_relation(segment)
            if relation is None:
                raise UnknownRelation(f"Relation '{segment}' is not declared on '{current.name}' (path '{path}')")
            steps.append((current, relation))
            current = self.lookup(relation.target)
        return steps

    @staticmethod
    def _validate_relation(entities: Dict[str, EntityType], owner: EntityType, relation: RelationDescriptor):
        def entity_named(name, role):
            if name not in entities:
                raise InvalidRelation(
                    f"Relation '{owner.name}.{relation.name}' references unknown {role} entity '{name}'"
                )
            return entities[name]

        def require(entity, fieldname, role):
            if not fieldname or not entity.has_field(fieldname):
                raise InvalidRelation(
                    f"Relation '{owner.name}.{relation.name}': {role} '{fieldname}' is not a field of '{entity.name}'"
                )

        target = entity_named(relation.target, "target")
        require(owner, relation.local_key, "local key")
        require(target, relation.foreign_key, "foreign key")

        kind = relation.kind
        if kind is RelationKind.BELONGS_TO or kind is RelationKind.HAS_MANY:
            pass

        elif kind is RelationKind.MORPH_MANY:
            require(target, relation.morph_type, "morph type column")
            if relation.morph_value is None:
                relation = replace(relation, morph_value=owner.name)

        elif kind is RelationKind.BELONGS_TO_MANY:
            if relation.pivot is None:
                raise InvalidRelation(f"Relation '{owner.name}.{relation.name}' has no pivot table")

        elif kind is RelationKind.HAS_MANY_THROUGH:
            through = entity_named(relation.through, "intermediate")
            require(through, relation.through_key, "through key")
            require(through, relation.through_local_key, "through local key")

        else:
            raise InvalidRelation(f"Unhandled relation kind: {kind}")

        pivot_columns = relation.pivot.column_names if relation.pivot else ()
        for predicate in relation.constraints:
            if predicate.scope == PIVOT:
                if predicate.field not in pivot_columns:
                    raise InvalidRelation(
                        f"Relation '{owner.name}.{relation.name}' constrains unknown pivot column '{predicate.field}'"
                    )
            else:
                require(target, predicate.field, "constrained column")

        return relation


RELATION_FACTORIES = {
    RelationKind.BELONGS_TO.value: belongs_to,
    RelationKind.HAS_MANY.value: has_many,
    RelationKind.HAS_MANY_THROUGH.value: has_many_through,
    RelationKind.BELONGS_TO_MANY.value: belongs_to_many,
    RelationKind.MORPH_MANY.value: morph_many,
}


def _field_from_config(name, conf):
    if isinstance(conf, str):
        conf = {"type": conf}
    conf = dict(conf)
    type_ = FieldType(conf.pop("type", FieldType.STRING.value))
    return Field(name=name, type=type_, **conf)


def load_schema(registry: EntityRegistry, schema: Dict[str, dict]) -> List[EntityType]:
    """
    Build and register entity types from a plain mapping, e.g. decoded JSON::

        {
            "User": {
                "table": "users",
                "fields": {"name": "string", "affiliation_id": {"type": "int", "index": true}},
                "relations": {
                    "posts": {"kind": "has_many", "target": "Post", "foreign_key": "user_id"}
                }
            }
        }
    """
    entities = []
    for name, conf in schema.items():
        fields = [
            _field_from_config(fieldname, fieldconf)
            for fieldname, fieldconf in conf.get("fields", {}).items()
        ]

        relations = []
        for relname, relconf in conf.get("relations", {}).items():
            relconf = dict(relconf)
            kind = relconf.pop("kind")
            if kind not in RELATION_FACTORIES:
                raise InvalidRelation(f"Relation '{name}.{relname}' has unknown kind '{kind}'")
            if "constraints" in relconf:
                relconf["constraints"] = [tuple(c) for c in relconf["constraints"]]
            relations.append(RELATION_FACTORIES[kind](relname, **relconf))

        entities.append(EntityType(
            name,
            fields,
            primary_key=conf.get("primary_key", "id"),
            table=conf.get("table"),
            relations=relations,
        ))

    return registry.register_all(entities)
