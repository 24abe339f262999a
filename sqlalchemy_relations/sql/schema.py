from sqlalchemy import MetaData, Table, Column, Integer, String, Boolean, Float, DateTime

from ..base.entity import FieldType
from ..base.relations import RelationKind

FIELD_TYPES = {
    FieldType.STRING: String,
    FieldType.INTEGER: Integer,
    FieldType.FLOAT: Float,
    FieldType.BOOLEAN: Boolean,
    FieldType.TIMESTAMP: DateTime,
}


def _column(field, primary_key=False):
    kwargs = {}
    if field.default is not None:
        kwargs["default"] = field.default
    return Column(
        field.name,
        FIELD_TYPES[field.type](),
        primary_key=primary_key,
        nullable=field.nullable and not primary_key,
        index=field.index and not primary_key,
        **kwargs,
    )


def build_metadata(registry, metadata=None) -> MetaData:
    """
    Describe every registered entity (and every pivot table) as SQLAlchemy
    ``Table`` objects, so ``metadata.create_all(engine)`` can create them.
    """
    metadata = metadata if metadata is not None else MetaData()

    for entity in registry:
        if entity.table in metadata.tables:
            continue
        Table(
            entity.table,
            metadata,
            *[_column(field, primary_key=field.name == entity.primary_key) for field in entity.fields.values()],
        )

    for entity in registry:
        for relation in entity.relations.values():
            if relation.kind is not RelationKind.BELONGS_TO_MANY:
                continue

            pivot = relation.pivot
            if pivot.table in metadata.tables:
                continue

            target = registry.target_of(relation)
            parent_key_type = FIELD_TYPES[entity.fields[relation.local_key].type]
            related_key_type = FIELD_TYPES[target.fields[relation.foreign_key].type]

            Table(
                pivot.table,
                metadata,
                Column(pivot.foreign_pivot_key, parent_key_type(), nullable=False, index=True),
                Column(pivot.related_pivot_key, related_key_type(), nullable=False, index=True),
                *[_column(field) for field in pivot.extra_columns],
            )

    return metadata
