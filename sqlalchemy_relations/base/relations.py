from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy.sql import operators

from .entity import Field, FieldType
from .predicates import Predicate, make_predicate


class RelationKind(Enum):
    BELONGS_TO = "belongs_to"
    HAS_MANY = "has_many"
    HAS_MANY_THROUGH = "has_many_through"
    BELONGS_TO_MANY = "belongs_to_many"
    MORPH_MANY = "morph_many"


TO_ONE_KINDS = (RelationKind.BELONGS_TO,)


@dataclass(frozen=True)
class Pivot:
    """
    Join table of a many-to-many relation.

    ``foreign_pivot_key`` points at the parent, ``related_pivot_key`` at the
    related entity. ``columns`` are extra pivot columns returned with each
    related record; ``timestamps`` adds ``created_at`` / ``updated_at``.
    """
    table: str
    foreign_pivot_key: str
    related_pivot_key: str
    columns: Tuple[Field, ...] = ()
    timestamps: bool = False

    @property
    def extra_columns(self) -> Tuple[Field, ...]:
        cols = tuple(self.columns)
        if self.timestamps:
            cols += (
                Field("created_at", FieldType.TIMESTAMP),
                Field("updated_at", FieldType.TIMESTAMP),
            )
        return cols

    @property
    def column_names(self) -> Tuple[str, ...]:
        return (self.foreign_pivot_key, self.related_pivot_key) + tuple(c.name for c in self.extra_columns)


@dataclass(frozen=True)
class RelationDescriptor:
    """
    One relation edge, switched over by kind in the planner, the pushdown
    compiler and the adapters.

    ``local_key`` always lives on the parent entity. ``foreign_key`` lives on
    the target entity and is the column the batched fetch filters with ``IN``:

    * belongs_to: local_key is the parent's foreign key, foreign_key the
      target's owner key
    * has_many / morph_many: foreign_key references the parent's local_key
    * belongs_to_many: foreign_key is the target's related key, referenced by
      ``pivot.related_pivot_key``
    * has_many_through: foreign_key references ``through_local_key`` on the
      intermediate entity, whose ``through_key`` references the parent
    """
    name: str
    kind: RelationKind
    target: str
    local_key: str
    foreign_key: str
    pivot: Optional[Pivot] = None
    through: Optional[str] = None
    through_key: Optional[str] = None
    through_local_key: Optional[str] = None
    morph_type: Optional[str] = None
    morph_value: Optional[str] = None
    constraints: Tuple[Predicate, ...] = field(default_factory=tuple)

    @property
    def is_to_one(self) -> bool:
        return self.kind in TO_ONE_KINDS

    @property
    def implicit_filters(self) -> Tuple[Predicate, ...]:
        """Filters every fetch or subquery over this relation must carry."""
        filters = tuple(self.constraints)
        if self.kind is RelationKind.MORPH_MANY:
            filters += (Predicate(self.morph_type, operators.eq, self.morph_value),)
        return filters


def _constraints(constraints):
    return tuple(make_predicate(c) for c in constraints or ())


def belongs_to(name, target, foreign_key=None, owner_key="id", constraints=None):
    return RelationDescriptor(
        name=name,
        kind=RelationKind.BELONGS_TO,
        target=target,
        local_key=foreign_key or f"{name}_id",
        foreign_key=owner_key,
        constraints=_constraints(constraints),
    )


def has_many(name, target, foreign_key, local_key="id", constraints=None):
    return RelationDescriptor(
        name=name,
        kind=RelationKind.HAS_MANY,
        target=target,
        local_key=local_key,
        foreign_key=foreign_key,
        constraints=_constraints(constraints),
    )


def has_many_through(name, target, through, first_key, second_key, local_key="id", second_local_key="id",
                     constraints=None):
    return RelationDescriptor(
        name=name,
        kind=RelationKind.HAS_MANY_THROUGH,
        target=target,
        local_key=local_key,
        foreign_key=second_key,
        through=through,
        through_key=first_key,
        through_local_key=second_local_key,
        constraints=_constraints(constraints),
    )


def belongs_to_many(name, target, table, foreign_pivot_key, related_pivot_key, parent_key="id", related_key="id",
                    pivot_columns=(), timestamps=False, constraints=None):
    columns = tuple(
        c if isinstance(c, Field) else Field(c)
        for c in pivot_columns
    )
    return RelationDescriptor(
        name=name,
        kind=RelationKind.BELONGS_TO_MANY,
        target=target,
        local_key=parent_key,
        foreign_key=related_key,
        pivot=Pivot(
            table=table,
            foreign_pivot_key=foreign_pivot_key,
            related_pivot_key=related_pivot_key,
            columns=columns,
            timestamps=timestamps,
        ),
        constraints=_constraints(constraints),
    )


def morph_many(name, target, morph_name, morph_value=None, local_key="id", constraints=None):
    """
    ``morph_name`` is the prefix of the ``<morph_name>_id`` /
    ``<morph_name>_type`` column pair on the target. ``morph_value`` defaults
    to the parent entity name and is filled in at registration.
    """
    return RelationDescriptor(
        name=name,
        kind=RelationKind.MORPH_MANY,
        target=target,
        local_key=local_key,
        foreign_key=f"{morph_name}_id",
        morph_type=f"{morph_name}_type",
        morph_value=morph_value,
        constraints=_constraints(constraints),
    )
