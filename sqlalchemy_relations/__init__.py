from .base.entity import EntityType, Field, FieldType, Record
from .base.query import EagerLoadDirective, LoadMode, LockMode, QueryBuilder, QuerySpec
from .base.registry import EntityRegistry, load_schema
from .base.relations import (
    RelationKind,
    belongs_to,
    belongs_to_many,
    has_many,
    has_many_through,
    morph_many,
)
from .base.resolver import Resolver
from .asyncio.resolver import AsyncResolver
from .errors import (
    DuplicateEntity,
    ExecutionError,
    InvalidRelation,
    RelationsError,
    UnknownEntity,
    UnknownField,
    UnknownRelation,
    UnsupportedAggregate,
)

__all__ = [
    "EntityType",
    "Field",
    "FieldType",
    "Record",
    "EagerLoadDirective",
    "LoadMode",
    "LockMode",
    "QueryBuilder",
    "QuerySpec",
    "EntityRegistry",
    "load_schema",
    "RelationKind",
    "belongs_to",
    "belongs_to_many",
    "has_many",
    "has_many_through",
    "morph_many",
    "Resolver",
    "AsyncResolver",
    "DuplicateEntity",
    "ExecutionError",
    "InvalidRelation",
    "RelationsError",
    "UnknownEntity",
    "UnknownField",
    "UnknownRelation",
    "UnsupportedAggregate",
]

__version__ = '0.1.0'
