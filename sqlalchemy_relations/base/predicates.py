from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.sql import operators

OPERATORS = {
    "=": operators.eq,
    "==": operators.eq,
    "!=": operators.ne,
    "<>": operators.ne,
    "<": operators.lt,
    "<=": operators.le,
    ">": operators.gt,
    ">=": operators.ge,
    "in": operators.in_op,
    "not in": operators.not_in_op,
    "like": operators.like_op,
    "not like": operators.not_like_op,
    "between": operators.between_op,
    "not between": operators.not_between_op,
    "is": operators.is_,
    "is not": operators.is_not,
}

# Operators whose right-hand side is a collection
COLLECTION_OPERATORS = (operators.in_op, operators.not_in_op, operators.between_op, operators.not_between_op)

SUPPORTED_FUNCTIONS = ("date",)

TARGET = "target"
PIVOT = "pivot"


@dataclass(frozen=True)
class ColumnRef:
    """Right-hand side of a column-to-column comparison."""
    name: str


@dataclass(frozen=True)
class Predicate:
    field: str
    operator: Any
    value: Any = None
    # Which table the field lives on: the queried entity or a pivot table
    scope: str = TARGET
    function: Optional[str] = None

    @property
    def is_column_comparison(self):
        return isinstance(self.value, ColumnRef)

    def __repr__(self):
        lhs = f"{self.function}({self.field})" if self.function else self.field
        if self.scope != TARGET:
            lhs = f"{self.scope}.{lhs}"
        return f"Predicate({lhs} {operator_name(self.operator)} {self.value!r})"


def resolve_operator(op):
    """
    Accept either an operator string (``"="``, ``"in"``, ...) or an
    operator function from ``sqlalchemy.sql.operators``.
    """
    if isinstance(op, str):
        try:
            return OPERATORS[op.strip().lower()]
        except KeyError:
            raise ValueError(f"Unsupported operator: {op!r}")

    if op in OPERATORS.values():
        return op

    raise ValueError(f"Unsupported operator: {op!r}")


def operator_name(op):
    for name, candidate in OPERATORS.items():
        if candidate is op:
            return name
    return getattr(op, "__name__", str(op))


def make_predicate(spec, scope=TARGET) -> Predicate:
    """
    Build a predicate from a ``Predicate`` or a ``(field, value)`` /
    ``(field, op, value)`` tuple.
    """
    if isinstance(spec, Predicate):
        return spec

    if len(spec) == 2:
        field, value = spec
        op = operators.eq
    elif len(spec) == 3:
        field, op, value = spec
        op = resolve_operator(op)
    else:
        raise ValueError(f"Cannot build a predicate from {spec!r}")

    if op in COLLECTION_OPERATORS and not isinstance(value, ColumnRef):
        value = tuple(value)

    return Predicate(field=field, operator=op, value=value, scope=scope)
