from datetime import date, datetime


class FunctionResolver:
    """Evaluates a SQL function applied to a column of an in-memory row."""

    def accessor(self, row, attr_name):
        raise NotImplementedError

    def operand(self, value):
        """Coerce the right-hand side of a comparison with the function result."""
        return value


class DateResolver(FunctionResolver):
    def accessor(self, row, attr_name):
        value = row.get(attr_name)
        if isinstance(value, datetime):
            return value.date()
        return value

    def operand(self, value):
        if isinstance(value, str):
            return date.fromisoformat(value)
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, (list, tuple)):
            return tuple(self.operand(v) for v in value)
        return value


FUNCTION_RESOLVERS = {
    "date": DateResolver(),
}
