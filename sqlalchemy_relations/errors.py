class RelationsError(Exception):
    """Base class for every error raised by sqlalchemy_relations."""


class DuplicateEntity(RelationsError):
    pass


class UnknownEntity(RelationsError):
    pass


class InvalidRelation(RelationsError):
    pass


class UnknownField(RelationsError):
    pass


class UnknownRelation(RelationsError):
    pass


class UnsupportedAggregate(RelationsError):
    pass


class ExecutionError(RelationsError):
    """
    Failure reported by an executor adapter.

    ``detail`` carries whatever diagnostic the adapter has (driver message,
    failing statement, ...). The original exception, if any, is chained as
    ``__cause__``.
    """

    def __init__(self, message, detail=None):
        super().__init__(message)
        self.detail = detail
