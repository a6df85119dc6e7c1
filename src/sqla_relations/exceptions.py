from __future__ import annotations


class SqlaRelationsError(Exception):
    """Base class for every error raised by sqla_relations."""


class ConfigurationError(SqlaRelationsError, ValueError):
    """A relation mapping could not be resolved.

    Raised while registering models: bad join shape, unknown related model,
    unknown table or column, or a join column that the model's
    column-to-property mapping does not carry over.
    """


class ParseError(SqlaRelationsError, ValueError):
    """Malformed eager expression.

    ``position`` is the zero-based offset of the offending character.
    """

    def __init__(self, expression: str, position: int, reason: str) -> None:
        self.expression = expression
        self.position = position
        self.reason = reason

        super().__init__(f"Invalid eager expression {expression!r} at position {position}: {reason}")


class RelationError(SqlaRelationsError, LookupError):
    """An eager expression names a relation the model does not declare."""

    def __init__(self, model: str, relation: str) -> None:
        self.model = model
        self.relation = relation

        super().__init__(f"No relation {relation!r} on {model}")


class CardinalityError(SqlaRelationsError, ValueError):
    """More than one record was given to a one-to-one relation."""

    def __init__(self, model: str, relation: str, operation: str, count: int) -> None:
        self.model = model
        self.relation = relation
        self.operation = operation
        self.count = count

        super().__init__(
            f"Can only {operation} one record through the one-to-one relation "
            f"{model}.{relation}, got {count}"
        )
