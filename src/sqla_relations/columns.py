from __future__ import annotations

from typing import NamedTuple


class ColumnRef(NamedTuple):
    """A ``Table.column`` reference used in relation join descriptions."""

    table: str
    column: str

    def __str__(self) -> str:
        return f"{self.table}.{self.column}"


def parse_column(ref: str) -> ColumnRef | None:
    """Parse ``"Table.column"`` into a :class:`ColumnRef`.

    Whitespace around either part is ignored. Returns ``None`` when *ref* is not
    a string, has no dot, or either part is empty, so callers can attach their
    own error context.

    Example:
        >>> parse_column("persons.parent_id")
        ColumnRef(table='persons', column='parent_id')
        >>> parse_column("persons") is None
        True
    """
    if not isinstance(ref, str):
        return None

    table, sep, column = ref.partition(".")
    table, column = table.strip(), column.strip()
    if not sep or not table or not column or "." in column:
        return None

    return ColumnRef(table, column)
