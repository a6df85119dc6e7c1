from __future__ import annotations

import sys
from collections.abc import Collection, Mapping
from typing import Any, ClassVar, Final, Union


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


_PROBE: Final = object()

_Selection = Union[Collection[str], Mapping[type["Model"], Collection[str]], None]


class Model:
    """Base class for record types.

    A model declares the table it lives in, its id column, an optional
    column-to-property mapping and its relations::

        class Person(Model):
            table_name = "persons"
            column_map = {"first_name": "firstName"}
            relation_mappings = {
                "pets": {
                    "related": "Animal",
                    "kind": "one_to_many",
                    "join": {"from": "persons.id", "to": "animals.owner_id"},
                },
            }

    Instances are plain attribute bags. A relation that was not requested is
    simply absent from the instance; after an eager load it holds a record,
    ``None``, or a list.
    """

    table_name: ClassVar[str] = ""
    id_column: ClassVar[str] = "id"
    column_map: ClassVar[Mapping[str, str]] = {}
    relation_mappings: ClassVar[Mapping[str, Mapping[str, Any]]] = {}

    def __init__(self, **properties: Any) -> None:
        self.__dict__.update(properties)

    @classmethod
    def parse_database_row(cls, row: Mapping[str, Any]) -> dict[str, Any]:
        """Convert a database row into properties. Override for custom naming."""
        return {cls.column_map.get(column, column): value for column, value in row.items()}

    @classmethod
    def format_database_row(cls, properties: Mapping[str, Any]) -> dict[str, Any]:
        """Inverse of :meth:`parse_database_row`."""
        columns = {prop: column for column, prop in cls.column_map.items()}
        return {columns.get(prop, prop): value for prop, value in properties.items()}

    @classmethod
    def from_database_row(cls, row: Mapping[str, Any]) -> Self:
        return cls(**cls.parse_database_row(row))

    @classmethod
    def ensure(cls, value: Self | Mapping[str, Any]) -> Self:
        """Accept an instance or a property mapping."""
        if isinstance(value, cls):
            return value

        return cls(**value)

    @classmethod
    def column_name_to_property_name(cls, column: str) -> str | None:
        """Return the property *column* is loaded into, or ``None`` if the
        row parser drops or merges it."""
        parsed = cls.parse_database_row({column: _PROBE})
        return next((prop for prop, value in parsed.items() if value is _PROBE), None)

    @classmethod
    def property_name_to_column_name(cls, prop: str) -> str | None:
        formatted = cls.format_database_row({prop: _PROBE})
        return next((column for column, value in formatted.items() if value is _PROBE), None)

    @classmethod
    def id_property(cls) -> str:
        return cls.column_name_to_property_name(cls.id_column) or cls.id_column

    def get_id(self) -> Any:
        return getattr(self, self.id_property(), None)

    def is_loaded(self, relation: str) -> bool:
        """Whether *relation* has been fetched onto this record."""
        return relation in self.relation_mappings and relation in self.__dict__

    def to_database_row(self) -> dict[str, Any]:
        """Column values of this record, without relations."""
        properties = {
            prop: value
            for prop, value in self.__dict__.items()
            if not prop.startswith("_") and prop not in self.relation_mappings
        }
        return self.format_database_row(properties)

    def to_dict(self, *, pick: _Selection = None, omit: _Selection = None) -> dict[str, Any]:
        """Recursively convert this record and its loaded relations to dicts.

        ``pick`` keeps only the named properties, ``omit`` drops them. Either
        may be a collection of names applied at every level, or a mapping from
        model class to names, applied to records of that class only.
        """
        out: dict[str, Any] = {}
        keep = _selection_for(type(self), pick)
        drop = _selection_for(type(self), omit)

        for prop, value in self.__dict__.items():
            if prop.startswith("_"):
                continue
            if keep is not None and prop not in keep:
                continue
            if drop is not None and prop in drop:
                continue

            if isinstance(value, Model):
                value = value.to_dict(pick=pick, omit=omit)
            elif isinstance(value, list):
                value = [
                    item.to_dict(pick=pick, omit=omit) if isinstance(item, Model) else item
                    for item in value
                ]
            out[prop] = value

        return out

    def __eq__(self, other: object) -> bool:
        if type(other) is not type(self):
            return NotImplemented

        return self.__dict__ == other.__dict__

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{prop}={value!r}"
            for prop, value in self.__dict__.items()
            if prop not in self.relation_mappings
        )
        return f"{type(self).__name__}({fields})"


def _selection_for(model: type[Model], selection: _Selection) -> Collection[str] | None:
    if selection is None:
        return None

    if isinstance(selection, Mapping):
        for cls in model.__mro__:
            if cls in selection:
                return selection[cls]
        return None

    return selection
