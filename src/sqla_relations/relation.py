from __future__ import annotations

import enum
import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from .columns import ColumnRef, parse_column
from .datastructures import frozendict
from .exceptions import ConfigurationError
from .model import Model


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .query import Executor, QueryBuilder
    from .registry import Registry


RelationFilter = Callable[["QueryBuilder[Any]"], Any]


class RelationKind(str, enum.Enum):
    ONE_TO_ONE = "one_to_one"
    ONE_TO_MANY = "one_to_many"
    MANY_TO_MANY = "many_to_many"


def _no_filter(builder: QueryBuilder[Any]) -> None:
    return None


@dataclass(frozen=True, slots=True)
class Relation:
    """A resolved relation between two models.

    Created once per declared relation when the owner model is registered and
    never modified afterwards. ``owner_*`` names the owner side of the join,
    ``related_*`` the related side, and the ``join_table*`` fields are set for
    many-to-many relations only. Columns are database names, properties are
    the names those columns are loaded into on records.

    Every operation dispatches to the strategy for :attr:`kind`, takes a
    :class:`~sqla_relations.query.QueryBuilder` over the related model and
    returns it for the caller to execute.
    """

    name: str
    kind: RelationKind
    owner_model: type[Model]
    related_model: type[Model]
    owner_table: str
    related_table: str
    owner_column: str
    owner_property: str
    related_column: str
    related_property: str
    join_table: str | None = None
    join_table_owner_column: str | None = None
    join_table_related_column: str | None = None
    filter: RelationFilter = field(default=_no_filter, compare=False)
    executor: Executor | None = field(default=None, compare=False, repr=False)

    @property
    def is_one(self) -> bool:
        return self.kind is RelationKind.ONE_TO_ONE

    def full_owner_column(self) -> str:
        return f"{self.owner_table}.{self.owner_column}"

    def full_related_column(self) -> str:
        return f"{self.related_table}.{self.related_column}"

    def full_join_table_owner_column(self) -> str:
        return f"{self.join_table}.{self.join_table_owner_column}"

    def full_join_table_related_column(self) -> str:
        return f"{self.join_table}.{self.join_table_related_column}"

    def bind(self, executor: Executor) -> Self:
        """Return a copy of this relation attached to *executor*."""
        return replace(self, executor=executor)

    def find(self, builder: QueryBuilder[Any], owners: Sequence[Model]) -> QueryBuilder[Any]:
        return _strategy(self).find(self, builder, owners)

    def insert(
        self,
        builder: QueryBuilder[Any],
        owner: Model,
        records: Model | Mapping[str, Any] | Sequence[Model | Mapping[str, Any]],
    ) -> QueryBuilder[Any]:
        return _strategy(self).insert(self, builder, owner, records)

    def update(
        self, builder: QueryBuilder[Any], owner: Model, values: Model | Mapping[str, Any]
    ) -> QueryBuilder[Any]:
        return _strategy(self).update(self, builder, owner, values)

    def patch(self, builder: QueryBuilder[Any], owner: Model, values: Mapping[str, Any]) -> QueryBuilder[Any]:
        return _strategy(self).patch(self, builder, owner, values)

    def delete(self, builder: QueryBuilder[Any], owner: Model) -> QueryBuilder[Any]:
        return _strategy(self).delete(self, builder, owner)

    def relate(self, builder: QueryBuilder[Any], owner: Model, ids: Any) -> QueryBuilder[Any]:
        return _strategy(self).relate(self, builder, owner, ids)

    def unrelate(
        self, builder: QueryBuilder[Any], owner: Model, ids: Iterable[Any] | None = None
    ) -> QueryBuilder[Any]:
        return _strategy(self).unrelate(self, builder, owner, ids)


def _strategy(relation: Relation) -> Any:
    from .strategies import STRATEGIES

    return STRATEGIES[relation.kind]


def resolve_relation(
    name: str,
    owner: type[Model],
    mapping: Mapping[str, Any],
    registry: Registry,
) -> Relation:
    """Validate a relation mapping declared on *owner* and resolve it.

    Raises:
        ConfigurationError: If any part of the mapping is invalid. The message
            starts with ``"<Owner>.relation_mappings.<name>"``.
    """
    prefix = f"{owner.__name__}.relation_mappings.{name}"

    related_ref = mapping.get("related")
    if related_ref is None:
        raise ConfigurationError(f"{prefix}.related is not defined")
    related = registry.find_model(related_ref)
    if related is None:
        raise ConfigurationError(f"{prefix}.related: {related_ref!r} is not a registered model")

    try:
        kind = RelationKind(mapping.get("kind"))
    except ValueError:
        raise ConfigurationError(
            f"{prefix}.kind must be one of {[k.value for k in RelationKind]}, got {mapping.get('kind')!r}"
        ) from None

    join = mapping.get("join")
    if not isinstance(join, Mapping):
        raise ConfigurationError(
            f"{prefix}.join must map the related columns together, "
            "for example {'from': 'persons.id', 'to': 'animals.owner_id'}"
        )
    join_from = _column(join.get("from"), f"{prefix}.join.from")
    join_to = _column(join.get("to"), f"{prefix}.join.to")

    owner_table, related_table = owner.table_name, related.table_name
    if join_from.table == owner_table:
        owner_side, related_side, owner_is_from = join_from, join_to, True
    elif join_to.table == owner_table:
        owner_side, related_side, owner_is_from = join_to, join_from, False
    else:
        raise ConfigurationError(f"{prefix}.join: either `from` or `to` must point to the owner table {owner_table!r}")

    if related_side.table != related_table:
        raise ConfigurationError(
            f"{prefix}.join: either `from` or `to` must point to the related table {related_table!r}"
        )

    through = join.get("through")
    join_table = join_table_owner_column = join_table_related_column = None
    if kind is RelationKind.MANY_TO_MANY:
        if not isinstance(through, Mapping):
            raise ConfigurationError(
                f"{prefix}.join.through must describe the join table, "
                "for example {'from': 'persons_movies.person_id', 'to': 'persons_movies.movie_id'}"
            )
        through_from = _column(through.get("from"), f"{prefix}.join.through.from")
        through_to = _column(through.get("to"), f"{prefix}.join.through.to")
        if through_from.table != through_to.table:
            raise ConfigurationError(f"{prefix}.join.through `from` and `to` must point to the same join table")

        join_table = through_from.table
        if owner_is_from:
            join_table_owner_column, join_table_related_column = through_from.column, through_to.column
        else:
            join_table_owner_column, join_table_related_column = through_to.column, through_from.column

        _check_columns(registry, prefix, join_table, join_table_owner_column, join_table_related_column)
    elif through is not None:
        raise ConfigurationError(
            f"{prefix}.join.through is only allowed for {RelationKind.MANY_TO_MANY.value} relations"
        )

    _check_columns(registry, prefix, owner_table, owner_side.column)
    _check_columns(registry, prefix, related_table, related_side.column)

    return Relation(
        name=name,
        kind=kind,
        owner_model=owner,
        related_model=related,
        owner_table=owner_table,
        related_table=related_table,
        owner_column=owner_side.column,
        owner_property=_property_name(prefix, owner, owner_side.column),
        related_column=related_side.column,
        related_property=_property_name(prefix, related, related_side.column),
        join_table=join_table,
        join_table_owner_column=join_table_owner_column,
        join_table_related_column=join_table_related_column,
        filter=_parse_filter(prefix, mapping.get("filter")),
    )


def _column(ref: Any, where: str) -> ColumnRef:
    parsed = parse_column(ref)
    if parsed is None:
        raise ConfigurationError(f"{where} must have format TableName.columnName, got {ref!r}")

    return parsed


def _check_columns(registry: Registry, prefix: str, table_name: str, *columns: str) -> None:
    table = registry.metadata.tables.get(table_name)
    if table is None:
        raise ConfigurationError(f"{prefix}: table {table_name!r} is not defined in the metadata")

    for column in columns:
        if column not in table.c:
            raise ConfigurationError(f"{prefix}: table {table_name!r} has no column {column!r}")


def _property_name(prefix: str, model: type[Model], column: str) -> str:
    prop = model.column_name_to_property_name(column)
    if prop is None:
        raise ConfigurationError(
            f"{prefix}: {model.__name__}.parse_database_row drops or transforms the column {column!r}, "
            "which the relation needs to join on"
        )

    return prop


def _parse_filter(prefix: str, value: Any) -> RelationFilter:
    if value is None:
        return _no_filter

    if callable(value):
        return value

    if isinstance(value, Mapping):
        values = frozendict(value)

        def _filter(builder: QueryBuilder[Any]) -> None:
            builder.filter_by(**values)

        return _filter

    raise ConfigurationError(f"{prefix}.filter must be a mapping of column values or a callable")
