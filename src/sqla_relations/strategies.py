"""Join topologies behind :class:`~sqla_relations.relation.Relation`.

Each strategy implements the same operations for one :class:`RelationKind`:

* ``ONE_TO_ONE``: the owner row holds the key (``owner.owner_property`` points
  at ``related.related_property``), ``find`` attaches a record or ``None``.
* ``ONE_TO_MANY``: the related rows hold the key, ``find`` attaches a list.
* ``MANY_TO_MANY``: keys live in a join table, ``find`` attaches a list.

Operations augment the given builder over the related model and return it.
Writes that touch the owner row or the join table are registered as
``run_after`` hooks on a resolved builder, so nothing is written until the
builder is executed and validation errors are raised before that.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final, Protocol, Union, final

import sqlalchemy as sa

from .datastructures import frozendict
from .exceptions import CardinalityError
from .model import Model
from .relation import Relation, RelationKind


if TYPE_CHECKING:
    from .query import QueryBuilder


_OWNER_KEY_LABEL: Final[str] = "_sqla_relations_owner_key"

_Records = Union[Model, Mapping[str, Any], Sequence[Union[Model, Mapping[str, Any]]]]


class RelationStrategy(Protocol):
    def find(self, relation: Relation, builder: QueryBuilder[Any], owners: Sequence[Model]) -> QueryBuilder[Any]: ...

    def insert(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, records: _Records
    ) -> QueryBuilder[Any]: ...

    def update(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, values: Model | Mapping[str, Any]
    ) -> QueryBuilder[Any]: ...

    def patch(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, values: Mapping[str, Any]
    ) -> QueryBuilder[Any]: ...

    def delete(self, relation: Relation, builder: QueryBuilder[Any], owner: Model) -> QueryBuilder[Any]: ...

    def relate(self, relation: Relation, builder: QueryBuilder[Any], owner: Model, ids: Any) -> QueryBuilder[Any]: ...

    def unrelate(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, ids: Iterable[Any] | None
    ) -> QueryBuilder[Any]: ...


def _unique_keys(owners: Iterable[Model], prop: str) -> list[Any]:
    """Distinct non-null values of *prop* across *owners*, in first-seen order."""
    keys: dict[Any, None] = {}
    for owner in owners:
        key = getattr(owner, prop, None)
        if key is not None:
            keys.setdefault(key, None)

    return list(keys)


def _records_of(relation: Relation, records: _Records) -> tuple[list[Model], bool]:
    """Normalize *records* to model instances, remembering if a single one was given."""
    if isinstance(records, (Model, Mapping)):
        return [relation.related_model.ensure(records)], True

    return [relation.related_model.ensure(record) for record in records], False


def _ids_of(ids: Any) -> list[Any]:
    if isinstance(ids, (str, bytes)) or not isinstance(ids, Iterable):
        return [ids]

    return list(ids)


def _scope_by_keys(relation: Relation, builder: QueryBuilder[Any], keys: Sequence[Any], empty: Any) -> None:
    """Confine *builder* to related rows whose join column is in *keys*."""
    if not keys:
        builder.resolve(empty)
        return

    builder.where_in(relation.full_related_column(), keys)
    relation.filter(builder)


def _attach_loaded(owner: Model, relation: Relation, records: list[Model]) -> None:
    current = owner.__dict__.get(relation.name)
    if isinstance(current, list):
        current.extend(records)
    else:
        setattr(owner, relation.name, list(records))


async def _write_owner_key(relation: Relation, builder: QueryBuilder[Any], owner: Model, key: Any) -> None:
    table = builder.registry.table(relation.owner_model)
    id_column = table.c[relation.owner_model.id_column]
    await builder.executor.execute(
        sa.update(table).where(id_column == owner.get_id()).values({relation.owner_column: key})
    )
    setattr(owner, relation.owner_property, key)


@final
class OneToOneStrategy:
    def find(self, relation: Relation, builder: QueryBuilder[Any], owners: Sequence[Model]) -> QueryBuilder[Any]:
        _scope_by_keys(relation, builder, _unique_keys(owners, relation.owner_property), [])

        def attach(related: list[Model]) -> list[Model]:
            by_key: dict[Any, Model] = {}
            for record in related:
                by_key.setdefault(getattr(record, relation.related_property, None), record)

            for owner in owners:
                key = getattr(owner, relation.owner_property, None)
                setattr(owner, relation.name, by_key.get(key) if key is not None else None)

            return related

        return builder.run_after(attach)

    def insert(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, records: _Records
    ) -> QueryBuilder[Any]:
        items, single = _records_of(relation, records)
        if len(items) > 1:
            raise CardinalityError(relation.owner_model.__name__, relation.name, "insert", len(items))

        async def link(inserted: list[Model]) -> Model | list[Model] | None:
            if inserted:
                await _write_owner_key(relation, builder, owner, getattr(inserted[0], relation.related_property, None))
                setattr(owner, relation.name, inserted[0])

            if single:
                return inserted[0] if inserted else None
            return inserted

        return builder.insert(items).run_after(link)

    def update(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, values: Model | Mapping[str, Any]
    ) -> QueryBuilder[Any]:
        _scope_by_keys(relation, builder, _unique_keys([owner], relation.owner_property), 0)
        return builder.update(values)

    def patch(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, values: Mapping[str, Any]
    ) -> QueryBuilder[Any]:
        _scope_by_keys(relation, builder, _unique_keys([owner], relation.owner_property), 0)
        return builder.patch(values)

    def delete(self, relation: Relation, builder: QueryBuilder[Any], owner: Model) -> QueryBuilder[Any]:
        _scope_by_keys(relation, builder, _unique_keys([owner], relation.owner_property), 0)
        return builder.delete()

    def relate(self, relation: Relation, builder: QueryBuilder[Any], owner: Model, ids: Any) -> QueryBuilder[Any]:
        ids = _ids_of(ids)
        if len(ids) != 1:
            raise CardinalityError(relation.owner_model.__name__, relation.name, "relate", len(ids))

        async def link(result: list[Any]) -> list[Any]:
            await _write_owner_key(relation, builder, owner, ids[0])
            return result

        return builder.resolve(ids).run_after(link)

    def unrelate(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, ids: Iterable[Any] | None
    ) -> QueryBuilder[Any]:
        current = getattr(owner, relation.owner_property, None)
        if ids is not None and current not in _ids_of(ids):
            return builder.resolve(0)

        async def unlink(result: int) -> int:
            await _write_owner_key(relation, builder, owner, None)
            return 1

        return builder.resolve(0).run_after(unlink)


@final
class OneToManyStrategy:
    def find(self, relation: Relation, builder: QueryBuilder[Any], owners: Sequence[Model]) -> QueryBuilder[Any]:
        _scope_by_keys(relation, builder, _unique_keys(owners, relation.owner_property), [])

        def attach(related: list[Model]) -> list[Model]:
            grouped: defaultdict[Any, list[Model]] = defaultdict(list)
            for record in related:
                grouped[getattr(record, relation.related_property, None)].append(record)

            for owner in owners:
                key = getattr(owner, relation.owner_property, None)
                setattr(owner, relation.name, list(grouped.get(key, ())) if key is not None else [])

            return related

        return builder.run_after(attach)

    def insert(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, records: _Records
    ) -> QueryBuilder[Any]:
        items, single = _records_of(relation, records)
        key = getattr(owner, relation.owner_property, None)
        for item in items:
            setattr(item, relation.related_property, key)

        def link(inserted: list[Model]) -> Model | list[Model] | None:
            _attach_loaded(owner, relation, inserted)

            if single:
                return inserted[0] if inserted else None
            return inserted

        return builder.insert(items).run_after(link)

    def update(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, values: Model | Mapping[str, Any]
    ) -> QueryBuilder[Any]:
        _scope_by_keys(relation, builder, _unique_keys([owner], relation.owner_property), 0)
        return builder.update(values)

    def patch(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, values: Mapping[str, Any]
    ) -> QueryBuilder[Any]:
        _scope_by_keys(relation, builder, _unique_keys([owner], relation.owner_property), 0)
        return builder.patch(values)

    def delete(self, relation: Relation, builder: QueryBuilder[Any], owner: Model) -> QueryBuilder[Any]:
        _scope_by_keys(relation, builder, _unique_keys([owner], relation.owner_property), 0)
        return builder.delete()

    def relate(self, relation: Relation, builder: QueryBuilder[Any], owner: Model, ids: Any) -> QueryBuilder[Any]:
        ids = _ids_of(ids)
        key = getattr(owner, relation.owner_property, None)
        if not ids:
            return builder.resolve(0)

        builder.where_in(relation.related_model.id_column, ids)
        relation.filter(builder)
        return builder.patch({relation.related_property: key})

    def unrelate(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, ids: Iterable[Any] | None
    ) -> QueryBuilder[Any]:
        _scope_by_keys(relation, builder, _unique_keys([owner], relation.owner_property), 0)
        if ids is not None:
            builder.where_in(relation.related_model.id_column, _ids_of(ids))
        return builder.patch({relation.related_property: None})


@final
class ManyToManyStrategy:
    @staticmethod
    def _join_table(relation: Relation, builder: QueryBuilder[Any]) -> sa.Table:
        assert relation.join_table is not None
        return builder.registry.table(relation.join_table)

    def _scope_by_owner(self, relation: Relation, builder: QueryBuilder[Any], owner: Model) -> None:
        key = getattr(owner, relation.owner_property, None)
        if key is None:
            builder.resolve(0)
            return

        join_table = self._join_table(relation, builder)
        related_keys = sa.select(join_table.c[relation.join_table_related_column]).where(
            join_table.c[relation.join_table_owner_column] == key
        )
        builder.where(builder.column(relation.related_column).in_(related_keys))
        relation.filter(builder)

    def find(self, relation: Relation, builder: QueryBuilder[Any], owners: Sequence[Model]) -> QueryBuilder[Any]:
        keys = _unique_keys(owners, relation.owner_property)
        if not keys:
            builder.resolve([])
        else:
            join_table = self._join_table(relation, builder)
            owner_key = join_table.c[relation.join_table_owner_column]
            builder.join(
                join_table,
                join_table.c[relation.join_table_related_column] == builder.column(relation.related_column),
            )
            builder.add_columns(owner_key.label(_OWNER_KEY_LABEL))
            builder.where(owner_key.in_(keys))
            relation.filter(builder)

        def attach(related: list[Model]) -> list[Model]:
            grouped: defaultdict[Any, list[Model]] = defaultdict(list)
            for record in related:
                grouped[record.__dict__.pop(_OWNER_KEY_LABEL, None)].append(record)

            for owner in owners:
                key = getattr(owner, relation.owner_property, None)
                setattr(owner, relation.name, list(grouped.get(key, ())) if key is not None else [])

            return related

        return builder.run_after(attach)

    def insert(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, records: _Records
    ) -> QueryBuilder[Any]:
        items, single = _records_of(relation, records)
        key = getattr(owner, relation.owner_property, None)

        async def link(inserted: list[Model]) -> Model | list[Model] | None:
            if inserted:
                join_table = self._join_table(relation, builder)
                await builder.executor.execute(
                    sa.insert(join_table).values([
                        {
                            relation.join_table_owner_column: key,
                            relation.join_table_related_column: getattr(record, relation.related_property, None),
                        }
                        for record in inserted
                    ])
                )
            _attach_loaded(owner, relation, inserted)

            if single:
                return inserted[0] if inserted else None
            return inserted

        return builder.insert(items).run_after(link)

    def update(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, values: Model | Mapping[str, Any]
    ) -> QueryBuilder[Any]:
        self._scope_by_owner(relation, builder, owner)
        return builder.update(values)

    def patch(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, values: Mapping[str, Any]
    ) -> QueryBuilder[Any]:
        self._scope_by_owner(relation, builder, owner)
        return builder.patch(values)

    def delete(self, relation: Relation, builder: QueryBuilder[Any], owner: Model) -> QueryBuilder[Any]:
        self._scope_by_owner(relation, builder, owner)
        return builder.delete()

    def relate(self, relation: Relation, builder: QueryBuilder[Any], owner: Model, ids: Any) -> QueryBuilder[Any]:
        ids = _ids_of(ids)
        key = getattr(owner, relation.owner_property, None)

        async def link(result: list[Any]) -> list[Any]:
            if ids:
                join_table = self._join_table(relation, builder)
                await builder.executor.execute(
                    sa.insert(join_table).values([
                        {relation.join_table_owner_column: key, relation.join_table_related_column: related_id}
                        for related_id in ids
                    ])
                )
            return result

        return builder.resolve(ids).run_after(link)

    def unrelate(
        self, relation: Relation, builder: QueryBuilder[Any], owner: Model, ids: Iterable[Any] | None
    ) -> QueryBuilder[Any]:
        key = getattr(owner, relation.owner_property, None)
        if key is None:
            return builder.resolve(0)

        join_table = self._join_table(relation, builder)
        related_key = join_table.c[relation.join_table_related_column]
        stmt = sa.delete(join_table).where(join_table.c[relation.join_table_owner_column] == key)
        if ids is not None:
            stmt = stmt.where(related_key.in_(_ids_of(ids)))

        # the filter is expressed on the related table, so it narrows the
        # join-table rows through a subquery of matching related keys
        relation.filter(builder)
        stmt = stmt.where(related_key.in_(builder.select_column(relation.related_column)))

        async def unlink(result: int) -> int:
            return await builder.executor.execute(stmt)

        return builder.resolve(0).run_after(unlink)


STRATEGIES: Final[Mapping[RelationKind, RelationStrategy]] = frozendict({
    RelationKind.ONE_TO_ONE: OneToOneStrategy(),
    RelationKind.ONE_TO_MANY: OneToManyStrategy(),
    RelationKind.MANY_TO_MANY: ManyToManyStrategy(),
})
