from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa

from .model import Model
from .query import QueryBuilder
from .relation import Relation


if TYPE_CHECKING:
    from .expression import EagerNode
    from .registry import Registry


class RelatedQuery:
    """Operations on the records one owner reaches through one relation.

    Obtained from :meth:`Registry.related_query`; each method builds a query
    over the related model through the relation's strategy and runs it::

        pets = await registry.related_query(person, "pets", executor).find()
        await registry.related_query(person, "movies", executor).relate([3, 4])
    """

    __slots__ = ("owner", "registry", "relation")

    def __init__(self, relation: Relation, owner: Model, *, registry: Registry) -> None:
        if relation.executor is None:
            raise ValueError(f"Relation {relation.name!r} must be bound to an executor")
        if not isinstance(owner, relation.owner_model):
            raise TypeError(
                f"{relation.name!r} is a relation of {relation.owner_model.__name__}, not {type(owner).__name__}"
            )

        self.relation = relation
        self.owner = owner
        self.registry = registry

    def builder(self) -> QueryBuilder[Any]:
        assert self.relation.executor is not None
        return QueryBuilder(self.relation.related_model, registry=self.registry, executor=self.relation.executor)

    async def find(
        self,
        *clauses: sa.ColumnElement[bool],
        eager: str | EagerNode | None = None,
    ) -> Model | list[Model] | None:
        """Fetch the related record(s) and attach them to the owner.

        Extra ``clauses`` narrow the related rows; ``eager`` loads a relation
        graph below them.
        """
        builder = self.relation.find(self.builder().where(*clauses), [self.owner])
        if eager is not None:
            builder.eager(eager)

        await builder.execute()
        return getattr(self.owner, self.relation.name)

    async def insert(
        self, records: Model | Mapping[str, Any] | Sequence[Model | Mapping[str, Any]]
    ) -> Model | list[Model] | None:
        return await self.relation.insert(self.builder(), self.owner, records).execute()

    async def update(self, values: Model | Mapping[str, Any]) -> int:
        return await self.relation.update(self.builder(), self.owner, values).execute()

    async def patch(self, values: Mapping[str, Any]) -> int:
        return await self.relation.patch(self.builder(), self.owner, values).execute()

    async def delete(self) -> int:
        return await self.relation.delete(self.builder(), self.owner).execute()

    async def relate(self, ids: Any) -> Any:
        return await self.relation.relate(self.builder(), self.owner, ids).execute()

    async def unrelate(self, ids: Iterable[Any] | None = None) -> int:
        return await self.relation.unrelate(self.builder(), self.owner, ids).execute()
