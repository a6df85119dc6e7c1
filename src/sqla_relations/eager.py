from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, TypeVar

from .expression import EagerNode, parse_eager
from .model import Model
from .query import Executor
from .registry import Registry
from .relation import Relation


if sys.version_info >= (3, 11):
    from typing import TypedDict, Unpack
else:
    from typing_extensions import TypedDict, Unpack


logger = logging.getLogger(__name__)

M = TypeVar("M", bound=Model)

DEFAULT_RECURSION_LIMIT: Final[int | None] = None

_MISSING: Final = object()

_Edge = tuple[Relation, EagerNode]


@dataclass(slots=True, frozen=True)
class LoadOptions:
    concurrent: bool = field(default=True)
    recursion_limit: int | None = field(default=DEFAULT_RECURSION_LIMIT)


class LoadOptionsType(TypedDict, total=False):
    concurrent: bool
    recursion_limit: int | None


class EagerLoader:
    """Loads an eager expression tree onto already-fetched owners.

    Each edge of the tree (a relation under a node) costs one query per level:
    the relation strategy batches every owner key of the level into a single
    ``IN (...)`` fetch and attaches the results. Sibling edges are independent
    and run concurrently; a level's children run only after it is merged,
    since their owners are the records it returned.

    One loader serves one ``load()`` call.
    """

    __slots__ = ("executor", "options", "registry")

    def __init__(self, registry: Registry, executor: Executor, options: LoadOptions) -> None:
        self.registry = registry
        self.executor = executor
        self.options = options

    def plan(self, model: type[Model], node: EagerNode) -> list[_Edge]:
        """Resolve the relations under *node* on *model*.

        Raises:
            RelationError: If *model* has no relation named by a child of *node*.
        """
        edges = [(self.registry.relation(model, child.name), child) for child in node.children]

        if node.all_relations:
            named = {child.name for child in node.children}
            edges.extend(
                (relation, EagerNode(name))
                for name, relation in self.registry.relations(model).items()
                if name not in named
            )

        return edges

    async def load(self, owners: Sequence[M], node: EagerNode) -> Sequence[M]:
        """Load *node* onto *owners*; on failure, leave the owners as they were."""
        if not owners:
            return owners

        model = type(owners[0])
        edges = self.plan(model, node)
        snapshot = [
            (owner, relation.name, owner.__dict__.get(relation.name, _MISSING))
            for owner in owners
            for relation, _ in edges
        ]

        try:
            await self._gather([self._load_edge(relation, owners, child, 1) for relation, child in edges])
        except BaseException:
            for owner, name, value in snapshot:
                if value is _MISSING:
                    owner.__dict__.pop(name, None)
                else:
                    owner.__dict__[name] = value
            raise

        return owners

    async def _load_level(self, model: type[Model], owners: Sequence[Model], node: EagerNode, depth: int) -> None:
        edges = self.plan(model, node)
        await self._gather([self._load_edge(relation, owners, child, depth) for relation, child in edges])

    async def _fetch(self, relation: Relation, owners: Sequence[Model], depth: int) -> list[Model]:
        builder = self.registry.query(relation.related_model, self.executor)
        related: list[Model] = await relation.find(builder, owners).execute()
        logger.debug(
            "Loaded %s.%s at depth %d: %d owners, %d related",
            relation.owner_model.__name__,
            relation.name,
            depth,
            len(owners),
            len(related),
        )
        return related

    async def _load_edge(self, relation: Relation, owners: Sequence[Model], node: EagerNode, depth: int) -> None:
        related = await self._fetch(relation, owners, depth)

        while related:
            if node.has_children:
                await self._load_level(relation.related_model, related, node, depth + 1)

            if not node.all_recursive:
                return

            limit = self.options.recursion_limit
            if limit is not None and depth >= limit:
                logger.warning("Stopped %s.^ at recursion limit %d", relation.name, limit)
                return

            # the same relation again on the records just fetched, until a level comes back empty
            relation = self.registry.relation(relation.related_model, node.name)
            depth += 1
            related = await self._fetch(relation, related, depth)

    async def _gather(self, coros: list[Coroutine[Any, Any, None]]) -> None:
        if not self.options.concurrent or len(coros) < 2:
            pending = iter(coros)
            try:
                for coro in pending:
                    await coro
            finally:
                for coro in pending:
                    coro.close()
            return

        tasks = [asyncio.ensure_future(coro) for coro in coros]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise


async def load_related(
    owners: Sequence[M],
    expression: str | EagerNode,
    *,
    registry: Registry,
    executor: Executor,
    **options: Unpack[LoadOptionsType],
) -> Sequence[M]:
    """Fetch the relations described by *expression* onto *owners*.

    All owners must be records of the same model. They are returned in their
    original order, each carrying the requested relations as attributes:
    a record or ``None`` for one-to-one relations, a list for the others.
    Relations that were not requested stay absent.

    Args:
        owners: Records already fetched from the database.
        expression: An eager expression, or a tree from :func:`parse_eager`.
        registry: The registry the owners' model is registered in.
        executor: Runs the fetch queries.
        concurrent: Fetch sibling relations concurrently. Defaults to True.
        recursion_limit: Maximum depth of ``^`` branches. Defaults to None
            (stop only when a level returns no records).

    Raises:
        ParseError: If *expression* is malformed.
        RelationError: If *expression* names a relation a model does not have.

    Example::

        people = await registry.query(Person, executor)
        await load_related(people, "[pets, parent.^]", registry=registry, executor=executor)
    """
    node = parse_eager(expression)
    if owners and any(type(owner) is not type(owners[0]) for owner in owners):
        raise TypeError("All owners of an eager load must be records of the same model")

    loader = EagerLoader(registry, executor, LoadOptions(**options))
    return await loader.load(owners, node)
