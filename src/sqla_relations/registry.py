from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any, TypeVar, final

import sqlalchemy as sa

from .datastructures import frozendict
from .exceptions import ConfigurationError, RelationError
from .model import Model
from .relation import Relation, resolve_relation


if sys.version_info >= (3, 11):
    from typing import Unpack
else:
    from typing_extensions import Unpack

if TYPE_CHECKING:
    from .eager import LoadOptionsType
    from .expression import EagerNode
    from .query import Executor, QueryBuilder
    from .related import RelatedQuery


logger = logging.getLogger(__name__)

M = TypeVar("M", bound=Model)


@final
class Registry:
    """Registered models, their tables and their resolved relations.

    A registry is built once at startup from the SQLAlchemy ``MetaData`` that
    describes the tables, then passed into every query. Relation mappings are
    resolved when models are registered; after that the per-model relation
    maps are read-only.

    Example:
        >>> registry = Registry(metadata, Person, Animal, Movie)
        >>> registry.relation(Person, "pets").full_related_column()
        'animals.owner_id'
    """

    __slots__ = ("_models", "_relations", "metadata")

    def __init__(self, metadata: sa.MetaData, *models: type[Model]) -> None:
        self.metadata = metadata
        self._models: dict[str, type[Model]] = {}
        self._relations: dict[type[Model], frozendict[str, Relation]] = {}
        if models:
            self.register(*models)

    def register(self, *models: type[Model]) -> None:
        """Register *models* and resolve their relation mappings.

        Models may reference each other (and previously registered models) by
        class or by name. A model whose table or relations fail to resolve is
        left unregistered, and so is every model with a relation leading to
        it; the others are kept and the first error is raised.

        Raises:
            ConfigurationError: If a model or one of its relation mappings is invalid.
        """
        for model in models:
            if not (isinstance(model, type) and issubclass(model, Model)):
                raise ConfigurationError(f"{model!r} is not a Model subclass")
            if not model.table_name:
                raise ConfigurationError(f"{model.__name__}.table_name is not defined")

        # names go in first so that relations can reference any model of the batch
        previous = {model.__name__: self._models.get(model.__name__) for model in models}
        for model in models:
            self._models[model.__name__] = model

        errors: list[ConfigurationError] = []
        failed: set[type[Model]] = set()
        staged: dict[type[Model], frozendict[str, Relation]] = {}
        for model in models:
            try:
                self.table(model)
                staged[model] = frozendict({
                    name: resolve_relation(name, model, mapping, self)
                    for name, mapping in model.relation_mappings.items()
                })
            except ConfigurationError as e:
                errors.append(e)
                failed.add(model)

        changed = bool(failed)
        while changed:
            changed = False
            for model, relations in list(staged.items()):
                broken = next((r for r in relations.values() if r.related_model in failed), None)
                if broken is None:
                    continue

                errors.append(
                    ConfigurationError(
                        f"{model.__name__}.relation_mappings.{broken.name}.related: "
                        f"{broken.related_model.__name__} failed to register"
                    )
                )
                del staged[model]
                failed.add(model)
                changed = True

        for model in failed:
            if previous[model.__name__] is None:
                self._models.pop(model.__name__, None)
            else:
                self._models[model.__name__] = previous[model.__name__]  # type: ignore[assignment]

        self._relations.update(staged)
        for model, relations in staged.items():
            logger.debug("Registered %s with relations %s", model.__name__, list(relations))

        if errors:
            raise errors[0]

    def find_model(self, ref: type[Model] | str) -> type[Model] | None:
        """Look up a registered model by class or by name."""
        if isinstance(ref, str):
            return self._models.get(ref)

        if isinstance(ref, type) and self._models.get(ref.__name__) is ref:
            return ref

        return None

    def model(self, ref: type[Model] | str) -> type[Model]:
        model = self.find_model(ref)
        if model is None:
            raise ConfigurationError(f"{ref!r} is not a registered model")

        return model

    def table(self, ref: type[Model] | str) -> sa.Table:
        """The SQLAlchemy table of a model, or a table by name."""
        name = ref if isinstance(ref, str) else ref.table_name
        try:
            return self.metadata.tables[name]
        except KeyError:
            raise ConfigurationError(f"Table {name!r} is not defined in the metadata") from None

    def relations(self, model: type[Model]) -> Mapping[str, Relation]:
        try:
            return self._relations[model]
        except KeyError:
            raise ConfigurationError(f"{model.__name__} is not a registered model") from None

    def relation(self, model: type[Model], name: str) -> Relation:
        """Raises :class:`RelationError` if *model* has no relation *name*."""
        relation = self.relations(model).get(name)
        if relation is None:
            raise RelationError(model.__name__, name)

        return relation

    @property
    def models(self) -> Sequence[type[Model]]:
        return tuple(self._models.values())

    def __contains__(self, ref: object) -> bool:
        return isinstance(ref, (str, type)) and self.find_model(ref) is not None  # type: ignore[arg-type]

    def __iter__(self) -> Iterator[type[Model]]:
        return iter(self.models)

    def query(self, model: type[M], executor: Executor) -> QueryBuilder[M]:
        from .query import QueryBuilder

        return QueryBuilder(self.model(model), registry=self, executor=executor)  # type: ignore[arg-type]

    def related_query(self, owner: Model, name: str, executor: Executor) -> RelatedQuery:
        """Query and modify the records related to *owner* through relation *name*."""
        from .related import RelatedQuery

        relation = self.relation(type(owner), name).bind(executor)
        return RelatedQuery(relation, owner, registry=self)

    async def load_related(
        self,
        owners: Sequence[M],
        expression: str | EagerNode,
        executor: Executor,
        **options: Unpack[LoadOptionsType],
    ) -> Sequence[M]:
        from .eager import load_related

        return await load_related(owners, expression, registry=self, executor=executor, **options)

    async def load_related_one(
        self,
        owner: M,
        expression: str | EagerNode,
        executor: Executor,
        **options: Unpack[LoadOptionsType],
    ) -> M:
        await self.load_related([owner], expression, executor, **options)
        return owner

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {[model.__name__ for model in self._models.values()]}>"


def build_registry(metadata: sa.MetaData, models: Sequence[type[Model]] | None = None) -> Registry:
    """Create a registry for *models*, or for every ``Model`` subclass with a table in *metadata*."""
    if models is None:
        models = [model for model in _all_subclasses(Model) if model.table_name in metadata.tables]

    return Registry(metadata, *models)


def _all_subclasses(cls: type[Any]) -> list[type[Any]]:
    out: list[type[Any]] = []
    stack = list(cls.__subclasses__())
    while stack:
        sub = stack.pop(0)
        out.append(sub)
        stack.extend(sub.__subclasses__())

    return out
