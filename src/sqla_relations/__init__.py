"""Relation mapping and batched eager loading on top of SQLAlchemy Core.

Declare relations on ``Model`` subclasses as ``Table.column`` join
descriptions, register the models in a ``Registry`` built from your
``MetaData``, then load whole object graphs with eager expressions such as
``"pets.[owner, toys]"`` or ``"parent.^"``: one batched ``IN (...)`` query per
relation per level, whatever the number of owners.
"""

from ._version import __version__, __version_tuple__
from .columns import ColumnRef, parse_column
from .datastructures import frozendict
from .eager import EagerLoader, LoadOptions, load_related
from .exceptions import (
    CardinalityError,
    ConfigurationError,
    ParseError,
    RelationError,
    SqlaRelationsError,
)
from .expression import EagerNode, parse_cache_clear, parse_cache_info, parse_eager
from .model import Model
from .query import Executor, QueryBuilder
from .registry import Registry, build_registry
from .related import RelatedQuery
from .relation import Relation, RelationKind, resolve_relation


__all__ = (
    "CardinalityError",
    "ColumnRef",
    "ConfigurationError",
    "EagerLoader",
    "EagerNode",
    "Executor",
    "LoadOptions",
    "Model",
    "ParseError",
    "QueryBuilder",
    "RelatedQuery",
    "Registry",
    "Relation",
    "RelationError",
    "RelationKind",
    "SqlaRelationsError",
    "__version__",
    "__version_tuple__",
    "build_registry",
    "frozendict",
    "load_related",
    "parse_cache_clear",
    "parse_cache_info",
    "parse_column",
    "parse_eager",
    "resolve_relation",
)
