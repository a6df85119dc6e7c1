"""Eager expressions: which relations to load, and how deep.

Grammar::

    expr := term ("." term)*
    term := name | "[" expr ("," expr)* "]" | name "." "^" | "*"

* ``a.b`` loads ``a`` and, on the records it returns, ``b``.
* ``[a, b]`` loads the siblings ``a`` and ``b``. A list ends the expression.
* ``a.^`` loads ``a`` again on every level it returns, until a level is empty.
* ``*`` loads every relation of the current model, one level deep.
"""

from __future__ import annotations

import string
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Final

from .exceptions import ParseError


_NAME_START: Final[frozenset[str]] = frozenset(string.ascii_letters + "_$")
_NAME_CHARS: Final[frozenset[str]] = _NAME_START | frozenset(string.digits)


@dataclass(frozen=True, slots=True)
class EagerNode:
    """One relation in a parsed eager expression.

    The root node has an empty ``name``; its children are the top-level
    relations. ``children`` never holds two nodes with the same name.
    """

    name: str = ""
    children: tuple[EagerNode, ...] = field(default=())
    all_recursive: bool = False
    all_relations: bool = False

    @property
    def is_root(self) -> bool:
        return not self.name

    @property
    def has_children(self) -> bool:
        return bool(self.children) or self.all_relations

    def child(self, name: str) -> EagerNode | None:
        return next((child for child in self.children if child.name == name), None)

    def __str__(self) -> str:
        if self.is_root:
            paths = _render_children(self)
            return paths[0] if len(paths) == 1 else f"[{', '.join(paths)}]"

        return ", ".join(_render(self))


def _render_children(node: EagerNode) -> list[str]:
    paths = [path for child in node.children for path in _render(child)]
    if node.all_relations:
        paths.append("*")
    return paths


def _render(node: EagerNode) -> list[str]:
    paths = []
    if node.all_recursive:
        paths.append(f"{node.name}.^")

    sub = _render_children(node)
    if len(sub) == 1:
        paths.append(f"{node.name}.{sub[0]}")
    elif sub:
        paths.append(f"{node.name}.[{', '.join(sub)}]")

    return paths or [node.name]


def _merge(nodes: list[EagerNode]) -> tuple[EagerNode, ...]:
    """Fold nodes sharing a name into one, keeping first-seen order."""
    merged: dict[str, EagerNode] = {}
    for node in nodes:
        seen = merged.get(node.name)
        if seen is None:
            merged[node.name] = node
            continue

        merged[node.name] = EagerNode(
            node.name,
            _merge([*seen.children, *node.children]),
            all_recursive=seen.all_recursive or node.all_recursive,
            all_relations=seen.all_relations or node.all_relations,
        )

    return tuple(merged.values())


class _Parser:
    __slots__ = ("pos", "text")

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def error(self, reason: str, position: int | None = None) -> ParseError:
        return ParseError(self.text, self.pos if position is None else position, reason)

    def peek(self) -> str | None:
        return self.text[self.pos] if self.pos < len(self.text) else None

    def skip_whitespace(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def parse(self) -> EagerNode:
        self.skip_whitespace()
        if self.peek() is None:
            raise self.error("empty expression")

        nodes, all_relations = self.expr()
        self.skip_whitespace()
        if self.peek() is not None:
            raise self.error(f"unexpected {self.peek()!r}")

        return EagerNode("", _merge(nodes), all_relations=all_relations)

    def expr(self) -> tuple[list[EagerNode], bool]:
        """Parse one expression; return its top-level nodes and whether it was ``*``."""
        self.skip_whitespace()
        char = self.peek()
        if char == "[":
            return self.siblings()
        if char == "*":
            self.pos += 1
            return [], True

        name = self.name()
        self.skip_whitespace()
        if self.peek() != ".":
            return [EagerNode(name)], False

        self.pos += 1
        self.skip_whitespace()
        if self.peek() == "^":
            self.pos += 1
            return [EagerNode(name, all_recursive=True)], False

        children, all_relations = self.expr()
        return [EagerNode(name, _merge(children), all_relations=all_relations)], False

    def siblings(self) -> tuple[list[EagerNode], bool]:
        start = self.pos
        self.pos += 1
        nodes: list[EagerNode] = []
        all_relations = False

        while True:
            self.skip_whitespace()
            char = self.peek()
            if char is None:
                raise self.error("unbalanced '['", start)
            if char in ",]":
                raise self.error("empty segment")

            sub, star = self.expr()
            nodes.extend(sub)
            all_relations = all_relations or star

            self.skip_whitespace()
            char = self.peek()
            if char == ",":
                self.pos += 1
            elif char == "]":
                self.pos += 1
                break
            elif char is None:
                raise self.error("unbalanced '['", start)
            else:
                raise self.error(f"expected ',' or ']', got {char!r}")

        self.skip_whitespace()
        if self.peek() == ".":
            raise self.error("a bracket list can only end an expression")

        return nodes, all_relations

    def name(self) -> str:
        start = self.pos
        char = self.peek()
        if char is None:
            raise self.error("unexpected end of expression")
        if char not in _NAME_START:
            raise self.error(f"expected a relation name, got {char!r}")

        while self.pos < len(self.text) and self.text[self.pos] in _NAME_CHARS:
            self.pos += 1

        return self.text[start:self.pos]


@lru_cache(maxsize=1028)
def _parse(expression: str) -> EagerNode:
    return _Parser(expression).parse()


def parse_eager(expression: str | EagerNode) -> EagerNode:
    """Parse an eager expression into an :class:`EagerNode` tree.

    Already-parsed trees are returned as is. Parsing is cached, and the tree
    does not depend on any model: relation names are checked when loading.

    Raises:
        ParseError: If *expression* is malformed.

    Example:
        >>> tree = parse_eager("pets.[owner, toys]")
        >>> [child.name for child in tree.child("pets").children]
        ['owner', 'toys']
    """
    if isinstance(expression, EagerNode):
        return expression

    if not isinstance(expression, str):
        raise TypeError(f"Eager expression must be a string, got {type(expression).__name__}")

    return _parse(expression)


def parse_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for the expression parser."""
    return {"parse_eager": _parse.cache_info()}


def parse_cache_clear() -> None:
    _parse.cache_clear()
