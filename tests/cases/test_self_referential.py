from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncConnection

from sqla_relations import Registry

from ..conftest import RecordingExecutor
from ..models import Category, categories

pytestmark = pytest.mark.anyio


async def _category(registry: Registry, executor: RecordingExecutor, id_: int) -> Category:
    return await registry.query(Category, executor).where(categories.c.id == id_).first()


class TestRecursiveParent:
    async def test_walks_up_to_root(self, registry: Registry, executor: RecordingExecutor, seed_data: Any) -> None:
        leaf = await _category(registry, executor, 5)
        await registry.load_related_one(leaf, "parent.^", executor)

        chain = []
        node = leaf.parent
        while node is not None:
            chain.append(node.name)
            node = node.parent

        assert chain == ["grandchild", "child_1", "root"]

    async def test_one_query_per_level(self, registry: Registry, executor: RecordingExecutor, seed_data: Any) -> None:
        leaf = await _category(registry, executor, 5)
        executor.reset()

        await registry.load_related_one(leaf, "parent.^", executor)

        # grandchild, child_1, root; the root has no parent key to fetch
        assert len(executor.selects()) == 3

    async def test_root_has_no_parent(self, registry: Registry, executor: RecordingExecutor, seed_data: Any) -> None:
        root = await _category(registry, executor, 1)
        await registry.load_related_one(root, "parent.^", executor)

        assert root.parent is None


class TestRecursiveChildren:
    async def test_loads_whole_subtree(self, registry: Registry, executor: RecordingExecutor, seed_data: Any) -> None:
        root = await _category(registry, executor, 1)
        await registry.load_related_one(root, "children.^", executor)

        child_1, child_2 = root.children
        assert [child.name for child in root.children] == ["child_1", "child_2"]
        assert child_2.children == []
        assert [node.name for node in child_1.children] == ["grandchild"]
        assert [node.name for node in child_1.children[0].children] == ["great_grandchild"]
        assert child_1.children[0].children[0].children == []

    async def test_recursion_limit(self, registry: Registry, executor: RecordingExecutor, seed_data: Any) -> None:
        root = await _category(registry, executor, 1)
        await registry.load_related_one(root, "children.^", executor, recursion_limit=2)

        grandchild = root.children[0].children[0]
        assert grandchild.name == "grandchild"
        assert not grandchild.is_loaded("children")

    async def test_recursion_with_sibling_relation(
        self, registry: Registry, executor: RecordingExecutor, seed_data: Any
    ) -> None:
        root = await _category(registry, executor, 1)
        await registry.load_related_one(root, "[children.^, children.parent]", executor)

        child_1 = root.children[0]
        assert child_1.parent.name == "root"
        assert [node.name for node in child_1.children] == ["grandchild"]

    async def test_subtree_to_dict(self, registry: Registry, executor: RecordingExecutor, seed_data: Any) -> None:
        node = await _category(registry, executor, 4)
        await registry.load_related_one(node, "children.^", executor)

        assert node.to_dict(pick=["name", "children"]) == {
            "name": "grandchild",
            "children": [{"name": "great_grandchild", "children": []}],
        }


class TestLongChains:
    CHAIN_START = 100
    CHAIN_LENGTH = 400

    async def _insert_chain(self, connection: AsyncConnection) -> int:
        rows = [
            {
                "id": self.CHAIN_START + i,
                "name": f"level_{i}",
                "parent_id": self.CHAIN_START + i - 1 if i else None,
            }
            for i in range(self.CHAIN_LENGTH)
        ]
        await connection.execute(categories.insert(), rows)
        return rows[-1]["id"]

    async def test_walks_a_deep_parent_chain(
        self, registry: Registry, executor: RecordingExecutor, connection: AsyncConnection, seed_data: Any
    ) -> None:
        leaf_id = await self._insert_chain(connection)
        leaf = await _category(registry, executor, leaf_id)
        executor.reset()

        await registry.load_related_one(leaf, "parent.^", executor)

        depth = 0
        node = leaf
        while node.parent is not None:
            node = node.parent
            depth += 1

        assert depth == self.CHAIN_LENGTH - 1
        assert node.name == "level_0"
        assert len(executor.selects()) == self.CHAIN_LENGTH - 1

    async def test_walks_a_deep_children_chain(
        self, registry: Registry, executor: RecordingExecutor, connection: AsyncConnection, seed_data: Any
    ) -> None:
        await self._insert_chain(connection)
        top = await _category(registry, executor, self.CHAIN_START)

        await registry.load_related_one(top, "children.^", executor)

        depth = 0
        node = top
        while node.children:
            (node,) = node.children
            depth += 1

        assert depth == self.CHAIN_LENGTH - 1
        assert node.children == []

    async def test_limit_on_deep_chain(
        self, registry: Registry, executor: RecordingExecutor, connection: AsyncConnection, seed_data: Any
    ) -> None:
        leaf_id = await self._insert_chain(connection)
        leaf = await _category(registry, executor, leaf_id)

        await registry.load_related_one(leaf, "parent.^", executor, recursion_limit=10)

        node = leaf
        for _ in range(10):
            node = node.parent

        assert node.name == f"level_{self.CHAIN_LENGTH - 11}"
        assert not node.is_loaded("parent")
