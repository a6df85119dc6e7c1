from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine

from sqla_relations import Executor, QueryBuilder, Registry

from ..models import Post, Role, User, posts, roles, users


@pytest.fixture
def offline_executor() -> Executor:
    return Executor(create_async_engine("sqlite+aiosqlite://"))


def _sql(builder: QueryBuilder[object]) -> str:
    return " ".join(str(builder.to_statement()).split())


class TestExecutor:
    def test_rejects_other_binds(self) -> None:
        with pytest.raises(TypeError, match="AsyncConnection or AsyncEngine"):
            Executor(object())  # type: ignore[arg-type]


class TestStatements:
    def test_select_orders_by_primary_key(self, registry: Registry, offline_executor: Executor) -> None:
        sql = _sql(registry.query(Post, offline_executor))

        assert sql.startswith("SELECT posts.id, posts.title, posts.author_id")
        assert sql.endswith("ORDER BY posts.id")

    def test_where_in(self, registry: Registry, offline_executor: Executor) -> None:
        sql = _sql(registry.query(Post, offline_executor).where_in("author_id", [1, 2]))

        assert "WHERE posts.author_id IN" in sql

    def test_qualified_column(self, registry: Registry, offline_executor: Executor) -> None:
        builder = registry.query(Post, offline_executor)

        assert builder.column("users.name") is users.c.name
        assert builder.column("title") is posts.c.title

    def test_filter_by_none_is_null(self, registry: Registry, offline_executor: Executor) -> None:
        sql = _sql(registry.query(User, offline_executor).filter_by(profile_id=None, active=True))

        assert "users.profile_id IS NULL" in sql
        assert "users.active = " in sql

    def test_order_and_limit(self, registry: Registry, offline_executor: Executor) -> None:
        sql = _sql(registry.query(Role, offline_executor).order_by(sa.desc(roles.c.level)).limit(2))

        assert "ORDER BY roles.level DESC" in sql
        assert "LIMIT" in sql

    def test_first_limits_to_one(self, registry: Registry, offline_executor: Executor) -> None:
        builder = registry.query(Role, offline_executor).first()

        assert "LIMIT" in _sql(builder)

    def test_update_uses_column_names(self, registry: Registry, offline_executor: Executor) -> None:
        builder = registry.query(Post, offline_executor).where_in("id", [1]).patch({"authorId": 2})

        sql = _sql(builder)
        assert sql.startswith("UPDATE posts SET author_id=")
        assert "WHERE posts.id IN" in sql

    def test_delete(self, registry: Registry, offline_executor: Executor) -> None:
        sql = _sql(registry.query(Post, offline_executor).where(posts.c.id == 1).delete())

        assert sql.startswith("DELETE FROM posts WHERE posts.id =")

    def test_insert_has_no_single_statement(self, registry: Registry, offline_executor: Executor) -> None:
        builder = registry.query(Post, offline_executor).insert([{"title": "new"}])

        with pytest.raises(TypeError):
            builder.to_statement()

    def test_select_column_subquery(self, registry: Registry, offline_executor: Executor) -> None:
        builder = registry.query(Role, offline_executor).filter_by(name="admin")
        sql = " ".join(str(builder.select_column("id")).split())

        assert sql.startswith("SELECT roles.id FROM roles WHERE roles.name =")


class TestResolution:
    def test_unresolved_by_default(self, registry: Registry, offline_executor: Executor) -> None:
        assert not registry.query(Post, offline_executor).is_resolved

    @pytest.mark.anyio
    async def test_resolved_builder_skips_database(self, registry: Registry, offline_executor: Executor) -> None:
        seen: list[object] = []

        async def hook(result: list[int]) -> list[int]:
            seen.append(result)
            return [*result, 3]

        builder = registry.query(Post, offline_executor).resolve([1, 2]).run_after(hook).run_after(len)

        assert builder.is_resolved
        assert await builder == 3
        assert seen == [[1, 2]]
