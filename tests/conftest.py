from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    create_async_engine,
)

from sqla_relations import Executor, Registry, parse_cache_clear

from .models import (
    ALL_MODELS,
    categories,
    comments,
    metadata,
    posts,
    profiles,
    roles,
    user_roles,
    users,
)


pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "sqlite"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def registry() -> Registry:
    """Registry of the test models. Sync, no DB needed."""
    return Registry(metadata, *ALL_MODELS)


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


class RecordingExecutor(Executor):
    """Executor that remembers every statement it runs."""

    def __init__(self, bind: Any) -> None:
        super().__init__(bind)
        self.statements: list[sa.Executable] = []

    async def _execute(self, conn: AsyncConnection, stmt: sa.Executable) -> Any:
        self.statements.append(stmt)
        return await super()._execute(conn, stmt)

    def selects(self) -> list[sa.Executable]:
        return [stmt for stmt in self.statements if isinstance(stmt, sa.Select)]

    def reset(self) -> None:
        self.statements.clear()


@pytest.fixture
def executor(connection: AsyncConnection) -> RecordingExecutor:
    return RecordingExecutor(connection)


SEED: dict[sa.Table, list[dict[str, Any]]] = {
    profiles: [
        {"id": 1, "bio": "Alice bio"},
        {"id": 2, "bio": "Bob bio"},
    ],
    users: [
        {"id": 1, "name": "alice", "active": True, "profile_id": 1},
        {"id": 2, "name": "bob", "active": True, "profile_id": 2},
        {"id": 3, "name": "charlie", "active": False, "profile_id": None},
    ],
    posts: [
        {"id": 1, "title": "Alice Post 1", "author_id": 1},
        {"id": 2, "title": "Alice Post 2", "author_id": 1},
        {"id": 3, "title": "Alice Post 3", "author_id": 1},
        {"id": 4, "title": "Bob Post 1", "author_id": 2},
        {"id": 5, "title": "Charlie Draft", "author_id": 3},
        {"id": 6, "title": "Orphan", "author_id": None},
    ],
    comments: [
        {"id": 1, "text": "Great post!", "post_id": 1},
        {"id": 2, "text": "Nice work", "post_id": 1},
        {"id": 3, "text": "Hm", "post_id": 4},
    ],
    roles: [
        {"id": 1, "name": "admin", "level": 10},
        {"id": 2, "name": "editor", "level": 5},
        {"id": 3, "name": "viewer", "level": 1},
    ],
    user_roles: [
        {"user_id": 1, "role_id": 1},
        {"user_id": 1, "role_id": 2},
        {"user_id": 2, "role_id": 2},
        {"user_id": 2, "role_id": 3},
    ],
    categories: [
        {"id": 1, "name": "root", "parent_id": None},
        {"id": 2, "name": "child_1", "parent_id": 1},
        {"id": 3, "name": "child_2", "parent_id": 1},
        {"id": 4, "name": "grandchild", "parent_id": 2},
        {"id": 5, "name": "great_grandchild", "parent_id": 4},
    ],
}


async def insert_seed(conn: AsyncConnection) -> None:
    for table in metadata.sorted_tables:
        if rows := SEED.get(table):
            await conn.execute(table.insert(), rows)

    # explicit ids leave postgres sequences behind
    if conn.dialect.name == "postgresql":
        for table in SEED:
            if "id" in table.c:
                await conn.execute(
                    sa.text(
                        f"SELECT setval(pg_get_serial_sequence('{table.name}', 'id'), "
                        f"(SELECT max(id) FROM {table.name}))"
                    )
                )


@pytest.fixture
async def seed_data(connection: AsyncConnection) -> dict[sa.Table, list[dict[str, Any]]]:
    await insert_seed(connection)
    return SEED


@pytest.fixture(autouse=True)
def clear_parse_cache() -> Iterator[None]:
    yield
    parse_cache_clear()
