from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from sqla_batchloads import MemoryAdapter, SqlAdapter, Store

from .models import Base, Comment, Friend, Tables, User, bind_tables, seed_rows


pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "mysql", "mariadb", "sqlite"],
        help="Database backend to run the SQL adapter cases against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


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

        case "mysql" | "mariadb":
            from testcontainers.mysql import MySqlContainer

            my = MySqlContainer(image="mysql:8.0" if db_backend == "mysql" else "mariadb:latest")
            if os.name == "nt":
                my.get_container_host_ip = lambda: "127.0.0.1"
            with my:
                host = my.get_container_host_ip()
                port = my.get_exposed_port(my.port)
                dsn = (
                    f"mysql+asyncmy://{my.username}:{my.password}"
                    f"@{host}:{port}/{my.dbname}"
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
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def connection(engine: AsyncEngine, _create_tables: None) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def seed_data(connection: AsyncConnection) -> dict[str, list[dict[str, Any]]]:
    rows = seed_rows()
    for model, key in ((User, "user"), (Friend, "friend"), (Comment, "comment")):
        await connection.execute(model.__table__.insert(), rows[key])

    return rows


@pytest.fixture
def sql_store(connection: AsyncConnection) -> Store:
    return Store(SqlAdapter(connection, Base.metadata))


@pytest.fixture
def sql_tables(sql_store: Store, seed_data: dict[str, list[dict[str, Any]]]) -> Tables:
    return bind_tables(sql_store)


@pytest.fixture
def data() -> dict[str, list[dict[str, Any]]]:
    return seed_rows()


@pytest.fixture
def memory_adapter(data: dict[str, list[dict[str, Any]]]) -> MemoryAdapter:
    return MemoryAdapter(data)


@pytest.fixture
def memory_store(memory_adapter: MemoryAdapter) -> Store:
    return Store(memory_adapter)


@pytest.fixture
def tables(memory_store: Store) -> Tables:
    return bind_tables(memory_store)
