from __future__ import annotations

import os
from collections.abc import Iterator

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import NullPool
from testcontainers.postgres import PostgresContainer

from services.records.app.schema_resolver import SchemaResolver
from services.records.app.tables import department_tables

CENTRAL_KEY = "GLOBAL"
DEPARTMENTS = ("CS", "MATH")
TENANT_FIELDS = ("HOST", "PORT", "NAME", "USER", "PASSWORD")


@pytest.fixture(scope="session")
def postgres_url() -> Iterator[str]:
    with PostgresContainer("postgres:16") as pg:
        yield pg.get_connection_url()


@pytest.fixture(scope="session")
def tenant_env(postgres_url: str) -> sa.URL:
    # Every tenant points at the same server; each still gets its own pool.
    url = sa.make_url(postgres_url)
    values = {
        "HOST": url.host,
        "PORT": str(url.port),
        "NAME": url.database,
        "USER": url.username,
        "PASSWORD": url.password,
    }
    for prefix in (CENTRAL_KEY, *DEPARTMENTS):
        for field in TENANT_FIELDS:
            os.environ[f"{prefix}_DB_{field}"] = values[field]
    return url


@pytest.fixture(scope="session")
def sync_engine(tenant_env: sa.URL) -> Iterator[sa.Engine]:
    # Schema setup and seeding use a sync driver; the service itself runs on asyncpg.
    engine = sa.create_engine(tenant_env.set(drivername="postgresql+psycopg"), poolclass=NullPool)
    resolver = SchemaResolver()
    with engine.begin() as conn:
        for code in DEPARTMENTS:
            schema = resolver.resolve(code)
            conn.execute(sa.schema.CreateSchema(schema, if_not_exists=True))
            department_tables(schema).metadata.create_all(conn)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(sync_engine: sa.Engine) -> sa.Engine:
    resolver = SchemaResolver()
    with sync_engine.begin() as conn:
        for code in DEPARTMENTS:
            schema = resolver.resolve(code)
            conn.execute(sa.text(f"TRUNCATE {schema}.students, {schema}.staff"))
    return sync_engine
