from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import sqlalchemy as sa
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from services.records.app.db import PoolExecutor, storage_errors
from services.records.app.errors import ConfigurationError, RegistryNotInitialized, TenantNotFound
from services.records.app.logging import logger
from services.records.app.settings import RecordsSettings


class TenantConfig(BaseSettings):
    """
    Connection parameters for one tenant, read from `<PREFIX>_DB_<FIELD>`.

    Build with `TenantConfig(_env_prefix="CS_DB_")`; `load_tenant_config` does that and turns
    validation failures into `ConfigurationError`.
    """

    model_config = SettingsConfigDict(extra="forbid", str_strip_whitespace=True)

    host: str = Field(min_length=1)
    port: int = Field(gt=0, lt=65536)
    name: str = Field(min_length=1)
    user: str = Field(min_length=1)
    password: str = Field(min_length=1)

    def url(self, driver: str) -> sa.URL:
        return sa.URL.create(
            driver,
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.name,
        )


def env_prefix(tenant_key: str) -> str:
    return f"{tenant_key.upper()}_DB_"


def load_tenant_config(tenant_key: str) -> TenantConfig:
    prefix = env_prefix(tenant_key)
    try:
        return TenantConfig(_env_prefix=prefix)
    except ValidationError as e:
        # Report the first offending field, in declaration order.
        err = e.errors()[0]
        field = str(err["loc"][0]) if err["loc"] else "unknown"
        reason = {"missing": "missing", "string_too_short": "empty"}.get(err["type"], "invalid")
        raise ConfigurationError(tenant_key, field, reason, env_var=f"{prefix}{field.upper()}") from None


EngineFactory = Callable[[TenantConfig, RecordsSettings], AsyncEngine]


def create_tenant_engine(config: TenantConfig, settings: RecordsSettings) -> AsyncEngine:
    return create_async_engine(
        config.url(settings.db_driver),
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout_s,
        pool_recycle=settings.pool_recycle_s,
        pool_pre_ping=True,
    )


class TenantRegistry:
    """
    Owns one connection pool per tenant: the central store and each configured department.

    Construct once at process start, `await initialize()`, then hand the instance to whatever
    needs tenant access. Lookups never create pools. All pools are released by `dispose()`.
    """

    def __init__(self, settings: RecordsSettings, engine_factory: EngineFactory = create_tenant_engine):
        self._settings = settings
        self._engine_factory = engine_factory
        self._engines: dict[str, AsyncEngine] = {}
        self._initialized = False

    @property
    def tenant_keys(self) -> tuple[str, ...]:
        keys = [self._settings.central_tenant_key, *self._settings.department_codes]
        return tuple(dict.fromkeys(k.strip().upper() for k in keys))

    @property
    def central_key(self) -> str:
        return self._settings.central_tenant_key.strip().upper()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return

        # Validate every tenant before any pool exists.
        configs = {key: load_tenant_config(key) for key in self.tenant_keys}

        engines: dict[str, AsyncEngine] = {}
        ok = False
        key = ""
        try:
            for key, config in configs.items():
                engine = self._engine_factory(config, self._settings)
                engines[key] = engine
                if self._settings.verify_pools_on_startup:
                    await self._verify(key, engine)
                logger.info("tenant_registered", tenant=key, host=config.host, port=config.port, database=config.name)
            ok = True
        finally:
            if not ok:
                logger.error("tenant_registration_failed", tenant=key, releasing=sorted(engines))
                await self._dispose_engines(engines)

        self._engines = engines
        self._initialized = True
        logger.info("tenant_registry_initialized", tenants=list(engines))

    async def _verify(self, key: str, engine: AsyncEngine) -> None:
        async with storage_errors(key):
            async with engine.connect() as conn:
                await conn.execute(sa.text("SELECT 1"))

    @staticmethod
    async def _dispose_engines(engines: dict[str, AsyncEngine]) -> None:
        # Every pool gets its dispose; one failure must not leave the rest open.
        for key, engine in engines.items():
            try:
                await engine.dispose()
            except Exception:
                logger.exception("tenant_pool_dispose_failed", tenant=key)

    async def dispose(self) -> None:
        engines, self._engines = self._engines, {}
        self._initialized = False
        if engines:
            await self._dispose_engines(engines)
            logger.info("tenant_registry_disposed", tenants=list(engines))

    async def __aenter__(self) -> TenantRegistry:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()

    def _normalize(self, tenant_key: str) -> str:
        return (tenant_key or "").strip().upper()

    def get_pool(self, tenant_key: str) -> AsyncEngine:
        if not self._initialized:
            raise RegistryNotInitialized()
        engine = self._engines.get(self._normalize(tenant_key))
        if engine is None:
            raise TenantNotFound(tenant_key)
        return engine

    def central_pool(self) -> AsyncEngine:
        return self.get_pool(self.central_key)

    def executor(self, tenant_key: str) -> PoolExecutor:
        return PoolExecutor(self.get_pool(tenant_key), self._normalize(tenant_key))

    @asynccontextmanager
    async def connect(self, tenant_key: str) -> AsyncIterator[AsyncConnection]:
        engine = self.get_pool(tenant_key)
        async with storage_errors(self._normalize(tenant_key)):
            async with engine.connect() as conn:
                yield conn

    @asynccontextmanager
    async def begin(self, tenant_key: str) -> AsyncIterator[AsyncConnection]:
        """Transactional connection: committed when the block exits cleanly, rolled back otherwise."""
        engine = self.get_pool(tenant_key)
        async with storage_errors(self._normalize(tenant_key)):
            async with engine.begin() as conn:
                yield conn
