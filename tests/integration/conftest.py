from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
import sqlalchemy as sa

from services.records.app.allocator import IdentifierAllocator
from services.records.app.settings import RecordsSettings
from services.records.app.tenants import TenantRegistry


@pytest.fixture()
def records_settings() -> RecordsSettings:
    return RecordsSettings(department_codes=["CS", "MATH"], pool_size=10, max_overflow=20, pool_timeout_s=10.0)


@pytest_asyncio.fixture()
async def registry(db: sa.Engine, records_settings: RecordsSettings) -> AsyncIterator[TenantRegistry]:
    async with TenantRegistry(records_settings) as reg:
        yield reg


@pytest.fixture()
def allocator(records_settings: RecordsSettings) -> IdentifierAllocator:
    return IdentifierAllocator.from_settings(records_settings)
