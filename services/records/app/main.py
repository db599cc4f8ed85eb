from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import sqlalchemy as sa
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from services.records.app import errors
from services.records.app.allocator import IdentifierAllocator
from services.records.app.enrollment import register_student
from services.records.app.logging import configure_logging, logger
from services.records.app.observability import (
    add_metrics_middleware,
    instrument_sqlalchemy,
    setup_tracing,
    uninstrument_sqlalchemy,
)
from services.records.app.schemas import (
    ErrorResponse,
    HealthResponse,
    IdentifierPreviewRequest,
    IdentifierPreviewResponse,
    StudentCreateRequest,
    StudentCreateResponse,
    TenantHealth,
)
from services.records.app.settings import SETTINGS, RecordsSettings
from services.records.app.tenants import EngineFactory, TenantRegistry, create_tenant_engine

_STATUS_BY_ERROR: list[tuple[type[errors.RecordsError], int]] = [
    (errors.TenantNotFound, 404),
    (errors.InvalidDepartmentCode, 400),
    (errors.PoolTimeout, 503),
    (errors.AllocationTimeout, 503),
    (errors.RegistryNotInitialized, 503),
    (errors.AllocationExhausted, 409),
    (errors.SequenceExhausted, 409),
    (errors.AllocationConflict, 409),
]


def status_for(exc: errors.RecordsError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


def get_registry(request: Request) -> TenantRegistry:
    return request.app.state.registry


def get_allocator(request: Request) -> IdentifierAllocator:
    return request.app.state.allocator


def get_settings(request: Request) -> RecordsSettings:
    return request.app.state.settings


def department_code(dept_code: str, settings: RecordsSettings = Depends(get_settings)) -> str:
    code = dept_code.strip().upper()
    # The central store has no department schema; only configured departments allocate.
    if code not in {c.strip().upper() for c in settings.department_codes}:
        raise errors.TenantNotFound(dept_code)
    return code


def create_app(settings: RecordsSettings = SETTINGS, engine_factory: EngineFactory = create_tenant_engine) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # ConfigurationError propagates and aborts startup.
        registry = TenantRegistry(settings, engine_factory=engine_factory)
        await registry.initialize()
        try:
            instrument_sqlalchemy([registry.get_pool(k) for k in registry.tenant_keys])
            app.state.registry = registry
            app.state.allocator = IdentifierAllocator.from_settings(settings)
            yield
        finally:
            uninstrument_sqlalchemy()
            await registry.dispose()

    app = FastAPI(title="Records Tenancy API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    configure_logging(settings.log_level)
    setup_tracing(app, service_name="records")
    add_metrics_middleware(app)

    @app.exception_handler(errors.RecordsError)
    async def _records_error(request: Request, exc: errors.RecordsError) -> JSONResponse:
        status = status_for(exc)
        log = logger.error if status >= 500 else logger.info
        log("request_failed", path=request.url.path, error=type(exc).__name__, status=status, detail=str(exc))
        body = ErrorResponse(error=type(exc).__name__, detail=str(exc))
        return JSONResponse(status_code=status, content=body.model_dump())

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz(registry: TenantRegistry = Depends(get_registry)) -> JSONResponse:
        results: list[TenantHealth] = []
        for key in registry.tenant_keys:
            try:
                async with registry.connect(key) as conn:
                    await conn.execute(sa.text("SELECT 1"))
                results.append(TenantHealth(tenant=key, ok=True))
            except errors.RecordsError as e:
                results.append(TenantHealth(tenant=key, ok=False, error=type(e).__name__))
        body = HealthResponse(ok=all(r.ok for r in results), tenants=results)
        return JSONResponse(status_code=200 if body.ok else 503, content=body.model_dump())

    @app.post("/departments/{dept_code}/identifiers/preview", response_model=IdentifierPreviewResponse)
    async def preview_identifiers(
        req: IdentifierPreviewRequest,
        code: str = Depends(department_code),
        registry: TenantRegistry = Depends(get_registry),
        allocator: IdentifierAllocator = Depends(get_allocator),
    ) -> IdentifierPreviewResponse:
        ids = await allocator.allocate_identifiers(
            req.first_name,
            req.last_name,
            code,
            registry.executor(code),
            year=req.year,
            timeout_s=settings.allocation_timeout_ms / 1000.0,
        )
        return IdentifierPreviewResponse(
            dept_code=code, student_number=ids.student_number, university_email=ids.university_email
        )

    @app.post("/departments/{dept_code}/students", response_model=StudentCreateResponse, status_code=201)
    async def create_student(
        req: StudentCreateRequest,
        code: str = Depends(department_code),
        registry: TenantRegistry = Depends(get_registry),
        allocator: IdentifierAllocator = Depends(get_allocator),
    ) -> StudentCreateResponse:
        student = await register_student(
            registry,
            allocator,
            code,
            req.first_name,
            req.last_name,
            year_of_study=req.year_of_study,
            timeout_s=settings.allocation_timeout_ms / 1000.0,
            max_attempts=settings.registration_max_attempts,
        )
        return StudentCreateResponse(
            user_id=student.user_id,
            dept_code=student.dept_code,
            student_number=student.student_number,
            university_email=student.university_email,
            attempts=student.attempts,
        )

    return app


app = create_app()
