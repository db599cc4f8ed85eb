from __future__ import annotations

import asyncio
from dataclasses import dataclass
from uuid import UUID, uuid4

from services.records.app.allocator import IdentifierAllocator, current_year
from services.records.app.db import TransactionExecutor
from services.records.app.errors import AllocationConflict, AllocationTimeout, DuplicateIdentifier
from services.records.app.logging import logger
from services.records.app.observability import ALLOCATION_TOTAL
from services.records.app.tables import department_tables
from services.records.app.tenants import TenantRegistry


@dataclass(frozen=True)
class RegisteredStudent:
    user_id: UUID
    dept_code: str
    student_number: str
    university_email: str
    attempts: int


async def _register_once(
    registry: TenantRegistry,
    allocator: IdentifierAllocator,
    dept_code: str,
    first_name: str,
    last_name: str,
    year_of_study: int,
    year: int,
    user_id: UUID,
) -> tuple[str, str]:
    schema = allocator.resolver.resolve(dept_code)
    students = department_tables(schema).students
    async with registry.begin(dept_code) as conn:
        executor = TransactionExecutor(conn, dept_code.strip().upper())
        await allocator.lock_student_sequence(dept_code, executor, year=year)
        number = await allocator.generate_student_number(dept_code, executor, year=year)
        email = await allocator.generate_university_email(first_name, last_name, dept_code, executor)
        await executor.execute(
            students.insert().values(
                user_id=user_id,
                student_number=number,
                university_email=email,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                year=year_of_study,
            )
        )
    logger.debug("student_row_committed", schema=schema, value=number)
    return number, email


async def register_student(
    registry: TenantRegistry,
    allocator: IdentifierAllocator,
    dept_code: str,
    first_name: str,
    last_name: str,
    *,
    year_of_study: int = 1,
    year: int | None = None,
    timeout_s: float | None = None,
    max_attempts: int = 3,
) -> RegisteredStudent:
    """
    Allocate a student number and email and insert the student row, atomically.

    Each attempt runs in one transaction on the department pool: advisory lock on the
    (department, year) sequence, read the maximum, probe emails, insert, commit. A unique
    violation between student rows (for example same-name registrations for different years,
    which take different locks) rolls the attempt back and starts over, up to `max_attempts`.
    Staff addresses are only checked at allocation time; no constraint spans both tables.
    `timeout_s` bounds the whole call; nothing is committed when it fires.
    """
    year = year or current_year()
    user_id = uuid4()
    try:
        async with asyncio.timeout(timeout_s):
            for attempt in range(1, max_attempts + 1):
                try:
                    number, email = await _register_once(
                        registry, allocator, dept_code, first_name, last_name, year_of_study, year, user_id
                    )
                except DuplicateIdentifier:
                    ALLOCATION_TOTAL.labels("registration", "conflict").inc()
                    logger.warning("student_registration_conflict", dept_code=dept_code, attempt=attempt)
                    continue
                ALLOCATION_TOTAL.labels("registration", "ok").inc()
                logger.info(
                    "student_registered",
                    dept_code=dept_code,
                    user_id=str(user_id),
                    student_number=number,
                    attempts=attempt,
                )
                return RegisteredStudent(
                    user_id=user_id,
                    dept_code=dept_code.strip().upper(),
                    student_number=number,
                    university_email=email,
                    attempts=attempt,
                )
    except TimeoutError:
        ALLOCATION_TOTAL.labels("registration", "timeout").inc()
        raise AllocationTimeout(dept_code, timeout_s or 0.0) from None

    raise AllocationConflict(dept_code, max_attempts)
