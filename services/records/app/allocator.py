"""
Allocation of student numbers and university email addresses against a department schema.

Student numbers are `<DEPT><YEAR><NNNN>`; the next value is read from the current maximum.
That read says nothing about what another request is about to insert. Uniqueness therefore
holds only when the caller either

- runs `lock_student_sequence`, the read and its insert inside one transaction
  (see `services.records.app.enrollment.register_student`), or
- relies on the unique constraint on `students.student_number` and retries the whole
  allocate-then-insert sequence on `DuplicateIdentifier`.

The registration path does both. Calling `generate_student_number` with a pool executor is a
preview, not a reservation.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import UTC, datetime

import sqlalchemy as sa

from services.records.app.db import QueryExecutor
from services.records.app.errors import AllocationExhausted, AllocationTimeout, QueryFailure, SequenceExhausted
from services.records.app.logging import logger
from services.records.app.observability import ALLOCATION_TOTAL, EMAIL_PROBES
from services.records.app.schema_resolver import SchemaResolver
from services.records.app.settings import RecordsSettings
from services.records.app.tables import department_tables

_NON_WORD_RE = re.compile(r"[^\w]", re.ASCII)


def normalize_name(value: str) -> str:
    """Lowercase, trim, and drop every non-ASCII-word character: "O'Brien" -> "obrien", "José" -> "jos"."""
    return _NON_WORD_RE.sub("", (value or "").lower().strip())


def current_year() -> int:
    return datetime.now(tz=UTC).year


@dataclass(frozen=True)
class Found:
    value: str
    probes: int


@dataclass(frozen=True)
class Exhausted:
    last_candidate: str
    probes: int


ProbeOutcome = Found | Exhausted


@dataclass(frozen=True)
class StudentIdentifiers:
    student_number: str
    university_email: str


class IdentifierAllocator:
    def __init__(
        self,
        resolver: SchemaResolver,
        email_domain: str,
        *,
        max_email_suffix: int = 100,
        sequence_width: int = 4,
    ):
        self._resolver = resolver
        self._email_domain = email_domain.strip().lstrip("@").lower()
        self._max_email_suffix = max_email_suffix
        self._sequence_width = sequence_width

    @classmethod
    def from_settings(cls, settings: RecordsSettings, resolver: SchemaResolver | None = None) -> IdentifierAllocator:
        return cls(
            resolver or SchemaResolver(),
            settings.email_domain,
            max_email_suffix=settings.max_email_suffix,
            sequence_width=settings.student_sequence_width,
        )

    @property
    def resolver(self) -> SchemaResolver:
        return self._resolver

    @property
    def max_email_suffix(self) -> int:
        return self._max_email_suffix

    # Student numbers

    def student_number_prefix(self, dept_code: str, year: int) -> str:
        self._resolver.resolve(dept_code)
        return f"{dept_code.strip().upper()}{year}"

    async def lock_student_sequence(self, dept_code: str, executor: QueryExecutor, year: int | None = None) -> None:
        """
        Serialize allocations for one (department, year) until the caller's transaction ends.

        Uses a transaction-scoped advisory lock, so it is released on commit or rollback and
        also holds across processes sharing the database.
        """
        if not executor.in_transaction:
            raise ValueError("lock_student_sequence requires a transactional executor")
        year = year or current_year()
        schema = self._resolver.resolve(dept_code)
        lock_key = f"{schema}:{self.student_number_prefix(dept_code, year)}"
        await executor.execute(sa.select(sa.func.pg_advisory_xact_lock(sa.func.hashtext(lock_key))))

    async def generate_student_number(self, dept_code: str, executor: QueryExecutor, year: int | None = None) -> str:
        year = year or current_year()
        schema = self._resolver.resolve(dept_code)
        prefix = self.student_number_prefix(dept_code, year)
        students = department_tables(schema).students
        col = students.c.student_number

        # Fixed-width values only, so the lexicographic maximum is also the numeric one.
        q = (
            sa.select(col)
            .where(col.like(f"{prefix}%"))
            .where(sa.func.length(col) == len(prefix) + self._sequence_width)
            .order_by(col.desc())
            .limit(1)
        )
        row = (await executor.execute(q)).first()

        sequence = 1
        if row is not None:
            last = row["student_number"]
            try:
                sequence = int(last[len(prefix):]) + 1
            except ValueError:
                raise QueryFailure(executor.tenant_key, f"unparseable student number {last!r}") from None

        if sequence >= 10**self._sequence_width:
            ALLOCATION_TOTAL.labels("student_number", "exhausted").inc()
            raise SequenceExhausted(dept_code, year, sequence)

        value = f"{prefix}{sequence:0{self._sequence_width}d}"
        ALLOCATION_TOTAL.labels("student_number", "ok").inc()
        logger.info("student_number_allocated", tenant=executor.tenant_key, dept_code=dept_code, value=value)
        return value

    # University emails

    def build_email(self, first_name: str, last_name: str, dept_code: str, suffix: int | None = None) -> str:
        self._resolver.resolve(dept_code)
        local = f"{normalize_name(first_name)}.{normalize_name(last_name)}{suffix or ''}"
        return f"{local}@{dept_code.strip().lower()}.{self._email_domain}"

    async def _email_taken(self, email: str, schema: str, executor: QueryExecutor) -> bool:
        tables = department_tables(schema)
        q = sa.union(
            sa.select(tables.students.c.university_email).where(tables.students.c.university_email == email),
            sa.select(tables.staff.c.university_email).where(tables.staff.c.university_email == email),
        )
        return (await executor.execute(q)).row_count > 0

    async def probe_email(
        self, first_name: str, last_name: str, dept_code: str, executor: QueryExecutor
    ) -> ProbeOutcome:
        """
        Check the base address, then `first.lastN` for N = 2 .. max_email_suffix in order.

        One query per candidate, strictly sequential. `probes` counts every existence check,
        including the one for the base address.
        """
        schema = self._resolver.resolve(dept_code)
        candidate = self.build_email(first_name, last_name, dept_code)
        probes = 1
        if not await self._email_taken(candidate, schema, executor):
            return Found(candidate, probes)

        counter = 2
        while counter <= self._max_email_suffix:
            candidate = self.build_email(first_name, last_name, dept_code, suffix=counter)
            probes += 1
            if not await self._email_taken(candidate, schema, executor):
                return Found(candidate, probes)
            counter += 1
        return Exhausted(candidate, probes)

    async def generate_university_email(
        self, first_name: str, last_name: str, dept_code: str, executor: QueryExecutor
    ) -> str:
        outcome = await self.probe_email(first_name, last_name, dept_code, executor)
        EMAIL_PROBES.observe(outcome.probes)
        if isinstance(outcome, Exhausted):
            ALLOCATION_TOTAL.labels("university_email", "exhausted").inc()
            logger.warning(
                "email_probe_exhausted", tenant=executor.tenant_key, dept_code=dept_code, last=outcome.last_candidate
            )
            raise AllocationExhausted(dept_code, outcome.last_candidate, outcome.probes)

        ALLOCATION_TOTAL.labels("university_email", "ok").inc()
        logger.info(
            "university_email_allocated",
            tenant=executor.tenant_key,
            dept_code=dept_code,
            value=outcome.value,
            probes=outcome.probes,
        )
        return outcome.value

    async def allocate_identifiers(
        self,
        first_name: str,
        last_name: str,
        dept_code: str,
        executor: QueryExecutor,
        *,
        year: int | None = None,
        timeout_s: float | None = None,
    ) -> StudentIdentifiers:
        """Both identifiers, with the whole call (email probing included) bounded by `timeout_s`."""
        try:
            async with asyncio.timeout(timeout_s):
                number = await self.generate_student_number(dept_code, executor, year=year)
                email = await self.generate_university_email(first_name, last_name, dept_code, executor)
        except TimeoutError:
            ALLOCATION_TOTAL.labels("identifiers", "timeout").inc()
            raise AllocationTimeout(dept_code, timeout_s or 0.0) from None
        return StudentIdentifiers(student_number=number, university_email=email)
