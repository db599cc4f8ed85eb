"""
In-memory stand-in for one department schema, speaking the QueryExecutor protocol.

Statements are compiled for PostgreSQL with literal binds and dispatched on their shape, so
the allocator's real queries run unchanged against it.
"""

from __future__ import annotations

import asyncio
import re

from sqlalchemy.dialects import postgresql

from services.records.app.db import QueryResult
from services.records.app.errors import DuplicateIdentifier

_LIKE_RE = re.compile(r"LIKE '([^'%]*)%+'")
_LENGTH_RE = re.compile(r"length\([^)]*\) = (\d+)")
_EMAIL_RE = re.compile(r"university_email = '([^']*)'")


class FakeDepartment:
    def __init__(
        self,
        student_numbers: list[str] | None = None,
        student_emails: list[str] | None = None,
        staff_emails: list[str] | None = None,
    ):
        self.student_numbers: set[str] = set(student_numbers or [])
        self.student_emails: set[str] = set(student_emails or [])
        self.staff_emails: set[str] = set(staff_emails or [])


class FakeExecutor:
    def __init__(
        self,
        department: FakeDepartment | None = None,
        *,
        tenant_key: str = "CS",
        transactional: bool = False,
        delay_s: float = 0.0,
    ):
        self.department = department or FakeDepartment()
        self.tenant_key = tenant_key
        self._transactional = transactional
        self._delay_s = delay_s
        self.statements: list[str] = []

    @property
    def in_transaction(self) -> bool:
        return self._transactional

    @property
    def email_checks(self) -> int:
        return sum(1 for s in self.statements if "UNION" in s)

    async def execute(self, statement) -> QueryResult:
        if self._delay_s:
            await asyncio.sleep(self._delay_s)

        if statement.is_insert:
            return self._insert(statement.compile(dialect=postgresql.dialect()).params)

        sql = str(statement.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}))
        self.statements.append(sql)

        if "pg_advisory_xact_lock" in sql:
            return QueryResult(row_count=1, rows=[{"pg_advisory_xact_lock": None}])
        if "UNION" in sql:
            email = _EMAIL_RE.search(sql).group(1)
            taken = email in self.department.student_emails or email in self.department.staff_emails
            return QueryResult(row_count=1, rows=[{"university_email": email}]) if taken else QueryResult(0)
        if "LIKE" in sql:
            prefix = _LIKE_RE.search(sql).group(1)
            width = int(_LENGTH_RE.search(sql).group(1))
            matches = sorted(
                n for n in self.department.student_numbers if n.startswith(prefix) and len(n) == width
            )
            if not matches:
                return QueryResult(0)
            return QueryResult(row_count=1, rows=[{"student_number": matches[-1]}])
        raise AssertionError(f"unexpected statement: {sql}")

    def _insert(self, params: dict) -> QueryResult:
        number = params["student_number"]
        email = params["university_email"]
        if number in self.department.student_numbers or email in self.department.student_emails:
            raise DuplicateIdentifier(self.tenant_key)
        self.department.student_numbers.add(number)
        self.department.student_emails.add(email)
        return QueryResult(row_count=1)
