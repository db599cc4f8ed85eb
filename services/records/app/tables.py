from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


@dataclass(frozen=True)
class DepartmentTables:
    schema: str
    metadata: sa.MetaData
    students: sa.Table
    staff: sa.Table


@lru_cache(maxsize=64)
def department_tables(schema: str) -> DepartmentTables:
    """
    Core table definitions for one department schema.

    Only the columns this layer reads or writes are declared. The unique constraints on
    `students` are what make the retry-on-conflict registration path sound.
    """
    metadata = sa.MetaData(schema=schema)
    students = sa.Table(
        "students",
        metadata,
        sa.Column("user_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("student_number", sa.Text(), nullable=False),
        sa.Column("university_email", sa.Text(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("student_number", name="uq_students_student_number"),
        sa.UniqueConstraint("university_email", name="uq_students_university_email"),
    )
    staff = sa.Table(
        "staff",
        metadata,
        sa.Column("user_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("university_email", sa.Text(), nullable=False, unique=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("position", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    return DepartmentTables(schema=schema, metadata=metadata, students=students, staff=staff)
