from __future__ import annotations

import re
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


_WORD_RE = re.compile(r"\w", re.ASCII)

Name = Annotated[str, Field(min_length=1, max_length=100)]


class _PersonName(StrictModel):
    first_name: Name
    last_name: Name

    @field_validator("first_name", "last_name")
    @classmethod
    def _has_word_characters(cls, v: str) -> str:
        # Normalization keeps only ASCII word characters; an empty local part is never a valid address.
        if not _WORD_RE.search(v.lower()):
            raise ValueError("name must contain at least one ASCII letter or digit")
        return v


class IdentifierPreviewRequest(_PersonName):
    year: Annotated[int, Field(ge=1900, le=9999)] | None = None


class IdentifierPreviewResponse(StrictModel):
    dept_code: str
    student_number: str
    university_email: str
    # Preview values are computed from current state and are not held for the caller.
    reserved: Literal[False] = False


class StudentCreateRequest(_PersonName):
    year_of_study: Annotated[int, Field(ge=1, le=10)] = 1


class StudentCreateResponse(StrictModel):
    user_id: UUID
    dept_code: str
    student_number: str
    university_email: str
    attempts: int


class TenantHealth(StrictModel):
    tenant: str
    ok: bool
    error: str | None = None


class HealthResponse(StrictModel):
    ok: bool
    tenants: list[TenantHealth]


class ErrorResponse(StrictModel):
    error: str
    detail: str
