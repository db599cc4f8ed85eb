from __future__ import annotations

import re

from services.records.app.errors import InvalidDepartmentCode

# Schema names are interpolated as SQL identifiers, so codes are restricted to word characters.
_DEPT_CODE_RE = re.compile(r"^\w+$", re.ASCII)


class SchemaResolver:
    """
    Maps a department code to the schema namespace holding that department's tables.

    Pure and I/O free: `resolve("CS") == "cs_schema"`. Allocation code only ever asks this
    object for a schema name, so a storage-layout rename is a one-line change here.
    """

    def __init__(self, suffix: str = "_schema"):
        self._suffix = suffix

    @property
    def suffix(self) -> str:
        return self._suffix

    def resolve(self, dept_code: str) -> str:
        code = (dept_code or "").strip()
        if not code or not _DEPT_CODE_RE.match(code):
            raise InvalidDepartmentCode(dept_code)
        return f"{code.lower()}{self._suffix}"
