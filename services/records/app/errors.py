"""
Error taxonomy for the tenant data-access layer.

Every error carries enough context (tenant key, department code, attempted value)
for a caller to log it and decide whether to retry at a higher level.
"""

from __future__ import annotations


class RecordsError(RuntimeError):
    pass


class ConfigurationError(RecordsError):
    """A tenant's connection parameters are missing or invalid. Fatal at startup."""

    def __init__(self, tenant_key: str, field: str, reason: str = "missing", env_var: str | None = None):
        self.tenant_key = tenant_key
        self.field = field
        self.reason = reason
        self.env_var = env_var
        where = f" ({env_var})" if env_var else ""
        super().__init__(f"tenant {tenant_key!r}: required setting {field!r}{where} is {reason}")


class RegistryNotInitialized(RecordsError):
    def __init__(self) -> None:
        super().__init__("tenant registry is not initialized")


class TenantNotFound(RecordsError):
    def __init__(self, tenant_key: str):
        self.tenant_key = tenant_key
        super().__init__(f"unknown tenant {tenant_key!r}")


class InvalidDepartmentCode(RecordsError):
    def __init__(self, dept_code: str | None):
        self.dept_code = dept_code
        super().__init__(f"invalid department code {dept_code!r}")


class PoolTimeout(RecordsError):
    """No pooled connection became free in time. Transient."""

    def __init__(self, tenant_key: str):
        self.tenant_key = tenant_key
        super().__init__(f"timed out waiting for a connection to tenant {tenant_key!r}")


class QueryFailure(RecordsError):
    """Wraps an underlying storage error; the driver error is chained as __cause__."""

    def __init__(self, tenant_key: str, message: str = "query failed"):
        self.tenant_key = tenant_key
        super().__init__(f"tenant {tenant_key!r}: {message}")


class DuplicateIdentifier(QueryFailure):
    def __init__(self, tenant_key: str):
        super().__init__(tenant_key, "uniqueness constraint rejected the write")


class AllocationExhausted(RecordsError):
    def __init__(self, dept_code: str, attempted: str, probes: int):
        self.dept_code = dept_code
        self.attempted = attempted
        self.probes = probes
        super().__init__(
            f"department {dept_code!r}: no free university email after {probes} probes (last tried {attempted!r})"
        )


class SequenceExhausted(RecordsError):
    def __init__(self, dept_code: str, year: int, attempted: int):
        self.dept_code = dept_code
        self.year = year
        self.attempted = attempted
        super().__init__(f"department {dept_code!r}: student sequence for {year} exhausted at {attempted}")


class AllocationConflict(RecordsError):
    def __init__(self, dept_code: str, attempts: int):
        self.dept_code = dept_code
        self.attempts = attempts
        super().__init__(f"department {dept_code!r}: identifiers still conflicting after {attempts} attempts")


class AllocationTimeout(RecordsError):
    def __init__(self, dept_code: str, timeout_s: float):
        self.dept_code = dept_code
        self.timeout_s = timeout_s
        super().__init__(f"department {dept_code!r}: allocation did not finish within {timeout_s:.3f}s")
