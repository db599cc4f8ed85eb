from __future__ import annotations

import pytest

from services.records.app.allocator import IdentifierAllocator
from services.records.app.errors import InvalidDepartmentCode, QueryFailure, SequenceExhausted
from services.records.app.schema_resolver import SchemaResolver
from tests.fake_executor import FakeDepartment, FakeExecutor


def _allocator() -> IdentifierAllocator:
    return IdentifierAllocator(SchemaResolver(), "university.ac.uk")


@pytest.mark.asyncio
async def test_first_number_for_empty_year_is_0001() -> None:
    value = await _allocator().generate_student_number("CS", FakeExecutor(), year=2024)
    assert value == "CS20240001"


@pytest.mark.asyncio
async def test_next_number_follows_existing_maximum() -> None:
    dept = FakeDepartment(student_numbers=["CS20240003", "CS20240007", "CS20240005"])
    value = await _allocator().generate_student_number("CS", FakeExecutor(dept), year=2024)
    assert value == "CS20240008"


@pytest.mark.asyncio
async def test_other_years_and_departments_do_not_count() -> None:
    dept = FakeDepartment(student_numbers=["CS20230042", "MATH20240099", "CS20240002"])
    value = await _allocator().generate_student_number("CS", FakeExecutor(dept), year=2024)
    assert value == "CS20240003"


@pytest.mark.asyncio
async def test_values_of_other_widths_are_ignored() -> None:
    # "CS202400071" would sort above "CS20240007" lexicographically.
    dept = FakeDepartment(student_numbers=["CS20240007", "CS202400071"])
    value = await _allocator().generate_student_number("CS", FakeExecutor(dept), year=2024)
    assert value == "CS20240008"


@pytest.mark.asyncio
async def test_sequential_allocations_strictly_increase() -> None:
    allocator = _allocator()
    executor = FakeExecutor()
    seen = []
    for _ in range(12):
        value = await allocator.generate_student_number("CS", executor, year=2024)
        executor.department.student_numbers.add(value)
        seen.append(value)
    assert seen == sorted(seen)
    assert len(set(seen)) == len(seen)
    assert seen[0] == "CS20240001"
    assert seen[-1] == "CS20240012"
    assert all(len(v) == len("CS2024") + 4 for v in seen)


@pytest.mark.asyncio
async def test_department_code_is_upper_cased_in_prefix() -> None:
    value = await _allocator().generate_student_number("math", FakeExecutor(tenant_key="MATH"), year=2025)
    assert value == "MATH20250001"


@pytest.mark.asyncio
async def test_defaults_to_current_year(monkeypatch) -> None:
    import services.records.app.allocator as allocator_mod

    monkeypatch.setattr(allocator_mod, "current_year", lambda: 2031)
    value = await _allocator().generate_student_number("CS", FakeExecutor())
    assert value == "CS20310001"


@pytest.mark.asyncio
async def test_overflow_past_9999_raises_sequence_exhausted() -> None:
    dept = FakeDepartment(student_numbers=["CS20249999"])
    with pytest.raises(SequenceExhausted) as exc:
        await _allocator().generate_student_number("CS", FakeExecutor(dept), year=2024)
    assert exc.value.dept_code == "CS"
    assert exc.value.year == 2024
    assert exc.value.attempted == 10000


@pytest.mark.asyncio
async def test_9999_itself_is_still_allocatable() -> None:
    dept = FakeDepartment(student_numbers=["CS20249998"])
    value = await _allocator().generate_student_number("CS", FakeExecutor(dept), year=2024)
    assert value == "CS20249999"


@pytest.mark.asyncio
async def test_unparseable_maximum_is_a_query_failure() -> None:
    dept = FakeDepartment(student_numbers=["CS2024ABCD"])
    with pytest.raises(QueryFailure):
        await _allocator().generate_student_number("CS", FakeExecutor(dept), year=2024)


@pytest.mark.asyncio
async def test_invalid_department_code_is_rejected_before_any_query() -> None:
    executor = FakeExecutor()
    with pytest.raises(InvalidDepartmentCode):
        await _allocator().generate_student_number("", executor, year=2024)
    assert executor.statements == []


@pytest.mark.asyncio
async def test_lock_requires_a_transactional_executor() -> None:
    with pytest.raises(ValueError):
        await _allocator().lock_student_sequence("CS", FakeExecutor(transactional=False), year=2024)


@pytest.mark.asyncio
async def test_lock_is_scoped_to_schema_and_prefix() -> None:
    executor = FakeExecutor(transactional=True)
    await _allocator().lock_student_sequence("CS", executor, year=2024)
    assert len(executor.statements) == 1
    assert "pg_advisory_xact_lock" in executor.statements[0]
    assert "cs_schema:CS2024" in executor.statements[0]
