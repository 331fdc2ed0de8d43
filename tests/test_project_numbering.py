from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlmodel import Session, SQLModel, create_engine

from app.domain.models import Project, ProjectCounter
from app.services.errors import NumberGenerationError, StorageError
from app.services.project_numbering import (
    AtomicCounterStore,
    ProjectNumberAllocator,
    ScanDerivedCounter,
    _is_missing_table,
    format_project_number,
    parse_sequence,
)


class _FlakyCounter:
    def __init__(self, failures: int, delegate: AtomicCounterStore | None = None) -> None:
        self.failures = failures
        self.calls = 0
        self.delegate = delegate

    def next_sequence(self, engine: Engine, tenant_id: str, year: int, prefix: str) -> int:
        self.calls += 1
        if self.calls <= self.failures or self.delegate is None:
            raise OperationalError("UPDATE project_counters", {}, Exception("database is locked"))
        return self.delegate.next_sequence(engine, tenant_id, year, prefix)


def _add_project(engine: Engine, tenant_id: str, number: str) -> None:
    with Session(engine) as session:
        session.add(Project(tenant_id=tenant_id, project_number=number, project_name=f"Project {number}"))
        session.commit()


def test_format_and_parse_project_number() -> None:
    assert format_project_number("02", 2025, 7) == "02-2025-0007"
    assert format_project_number("ACM", 2025, 12345) == "ACM-2025-12345"
    assert parse_sequence("ACM-2025-0042", "ACM", 2025) == 42
    assert parse_sequence("ACM-2024-0042", "ACM", 2025) is None
    assert parse_sequence("ACM-2025-X1", "ACM", 2025) is None


def test_sequential_allocation_is_gapless(engine: Engine, seed) -> None:
    allocator = ProjectNumberAllocator(engine)
    assert [allocator.allocate(seed.tenant.id, 2025) for _ in range(3)] == [1, 2, 3]


def test_first_number_uses_tenant_prefix(engine: Engine, seed) -> None:
    allocator = ProjectNumberAllocator(engine)
    result = allocator.allocate_project_number(seed.tenant.id, 2025)
    assert result.sequence == 1
    assert result.formatted_number == "ACM-2025-0001"


def test_counters_are_independent_per_tenant_and_year(engine: Engine, make_seed) -> None:
    first = make_seed("First Lab", "FST")
    second = make_seed("Second Lab", "SND")
    allocator = ProjectNumberAllocator(engine)

    assert allocator.allocate(first.tenant.id, 2025) == 1
    assert allocator.allocate(first.tenant.id, 2025) == 2
    assert allocator.allocate(first.tenant.id, 2026) == 1
    assert allocator.allocate(second.tenant.id, 2025) == 1
    assert allocator.allocate(first.tenant.id, 2025) == 3


def test_unknown_tenant_gets_default_prefix(engine: Engine) -> None:
    with Session(engine) as session:
        session.add(ProjectCounter(tenant_id="tenant-without-row", year=2025, next_seq=7))
        session.commit()

    result = ProjectNumberAllocator(engine).allocate_project_number("tenant-without-row", 2025)
    assert result.formatted_number == "02-2025-0007"


def test_tenant_lookup_failure_falls_back_to_default_prefix(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'no_tenants.db'}")
    SQLModel.metadata.create_all(engine, tables=[ProjectCounter.__table__, Project.__table__])

    result = ProjectNumberAllocator(engine).allocate_project_number("tenant-a", 2025)
    assert result.formatted_number == "02-2025-0001"


def test_concurrent_allocations_are_unique(engine: Engine, seed) -> None:
    allocator = ProjectNumberAllocator(engine)
    workers = 8
    per_worker = 5

    def _draw(_: int) -> list[int]:
        return [allocator.allocate(seed.tenant.id, 2025) for _ in range(per_worker)]

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = [value for batch in pool.map(_draw, range(workers)) for value in batch]

    assert sorted(results) == list(range(1, workers * per_worker + 1))


def test_numbers_already_used_by_projects_are_skipped(
    engine: Engine,
    seed,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _add_project(engine, seed.tenant.id, "ACM-2025-0001")
    _add_project(engine, seed.tenant.id, "ACM-2025-0002")

    with caplog.at_level(logging.WARNING, logger="app.services.project_numbering"):
        result = ProjectNumberAllocator(engine).allocate_project_number(seed.tenant.id, 2025)

    assert result.formatted_number == "ACM-2025-0003"
    assert "ACM-2025-0001 already used" in caplog.text


def test_falls_back_to_scan_when_counter_table_missing(
    engine: Engine,
    seed,
    caplog: pytest.LogCaptureFixture,
) -> None:
    ProjectCounter.__table__.drop(engine)
    _add_project(engine, seed.tenant.id, "ACM-2025-0003")
    _add_project(engine, seed.tenant.id, "ACM-2025-0010")
    _add_project(engine, seed.tenant.id, "ACM-2024-0050")

    allocator = ProjectNumberAllocator(engine)
    with caplog.at_level(logging.WARNING, logger="app.services.project_numbering"):
        result = allocator.allocate_project_number(seed.tenant.id, 2025)

    assert result.formatted_number == "ACM-2025-0011"
    assert allocator.using_fallback
    assert "falling back to scanning" in caplog.text


def test_scan_counter_starts_at_one(engine: Engine, seed) -> None:
    assert ScanDerivedCounter().next_sequence(engine, seed.tenant.id, 2025, "ACM") == 1


def test_transient_failures_are_retried_with_backoff(engine: Engine, seed) -> None:
    sleeps: list[float] = []
    counter = _FlakyCounter(failures=2, delegate=AtomicCounterStore())
    allocator = ProjectNumberAllocator(engine, counter=counter, sleep=sleeps.append)

    assert allocator.allocate(seed.tenant.id, 2025) == 1
    assert counter.calls == 3
    assert sleeps == pytest.approx([0.05, 0.10])


def test_exhausted_retries_raise_number_generation_error(engine: Engine, seed) -> None:
    sleeps: list[float] = []
    allocator = ProjectNumberAllocator(
        engine,
        counter=_FlakyCounter(failures=99),
        max_attempts=4,
        sleep=sleeps.append,
    )

    with pytest.raises(NumberGenerationError) as exc_info:
        allocator.allocate(seed.tenant.id, 2025)

    assert isinstance(exc_info.value, StorageError)
    assert isinstance(exc_info.value.last_error, OperationalError)
    assert len(sleeps) == 3


class _UndefinedTable(Exception):
    sqlstate = "42P01"


def test_missing_table_detection_is_narrow() -> None:
    assert _is_missing_table(OperationalError("UPDATE project_counters", {}, Exception("no such table: project_counters")))
    assert _is_missing_table(
        ProgrammingError("UPDATE project_counters", {}, _UndefinedTable('relation "project_counters" does not exist'))
    )
    assert not _is_missing_table(
        ProgrammingError("UPDATE project_counters", {}, Exception("permission denied for table project_counters"))
    )
    assert not _is_missing_table(OperationalError("UPDATE project_counters", {}, Exception("database is locked")))


def test_counter_permission_errors_do_not_switch_to_scan(engine: Engine, seed) -> None:
    def _deny_counter_updates(conn, cursor, statement, parameters, context, executemany) -> None:
        if statement.lstrip().upper().startswith("UPDATE PROJECT_COUNTERS"):
            raise sqlite3.ProgrammingError("permission denied for table project_counters")

    sleeps: list[float] = []
    allocator = ProjectNumberAllocator(engine, max_attempts=3, sleep=sleeps.append)
    event.listen(engine, "before_cursor_execute", _deny_counter_updates)
    try:
        with pytest.raises(NumberGenerationError) as exc_info:
            allocator.allocate(seed.tenant.id, 2025)
    finally:
        event.remove(engine, "before_cursor_execute", _deny_counter_updates)

    assert not allocator.using_fallback
    assert isinstance(exc_info.value.last_error, ProgrammingError)
    assert len(sleeps) == 2
