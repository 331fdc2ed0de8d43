"""Per-tenant, per-year project number allocation.

Numbers look like ``{prefix}-{year}-{seq:04d}``. The sequence comes from a
``project_counters`` row bumped with a single ``UPDATE ... RETURNING``;
when that table is not provisioned the allocator degrades to scanning the
existing project numbers, which is race-prone and relies on the insert
retry in ``ProjectService``.
"""

from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable
from typing import Protocol

from sqlalchemy import insert, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError, SQLAlchemyError
from sqlmodel import Session, col, select

from app.domain.models import Project, ProjectCounter, ProjectNumberRead, Tenant, now_utc
from app.infra.db import get_engine, is_unique_violation
from app.services.errors import NumberGenerationError

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_PREFIX = os.getenv("DEFAULT_PROJECT_PREFIX", "02")
ALLOCATOR_MAX_ATTEMPTS = int(os.getenv("ALLOCATOR_MAX_ATTEMPTS", "20"))
ALLOCATOR_BACKOFF_SECONDS = 0.05

UNDEFINED_TABLE_SQLSTATE = "42P01"
_MISSING_TABLE_PATTERN = re.compile(r"no such table|relation \S+ does not exist|table \S+ does not exist")


class CounterUnavailableError(Exception):
    pass


class CounterContentionError(Exception):
    pass


class SequenceSource(Protocol):
    def next_sequence(self, engine: Engine, tenant_id: str, year: int, prefix: str) -> int: ...


def format_project_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{sequence:04d}"


def parse_sequence(project_number: str, prefix: str, year: int) -> int | None:
    head = f"{prefix}-{year}-"
    if not project_number.startswith(head):
        return None
    suffix = project_number[len(head) :]
    return int(suffix) if suffix.isdigit() else None


def _is_missing_table(exc: SQLAlchemyError) -> bool:
    orig = getattr(exc, "orig", None)
    if orig is not None:
        if getattr(orig, "sqlstate", None) == UNDEFINED_TABLE_SQLSTATE or type(orig).__name__ == "UndefinedTable":
            return True
    message = str(orig if orig is not None else exc).lower()
    return _MISSING_TABLE_PATTERN.search(message) is not None


class AtomicCounterStore:
    """Counter row per (tenant, year); ``next_seq`` is the value to hand out next."""

    def _increment(self, engine: Engine, tenant_id: str, year: int) -> int | None:
        statement = (
            update(ProjectCounter)
            .where(col(ProjectCounter.tenant_id) == tenant_id)
            .where(col(ProjectCounter.year) == year)
            .values(next_seq=col(ProjectCounter.next_seq) + 1, updated_at=now_utc())
            .returning(col(ProjectCounter.next_seq))
        )
        try:
            with engine.begin() as conn:
                value = conn.execute(statement).scalar_one_or_none()
        except (OperationalError, ProgrammingError) as exc:
            if _is_missing_table(exc):
                raise CounterUnavailableError("project_counters table is unavailable") from exc
            raise
        return None if value is None else int(value) - 1

    def _seed(self, engine: Engine, tenant_id: str, year: int) -> bool:
        statement = insert(ProjectCounter).values(
            tenant_id=tenant_id,
            year=year,
            next_seq=2,
            updated_at=now_utc(),
        )
        try:
            with engine.begin() as conn:
                conn.execute(statement)
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                raise
            logger.info("counter row for tenant %s year %s created concurrently", tenant_id, year)
            return False
        return True

    def next_sequence(self, engine: Engine, tenant_id: str, year: int, prefix: str) -> int:
        sequence = self._increment(engine, tenant_id, year)
        if sequence is not None:
            return sequence
        if self._seed(engine, tenant_id, year):
            return 1
        sequence = self._increment(engine, tenant_id, year)
        if sequence is None:
            raise CounterContentionError(f"counter row for tenant {tenant_id} year {year} not found after seeding")
        return sequence


class ScanDerivedCounter:
    def next_sequence(self, engine: Engine, tenant_id: str, year: int, prefix: str) -> int:
        pattern = f"{prefix}-{year}-%"
        with Session(engine) as session:
            statement = (
                select(Project.project_number)
                .where(Project.tenant_id == tenant_id)
                .where(col(Project.project_number).like(pattern))
            )
            numbers = session.exec(statement).all()
        highest = 0
        for number in numbers:
            sequence = parse_sequence(number, prefix, year)
            if sequence is not None and sequence > highest:
                highest = sequence
        return highest + 1


class ProjectNumberAllocator:
    def __init__(
        self,
        engine: Engine | None = None,
        *,
        counter: SequenceSource | None = None,
        fallback: SequenceSource | None = None,
        max_attempts: int = ALLOCATOR_MAX_ATTEMPTS,
        backoff_seconds: float = ALLOCATOR_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._counter = counter if counter is not None else AtomicCounterStore()
        self._fallback = fallback if fallback is not None else ScanDerivedCounter()
        self._use_fallback = False
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    @property
    def using_fallback(self) -> bool:
        return self._use_fallback

    def resolve_prefix(self, tenant_id: str) -> str:
        try:
            with Session(self.engine) as session:
                tenant = session.get(Tenant, tenant_id)
        except SQLAlchemyError:
            logger.warning("tenant lookup failed for %s; using default prefix", tenant_id, exc_info=True)
            return DEFAULT_PROJECT_PREFIX
        if tenant is None or not tenant.project_number_prefix:
            logger.warning("tenant %s has no project number prefix; using default", tenant_id)
            return DEFAULT_PROJECT_PREFIX
        return tenant.project_number_prefix

    def _draw(self, tenant_id: str, year: int, prefix: str) -> int:
        if not self._use_fallback:
            try:
                return self._counter.next_sequence(self.engine, tenant_id, year, prefix)
            except CounterUnavailableError:
                logger.warning("project counter table unavailable; falling back to scanning project numbers")
                self._use_fallback = True
        return self._fallback.next_sequence(self.engine, tenant_id, year, prefix)

    def _number_taken(self, tenant_id: str, project_number: str) -> bool:
        with Session(self.engine) as session:
            statement = (
                select(Project.id)
                .where(Project.tenant_id == tenant_id)
                .where(Project.project_number == project_number)
            )
            return session.exec(statement).first() is not None

    def _allocate(self, tenant_id: str, year: int | None) -> tuple[str, int, int]:
        year = year if year is not None else now_utc().year
        prefix = self.resolve_prefix(tenant_id)
        last_error: BaseException | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                sequence = self._draw(tenant_id, year, prefix)
                formatted = format_project_number(prefix, year, sequence)
                if not self._number_taken(tenant_id, formatted):
                    return prefix, year, sequence
            except (SQLAlchemyError, CounterContentionError) as exc:
                last_error = exc
                logger.warning(
                    "project number draw failed for tenant %s (attempt %d/%d): %s",
                    tenant_id,
                    attempt,
                    self._max_attempts,
                    exc,
                )
                if attempt < self._max_attempts:
                    self._sleep(self._backoff_seconds * attempt)
                continue
            logger.warning("project number %s already used by tenant %s; drawing again", formatted, tenant_id)
        raise NumberGenerationError(
            f"could not allocate a project number after {self._max_attempts} attempts",
            last_error,
        )

    def allocate(self, tenant_id: str, year: int | None = None) -> int:
        _, _, sequence = self._allocate(tenant_id, year)
        return sequence

    def allocate_project_number(self, tenant_id: str, year: int | None = None) -> ProjectNumberRead:
        prefix, year, sequence = self._allocate(tenant_id, year)
        return ProjectNumberRead(
            sequence=sequence,
            formatted_number=format_project_number(prefix, year, sequence),
        )
