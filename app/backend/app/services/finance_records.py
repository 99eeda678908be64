"""Immutable snapshot records consumed by the finance aggregation engine.

The repository converts ORM rows into these records inside its own session,
so aggregation never touches live ORM state and never lazy-loads.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol
from uuid import UUID

from app.models.entities import BillingModel


class WorkItemLevel(str, Enum):
    TASK = "task"
    SUBTASK = "subtask"
    NANO_SUBTASK = "nano-subtask"


@dataclass(frozen=True, slots=True)
class TimeEntryRecord:
    user_id: UUID | None
    # ``str`` values come from stores without typed date columns and are
    # parsed lazily by the aggregator.
    entry_date: date | datetime | str | None
    hours: int
    minutes: int

    @property
    def total_minutes(self) -> int:
        return self.hours * 60 + self.minutes


@dataclass(frozen=True, slots=True)
class WorkItemRecord:
    """Common shape of tasks, subtasks and nano-subtasks."""

    id: UUID
    parent_id: UUID | None
    title: str
    billed: tuple[TimeEntryRecord, ...] = ()
    logged: tuple[TimeEntryRecord, ...] = ()
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class TaskRecord(WorkItemRecord):
    level = WorkItemLevel.TASK


@dataclass(frozen=True, slots=True)
class SubtaskRecord(WorkItemRecord):
    level = WorkItemLevel.SUBTASK


@dataclass(frozen=True, slots=True)
class NanoSubtaskRecord(WorkItemRecord):
    level = WorkItemLevel.NANO_SUBTASK


@dataclass(frozen=True, slots=True)
class CoordinatorRecord:
    user_id: UUID
    display_name: str
    email: str


@dataclass(frozen=True, slots=True)
class ProjectRecord:
    id: UUID
    name: str
    department_id: UUID | None = None
    department_name: str | None = None
    billing_model: BillingModel | None = None
    hourly_rate: Decimal | None = None
    fixed_price: Decimal | None = None
    archived: bool = False
    status: str | None = None
    start_date: date | None = None
    due_date: date | None = None
    coordinators: tuple[CoordinatorRecord, ...] = field(default=())


@dataclass(frozen=True, slots=True)
class UserRecord:
    id: UUID
    display_name: str
    email: str | None = None


@dataclass(frozen=True, slots=True)
class DepartmentRecord:
    id: UUID
    name: str
    description: str | None = None


class FinanceStore(Protocol):
    """Read operations the finance engine needs from the entity store."""

    def fetch_projects(
        self,
        *,
        archived: bool | None = False,
        department_id: UUID | None = None,
        project_id: UUID | None = None,
    ) -> list[ProjectRecord]: ...

    def fetch_tasks(self, *, archived: bool | None = False) -> list[TaskRecord]: ...

    def fetch_subtasks(self, *, archived: bool | None = False) -> list[SubtaskRecord]: ...

    def fetch_nano_subtasks(self, *, archived: bool | None = False) -> list[NanoSubtaskRecord]: ...

    def fetch_users_by_ids(self, ids: Iterable[UUID]) -> list[UserRecord]: ...

    def get_department(self, department_id: UUID) -> DepartmentRecord | None: ...

    def get_project(self, project_id: UUID) -> ProjectRecord | None: ...

    def get_user(self, user_id: UUID) -> UserRecord | None: ...

    def list_departments(self) -> list[DepartmentRecord]: ...

    def list_users(self) -> list[UserRecord]: ...
