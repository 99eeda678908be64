"""Time-entry rollup engine: lookup indices, traversal, aggregation and payment.

Everything here is a pure function of an in-memory snapshot. Nothing queries
the store except ``resolve_user_names``, which issues exactly one batch read.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Generic, TypeVar
from uuid import UUID

from app.core.logging import get_logger
from app.models.entities import BillingModel, TimeEntryKind
from app.services.finance_records import (
    FinanceStore,
    NanoSubtaskRecord,
    ProjectRecord,
    SubtaskRecord,
    TaskRecord,
    TimeEntryRecord,
    WorkItemLevel,
    WorkItemRecord,
)

logger = get_logger("finance.aggregation")

ZERO = Decimal("0.00")
Q2 = Decimal("0.01")
MINUTES_PER_HOUR = Decimal("60")
UNKNOWN_USER_NAME = "Unknown"
UNASSIGNED_DEPARTMENT = "Unassigned"

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


def _q2(value: Decimal) -> Decimal:
    return value.quantize(Q2)


class SnapshotIntegrityError(RuntimeError):
    """Raised when a fetched snapshot violates store-level invariants."""


class Accumulator(Generic[K, V]):
    """Typed map of running totals with explicit get-or-insert semantics."""

    __slots__ = ("_factory", "_values")

    def __init__(self, factory: Callable[[], V]) -> None:
        self._factory = factory
        self._values: dict[K, V] = {}

    def get_or_insert(self, key: K) -> V:
        value = self._values.get(key)
        if value is None:
            value = self._factory()
            self._values[key] = value
        return value

    def add(self, key: K, amount: V) -> V:
        total = self.get_or_insert(key) + amount  # type: ignore[operator]
        self._values[key] = total
        return total

    def get(self, key: K, default: V | None = None) -> V | None:
        return self._values.get(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[K]:
        return iter(self._values)

    def items(self) -> Iterable[tuple[K, V]]:
        return self._values.items()

    def to_dict(self) -> dict[K, V]:
        return dict(self._values)


# ---------- Lookup index ----------
@dataclass(frozen=True, slots=True)
class LookupIndex:
    tasks_by_project: Mapping[UUID, list[TaskRecord]]
    subtasks_by_task: Mapping[UUID, list[SubtaskRecord]]
    nanos_by_subtask: Mapping[UUID, list[NanoSubtaskRecord]]

    def tasks_for(self, project_id: UUID) -> list[TaskRecord]:
        return self.tasks_by_project.get(project_id, [])

    def subtasks_for(self, task_id: UUID) -> list[SubtaskRecord]:
        return self.subtasks_by_task.get(task_id, [])

    def nanos_for(self, subtask_id: UUID) -> list[NanoSubtaskRecord]:
        return self.nanos_by_subtask.get(subtask_id, [])


def _group_by_parent(items: Iterable[WorkItemRecord]) -> dict[UUID, list]:
    grouped: dict[UUID, list] = {}
    for item in items:
        if item.parent_id is None:
            continue
        grouped.setdefault(item.parent_id, []).append(item)
    return grouped


def build_lookup_index(
    tasks: Iterable[TaskRecord],
    subtasks: Iterable[SubtaskRecord],
    nano_subtasks: Iterable[NanoSubtaskRecord],
) -> LookupIndex:
    """Index children by parent id; records without a parent are dropped."""
    return LookupIndex(
        tasks_by_project=_group_by_parent(tasks),
        subtasks_by_task=_group_by_parent(subtasks),
        nanos_by_subtask=_group_by_parent(nano_subtasks),
    )


def ensure_unique_ids(records: Iterable[WorkItemRecord | ProjectRecord], kind: str) -> None:
    seen: set[UUID] = set()
    for record in records:
        if record.id in seen:
            raise SnapshotIntegrityError(f"Duplicate {kind} id {record.id} in store snapshot.")
        seen.add(record.id)


# ---------- User names ----------
@dataclass(frozen=True, slots=True)
class UserNames:
    names: Mapping[UUID, str]

    def resolve(self, user_id: UUID | None) -> str:
        if user_id is None:
            return UNKNOWN_USER_NAME
        return self.names.get(user_id, UNKNOWN_USER_NAME)


def _referenced_user_ids(items: Iterable[WorkItemRecord], into: set[UUID]) -> None:
    for item in items:
        for entry in (*item.billed, *item.logged):
            if entry.user_id is not None:
                into.add(entry.user_id)


def resolve_user_names(
    store: FinanceStore,
    tasks: Iterable[TaskRecord],
    subtasks: Iterable[SubtaskRecord],
    nano_subtasks: Iterable[NanoSubtaskRecord],
) -> UserNames:
    user_ids: set[UUID] = set()
    _referenced_user_ids(tasks, user_ids)
    _referenced_user_ids(subtasks, user_ids)
    _referenced_user_ids(nano_subtasks, user_ids)
    if not user_ids:
        return UserNames(names={})

    users = store.fetch_users_by_ids(user_ids)
    return UserNames(names={user.id: user.display_name for user in users})


# ---------- Date filtering ----------
@dataclass(frozen=True, slots=True)
class DateRange:
    start: date | None = None
    end: date | None = None

    @property
    def is_active(self) -> bool:
        return self.start is not None or self.end is not None

    def contains(self, value: date) -> bool:
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


UNBOUNDED = DateRange()


def coerce_entry_date(value: date | datetime | str | None) -> date | None:
    """Normalize a stored entry date to a calendar date.

    Raises ``ValueError`` for strings that are not ISO-8601 dates.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = value.strip()
    if not text:
        return None
    if len(text) > 10:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    return date.fromisoformat(text)


# ---------- Traversal ----------
@dataclass(frozen=True, slots=True)
class EntryVisit:
    project_id: UUID
    level: WorkItemLevel
    item: WorkItemRecord
    kind: TimeEntryKind
    user_id: UUID | None
    entry_date: date | None
    minutes: int


def walk_project(
    project_id: UUID,
    index: LookupIndex,
    visit: Callable[[WorkItemLevel, WorkItemRecord], None],
) -> None:
    """Visit every task, subtask and nano-subtask reachable from a project."""
    for task in index.tasks_for(project_id):
        visit(WorkItemLevel.TASK, task)
        for subtask in index.subtasks_for(task.id):
            visit(WorkItemLevel.SUBTASK, subtask)
            for nano in index.nanos_for(subtask.id):
                visit(WorkItemLevel.NANO_SUBTASK, nano)


ALL_KINDS = (TimeEntryKind.BILLED, TimeEntryKind.LOGGED)


def visit_entries(
    project_id: UUID,
    index: LookupIndex,
    on_entry: Callable[[EntryVisit], None],
    date_range: DateRange = UNBOUNDED,
    kinds: tuple[TimeEntryKind, ...] = ALL_KINDS,
) -> None:
    """Call ``on_entry`` for each time entry of the project passing the date filter.

    Entries whose date cannot be parsed are skipped and logged.
    """

    def _entries(item: WorkItemRecord, kind: TimeEntryKind) -> tuple[TimeEntryRecord, ...]:
        return item.billed if kind is TimeEntryKind.BILLED else item.logged

    def _visit(level: WorkItemLevel, item: WorkItemRecord) -> None:
        for kind in kinds:
            for entry in _entries(item, kind):
                try:
                    entry_date = coerce_entry_date(entry.entry_date)
                except ValueError:
                    logger.warning(
                        "Skipping time entry with unparseable date",
                        extra={
                            "project_id": project_id,
                            "work_item_id": item.id,
                            "work_item_level": level.value,
                            "entry_kind": kind.value,
                            "raw_date": str(entry.entry_date),
                        },
                    )
                    continue
                if date_range.is_active and (entry_date is None or not date_range.contains(entry_date)):
                    continue
                on_entry(
                    EntryVisit(
                        project_id=project_id,
                        level=level,
                        item=item,
                        kind=kind,
                        user_id=entry.user_id,
                        entry_date=entry_date,
                        minutes=entry.total_minutes,
                    )
                )

    walk_project(project_id, index, _visit)


# ---------- Aggregation ----------
@dataclass(frozen=True, slots=True)
class ProjectRollup:
    project_id: UUID
    billed_minutes: int
    logged_minutes: int
    billed_by_user: Mapping[UUID, int] = field(default_factory=dict)
    logged_by_user: Mapping[UUID, int] = field(default_factory=dict)

    def billed_for(self, user_id: UUID) -> int:
        return self.billed_by_user.get(user_id, 0)

    def logged_for(self, user_id: UUID) -> int:
        return self.logged_by_user.get(user_id, 0)


def aggregate_project(
    project_id: UUID,
    index: LookupIndex,
    date_range: DateRange = UNBOUNDED,
) -> ProjectRollup:
    totals: Accumulator[TimeEntryKind, int] = Accumulator(int)
    billed_by_user: Accumulator[UUID, int] = Accumulator(int)
    logged_by_user: Accumulator[UUID, int] = Accumulator(int)

    def _collect(visit: EntryVisit) -> None:
        totals.add(visit.kind, visit.minutes)
        if visit.user_id is None:
            return
        per_user = billed_by_user if visit.kind is TimeEntryKind.BILLED else logged_by_user
        per_user.add(visit.user_id, visit.minutes)

    visit_entries(project_id, index, _collect, date_range)
    return ProjectRollup(
        project_id=project_id,
        billed_minutes=totals.get(TimeEntryKind.BILLED, 0),
        logged_minutes=totals.get(TimeEntryKind.LOGGED, 0),
        billed_by_user=billed_by_user.to_dict(),
        logged_by_user=logged_by_user.to_dict(),
    )


def aggregate_projects(
    project_ids: list[UUID],
    index: LookupIndex,
    date_range: DateRange = UNBOUNDED,
    *,
    max_workers: int = 1,
) -> dict[UUID, ProjectRollup]:
    """Roll up many projects; each rollup is independent of the others."""
    if max_workers <= 1 or len(project_ids) <= 1:
        rollups = [aggregate_project(project_id, index, date_range) for project_id in project_ids]
    else:
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="finance-rollup") as executor:
            rollups = list(
                executor.map(lambda project_id: aggregate_project(project_id, index, date_range), project_ids)
            )
    return {rollup.project_id: rollup for rollup in rollups}


# ---------- Payment ----------
def compute_payment(project: ProjectRecord, billed_minutes: int) -> Decimal:
    if project.billing_model is BillingModel.FIXED:
        return _q2(project.fixed_price or ZERO)
    if project.billing_model is BillingModel.HOURLY:
        return _q2(Decimal(billed_minutes) / MINUTES_PER_HOUR * (project.hourly_rate or ZERO))
    return ZERO


def user_payment_share(project: ProjectRecord, billed_minutes: int) -> Decimal:
    """A user's share of project payment; flat fees are not apportioned."""
    if project.billing_model is BillingModel.HOURLY:
        return compute_payment(project, billed_minutes)
    return ZERO


# ---------- Presentation helpers ----------
def split_minutes(total_minutes: int) -> dict[str, int]:
    hours, minutes = divmod(abs(total_minutes), 60)
    if total_minutes < 0:
        hours, minutes = -hours, -minutes
    return {"hours": hours, "minutes": minutes, "total_minutes": total_minutes}


def department_label(project: ProjectRecord) -> str:
    return project.department_name or UNASSIGNED_DEPARTMENT
