from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from uuid import UUID

import pytest

from app.models.entities import BillingModel, TimeEntryKind
from app.services.finance_aggregation import (
    Accumulator,
    DateRange,
    SnapshotIntegrityError,
    aggregate_project,
    aggregate_projects,
    build_lookup_index,
    compute_payment,
    ensure_unique_ids,
    resolve_user_names,
    split_minutes,
    user_payment_share,
    visit_entries,
)
from app.services.finance_records import (
    NanoSubtaskRecord,
    ProjectRecord,
    SubtaskRecord,
    TaskRecord,
    TimeEntryRecord,
    UserRecord,
)

U1 = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
U2 = uuid.UUID("00000000-0000-0000-0000-0000000000a2")


def _entry(user_id: UUID | None, entry_date: date | str | None, hours: int, minutes: int = 0) -> TimeEntryRecord:
    return TimeEntryRecord(user_id=user_id, entry_date=entry_date, hours=hours, minutes=minutes)


def _hourly(rate: str = "20.00") -> ProjectRecord:
    return ProjectRecord(id=uuid.uuid4(), name="Hourly", billing_model=BillingModel.HOURLY, hourly_rate=Decimal(rate))


class _UserLookupStub:
    def __init__(self, users: Iterable[UserRecord]) -> None:
        self.users = {user.id: user for user in users}
        self.calls: list[set[UUID]] = []

    def fetch_users_by_ids(self, ids: Iterable[UUID]) -> list[UserRecord]:
        requested = set(ids)
        self.calls.append(requested)
        return [self.users[user_id] for user_id in requested if user_id in self.users]


def test_range_filter_excludes_user_rather_than_zeroing() -> None:
    project = _hourly()
    task = TaskRecord(
        id=uuid.uuid4(),
        parent_id=project.id,
        title="T",
        billed=(_entry(U1, date(2024, 1, 5), 2), _entry(U2, date(2024, 1, 10), 1, 30)),
    )
    index = build_lookup_index([task], [], [])

    rollup = aggregate_project(project.id, index, DateRange(date(2024, 1, 1), date(2024, 1, 8)))

    assert rollup.billed_minutes == 120
    assert compute_payment(project, rollup.billed_minutes) == Decimal("40.00")
    assert dict(rollup.billed_by_user) == {U1: 120}
    assert rollup.billed_for(U2) == 0


def test_fixed_project_pays_fixed_price_for_any_billed_minutes() -> None:
    project = ProjectRecord(
        id=uuid.uuid4(),
        name="Fixed",
        billing_model=BillingModel.FIXED,
        fixed_price=Decimal("500"),
    )

    assert compute_payment(project, 1) == Decimal("500.00")
    assert compute_payment(project, 12_345) == Decimal("500.00")
    assert user_payment_share(project, 600) == Decimal("0.00")


def test_payment_without_billing_model_is_zero() -> None:
    project = ProjectRecord(id=uuid.uuid4(), name="Unpriced")

    assert compute_payment(project, 600) == Decimal("0.00")


def test_hourly_payment_uses_fractional_hours() -> None:
    project = _hourly("25.00")

    assert compute_payment(project, 90) == Decimal("37.50")
    assert compute_payment(project, 0) == Decimal("0.00")


@pytest.mark.parametrize("rate", ["0.00", "0.01", "17.35", "20.00", "149.99"])
def test_hourly_payment_never_decreases_with_more_minutes(rate: str) -> None:
    project = _hourly(rate)

    payments = [compute_payment(project, minutes) for minutes in range(0, 24 * 60 + 1, 7)]

    assert all(earlier <= later for earlier, later in zip(payments, payments[1:]))


def test_entries_without_user_count_toward_totals_only() -> None:
    project_id = uuid.uuid4()
    task = TaskRecord(
        id=uuid.uuid4(),
        parent_id=project_id,
        title="T",
        billed=(_entry(U1, None, 1), _entry(None, None, 0, 20)),
        logged=(_entry(None, None, 3),),
    )
    subtask = SubtaskRecord(
        id=uuid.uuid4(),
        parent_id=task.id,
        title="S",
        billed=(_entry(U2, None, 0, 45), _entry(None, None, 1)),
    )
    nano = NanoSubtaskRecord(
        id=uuid.uuid4(),
        parent_id=subtask.id,
        title="N",
        billed=(_entry(None, None, 0, 5), _entry(U1, None, 0, 10)),
    )
    index = build_lookup_index([task], [subtask], [nano])

    rollup = aggregate_project(project_id, index)

    attributed = 60 + 45 + 10
    unattributed = 20 + 60 + 5
    assert rollup.billed_minutes == attributed + unattributed
    assert sum(rollup.billed_by_user.values()) == attributed
    assert dict(rollup.billed_by_user) == {U1: 70, U2: 45}
    assert None not in rollup.billed_by_user
    assert rollup.logged_minutes == 180
    assert dict(rollup.logged_by_user) == {}


def test_per_user_billed_sums_to_project_total_when_every_entry_has_a_user() -> None:
    project_id = uuid.uuid4()
    users = [uuid.uuid4() for _ in range(4)]
    task = TaskRecord(
        id=uuid.uuid4(),
        parent_id=project_id,
        title="T",
        billed=tuple(_entry(user_id, date(2024, 1, n + 1), n, 15 * n) for n, user_id in enumerate(users)),
    )
    subtask = SubtaskRecord(
        id=uuid.uuid4(),
        parent_id=task.id,
        title="S",
        billed=tuple(_entry(user_id, date(2024, 1, 10), 0, 50) for user_id in users[:2]),
    )
    index = build_lookup_index([task], [subtask], [])

    for date_range in (DateRange(), DateRange(date(2024, 1, 2), date(2024, 1, 10))):
        rollup = aggregate_project(project_id, index, date_range)
        assert sum(rollup.billed_by_user.values()) == rollup.billed_minutes


def test_all_three_levels_roll_into_one_per_user_bucket() -> None:
    project_id = uuid.uuid4()
    task = TaskRecord(id=uuid.uuid4(), parent_id=project_id, title="T", billed=(_entry(U1, None, 1),))
    subtask = SubtaskRecord(id=uuid.uuid4(), parent_id=task.id, title="S", billed=(_entry(U1, None, 0, 30),))
    nano = NanoSubtaskRecord(
        id=uuid.uuid4(),
        parent_id=subtask.id,
        title="N",
        billed=(_entry(U1, None, 0, 15),),
        logged=(_entry(U2, None, 2),),
    )
    index = build_lookup_index([task], [subtask], [nano])

    rollup = aggregate_project(project_id, index)

    assert rollup.billed_minutes == 105
    assert rollup.logged_minutes == 120
    assert dict(rollup.billed_by_user) == {U1: 105}
    assert dict(rollup.logged_by_user) == {U2: 120}


def test_undated_entries_only_count_without_range() -> None:
    project_id = uuid.uuid4()
    task = TaskRecord(
        id=uuid.uuid4(),
        parent_id=project_id,
        title="T",
        billed=(_entry(U1, None, 1), _entry(U1, date(2024, 3, 1), 1)),
    )
    index = build_lookup_index([task], [], [])

    assert aggregate_project(project_id, index).billed_minutes == 120
    assert aggregate_project(project_id, index, DateRange(start=date(2024, 1, 1))).billed_minutes == 60


def test_range_bounds_are_inclusive() -> None:
    project_id = uuid.uuid4()
    task = TaskRecord(
        id=uuid.uuid4(),
        parent_id=project_id,
        title="T",
        billed=(_entry(U1, date(2024, 1, 1), 1), _entry(U1, date(2024, 1, 31), 1)),
    )
    index = build_lookup_index([task], [], [])

    rollup = aggregate_project(project_id, index, DateRange(date(2024, 1, 1), date(2024, 1, 31)))

    assert rollup.billed_minutes == 120


def test_unparseable_entry_date_is_skipped_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    project_id = uuid.uuid4()
    task = TaskRecord(
        id=uuid.uuid4(),
        parent_id=project_id,
        title="T",
        billed=(_entry(U1, "not-a-date", 3), _entry(U1, "2024-01-02", 1)),
    )
    index = build_lookup_index([task], [], [])

    with caplog.at_level(logging.WARNING):
        rollup = aggregate_project(project_id, index)

    assert rollup.billed_minutes == 60
    assert "unparseable date" in caplog.text


def test_visit_entries_can_restrict_kinds() -> None:
    project_id = uuid.uuid4()
    task = TaskRecord(
        id=uuid.uuid4(),
        parent_id=project_id,
        title="T",
        billed=(_entry(U1, None, 1),),
        logged=(_entry(U1, None, 5),),
    )
    index = build_lookup_index([task], [], [])
    seen: list[TimeEntryKind] = []

    visit_entries(project_id, index, lambda visit: seen.append(visit.kind), kinds=(TimeEntryKind.BILLED,))

    assert seen == [TimeEntryKind.BILLED]


def test_orphans_are_unreachable_and_index_is_complete() -> None:
    project_id = uuid.uuid4()
    task = TaskRecord(id=uuid.uuid4(), parent_id=project_id, title="T")
    orphan_task = TaskRecord(id=uuid.uuid4(), parent_id=None, title="orphan", billed=(_entry(U1, None, 9),))
    subtask = SubtaskRecord(id=uuid.uuid4(), parent_id=task.id, title="S")
    foreign_subtask = SubtaskRecord(id=uuid.uuid4(), parent_id=uuid.uuid4(), title="foreign")

    index = build_lookup_index([task, orphan_task], [subtask, foreign_subtask], [])

    assert index.tasks_for(project_id) == [task]
    assert index.subtasks_for(task.id) == [subtask]
    assert index.nanos_for(subtask.id) == []
    assert aggregate_project(project_id, index).billed_minutes == 0


def test_many_project_rollups_do_not_leak_between_projects() -> None:
    project_ids = [uuid.uuid4() for _ in range(6)]
    tasks = [
        TaskRecord(id=uuid.uuid4(), parent_id=project_id, title=f"T{n}", billed=(_entry(U1, None, n + 1),))
        for n, project_id in enumerate(project_ids)
    ]
    index = build_lookup_index(tasks, [], [])

    serial = aggregate_projects(project_ids, index)
    parallel = aggregate_projects(project_ids, index, max_workers=3)

    assert serial == parallel
    assert [serial[project_id].billed_minutes for project_id in project_ids] == [60 * (n + 1) for n in range(6)]
    assert aggregate_project(project_ids[2], index) == serial[project_ids[2]]


def test_user_names_are_fetched_in_one_batch() -> None:
    project_id = uuid.uuid4()
    task = TaskRecord(id=uuid.uuid4(), parent_id=project_id, title="T", billed=(_entry(U1, None, 1),))
    subtask = SubtaskRecord(id=uuid.uuid4(), parent_id=task.id, title="S", logged=(_entry(U2, None, 1),))
    store = _UserLookupStub([UserRecord(id=U1, display_name="Alice")])

    names = resolve_user_names(store, [task], [subtask], [])

    assert store.calls == [{U1, U2}]
    assert names.resolve(U1) == "Alice"
    assert names.resolve(U2) == "Unknown"
    assert names.resolve(None) == "Unknown"


def test_user_names_skip_fetch_when_no_users_referenced() -> None:
    store = _UserLookupStub([])

    names = resolve_user_names(store, [], [], [])

    assert store.calls == []
    assert names.resolve(U1) == "Unknown"


def test_duplicate_ids_raise_integrity_error() -> None:
    duplicate = uuid.uuid4()
    tasks = [
        TaskRecord(id=duplicate, parent_id=uuid.uuid4(), title="a"),
        TaskRecord(id=duplicate, parent_id=uuid.uuid4(), title="b"),
    ]

    with pytest.raises(SnapshotIntegrityError):
        ensure_unique_ids(tasks, "task")


def test_accumulator_get_or_insert_and_add() -> None:
    totals: Accumulator[str, int] = Accumulator(int)

    assert totals.get_or_insert("a") == 0
    totals.add("a", 5)
    totals.add("b", 2)
    totals.add("a", 1)

    assert totals.to_dict() == {"a": 6, "b": 2}
    assert "b" in totals
    assert len(totals) == 2
    assert totals.get("missing", 0) == 0


def test_split_minutes_is_sign_aware() -> None:
    assert split_minutes(125) == {"hours": 2, "minutes": 5, "total_minutes": 125}
    assert split_minutes(-90) == {"hours": -1, "minutes": -30, "total_minutes": -90}
    assert split_minutes(0) == {"hours": 0, "minutes": 0, "total_minutes": 0}
