"""Finance report assemblers: summary, user, project, weekly and year-wide views."""

from __future__ import annotations

import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from io import BytesIO
from typing import TypeVar
from uuid import UUID

from fastapi import HTTPException, status

from app.core.config import Settings, get_settings
from app.core.logging import get_logger
from app.models.entities import BillingModel, TimeEntryKind
from app.services.calendar_weeks import MAX_WEEKS_PER_MONTH, MONTH_NAMES, WeekWindow, week_number_for, weeks_of_month
from app.services.finance_aggregation import (
    UNBOUNDED,
    ZERO,
    Accumulator,
    DateRange,
    EntryVisit,
    LookupIndex,
    ProjectRollup,
    SnapshotIntegrityError,
    UserNames,
    aggregate_projects,
    build_lookup_index,
    compute_payment,
    department_label,
    ensure_unique_ids,
    resolve_user_names,
    split_minutes,
    user_payment_share,
    visit_entries,
    walk_project,
)
from app.services.finance_records import FinanceStore, ProjectRecord, WorkItemLevel, WorkItemRecord

logger = get_logger("finance.reports")

VIEW_TYPES = ("users", "projects")
EXPORT_FORMATS = ("csv", "xlsx")
GENERIC_FAILURE_DETAIL = "Finance report could not be generated."

BILLING_MODEL_LABELS = {
    BillingModel.HOURLY: "Hourly",
    BillingModel.FIXED: "Fixed",
}

KeyT = TypeVar("KeyT")


# ---------- Query parsing ----------
@dataclass(slots=True)
class ReportQuery:
    date_range: DateRange = UNBOUNDED
    department_id: UUID | None = None
    project_id: UUID | None = None
    user_id: UUID | None = None


@dataclass(slots=True)
class WeeklyQuery:
    year: int
    month: int
    view_type: str = "users"
    department_id: UUID | None = None


@dataclass(slots=True)
class ExportFilePayload:
    media_type: str
    filename: str
    content: bytes


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


def parse_uuid(value: str | None, field_name: str) -> UUID | None:
    if value is None or not value.strip():
        return None
    try:
        return UUID(value.strip())
    except ValueError as exc:
        raise _bad_request(f"{field_name} must be a valid identifier.") from exc


def parse_iso_date(value: str | None, field_name: str) -> date | None:
    if value is None or not value.strip():
        return None
    text = value.strip()
    try:
        if len(text) > 10:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    except ValueError as exc:
        raise _bad_request(f"{field_name} must be an ISO-8601 date (YYYY-MM-DD).") from exc


def parse_int(value: str | None, field_name: str, *, minimum: int, maximum: int) -> int | None:
    if value is None or not value.strip():
        return None
    try:
        parsed = int(value.strip())
    except ValueError as exc:
        raise _bad_request(f"{field_name} must be numeric.") from exc
    if not minimum <= parsed <= maximum:
        raise _bad_request(f"{field_name} must be between {minimum} and {maximum}.")
    return parsed


def parse_view_type(value: str | None) -> str:
    if value is None or not value.strip():
        return "users"
    normalized = value.strip().lower()
    if normalized not in VIEW_TYPES:
        raise _bad_request(f"view_type must be one of: {', '.join(VIEW_TYPES)}.")
    return normalized


def parse_report_query(
    *,
    start_date: str | None = None,
    end_date: str | None = None,
    department_id: str | None = None,
    project_id: str | None = None,
    user_id: str | None = None,
) -> ReportQuery:
    start = parse_iso_date(start_date, "start_date")
    end = parse_iso_date(end_date, "end_date")
    if start is not None and end is not None and end < start:
        raise _bad_request("end_date must be greater than or equal to start_date.")
    return ReportQuery(
        date_range=DateRange(start=start, end=end),
        department_id=parse_uuid(department_id, "department_id"),
        project_id=parse_uuid(project_id, "project_id"),
        user_id=parse_uuid(user_id, "user_id"),
    )


def parse_weekly_query(
    *,
    year: str | None = None,
    month: str | None = None,
    view_type: str | None = None,
    department_id: str | None = None,
    today: date | None = None,
) -> WeeklyQuery:
    current = today or date.today()
    parsed_year = parse_int(year, "year", minimum=1, maximum=9999)
    parsed_month = parse_int(month, "month", minimum=0, maximum=11)
    return WeeklyQuery(
        year=parsed_year if parsed_year is not None else current.year,
        month=parsed_month if parsed_month is not None else current.month - 1,
        view_type=parse_view_type(view_type),
        department_id=parse_uuid(department_id, "department_id"),
    )


# ---------- Serialization helpers ----------
def _money(value: Decimal) -> str:
    return str(value.quantize(Decimal("0.01")))


def _optional_money(value: Decimal | None) -> str | None:
    return _money(value) if value is not None else None


def _pick_top(candidates: Iterable[tuple[KeyT, Decimal | int]]) -> tuple[KeyT, Decimal | int] | None:
    """Highest positive value wins; ties go to the lowest id."""
    best: tuple[KeyT, Decimal | int] | None = None
    for key, value in candidates:
        if value <= 0:
            continue
        if best is None or value > best[1] or (value == best[1] and str(key) < str(best[0])):
            best = (key, value)
    return best


def _project_header(project: ProjectRecord) -> dict[str, object]:
    return {
        "project_id": str(project.id),
        "project_name": project.name,
        "department": department_label(project),
        "department_id": str(project.department_id) if project.department_id is not None else None,
        "billing_model": project.billing_model.value if project.billing_model is not None else None,
        "hourly_rate": _optional_money(project.hourly_rate),
        "fixed_price": _optional_money(project.fixed_price),
    }


@dataclass(frozen=True, slots=True)
class FinanceSnapshot:
    projects: list[ProjectRecord]
    index: LookupIndex
    user_names: UserNames


@dataclass(slots=True)
class _UserProjectTotals:
    billed_minutes: int = 0
    logged_minutes: int = 0


@dataclass(slots=True)
class _UserTotals:
    billed_minutes: int = 0
    logged_minutes: int = 0
    projects: Accumulator[UUID, _UserProjectTotals] = field(
        default_factory=lambda: Accumulator(_UserProjectTotals)
    )


@dataclass(slots=True)
class _Contribution:
    billed_minutes: int = 0
    logged_minutes: int = 0
    work_items: set[UUID] = field(default_factory=set)
    last_billed_on: date | None = None


@dataclass(slots=True)
class _WeekUserTotals:
    billed_minutes: int = 0
    logged_minutes: int = 0
    payment: Decimal = ZERO
    projects: set[UUID] = field(default_factory=set)


class FinanceReportingService:
    """Assembles finance reports from one concurrently fetched store snapshot."""

    def __init__(self, store: FinanceStore, settings: Settings | None = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    # ---------- Scope ----------
    def _ensure_scope_exists(
        self,
        *,
        department_id: UUID | None = None,
        project_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> None:
        if department_id is not None and self.store.get_department(department_id) is None:
            raise _not_found("Department not found.")
        if project_id is not None and self.store.get_project(project_id) is None:
            raise _not_found("Project not found.")
        if user_id is not None and self.store.get_user(user_id) is None:
            raise _not_found("User not found.")

    # ---------- Snapshot ----------
    def load_snapshot(
        self,
        *,
        department_id: UUID | None = None,
        project_id: UUID | None = None,
        include_archived_projects: bool = False,
    ) -> FinanceSnapshot:
        """Fetch projects and work items concurrently, then index them."""
        project_archived = None if include_archived_projects else False
        with ThreadPoolExecutor(
            max_workers=self.settings.finance_fetch_workers,
            thread_name_prefix="finance-fetch",
        ) as executor:
            projects_future = executor.submit(
                self.store.fetch_projects,
                archived=project_archived,
                department_id=department_id,
                project_id=project_id,
            )
            tasks_future = executor.submit(self.store.fetch_tasks, archived=False)
            subtasks_future = executor.submit(self.store.fetch_subtasks, archived=False)
            nanos_future = executor.submit(self.store.fetch_nano_subtasks, archived=False)
            projects = projects_future.result()
            tasks = tasks_future.result()
            subtasks = subtasks_future.result()
            nanos = nanos_future.result()

        ensure_unique_ids(projects, "project")
        ensure_unique_ids(tasks, "task")
        ensure_unique_ids(subtasks, "subtask")
        ensure_unique_ids(nanos, "nano-subtask")

        return FinanceSnapshot(
            projects=projects,
            index=build_lookup_index(tasks, subtasks, nanos),
            user_names=resolve_user_names(self.store, tasks, subtasks, nanos),
        )

    def _snapshot_or_fail(self, report_key: str, **scope: object) -> FinanceSnapshot:
        try:
            return self.load_snapshot(**scope)
        except SnapshotIntegrityError as exc:
            logger.exception("Finance snapshot failed integrity checks", extra={"report_key": report_key})
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=GENERIC_FAILURE_DETAIL,
            ) from exc

    def _rollups(self, snapshot: FinanceSnapshot, date_range: DateRange) -> dict[UUID, ProjectRollup]:
        project_ids = [project.id for project in snapshot.projects]
        workers = 1
        if len(project_ids) >= self.settings.finance_parallel_project_threshold:
            workers = self.settings.finance_aggregation_workers
        return aggregate_projects(project_ids, snapshot.index, date_range, max_workers=workers)

    @staticmethod
    def _log_generated(report_key: str, started: float, snapshot: FinanceSnapshot) -> None:
        logger.info(
            "Finance report generated",
            extra={
                "report_key": report_key,
                "project_count": len(snapshot.projects),
                "elapsed_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )

    # ---------- Summary ----------
    def summary(self, query: ReportQuery) -> dict[str, object]:
        started = time.perf_counter()
        self._ensure_scope_exists(department_id=query.department_id)
        snapshot = self._snapshot_or_fail("summary", department_id=query.department_id)
        rollups = self._rollups(snapshot, query.date_range)

        total_revenue = ZERO
        total_billed = 0
        total_logged = 0
        billed_by_user: Accumulator[UUID, int] = Accumulator(int)
        payments: dict[UUID, Decimal] = {}
        for project in snapshot.projects:
            rollup = rollups[project.id]
            payment = compute_payment(project, rollup.billed_minutes)
            payments[project.id] = payment
            total_revenue += payment
            total_billed += rollup.billed_minutes
            total_logged += rollup.logged_minutes
            for user_id, minutes in rollup.billed_by_user.items():
                billed_by_user.add(user_id, minutes)

        top_user = _pick_top(billed_by_user.items())
        top_earning_user = None
        if top_user is not None:
            user_id, minutes = top_user
            top_earning_user = {
                "user_id": str(user_id),
                "user_name": snapshot.user_names.resolve(user_id),
                "billed_minutes": minutes,
                "billed_time": split_minutes(int(minutes)),
            }

        top_project = _pick_top(payments.items())
        top_revenue_project = None
        if top_project is not None:
            project = next(row for row in snapshot.projects if row.id == top_project[0])
            rollup = rollups[project.id]
            top_revenue_project = {
                "project_id": str(project.id),
                "project_name": project.name,
                "department": department_label(project),
                "payment": _money(payments[project.id]),
                "billed_minutes": rollup.billed_minutes,
                "logged_minutes": rollup.logged_minutes,
            }

        self._log_generated("summary", started, snapshot)
        return {
            "report_key": "summary",
            "start_date": query.date_range.start.isoformat() if query.date_range.start else None,
            "end_date": query.date_range.end.isoformat() if query.date_range.end else None,
            "department_id": str(query.department_id) if query.department_id else None,
            "project_count": len(snapshot.projects),
            "total_revenue": _money(total_revenue),
            "total_billed_time": split_minutes(total_billed),
            "total_logged_time": split_minutes(total_logged),
            "unbilled_time": split_minutes(total_logged - total_billed),
            "top_earning_user": top_earning_user,
            "top_revenue_project": top_revenue_project,
        }

    # ---------- User-centric ----------
    def user_report(self, query: ReportQuery) -> dict[str, object]:
        started = time.perf_counter()
        self._ensure_scope_exists(department_id=query.department_id, user_id=query.user_id)
        snapshot = self._snapshot_or_fail("users", department_id=query.department_id)
        rollups = self._rollups(snapshot, query.date_range)

        users: Accumulator[UUID, _UserTotals] = Accumulator(_UserTotals)
        for project in snapshot.projects:
            rollup = rollups[project.id]
            contributors = set(rollup.billed_by_user) | set(rollup.logged_by_user)
            if query.user_id is not None:
                contributors &= {query.user_id}
            for user_id in contributors:
                totals = users.get_or_insert(user_id)
                billed = rollup.billed_for(user_id)
                logged = rollup.logged_for(user_id)
                totals.billed_minutes += billed
                totals.logged_minutes += logged
                per_project = totals.projects.get_or_insert(project.id)
                per_project.billed_minutes += billed
                per_project.logged_minutes += logged

        projects_by_id = {project.id: project for project in snapshot.projects}
        rows: list[dict[str, object]] = []
        grouped_by_department: dict[str, list[dict[str, object]]] = {}
        ordered_users = sorted(users, key=lambda uid: (snapshot.user_names.resolve(uid).lower(), str(uid)))
        for user_id in ordered_users:
            totals = users.get_or_insert(user_id)
            user_name = snapshot.user_names.resolve(user_id)
            project_rows: list[dict[str, object]] = []
            total_payment = ZERO
            ordered_projects = sorted(
                totals.projects.items(),
                key=lambda item: (projects_by_id[item[0]].name.lower(), str(item[0])),
            )
            for project_id, project_totals in ordered_projects:
                project = projects_by_id[project_id]
                payment = user_payment_share(project, project_totals.billed_minutes)
                total_payment += payment
                project_row = _project_header(project) | {
                    "billed_time": split_minutes(project_totals.billed_minutes),
                    "logged_time": split_minutes(project_totals.logged_minutes),
                    "payment": _money(payment),
                }
                project_rows.append(project_row)
                grouped_by_department.setdefault(department_label(project), []).append(
                    {"user_id": str(user_id), "user_name": user_name, "project": project_row}
                )

            rows.append(
                {
                    "user_id": str(user_id),
                    "user_name": user_name,
                    "total_billed_time": split_minutes(totals.billed_minutes),
                    "total_logged_time": split_minutes(totals.logged_minutes),
                    "total_payment": _money(total_payment),
                    "projects": project_rows,
                }
            )

        self._log_generated("users", started, snapshot)
        return {
            "report_key": "users",
            "start_date": query.date_range.start.isoformat() if query.date_range.start else None,
            "end_date": query.date_range.end.isoformat() if query.date_range.end else None,
            "department_id": str(query.department_id) if query.department_id else None,
            "user_id": str(query.user_id) if query.user_id else None,
            "rows": rows,
            "grouped_by_department": grouped_by_department,
        }

    # ---------- Project-centric ----------
    @staticmethod
    def _last_activity(project_id: UUID, index: LookupIndex) -> dict[str, object] | None:
        latest: tuple[WorkItemLevel, WorkItemRecord] | None = None

        def _visit(level: WorkItemLevel, item: WorkItemRecord) -> None:
            nonlocal latest
            if item.updated_at is None:
                return
            if latest is None or item.updated_at > latest[1].updated_at:
                latest = (level, item)

        walk_project(project_id, index, _visit)
        if latest is None:
            return None
        level, item = latest
        return {"type": level.value, "title": item.title, "date": item.updated_at.isoformat()}

    def project_report(self, query: ReportQuery) -> dict[str, object]:
        started = time.perf_counter()
        self._ensure_scope_exists(department_id=query.department_id, project_id=query.project_id)
        snapshot = self._snapshot_or_fail(
            "projects",
            department_id=query.department_id,
            project_id=query.project_id,
        )
        rollups = self._rollups(snapshot, query.date_range)
        coordinator_limit = self.settings.finance_coordinator_limit

        rows: list[dict[str, object]] = []
        grouped_by_department: dict[str, list[dict[str, object]]] = {}
        for project in snapshot.projects:
            rollup = rollups[project.id]
            row = _project_header(project) | {
                "status": project.status,
                "start_date": project.start_date.isoformat() if project.start_date else None,
                "due_date": project.due_date.isoformat() if project.due_date else None,
                "coordinators": [
                    {
                        "user_id": str(coordinator.user_id),
                        "display_name": coordinator.display_name,
                        "email": coordinator.email,
                    }
                    for coordinator in project.coordinators[:coordinator_limit]
                ],
                "coordinator_count": len(project.coordinators),
                "billed_time": split_minutes(rollup.billed_minutes),
                "logged_time": split_minutes(rollup.logged_minutes),
                "payment": _money(compute_payment(project, rollup.billed_minutes)),
                "last_activity": self._last_activity(project.id, snapshot.index),
            }
            rows.append(row)
            grouped_by_department.setdefault(department_label(project), []).append(row)

        self._log_generated("projects", started, snapshot)
        return {
            "report_key": "projects",
            "start_date": query.date_range.start.isoformat() if query.date_range.start else None,
            "end_date": query.date_range.end.isoformat() if query.date_range.end else None,
            "department_id": str(query.department_id) if query.department_id else None,
            "project_id": str(query.project_id) if query.project_id else None,
            "rows": rows,
            "grouped_by_department": grouped_by_department,
        }

    def project_contributions(self, project_id: UUID, query: ReportQuery) -> dict[str, object]:
        started = time.perf_counter()
        self._ensure_scope_exists(project_id=project_id)
        snapshot = self._snapshot_or_fail(
            "contributions",
            project_id=project_id,
            include_archived_projects=True,
        )
        if not snapshot.projects:
            raise _not_found("Project not found.")
        project = snapshot.projects[0]

        contributions: Accumulator[UUID, _Contribution] = Accumulator(_Contribution)
        project_billed = 0

        def _collect(visit: EntryVisit) -> None:
            nonlocal project_billed
            if visit.kind is TimeEntryKind.BILLED:
                project_billed += visit.minutes
            if visit.user_id is None:
                return
            contribution = contributions.get_or_insert(visit.user_id)
            if visit.kind is TimeEntryKind.LOGGED:
                contribution.logged_minutes += visit.minutes
                return
            contribution.billed_minutes += visit.minutes
            contribution.work_items.add(visit.item.id)
            if visit.entry_date is not None and (
                contribution.last_billed_on is None or visit.entry_date > contribution.last_billed_on
            ):
                contribution.last_billed_on = visit.entry_date

        visit_entries(project.id, snapshot.index, _collect, query.date_range)

        ordered = sorted(
            contributions.items(),
            key=lambda item: (-item[1].billed_minutes, str(item[0])),
        )
        rows = [
            {
                "user_id": str(user_id),
                "user_name": snapshot.user_names.resolve(user_id),
                "billed_time": split_minutes(contribution.billed_minutes),
                "logged_time": split_minutes(contribution.logged_minutes),
                "task_count": len(contribution.work_items),
                "last_activity": contribution.last_billed_on.isoformat() if contribution.last_billed_on else None,
                "payment": _money(user_payment_share(project, contribution.billed_minutes)),
            }
            for user_id, contribution in ordered
        ]

        self._log_generated("contributions", started, snapshot)
        return {
            "report_key": "contributions",
            "project": _project_header(project) | {
                "billed_time": split_minutes(project_billed),
                "payment": _money(compute_payment(project, project_billed)),
            },
            "contributions": rows,
            "total_contributors": len(rows),
        }

    # ---------- Weekly (single month) ----------
    @staticmethod
    def _bucket(
        visit: EntryVisit,
        *,
        year: int,
        month: int,
        windows: list[WeekWindow],
    ) -> int | None:
        entry_date = visit.entry_date
        if entry_date is None or entry_date.year != year or entry_date.month != month + 1:
            return None
        return week_number_for(windows, entry_date)

    def weekly_report(self, query: WeeklyQuery) -> dict[str, object]:
        started = time.perf_counter()
        self._ensure_scope_exists(department_id=query.department_id)
        windows = weeks_of_month(query.year, query.month)
        snapshot = self._snapshot_or_fail("weekly", department_id=query.department_id)

        week_users: dict[int, Accumulator[UUID, _WeekUserTotals]] = {
            window.week_number: Accumulator(_WeekUserTotals) for window in windows
        }
        week_projects: dict[int, list[dict[str, object]]] = {window.week_number: [] for window in windows}
        week_project_payments: dict[int, list[Decimal]] = {window.week_number: [] for window in windows}

        for project in snapshot.projects:
            billed_by_week: Accumulator[int, int] = Accumulator(int)
            logged_by_week: Accumulator[int, int] = Accumulator(int)
            user_week_billed: Accumulator[tuple[int, UUID], int] = Accumulator(int)
            user_week_logged: Accumulator[tuple[int, UUID], int] = Accumulator(int)

            def _collect(visit: EntryVisit) -> None:
                week = self._bucket(visit, year=query.year, month=query.month, windows=windows)
                if week is None:
                    return
                billed = visit.kind is TimeEntryKind.BILLED
                (billed_by_week if billed else logged_by_week).add(week, visit.minutes)
                if visit.user_id is not None:
                    (user_week_billed if billed else user_week_logged).add((week, visit.user_id), visit.minutes)

            visit_entries(project.id, snapshot.index, _collect)

            for (week, user_id), minutes in user_week_billed.items():
                totals = week_users[week].get_or_insert(user_id)
                totals.billed_minutes += minutes
                totals.payment += user_payment_share(project, minutes)
                totals.projects.add(project.id)
            for (week, user_id), minutes in user_week_logged.items():
                week_users[week].get_or_insert(user_id).logged_minutes += minutes

            for window in windows:
                billed = billed_by_week.get(window.week_number, 0)
                logged = logged_by_week.get(window.week_number, 0)
                if billed <= 0 and logged <= 0:
                    continue
                payment = compute_payment(project, billed)
                week_project_payments[window.week_number].append(payment)
                week_projects[window.week_number].append(
                    {
                        "project_id": str(project.id),
                        "project_name": project.name,
                        "department": department_label(project),
                        "billing_model": project.billing_model.value if project.billing_model else None,
                        "billed_time": split_minutes(billed),
                        "logged_time": split_minutes(logged),
                        "payment": payment,
                    }
                )

        weeks: list[dict[str, object]] = []
        month_payment = ZERO
        month_billed = 0
        month_logged = 0
        for window in windows:
            if query.view_type == "users":
                items = [
                    {
                        "user_id": str(user_id),
                        "user_name": snapshot.user_names.resolve(user_id),
                        "billed_time": split_minutes(totals.billed_minutes),
                        "logged_time": split_minutes(totals.logged_minutes),
                        "project_count": len(totals.projects),
                        "payment": totals.payment,
                    }
                    for user_id, totals in week_users[window.week_number].items()
                    if totals.billed_minutes > 0 or totals.logged_minutes > 0
                ]
                name_key = "user_name"
                id_key = "user_id"
            else:
                items = week_projects[window.week_number]
                name_key = "project_name"
                id_key = "project_id"

            items.sort(key=lambda item: (-item["payment"], str(item[name_key]).lower(), item[id_key]))
            week_payment = sum((item["payment"] for item in items), ZERO)
            week_billed = sum(item["billed_time"]["total_minutes"] for item in items)
            week_logged = sum(item["logged_time"]["total_minutes"] for item in items)
            month_payment += week_payment
            month_billed += week_billed
            month_logged += week_logged

            weeks.append(
                {
                    "week": window.week_number,
                    "label": window.label,
                    "start_date": window.start.isoformat(),
                    "end_date": window.end.isoformat(),
                    "has_data": bool(items),
                    "total_payment": _money(week_payment),
                    "total_billed_time": split_minutes(week_billed),
                    "total_logged_time": split_minutes(week_logged),
                    "items": [item | {"payment": _money(item["payment"])} for item in items],
                }
            )

        self._log_generated("weekly", started, snapshot)
        return {
            "report_key": "weekly",
            "year": query.year,
            "month": query.month,
            "month_name": MONTH_NAMES[query.month],
            "view_type": query.view_type,
            "department_id": str(query.department_id) if query.department_id else None,
            "weeks": weeks,
            "monthly_totals": {
                "total_payment": _money(month_payment),
                "total_billed_time": split_minutes(month_billed),
                "total_logged_time": split_minutes(month_logged),
            },
        }

    # ---------- Year-wide weekly ----------
    def year_report(self, query: WeeklyQuery) -> dict[str, object]:
        started = time.perf_counter()
        self._ensure_scope_exists(department_id=query.department_id)
        windows_by_month = {month: weeks_of_month(query.year, month) for month in range(12)}
        snapshot = self._snapshot_or_fail("weekly-year", department_id=query.department_id)

        # (month, week, user) -> billed minutes, per project
        cells_by_project: dict[UUID, Accumulator[tuple[int, int, UUID | None], int]] = {}
        for project in snapshot.projects:
            cells: Accumulator[tuple[int, int, UUID | None], int] = Accumulator(int)

            def _collect(visit: EntryVisit) -> None:
                entry_date = visit.entry_date
                if entry_date is None or entry_date.year != query.year:
                    return
                month = entry_date.month - 1
                week = week_number_for(windows_by_month[month], entry_date)
                if week is None:
                    return
                cells.add((month, week, visit.user_id), visit.minutes)

            visit_entries(project.id, snapshot.index, _collect, kinds=(TimeEntryKind.BILLED,))
            if len(cells):
                cells_by_project[project.id] = cells

        months: list[dict[str, object]] = []
        year_total = ZERO
        for month in range(12):
            windows = windows_by_month[month]
            if query.view_type == "users":
                items = self._year_user_items(snapshot, cells_by_project, month)
            else:
                items = self._year_project_items(snapshot, cells_by_project, month)
            if not items:
                continue

            week_headers: list[dict[str, object]] = []
            month_payment = ZERO
            for slot in range(MAX_WEEKS_PER_MONTH):
                minutes = sum(item["billed_minutes"][slot] or 0 for item in items)
                payment = sum((item["_week_payments"][slot] or ZERO for item in items), ZERO)
                # Slots past the month's last week and weeks without billed time are null.
                has_data = slot < len(windows) and minutes > 0
                if has_data:
                    month_payment += payment
                week_headers.append(
                    {
                        "week": slot + 1,
                        "payment": _money(payment) if has_data else None,
                        "billed_minutes": minutes if has_data else None,
                        "has_data": has_data,
                    }
                )
            year_total += month_payment

            months.append(
                {
                    "month": month,
                    "month_name": MONTH_NAMES[month],
                    "has_data": True,
                    "weeks": week_headers,
                    "total_payment": _money(month_payment),
                    "items": [{key: value for key, value in item.items() if not key.startswith("_")} for item in items],
                }
            )

        self._log_generated("weekly-year", started, snapshot)
        return {
            "report_key": "weekly-year",
            "year": query.year,
            "view_type": query.view_type,
            "department_id": str(query.department_id) if query.department_id else None,
            "months": months,
            "year_total": _money(year_total),
        }

    @staticmethod
    def _week_slots(minutes_by_week: Accumulator[int, int]) -> list[int | None]:
        return [minutes_by_week.get(week) for week in range(1, MAX_WEEKS_PER_MONTH + 1)]

    def _year_project_items(
        self,
        snapshot: FinanceSnapshot,
        cells_by_project: dict[UUID, Accumulator[tuple[int, int, UUID | None], int]],
        month: int,
    ) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        for project in snapshot.projects:
            cells = cells_by_project.get(project.id)
            if cells is None:
                continue
            minutes_by_week: Accumulator[int, int] = Accumulator(int)
            for (cell_month, week, _user_id), minutes in cells.items():
                if cell_month == month:
                    minutes_by_week.add(week, minutes)
            if not len(minutes_by_week):
                continue

            slots = self._week_slots(minutes_by_week)
            payments = [compute_payment(project, minutes) if minutes else None for minutes in slots]
            total = sum((payment for payment in payments if payment is not None), ZERO)
            items.append(
                {
                    "project_id": str(project.id),
                    "project_name": project.name,
                    "department": department_label(project),
                    "billing_model": project.billing_model.value if project.billing_model else None,
                    "weeks": [_optional_money(payment) for payment in payments],
                    "billed_minutes": slots,
                    "total_payment": _money(total),
                    "_week_payments": payments,
                    "_total": total,
                }
            )
        items.sort(key=lambda item: (-item["_total"], str(item["project_name"]).lower(), item["project_id"]))
        return items

    def _year_user_items(
        self,
        snapshot: FinanceSnapshot,
        cells_by_project: dict[UUID, Accumulator[tuple[int, int, UUID | None], int]],
        month: int,
    ) -> list[dict[str, object]]:
        # user -> project -> week -> billed minutes
        per_user: Accumulator[UUID, Accumulator[UUID, Accumulator[int, int]]] = Accumulator(
            lambda: Accumulator(lambda: Accumulator(int))
        )
        for project_id, cells in cells_by_project.items():
            for (cell_month, week, user_id), minutes in cells.items():
                if cell_month != month or user_id is None:
                    continue
                per_user.get_or_insert(user_id).get_or_insert(project_id).add(week, minutes)

        projects_by_id = {project.id: project for project in snapshot.projects}
        items: list[dict[str, object]] = []
        for user_id, by_project in per_user.items():
            user_minutes: list[int | None] = [None] * MAX_WEEKS_PER_MONTH
            user_payments: list[Decimal | None] = [None] * MAX_WEEKS_PER_MONTH
            project_items: list[dict[str, object]] = []
            for project_id, minutes_by_week in by_project.items():
                project = projects_by_id[project_id]
                slots = self._week_slots(minutes_by_week)
                payments = [user_payment_share(project, minutes) if minutes else None for minutes in slots]
                for slot, minutes in enumerate(slots):
                    if minutes is None:
                        continue
                    user_minutes[slot] = (user_minutes[slot] or 0) + minutes
                    user_payments[slot] = (user_payments[slot] or ZERO) + payments[slot]
                project_total = sum((payment for payment in payments if payment is not None), ZERO)
                project_items.append(
                    {
                        "project_id": str(project.id),
                        "project_name": project.name,
                        "billing_model": project.billing_model.value if project.billing_model else None,
                        "hourly_rate": _optional_money(project.hourly_rate),
                        "weeks": [_optional_money(payment) for payment in payments],
                        "total_payment": _money(project_total),
                        "_total": project_total,
                    }
                )

            project_items.sort(key=lambda item: (-item["_total"], str(item["project_name"]).lower(), item["project_id"]))
            total = sum((payment for payment in user_payments if payment is not None), ZERO)
            items.append(
                {
                    "user_id": str(user_id),
                    "user_name": snapshot.user_names.resolve(user_id),
                    "weeks": [_optional_money(payment) for payment in user_payments],
                    "billed_minutes": user_minutes,
                    "total_payment": _money(total),
                    "projects": [
                        {key: value for key, value in project_item.items() if not key.startswith("_")}
                        for project_item in project_items
                    ],
                    "_week_payments": user_payments,
                    "_total": total,
                }
            )
        items.sort(key=lambda item: (-item["_total"], str(item["user_name"]).lower(), item["user_id"]))
        return items

    # ---------- Filter options ----------
    def list_departments(self) -> list[dict[str, object]]:
        return [
            {"id": str(row.id), "name": row.name, "description": row.description}
            for row in self.store.list_departments()
        ]

    def filter_options(self) -> dict[str, object]:
        with ThreadPoolExecutor(
            max_workers=self.settings.finance_fetch_workers,
            thread_name_prefix="finance-fetch",
        ) as executor:
            departments_future = executor.submit(self.store.list_departments)
            users_future = executor.submit(self.store.list_users)
            projects_future = executor.submit(self.store.fetch_projects, archived=False)
            departments = departments_future.result()
            users = users_future.result()
            projects = projects_future.result()

        return {
            "departments": [{"id": str(row.id), "name": row.name} for row in departments],
            "users": [{"id": str(row.id), "name": row.display_name, "email": row.email} for row in users],
            "projects": [
                {
                    "id": str(project.id),
                    "name": project.name,
                    "department": department_label(project),
                    "billing_model": project.billing_model.value if project.billing_model else None,
                }
                for project in projects
            ],
            "billing_models": [
                {"value": model.value, "label": label} for model, label in BILLING_MODEL_LABELS.items()
            ],
        }

    # ---------- Exports ----------
    @staticmethod
    def _flatten_report_rows(report_payload: dict[str, object]) -> tuple[list[str], list[dict[str, object]]]:
        report_key = report_payload.get("report_key")
        rows = report_payload.get("rows") or []
        if report_key == "users":
            columns = [
                "user_id",
                "user_name",
                "project_id",
                "project_name",
                "department",
                "billing_model",
                "billed_minutes",
                "logged_minutes",
                "payment",
            ]
            flat_rows = [
                {
                    "user_id": row["user_id"],
                    "user_name": row["user_name"],
                    "project_id": project["project_id"],
                    "project_name": project["project_name"],
                    "department": project["department"],
                    "billing_model": project["billing_model"] or "",
                    "billed_minutes": project["billed_time"]["total_minutes"],
                    "logged_minutes": project["logged_time"]["total_minutes"],
                    "payment": project["payment"],
                }
                for row in rows
                for project in row["projects"]
            ]
            return columns, flat_rows

        columns = [
            "project_id",
            "project_name",
            "department",
            "billing_model",
            "status",
            "coordinator_count",
            "billed_minutes",
            "logged_minutes",
            "payment",
            "last_activity",
        ]
        flat_rows = [
            {
                "project_id": row["project_id"],
                "project_name": row["project_name"],
                "department": row["department"],
                "billing_model": row["billing_model"] or "",
                "status": row["status"] or "",
                "coordinator_count": row["coordinator_count"],
                "billed_minutes": row["billed_time"]["total_minutes"],
                "logged_minutes": row["logged_time"]["total_minutes"],
                "payment": row["payment"],
                "last_activity": row["last_activity"]["date"] if row["last_activity"] else "",
            }
            for row in rows
        ]
        return columns, flat_rows

    def export_report(self, *, report_key: str, format_name: str, query: ReportQuery) -> ExportFilePayload:
        normalized_key = report_key.strip().lower()
        normalized_format = format_name.strip().lower()
        if normalized_format not in EXPORT_FORMATS:
            raise _bad_request(f"format must be one of: {', '.join(EXPORT_FORMATS)}.")

        report_dispatch = {
            "users": self.user_report,
            "projects": self.project_report,
        }
        report_func = report_dispatch.get(normalized_key)
        if report_func is None:
            raise _not_found("Unknown report_key for export.")

        columns, flattened = self._flatten_report_rows(report_func(query))
        base_filename = f"finance-{normalized_key}"
        if query.date_range.start or query.date_range.end:
            start = query.date_range.start.isoformat() if query.date_range.start else "start"
            end = query.date_range.end.isoformat() if query.date_range.end else "end"
            base_filename = f"{base_filename}-{start}-{end}"

        if normalized_format == "csv":
            import csv
            import io

            sio = io.StringIO()
            writer = csv.DictWriter(sio, fieldnames=columns)
            writer.writeheader()
            writer.writerows(flattened)
            return ExportFilePayload(
                media_type="text/csv; charset=utf-8",
                filename=f"{base_filename}.csv",
                content=sio.getvalue().encode("utf-8"),
            )

        # XLSX
        from openpyxl import Workbook

        workbook = Workbook()
        sheet = workbook.active
        sheet.title = normalized_key
        sheet.append(columns)
        for row in flattened:
            sheet.append([row.get(column, "") for column in columns])

        output = BytesIO()
        workbook.save(output)
        return ExportFilePayload(
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            filename=f"{base_filename}.xlsx",
            content=output.getvalue(),
        )
