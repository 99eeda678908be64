"""Read-only repository exposing finance snapshots from the relational store."""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from app.models.entities import (
    Department,
    NanoSubtask,
    Project,
    Subtask,
    Task,
    TimeEntry,
    TimeEntryKind,
    User,
)
from app.services.finance_records import (
    CoordinatorRecord,
    DepartmentRecord,
    NanoSubtaskRecord,
    ProjectRecord,
    SubtaskRecord,
    TaskRecord,
    TimeEntryRecord,
    UserRecord,
)


def _entry_record(entry: TimeEntry) -> TimeEntryRecord:
    return TimeEntryRecord(
        user_id=entry.user_id,
        entry_date=entry.entry_date,
        hours=entry.hours,
        minutes=entry.minutes,
    )


def _split_entries(entries: Iterable[TimeEntry]) -> tuple[tuple[TimeEntryRecord, ...], tuple[TimeEntryRecord, ...]]:
    billed: list[TimeEntryRecord] = []
    logged: list[TimeEntryRecord] = []
    for entry in entries:
        target = billed if entry.kind is TimeEntryKind.BILLED else logged
        target.append(_entry_record(entry))
    return tuple(billed), tuple(logged)


class FinanceRepository:
    """Snapshot reads used by finance reports.

    Every method opens and closes its own session, so reads can be
    dispatched concurrently from a thread pool.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    # ---------- Serialization to records ----------
    @staticmethod
    def project_record(project: Project) -> ProjectRecord:
        return ProjectRecord(
            id=project.id,
            name=project.name,
            department_id=project.department_id,
            department_name=project.department.name if project.department is not None else None,
            billing_model=project.billing_model,
            hourly_rate=project.hourly_rate,
            fixed_price=project.fixed_price,
            archived=project.archived,
            status=project.status,
            start_date=project.start_date,
            due_date=project.due_date,
            coordinators=tuple(
                CoordinatorRecord(
                    user_id=member.user_id,
                    display_name=member.user.display_name,
                    email=member.user.email,
                )
                for member in project.members
            ),
        )

    # ---------- Projects ----------
    def fetch_projects(
        self,
        *,
        archived: bool | None = False,
        department_id: UUID | None = None,
        project_id: UUID | None = None,
    ) -> list[ProjectRecord]:
        stmt = select(Project)
        if archived is not None:
            stmt = stmt.where(Project.archived.is_(archived))
        if department_id is not None:
            stmt = stmt.where(Project.department_id == department_id)
        if project_id is not None:
            stmt = stmt.where(Project.id == project_id)
        stmt = stmt.order_by(Project.name.asc(), Project.id.asc())

        with self.session_factory() as session:
            return [self.project_record(row) for row in session.scalars(stmt).unique().all()]

    def get_project(self, project_id: UUID) -> ProjectRecord | None:
        with self.session_factory() as session:
            row = session.scalar(select(Project).where(Project.id == project_id))
            return self.project_record(row) if row is not None else None

    # ---------- Work items ----------
    def fetch_tasks(self, *, archived: bool | None = False) -> list[TaskRecord]:
        stmt = select(Task)
        if archived is not None:
            stmt = stmt.where(Task.archived.is_(archived))
        stmt = stmt.order_by(Task.created_at.asc(), Task.id.asc())

        with self.session_factory() as session:
            records: list[TaskRecord] = []
            for row in session.scalars(stmt).all():
                billed, logged = _split_entries(row.time_entries)
                records.append(
                    TaskRecord(
                        id=row.id,
                        parent_id=row.project_id,
                        title=row.title,
                        billed=billed,
                        logged=logged,
                        updated_at=row.updated_at,
                    )
                )
            return records

    def fetch_subtasks(self, *, archived: bool | None = False) -> list[SubtaskRecord]:
        stmt = select(Subtask)
        if archived is not None:
            stmt = stmt.where(Subtask.archived.is_(archived))
        stmt = stmt.order_by(Subtask.created_at.asc(), Subtask.id.asc())

        with self.session_factory() as session:
            records: list[SubtaskRecord] = []
            for row in session.scalars(stmt).all():
                billed, logged = _split_entries(row.time_entries)
                records.append(
                    SubtaskRecord(
                        id=row.id,
                        parent_id=row.task_id,
                        title=row.title,
                        billed=billed,
                        logged=logged,
                        updated_at=row.updated_at,
                    )
                )
            return records

    def fetch_nano_subtasks(self, *, archived: bool | None = False) -> list[NanoSubtaskRecord]:
        stmt = select(NanoSubtask)
        if archived is not None:
            stmt = stmt.where(NanoSubtask.archived.is_(archived))
        stmt = stmt.order_by(NanoSubtask.created_at.asc(), NanoSubtask.id.asc())

        with self.session_factory() as session:
            records: list[NanoSubtaskRecord] = []
            for row in session.scalars(stmt).all():
                billed, logged = _split_entries(row.time_entries)
                records.append(
                    NanoSubtaskRecord(
                        id=row.id,
                        parent_id=row.subtask_id,
                        title=row.title,
                        billed=billed,
                        logged=logged,
                        updated_at=row.updated_at,
                    )
                )
            return records

    # ---------- Users and departments ----------
    def fetch_users_by_ids(self, ids: Iterable[UUID]) -> list[UserRecord]:
        id_list = list(ids)
        if not id_list:
            return []
        with self.session_factory() as session:
            rows = session.scalars(select(User).where(User.id.in_(id_list))).all()
            return [UserRecord(id=row.id, display_name=row.display_name, email=row.email) for row in rows]

    def get_user(self, user_id: UUID) -> UserRecord | None:
        with self.session_factory() as session:
            row = session.scalar(select(User).where(User.id == user_id))
            if row is None:
                return None
            return UserRecord(id=row.id, display_name=row.display_name, email=row.email)

    def list_users(self) -> list[UserRecord]:
        with self.session_factory() as session:
            rows = session.scalars(
                select(User).where(User.active.is_(True)).order_by(User.display_name.asc())
            ).all()
            return [UserRecord(id=row.id, display_name=row.display_name, email=row.email) for row in rows]

    def get_department(self, department_id: UUID) -> DepartmentRecord | None:
        with self.session_factory() as session:
            row = session.scalar(select(Department).where(Department.id == department_id))
            if row is None:
                return None
            return DepartmentRecord(id=row.id, name=row.name, description=row.description)

    def list_departments(self) -> list[DepartmentRecord]:
        with self.session_factory() as session:
            rows = session.scalars(
                select(Department).where(Department.active.is_(True)).order_by(Department.name.asc())
            ).all()
            return [DepartmentRecord(id=row.id, name=row.name, description=row.description) for row in rows]
