"""Finance report endpoints: summary, user, project, weekly and year-wide views."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session, sessionmaker

from app.db.dependencies import get_session_factory
from app.repositories.finance_repository import FinanceRepository
from app.services.finance_reporting_service import (
    FinanceReportingService,
    parse_report_query,
    parse_uuid,
    parse_weekly_query,
)

router = APIRouter(prefix="/finance", tags=["finance"])


def get_finance_repository(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> FinanceRepository:
    return FinanceRepository(session_factory)


def _finance_service(repository: FinanceRepository) -> FinanceReportingService:
    return FinanceReportingService(repository)


@router.get("/summary")
def get_finance_summary(
    start_date: str | None = None,
    end_date: str | None = None,
    department_id: str | None = None,
    repository: FinanceRepository = Depends(get_finance_repository),
) -> dict[str, object]:
    query = parse_report_query(start_date=start_date, end_date=end_date, department_id=department_id)
    return _finance_service(repository).summary(query)


@router.get("/users")
def get_user_finance_report(
    start_date: str | None = None,
    end_date: str | None = None,
    department_id: str | None = None,
    user_id: str | None = None,
    repository: FinanceRepository = Depends(get_finance_repository),
) -> dict[str, object]:
    query = parse_report_query(
        start_date=start_date,
        end_date=end_date,
        department_id=department_id,
        user_id=user_id,
    )
    return _finance_service(repository).user_report(query)


@router.get("/projects")
def get_project_finance_report(
    start_date: str | None = None,
    end_date: str | None = None,
    department_id: str | None = None,
    project_id: str | None = None,
    repository: FinanceRepository = Depends(get_finance_repository),
) -> dict[str, object]:
    query = parse_report_query(
        start_date=start_date,
        end_date=end_date,
        department_id=department_id,
        project_id=project_id,
    )
    return _finance_service(repository).project_report(query)


@router.get("/projects/{project_id}/contributions")
def get_project_contributions(
    project_id: str,
    start_date: str | None = None,
    end_date: str | None = None,
    repository: FinanceRepository = Depends(get_finance_repository),
) -> dict[str, object]:
    parsed_project_id = parse_uuid(project_id, "project_id")
    query = parse_report_query(start_date=start_date, end_date=end_date)
    return _finance_service(repository).project_contributions(parsed_project_id, query)


@router.get("/weekly")
def get_weekly_finance_report(
    year: str | None = None,
    month: str | None = None,
    view_type: str | None = None,
    department_id: str | None = None,
    repository: FinanceRepository = Depends(get_finance_repository),
) -> dict[str, object]:
    query = parse_weekly_query(year=year, month=month, view_type=view_type, department_id=department_id)
    return _finance_service(repository).weekly_report(query)


@router.get("/weekly-report/year")
def get_year_weekly_finance_report(
    year: str | None = None,
    view_type: str | None = None,
    department_id: str | None = None,
    repository: FinanceRepository = Depends(get_finance_repository),
) -> dict[str, object]:
    query = parse_weekly_query(year=year, view_type=view_type, department_id=department_id)
    return _finance_service(repository).year_report(query)


@router.get("/departments")
def list_finance_departments(
    repository: FinanceRepository = Depends(get_finance_repository),
) -> dict[str, object]:
    return {"items": _finance_service(repository).list_departments()}


@router.get("/filters")
def get_finance_filter_options(
    repository: FinanceRepository = Depends(get_finance_repository),
) -> dict[str, object]:
    return _finance_service(repository).filter_options()
