"""Export endpoint for finance report datasets."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from app.api.routes.finance import get_finance_repository
from app.repositories.finance_repository import FinanceRepository
from app.services.finance_reporting_service import FinanceReportingService, parse_report_query

router = APIRouter(prefix="/finance/exports", tags=["exports"])


@router.get("/{report_key}")
def export_report(
    report_key: str,
    format: str = Query(default="xlsx"),
    start_date: str | None = Query(default=None),
    end_date: str | None = Query(default=None),
    department_id: str | None = Query(default=None),
    project_id: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
    repository: FinanceRepository = Depends(get_finance_repository),
) -> Response:
    query = parse_report_query(
        start_date=start_date,
        end_date=end_date,
        department_id=department_id,
        project_id=project_id,
        user_id=user_id,
    )
    exported = FinanceReportingService(repository).export_report(
        report_key=report_key,
        format_name=format,
        query=query,
    )
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )
