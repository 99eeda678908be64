from __future__ import annotations

import csv
import io
import uuid
from datetime import date, datetime
from decimal import Decimal

from fastapi.testclient import TestClient
from openpyxl import load_workbook
from sqlalchemy.orm import Session

from app.models.entities import (
    BillingModel,
    Department,
    NanoSubtask,
    Project,
    ProjectMember,
    Subtask,
    Task,
    TimeEntry,
    TimeEntryKind,
    User,
)


def _create_user(db: Session, *, email: str, display_name: str) -> User:
    row = User(email=email, display_name=display_name, active=True)
    db.add(row)
    db.commit()
    return row


def _time_entry(
    kind: TimeEntryKind,
    user: User,
    entry_date: date | None,
    hours: int,
    minutes: int = 0,
    **owner: uuid.UUID,
) -> TimeEntry:
    return TimeEntry(
        kind=kind,
        user_id=user.id,
        entry_date=entry_date,
        hours=hours,
        minutes=minutes,
        **owner,
    )


def _seed_finance_data(db: Session) -> dict[str, object]:
    department = Department(name="Delivery", description="Client delivery", active=True)
    db.add(department)
    db.commit()

    alice = _create_user(db, email="alice@test.local", display_name="Alice")
    bob = _create_user(db, email="bob@test.local", display_name="Bob")

    hourly = Project(
        name="Alpha",
        department_id=department.id,
        billing_model=BillingModel.HOURLY,
        hourly_rate=Decimal("20.00"),
        status="active",
        start_date=date(2024, 1, 1),
    )
    fixed = Project(name="Beta", billing_model=BillingModel.FIXED, fixed_price=Decimal("500.00"))
    archived = Project(
        name="Gamma",
        billing_model=BillingModel.HOURLY,
        hourly_rate=Decimal("100.00"),
        archived=True,
    )
    db.add_all([hourly, fixed, archived])
    db.commit()

    db.add(ProjectMember(project_id=hourly.id, user_id=alice.id))
    alpha_task = Task(project_id=hourly.id, title="Alpha build", updated_at=datetime(2024, 1, 11, 9, 0))
    beta_task = Task(project_id=fixed.id, title="Beta design", updated_at=datetime(2024, 1, 3, 8, 0))
    gamma_task = Task(project_id=archived.id, title="Gamma legacy")
    db.add_all([alpha_task, beta_task, gamma_task])
    db.commit()

    alpha_subtask = Subtask(task_id=alpha_task.id, title="Alpha review", updated_at=datetime(2024, 2, 14, 12, 0))
    db.add(alpha_subtask)
    db.commit()
    alpha_nano = NanoSubtask(subtask_id=alpha_subtask.id, title="Alpha checklist")
    db.add(alpha_nano)
    db.commit()

    db.add_all(
        [
            _time_entry(TimeEntryKind.BILLED, alice, date(2024, 1, 5), 2, task_id=alpha_task.id),
            _time_entry(TimeEntryKind.BILLED, bob, date(2024, 1, 10), 1, 30, task_id=alpha_task.id),
            _time_entry(TimeEntryKind.LOGGED, alice, date(2024, 1, 5), 3, task_id=alpha_task.id),
            _time_entry(TimeEntryKind.BILLED, alice, date(2024, 2, 14), 0, 30, subtask_id=alpha_subtask.id),
            _time_entry(TimeEntryKind.BILLED, alice, date(2024, 2, 15), 0, 30, nano_subtask_id=alpha_nano.id),
            _time_entry(TimeEntryKind.BILLED, bob, date(2024, 1, 3), 4, task_id=beta_task.id),
            _time_entry(TimeEntryKind.BILLED, bob, date(2024, 1, 4), 10, task_id=gamma_task.id),
        ]
    )
    db.commit()

    return {
        "department_id": str(department.id),
        "alpha_id": str(hourly.id),
        "beta_id": str(fixed.id),
        "gamma_id": str(archived.id),
        "alice_id": str(alice.id),
        "bob_id": str(bob.id),
    }


def test_summary_excludes_archived_projects(client: TestClient, db_session: Session) -> None:
    _seed_finance_data(db_session)

    response = client.get("/api/v1/finance/summary")
    assert response.status_code == 200
    payload = response.json()

    assert payload["project_count"] == 2
    assert payload["total_revenue"] == "590.00"
    assert payload["total_billed_time"]["total_minutes"] == 510
    assert payload["top_earning_user"]["user_name"] == "Bob"
    assert payload["top_revenue_project"]["project_name"] == "Beta"


def test_summary_with_date_range_and_department(client: TestClient, db_session: Session) -> None:
    ids = _seed_finance_data(db_session)

    response = client.get(
        "/api/v1/finance/summary",
        params={"start_date": "2024-01-01", "end_date": "2024-01-08", "department_id": ids["department_id"]},
    )
    assert response.status_code == 200
    payload = response.json()

    assert payload["total_revenue"] == "40.00"
    assert payload["top_earning_user"]["user_id"] == ids["alice_id"]


def test_user_report_endpoint(client: TestClient, db_session: Session) -> None:
    ids = _seed_finance_data(db_session)

    response = client.get("/api/v1/finance/users")
    assert response.status_code == 200
    rows = {row["user_name"]: row for row in response.json()["rows"]}

    assert rows["Alice"]["total_billed_time"]["total_minutes"] == 180
    assert rows["Alice"]["total_payment"] == "60.00"
    assert {project["project_id"] for project in rows["Bob"]["projects"]} == {ids["alpha_id"], ids["beta_id"]}


def test_project_report_endpoint(client: TestClient, db_session: Session) -> None:
    ids = _seed_finance_data(db_session)

    response = client.get("/api/v1/finance/projects")
    assert response.status_code == 200
    rows = response.json()["rows"]

    assert [row["project_name"] for row in rows] == ["Alpha", "Beta"]
    alpha = rows[0]
    assert alpha["department"] == "Delivery"
    assert alpha["payment"] == "90.00"
    assert alpha["coordinator_count"] == 1
    assert alpha["coordinators"][0]["user_id"] == ids["alice_id"]
    assert alpha["last_activity"]["type"] == "subtask"
    assert alpha["last_activity"]["title"] == "Alpha review"


def test_project_contributions_endpoint(client: TestClient, db_session: Session) -> None:
    ids = _seed_finance_data(db_session)

    response = client.get(f"/api/v1/finance/projects/{ids['alpha_id']}/contributions")
    assert response.status_code == 200
    payload = response.json()

    assert payload["total_contributors"] == 2
    alice = payload["contributions"][0]
    assert alice["user_id"] == ids["alice_id"]
    assert alice["task_count"] == 3
    assert alice["last_activity"] == "2024-02-15"


def test_weekly_endpoints(client: TestClient, db_session: Session) -> None:
    _seed_finance_data(db_session)

    monthly = client.get("/api/v1/finance/weekly", params={"year": "2024", "month": "0", "view_type": "projects"})
    assert monthly.status_code == 200
    week_one = monthly.json()["weeks"][0]
    assert week_one["start_date"] == "2024-01-01T00:00:00"
    assert [item["project_name"] for item in week_one["items"]] == ["Beta", "Alpha"]

    yearly = client.get("/api/v1/finance/weekly-report/year", params={"year": "2024"})
    assert yearly.status_code == 200
    payload = yearly.json()
    assert [month["month"] for month in payload["months"]] == [0, 1]
    assert payload["view_type"] == "users"


def test_departments_and_filters(client: TestClient, db_session: Session) -> None:
    ids = _seed_finance_data(db_session)

    departments = client.get("/api/v1/finance/departments")
    assert departments.status_code == 200
    assert departments.json()["items"] == [
        {"id": ids["department_id"], "name": "Delivery", "description": "Client delivery"}
    ]

    filters = client.get("/api/v1/finance/filters")
    assert filters.status_code == 200
    payload = filters.json()
    assert [row["name"] for row in payload["users"]] == ["Alice", "Bob"]
    assert [row["name"] for row in payload["projects"]] == ["Alpha", "Beta"]
    assert [row["value"] for row in payload["billing_models"]] == ["hourly", "fixed"]


def test_invalid_parameters_return_400(client: TestClient, db_session: Session) -> None:
    _seed_finance_data(db_session)

    assert client.get("/api/v1/finance/summary", params={"start_date": "yesterday"}).status_code == 400
    assert (
        client.get(
            "/api/v1/finance/users",
            params={"start_date": "2024-02-01", "end_date": "2024-01-01"},
        ).status_code
        == 400
    )
    assert client.get("/api/v1/finance/projects", params={"department_id": "abc"}).status_code == 400
    assert client.get("/api/v1/finance/projects/not-a-uuid/contributions").status_code == 400
    assert client.get("/api/v1/finance/weekly", params={"month": "13"}).status_code == 400
    assert client.get("/api/v1/finance/weekly", params={"view_type": "teams"}).status_code == 400


def test_unknown_entities_return_404(client: TestClient, db_session: Session) -> None:
    _seed_finance_data(db_session)
    missing = str(uuid.uuid4())

    response = client.get("/api/v1/finance/summary", params={"department_id": missing})
    assert response.status_code == 404
    assert response.json()["detail"] == "Department not found."

    assert client.get("/api/v1/finance/users", params={"user_id": missing}).status_code == 404
    assert client.get(f"/api/v1/finance/projects/{missing}/contributions").status_code == 404


def test_export_users_csv(client: TestClient, db_session: Session) -> None:
    _seed_finance_data(db_session)

    response = client.get(
        "/api/v1/finance/exports/users",
        params={"format": "csv", "start_date": "2024-01-01", "end_date": "2024-01-31"},
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert 'filename="finance-users-2024-01-01-2024-01-31.csv"' in response.headers["content-disposition"]

    rows = list(csv.DictReader(io.StringIO(response.content.decode("utf-8"))))
    alice_alpha = next(row for row in rows if row["user_name"] == "Alice")
    assert alice_alpha["project_name"] == "Alpha"
    assert alice_alpha["billed_minutes"] == "120"
    assert alice_alpha["payment"] == "40.00"


def test_export_projects_xlsx(client: TestClient, db_session: Session) -> None:
    _seed_finance_data(db_session)

    response = client.get("/api/v1/finance/exports/projects", params={"format": "xlsx"})
    assert response.status_code == 200

    workbook = load_workbook(io.BytesIO(response.content))
    sheet = workbook["projects"]
    values = list(sheet.values)
    assert values[0][:2] == ("project_id", "project_name")
    assert [row[1] for row in values[1:]] == ["Alpha", "Beta"]


def test_export_rejects_unknown_format_and_report(client: TestClient, db_session: Session) -> None:
    _seed_finance_data(db_session)

    assert client.get("/api/v1/finance/exports/users", params={"format": "pdf"}).status_code == 400
    assert client.get("/api/v1/finance/exports/weekly", params={"format": "csv"}).status_code == 404


def test_weekly_reports_accept_last_representable_year(client: TestClient, db_session: Session) -> None:
    _seed_finance_data(db_session)

    monthly = client.get("/api/v1/finance/weekly", params={"year": "9999", "month": "11"})
    assert monthly.status_code == 200
    assert monthly.json()["weeks"][-1]["end_date"].startswith("9999-12-31T23:59:59")

    yearly = client.get("/api/v1/finance/weekly-report/year", params={"year": "9999"})
    assert yearly.status_code == 200
    assert yearly.json()["months"] == []


def test_dates_with_trailing_text_return_400(client: TestClient, db_session: Session) -> None:
    _seed_finance_data(db_session)

    assert client.get("/api/v1/finance/summary", params={"start_date": "2024-01-05junk"}).status_code == 400
    assert client.get("/api/v1/finance/users", params={"end_date": "2024-01-05 "}).status_code == 200
    assert (
        client.get("/api/v1/finance/projects", params={"start_date": "2024-01-05T00:00:00"}).status_code
        == 200
    )


def test_exports_honor_user_and_project_filters(client: TestClient, db_session: Session) -> None:
    ids = _seed_finance_data(db_session)

    users_export = client.get(
        "/api/v1/finance/exports/users",
        params={"format": "csv", "user_id": ids["bob_id"]},
    )
    assert users_export.status_code == 200
    rows = list(csv.DictReader(io.StringIO(users_export.content.decode("utf-8"))))
    assert {row["user_name"] for row in rows} == {"Bob"}
    assert {row["project_name"] for row in rows} == {"Alpha", "Beta"}

    projects_export = client.get(
        "/api/v1/finance/exports/projects",
        params={"format": "csv", "project_id": ids["beta_id"]},
    )
    assert projects_export.status_code == 200
    rows = list(csv.DictReader(io.StringIO(projects_export.content.decode("utf-8"))))
    assert [row["project_name"] for row in rows] == ["Beta"]
    assert rows[0]["payment"] == "500.00"

    missing = client.get(
        "/api/v1/finance/exports/users",
        params={"format": "csv", "user_id": str(uuid.uuid4())},
    )
    assert missing.status_code == 404
