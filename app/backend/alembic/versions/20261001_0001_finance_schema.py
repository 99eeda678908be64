"""finance read model schema

Revision ID: 20261001_0001
Revises:
Create Date: 2026-10-01
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


billing_model = postgresql.ENUM("hourly", "fixed", name="billing_model", create_type=False)
time_entry_kind = postgresql.ENUM("billed", "logged", name="time_entry_kind", create_type=False)


def _work_item_columns() -> list[sa.Column]:
    return [
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    billing_model.create(op.get_bind(), checkfirst=True)
    time_entry_kind.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "departments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("description", sa.String(length=2000), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "department_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("departments.id"),
            nullable=True,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("billing_model", billing_model, nullable=True),
        sa.Column("hourly_rate", sa.Numeric(12, 2), nullable=True),
        sa.Column("fixed_price", sa.Numeric(14, 2), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("hourly_rate IS NULL OR hourly_rate >= 0", name="ck_projects_hourly_rate_non_negative"),
        sa.CheckConstraint("fixed_price IS NULL OR fixed_price >= 0", name="ck_projects_fixed_price_non_negative"),
    )
    op.create_index("ix_projects_department_id", "projects", ["department_id"])
    op.create_index("ix_projects_department_archived", "projects", ["department_id", "archived"])

    op.create_table(
        "project_members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
    )
    op.create_index("ix_project_members_project_id", "project_members", ["project_id"])

    op.create_table(
        "tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("projects.id"), nullable=False),
        *_work_item_columns(),
    )
    op.create_index("ix_tasks_project_archived", "tasks", ["project_id", "archived"])

    op.create_table(
        "subtasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tasks.id"), nullable=False),
        *_work_item_columns(),
    )
    op.create_index("ix_subtasks_task_id", "subtasks", ["task_id"])

    op.create_table(
        "nano_subtasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("subtask_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("subtasks.id"), nullable=False),
        *_work_item_columns(),
    )
    op.create_index("ix_nano_subtasks_subtask_id", "nano_subtasks", ["subtask_id"])

    op.create_table(
        "time_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("kind", time_entry_kind, nullable=False),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tasks.id"), nullable=True),
        sa.Column("subtask_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("subtasks.id"), nullable=True),
        sa.Column(
            "nano_subtask_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("nano_subtasks.id"),
            nullable=True,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("entry_date", sa.Date(), nullable=True),
        sa.Column("hours", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "((task_id IS NOT NULL AND subtask_id IS NULL AND nano_subtask_id IS NULL) "
            "OR (task_id IS NULL AND subtask_id IS NOT NULL AND nano_subtask_id IS NULL) "
            "OR (task_id IS NULL AND subtask_id IS NULL AND nano_subtask_id IS NOT NULL))",
            name="ck_time_entries_single_owner",
        ),
        sa.CheckConstraint("hours >= 0", name="ck_time_entries_hours_non_negative"),
        sa.CheckConstraint("minutes >= 0 AND minutes <= 59", name="ck_time_entries_minutes_range"),
    )
    op.create_index("ix_time_entries_task_id", "time_entries", ["task_id"])
    op.create_index("ix_time_entries_subtask_id", "time_entries", ["subtask_id"])
    op.create_index("ix_time_entries_nano_subtask_id", "time_entries", ["nano_subtask_id"])
    op.create_index("ix_time_entries_user_date", "time_entries", ["user_id", "entry_date"])


def downgrade() -> None:
    op.drop_index("ix_time_entries_user_date", table_name="time_entries")
    op.drop_index("ix_time_entries_nano_subtask_id", table_name="time_entries")
    op.drop_index("ix_time_entries_subtask_id", table_name="time_entries")
    op.drop_index("ix_time_entries_task_id", table_name="time_entries")
    op.drop_table("time_entries")

    op.drop_index("ix_nano_subtasks_subtask_id", table_name="nano_subtasks")
    op.drop_table("nano_subtasks")

    op.drop_index("ix_subtasks_task_id", table_name="subtasks")
    op.drop_table("subtasks")

    op.drop_index("ix_tasks_project_archived", table_name="tasks")
    op.drop_table("tasks")

    op.drop_index("ix_project_members_project_id", table_name="project_members")
    op.drop_table("project_members")

    op.drop_index("ix_projects_department_archived", table_name="projects")
    op.drop_index("ix_projects_department_id", table_name="projects")
    op.drop_table("projects")

    op.drop_table("users")
    op.drop_table("departments")

    time_entry_kind.drop(op.get_bind(), checkfirst=True)
    billing_model.drop(op.get_bind(), checkfirst=True)
