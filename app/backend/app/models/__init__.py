"""ORM model package."""

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

__all__ = [
    "BillingModel",
    "Department",
    "NanoSubtask",
    "Project",
    "ProjectMember",
    "Subtask",
    "Task",
    "TimeEntry",
    "TimeEntryKind",
    "User",
]
