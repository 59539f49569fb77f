"""
TaskPilot Backend - Task Schemas
=================================

What:  Pydantic models for task payloads bound from request bodies and
       task data returned to clients.
How:   Field names are snake_case in Python and camelCase on the wire
       (alias_generator=to_camel); populate_by_name lets clients send
       either spelling. from_attributes lets responses be built straight
       from ORM rows.

Validation on TaskCreate/TaskUpdate runs inside the parameter binder, so
every failing field of one task is reported together in a 400 response.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from taskpilot.models.task import TASK_PRIORITIES, TASK_STATUSES
from taskpilot.schemas.base import CAMEL_CONFIG

# Literal aliases let bare method parameters be checked by the binder
TaskStatus = Literal["Pending", "In Progress", "Completed", "Cancelled", "On Hold"]
TaskPriority = Literal["Low", "Medium", "High", "Critical"]


def _check_choice(value: Optional[str], choices: tuple, field: str) -> Optional[str]:
    if value is None:
        return value
    for choice in choices:
        if value.lower() == choice.lower():
            return choice
    raise ValueError(f"Invalid {field} '{value}'. Must be one of: {', '.join(choices)}")


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class TaskFields(BaseModel):
    """Fields shared by create and update payloads."""

    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    priority: str = Field(default="Medium")
    status: str = Field(default="Pending")
    task_type: Optional[str] = Field(default=None, max_length=50)
    assigned_to_name: Optional[str] = Field(default=None, max_length=100)
    project_name: Optional[str] = Field(default=None, max_length=100)
    category: Optional[str] = Field(default=None, max_length=50)
    tags: Optional[str] = Field(default=None, max_length=500)
    due_date: Optional[datetime] = None
    progress_percentage: int = Field(default=0, ge=0, le=100)
    estimated_hours: Optional[float] = Field(default=None, ge=0, le=10_000)

    model_config = CAMEL_CONFIG

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("Title must not be blank")
        return stripped

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: str) -> str:
        return _check_choice(v, TASK_PRIORITIES, "priority")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        return _check_choice(v, TASK_STATUSES, "status")


class TaskCreate(TaskFields):
    """Payload for TaskService.CreateTaskAsync. Owner and timestamps are set server-side."""


class TaskUpdate(TaskFields):
    """Payload for TaskService.UpdateTaskAsync. Owner and created_at are never changed."""

    id: int = Field(gt=0)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class TaskResponse(BaseModel):
    id: int
    user_id: int
    title: str
    description: Optional[str] = None
    is_completed: bool
    priority: str
    status: str
    task_type: Optional[str] = None
    assigned_to_name: Optional[str] = None
    project_name: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[str] = None
    due_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    progress_percentage: int
    estimated_hours: Optional[float] = None
    created_at: datetime
    updated_at: datetime

    model_config = CAMEL_CONFIG


class TaskStats(BaseModel):
    """Aggregate counters returned by TaskService.GetMyTaskStatsAsync."""

    total_tasks: int = 0
    completed_tasks: int = 0
    pending_tasks: int = 0
    in_progress_tasks: int = 0
    critical_tasks: int = 0
    high_priority_tasks: int = 0
    overdue_tasks: int = 0
    average_progress: float = 0.0
    completion_rate: float = 0.0

    model_config = CAMEL_CONFIG
