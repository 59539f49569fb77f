"""
TaskPilot Backend - Task SQLAlchemy Model
==========================================

What:  ORM model for the `tasks` table.
How:   Every task has exactly one owner (user_id). Admins may read and
       modify any task; everyone else only their own. Those checks live in
       TaskService.

Status values:   Pending, In Progress, Completed, Cancelled, On Hold
Priority values: Low, Medium, High, Critical

Index on (user_id, created_at): the "my tasks, newest first" listing is
the dominant query.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from taskpilot.database import Base

TASK_PRIORITIES = ("Low", "Medium", "High", "Critical")
TASK_STATUSES = ("Pending", "In Progress", "Completed", "Cancelled", "On Hold")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # ── Content ───────────────────────────────────────────────────────────
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    tags: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # ── Workflow ──────────────────────────────────────────────────────────
    is_completed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    priority: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Medium", server_default=text("'Medium'")
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Pending", server_default=text("'Pending'")
    )
    task_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    progress_percentage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    estimated_hours: Mapped[float | None] = mapped_column(Float, nullable=True)

    # ── Ownership & assignment ────────────────────────────────────────────
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    assigned_to_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    project_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # ── Dates (UTC) ───────────────────────────────────────────────────────
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_tasks_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Task(id={self.id}, user_id={self.user_id}, status='{self.status}')>"
