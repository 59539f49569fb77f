"""
TaskPilot Backend - Task Service
=================================

What:  Task CRUD, search, filtering and statistics, reachable through the
       dispatcher as /services/TaskService/<Method>.
How:   Stateless singleton. Each exposed method declares the caller
       (CallerIdentity) and the unit-of-work session (AsyncSession) as
       parameters; the dispatcher injects both and commits after the call.
       Methods only flush.

Authorization:
    Every method is PROTECTED, so the caller is always authenticated here.
    Ownership and role rules are checked in this module and violations
    raise AccessDeniedError (→ 403):
        - a task may be read/changed/deleted by its owner or an Admin
        - GetAllTasksAsync is Admin-only

Database failures are wrapped in DatabaseError; the dispatcher reports
them as 500 without touching the session further.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taskpilot.dispatch import CallerIdentity, expose
from taskpilot.exceptions import AccessDeniedError, DatabaseError
from taskpilot.models.task import Task
from taskpilot.schemas.task import (
    TaskCreate,
    TaskPriority,
    TaskResponse,
    TaskStats,
    TaskStatus,
    TaskUpdate,
)

logger = logging.getLogger(__name__)

# Critical first; unknown priorities sort last
PRIORITY_RANK = case(
    (Task.priority == "Critical", 0),
    (Task.priority == "High", 1),
    (Task.priority == "Medium", 2),
    (Task.priority == "Low", 3),
    else_=4,
)


def apply_status(task: Task, status: str, now: Optional[datetime] = None) -> None:
    """Keeps is_completed, progress and completed_date consistent with status."""
    now = now or datetime.now(timezone.utc)
    task.status = status
    if status == "Completed":
        task.is_completed = True
        task.progress_percentage = 100
        task.completed_date = task.completed_date or now
    else:
        task.is_completed = False
        task.completed_date = None


class TaskService:

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def _ensure_can_modify(task: Task, caller: CallerIdentity) -> None:
        if task.user_id != caller.user_id and not caller.is_admin:
            raise AccessDeniedError(
                "You can only access your own tasks",
                context={"task_id": task.id, "user_id": caller.user_id},
            )

    @staticmethod
    async def _load(db: AsyncSession, task_id: int) -> Optional[Task]:
        result = await db.execute(select(Task).where(Task.id == task_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def _list(db: AsyncSession, query) -> List[TaskResponse]:
        result = await db.execute(query.order_by(PRIORITY_RANK, Task.created_at.desc()))
        return [TaskResponse.model_validate(t) for t in result.scalars().all()]

    @staticmethod
    def _database_error(operation: str, error: Exception) -> DatabaseError:
        logger.error("Task %s failed: %s", operation, error, exc_info=True)
        return DatabaseError(context={"operation": operation, "error_type": type(error).__name__})

    # ── Queries ───────────────────────────────────────────────────────────

    @expose("GetMyTasksAsync")
    async def get_my_tasks(self, caller: CallerIdentity, db: AsyncSession) -> List[TaskResponse]:
        try:
            return await self._list(db, select(Task).where(Task.user_id == caller.user_id))
        except SQLAlchemyError as e:
            raise self._database_error("list", e) from e

    @expose("GetAllTasksAsync")
    async def get_all_tasks(self, caller: CallerIdentity, db: AsyncSession) -> List[TaskResponse]:
        caller.require_role("Admin")
        try:
            return await self._list(db, select(Task))
        except SQLAlchemyError as e:
            raise self._database_error("list_all", e) from e

    @expose("GetTaskByIdAsync")
    async def get_task_by_id(
        self, task_id: int, caller: CallerIdentity, db: AsyncSession
    ) -> Optional[TaskResponse]:
        """Returns None (→ 204) when the task does not exist."""
        try:
            task = await self._load(db, task_id)
        except SQLAlchemyError as e:
            raise self._database_error("get", e) from e
        if task is None:
            return None
        self._ensure_can_modify(task, caller)
        return TaskResponse.model_validate(task)

    @expose("SearchMyTasksAsync")
    async def search_my_tasks(
        self, search_term: str, caller: CallerIdentity, db: AsyncSession
    ) -> List[TaskResponse]:
        """Substring match over title, description, tags, project and category."""
        query = select(Task).where(Task.user_id == caller.user_id)
        term = search_term.strip()
        if term:
            pattern = f"%{term}%"
            query = query.where(
                or_(
                    Task.title.ilike(pattern),
                    Task.description.ilike(pattern),
                    Task.tags.ilike(pattern),
                    Task.project_name.ilike(pattern),
                    Task.category.ilike(pattern),
                )
            )
        try:
            return await self._list(db, query)
        except SQLAlchemyError as e:
            raise self._database_error("search", e) from e

    @expose("GetTasksWithFiltersAsync")
    async def get_tasks_with_filters(
        self,
        caller: CallerIdentity,
        db: AsyncSession,
        status: Optional[TaskStatus] = None,
        priority: Optional[TaskPriority] = None,
        task_type: Optional[str] = None,
        assigned_to_name: Optional[str] = None,
        project_name: Optional[str] = None,
        is_overdue: Optional[bool] = None,
    ) -> List[TaskResponse]:
        """Admins filter across all tasks; everyone else within their own."""
        query = select(Task)
        if not caller.is_admin:
            query = query.where(Task.user_id == caller.user_id)
        if status:
            query = query.where(Task.status == status)
        if priority:
            query = query.where(Task.priority == priority)
        if task_type:
            query = query.where(Task.task_type == task_type)
        if assigned_to_name:
            query = query.where(Task.assigned_to_name.ilike(f"%{assigned_to_name}%"))
        if project_name:
            query = query.where(Task.project_name == project_name)
        if is_overdue is not None:
            now = datetime.now(timezone.utc)
            overdue = (Task.due_date.is_not(None)) & (Task.due_date < now) & (Task.is_completed.is_(False))
            query = query.where(overdue if is_overdue else ~overdue)
        try:
            return await self._list(db, query)
        except SQLAlchemyError as e:
            raise self._database_error("filter", e) from e

    @expose("GetMyTaskStatsAsync")
    async def get_my_task_stats(self, caller: CallerIdentity, db: AsyncSession) -> TaskStats:
        now = datetime.now(timezone.utc)
        query = select(
            func.count(Task.id),
            func.coalesce(func.sum(case((Task.is_completed.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((Task.status == "In Progress", 1), else_=0)), 0),
            func.coalesce(func.sum(case((Task.priority == "Critical", 1), else_=0)), 0),
            func.coalesce(func.sum(case((Task.priority == "High", 1), else_=0)), 0),
            func.coalesce(
                func.sum(
                    case(
                        ((Task.due_date < now) & (Task.is_completed.is_(False)), 1),
                        else_=0,
                    )
                ),
                0,
            ),
            func.avg(Task.progress_percentage),
        ).where(Task.user_id == caller.user_id)
        try:
            row = (await db.execute(query)).one()
        except SQLAlchemyError as e:
            raise self._database_error("stats", e) from e

        total, completed, in_progress, critical, high, overdue, avg_progress = row
        total = int(total or 0)
        completed = int(completed or 0)
        return TaskStats(
            total_tasks=total,
            completed_tasks=completed,
            pending_tasks=total - completed,
            in_progress_tasks=int(in_progress or 0),
            critical_tasks=int(critical or 0),
            high_priority_tasks=int(high or 0),
            overdue_tasks=int(overdue or 0),
            average_progress=round(float(avg_progress or 0), 2),
            completion_rate=round(completed * 100.0 / total, 2) if total else 0.0,
        )

    # ── Commands ──────────────────────────────────────────────────────────

    @expose("CreateTaskAsync")
    async def create_task(
        self, task: TaskCreate, caller: CallerIdentity, db: AsyncSession
    ) -> TaskResponse:
        now = datetime.now(timezone.utc)
        row = Task(
            **task.model_dump(exclude={"status"}),
            user_id=caller.user_id,
            is_completed=False,
            created_at=now,
            updated_at=now,
        )
        apply_status(row, task.status, now)
        try:
            db.add(row)
            await db.flush()
        except SQLAlchemyError as e:
            raise self._database_error("create", e) from e

        logger.info("Task %s created by user %s", row.id, caller.user_id)
        return TaskResponse.model_validate(row)

    @expose("UpdateTaskAsync")
    async def update_task(
        self, task: TaskUpdate, caller: CallerIdentity, db: AsyncSession
    ) -> bool:
        """Returns False when the task does not exist. Owner and created_at never change."""
        try:
            row = await self._load(db, task.id)
            if row is None:
                return False
            self._ensure_can_modify(row, caller)

            for field, value in task.model_dump(exclude={"id", "status"}).items():
                setattr(row, field, value)
            # Re-applied even when unchanged: the copied progress must not undo "Completed"
            apply_status(row, task.status)
            row.updated_at = datetime.now(timezone.utc)
            await db.flush()
        except SQLAlchemyError as e:
            raise self._database_error("update", e) from e
        return True

    @expose("DeleteTaskAsync")
    async def delete_task(self, task_id: int, caller: CallerIdentity, db: AsyncSession) -> bool:
        try:
            row = await self._load(db, task_id)
            if row is None:
                return False
            self._ensure_can_modify(row, caller)
            await db.delete(row)
            await db.flush()
        except SQLAlchemyError as e:
            raise self._database_error("delete", e) from e
        logger.info("Task %s deleted by user %s", task_id, caller.user_id)
        return True

    @expose("ToggleTaskCompletionAsync")
    async def toggle_task_completion(
        self, task_id: int, caller: CallerIdentity, db: AsyncSession
    ) -> bool:
        try:
            row = await self._load(db, task_id)
            if row is None:
                return False
            self._ensure_can_modify(row, caller)
            apply_status(row, "Pending" if row.is_completed else "Completed")
            row.updated_at = datetime.now(timezone.utc)
            await db.flush()
        except SQLAlchemyError as e:
            raise self._database_error("toggle", e) from e
        return True

    @expose("UpdateTaskStatusAsync")
    async def update_task_status(
        self,
        task_id: int,
        new_status: TaskStatus,
        caller: CallerIdentity,
        db: AsyncSession,
        new_priority: Optional[TaskPriority] = None,
        assigned_to_name: Optional[str] = None,
    ) -> bool:
        try:
            row = await self._load(db, task_id)
            if row is None:
                return False
            self._ensure_can_modify(row, caller)
            apply_status(row, new_status)
            if new_priority:
                row.priority = new_priority
            if assigned_to_name is not None:
                row.assigned_to_name = assigned_to_name or None
            row.updated_at = datetime.now(timezone.utc)
            await db.flush()
        except SQLAlchemyError as e:
            raise self._database_error("status", e) from e
        return True


task_service = TaskService()
