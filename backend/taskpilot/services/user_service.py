"""
TaskPilot Backend - User Service
=================================

What:  Registration, login and user administration through the dispatcher
       (/services/UserService/<Method>).
How:   The four sign-up/sign-in methods are exposed PUBLIC; everything else
       is PROTECTED and, where noted, Admin-only via caller.require_role().
       Passwords are hashed with werkzeug; LoginAsync issues a JWT that
       AuthenticationMiddleware accepts on later requests. ChangePasswordAsync
       rehashes after checking the current password; GetMyActivityAsync
       derives a history from the caller's task timestamps.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taskpilot.config import settings
from taskpilot.dispatch import AccessLevel, CallerIdentity, expose
from taskpilot.exceptions import AccessDeniedError, DatabaseError
from taskpilot.models.task import Task
from taskpilot.models.user import User
from taskpilot.schemas.user import (
    ActivityEntry,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    RegistrationResult,
    UserCreate,
    UserResponse,
    UserUpdate,
)
from taskpilot.security import create_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; Postgres keeps the offset
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class UserService:

    @staticmethod
    async def _scalar(db: AsyncSession, query):
        try:
            return (await db.execute(query)).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("User query failed: %s", e, exc_info=True)
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

    @staticmethod
    async def _list(db: AsyncSession, query) -> List[UserResponse]:
        try:
            result = await db.execute(query.order_by(User.username))
        except SQLAlchemyError as e:
            logger.error("User listing failed: %s", e, exc_info=True)
            raise DatabaseError(context={"error_type": type(e).__name__}) from e
        return [UserResponse.model_validate(u) for u in result.scalars().all()]

    # ══════════════════════════════════════════════════════════════════════
    # Public
    # ══════════════════════════════════════════════════════════════════════

    @expose("CheckUsernameExistsAsync", access=AccessLevel.PUBLIC)
    async def check_username_exists(self, username: str, db: AsyncSession) -> bool:
        query = select(User.id).where(func.lower(User.username) == username.strip().lower())
        return await self._scalar(db, query) is not None

    @expose("CheckEmailExistsAsync", access=AccessLevel.PUBLIC)
    async def check_email_exists(self, email: str, db: AsyncSession) -> bool:
        query = select(User.id).where(func.lower(User.email) == email.strip().lower())
        return await self._scalar(db, query) is not None

    @expose("RegisterAsync", access=AccessLevel.PUBLIC)
    async def register(self, user: UserCreate, db: AsyncSession) -> RegistrationResult:
        """New accounts always get the 'User' role."""
        if await self.check_username_exists(user.username, db):
            return RegistrationResult(success=False, message="Username is already taken")
        if await self.check_email_exists(user.email, db):
            return RegistrationResult(success=False, message="Email is already registered")

        row = User(
            username=user.username,
            email=user.email,
            password_hash=hash_password(user.password),
            full_name=user.full_name,
            role="User",
            is_active=True,
        )
        try:
            db.add(row)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("User registration failed: %s", e, exc_info=True)
            raise DatabaseError(context={"operation": "register"}) from e

        logger.info("Registered user %s (id=%s)", row.username, row.id)
        return RegistrationResult(
            success=True,
            message="Registration successful",
            user=UserResponse.model_validate(row),
        )

    @expose("LoginAsync", access=AccessLevel.PUBLIC)
    async def login(self, credentials: LoginRequest, db: AsyncSession) -> LoginResponse:
        """
        Accepts username or email. Wrong credentials and disabled accounts
        raise AccessDeniedError with the same generic message.
        """
        identifier = credentials.username.strip().lower()
        query = select(User).where(
            or_(func.lower(User.username) == identifier, func.lower(User.email) == identifier)
        )
        row: Optional[User] = await self._scalar(db, query)
        if row is None or not verify_password(row.password_hash, credentials.password):
            logger.info("Failed login for '%s'", identifier)
            raise AccessDeniedError(INVALID_CREDENTIALS)
        if not row.is_active:
            logger.info("Login attempt for disabled account %s", row.id)
            raise AccessDeniedError(INVALID_CREDENTIALS)

        token = create_access_token(row.id, row.username, row.email, row.role)
        return LoginResponse(
            access_token=token,
            expires_in=settings.access_token_expire_minutes * 60,
            user=UserResponse.model_validate(row),
        )

    # ══════════════════════════════════════════════════════════════════════
    # Protected
    # ══════════════════════════════════════════════════════════════════════

    @expose("GetMyProfileAsync")
    async def get_my_profile(
        self, caller: CallerIdentity, db: AsyncSession
    ) -> Optional[UserResponse]:
        row = await self._scalar(db, select(User).where(User.id == caller.user_id))
        return UserResponse.model_validate(row) if row is not None else None

    @expose("UpdateUserAsync")
    async def update_user(
        self, user: UserUpdate, caller: CallerIdentity, db: AsyncSession
    ) -> bool:
        """Users may edit themselves; admins may edit anyone and change role/is_active."""
        if user.id != caller.user_id and not caller.is_admin:
            raise AccessDeniedError("You can only update your own profile")
        if (user.role is not None or user.is_active is not None) and not caller.is_admin:
            raise AccessDeniedError("Only administrators can change roles or account status")

        row = await self._scalar(db, select(User).where(User.id == user.id))
        if row is None:
            return False
        if user.email and user.email.lower() != row.email.lower():
            if await self.check_email_exists(user.email, db):
                return False
            row.email = user.email.lower()
        if user.full_name is not None:
            row.full_name = user.full_name or None
        if user.role is not None:
            row.role = user.role
        if user.is_active is not None:
            row.is_active = user.is_active
        try:
            await db.flush()
        except SQLAlchemyError as e:
            raise DatabaseError(context={"operation": "update_user"}) from e
        return True

    @expose("ChangePasswordAsync")
    async def change_password(
        self, request: ChangePasswordRequest, caller: CallerIdentity, db: AsyncSession
    ) -> bool:
        """Returns False when the current password does not match."""
        row = await self._scalar(db, select(User).where(User.id == caller.user_id))
        if row is None or not verify_password(row.password_hash, request.current_password):
            logger.info("Rejected password change for user %s", caller.user_id)
            return False
        row.password_hash = hash_password(request.new_password)
        try:
            await db.flush()
        except SQLAlchemyError as e:
            raise DatabaseError(context={"operation": "change_password"}) from e
        logger.info("Password changed for user %s", caller.user_id)
        return True

    @expose("GetMyActivityAsync")
    async def get_my_activity(
        self, caller: CallerIdentity, db: AsyncSession, limit: int = 20
    ) -> List[ActivityEntry]:
        """Created / updated / completed events from the caller's tasks, newest first."""
        limit = min(max(limit, 1), 100)
        try:
            result = await db.execute(
                select(Task).where(Task.user_id == caller.user_id).order_by(Task.updated_at.desc())
            )
        except SQLAlchemyError as e:
            logger.error("Activity query failed: %s", e, exc_info=True)
            raise DatabaseError(context={"operation": "activity"}) from e

        entries: List[ActivityEntry] = []
        for task in result.scalars().all():
            created = as_utc(task.created_at)
            entries.append(ActivityEntry(
                timestamp=created, action="Task Created", task_id=task.id, title=task.title
            ))
            if task.completed_date is not None:
                entries.append(ActivityEntry(
                    timestamp=as_utc(task.completed_date),
                    action="Task Completed",
                    task_id=task.id,
                    title=task.title,
                ))
            updated = as_utc(task.updated_at)
            if updated > created:
                entries.append(ActivityEntry(
                    timestamp=updated,
                    action="Task Updated",
                    task_id=task.id,
                    title=task.title,
                    details=f"Status {task.status}, {task.progress_percentage}% done",
                ))
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    @expose("GetAllUsersAsync")
    async def get_all_users(self, caller: CallerIdentity, db: AsyncSession) -> List[UserResponse]:
        caller.require_role("Admin")
        return await self._list(db, select(User))

    @expose("GetUsersByRoleAsync")
    async def get_users_by_role(
        self, role: str, caller: CallerIdentity, db: AsyncSession
    ) -> List[UserResponse]:
        caller.require_role("Admin")
        return await self._list(db, select(User).where(func.lower(User.role) == role.lower()))

    @expose("DeleteUserAsync")
    async def delete_user(self, user_id: int, caller: CallerIdentity, db: AsyncSession) -> bool:
        caller.require_role("Admin")
        if user_id == caller.user_id:
            raise AccessDeniedError("Administrators cannot delete their own account")
        row = await self._scalar(db, select(User).where(User.id == user_id))
        if row is None:
            return False
        try:
            await db.delete(row)
            await db.flush()
        except SQLAlchemyError as e:
            raise DatabaseError(context={"operation": "delete_user"}) from e
        logger.info("User %s deleted by admin %s", user_id, caller.user_id)
        return True

    @expose("SearchUsersAsync")
    async def search_users(
        self, search_term: str, caller: CallerIdentity, db: AsyncSession
    ) -> List[UserResponse]:
        """Non-admins only see regular users in the results."""
        pattern = f"%{search_term.strip()}%"
        query = select(User).where(
            or_(
                User.username.ilike(pattern),
                User.email.ilike(pattern),
                User.full_name.ilike(pattern),
            )
        )
        if not caller.is_admin:
            query = query.where(User.role == "User")
        return await self._list(db, query)


user_service = UserService()
