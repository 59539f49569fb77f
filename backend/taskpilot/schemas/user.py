"""
TaskPilot Backend - User Schemas
=================================

What:  Registration/login payloads and the user data returned to clients.
Note:  password_hash never appears in any response model.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from taskpilot.schemas.base import CAMEL_CONFIG

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class UserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=128)
    full_name: Optional[str] = Field(default=None, max_length=100)

    model_config = CAMEL_CONFIG

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()


class LoginRequest(BaseModel):
    """Either the username or the email address is accepted as `username`."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)

    model_config = CAMEL_CONFIG


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    full_name: Optional[str] = None
    role: str
    is_active: bool
    created_at: datetime

    model_config = CAMEL_CONFIG


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Token lifetime in seconds")
    user: UserResponse

    model_config = CAMEL_CONFIG


class UserUpdate(BaseModel):
    """Self-service or admin profile change. Only admins may change role/is_active."""

    id: int = Field(gt=0)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    full_name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[str] = Field(default=None, pattern=r"^(User|Admin)$")
    is_active: Optional[bool] = None

    model_config = CAMEL_CONFIG


class RegistrationResult(BaseModel):
    success: bool
    message: str
    user: Optional[UserResponse] = None

    model_config = CAMEL_CONFIG


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=8, max_length=128)

    model_config = CAMEL_CONFIG

    @model_validator(mode="after")
    def passwords_differ(self) -> "ChangePasswordRequest":
        if self.current_password == self.new_password:
            raise ValueError("The new password must differ from the current one")
        return self


class ActivityEntry(BaseModel):
    """One event in a user's task history, newest first in GetMyActivityAsync."""

    timestamp: datetime
    action: str
    task_id: int
    title: str
    details: Optional[str] = None

    model_config = CAMEL_CONFIG
