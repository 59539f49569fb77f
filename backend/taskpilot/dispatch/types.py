"""
TaskPilot Backend - Dispatch Data Types
========================================

What:  The small value types shared by the dispatch pipeline stages.
Who:   Produced by the registry and authentication stage; read by the
       access policy, binder, dispatcher and service methods.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field

from taskpilot.exceptions import AccessDeniedError


class ServiceMethodKey(NamedTuple):
    """(service, method) pair taken from the two URL segments after the dispatch prefix."""

    service: str
    method: str

    def __str__(self) -> str:
        return f"{self.service}.{self.method}"


class AccessLevel(str, Enum):
    PUBLIC = "public"
    PROTECTED = "protected"


class ParameterKind(str, Enum):
    PRIMITIVE = "primitive"
    COMPLEX_OBJECT = "complex_object"
    INJECTED_DEPENDENCY = "injected_dependency"


@dataclass(frozen=True)
class ParameterDescriptor:
    """
    One parameter of an exposed method, as the binder sees it.

    annotation is the resolved type hint (Any when the parameter is
    unannotated); default is only meaningful when has_default is True.
    """

    name: str
    kind: ParameterKind
    annotation: Any = Any
    has_default: bool = False
    default: Any = None
    keyword_only: bool = False


@dataclass(frozen=True)
class Decision:
    """Outcome of the access policy gate."""

    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(allowed=False, reason=reason)


class CallerIdentity(BaseModel):
    """
    Authentication outcome for the current request.

    Built once per request by AuthenticationMiddleware and stored on
    request.state.caller. Service methods receive it by declaring a
    parameter annotated with this type.
    """

    model_config = ConfigDict(frozen=True)

    is_authenticated: bool = False
    user_id: Optional[int] = None
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    claims: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def anonymous(cls) -> "CallerIdentity":
        return cls()

    def is_in_role(self, role: str) -> bool:
        return bool(self.role) and self.role.lower() == role.lower()

    @property
    def is_admin(self) -> bool:
        return self.is_in_role("Admin")

    def require_role(self, role: str) -> None:
        """Raises AccessDeniedError unless the caller is authenticated and holds `role`."""
        if not self.is_authenticated or not self.is_in_role(role):
            raise AccessDeniedError(
                f"This operation requires the '{role}' role",
                context={"user_id": self.user_id, "role": self.role},
            )
