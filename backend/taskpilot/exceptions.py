"""
TaskPilot Backend - Custom Exception Hierarchy
===============================================

What:  Application-specific exceptions for the dispatch pipeline and services.
Why:   Each failure class maps to exactly one HTTP status, so the dispatcher
       and the global handlers can translate faults without string matching.
How:   Every exception carries a message and an optional context dict.
       The dispatch middleware turns the routing/binding/auth subset into
       responses itself; main.py registers handlers for everything else.
Who:   Raised by the dispatcher, services and the LLM client.

Exception Hierarchy:
    TaskPilotError (base)
    ├── ValidationError              → 400 Bad Request
    │   └── BindingError             → 400 (request body did not fit the method)
    ├── AccessDeniedError            → 403 Forbidden (raised by invoked methods)
    ├── NotFoundError                → 404 Not Found
    │   ├── ServiceNotFoundError
    │   └── MethodNotFoundError
    ├── RegistrationError            (startup only, never reaches a client)
    ├── LLMServiceError              → 503 Service Unavailable
    ├── CircuitBreakerOpenError      → 503 Service Unavailable
    └── DatabaseError                → 500 Internal Server Error
"""

from typing import Any, Dict, List, Optional


class TaskPilotError(Exception):
    """
    Base exception for all TaskPilot application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(TaskPilotError):
    """
    Raised when client input fails validation.

    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class BindingError(ValidationError):
    """
    Raised by the parameter binder when the JSON body cannot be mapped
    onto the target method's parameters.

    Attributes:
        parameter: Offending parameter name, or None for body-level problems
        reason:    Short machine-readable tag (missing, invalid, validation, body)
        details:   Human-readable messages; several for a single complex parameter
    """

    def __init__(
        self,
        message: str,
        parameter: Optional[str] = None,
        reason: str = "invalid",
        details: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["reason"] = reason
        super().__init__(message=message, field=parameter, context=ctx)
        self.parameter = parameter
        self.reason = reason
        self.details = list(details or [])


class AccessDeniedError(TaskPilotError):
    """
    Raised inside a service method when the authenticated caller lacks the
    role or ownership needed for the operation.

    HTTP:    403 Forbidden

    The dispatcher also treats the built-in PermissionError as the same
    condition, and finds either one through explicit `raise ... from` chains.
    """

    def __init__(
        self,
        message: str = "Access denied",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(TaskPilotError):
    """
    Raised when a requested resource does not exist.

    HTTP:    404 Not Found
    """

    reason = "not_found"

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ServiceNotFoundError(NotFoundError):
    """No service is registered under the requested name."""

    reason = "service_not_found"

    def __init__(self, service_name: str):
        super().__init__(resource="service", resource_id=service_name)
        self.service_name = service_name


class MethodNotFoundError(NotFoundError):
    """The service exists but exposes no method with the requested name."""

    reason = "method_not_found"

    def __init__(self, service_name: str, method_name: str):
        super().__init__(
            resource="method",
            resource_id=f"{service_name}.{method_name}",
            context={"service": service_name},
        )
        self.service_name = service_name
        self.method_name = method_name


class RegistrationError(TaskPilotError):
    """
    Raised while building the service registry: duplicate service names,
    two methods claiming one wire name, or parameters whose annotation
    cannot be bound from JSON.
    Only ever seen at startup.
    """

    def __init__(
        self,
        message: str = "Service registration failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class LLMServiceError(TaskPilotError):
    """
    Raised when the LLM (Gemini) service fails after all retries.

    HTTP:    503 Service Unavailable
    """

    def __init__(
        self,
        message: str = "AI command service is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CircuitBreakerOpenError(TaskPilotError):
    """
    Raised when the circuit breaker is in OPEN state.

    HTTP:    503 Service Unavailable

    CLOSED → (threshold failures) → OPEN → (recovery timeout) → HALF-OPEN
    → one test call succeeds → CLOSED, or fails → OPEN again.
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"AI service is temporarily unavailable due to repeated failures. "
            f"The service will automatically retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time


class DatabaseError(TaskPilotError):
    """
    Raised when database operations fail unexpectedly.

    HTTP:    500 Internal Server Error

    The message returned to the client is always generic; SQL details stay
    in the server log.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
