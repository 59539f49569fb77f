"""
TaskPilot Backend - Service Registry Tests
===========================================

What we test:
    ✅ @expose aliases and access levels end up in the access table
    ✅ Undecorated public methods are PROTECTED under their own name
    ✅ Private, static and class methods are never exposed
    ✅ Two methods claiming one wire name are rejected at startup
    ✅ Resolution distinguishes unknown service from unknown method
    ✅ Parameter classification (primitive / complex / injected)
    ✅ Annotations pydantic cannot bind fail registration, not requests
    ✅ The production registry exposes the expected surface
"""

import logging
from dataclasses import dataclass
from typing import Optional

import pytest
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from taskpilot.dispatch import (
    INJECTABLE_TYPES,
    AccessLevel,
    CallerIdentity,
    ParameterKind,
    ServiceMethodKey,
    ServiceRegistry,
    expose,
)
from taskpilot.exceptions import MethodNotFoundError, RegistrationError, ServiceNotFoundError


class Payload(BaseModel):
    name: str


class ClockService:
    @expose("NowAsync", access=AccessLevel.PUBLIC)
    async def now(self) -> str:
        return "12:00"

    @expose
    async def Tick(self, caller: CallerIdentity) -> int:
        return 1

    async def reset(self, db: AsyncSession, hard: bool = False) -> None:
        return None

    async def _internal(self) -> None:
        return None

    @staticmethod
    def helper() -> None:
        return None

    @classmethod
    def build(cls) -> "ClockService":
        return cls()


class ReportService:
    async def summary(
        self,
        payload: Payload,
        limit: int,
        clock: ClockService,
        logger: logging.Logger,
        note: Optional[str] = None,
    ) -> dict:
        return {}


class AmbiguousService:
    @expose("Save")
    async def save(self) -> None:
        return None

    @expose("Save")
    async def save_again(self) -> None:
        return None


class AliasCollisionService:
    @expose("Load")
    async def fetch(self) -> None:
        return None

    async def Load(self) -> None:
        return None


class VarArgsService:
    async def run(self, *args) -> None:
        return None


class Thing:
    def __init__(self, x: int):
        self.x = x


@dataclass
class Point:
    x: int
    y: int


class PlainClassParamService:
    async def place(self, thing: Thing) -> None:
        return None


class DataclassParamService:
    async def plot(self, point: Point, caller: CallerIdentity) -> None:
        return None


def build(*services) -> ServiceRegistry:
    registry = ServiceRegistry(injectable_types=INJECTABLE_TYPES)
    for service in services:
        registry.register(service)
    return registry.freeze()


class TestRegistration:

    def test_exposed_alias_and_access(self):
        registry = build(ClockService())
        levels = registry.access_levels

        assert levels[ServiceMethodKey("ClockService", "NowAsync")] is AccessLevel.PUBLIC
        assert levels[ServiceMethodKey("ClockService", "Tick")] is AccessLevel.PROTECTED
        assert levels[ServiceMethodKey("ClockService", "reset")] is AccessLevel.PROTECTED

    def test_alias_hides_python_name(self):
        registry = build(ClockService())
        with pytest.raises(MethodNotFoundError):
            registry.resolve("ClockService", "now")

    def test_non_instance_methods_are_not_exposed(self):
        methods = build(ClockService()).methods_of("ClockService")
        assert set(methods) == {"NowAsync", "Tick", "reset"}

    def test_duplicate_wire_name_rejected(self):
        with pytest.raises(RegistrationError) as exc_info:
            build(AmbiguousService())
        assert "ambiguous" in exc_info.value.message

    def test_alias_colliding_with_method_name_rejected(self):
        with pytest.raises(RegistrationError):
            build(AliasCollisionService())

    def test_var_args_rejected(self):
        with pytest.raises(RegistrationError):
            build(VarArgsService())

    def test_unbindable_annotation_rejected(self):
        with pytest.raises(RegistrationError) as exc_info:
            build(PlainClassParamService())
        assert exc_info.value.context["parameter"] == "thing"

    def test_dataclass_parameter_is_complex(self):
        parameters = build(DataclassParamService()).resolve("DataclassParamService", "plot").parameters
        assert [p.kind for p in parameters] == [
            ParameterKind.COMPLEX_OBJECT,
            ParameterKind.INJECTED_DEPENDENCY,
        ]

    def test_duplicate_service_name_rejected(self):
        registry = ServiceRegistry()
        registry.register(ClockService())
        with pytest.raises(RegistrationError):
            registry.register(ClockService())

    def test_custom_service_name(self):
        registry = ServiceRegistry()
        registry.register(ClockService(), name="Clock")
        registry.freeze()
        assert registry.service_names == ["Clock"]
        assert registry.resolve("Clock", "NowAsync").key == ServiceMethodKey("Clock", "NowAsync")

    def test_register_after_freeze_rejected(self):
        registry = build(ClockService())
        with pytest.raises(RegistrationError):
            registry.register(ReportService())

    def test_resolve_before_freeze_rejected(self):
        registry = ServiceRegistry()
        registry.register(ClockService())
        with pytest.raises(RegistrationError):
            registry.resolve("ClockService", "Tick")

    def test_freeze_is_idempotent(self):
        registry = build(ClockService())
        assert registry.freeze() is registry

    def test_access_table_is_read_only(self):
        registry = build(ClockService())
        with pytest.raises(TypeError):
            registry.access_levels[ServiceMethodKey("ClockService", "Tick")] = AccessLevel.PUBLIC


class TestResolution:

    def setup_method(self):
        self.clock = ClockService()
        self.registry = build(self.clock, ReportService())

    def test_resolve_returns_bound_method(self):
        resolved = self.registry.resolve("ClockService", "Tick")
        assert resolved.instance is self.clock
        assert resolved.is_coroutine
        assert resolved.access is AccessLevel.PROTECTED

    def test_unknown_service(self):
        with pytest.raises(ServiceNotFoundError) as exc_info:
            self.registry.resolve("NoSuchService", "Tick")
        assert exc_info.value.reason == "service_not_found"

    def test_unknown_method(self):
        with pytest.raises(MethodNotFoundError) as exc_info:
            self.registry.resolve("ClockService", "Explode")
        assert exc_info.value.reason == "method_not_found"

    def test_lookup_is_case_sensitive(self):
        with pytest.raises(ServiceNotFoundError):
            self.registry.resolve("clockservice", "Tick")

    def test_instance_of_registered_type(self):
        assert self.registry.instance_of(ClockService) is self.clock
        with pytest.raises(LookupError):
            self.registry.instance_of(Payload)

    def test_parameter_classification(self):
        parameters = self.registry.resolve("ReportService", "summary").parameters
        kinds = {p.name: p.kind for p in parameters}

        assert kinds == {
            "payload": ParameterKind.COMPLEX_OBJECT,
            "limit": ParameterKind.PRIMITIVE,
            "clock": ParameterKind.INJECTED_DEPENDENCY,
            "logger": ParameterKind.INJECTED_DEPENDENCY,
            "note": ParameterKind.PRIMITIVE,
        }
        note = parameters[-1]
        assert note.has_default and note.default is None

    def test_session_and_caller_are_injected(self):
        reset = self.registry.resolve("ClockService", "reset").parameters
        assert reset[0].kind is ParameterKind.INJECTED_DEPENDENCY
        assert reset[1].kind is ParameterKind.PRIMITIVE
        tick = self.registry.resolve("ClockService", "Tick").parameters
        assert tick[0].kind is ParameterKind.INJECTED_DEPENDENCY


class TestProductionRegistry:

    def setup_method(self):
        from taskpilot.services import build_service_registry
        self.registry = build_service_registry()

    def test_services_registered(self):
        assert self.registry.service_names == ["AiCommandService", "TaskService", "UserService"]

    def test_public_surface_is_sign_up_and_sign_in_only(self):
        public = {
            str(key) for key, level in self.registry.access_levels.items()
            if level is AccessLevel.PUBLIC
        }
        assert public == {
            "UserService.CheckUsernameExistsAsync",
            "UserService.CheckEmailExistsAsync",
            "UserService.RegisterAsync",
            "UserService.LoginAsync",
        }

    def test_task_service_methods(self):
        assert set(self.registry.methods_of("TaskService")) == {
            "GetMyTasksAsync",
            "GetAllTasksAsync",
            "GetTaskByIdAsync",
            "SearchMyTasksAsync",
            "GetTasksWithFiltersAsync",
            "GetMyTaskStatsAsync",
            "CreateTaskAsync",
            "UpdateTaskAsync",
            "DeleteTaskAsync",
            "ToggleTaskCompletionAsync",
            "UpdateTaskStatusAsync",
        }

    def test_ai_command_service_receives_task_service(self):
        parameters = self.registry.resolve("AiCommandService", "ExecuteCommandAsync").parameters
        tasks = next(p for p in parameters if p.name == "tasks")
        assert tasks.kind is ParameterKind.INJECTED_DEPENDENCY

    def test_user_service_methods(self):
        assert set(self.registry.methods_of("UserService")) == {
            "CheckUsernameExistsAsync",
            "CheckEmailExistsAsync",
            "RegisterAsync",
            "LoginAsync",
            "GetMyProfileAsync",
            "UpdateUserAsync",
            "ChangePasswordAsync",
            "GetMyActivityAsync",
            "GetAllUsersAsync",
            "GetUsersByRoleAsync",
            "DeleteUserAsync",
            "SearchUsersAsync",
        }

    def test_ai_command_service_methods(self):
        assert set(self.registry.methods_of("AiCommandService")) == {
            "AnalyzeCommandAsync",
            "ExecuteCommandAsync",
            "ValidateCommandAsync",
            "GetCommandSuggestionsAsync",
        }
