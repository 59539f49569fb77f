"""
TaskPilot Backend - Dispatch Middleware Tests (end to end)
===========================================================

What:  Drives full HTTP requests through the middleware chain with HTTPX
       against an in-memory SQLite database.

What we test:
    ✅ Task creation by an authenticated user persists the row
    ✅ Anonymous calls to protected methods get 401 and write nothing
    ✅ Missing parameters get 400 naming the parameter
    ✅ Unknown services/methods: 404 when signed in, 401 when anonymous
    ✅ Role violations inside service methods get 403
    ✅ Access denial wrapped with `raise ... from` still gets 403; a crash
       while handling a denial is an ordinary 500
    ✅ Results that cannot be encoded get the same 500 body
    ✅ Other faults get 500 {error, details} and roll the session back
    ✅ Value-shaped responses: 204 / text / bytes / stream / JSON
    ✅ Dataclass parameters bind like pydantic models
    ✅ Non-dispatch paths reach the regular router
"""

import io
import logging
from dataclasses import dataclass

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from taskpilot.config import settings
from taskpilot.dispatch import (
    INJECTABLE_TYPES,
    AccessLevel,
    CallerIdentity,
    ServiceRegistry,
    expose,
)
from taskpilot.exceptions import AccessDeniedError
from taskpilot.middleware.dispatch import find_access_denied
from taskpilot.models.task import Task
from taskpilot.models.user import User
from taskpilot.security import hash_password

DISPATCH = settings.dispatch_path_prefix


async def _later(value):
    return value


class Opaque:
    """Neither iterable nor carrying a __dict__, so JSON encoding fails."""

    __slots__ = ()


@dataclass
class Window:
    start: int
    end: int


class EchoService:
    """Exercises every response shape and fault path of the dispatcher."""

    @expose("Greet", access=AccessLevel.PUBLIC)
    async def greet(self, name: str, times: int = 1) -> str:
        return " ".join([f"hello {name}"] * times)

    @expose("Nothing")
    async def nothing(self, caller: CallerIdentity) -> None:
        return None

    @expose("Describe")
    async def describe(self, label: str, count: int, caller: CallerIdentity) -> dict:
        return {"label": label, "count": count, "userId": caller.user_id}

    @expose("Raw")
    def raw(self) -> bytes:
        return b"\x00\x01\x02"

    @expose("Add")
    def add(self, a: int, b: int) -> int:
        return a + b

    @expose("Download")
    async def download(self):
        return io.BytesIO(b"file-body")

    @expose("Deferred")
    async def deferred(self):
        return _later({"state": "settled"})

    @expose("Inspect")
    async def inspect_request(self, request: Request, logger: logging.Logger) -> dict:
        return {"path": request.url.path, "logger": logger.name}

    @expose("Boom")
    async def boom(self):
        raise ValueError("boom")

    @expose("Wrapped")
    async def wrapped(self):
        try:
            raise PermissionError("not your record")
        except PermissionError as e:
            raise RuntimeError("lookup failed") from e

    @expose("AdminOrCrash")
    async def admin_or_crash(self, caller: CallerIdentity) -> dict:
        try:
            caller.require_role("Admin")
        except AccessDeniedError:
            raise KeyError("summary")
        return {"ok": True}

    @expose("Unencodable")
    async def unencodable(self, caller: CallerIdentity) -> Opaque:
        return Opaque()

    @expose("Span")
    async def span(self, window: Window) -> int:
        return window.end - window.start

    @expose("AdminOnly")
    async def admin_only(self, caller: CallerIdentity) -> dict:
        caller.require_role("Admin")
        return {"ok": True}

    @expose("AddUser")
    async def add_user(self, username: str, db: AsyncSession) -> int:
        row = User(username=username, email=f"{username}@example.com",
                   password_hash=hash_password("irrelevant-pass"), role="User", is_active=True)
        db.add(row)
        await db.flush()
        return row.id

    @expose("AddUserThenFail")
    async def add_user_then_fail(self, username: str, db: AsyncSession) -> int:
        await self.add_user(username, db)
        raise RuntimeError("failed after write")


@pytest_asyncio.fixture
async def echo_client(make_client):
    registry = ServiceRegistry(injectable_types=INJECTABLE_TYPES)
    registry.register(EchoService())
    async with make_client(registry) as client:
        yield client


@pytest.fixture
def caller_headers(make_token):
    """Token for a user that only exists in the token (EchoService never looks it up)."""
    user = User(id=42, username="tester", email="tester@example.com", role="User")
    return {"Authorization": f"Bearer {make_token(user)}"}


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(model.id)))).scalar_one()


# ══════════════════════════════════════════════════════════════════════════
# Task scenarios against the production services
# ══════════════════════════════════════════════════════════════════════════

class TestTaskScenarios:

    @pytest.mark.asyncio
    async def test_authenticated_create_task(self, test_client, users, auth_headers, session_factory):
        alice = users["alice"]
        response = await test_client.post(
            f"{DISPATCH}/TaskService/CreateTaskAsync",
            json={"task": {"title": "Write report", "priority": "High", "projectName": "Q3"}},
            headers=auth_headers(alice),
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        body = response.json()
        assert body["id"] > 0
        assert body["userId"] == alice.id
        assert body["title"] == "Write report"
        assert body["projectName"] == "Q3"
        assert body["isCompleted"] is False
        assert await count(session_factory, Task) == 1

    @pytest.mark.asyncio
    async def test_anonymous_create_task_is_401_and_writes_nothing(
        self, test_client, users, session_factory
    ):
        response = await test_client.post(
            f"{DISPATCH}/TaskService/CreateTaskAsync",
            json={"task": {"title": "Sneaky"}},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "authentication required"
        assert await count(session_factory, Task) == 0

    @pytest.mark.asyncio
    async def test_missing_task_parameter_is_400(self, test_client, users, auth_headers):
        response = await test_client.post(
            f"{DISPATCH}/TaskService/CreateTaskAsync",
            json={},
            headers=auth_headers(users["alice"]),
        )

        assert response.status_code == 400
        body = response.json()
        assert "'task'" in body["error"]
        assert body["details"]["parameter"] == "task"
        assert body["details"]["reason"] == "missing"

    @pytest.mark.asyncio
    async def test_invalid_task_reports_every_field(self, test_client, users, auth_headers):
        response = await test_client.post(
            f"{DISPATCH}/TaskService/CreateTaskAsync",
            json={"task": {"title": "", "status": "Someday"}},
            headers=auth_headers(users["alice"]),
        )

        assert response.status_code == 400
        details = response.json()["details"]
        assert details["reason"] == "validation"
        assert len(details["messages"]) == 2

    @pytest.mark.asyncio
    async def test_unknown_service_when_signed_in_is_404(self, test_client, users, auth_headers):
        response = await test_client.post(
            f"{DISPATCH}/NoSuchService/DoIt",
            json={},
            headers=auth_headers(users["alice"]),
        )

        assert response.status_code == 404
        assert response.json()["details"]["reason"] == "service_not_found"

    @pytest.mark.asyncio
    async def test_unknown_method_when_signed_in_is_404(self, test_client, users, auth_headers):
        response = await test_client.post(
            f"{DISPATCH}/TaskService/DropAllTables",
            json={},
            headers=auth_headers(users["alice"]),
        )

        assert response.status_code == 404
        assert response.json()["details"]["reason"] == "method_not_found"

    @pytest.mark.asyncio
    async def test_unknown_service_when_anonymous_is_401(self, test_client):
        """Probing without a token cannot tell real and fake names apart."""
        fake = await test_client.post(f"{DISPATCH}/NoSuchService/DoIt", json={})
        real = await test_client.post(f"{DISPATCH}/TaskService/GetMyTasksAsync", json={})

        assert fake.status_code == real.status_code == 401
        assert fake.json()["error"] == real.json()["error"]

    @pytest.mark.asyncio
    async def test_not_found_reason_can_be_hidden(
        self, test_client, users, auth_headers, monkeypatch
    ):
        monkeypatch.setattr(settings, "dispatch_expose_not_found_reason", False)
        response = await test_client.post(
            f"{DISPATCH}/TaskService/DropAllTables",
            json={},
            headers=auth_headers(users["alice"]),
        )

        assert response.status_code == 404
        assert "details" not in response.json()

    @pytest.mark.asyncio
    async def test_non_admin_get_all_tasks_is_403(self, test_client, users, auth_headers):
        response = await test_client.post(
            f"{DISPATCH}/TaskService/GetAllTasksAsync",
            json={},
            headers=auth_headers(users["alice"]),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "access denied"

    @pytest.mark.asyncio
    async def test_admin_get_all_tasks(self, test_client, users, auth_headers):
        for owner in ("alice", "bob"):
            await test_client.post(
                f"{DISPATCH}/TaskService/CreateTaskAsync",
                json={"task": {"title": f"{owner}'s task"}},
                headers=auth_headers(users[owner]),
            )

        response = await test_client.post(
            f"{DISPATCH}/TaskService/GetAllTasksAsync",
            headers=auth_headers(users["root"]),
        )

        assert response.status_code == 200
        assert len(response.json()) == 2

    @pytest.mark.asyncio
    async def test_editing_another_users_task_is_403(self, test_client, users, auth_headers):
        created = await test_client.post(
            f"{DISPATCH}/TaskService/CreateTaskAsync",
            json={"task": {"title": "Alice only"}},
            headers=auth_headers(users["alice"]),
        )
        task_id = created.json()["id"]

        response = await test_client.post(
            f"{DISPATCH}/TaskService/DeleteTaskAsync",
            json={"taskId": task_id},
            headers=auth_headers(users["bob"]),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_task_lookup_is_204(self, test_client, users, auth_headers):
        response = await test_client.post(
            f"{DISPATCH}/TaskService/GetTaskByIdAsync",
            json={"taskId": 9999},
            headers=auth_headers(users["alice"]),
        )
        assert response.status_code == 204
        assert response.content == b""

    @pytest.mark.asyncio
    async def test_login_then_call_with_cookie(self, test_client, users, user_password):
        login = await test_client.post(
            f"{DISPATCH}/UserService/LoginAsync",
            json={"credentials": {"username": "alice", "password": user_password}},
        )
        assert login.status_code == 200
        token = login.json()["accessToken"]

        response = await test_client.post(
            f"{DISPATCH}/UserService/GetMyProfileAsync",
            headers={"Cookie": f"{settings.auth_cookie_name}={token}"},
        )
        assert response.status_code == 200
        assert response.json()["username"] == "alice"

    @pytest.mark.asyncio
    async def test_wrong_password_is_403(self, test_client, users):
        response = await test_client.post(
            f"{DISPATCH}/UserService/LoginAsync",
            json={"credentials": {"username": "alice", "password": "nope-nope-nope"}},
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_public_check_username(self, test_client, users):
        response = await test_client.post(
            f"{DISPATCH}/UserService/CheckUsernameExistsAsync",
            json={"username": "ALICE"},
        )
        assert response.status_code == 200
        assert response.json() is True

    @pytest.mark.asyncio
    async def test_change_password_then_login(self, test_client, users, auth_headers, user_password):
        changed = await test_client.post(
            f"{DISPATCH}/UserService/ChangePasswordAsync",
            json={"request": {"currentPassword": user_password, "newPassword": "rotated-secret-99"}},
            headers=auth_headers(users["bob"]),
        )
        assert changed.status_code == 200
        assert changed.json() is True

        login = await test_client.post(
            f"{DISPATCH}/UserService/LoginAsync",
            json={"credentials": {"username": "bob", "password": "rotated-secret-99"}},
        )
        assert login.status_code == 200


# ══════════════════════════════════════════════════════════════════════════
# Dispatcher mechanics
# ══════════════════════════════════════════════════════════════════════════

class TestDispatchMechanics:

    @pytest.mark.asyncio
    async def test_public_method_without_token(self, echo_client):
        response = await echo_client.post(f"{DISPATCH}/EchoService/Greet", json={"name": "Ada", "times": 2})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "hello Ada hello Ada"

    @pytest.mark.asyncio
    async def test_get_request_with_query_token(self, echo_client, make_token):
        """Any HTTP verb dispatches; an empty body binds defaults only."""
        user = User(id=5, username="q", email="q@example.com", role="User")
        response = await echo_client.get(
            f"{DISPATCH}/EchoService/Nothing",
            params={settings.auth_query_param: make_token(user)},
        )
        assert response.status_code == 204

    @pytest.mark.asyncio
    async def test_none_result_is_204(self, echo_client, caller_headers):
        response = await echo_client.post(f"{DISPATCH}/EchoService/Nothing", headers=caller_headers)
        assert response.status_code == 204
        assert response.content == b""

    @pytest.mark.asyncio
    async def test_object_result_is_json(self, echo_client, caller_headers):
        response = await echo_client.post(
            f"{DISPATCH}/EchoService/Describe",
            json={"Label": "x", "count": "3"},
            headers=caller_headers,
        )
        assert response.status_code == 200
        assert response.json() == {"label": "x", "count": 3, "userId": 42}

    @pytest.mark.asyncio
    async def test_bytes_result(self, echo_client, caller_headers):
        response = await echo_client.post(f"{DISPATCH}/EchoService/Raw", headers=caller_headers)
        assert response.headers["content-type"] == "application/octet-stream"
        assert response.content == b"\x00\x01\x02"

    @pytest.mark.asyncio
    async def test_sync_method_runs(self, echo_client, caller_headers):
        response = await echo_client.post(
            f"{DISPATCH}/EchoService/Add", json={"a": 2, "b": 40}, headers=caller_headers
        )
        assert response.json() == 42

    @pytest.mark.asyncio
    async def test_stream_result(self, echo_client, caller_headers):
        response = await echo_client.post(f"{DISPATCH}/EchoService/Download", headers=caller_headers)
        assert response.headers["content-type"] == "application/octet-stream"
        assert response.content == b"file-body"

    @pytest.mark.asyncio
    async def test_awaitable_result_is_settled(self, echo_client, caller_headers):
        response = await echo_client.post(f"{DISPATCH}/EchoService/Deferred", headers=caller_headers)
        assert response.json() == {"state": "settled"}

    @pytest.mark.asyncio
    async def test_request_and_logger_injection(self, echo_client, caller_headers):
        response = await echo_client.post(f"{DISPATCH}/EchoService/Inspect", headers=caller_headers)
        assert response.json() == {
            "path": f"{DISPATCH}/EchoService/Inspect",
            "logger": "taskpilot.services.EchoService",
        }

    @pytest.mark.asyncio
    async def test_fault_is_500_with_details(self, echo_client, caller_headers):
        response = await echo_client.post(f"{DISPATCH}/EchoService/Boom", headers=caller_headers)

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "An error occurred while invoking EchoService.Boom"
        assert body["details"] == "boom"

    @pytest.mark.asyncio
    async def test_fault_details_can_be_hidden(self, echo_client, caller_headers, monkeypatch):
        monkeypatch.setattr(settings, "dispatch_expose_fault_details", False)
        response = await echo_client.post(
            f"{DISPATCH}/EchoService/Boom",
            headers={**caller_headers, "X-Request-ID": "req-0001"},
        )

        assert response.status_code == 500
        assert "boom" not in response.json()["details"]
        assert "req-0001" in response.json()["details"]

    @pytest.mark.asyncio
    async def test_chained_permission_error_is_403(self, echo_client, caller_headers):
        response = await echo_client.post(f"{DISPATCH}/EchoService/Wrapped", headers=caller_headers)

        assert response.status_code == 403
        assert response.json()["message"] == "not your record"

    @pytest.mark.asyncio
    async def test_role_check_is_403(self, echo_client, caller_headers):
        response = await echo_client.post(f"{DISPATCH}/EchoService/AdminOnly", headers=caller_headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_crash_while_handling_denial_is_500(self, echo_client, caller_headers):
        response = await echo_client.post(f"{DISPATCH}/EchoService/AdminOrCrash", headers=caller_headers)

        assert response.status_code == 500
        assert response.json()["error"] == "An error occurred while invoking EchoService.AdminOrCrash"

    @pytest.mark.asyncio
    async def test_unencodable_result_is_500(self, echo_client, caller_headers, caplog):
        with caplog.at_level(logging.ERROR, logger="taskpilot.middleware.dispatch"):
            response = await echo_client.post(
                f"{DISPATCH}/EchoService/Unencodable", headers=caller_headers
            )

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "An error occurred while invoking EchoService.Unencodable"
        assert body["details"]
        assert "EchoService.Unencodable" in caplog.text

    @pytest.mark.asyncio
    async def test_dataclass_parameter_is_bound(self, echo_client, caller_headers):
        response = await echo_client.post(
            f"{DISPATCH}/EchoService/Span",
            json={"window": {"start": 3, "end": 10}},
            headers=caller_headers,
        )
        assert response.json() == 7

    @pytest.mark.asyncio
    async def test_invalid_dataclass_parameter_is_400(self, echo_client, caller_headers):
        response = await echo_client.post(
            f"{DISPATCH}/EchoService/Span",
            json={"window": {"start": "soon"}},
            headers=caller_headers,
        )

        assert response.status_code == 400
        details = response.json()["details"]
        assert details["parameter"] == "window"
        assert len(details["messages"]) == 2

    @pytest.mark.asyncio
    async def test_success_commits(self, echo_client, caller_headers, session_factory):
        response = await echo_client.post(
            f"{DISPATCH}/EchoService/AddUser", json={"username": "kept"}, headers=caller_headers
        )
        assert response.status_code == 200
        assert await count(session_factory, User) == 1

    @pytest.mark.asyncio
    async def test_fault_rolls_back(self, echo_client, caller_headers, session_factory):
        response = await echo_client.post(
            f"{DISPATCH}/EchoService/AddUserThenFail",
            json={"username": "ghost"},
            headers=caller_headers,
        )
        assert response.status_code == 500
        assert await count(session_factory, User) == 0

    @pytest.mark.asyncio
    async def test_invalid_json_is_400(self, echo_client, caller_headers):
        response = await echo_client.post(
            f"{DISPATCH}/EchoService/Describe",
            content=b"{not json",
            headers={**caller_headers, "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["details"]["reason"] == "body"

    @pytest.mark.asyncio
    async def test_empty_body_lists_all_missing(self, echo_client, caller_headers):
        response = await echo_client.post(f"{DISPATCH}/EchoService/Describe", headers=caller_headers)

        assert response.status_code == 400
        messages = response.json()["details"]["messages"]
        assert len(messages) == 2

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, echo_client):
        response = await echo_client.post(
            f"{DISPATCH}/EchoService/Boom", headers={"X-Request-ID": "trace-123"}
        )
        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "trace-123"
        assert response.json()["request_id"] == "trace-123"


class TestPassThrough:

    @pytest.mark.asyncio
    async def test_catalog_route(self, echo_client):
        response = await echo_client.get("/api/v1/catalog")

        assert response.status_code == 200
        paths = {m["path"] for m in response.json()}
        assert f"{DISPATCH}/EchoService/Greet" in paths
        greet = next(m for m in response.json() if m["method"] == "Greet")
        assert greet["access"] == "public"
        assert [p["name"] for p in greet["parameters"]] == ["name", "times"]

    @pytest.mark.asyncio
    async def test_one_segment_passes_through(self, echo_client):
        response = await echo_client.post(f"{DISPATCH}/EchoService")
        assert response.status_code == 404
        assert "error" not in response.json()

    @pytest.mark.asyncio
    async def test_three_segments_pass_through(self, echo_client):
        response = await echo_client.post(f"{DISPATCH}/EchoService/Greet/extra")
        assert response.status_code == 404
        assert "error" not in response.json()


class TestFindAccessDenied:

    def test_direct(self):
        error = AccessDeniedError("no")
        assert find_access_denied(error) is error

    def test_through_cause(self):
        try:
            try:
                raise PermissionError("deep")
            except PermissionError as e:
                raise KeyError("outer") from e
        except KeyError as outer:
            assert isinstance(find_access_denied(outer), PermissionError)

    def test_implicit_context_is_not_followed(self):
        try:
            try:
                raise AccessDeniedError("denied")
            except AccessDeniedError:
                raise KeyError("fallback failed")
        except KeyError as outer:
            assert outer.__context__ is not None
            assert find_access_denied(outer) is None

    def test_unrelated(self):
        assert find_access_denied(ValueError("x")) is None
