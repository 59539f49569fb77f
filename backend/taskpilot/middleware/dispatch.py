"""
TaskPilot Backend - Dynamic Dispatch Middleware
================================================

What:  Executes {prefix}/{Service}/{Method} requests against the service
       registry, without per-endpoint controllers.
How:   A per-request state machine:

         ParsePath ─(not a dispatch path)──────────────→ pass through
            │
         PolicyGate ─(deny)──→ 401  authentication required
            │
         Resolve ────(unknown)──→ 404  service / method not found
            │
         Bind ───────(error)───→ 400  structured binding error
            │
         Invoke ─────(fault)───→ 403  access denied (explicit `raise ... from` chain)
            │                   500  any other fault
         Stash result on request.state, call_next → ResponseSerializerMiddleware

       The gate runs BEFORE the resolver. An unknown (service, method)
       pair is absent from the access table and therefore PROTECTED, so an
       anonymous request receives the same 401 whether or not the target
       exists.

Every terminal state writes its own JSON response. No exception raised
by a service method escapes this middleware; rendering faults in the
serializer below are answered with the same 500 body (fault_response).
"""

import inspect
import logging
from typing import Any, Callable, Dict, Optional

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from taskpilot.config import settings
from taskpilot.dispatch.access import AccessPolicy
from taskpilot.dispatch.binder import ParameterBinder, parse_body
from taskpilot.dispatch.registry import ResolvedMethod, ServiceRegistry
from taskpilot.dispatch.scope import RequestScope
from taskpilot.dispatch.serializer import unwrap_result
from taskpilot.dispatch.types import CallerIdentity, ServiceMethodKey
from taskpilot.exceptions import AccessDeniedError, BindingError, NotFoundError
from taskpilot.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)

DISPATCH_RESULT_ATTR = "dispatch_result"
DISPATCH_COMPLETED_ATTR = "dispatch_completed"
DISPATCH_KEY_ATTR = "dispatch_key"


def find_access_denied(exc: BaseException) -> Optional[BaseException]:
    """
    Returns the first AccessDeniedError/PermissionError along the __cause__ chain.

    Only explicit chaining (`raise Wrapper(...) from denied`) counts. An error
    raised while merely handling an access-denied fault is a different fault.
    """
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, (AccessDeniedError, PermissionError)):
            return current
        seen.add(id(current))
        current = current.__cause__
    return None


def json_error(status_code: int, content: Dict[str, Any], rid: str) -> JSONResponse:
    content["request_id"] = rid
    return JSONResponse(status_code=status_code, content=content)


def fault_response(key: ServiceMethodKey, exc: BaseException, rid: str) -> Response:
    """403 for a chained access-denied fault, otherwise a logged 500 {error, details}."""
    denied = find_access_denied(exc)
    if denied is not None:
        message = getattr(denied, "message", None) or str(denied) or "Access denied"
        logger.warning("[%s] %s access denied: %s", rid, key, message)
        return json_error(403, {"error": "access denied", "message": message}, rid)

    logger.error(
        "[%s] Unhandled fault in %s: %s",
        rid,
        key,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    if settings.dispatch_expose_fault_details:
        details = str(exc) or type(exc).__name__
    else:
        details = f"Internal error. Quote request id '{rid}' when reporting it."
    return json_error(500, {
        "error": f"An error occurred while invoking {key.service}.{key.method}",
        "details": details,
    }, rid)


class DispatchMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        registry: ServiceRegistry,
        session_factory: Optional[Callable] = None,
        path_prefix: Optional[str] = None,
        binder: Optional[ParameterBinder] = None,
    ):
        super().__init__(app)
        self.registry = registry.freeze()
        self.session_factory = session_factory
        self.path_prefix = (path_prefix or settings.dispatch_path_prefix).rstrip("/")
        self.binder = binder or ParameterBinder()
        self.policy = AccessPolicy(self.registry.access_levels)

    def match_path(self, path: str) -> Optional[ServiceMethodKey]:
        """Returns the key for '{prefix}/{Service}/{Method}', None for anything else."""
        if not path.startswith(self.path_prefix + "/"):
            return None
        segments = [s for s in path[len(self.path_prefix):].split("/") if s]
        if len(segments) != 2:
            return None
        return ServiceMethodKey(segments[0], segments[1])

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        key = self.match_path(request.url.path)
        if key is None:
            return await call_next(request)

        rid = request_id_var.get("")
        caller: CallerIdentity = getattr(request.state, "caller", None) or CallerIdentity.anonymous()

        # ── PolicyGate ────────────────────────────────────────────────────
        decision = self.policy.evaluate(key, caller)
        if not decision.allowed:
            logger.info("[%s] %s denied: %s", rid, key, decision.reason)
            return json_error(401, {
                "error": decision.reason,
                "message": "Sign in and retry with a valid access token.",
            }, rid)

        # ── Resolve ───────────────────────────────────────────────────────
        try:
            resolved = self.registry.resolve(key.service, key.method)
        except NotFoundError as e:
            logger.warning("[%s] %s not found (%s)", rid, key, e.reason)
            return self._not_found(key, e, rid)

        # ── Bind ──────────────────────────────────────────────────────────
        try:
            body = parse_body(await request.body())
            bound = self.binder.bind(resolved.parameters, body)
        except BindingError as e:
            logger.warning("[%s] %s binding failed: %s", rid, key, e.message)
            return json_error(400, {
                "error": e.message,
                "details": {
                    "parameter": e.parameter,
                    "reason": e.reason,
                    "messages": e.details,
                },
            }, rid)
        except Exception as exc:
            return fault_response(key, exc, rid)

        # ── Invoke ────────────────────────────────────────────────────────
        scope = RequestScope(request, self.registry, self.session_factory)
        try:
            result = await self._invoke(resolved, bound, scope)
            await scope.commit()
        except Exception as exc:
            await self._safe_rollback(scope, key, rid)
            return fault_response(key, exc, rid)
        finally:
            await scope.close()

        # ── Stash & continue ──────────────────────────────────────────────
        setattr(request.state, DISPATCH_KEY_ATTR, key)
        setattr(request.state, DISPATCH_RESULT_ATTR, result)
        setattr(request.state, DISPATCH_COMPLETED_ATTR, True)
        logger.debug("[%s] %s completed", rid, key)
        return await call_next(request)

    @staticmethod
    async def _invoke(
        resolved: ResolvedMethod, bound: Dict[str, Any], scope: RequestScope
    ) -> Any:
        args, kwargs = scope.build_call(resolved, bound)
        if resolved.is_coroutine:
            result = await resolved.function(*args, **kwargs)
        else:
            result = await run_in_threadpool(resolved.function, *args, **kwargs)
        # Results may be awaitables themselves; settle them while the session is open
        if inspect.isawaitable(result):
            result = await unwrap_result(result)
        return result

    @staticmethod
    async def _safe_rollback(scope: RequestScope, key: ServiceMethodKey, rid: str) -> None:
        try:
            await scope.rollback()
        except Exception:
            logger.error("[%s] Rollback after %s fault failed", rid, key, exc_info=True)

    def _not_found(self, key: ServiceMethodKey, exc: NotFoundError, rid: str) -> Response:
        if not settings.dispatch_expose_not_found_reason:
            return json_error(404, {
                "error": "not found",
                "message": "The requested operation does not exist.",
            }, rid)
        return json_error(404, {
            "error": "not found",
            "message": exc.message,
            "details": {
                "reason": exc.reason,
                "service": key.service,
                "method": key.method,
            },
        }, rid)
