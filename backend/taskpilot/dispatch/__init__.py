"""
TaskPilot Backend - Dynamic Dispatch Core
==========================================

Routes POST/GET/... {prefix}/{Service}/{Method} to a registered service
method without hand-written controllers.

Pipeline (one request):
    AccessPolicy.evaluate → ServiceRegistry.resolve → ParameterBinder.bind
    → invoke (RequestScope supplies injected parameters) → stash result
    → response serializer renders it.

The HTTP-facing halves live in taskpilot.middleware.dispatch and
taskpilot.middleware.response.
"""

from taskpilot.dispatch.access import AccessPolicy
from taskpilot.dispatch.binder import ParameterBinder, parse_body
from taskpilot.dispatch.registry import ResolvedMethod, ServiceRegistry, expose
from taskpilot.dispatch.scope import INJECTABLE_TYPES, RequestScope
from taskpilot.dispatch.serializer import render_result, render_value
from taskpilot.dispatch.types import (
    AccessLevel,
    CallerIdentity,
    Decision,
    ParameterDescriptor,
    ParameterKind,
    ServiceMethodKey,
)

__all__ = [
    "AccessLevel",
    "AccessPolicy",
    "CallerIdentity",
    "Decision",
    "INJECTABLE_TYPES",
    "ParameterBinder",
    "ParameterDescriptor",
    "ParameterKind",
    "RequestScope",
    "ResolvedMethod",
    "ServiceMethodKey",
    "ServiceRegistry",
    "expose",
    "parse_body",
    "render_result",
    "render_value",
]
