"""
TaskPilot Backend - Service Catalog Route
==========================================

What:  GET /api/v1/catalog lists every dispatchable method with its access
       level and body parameters, so clients can discover the wire names.
How:   A conventional FastAPI route. Its path is outside the dispatch
       prefix, so the dispatcher passes it through untouched.
"""

from typing import List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from taskpilot.dispatch import ParameterKind, ServiceRegistry

router = APIRouter(prefix="/api/v1", tags=["Catalog"])


class ParameterInfo(BaseModel):
    name: str
    kind: str
    required: bool
    type: Optional[str] = None


class MethodInfo(BaseModel):
    service: str
    method: str
    access: str
    path: str
    parameters: List[ParameterInfo]


def _type_name(annotation) -> str:
    return getattr(annotation, "__name__", None) or str(annotation).replace("typing.", "")


@router.get("/catalog", response_model=List[MethodInfo])
async def list_methods(request: Request) -> List[MethodInfo]:
    registry: ServiceRegistry = request.app.state.service_registry
    prefix: str = request.app.state.dispatch_path_prefix

    methods: List[MethodInfo] = []
    for service in registry.service_names:
        for name, resolved in sorted(registry.methods_of(service).items()):
            methods.append(
                MethodInfo(
                    service=service,
                    method=name,
                    access=resolved.access.value,
                    path=f"{prefix}/{service}/{name}",
                    parameters=[
                        ParameterInfo(
                            name=p.name,
                            kind=p.kind.value,
                            required=not p.has_default,
                            type=_type_name(p.annotation),
                        )
                        for p in resolved.parameters
                        if p.kind is not ParameterKind.INJECTED_DEPENDENCY
                    ],
                )
            )
    return methods
