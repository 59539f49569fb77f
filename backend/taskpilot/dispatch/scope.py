"""
TaskPilot Backend - Request Scope
==================================

What:  Supplies injected-dependency parameters for one dispatched call and
       owns the unit of work around it.
How:   Parameters typed as CallerIdentity, AsyncSession, logging.Logger,
       Request or a registered service class are filled from here; every
       other parameter comes from the binder. The AsyncSession is opened
       lazily, so calls that never touch the database never check out a
       connection, and is committed or rolled back by the dispatcher.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from taskpilot.dispatch.registry import ResolvedMethod, ServiceRegistry, unwrap_optional
from taskpilot.dispatch.types import CallerIdentity, ParameterDescriptor, ParameterKind

logger = logging.getLogger(__name__)

INJECTABLE_TYPES: Tuple[type, ...] = (CallerIdentity, AsyncSession, logging.Logger, Request)


class RequestScope:
    def __init__(
        self,
        request: Request,
        registry: ServiceRegistry,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        self.request = request
        self.registry = registry
        self._session_factory = session_factory
        self._session: Optional[AsyncSession] = None

    @property
    def caller(self) -> CallerIdentity:
        caller = getattr(self.request.state, "caller", None)
        return caller if caller is not None else CallerIdentity.anonymous()

    def _get_session(self) -> AsyncSession:
        if self._session is None:
            if self._session_factory is None:
                raise RuntimeError("No database session factory configured for dispatch")
            self._session = self._session_factory()
        return self._session

    def provide(self, descriptor: ParameterDescriptor, resolved: ResolvedMethod) -> Any:
        target = unwrap_optional(descriptor.annotation)
        if issubclass(target, CallerIdentity):
            return self.caller
        if issubclass(target, AsyncSession):
            return self._get_session()
        if issubclass(target, logging.Logger):
            return logging.getLogger(f"taskpilot.services.{resolved.key.service}")
        if issubclass(target, Request):
            return self.request
        return self.registry.instance_of(target)

    def build_call(
        self, resolved: ResolvedMethod, bound: Dict[str, Any]
    ) -> Tuple[List[Any], Dict[str, Any]]:
        """Merges bound and injected values into (args, kwargs) in declaration order."""
        args: List[Any] = []
        kwargs: Dict[str, Any] = {}
        for descriptor in resolved.parameters:
            if descriptor.kind is ParameterKind.INJECTED_DEPENDENCY:
                value = self.provide(descriptor, resolved)
            else:
                value = bound[descriptor.name]
            if descriptor.keyword_only:
                kwargs[descriptor.name] = value
            else:
                args.append(value)
        return args, kwargs

    # ── Unit of work ──────────────────────────────────────────────────────

    async def commit(self) -> None:
        if self._session is not None:
            await self._session.commit()

    async def rollback(self) -> None:
        if self._session is not None:
            await self._session.rollback()

    async def close(self) -> None:
        if self._session is not None:
            session, self._session = self._session, None
            await session.close()
