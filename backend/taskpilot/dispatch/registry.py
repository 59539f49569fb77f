"""
TaskPilot Backend - Service Registry & Method Resolver
=======================================================

What:  Maps "Service/Method" URL pairs to live service methods and records
       the access level of every exposed method.
How:   Service instances are registered once at startup. freeze() walks each
       service class, reads the @expose markers, introspects every public
       method's signature into ParameterDescriptors, and publishes the
       results as read-only mappings. Nothing changes after that, so
       concurrent requests read the registry without locking.
Who:   Built by services.build_service_registry(); passed into create_app()
       and from there to the dispatch middleware.

Naming rules:
    - A method decorated with @expose(name="CreateTaskAsync") is reachable
      ONLY under that wire name.
    - Any other public (non-underscore) instance method is reachable under
      its Python name with PROTECTED access.
    - Two methods of one service claiming the same wire name are rejected
      with RegistrationError while the registry is built. Requests never
      have to guess between overloads.
    - Every body parameter must be something pydantic can validate; a
      plain class annotation fails registration rather than a request.
"""

import dataclasses
import inspect
import logging
import types
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    Union,
    get_args,
    get_origin,
    get_type_hints,
    is_typeddict,
)

from pydantic import BaseModel, PydanticSchemaGenerationError

from taskpilot.dispatch.binder import adapter_for
from taskpilot.dispatch.types import (
    AccessLevel,
    ParameterDescriptor,
    ParameterKind,
    ServiceMethodKey,
)
from taskpilot.exceptions import (
    MethodNotFoundError,
    RegistrationError,
    ServiceNotFoundError,
)

logger = logging.getLogger(__name__)

EXPOSE_ATTRIBUTE = "__taskpilot_expose__"


@dataclass(frozen=True)
class ExposeInfo:
    name: Optional[str]
    access: AccessLevel


def expose(
    name: Union[str, Callable, None] = None,
    access: AccessLevel = AccessLevel.PROTECTED,
):
    """
    Marks a service method for dispatch.

    Usage:
        @expose("CreateTaskAsync")
        async def create_task(self, task: TaskCreate, caller: CallerIdentity): ...

        @expose(access=AccessLevel.PUBLIC)
        async def ping(self): ...

        @expose
        async def GetMyProfileAsync(self, caller: CallerIdentity): ...
    """
    if callable(name):
        setattr(name, EXPOSE_ATTRIBUTE, ExposeInfo(None, AccessLevel.PROTECTED))
        return name

    def decorator(func: Callable) -> Callable:
        setattr(func, EXPOSE_ATTRIBUTE, ExposeInfo(name, AccessLevel(access)))
        return func

    return decorator


@dataclass(frozen=True)
class ResolvedMethod:
    """A bound service method ready for binding and invocation."""

    key: ServiceMethodKey
    instance: Any
    function: Callable
    parameters: Tuple[ParameterDescriptor, ...]
    access: AccessLevel

    @property
    def is_coroutine(self) -> bool:
        return inspect.iscoroutinefunction(self.function)


# ══════════════════════════════════════════════════════════════════════════
# Signature introspection
# ══════════════════════════════════════════════════════════════════════════

def unwrap_optional(annotation: Any) -> Any:
    """Optional[X] and X | None collapse to X; other unions are left alone."""
    origin = get_origin(annotation)
    if origin is Union or origin is getattr(types, "UnionType", None):
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def classify(annotation: Any, injectable_types: Iterable[type]) -> ParameterKind:
    target = unwrap_optional(annotation)
    if inspect.isclass(target):
        for injectable in injectable_types:
            if issubclass(target, injectable):
                return ParameterKind.INJECTED_DEPENDENCY
        if issubclass(target, BaseModel) or dataclasses.is_dataclass(target) or is_typeddict(target):
            return ParameterKind.COMPLEX_OBJECT
    return ParameterKind.PRIMITIVE


def check_bindable(func: Callable, name: str, annotation: Any) -> None:
    """
    Builds the binder's TypeAdapter for a body parameter up front.

    Raises:
        RegistrationError: pydantic cannot validate values of this annotation
    """
    if annotation is Any:
        return
    try:
        adapter_for(annotation)
    except (PydanticSchemaGenerationError, TypeError) as e:
        raise RegistrationError(
            f"{func.__qualname__}: parameter '{name}' has an annotation that cannot be "
            f"bound from JSON ({annotation!r})",
            context={"method": func.__qualname__, "parameter": name, "error": str(e)},
        ) from e


def describe_parameters(
    func: Callable, injectable_types: Iterable[type]
) -> Tuple[ParameterDescriptor, ...]:
    """
    Builds the ordered ParameterDescriptors for a bound method.

    Type hints are resolved with get_type_hints so string annotations work;
    if resolution fails the raw annotations are used instead.
    """
    injectable_types = tuple(injectable_types)
    signature = inspect.signature(func)
    try:
        hints = get_type_hints(getattr(func, "__func__", func))
    except Exception:
        hints = {}

    descriptors: List[ParameterDescriptor] = []
    for param in signature.parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            raise RegistrationError(
                f"{func.__qualname__} uses *{param.name}; exposed methods need named parameters",
                context={"method": func.__qualname__, "parameter": param.name},
            )
        annotation = hints.get(param.name, param.annotation)
        if annotation is inspect.Parameter.empty:
            annotation = Any
        has_default = param.default is not inspect.Parameter.empty
        kind = classify(annotation, injectable_types)
        if kind is not ParameterKind.INJECTED_DEPENDENCY:
            check_bindable(func, param.name, annotation)
        descriptors.append(
            ParameterDescriptor(
                name=param.name,
                kind=kind,
                annotation=annotation,
                has_default=has_default,
                default=param.default if has_default else None,
                keyword_only=param.kind is param.KEYWORD_ONLY,
            )
        )
    return tuple(descriptors)


# ══════════════════════════════════════════════════════════════════════════
# Registry
# ══════════════════════════════════════════════════════════════════════════

class ServiceRegistry:
    """
    Immutable-after-freeze lookup from (service, method) to ResolvedMethod.

    Lifecycle:
        registry = ServiceRegistry(injectable_types=[...])
        registry.register(task_service)
        registry.register(user_service, name="UserService")
        registry.freeze()           # introspects everything, locks the registry
        registry.resolve("TaskService", "CreateTaskAsync")
    """

    def __init__(self, injectable_types: Iterable[type] = ()):
        self._injectable_types: Tuple[type, ...] = tuple(injectable_types)
        self._instances: Dict[str, Any] = {}
        self._frozen = False
        self._methods: Mapping[str, Mapping[str, ResolvedMethod]] = types.MappingProxyType({})
        self._access_levels: Mapping[ServiceMethodKey, AccessLevel] = types.MappingProxyType({})
        self._instances_by_type: Mapping[type, Any] = types.MappingProxyType({})

    # ── Build phase ───────────────────────────────────────────────────────

    def register(self, instance: Any, name: Optional[str] = None) -> "ServiceRegistry":
        if self._frozen:
            raise RegistrationError("Cannot register services after the registry is frozen")
        service_name = name or type(instance).__name__
        if service_name in self._instances:
            raise RegistrationError(
                f"Service name '{service_name}' is registered twice",
                context={"service": service_name},
            )
        self._instances[service_name] = instance
        return self

    def freeze(self) -> "ServiceRegistry":
        """Introspects all registered services and locks the registry."""
        if self._frozen:
            return self

        # Registered service classes are injectable into each other's methods
        service_types = tuple(type(instance) for instance in self._instances.values())
        injectables = self._injectable_types + service_types

        methods: Dict[str, Mapping[str, ResolvedMethod]] = {}
        access_levels: Dict[ServiceMethodKey, AccessLevel] = {}
        for service_name, instance in self._instances.items():
            table = self._introspect_service(service_name, instance, injectables)
            methods[service_name] = types.MappingProxyType(table)
            for method_name, resolved in table.items():
                access_levels[ServiceMethodKey(service_name, method_name)] = resolved.access

        self._methods = types.MappingProxyType(methods)
        self._access_levels = types.MappingProxyType(access_levels)
        self._instances_by_type = types.MappingProxyType(
            {type(instance): instance for instance in self._instances.values()}
        )
        self._frozen = True

        logger.info(
            "Service registry frozen: %d services, %d methods (%d public)",
            len(methods),
            len(access_levels),
            sum(1 for level in access_levels.values() if level is AccessLevel.PUBLIC),
        )
        return self

    @staticmethod
    def _introspect_service(
        service_name: str, instance: Any, injectables: Tuple[type, ...]
    ) -> Dict[str, ResolvedMethod]:
        table: Dict[str, ResolvedMethod] = {}
        claimed_by: Dict[str, str] = {}
        cls = type(instance)

        for attr_name in dir(cls):
            if attr_name.startswith("_"):
                continue
            raw = inspect.getattr_static(cls, attr_name)
            # Instance methods only: staticmethod/classmethod/property are skipped
            if not inspect.isfunction(raw):
                continue

            info: Optional[ExposeInfo] = getattr(raw, EXPOSE_ATTRIBUTE, None)
            wire_name = (info.name if info and info.name else attr_name)
            access = info.access if info else AccessLevel.PROTECTED

            if wire_name in claimed_by:
                raise RegistrationError(
                    f"{service_name}.{wire_name} is ambiguous: exposed by both "
                    f"'{claimed_by[wire_name]}' and '{attr_name}'",
                    context={"service": service_name, "method": wire_name},
                )
            claimed_by[wire_name] = attr_name

            bound = getattr(instance, attr_name)
            table[wire_name] = ResolvedMethod(
                key=ServiceMethodKey(service_name, wire_name),
                instance=instance,
                function=bound,
                parameters=describe_parameters(bound, injectables),
                access=access,
            )
        return table

    # ── Read phase ────────────────────────────────────────────────────────

    @property
    def access_levels(self) -> Mapping[ServiceMethodKey, AccessLevel]:
        return self._access_levels

    @property
    def service_names(self) -> List[str]:
        return sorted(self._methods)

    def methods_of(self, service_name: str) -> Mapping[str, ResolvedMethod]:
        if service_name not in self._methods:
            raise ServiceNotFoundError(service_name)
        return self._methods[service_name]

    def instance_of(self, service_type: Type) -> Any:
        """Returns the registered instance for a service class (for injection)."""
        for registered_type, instance in self._instances_by_type.items():
            if issubclass(registered_type, service_type):
                return instance
        raise LookupError(f"No registered service of type {service_type.__name__}")

    def resolve(self, service_name: str, method_name: str) -> ResolvedMethod:
        """
        Exact-name lookup.

        Raises:
            ServiceNotFoundError: no service registered under service_name
            MethodNotFoundError:  the service has no method exposed as method_name
        """
        if not self._frozen:
            raise RegistrationError("Service registry must be frozen before use")
        service_methods = self._methods.get(service_name)
        if service_methods is None:
            raise ServiceNotFoundError(service_name)
        resolved = service_methods.get(method_name)
        if resolved is None:
            raise MethodNotFoundError(service_name, method_name)
        return resolved
