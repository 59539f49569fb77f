"""
TaskPilot Backend - Parameter Binder
=====================================

What:  Maps a parsed JSON request body onto the parameters of an exposed
       service method.
How:   Walks the ParameterDescriptors in declaration order:
         - injected dependencies are skipped (the request scope fills them)
         - keys are matched case-insensitively, ignoring underscores, so
           "taskId", "TaskId" and "task_id" all reach `task_id`
         - a missing key takes the declared default, or fails binding
         - pydantic models, dataclasses and TypedDicts are validated with all
           their messages collected
         - everything else is converted to the annotated type
Who:   Called by DispatchMiddleware after the access gate and resolver.

Failure policy:
    Across parameters, binding stops at the FIRST missing or unconvertible
    parameter. Within one complex parameter every validation message is
    reported. An empty body ({}) reports all missing parameters at once.

The body passed in is never modified.
"""

import copy
import json
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from taskpilot.dispatch.types import ParameterDescriptor, ParameterKind
from taskpilot.exceptions import BindingError


def normalize_key(key: str) -> str:
    return key.replace("_", "").lower()


def missing_message(name: str) -> str:
    return f"Missing required parameter '{name}' in request body."


@lru_cache(maxsize=512)
def adapter_for(annotation: Any) -> TypeAdapter:
    """Cached TypeAdapter per annotation; the registry builds these at freeze time."""
    return TypeAdapter(annotation)


def format_validation_errors(exc: PydanticValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {error['msg']}" if location else error["msg"])
    return messages


def parse_body(raw: bytes) -> Dict[str, Any]:
    """
    Decodes the raw request body into a JSON object.

    An empty (or whitespace-only) body is treated as {}. Invalid JSON and
    JSON values that are not objects raise BindingError.
    """
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise BindingError(
            "Request body is not valid JSON.",
            reason="body",
            details=[str(e)],
        )
    if not isinstance(parsed, dict):
        raise BindingError(
            "Request body must be a JSON object.",
            reason="body",
            details=[f"got {type(parsed).__name__}"],
        )
    return parsed


class ParameterBinder:
    """Stateless; a single instance is shared by every request."""

    def bind(
        self,
        parameters: Iterable[ParameterDescriptor],
        body: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """
        Returns {parameter_name: value} in declaration order for every
        non-injected parameter.

        Raises:
            BindingError: missing, unconvertible or invalid parameter
        """
        body = body or {}
        bindable = [p for p in parameters if p.kind is not ParameterKind.INJECTED_DEPENDENCY]

        if not body:
            missing = [p.name for p in bindable if not p.has_default]
            if missing:
                raise self._missing_error(missing)

        keys = self._index_keys(body)
        arguments: Dict[str, Any] = {}
        for descriptor in bindable:
            body_key = self._find_key(descriptor.name, keys)
            if body_key is None:
                if descriptor.has_default:
                    arguments[descriptor.name] = descriptor.default
                    continue
                raise self._missing_error([descriptor.name])

            raw_value = body[body_key]
            if descriptor.kind is ParameterKind.COMPLEX_OBJECT:
                arguments[descriptor.name] = self._bind_complex(descriptor, raw_value)
            else:
                arguments[descriptor.name] = self._bind_primitive(descriptor, raw_value)
        return arguments

    @staticmethod
    def _index_keys(body: Mapping[str, Any]) -> Dict[str, str]:
        keys: Dict[str, str] = {}
        for key in body:
            # First spelling wins when two keys normalize to the same name
            keys.setdefault(normalize_key(str(key)), key)
        return keys

    @staticmethod
    def _find_key(name: str, keys: Dict[str, str]) -> Optional[str]:
        return keys.get(normalize_key(name))

    @staticmethod
    def _missing_error(names: List[str]) -> BindingError:
        if len(names) == 1:
            message = missing_message(names[0])
        else:
            message = "Missing required parameters in request body: " + ", ".join(
                f"'{n}'" for n in names
            )
        return BindingError(
            message,
            parameter=names[0],
            reason="missing",
            details=[missing_message(n) for n in names],
            context={"missing": list(names)},
        )

    @staticmethod
    def _bind_complex(descriptor: ParameterDescriptor, raw_value: Any) -> Any:
        try:
            return adapter_for(descriptor.annotation).validate_python(raw_value)
        except PydanticValidationError as e:
            raise BindingError(
                f"Validation failed for parameter '{descriptor.name}'",
                parameter=descriptor.name,
                reason="validation",
                details=format_validation_errors(e),
            )

    @staticmethod
    def _bind_primitive(descriptor: ParameterDescriptor, raw_value: Any) -> Any:
        value = copy.deepcopy(raw_value)
        if descriptor.annotation is Any:
            return value
        try:
            return adapter_for(descriptor.annotation).validate_python(value)
        except PydanticValidationError as e:
            raise BindingError(
                f"Invalid value for parameter '{descriptor.name}'",
                parameter=descriptor.name,
                reason="invalid",
                details=format_validation_errors(e),
            )
