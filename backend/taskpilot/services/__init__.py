"""
TaskPilot Backend - Services Layer
===================================

What:  Business services reachable through the dynamic dispatcher.

Service Inventory:
    - TaskService:      task CRUD, search, filters, statistics
    - UserService:      registration, login, user administration
    - AiCommandService: natural-language commands executed via TaskService
    - LLMService (abstract) / GeminiService: text completion with retries
      and a circuit breaker

build_service_registry() is the single place where services are made
visible to HTTP clients. Anything not registered here cannot be called.
"""

from taskpilot.dispatch import INJECTABLE_TYPES, ServiceRegistry


def build_service_registry() -> ServiceRegistry:
    """Registers the production service singletons and freezes the registry."""
    from taskpilot.services.ai_command_service import ai_command_service
    from taskpilot.services.task_service import task_service
    from taskpilot.services.user_service import user_service

    registry = ServiceRegistry(injectable_types=INJECTABLE_TYPES)
    registry.register(task_service)
    registry.register(user_service)
    registry.register(ai_command_service)
    return registry.freeze()
