"""
TaskPilot Backend
=================

Task-management API whose operations are invoked through one generic
dispatch pipeline instead of per-endpoint controllers.

    ┌─────────────────────────────────────┐
    │   Middleware (auth, dispatch,       │  ← HTTP concerns only
    │   response serialization)           │
    ├─────────────────────────────────────┤
    │   dispatch/ (registry, access,      │  ← generic invocation core
    │   binder, scope, serializer)        │
    ├─────────────────────────────────────┤
    │   Services (business rules)         │  ← TaskService, UserService, ...
    ├─────────────────────────────────────┤
    │   Models & Schemas                  │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │   Database (async sessions)         │
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
