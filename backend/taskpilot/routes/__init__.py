"""
TaskPilot Backend - Conventional Routes
========================================

Almost every operation is reached through the dynamic dispatcher
(taskpilot.middleware.dispatch). Routes here are the few plain FastAPI
endpoints that live outside the dispatch prefix:

    - catalog.py:  GET /api/v1/catalog   (list dispatchable methods)
"""
