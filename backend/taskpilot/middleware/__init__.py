"""
TaskPilot Backend - Middleware Package
=======================================

Middleware Chain (outermost first):
    Request → [CORS] → [Request ID] → [Logging] → [GZip] → [Authentication]
            → [Dispatch] → [Response Serializer] → Router

    1. Request ID: correlation ID for every later log line and error body
    2. Logging: method, path, status, duration, caller
    3. Authentication: cookie / Bearer / query token → request.state.caller
    4. Dispatch: gate, resolve, bind, invoke; stashes the raw result
    5. Response Serializer: renders the stashed result, or passes through
       to FastAPI's own routes when nothing was dispatched

CORS and GZip are Starlette's stock middlewares, added in main.create_app().
"""
