"""
TaskPilot Backend - Response Serializer
========================================

What:  Turns the raw value returned by a dispatched method into an HTTP
       response, choosing the wire format from the value's runtime shape.
How:   Awaitables are awaited first, then the first matching rule wins:

         None                         → 204 No Content
         str                          → 200 text/plain
         bytes / bytearray / memoryview → 200 application/octet-stream
         file-like, (async) iterator  → 200 application/octet-stream, streamed
         anything else                → 200 application/json (jsonable_encoder)

Exposed methods have no declared response type, so the value decides.
"""

import inspect
import types
from typing import Any, Iterator

from fastapi.encoders import jsonable_encoder
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

OCTET_STREAM = "application/octet-stream"
STREAM_CHUNK_SIZE = 64 * 1024


async def unwrap_result(value: Any) -> Any:
    """Awaits until a concrete value remains; a coroutine returning None unwraps to None."""
    while inspect.isawaitable(value):
        value = await value
    return value


def is_stream(value: Any) -> bool:
    if isinstance(value, (str, bytes, bytearray, memoryview, dict, list, tuple, set)):
        return False
    if callable(getattr(value, "read", None)):
        return True
    if isinstance(value, (types.GeneratorType, types.AsyncGeneratorType)):
        return True
    return hasattr(value, "__anext__") or (
        hasattr(value, "__next__") and hasattr(value, "__iter__")
    )


def _read_chunks(fileobj: Any) -> Iterator[Any]:
    try:
        while True:
            chunk = fileobj.read(STREAM_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        close = getattr(fileobj, "close", None)
        if callable(close):
            close()


def _stream_body(value: Any) -> Any:
    if callable(getattr(value, "read", None)):
        return _read_chunks(value)
    return value


def render_value(value: Any) -> Response:
    """Applies the value-shape rules to an already unwrapped value."""
    if value is None:
        return Response(status_code=204)
    if isinstance(value, str):
        return PlainTextResponse(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return Response(content=bytes(value), media_type=OCTET_STREAM)
    if is_stream(value):
        return StreamingResponse(_stream_body(value), media_type=OCTET_STREAM)
    return JSONResponse(content=jsonable_encoder(value))


async def render_result(value: Any) -> Response:
    return render_value(await unwrap_result(value))
