"""Response Reader - Drains a response once and converts its body.

Every helper reads the full body, releases the response in a finally block
(also on decode errors and cancellation), and marks the response as consumed.
Reading the same response again raises ResponseConsumedError instead of
returning an empty or partial body.

JSON decoding uses pydantic: with a model type the body is validated into
that type, without one it becomes plain Python data (dict, list, str, ...).
"""

from __future__ import annotations

import io
import weakref
from functools import lru_cache
from threading import Lock
from typing import Any, TypeVar, overload

import httpx
from pydantic import TypeAdapter, ValidationError

from fluent_request.errors import InvalidPayloadError, ResponseConsumedError

T = TypeVar("T")

_consumed: weakref.WeakSet[httpx.Response] = weakref.WeakSet()
_consumed_lock = Lock()


@lru_cache(maxsize=256)
def _adapter_for(model: Any) -> TypeAdapter[Any]:
    return TypeAdapter(model)


def _claim(response: httpx.Response) -> None:
    """Mark response as consumed, or raise if a reader already took it."""
    with _consumed_lock:
        if response in _consumed:
            raise ResponseConsumedError(
                f"Response ({response.status_code}) was already read and released"
            )
        _consumed.add(response)


def is_consumed(response: httpx.Response) -> bool:
    """Whether a reader helper has already drained and released response."""
    with _consumed_lock:
        return response in _consumed


def _decode_json(body: bytes, model: Any) -> Any:
    adapter = _adapter_for(Any if model is None else model)
    try:
        return adapter.validate_json(body)
    except ValidationError as e:
        target = "JSON" if model is None else getattr(model, "__name__", repr(model))
        raise InvalidPayloadError(f"Response body is not valid {target}: {e}") from e


# -----------------------------------------------------------------------------
# Blocking readers
# -----------------------------------------------------------------------------


def _drain(response: httpx.Response) -> bytes:
    _claim(response)
    try:
        return response.read()
    finally:
        response.close()


def read_string(response: httpx.Response) -> str:
    """Read the body as text, decoded with the response's charset."""
    _drain(response)
    return response.text


@overload
def read_json(response: httpx.Response) -> Any: ...


@overload
def read_json(response: httpx.Response, model: type[T]) -> T: ...


def read_json(response: httpx.Response, model: Any = None) -> Any:
    """Read the body as JSON, validated into model when one is given.

    Raises:
        InvalidPayloadError: If the body is not JSON or does not fit model.
        ResponseConsumedError: If the response was already read.
    """
    return _decode_json(_drain(response), model)


def read_stream(response: httpx.Response) -> io.BytesIO:
    """Copy the whole body into an in-memory stream positioned at the start."""
    _claim(response)
    buffer = io.BytesIO()
    try:
        for chunk in response.iter_bytes():
            buffer.write(chunk)
    finally:
        response.close()
    buffer.seek(0)
    return buffer


# -----------------------------------------------------------------------------
# Async readers
# -----------------------------------------------------------------------------


async def _adrain(response: httpx.Response) -> bytes:
    _claim(response)
    try:
        return await response.aread()
    finally:
        await response.aclose()


async def read_string_async(response: httpx.Response) -> str:
    """Async counterpart of read_string."""
    await _adrain(response)
    return response.text


@overload
async def read_json_async(response: httpx.Response) -> Any: ...


@overload
async def read_json_async(response: httpx.Response, model: type[T]) -> T: ...


async def read_json_async(response: httpx.Response, model: Any = None) -> Any:
    """Async counterpart of read_json."""
    return _decode_json(await _adrain(response), model)


async def read_stream_async(response: httpx.Response) -> io.BytesIO:
    """Async counterpart of read_stream."""
    _claim(response)
    buffer = io.BytesIO()
    try:
        async for chunk in response.aiter_bytes():
            buffer.write(chunk)
    finally:
        await response.aclose()
    buffer.seek(0)
    return buffer
