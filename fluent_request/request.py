"""Request - Fluent builder and executor for outbound HTTP requests.

A Request accumulates transforms through chained calls, then a terminal verb
(get/post/put/patch/delete, or their *_async counterparts) resolves a client,
builds the wire request through the TransformPipeline and sends it.

The response comes back with its body undrained. Read it with the helpers in
fluent_request.response_reader, which drain the body and release the
connection exactly once.

See DESIGN.md "Execution" for the full algorithm.
"""

from __future__ import annotations

import inspect
import io
import logging
from collections.abc import Iterable
from typing import Any, Callable

import httpx

from fluent_request.client_resolver import (
    AnyClient,
    ClientFactory,
    ClientResolver,
    default_resolver,
)
from fluent_request.errors import InvalidArgumentError
from fluent_request.key_values import KeyValueExtractor, Pair, default_extractor
from fluent_request.pipeline import TransformPipeline
from fluent_request.transforms import (
    BasicAuthTransform,
    BearerAuthTransform,
    CookieTransform,
    FileSource,
    FormFieldTransform,
    FormFileTransform,
    HeaderTransform,
    JsonBodyTransform,
    QueryTransform,
    SegmentsTransform,
    Transform,
    random_part_name,
)

logger = logging.getLogger(__name__)

ResponseCallback = Callable[[httpx.Response], Any]


class Request:
    """Fluent HTTP request builder.

    Usage:
        response = (
            Request("https://api.example.com")
            .with_segments("users", "42")
            .with_query({"expand": "roles"})
            .with_bearer_token(token)
            .on_error(log_failure)
            .get()
        )
        user = read_json(response, User)

    Every configuration call validates its arguments and raises
    InvalidArgumentError without registering anything if they are missing.
    Repeated header, query and cookie calls accumulate.

    A Request is meant to be sent once. Sending it again re-applies every
    transform to a fresh draft, but file sources that were already read are
    not rewound.
    """

    def __init__(
        self,
        base_url: str = "",
        client: AnyClient | None = None,
        *,
        resolver: ClientResolver | None = None,
        extractor: KeyValueExtractor | None = None,
    ) -> None:
        """Initialize the builder.

        Args:
            base_url: Base URL of the request. When empty, the resolved
                client's base_url is used instead.
            client: Client used for this request only. Equivalent to
                inject_client(lambda base_url: client).
            resolver: Resolver for the default client (process-wide one if None).
            extractor: Record flattener (process-wide one if None).
        """
        if base_url is None:
            raise InvalidArgumentError("base_url must not be None; use '' for none")
        if client is not None and not isinstance(client, (httpx.Client, httpx.AsyncClient)):
            raise InvalidArgumentError(
                f"client must be an httpx.Client or httpx.AsyncClient, got {type(client).__name__}"
            )
        self._base_url = base_url
        self._transforms: list[Transform] = []
        self._on_success: ResponseCallback | None = None
        self._on_error: ResponseCallback | None = None
        self._client_factory: ClientFactory | None = (
            (lambda base_url: client) if client is not None else None
        )
        self._resolver = resolver if resolver is not None else default_resolver
        self._extractor = extractor if extractor is not None else default_extractor

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def transforms(self) -> tuple[Transform, ...]:
        """Registered transforms in the order they will be applied."""
        return tuple(self._transforms)

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def with_segments(self, *segments: str) -> Request:
        """Append path segments: with_segments("a", "b") adds /a/b to the URL."""
        if not segments:
            raise InvalidArgumentError("with_segments requires at least one segment")
        for segment in segments:
            if not isinstance(segment, str):
                raise InvalidArgumentError(
                    f"Path segments must be strings, got {type(segment).__name__}"
                )
            if not segment.strip("/"):
                raise InvalidArgumentError("Path segments must not be empty")
        return self._add(SegmentsTransform(tuple(segments)))

    def with_query(self, query: Any) -> Request:
        """Append query parameters from a record: {"a": 1} adds ?a=1."""
        return self._add(QueryTransform(self._pairs(query, "query")))

    def with_header(self, header: Any) -> Request:
        """Add headers from a record. Underscores in names become dashes.

        Names and values must be ASCII without CR or LF. Authorization
        replaces any earlier Authorization header.
        """
        return self._add(HeaderTransform(self._pairs(header, "header")))

    def with_cookies(self, cookies: Any) -> Request:
        """Add cookies from a record, sent as one Cookie header."""
        return self._add(CookieTransform(self._pairs(cookies, "cookies")))

    def with_basic_auth(self, username: str, password: str) -> Request:
        """Set HTTP Basic authorization. The last auth call wins."""
        if not username:
            raise InvalidArgumentError("username must not be empty")
        if password is None:
            raise InvalidArgumentError("password must not be None")
        return self._add(BasicAuthTransform(username, password))

    def with_bearer_token(self, token: str) -> Request:
        """Set a bearer token. The token is not encoded. The last auth call wins."""
        if not token:
            raise InvalidArgumentError("token must not be empty")
        return self._add(BearerAuthTransform(token))

    def with_form_data(self, form_data: Any) -> Request:
        """Add text fields to a multipart/form-data body."""
        return self._add(FormFieldTransform(self._pairs(form_data, "form_data")))

    def add_form_file(
        self,
        stream: FileSource,
        field_name: str | None = None,
        file_name: str | None = None,
    ) -> Request:
        """Upload bytes or a binary file object, like an HTML file input.

        Args:
            stream: Content to upload.
            field_name: Form field name. Defaults to the file name.
            file_name: File name sent with the part. Defaults to a random name.
        """
        _check_file_source(stream)
        name = file_name or random_part_name()
        return self._add(FormFileTransform(stream, field_name or name, name))

    def add_form_files(self, streams: Iterable[FileSource]) -> Request:
        """Upload several files as fields file0, file1, ... with random file names."""
        if streams is None:
            raise InvalidArgumentError("streams must not be None")
        sources = list(streams)
        for source in sources:
            _check_file_source(source)
        for index, source in enumerate(sources):
            self._add(FormFileTransform(source, f"file{index}", random_part_name()))
        return self

    def with_json_body(self, body: Any) -> Request:
        """Send a record as the JSON body, replacing any form data or files.

        The record is serialized now, so an unserializable record raises
        InvalidArgumentError here.
        """
        if body is None:
            raise InvalidArgumentError("body must not be None")
        return self._add(JsonBodyTransform.from_record(body))

    def on_success(self, callback: ResponseCallback) -> Request:
        """Call callback with every 2xx response. Replaces a previous callback."""
        if not callable(callback):
            raise InvalidArgumentError("on_success callback must be callable")
        self._on_success = callback
        return self

    def on_error(self, callback: ResponseCallback) -> Request:
        """Call callback with every non-2xx response. Replaces a previous callback.

        It is not called when sending itself fails (connection errors,
        timeouts); those exceptions propagate from the verb.
        """
        if not callable(callback):
            raise InvalidArgumentError("on_error callback must be callable")
        self._on_error = callback
        return self

    def inject_client(self, factory: ClientFactory) -> Request:
        """Use factory instead of the process-wide default to get this request's client.

        The factory is called with this builder's base URL, or None when it has none.
        """
        if not callable(factory):
            raise InvalidArgumentError("Client factory must be callable")
        self._client_factory = factory
        return self

    def build(self, method: str) -> httpx.Request:
        """Build the wire request against this builder's own base URL without sending it."""
        return TransformPipeline(self._transforms).build(self._base_url, method)

    # -------------------------------------------------------------------------
    # Terminal verbs
    # -------------------------------------------------------------------------

    def get(self) -> httpx.Response:
        return self._execute("GET")

    def post(self) -> httpx.Response:
        return self._execute("POST")

    def put(self) -> httpx.Response:
        return self._execute("PUT")

    def patch(self) -> httpx.Response:
        return self._execute("PATCH")

    def delete(self) -> httpx.Response:
        return self._execute("DELETE")

    async def get_async(self) -> httpx.Response:
        return await self._execute_async("GET")

    async def post_async(self) -> httpx.Response:
        return await self._execute_async("POST")

    async def put_async(self) -> httpx.Response:
        return await self._execute_async("PUT")

    async def patch_async(self) -> httpx.Response:
        return await self._execute_async("PATCH")

    async def delete_async(self) -> httpx.Response:
        return await self._execute_async("DELETE")

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _execute(self, method: str) -> httpx.Response:
        """Resolve, build, send, dispatch callbacks, return the undrained response.

        Raises:
            ClientUnresolvedError: If no client is injected or configured.
            InvalidConfigurationError: If the factory yields no httpx.Client.
            UnresolvedUrlError: If no absolute URL can be built.
            httpx.TransportError: If sending fails. Not wrapped, not retried.
        """
        client = self._resolver.resolve(self._client_factory, self._base_url or None)
        request = self._build_for(client, method)

        logger.debug("Request: %s %s", request.method, request.url)
        response = client.send(request, stream=True)
        logger.debug("Response: %s %s %s", response.status_code, request.method, request.url)

        try:
            callback = self._callback_for(response)
            if callback is not None:
                callback(response)
        except BaseException:
            # The caller never receives the response, so release it here.
            response.close()
            raise
        return response

    async def _execute_async(self, method: str) -> httpx.Response:
        """Async counterpart of _execute. Callbacks may be coroutine functions."""
        client = self._resolver.resolve_async(self._client_factory, self._base_url or None)
        request = self._build_for(client, method)

        logger.debug("Request: %s %s", request.method, request.url)
        response = await client.send(request, stream=True)
        logger.debug("Response: %s %s %s", response.status_code, request.method, request.url)

        try:
            callback = self._callback_for(response)
            if callback is not None:
                result = callback(response)
                if inspect.isawaitable(result):
                    await result
        except BaseException:
            await response.aclose()
            raise
        return response

    def _build_for(self, client: AnyClient, method: str) -> httpx.Request:
        # Fall back to the client's base URL when the builder has none.
        base_url = self._base_url or str(client.base_url)
        return TransformPipeline(self._transforms).build(base_url, method, client)

    def _callback_for(self, response: httpx.Response) -> ResponseCallback | None:
        return self._on_success if response.is_success else self._on_error

    def _add(self, transform: Transform) -> Request:
        self._transforms.append(transform)
        return self

    def _pairs(self, record: Any, argument: str) -> tuple[Pair, ...]:
        if record is None:
            raise InvalidArgumentError(f"{argument} must not be None")
        pairs = self._extractor.extract(record)
        if not pairs:
            raise InvalidArgumentError(f"{argument} must contain at least one field")
        return pairs


def _check_file_source(stream: Any) -> None:
    if stream is None:
        raise InvalidArgumentError("stream must not be None")
    if isinstance(stream, io.TextIOBase):
        raise InvalidArgumentError("File streams must be opened in binary mode")
    if not isinstance(stream, (bytes, bytearray)) and not hasattr(stream, "read"):
        raise InvalidArgumentError(
            f"stream must be bytes or a binary file object, got {type(stream).__name__}"
        )
