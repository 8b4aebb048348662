"""Transforms - Immutable mutation steps applied to a draft request.

A Request builder never edits an outgoing request directly. Each fluent call
records a Transform capturing everything it needs, and at execution time the
pipeline applies the transforms in registration order to a fresh
DraftRequest.

Body rules (see DESIGN.md "Body Kinds"):
    - A JSON body replaces whatever body was staged before it.
    - A form field or file starts a multipart body, discarding a staged JSON
      body, or augments a multipart body that is already staged.
"""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Any, Protocol, Union, runtime_checkable
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

from pydantic import TypeAdapter
from pydantic_core import PydanticSerializationError

from fluent_request.errors import InvalidArgumentError
from fluent_request.key_values import Pair

JSON_CONTENT_TYPE = "application/json"

# Characters allowed unescaped in a path segment besides unreserved ones.
_SEGMENT_SAFE = "/:@!$&'()*+,;="

# RFC 6265 cookie-octets besides alphanumerics and "_.-~". Everything else
# (whitespace, DQUOTE, comma, semicolon, backslash, %) is percent-encoded.
_COOKIE_SAFE = "!#$&'()*+/:<=>?@[]^`{|}"

_JSON_CODEC: TypeAdapter[Any] = TypeAdapter(Any)

FileSource = Union[bytes, IO[bytes]]


def random_part_name() -> str:
    """Generate a unique name for an unnamed multipart file part."""
    return uuid.uuid4().hex[:12]


def check_header_text(text: str, what: str = "Header value") -> None:
    """Reject text that cannot go on a header line as given.

    CR or LF would terminate the header line. HTTP header values must be
    ASCII (RFC 7230) and httpx refuses anything else.

    Raises:
        InvalidArgumentError: If text contains CR, LF or non-ASCII characters.
    """
    if "\r" in text or "\n" in text:
        raise InvalidArgumentError(f"{what} {text!r} must not contain CR or LF")
    if not text.isascii():
        raise InvalidArgumentError(f"{what} {text!r} must be ASCII")


def encode_json(record: Any) -> bytes:
    """Serialize record to compact JSON: {"x":1}.

    Dicts, lists, dataclasses and pydantic models are all handled by
    pydantic's JSON encoder.

    Raises:
        InvalidArgumentError: If record holds values JSON cannot represent.
    """
    try:
        return _JSON_CODEC.dump_json(record)
    except PydanticSerializationError as e:
        raise InvalidArgumentError(f"JSON body is not serializable: {e}") from e


class BodyKind(str, Enum):
    """Which body, if any, a draft request carries."""

    NONE = "none"
    JSON = "json"
    MULTIPART = "multipart"


@dataclass
class MultipartPart:
    """One part of a multipart/form-data body.

    Text fields have no file_name; file uploads always have one.
    """

    name: str
    content: str | FileSource
    file_name: str | None = None


@dataclass
class DraftRequest:
    """Mutable staging structure for one outgoing call.

    The url starts as the base URL (empty when unresolved) and accumulates
    path segments and query pairs. Headers keep insertion order and allow
    repeated names.
    """

    method: str
    url: str = ""
    headers: list[Pair] = field(default_factory=list)
    body_kind: BodyKind = BodyKind.NONE
    json_content: bytes | None = None
    content_type: str | None = None
    parts: list[MultipartPart] = field(default_factory=list)
    cookie: str | None = None

    def add_header(self, name: str, value: str) -> None:
        self.headers.append((name, value))

    def set_header(self, name: str, value: str) -> None:
        """Replace every header called name (case-insensitive) with one value."""
        lowered = name.lower()
        self.headers = [(k, v) for k, v in self.headers if k.lower() != lowered]
        self.add_header(name, value)

    def get_headers(self, name: str) -> list[str]:
        lowered = name.lower()
        return [v for k, v in self.headers if k.lower() == lowered]

    def add_cookie(self, cookie: str) -> None:
        self.cookie = f"{self.cookie};{cookie}" if self.cookie else cookie

    def set_json_body(self, content: bytes) -> None:
        self.body_kind = BodyKind.JSON
        self.json_content = content
        self.content_type = JSON_CONTENT_TYPE
        self.parts = []

    def add_part(self, part: MultipartPart) -> None:
        if self.body_kind is not BodyKind.MULTIPART:
            self.body_kind = BodyKind.MULTIPART
            self.json_content = None
            self.content_type = None
            self.parts = []
        self.parts.append(part)


@runtime_checkable
class Transform(Protocol):
    """A single mutation of a DraftRequest."""

    def apply(self, draft: DraftRequest) -> None:
        """Mutate draft in place."""
        ...


@dataclass(frozen=True)
class SegmentsTransform:
    """Appends path segments: ("a", "b") turns http://x.test into http://x.test/a/b.

    Slashes around each segment are trimmed so the result has exactly one
    slash at every boundary. An existing query string or fragment is kept.
    """

    segments: tuple[str, ...]

    def apply(self, draft: DraftRequest) -> None:
        encoded = [
            quote(segment.strip("/"), safe=_SEGMENT_SAFE)
            for segment in self.segments
            if segment.strip("/")
        ]
        if not encoded:
            return
        scheme, netloc, path, query, fragment = urlsplit(draft.url)
        path = f"{path.rstrip('/')}/{'/'.join(encoded)}"
        draft.url = urlunsplit((scheme, netloc, path, query, fragment))


@dataclass(frozen=True)
class QueryTransform:
    """Appends form-urlencoded query pairs, joining with '&' onto any existing query."""

    pairs: tuple[Pair, ...]

    def apply(self, draft: DraftRequest) -> None:
        if not self.pairs:
            return
        scheme, netloc, path, query, fragment = urlsplit(draft.url)
        encoded = urlencode(self.pairs)
        query = f"{query}&{encoded}" if query else encoded
        draft.url = urlunsplit((scheme, netloc, path, query, fragment))


@dataclass(frozen=True)
class HeaderTransform:
    """Adds headers. Underscores in names become dashes: content_type -> content-type.

    Authorization replaces any earlier Authorization header, the same way
    the auth transforms do. Other names accumulate.
    """

    pairs: tuple[Pair, ...]

    def __post_init__(self) -> None:
        for name, value in self.pairs:
            check_header_text(name, "Header name")
            check_header_text(value)

    def apply(self, draft: DraftRequest) -> None:
        for name, value in self.pairs:
            name = name.replace("_", "-")
            if name.lower() == "authorization":
                draft.set_header(name, value)
            else:
                draft.add_header(name, value)


@dataclass(frozen=True)
class BasicAuthTransform:
    """Sets Authorization: Basic base64(username:password)."""

    username: str
    password: str = field(repr=False)

    def apply(self, draft: DraftRequest) -> None:
        credentials = f"{self.username}:{self.password}".encode("utf-8")
        token = base64.b64encode(credentials).decode("ascii")
        draft.set_header("Authorization", f"Basic {token}")


@dataclass(frozen=True)
class BearerAuthTransform:
    """Sets Authorization: Bearer <token>. The token is sent as given."""

    token: str = field(repr=False)

    def __post_init__(self) -> None:
        check_header_text(self.token, "Bearer token")

    def apply(self, draft: DraftRequest) -> None:
        draft.set_header("Authorization", f"Bearer {self.token}")


@dataclass(frozen=True)
class CookieTransform:
    """Appends name=value cookies joined by ';' with no trailing separator."""

    pairs: tuple[Pair, ...]

    def __post_init__(self) -> None:
        for name, _ in self.pairs:
            check_header_text(name, "Cookie name")

    def apply(self, draft: DraftRequest) -> None:
        if not self.pairs:
            return
        draft.add_cookie(
            ";".join(f"{name}={quote(value, safe=_COOKIE_SAFE)}" for name, value in self.pairs)
        )


@dataclass(frozen=True)
class FormFieldTransform:
    """Adds text fields to a multipart body."""

    pairs: tuple[Pair, ...]

    def apply(self, draft: DraftRequest) -> None:
        for name, value in self.pairs:
            draft.add_part(MultipartPart(name=name, content=value))


@dataclass(frozen=True)
class FormFileTransform:
    """Adds one file upload to a multipart body."""

    source: FileSource
    field_name: str
    file_name: str

    def apply(self, draft: DraftRequest) -> None:
        draft.add_part(
            MultipartPart(name=self.field_name, content=self.source, file_name=self.file_name)
        )


@dataclass(frozen=True)
class JsonBodyTransform:
    """Makes already-serialized JSON the whole request body.

    Build it with from_record() so serialization errors surface when the
    transform is created rather than when the request is sent.
    """

    content: bytes

    @classmethod
    def from_record(cls, record: Any) -> JsonBodyTransform:
        return cls(encode_json(record))

    def apply(self, draft: DraftRequest) -> None:
        draft.set_json_body(self.content)
