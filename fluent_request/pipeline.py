"""Transform Pipeline - Builds one wire request from an ordered list of transforms.

The pipeline starts a DraftRequest from the base URL and method, applies
every transform in registration order, validates that the URL ended up
absolute, and converts the draft into an immutable httpx.Request.

Order matters: segment and query transforms extend the URL produced by the
transforms before them, and a later JSON body replaces earlier form parts.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import httpx

from fluent_request.errors import UnresolvedUrlError
from fluent_request.transforms import BodyKind, DraftRequest, Transform


class TransformPipeline:
    """Applies transforms to a fresh DraftRequest and emits an httpx.Request.

    Usage:
        pipeline = TransformPipeline([SegmentsTransform(("users", "42"))])
        request = pipeline.build("https://api.example.com", "GET")
        # request.url == "https://api.example.com/users/42"
    """

    def __init__(self, transforms: Iterable[Transform]) -> None:
        self._transforms = tuple(transforms)

    @property
    def transforms(self) -> tuple[Transform, ...]:
        return self._transforms

    def apply(self, base_url: str, method: str) -> DraftRequest:
        """Apply all transforms to a new draft without validating or converting it."""
        draft = DraftRequest(method=method.upper(), url=base_url or "")
        for transform in self._transforms:
            transform.apply(draft)
        return draft

    def build(
        self,
        base_url: str,
        method: str,
        client: httpx.Client | httpx.AsyncClient | None = None,
    ) -> httpx.Request:
        """Build the final request.

        Args:
            base_url: Starting URL. Empty means unresolved; the transforms
                alone then have to produce an absolute URL.
            method: HTTP method.
            client: When given, the request is built through
                client.build_request so the client's default headers and
                cookies are merged in.

        Returns:
            The request ready to send.

        Raises:
            UnresolvedUrlError: If the final URL is empty or not absolute.
        """
        draft = self.apply(base_url, method)
        validate_url(draft.url)
        return to_httpx_request(draft, client)


def validate_url(url: str) -> httpx.URL:
    """Parse url and require it to be absolute (scheme and host)."""
    if not url:
        raise UnresolvedUrlError(
            "Could not resolve request URL. Pass a base URL to Request or set "
            "base_url on the client."
        )
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise UnresolvedUrlError(f"Invalid request URL '{url}': {e}") from e
    if not parsed.is_absolute_url or not parsed.host:
        raise UnresolvedUrlError(f"Request URL '{url}' is not absolute")
    return parsed


def to_httpx_request(
    draft: DraftRequest,
    client: httpx.Client | httpx.AsyncClient | None = None,
) -> httpx.Request:
    """Convert a draft into an httpx.Request.

    Text form fields are passed to httpx as file parts without a filename.
    httpx then emits them as plain form-data parts, and the body is always
    multipart/form-data (httpx would urlencode a data-only body).
    """
    headers = list(draft.headers)
    if draft.cookie:
        headers.append(("Cookie", draft.cookie))

    body: dict[str, Any] = {}
    if draft.body_kind is BodyKind.JSON:
        if draft.content_type and not draft.get_headers("content-type"):
            headers.append(("Content-Type", draft.content_type))
        body["content"] = draft.json_content
    elif draft.body_kind is BodyKind.MULTIPART:
        body["files"] = [
            (part.name, (part.file_name, part.content)) for part in draft.parts
        ]

    if client is not None:
        return client.build_request(draft.method, draft.url, headers=headers, **body)
    return httpx.Request(draft.method, draft.url, headers=headers, **body)
