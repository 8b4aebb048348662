"""Errors - The exception taxonomy for fluent-request.

Configuration errors (bad arguments to a fluent call) are raised
synchronously before anything is registered on the builder. Execution errors
(no client, unresolved URL) surface from the terminal verb. Transport
failures are httpx's own exceptions and are never wrapped.

See DESIGN.md "Error Taxonomy".
"""

from __future__ import annotations

import httpx


class FluentRequestError(Exception):
    """Base class for fluent-request errors."""


class InvalidArgumentError(FluentRequestError, ValueError):
    """Raised when a required configuration value is None or empty."""


class ClientUnresolvedError(FluentRequestError):
    """Raised when no transport client is injected or configured."""


class InvalidConfigurationError(FluentRequestError):
    """Raised when a configured client factory yields no usable client."""


class UnresolvedUrlError(FluentRequestError):
    """Raised when the built URL is empty or not absolute."""


class InvalidPayloadError(FluentRequestError, ValueError):
    """Raised when a response body cannot be decoded into the requested shape."""


class ResponseConsumedError(FluentRequestError):
    """Raised when a response is read a second time after being released."""


# Send failures (connect, DNS, TLS, timeouts) propagate as httpx raises them.
TransportFailure = httpx.TransportError
