"""Client Resolver - Decides which httpx client sends a request.

Resolution order for every execution:
    1. The factory injected into the Request (Request.inject_client or the
       client passed to its constructor).
    2. The process-wide default factory (set_client_factory /
       set_async_client_factory / configure_clients).
    3. Otherwise ClientUnresolvedError.

A factory is a callable taking the requesting builder's base URL (None when
the builder has none) and returning an httpx.Client (blocking verbs) or
httpx.AsyncClient (async verbs). A factory that returns None or the wrong
kind of client is an InvalidConfigurationError.

An httpx.AsyncClient is bound to the event loop it first did I/O on, so
configure_clients() keeps one async client per running loop.

The defaults are written under a lock and read without one. Replacing a
default while requests are in flight is the caller's responsibility: requests
already resolved keep the client they got.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from threading import Lock
from typing import Callable, Optional, Union

import httpx

from fluent_request.config_loader import build_client_kwargs
from fluent_request.errors import (
    ClientUnresolvedError,
    InvalidArgumentError,
    InvalidConfigurationError,
)
from fluent_request.models import ClientConfig

logger = logging.getLogger(__name__)

AnyClient = Union[httpx.Client, httpx.AsyncClient]
ClientFactory = Callable[[Optional[str]], Optional[AnyClient]]

# (loop the client is bound to, client); the loop is None for blocking clients.
BoundClient = tuple[Optional[asyncio.AbstractEventLoop], AnyClient]


class SharedClientFactory:
    """Lazily builds one httpx.Client from a ClientConfig and hands out that same client.

    The client is constructed on the first call, so configuring defaults at
    import time costs nothing until a request is actually sent. The base
    URL passed by the caller is ignored; the config's base_url applies.
    """

    def __init__(self, config: ClientConfig) -> None:
        self._config = config
        self._client: httpx.Client | None = None
        self._lock = Lock()

    @property
    def created(self) -> bool:
        return self._client is not None

    def __call__(self, base_url: str | None = None) -> httpx.Client:
        client = self._client
        if client is None:
            with self._lock:
                if self._client is None:
                    logger.debug(
                        "Creating shared httpx.Client for %s",
                        self._config.base_url or "(no base URL)",
                    )
                    self._client = httpx.Client(**build_client_kwargs(self._config))
                client = self._client
        return client

    def detach(self) -> list[BoundClient]:
        """Forget the shared client and return it so the caller can close it."""
        with self._lock:
            client, self._client = self._client, None
        return [] if client is None else [(None, client)]


class SharedAsyncClientFactory:
    """Lazily builds one httpx.AsyncClient per running event loop.

    Each asyncio.run() starts a new loop, and an AsyncClient whose
    connections belong to a closed loop fails on reuse. Clients are keyed
    weakly by loop and entries for closed loops are dropped on the next call.

    Must be called from inside a running event loop.
    """

    def __init__(self, config: ClientConfig) -> None:
        self._config = config
        self._clients: weakref.WeakKeyDictionary[
            asyncio.AbstractEventLoop, httpx.AsyncClient
        ] = weakref.WeakKeyDictionary()
        self._lock = Lock()

    @property
    def created(self) -> bool:
        return len(self._clients) > 0

    def __call__(self, base_url: str | None = None) -> httpx.AsyncClient:
        loop = asyncio.get_running_loop()
        with self._lock:
            client = self._clients.get(loop)
            if client is None:
                for stale in [known for known in self._clients if known.is_closed()]:
                    logger.debug("Dropping shared httpx.AsyncClient of a closed event loop")
                    del self._clients[stale]
                logger.debug(
                    "Creating shared httpx.AsyncClient for %s",
                    self._config.base_url or "(no base URL)",
                )
                client = httpx.AsyncClient(**build_client_kwargs(self._config))
                self._clients[loop] = client
        return client

    def detach(self) -> list[BoundClient]:
        """Forget every per-loop client and return them with their loops."""
        with self._lock:
            clients = list(self._clients.items())
            self._clients.clear()
        return clients


class ClientResolver:
    """Holds the default client factories and resolves clients for requests."""

    def __init__(self) -> None:
        self._factory: ClientFactory | None = None
        self._async_factory: ClientFactory | None = None
        self._shared: list[SharedClientFactory | SharedAsyncClientFactory] = []
        self._lock = Lock()

    @property
    def factory(self) -> ClientFactory | None:
        return self._factory

    @property
    def async_factory(self) -> ClientFactory | None:
        return self._async_factory

    def set_factory(self, factory: ClientFactory | None) -> None:
        """Set the default factory for blocking requests. None clears it."""
        _check_factory(factory)
        with self._lock:
            self._factory = factory

    def set_async_factory(self, factory: ClientFactory | None) -> None:
        """Set the default factory for async requests. None clears it."""
        _check_factory(factory)
        with self._lock:
            self._async_factory = factory

    def configure(self, config: ClientConfig) -> None:
        """Install lazily-built shared clients for both blocking and async requests."""
        sync_factory = SharedClientFactory(config)
        async_factory = SharedAsyncClientFactory(config)
        with self._lock:
            self._factory = sync_factory
            self._async_factory = async_factory
            self._shared.extend((sync_factory, async_factory))

    def reset(self) -> None:
        """Clear both defaults. Clients built by configure() are left open."""
        with self._lock:
            self._factory = None
            self._async_factory = None

    def close(self) -> None:
        """Close the blocking clients built by configure() and clear the defaults.

        Async clients built by configure() need aclose().
        """
        for _, client in self._detach_shared():
            if isinstance(client, httpx.Client):
                client.close()
            else:
                logger.warning("Dropping open AsyncClient without closing it; use aclose()")

    async def aclose(self) -> None:
        """Close the clients built by configure() and clear the defaults.

        Only the async client of the running loop can be awaited here. Async
        clients of other loops are dropped.
        """
        running = asyncio.get_running_loop()
        for loop, client in self._detach_shared():
            if isinstance(client, httpx.Client):
                client.close()
            elif loop is running:
                await client.aclose()
            else:
                logger.debug("Dropping AsyncClient bound to another event loop")

    def _detach_shared(self) -> list[BoundClient]:
        with self._lock:
            shared, self._shared = self._shared, []
            self._factory = None
            self._async_factory = None
        return [bound for factory in shared for bound in factory.detach()]

    def resolve(
        self, injected: ClientFactory | None = None, base_url: str | None = None
    ) -> httpx.Client:
        """Resolve the client for a blocking request.

        Args:
            injected: Factory injected into the request, tried before the default.
            base_url: Base URL of the requesting builder, passed to the factory.

        Raises:
            ClientUnresolvedError: If no factory is injected or configured.
            InvalidConfigurationError: If the factory returns None or an AsyncClient.
        """
        client = _invoke(
            injected if injected is not None else self._factory, "httpx.Client", base_url
        )
        if not isinstance(client, httpx.Client):
            raise InvalidConfigurationError(
                f"Client factory returned {type(client).__name__}; blocking requests "
                "need an httpx.Client"
            )
        return client

    def resolve_async(
        self, injected: ClientFactory | None = None, base_url: str | None = None
    ) -> httpx.AsyncClient:
        """Resolve the client for an async request.

        Raises:
            ClientUnresolvedError: If no factory is injected or configured.
            InvalidConfigurationError: If the factory returns None or a blocking Client.
        """
        client = _invoke(
            injected if injected is not None else self._async_factory,
            "httpx.AsyncClient",
            base_url,
        )
        if not isinstance(client, httpx.AsyncClient):
            raise InvalidConfigurationError(
                f"Client factory returned {type(client).__name__}; async requests "
                "need an httpx.AsyncClient"
            )
        return client


def _check_factory(factory: ClientFactory | None) -> None:
    if factory is not None and not callable(factory):
        raise InvalidArgumentError("Client factory must be callable")


def _invoke(factory: ClientFactory | None, kind: str, base_url: str | None) -> AnyClient:
    if factory is None:
        raise ClientUnresolvedError(
            f"No {kind} available. Inject one with Request.inject_client() or set "
            "a process-wide default with set_client_factory(), "
            "set_async_client_factory() or configure_clients()."
        )
    client = factory(base_url)
    if client is None:
        raise InvalidConfigurationError("Client factory returned None")
    return client


# Process-wide resolver used by every Request that is not given its own.
default_resolver = ClientResolver()


def set_client_factory(factory: ClientFactory | None) -> None:
    """Set the process-wide default factory for blocking requests."""
    default_resolver.set_factory(factory)


def set_async_client_factory(factory: ClientFactory | None) -> None:
    """Set the process-wide default factory for async requests."""
    default_resolver.set_async_factory(factory)


def configure_clients(config: ClientConfig) -> None:
    """Make lazily-built clients from config the process-wide defaults."""
    default_resolver.configure(config)


def close_clients() -> None:
    """Close blocking clients built by configure_clients() and clear the defaults."""
    default_resolver.close()


async def aclose_clients() -> None:
    """Close all clients built by configure_clients() and clear the defaults."""
    await default_resolver.aclose()
