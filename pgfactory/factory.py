"""Lazily opened, shared PostgreSQL connection."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

import asyncpg

from .config import ConnectionSettings, load_settings

LOG = logging.getLogger(__name__)

URL_SCHEME = "jdbc:postgresql"
MAX_POOLED_STATEMENTS = 250

Connector = Callable[..., Awaitable[Any]]


class ConnectionFactoryError(RuntimeError):
    """Base class for connection lifecycle failures."""


class ConnectError(ConnectionFactoryError):
    """Raised when the database session cannot be opened."""


class DisconnectError(ConnectionFactoryError):
    """Raised by a strict disconnect when closing the session fails."""


def build_url(settings: ConnectionSettings, scheme: str = URL_SCHEME) -> str:
    """Compose ``<scheme>:[//host[:port]]/dbname`` from the settings."""

    parts = [f"{scheme}:"]
    if settings.host:
        parts.append(f"//{settings.host}")
        if settings.port:
            parts.append(f":{settings.port}")
    parts.append(f"/{settings.dbname}")
    return "".join(parts)


class ConnectionFactory:
    """Owns at most one live asyncpg connection and lends it to callers.

    The session is opened on the first :meth:`connect` and reused until
    :meth:`disconnect`. Lifecycle calls serialise on a per-factory lock, so
    coroutines sharing one event loop never open two sessions; the factory
    is not meant to be shared across threads or event loops.
    """

    def __init__(
        self,
        settings: ConnectionSettings | None = None,
        *,
        source: Path | str | None = None,
        connector: Connector | None = None,
        connect_timeout: float = 5.0,
    ) -> None:
        self._connector = connector or asyncpg.connect
        self._connect_timeout = connect_timeout
        self._connection: Any | None = None
        self._options: dict[str, object] | None = None
        self._lock = asyncio.Lock()
        self._holder: asyncio.Task[Any] | None = None
        if settings is None:
            self.init(source)
        else:
            self._settings = settings

    def init(self, source: Path | str | None = None) -> None:
        """(Re)load settings from ``source`` or the located resource.

        Raises :class:`~pgfactory.config.ConfigurationError` when the
        resource is missing or unreadable. A live session is left open.
        """

        self._settings = load_settings(source)
        self._options = None

    @property
    def settings(self) -> ConnectionSettings:
        return self._settings

    @property
    def url(self) -> str:
        return build_url(self._settings)

    @property
    def connected(self) -> bool:
        """Whether a live session is currently held."""

        return self._live()

    def connection_options(self) -> dict[str, object]:
        """Keyword arguments handed to the connector."""

        if self._options is None:
            settings = self._settings
            options: dict[str, object] = {}
            if settings.host:
                options["host"] = settings.host
                if settings.port_number is not None:
                    options["port"] = settings.port_number
            if settings.user:
                options["user"] = settings.user
            if settings.password:
                options["password"] = settings.password
            if settings.dbname:
                options["database"] = settings.dbname
            options["statement_cache_size"] = MAX_POOLED_STATEMENTS
            if settings.schema_name:
                options["server_settings"] = {"search_path": settings.schema_name}
            options["timeout"] = self._connect_timeout
            self._options = options
        return dict(self._options)

    async def connect(self) -> Any:
        """Return the shared session, opening it on first use."""

        if self._holds_checkout():
            return await self._ensure_connection()
        async with self._lock:
            return await self._ensure_connection()

    async def disconnect(self, *, strict: bool = False) -> None:
        """Close and forget the shared session; no-op when none is held."""

        if self._holds_checkout():
            await self._close(strict=strict)
            return
        async with self._lock:
            await self._close(strict=strict)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """Borrow the shared session exclusively for the ``async with`` body.

        Other tasks wait until the body finishes. The borrowing task itself
        may still call :meth:`connect` and :meth:`disconnect` inside the body;
        nested :meth:`connection` checkouts are rejected.
        """

        if self._holds_checkout():
            raise ConnectionFactoryError("connection() is already checked out by this task")
        async with self._lock:
            self._holder = asyncio.current_task()
            try:
                yield await self._ensure_connection()
            finally:
                self._holder = None

    async def __aenter__(self) -> ConnectionFactory:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    def _holds_checkout(self) -> bool:
        return self._holder is not None and self._holder is asyncio.current_task()

    def _live(self) -> bool:
        conn = self._connection
        if conn is None:
            return False
        is_closed = getattr(conn, "is_closed", None)
        return not (callable(is_closed) and is_closed())

    async def _ensure_connection(self) -> Any:
        if self._live():
            return self._connection
        if self._connection is not None:
            LOG.debug("Discarding closed connection", extra={"url": self.url})
            self._connection = None

        url = self.url
        LOG.debug(
            "Opening database connection",
            extra={"url": url, "settings": self._settings.redacted()},
        )
        try:
            self._connection = await self._connector(**self.connection_options())
        except Exception as exc:
            LOG.exception("Failed to open database connection", extra={"url": url})
            raise ConnectError(f"Failed to connect to {url}: {exc}") from exc
        LOG.info("Database connection opened", extra={"url": url})
        return self._connection

    async def _close(self, *, strict: bool) -> None:
        conn = self._connection
        if conn is None:
            return
        self._connection = None
        try:
            await conn.close()
        except Exception as exc:
            LOG.exception("Failed to close database connection", extra={"url": self.url})
            if strict:
                raise DisconnectError(f"Failed to close connection to {self.url}: {exc}") from exc
            return
        LOG.info("Database connection closed", extra={"url": self.url})


_shared: ConnectionFactory | None = None


def get_factory() -> ConnectionFactory:
    """Return the process-wide factory, building it on first call.

    A failed construction is not remembered, so a missing resource fails
    every call.

    The factory lock binds to the first event loop that waits on it, so the
    shared instance must not be reused across separate ``asyncio.run`` calls.
    """

    global _shared
    if _shared is None:
        _shared = ConnectionFactory()
    return _shared


def reset_factory() -> None:
    """Forget the process-wide factory without closing its session."""

    global _shared
    _shared = None


__all__ = [
    "ConnectError",
    "ConnectionFactory",
    "ConnectionFactoryError",
    "Connector",
    "DisconnectError",
    "MAX_POOLED_STATEMENTS",
    "URL_SCHEME",
    "build_url",
    "get_factory",
    "reset_factory",
]
