"""Lazily opened, shared PostgreSQL connection built from ``db.properties``."""

from __future__ import annotations

from .config import (
    ConfigurationError,
    ConnectionSettings,
    RESOURCE_NAME,
    load_settings,
    locate_resource,
)
from .factory import (
    ConnectError,
    ConnectionFactory,
    ConnectionFactoryError,
    DisconnectError,
    MAX_POOLED_STATEMENTS,
    URL_SCHEME,
    build_url,
    get_factory,
    reset_factory,
)

__all__ = [
    "ConfigurationError",
    "ConnectError",
    "ConnectionFactory",
    "ConnectionFactoryError",
    "ConnectionSettings",
    "DisconnectError",
    "MAX_POOLED_STATEMENTS",
    "RESOURCE_NAME",
    "URL_SCHEME",
    "build_url",
    "get_factory",
    "load_settings",
    "locate_resource",
    "reset_factory",
]
