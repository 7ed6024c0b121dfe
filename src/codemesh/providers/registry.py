"""
CodeMesh Provider Registry

Central registry for all configured tool providers. Registration checks,
without touching the network, that each descriptor could be connected to:
HTTP and socket providers need an address, subprocess providers need a
launch command.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from urllib.parse import urlparse

from codemesh.core.models import ProviderDescriptor, TransportKind
from codemesh.exceptions import ConfigError, ProviderNotFoundError

logger = logging.getLogger(__name__)

_URL_SCHEMES = {
    TransportKind.HTTP: ("http", "https"),
    TransportKind.WEBSOCKET: ("ws", "wss"),
}


class ProviderRegistry:
    """Registry of provider descriptors, keyed by provider id.

    One instance per loaded configuration; passed explicitly to discovery
    and proxy building rather than held globally.
    """

    def __init__(self) -> None:
        self._providers: dict[str, ProviderDescriptor] = {}

    def register(self, descriptor: ProviderDescriptor) -> None:
        """Register a provider.

        Raises ConfigError on a duplicate id or when the transport lacks
        the address or command it needs.
        """
        if descriptor.id in self._providers:
            raise ConfigError(f"Provider '{descriptor.id}' is already registered")
        _validate_descriptor(descriptor)
        self._providers[descriptor.id] = descriptor
        logger.debug(
            "Registered provider",
            extra={"provider_id": descriptor.id, "transport": descriptor.transport.value},
        )

    def resolve(self, provider_id: str) -> ProviderDescriptor:
        """Look up a provider, raising ProviderNotFoundError if absent."""
        descriptor = self._providers.get(provider_id)
        if descriptor is None:
            raise ProviderNotFoundError(provider_id)
        return descriptor

    def get(self, provider_id: str) -> ProviderDescriptor | None:
        """Look up a provider by id."""
        return self._providers.get(provider_id)

    def get_all(self) -> list[ProviderDescriptor]:
        """Return all providers in registration order."""
        return list(self._providers.values())

    def by_transport(self, transport: TransportKind) -> list[ProviderDescriptor]:
        """Return providers reached over the given transport."""
        return [p for p in self._providers.values() if p.transport == transport]

    def __iter__(self) -> Iterator[ProviderDescriptor]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers


def _validate_descriptor(descriptor: ProviderDescriptor) -> None:
    connection = descriptor.connection

    if descriptor.transport == TransportKind.STDIO:
        if not connection.command or not connection.command[0].strip():
            raise ConfigError(
                f"Provider '{descriptor.id}' uses stdio transport but has no launch command",
                details={"provider_id": descriptor.id},
            )
        return

    schemes = _URL_SCHEMES[descriptor.transport]
    if not connection.url:
        raise ConfigError(
            f"Provider '{descriptor.id}' uses {descriptor.transport.value} transport but has no url",
            details={"provider_id": descriptor.id},
        )
    parsed = urlparse(connection.url)
    if parsed.scheme not in schemes or not parsed.hostname:
        raise ConfigError(
            f"Provider '{descriptor.id}' has unreachable address '{connection.url}' "
            f"(expected {' or '.join(s + '://' for s in schemes)} with a host)",
            details={"provider_id": descriptor.id, "url": connection.url},
        )
