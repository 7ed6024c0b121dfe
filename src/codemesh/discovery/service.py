"""
CodeMesh Discovery Service

Opens one short-lived connection per registered provider, lists its tools
and closes the connection. Providers are listed concurrently; each attempt
is bounded by its own provider's timeout, so a hung provider cannot hold up
the others.

Failure policy:
- A provider that refuses, times out or speaks bad protocol is recorded as
  a ProviderFailure on the catalog and logged. The pass continues.
- Only when every provider fails does the pass raise NoProvidersReachableError.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from codemesh.core.models import ProviderDescriptor, ProviderFailure, ToolCatalog, ToolDescriptor
from codemesh.exceptions import NoProvidersReachableError, ProviderUnavailableError, TransportError
from codemesh.observability.metrics import record_provider_discovery
from codemesh.observability.tracing import span
from codemesh.providers.registry import ProviderRegistry
from codemesh.transports import Connector, open_connection

logger = logging.getLogger(__name__)


@dataclass
class ProviderListing:
    """Result of listing a single provider."""

    provider_id: str
    tools: list[ToolDescriptor] = field(default_factory=list)
    failure: ProviderFailure | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None


class DiscoveryService:
    """Enumerates tools across all providers of a registry.

    Stateless between passes: every call to ``discover_all`` opens fresh
    connections and returns a new catalog.
    """

    def __init__(self, connector: Connector = open_connection):
        self._connector = connector

    async def discover_all(self, registry: ProviderRegistry) -> ToolCatalog:
        """List every provider concurrently and merge the results into a catalog."""
        providers = registry.get_all()
        with span("discover", provider_count=len(providers)):
            listings = await asyncio.gather(*(self.discover_provider(p) for p in providers))

        failures = [listing.failure for listing in listings if listing.failure is not None]
        if len(failures) == len(listings):
            raise NoProvidersReachableError(failures)

        tools: list[ToolDescriptor] = []
        for listing in listings:
            tools.extend(listing.tools)

        catalog = ToolCatalog(tools=tools, failures=failures, providers=[p.id for p in providers])
        logger.info(
            "Discovery complete: %d tool(s) from %d/%d provider(s)",
            len(catalog), len(catalog.reachable_providers), len(providers),
        )
        return catalog

    async def discover_provider(self, descriptor: ProviderDescriptor) -> ProviderListing:
        """List one provider; failures are captured, never raised."""
        start = time.monotonic()
        try:
            tools = await asyncio.wait_for(self._list_tools(descriptor), timeout=descriptor.timeout_seconds)
        except asyncio.TimeoutError:
            error = ProviderUnavailableError(descriptor.id, f"timed out after {descriptor.timeout_ms}ms")
            return self._failed(descriptor, error, "TimeoutError", start)
        except TransportError as e:
            error = ProviderUnavailableError(descriptor.id, str(e))
            return self._failed(descriptor, error, type(e).__name__, start)
        except OSError as e:
            error = ProviderUnavailableError(descriptor.id, f"{type(e).__name__}: {e}")
            return self._failed(descriptor, error, type(e).__name__, start)

        duration_ms = (time.monotonic() - start) * 1000
        logger.info(
            "Listed %d tool(s)", len(tools),
            extra={"provider_id": descriptor.id, "transport": descriptor.transport.value, "duration_ms": round(duration_ms, 1)},
        )
        record_provider_discovery(provider_id=descriptor.id, success=True, tool_count=len(tools))
        return ProviderListing(provider_id=descriptor.id, tools=tools, duration_ms=duration_ms)

    async def _list_tools(self, descriptor: ProviderDescriptor) -> list[ToolDescriptor]:
        connection = await self._connector(descriptor)
        try:
            raw_tools = await connection.list_tools()
        finally:
            await connection.close()

        tools: list[ToolDescriptor] = []
        seen: set[str] = set()
        for tool in raw_tools:
            if tool.tool_name in seen:
                logger.warning(
                    "Provider reported tool twice; keeping the first definition",
                    extra={"provider_id": descriptor.id, "tool_name": tool.tool_name},
                )
                continue
            seen.add(tool.tool_name)
            tools.append(tool)
        return tools

    @staticmethod
    def _failed(
        descriptor: ProviderDescriptor,
        error: ProviderUnavailableError,
        error_type: str,
        start: float,
    ) -> ProviderListing:
        duration_ms = (time.monotonic() - start) * 1000
        logger.warning(
            str(error),
            extra={"provider_id": descriptor.id, "transport": descriptor.transport.value, "duration_ms": round(duration_ms, 1)},
        )
        record_provider_discovery(provider_id=descriptor.id, success=False)
        return ProviderListing(
            provider_id=descriptor.id,
            failure=ProviderFailure(provider_id=descriptor.id, error_type=error_type, message=str(error)),
            duration_ms=duration_ms,
        )
