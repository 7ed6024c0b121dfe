"""CodeMesh Discovery: builds a ToolCatalog from every registered provider."""

from codemesh.discovery.service import DiscoveryService, ProviderListing

__all__ = ["DiscoveryService", "ProviderListing"]
