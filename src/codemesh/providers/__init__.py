"""
CodeMesh Provider Registry

Holds validated connection descriptors for every configured tool provider.
"""

from codemesh.providers.registry import ProviderRegistry

__all__ = ["ProviderRegistry"]
