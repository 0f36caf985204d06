"""
Provider plugins package.

Provider plugins own the reconciliation logic for one or more managed
resource kinds. They are discovered via Python entry points
(group: 'tug.providers').
"""

from plugins.providers.base import (
    ExternalClient,
    ExternalConnector,
    ProviderPlugin,
)

__all__ = ["ExternalClient", "ExternalConnector", "ProviderPlugin"]
