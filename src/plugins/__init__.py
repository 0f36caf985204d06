"""
Plugin system for the tug operator.

Providers manage external resources for one or more kinds; input plugins
accept managed resources from outside.
"""

from plugins.base import (
    ExternalCreation,
    ExternalDelete,
    ExternalObservation,
    ExternalUpdate,
    ResourceRequest,
)
from plugins.providers.base import ExternalClient, ExternalConnector, ProviderPlugin
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "ExternalClient",
    "ExternalConnector",
    "ExternalCreation",
    "ExternalDelete",
    "ExternalObservation",
    "ExternalUpdate",
    "PluginRegistry",
    "ProviderPlugin",
    "ResourceRequest",
    "get_registry",
]
