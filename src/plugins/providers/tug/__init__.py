"""
Tug provider.

Reconciles TugResources: pulls spec.contended_value to
spec.authoritative_value against a no-op external system.
"""

from plugins.providers.tug.connector import (
    NoOpConnector,
    NoOpService,
    ProviderConfigConnector,
    new_noop_service,
)
from plugins.providers.tug.external import TugExternal
from plugins.providers.tug.provider import TugProvider

__all__ = [
    "NoOpConnector",
    "NoOpService",
    "ProviderConfigConnector",
    "TugExternal",
    "TugProvider",
    "new_noop_service",
]
