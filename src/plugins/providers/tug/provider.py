"""
Tug provider plugin.

Owns the TugResource kind and chooses its connector from configuration.
"""

import os
from typing import Any, Dict, List, Type

from models import ManagedResource, TugResource
from plugins.providers.base import ExternalConnector, ProviderPlugin
from plugins.providers.tug.connector import (
    DEFAULT_PROVIDER_CONFIG,
    NoOpConnector,
    ProviderConfigConnector,
    new_noop_service,
)

TUG_RESOURCE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["authoritative_value", "contended_value"],
    "properties": {
        "authoritative_value": {"type": "integer"},
        "contended_value": {"type": "integer"},
        "provider_config_ref": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}


class TugProvider(ProviderPlugin):
    """Provider for TugResource managed resources."""

    @property
    def name(self) -> str:
        return "tug"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def resource_classes(self) -> List[Type[ManagedResource]]:
        return [TugResource]

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load tug provider configuration from environment variables."""
        return {
            "require_provider_config": os.getenv(
                "TUG_REQUIRE_PROVIDER_CONFIG", "false"
            ).lower()
            == "true",
            "default_provider_config": os.getenv(
                "TUG_DEFAULT_PROVIDER_CONFIG", DEFAULT_PROVIDER_CONFIG
            ),
        }

    def spec_schema(self, kind: str) -> Dict[str, Any]:
        if kind != TugResource.KIND:
            raise ValueError(f"Provider '{self.name}' does not manage kind '{kind}'")
        return TUG_RESOURCE_SCHEMA

    def resource_from_row(self, row: Dict[str, Any]) -> ManagedResource:
        if row.get("kind") != TugResource.KIND:
            raise ValueError(
                f"Provider '{self.name}' does not manage kind '{row.get('kind')}'"
            )
        return TugResource.from_row(row)

    def make_connector(self, store: Any, config: Dict[str, Any]) -> ExternalConnector:
        if config.get("require_provider_config"):
            return ProviderConfigConnector(
                store,
                new_service_fn=new_noop_service,
                default_provider_config=config.get(
                    "default_provider_config", DEFAULT_PROVIDER_CONFIG
                ),
            )
        return NoOpConnector(store, new_service_fn=new_noop_service)
