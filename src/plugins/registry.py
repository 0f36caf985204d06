"""
Plugin Registry - Discovery and registration of plugins.

This module provides the central registry for provider and input plugins,
handling discovery, registration, and instantiation.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.base import logger
from plugins.inputs.base import InputPlugin
from plugins.providers.base import ProviderPlugin
from validation import validate_openapi_schema


class PluginRegistry:
    """
    Central registry for all plugins.

    Providers are instantiated once at registration and shared; each managed
    kind maps to exactly one provider.
    """

    def __init__(self):
        # Provider instances keyed by provider name
        self._providers: Dict[str, ProviderPlugin] = {}
        self._provider_configs: Dict[str, Dict[str, Any]] = {}

        # Mapping from managed kind to provider name
        self._kind_to_provider: Dict[str, str] = {}

        # Registered input plugin classes (not instantiated)
        self._input_plugins: Dict[str, Type[InputPlugin]] = {}
        self._input_plugin_info: Dict[str, Dict[str, str]] = {}
        self._input_instances: Dict[str, InputPlugin] = {}
        self._input_plugin_configs: Dict[str, Dict[str, Any]] = {}

    # Registration methods

    def register_provider(self, provider_class: Type[ProviderPlugin]) -> None:
        """
        Register a provider plugin class.

        Args:
            provider_class: The ProviderPlugin subclass to register

        Raises:
            ValueError: If a kind is already claimed by another provider, or
                a kind's spec schema is not a valid JSON Schema
        """
        provider = provider_class()
        name = provider.name
        kinds = provider.kinds

        if name in self._providers:
            logger.warning(f"Overwriting existing provider: {name}")

        for kind in kinds:
            existing = self._kind_to_provider.get(kind)
            if existing and existing != name:
                raise ValueError(
                    f"Kind '{kind}' is already claimed by provider "
                    f"'{existing}'. Cannot register '{name}'."
                )
            is_valid, error = validate_openapi_schema(provider.spec_schema(kind))
            if not is_valid:
                raise ValueError(f"Provider '{name}' kind '{kind}': {error}")

        self._providers[name] = provider
        self._provider_configs[name] = provider_class.load_config_from_env()
        for kind in kinds:
            self._kind_to_provider[kind] = name

        logger.info(
            f"Registered provider: {name} v{provider.version} "
            f"(kinds: {', '.join(kinds)})"
        )

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """
        Register an input plugin class.

        Args:
            plugin_class: The InputPlugin subclass to register
        """
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._input_plugins:
            logger.warning(f"Overwriting existing input plugin: {name}")

        self._input_plugins[name] = plugin_class
        self._input_plugin_info[name] = {"name": name, "version": version}
        self._input_plugin_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered input plugin: {name} v{version}")

    # Lookup methods

    def get_provider(self, name: str) -> ProviderPlugin:
        """
        Get a provider by name.

        Raises:
            ValueError: If the provider name is not registered
        """
        if name not in self._providers:
            available = ", ".join(self._providers.keys()) or "none"
            raise ValueError(f"Unknown provider: {name}. Available providers: {available}")
        return self._providers[name]

    def get_provider_for_kind(self, kind: str) -> Optional[ProviderPlugin]:
        """Get the provider managing a kind, or None if no provider does."""
        name = self._kind_to_provider.get(kind)
        if name is None:
            return None
        return self._providers[name]

    def has_provider_for_kind(self, kind: str) -> bool:
        """Check if any provider manages the given kind."""
        return kind in self._kind_to_provider

    def list_providers(self) -> List[str]:
        """List all registered provider names."""
        return list(self._providers.keys())

    def list_kinds(self) -> List[str]:
        """List all managed kinds."""
        return list(self._kind_to_provider.keys())

    def get_provider_info(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Get information about a registered provider.

        Returns:
            Dictionary with 'name', 'version' and 'kinds', or None if not found
        """
        provider = self._providers.get(name)
        if provider is None:
            return None
        return {"name": provider.name, "version": provider.version, "kinds": provider.kinds}

    def get_provider_config(self, name: str) -> Dict[str, Any]:
        """Get the environment-loaded configuration for a provider."""
        return dict(self._provider_configs.get(name, {}))

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """
        Get an initialized input plugin instance.

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._input_plugins:
            available = ", ".join(self._input_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown input plugin: {name}. Available plugins: {available}"
            )

        if name not in self._input_instances:
            plugin = self._input_plugins[name]()
            await plugin.initialize(config or {})
            self._input_instances[name] = plugin
            logger.info(f"Initialized input plugin: {name}")

        return self._input_instances[name]

    def list_input_plugins(self) -> List[str]:
        """List all registered input plugin names."""
        return list(self._input_plugins.keys())

    def has_input_plugin(self, name: str) -> bool:
        """Check if an input plugin is registered."""
        return name in self._input_plugins

    def get_input_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """Get name and version of a registered input plugin."""
        return self._input_plugin_info.get(name)

    def get_input_plugin_config(self, name: str) -> Dict[str, Any]:
        """Get the environment-loaded configuration for an input plugin."""
        return dict(self._input_plugin_configs.get(name, {}))


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register the built-in tug provider and HTTP input plugin, and discover
    third-party providers via entry points.
    """
    registry = get_registry()

    try:
        from plugins.providers.tug import TugProvider

        registry.register_provider(TugProvider)
    except ImportError as e:
        logger.warning(f"Could not load tug provider: {e}")

    try:
        from plugins.inputs.http import HTTPInputPlugin

        registry.register_input_plugin(HTTPInputPlugin)
    except ImportError as e:
        logger.warning(f"Could not load HTTP input plugin: {e}")

    for ep in entry_points(group="tug.providers"):
        try:
            registry.register_provider(ep.load())
        except Exception as e:
            logger.warning(f"Could not load provider plugin {ep.name}: {e}")
