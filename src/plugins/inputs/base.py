"""
Input Plugin Base - Abstract interface for resource input sources.

Input plugins let external actors submit managed resources:
- HTTP API: REST endpoints
- GitOps: Watch Git repositories for manifests
- Queue listener: Listen to message queues
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from plugins.base import ResourceRequest

# Callback for resource changes: (event_type, request) -> None
ResourceCallback = Callable[[str, ResourceRequest], Awaitable[None]]


@dataclass
class ValidationResult:
    """Result of a validation operation."""

    is_valid: bool
    error_message: Optional[str] = None


def validate_kind(kind: str) -> ValidationResult:
    """
    Validate that some registered provider manages a kind.

    Input plugins call this before storing a resource so that unmanaged
    kinds are rejected up front.
    """
    from plugins.registry import get_registry

    registry = get_registry()
    if not registry.has_provider_for_kind(kind):
        available = registry.list_kinds()
        return ValidationResult(
            is_valid=False,
            error_message=f"Unknown kind: {kind}. "
            f"Managed kinds: {', '.join(available) or 'none'}",
        )
    return ValidationResult(is_valid=True)


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    Input plugins receive managed resources from external sources and
    write their desired state to the store.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self, on_resource_event: ResourceCallback) -> None:
        """
        Start accepting resources.

        Args:
            on_resource_event: Invoked with ('created' | 'updated' | 'deleted',
                ResourceRequest) after each accepted change.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load plugin-specific configuration from environment variables."""
        return {}

    def set_db_manager(self, db_manager: Any) -> None:
        """Hook for plugins that need database access."""
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """Hook for plugins that publish or stream events."""
        pass
