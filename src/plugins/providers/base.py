"""
Provider Plugin Base - Abstract interfaces for managed resource providers.

A provider owns one or more managed resource kinds. For each reconcile the
controller asks the provider's connector for an external client bound to
the resource, then drives the client through observe and, depending on
what it saw, create, update or delete.

Providers are discovered via Python entry points in the 'tug.providers'
group.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Type

from models import ManagedResource
from plugins.base import (
    ExternalCreation,
    ExternalDelete,
    ExternalObservation,
    ExternalUpdate,
)


class ExternalClient(ABC):
    """
    Observes, then either creates, updates, or deletes an external resource
    so that it reflects the managed resource's desired state.

    Every method raises TypeMismatchError, before doing anything else, when
    handed a resource of a kind the client does not manage.
    """

    @abstractmethod
    async def observe(self, resource: ManagedResource) -> ExternalObservation:
        """
        Observe the external resource.

        May update the resource's status but never its spec.
        """
        pass

    @abstractmethod
    async def create(self, resource: ManagedResource) -> ExternalCreation:
        """Create the external resource. Called when observe reports it absent."""
        pass

    @abstractmethod
    async def update(self, resource: ManagedResource) -> ExternalUpdate:
        """Update the external resource. Called when observe reports drift."""
        pass

    @abstractmethod
    async def delete(self, resource: ManagedResource) -> ExternalDelete:
        """Delete the external resource. Called when deletion is requested."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release any client resources. Called once per connect."""
        pass


class ExternalConnector(ABC):
    """Produces an ExternalClient for a managed resource."""

    @abstractmethod
    async def connect(self, resource: ManagedResource) -> ExternalClient:
        """
        Connect to the external system backing the resource.

        Raises:
            ConnectError: If any setup step fails.
            TypeMismatchError: If the resource kind is not supported.
        """
        pass


class ProviderPlugin(ABC):
    """
    Abstract base class for provider plugins.

    A provider declares the kinds it manages, their spec schema, how stored
    rows become typed resources, and how to build its connector.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this provider; also used as its finalizer."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Provider version string."""
        pass

    @property
    @abstractmethod
    def resource_classes(self) -> List[Type[ManagedResource]]:
        """Managed resource classes owned by this provider."""
        pass

    @property
    def kinds(self) -> List[str]:
        """Kind names owned by this provider."""
        return [cls.KIND for cls in self.resource_classes]

    @abstractmethod
    def spec_schema(self, kind: str) -> Dict[str, Any]:
        """JSON Schema (Draft 7) for the spec of the given kind."""
        pass

    @abstractmethod
    def resource_from_row(self, row: Dict[str, Any]) -> ManagedResource:
        """Build a typed managed resource from a parsed store row."""
        pass

    @abstractmethod
    def make_connector(self, store: Any, config: Dict[str, Any]) -> ExternalConnector:
        """
        Build the connector used for this provider's resources.

        Args:
            store: Backing store client (DatabaseManager or compatible).
            config: Provider-specific configuration.
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load provider-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this provider.
        """
        return {}
