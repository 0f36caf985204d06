"""
TugResource connectors.

NoOpConnector binds a TugExternal to the backing store and a no-op service
and cannot fail. ProviderConfigConnector goes through the steps a provider
talking to a real external system needs:

1. Track that the resource uses a provider config.
2. Fetch the provider config.
3. Read the credentials it points at.
4. Build a service client from those credentials.

Each step fails with its own ConnectError subtype. The service factory is
passed in at construction time.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from errors import (
    ClientConstructionError,
    GetConfigError,
    GetCredentialsError,
    TrackUsageError,
    TypeMismatchError,
)
from models import ManagedResource, TugResource
from plugins.providers.base import ExternalConnector
from plugins.providers.tug.external import TugExternal

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_CONFIG = "default"

ServiceFactory = Callable[[bytes], Any]


class NoOpService:
    """A service that does nothing."""

    def __init__(self, credentials: bytes = b""):
        self.credentials = credentials

    def close(self) -> None:
        pass


def new_noop_service(credentials: bytes) -> NoOpService:
    return NoOpService(credentials)


def _as_tug(resource: ManagedResource) -> TugResource:
    if not isinstance(resource, TugResource):
        raise TypeMismatchError(TugResource.KIND, resource)
    return resource


class NoOpConnector(ExternalConnector):
    """Connects TugResources to the no-op service without any setup."""

    def __init__(self, store: Any, new_service_fn: ServiceFactory = new_noop_service):
        self.store = store
        self.new_service_fn = new_service_fn

    async def connect(self, resource: ManagedResource) -> TugExternal:
        _as_tug(resource)
        return TugExternal(store=self.store, service=self.new_service_fn(b""))


class ProviderConfigConnector(ExternalConnector):
    """Connects TugResources using a stored provider config and its credentials."""

    def __init__(
        self,
        store: Any,
        new_service_fn: ServiceFactory = new_noop_service,
        default_provider_config: str = DEFAULT_PROVIDER_CONFIG,
    ):
        self.store = store
        self.new_service_fn = new_service_fn
        self.default_provider_config = default_provider_config

    async def connect(self, resource: ManagedResource) -> TugExternal:
        cr = _as_tug(resource)
        pc_name = cr.spec.provider_config_ref or self.default_provider_config

        try:
            await self.store.track_provider_config_usage(pc_name, cr.id, cr.kind)
        except Exception as e:
            raise TrackUsageError(str(e)) from e

        try:
            pc = await self.store.get_provider_config(pc_name)
        except Exception as e:
            raise GetConfigError(str(e)) from e
        if pc is None:
            raise GetConfigError(f"provider config '{pc_name}' not found")

        credentials = await self._get_credentials(pc, cr.namespace)

        try:
            service = self.new_service_fn(credentials)
        except Exception as e:
            raise ClientConstructionError(str(e)) from e

        logger.debug(f"Connected {cr.key} using provider config {pc_name}")
        return TugExternal(store=self.store, service=service)

    async def _get_credentials(self, pc: Dict[str, Any], namespace: str) -> bytes:
        """
        Resolve the credentials a provider config points at.

        Supported sources:
        - None: no credentials
        - Environment: {"env": "VAR_NAME"}
        - Filesystem: {"path": "/path/to/file"}
        - Secret: {"name": ..., "key": ..., "namespace": optional}
        """
        source = pc.get("credentials_source") or "None"
        ref = pc.get("credentials_ref") or {}

        if source == "None":
            return b""

        if source == "Environment":
            var = ref.get("env")
            value: Optional[str] = os.environ.get(var) if var else None
            if value is None:
                raise GetCredentialsError(f"environment variable '{var}' is not set")
            return value.encode()

        if source == "Filesystem":
            path = ref.get("path")
            if not path:
                raise GetCredentialsError("no path set for Filesystem credentials")
            try:
                return await asyncio.to_thread(Path(path).read_bytes)
            except OSError as e:
                raise GetCredentialsError(str(e)) from e

        if source == "Secret":
            secret_ns = ref.get("namespace") or namespace
            name, key = ref.get("name"), ref.get("key")
            if not name or not key:
                raise GetCredentialsError("Secret credentials need a name and a key")
            try:
                value = await self.store.get_secret_value(secret_ns, name, key)
            except Exception as e:
                raise GetCredentialsError(str(e)) from e
            if value is None:
                raise GetCredentialsError(
                    f"key '{key}' not found in secret {secret_ns}/{name}"
                )
            return value.encode()

        raise GetCredentialsError(f"unsupported credentials source '{source}'")
