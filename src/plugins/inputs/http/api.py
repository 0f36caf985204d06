"""
HTTP Input Plugin - REST API for managed resources.

External actors submit and overwrite managed resource specs here; the
controller reconciles them. Desired-state changes are published on the
event bus so the controller reacts without waiting for its next scan.
"""

import asyncio
import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from events import EventBus, EventType, ResourceEvent
from models import DEFAULT_MANAGEMENT_POLICIES, ManagementPolicy
from plugins.base import ResourceRequest
from plugins.inputs.base import InputPlugin, ResourceCallback, validate_kind
from validation import validate_resource_spec

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_SPEC_SIZE = 1024 * 1024  # 1MB max for spec

CREDENTIALS_SOURCES = ("None", "Environment", "Filesystem", "Secret")


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_json_size(value: Dict[str, Any], field_name: str) -> Dict[str, Any]:
    """Validate that JSON data doesn't exceed size limits."""
    if len(json.dumps(value)) > MAX_SPEC_SIZE:
        raise ValueError(
            f"{field_name} exceeds maximum size of {MAX_SPEC_SIZE // 1024}KB"
        )
    return value


def validate_management_policies(value: List[str]) -> List[str]:
    """Validate a non-empty list of known management policies."""
    if not value:
        raise ValueError("management_policies cannot be empty")
    known = [p.value for p in ManagementPolicy]
    unknown = [p for p in value if p not in known]
    if unknown:
        raise ValueError(
            f"unknown management policies: {', '.join(unknown)}; "
            f"must be one of: {', '.join(known)}"
        )
    return value


# Resource models


class ResourceCreate(BaseModel):
    """Request model for creating a managed resource."""

    kind: str = Field(..., description="Managed resource kind", examples=["TugResource"])
    name: str = Field(..., description="Resource name", examples=["my-tug"])
    namespace: str = Field(default="default", description="Resource namespace")
    spec: Dict[str, Any] = Field(..., description="Desired state for the kind")
    management_policies: List[str] = Field(
        default_factory=lambda: list(DEFAULT_MANAGEMENT_POLICIES),
        description="Operations the controller may perform on the external resource",
        examples=[["Observe", "Update"]],
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        return validate_name_format(v, "namespace")

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")

    @field_validator("management_policies")
    @classmethod
    def validate_policies(cls, v: List[str]) -> List[str]:
        return validate_management_policies(v)


class ResourceUpdate(BaseModel):
    """Request model for overwriting a resource's spec."""

    spec: Dict[str, Any] = Field(..., description="Replacement specification")
    management_policies: Optional[List[str]] = Field(
        default=None, description="Replacement management policies, if given"
    )

    @field_validator("spec")
    @classmethod
    def validate_spec_size(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        return validate_json_size(v, "spec")

    @field_validator("management_policies")
    @classmethod
    def validate_policies(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return v if v is None else validate_management_policies(v)


class ResourceResponse(BaseModel):
    """Response model for a managed resource."""

    id: int
    kind: str
    namespace: str
    name: str
    provider: str
    spec: Dict[str, Any]
    status: Dict[str, Any] = {}
    generation: int
    observed_generation: int
    finalizers: List[str] = []
    management_policies: List[str] = ["*"]
    retry_count: int = 0
    created_at: datetime
    updated_at: datetime
    last_reconcile_time: Optional[datetime] = None
    next_reconcile_time: Optional[datetime] = None
    deleted_at: Optional[datetime] = None


class ReconciliationHistoryResponse(BaseModel):
    """Response model for reconciliation history."""

    id: int
    resource_id: int
    generation: int
    success: bool
    action: str
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None
    trigger_reason: Optional[str] = None
    drift_detected: bool = False
    reconcile_time: datetime


# Provider config models


class ProviderConfigCreate(BaseModel):
    """Request model for creating a provider configuration."""

    name: str = Field(..., description="Provider config name", examples=["default"])
    credentials_source: str = Field(
        default="None",
        description="Where credentials come from: None, Environment, Filesystem, Secret",
    )
    credentials_ref: Dict[str, Any] = Field(
        default_factory=dict,
        description="Source-specific reference, e.g. {'env': 'TUG_TOKEN'}",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("credentials_source")
    @classmethod
    def validate_credentials_source(cls, v: str) -> str:
        if v not in CREDENTIALS_SOURCES:
            raise ValueError(
                f"credentials_source must be one of: {', '.join(CREDENTIALS_SOURCES)}"
            )
        return v


class ProviderConfigResponse(BaseModel):
    """Response model for a provider configuration."""

    id: int
    name: str
    credentials_source: str
    credentials_ref: Dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime


class SecretPut(BaseModel):
    """Request model for storing a credentials secret."""

    data: Dict[str, str] = Field(..., description="Secret key/value pairs")


class ProviderInfo(BaseModel):
    """Response model for provider information."""

    name: str
    version: str
    kinds: List[str]


class PluginInfo(BaseModel):
    """Response model for plugin information."""

    name: str
    version: str


def _is_unique_violation(error: Exception) -> bool:
    return "unique constraint" in str(error).lower()


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for managed resources.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.server = None
        self._on_resource_event: Optional[ResourceCallback] = None
        self._db_manager = None
        self._event_bus: Optional[EventBus] = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
            "log_level": os.getenv("LOG_LEVEL", "INFO").lower(),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin and its routes."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)

        self.app = FastAPI(
            title="Tug Operator API",
            description="Submit managed resources and follow their reconciliation",
            version=self.version,
        )
        self._setup_routes()

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_db_manager(self, db_manager) -> None:
        """Set the database manager instance."""
        self._db_manager = db_manager

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus instance for publishing and streaming events."""
        self._event_bus = event_bus

    def _require_db(self):
        if not self._db_manager:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._db_manager

    async def _publish(self, event_type: EventType, resource: Dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.publish(ResourceEvent.from_resource(event_type, resource))

    async def _notify(self, event_type: str, resource: Dict[str, Any]) -> None:
        if self._on_resource_event:
            await self._on_resource_event(
                event_type,
                ResourceRequest(
                    kind=resource["kind"],
                    name=resource["name"],
                    spec=resource.get("spec", {}),
                    namespace=resource.get("namespace", "default"),
                    resource_id=resource["id"],
                ),
            )

    def _validate_spec(self, kind: str, spec: Dict[str, Any]) -> None:
        from plugins.registry import get_registry

        provider = get_registry().get_provider_for_kind(kind)
        if provider is None:
            raise HTTPException(status_code=400, detail=f"No provider manages kind {kind}")
        is_valid, error = validate_resource_spec(provider, kind, spec)
        if not is_valid:
            raise HTTPException(status_code=400, detail=f"Spec validation failed: {error}")

    def _stream(self, filter_fn) -> StreamingResponse:
        """Open an SSE stream over the event bus."""

        async def event_generator():
            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                pass
            finally:
                await self._event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Resources CRUD: /api/v1/resources
        - Resource by key: /api/v1/resources/by-name/{kind}/{namespace}/{name}
        - Reconciliation: POST /api/v1/resources/{id}/reconcile
        - History: GET /api/v1/resources/{id}/history
        - Connection details: GET /api/v1/resources/{id}/connection-details
        - Provider configs: /api/v1/provider-configs
        - Secrets: PUT /api/v1/secrets/{namespace}/{name}
        - Discovery: /api/v1/providers, /api/v1/plugins/inputs
        - Events: GET /api/v1/events (SSE)

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "tug-operator"}

        # ==================== Resource Endpoints ====================

        @self.app.post(
            "/api/v1/resources", response_model=ResourceResponse, status_code=201
        )
        async def create_resource(resource: ResourceCreate):
            """Create a new managed resource."""
            db = self._require_db()

            validation = validate_kind(resource.kind)
            if not validation.is_valid:
                raise HTTPException(status_code=400, detail=validation.error_message)
            self._validate_spec(resource.kind, resource.spec)

            from plugins.registry import get_registry

            provider = get_registry().get_provider_for_kind(resource.kind)

            try:
                resource_id = await db.create_resource(
                    kind=resource.kind,
                    name=resource.name,
                    provider=provider.name,
                    spec=resource.spec,
                    namespace=resource.namespace,
                    management_policies=resource.management_policies,
                )
            except Exception as e:
                if _is_unique_violation(e):
                    raise HTTPException(
                        status_code=409,
                        detail=f"{resource.kind} {resource.namespace}/"
                        f"{resource.name} already exists",
                    )
                logger.error(f"Error creating resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            created = await db.get_resource(resource_id)
            if not created:
                raise HTTPException(status_code=500, detail="Resource vanished after create")

            await self._notify("created", created)
            await self._publish(EventType.CREATED, created)
            return ResourceResponse(**created)

        @self.app.get("/api/v1/resources", response_model=List[ResourceResponse])
        async def list_resources(
            kind: Optional[str] = None,
            namespace: Optional[str] = None,
            limit: int = 100,
        ):
            """List managed resources with optional filters."""
            db = self._require_db()
            try:
                resources = await db.list_resources(
                    kind=kind, namespace=namespace, limit=limit
                )
                return [ResourceResponse(**r) for r in resources]
            except Exception as e:
                logger.error(f"Error listing resources: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/resources/by-name/{kind}/{namespace}/{name}",
            response_model=ResourceResponse,
        )
        async def get_resource_by_name(kind: str, namespace: str, name: str):
            """Get a managed resource by its kind, namespace and name."""
            db = self._require_db()
            resource = await db.get_resource_by_name(kind, namespace, name)
            if not resource:
                raise HTTPException(status_code=404, detail="Resource not found")
            return ResourceResponse(**resource)

        @self.app.get(
            "/api/v1/resources/{resource_id}", response_model=ResourceResponse
        )
        async def get_resource_by_id(resource_id: int):
            """Get a managed resource by ID."""
            db = self._require_db()
            resource = await db.get_resource(resource_id)
            if not resource:
                raise HTTPException(status_code=404, detail="Resource not found")
            return ResourceResponse(**resource)

        @self.app.put(
            "/api/v1/resources/{resource_id}", response_model=ResourceResponse
        )
        async def update_resource(resource_id: int, update: ResourceUpdate):
            """
            Overwrite a resource's spec.

            The write is a flat overwrite; whoever writes last wins.
            """
            db = self._require_db()
            current = await db.get_resource(resource_id)
            if not current:
                raise HTTPException(status_code=404, detail="Resource not found")

            self._validate_spec(current["kind"], update.spec)

            try:
                await db.replace_resource_spec(
                    resource_id,
                    update.spec,
                    management_policies=update.management_policies,
                )
            except ValueError:
                raise HTTPException(status_code=404, detail="Resource not found")

            updated = await db.get_resource(resource_id)
            if not updated:
                raise HTTPException(status_code=404, detail="Resource not found")

            await self._notify("updated", updated)
            await self._publish(EventType.MODIFIED, updated)
            return ResourceResponse(**updated)

        @self.app.delete("/api/v1/resources/{resource_id}", status_code=202)
        async def delete_resource(resource_id: int):
            """Request deletion; the resource is removed once finalized."""
            db = self._require_db()
            resource = await db.get_resource(resource_id)
            if not resource:
                raise HTTPException(status_code=404, detail="Resource not found")

            await db.delete_resource(resource_id)

            await self._notify("deleted", resource)
            await self._publish(EventType.DELETED, resource)
            return {
                "message": "Resource marked for deletion",
                "resource_id": resource_id,
            }

        @self.app.post("/api/v1/resources/{resource_id}/reconcile", status_code=202)
        async def trigger_reconciliation(resource_id: int):
            """Manually trigger reconciliation for a resource."""
            db = self._require_db()
            resource = await db.get_resource(resource_id)
            if not resource:
                raise HTTPException(status_code=404, detail="Resource not found")

            await db.mark_resource_for_reconciliation(resource_id)
            await self._publish(EventType.RECONCILE_REQUESTED, resource)
            return {
                "message": "Reconciliation triggered",
                "resource_id": resource_id,
            }

        @self.app.get(
            "/api/v1/resources/{resource_id}/history",
            response_model=List[ReconciliationHistoryResponse],
        )
        async def get_reconciliation_history(resource_id: int, limit: int = 10):
            """Get reconciliation history for a resource."""
            db = self._require_db()
            history = await db.get_reconciliation_history(resource_id, limit)
            return [ReconciliationHistoryResponse(**record) for record in history]

        @self.app.get("/api/v1/resources/{resource_id}/connection-details")
        async def get_connection_details(resource_id: int):
            """Get the connection details the provider published for a resource."""
            db = self._require_db()
            resource = await db.get_resource(resource_id)
            if not resource:
                raise HTTPException(status_code=404, detail="Resource not found")
            status = resource.get("status") or {}
            return {"connection_details": status.get("connection_details", {})}

        @self.app.get("/api/v1/resources/{resource_id}/events")
        async def stream_resource_events(resource_id: int):
            """SSE stream for a specific resource."""
            db = self._require_db()
            if not self._event_bus:
                raise HTTPException(
                    status_code=503, detail="Event streaming not available"
                )
            resource = await db.get_resource(resource_id)
            if not resource:
                raise HTTPException(status_code=404, detail="Resource not found")

            return self._stream(lambda event: event.resource_id == resource_id)

        # ==================== Provider Config Endpoints ====================

        @self.app.post(
            "/api/v1/provider-configs",
            response_model=ProviderConfigResponse,
            status_code=201,
        )
        async def create_provider_config(pc: ProviderConfigCreate):
            """Create a provider configuration."""
            db = self._require_db()
            try:
                await db.create_provider_config(
                    name=pc.name,
                    credentials_source=pc.credentials_source,
                    credentials_ref=pc.credentials_ref,
                )
            except Exception as e:
                if _is_unique_violation(e):
                    raise HTTPException(
                        status_code=409,
                        detail=f"Provider config '{pc.name}' already exists",
                    )
                logger.error(f"Error creating provider config: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            created = await db.get_provider_config(pc.name)
            return ProviderConfigResponse(**created)

        @self.app.get(
            "/api/v1/provider-configs", response_model=List[ProviderConfigResponse]
        )
        async def list_provider_configs(limit: int = 100):
            """List provider configurations."""
            db = self._require_db()
            configs = await db.list_provider_configs(limit=limit)
            return [ProviderConfigResponse(**pc) for pc in configs]

        @self.app.get(
            "/api/v1/provider-configs/{name}", response_model=ProviderConfigResponse
        )
        async def get_provider_config(name: str):
            """Get a provider configuration by name."""
            db = self._require_db()
            pc = await db.get_provider_config(name)
            if not pc:
                raise HTTPException(status_code=404, detail="Provider config not found")
            return ProviderConfigResponse(**pc)

        @self.app.delete("/api/v1/provider-configs/{name}", status_code=204)
        async def delete_provider_config(name: str):
            """Delete a provider configuration (fails while resources use it)."""
            db = self._require_db()
            if not await db.get_provider_config(name):
                raise HTTPException(status_code=404, detail="Provider config not found")
            deleted = await db.delete_provider_config(name)
            if not deleted:
                raise HTTPException(
                    status_code=409,
                    detail="Cannot delete: resources still use this provider config",
                )
            return None

        @self.app.put("/api/v1/secrets/{namespace}/{name}", status_code=204)
        async def put_secret(namespace: str, name: str, secret: SecretPut):
            """Create or replace a secret for the Secret credentials source."""
            db = self._require_db()
            await db.put_secret(namespace, name, secret.data)
            return None

        # ==================== Discovery Endpoints ====================

        @self.app.get("/api/v1/providers", response_model=List[ProviderInfo])
        async def list_providers():
            """List registered providers and the kinds they manage."""
            from plugins.registry import get_registry

            registry = get_registry()
            providers = []
            for name in registry.list_providers():
                info = registry.get_provider_info(name)
                if info:
                    providers.append(ProviderInfo(**info))
            return providers

        @self.app.get("/api/v1/plugins/inputs", response_model=List[PluginInfo])
        async def list_input_plugins():
            """List available input plugins."""
            from plugins.registry import get_registry

            registry = get_registry()
            plugins = []
            for name in registry.list_input_plugins():
                info = registry.get_input_plugin_info(name)
                if info:
                    plugins.append(PluginInfo(**info))
            return plugins

        # ==================== Event Streaming ====================

        @self.app.get("/api/v1/events")
        async def stream_all_events(kind: Optional[str] = None):
            """
            SSE stream of all resource events.

            Optionally filter by kind.
            """
            if not self._event_bus:
                raise HTTPException(
                    status_code=503, detail="Event streaming not available"
                )

            filter_fn = None
            if kind:
                filter_fn = lambda event: event.resource_kind == kind  # noqa: E731

            return self._stream(filter_fn)

    async def start(self, on_resource_event: ResourceCallback) -> None:
        """Start the HTTP server."""
        self._on_resource_event = on_resource_event

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self._config.get("log_level", "info"),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
