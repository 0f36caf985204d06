"""
Database Manager - PostgreSQL schema and operations.

Stores managed resources, reconciliation history, provider configurations
and credential secrets. Resource writes are flat overwrites: the last
writer wins and no merge is attempted.
"""

import asyncpg
import json
import logging
from typing import Any, Dict, List, Optional

from migrate import run_migrations
from models import (
    DEFAULT_MANAGEMENT_POLICIES,
    ManagedResource,
    ManagedResourceStatus,
)

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Manages PostgreSQL database operations for the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Managed Resource Methods ====================

    async def create_resource(
        self,
        kind: str,
        name: str,
        provider: str,
        spec: Dict[str, Any],
        namespace: str = "default",
        finalizers: Optional[List[str]] = None,
        management_policies: Optional[List[str]] = None,
    ) -> int:
        """
        Create a new managed resource.

        Args:
            kind: Managed resource kind (e.g., 'TugResource')
            name: Resource name
            provider: Name of the provider plugin that owns the kind
            spec: Resource specification
            namespace: Resource namespace
            finalizers: Initial finalizers list (defaults to [provider])
            management_policies: Allowed external actions (defaults to ["*"])
        """
        if finalizers is None:
            finalizers = [provider]
        if management_policies is None:
            management_policies = list(DEFAULT_MANAGEMENT_POLICIES)

        async with self.pool.acquire() as conn:
            resource_id = await conn.fetchval(
                """
                INSERT INTO managed_resources (
                    kind, namespace, name, provider, spec,
                    finalizers, management_policies, next_reconcile_time
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, NOW())
                RETURNING id
                """,
                kind,
                namespace,
                name,
                provider,
                json.dumps(spec),
                json.dumps(finalizers),
                json.dumps(management_policies),
            )

            logger.info(
                f"Created {kind} {namespace}/{name} with ID {resource_id} "
                f"owned by {provider}"
            )
            return resource_id

    async def get_resource(
        self, resource_id: int, include_deleted: bool = False
    ) -> Optional[Dict[str, Any]]:
        """
        Get a resource by ID.

        Soft-deleted resources awaiting finalization are only returned when
        include_deleted is set.
        """
        query = "SELECT * FROM managed_resources WHERE id = $1"
        if not include_deleted:
            query += " AND deleted_at IS NULL"

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, resource_id)
            if not row:
                return None
            return self._parse_resource_row(row)

    async def get_resource_by_name(
        self, kind: str, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """Get a resource by its (kind, namespace, name) key."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM managed_resources
                WHERE kind = $1
                  AND namespace = $2
                  AND name = $3
                  AND deleted_at IS NULL
                """,
                kind,
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_resource_row(row)

    async def list_resources(
        self,
        kind: Optional[str] = None,
        namespace: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """List resources with optional filters."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM managed_resources WHERE deleted_at IS NULL"
            params = []
            param_count = 0

            if kind:
                param_count += 1
                query += f" AND kind = ${param_count}"
                params.append(kind)

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            param_count += 1
            query += f" ORDER BY created_at DESC LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_resource_row(row) for row in rows]

    async def update_resource(self, resource: ManagedResource) -> int:
        """
        Overwrite a resource's spec and status with the in-memory copy.

        This is a flat overwrite with no version check: concurrent writers
        race and the last one wins. The generation is bumped when the spec
        changes.

        Args:
            resource: The managed resource to persist

        Returns:
            The resource's generation after the write

        Raises:
            ValueError: If the resource has no ID or no longer exists
        """
        if resource.id is None:
            raise ValueError(f"Resource {resource.key} has no ID")

        async with self.pool.acquire() as conn:
            generation = await conn.fetchval(
                """
                UPDATE managed_resources
                SET generation = CASE
                        WHEN spec = $1::jsonb THEN generation
                        ELSE generation + 1
                    END,
                    spec = $1::jsonb,
                    status = $2::jsonb,
                    updated_at = NOW()
                WHERE id = $3
                RETURNING generation
                """,
                json.dumps(resource.spec_dict()),
                json.dumps(resource.status.to_dict()),
                resource.id,
            )

        if generation is None:
            raise ValueError(f"Resource {resource.id} not found")

        resource.generation = generation
        return generation

    async def replace_resource_spec(
        self,
        resource_id: int,
        spec: Dict[str, Any],
        management_policies: Optional[List[str]] = None,
    ) -> int:
        """
        Replace a resource's spec on behalf of an external writer.

        Management policies are replaced too when given. Also schedules the
        resource for immediate reconciliation.

        Returns:
            The resource's generation after the write

        Raises:
            ValueError: If the resource does not exist
        """
        async with self.pool.acquire() as conn:
            generation = await conn.fetchval(
                """
                UPDATE managed_resources
                SET generation = CASE
                        WHEN spec = $1::jsonb THEN generation
                        ELSE generation + 1
                    END,
                    spec = $1::jsonb,
                    management_policies = COALESCE($3::jsonb, management_policies),
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE id = $2 AND deleted_at IS NULL
                RETURNING generation
                """,
                json.dumps(spec),
                resource_id,
                json.dumps(management_policies)
                if management_policies is not None
                else None,
            )

        if generation is None:
            raise ValueError(f"Resource {resource_id} not found")

        logger.info(f"Replaced spec of resource {resource_id} (generation {generation})")
        return generation

    async def delete_resource(self, resource_id: int):
        """Mark a resource for deletion (soft delete)."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_resources
                SET deleted_at = NOW(),
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE id = $1 AND deleted_at IS NULL
                """,
                resource_id,
            )

            logger.info(f"Marked resource {resource_id} for deletion")

    async def update_resource_status(
        self,
        resource_id: int,
        status: ManagedResourceStatus,
        observed_generation: Optional[int] = None,
    ) -> None:
        """Persist a resource's status block (conditions and connection details)."""
        async with self.pool.acquire() as conn:
            if observed_generation is None:
                await conn.execute(
                    """
                    UPDATE managed_resources
                    SET status = $1::jsonb, updated_at = NOW()
                    WHERE id = $2
                    """,
                    json.dumps(status.to_dict()),
                    resource_id,
                )
            else:
                await conn.execute(
                    """
                    UPDATE managed_resources
                    SET status = $1::jsonb,
                        observed_generation = $2,
                        updated_at = NOW()
                    WHERE id = $3
                    """,
                    json.dumps(status.to_dict()),
                    observed_generation,
                    resource_id,
                )

    async def get_resources_needing_reconciliation(
        self, kinds: List[str], limit: int = 10
    ) -> List[Dict[str, Any]]:
        """
        Get resources of the given kinds that are due for reconciliation.

        Soft-deleted resources are included so their finalizers can run.
        Creation, spec replacement and deletion all set next_reconcile_time
        to NOW(), so the schedule alone decides what is due and failed
        resources wait out their backoff.
        """
        if not kinds:
            return []

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM managed_resources
                WHERE kind = ANY($1::text[])
                  AND (
                    next_reconcile_time IS NULL
                    OR next_reconcile_time <= NOW()
                  )
                ORDER BY
                    CASE WHEN deleted_at IS NOT NULL THEN 0 ELSE 1 END,
                    next_reconcile_time ASC NULLS FIRST
                LIMIT $2
                """,
                kinds,
                limit,
            )

            return [self._parse_resource_row(row) for row in rows]

    async def schedule_reconcile(
        self, resource_id: int, delay_seconds: float, retry_count: int = 0
    ) -> None:
        """
        Record a finished reconcile pass and schedule the next one.

        Args:
            resource_id: The resource ID
            delay_seconds: Seconds until the next reconcile
            retry_count: Consecutive failures so far (0 after a success)
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_resources
                SET next_reconcile_time = NOW() + (INTERVAL '1 second' * $1),
                    last_reconcile_time = NOW(),
                    retry_count = $2
                WHERE id = $3
                """,
                delay_seconds,
                retry_count,
                resource_id,
            )

    async def mark_resource_for_reconciliation(self, resource_id: int):
        """Manually trigger reconciliation for a resource."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_resources
                SET next_reconcile_time = NOW()
                WHERE id = $1
                """,
                resource_id,
            )

    async def record_reconciliation(
        self,
        resource_id: int,
        success: bool,
        action: str,
        error_message: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        trigger_reason: Optional[str] = None,
        drift_detected: bool = False,
    ):
        """Record a reconciliation attempt in history."""
        async with self.pool.acquire() as conn:
            generation = await conn.fetchval(
                "SELECT generation FROM managed_resources WHERE id = $1", resource_id
            )
            if generation is None:
                # Already hard-deleted; history rows cascade with the resource.
                return

            await conn.execute(
                """
                INSERT INTO reconciliation_history (
                    resource_id, generation, success, action, error_message,
                    duration_seconds, trigger_reason, drift_detected
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                resource_id,
                generation,
                success,
                action,
                error_message,
                duration_seconds,
                trigger_reason,
                drift_detected,
            )

    async def get_reconciliation_history(
        self, resource_id: int, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get reconciliation history for a resource."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM reconciliation_history
                WHERE resource_id = $1
                ORDER BY reconcile_time DESC
                LIMIT $2
                """,
                resource_id,
                limit,
            )

            return [dict(row) for row in rows]

    async def hard_delete_resource(self, resource_id: int) -> bool:
        """
        Permanently delete a resource from the database.

        Only succeeds if the resource has been soft-deleted (deleted_at set)
        and all finalizers have been removed.

        Returns:
            True if the resource was deleted, False if not found,
            not soft-deleted, or finalizers remain
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                DELETE FROM managed_resources
                WHERE id = $1
                  AND deleted_at IS NOT NULL
                  AND finalizers = '[]'::jsonb
                RETURNING id
                """,
                resource_id,
            )
            if result:
                logger.info(f"Hard-deleted resource {resource_id}")
                return True
            return False

    async def remove_finalizer(self, resource_id: int, finalizer: str) -> None:
        """Remove a finalizer from a resource."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE managed_resources
                SET finalizers = COALESCE(
                        (SELECT jsonb_agg(elem)
                         FROM jsonb_array_elements(finalizers) AS elem
                         WHERE elem #>> '{}' != $2),
                        '[]'::jsonb
                    ),
                    updated_at = NOW()
                WHERE id = $1
                """,
                resource_id,
                finalizer,
            )

    async def get_finalizers(self, resource_id: int) -> List[str]:
        """
        Get the finalizers list for a resource.

        Returns:
            List of finalizer names, or empty list if resource not found
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                "SELECT finalizers FROM managed_resources WHERE id = $1",
                resource_id,
            )
            if result is None:
                return []
            return json.loads(result) if isinstance(result, str) else result

    # ==================== Provider Config Methods ====================

    async def create_provider_config(
        self,
        name: str,
        credentials_source: str = "None",
        credentials_ref: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Create a provider configuration.

        Args:
            name: Provider config name (referenced by resources)
            credentials_source: One of None, Environment, Filesystem, Secret
            credentials_ref: Source-specific reference (env var, path, secret key)
        """
        if credentials_ref is None:
            credentials_ref = {}

        async with self.pool.acquire() as conn:
            provider_config_id = await conn.fetchval(
                """
                INSERT INTO provider_configs (name, credentials_source, credentials_ref)
                VALUES ($1, $2, $3)
                RETURNING id
                """,
                name,
                credentials_source,
                json.dumps(credentials_ref),
            )
            logger.info(f"Created provider config {name} with ID {provider_config_id}")
            return provider_config_id

    async def get_provider_config(self, name: str) -> Optional[Dict[str, Any]]:
        """Get a provider configuration by name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM provider_configs WHERE name = $1",
                name,
            )
            if not row:
                return None
            return self._parse_provider_config_row(row)

    async def list_provider_configs(self, limit: int = 100) -> List[Dict[str, Any]]:
        """List provider configurations."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM provider_configs ORDER BY name LIMIT $1",
                limit,
            )
            return [self._parse_provider_config_row(row) for row in rows]

    async def delete_provider_config(self, name: str) -> bool:
        """
        Delete a provider configuration.

        Returns False if it does not exist or resources still use it.
        """
        async with self.pool.acquire() as conn:
            count = await conn.fetchval(
                """
                SELECT COUNT(*) FROM provider_config_usages
                WHERE provider_config_name = $1
                """,
                name,
            )
            if count > 0:
                logger.warning(
                    f"Cannot delete provider config {name}: "
                    f"{count} resources still use it"
                )
                return False

            deleted = await conn.fetchval(
                "DELETE FROM provider_configs WHERE name = $1 RETURNING id",
                name,
            )
            if deleted:
                logger.info(f"Deleted provider config {name}")
                return True
            return False

    async def track_provider_config_usage(
        self, provider_config_name: str, resource_id: int, resource_kind: str
    ) -> None:
        """Record that a resource uses a provider configuration (idempotent)."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO provider_config_usages (
                    provider_config_name, resource_id, resource_kind
                )
                VALUES ($1, $2, $3)
                ON CONFLICT (provider_config_name, resource_id) DO NOTHING
                """,
                provider_config_name,
                resource_id,
                resource_kind,
            )

    # ==================== Secret Methods ====================

    async def put_secret(
        self, namespace: str, name: str, data: Dict[str, str]
    ) -> None:
        """Create or replace a secret."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO secrets (namespace, name, data)
                VALUES ($1, $2, $3)
                ON CONFLICT (namespace, name)
                DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
                """,
                namespace,
                name,
                json.dumps(data),
            )
            logger.info(f"Stored secret {namespace}/{name}")

    async def get_secret_value(
        self, namespace: str, name: str, key: str
    ) -> Optional[str]:
        """Get a single key from a secret, or None if absent."""
        async with self.pool.acquire() as conn:
            data = await conn.fetchval(
                "SELECT data FROM secrets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if data is None:
                return None
            if isinstance(data, str):
                data = json.loads(data)
            return data.get(key)

    # ==================== Row Parsing ====================

    def _parse_resource_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Parse a managed resource row, converting JSON fields.

        Args:
            row: An asyncpg.Record from a database query

        Returns:
            A dictionary with the resource data, with JSON fields parsed
        """
        result = dict(row)
        result["spec"] = self._load_json(result.get("spec"), {})
        result["status"] = self._load_json(result.get("status"), {})
        result["finalizers"] = self._load_json(result.get("finalizers"), [])
        result["management_policies"] = self._load_json(
            result.get("management_policies"), list(DEFAULT_MANAGEMENT_POLICIES)
        )
        return result

    def _parse_provider_config_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """Parse a provider_configs row from the database."""
        result = dict(row)
        result["credentials_ref"] = self._load_json(result.get("credentials_ref"), {})
        return result

    @staticmethod
    def _load_json(value: Any, default: Any) -> Any:
        if value is None or value == "":
            return default
        if isinstance(value, str):
            return json.loads(value)
        return value
