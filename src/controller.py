"""
Tug Controller - Managed resource control loop.

Similar to Kubernetes controllers, continuously reconciles desired state with
actual state. Each pass connects a provider's external client to one
resource, observes it, and then creates, updates or deletes depending on
what was observed and whether deletion was requested.

Scheduling guarantees:
- a bounded number of reconciles run at once (semaphore worker pool);
- a resource is never reconciled concurrently with itself; a resource
  triggered while in flight is reconciled once more afterwards;
- passes are triggered by a periodic scan of due resources and by
  desired-state or reconcile-request events from the event bus;
- failures are requeued with exponential backoff and jitter.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from db import DatabaseManager
from errors import ReconcileError
from events import EventBus, EventType, ResourceEvent
from models import (
    ManagedResource,
    ManagedResourceStatus,
    ManagementPolicy,
    creating,
    deleting,
    reconcile_error,
    reconcile_success,
)
from plugins.providers.base import ExternalConnector, ProviderPlugin
from plugins.registry import PluginRegistry, get_registry

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    poll_interval: int = 60  # re-reconcile healthy resources after this long
    scan_interval: int = 5  # how often to look for due resources
    max_concurrent_reconciles: int = 5
    enabled_providers: Optional[List[str]] = None
    provider_configs: Optional[Dict[str, Dict[str, Any]]] = None

    # Exponential backoff configuration
    backoff_base_delay: int = 5  # base delay in seconds
    backoff_max_delay: int = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    def __post_init__(self):
        if self.enabled_providers is None:
            self.enabled_providers = []
        if self.provider_configs is None:
            self.provider_configs = {}


@dataclass
class ReconcileOutcome:
    """What a single reconcile pass did."""

    success: bool = False
    action: str = "none"  # none, create, update, delete, orphan
    error_message: Optional[str] = None
    drift_detected: bool = False
    requeue_after: Optional[float] = None


def compute_backoff_delay(
    retry_count: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Exponential backoff with jitter.

    ``min(base * 2**min(retry_count, 10), max) * (1 ± jitter_factor)``
    """
    delay = min(base_delay * (2 ** min(retry_count, 10)), max_delay)
    return delay * (1 + (rand() * 2 - 1) * jitter_factor)


def _row_key(row: Dict[str, Any]) -> str:
    return f"{row.get('kind')}/{row.get('namespace') or 'default'}/{row.get('name')}"


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Dispatches each due resource to the provider that manages its kind.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: Optional[PluginRegistry] = None,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.db = db_manager
        self.registry = registry or get_registry()
        self.config = config or ControllerConfig()
        self.poll_interval = self.config.poll_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False
        self._event_bus = event_bus

        # Connectors are built once per provider
        self._connectors: Dict[str, ExternalConnector] = {}

        # Per-resource serialization
        self._in_flight: Set[int] = set()
        self._dirty: Dict[int, str] = {}
        self._tasks: Set[asyncio.Task] = set()

        self._shutdown_event = asyncio.Event()
        self._loop_tasks: List[asyncio.Task] = []

    # ==================== Lifecycle ====================

    async def start(self):
        """Start the scan loop and, if an event bus is set, the watch loop."""
        logger.info("Starting tug controller")
        self.running = True
        self._shutdown_event.clear()

        self._loop_tasks = [asyncio.create_task(self._reconciliation_loop())]
        if self._event_bus:
            self._loop_tasks.append(asyncio.create_task(self._watch_loop()))

        try:
            await asyncio.gather(*self._loop_tasks)
        except asyncio.CancelledError:
            logger.info("Controller loops cancelled")

    async def stop(self):
        """
        Stop the controller.

        Loop tasks and in-flight reconciles are cancelled; every external
        client that was connected is disconnected on the way out.
        """
        logger.info("Stopping tug controller")
        self.running = False
        self._shutdown_event.set()

        loop_tasks, self._loop_tasks = self._loop_tasks, []
        for task in loop_tasks:
            if not task.done():
                task.cancel()
        if loop_tasks:
            await asyncio.gather(*loop_tasks, return_exceptions=True)

        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Sleep until timeout or shutdown. Returns True on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # ==================== Triggers ====================

    def _managed_kinds(self) -> List[str]:
        """Kinds owned by the enabled providers."""
        enabled = self.config.enabled_providers
        kinds = []
        for name in self.registry.list_providers():
            if enabled and name not in enabled:
                continue
            kinds.extend(self.registry.get_provider(name).kinds)
        return kinds

    async def _reconciliation_loop(self):
        """Periodically enqueue resources that are due for reconciliation."""
        while self.running:
            try:
                resources = await self.db.get_resources_needing_reconciliation(
                    kinds=self._managed_kinds(),
                    limit=self.max_concurrent_reconciles * 2,
                )

                if resources:
                    logger.info(
                        f"Found {len(resources)} resources needing reconciliation"
                    )

                for resource in resources:
                    self.enqueue(
                        resource["id"],
                        self._determine_trigger_reason(resource),
                        requeue_if_busy=False,
                    )
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

            if await self._wait_for_shutdown(self.config.scan_interval):
                break

    async def _watch_loop(self):
        """
        Reconcile as soon as desired state of a managed kind changes, or when
        a reconcile is requested through the API.
        """
        kinds = set(self._managed_kinds())

        def filter_fn(event: ResourceEvent) -> bool:
            return event.resource_kind in kinds and (
                event.event_type.changes_desired_state
                or event.event_type is EventType.RECONCILE_REQUESTED
            )

        subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)
        try:
            async for event in subscription:
                logger.debug(
                    f"{event.event_type.value} event for "
                    f"{event.resource_kind}/{event.resource_namespace}/"
                    f"{event.resource_name}"
                )
                if event.event_type is EventType.RECONCILE_REQUESTED:
                    self.enqueue(event.resource_id, "manual")
                else:
                    self.enqueue(event.resource_id, "event")
        finally:
            await self._event_bus.unsubscribe(subscriber_id)

    def enqueue(
        self, resource_id: int, trigger_reason: str, requeue_if_busy: bool = True
    ) -> bool:
        """
        Schedule a reconcile for a resource.

        If the resource is already being reconciled, it is either marked to
        run once more afterwards (requeue_if_busy) or left alone.

        Returns:
            True if a new reconcile task was started.
        """
        if resource_id in self._in_flight:
            if requeue_if_busy:
                self._dirty.setdefault(resource_id, trigger_reason)
            return False

        self._in_flight.add(resource_id)
        task = asyncio.create_task(self._process(resource_id, trigger_reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _process(self, resource_id: int, trigger_reason: str) -> None:
        """Run reconciles for one resource until it is no longer marked dirty."""
        try:
            reason: Optional[str] = trigger_reason
            while reason is not None:
                try:
                    await self.reconcile(resource_id, reason)
                except Exception as e:
                    logger.error(
                        f"Unhandled error reconciling resource {resource_id}: {e}",
                        exc_info=True,
                    )
                reason = self._dirty.pop(resource_id, None)
        finally:
            self._in_flight.discard(resource_id)
            self._dirty.pop(resource_id, None)

    def _determine_trigger_reason(self, resource: Dict[str, Any]) -> str:
        """Determine why this reconciliation was triggered."""
        if resource.get("last_reconcile_time") is None:
            return "initial"
        elif resource.get("deleted_at") is not None:
            return "deletion"
        elif resource.get("generation", 0) > resource.get("observed_generation", 0):
            return "spec_change"
        elif resource.get("retry_count", 0) > 0:
            return "retry"
        else:
            return "scheduled"

    # ==================== Reconcile ====================

    def _get_connector(self, provider: ProviderPlugin) -> ExternalConnector:
        """
        Get or build the connector for a provider.

        Provider configuration is the environment-loaded config overlaid with
        controller-level overrides.
        """
        if provider.name not in self._connectors:
            provider_config = self.registry.get_provider_config(provider.name)
            provider_config.update(self.config.provider_configs.get(provider.name, {}))
            self._connectors[provider.name] = provider.make_connector(
                self.db, provider_config
            )
        return self._connectors[provider.name]

    async def reconcile(
        self, resource_id: int, trigger_reason: str = "scheduled"
    ) -> Optional[ReconcileOutcome]:
        """
        Run one reconcile pass for a resource.

        Callers are responsible for not running two passes for the same
        resource at once; use enqueue() for that.

        Returns:
            The outcome, or None if the resource is gone or unmanaged.
        """
        async with self.semaphore:
            row = await self.db.get_resource(resource_id, include_deleted=True)
            if row is None:
                logger.debug(f"Resource {resource_id} no longer exists, skipping")
                return None

            provider = self.registry.get_provider_for_kind(row["kind"])
            if provider is None:
                logger.warning(
                    f"No provider manages kind '{row['kind']}', "
                    f"skipping resource {resource_id}"
                )
                return None

            start_time = time.monotonic()
            outcome = ReconcileOutcome()

            try:
                resource = provider.resource_from_row(row)
            except Exception as e:
                outcome.error_message = f"cannot read {_row_key(row)}: {e!r}"
                logger.error(f"Failed to reconcile resource {resource_id}: {e!r}")
                await self._fail_unreadable(
                    row,
                    outcome,
                    trigger_reason=trigger_reason,
                    duration_seconds=time.monotonic() - start_time,
                )
                return outcome

            try:
                await self._run_external(provider, resource, outcome)
                outcome.success = True
            except ReconcileError as e:
                outcome.error_message = e.message
                logger.error(f"Failed to reconcile {resource.key}: {e.message}")
            except Exception as e:
                outcome.error_message = f"Reconciliation error: {e}"
                logger.error(f"Error reconciling {resource.key}: {e}", exc_info=True)

            await self._finish(
                provider,
                resource,
                outcome,
                trigger_reason=trigger_reason,
                duration_seconds=time.monotonic() - start_time,
                retry_count=row.get("retry_count", 0),
            )
            return outcome

    async def _run_external(
        self,
        provider: ProviderPlugin,
        resource: ManagedResource,
        outcome: ReconcileOutcome,
    ) -> None:
        """Connect, observe, then create/update/delete as needed."""
        connector = self._get_connector(provider)
        external = await connector.connect(resource)

        try:
            observation = await external.observe(resource)
            outcome.drift_detected = (
                observation.resource_exists and not observation.resource_up_to_date
            )
            details = dict(observation.connection_details)

            if resource.deletion_requested:
                resource.status.set_conditions(deleting())
                if not observation.resource_exists:
                    outcome.action = "delete"
                elif resource.allows(ManagementPolicy.DELETE):
                    logger.info(f"Deleting external resource for {resource.key}")
                    result = await external.delete(resource)
                    details.update(result.connection_details)
                    outcome.action = "delete"
                else:
                    logger.info(
                        f"Delete not in management policies of {resource.key}, "
                        f"orphaning external resource"
                    )
                    outcome.action = "orphan"

            elif not observation.resource_exists:
                if resource.allows(ManagementPolicy.CREATE):
                    logger.info(f"Creating external resource for {resource.key}")
                    resource.status.set_conditions(creating())
                    created = await external.create(resource)
                    details.update(created.connection_details)
                    outcome.action = "create"
                else:
                    logger.info(
                        f"{resource.key} does not exist and Create is not in "
                        f"its management policies"
                    )

            elif not observation.resource_up_to_date:
                if resource.allows(ManagementPolicy.UPDATE):
                    logger.info(f"Drift detected for {resource.key}, updating")
                    updated = await external.update(resource)
                    details.update(updated.connection_details)
                    outcome.action = "update"
                else:
                    logger.info(
                        f"Drift detected for {resource.key}; Update is not in "
                        f"its management policies"
                    )

            else:
                logger.debug(f"{resource.key} is up to date")

            resource.status.connection_details.update(details)

        finally:
            await external.disconnect()

    async def _finish(
        self,
        provider: ProviderPlugin,
        resource: ManagedResource,
        outcome: ReconcileOutcome,
        trigger_reason: str,
        duration_seconds: float,
        retry_count: int,
    ) -> None:
        """Persist status, record history, and schedule the next pass."""
        if outcome.success:
            resource.status.set_conditions(reconcile_success())
        else:
            resource.status.set_conditions(reconcile_error(outcome.error_message))

        try:
            await self.db.record_reconciliation(
                resource_id=resource.id,
                success=outcome.success,
                action=outcome.action,
                error_message=outcome.error_message,
                duration_seconds=duration_seconds,
                trigger_reason=trigger_reason,
                drift_detected=outcome.drift_detected,
            )

            if outcome.success and resource.deletion_requested:
                await self._finalize(provider, resource)
                return

            if outcome.success:
                await self.db.update_resource_status(
                    resource.id,
                    resource.status,
                    observed_generation=resource.generation,
                )
                outcome.requeue_after = self.poll_interval
                await self.db.schedule_reconcile(resource.id, self.poll_interval, 0)
                logger.info(f"Successfully reconciled {resource.key}")
            else:
                await self.db.update_resource_status(resource.id, resource.status)
                outcome.requeue_after = compute_backoff_delay(
                    retry_count,
                    self.config.backoff_base_delay,
                    self.config.backoff_max_delay,
                    self.config.backoff_jitter_factor,
                )
                await self.db.schedule_reconcile(
                    resource.id, outcome.requeue_after, retry_count + 1
                )
                logger.info(
                    f"Requeued {resource.key} in {outcome.requeue_after:.1f}s "
                    f"(attempt {retry_count + 1})"
                )

            if outcome.success and self._event_bus:
                updated = await self.db.get_resource(resource.id)
                if updated:
                    await self._event_bus.publish(
                        ResourceEvent.from_resource(EventType.RECONCILED, updated)
                    )

        except Exception as e:
            logger.error(
                f"Could not persist reconcile result for {resource.key}: {e}",
                exc_info=True,
            )

    async def _fail_unreadable(
        self,
        row: Dict[str, Any],
        outcome: ReconcileOutcome,
        trigger_reason: str,
        duration_seconds: float,
    ) -> None:
        """Record a failed pass for a row the provider could not map."""
        try:
            status = ManagedResourceStatus.from_dict(row.get("status"))
        except Exception:
            logger.warning(f"Discarding unreadable status of {_row_key(row)}")
            status = ManagedResourceStatus()
        status.set_conditions(reconcile_error(outcome.error_message))

        retry_count = row.get("retry_count", 0)
        try:
            await self.db.record_reconciliation(
                resource_id=row["id"],
                success=False,
                action=outcome.action,
                error_message=outcome.error_message,
                duration_seconds=duration_seconds,
                trigger_reason=trigger_reason,
                drift_detected=False,
            )
            await self.db.update_resource_status(row["id"], status)
            outcome.requeue_after = compute_backoff_delay(
                retry_count,
                self.config.backoff_base_delay,
                self.config.backoff_max_delay,
                self.config.backoff_jitter_factor,
            )
            await self.db.schedule_reconcile(
                row["id"], outcome.requeue_after, retry_count + 1
            )
        except Exception as e:
            logger.error(
                f"Could not persist reconcile result for {_row_key(row)}: {e}",
                exc_info=True,
            )

    async def _finalize(self, provider: ProviderPlugin, resource: ManagedResource):
        """Drop this provider's finalizer and hard-delete once none remain."""
        await self.db.update_resource_status(resource.id, resource.status)
        await self.db.remove_finalizer(resource.id, provider.name)
        remaining = await self.db.get_finalizers(resource.id)
        if not remaining:
            await self.db.hard_delete_resource(resource.id)
            logger.info(f"Finalized and deleted {resource.key}")
        else:
            logger.info(f"Finalizer removed for {resource.key}, waiting on: {remaining}")
            await self.db.schedule_reconcile(resource.id, self.poll_interval, 0)
