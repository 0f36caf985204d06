"""
TugResource external client.

The external system behind a TugResource does nothing; the only state that
matters lives in the managed resource itself. Convergence pulls
spec.contended_value to spec.authoritative_value with a single flat write
to the backing store. Other actors may write contended_value at any time;
this client always overwrites it with its own authoritative value.
"""

import logging
from typing import Any, Optional

from errors import PersistenceWriteError, TypeMismatchError
from models import ManagedResource, TugResource, available, up_to_date
from plugins.base import (
    ExternalCreation,
    ExternalDelete,
    ExternalObservation,
    ExternalUpdate,
)
from plugins.providers.base import ExternalClient

logger = logging.getLogger(__name__)


class TugExternal(ExternalClient):
    """Reconciles TugResources against a no-op external service."""

    def __init__(self, store: Any, service: Optional[Any] = None):
        self.store = store
        self.service = service

    def _as_tug(self, resource: ManagedResource) -> TugResource:
        if not isinstance(resource, TugResource):
            raise TypeMismatchError(TugResource.KIND, resource)
        return resource

    async def observe(self, resource: ManagedResource) -> ExternalObservation:
        cr = self._as_tug(resource)

        # Health is reported regardless of drift.
        cr.status.set_conditions(available())

        return ExternalObservation(
            resource_exists=True,
            resource_up_to_date=up_to_date(cr.spec),
            connection_details={},
        )

    async def create(self, resource: ManagedResource) -> ExternalCreation:
        cr = self._as_tug(resource)

        logger.info(f"Creating: {cr.key} spec={cr.spec}")

        return ExternalCreation(connection_details={})

    async def update(self, resource: ManagedResource) -> ExternalUpdate:
        cr = self._as_tug(resource)

        if up_to_date(cr.spec):
            return ExternalUpdate()

        cr.spec.contended_value = cr.spec.authoritative_value

        try:
            await self.store.update_resource(cr)
        except Exception as e:
            raise PersistenceWriteError(cr.key, e) from e

        logger.info(
            f"Set contended_value of {cr.key} to {cr.spec.authoritative_value}"
        )
        return ExternalUpdate(connection_details={}, applied=True)

    async def delete(self, resource: ManagedResource) -> ExternalDelete:
        cr = self._as_tug(resource)

        logger.info(f"Deleting: {cr.key} spec={cr.spec}")

        return ExternalDelete()

    async def disconnect(self) -> None:
        service, self.service = self.service, None
        close = getattr(service, "close", None)
        if close is not None:
            close()
