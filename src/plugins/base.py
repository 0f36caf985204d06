"""
Core plugin types and dataclasses.

This module contains shared types used across the plugin system: the
results external clients hand back to the controller, and the resource
request that input plugins pass along.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from models import ConnectionDetails

logger = logging.getLogger(__name__)


@dataclass
class ExternalObservation:
    """What an external client saw when observing a resource."""

    resource_exists: bool = False
    resource_up_to_date: bool = False
    connection_details: ConnectionDetails = field(default_factory=dict)


@dataclass
class ExternalCreation:
    """Result of creating an external resource."""

    connection_details: ConnectionDetails = field(default_factory=dict)


@dataclass
class ExternalUpdate:
    """
    Result of updating an external resource.

    The default value is the zero-effect result: nothing was written.
    """

    connection_details: ConnectionDetails = field(default_factory=dict)
    applied: bool = False


@dataclass
class ExternalDelete:
    """Result of deleting an external resource."""

    connection_details: ConnectionDetails = field(default_factory=dict)


@dataclass
class ResourceRequest:
    """A managed resource as submitted by an input source."""

    kind: str
    name: str
    spec: Dict[str, Any]
    namespace: str = "default"
    resource_id: Optional[int] = None
