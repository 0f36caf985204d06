"""
Managed Resource Model - Typed desired/observed state for managed resources.

A managed resource pairs a spec (desired state, written by users and by
providers) with a status block of conditions and connection details.
Resources are transient per reconcile: they are loaded from the store,
handed to a provider's external client, and persisted again by the
controller.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

# Connection details are opaque to the controller: string keys, string values.
ConnectionDetails = Dict[str, str]


class ConditionType(Enum):
    """Types of status conditions."""

    READY = "Ready"
    SYNCED = "Synced"


class ConditionStatus(Enum):
    """Tri-state value of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ManagementPolicy(Enum):
    """Which actions the controller may take on a resource's external side."""

    ALL = "*"
    OBSERVE = "Observe"
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    LATE_INITIALIZE = "LateInitialize"


DEFAULT_MANAGEMENT_POLICIES = [ManagementPolicy.ALL.value]


class ConditionReason(Enum):
    """Reasons attached to conditions."""

    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"
    CREATING = "Creating"
    DELETING = "Deleting"
    RECONCILE_SUCCESS = "ReconcileSuccess"
    RECONCILE_ERROR = "ReconcileError"


def _utcnow() -> str:
    return datetime.utcnow().isoformat() + "Z"


@dataclass
class Condition:
    """A single named condition on a resource status."""

    type: ConditionType
    status: ConditionStatus
    reason: ConditionReason
    message: str = ""
    last_transition_time: str = field(default_factory=_utcnow)

    def equal_ignoring_time(self, other: "Condition") -> bool:
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "status": self.status.value,
            "reason": self.reason.value,
            "message": self.message,
            "last_transition_time": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=ConditionType(data["type"]),
            status=ConditionStatus(data["status"]),
            reason=ConditionReason(data["reason"]),
            message=data.get("message", ""),
            last_transition_time=data.get("last_transition_time") or _utcnow(),
        )


def available() -> Condition:
    """The external resource is available for use."""
    return Condition(
        ConditionType.READY, ConditionStatus.TRUE, ConditionReason.AVAILABLE
    )


def unavailable() -> Condition:
    """The external resource is not currently available for use."""
    return Condition(
        ConditionType.READY, ConditionStatus.FALSE, ConditionReason.UNAVAILABLE
    )


def creating() -> Condition:
    """The external resource is being created."""
    return Condition(
        ConditionType.READY, ConditionStatus.FALSE, ConditionReason.CREATING
    )


def deleting() -> Condition:
    """The external resource is being deleted."""
    return Condition(
        ConditionType.READY, ConditionStatus.FALSE, ConditionReason.DELETING
    )


def reconcile_success() -> Condition:
    """The last reconcile pass completed without error."""
    return Condition(
        ConditionType.SYNCED, ConditionStatus.TRUE, ConditionReason.RECONCILE_SUCCESS
    )


def reconcile_error(err: Union[Exception, str]) -> Condition:
    """The last reconcile pass failed with the given error."""
    return Condition(
        ConditionType.SYNCED,
        ConditionStatus.FALSE,
        ConditionReason.RECONCILE_ERROR,
        message=str(err),
    )


@dataclass
class ManagedResourceStatus:
    """Observed state: conditions plus opaque connection details."""

    conditions: List[Condition] = field(default_factory=list)
    connection_details: ConnectionDetails = field(default_factory=dict)

    def get_condition(self, condition_type: ConditionType) -> Optional[Condition]:
        """Return the condition of the given type, if set."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_conditions(self, *conditions: Condition) -> None:
        """
        Set conditions, replacing any existing condition of the same type.

        The transition time of an existing condition is kept when nothing
        but the timestamp would change.
        """
        for new in conditions:
            for i, existing in enumerate(self.conditions):
                if existing.type != new.type:
                    continue
                if not existing.equal_ignoring_time(new):
                    self.conditions[i] = new
                break
            else:
                self.conditions.append(new)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conditions": [c.to_dict() for c in self.conditions],
            "connection_details": dict(self.connection_details),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ManagedResourceStatus":
        data = data or {}
        return cls(
            conditions=[Condition.from_dict(c) for c in data.get("conditions", [])],
            connection_details=dict(data.get("connection_details") or {}),
        )


@dataclass
class ManagedResource(ABC):
    """
    Base class for all managed resources.

    Subclasses set ``KIND``, carry a typed ``spec`` and serialize it in
    ``spec_dict``. Identity is the (kind, namespace, name) key; ``id`` is
    the backing store's row id. ``management_policies`` limits what the
    controller may do to the external resource; ``["*"]`` allows everything.
    """

    KIND: ClassVar[str] = ""

    name: str
    namespace: str = "default"
    id: Optional[int] = None
    generation: int = 1
    observed_generation: int = 0
    finalizers: List[str] = field(default_factory=list)
    deletion_requested: bool = False
    status: ManagedResourceStatus = field(default_factory=ManagedResourceStatus)
    management_policies: List[str] = field(
        default_factory=lambda: list(DEFAULT_MANAGEMENT_POLICIES)
    )

    @property
    def kind(self) -> str:
        return self.KIND

    @property
    def key(self) -> str:
        """Identity key used for serialization and logging."""
        return f"{self.kind}/{self.namespace}/{self.name}"

    def allows(self, policy: ManagementPolicy) -> bool:
        """Whether the management policies permit the given action."""
        return (
            ManagementPolicy.ALL.value in self.management_policies
            or policy.value in self.management_policies
        )

    @abstractmethod
    def spec_dict(self) -> Dict[str, Any]:
        """Serialize the spec to a JSON-compatible dict."""


@dataclass
class TugResourceSpec:
    """
    Desired state of a TugResource.

    ``authoritative_value`` is the provider's source of truth;
    ``contended_value`` may also be written by other actors.
    """

    authoritative_value: int
    contended_value: int
    provider_config_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "authoritative_value": self.authoritative_value,
            "contended_value": self.contended_value,
        }
        if self.provider_config_ref is not None:
            data["provider_config_ref"] = self.provider_config_ref
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TugResourceSpec":
        return cls(
            authoritative_value=int(data["authoritative_value"]),
            contended_value=int(data["contended_value"]),
            provider_config_ref=data.get("provider_config_ref"),
        )


@dataclass
class TugResource(ManagedResource):
    """A managed resource whose contended value is pulled to its authoritative value."""

    KIND: ClassVar[str] = "TugResource"

    spec: TugResourceSpec = field(
        default_factory=lambda: TugResourceSpec(authoritative_value=0, contended_value=0)
    )

    def spec_dict(self) -> Dict[str, Any]:
        return self.spec.to_dict()

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TugResource":
        """Build a TugResource from a parsed ``managed_resources`` row."""
        return cls(
            id=row.get("id"),
            name=row["name"],
            namespace=row.get("namespace") or "default",
            generation=row.get("generation", 1),
            observed_generation=row.get("observed_generation", 0),
            finalizers=list(row.get("finalizers") or []),
            deletion_requested=row.get("deleted_at") is not None,
            spec=TugResourceSpec.from_dict(row.get("spec") or {}),
            status=ManagedResourceStatus.from_dict(row.get("status")),
            management_policies=list(
                row.get("management_policies") or DEFAULT_MANAGEMENT_POLICIES
            ),
        )


def up_to_date(spec: TugResourceSpec) -> bool:
    """A TugResource is up to date when its contended value matches the authoritative one."""
    return spec.contended_value == spec.authoritative_value
