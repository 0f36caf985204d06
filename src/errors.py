"""
Reconcile error taxonomy.

Every error raised by a connector or an external client derives from
ReconcileError. The controller catches these at the reconcile boundary,
records them on the resource status, and requeues with backoff.
"""

from typing import Any


class ReconcileError(Exception):
    """Base class for errors surfaced to the controller during a reconcile."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TypeMismatchError(ReconcileError):
    """Raised when an operation receives a resource of an unexpected kind."""

    def __init__(self, expected_kind: str, actual: Any):
        self.expected_kind = expected_kind
        self.actual_kind = getattr(actual, "kind", None) or type(actual).__name__
        super().__init__(
            f"managed resource is not a {expected_kind} "
            f"(got {self.actual_kind})"
        )


class PersistenceWriteError(ReconcileError):
    """Raised when writing a resource to the backing store fails."""

    def __init__(self, resource_key: str, cause: BaseException):
        self.resource_key = resource_key
        self.cause = cause
        super().__init__(f"cannot update {resource_key}: {cause}")


class ConnectError(ReconcileError):
    """Raised when a connector cannot produce an external client."""

    step = "connect"
    default_message = "cannot connect to external system"

    def __init__(self, detail: str = ""):
        message = self.default_message
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class TrackUsageError(ConnectError):
    step = "track_usage"
    default_message = "cannot track ProviderConfig usage"


class GetConfigError(ConnectError):
    step = "get_config"
    default_message = "cannot get ProviderConfig"


class GetCredentialsError(ConnectError):
    step = "get_credentials"
    default_message = "cannot get credentials"


class ClientConstructionError(ConnectError):
    step = "client_construction"
    default_message = "cannot create new Service"
