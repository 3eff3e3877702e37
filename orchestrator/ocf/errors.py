"""
Error taxonomy shared by the Connector Manager and the Image Manager.

Every error raised by the services carries one of a small set of categories
that the façade maps to HTTP responses:

- not_found: the connector, pod or tag does not exist
- conflict: the object is already in (or racing towards) the requested state
- backend_unavailable: cluster API, registry or container runtime is unreachable
- invalid_request: the request (or the pod manifest it produced) was rejected
- internal: anything else

Retry behaviour is decided by the class, not the category:

- TransientError: retried with bounded exponential backoff
- ConflictError: benign convergence, never logged as an error
- PermanentItemError: surfaced for one item, never retried
- FatalError: the process exits so orchestration restarts it
"""

from enum import Enum
from typing import Optional

from kubernetes.client.rest import ApiException


class ErrorCategory(str, Enum):
    """Failure categories exposed to the dashboard."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    INVALID_REQUEST = "invalid_request"
    INTERNAL = "internal"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.BACKEND_UNAVAILABLE: 503,
    ErrorCategory.INVALID_REQUEST: 400,
    ErrorCategory.INTERNAL: 500,
}


class OcfError(Exception):
    """Base exception for connector and image management errors."""

    category = ErrorCategory.INTERNAL

    def __init__(self, message: str = "", category: Optional[ErrorCategory] = None):
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category

    def to_dict(self) -> dict:
        return {"category": self.category.value, "message": self.message}


class TransientError(OcfError):
    """Network timeout, rate limit, socket not ready, expired token."""
    category = ErrorCategory.BACKEND_UNAVAILABLE


class ConflictError(OcfError):
    """Optimistic-concurrency rejection, already-exists or already-deleted."""
    category = ErrorCategory.CONFLICT


class PermanentItemError(OcfError):
    """Rejected for one item only (invalid manifest, unknown connector)."""
    category = ErrorCategory.INVALID_REQUEST


class NotFoundError(PermanentItemError):
    category = ErrorCategory.NOT_FOUND


class FatalError(OcfError):
    """Unrecoverable condition. The process must exit."""
    pass


class ConfigurationError(FatalError):
    """Missing or unrecognized configuration for the selected backend."""
    pass


# =============================================================================
# Kubernetes
# =============================================================================

class KubernetesUnavailableError(TransientError):
    pass


class WatchAuthorizationError(FatalError):
    """The watch stream lost its authorization; the cached view is dead."""
    pass


class PodNotFoundError(NotFoundError):
    pass


class PodFailedError(OcfError):
    """
    A connector pod stopped behaving and was (or will be) deleted.

    The reason is one of: crashed, image_pull_failed, terminated, rebooted, deleted.
    """

    category = ErrorCategory.INVALID_REQUEST

    def __init__(self, name: str, reason: str, detail: str = ""):
        message = f"connector pod {name} {reason}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.name = name
        self.reason = reason


# =============================================================================
# Registry / runtime
# =============================================================================

class RegistryError(OcfError):
    """Terminal registry failure surfaced to the caller."""
    category = ErrorCategory.BACKEND_UNAVAILABLE


class RegistryUnavailableError(TransientError):
    pass


class RegistryAuthError(RegistryError):
    """The registry rejected our credentials or token."""
    pass


class TagNotFoundError(NotFoundError):
    def __init__(self, tag: str):
        super().__init__(f"tag {tag} not found")
        self.tag = tag


class RuntimeUnavailableError(TransientError):
    """The containerd socket is not reachable (the daemon may still be starting)."""
    pass


class RuntimeCommandError(OcfError):
    category = ErrorCategory.INVALID_REQUEST

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


# Kubernetes statuses that resolve on their own
_TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}


def classify_api_exception(exc: ApiException, context: str = "") -> OcfError:
    """
    Map a Kubernetes ApiException onto the error taxonomy.

    Args:
        exc: Exception raised by the kubernetes client
        context: Short description of the failed operation (for the message)

    Returns:
        OcfError subclass instance (not raised)
    """
    status = exc.status or 0
    message = f"{context}: {status} {exc.reason}" if context else f"{status} {exc.reason}"

    if status == 404:
        return NotFoundError(message)
    if status == 409:
        return ConflictError(message)
    if status in (401, 403):
        return FatalError(message)
    if status == 0 or status in _TRANSIENT_STATUSES:
        return KubernetesUnavailableError(message)
    return PermanentItemError(message)
