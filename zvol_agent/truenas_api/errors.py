"""
TrueNAS Error Classification

Maps raw appliance errors (JSON-RPC error objects, REST error bodies and
plain messages) onto a small exception hierarchy so callers can decide
between retrying, absorbing and failing.
"""

from typing import Any, Iterable, Optional


class ApplianceError(Exception):
    """Base exception for TrueNAS appliance operations"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        step: Optional[str] = None,
        resources: Optional[Iterable[str]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.step = step
        self.resources = list(resources or [])
        # Transport attempts made by the call that raised this
        self.attempts = 1
        super().__init__(self.message)

    def annotate(self, step: str, resources: Optional[Iterable[str]] = None) -> "ApplianceError":
        """Record the failed step and the resources it touched, keeping the innermost step."""
        if self.step is None:
            self.step = step
        for resource in resources or []:
            if resource not in self.resources:
                self.resources.append(resource)
        return self

    def __str__(self) -> str:
        if self.step:
            return f"{self.step}: {self.message}"
        return self.message


class TransientError(ApplianceError):
    """Timeouts, connection resets and gateway errors; safe to retry"""


class RateLimitedError(TransientError):
    """The appliance rejected the call because of rate limiting"""


class TransportError(ApplianceError):
    """Retries exhausted or the caller deadline expired"""


class AuthenticationError(ApplianceError):
    """API key rejected"""


class NotFoundError(ApplianceError):
    """The addressed resource does not exist"""


class MissingDependencyError(ApplianceError):
    """A resource a later step depends on vanished mid-sequence"""


class StorageValidationError(ApplianceError):
    """Request rejected before any remote mutation"""


class CapacityError(StorageValidationError):
    pass


class AlreadyExistsError(StorageValidationError):
    pass


class ShrinkNotSupportedError(StorageValidationError):
    pass


class SnapshotProtectedError(StorageValidationError):
    pass


class ConflictError(ApplianceError):
    """Appliance state blocks the operation and needs operator intervention"""


class RemoteCallError(ApplianceError):
    """The appliance refused the call (malformed request, invalid arguments)"""


class UnsupportedOperationError(ApplianceError):
    """The selected protocol has no binding for the requested method"""


class OperationInProgressError(ApplianceError):
    """Another mutation holds the volume lock"""


class ApplianceErrorCodes:
    """
    Common TrueNAS middleware errnames and HTTP statuses with their meanings.
    """

    ENOENT = {
        "code": "ENOENT",
        "message": "Requested resource not found.",
        "retry": False,
        "error_class": NotFoundError,
    }

    EEXIST = {
        "code": "EEXIST",
        "message": "Resource already exists.",
        "retry": False,
        "error_class": AlreadyExistsError,
    }

    EBUSY = {
        "code": "EBUSY",
        "message": "Resource is busy (in use, held or has dependents).",
        "retry": False,
        "error_class": ConflictError,
    }

    EINVAL = {
        "code": "EINVAL",
        "message": "Invalid arguments.",
        "retry": False,
        "error_class": RemoteCallError,
    }

    EACCES = {
        "code": "EACCES",
        "message": "Permission denied. Check the API key privileges.",
        "retry": False,
        "error_class": AuthenticationError,
    }

    EPERM = {
        "code": "EPERM",
        "message": "Operation not permitted.",
        "retry": False,
        "error_class": AuthenticationError,
    }

    ETIMEDOUT = {
        "code": "ETIMEDOUT",
        "message": "Operation timed out on the appliance.",
        "retry": True,
        "error_class": TransientError,
    }

    EAGAIN = {
        "code": "EAGAIN",
        "message": "Appliance asked to try again later.",
        "retry": True,
        "error_class": TransientError,
    }


STATUS_CODE_CLASSES = {
    400: RemoteCallError,
    401: AuthenticationError,
    403: AuthenticationError,
    404: NotFoundError,
    409: ConflictError,
    422: RemoteCallError,
    429: RateLimitedError,
    502: TransientError,
    503: TransientError,
    504: TransientError,
}

# Checked before the retryable patterns; first match wins.
NON_RETRYABLE_PATTERNS = [
    ("authentication failed", AuthenticationError),
    ("auth failed", AuthenticationError),
    ("invalid api key", AuthenticationError),
    ("invalid key", AuthenticationError),
    ("not authenticated", AuthenticationError),
    ("instancenotfound", NotFoundError),
    ("matchnotfound", NotFoundError),
    ("does not exist", NotFoundError),
    ("not found", NotFoundError),
    ("enoent", NotFoundError),
    ("more recent snapshots or bookmarks exist", ConflictError),
    ("has dependent clones", ConflictError),
    ("clones of previous snapshots exist", ConflictError),
    ("has children", ConflictError),
    ("dataset is busy", ConflictError),
    ("already exists", AlreadyExistsError),
    ("validation error", RemoteCallError),
    ("einval", RemoteCallError),
]

RETRYABLE_PATTERNS = [
    ("rate limit", RateLimitedError),
    ("too many requests", RateLimitedError),
    ("timed out", TransientError),
    ("timeout", TransientError),
    ("connection refused", TransientError),
    ("connection reset", TransientError),
    ("connection failed", TransientError),
    ("broken pipe", TransientError),
    ("unreachable", TransientError),
    ("temporary failure", TransientError),
    ("service unavailable", TransientError),
    ("bad gateway", TransientError),
    ("gateway timeout", TransientError),
    ("ssl error", TransientError),
]


def _extract(error: Any):
    """Pull (errname, message) out of the shapes the middleware returns."""
    if isinstance(error, dict):
        data = error.get("data") if isinstance(error.get("data"), dict) else {}
        errname = data.get("errname") or error.get("errname")
        message = (
            data.get("reason")
            or error.get("reason")
            or error.get("message")
            or error.get("detail")
        )
        if not message:
            message = "; ".join(f"{k}: {v}" for k, v in error.items()) or "Unknown appliance error"
        return errname, str(message)
    return None, str(error)


def map_appliance_error(error: Any, status_code: Optional[int] = None) -> ApplianceError:
    """
    Map an appliance error payload to a classified exception.

    Args:
        error: JSON-RPC error object, REST error body, or plain message
        status_code: HTTP status when the error came over REST

    Returns:
        An ApplianceError subclass instance (not raised)
    """
    errname, message = _extract(error)

    if errname:
        info = getattr(ApplianceErrorCodes, str(errname).upper(), None)
        if info:
            return info["error_class"](message, error_code=info["code"], status_code=status_code)

    if status_code in STATUS_CODE_CLASSES:
        return STATUS_CODE_CLASSES[status_code](message, error_code=errname, status_code=status_code)

    lowered = message.lower()
    for pattern, error_class in NON_RETRYABLE_PATTERNS + RETRYABLE_PATTERNS:
        if pattern in lowered:
            return error_class(message, error_code=errname, status_code=status_code)

    return RemoteCallError(message, error_code=errname, status_code=status_code)


def is_retryable(error: Exception) -> bool:
    return isinstance(error, TransientError)
