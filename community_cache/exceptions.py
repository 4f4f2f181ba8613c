"""
Custom exceptions for the community cache.

Gateway adapters, durable stores and the synchronizer raise these
exceptions so callers handle failures the same way regardless of
which backend is wired in.
"""


class CacheError(Exception):
    """Base exception for all community cache errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class GatewayError(CacheError):
    """Raised when the remote data gateway rejects or fails a call.

    Covers network failures, authorization failures, server-side
    rejections and timeouts.
    """

    def __init__(
        self,
        message: str,
        collection: str | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {}
        if collection:
            details["collection"] = collection
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.collection = collection
        self.cause = cause


class NotFoundError(CacheError):
    """Raised when a requested record does not exist."""

    def __init__(self, record_id: str, collection: str | None = None):
        details = {"record_id": record_id}
        if collection:
            details["collection"] = collection
        message = f"Record not found: {record_id}"
        if collection:
            message += f" (in {collection})"
        super().__init__(message, details)
        self.record_id = record_id
        self.collection = collection


class ValidationError(CacheError):
    """Raised when a write is incomplete. Always raised before any network call."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class StorageIOError(CacheError):
    """Raised when a local durable store I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class ConfigurationError(CacheError):
    """Raised when cache configuration is malformed."""

    def __init__(self, message: str, source: str | None = None):
        details = {}
        if source:
            details["source"] = source
        super().__init__(message, details)
        self.source = source


class UnknownKindError(CacheError):
    """Raised when an operation names an entity kind that is not configured."""

    def __init__(self, kind: str):
        super().__init__(f"Unknown entity kind: {kind}", {"kind": kind})
        self.kind = kind
