from typing import Any, Dict, Optional


class StrataException(Exception):
    """Base exception for all Strata errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class TransportError(StrataException):
    """Raised when a remote provider fetch fails (network, auth, quota)."""

    def __init__(
        self,
        message: str,
        code: str = "transport_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=502, details=details)


class ConversionError(StrataException):
    """Raised when a fetched item cannot be mapped to a Record."""

    def __init__(
        self,
        message: str,
        code: str = "conversion_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=422, details=details)


class PersistenceError(StrataException):
    """Raised when a sync transaction cannot be written or committed."""

    def __init__(
        self,
        message: str,
        code: str = "persistence_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=500, details=details)


class LedgerIntegrityError(PersistenceError):
    """
    Raised when the history ledger is not in the shape a pass expects
    (zero or several open intervals for an entity that must have exactly one).

    Not retried: this is a data-integrity fault, not a transient failure.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="ledger_integrity_error", details=details)


class ReconciliationError(StrataException):
    """Raised when stale-entity cleanup fails. Never fails the owning task."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message, code="reconciliation_error", status_code=500, details=details
        )


class SyncTimeoutError(StrataException):
    """Raised when a sync attempt exceeds its start-to-close timeout."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="sync_timeout", status_code=504, details=details)


class HeartbeatTimeoutError(SyncTimeoutError):
    """Raised when a running attempt stops sending heartbeats."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.code = "heartbeat_timeout"


class SyncGroupError(StrataException):
    """Raised when one or more child tasks of a provider group failed terminally."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message, code="sync_group_failed", status_code=502, details=details
        )


class ConfigurationError(StrataException):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        code: str = "config_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=500, details=details)


class ResourceNotFoundError(StrataException):
    """Raised when a requested resource kind or task is not found."""

    def __init__(
        self,
        message: str,
        code: str = "not_found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=404, details=details)
