"""Custom exceptions for the DB Master backend"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class DBMasterError(Exception):
    """
    Base class for every error raised by the core services.

    Subclasses set ``error_type`` (stable, machine-readable) and
    ``status_code`` (used by the HTTP exception handlers).
    """

    error_type = "db_master_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize the error.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code (defaults to error_type)
            context: Additional context about where the error occurred
            details: Additional error details for debugging
        """
        self.message = message
        self.error_code = error_code or self.error_type
        self.context = context
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for logging.

        Returns:
            Dictionary representation of the error
        """
        return {
            "error_type": self.error_type,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }

    def get_api_response(self) -> Dict[str, Any]:
        """
        Get API-friendly error response.

        Returns:
            Dictionary suitable for HTTP error responses
        """
        return {
            "detail": self.message,
            "type": self.error_code,
            "context": self.context
        }


class ValidationError(DBMasterError):
    """
    Raised when input is malformed.

    Covers bad CRON expressions, alert conditions missing operator/value,
    invalid identifiers and parameter type mismatches.
    """

    error_type = "validation_error"
    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.field = field
        super().__init__(message, context=field, details=details)

    def get_api_response(self) -> Dict[str, Any]:
        response = super().get_api_response()
        response["field"] = self.field
        return response


class AuthError(DBMasterError):
    """Raised when the principal does not own the resource it addresses."""

    error_type = "auth_error"
    status_code = 403


class NotFoundError(DBMasterError):
    """Raised when a connection, schedule or schema version does not exist."""

    error_type = "not_found"
    status_code = 404


class ConnectivityError(DBMasterError):
    """
    Raised when a target database cannot be reached.

    Used for connect failures after retries are exhausted, pool acquire
    timeouts and pool queue overflow.
    """

    error_type = "connectivity_error"
    status_code = 503


class CredentialError(DBMasterError):
    """Raised on authentication failure against the target database or undecryptable stored credentials."""

    error_type = "credential_error"
    status_code = 502


class ExecutionError(DBMasterError):
    """
    Raised when a query fails or times out on the target database.

    Attributes:
        execution_id: ID of the execution record, when one was written
        sql_state: Driver error code, when the driver supplied one
    """

    error_type = "execution_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        sql_state: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.execution_id = execution_id
        self.sql_state = sql_state
        super().__init__(message, details=details)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["execution_id"] = self.execution_id
        result["sql_state"] = self.sql_state
        return result

    def get_api_response(self) -> Dict[str, Any]:
        response = super().get_api_response()
        response["execution_id"] = self.execution_id
        return response


class EncryptionError(DBMasterError):
    """Raised when a credential cannot be encrypted or decrypted."""

    error_type = "encryption_error"
    status_code = 500


class AuthTagMismatchError(EncryptionError):
    """Raised when a GCM ciphertext fails authentication (tampered or wrong key)."""

    error_type = "auth_tag_mismatch"


class LegacyDecryptionError(EncryptionError):
    """Raised when a value in the legacy two-field format cannot be decrypted."""

    error_type = "legacy_decryption_error"


class RetentionSweepError(DBMasterError):
    """
    Raised (and logged) when pruning one schedule's history fails.

    The sweeper records it and moves on to the next schedule.
    """

    error_type = "retention_sweep_error"

    def __init__(
        self,
        message: str,
        schedule_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.schedule_id = schedule_id
        super().__init__(message, context=schedule_id, details=details)


class NotificationDeliveryError(DBMasterError):
    """Raised by a channel sender when a notification cannot be delivered."""

    error_type = "notification_delivery_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        channel: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.channel = channel
        super().__init__(message, context=channel, details=details)
