from common.error_handling import ErrorCodes, ServiceError
from ingestion_service.verification import Malformed, MalformedPayload, VerificationError


class IngestError(ServiceError):
    """Per-event ingestion failure rendered by the service error handler"""


class Unauthorized(IngestError):

    def __init__(self, error: VerificationError):
        code = ErrorCodes.MALFORMED_SIGNATURE if isinstance(error, Malformed) else ErrorCodes.UNAUTHORIZED
        # Providers only learn that the delivery was rejected
        super().__init__(code, "Webhook signature verification failed", original_error=error)
        self.reason = error.reason


class UnprocessablePayload(IngestError):
    """Authentic delivery whose body is not a readable event"""

    def __init__(self, error: MalformedPayload):
        super().__init__(ErrorCodes.MALFORMED_PAYLOAD, "Webhook payload could not be processed", original_error=error)
        self.reason = error.reason


class UnknownProvider(IngestError):

    def __init__(self, provider_id: str):
        super().__init__(ErrorCodes.UNKNOWN_PROVIDER, f"Unknown webhook provider: {provider_id}")
        self.provider_id = provider_id


class ConflictRetryExhausted(IngestError):
    retryable = True

    def __init__(self, event_key: str, attempts: int):
        super().__init__(
            ErrorCodes.CONFLICT_RETRY_EXHAUSTED,
            f"Concurrent updates kept conflicting after {attempts} attempts",
        )
        self.event_key = event_key
        self.attempts = attempts


class StorageUnavailable(IngestError):
    retryable = True

    def __init__(self, message: str = "Storage is temporarily unavailable", original_error: Exception = None):
        super().__init__(ErrorCodes.STORAGE_UNAVAILABLE, message, original_error=original_error)


class VersionConflict(Exception):
    """A compare-and-set lost the race; the unit of work is retried"""

    def __init__(self, table: str, record_id: str, expected_version: int):
        super().__init__(f"{table} {record_id} is no longer at version {expected_version}")
        self.table = table
        self.record_id = record_id
        self.expected_version = expected_version
