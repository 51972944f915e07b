# src/core/errors.py
from typing import Any, Dict, List, Optional

from fastapi import status

INTERNAL_ERROR_CODE = "INTERNAL_ERROR"
INTERNAL_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."


class ApiError(Exception):
    """
    Base error for everything this service reports to API consumers.

    Every error carries a stable `code` and a human-readable `message` so the
    exception handlers in `src.app.main` can render the standard error envelope
    and the audit log can classify failed requests.
    """

    code: str = INTERNAL_ERROR_CODE
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        details: Optional[Any] = None,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# --- Backend (Airtable) errors, produced by the gateway's classification ---

class AirtableError(ApiError):
    """Any classified failure of a call to Airtable."""


class TableNotFoundError(AirtableError):
    code = "TABLE_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class RecordNotFoundError(AirtableError):
    code = "RECORD_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND


class InvalidFieldDataError(AirtableError):
    code = "INVALID_FIELD_DATA"
    http_status = status.HTTP_400_BAD_REQUEST


class AirtableApiError(AirtableError):
    """Unclassified backend failure, including network errors."""
    code = "AIRTABLE_ERROR"
    http_status = status.HTTP_502_BAD_GATEWAY


# --- Bulk write engine errors ---

class RollbackUnsupportedError(ApiError):
    """A snapshot could not be captured, so the update was never started."""
    code = "ROLLBACK_UNSUPPORTED"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


PARTIAL_FAILURE_RESTORED = "PARTIAL_FAILURE_RESTORED"
PARTIAL_FAILURE_UNRESTORED = "PARTIAL_FAILURE_UNRESTORED"


class BulkWriteError(ApiError):
    """
    Composite error raised when a bulk create/update fails part way through.

    Wraps the first batch failure together with the outcome of the single
    rollback pass. When rollback restored everything, the error reports the
    original failure's code and status. When rollback itself failed, the code
    is PARTIAL_FAILURE_UNRESTORED and the message states how many records need
    manual cleanup. Instances are not modified after construction.
    """

    def __init__(
        self,
        original_error: AirtableError,
        operation: str,
        table_name: str,
        rollback_attempted: bool,
        rollback_succeeded: bool,
        affected_count: int,
        unrestored_ids: Optional[List[str]] = None,
        failed_batch: Optional[int] = None,
        total_batches: Optional[int] = None,
    ):
        self._original_error = original_error
        self._operation = operation
        self._table_name = table_name
        self._rollback_attempted = rollback_attempted
        self._rollback_succeeded = rollback_succeeded
        self._affected_count = affected_count
        self._unrestored_ids = tuple(unrestored_ids or ())
        self._failed_batch = failed_batch
        self._total_batches = total_batches

        if self.rollback_status == PARTIAL_FAILURE_UNRESTORED:
            code = PARTIAL_FAILURE_UNRESTORED
            http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
        else:
            code = original_error.code
            http_status = original_error.http_status

        super().__init__(self._build_message(), details=None, code=code, http_status=http_status)
        self.details = {
            "originalCode": original_error.code,
            "originalDetails": original_error.details,
            "rollbackStatus": self.rollback_status,
            "rollbackAttempted": rollback_attempted,
            "rollbackSucceeded": rollback_succeeded,
            "affectedCount": affected_count,
            "unrestoredIds": list(self._unrestored_ids),
            "failedBatch": failed_batch,
            "totalBatches": total_batches,
        }

    @property
    def original_error(self) -> AirtableError:
        return self._original_error

    @property
    def operation(self) -> str:
        return self._operation

    @property
    def rollback_attempted(self) -> bool:
        return self._rollback_attempted

    @property
    def rollback_succeeded(self) -> bool:
        return self._rollback_succeeded

    @property
    def affected_count(self) -> int:
        return self._affected_count

    @property
    def unrestored_ids(self) -> List[str]:
        return list(self._unrestored_ids)

    @property
    def rollback_status(self) -> Optional[str]:
        if not self._rollback_attempted:
            return None
        if self._rollback_succeeded:
            return PARTIAL_FAILURE_RESTORED
        return PARTIAL_FAILURE_UNRESTORED

    def _build_message(self) -> str:
        base = self._original_error.message
        past_tense = "created" if self._operation == "create" else "updated"
        if self.rollback_status == PARTIAL_FAILURE_RESTORED:
            return f"{base}. All previously {past_tense} records were rolled back."
        if self.rollback_status == PARTIAL_FAILURE_UNRESTORED:
            return (
                f"{base}. WARNING: Failed to roll back {self._affected_count} partially {past_tense} "
                f"records in table '{self._table_name}'. Manual cleanup is required for "
                f"{self._affected_count} records."
            )
        return base


# --- HTTP layer errors ---

def invalid_request_body(message: str, details: Optional[Any] = None) -> ApiError:
    return ApiError(message, details, code="INVALID_REQUEST_BODY", http_status=status.HTTP_400_BAD_REQUEST)

def invalid_record_data(message: str, details: Optional[Any] = None) -> ApiError:
    return ApiError(message, details, code="INVALID_RECORD_DATA", http_status=status.HTTP_400_BAD_REQUEST)

def bulk_limit_exceeded(message: str, details: Optional[Any] = None) -> ApiError:
    return ApiError(message, details, code="BULK_LIMIT_EXCEEDED", http_status=status.HTTP_400_BAD_REQUEST)

def missing_authorization(message: str, details: Optional[Any] = None) -> ApiError:
    return ApiError(message, details, code="MISSING_AUTHORIZATION", http_status=status.HTTP_401_UNAUTHORIZED)

def invalid_api_key(message: str, details: Optional[Any] = None) -> ApiError:
    return ApiError(message, details, code="INVALID_API_KEY", http_status=status.HTTP_401_UNAUTHORIZED)

def configuration_error(message: str, details: Optional[Any] = None) -> ApiError:
    return ApiError(message, details, code="CONFIGURATION_ERROR", http_status=status.HTTP_500_INTERNAL_SERVER_ERROR)


class RateLimitExceededError(ApiError):
    code = "RATE_LIMIT_EXCEEDED"
    http_status = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, details: Optional[Any] = None, code: Optional[str] = None, retry_after: int = 0):
        super().__init__(message, details, code=code)
        self.retry_after = retry_after
