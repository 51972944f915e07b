# src/app/middleware/audit.py
import asyncio
import logging
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Optional, Set, Tuple
from urllib.parse import unquote

from fastapi import Request
from pydantic import BaseModel
from src.core.config import settings
from src.core.errors import INTERNAL_ERROR_CODE, INTERNAL_ERROR_MESSAGE
from src.utils.logger import AUDIT_LOGGER_NAME

logger = logging.getLogger(settings.APP_NAME)

REQUEST_ID_HEADER = "X-Request-ID"


class AuditEntry(BaseModel):
    requestId: str
    method: str
    path: str
    query: Optional[str] = None
    statusCode: int
    duration: int # milliseconds
    userAgent: Optional[str] = None
    ipAddress: Optional[str] = None
    tableName: Optional[str] = None
    recordId: Optional[str] = None
    operationType: str
    success: bool
    errorCode: Optional[str] = None
    errorMessage: Optional[str] = None
    timestamp: datetime


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


def _api_path_parts(path: str, prefix: str) -> Optional[list]:
    prefix = prefix.rstrip("/")
    if not path.startswith(prefix + "/"):
        return None
    return [unquote(part) for part in path[len(prefix):].strip("/").split("/") if part]


def determine_operation_type(method: str, path: str, prefix: str = settings.API_PREFIX) -> str:
    parts = _api_path_parts(path, prefix)
    if parts is None:
        return "NON_API"

    is_bulk = "bulk" in parts
    method = method.upper()
    if method == "GET":
        return "READ_ALL" if len(parts) <= 1 else "READ_ONE"
    if method == "POST":
        return "BULK_CREATE" if is_bulk else "CREATE"
    if method in ("PATCH", "PUT"):
        return "BULK_UPDATE" if is_bulk else "UPDATE"
    if method == "DELETE":
        return "BULK_DELETE" if is_bulk else "DELETE"
    return "UNKNOWN"


def extract_table_and_record(path: str, prefix: str = settings.API_PREFIX) -> Tuple[Optional[str], Optional[str]]:
    parts = _api_path_parts(path, prefix)
    if not parts:
        return None, None
    record_id = parts[1] if len(parts) >= 2 and parts[1] != "bulk" else None
    return parts[0], record_id


class AuditLogger:
    """
    Writes one JSON line per request to the audit logger.

    Entries are written from a scheduled task so the response is never held up,
    and a failed write is logged without affecting the request. The most recent
    entries are kept in memory.
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME, keep_recent: int = 500):
        self.audit_log = logging.getLogger(logger_name)
        self.recent: Deque[AuditEntry] = deque(maxlen=keep_recent)
        self._pending: Set[asyncio.Task] = set()

    def submit(self, entry: AuditEntry) -> None:
        task = asyncio.get_running_loop().create_task(self._write(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, entry: AuditEntry) -> None:
        try:
            self.audit_log.info(entry.model_dump_json())
            self.recent.append(entry)
        except Exception as e:
            logger.error(f"Failed to log audit entry for request {entry.requestId}: {e}", exc_info=True)

    async def flush(self) -> None:
        """Waits for every scheduled audit write to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending))


audit_logger = AuditLogger()


async def audit_requests(request: Request, call_next):
    """
    HTTP middleware: assigns the request id, times the request and submits
    an audit entry once the response (or an unhandled error) is known.
    """
    start_time = time.perf_counter()
    request_id = request.headers.get(REQUEST_ID_HEADER) or new_request_id()
    request.state.request_id = request_id

    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    except Exception:
        # Unhandled errors are answered by the outermost handler, after this entry is built
        request.state.error_code = INTERNAL_ERROR_CODE
        request.state.error_message = INTERNAL_ERROR_MESSAGE
        raise
    finally:
        duration_ms = int((time.perf_counter() - start_time) * 1000)
        success = 200 <= status_code < 400
        table_name, record_id = extract_table_and_record(request.url.path)
        audit_logger.submit(AuditEntry(
            requestId=request_id,
            method=request.method,
            path=request.url.path,
            query=request.url.query or None,
            statusCode=status_code,
            duration=duration_ms,
            userAgent=request.headers.get("user-agent"),
            ipAddress=request.client.host if request.client else None,
            tableName=table_name,
            recordId=record_id,
            operationType=determine_operation_type(request.method, request.url.path),
            success=success,
            errorCode=None if success else getattr(request.state, "error_code", None),
            errorMessage=None if success else getattr(request.state, "error_message", None),
            timestamp=datetime.now(timezone.utc),
        ))
