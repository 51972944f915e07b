# src/airtable/client.py
import httpx
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set
from urllib.parse import quote

from fastapi import Request
from src.core.config import settings
from src.core.errors import (
    AirtableApiError, AirtableError, InvalidFieldDataError, RecordNotFoundError, TableNotFoundError
)
from src.core.schemas import AirtableTable, Record
from src.airtable.batching import AIRTABLE_BATCH_SIZE

logger = logging.getLogger(settings.APP_NAME)

LIST_PAGE_SIZE = 100


@dataclass
class BatchResult:
    """Outcome of one batch call: the records Airtable returned, or the classified error."""
    records: List[Record] = field(default_factory=list)
    error: Optional[AirtableError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _parse_error_body(response: httpx.Response) -> tuple:
    """Returns (error_type, message) from an Airtable error response."""
    try:
        body = response.json()
    except ValueError: # Not a JSON response
        return None, response.text or response.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("type"), error.get("message") or error.get("type") or response.reason_phrase
    if isinstance(error, str): # e.g. {"error": "NOT_FOUND"}
        return error, error
    return None, response.text or response.reason_phrase


def classify_error(
    response: httpx.Response,
    table_name: str,
    record_ids: Optional[Sequence[str]] = None,
) -> AirtableError:
    """
    Maps an Airtable error response to one of the internal error kinds.

    404s become TableNotFoundError unless the call named records and Airtable
    did not say the table itself is missing. 422s carry Airtable's message
    through as InvalidFieldDataError. Everything else is AirtableApiError.
    """
    error_type, message = _parse_error_body(response)
    status_code = response.status_code

    if status_code == 404:
        if record_ids and error_type != "TABLE_NOT_FOUND":
            if len(record_ids) == 1:
                return RecordNotFoundError(f"Record '{record_ids[0]}' not found in table '{table_name}'")
            return RecordNotFoundError(
                f"One or more records not found in table '{table_name}'", details={"recordIds": list(record_ids)}
            )
        return TableNotFoundError(f"Table '{table_name}' not found")
    if status_code == 422:
        return InvalidFieldDataError(f"Invalid field data: {message}", details={"type": error_type})
    return AirtableApiError(
        f"Airtable API error ({status_code}): {message}", details={"type": error_type, "status": status_code}
    )


class AirtableApiClient:
    """
    Asynchronous gateway to the Airtable REST API for a single base.

    Built once at application startup around a shared httpx.AsyncClient and
    passed by reference to everything that talks to Airtable. Every httpx
    failure is classified before it leaves this class. No call is retried.
    """

    def __init__(self, http_client: httpx.AsyncClient, base_id: str):
        self.http = http_client
        self.base_id = base_id
        self._table_names: Set[str] = set()

    # --- Table validation ---

    async def load_table_names(self) -> Set[str]:
        """
        Loads the base's table names from the metadata API.
        On failure every table is allowed and Airtable rejects unknown ones itself.
        """
        try:
            response = await self.http.get(f"/v0/meta/bases/{self.base_id}/tables")
            response.raise_for_status()
            tables = [AirtableTable.model_validate(t) for t in response.json().get("tables", [])]
            self._table_names = {t.name for t in tables}
            logger.info(f"Loaded {len(self._table_names)} table names for base {self.base_id}")
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to fetch table metadata for base {self.base_id}: {e}. Table names will be validated by Airtable.")
        return set(self._table_names)

    @property
    def table_names(self) -> List[str]:
        return sorted(self._table_names)

    def is_valid_table(self, table_name: str) -> bool:
        return not self._table_names or table_name in self._table_names

    def ensure_table(self, table_name: str) -> None:
        if not self.is_valid_table(table_name):
            raise TableNotFoundError(
                f"Table '{table_name}' not found in base",
                details=f"Available tables: {', '.join(self.table_names)}"
            )

    # --- Transport ---

    def _table_path(self, table_name: str, record_id: Optional[str] = None) -> str:
        path = f"/v0/{self.base_id}/{quote(table_name, safe='')}"
        if record_id:
            path = f"{path}/{quote(record_id, safe='')}"
        return path

    async def _request(
        self,
        method: str,
        path: str,
        table_name: str,
        params: Optional[Any] = None,
        json_data: Optional[Any] = None,
        record_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        try:
            logger.debug(f"Airtable API Request: {method} {path} | Params: {params} | Body: {json_data}")
            response = await self.http.request(method, path, params=params, json=json_data)
            logger.debug(f"Airtable API Response: {response.status_code} {response.text[:500]}")
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error = classify_error(e.response, table_name, record_ids)
            logger.error(f"Airtable API HTTPStatusError: {e.response.status_code} on {method} {path}. Classified as {error.code}: {error.message}")
            raise error from e
        except httpx.RequestError as e: # Covers network errors, timeouts, etc.
            logger.error(f"Airtable API RequestError: {e.__class__.__name__} on {method} {path}. Detail: {str(e)}")
            raise AirtableApiError(
                f"Airtable API communication error: {e.__class__.__name__}",
                http_status=503,
            ) from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise AirtableApiError(f"Airtable returned a non-JSON response for {method} {path}") from e

    # --- Single record methods (raise classified errors) ---

    async def list_records(self, table_name: str) -> List[Record]:
        """Reads every record of a table, following Airtable's offset pagination."""
        records: List[Record] = []
        params: Dict[str, Any] = {"pageSize": LIST_PAGE_SIZE}
        while True:
            body = await self._request("GET", self._table_path(table_name), table_name, params=dict(params))
            records.extend(Record.from_airtable(raw) for raw in body.get("records", []))
            offset = body.get("offset")
            if not offset:
                return records
            params["offset"] = offset

    async def get_record(self, table_name: str, record_id: str) -> Record:
        body = await self._request(
            "GET", self._table_path(table_name, record_id), table_name, record_ids=[record_id]
        )
        return Record.from_airtable(body)

    async def create_record(self, table_name: str, fields: Dict[str, Any]) -> Record:
        body = await self._request("POST", self._table_path(table_name), table_name, json_data={"fields": fields})
        return Record.from_airtable(body)

    async def update_record(self, table_name: str, record_id: str, fields: Dict[str, Any]) -> Record:
        body = await self._request(
            "PATCH", self._table_path(table_name, record_id), table_name,
            json_data={"fields": fields}, record_ids=[record_id]
        )
        return Record.from_airtable(body)

    async def delete_record(self, table_name: str, record_id: str) -> None:
        await self._request("DELETE", self._table_path(table_name, record_id), table_name, record_ids=[record_id])

    # --- Batch methods (return BatchResult, never raise for backend failures) ---

    @staticmethod
    def _check_batch(items: Sequence[Any]) -> None:
        if len(items) > AIRTABLE_BATCH_SIZE:
            raise ValueError(f"Airtable accepts at most {AIRTABLE_BATCH_SIZE} records per call, got {len(items)}")

    async def create_batch(self, table_name: str, fields_list: Sequence[Dict[str, Any]]) -> BatchResult:
        self._check_batch(fields_list)
        payload = {"records": [{"fields": fields} for fields in fields_list]}
        try:
            body = await self._request("POST", self._table_path(table_name), table_name, json_data=payload)
        except AirtableError as e:
            return BatchResult(error=e)
        return BatchResult(records=[Record.from_airtable(raw) for raw in body.get("records", [])])

    async def update_batch(self, table_name: str, items: Sequence[Dict[str, Any]]) -> BatchResult:
        """`items` are {"id": ..., "fields": {...}} mappings."""
        self._check_batch(items)
        payload = {"records": [{"id": item["id"], "fields": item["fields"]} for item in items]}
        try:
            body = await self._request(
                "PATCH", self._table_path(table_name), table_name,
                json_data=payload, record_ids=[item["id"] for item in items]
            )
        except AirtableError as e:
            return BatchResult(error=e)
        return BatchResult(records=[Record.from_airtable(raw) for raw in body.get("records", [])])

    async def delete_batch(self, table_name: str, record_ids: Sequence[str]) -> BatchResult:
        self._check_batch(record_ids)
        params = [("records[]", record_id) for record_id in record_ids]
        try:
            await self._request("DELETE", self._table_path(table_name), table_name, params=params, record_ids=list(record_ids))
        except AirtableError as e:
            return BatchResult(error=e)
        return BatchResult()


def build_airtable_client(timeout: Optional[float] = None) -> AirtableApiClient:
    """Creates the process-wide gateway from settings. The caller owns closing `client.http`."""
    http_client = httpx.AsyncClient(
        base_url=settings.AIRTABLE_API_URL.rstrip("/"),
        headers={
            "Authorization": f"Bearer {settings.AIRTABLE_TOKEN}",
            "Content-Type": "application/json",
            "User-Agent": f"{settings.APP_NAME}/{settings.APP_VERSION}",
        },
        timeout=timeout if timeout is not None else settings.AIRTABLE_TIMEOUT_SECONDS,
    )
    return AirtableApiClient(http_client, settings.AIRTABLE_BASE_ID)


# Dependency for FastAPI
async def get_airtable_client(request: Request) -> AirtableApiClient:
    """FastAPI dependency returning the gateway built in the application lifespan."""
    return request.app.state.airtable_client
