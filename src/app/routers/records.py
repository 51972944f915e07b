# src/app/routers/records.py
from fastapi import APIRouter, Body, Depends, Response, status
from typing import List
import logging

from src.core.config import settings
from src.core.errors import ApiError, bulk_limit_exceeded, invalid_request_body
from src.core.schemas import (
    BulkWriteResponse, CreateRecordItem, ErrorResponse, Record, RecordFieldsPayload,
    RecordListResponse, UpdateRecordItem
)
from src.airtable.client import AirtableApiClient, get_airtable_client
from src.airtable.operations import (
    create_record, create_records, delete_record, get_all_records, get_record,
    update_record, update_records
)
from src.app.middleware.auth import require_api_key
from src.app.middleware.rate_limiting import apply_slow_down, enforce_bulk_rate_limit, enforce_rate_limit

logger = logging.getLogger(settings.APP_NAME)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}

router = APIRouter(
    dependencies=[Depends(enforce_rate_limit), Depends(apply_slow_down), Depends(require_api_key)],
    responses=ERROR_RESPONSES,
)


def _check_bulk_size(records: list, expected_format: str) -> None:
    if not records:
        raise invalid_request_body(
            "Request body must be a non-empty array of records",
            f"Expected format: {expected_format}",
        )
    if len(records) > settings.BULK_MAX_RECORDS:
        raise bulk_limit_exceeded(
            f"Bulk operations limited to {settings.BULK_MAX_RECORDS} records per request",
            f"Received {len(records)} records",
        )

# Bulk routes are declared before /{table_name}/{record_id} so "bulk" is not read as a record id.

@router.post(
    "/{table_name}/bulk",
    response_model=BulkWriteResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(enforce_bulk_rate_limit)],
    summary="Create Multiple Records",
    description="Creates up to 100 records, 10 per Airtable call. If any batch fails, records created by earlier batches are deleted again."
)
async def handle_bulk_create_endpoint(
    table_name: str,
    records: List[CreateRecordItem] = Body(...),
    client: AirtableApiClient = Depends(get_airtable_client)
):
    _check_bulk_size(records, '[{"fields": {...}}, ...]')
    try:
        created = await create_records(client, table_name, [item.fields for item in records])
    except ApiError as e:
        logger.error(f"Error bulk creating records in {table_name}: {e.code}: {e.message}")
        raise
    return BulkWriteResponse(
        records=created,
        count=len(created),
        message=f"Successfully created {len(created)} records"
    )

@router.patch(
    "/{table_name}/bulk",
    response_model=BulkWriteResponse,
    dependencies=[Depends(enforce_bulk_rate_limit)],
    summary="Update Multiple Records",
    description="Updates up to 100 records, 10 per Airtable call. Changed fields are snapshotted first; if any batch fails, earlier batches are restored."
)
async def handle_bulk_update_endpoint(
    table_name: str,
    records: List[UpdateRecordItem] = Body(...),
    client: AirtableApiClient = Depends(get_airtable_client)
):
    _check_bulk_size(records, '[{"id": "rec123", "fields": {...}}, ...]')
    try:
        updated = await update_records(client, table_name, records)
    except ApiError as e:
        logger.error(f"Error bulk updating records in {table_name}: {e.code}: {e.message}")
        raise
    return BulkWriteResponse(
        records=updated,
        count=len(updated),
        message=f"Successfully updated {len(updated)} records"
    )

@router.get(
    "/{table_name}",
    response_model=RecordListResponse,
    summary="List Records",
    description="Retrieves every record of the table."
)
async def handle_list_records_endpoint(
    table_name: str,
    client: AirtableApiClient = Depends(get_airtable_client)
):
    try:
        records = await get_all_records(client, table_name)
    except ApiError as e:
        logger.error(f"Error fetching records from {table_name}: {e.message}")
        raise
    return RecordListResponse(records=records)

@router.get(
    "/{table_name}/{record_id}",
    response_model=Record,
    summary="Retrieve a Record"
)
async def handle_get_record_endpoint(
    table_name: str,
    record_id: str,
    client: AirtableApiClient = Depends(get_airtable_client)
):
    try:
        return await get_record(client, table_name, record_id)
    except ApiError as e:
        logger.error(f"Error fetching record {record_id} from {table_name}: {e.message}")
        raise

@router.post(
    "/{table_name}",
    response_model=Record,
    status_code=status.HTTP_201_CREATED,
    summary="Create a Record"
)
async def handle_create_record_endpoint(
    table_name: str,
    payload: RecordFieldsPayload = Body(...),
    client: AirtableApiClient = Depends(get_airtable_client)
):
    try:
        return await create_record(client, table_name, payload.fields)
    except ApiError as e:
        logger.error(f"Error creating record in {table_name}: {e.message}")
        raise

@router.patch(
    "/{table_name}/{record_id}",
    response_model=Record,
    summary="Update a Record",
    description="Updates only the fields given in the payload."
)
async def handle_update_record_endpoint(
    table_name: str,
    record_id: str,
    payload: RecordFieldsPayload = Body(...),
    client: AirtableApiClient = Depends(get_airtable_client)
):
    try:
        return await update_record(client, table_name, record_id, payload.fields)
    except ApiError as e:
        logger.error(f"Error updating record {record_id} in {table_name}: {e.message}")
        raise

@router.delete(
    "/{table_name}/{record_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Delete a Record"
)
async def handle_delete_record_endpoint(
    table_name: str,
    record_id: str,
    client: AirtableApiClient = Depends(get_airtable_client)
):
    try:
        await delete_record(client, table_name, record_id)
    except ApiError as e:
        logger.error(f"Error deleting record {record_id} from {table_name}: {e.message}")
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
