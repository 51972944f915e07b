# src/airtable/operations.py
import asyncio
import functools
import logging
from typing import Any, Coroutine, Dict, List, Sequence, Set

from src.core.config import settings
from src.core.errors import ApiError
from src.core.schemas import Record, UpdateRecordItem
from src.airtable.bulk import BulkWriteOrchestrator
from src.airtable.client import AirtableApiClient

logger = logging.getLogger(settings.APP_NAME)

# Bulk writes still running, including those whose caller stopped waiting
_bulk_tasks: Set[asyncio.Task] = set()

# --- Single record operations ---

async def get_all_records(client: AirtableApiClient, table_name: str) -> List[Record]:
    """
    Retrieves every record of a table.
    """
    client.ensure_table(table_name)
    logger.info(f"Listing records in {table_name}")
    records = await client.list_records(table_name)
    logger.info(f"Retrieved {len(records)} records from {table_name}")
    return records

async def get_record(client: AirtableApiClient, table_name: str, record_id: str) -> Record:
    client.ensure_table(table_name)
    logger.info(f"Retrieving record {record_id} from {table_name}")
    return await client.get_record(table_name, record_id)

async def create_record(client: AirtableApiClient, table_name: str, fields: Dict[str, Any]) -> Record:
    client.ensure_table(table_name)
    logger.info(f"Creating record in {table_name} with fields: {sorted(fields)}")
    record = await client.create_record(table_name, fields)
    logger.info(f"Successfully created record in {table_name} with ID: {record.id}")
    return record

async def update_record(
    client: AirtableApiClient, table_name: str, record_id: str, fields: Dict[str, Any]
) -> Record:
    """
    Updates the given fields of an existing record. Fields not listed are left as they are.
    """
    client.ensure_table(table_name)
    logger.info(f"Updating record {record_id} in {table_name} with fields: {sorted(fields)}")
    record = await client.update_record(table_name, record_id, fields)
    logger.info(f"Successfully updated record {record_id} in {table_name}")
    return record

async def delete_record(client: AirtableApiClient, table_name: str, record_id: str) -> None:
    client.ensure_table(table_name)
    logger.info(f"Deleting record {record_id} from {table_name}")
    await client.delete_record(table_name, record_id)
    logger.info(f"Successfully deleted record {record_id} from {table_name}")

# --- Bulk operations ---

async def create_records(
    client: AirtableApiClient, table_name: str, fields_list: Sequence[Dict[str, Any]]
) -> List[Record]:
    """
    Creates many records, 10 per Airtable call. If a batch fails, records created
    by earlier batches are deleted again and BulkWriteError is raised.

    The operation is shielded from cancellation: if the caller stops waiting
    (timeout, client disconnect) it still runs to full commit or rollback, and
    the caller may not learn which.
    """
    client.ensure_table(table_name)
    orchestrator = BulkWriteOrchestrator(client, table_name)
    return await _run_shielded(orchestrator.create_records(fields_list), f"Bulk create on {table_name}")

async def update_records(
    client: AirtableApiClient, table_name: str, items: Sequence[UpdateRecordItem]
) -> List[Record]:
    """
    Updates many records, 10 per Airtable call, after snapshotting the fields
    being changed. If a batch fails, earlier batches are restored from the
    snapshot and BulkWriteError is raised. Shielded from cancellation like
    create_records.
    """
    client.ensure_table(table_name)
    orchestrator = BulkWriteOrchestrator(client, table_name)
    return await _run_shielded(orchestrator.update_records(items), f"Bulk update on {table_name}")

async def _run_shielded(operation: Coroutine[Any, Any, List[Record]], description: str) -> List[Record]:
    task = asyncio.get_running_loop().create_task(operation)
    _bulk_tasks.add(task)
    task.add_done_callback(_bulk_tasks.discard)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        if not task.done():
            logger.warning(f"{description}: caller stopped waiting, operation continues in the background")
            task.add_done_callback(functools.partial(_log_detached_outcome, description))
        raise

def _log_detached_outcome(description: str, task: asyncio.Task) -> None:
    if task.cancelled():
        logger.error(f"{description} was cancelled before reaching commit or rollback")
        return
    error = task.exception()
    if error is None:
        logger.info(f"{description} finished after its caller left: {len(task.result())} records committed")
    elif isinstance(error, ApiError):
        logger.error(f"{description} failed after its caller left ({error.code}): {error.message}")
    else:
        logger.error(f"{description} failed after its caller left: {error}", exc_info=error)
