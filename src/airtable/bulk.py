# src/airtable/bulk.py
"""
Bulk create/update against Airtable with best-effort rollback.

Airtable takes at most 10 records per write and has no multi-record
transaction. A bulk write is therefore a sequence of batch calls, run strictly
one after another. When a batch fails, everything committed by the earlier
batches is compensated (deleted for creates, restored from a snapshot for
updates) and a BulkWriteError describes the failure and how the rollback went.

Only one batch is ever in flight per operation, so at the moment of a failure
the OperationOutcome lists exactly what Airtable has committed. Nothing here
locks against other operations: two bulk writes touching the same records
interleave at Airtable and the last write wins per field.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Sequence

from src.core.config import settings
from src.core.errors import AirtableError, BulkWriteError, RollbackUnsupportedError
from src.core.schemas import Record, UpdateRecordItem
from src.airtable.batching import AIRTABLE_BATCH_SIZE, split_into_batches
from src.airtable.client import AirtableApiClient
from src.airtable.rollback import RollbackController, RollbackReport
from src.airtable.snapshot import capture_snapshot

logger = logging.getLogger(settings.APP_NAME)


class BulkState(str, Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    BATCHING = "batching"
    WRITING = "writing"
    ROLLING_BACK = "rolling_back"
    ALL_COMMITTED = "all_committed"
    FAILED = "failed"


@dataclass
class OperationOutcome:
    """Records and ids committed so far, batch by batch."""
    records: List[Record] = field(default_factory=list)
    record_ids: List[str] = field(default_factory=list)
    batches_committed: int = 0

    def commit_batch(self, records: Sequence[Record], record_ids: Sequence[str]) -> None:
        self.records.extend(records)
        self.record_ids.extend(record_ids)
        self.batches_committed += 1

    @property
    def committed_count(self) -> int:
        return len(self.record_ids)

    @property
    def distinct_record_count(self) -> int:
        return len(set(self.record_ids))


class BulkWriteOrchestrator:
    """
    Runs one bulk create or update for one table. Single use.

    State goes IDLE -> SNAPSHOTTING (updates only) -> BATCHING -> WRITING and
    ends in ALL_COMMITTED, or in ROLLING_BACK -> FAILED after a failed batch.
    """

    def __init__(self, client: AirtableApiClient, table_name: str, batch_size: int = AIRTABLE_BATCH_SIZE):
        self.client = client
        self.table_name = table_name
        self.batch_size = batch_size
        self.state = BulkState.IDLE
        self.outcome = OperationOutcome()
        self.rollback = RollbackController(client, table_name, batch_size)

    def _transition(self, new_state: BulkState) -> None:
        logger.debug(f"Bulk write on {self.table_name}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _start(self) -> None:
        if self.state is not BulkState.IDLE:
            raise RuntimeError(f"BulkWriteOrchestrator is single use (current state: {self.state.value})")

    async def create_records(self, fields_list: Sequence[Dict[str, Any]]) -> List[Record]:
        """Creates one record per field mapping. Returns the created records in request order."""
        self._start()
        self._transition(BulkState.BATCHING)
        batches = split_into_batches(fields_list, self.batch_size)
        logger.info(f"Bulk creating {len(fields_list)} records in {self.table_name} in {len(batches)} batches")

        for batch_number, batch in enumerate(batches, start=1):
            self._transition(BulkState.WRITING)
            result = await self.client.create_batch(self.table_name, batch)
            if not result.ok:
                self._transition(BulkState.ROLLING_BACK)
                report = await self.rollback.delete_created(list(self.outcome.record_ids))
                raise self._fail("create", result.error, report, batch_number, len(batches))
            self.outcome.commit_batch(result.records, [record.id for record in result.records])
            logger.debug(f"Batch {batch_number}/{len(batches)} created {len(result.records)} records in {self.table_name}")

        self._transition(BulkState.ALL_COMMITTED)
        logger.info(f"Successfully created {self.outcome.committed_count} records in {self.table_name}")
        return list(self.outcome.records)

    async def update_records(self, items: Sequence[UpdateRecordItem]) -> List[Record]:
        """
        Updates records in request order. Every target record is read first so
        the update can be undone; if that read fails nothing is written.
        """
        self._start()
        self._transition(BulkState.SNAPSHOTTING)
        try:
            snapshot = await capture_snapshot(self.client, self.table_name, items)
        except RollbackUnsupportedError:
            self._transition(BulkState.FAILED)
            raise

        self._transition(BulkState.BATCHING)
        batches = split_into_batches(items, self.batch_size)
        logger.info(f"Bulk updating {len(items)} records in {self.table_name} in {len(batches)} batches")

        for batch_number, batch in enumerate(batches, start=1):
            self._transition(BulkState.WRITING)
            payload = [{"id": item.id, "fields": item.fields} for item in batch]
            result = await self.client.update_batch(self.table_name, payload)
            if not result.ok:
                self._transition(BulkState.ROLLING_BACK)
                report = await self.rollback.restore_snapshot(snapshot, list(self.outcome.record_ids))
                raise self._fail("update", result.error, report, batch_number, len(batches))
            self.outcome.commit_batch(result.records, [item.id for item in batch])
            logger.debug(f"Batch {batch_number}/{len(batches)} updated {len(batch)} records in {self.table_name}")

        self._transition(BulkState.ALL_COMMITTED)
        logger.info(f"Successfully updated {self.outcome.committed_count} records in {self.table_name}")
        return list(self.outcome.records)

    def _fail(
        self,
        operation: str,
        error: AirtableError,
        report: RollbackReport,
        batch_number: int,
        total_batches: int,
    ) -> BulkWriteError:
        self._transition(BulkState.FAILED)
        composite = BulkWriteError(
            original_error=error,
            operation=operation,
            table_name=self.table_name,
            rollback_attempted=report.attempted,
            rollback_succeeded=report.succeeded,
            affected_count=report.affected_count,
            unrestored_ids=report.unrestored_ids,
            failed_batch=batch_number,
            total_batches=total_batches,
        )
        if report.attempted and not report.succeeded:
            logger.critical(
                f"Bulk {operation} on {self.table_name} left {report.affected_count} records in a partial state "
                f"after batch {batch_number}/{total_batches} failed; manual cleanup required. "
                f"Unrestored ids: {report.unrestored_ids}"
            )
        else:
            logger.error(
                f"Bulk {operation} on {self.table_name} failed at batch {batch_number}/{total_batches} "
                f"({error.code}): {error.message}. Rolled back {self.outcome.distinct_record_count} committed records."
            )
        return composite
