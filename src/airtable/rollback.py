# src/airtable/rollback.py
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from src.core.config import settings
from src.core.errors import AirtableError
from src.airtable.batching import AIRTABLE_BATCH_SIZE, split_into_batches
from src.airtable.client import AirtableApiClient
from src.airtable.snapshot import Snapshot

logger = logging.getLogger(settings.APP_NAME)


@dataclass
class RollbackReport:
    attempted: bool = False
    succeeded: bool = True
    affected_count: int = 0
    unrestored_ids: List[str] = field(default_factory=list)
    errors: List[AirtableError] = field(default_factory=list)


class RollbackController:
    """
    Issues compensating calls for the part of a bulk write that already committed.

    Creates are compensated by deleting the new records, updates by writing the
    snapshot values back. Compensation goes straight through the gateway in
    batches of AIRTABLE_BATCH_SIZE and is attempted exactly once: a failed
    compensating batch is reported, never retried and never rolled back itself.
    The remaining batches are still attempted.

    Restoring a snapshot overwrites whatever is in the record at that moment,
    including changes another client made after our write. Airtable has no
    version token to detect that.
    """

    def __init__(self, client: AirtableApiClient, table_name: str, batch_size: int = AIRTABLE_BATCH_SIZE):
        self.client = client
        self.table_name = table_name
        self.batch_size = batch_size

    async def delete_created(self, record_ids: Sequence[str]) -> RollbackReport:
        if not record_ids:
            return RollbackReport()

        logger.warning(f"Bulk create failed, attempting to roll back {len(record_ids)} created records in {self.table_name}...")
        unrestored: List[str] = []
        errors: List[AirtableError] = []
        for batch in split_into_batches(record_ids, self.batch_size):
            result = await self.client.delete_batch(self.table_name, batch)
            if not result.ok:
                logger.error(f"Rollback delete of {len(batch)} records in {self.table_name} failed: {result.error.message}")
                unrestored.extend(batch)
                errors.append(result.error)
        return self._report(len(record_ids), unrestored, errors)

    async def restore_snapshot(self, snapshot: Snapshot, record_ids: Sequence[str]) -> RollbackReport:
        if not record_ids:
            return RollbackReport()

        # An id may appear in more than one committed batch
        distinct_ids = list(dict.fromkeys(record_ids))
        logger.warning(f"Bulk update failed, attempting to roll back {len(distinct_ids)} updated records in {self.table_name}...")
        items: List[Dict[str, Any]] = snapshot.restore_items(distinct_ids)
        unrestored: List[str] = []
        errors: List[AirtableError] = []
        for batch in split_into_batches(items, self.batch_size):
            result = await self.client.update_batch(self.table_name, batch)
            if not result.ok:
                logger.error(f"Rollback restore of {len(batch)} records in {self.table_name} failed: {result.error.message}")
                unrestored.extend(item["id"] for item in batch)
                errors.append(result.error)
        return self._report(len(distinct_ids), unrestored, errors)

    def _report(self, committed_count: int, unrestored: List[str], errors: List[AirtableError]) -> RollbackReport:
        if not errors:
            logger.info(f"Successfully rolled back {committed_count} records in {self.table_name}")
            return RollbackReport(attempted=True, succeeded=True, affected_count=0)
        return RollbackReport(
            attempted=True,
            succeeded=False,
            affected_count=committed_count,
            unrestored_ids=unrestored,
            errors=errors,
        )
