# src/airtable/snapshot.py
"""
Pre-write snapshots for bulk updates.

Before any record is changed we read each target record and keep the previous
value of every field the update is about to overwrite. Only fields that exist on
the original record are kept: computed and read-only fields never appear in an
update request's snapshot, so writing the snapshot back cannot be rejected for
touching them.

Airtable leaves empty fields out of a record entirely. A field that was empty
before the update is therefore absent from the snapshot and is not cleared again
on rollback.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

from src.core.config import settings
from src.core.errors import AirtableError, RollbackUnsupportedError
from src.core.schemas import UpdateRecordItem
from src.airtable.client import AirtableApiClient

logger = logging.getLogger(settings.APP_NAME)


@dataclass
class Snapshot:
    table_name: str
    fields_by_id: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def add(self, record_id: str, fields: Dict[str, Any]) -> None:
        # Repeated ids in one request: keep the first captured value per field.
        stored = self.fields_by_id.setdefault(record_id, {})
        for name, value in fields.items():
            stored.setdefault(name, value)

    def restore_items(self, record_ids: Iterable[str]) -> List[Dict[str, Any]]:
        """
        Builds {"id", "fields"} update items that put `record_ids` back to their
        snapshot values, in the given order, once per id. Records with nothing
        to restore are skipped.
        """
        items: List[Dict[str, Any]] = []
        seen = set()
        for record_id in record_ids:
            if record_id in seen or record_id not in self.fields_by_id:
                continue
            seen.add(record_id)
            fields = self.fields_by_id[record_id]
            if fields:
                items.append({"id": record_id, "fields": dict(fields)})
        return items

    def __len__(self) -> int:
        return len(self.fields_by_id)


async def capture_snapshot(
    client: AirtableApiClient, table_name: str, items: Sequence[UpdateRecordItem]
) -> Snapshot:
    """
    Reads every target record and returns the snapshot needed to undo `items`.
    Raises RollbackUnsupportedError if any record cannot be read; no write has
    happened at that point.
    """
    snapshot = Snapshot(table_name=table_name)
    for item in items:
        try:
            original = await client.get_record(table_name, item.id)
        except AirtableError as e:
            logger.error(f"Cannot snapshot record {item.id} in {table_name} before bulk update: {e.message}")
            raise RollbackUnsupportedError(
                f"Cannot fetch original record {item.id} for rollback support: {e.message}",
                details={"recordId": item.id, "cause": e.code},
            ) from e
        snapshot.add(item.id, {name: original.fields[name] for name in item.fields if name in original.fields})
    logger.debug(f"Captured snapshot of {len(snapshot)} records in {table_name}")
    return snapshot
