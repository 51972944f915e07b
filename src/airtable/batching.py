# src/airtable/batching.py
from typing import List, Sequence, TypeVar

T = TypeVar("T")

# Airtable rejects create/update/delete calls carrying more than 10 records.
AIRTABLE_BATCH_SIZE = 10

def split_into_batches(items: Sequence[T], batch_size: int = AIRTABLE_BATCH_SIZE) -> List[List[T]]:
    """
    Splits `items` into contiguous batches of at most `batch_size`, keeping order.
    Only the last batch can be smaller than `batch_size`. No items are dropped.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be a positive integer, got {batch_size}")
    return [list(items[start:start + batch_size]) for start in range(0, len(items), batch_size)]
