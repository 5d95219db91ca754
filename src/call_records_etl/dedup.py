"""call_records_etl.dedup

Pre-insert duplicate check by natural key.  The UNIQUE constraint on
call_record.call_id remains the authority; this only avoids a wasted
insert for rows that are already stored.
"""

from __future__ import annotations

from call_records_etl.repository import CallStore


class DuplicateFilter:
    def __init__(self, store: CallStore) -> None:
        self._store = store

    def is_duplicate(self, call_id: str) -> bool:
        return self._store.call_exists(call_id)
