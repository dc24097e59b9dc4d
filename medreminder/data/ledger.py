"""
Medication Reminder — Schedule Ledger.

Persisted index of the triggers currently registered with the backend,
stored under the "scheduled_triggers" key as a list of
{"trigger_id", "reminder_id", "fire_at"} rows. Only the scheduling engine
writes it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from medreminder.data.models import ScheduledTrigger

if TYPE_CHECKING:
    from medreminder.data.store import CoordinatedStore

logger = logging.getLogger(__name__)

LEDGER_KEY = "scheduled_triggers"


class ScheduleLedger:
    """Trigger id -> (owning reminder, fire time) rows."""

    def __init__(self, store: CoordinatedStore) -> None:
        self._store = store

    async def all(self) -> list[ScheduledTrigger]:
        rows = await self._store.get(LEDGER_KEY, default=[])
        return [ScheduledTrigger.from_dict(row) for row in rows]

    async def upsert(self, entries: list[ScheduledTrigger]) -> None:
        """Insert rows, replacing any existing row with the same trigger id."""
        if not entries:
            return
        incoming = {e.trigger_id: e.to_dict() for e in entries}

        def _apply(rows: list[dict]) -> list[dict]:
            kept = [row for row in rows if row["trigger_id"] not in incoming]
            return kept + list(incoming.values())

        await self._store.update(LEDGER_KEY, _apply, default=[])
        logger.debug("Ledger upserted %s", sorted(incoming))

    async def remove_triggers(self, trigger_ids: set[str]) -> int:
        """Drop rows by trigger id. Returns how many were removed."""
        return await self._remove_where(lambda row: row["trigger_id"] in trigger_ids)

    async def remove_owned_by(self, reminder_ids: set[str]) -> int:
        """Drop every row owned by one of reminder_ids."""
        return await self._remove_where(lambda row: row["reminder_id"] in reminder_ids)

    async def prune_before(self, now_ms: int) -> int:
        """Drop rows whose fire time is not in the future."""
        return await self._remove_where(lambda row: int(row["fire_at"]) <= now_ms)

    async def clear(self) -> None:
        await self._store.set(LEDGER_KEY, [])

    async def _remove_where(self, predicate) -> int:
        removed = 0

        def _apply(rows: list[dict]) -> list[dict]:
            nonlocal removed
            kept = [row for row in rows if not predicate(row)]
            removed = len(rows) - len(kept)
            return kept

        await self._store.update(LEDGER_KEY, _apply, default=[])
        return removed
