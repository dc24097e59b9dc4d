"""
Medication Reminder — Reminder Repository.

The ordered sequence of Reminder Records lives under the "reminders" key.
Every mutation is a CoordinatedStore.update, so concurrent writers (a status
change racing a new reminder's creation) never lose each other's changes.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from medreminder.data.models import MAX_SNOOZE_COUNT, Reminder

if TYPE_CHECKING:
    from medreminder.data.store import CoordinatedStore

logger = logging.getLogger(__name__)

REMINDERS_KEY = "reminders"


class ReminderRepository:
    """Load and mutate Reminder Records through the coordinated store."""

    def __init__(self, store: CoordinatedStore, max_snooze: int = MAX_SNOOZE_COUNT) -> None:
        self._store = store
        self._max_snooze = max_snooze

    def _decode(self, rows: list[dict]) -> list[Reminder]:
        return [Reminder.from_dict(row, max_snooze=self._max_snooze) for row in rows]

    async def list_all(self) -> list[Reminder]:
        rows = await self._store.get(REMINDERS_KEY, default=[])
        return self._decode(rows)

    async def get(self, reminder_id: str) -> Reminder | None:
        for reminder in await self.list_all():
            if reminder.id == reminder_id:
                return reminder
        return None

    async def add_many(self, reminders: list[Reminder]) -> None:
        """Append new records after the existing ones."""
        new_rows = [r.to_dict() for r in reminders]
        await self._store.update(
            REMINDERS_KEY, lambda rows: rows + new_rows, default=[],
        )
        logger.info("Stored %d new reminder(s)", len(reminders))

    async def mutate(
        self, reminder_id: str, change: Callable[[Reminder], Reminder | None],
    ) -> Reminder | None:
        """Apply `change` to one record inside a single serialized write.

        `change` returns the updated Reminder, or None to leave it untouched.
        Returns the record as stored afterwards, or None if the id is unknown.
        """
        result: Reminder | None = None

        def _apply(rows: list[dict]) -> list[dict]:
            nonlocal result
            for index, row in enumerate(rows):
                if row.get("id") != reminder_id:
                    continue
                current = Reminder.from_dict(row, max_snooze=self._max_snooze)
                updated = change(current)
                if updated is None:
                    result = current
                    return rows
                rows[index] = updated.to_dict()
                result = updated
                return rows
            return rows

        await self._store.update(REMINDERS_KEY, _apply, default=[])
        return result

    async def replace_all(
        self, change: Callable[[list[Reminder]], list[Reminder]],
    ) -> list[Reminder]:
        """Rewrite the whole sequence from a transform of the decoded records."""

        def _apply(rows: list[dict]) -> list[dict]:
            return [r.to_dict() for r in change(self._decode(rows))]

        rows = await self._store.update(REMINDERS_KEY, _apply, default=[])
        return self._decode(rows)

    async def remove(self, reminder_ids: set[str]) -> list[Reminder]:
        """Delete records by id; returns the records that were removed."""
        removed: list[Reminder] = []

        def _drop(reminders: list[Reminder]) -> list[Reminder]:
            kept = []
            for reminder in reminders:
                if reminder.id in reminder_ids:
                    removed.append(reminder)
                else:
                    kept.append(reminder)
            return kept

        await self.replace_all(_drop)
        return removed

    async def remove_course(self, course_id: str) -> list[Reminder]:
        """Delete every record created as part of course_id."""
        removed: list[Reminder] = []

        def _drop(reminders: list[Reminder]) -> list[Reminder]:
            kept = []
            for reminder in reminders:
                if reminder.course_id == course_id:
                    removed.append(reminder)
                else:
                    kept.append(reminder)
            return kept

        await self.replace_all(_drop)
        return removed

    async def clear(self) -> None:
        await self._store.remove(REMINDERS_KEY)
        logger.info("All reminders removed")
