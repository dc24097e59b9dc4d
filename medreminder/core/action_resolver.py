"""
Medication Reminder — Action Resolver.

Applies the user's answer to a reminder prompt:

    acknowledge  pending -> taken    then cancel its triggers
    dismiss      pending -> missed   then cancel its triggers
    postpone     pending -> pending  due = now + snooze, snooze_count + 1,
                                     then cancel + register at the new time

The record is always persisted before any trigger-side effect, so a crash in
between leaves only the Ledger stale (the reconciler repairs it) and never
loses the user's decision. Replaying an event is harmless: taken and missed
are terminal, and postpone is refused when the prompt it came from shows an
older snooze count than the record or the count is at the maximum.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Callable

from medreminder.core.scheduling_engine import PastDeadline, parse_trigger_id
from medreminder.core.status_rules import ReminderPolicy, split_datetime
from medreminder.data.models import ReminderStatus
from medreminder.ports.storage_port import StorageFailure
from medreminder.ports.trigger_port import BackendUnavailable, TriggerAction

if TYPE_CHECKING:
    from medreminder.core.scheduling_engine import SchedulingEngine
    from medreminder.data.models import Reminder
    from medreminder.data.repository import ReminderRepository
    from medreminder.ports.trigger_port import TriggerPayload

logger = logging.getLogger(__name__)

_TERMINAL_FOR_ACTION = {
    TriggerAction.ACKNOWLEDGE: ReminderStatus.TAKEN,
    TriggerAction.DISMISS: ReminderStatus.MISSED,
}


class ReminderNotFound(Exception):
    """Raised when an action references an unknown reminder id."""


class ActionResolver:
    """Turns (reminder id, action) events into record transitions."""

    def __init__(
        self,
        repository: ReminderRepository,
        engine: SchedulingEngine,
        tz: tzinfo = timezone.utc,
        policy: ReminderPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._tz = tz
        self._policy = policy or ReminderPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def apply(
        self, reminder_id: str, action: TriggerAction, seen_snooze: int | None = None,
    ) -> Reminder:
        """Apply one action. Returns the record as stored afterwards.

        seen_snooze is the snooze count shown on the prompt the action came
        from; a postpone from a prompt older than the record is ignored.
        Raises ReminderNotFound for an unknown id and StorageFailure if the
        record itself could not be written.
        """
        if action is TriggerAction.POSTPONE:
            return await self._postpone(reminder_id, seen_snooze)
        return await self._resolve(reminder_id, _TERMINAL_FOR_ACTION[action])

    async def handle_fired(
        self,
        trigger_id: str,
        payload: TriggerPayload | None,
        action: TriggerAction | None,
    ) -> Reminder | None:
        """Handle a fired trigger, with or without a chosen action.

        Safe on a cold start and on duplicate delivery.
        """
        reminder_id = payload.reminder_id if payload else parse_trigger_id(trigger_id)[0]
        try:
            await self._engine.release(trigger_id)
        except StorageFailure as exc:
            logger.error("Could not release fired trigger %s: %s", trigger_id, exc)

        if action is None:
            return None

        try:
            return await self.apply(
                reminder_id, action, payload.snooze_count if payload else None,
            )
        except ReminderNotFound:
            logger.warning(
                "Trigger %s fired for unknown reminder %s; ignoring %s",
                trigger_id, reminder_id, action.value,
            )
            return None

    # ------------------------------------------------------------------

    async def _resolve(self, reminder_id: str, status: ReminderStatus) -> Reminder:
        transitioned = False

        def _change(current: Reminder) -> Reminder | None:
            nonlocal transitioned
            if not current.is_pending:
                return None
            transitioned = True
            return dataclasses.replace(current, status=status)

        stored = await self._repository.mutate(reminder_id, _change)
        if stored is None:
            raise ReminderNotFound(reminder_id)

        if transitioned:
            logger.info("Reminder %s marked %s", reminder_id, status.value)
        else:
            logger.info(
                "Reminder %s already %s; %s ignored", reminder_id, stored.status.value, status.value,
            )
        # Also on replays: removes escalations that raced the first resolution
        await self._cancel_quietly(reminder_id)
        return stored

    async def _postpone(self, reminder_id: str, seen_snooze: int | None) -> Reminder:
        # Records keep minute precision; the trigger fires at the stored minute
        new_due = (self._clock() + self._policy.snooze_delta).astimezone(self._tz)
        new_due = new_due.replace(second=0, microsecond=0)
        new_date, new_time = split_datetime(new_due)
        snoozed = False
        stale = False

        def _change(current: Reminder) -> Reminder | None:
            nonlocal snoozed, stale
            if not current.is_pending or current.snooze_count >= self._policy.max_snooze:
                return None
            if seen_snooze is not None and seen_snooze < current.snooze_count:
                stale = True
                return None
            snoozed = True
            first = current.snooze_count == 0
            return dataclasses.replace(
                current,
                date=new_date,
                time=new_time,
                snooze_count=current.snooze_count + 1,
                original_date=current.date if first else current.original_date,
                original_time=current.time if first else current.original_time,
            )

        stored = await self._repository.mutate(reminder_id, _change)
        if stored is None:
            raise ReminderNotFound(reminder_id)

        if not snoozed:
            if stale:
                logger.info(
                    "Postpone for reminder %s came from a prompt at snooze %d, record is at %d; ignored",
                    reminder_id, seen_snooze, stored.snooze_count,
                )
            elif stored.is_pending:
                logger.info(
                    "Reminder %s reached max snooze count (%d); postpone ignored",
                    reminder_id, stored.snooze_count,
                )
            else:
                logger.info("Reminder %s already %s; postpone ignored", reminder_id, stored.status.value)
                await self._cancel_quietly(reminder_id)
            return stored

        logger.info(
            "Snoozed reminder %s to %s %s (%d/%d)",
            reminder_id, new_date, new_time, stored.snooze_count, self._policy.max_snooze,
        )
        try:
            await self._engine.reschedule(stored, new_due)
        except (BackendUnavailable, StorageFailure, PastDeadline) as exc:
            logger.error(
                "Could not reschedule snoozed reminder %s; left for reconciliation: %s",
                reminder_id, exc,
            )
        return stored

    async def _cancel_quietly(self, reminder_id: str) -> None:
        try:
            await self._engine.cancel(reminder_id)
        except (BackendUnavailable, StorageFailure) as exc:
            logger.error(
                "Could not cancel triggers for %s; left for reconciliation: %s", reminder_id, exc,
            )
