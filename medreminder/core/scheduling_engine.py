"""
Medication Reminder — Scheduling Engine.

Decides which triggers must exist for a reminder, registers and cancels
them through the TriggerBackend, and keeps the Schedule Ledger in step.
It is the only component that writes the Ledger.

Every reminder gets a primary trigger at its due time (id = reminder id)
plus one escalation trigger per configured offset after it
(id = "{reminder_id}_repeat_{offset}"), so a missed prompt is repeated.
Any one of them resolving the reminder cancels the rest.

Operations on the same reminder id are serialized by a per-id lock;
different ids run independently.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Iterable

from medreminder.core.status_rules import ReminderPolicy, to_epoch_ms
from medreminder.data.models import ScheduledTrigger
from medreminder.ports.trigger_port import BackendUnavailable, TriggerPayload

if TYPE_CHECKING:
    from medreminder.data.ledger import ScheduleLedger
    from medreminder.data.models import Reminder
    from medreminder.ports.trigger_port import LiveTrigger, TriggerBackend

logger = logging.getLogger(__name__)

_REPEAT_MARKER = "_repeat_"


class PastDeadline(Exception):
    """Raised when asked to schedule a trigger at or before now."""


def escalation_trigger_id(reminder_id: str, offset_minutes: int) -> str:
    return f"{reminder_id}{_REPEAT_MARKER}{offset_minutes}"


def parse_trigger_id(trigger_id: str) -> tuple[str, int | None]:
    """Split a trigger id into (reminder id, escalation offset or None)."""
    head, sep, tail = trigger_id.rpartition(_REPEAT_MARKER)
    if sep and head and tail.isdigit():
        return head, int(tail)
    return trigger_id, None


def build_payload(reminder: Reminder, offset_minutes: int | None = None) -> TriggerPayload:
    """Payload rendered by the backend for the primary or an escalation trigger."""
    if offset_minutes is None:
        body = f"Take {reminder.dosage}"
    else:
        body = f"Still due: take {reminder.dosage}"
    return TriggerPayload(
        reminder_id=reminder.id,
        snooze_count=reminder.snooze_count,
        is_escalation=offset_minutes is not None,
        escalation_offset_minutes=offset_minutes,
        title=f"Reminder: {reminder.name}",
        body=body,
    )


class SchedulingEngine:
    """Registers/cancels reminder triggers and maintains the Ledger."""

    def __init__(
        self,
        backend: TriggerBackend,
        ledger: ScheduleLedger,
        policy: ReminderPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._backend = backend
        self._ledger = ledger
        self._policy = policy or ReminderPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, reminder_id: str) -> asyncio.Lock:
        lock = self._locks.get(reminder_id)
        if lock is None:
            lock = self._locks[reminder_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Register / cancel
    # ------------------------------------------------------------------

    async def register(self, reminder: Reminder, fire_at: datetime) -> list[str]:
        """Register the primary trigger and every still-future escalation.

        Returns the trigger ids actually registered. Raises PastDeadline if
        fire_at is not in the future, and BackendUnavailable if the primary
        trigger could not be registered.
        """
        async with self._lock_for(reminder.id):
            return await self._register(reminder, fire_at)

    async def reschedule(self, reminder: Reminder, fire_at: datetime) -> list[str]:
        """Cancel then register under one lock hold.

        The cancel is durably reflected in the Ledger before the new
        registration starts.
        """
        async with self._lock_for(reminder.id):
            await self._cancel(reminder.id)
            return await self._register(reminder, fire_at)

    async def cancel(self, reminder_id: str) -> None:
        """Cancel the primary and escalation triggers of one reminder.

        Idempotent: triggers that don't exist are not an error.
        """
        async with self._lock_for(reminder_id):
            await self._cancel(reminder_id)

    async def cancel_many(self, reminder_ids: Iterable[str]) -> None:
        """Cancel several reminders; one backend failure never stops the rest."""
        ids = sorted(set(reminder_ids))
        if not ids:
            return

        async with AsyncExitStack() as stack:
            # Sorted acquisition keeps concurrent batches deadlock-free
            for reminder_id in ids:
                await stack.enter_async_context(self._lock_for(reminder_id))

            rows = await self._ledger.all()
            failed = 0
            for reminder_id in ids:
                failed += await self._cancel_backend(reminder_id, rows)
            removed = await self._ledger.remove_owned_by(set(ids))

        logger.info(
            "Cancelled %d reminder(s), %d ledger row(s) removed, %d backend failure(s)",
            len(ids), removed, failed,
        )

    async def cancel_all(self) -> None:
        """Clear the whole Ledger and every backend trigger (full reset)."""
        try:
            await self._backend.cancel_all_triggers()
        finally:
            await self._ledger.clear()
        logger.info("Cancelled all triggers")

    # ------------------------------------------------------------------
    # Ledger maintenance
    # ------------------------------------------------------------------

    async def release(self, trigger_id: str) -> None:
        """Forget a trigger that has fired: it is no longer live."""
        reminder_id, _ = parse_trigger_id(trigger_id)
        async with self._lock_for(reminder_id):
            await self._ledger.remove_triggers({trigger_id})
        logger.debug("Released fired trigger %s", trigger_id)

    async def prune_expired(self) -> int:
        """Drop Ledger rows whose fire time has passed. Returns the count."""
        pruned = await self._ledger.prune_before(to_epoch_ms(self._clock()))
        if pruned:
            logger.info("Pruned %d stale ledger row(s)", pruned)
        return pruned

    async def adopt(self, live: list[LiveTrigger]) -> int:
        """Record backend triggers the Ledger lost track of."""
        known = {row.trigger_id for row in await self._ledger.all()}
        missing = [
            ScheduledTrigger(
                trigger_id=trigger.id,
                reminder_id=trigger.payload.reminder_id,
                fire_at=trigger.fire_at,
            )
            for trigger in live
            if trigger.id not in known
        ]
        await self._ledger.upsert(missing)
        if missing:
            logger.info("Adopted %d live trigger(s) into the ledger", len(missing))
        return len(missing)

    async def discard(self, trigger_ids: Iterable[str]) -> None:
        """Cancel individual triggers (e.g. orphans) from backend and Ledger."""
        ids = set(trigger_ids)
        for trigger_id in sorted(ids):
            try:
                await self._backend.cancel_trigger(trigger_id)
            except BackendUnavailable as exc:
                logger.warning("Failed to cancel trigger %s: %s", trigger_id, exc)
        await self._ledger.remove_triggers(ids)

    async def ledger_rows(self) -> list[ScheduledTrigger]:
        return await self._ledger.all()

    # ------------------------------------------------------------------
    # Internals (caller holds the reminder's lock)
    # ------------------------------------------------------------------

    async def _register(self, reminder: Reminder, fire_at: datetime) -> list[str]:
        now = self._clock()
        if fire_at <= now:
            raise PastDeadline(
                f"Reminder {reminder.id} fire time {fire_at.isoformat()} is not after {now.isoformat()}"
            )

        fire_ms = to_epoch_ms(fire_at)
        await self._backend.request_trigger(reminder.id, fire_ms, build_payload(reminder))
        await self._ledger.upsert([ScheduledTrigger(reminder.id, reminder.id, fire_ms)])
        registered = [reminder.id]

        escalations: list[ScheduledTrigger] = []
        for offset in self._policy.escalation_offsets:
            repeat_at = fire_at + timedelta(minutes=offset)
            if repeat_at <= self._clock():
                continue
            trigger_id = escalation_trigger_id(reminder.id, offset)
            repeat_ms = to_epoch_ms(repeat_at)
            try:
                await self._backend.request_trigger(
                    trigger_id, repeat_ms, build_payload(reminder, offset),
                )
            except BackendUnavailable as exc:
                logger.warning("Failed to register escalation %s: %s", trigger_id, exc)
                continue
            escalations.append(ScheduledTrigger(trigger_id, reminder.id, repeat_ms))
            registered.append(trigger_id)

        await self._ledger.upsert(escalations)
        logger.info(
            "Registered %d trigger(s) for reminder %s at %s (snooze %d)",
            len(registered), reminder.id, fire_at.isoformat(), reminder.snooze_count,
        )
        return registered

    async def _cancel(self, reminder_id: str) -> None:
        rows = await self._ledger.all()
        await self._cancel_backend(reminder_id, rows)
        await self._ledger.remove_owned_by({reminder_id})
        logger.info("Cancelled triggers for reminder %s", reminder_id)

    async def _cancel_backend(self, reminder_id: str, rows: list[ScheduledTrigger]) -> int:
        """Cancel every trigger derived from reminder_id. Returns failure count."""
        trigger_ids = [reminder_id] + [
            escalation_trigger_id(reminder_id, offset)
            for offset in self._policy.escalation_offsets
        ]
        # Rows registered under an older offset configuration
        trigger_ids += [
            row.trigger_id for row in rows
            if row.reminder_id == reminder_id and row.trigger_id not in trigger_ids
        ]

        failed = 0
        for trigger_id in trigger_ids:
            try:
                await self._backend.cancel_trigger(trigger_id)
            except BackendUnavailable as exc:
                failed += 1
                logger.warning("Failed to cancel trigger %s: %s", trigger_id, exc)
        return failed
