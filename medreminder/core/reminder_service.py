"""
Medication Reminder — Reminder Service.

The surface used by the creation/presentation layer and by the trigger
backend's inbound events:

    create_reminder(s) / create_course   persist as pending, then register
    list_reminders                       aging rule applied and persisted
    delete_reminder / delete_by_course   cascade-cancel triggers
    apply_action                         in-app acknowledge/postpone/dismiss
    on_fired                             backend event, mirrors apply_action
    reset                                cancel everything, drop all records

`start()` runs the Restoration Reconciler. Every other operation waits for
it to finish, so nothing touches the Ledger before restoration is done.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Callable

from medreminder.core.action_resolver import ActionResolver, ReminderNotFound
from medreminder.core.course_planner import expand_course
from medreminder.core.reconciler import RestorationReconciler
from medreminder.core.scheduling_engine import PastDeadline, SchedulingEngine
from medreminder.core.status_rules import (
    ReminderPolicy,
    apply_status_rules,
    due_at,
    is_expired,
)
from medreminder.data.ledger import ScheduleLedger
from medreminder.data.models import Reminder, ReminderStatus
from medreminder.data.repository import ReminderRepository
from medreminder.ports.storage_port import StorageFailure
from medreminder.ports.trigger_port import BackendUnavailable

if TYPE_CHECKING:
    from medreminder.core.course_planner import MedicationCourse, ReminderDraft
    from medreminder.core.reconciler import ReconcileReport
    from medreminder.data.store import CoordinatedStore
    from medreminder.ports.trigger_port import TriggerAction, TriggerBackend, TriggerPayload

logger = logging.getLogger(__name__)

PERMISSION_DENIED = (
    "Reminder prompts are not permitted. Enable notifications and try again."
)
SCHEDULING_FAILED = "Could not schedule reminder prompts. Check the reminder backend."


class SchedulingError(Exception):
    """Raised when a new reminder could not be scheduled; str() is user-facing."""


@dataclass
class ScheduleResult:
    """Outcome of creating a batch of reminders."""

    success: bool
    reminders: list[Reminder] = field(default_factory=list)
    scheduled: int = 0
    failed: int = 0
    error: str = ""


class ReminderService:
    """Wires repository, engine, resolver and reconciler behind one API."""

    def __init__(
        self,
        store: CoordinatedStore,
        backend: TriggerBackend,
        tz: tzinfo = timezone.utc,
        policy: ReminderPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._policy = policy or ReminderPolicy()
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._backend = backend
        self.repository = ReminderRepository(store, max_snooze=self._policy.max_snooze)
        self.engine = SchedulingEngine(
            backend, ScheduleLedger(store), policy=self._policy, clock=self._clock,
        )
        self.resolver = ActionResolver(
            self.repository, self.engine, tz=tz, policy=self._policy, clock=self._clock,
        )
        self.reconciler = RestorationReconciler(
            self.repository, self.engine, backend, tz=tz, clock=self._clock,
        )
        self._ready = asyncio.Event()
        self._start_lock = asyncio.Lock()
        self.last_report: ReconcileReport | None = None

    # ------------------------------------------------------------------
    # Startup barrier
    # ------------------------------------------------------------------

    async def start(self) -> ReconcileReport | None:
        """Age records and reconcile. Later calls are no-ops."""
        async with self._start_lock:
            if self._ready.is_set():
                return self.last_report
            await self._age_records()
            self.last_report = await self.reconciler.run()
            self._ready.set()
        logger.info("Reminder service ready")
        return self.last_report

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    async def _wait_ready(self) -> None:
        await self._ready.wait()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_reminders(self, drafts: list[ReminderDraft]) -> ScheduleResult:
        """Persist drafts as pending reminders, then register the future ones."""
        await self._wait_ready()
        if not drafts:
            return ScheduleResult(success=True)

        if not await self._backend_available():
            return ScheduleResult(success=False, error=PERMISSION_DENIED)

        reminders = [
            Reminder(
                id=str(uuid.uuid4()),
                name=draft.name,
                dosage=draft.dosage,
                type=draft.type,
                date=draft.date,
                time=draft.time,
                status=ReminderStatus.PENDING,
                course_id=draft.course_id,
            )
            for draft in drafts
        ]
        await self.repository.add_many(reminders)

        result = ScheduleResult(success=True, reminders=reminders)
        now = self._clock()
        for reminder in reminders:
            fire_at = due_at(reminder, self._tz)
            if fire_at <= now:
                continue
            try:
                await self.engine.register(reminder, fire_at)
                result.scheduled += 1
            except (BackendUnavailable, StorageFailure, PastDeadline) as exc:
                logger.error("Failed to schedule reminder %s: %s", reminder.id, exc)
                result.failed += 1

        logger.info(
            "Scheduled %d/%d reminder(s) (%d failed)",
            result.scheduled, len(reminders), result.failed,
        )
        if result.failed and not result.scheduled:
            result.success = False
            result.error = SCHEDULING_FAILED
        return result

    async def create_reminder(self, draft: ReminderDraft) -> Reminder:
        """Create one reminder; raises SchedulingError with the reason on failure."""
        result = await self.create_reminders([draft])
        if not result.success:
            raise SchedulingError(result.error)
        return result.reminders[0]

    async def create_course(self, course: MedicationCourse) -> ScheduleResult:
        return await self.create_reminders(expand_course(course))

    async def _backend_available(self) -> bool:
        try:
            return await self._backend.is_available()
        except BackendUnavailable as exc:
            logger.error("Trigger backend availability check failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_reminders(self) -> list[Reminder]:
        """All reminders, with pending ones past due + grace aged to missed."""
        await self._wait_ready()
        return await self._age_records()

    async def _age_records(self) -> list[Reminder]:
        now = self._clock()
        expired: list[str] = []

        def _age(reminders: list[Reminder]) -> list[Reminder]:
            aged = apply_status_rules(reminders, now, self._tz, self._policy)
            expired[:] = [a.id for a, r in zip(aged, reminders) if a.status is not r.status]
            return aged

        current = await self.repository.list_all()
        if not any(r.is_pending and is_expired(r, now, self._tz, self._policy) for r in current):
            return current
        aged = await self.repository.replace_all(_age)
        if expired:
            # Escalations longer than the grace window may still be live
            await self._cancel_quietly(expired)
        return aged

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_reminder(self, reminder_id: str) -> bool:
        """Delete one reminder and cancel its triggers. False if unknown."""
        await self._wait_ready()
        removed = await self.repository.remove({reminder_id})
        await self._cancel_quietly([reminder_id])
        if removed:
            logger.info("Reminder %s deleted", reminder_id)
        return bool(removed)

    async def delete_by_course(self, course_id: str) -> int:
        """Delete every reminder of a course and cancel their triggers."""
        await self._wait_ready()
        removed = await self.repository.remove_course(course_id)
        await self._cancel_quietly([r.id for r in removed])
        logger.info("Course %s deleted (%d reminder(s))", course_id, len(removed))
        return len(removed)

    async def reset(self) -> None:
        """Cancel every trigger and drop all reminders."""
        await self._wait_ready()
        try:
            await self.engine.cancel_all()
        except BackendUnavailable as exc:
            logger.error("Backend reset failed; orphans left for reconciliation: %s", exc)
        await self.repository.clear()

    async def _cancel_quietly(self, reminder_ids: list[str]) -> None:
        try:
            await self.engine.cancel_many(reminder_ids)
        except StorageFailure as exc:
            logger.error("Ledger cleanup failed for %s: %s", reminder_ids, exc)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def apply_action(self, reminder_id: str, action: TriggerAction) -> Reminder | None:
        """In-app acknowledge/postpone/dismiss. None if the id is unknown."""
        await self._wait_ready()
        try:
            return await self.resolver.apply(reminder_id, action)
        except ReminderNotFound:
            logger.warning("Action %s for unknown reminder %s ignored", action.value, reminder_id)
            return None

    async def on_fired(
        self,
        trigger_id: str,
        payload: TriggerPayload | None,
        action: TriggerAction | None,
    ) -> Reminder | None:
        """Inbound backend event; waits for restoration on a cold start."""
        await self._wait_ready()
        return await self.resolver.handle_fired(trigger_id, payload, action)
