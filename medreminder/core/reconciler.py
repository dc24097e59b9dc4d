"""
Medication Reminder — Restoration Reconciler.

Runs once at process start, before any scheduling request is accepted.
Reminder Records are the ground truth for intent; the Ledger and the
backend's live triggers are caches repaired against it:

1. Load live backend triggers and the reminder ids they reference.
2. Prune Ledger rows whose fire time has passed.
3. Register triggers for every pending, future reminder that has none.
   Live triggers of reminders that are gone or resolved are cancelled;
   live triggers the Ledger forgot are adopted back into it.
4. The engine persists each Ledger change as it makes it.

Running it twice with nothing in between leaves the Ledger unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Callable

from medreminder.core.scheduling_engine import PastDeadline
from medreminder.core.status_rules import due_at, to_epoch_ms
from medreminder.ports.storage_port import StorageFailure
from medreminder.ports.trigger_port import BackendUnavailable

if TYPE_CHECKING:
    from medreminder.core.scheduling_engine import SchedulingEngine
    from medreminder.data.repository import ReminderRepository
    from medreminder.ports.trigger_port import LiveTrigger, TriggerBackend

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """What a reconciliation pass changed."""

    pruned: int = 0
    adopted: int = 0
    restored: list[str] = field(default_factory=list)     # reminder ids re-registered
    orphans: list[str] = field(default_factory=list)      # trigger ids cancelled
    failed: list[str] = field(default_factory=list)       # reminder ids still unscheduled


class RestorationReconciler:
    """Diffs Ledger and live triggers against Reminder Records and repairs drift."""

    def __init__(
        self,
        repository: ReminderRepository,
        engine: SchedulingEngine,
        backend: TriggerBackend,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._backend = backend
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self) -> ReconcileReport:
        report = ReconcileReport()

        # 1. Live triggers
        live = await self._load_live()
        live_reminder_ids = {trigger.payload.reminder_id for trigger in live}

        # 2. Stale ledger rows
        report.pruned = await self._engine.prune_expired()

        # 3. Repair against the records
        reminders = await self._repository.list_all()
        pending = {r.id: r for r in reminders if r.is_pending}
        now = self._clock()
        now_ms = to_epoch_ms(now)

        orphans = [t.id for t in live if t.payload.reminder_id not in pending]
        if orphans:
            await self._engine.discard(orphans)
            report.orphans = sorted(orphans)
            logger.info("Cancelled %d orphaned trigger(s)", len(orphans))

        report.adopted = await self._engine.adopt(
            [t for t in live if t.payload.reminder_id in pending and t.fire_at > now_ms]
        )

        for reminder in pending.values():
            fire_at = due_at(reminder, self._tz)
            if fire_at <= now or reminder.id in live_reminder_ids:
                continue
            try:
                await self._engine.register(reminder, fire_at)
            except (BackendUnavailable, StorageFailure, PastDeadline) as exc:
                logger.error("Failed to restore reminder %s: %s", reminder.id, exc)
                report.failed.append(reminder.id)
                continue
            report.restored.append(reminder.id)

        logger.info(
            "Reconciliation done: %d pruned, %d adopted, %d restored, %d orphaned, %d failed",
            report.pruned, report.adopted, len(report.restored),
            len(report.orphans), len(report.failed),
        )
        return report

    async def _load_live(self) -> list[LiveTrigger]:
        try:
            return await self._backend.list_live_triggers()
        except BackendUnavailable as exc:
            # Re-registration reuses trigger ids
            logger.error("Could not list live triggers, assuming none: %s", exc)
            return []
