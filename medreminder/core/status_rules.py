"""Reminder status rules — pure business logic.

Turns a record's wall-clock date/time into an aware datetime, and applies
the aging rule: a pending reminder whose due time plus the grace window has
elapsed becomes missed. Taken and missed are terminal.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import TYPE_CHECKING

from medreminder.data.models import MAX_SNOOZE_COUNT, Reminder, ReminderStatus

if TYPE_CHECKING:
    from medreminder.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReminderPolicy:
    """Lifecycle constants shared by the engine, resolver and reconciler."""

    max_snooze: int = MAX_SNOOZE_COUNT
    snooze_minutes: int = 15
    grace_minutes: int = 15
    escalation_offsets: tuple[int, ...] = (5, 10, 15)

    @classmethod
    def from_settings(cls, settings: Settings) -> ReminderPolicy:
        return cls(
            max_snooze=settings.MAX_SNOOZE_COUNT,
            snooze_minutes=settings.SNOOZE_DURATION_MINUTES,
            grace_minutes=settings.REMINDER_TIMEOUT_MINUTES,
            escalation_offsets=tuple(sorted(set(settings.REPEAT_NOTIFICATION_INTERVALS))),
        )

    @property
    def snooze_delta(self) -> timedelta:
        return timedelta(minutes=self.snooze_minutes)

    @property
    def grace_delta(self) -> timedelta:
        return timedelta(minutes=self.grace_minutes)


def due_at(reminder: Reminder, tz: tzinfo) -> datetime:
    """Aware datetime at which the reminder is due."""
    return datetime.combine(
        date.fromisoformat(reminder.date),
        time.fromisoformat(reminder.time),
        tzinfo=tz,
    )


def to_epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def split_datetime(moment: datetime) -> tuple[str, str]:
    """Return (YYYY-MM-DD, HH:MM) for an aware or naive datetime."""
    return moment.strftime("%Y-%m-%d"), moment.strftime("%H:%M")


def is_expired(reminder: Reminder, now: datetime, tz: tzinfo, policy: ReminderPolicy) -> bool:
    """True if a pending reminder is past its due time plus the grace window."""
    return now >= due_at(reminder, tz) + policy.grace_delta


def apply_status_rules(
    reminders: list[Reminder],
    now: datetime,
    tz: tzinfo,
    policy: ReminderPolicy | None = None,
) -> list[Reminder]:
    """Return the records with the aging rule applied.

    Terminal records are returned as-is; pending records past due + grace
    are returned as new objects with status missed.
    """
    policy = policy or ReminderPolicy()
    aged: list[Reminder] = []
    for reminder in reminders:
        if reminder.is_pending and is_expired(reminder, now, tz, policy):
            logger.info("Reminder %s aged to missed (due %s %s)", reminder.id, reminder.date, reminder.time)
            aged.append(dataclasses.replace(reminder, status=ReminderStatus.MISSED))
        else:
            aged.append(reminder)
    return aged
