"""
Medication Reminder — Data Models.

Reminder records and the trigger ledger persist across process restarts.
Both are stored as plain JSON-compatible dicts under fixed keys, so every
model here round-trips through to_dict/from_dict without losing
field types (dates "YYYY-MM-DD", times "HH:MM", timestamps int ms).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum

MAX_SNOOZE_COUNT = 3


class ReminderStatus(Enum):
    PENDING = "pending"
    TAKEN = "taken"
    MISSED = "missed"


class MedicationType(Enum):
    TABLET = "tablet"
    CAPSULE = "capsule"
    LIQUID = "liquid"
    INJECTION = "injection"
    OTHER = "other"


def validate_date(value: str) -> str:
    """Return value if it is an ISO date YYYY-MM-DD, else raise ValueError."""
    date.fromisoformat(value)
    if len(value) != 10:
        raise ValueError(f"Date must be YYYY-MM-DD: {value!r}")
    return value


def validate_time(value: str) -> str:
    """Return value if it is a 24h HH:MM time, else raise ValueError."""
    datetime.strptime(value, "%H:%M")
    if len(value) != 5:
        raise ValueError(f"Time must be HH:MM: {value!r}")
    return value


@dataclass
class Reminder:
    """One dose instance the user must act on.

    Created as pending by the add flow; afterwards only the action resolver
    and the aging rule change status or snooze fields.
    """

    id: str
    name: str                            # e.g. "Aspirin"
    dosage: str                          # e.g. "100mg"
    type: MedicationType
    date: str                            # ISO date YYYY-MM-DD
    time: str                            # HH:MM
    status: ReminderStatus = ReminderStatus.PENDING
    course_id: str | None = None         # groups reminders created together
    snooze_count: int = 0
    original_date: str | None = None     # set on first snooze, never changed again
    original_time: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status is ReminderStatus.PENDING

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "dosage": self.dosage,
            "type": self.type.value,
            "date": self.date,
            "time": self.time,
            "status": self.status.value,
            "snooze_count": self.snooze_count,
        }
        if self.course_id is not None:
            data["course_id"] = self.course_id
        if self.original_date is not None:
            data["original_date"] = self.original_date
            data["original_time"] = self.original_time
        return data

    @classmethod
    def from_dict(cls, data: dict, max_snooze: int = MAX_SNOOZE_COUNT) -> Reminder:
        """Build a Reminder from its stored form, enforcing record invariants."""
        snooze_count = int(data.get("snooze_count", 0))
        if not 0 <= snooze_count <= max_snooze:
            raise ValueError(
                f"snooze_count {snooze_count} outside 0..{max_snooze} for {data.get('id')}"
            )
        original_date = data.get("original_date")
        original_time = data.get("original_time")
        if snooze_count > 0 and (original_date is None or original_time is None):
            raise ValueError(f"Snoozed reminder {data.get('id')} lacks original date/time")

        course_id = data.get("course_id")
        return cls(
            id=str(data["id"]),
            name=data["name"],
            dosage=data["dosage"],
            type=MedicationType(data["type"]),
            date=validate_date(data["date"]),
            time=validate_time(data["time"]),
            status=ReminderStatus(data["status"]),
            course_id=str(course_id) if course_id is not None else None,
            snooze_count=snooze_count,
            original_date=original_date,
            original_time=original_time,
        )


@dataclass
class ScheduledTrigger:
    """A Ledger row: one trigger currently registered with the backend."""

    trigger_id: str
    reminder_id: str      # owning reminder
    fire_at: int          # epoch milliseconds

    def to_dict(self) -> dict:
        return {
            "trigger_id": self.trigger_id,
            "reminder_id": self.reminder_id,
            "fire_at": self.fire_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ScheduledTrigger:
        return cls(
            trigger_id=str(data["trigger_id"]),
            reminder_id=str(data["reminder_id"]),
            fire_at=int(data["fire_at"]),
        )
