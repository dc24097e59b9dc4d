"""Trigger port — abstract interface for the platform that fires timed prompts.

Core modules depend on this protocol, never on a specific backend. A backend
schedules one-shot wake-ups at absolute timestamps, renders the prompt, and
reports back which trigger fired and which action (if any) the user chose.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Awaitable, Callable, Protocol


class BackendUnavailable(Exception):
    """Raised when a trigger backend call fails."""


class TriggerAction(Enum):
    ACKNOWLEDGE = "acknowledge"
    POSTPONE = "postpone"
    DISMISS = "dismiss"


@dataclass
class TriggerPayload:
    """Data attached to every registered trigger.

    JSON example:
    {
        "reminder_id": "3f2c...",
        "snooze_count": 1,
        "is_escalation": true,
        "escalation_offset_minutes": 10,
        "title": "Reminder: Aspirin",
        "body": "Take 100mg"
    }
    """

    reminder_id: str
    snooze_count: int = 0
    is_escalation: bool = False
    escalation_offset_minutes: int | None = None
    title: str = ""
    body: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> TriggerPayload:
        offset = data.get("escalation_offset_minutes")
        return cls(
            reminder_id=str(data["reminder_id"]),
            snooze_count=int(data.get("snooze_count", 0)),
            is_escalation=bool(data.get("is_escalation", False)),
            escalation_offset_minutes=int(offset) if offset is not None else None,
            title=data.get("title", ""),
            body=data.get("body", ""),
        )


@dataclass
class LiveTrigger:
    """A trigger the backend currently holds."""

    id: str
    fire_at: int          # epoch milliseconds
    payload: TriggerPayload


# (trigger_id, payload, chosen action or None) -> handled
FiredHandler = Callable[[str, TriggerPayload, TriggerAction | None], Awaitable[object]]


class TriggerBackend(Protocol):
    """Abstract trigger interface used by core modules."""

    async def is_available(self) -> bool: ...

    async def request_trigger(
        self, trigger_id: str, fire_at: int, payload: TriggerPayload,
    ) -> str: ...

    async def cancel_trigger(self, trigger_id: str) -> None: ...

    async def cancel_all_triggers(self) -> None: ...

    async def list_live_triggers(self) -> list[LiveTrigger]: ...
