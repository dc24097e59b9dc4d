"""Telegram trigger adapter — implements TriggerBackend.

Each trigger is a one-shot JobQueue job named after the trigger id. When it
fires, the prompt is sent to the reminder chat with inline buttons
(Took it / Snooze 15 min / Skip). Each button carries the snooze count the
prompt was rendered with; the button press comes back as a callback
query and is delivered to the registered FiredHandler.

JobQueue jobs live in memory only: after a restart the reconciler re-registers
every pending future reminder.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.error import TelegramError
from telegram.ext import Application, ContextTypes

from medreminder.core.scheduling_engine import parse_trigger_id
from medreminder.data.models import MAX_SNOOZE_COUNT
from medreminder.ports.trigger_port import (
    BackendUnavailable,
    LiveTrigger,
    TriggerAction,
    TriggerPayload,
)

if TYPE_CHECKING:
    from telegram.ext import Job, JobQueue

    from medreminder.ports.trigger_port import FiredHandler

logger = logging.getLogger(__name__)

CALLBACK_PREFIX = "rem"

_ACTION_CODES = {
    TriggerAction.ACKNOWLEDGE: "ack",
    TriggerAction.POSTPONE: "snz",
    TriggerAction.DISMISS: "skp",
}
_CODE_ACTIONS = {code: action for action, code in _ACTION_CODES.items()}

_ACTION_RESULTS = {
    TriggerAction.ACKNOWLEDGE: "Marked as taken.",
    TriggerAction.POSTPONE: "Snoozed.",
    TriggerAction.DISMISS: "Marked as skipped.",
}


def build_callback_data(action: TriggerAction, trigger_id: str, snooze_count: int = 0) -> str:
    return f"{CALLBACK_PREFIX}:{_ACTION_CODES[action]}:{snooze_count}:{trigger_id}"


def parse_callback_data(data: str | None) -> tuple[TriggerAction, str, int] | None:
    """Return (action, trigger id, snooze count) for "rem:<code>:<snooze>:<trigger id>".

    The snooze count is the one the prompt was rendered with. Returns None
    for anything else.
    """
    if not data:
        return None
    parts = data.split(":", 3)
    if len(parts) != 4:
        return None
    prefix, code, snooze, trigger_id = parts
    if prefix != CALLBACK_PREFIX or code not in _CODE_ACTIONS or not snooze.isdigit() or not trigger_id:
        return None
    return _CODE_ACTIONS[code], trigger_id, int(snooze)


def build_keyboard(
    trigger_id: str, snooze_count: int, max_snooze: int = MAX_SNOOZE_COUNT,
) -> InlineKeyboardMarkup:
    """Prompt buttons; snooze is only offered below the snooze limit."""
    def button(text: str, action: TriggerAction) -> InlineKeyboardButton:
        return InlineKeyboardButton(
            text, callback_data=build_callback_data(action, trigger_id, snooze_count),
        )

    row = [button("Took it", TriggerAction.ACKNOWLEDGE)]
    if snooze_count < max_snooze:
        row.append(button("Snooze 15 min", TriggerAction.POSTPONE))
    row.append(button("Skip", TriggerAction.DISMISS))
    return InlineKeyboardMarkup([row])


class TelegramTriggerBackend:
    """Telegram JobQueue implementation of TriggerBackend."""

    def __init__(
        self,
        application: Application,
        chat_id: int,
        max_snooze: int = MAX_SNOOZE_COUNT,
        on_fired: FiredHandler | None = None,
    ) -> None:
        self._app = application
        self._chat_id = chat_id
        self._max_snooze = max_snooze
        self._on_fired = on_fired

    def bind(self, on_fired: FiredHandler) -> None:
        """Set the handler that receives fired triggers and button presses."""
        self._on_fired = on_fired

    def _job_queue(self) -> JobQueue:
        job_queue = self._app.job_queue
        if job_queue is None:
            raise BackendUnavailable(
                "Telegram JobQueue is not available; install python-telegram-bot[job-queue]"
            )
        return job_queue

    def _our_jobs(self) -> list[Job]:
        return [
            job for job in self._job_queue().jobs()
            if not job.removed and isinstance(job.data, dict) and "payload" in job.data
        ]

    # -- TriggerBackend -----------------------------------------------------

    async def is_available(self) -> bool:
        return self._app.job_queue is not None and bool(self._chat_id)

    async def request_trigger(
        self, trigger_id: str, fire_at: int, payload: TriggerPayload,
    ) -> str:
        job_queue = self._job_queue()
        # Same id replaces the earlier registration
        for job in job_queue.get_jobs_by_name(trigger_id):
            job.schedule_removal()

        when = datetime.fromtimestamp(fire_at / 1000, tz=timezone.utc)
        job_queue.run_once(
            self._fire,
            when=when,
            name=trigger_id,
            data={"fire_at": fire_at, "payload": payload.to_dict()},
            chat_id=self._chat_id,
        )
        logger.debug("Telegram job %s queued for %s", trigger_id, when.isoformat())
        return trigger_id

    async def cancel_trigger(self, trigger_id: str) -> None:
        for job in self._job_queue().get_jobs_by_name(trigger_id):
            job.schedule_removal()

    async def cancel_all_triggers(self) -> None:
        for job in self._our_jobs():
            job.schedule_removal()

    async def list_live_triggers(self) -> list[LiveTrigger]:
        return [
            LiveTrigger(
                id=job.name,
                fire_at=int(job.data["fire_at"]),
                payload=TriggerPayload.from_dict(job.data["payload"]),
            )
            for job in self._our_jobs()
        ]

    # -- Telegram callbacks -------------------------------------------------

    async def _fire(self, context: ContextTypes.DEFAULT_TYPE) -> None:
        """JobQueue callback: show the prompt, then report the fire."""
        job = context.job
        payload = TriggerPayload.from_dict(job.data["payload"])
        try:
            await context.bot.send_message(
                chat_id=self._chat_id,
                text=f"{payload.title}\n{payload.body}",
                reply_markup=build_keyboard(job.name, payload.snooze_count, self._max_snooze),
            )
        except TelegramError as exc:
            logger.error("Failed to send prompt for trigger %s: %s", job.name, exc)

        if self._on_fired is not None:
            await self._on_fired(job.name, payload, None)

    async def handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """CallbackQueryHandler for the prompt buttons."""
        query = update.callback_query
        await query.answer()

        parsed = parse_callback_data(query.data)
        if parsed is None:
            logger.warning("Ignoring unknown callback data %r", query.data)
            return
        action, trigger_id, snooze_count = parsed

        reminder_id, offset = parse_trigger_id(trigger_id)
        payload = TriggerPayload(
            reminder_id=reminder_id,
            snooze_count=snooze_count,
            is_escalation=offset is not None,
            escalation_offset_minutes=offset,
        )
        if self._on_fired is None:
            logger.warning("No handler bound; dropping %s for %s", action.value, trigger_id)
            return

        await self._on_fired(trigger_id, payload, action)

        original = query.message.text if query.message and query.message.text else ""
        try:
            await query.edit_message_text(f"{original}\n\n{_ACTION_RESULTS[action]}".strip())
        except TelegramError as exc:
            logger.warning("Could not update prompt message: %s", exc)
