"""
Medication Reminder — Telegram Bot.

Telegram is both the front door (commands to add, list and delete
reminders) and the trigger backend (prompts with Took it / Snooze / Skip
buttons). Reconciliation runs in post_init, before polling starts.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
import sys
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
)

from medreminder.adapters.telegram_triggers import CALLBACK_PREFIX, TelegramTriggerBackend
from medreminder.config import settings
from medreminder.core.course_planner import MedicationCourse, ReminderDraft
from medreminder.core.reminder_service import ReminderService, SchedulingError
from medreminder.core.status_rules import ReminderPolicy
from medreminder.data.kv_store import SQLiteKeyValueStore
from medreminder.data.store import CoordinatedStore
from medreminder.ports.storage_port import StorageFailure

if TYPE_CHECKING:
    from medreminder.data.models import Reminder

logger = logging.getLogger(__name__)

ADD_USAGE = "Usage: /add name | dosage | kind | YYYY-MM-DD | HH:MM"
COURSE_USAGE = (
    "Usage: /course name | dosage | kind | HH:MM,HH:MM | start YYYY-MM-DD | "
    "end YYYY-MM-DD | once/daily/alternate/weekdays [| 1,3,5]"
)


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores updates from unauthorized users."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Argument parsing / formatting
# ---------------------------------------------------------------------------


def _split_fields(text: str) -> list[str]:
    return [part.strip() for part in text.split("|")]


def parse_add_args(text: str) -> ReminderDraft:
    """Parse "name | dosage | kind | YYYY-MM-DD | HH:MM" into a draft.

    Raises ValueError (or pydantic ValidationError) on malformed input.
    """
    fields = _split_fields(text)
    if len(fields) != 5:
        raise ValueError(ADD_USAGE)
    name, dosage, kind, day, at = fields
    return ReminderDraft(name=name, dosage=dosage, type=kind.lower(), date=day, time=at)


def parse_course_args(text: str) -> MedicationCourse:
    """Parse the /course argument string into a MedicationCourse."""
    fields = _split_fields(text)
    if len(fields) not in (7, 8):
        raise ValueError(COURSE_USAGE)
    name, dosage, kind, times, start, end, pattern = fields[:7]
    weekdays = [int(d) for d in fields[7].split(",") if d.strip()] if len(fields) == 8 else []
    return MedicationCourse(
        name=name,
        dosage=dosage,
        type=kind.lower(),
        times=[t for t in times.split(",") if t.strip()],
        start_date=start,
        end_date=end,
        repeat_pattern=pattern.lower(),
        weekdays=weekdays,
    )


def format_reminder(reminder: Reminder) -> str:
    line = (
        f"{reminder.date} {reminder.time}  {reminder.name} {reminder.dosage} "
        f"({reminder.type.value}) — {reminder.status.value}"
    )
    if reminder.snooze_count:
        line += (
            f", snoozed {reminder.snooze_count}x from "
            f"{reminder.original_date} {reminder.original_time}"
        )
    return f"{line}\n  id: {reminder.id}"


def _service(context: ContextTypes.DEFAULT_TYPE) -> ReminderService:
    return context.bot_data["service"]


def _args_text(context: ContextTypes.DEFAULT_TYPE) -> str:
    return " ".join(context.args or [])


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(
        "I remind you to take your medication.\n\n"
        f"{ADD_USAGE}\n{COURSE_USAGE}\n"
        "/list — all reminders\n"
        "/delete <id> — delete one reminder\n"
        "/deletecourse <course id> — delete a whole course"
    )


@authorized_only
async def cmd_add(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        draft = parse_add_args(_args_text(context))
    except (ValueError, ValidationError) as exc:
        await update.message.reply_text(f"Couldn't read that reminder: {exc}\n{ADD_USAGE}")
        return

    try:
        reminder = await _service(context).create_reminder(draft)
    except SchedulingError as exc:
        await update.message.reply_text(str(exc))
        return
    except StorageFailure as exc:
        logger.error("Failed to store reminder: %s", exc)
        await update.message.reply_text("Sorry, the reminder could not be saved. Please try again.")
        return

    await update.message.reply_text(f"Reminder added:\n{format_reminder(reminder)}")


@authorized_only
async def cmd_course(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        course = parse_course_args(_args_text(context))
    except (ValueError, ValidationError) as exc:
        await update.message.reply_text(f"Couldn't read that course: {exc}\n{COURSE_USAGE}")
        return

    try:
        result = await _service(context).create_course(course)
    except StorageFailure as exc:
        logger.error("Failed to store course: %s", exc)
        await update.message.reply_text("Sorry, the course could not be saved. Please try again.")
        return

    if not result.success:
        await update.message.reply_text(result.error)
        return
    course_id = result.reminders[0].course_id if result.reminders else "-"
    await update.message.reply_text(
        f"Course added: {len(result.reminders)} dose(s), {result.scheduled} scheduled.\n"
        f"Course id: {course_id}"
    )


@authorized_only
async def cmd_list(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    reminders = await _service(context).list_reminders()
    if not reminders:
        await update.message.reply_text("No reminders yet.")
        return
    await update.message.reply_text("\n".join(format_reminder(r) for r in reminders))


@authorized_only
async def cmd_delete(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    reminder_id = _args_text(context).strip()
    if not reminder_id:
        await update.message.reply_text("Usage: /delete <id>")
        return
    deleted = await _service(context).delete_reminder(reminder_id)
    await update.message.reply_text("Reminder deleted." if deleted else "No reminder with that id.")


@authorized_only
async def cmd_deletecourse(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    course_id = _args_text(context).strip()
    if not course_id:
        await update.message.reply_text("Usage: /deletecourse <course id>")
        return
    count = await _service(context).delete_by_course(course_id)
    await update.message.reply_text(f"Deleted {count} reminder(s).")


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


async def _post_init(app: Application) -> None:
    """Restore triggers before the first update is processed."""
    report = await app.bot_data["service"].start()
    if report is not None:
        logger.info(
            "Restored %d reminder trigger set(s), pruned %d stale ledger row(s)",
            len(report.restored), report.pruned,
        )


def build_app() -> Application:
    """Build the Telegram application with the reminder stack wired in."""
    app = (
        ApplicationBuilder()
        .token(settings.TELEGRAM_BOT_TOKEN)
        .post_init(_post_init)
        .build()
    )

    policy = ReminderPolicy.from_settings(settings)
    backend = TelegramTriggerBackend(app, settings.reminder_chat_id, max_snooze=policy.max_snooze)
    store = CoordinatedStore(SQLiteKeyValueStore())
    service = ReminderService(store, backend, tz=ZoneInfo(settings.TIMEZONE), policy=policy)
    backend.bind(service.on_fired)
    app.bot_data["service"] = service

    app.add_handler(CommandHandler(["start", "help"], cmd_start))
    app.add_handler(CommandHandler("add", cmd_add))
    app.add_handler(CommandHandler("course", cmd_course))
    app.add_handler(CommandHandler("list", cmd_list))
    app.add_handler(CommandHandler("delete", cmd_delete))
    app.add_handler(CommandHandler("deletecourse", cmd_deletecourse))
    app.add_handler(CallbackQueryHandler(
        authorized_only(backend.handle_callback), pattern=rf"^{CALLBACK_PREFIX}:",
    ))

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    token = settings.TELEGRAM_BOT_TOKEN
    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)
    if not settings.reminder_chat_id:
        print("ERROR: set ALLOWED_USER_IDS or REMINDER_CHAT_ID in .env", file=sys.stderr)
        sys.exit(1)

    logger.info("Starting medication reminder bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
