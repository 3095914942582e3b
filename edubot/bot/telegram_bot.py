"""
EduBot — Telegram Bot.

Thin command layer over the task and reminder services. Handlers parse
arguments, call one service method, and reply in plain text; all scheduling
and persistence decisions live in edubot/core.

Startup (post_init) connects and migrates the database, starts the job
scheduler and re-registers pending reminders. Shutdown cancels the pending
jobs and closes the database.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes

from edubot.config import settings
from edubot.core.parser import ParseError, extract_time
from edubot.core.reminder_service import ReminderRejected
from edubot.core.task_service import TaskFilters
from edubot.data.models import Frequency, RecurrenceRule, Task
from edubot.ports.database_port import StorageError

if TYPE_CHECKING:
    from edubot.core.clock import Clock
    from edubot.core.reminder_service import ReminderService
    from edubot.core.task_service import TaskService
    from edubot.ports.database_port import Database
    from edubot.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

_TZ = ZoneInfo(settings.TIMEZONE)

ADDTASK_USAGE = (
    "Usage: /addtask <task>\n"
    "Examples:\n"
    "  /addtask study math tomorrow by review chapter 5 #exam\n"
    "  /addtask urgent call client in 2 hours\n"
    "  /addtask buy milk 18:30 #shopping"
)
EVERY_USAGE = (
    "Usage: /every <daily|weekly|monthly> [N] [until YYYY-MM-DD] <task>\n"
    "Example: /every weekly 2 until 2026-06-30 team meeting tomorrow at 10:00"
)
REMIND_USAGE = (
    "Usage: /remind <when> <message>\n"
    "Examples:\n"
    "  /remind in 30 minutes submit homework\n"
    "  /remind tomorrow at 8:00 lesson starts"
)
STORAGE_ERROR_REPLY = "Something went wrong while saving your data. Please try again."


# ---------------------------------------------------------------------------
# Security decorators
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Silently ignore users outside ALLOWED_USER_IDS (when the list is set)."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or (settings.ALLOWED_USER_IDS and user.id not in settings.ALLOWED_USER_IDS):
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return
        return await func(update, context)

    return wrapper


def admin_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Restrict a command to ADMIN_USER_IDS."""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ADMIN_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Non-admin user_id=%s tried an admin command", uid)
            await update.message.reply_text("This command is for administrators only.")
            return
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _fmt_time(value: datetime | None) -> str:
    if value is None:
        return "no due date"
    return value.astimezone(_TZ).strftime("%Y-%m-%d %H:%M")


def _format_task(task: Task) -> str:
    line = f"#{task.id} [{task.status.value}] {task.title} ({task.priority.value}, {task.category.value})"
    if task.due_at is not None:
        line += f" due {_fmt_time(task.due_at)}"
    if task.recurrence is not None:
        line += f" every {task.recurrence.interval} {task.recurrence.frequency.value}"
    if task.tags:
        line += " " + " ".join(f"#{tag}" for tag in sorted(task.tags))
    return line


def _target(update: Update) -> str:
    return str(update.effective_chat.id)


def _tasks(context: ContextTypes.DEFAULT_TYPE) -> TaskService:
    return context.bot_data["tasks"]


def _reminders(context: ContextTypes.DEFAULT_TYPE) -> ReminderService:
    return context.bot_data["reminders"]


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message."""
    await update.message.reply_text(
        "Welcome to EduBot!\n\n"
        "I keep track of your study tasks and remind you on time.\n"
        "  /addtask to add a task in plain English or Arabic\n"
        "  /remind to set a one-off reminder\n"
        "  /tasks to see your tasks\n\n"
        "Type /help for the full command list."
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "Available commands:\n"
        "/addtask <task> - Add a task (time, priority, category and #tags are detected)\n"
        "/every <daily|weekly|monthly> [N] [until YYYY-MM-DD] <task> - Add a repeating task\n"
        "/tasks [status] [category] [priority] [today|tomorrow] - List your tasks\n"
        "/complete <id> - Mark a task as completed\n"
        "/canceltask <id> - Cancel a task\n"
        "/remind <when> <message> - Set a reminder\n"
        "/reminders - List pending reminders\n"
        "/cancelreminder <id> - Cancel a reminder\n"
        "/stats - Task statistics\n"
        "/help - Show this message\n\n"
        f"{ADDTASK_USAGE}"
    )


@authorized_only
async def cmd_addtask(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /addtask <text> — parse and store a task."""
    service = _tasks(context)
    parsed = service.parse_task_input(" ".join(context.args or []))
    if isinstance(parsed, ParseError):
        await update.message.reply_text(f"Could not add the task: {parsed.reason}.\n\n{ADDTASK_USAGE}")
        return

    try:
        task_id = await service.create_task(
            update.effective_user.id, parsed, target=_target(update),
        )
    except StorageError as exc:
        logger.error("/addtask error: %s", exc)
        await update.message.reply_text(STORAGE_ERROR_REPLY)
        return

    lines = [f"Task #{task_id} added: {parsed.title}",
             f"Priority: {parsed.priority.value}, category: {parsed.category.value}",
             f"Due: {_fmt_time(parsed.due_at)}"]
    if parsed.description:
        lines.append(f"Details: {parsed.description}")
    if parsed.tags:
        lines.append("Tags: " + " ".join(f"#{tag}" for tag in sorted(parsed.tags)))
    await update.message.reply_text("\n".join(lines))


def _parse_every_args(args: list[str]) -> tuple[RecurrenceRule, str] | None:
    """["weekly", "2", "until", "2026-06-30", "gym"] -> (rule, "gym"). None when malformed.

    The series includes the `until` day itself, in the bot's timezone.
    """
    if not args:
        return None
    try:
        frequency = Frequency(args[0].lower())
    except ValueError:
        return None
    rest = args[1:]
    interval = 1
    if rest and rest[0].isdigit():
        interval = int(rest[0])
        rest = rest[1:]
    until = None
    if rest and rest[0].lower() == "until":
        if len(rest) < 2:
            return None
        try:
            last_day = date.fromisoformat(rest[1])
        except ValueError:
            return None
        until = datetime.combine(last_day + timedelta(days=1), time(0, 0), tzinfo=_TZ)
        rest = rest[2:]
    if interval < 1 or not rest:
        return None
    return RecurrenceRule(frequency=frequency, interval=interval, until=until), " ".join(rest)


@authorized_only
async def cmd_every(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /every <frequency> [N] [until YYYY-MM-DD] <text> — add a repeating task."""
    parsed_args = _parse_every_args(list(context.args or []))
    if parsed_args is None:
        await update.message.reply_text(EVERY_USAGE)
        return
    rule, text = parsed_args

    service = _tasks(context)
    parsed = service.parse_task_input(text)
    if isinstance(parsed, ParseError):
        await update.message.reply_text(f"Could not add the task: {parsed.reason}.\n\n{EVERY_USAGE}")
        return

    try:
        task_id = await service.create_task(
            update.effective_user.id, parsed, recurrence=rule, target=_target(update),
        )
    except StorageError as exc:
        logger.error("/every error: %s", exc)
        await update.message.reply_text(STORAGE_ERROR_REPLY)
        return

    until = ""
    if rule.until is not None:
        until = f" until {(rule.until - timedelta(days=1)).date().isoformat()}"
    await update.message.reply_text(
        f"Repeating task #{task_id} added: {parsed.title} "
        f"(every {rule.interval} {rule.frequency.value}{until})"
    )


@authorized_only
async def cmd_tasks(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /tasks [filters] — list the user's tasks."""
    service = _tasks(context)
    filters = TaskFilters.from_words(list(context.args or []), service.today())
    try:
        tasks = await service.list_tasks(update.effective_user.id, filters)
    except StorageError as exc:
        logger.error("/tasks error: %s", exc)
        await update.message.reply_text("Couldn't load tasks. Please try again.")
        return

    if not tasks:
        await update.message.reply_text("No tasks found.")
        return
    await update.message.reply_text("Your tasks:\n" + "\n".join(_format_task(t) for t in tasks))


async def _close_task(update: Update, context: ContextTypes.DEFAULT_TYPE, complete: bool) -> None:
    command = "/complete" if complete else "/canceltask"
    args = context.args
    if not args:
        await update.message.reply_text(f"Usage: {command} <task_id>\nUse /tasks to see IDs.")
        return
    try:
        task_id = int(args[0])
    except ValueError:
        await update.message.reply_text("Invalid task ID. Use /tasks to see valid IDs.")
        return

    service = _tasks(context)
    owner = update.effective_user.id
    try:
        if complete:
            ok = await service.complete_task(task_id, owner)
        else:
            ok = await service.cancel_task(task_id, owner)
    except StorageError as exc:
        logger.error("%s error: %s", command, exc)
        await update.message.reply_text(STORAGE_ERROR_REPLY)
        return

    if ok:
        verb = "completed" if complete else "cancelled"
        await update.message.reply_text(f"Task #{task_id} {verb}.")
    else:
        await update.message.reply_text(
            f"Task #{task_id} was not found or is already closed."
        )


@authorized_only
async def cmd_complete(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /complete <id> — mark a task as completed."""
    await _close_task(update, context, complete=True)


@authorized_only
async def cmd_canceltask(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /canceltask <id> — cancel a task."""
    await _close_task(update, context, complete=False)


@authorized_only
async def cmd_remind(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /remind <when> <message> — one-off reminder to this chat."""
    text = " ".join(context.args or [])
    clock: Clock = context.bot_data["clock"]
    match = extract_time(text, clock.now().astimezone(_TZ))
    if match is None:
        await update.message.reply_text(f"I couldn't find a time in that.\n\n{REMIND_USAGE}")
        return
    message = (text[:match.start] + text[match.end:]).strip()

    try:
        result = await _reminders(context).add_reminder(_target(update), match.due_at, message)
    except StorageError as exc:
        logger.error("/remind error: %s", exc)
        await update.message.reply_text(STORAGE_ERROR_REPLY)
        return

    if isinstance(result, ReminderRejected):
        await update.message.reply_text(f"Reminder not set: {result.reason}.")
        return
    await update.message.reply_text(f"Reminder #{result} set for {_fmt_time(match.due_at)}.")


@authorized_only
async def cmd_reminders(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /reminders — pending reminders for this chat."""
    try:
        pending = await _reminders(context).list_reminders(_target(update))
    except StorageError as exc:
        logger.error("/reminders error: %s", exc)
        await update.message.reply_text("Couldn't load reminders. Please try again.")
        return

    if not pending:
        await update.message.reply_text("No pending reminders.")
        return
    lines = ["Pending reminders:"]
    lines.extend(f"#{r.id} {_fmt_time(r.fire_at)} {r.message}" for r in pending)
    await update.message.reply_text("\n".join(lines))


@authorized_only
async def cmd_cancelreminder(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cancelreminder <id> — cancel one of this chat's reminders."""
    args = context.args
    if not args:
        await update.message.reply_text("Usage: /cancelreminder <id>\nUse /reminders to see IDs.")
        return
    try:
        reminder_id = int(args[0])
    except ValueError:
        await update.message.reply_text("Invalid reminder ID. Use /reminders to see valid IDs.")
        return

    service = _reminders(context)
    try:
        own_ids = {r.id for r in await service.list_reminders(_target(update))}
        ok = reminder_id in own_ids and await service.cancel_reminder(reminder_id)
    except StorageError as exc:
        logger.error("/cancelreminder error: %s", exc)
        await update.message.reply_text(STORAGE_ERROR_REPLY)
        return

    if ok:
        await update.message.reply_text(f"Reminder #{reminder_id} cancelled.")
    else:
        await update.message.reply_text(f"Reminder #{reminder_id} could not be cancelled.")


@authorized_only
async def cmd_stats(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stats — per-user task counters."""
    try:
        stats = await _tasks(context).stats(update.effective_user.id)
    except StorageError as exc:
        logger.error("/stats error: %s", exc)
        await update.message.reply_text("Couldn't load statistics. Please try again.")
        return

    lines = [
        f"Total tasks: {stats.total}",
        f"Completed: {stats.completed} ({stats.completion_rate}%)",
        f"Pending: {stats.pending}",
        f"Overdue: {stats.overdue}",
        f"Cancelled: {stats.cancelled}",
    ]
    if stats.by_category:
        lines.append("By category: " + ", ".join(
            f"{name} {count}" for name, count in sorted(stats.by_category.items())
        ))
    await update.message.reply_text("\n".join(lines))


@authorized_only
@admin_only
async def cmd_undelivered(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /undelivered — reminders whose delivery failed (admins only)."""
    try:
        missed = await _reminders(context).undelivered()
    except StorageError as exc:
        logger.error("/undelivered error: %s", exc)
        await update.message.reply_text("Couldn't load reminders. Please try again.")
        return

    if not missed:
        await update.message.reply_text("All due reminders were delivered.")
        return
    lines = [f"{len(missed)} undelivered reminder(s):"]
    lines.extend(f"#{r.id} to {r.target} at {_fmt_time(r.fire_at)}: {r.message}" for r in missed)
    await update.message.reply_text("\n".join(lines))


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def _on_startup(app: Application) -> None:
    db: Database = app.bot_data["db"]
    await db.connect()
    await db.migrate()
    app.bot_data["scheduler"].start(app.job_queue)
    await app.bot_data["reminders"].initialize()


async def _on_shutdown(app: Application) -> None:
    await app.bot_data["scheduler"].shutdown()
    await app.bot_data["db"].close()


async def _overdue_sweep_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
    try:
        await _tasks(context).sweep_overdue()
    except StorageError as exc:
        logger.error("Overdue sweep failed: %s", exc)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    notifier: NotificationPort | None = None,
    database: Database | None = None,
    clock: Clock | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
        database: Storage backend. Defaults to the one selected by DB_TYPE.
        clock: Time source. Defaults to the system clock in TIMEZONE.
    """
    from edubot.core.clock import SystemClock
    from edubot.core.job_scheduler import JobScheduler
    from edubot.core.reminder_service import ReminderService
    from edubot.core.task_service import TaskService
    from edubot.data.task_db import TaskDB

    app = (
        ApplicationBuilder()
        .token(settings.TELEGRAM_BOT_TOKEN)
        .post_init(_on_startup)
        .post_shutdown(_on_shutdown)
        .build()
    )

    if notifier is None:
        from edubot.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    if database is None:
        from edubot.data.db_factory import create_database
        database = create_database()

    if clock is None:
        clock = SystemClock(_TZ)

    store = TaskDB(database)
    scheduler = JobScheduler(clock)
    reminders = ReminderService(
        scheduler, store, notifier, clock, _TZ,
        lookahead_days=settings.RECURRENCE_LOOKAHEAD_DAYS,
    )

    app.bot_data["db"] = database
    app.bot_data["clock"] = clock
    app.bot_data["scheduler"] = scheduler
    app.bot_data["reminders"] = reminders
    app.bot_data["tasks"] = TaskService(store, reminders, clock, _TZ)

    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("addtask", cmd_addtask))
    app.add_handler(CommandHandler("every", cmd_every))
    app.add_handler(CommandHandler("tasks", cmd_tasks))
    app.add_handler(CommandHandler("complete", cmd_complete))
    app.add_handler(CommandHandler("canceltask", cmd_canceltask))
    app.add_handler(CommandHandler("remind", cmd_remind))
    app.add_handler(CommandHandler("reminders", cmd_reminders))
    app.add_handler(CommandHandler("cancelreminder", cmd_cancelreminder))
    app.add_handler(CommandHandler("stats", cmd_stats))
    app.add_handler(CommandHandler("undelivered", cmd_undelivered))

    app.job_queue.run_repeating(
        _overdue_sweep_callback,
        interval=settings.OVERDUE_SWEEP_MINUTES * 60,
        first=60,
        name="overdue_sweep",
    )
    logger.info("Overdue sweep every %d minute(s)", settings.OVERDUE_SWEEP_MINUTES)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def setup_logging() -> None:
    """Console logging at LOG_LEVEL, plus LOG_FILE when configured."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.LOG_FILE:
        handlers.append(logging.FileHandler(settings.LOG_FILE, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    setup_logging()
    logger.info("Starting EduBot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
