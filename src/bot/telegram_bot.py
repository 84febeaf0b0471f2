"""
Team Presence Bot — Telegram Bot.

Telegram is the only user interface. Every interaction (recording that
someone left, unplanned activities, the status board, statistics and the
admin roster import/export) flows through this bot, which renders the
PresenceService responses.

When ALLOWED_USER_IDS is set, strangers are silently ignored.
"""

from __future__ import annotations

import logging
import tempfile
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Coroutine

from telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    KeyboardButton,
    ReplyKeyboardMarkup,
    Update,
)
from telegram.error import BadRequest
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from src.config import settings
from src.core.presence_service import (
    ConfirmationPromptResponse,
    ExportResponse,
    ImportReportResponse,
    PresenceService,
    SelectionPromptResponse,
    ServiceResponse,
)
from src.core.roster_io import is_spreadsheet

logger = logging.getLogger(__name__)

# Main keyboard buttons
BTN_LEAVE = "Record leave"
BTN_ACTIVITY = "Unplanned activity"
BTN_WHERE = "Where is everyone"
BTN_STATS = "Statistics"

IMPORT_COMMANDS = ("/import", "/add_excel")

GENERIC_FAILURE = "❌ Sorry, something went wrong. Please try again."

_SESSION_PURGE_INTERVAL_SECONDS = 300


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def _is_allowed(user_id: int | None) -> bool:
    if not settings.ALLOWED_USER_IDS:
        return True
    return user_id is not None and user_id in settings.ALLOWED_USER_IDS


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores updates from users outside the allow-list.

    Does NOT send any response to strangers — the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or not _is_allowed(user.id):
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def main_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [
            [KeyboardButton(BTN_LEAVE), KeyboardButton(BTN_ACTIVITY)],
            [KeyboardButton(BTN_WHERE), KeyboardButton(BTN_STATS)],
        ],
        resize_keyboard=True,
    )


def choices_keyboard(response: ServiceResponse) -> InlineKeyboardMarkup | None:
    """Inline keyboard for a selection (two per row) or a yes/no confirmation."""
    if isinstance(response, SelectionPromptResponse):
        buttons = [
            InlineKeyboardButton(c.label, callback_data=f"select:{c.token}")
            for c in response.choices
        ]
        rows = [buttons[i : i + 2] for i in range(0, len(buttons), 2)]
        return InlineKeyboardMarkup(rows)
    if isinstance(response, ConfirmationPromptResponse):
        return InlineKeyboardMarkup([[
            InlineKeyboardButton(c.label, callback_data=f"confirm:{c.token}")
            for c in response.choices
        ]])
    return None


async def _reply(update: Update, response: ServiceResponse) -> None:
    """Send a response as a new message, falling back to plain text if the
    Markdown in user-typed content can't be parsed."""
    markup = choices_keyboard(response)
    try:
        await update.message.reply_text(
            response.message, parse_mode="Markdown", reply_markup=markup,
        )
    except BadRequest as exc:
        logger.warning("Markdown rejected, resending as plain text: %s", exc)
        await update.message.reply_text(response.message, reply_markup=markup)


async def _edit(query: Any, response: ServiceResponse) -> None:
    """Replace the message that carried the tapped inline keyboard."""
    markup = choices_keyboard(response)
    try:
        await query.edit_message_text(
            response.message, parse_mode="Markdown", reply_markup=markup,
        )
    except BadRequest as exc:
        logger.warning("Markdown rejected, resending as plain text: %s", exc)
        await query.edit_message_text(response.message, reply_markup=markup)


async def _reply_failure(update: Update) -> None:
    """Tell the user something went wrong, without raising again."""
    message = update.effective_message
    if message is None:
        return
    try:
        await message.reply_text(GENERIC_FAILURE)
    except Exception as exc:
        logger.error("Sending failure notice failed: %s", exc)


def _service(context: ContextTypes.DEFAULT_TYPE) -> PresenceService:
    return context.bot_data["presence"]


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — welcome message and main keyboard."""
    await update.message.reply_text(
        "Welcome to *Team Presence Bot*!\n\n"
        "Use the buttons below, or just type a surname with a time:\n"
        "• `Petrov 14:30` — Petrov left at 14:30\n"
        "• `Petrov now meeting a client` — unplanned activity\n\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
        reply_markup=main_keyboard(),
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/leave — Record that someone left\n"
        "/activity — Record an unplanned activity\n"
        "/where — Everyone's status for today\n"
        "/stat today|yesterday|DD.MM.YYYY — Statistics for a day\n"
        "/stat excel — Export all statistics (admins)\n"
        "/import — Send with an .xlsx roster attached (admins)\n"
        "/cancel — Abandon the current action\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_leave(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /leave — pick the person who is leaving now."""
    try:
        await _reply(update, _service(context).start_leave(update.effective_chat.id))
    except Exception as exc:
        logger.error("/leave failed: %s", exc)
        await _reply_failure(update)


@authorized_only
async def cmd_activity(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /activity — pick a person, then describe the activity."""
    try:
        await _reply(update, _service(context).start_activity(update.effective_chat.id))
    except Exception as exc:
        logger.error("/activity failed: %s", exc)
        await _reply_failure(update)


@authorized_only
async def cmd_where(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /where — today's status board."""
    try:
        await _reply(update, _service(context).status_board())
    except Exception as exc:
        logger.error("/where failed: %s", exc)
        await _reply_failure(update)


@authorized_only
async def cmd_cancel(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /cancel — drop the conversation in progress."""
    try:
        await _reply(update, _service(context).cancel(update.effective_chat.id))
    except Exception as exc:
        logger.error("/cancel failed: %s", exc)
        await _reply_failure(update)


@authorized_only
async def cmd_stat(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stat <period> — statistics for a day, or the Excel export."""
    args = context.args or []
    try:
        if not args:
            await _send_stats_menu(update)
        elif args[0].lower() == "excel":
            await _send_export(update, context)
        else:
            await _reply(update, _service(context).statistics(args[0]))
    except Exception as exc:
        logger.error("/stat %s failed: %s", " ".join(args), exc)
        await _reply_failure(update)


async def _send_stats_menu(update: Update) -> None:
    await update.message.reply_text(
        "Choose a statistics period:\n"
        "/stat today — for today\n"
        "/stat yesterday — for yesterday\n"
        "/stat DD.MM.YYYY — for a specific date\n"
        "/stat excel — export to Excel"
    )


async def _send_export(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Build the statistics workbook, send it, then delete the temp file."""
    response = _service(context).export_statistics(update.effective_user.id)
    if not isinstance(response, ExportResponse) or response.path is None:
        await _reply(update, response)
        return

    try:
        await update.message.reply_document(
            document=response.path,
            filename=response.path.name,
            caption=response.message,
        )
    except Exception as exc:
        logger.error("Sending export failed: %s", exc)
        await update.message.reply_text("❌ Couldn't send the export file. Please try again.")
    finally:
        response.path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Message handlers
# ---------------------------------------------------------------------------


@authorized_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle plain text — main keyboard buttons, then the conversation."""
    text = update.message.text or ""
    chat_id = update.effective_chat.id
    service = _service(context)

    try:
        if text == BTN_LEAVE:
            response = service.start_leave(chat_id)
        elif text == BTN_ACTIVITY:
            response = service.start_activity(chat_id)
        elif text == BTN_WHERE:
            response = service.status_board()
        elif text == BTN_STATS:
            await _send_stats_menu(update)
            return
        elif text.strip().startswith(IMPORT_COMMANDS):
            await update.message.reply_text("❌ Attach the .xlsx roster to the /import command.")
            return
        else:
            response = service.handle_text(chat_id, text)

        await _reply(update, response)
    except Exception as exc:
        logger.error("Text handling error: %s", exc)
        await _reply_failure(update)


@authorized_only
async def handle_document(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle a roster workbook sent with an /import caption."""
    caption = (update.message.caption or "").strip()
    if not caption.startswith(IMPORT_COMMANDS):
        return

    service = _service(context)
    user_id = update.effective_user.id
    if not service.is_privileged(user_id):
        logger.warning("Roster import refused for user_id=%s", user_id)
        await update.message.reply_text("❌ You don't have permission to do that.")
        return

    document = update.message.document
    if not is_spreadsheet(document.file_name):
        await update.message.reply_text("❌ The file must be an Excel workbook (.xlsx).")
        return

    tmp_path: str | None = None
    try:
        tg_file = await context.bot.get_file(document.file_id)
        with tempfile.NamedTemporaryFile(suffix=Path(document.file_name).suffix, delete=False) as tmp:
            tmp_path = tmp.name
        await update.message.reply_text("\U0001f4e5 Processing the roster...")
        await tg_file.download_to_drive(tmp_path)

        response = service.import_roster(user_id, tmp_path)
        await update.message.reply_text(response.message)
        if isinstance(response, ImportReportResponse):
            await update.message.reply_text(response.roster_message)
    except Exception as exc:
        logger.error("Roster import error: %s", exc)
        await update.message.reply_text(
            "❌ Sorry, I couldn't process the roster file. Please try again."
        )
    finally:
        if tmp_path:
            Path(tmp_path).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Callback handlers
# ---------------------------------------------------------------------------


async def _handle_select_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle a tap on a person button."""
    query = update.callback_query
    await query.answer()

    user = query.from_user
    if user is None or not _is_allowed(user.id):
        return

    token = query.data.split(":", 1)[1]
    try:
        response = _service(context).handle_selection(update.effective_chat.id, token)
        await _edit(query, response)
    except Exception as exc:
        logger.error("Selection callback error: %s", exc)
        await _reply_failure(update)


async def _handle_confirm_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle Yes/No on an overwrite confirmation."""
    query = update.callback_query
    await query.answer()

    user = query.from_user
    if user is None or not _is_allowed(user.id):
        return

    confirmed = query.data.split(":", 1)[1] == "yes"
    try:
        response = _service(context).handle_confirmation(update.effective_chat.id, confirmed)
        await _edit(query, response)
    except Exception as exc:
        logger.error("Confirmation callback error: %s", exc)
        await _reply_failure(update)


async def _on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Last-resort handler for anything a handler let through."""
    logger.error("Unhandled error while processing an update", exc_info=context.error)
    if isinstance(update, Update):
        await _reply_failure(update)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(service: PresenceService | None = None) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        service: Presence service. Defaults to one backed by
                 settings.DATABASE_PATH.
    """
    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).build()

    if service is None:
        from src.data.db import PersonDB, StatusDB
        service = PresenceService(PersonDB(), StatusDB())

    app.bot_data["presence"] = service

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("leave", cmd_leave))
    app.add_handler(CommandHandler("activity", cmd_activity))
    app.add_handler(CommandHandler("where", cmd_where))
    app.add_handler(CommandHandler("stat", cmd_stat))
    app.add_handler(CommandHandler("cancel", cmd_cancel))
    app.add_handler(CallbackQueryHandler(_handle_select_callback, pattern=r"^select:\d+$"))
    app.add_handler(CallbackQueryHandler(_handle_confirm_callback, pattern=r"^confirm:(yes|no)$"))

    # Roster workbook with /import caption
    app.add_handler(MessageHandler(filters.Document.ALL, handle_document))

    # Text messages (non-command, plus the /import reminder)
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))
    app.add_handler(MessageHandler(filters.Regex(r"^/(import|add_excel)\b"), handle_text))

    app.add_error_handler(_on_error)

    _setup_session_purge(app, service)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def _setup_session_purge(app: Application, service: PresenceService) -> None:
    """Evict idle conversation sessions periodically."""

    async def _purge_job_callback(context: ContextTypes.DEFAULT_TYPE) -> None:
        service.purge_expired_sessions()

    app.job_queue.run_repeating(
        _purge_job_callback,
        interval=_SESSION_PURGE_INTERVAL_SECONDS,
        first=_SESSION_PURGE_INTERVAL_SECONDS,
        name="session_purge",
    )

    logger.info(
        "Session purge scheduled every %ds (TTL %d min)",
        _SESSION_PURGE_INTERVAL_SECONDS,
        settings.SESSION_TTL_MINUTES,
    )


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Team Presence Bot...")
    if not settings.ADMIN_USER_IDS:
        logger.warning("ADMIN_USER_IDS not set: roster import and export are unavailable")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
