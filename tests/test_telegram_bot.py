"""Tests for src.bot.telegram_bot — Telegram bot handlers.

Tests routing, rendering and authorization of the handlers.
The PresenceService is mocked; no network access.
"""

import pytest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from telegram import InlineKeyboardMarkup
from telegram.error import BadRequest
from telegram.ext import CommandHandler

from src.bot.telegram_bot import (
    BTN_ACTIVITY,
    BTN_LEAVE,
    BTN_STATS,
    BTN_WHERE,
    GENERIC_FAILURE,
    _on_error,
    _handle_confirm_callback,
    _handle_select_callback,
    build_app,
    choices_keyboard,
    cmd_activity,
    cmd_cancel,
    cmd_leave,
    cmd_stat,
    cmd_where,
    handle_document,
    handle_text,
)
from src.core.presence_service import (
    Choice,
    ConfirmationPromptResponse,
    ErrorKind,
    ErrorResponse,
    ExportResponse,
    ImportReportResponse,
    ResponseKind,
    SelectionPromptResponse,
    ServiceResponse,
)

CHAT = 100


def _make_update(text="", user_id=12345, chat_id=CHAT):
    """Create a mock Update with a text message."""
    update = MagicMock()
    update.message.text = text
    update.effective_user.id = user_id
    update.effective_chat.id = chat_id
    update.message.reply_text = AsyncMock()
    update.message.reply_document = AsyncMock()
    update.effective_message = update.message
    return update


def _make_callback_update(data, user_id=12345, chat_id=CHAT):
    """Create a mock Update carrying an inline-button callback query."""
    update = MagicMock()
    update.effective_chat.id = chat_id
    update.callback_query.data = data
    update.callback_query.from_user.id = user_id
    update.callback_query.answer = AsyncMock()
    update.callback_query.edit_message_text = AsyncMock()
    update.effective_message.reply_text = AsyncMock()
    return update


def _make_context(service=None, args=None):
    """Create a mock context with the presence service in bot_data."""
    context = MagicMock()
    context.bot_data = {"presence": service or MagicMock()}
    context.args = args or []
    return context


def _text(message="ok"):
    return ServiceResponse(kind=ResponseKind.SUCCESS, message=message)


def _selection(*labels):
    return SelectionPromptResponse(
        kind=ResponseKind.SELECTION_PROMPT,
        message="Who?",
        choices=[Choice(label, str(i)) for i, label in enumerate(labels, start=1)],
    )


# ---------------------------------------------------------------------------
# Keyboards
# ---------------------------------------------------------------------------


class TestChoicesKeyboard:
    def test_people_two_per_row(self):
        markup = choices_keyboard(_selection("Petrov Ivan", "Petrov Pavel", "Ivanova Maria"))
        assert isinstance(markup, InlineKeyboardMarkup)
        rows = markup.inline_keyboard
        assert [len(r) for r in rows] == [2, 1]
        assert rows[0][0].text == "Petrov Ivan"
        assert rows[0][0].callback_data == "select:1"
        assert rows[1][0].callback_data == "select:3"

    def test_confirmation(self):
        response = ConfirmationPromptResponse(
            kind=ResponseKind.CONFIRMATION_PROMPT,
            message="Replace?",
            choices=[Choice("Yes, replace", "yes"), Choice("No", "no")],
        )
        rows = choices_keyboard(response).inline_keyboard
        assert [b.callback_data for b in rows[0]] == ["confirm:yes", "confirm:no"]

    def test_plain_response_has_no_keyboard(self):
        assert choices_keyboard(_text()) is None


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_stranger_is_ignored(self):
        service = MagicMock()
        update = _make_update(user_id=999)
        with patch("src.bot.telegram_bot.settings") as mock_settings:
            mock_settings.ALLOWED_USER_IDS = [12345]
            await cmd_where(update, _make_context(service))
        service.status_board.assert_not_called()
        update.message.reply_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_listed_user_is_served(self):
        service = MagicMock()
        service.status_board.return_value = _text("board")
        update = _make_update(user_id=12345)
        with patch("src.bot.telegram_bot.settings") as mock_settings:
            mock_settings.ALLOWED_USER_IDS = [12345]
            await cmd_where(update, _make_context(service))
        update.message.reply_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_allow_list_serves_everyone(self):
        service = MagicMock()
        service.status_board.return_value = _text("board")
        update = _make_update(user_id=999)
        with patch("src.bot.telegram_bot.settings") as mock_settings:
            mock_settings.ALLOWED_USER_IDS = []
            await cmd_where(update, _make_context(service))
        update.message.reply_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stranger_callback_is_ignored(self):
        service = MagicMock()
        update = _make_callback_update("select:1", user_id=999)
        with patch("src.bot.telegram_bot.settings") as mock_settings:
            mock_settings.ALLOWED_USER_IDS = [12345]
            await _handle_select_callback(update, _make_context(service))
        service.handle_selection.assert_not_called()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    @pytest.mark.asyncio
    async def test_leave_sends_person_keyboard(self):
        service = MagicMock()
        service.start_leave.return_value = _selection("Petrov Ivan")
        update = _make_update("/leave")

        await cmd_leave(update, _make_context(service))

        service.start_leave.assert_called_once_with(CHAT)
        kwargs = update.message.reply_text.call_args.kwargs
        assert isinstance(kwargs["reply_markup"], InlineKeyboardMarkup)
        assert kwargs["parse_mode"] == "Markdown"

    @pytest.mark.asyncio
    async def test_activity(self):
        service = MagicMock()
        service.start_activity.return_value = _selection("Petrov Ivan")
        await cmd_activity(_make_update("/activity"), _make_context(service))
        service.start_activity.assert_called_once_with(CHAT)

    @pytest.mark.asyncio
    async def test_cancel(self):
        service = MagicMock()
        service.cancel.return_value = ServiceResponse(ResponseKind.CANCELLED, "Action cancelled.")
        update = _make_update("/cancel")
        await cmd_cancel(update, _make_context(service))
        service.cancel.assert_called_once_with(CHAT)
        assert update.message.reply_text.call_args.args[0] == "Action cancelled."

    @pytest.mark.asyncio
    async def test_markdown_failure_falls_back_to_plain_text(self):
        service = MagicMock()
        service.status_board.return_value = _text("*unbalanced_")
        update = _make_update("/where")
        update.message.reply_text = AsyncMock(
            side_effect=[BadRequest("Can't parse entities"), None],
        )

        await cmd_where(update, _make_context(service))

        assert update.message.reply_text.await_count == 2
        assert "parse_mode" not in update.message.reply_text.call_args.kwargs


class TestStatCommand:
    @pytest.mark.asyncio
    async def test_without_args_shows_menu(self):
        service = MagicMock()
        update = _make_update("/stat")
        await cmd_stat(update, _make_context(service))
        assert "/stat today" in update.message.reply_text.call_args.args[0]
        service.statistics.assert_not_called()

    @pytest.mark.asyncio
    async def test_period(self):
        service = MagicMock()
        service.statistics.return_value = _text("stats")
        await cmd_stat(_make_update("/stat today"), _make_context(service, ["today"]))
        service.statistics.assert_called_once_with("today")

    @pytest.mark.asyncio
    async def test_excel_sends_document_and_deletes_it(self, tmp_path):
        path = tmp_path / "statistics_export.xlsx"
        path.write_bytes(b"xlsx")
        service = MagicMock()
        service.export_statistics.return_value = ExportResponse(
            kind=ResponseKind.EXPORT, message="Full statistics", path=path, row_count=3,
        )
        update = _make_update("/stat excel")

        await cmd_stat(update, _make_context(service, ["excel"]))

        service.export_statistics.assert_called_once_with(12345)
        update.message.reply_document.assert_awaited_once()
        assert update.message.reply_document.call_args.kwargs["document"] == path
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_excel_refused(self):
        service = MagicMock()
        service.export_statistics.return_value = ErrorResponse(
            kind=ResponseKind.ERROR, message="❌ No", error=ErrorKind.NOT_PRIVILEGED,
        )
        update = _make_update("/stat excel", user_id=999)

        await cmd_stat(update, _make_context(service, ["excel"]))

        update.message.reply_document.assert_not_called()
        assert update.message.reply_text.call_args.args[0] == "❌ No"


# ---------------------------------------------------------------------------
# Text routing
# ---------------------------------------------------------------------------


class TestHandleText:
    @pytest.mark.asyncio
    async def test_leave_button(self):
        service = MagicMock()
        service.start_leave.return_value = _selection("Petrov Ivan")
        await handle_text(_make_update(BTN_LEAVE), _make_context(service))
        service.start_leave.assert_called_once_with(CHAT)
        service.handle_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_activity_button(self):
        service = MagicMock()
        service.start_activity.return_value = _selection("Petrov Ivan")
        await handle_text(_make_update(BTN_ACTIVITY), _make_context(service))
        service.start_activity.assert_called_once_with(CHAT)

    @pytest.mark.asyncio
    async def test_where_button(self):
        service = MagicMock()
        service.status_board.return_value = _text("board")
        await handle_text(_make_update(BTN_WHERE), _make_context(service))
        service.status_board.assert_called_once()

    @pytest.mark.asyncio
    async def test_stats_button(self):
        service = MagicMock()
        update = _make_update(BTN_STATS)
        await handle_text(update, _make_context(service))
        assert "/stat excel" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_free_text_goes_to_conversation(self):
        service = MagicMock()
        service.handle_text.return_value = _text("✅ *Petrov Ivan* left at 14:30")
        update = _make_update("Petrov 14:30")

        await handle_text(update, _make_context(service))

        service.handle_text.assert_called_once_with(CHAT, "Petrov 14:30")
        assert update.message.reply_text.call_args.args[0] == "✅ *Petrov Ivan* left at 14:30"

    @pytest.mark.asyncio
    async def test_import_without_file(self):
        service = MagicMock()
        update = _make_update("/import")
        await handle_text(update, _make_context(service))
        assert ".xlsx" in update.message.reply_text.call_args.args[0]
        service.handle_text.assert_not_called()


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_selection(self):
        service = MagicMock()
        service.handle_selection.return_value = _text("✅ done")
        update = _make_callback_update("select:7")

        await _handle_select_callback(update, _make_context(service))

        update.callback_query.answer.assert_awaited_once()
        service.handle_selection.assert_called_once_with(CHAT, "7")
        assert update.callback_query.edit_message_text.call_args.args[0] == "✅ done"

    @pytest.mark.asyncio
    async def test_selection_leading_to_description_prompt(self):
        service = MagicMock()
        service.handle_selection.return_value = ServiceResponse(
            ResponseKind.TEXT_PROMPT, "Describe the activity",
        )
        update = _make_callback_update("select:7")

        await _handle_select_callback(update, _make_context(service))

        assert update.callback_query.edit_message_text.call_args.kwargs["reply_markup"] is None

    @pytest.mark.asyncio
    async def test_confirm_yes(self):
        service = MagicMock()
        service.handle_confirmation.return_value = _text("✅ replaced")
        await _handle_confirm_callback(_make_callback_update("confirm:yes"), _make_context(service))
        service.handle_confirmation.assert_called_once_with(CHAT, True)

    @pytest.mark.asyncio
    async def test_confirm_no(self):
        service = MagicMock()
        service.handle_confirmation.return_value = _text("cancelled")
        await _handle_confirm_callback(_make_callback_update("confirm:no"), _make_context(service))
        service.handle_confirmation.assert_called_once_with(CHAT, False)


# ---------------------------------------------------------------------------
# Roster import
# ---------------------------------------------------------------------------


def _make_document_update(caption="/import", file_name="roster.xlsx", user_id=12345):
    update = _make_update(user_id=user_id)
    update.message.caption = caption
    update.message.document.file_name = file_name
    update.message.document.file_id = "file-123"
    return update


def _make_file_context(service):
    context = _make_context(service)
    tg_file = MagicMock()
    tg_file.download_to_drive = AsyncMock()
    context.bot.get_file = AsyncMock(return_value=tg_file)
    return context, tg_file


class TestHandleDocument:
    @pytest.mark.asyncio
    async def test_import_by_admin(self):
        service = MagicMock()
        service.is_privileged.return_value = True
        service.import_roster.return_value = ImportReportResponse(
            kind=ResponseKind.IMPORT_REPORT,
            message="✅ Added 2 new people",
            roster_message="Total people: 2",
        )
        update = _make_document_update()
        context, tg_file = _make_file_context(service)

        await handle_document(update, context)

        context.bot.get_file.assert_awaited_once_with("file-123")
        tg_file.download_to_drive.assert_awaited_once()
        user_id, tmp_path = service.import_roster.call_args.args
        assert user_id == 12345
        assert tmp_path.endswith(".xlsx")
        assert not Path(tmp_path).exists()
        sent = [c.args[0] for c in update.message.reply_text.call_args_list]
        assert "✅ Added 2 new people" in sent
        assert "Total people: 2" in sent

    @pytest.mark.asyncio
    async def test_add_excel_caption(self):
        service = MagicMock()
        service.is_privileged.return_value = True
        service.import_roster.return_value = _text("done")
        update = _make_document_update(caption="/add_excel")
        context, _ = _make_file_context(service)

        await handle_document(update, context)

        service.import_roster.assert_called_once()

    @pytest.mark.asyncio
    async def test_non_admin_refused_before_download(self):
        service = MagicMock()
        service.is_privileged.return_value = False
        update = _make_document_update(user_id=999)
        context, _ = _make_file_context(service)

        await handle_document(update, context)

        context.bot.get_file.assert_not_called()
        assert "permission" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_wrong_extension(self):
        service = MagicMock()
        service.is_privileged.return_value = True
        update = _make_document_update(file_name="roster.csv")
        context, _ = _make_file_context(service)

        await handle_document(update, context)

        context.bot.get_file.assert_not_called()
        assert ".xlsx" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_document_without_import_caption_is_ignored(self):
        service = MagicMock()
        update = _make_document_update(caption=None)
        context, _ = _make_file_context(service)

        await handle_document(update, context)

        update.message.reply_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_download_failure(self):
        service = MagicMock()
        service.is_privileged.return_value = True
        update = _make_document_update()
        context, tg_file = _make_file_context(service)
        tg_file.download_to_drive = AsyncMock(side_effect=RuntimeError("network down"))

        await handle_document(update, context)

        service.import_roster.assert_not_called()
        assert "couldn't process" in update.message.reply_text.call_args.args[0]


# ---------------------------------------------------------------------------
# build_app
# ---------------------------------------------------------------------------


class TestBuildApp:
    def test_registers_handlers_and_purge_job(self):
        service = MagicMock()
        app = build_app(service=service)

        assert app.bot_data["presence"] is service
        commands = {
            command
            for handler in app.handlers[0]
            if isinstance(handler, CommandHandler)
            for command in handler.commands
        }
        assert {"start", "help", "leave", "activity", "where", "stat", "cancel"} <= commands
        assert app.job_queue.get_jobs_by_name("session_purge")
        assert _on_error in app.error_handlers


# ---------------------------------------------------------------------------
# Unexpected failures
# ---------------------------------------------------------------------------


class TestUnexpectedFailures:
    @pytest.mark.asyncio
    async def test_text_handler_replies_on_service_crash(self):
        service = MagicMock()
        service.handle_text.side_effect = RuntimeError("boom")
        update = _make_update("Petrov 14:30")

        await handle_text(update, _make_context(service))

        update.message.reply_text.assert_awaited_once_with(GENERIC_FAILURE)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("handler,method", [
        (cmd_leave, "start_leave"),
        (cmd_activity, "start_activity"),
        (cmd_where, "status_board"),
        (cmd_cancel, "cancel"),
    ])
    async def test_commands_reply_on_service_crash(self, handler, method):
        service = MagicMock()
        getattr(service, method).side_effect = RuntimeError("boom")
        update = _make_update()

        await handler(update, _make_context(service))

        update.message.reply_text.assert_awaited_once_with(GENERIC_FAILURE)

    @pytest.mark.asyncio
    async def test_stat_replies_on_service_crash(self):
        service = MagicMock()
        service.statistics.side_effect = RuntimeError("boom")
        update = _make_update("/stat today")

        await cmd_stat(update, _make_context(service, ["today"]))

        update.message.reply_text.assert_awaited_once_with(GENERIC_FAILURE)

    @pytest.mark.asyncio
    async def test_plain_text_retry_failing_too(self):
        service = MagicMock()
        service.status_board.return_value = _text("*unbalanced_")
        update = _make_update("/where")
        update.message.reply_text = AsyncMock(
            side_effect=[BadRequest("Can't parse entities"), BadRequest("Chat not found"), None],
        )

        await cmd_where(update, _make_context(service))

        assert update.message.reply_text.await_count == 3
        assert update.message.reply_text.call_args.args[0] == GENERIC_FAILURE

    @pytest.mark.asyncio
    async def test_failure_notice_that_cannot_be_sent(self):
        service = MagicMock()
        service.handle_text.side_effect = RuntimeError("boom")
        update = _make_update("Petrov 14:30")
        update.message.reply_text = AsyncMock(side_effect=RuntimeError("network down"))

        await handle_text(update, _make_context(service))

        update.message.reply_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_selection_callback_replies_on_service_crash(self):
        service = MagicMock()
        service.handle_selection.side_effect = RuntimeError("boom")
        update = _make_callback_update("select:7")

        await _handle_select_callback(update, _make_context(service))

        update.effective_message.reply_text.assert_awaited_once_with(GENERIC_FAILURE)

    @pytest.mark.asyncio
    async def test_confirm_callback_replies_on_service_crash(self):
        service = MagicMock()
        service.handle_confirmation.side_effect = RuntimeError("boom")
        update = _make_callback_update("confirm:yes")

        await _handle_confirm_callback(update, _make_context(service))

        update.effective_message.reply_text.assert_awaited_once_with(GENERIC_FAILURE)
