"""Tests for Telegram bot handlers."""
from unittest.mock import AsyncMock, Mock, patch

import pytest
from faker import Faker
from sqlalchemy.orm import Session
from telegram import Update, User as TelegramUser

from conftest import FakeRemoteStore, make_set
from flashdrill.bot import (
    ADDING_SETS,
    MAIN_MENU,
    STUDYING,
    format_set,
    format_statistics,
    handle_add_sets,
    handle_callback,
    handle_start,
    handle_stats_command,
    recall_keyboard,
)
from flashdrill.config import settings
from flashdrill.models.study_models import Phase, SessionFilters
from flashdrill.services.study_context import StudyContext
from flashdrill.services.sync_service import local_records_key

fake = Faker()


@pytest.fixture
def telegram_user() -> Mock:
    """Create a mock Telegram user."""
    user = Mock(spec=TelegramUser)
    user.id = fake.random_int()
    user.first_name = fake.first_name()
    user.is_bot = False
    return user


@pytest.fixture
def update(telegram_user: Mock) -> Mock:
    """Create a mock Update object."""
    update = AsyncMock(spec=Update)
    update.update_id = fake.random_int()
    update.effective_user = telegram_user
    update.message = AsyncMock()
    update.message.reply_text = AsyncMock()
    update.callback_query = AsyncMock()
    update.callback_query.answer = AsyncMock()
    update.callback_query.edit_message_text = AsyncMock()
    return update


@pytest.fixture
def study(db: Session, remote: FakeRemoteStore) -> StudyContext:
    return StudyContext(db, remote, account="child", policy_name="level")


@pytest.fixture
def context(study: StudyContext) -> Mock:
    """Create a mock callback context holding the study services."""
    context = Mock()
    context.application.bot_data = {"study": study}
    context.chat_data = {"flash_time": 1}
    return context


def test_format_set() -> None:
    """Test the flashed text."""
    word_set = make_set(size=3)
    text = format_set(word_set)

    assert text.startswith(f"<b>{word_set.label}</b>")
    assert all(item in text for item in word_set.items)


def test_recall_keyboard() -> None:
    """Test one button per possible count."""
    keyboard = recall_keyboard(7)
    buttons = [button for row in keyboard.inline_keyboard for button in row]

    assert [b.callback_data for b in buttons] == [f"score_{i}" for i in range(8)]
    assert len(keyboard.inline_keyboard) == 2


def test_format_statistics_empty() -> None:
    """Test the statistics text without records."""
    text = format_statistics([], {"sets": 0, "correct": 0, "words": 0}, "child")
    assert "No records yet" in text


@pytest.mark.asyncio
async def test_handle_start(update: Mock, context: Mock) -> None:
    """Test the main menu."""
    update.callback_query = None

    state = await handle_start(update, context)

    assert state == MAIN_MENU
    message = update.message.reply_text.call_args[0][0]
    assert "Child" in message
    assert "Sets ★3+" in message


@pytest.mark.asyncio
async def test_min_priority_button(update: Mock, context: Mock) -> None:
    """Test changing the priority filter."""
    update.callback_query.data = "min_priority_1"

    assert await handle_callback(update, context) == MAIN_MENU
    assert context.chat_data["filters"] == SessionFilters(min_priority=1)


@pytest.mark.asyncio
async def test_session_flow(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test starting, grading and finishing a session through the buttons."""
    context.chat_data["filters"] = SessionFilters(min_priority=3, mode="cvc")

    update.callback_query.data = "start_session"
    assert await handle_callback(update, context) == STUDYING
    runner = context.chat_data["runner"]
    assert runner.phase == Phase.READY
    assert runner.flash_time == 1

    runner.flash_time = 0
    runner.grace_delay = 0
    update.callback_query.data = "flash"
    assert await handle_callback(update, context) == STUDYING
    await runner._flash_task
    assert runner.phase == Phase.RECALL

    update.callback_query.data = "score_2"
    assert await handle_callback(update, context) == STUDYING
    assert runner.phase == Phase.RESULT

    update.callback_query.data = "finish"
    assert await handle_callback(update, context) == MAIN_MENU
    assert "runner" not in context.chat_data
    assert len(study.sync.records) == 1
    assert "Session complete" in update.callback_query.edit_message_text.call_args[0][0]
    await study.sync.drain()


@pytest.mark.asyncio
async def test_empty_pool_shows_popup(update: Mock, context: Mock) -> None:
    """Test that a refused session stays on the menu."""
    context.chat_data["filters"] = SessionFilters(min_priority=3, owner="parent", mode="sentence")
    update.callback_query.data = "start_session"

    assert await handle_callback(update, context) == MAIN_MENU
    assert "runner" not in context.chat_data
    update.callback_query.answer.assert_awaited()


@pytest.mark.asyncio
async def test_exit_button(update: Mock, context: Mock) -> None:
    """Test leaving a running session."""
    update.callback_query.data = "start_session"
    await handle_callback(update, context)
    runner = context.chat_data["runner"]

    update.callback_query.data = "exit"
    assert await handle_callback(update, context) == MAIN_MENU
    assert runner.phase == Phase.EXITED
    assert "runner" not in context.chat_data


@pytest.mark.asyncio
async def test_account_switch(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test switching to the parent account."""
    update.callback_query.data = "account_parent"

    assert await handle_callback(update, context) == MAIN_MENU
    assert study.account == "parent"


@pytest.mark.asyncio
async def test_stats_command(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test the /stats command."""
    study.sync.records = [{"date": "2026-03-09", "mode": "cvc", "sets": 2, "correct": 5, "words": 8}]

    assert await handle_stats_command(update, context) == MAIN_MENU
    message = update.message.reply_text.call_args[0][0]
    assert "2026-03-09: 5/8 (2 sets)" in message


@pytest.mark.asyncio
async def test_parent_account_limited_to_admins(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test that configured admin ids gate the parent account."""
    update.callback_query.data = "account_parent"

    with patch.object(settings.bot, "admin_ids", [update.effective_user.id + 1]):
        assert await handle_callback(update, context) == MAIN_MENU

    assert study.account == "child"
    update.callback_query.answer.assert_awaited()


def callbacks(markup) -> list:
    return [button.callback_data for row in markup.inline_keyboard for button in row]


@pytest.mark.asyncio
async def test_mode_and_owner_filter_buttons(update: Mock, context: Mock) -> None:
    """Test cycling the mode and owner filters."""
    update.callback_query.data = "mode_filter"
    assert await handle_callback(update, context) == MAIN_MENU
    update.callback_query.data = "owner_filter"
    assert await handle_callback(update, context) == MAIN_MENU

    assert context.chat_data["filters"] == SessionFilters(min_priority=3, mode="chunk", owner="child")
    assert "Mode: chunk  Owner: child" in update.callback_query.edit_message_text.call_args[0][0]


@pytest.mark.asyncio
async def test_dataset_button(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test switching the seed dataset from the menu."""
    update.callback_query.data = "dataset"

    assert await handle_callback(update, context) == MAIN_MENU

    assert study.dataset == "collocations"
    assert "Dataset: collocations" in update.callback_query.edit_message_text.call_args[0][0]


@pytest.mark.asyncio
async def test_manage_and_change_priority(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test the set list and the priority buttons of one set."""
    update.callback_query.data = "manage"
    assert await handle_callback(update, context) == MAIN_MENU
    listed = callbacks(update.callback_query.edit_message_text.call_args.kwargs["reply_markup"])
    assert "set_w_chunk_01" in listed
    assert "add_sets" in listed
    assert "reset_priorities" not in listed

    update.callback_query.data = "priority_0_w_chunk_03"
    assert await handle_callback(update, context) == MAIN_MENU

    assert study.catalog.get_set("w_chunk_03").priority == 0
    assert "Priority: ★0" in update.callback_query.edit_message_text.call_args[0][0]


@pytest.mark.asyncio
async def test_child_cannot_delete_shared_set(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test that the delete button enforces the parent-only rule."""
    update.callback_query.data = "delete_w_col_01"

    assert await handle_callback(update, context) == MAIN_MENU

    assert study.catalog.get_set("w_col_01") is not None
    update.callback_query.answer.assert_awaited_with(text="Only parent can delete shared sets.", show_alert=True)


@pytest.mark.asyncio
async def test_parent_deletes_and_restores_sets(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test deleting a shared set and resetting priorities as parent."""
    await study.switch_account("parent")

    update.callback_query.data = "delete_w_col_01"
    assert await handle_callback(update, context) == MAIN_MENU
    assert study.catalog.get_set("w_col_01") is None

    update.callback_query.data = "reset_priorities"
    assert await handle_callback(update, context) == MAIN_MENU
    assert study.catalog.get_set("w_col_01") is not None
    await study.sync.drain()


@pytest.mark.asyncio
async def test_add_one_set_from_message(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test authoring a set by sending a text message."""
    update.callback_query.data = "add_sets"
    assert await handle_callback(update, context) == ADDING_SETS

    update.callback_query = None
    update.message.text = "Pets: dog, fish, cat"
    assert await handle_add_sets(update, context) == ADDING_SETS

    added = study.catalog.all_sets()[-1]
    assert (added.label, added.items, added.mode, added.owner) == ("Pets", ("dog", "fish", "cat"), "collocation", "child")
    reply = update.message.reply_text.call_args[0][0]
    assert reply.startswith("Added Pets (3 items)")
    assert "cat (in Short a)" in reply


@pytest.mark.asyncio
async def test_add_several_sets_uses_filters(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test bulk authoring into the selected mode."""
    context.chat_data["filters"] = SessionFilters(min_priority=0, mode="cvc")
    update.callback_query = None
    update.message.text = "Short u: cup, bus, sun\n\nShort e: bed, pen"

    assert await handle_add_sets(update, context) == ADDING_SETS

    added = [s for s in study.catalog.all_sets() if s.id.startswith("custom_")]
    assert [s.label for s in added] == ["Short u", "Short e"]
    assert {s.mode for s in added} == {"cvc"}
    assert "Added 2 sets" in update.message.reply_text.call_args[0][0]


@pytest.mark.asyncio
async def test_add_sets_rejects_bad_lines(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test that malformed input adds nothing and explains the format."""
    update.callback_query = None

    for text in ("Pets cat dog", "Pets: cat", "Good: a, b\nBad: c"):
        update.message.text = text
        assert await handle_add_sets(update, context) == ADDING_SETS
        assert update.message.reply_text.call_args[0][0].startswith("⚠️")

    assert not [s for s in study.catalog.all_sets() if s.id.startswith("custom_")]


@pytest.mark.asyncio
async def test_statistics_screen_and_csv_export(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test the statistics text and the exported document."""
    study.sync.records = [{"date": "2026-03-09", "mode": "cvc", "sets": 2, "correct": 5, "words": 8}]

    update.callback_query.data = "statistics"
    assert await handle_callback(update, context) == MAIN_MENU
    text = update.callback_query.edit_message_text.call_args[0][0]
    assert "Reviews: 0  Recalled: 0/0" in text
    assert "• 2026-03-09 cvc: 5/8" in text
    listed = callbacks(update.callback_query.edit_message_text.call_args.kwargs["reply_markup"])
    assert "export_csv_child" in listed
    assert not any(data.startswith("reset_records_") for data in listed)

    update.callback_query.data = "export_csv_child"
    assert await handle_callback(update, context) == MAIN_MENU
    kwargs = update.callback_query.message.reply_document.call_args.kwargs
    assert kwargs["filename"].startswith("flashdrill_child_")
    assert kwargs["document"].decode("utf-8") == "date,mode,sets,correct,words\n2026-03-09,cvc,2,5,8\n"


@pytest.mark.asyncio
async def test_child_cannot_see_or_reset_other_records(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test that exports and resets of records are limited."""
    study.sync.records = [{"date": "2026-03-09", "mode": "cvc", "sets": 1, "correct": 1, "words": 2}]

    update.callback_query.data = "export_csv_parent"
    assert await handle_callback(update, context) == MAIN_MENU
    update.callback_query.message.reply_document.assert_not_awaited()

    update.callback_query.data = "confirm_reset_child"
    assert await handle_callback(update, context) == MAIN_MENU
    update.callback_query.answer.assert_awaited_with(text="Only parent can reset records.", show_alert=True)
    assert len(study.sync.records) == 1


@pytest.mark.asyncio
async def test_parent_resets_child_records(update: Mock, context: Mock, study: StudyContext) -> None:
    """Test the confirmed record reset for another account."""
    await study.switch_account("parent")
    study.local.set(local_records_key("child"), [{"date": "2026-03-09", "mode": "cvc", "sets": 1, "correct": 1, "words": 2}])

    update.callback_query.data = "reset_records_child"
    assert await handle_callback(update, context) == MAIN_MENU
    assert "confirm_reset_child" in callbacks(update.callback_query.edit_message_text.call_args.kwargs["reply_markup"])

    update.callback_query.data = "confirm_reset_child"
    assert await handle_callback(update, context) == MAIN_MENU

    assert study.sync.get_records("child") == []
    assert "👦 Child" in update.callback_query.edit_message_text.call_args[0][0]
