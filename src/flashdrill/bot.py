"""Telegram front end driving study sessions."""
import html
import logging
from typing import Dict, List, Optional, Sequence

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import CallbackContext

from flashdrill.config import settings
from flashdrill.exceptions import AuthorizationError, CatalogValidationError, FlashDrillError, InvalidSessionError
from flashdrill.models.study_models import (
    ALL,
    Account,
    GradeResult,
    Mode,
    Owner,
    SessionFilters,
    SessionSummary,
    SyncStatus,
    WordSet,
)
from flashdrill.services.catalog_service import DATASETS, DuplicateReport
from flashdrill.services.scheduling import days_until_due, today_str
from flashdrill.services.session_runner import SessionRunner
from flashdrill.services.study_context import StudyContext

# Get logger for this module
logger = logging.getLogger(__name__)

# Conversation states
MAIN_MENU, STUDYING, ADDING_SETS = range(3)

# Button texts
MENU = "🏠 Menu"
START_SESSION = "▶ Start"
VIEW_STATISTICS = "📊 Statistics"
SYNC_NOW = "↻ Sync"
MANAGE = "⚙ Manage sets"
ADD_SETS = "➕ Add sets"
RESET_PRIORITIES = "↺ Reset priorities"
DELETE = "🗑 Delete"
EXPORT_CSV = "⬇ Export CSV"
RESET_RECORDS = "🧹 Reset records"
CONFIRM = "✔ Yes, reset"
FLASH = "⚡ Flash!"
NEXT = "➡ Next"
FINISH = "🏁 Finish"
EXIT = "✕ Exit"

ACCOUNT_LABELS = {Account.CHILD.value: "👦 Child", Account.PARENT.value: "🔑 Parent"}
SYNC_LABELS = {
    SyncStatus.IDLE: "cloud sync",
    SyncStatus.SYNCING: "syncing…",
    SyncStatus.OK: "synced",
    SyncStatus.ERROR: "sync failed",
}
MODE_FILTERS = (ALL, *(m.value for m in Mode))
OWNER_FILTERS = (ALL, *(o.value for o in Owner))

ADD_SETS_HELP = (
    "Send one set per line as <b>Label: item, item, item</b>.\n"
    "New sets use the selected mode and owner filters."
)

KB_BACK_TO_MENU = [[InlineKeyboardButton(f"🔙 {MENU}", callback_data="menu")]]


def get_study(context: CallbackContext) -> StudyContext:
    return context.application.bot_data["study"]


def is_admin(user_id: int) -> bool:
    """Without configured admins every user may act as parent."""
    return not settings.bot.admin_ids or user_id in settings.bot.admin_ids


def get_filters(context: CallbackContext) -> SessionFilters:
    return context.chat_data.get("filters") or SessionFilters(min_priority=settings.session.min_priority)


def next_value(values: Sequence[str], current: str) -> str:
    """The value after ``current``, wrapping around."""
    index = values.index(current) if current in values else -1
    return values[(index + 1) % len(values)]


def format_set(word_set: WordSet) -> str:
    """Text shown while a set is flashed."""
    return f"<b>{html.escape(word_set.label)}</b>\n\n" + "\n".join(html.escape(item) for item in word_set.items)


def recall_keyboard(size: int) -> InlineKeyboardMarkup:
    """One button per possible recall count, 0..size."""
    buttons = [InlineKeyboardButton(str(i), callback_data=f"score_{i}") for i in range(size + 1)]
    rows = [buttons[i:i + 6] for i in range(0, len(buttons), 6)]
    return InlineKeyboardMarkup(rows)


def format_result(graded: GradeResult, runner: SessionRunner) -> str:
    word_set = graded.result.word_set
    lines = [
        f"{word_set.label}: {graded.result.score}/{graded.result.total} ({graded.percentage}%)",
        "",
        *word_set.items,
        "",
        f"Round {runner.position + 1}/{len(runner.queue)}",
    ]
    if runner.scheduler.policy.name == "interval":
        lines.append(f"Next review in {days_until_due(graded.state)} days")
    elif graded.state.due:
        lines.append(f"Level {graded.state.level}, next review {graded.state.due}")
    return "\n".join(lines)


def format_summary(summary: SessionSummary) -> str:
    lines = [f"🏁 Session complete: {summary.correct}/{summary.total} ({summary.percentage}%)", ""]
    lines.extend(
        f"• {r.word_set.label}: {r.score}/{r.total}" for r in summary.rounds
    )
    return "\n".join(lines)


def format_duplicates(report: DuplicateReport) -> str:
    if not report.has_duplicates:
        return ""
    lines = ["", "Already in the catalog:"]
    if report.label_exists:
        lines.append("• a set with this label")
    lines.extend(f"• {item} (in {label})" for item, label in report.items)
    return "\n".join(lines)


def parse_set_lines(text: str) -> List[Dict[str, object]]:
    """Parse ``Label: item, item`` lines into set rows."""
    rows = []
    for line in text.splitlines():
        if not line.strip():
            continue
        label, separator, items = line.partition(":")
        if not separator:
            raise CatalogValidationError(f"Missing ':' after the label in \"{line.strip()}\"")
        rows.append({"label": label.strip(), "items": [item.strip() for item in items.split(",")]})
    if not rows:
        raise CatalogValidationError("No sets found in the message")
    return rows


def main_menu(study: StudyContext, filters: SessionFilters) -> tuple[str, InlineKeyboardMarkup]:
    stats = study.scheduler.pool_stats(filters)
    message = (
        f"Account: {ACCOUNT_LABELS[study.account]} ({SYNC_LABELS[study.sync.status]})\n"
        f"Dataset: {study.dataset}  Mode: {filters.mode}  Owner: {filters.owner}\n"
        f"Sets ★{filters.min_priority}+: {stats['total']} (due {stats['due']}, new {stats['unseen']})"
    )
    other = Account.PARENT.value if study.account == Account.CHILD.value else Account.CHILD.value
    keyboard = [
        [InlineKeyboardButton(START_SESSION, callback_data="start_session")],
        [
            InlineKeyboardButton(f"★{p}+", callback_data=f"min_priority_{p}")
            for p in range(4)
        ],
        [
            InlineKeyboardButton(f"Mode: {filters.mode}", callback_data="mode_filter"),
            InlineKeyboardButton(f"Owner: {filters.owner}", callback_data="owner_filter"),
        ],
        [
            InlineKeyboardButton(f"{t}s", callback_data=f"flash_time_{t}")
            for t in settings.session.flash_times
        ],
        [
            InlineKeyboardButton(VIEW_STATISTICS, callback_data="statistics"),
            InlineKeyboardButton(SYNC_NOW, callback_data="sync"),
        ],
        [
            InlineKeyboardButton(MANAGE, callback_data="manage"),
            InlineKeyboardButton(f"Dataset: {study.dataset}", callback_data="dataset"),
        ],
        [InlineKeyboardButton(f"Switch to {ACCOUNT_LABELS[other]}", callback_data=f"account_{other}")],
    ]
    return message, InlineKeyboardMarkup(keyboard)


async def log_received(update: Update, context_type: str) -> None:
    """Log message."""
    txt = ""
    if update.callback_query:
        txt = f" {update.callback_query.data}"
    elif update.message:
        txt = f" {update.message.text}"
    logger.info(f"Received @{context_type:8} from user {update.effective_user.id}{txt}")


async def send_popup_message(update: Update, text: str) -> None:
    """Show a popup message to the user."""
    if update.callback_query:
        await update.callback_query.answer(text=text, show_alert=True)
    else:
        await update.message.reply_text(f"⚠️ {text}")


async def handle_start(update: Update, context: CallbackContext) -> int:
    """Show the main menu."""
    await log_received(update, "start")
    study = get_study(context)
    message, reply_markup = main_menu(study, get_filters(context))

    if update.callback_query:
        await update.callback_query.edit_message_text(message, reply_markup=reply_markup)
    else:
        await update.message.reply_text(message, reply_markup=reply_markup)
    return MAIN_MENU


async def handle_sync(update: Update, context: CallbackContext) -> int:
    """Manual refresh from the shared store."""
    await log_received(update, "sync")
    ok = await get_study(context).sync.pull()
    if not ok:
        await send_popup_message(update, "Sync failed, working offline")
    return await handle_start(update, context)


async def handle_callback(update: Update, context: CallbackContext) -> int:
    """Route menu, management and session buttons."""
    query = update.callback_query
    await log_received(update, "callback")
    data = query.data

    try:
        if data == "menu":
            return await handle_start(update, context)
        elif data == "sync":
            return await handle_sync(update, context)
        elif data == "statistics":
            return await show_statistics(update, context)
        elif data.startswith("statistics_"):
            return await show_statistics(update, context, data.removeprefix("statistics_"))
        elif data.startswith("export_csv_"):
            return await send_csv(update, context, data.removeprefix("export_csv_"))
        elif data.startswith("reset_records_"):
            return await confirm_reset_records(update, context, data.removeprefix("reset_records_"))
        elif data.startswith("confirm_reset_"):
            return await handle_reset_records(update, context, data.removeprefix("confirm_reset_"))
        elif data.startswith("account_"):
            account = data.removeprefix("account_")
            if account == Account.PARENT.value and not is_admin(update.effective_user.id):
                await send_popup_message(update, "The parent account is for admins only")
                return MAIN_MENU
            runner = context.chat_data.pop("runner", None)
            if runner:
                await runner.close()
            await get_study(context).switch_account(account)
            return await handle_start(update, context)
        elif data.startswith("min_priority_"):
            current = get_filters(context)
            context.chat_data["filters"] = SessionFilters(
                min_priority=int(data.removeprefix("min_priority_")),
                mode=current.mode,
                owner=current.owner,
            )
            return await handle_start(update, context)
        elif data == "mode_filter":
            current = get_filters(context)
            context.chat_data["filters"] = SessionFilters(
                current.min_priority, next_value(MODE_FILTERS, current.mode), current.owner
            )
            return await handle_start(update, context)
        elif data == "owner_filter":
            current = get_filters(context)
            context.chat_data["filters"] = SessionFilters(
                current.min_priority, current.mode, next_value(OWNER_FILTERS, current.owner)
            )
            return await handle_start(update, context)
        elif data == "dataset":
            study = get_study(context)
            study.set_dataset(next_value(DATASETS, study.dataset))
            return await handle_start(update, context)
        elif data.startswith("flash_time_"):
            context.chat_data["flash_time"] = int(data.removeprefix("flash_time_"))
            await query.answer(f"Flash time {context.chat_data['flash_time']}s")
            return MAIN_MENU
        elif data == "manage":
            return await show_manage(update, context)
        elif data == "add_sets":
            return await ask_new_sets(update, context)
        elif data == "reset_priorities":
            await get_study(context).catalog.reset_priorities()
            await query.answer("Seed priorities restored")
            return await show_manage(update, context)
        elif data.startswith("set_"):
            return await show_set(update, context, data.removeprefix("set_"))
        elif data.startswith("priority_"):
            priority, set_id = data.removeprefix("priority_").split("_", 1)
            await get_study(context).catalog.update_priority(set_id, int(priority))
            return await show_set(update, context, set_id)
        elif data.startswith("delete_"):
            return await handle_delete_set(update, context, data.removeprefix("delete_"))
        elif data == "start_session":
            return await start_session(update, context)
        elif data == "flash":
            return await start_flash(update, context)
        elif data.startswith("score_"):
            return await handle_score(update, context)
        elif data == "next":
            return await handle_next(update, context)
        elif data == "finish":
            return await handle_finish(update, context)
        elif data == "exit":
            return await handle_exit(update, context)
    except (FlashDrillError, ValueError) as e:
        logger.warning(f"Rejected {data}: {e}")
        await send_popup_message(update, str(e))
    return MAIN_MENU


async def show_manage(update: Update, context: CallbackContext) -> int:
    """List the catalog with one button per set."""
    study = get_study(context)
    sets = study.catalog.all_sets()
    keyboard = [
        [InlineKeyboardButton(f"{'★' * s.priority or '☆'} {s.label} ({s.mode}, {s.owner})", callback_data=f"set_{s.id}")]
        for s in sets
    ]
    actions = [InlineKeyboardButton(ADD_SETS, callback_data="add_sets")]
    if study.account == Account.PARENT.value:
        actions.append(InlineKeyboardButton(RESET_PRIORITIES, callback_data="reset_priorities"))
    keyboard.append(actions)
    keyboard.extend(KB_BACK_TO_MENU)

    await update.callback_query.edit_message_text(
        f"{MANAGE}: {len(sets)} sets in {study.dataset}",
        reply_markup=InlineKeyboardMarkup(keyboard),
    )
    return MAIN_MENU


async def show_set(update: Update, context: CallbackContext, set_id: str) -> int:
    """One set with its priority and delete buttons."""
    word_set = get_study(context).catalog.get_set(set_id)
    if word_set is None:
        await send_popup_message(update, "Word set not found")
        return await show_manage(update, context)

    text = (
        f"{format_set(word_set)}\n\n"
        f"Mode: {word_set.mode}  Owner: {word_set.owner}  Priority: ★{word_set.priority}"
    )
    keyboard = [
        [
            InlineKeyboardButton(f"★{p}{' ✓' if p == word_set.priority else ''}", callback_data=f"priority_{p}_{word_set.id}")
            for p in range(4)
        ],
        [InlineKeyboardButton(DELETE, callback_data=f"delete_{word_set.id}")],
        [InlineKeyboardButton(f"🔙 {MANAGE}", callback_data="manage")],
    ]
    await update.callback_query.edit_message_text(
        text, parse_mode="HTML", reply_markup=InlineKeyboardMarkup(keyboard)
    )
    return MAIN_MENU


async def handle_delete_set(update: Update, context: CallbackContext, set_id: str) -> int:
    catalog = get_study(context).catalog
    word_set = catalog.get_set(set_id)
    if word_set is None:
        await send_popup_message(update, "Word set not found")
    else:
        await catalog.delete_set(word_set)
        await update.callback_query.answer(f"Deleted {word_set.label}")
    return await show_manage(update, context)


async def ask_new_sets(update: Update, context: CallbackContext) -> int:
    filters = get_filters(context)
    await update.callback_query.edit_message_text(
        f"{ADD_SETS_HELP}\n\nMode: {filters.mode}  Owner: {filters.owner}",
        parse_mode="HTML",
        reply_markup=InlineKeyboardMarkup(KB_BACK_TO_MENU),
    )
    return ADDING_SETS


async def handle_add_sets(update: Update, context: CallbackContext) -> int:
    """Author custom sets from a text message."""
    await log_received(update, "message")
    catalog = get_study(context).catalog
    filters = get_filters(context)
    mode = Mode.COLLOCATION.value if filters.mode == ALL else filters.mode
    owner = Owner.CHILD.value if filters.owner == ALL else filters.owner
    keyboard = InlineKeyboardMarkup([[
        InlineKeyboardButton(f"🔙 {MENU}", callback_data="menu"),
        InlineKeyboardButton(MANAGE, callback_data="manage"),
    ]])

    try:
        rows = parse_set_lines(update.message.text)
        if len(rows) == 1:
            word_set, report = await catalog.add_custom_set(rows[0]["label"], rows[0]["items"], mode, owner)
            message = f"Added {word_set.label} ({word_set.size} items)" + format_duplicates(report)
        else:
            created = await catalog.bulk_add_custom_sets([{**row, "mode": mode, "owner": owner} for row in rows])
            message = f"Added {len(created)} sets: " + ", ".join(s.label for s in created)
    except FlashDrillError as e:
        logger.warning(f"Rejected new sets: {e}")
        await update.message.reply_text(f"⚠️ {e}\n\n{ADD_SETS_HELP}", parse_mode="HTML", reply_markup=keyboard)
        return ADDING_SETS

    await update.message.reply_text(f"{message}\n\nYou can add more sets or go to menu.", reply_markup=keyboard)
    return ADDING_SETS


def _runner(context: CallbackContext) -> Optional[SessionRunner]:
    return context.chat_data.get("runner")


def _ready_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[
        InlineKeyboardButton(FLASH, callback_data="flash"),
        InlineKeyboardButton(EXIT, callback_data="exit"),
    ]])


async def start_session(update: Update, context: CallbackContext) -> int:
    """Pull, build the queue and show the first set's Ready screen."""
    study = get_study(context)
    # Resuming the app counts as a sync trigger
    await study.sync.pull()

    runner = _runner(context)
    if runner:
        await runner.close()
    runner = study.new_runner(flash_time=context.chat_data.get("flash_time"))
    try:
        word_set = runner.start(get_filters(context))
    except InvalidSessionError as e:
        await send_popup_message(update, str(e))
        return MAIN_MENU
    context.chat_data["runner"] = runner

    await update.callback_query.edit_message_text(
        f"Round 1/{len(runner.queue)}: {word_set.label} ({word_set.size} items)",
        reply_markup=_ready_keyboard(),
    )
    return STUDYING


async def start_flash(update: Update, context: CallbackContext) -> int:
    """Show the set, hide it when the countdown ends, then ask for recall."""
    runner = _runner(context)
    if not runner:
        return await handle_start(update, context)
    query = update.callback_query
    await query.edit_message_text(format_set(runner.current_set), parse_mode="HTML")

    async def ask_recall(word_set: WordSet) -> None:
        await query.edit_message_text(
            f"How many of the {word_set.size} items did you recall?",
            reply_markup=recall_keyboard(word_set.size),
        )

    runner.begin_flash(on_recall=ask_recall)
    return STUDYING


async def handle_score(update: Update, context: CallbackContext) -> int:
    runner = _runner(context)
    if not runner:
        return await handle_start(update, context)
    graded = runner.grade_current_set(int(update.callback_query.data.removeprefix("score_")))
    buttons = [InlineKeyboardButton(FINISH, callback_data="finish")]
    if runner.position + 1 < len(runner.queue):
        buttons.insert(0, InlineKeyboardButton(NEXT, callback_data="next"))
    await update.callback_query.edit_message_text(
        format_result(graded, runner),
        reply_markup=InlineKeyboardMarkup([buttons]),
    )
    return STUDYING


async def handle_next(update: Update, context: CallbackContext) -> int:
    runner = _runner(context)
    if not runner:
        return await handle_start(update, context)
    word_set = runner.advance_queue()
    if word_set is None:
        return await show_summary(update, context, runner.summary)
    await update.callback_query.edit_message_text(
        f"Round {runner.position + 1}/{len(runner.queue)}: {word_set.label} ({word_set.size} items)",
        reply_markup=_ready_keyboard(),
    )
    return STUDYING


async def handle_finish(update: Update, context: CallbackContext) -> int:
    runner = _runner(context)
    if not runner:
        return await handle_start(update, context)
    return await show_summary(update, context, runner.finish())


async def show_summary(update: Update, context: CallbackContext, summary: SessionSummary) -> int:
    context.chat_data.pop("runner", None)
    await update.callback_query.edit_message_text(
        format_summary(summary),
        reply_markup=InlineKeyboardMarkup(KB_BACK_TO_MENU),
    )
    return MAIN_MENU


async def handle_exit(update: Update, context: CallbackContext) -> int:
    runner = context.chat_data.pop("runner", None)
    if runner:
        await runner.close()
    return await handle_start(update, context)


def format_statistics(
    series: List[dict],
    totals: dict,
    account: str,
    review: Optional[dict] = None,
    recent: Sequence = (),
) -> str:
    lines = [
        f"📊 {ACCOUNT_LABELS.get(account, account)}",
        f"Sets: {totals['sets']}  Correct: {totals['correct']}/{totals['words']}",
    ]
    if review:
        lines.append(
            f"Reviews: {review['totalSessions']}  Recalled: {review['totalCorrect']}/{review['totalItems']}"
        )
    lines.append("")
    lines.extend(f"{row['date']}: {row['correct']}/{row['words']} ({row['sets']} sets)" for row in series[-14:])
    if not series:
        lines.append("No records yet")
    if recent:
        lines.extend(["", "Recent:"])
        lines.extend(f"• {r.date} {r.mode}: {r.correct}/{r.words}" for r in recent)
    return "\n".join(lines)


def check_account_access(study: StudyContext, account: str) -> None:
    """Only the parent may look at another account's history."""
    if account not in ACCOUNT_LABELS:
        raise ValueError(f"Unknown account: {account}")
    if account != study.account and study.account != Account.PARENT.value:
        raise AuthorizationError("Only parent can view other accounts.")


async def show_statistics(update: Update, context: CallbackContext, account: Optional[str] = None) -> int:
    """Show per-day totals, review totals and recent records."""
    study = get_study(context)
    account = account or study.account
    check_account_access(study, account)

    text = format_statistics(
        study.stats.get_dashboard_series(account, ALL),
        study.stats.total_stats(account, ALL),
        account,
        review=study.stats.review_totals(account),
        recent=study.stats.recent_records(account, limit=5),
    )
    keyboard = [[InlineKeyboardButton(EXPORT_CSV, callback_data=f"export_csv_{account}")]]
    if study.account == Account.PARENT.value:
        other = Account.CHILD.value if account == Account.PARENT.value else Account.PARENT.value
        keyboard.append([
            InlineKeyboardButton(f"📊 {ACCOUNT_LABELS[other]}", callback_data=f"statistics_{other}"),
            InlineKeyboardButton(RESET_RECORDS, callback_data=f"reset_records_{account}"),
        ])
    keyboard.extend(KB_BACK_TO_MENU)

    await update.callback_query.edit_message_text(text, reply_markup=InlineKeyboardMarkup(keyboard))
    return MAIN_MENU


async def send_csv(update: Update, context: CallbackContext, account: str) -> int:
    """Send an account's session records as a CSV document."""
    study = get_study(context)
    check_account_access(study, account)
    content = study.stats.export_csv(account)

    await update.callback_query.answer()
    await update.callback_query.message.reply_document(
        document=content.encode("utf-8"),
        filename=f"flashdrill_{account}_{today_str()}.csv",
    )
    return MAIN_MENU


async def confirm_reset_records(update: Update, context: CallbackContext, account: str) -> int:
    check_account_access(get_study(context), account)
    keyboard = [
        [
            InlineKeyboardButton(CONFIRM, callback_data=f"confirm_reset_{account}"),
            InlineKeyboardButton(f"🔙 {VIEW_STATISTICS}", callback_data=f"statistics_{account}"),
        ]
    ]
    await update.callback_query.edit_message_text(
        f"Delete every session record of {ACCOUNT_LABELS[account]}?",
        reply_markup=InlineKeyboardMarkup(keyboard),
    )
    return MAIN_MENU


async def handle_reset_records(update: Update, context: CallbackContext, account: str) -> int:
    study = get_study(context)
    check_account_access(study, account)
    study.stats.reset_records(account)
    await update.callback_query.answer("Records reset")
    return await show_statistics(update, context, account)


async def handle_stats_command(update: Update, context: CallbackContext) -> int:
    study = get_study(context)
    series = study.stats.get_dashboard_series(study.account, ALL)
    totals = study.stats.total_stats(study.account, ALL)
    review = study.stats.review_totals(study.account)
    await update.message.reply_text(format_statistics(series, totals, study.account, review=review))
    return MAIN_MENU


async def handle_sync_command(update: Update, context: CallbackContext) -> int:
    ok = await get_study(context).sync.pull()
    await update.message.reply_text("Synced" if ok else "Sync failed, working offline")
    return MAIN_MENU
