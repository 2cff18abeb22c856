import functools
import logging
from datetime import date, datetime

from telegram import Update
from telegram.ext import ContextTypes

from config.settings import TIMEZONE
from maven.cycle import (
    SYMPTOM_SEVERITIES,
    average_cycle_length,
    classify,
    most_recent_first,
    predict_cycle,
)
from maven.dates import InvalidDate, add_days, days_between, format_date, parse_date
from maven.db import Database
from maven.notifications import NotificationDispatcher, StoreError
from maven.reminders import build_reminders, schedule_reminders

MAX_NOTE_LENGTH = 500
HISTORY_LIMIT = 10
ACTIVITY_LIMIT = 20
MIN_CYCLE_LENGTH = 20
MAX_CYCLE_LENGTH = 45
MAX_PERIOD_LENGTH = 10

logger = logging.getLogger(__name__)


def _escape_markdown(text: str) -> str:
    """Escape Markdown V1 special characters in user-generated text."""
    for char in ('*', '_', '`', '['):
        text = text.replace(char, '\\' + char)
    return text


def owner_only(func):
    """Decorator: only the configured owner chat may use the bot."""
    @functools.wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        if update.effective_chat.id != context.bot_data["owner_chat_id"]:
            if update.message:
                await update.message.reply_text("Sorry, this tracker is private 🔒")
            return
        return await func(update, context)
    return wrapper


# ── Helpers ─────────────────────────────────────────────────────────

def get_db(context: ContextTypes.DEFAULT_TYPE) -> Database:
    return context.bot_data["db"]


def get_dispatcher(context: ContextTypes.DEFAULT_TYPE) -> NotificationDispatcher:
    return context.bot_data["dispatcher"]


def today() -> date:
    return datetime.now(TIMEZONE).date()


def _today_flags(db: Database) -> str:
    periods = db.get_periods()
    prediction = predict_cycle(periods)
    status = classify(today(), periods, prediction.next_period_date if prediction else None)
    flags = []
    if status.is_period:
        flags.append("🩸 on your period")
    if status.is_predicted_period:
        flags.append("🔮 in your predicted period")
    if status.is_ovulation:
        flags.append("✨ ovulation day")
    elif status.is_fertile:
        flags.append("🌱 in your fertility window")
    return ", ".join(flags)


# ── Commands ────────────────────────────────────────────────────────

@owner_only
async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    text = (
        "🌸 *Welcome to Maven!*\n\n"
        "Log a period with `/period <start> [end] [notes]`, e.g.\n"
        "`/period 2026-02-25 2026-03-01`\n\n"
        "/next - predicted dates\n"
        "/history - logged periods\n"
        "/undo - remove the last logged period\n"
        "/log - symptoms & moods\n"
        "/activity - reminder activity\n"
        "/settings - cycle & reminder settings\n"
        "/notifications on|off - reminders"
    )
    flags = _today_flags(get_db(context))
    if flags:
        text += f"\n\nToday: {flags}"
    await update.message.reply_text(text, parse_mode="Markdown")


@owner_only
async def period_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Log a period and schedule reminders for the next predicted cycle."""
    if not context.args:
        await update.message.reply_text(
            "Usage: `/period <start> [end] [notes]`\nExample: `/period 2026-02-25 2026-03-01`",
            parse_mode="Markdown",
        )
        return

    db = get_db(context)
    preferences = db.get_preferences()
    try:
        start = parse_date(context.args[0])
        if len(context.args) > 1:
            end = parse_date(context.args[1])
            notes_args = context.args[2:]
        else:
            end = add_days(start, preferences.average_period_length - 1)
            notes_args = []
    except InvalidDate as e:
        await update.message.reply_text(
            f"Wrong date format: `{_escape_markdown(str(e.value))}`. Use `YYYY-MM-DD`.",
            parse_mode="Markdown",
        )
        return

    if start > today():
        await update.message.reply_text("That date is in the future. Use a past or today's date.")
        return
    if end < start:
        await update.message.reply_text("The end date can't be before the start date.")
        return

    notes = " ".join(notes_args)[:MAX_NOTE_LENGTH] or None
    db.add_period(start, end, notes)

    now = datetime.now(TIMEZONE)
    upcoming = [
        r for r in build_reminders(db.get_periods(), preferences, now=now, tz=TIMEZONE)
        if r.scheduled_date > now
    ]
    try:
        results = schedule_reminders(get_dispatcher(context), upcoming)
    except StoreError as e:
        logger.error(f"Could not store reminders: {e}")
        await update.message.reply_text(
            f"✅ Period logged ({start} → {end}), but reminders couldn't be saved."
        )
        return

    if upcoming and not any(results):
        reminder_msg = "🔕 Reminders are saved but notifications are off."
    else:
        reminder_msg = f"⏰ {len(upcoming)} reminder(s) scheduled."
    await update.message.reply_text(
        f"✅ Period logged: *{start}* → *{end}*\n{reminder_msg}",
        parse_mode="Markdown",
    )


@owner_only
async def next_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    periods = get_db(context).get_periods()
    prediction = predict_cycle(periods)
    if prediction is None:
        await update.message.reply_text("No periods logged yet. Use /period to add one.")
        return

    now = today()
    avg = average_cycle_length(periods)
    cycle_line = f"📏 Average cycle: *{avg}* days\n" if avg else ""
    text = (
        f"🔮 *Upcoming Dates*\n\n"
        f"🩸 Next period: *{format_date(prediction.next_period_date)}* "
        f"({days_between(now, prediction.next_period_date)} days)\n"
        f"🌱 Fertility window: *{format_date(prediction.fertility_start)}* – "
        f"*{format_date(prediction.fertility_end)}*\n"
        f"✨ Ovulation: *{format_date(prediction.ovulation_date)}* "
        f"({days_between(now, prediction.ovulation_date)} days)\n"
        f"{cycle_line}"
    )
    await update.message.reply_text(text, parse_mode="Markdown")


@owner_only
async def history_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    periods = most_recent_first(get_db(context).get_periods())[:HISTORY_LIMIT]
    if not periods:
        await update.message.reply_text("📋 No periods logged yet. Use /period to add one.")
        return

    lines = ["📋 *Recent Periods:*\n"]
    for p in periods:
        line = f"🩸 {format_date(p.start_date)} → {format_date(p.end_date)}"
        if p.notes:
            line += f"\n📝 {_escape_markdown(p.notes)}"
        lines.append(line)
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@owner_only
async def notifications_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    db = get_db(context)
    preferences = db.get_preferences()
    if not context.args or context.args[0].lower() not in ("on", "off"):
        state = "on" if preferences.notifications else "off"
        await update.message.reply_text(
            f"Notifications are *{state}*.\nUsage: `/notifications on|off`",
            parse_mode="Markdown",
        )
        return

    preferences.notifications = context.args[0].lower() == "on"
    db.update_preferences(preferences)
    if preferences.notifications:
        await update.message.reply_text("🔔 Notifications turned on.")
    else:
        await update.message.reply_text("🔕 Notifications turned off.")


@owner_only
async def undo_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Remove the most recently logged period."""
    db = get_db(context)
    periods = db.get_periods()
    if not periods:
        await update.message.reply_text("📋 No periods logged yet. Nothing to undo.")
        return

    last = periods[-1]
    db.delete_period(last.id)
    await update.message.reply_text(
        f"🗑 Removed period *{format_date(last.start_date)}* → *{format_date(last.end_date)}*.\n"
        "Reminders already scheduled are left as they are.",
        parse_mode="Markdown",
    )


# ── Symptoms & moods ────────────────────────────────────────────────

LOG_USAGE = (
    "Usage:\n"
    "`/log symptom <type> <mild|moderate|severe> [notes]`\n"
    "`/log mood <mood> [notes]`\n"
    "Example: `/log symptom cramps moderate`"
)


def _recent_entries(db: Database) -> str:
    symptoms = db.get_symptoms()[:HISTORY_LIMIT]
    moods = db.get_moods()[:HISTORY_LIMIT]
    if not symptoms and not moods:
        return "📝 Nothing logged yet."

    lines = []
    if symptoms:
        lines.append("🤕 *Recent Symptoms:*")
        for s in symptoms:
            lines.append(f"{format_date(s.date)}: {_escape_markdown(s.type)} ({s.severity})")
    if moods:
        if lines:
            lines.append("")
        lines.append("💭 *Recent Moods:*")
        for m in moods:
            lines.append(f"{format_date(m.date)}: {_escape_markdown(m.mood)}")
    return "\n".join(lines)


@owner_only
async def log_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Log a symptom or mood for today; with no arguments show recent entries."""
    db = get_db(context)
    if not context.args:
        await update.message.reply_text(
            f"{_recent_entries(db)}\n\n{LOG_USAGE}", parse_mode="Markdown"
        )
        return

    kind = context.args[0].lower()
    if kind == "symptom" and len(context.args) >= 3:
        symptom, severity = context.args[1], context.args[2].lower()
        if severity not in SYMPTOM_SEVERITIES:
            await update.message.reply_text(
                f"Severity must be one of: {', '.join(SYMPTOM_SEVERITIES)}."
            )
            return
        notes = " ".join(context.args[3:])[:MAX_NOTE_LENGTH] or None
        db.add_symptom(today(), symptom, severity, notes)
        await update.message.reply_text(
            f"✅ Logged symptom: *{_escape_markdown(symptom)}* ({severity})",
            parse_mode="Markdown",
        )
    elif kind == "mood" and len(context.args) >= 2:
        mood = context.args[1]
        notes = " ".join(context.args[2:])[:MAX_NOTE_LENGTH] or None
        db.add_mood(today(), mood, notes)
        await update.message.reply_text(
            f"✅ Logged mood: *{_escape_markdown(mood)}*", parse_mode="Markdown"
        )
    else:
        await update.message.reply_text(LOG_USAGE, parse_mode="Markdown")


# ── Activity log ────────────────────────────────────────────────────

@owner_only
async def activity_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    db = get_db(context)
    if context.args and context.args[0].lower() == "clear":
        db.clear_activity_log()
        await update.message.reply_text("🧹 Activity log cleared.")
        return

    entries = db.get_activity_log(limit=ACTIVITY_LIMIT)
    if not entries:
        await update.message.reply_text("📜 No activity yet.")
        return

    lines = ["📜 *Recent Activity:*\n"]
    for entry in entries:
        lines.append(
            f"{entry['created_at']} *{entry['action']}*\n{_escape_markdown(entry['details'])}"
        )
    lines.append("\nClear it with `/activity clear`")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


# ── Settings ────────────────────────────────────────────────────────

SETTINGS_USAGE = (
    "`/settings cycle <days>`\n"
    "`/settings period <days>`\n"
    "`/settings <period_start|period_end|fertility|ovulation> on|off`"
)
REMINDER_TOGGLES = ("period_start", "period_end", "fertility", "ovulation")


def _on_off(flag: bool) -> str:
    return "on" if flag else "off"


@owner_only
async def settings_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    db = get_db(context)
    preferences = db.get_preferences()

    if not context.args:
        reminders = preferences.reminders
        text = (
            f"⚙️ *Settings*\n\n"
            f"📏 Cycle length: *{preferences.average_cycle_length}* days\n"
            f"🩸 Period length: *{preferences.average_period_length}* days\n"
            f"🔔 Notifications: *{_on_off(preferences.notifications)}*\n\n"
            f"Reminders:\n"
            f"period\\_start *{_on_off(reminders.period_start)}*, "
            f"period\\_end *{_on_off(reminders.period_end)}*, "
            f"fertility *{_on_off(reminders.fertility)}*, "
            f"ovulation *{_on_off(reminders.ovulation)}*\n\n"
            f"{SETTINGS_USAGE}"
        )
        await update.message.reply_text(text, parse_mode="Markdown")
        return

    name = context.args[0].lower()
    value = context.args[1].lower() if len(context.args) > 1 else ""

    if name in ("cycle", "period"):
        bounds = (MIN_CYCLE_LENGTH, MAX_CYCLE_LENGTH) if name == "cycle" else (1, MAX_PERIOD_LENGTH)
        try:
            days = int(value)
        except ValueError:
            await update.message.reply_text(
                f"Enter a number. Example: `/settings {name} {'30' if name == 'cycle' else '5'}`",
                parse_mode="Markdown",
            )
            return
        if not bounds[0] <= days <= bounds[1]:
            await update.message.reply_text(
                f"{name.capitalize()} length must be between {bounds[0]} and {bounds[1]} days."
            )
            return
        if name == "cycle":
            preferences.average_cycle_length = days
        else:
            preferences.average_period_length = days
        db.update_preferences(preferences)
        await update.message.reply_text(
            f"✅ {name.capitalize()} length changed to *{days}* days.", parse_mode="Markdown"
        )
        return

    if name in REMINDER_TOGGLES and value in ("on", "off"):
        setattr(preferences.reminders, name, value == "on")
        db.update_preferences(preferences)
        await update.message.reply_text(
            f"✅ {_escape_markdown(name)} reminders turned *{value}*.", parse_mode="Markdown"
        )
        return

    await update.message.reply_text(f"Usage:\n{SETTINGS_USAGE}", parse_mode="Markdown")
