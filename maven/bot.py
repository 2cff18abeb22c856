import asyncio
import logging
from logging.handlers import RotatingFileHandler

from telegram import BotCommand
from telegram.ext import ApplicationBuilder, CommandHandler

from config.settings import (
    DB_PATH,
    DEFAULT_CYCLE_LENGTH,
    DEFAULT_PERIOD_LENGTH,
    LOGS_DIR,
    MAX_DELIVERY_ATTEMPTS,
    OWNER_CHAT_ID,
    TELEGRAM_BOT_TOKEN,
    VERSION,
)
from maven.cycle import UserPreferences
from maven.db import Database
from maven.delivery import TelegramDelivery
from maven.handlers import (
    activity_command,
    history_command,
    log_command,
    next_command,
    notifications_command,
    period_command,
    settings_command,
    start_command,
    undo_command,
)
from maven.notifications import NotificationDispatcher, NotificationStore
from maven.scheduler import run_sweep, setup_scheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        RotatingFileHandler(
            LOGS_DIR / "maven.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        ),
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger(__name__)


async def post_init(application):
    """Register the command menu, wire delivery, and run the startup sweep."""
    await application.bot.set_my_commands([
        BotCommand("start", "Welcome & today's status"),
        BotCommand("period", "Log a period"),
        BotCommand("next", "Predicted dates"),
        BotCommand("history", "Logged periods"),
        BotCommand("undo", "Remove the last logged period"),
        BotCommand("log", "Log a symptom or mood"),
        BotCommand("activity", "Reminder activity log"),
        BotCommand("settings", "Cycle and reminder settings"),
        BotCommand("notifications", "Turn reminders on or off"),
    ])

    db: Database = application.bot_data["db"]
    loop = asyncio.get_running_loop()
    delivery = TelegramDelivery(application.bot, OWNER_CHAT_ID, loop, db=db)
    dispatcher = NotificationDispatcher(
        NotificationStore(db), delivery, activity=db, max_attempts=MAX_DELIVERY_ATTEMPTS
    )
    application.bot_data["dispatcher"] = dispatcher

    # Delivery blocks on the loop, so the sweep has to run off it
    await loop.run_in_executor(None, run_sweep, dispatcher)

    scheduler = setup_scheduler(dispatcher)
    scheduler.start()
    application.bot_data["scheduler"] = scheduler
    logger.info("Scheduler started.")


def create_app() -> None:
    """Create and run the bot application."""
    logger.info(f"Starting Maven {VERSION}...")

    db = Database(
        DB_PATH,
        default_preferences=UserPreferences(
            average_cycle_length=DEFAULT_CYCLE_LENGTH,
            average_period_length=DEFAULT_PERIOD_LENGTH,
        ),
    )

    app = ApplicationBuilder().token(TELEGRAM_BOT_TOKEN).post_init(post_init).build()
    app.bot_data["db"] = db
    app.bot_data["owner_chat_id"] = OWNER_CHAT_ID

    commands = [
        ("start", start_command),
        ("period", period_command),
        ("next", next_command),
        ("history", history_command),
        ("undo", undo_command),
        ("log", log_command),
        ("activity", activity_command),
        ("settings", settings_command),
        ("notifications", notifications_command),
    ]
    for name, handler in commands:
        app.add_handler(CommandHandler(name, handler))

    logger.info("Bot is running. Press Ctrl+C to stop.")
    app.run_polling(drop_pending_updates=True)


if __name__ == "__main__":
    create_app()
