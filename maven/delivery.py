import asyncio
import logging

from telegram import Bot

from maven.db import Database
from maven.notifications import Permission

logger = logging.getLogger(__name__)

DELIVERY_TIMEOUT = 30.0


class TelegramDelivery:
    """Delivers reminders as Telegram messages to the owner's chat.

    ``deliver`` blocks, so it must be called from a worker thread, never
    from the event loop that runs the bot.
    """

    def __init__(
        self,
        bot: Bot,
        chat_id: int | None,
        loop: asyncio.AbstractEventLoop,
        db: Database | None = None,
        timeout: float = DELIVERY_TIMEOUT,
    ):
        self.bot = bot
        self.chat_id = chat_id
        self.loop = loop
        self.db = db
        self.timeout = timeout

    def request_permission(self) -> Permission:
        if self.chat_id is None:
            return Permission.DENIED
        if self.db is not None and not self.db.get_preferences().notifications:
            return Permission.DENIED
        return Permission.GRANTED

    def deliver(self, title: str, body: str):
        text = f"*{title}*\n\n{body}"
        future = asyncio.run_coroutine_threadsafe(
            self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode="Markdown"),
            self.loop,
        )
        future.result(timeout=self.timeout)
        logger.debug(f"Delivered '{title}' to {self.chat_id}")
