import logging

from telegram import Bot
from telegram.error import TelegramError

from lms_payments.config import get_settings

logger = logging.getLogger(__name__)


async def send_operator_alert(text: str, settings=None) -> bool:
    """Send ``text`` to every operator chat. Never raises.

    Returns False when alerts are not configured or every send failed.
    """
    settings = settings or get_settings()
    if not settings.telegram_bot_token or not settings.operator_chat_ids:
        logger.info("Operator alert not sent (Telegram not configured): %s", text)
        return False

    bot = Bot(token=settings.telegram_bot_token)
    delivered = False
    for chat_id in settings.operator_chat_ids:
        try:
            await bot.send_message(chat_id=chat_id, text=text)
            delivered = True
        except TelegramError:
            logger.exception("Operator alert to chat_id=%s failed", chat_id)
    return delivered
