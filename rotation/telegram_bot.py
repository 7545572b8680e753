from typing import Optional
from loguru import logger
from telegram import Bot
from telegram.error import TelegramError

from rotation import config
from rotation.notif.templates import template_error_admin


async def _send_message_async(text: str, chat_id: str, token: str) -> None:
    """Send message to specific chat."""
    bot = Bot(token)
    async with bot:
        await bot.send_message(chat_id=chat_id, text=text, parse_mode='HTML')


async def send_message_async(text: str, to_admin: bool = False,
                             token: Optional[str] = None, chat_id: Optional[str] = None) -> bool:
    """
    Send message to Telegram.

    Without a bot token or a target chat the message is only logged
    (dry-run), so local runs and tests never reach the network.

    Args:
        text: Message text
        to_admin: If True, send to admin channel; otherwise send to main channel

    Returns:
        True if sent (or dry-run logged), False on a Telegram/network failure
    """
    token = token if token is not None else config.BOT_TOKEN
    target_chat_id = chat_id or (config.ADMIN_CHANNEL_ID if to_admin else config.CHANNEL_CHAT_ID)

    if not token or not target_chat_id:
        prefix = "[admin]" if to_admin else "[channel]"
        logger.info(f"[dry-run] {prefix} MSG -> {text}")
        return True

    try:
        await _send_message_async(text, target_chat_id, token)
        return True
    except (TelegramError, OSError) as e:
        logger.error(f"Failed to send message to {'admin' if to_admin else 'channel'}: {e}")
        return False


async def send_error_to_admin(error_type: str, error_msg: str, context: str = "") -> bool:
    """
    Send error alert to admin channel.

    Args:
        error_type: Type of error (e.g., "Providers", "Database")
        error_msg: Error message
        context: Additional context
    """
    message = template_error_admin(error_type, error_msg, context)
    return await send_message_async(message, to_admin=True)
