"""
Notification system for pushing engine alerts to Telegram.
Handles filtering, formatting and delivery with rate limiting.
"""
import asyncio
import logging
from typing import Optional, Set, Tuple

from aiogram import Bot
from aiogram.exceptions import TelegramForbiddenError, TelegramRetryAfter

from core.analysis_models import MarketAnalysisEvent
from core.models import RiskLevel, WhaleActivityEvent
from utils.filters import should_notify_analysis, should_notify_whale
from utils.formatting import format_analysis_notification, format_whale_notification

logger = logging.getLogger(__name__)


def parse_chat_destination(chat_config: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """
    Parse chat destination from config string.

    Args:
        chat_config: Either "chat_id" or "chat_id:thread_id"

    Returns:
        Tuple of (chat_id, message_thread_id)
    """
    if not chat_config:
        return None, None

    try:
        if ':' in chat_config:
            chat_id_str, thread_id_str = chat_config.split(':', 1)
            return int(chat_id_str), int(thread_id_str)
        else:
            return int(chat_config), None
    except ValueError:
        logger.error(f"Invalid chat destination format: {chat_config}")
        return None, None


class Notifier:
    """
    Sends whale and market analysis alerts to one Telegram chat.
    Manages rate limiting and error handling.
    """

    def __init__(self, bot: Bot, chat_destination: Optional[str],
                 min_risk: RiskLevel = RiskLevel.MEDIUM, notify_analysis: bool = True):
        """Initialize notifier with bot instance and destination."""
        self.bot = bot
        self.chat_id, self.thread_id = parse_chat_destination(chat_destination)
        self.min_risk = min_risk
        self.notify_analysis = notify_analysis
        self._rate_limit_delay = 0.05  # 50ms between messages
        self._blocked_chats: Set[int] = set()

    @property
    def enabled(self) -> bool:
        return self.chat_id is not None and self.chat_id not in self._blocked_chats

    async def notify_whale(self, event: WhaleActivityEvent) -> bool:
        """Send a whale activity alert if it passes the risk filter."""
        if not self.enabled or not should_notify_whale(event, self.min_risk):
            return False

        try:
            await self._send_message(self.chat_id, format_whale_notification(event), self.thread_id)
            return True
        except Exception as e:
            logger.error(f"Error sending whale notification for {event.pool_address}: {e}")
            return False

    async def notify_market_analysis(self, event: MarketAnalysisEvent) -> bool:
        """Send a market analysis alert when it contains something actionable."""
        if not self.enabled or not self.notify_analysis or not should_notify_analysis(event):
            return False

        try:
            await self._send_message(self.chat_id, format_analysis_notification(event), self.thread_id)
            return True
        except Exception as e:
            logger.error(f"Error sending analysis notification for {event.pool_address}: {e}")
            return False

    async def _send_message(self, chat_id: int, text: str, message_thread_id: Optional[int] = None):
        """
        Send message with rate limiting and error handling.

        Args:
            chat_id: Telegram chat ID (user, group, or supergroup)
            text: Message text to send
            message_thread_id: Optional topic/thread ID for supergroups
        """
        await asyncio.sleep(self._rate_limit_delay)

        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                message_thread_id=message_thread_id,
                parse_mode=None,
                disable_web_page_preview=True
            )

        except TelegramRetryAfter as e:
            logger.warning(f"Rate limit hit for chat {chat_id}, waiting {e.retry_after}s")
            await asyncio.sleep(e.retry_after)
            # Retry once
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                message_thread_id=message_thread_id,
                parse_mode=None,
                disable_web_page_preview=True
            )

        except TelegramForbiddenError:
            # Bot blocked or removed from the alert chat
            logger.warning(f"Bot blocked or removed from chat {chat_id}")
            self._blocked_chats.add(chat_id)
