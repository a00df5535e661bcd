from datetime import datetime
from typing import Optional
import logging

from lockguard.config import settings

logger = logging.getLogger(__name__)


class SecurityNotifier:
    """
    Lockout notifications using aiogram 3.

    Security team messages go to a Telegram chat. User-facing email/SMS
    delivery is not wired up; those notifications are only logged.
    """

    def __init__(self):
        self.bot = None
        self._initialized = False

    async def _ensure_initialized(self) -> bool:
        """Ensure bot is initialized."""
        if self._initialized:
            return True

        if not settings.telegram_bot_token:
            return False

        try:
            from aiogram import Bot
            self.bot = Bot(token=settings.telegram_bot_token)
            self._initialized = True
            return True
        except Exception as e:
            logger.error(f"Failed to initialize Telegram bot: {e}")
            return False

    async def notify_security_team(self, message: str) -> bool:
        """Send notification to the security team chat."""
        if not await self._ensure_initialized():
            logger.warning(f"Security team notification not delivered (Telegram not configured): {message}")
            return False

        if not settings.security_team_telegram_id:
            return False

        try:
            await self.bot.send_message(
                chat_id=settings.security_team_telegram_id,
                text=message,
                parse_mode="HTML"
            )
            return True
        except Exception as e:
            logger.error(f"Failed to send security team notification: {e}")
            return False

    async def send_lockout_notification(
        self,
        user_id: Optional[str],
        ip_address: Optional[str],
        reason: str,
        role: str
    ) -> bool:
        """Notify security team about a lockout."""
        message = f"""
<b>Account lockout</b>

Role: {role}
User: {user_id or '-'}
IP: {ip_address or '-'}
Reason: {reason}
"""
        return await self.notify_security_team(message)

    async def send_incident_notification(
        self,
        user_id: Optional[str],
        ip_address: Optional[str],
        patterns: list[str]
    ) -> bool:
        """Notify security team about an escalated incident."""
        message = f"""
<b>Suspicious authentication activity</b>

User: {user_id or '-'}
IP: {ip_address or '-'}
Patterns: {', '.join(patterns)}
"""
        return await self.notify_security_team(message)

    async def notify_user_lockout(self, user_id: str, locked_until: datetime, reason: str) -> bool:
        # Email/SMS delivery is handled outside this service
        logger.info(f"User {user_id} locked until {locked_until.isoformat()}: {reason}")
        return True

    async def notify_user_unlock(self, user_id: str, method: str) -> bool:
        logger.info(f"User {user_id} unlocked via {method}")
        return True

    async def close(self):
        """Close bot session."""
        if self.bot:
            await self.bot.session.close()
            self.bot = None
            self._initialized = False


# Global instance
notifier = SecurityNotifier()
