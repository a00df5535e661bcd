"""
Security alert persistence and webhook delivery
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lockguard.config import settings
from lockguard.models.security import SecurityEvent
from lockguard.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class AlertSeverity:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    # Severities forwarded to the webhook
    ESCALATED = (HIGH, CRITICAL)


@dataclass
class SecurityAlert:
    severity: str
    type: str
    description: str
    affected_users: list[str] = field(default_factory=list)
    details: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_webhook_payload(self) -> dict:
        return {
            "severity": self.severity,
            "type": self.type,
            "description": self.description,
            "affected_users": len(self.affected_users),
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


class AlertDispatcher:
    """Writes alerts to security_events and forwards escalated ones to a webhook."""

    def __init__(
        self,
        db: AsyncSession,
        webhook_url: Optional[str] = settings.security_alert_webhook,
        timeout: float = settings.webhook_timeout_seconds,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.transport = transport
        self.clock = clock

    async def dispatch(self, alert: SecurityAlert) -> bool:
        """Persist an alert. Returns False if it could not be stored."""
        try:
            self.db.add(SecurityEvent(
                event_type=alert.type,
                severity=alert.severity,
                user_id=alert.affected_users[0] if alert.affected_users else None,
                description=alert.description,
                details=alert.details,
                created_at=alert.timestamp,
            ))
            await self.db.commit()
        except Exception:
            logger.exception("Failed to create security alert %s", alert.type)
            await self.db.rollback()
            return False

        if self.webhook_url and alert.severity in AlertSeverity.ESCALATED:
            await self.send_webhook(alert)

        return True

    async def send_webhook(self, alert: SecurityAlert) -> bool:
        """POST the alert to the configured webhook. Never raises."""
        if not self.webhook_url:
            return False

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=alert.to_webhook_payload())
        except httpx.HTTPError as e:
            logger.error(f"Webhook alert error: {e}")
            return False

        if not response.is_success:
            logger.error(f"Webhook alert failed: {response.status_code} {response.reason_phrase}")
            return False

        return True

    async def get_recent_alerts(
        self,
        hours: int = 24,
        limit: int = 50,
        since: Optional[datetime] = None,
    ) -> list[SecurityAlert]:
        """Alerts stored in the last ``hours`` (or after ``since``), newest first."""
        if since is None:
            since = self.clock() - timedelta(hours=hours)
        result = await self.db.execute(
            select(SecurityEvent)
            .where(SecurityEvent.created_at >= since)
            .order_by(SecurityEvent.created_at.desc())
            .limit(limit)
        )
        return [
            SecurityAlert(
                severity=row.severity,
                type=row.event_type,
                description=row.description or "",
                affected_users=[row.user_id] if row.user_id else [],
                details=row.details or {},
                timestamp=row.created_at,
            )
            for row in result.scalars().all()
        ]
