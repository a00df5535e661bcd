"""
Suspicious authentication pattern detection
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from lockguard.models.security import AccountSecurityEvent
from lockguard.services.alerting import SecurityAlert, AlertSeverity
from lockguard.services.lockout_policy import EventType
from lockguard.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class PatternType:
    MULTIPLE_IP_ATTACK = "multiple_ip_attack"
    HIGH_FREQUENCY_ATTACK = "high_frequency_attack"
    USER_ENUMERATION_ATTACK = "user_enumeration_attack"


class SuspiciousActivityDetector:
    """Scans recent account security events for attack patterns"""

    # Configuration
    MULTIPLE_IP_WINDOW_MINUTES = 60
    MULTIPLE_IP_THRESHOLD = 5  # alert above this many distinct IPs
    HIGH_FREQUENCY_WINDOW_MINUTES = 10
    HIGH_FREQUENCY_THRESHOLD = 10  # alert above this many failures
    ENUMERATION_WINDOW_MINUTES = 60
    ENUMERATION_THRESHOLD = 5  # alert above this many misses

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def detect(self, user_id: Optional[str] = None, ip_address: Optional[str] = None) -> list[SecurityAlert]:
        """
        Run the targeted pattern checks for one user and/or IP.
        Returns an empty list if the event store cannot be read.
        """
        alerts: list[SecurityAlert] = []
        try:
            if user_id:
                alert = await self.detect_multiple_ip_attack(user_id)
                if alert:
                    alerts.append(alert)

            if ip_address:
                alert = await self.detect_high_frequency_attack(ip_address)
                if alert:
                    alerts.append(alert)

                alert = await self.detect_user_enumeration(ip_address)
                if alert:
                    alerts.append(alert)
        except Exception:
            logger.exception("Suspicious activity detection error")
            return []

        return alerts

    async def detect_multiple_ip_attack(self, user_id: str) -> Optional[SecurityAlert]:
        """Failed logins for one user coming from many distinct IPs."""
        since = self.clock() - timedelta(minutes=self.MULTIPLE_IP_WINDOW_MINUTES)
        result = await self.db.execute(
            select(AccountSecurityEvent.ip_address)
            .where(AccountSecurityEvent.user_id == user_id)
            .where(AccountSecurityEvent.event_type == EventType.FAILED_LOGIN)
            .where(AccountSecurityEvent.created_at >= since)
            .distinct()
        )
        ips = sorted(ip for ip in result.scalars().all() if ip)

        if len(ips) <= self.MULTIPLE_IP_THRESHOLD:
            return None

        return self._multiple_ip_alert(user_id, ips)

    async def detect_high_frequency_attack(self, ip_address: str) -> Optional[SecurityAlert]:
        """Burst of failed logins from a single IP."""
        count = await self._count_events(
            ip_address, EventType.FAILED_LOGIN, self.HIGH_FREQUENCY_WINDOW_MINUTES
        )
        if count <= self.HIGH_FREQUENCY_THRESHOLD:
            return None

        return self._high_frequency_alert(ip_address, count)

    async def detect_user_enumeration(self, ip_address: str) -> Optional[SecurityAlert]:
        """Password resets against nonexistent accounts from a single IP."""
        count = await self._count_events(
            ip_address, EventType.PASSWORD_RESET_NONEXISTENT_USER, self.ENUMERATION_WINDOW_MINUTES
        )
        if count <= self.ENUMERATION_THRESHOLD:
            return None

        return self._enumeration_alert(ip_address, count)

    async def scan_recent(self) -> list[SecurityAlert]:
        """Run all three checks across every user and IP seen recently."""
        alerts: list[SecurityAlert] = []
        now = self.clock()

        # Multiple IPs per user
        since = now - timedelta(minutes=self.MULTIPLE_IP_WINDOW_MINUTES)
        result = await self.db.execute(
            select(AccountSecurityEvent.user_id, AccountSecurityEvent.ip_address)
            .where(AccountSecurityEvent.event_type == EventType.FAILED_LOGIN)
            .where(AccountSecurityEvent.created_at >= since)
            .where(AccountSecurityEvent.user_id.is_not(None))
            .distinct()
        )
        ips_by_user: dict[str, set[str]] = {}
        for user_id, ip in result.all():
            if ip:
                ips_by_user.setdefault(user_id, set()).add(ip)

        for user_id, ips in ips_by_user.items():
            if len(ips) > self.MULTIPLE_IP_THRESHOLD:
                alerts.append(self._multiple_ip_alert(user_id, sorted(ips)))

        # High frequency per IP
        since = now - timedelta(minutes=self.HIGH_FREQUENCY_WINDOW_MINUTES)
        result = await self.db.execute(
            select(AccountSecurityEvent.ip_address, func.count(AccountSecurityEvent.id))
            .where(AccountSecurityEvent.event_type == EventType.FAILED_LOGIN)
            .where(AccountSecurityEvent.created_at >= since)
            .where(AccountSecurityEvent.ip_address.is_not(None))
            .group_by(AccountSecurityEvent.ip_address)
            .having(func.count(AccountSecurityEvent.id) > self.HIGH_FREQUENCY_THRESHOLD)
        )
        for ip, count in result.all():
            alerts.append(self._high_frequency_alert(ip, count))

        # Enumeration per IP
        since = now - timedelta(minutes=self.ENUMERATION_WINDOW_MINUTES)
        result = await self.db.execute(
            select(AccountSecurityEvent.ip_address, func.count(AccountSecurityEvent.id))
            .where(AccountSecurityEvent.event_type == EventType.PASSWORD_RESET_NONEXISTENT_USER)
            .where(AccountSecurityEvent.created_at >= since)
            .where(AccountSecurityEvent.ip_address.is_not(None))
            .group_by(AccountSecurityEvent.ip_address)
            .having(func.count(AccountSecurityEvent.id) > self.ENUMERATION_THRESHOLD)
        )
        for ip, count in result.all():
            alerts.append(self._enumeration_alert(ip, count))

        return alerts

    async def _count_events(self, ip_address: str, event_type: str, window_minutes: int) -> int:
        since = self.clock() - timedelta(minutes=window_minutes)
        result = await self.db.execute(
            select(func.count(AccountSecurityEvent.id))
            .where(AccountSecurityEvent.ip_address == ip_address)
            .where(AccountSecurityEvent.event_type == event_type)
            .where(AccountSecurityEvent.created_at >= since)
        )
        return result.scalar() or 0

    def _multiple_ip_alert(self, user_id: str, ips: list[str]) -> SecurityAlert:
        return SecurityAlert(
            severity=AlertSeverity.HIGH,
            type=PatternType.MULTIPLE_IP_ATTACK,
            description=f"Failed logins for user {user_id} from {len(ips)} different IPs in the last hour",
            affected_users=[user_id],
            details={
                "user_id": user_id,
                "unique_ips": len(ips),
                "ip_addresses": ips,
                "time_window_minutes": self.MULTIPLE_IP_WINDOW_MINUTES,
            },
            timestamp=self.clock(),
        )

    def _high_frequency_alert(self, ip_address: str, count: int) -> SecurityAlert:
        return SecurityAlert(
            severity=AlertSeverity.HIGH,
            type=PatternType.HIGH_FREQUENCY_ATTACK,
            description=f"{count} failed logins from IP {ip_address} in the last {self.HIGH_FREQUENCY_WINDOW_MINUTES} minutes",
            affected_users=[],
            details={
                "ip_address": ip_address,
                "attempt_count": count,
                "time_window_minutes": self.HIGH_FREQUENCY_WINDOW_MINUTES,
            },
            timestamp=self.clock(),
        )

    def _enumeration_alert(self, ip_address: str, count: int) -> SecurityAlert:
        return SecurityAlert(
            severity=AlertSeverity.MEDIUM,
            type=PatternType.USER_ENUMERATION_ATTACK,
            description=f"{count} password resets for nonexistent users from IP {ip_address} in the last hour",
            affected_users=[],
            details={
                "ip_address": ip_address,
                "attempt_count": count,
                "time_window_minutes": self.ENUMERATION_WINDOW_MINUTES,
            },
            timestamp=self.clock(),
        )
