"""
Session monitoring: periodic session cleanup and security scans.

The service is constructed by the application (see ``lockguard.main``) and
owns an APScheduler ``AsyncIOScheduler`` while running. The scheduler factory,
alert dispatcher factory and clock are injectable so tests can drive sweeps
without real timers.
"""
import logging
import time
from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lockguard.config import settings
from lockguard.models.security import AccountSecurityEvent, BlockedIP, SecurityEvent, SystemEvent
from lockguard.models.session import UserSession
from lockguard.services.alerting import AlertDispatcher, AlertSeverity, SecurityAlert
from lockguard.services.lockout_policy import EventType
from lockguard.services.session_service import SessionService
from lockguard.services.suspicious_activity import SuspiciousActivityDetector
from lockguard.utils.helpers import utcnow, haversine_km, extract_device

logger = logging.getLogger(__name__)


@dataclass
class MonitoringConfig:
    expired_sessions_interval_minutes: int = 15
    inactive_sessions_interval_minutes: int = 60
    security_scan_interval_minutes: int = 5

    inactive_session_threshold_hours: int = 24
    suspicious_login_attempts: int = 5  # per 30 minutes, per IP
    failed_login_window_minutes: int = 30
    ip_block_minutes: int = 60
    max_concurrent_sessions_per_ip: int = 10
    max_concurrent_sessions: int = 5
    geographic_change_threshold_km: float = 1000
    geographic_window_hours: int = 6
    geographic_max_interval_hours: int = 2

    audit_log_retention_days: int = 90
    session_log_retention_days: int = 30
    security_event_retention_days: int = 365

    @classmethod
    def from_settings(cls) -> "MonitoringConfig":
        return cls(
            expired_sessions_interval_minutes=settings.expired_sessions_interval_minutes,
            inactive_sessions_interval_minutes=settings.inactive_sessions_interval_minutes,
            security_scan_interval_minutes=settings.security_scan_interval_minutes,
            inactive_session_threshold_hours=settings.inactive_session_threshold_hours,
            max_concurrent_sessions=settings.max_concurrent_sessions,
            audit_log_retention_days=settings.audit_log_retention_days,
            session_log_retention_days=settings.session_log_retention_days,
            security_event_retention_days=settings.security_event_retention_days,
        )


@dataclass
class MonitoringResult:
    timestamp: datetime
    sessions_processed: int = 0
    sessions_revoked: int = 0
    security_events_detected: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class SessionAnalytics:
    total_active_sessions: int
    unique_users: int
    average_session_duration: float  # minutes
    top_countries: list[dict]
    top_devices: list[dict]
    suspicious_activity: list[SecurityAlert]


def create_scheduler() -> AsyncIOScheduler:
    return AsyncIOScheduler(
        job_defaults={
            "coalesce": True,  # Collapse missed runs
            "max_instances": 1,  # One run of each sweep at a time
            "misfire_grace_time": 60,
        }
    )


def find_geographic_anomalies(
    sessions: Iterable[UserSession],
    threshold_km: float = 1000,
    max_interval: timedelta = timedelta(hours=2),
    clock: Callable[[], datetime] = utcnow,
) -> list[SecurityAlert]:
    """
    Alerts for users whose consecutive sessions are implausibly far apart.

    Sessions are grouped per user and ordered by creation time; each
    consecutive pair more than ``threshold_km`` apart and less than
    ``max_interval`` apart yields one high-severity alert.
    """
    by_user: dict[str, list[UserSession]] = {}
    for session in sessions:
        if session.location:
            by_user.setdefault(session.user_id, []).append(session)

    alerts = []
    for user_id, user_sessions in by_user.items():
        if len(user_sessions) < 2:
            continue

        user_sessions.sort(key=lambda s: s.created_at)
        for previous, current in zip(user_sessions, user_sessions[1:]):
            distance = haversine_km(previous.location, current.location)
            elapsed = current.created_at - previous.created_at

            if distance > threshold_km and elapsed < max_interval:
                minutes = round(elapsed.total_seconds() / 60)
                alerts.append(SecurityAlert(
                    severity=AlertSeverity.HIGH,
                    type="geographic_anomaly",
                    description=f"User {user_id} moved {round(distance)}km in {minutes} minutes",
                    affected_users=[user_id],
                    details={
                        "user_id": user_id,
                        "distance_km": round(distance, 1),
                        "time_minutes": minutes,
                        "previous_session_id": previous.id,
                        "current_session_id": current.id,
                        "previous_location": previous.location,
                        "current_location": current.location,
                        "previous_ip": previous.ip_address,
                        "current_ip": current.ip_address,
                    },
                    timestamp=clock(),
                ))

    return alerts


def aggregate_by_location(sessions: Iterable[UserSession], limit: int = 10) -> list[dict]:
    counts = Counter((s.location or {}).get("country") or "Unknown" for s in sessions)
    return [{"country": country, "count": count} for country, count in counts.most_common(limit)]


def aggregate_by_device(sessions: Iterable[UserSession], limit: int = 10) -> list[dict]:
    counts = Counter(extract_device(s.user_agent) for s in sessions)
    return [{"device": device, "count": count} for device, count in counts.most_common(limit)]


class SessionMonitoringService:
    """Background cleanup and security scanning of user sessions"""

    # job id -> method run by the scheduler
    JOBS = {
        "expired_sessions_cleanup": "cleanup_expired_sessions",
        "inactive_sessions_cleanup": "cleanup_inactive_sessions",
        "security_scan": "perform_security_scan",
    }
    MANUAL_JOBS = {**JOBS, "purge_old_records": "purge_old_records"}

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: Optional[MonitoringConfig] = None,
        scheduler_factory: Callable[[], AsyncIOScheduler] = create_scheduler,
        dispatcher_factory: Callable[[AsyncSession], AlertDispatcher] = AlertDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.config = config or MonitoringConfig.from_settings()
        self.scheduler_factory = scheduler_factory
        self.dispatcher_factory = dispatcher_factory
        self.clock = clock
        self.scheduler = None
        self.started_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.scheduler is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_monitoring(self) -> None:
        """Schedule the periodic sweeps and run an initial cleanup."""
        if self.is_running:
            logger.warning("Session monitoring is already running")
            return

        logger.info("Starting session monitoring service...")

        intervals = {
            "expired_sessions_cleanup": self.config.expired_sessions_interval_minutes,
            "inactive_sessions_cleanup": self.config.inactive_sessions_interval_minutes,
            "security_scan": self.config.security_scan_interval_minutes,
        }

        scheduler = self.scheduler_factory()
        for job_id, method_name in self.JOBS.items():
            scheduler.add_job(
                self._run_job,
                trigger=IntervalTrigger(minutes=intervals[job_id]),
                args=[method_name],
                id=job_id,
                name=method_name,
                replace_existing=True,
            )
            logger.info(f"Job registered: {job_id} (every {intervals[job_id]} min)")

        scheduler.start()
        self.scheduler = scheduler
        self.started_at = self.clock()

        await self.perform_initial_cleanup()

    def stop_monitoring(self) -> None:
        """Cancel the periodic sweeps. A sweep already in flight runs to completion."""
        if not self.is_running:
            return

        logger.info("Stopping session monitoring service...")
        self.scheduler.remove_all_jobs()
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        self.started_at = None

    def get_status(self) -> dict:
        if not self.is_running:
            return {"running": False, "started_at": None, "jobs": []}

        return {
            "running": True,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "jobs": [
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": str(job.next_run_time) if getattr(job, "next_run_time", None) else None,
                }
                for job in self.scheduler.get_jobs()
            ],
        }

    async def run_job_now(self, job_id: str) -> dict:
        """Run one sweep immediately, outside the schedule."""
        method_name = self.MANUAL_JOBS.get(job_id)
        if method_name is None:
            return {"success": False, "error": f"Job '{job_id}' not found"}

        try:
            result = await getattr(self, method_name)()
        except Exception as e:
            logger.error(f"Error running job {job_id}: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

        if isinstance(result, MonitoringResult):
            result = result.to_dict()
        return {"success": True, "result": result}

    async def _run_job(self, method_name: str) -> None:
        try:
            result = await getattr(self, method_name)()
            if isinstance(result, MonitoringResult) and result.errors:
                logger.error(f"{method_name} finished with errors: {result.errors}")
        except Exception:
            logger.exception(f"Scheduled job {method_name} failed")

    async def perform_initial_cleanup(self) -> None:
        logger.info("Performing initial session cleanup...")

        expired = await self.cleanup_expired_sessions()
        inactive = await self.cleanup_inactive_sessions()

        total_revoked = expired.sessions_revoked + inactive.sessions_revoked
        if total_revoked > 0:
            logger.info(f"Initial cleanup completed: {total_revoked} sessions revoked")

    # ------------------------------------------------------------------
    # Cleanup sweeps
    # ------------------------------------------------------------------

    async def cleanup_expired_sessions(self) -> MonitoringResult:
        """Revoke active sessions whose expiry has passed."""
        now = self.clock()
        return await self._revoke_sessions(
            condition=UserSession.expires_at < now,
            reason="expired",
            event_type="expired_sessions_cleanup",
            details={},
        )

    async def cleanup_inactive_sessions(self) -> MonitoringResult:
        """Revoke active sessions idle for longer than the inactivity threshold."""
        threshold = self.clock() - timedelta(hours=self.config.inactive_session_threshold_hours)
        return await self._revoke_sessions(
            condition=UserSession.last_activity < threshold,
            reason="inactive",
            event_type="inactive_sessions_cleanup",
            details={"inactive_threshold_hours": self.config.inactive_session_threshold_hours},
        )

    async def _revoke_sessions(self, condition, reason: str, event_type: str, details: dict) -> MonitoringResult:
        started = time.monotonic()
        result = MonitoringResult(timestamp=self.clock())

        try:
            async with self.session_factory() as db:
                rows = await db.execute(
                    select(UserSession.id)
                    .where(UserSession.is_active == True)
                    .where(condition)
                )
                session_ids = list(rows.scalars().all())
                result.sessions_processed = len(session_ids)

                if not session_ids:
                    return result

                updated = await db.execute(
                    update(UserSession)
                    .where(UserSession.id.in_(session_ids))
                    .where(UserSession.is_active == True)
                    .values(is_active=False, revoked_at=self.clock(), revoke_reason=reason)
                    .execution_options(synchronize_session=False)
                )
                result.sessions_revoked = updated.rowcount or 0

                self._log_system_event(db, event_type, {
                    **details,
                    "sessions_revoked": result.sessions_revoked,
                    "processing_time_ms": round((time.monotonic() - started) * 1000),
                })
                await db.commit()

        except Exception as e:
            logger.exception(f"{event_type} error")
            result.sessions_revoked = 0
            result.errors.append(f"Cleanup error: {e}")

        return result

    async def purge_old_records(self) -> dict:
        """
        Delete records past their retention period.

        Each table is purged and committed on its own, so a failure on one
        table leaves the others purged. Returns the per-table counts and the
        errors met along the way.
        """
        now = self.clock()
        audit_cutoff = now - timedelta(days=self.config.audit_log_retention_days)
        session_cutoff = now - timedelta(days=self.config.session_log_retention_days)
        security_cutoff = now - timedelta(days=self.config.security_event_retention_days)

        statements = {
            "system_events": delete(SystemEvent).where(SystemEvent.created_at < audit_cutoff),
            "account_security_events": (
                delete(AccountSecurityEvent)
                .where(AccountSecurityEvent.created_at < audit_cutoff)
                .where(or_(
                    AccountSecurityEvent.lockout_until.is_(None),
                    AccountSecurityEvent.lockout_until < audit_cutoff,
                ))
            ),
            "user_sessions": (
                delete(UserSession)
                .where(UserSession.is_active == False)
                .where(UserSession.revoked_at < session_cutoff)
            ),
            "security_events": delete(SecurityEvent).where(SecurityEvent.created_at < security_cutoff),
        }

        deleted = {table: 0 for table in statements}
        errors: list[str] = []

        try:
            async with self.session_factory() as db:
                for table, statement in statements.items():
                    try:
                        result = await db.execute(statement)
                        await db.commit()
                        deleted[table] = result.rowcount or 0
                    except Exception as e:
                        logger.error(f"Retention purge of {table} failed: {e}")
                        errors.append(f"{table}: {e}")
                        await db.rollback()

                self._log_system_event(db, "retention_purge", {"deleted": deleted, "errors": errors})
                await db.commit()
        except Exception as e:
            logger.exception("Retention purge failed")
            errors.append(str(e))

        logger.info(f"Retention purge: {deleted}")
        return {"deleted": deleted, "errors": errors}

    # ------------------------------------------------------------------
    # Security scan
    # ------------------------------------------------------------------

    async def perform_security_scan(self) -> MonitoringResult:
        """Run every detector; one failing detector does not stop the others."""
        result = MonitoringResult(timestamp=self.clock())

        checks = (
            ("suspicious_patterns", self._detect_suspicious_patterns),
            ("multiple_failed_logins", self._detect_multiple_failed_logins),
            ("suspicious_ip_activity", self._detect_suspicious_ip_activity),
            ("geographic_anomalies", self._detect_geographic_anomalies),
            ("concurrent_session_abuse", self._detect_concurrent_session_abuse),
        )
        for name, check in checks:
            try:
                async with self.session_factory() as db:
                    await check(db, result)
            except Exception as e:
                logger.exception(f"{name} detection error")
                result.errors.append(f"{name}: {e}")

        return result

    async def _raise_alerts(self, db: AsyncSession, alerts: list[SecurityAlert], result: MonitoringResult) -> None:
        dispatcher = self.dispatcher_factory(db)
        for alert in alerts:
            await dispatcher.dispatch(alert)
            result.security_events_detected += 1

    async def _detect_suspicious_patterns(self, db: AsyncSession, result: MonitoringResult) -> None:
        detector = SuspiciousActivityDetector(db, clock=self.clock)
        await self._raise_alerts(db, await detector.scan_recent(), result)

    async def _detect_multiple_failed_logins(self, db: AsyncSession, result: MonitoringResult) -> None:
        since = self.clock() - timedelta(minutes=self.config.failed_login_window_minutes)
        rows = await db.execute(
            select(AccountSecurityEvent.ip_address, AccountSecurityEvent.user_id)
            .where(AccountSecurityEvent.event_type == EventType.FAILED_LOGIN)
            .where(AccountSecurityEvent.created_at >= since)
        )

        attempts_by_ip: dict[str, list[Optional[str]]] = {}
        for ip, user_id in rows.all():
            attempts_by_ip.setdefault(ip or "unknown", []).append(user_id)

        for ip, user_ids in attempts_by_ip.items():
            if len(user_ids) < self.config.suspicious_login_attempts:
                continue

            affected = sorted({u for u in user_ids if u})
            alert = SecurityAlert(
                severity=AlertSeverity.HIGH,
                type="multiple_failed_logins",
                description=(
                    f"{len(user_ids)} failed login attempts from IP {ip} "
                    f"in the last {self.config.failed_login_window_minutes} minutes"
                ),
                affected_users=affected,
                details={
                    "ip_address": ip,
                    "attempt_count": len(user_ids),
                    "time_window_minutes": self.config.failed_login_window_minutes,
                    "affected_users": len(affected),
                },
                timestamp=self.clock(),
            )
            await self._raise_alerts(db, [alert], result)

            if ip != "unknown":
                await self._temporarily_block_ip(
                    db, ip, "multiple_failed_logins", self.config.ip_block_minutes, len(user_ids)
                )

    async def _detect_suspicious_ip_activity(self, db: AsyncSession, result: MonitoringResult) -> None:
        since = self.clock() - timedelta(hours=1)
        rows = await db.execute(
            select(UserSession.ip_address, UserSession.user_id)
            .where(UserSession.is_active == True)
            .where(UserSession.last_activity >= since)
            .where(UserSession.ip_address.is_not(None))
        )

        sessions_by_ip: dict[str, list[str]] = {}
        for ip, user_id in rows.all():
            sessions_by_ip.setdefault(ip, []).append(user_id)

        alerts = []
        for ip, user_ids in sessions_by_ip.items():
            if len(user_ids) <= self.config.max_concurrent_sessions_per_ip:
                continue

            unique_users = sorted(set(user_ids))
            alerts.append(SecurityAlert(
                severity=AlertSeverity.MEDIUM,
                type="suspicious_ip_activity",
                description=f"IP {ip} has {len(user_ids)} concurrent sessions",
                affected_users=unique_users,
                details={
                    "ip_address": ip,
                    "session_count": len(user_ids),
                    "max_allowed": self.config.max_concurrent_sessions_per_ip,
                    "unique_users": len(unique_users),
                },
                timestamp=self.clock(),
            ))

        await self._raise_alerts(db, alerts, result)

    async def _detect_geographic_anomalies(self, db: AsyncSession, result: MonitoringResult) -> None:
        since = self.clock() - timedelta(hours=self.config.geographic_window_hours)
        rows = await db.execute(
            select(UserSession)
            .where(UserSession.created_at >= since)
            .where(UserSession.location.is_not(None))
        )

        alerts = find_geographic_anomalies(
            rows.scalars().all(),
            threshold_km=self.config.geographic_change_threshold_km,
            max_interval=timedelta(hours=self.config.geographic_max_interval_hours),
            clock=self.clock,
        )
        if not alerts:
            return

        # The same session pair stays in the window for several scans
        reported = await self._reported_session_pairs(db, since)
        fresh = [
            alert for alert in alerts
            if (alert.details["previous_session_id"], alert.details["current_session_id"]) not in reported
        ]
        await self._raise_alerts(db, fresh, result)

    async def _reported_session_pairs(self, db: AsyncSession, since: datetime) -> set[tuple[str, str]]:
        rows = await db.execute(
            select(SecurityEvent.details)
            .where(SecurityEvent.event_type == "geographic_anomaly")
            .where(SecurityEvent.created_at >= since)
        )
        pairs = set()
        for details in rows.scalars().all():
            details = details or {}
            pairs.add((details.get("previous_session_id"), details.get("current_session_id")))
        return pairs

    async def _detect_concurrent_session_abuse(self, db: AsyncSession, result: MonitoringResult) -> None:
        rows = await db.execute(
            select(UserSession.user_id, UserSession.ip_address, UserSession.device_fingerprint)
            .where(UserSession.is_active == True)
        )

        sessions_by_user: dict[str, list[tuple]] = {}
        for user_id, ip, fingerprint in rows.all():
            sessions_by_user.setdefault(user_id, []).append((ip, fingerprint))

        limit = self.config.max_concurrent_sessions
        for user_id, sessions in sessions_by_user.items():
            count = len(sessions)
            if count <= limit * 2:
                continue

            alert = SecurityAlert(
                severity=AlertSeverity.MEDIUM,
                type="concurrent_session_abuse",
                description=f"User {user_id} has {count} concurrent sessions",
                affected_users=[user_id],
                details={
                    "user_id": user_id,
                    "session_count": count,
                    "max_allowed": limit,
                    "different_ips": len({ip for ip, _ in sessions if ip}),
                    "different_devices": len({fp for _, fp in sessions if fp}),
                },
                timestamp=self.clock(),
            )
            await self._raise_alerts(db, [alert], result)

            if count > limit * 3:
                revoked = await SessionService(db, clock=self.clock).revoke_all_sessions(
                    user_id, reason="excessive_concurrent_sessions"
                )
                result.sessions_revoked += revoked

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def get_session_analytics(self) -> SessionAnalytics:
        try:
            async with self.session_factory() as db:
                rows = await db.execute(
                    select(UserSession).where(UserSession.is_active == True)
                )
                sessions = list(rows.scalars().all())

                durations = [
                    (s.last_activity - s.created_at).total_seconds() / 60
                    for s in sessions
                    if s.last_activity and s.created_at
                ]

                return SessionAnalytics(
                    total_active_sessions=len(sessions),
                    unique_users=len({s.user_id for s in sessions}),
                    average_session_duration=round(sum(durations) / len(durations), 1) if durations else 0,
                    top_countries=aggregate_by_location(sessions),
                    top_devices=aggregate_by_device(sessions),
                    suspicious_activity=await self.dispatcher_factory(db).get_recent_alerts(since=self.clock() - timedelta(hours=24)),
                )
        except Exception:
            logger.exception("Session analytics error")
            return SessionAnalytics(
                total_active_sessions=0,
                unique_users=0,
                average_session_duration=0,
                top_countries=[],
                top_devices=[],
                suspicious_activity=[],
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log_system_event(self, db: AsyncSession, event_type: str, details: dict) -> None:
        db.add(SystemEvent(
            event_type=event_type,
            event_category="session_management",
            details=details,
            created_at=self.clock(),
        ))

    async def _temporarily_block_ip(
        self,
        db: AsyncSession,
        ip_address: str,
        reason: str,
        duration_minutes: int,
        failed_attempts: int,
    ) -> BlockedIP:
        """Block an IP for a while; an existing active block is extended, not duplicated."""
        blocked_until = self.clock() + timedelta(minutes=duration_minutes)

        existing = await db.execute(
            select(BlockedIP).where(
                BlockedIP.ip_address == ip_address,
                BlockedIP.is_active == True
            ).order_by(BlockedIP.id.desc())
        )
        block = existing.scalars().first()

        if block:
            if not block.is_permanent and (block.blocked_until is None or block.blocked_until < blocked_until):
                block.blocked_until = blocked_until
            block.failed_attempts = max(block.failed_attempts or 0, failed_attempts)
        else:
            block = BlockedIP(
                ip_address=ip_address,
                reason=reason,
                failed_attempts=failed_attempts,
                blocked_at=self.clock(),
                blocked_until=blocked_until,
                is_permanent=False,
            )
            db.add(block)
            logger.warning(f"IP {ip_address} blocked for {duration_minutes} minutes ({reason})")

        await db.commit()
        return block
