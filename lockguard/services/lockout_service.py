"""
Account lockout service: status checks, progressive delay, lock and unlock
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, func, update, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from lockguard.config import settings
from lockguard.models.security import AccountSecurityEvent, SecurityIncident, UnlockToken
from lockguard.models.session import UserRole
from lockguard.services.alerting import AlertDispatcher, SecurityAlert, AlertSeverity
from lockguard.services.lockout_policy import (
    DEFAULT_ROLE,
    EventType,
    FailedAttemptResult,
    LockoutEvent,
    LockoutPolicy,
    LockoutStatus,
    LockoutType,
    UnlockMethod,
    UnlockRequest,
    UnlockResult,
    evaluate_attempts,
    fail_open_status,
    get_policy_for_role,
    infer_lockout_type,
    requires_admin_intervention,
)
from lockguard.services.notifications import SecurityNotifier, notifier as default_notifier
from lockguard.services.suspicious_activity import SuspiciousActivityDetector
from lockguard.utils.helpers import utcnow
from lockguard.utils.security import create_unlock_token, decode_unlock_token

logger = logging.getLogger(__name__)


class AccountLockoutService:
    """Handles account/IP lockouts, unlocks and incident escalation"""

    LOCKOUT_RISK_SCORE = 80
    INCIDENT_LOOKBACK_HOURS = 24

    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[SecurityNotifier] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        detector: Optional[SuspiciousActivityDetector] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.notifier = notifier or default_notifier
        self.dispatcher = dispatcher or AlertDispatcher(db, clock=clock)
        self.detector = detector or SuspiciousActivityDetector(db, clock=clock)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def check_status(
        self,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        role: str = DEFAULT_ROLE,
        apply: bool = True,
    ) -> LockoutStatus:
        """
        Report whether a user and/or IP is locked.

        An existing unexpired lock short-circuits. Otherwise recent failures
        are counted and evaluated against the role's policy; when a threshold
        is crossed and ``apply`` is set, the lock is written before the status
        is returned. Fails open on any storage error.
        """
        try:
            policy = get_policy_for_role(role)

            active = await self.find_active_lockout(user_id, ip_address)
            if active:
                return await self._status_from_lockout(active, policy, user_id, ip_address)

            user_attempts, ip_attempts = await self.count_recent_failed_attempts(user_id, ip_address, policy)
            decision = evaluate_attempts(user_attempts, ip_attempts, policy)

            locked_until = None
            if decision.should_lock:
                locked_until = self.clock() + timedelta(minutes=policy.auto_unlock_after_minutes)
                if apply:
                    lockout = await self.apply_lockout(
                        LockoutEvent(
                            user_id=user_id,
                            ip_address=ip_address,
                            event_type=EventType.BRUTE_FORCE_DETECTED,
                            reason=decision.reason,
                            lockout_type=decision.lockout_type,
                            attempt_count=decision.attempt_count,
                        ),
                        role=policy.role,
                    )
                    if lockout is not None:
                        locked_until = lockout.lockout_until

            incidents = await self.get_security_incident_count(user_id, ip_address)
            admin_needed = decision.should_lock and requires_admin_intervention(decision.attempt_count, policy)

            return LockoutStatus(
                is_locked=decision.should_lock,
                lockout_type=decision.lockout_type,
                locked_until=locked_until,
                reason=decision.reason,
                attempt_count=decision.attempt_count,
                max_attempts=policy.max_failed_attempts,
                next_attempt_delay=decision.next_attempt_delay,
                can_unlock=not admin_needed,
                requires_admin_intervention=admin_needed,
                security_incidents=incidents,
            )

        except Exception:
            logger.exception("Lockout status check error")
            await self._safe_rollback()
            return fail_open_status()

    async def _status_from_lockout(
        self,
        lockout: AccountSecurityEvent,
        policy: LockoutPolicy,
        user_id: Optional[str],
        ip_address: Optional[str],
    ) -> LockoutStatus:
        attempt_count = lockout.attempt_count or 0
        admin_needed = requires_admin_intervention(attempt_count, policy)
        return LockoutStatus(
            is_locked=True,
            lockout_type=lockout.lockout_type or infer_lockout_type(lockout.lockout_reason),
            locked_until=lockout.lockout_until,
            reason=lockout.lockout_reason,
            attempt_count=attempt_count,
            max_attempts=policy.max_failed_attempts,
            can_unlock=False,
            requires_admin_intervention=admin_needed,
            security_incidents=await self.get_security_incident_count(user_id, ip_address),
        )

    async def find_active_lockout(
        self,
        user_id: Optional[str],
        ip_address: Optional[str],
    ) -> Optional[AccountSecurityEvent]:
        """
        Newest unresolved, unexpired lock covering this user or IP.

        User locks follow the user; IP, global, admin and suspicious locks
        also block the IP they were recorded for.
        """
        conditions = []
        if user_id:
            conditions.append(AccountSecurityEvent.user_id == user_id)
        if ip_address:
            conditions.append(and_(
                AccountSecurityEvent.ip_address == ip_address,
                or_(
                    AccountSecurityEvent.lockout_type.is_(None),
                    AccountSecurityEvent.lockout_type != LockoutType.USER,
                    AccountSecurityEvent.user_id.is_(None),
                ),
            ))
        if not conditions:
            return None

        result = await self.db.execute(
            select(AccountSecurityEvent)
            .where(AccountSecurityEvent.event_type == EventType.ACCOUNT_LOCKED)
            .where(AccountSecurityEvent.resolved_at.is_(None))
            .where(AccountSecurityEvent.lockout_until > self.clock())
            .where(or_(*conditions))
            .order_by(AccountSecurityEvent.lockout_until.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def count_recent_failed_attempts(
        self,
        user_id: Optional[str],
        ip_address: Optional[str],
        policy: LockoutPolicy,
    ) -> tuple[int, int]:
        """
        Failed logins inside the policy window, per user and per IP.
        Failures before the most recent unlock of the same key are ignored.
        """
        window_start = self.clock() - timedelta(minutes=policy.attempt_window_minutes)

        user_attempts = 0
        if user_id:
            user_attempts = await self._count_failures(AccountSecurityEvent.user_id == user_id, window_start)

        ip_attempts = 0
        if ip_address:
            ip_attempts = await self._count_failures(AccountSecurityEvent.ip_address == ip_address, window_start)

        return user_attempts, ip_attempts

    async def _count_failures(self, key_condition, window_start: datetime) -> int:
        result = await self.db.execute(
            select(func.max(AccountSecurityEvent.created_at))
            .where(key_condition)
            .where(AccountSecurityEvent.event_type == EventType.ACCOUNT_UNLOCKED)
        )
        last_unlock = result.scalar()

        query = (
            select(func.count(AccountSecurityEvent.id))
            .where(key_condition)
            .where(AccountSecurityEvent.event_type == EventType.FAILED_LOGIN)
            .where(AccountSecurityEvent.created_at >= window_start)
        )
        if last_unlock is not None:
            query = query.where(AccountSecurityEvent.created_at > last_unlock)

        result = await self.db.execute(query)
        return result.scalar() or 0

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_failed_attempt(self, event: LockoutEvent, role: Optional[str] = None) -> FailedAttemptResult:
        """
        Record an authentication failure and report the resulting state.

        Writes the event, re-evaluates the lockout (which may lock), computes
        the delay to impose before the next attempt, and escalates any
        suspicious patterns found for this user/IP.
        """
        try:
            role = role or await self.get_user_role(event.user_id)
            policy = get_policy_for_role(role)

            self.db.add(AccountSecurityEvent(
                user_id=event.user_id,
                event_type=event.event_type,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                event_metadata={"reason": event.reason, **event.metadata},
                created_at=self.clock(),
            ))
            await self.db.commit()

            status = await self.check_status(event.user_id, event.ip_address, role)

            if status.is_locked:
                delay_ms = 0
            elif status.next_attempt_delay is not None:
                delay_ms = status.next_attempt_delay
            else:
                delay_ms = policy.base_delay_ms

            alerts = await self.detector.detect(event.user_id, event.ip_address)
            if alerts:
                for alert in alerts:
                    await self.dispatcher.dispatch(alert)
                await self.escalate_security_incident(event, alerts)

            return FailedAttemptResult(locked=status.is_locked, delay_ms=delay_ms, status=status)

        except Exception:
            logger.exception("Failed attempt recording error")
            await self._safe_rollback()
            return FailedAttemptResult(
                locked=False,
                delay_ms=get_policy_for_role(DEFAULT_ROLE).base_delay_ms,
                status=fail_open_status(),
            )

    async def record_password_reset_miss(
        self,
        ip_address: str,
        user_agent: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> None:
        """Record a password reset requested for an account that does not exist."""
        try:
            self.db.add(AccountSecurityEvent(
                event_type=EventType.PASSWORD_RESET_NONEXISTENT_USER,
                ip_address=ip_address,
                user_agent=user_agent,
                event_metadata={"identifier": identifier} if identifier else {},
                created_at=self.clock(),
            ))
            await self.db.commit()
        except Exception:
            logger.exception("Failed to record password reset miss")
            await self._safe_rollback()

    # ------------------------------------------------------------------
    # Lock / unlock
    # ------------------------------------------------------------------

    async def apply_lockout(self, event: LockoutEvent, role: Optional[str] = None) -> Optional[AccountSecurityEvent]:
        """
        Lock a user and/or IP until now + the policy's auto-unlock duration.

        Re-applying while an unexpired lock exists returns the existing lock.
        Incident creation and notifications are best-effort and never undo
        the lock. Returns None if the lock could not be written.
        """
        try:
            role = role or await self.get_user_role(event.user_id)
            policy = get_policy_for_role(role)

            existing = await self.find_active_lockout(event.user_id, event.ip_address)
            if existing:
                return existing

            now = self.clock()
            lockout_until = now + timedelta(minutes=policy.auto_unlock_after_minutes)
            lockout_type = event.lockout_type or (
                LockoutType.ADMIN if event.event_type == EventType.MANUAL_LOCK else LockoutType.USER
            )

            lockout = AccountSecurityEvent(
                user_id=event.user_id,
                event_type=EventType.ACCOUNT_LOCKED,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                lockout_until=lockout_until,
                lockout_reason=event.reason,
                lockout_type=lockout_type,
                attempt_count=event.attempt_count,
                risk_score=self.LOCKOUT_RISK_SCORE,
                event_metadata={
                    "policy_used": policy.role,
                    "trigger_event": event.event_type,
                    "auto_unlock_minutes": policy.auto_unlock_after_minutes,
                    "requires_admin_unlock": policy.require_admin_unlock,
                    **event.metadata,
                },
                created_at=now,
            )
            self.db.add(lockout)
            await self.db.commit()
        except Exception:
            logger.exception("Lockout application error")
            await self._safe_rollback()
            return None

        logger.warning(
            f"Lockout applied: user={event.user_id} ip={event.ip_address} "
            f"type={lockout_type} until={lockout_until.isoformat()}"
        )

        await self._create_security_incident(event, AlertSeverity.HIGH)

        if event.user_id:
            await self._notify(self.notifier.notify_user_lockout(event.user_id, lockout_until, event.reason))

        if policy.role == "admin":
            await self._notify(self.notifier.send_lockout_notification(
                event.user_id, event.ip_address, event.reason, policy.role
            ))

        return lockout

    async def unlock_account(self, request: UnlockRequest) -> UnlockResult:
        """
        Clear matching locks and write an account_unlocked event.

        Validation failures return ``UnlockResult(success=False)`` without
        touching the database. When both user and IP are given, only locks
        for that user (on that IP or with no IP) and IP-only locks for that IP
        are cleared; locks of other users sharing the IP are left alone.
        """
        error = self._validate_unlock(request)
        if error:
            return UnlockResult(success=False, error=error)

        try:
            now = self.clock()
            match = self._unlock_filter(request.user_id, request.ip_address)

            if request.method == UnlockMethod.TIME_BASED:
                result = await self.db.execute(
                    select(func.count(AccountSecurityEvent.id))
                    .where(AccountSecurityEvent.event_type == EventType.ACCOUNT_LOCKED)
                    .where(AccountSecurityEvent.resolved_at.is_(None))
                    .where(AccountSecurityEvent.lockout_until > now)
                    .where(match)
                )
                if result.scalar():
                    return UnlockResult(success=False, error="Lockout has not expired yet")

            if request.method == UnlockMethod.VERIFICATION:
                token_error = await self._redeem_unlock_token(request.verification_token, request.user_id)
                if token_error:
                    return UnlockResult(success=False, error=token_error)

            result = await self.db.execute(
                select(AccountSecurityEvent.id, AccountSecurityEvent.user_id, AccountSecurityEvent.ip_address)
                .where(AccountSecurityEvent.event_type == EventType.ACCOUNT_LOCKED)
                .where(AccountSecurityEvent.lockout_until.is_not(None))
                .where(AccountSecurityEvent.resolved_at.is_(None))
                .where(match)
            )
            cleared = result.all()
            unlocked = len(cleared)

            if cleared:
                await self.db.execute(
                    update(AccountSecurityEvent)
                    .where(AccountSecurityEvent.id.in_([row.id for row in cleared]))
                    .values(
                        lockout_until=None,
                        resolved_at=now,
                        resolved_by=request.admin_user_id,
                        resolution_notes=request.reason,
                    )
                    .execution_options(synchronize_session=False)
                )

            # One marker per key pair of the cleared locks, so failures counted
            # under either key stop counting after the unlock
            subjects = {(row.user_id, row.ip_address) for row in cleared}
            if not subjects:
                subjects = {(request.user_id, request.ip_address)}

            for user_id, ip_address in subjects:
                self.db.add(AccountSecurityEvent(
                    user_id=user_id,
                    event_type=EventType.ACCOUNT_UNLOCKED,
                    ip_address=ip_address,
                    event_metadata={
                        "unlock_method": request.method,
                        "admin_user_id": request.admin_user_id,
                        "reason": request.reason,
                        "locks_cleared": unlocked,
                    },
                    created_at=now,
                ))
            await self.db.commit()

        except Exception:
            logger.exception("Account unlock error")
            await self._safe_rollback()
            return UnlockResult(success=False, error="Unlock operation failed")

        logger.info(f"Unlocked user={request.user_id} ip={request.ip_address} via {request.method} ({unlocked} locks)")

        if request.user_id and request.method == UnlockMethod.ADMIN:
            await self._notify(self.notifier.notify_user_unlock(request.user_id, request.method))

        return UnlockResult(success=True, unlocked=unlocked)

    def _validate_unlock(self, request: UnlockRequest) -> Optional[str]:
        if request.method not in UnlockMethod.ALL:
            return f"Unknown unlock method: {request.method}"
        if not request.user_id and not request.ip_address:
            return "User ID or IP address required"
        if request.method == UnlockMethod.ADMIN and not request.admin_user_id:
            return "Admin user ID required for admin unlock"
        if request.method == UnlockMethod.VERIFICATION:
            if not request.verification_token:
                return "Verification token required"
            if not request.user_id:
                return "User ID required for verification unlock"
        return None

    def _unlock_filter(self, user_id: Optional[str], ip_address: Optional[str]):
        if user_id and ip_address:
            return or_(
                and_(
                    AccountSecurityEvent.user_id == user_id,
                    or_(AccountSecurityEvent.ip_address == ip_address, AccountSecurityEvent.ip_address.is_(None)),
                ),
                and_(AccountSecurityEvent.user_id.is_(None), AccountSecurityEvent.ip_address == ip_address),
            )
        if user_id:
            return AccountSecurityEvent.user_id == user_id
        return AccountSecurityEvent.ip_address == ip_address

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    async def issue_unlock_token(self, user_id: str) -> str:
        """Issue a signed, single-use unlock token for a user."""
        expires_at = self.clock() + timedelta(minutes=settings.unlock_token_expire_minutes)
        token, jti = create_unlock_token(user_id, expires_at)

        self.db.add(UnlockToken(jti=jti, user_id=user_id, expires_at=expires_at, created_at=self.clock()))
        await self.db.commit()
        return token

    async def _redeem_unlock_token(self, token: str, user_id: str) -> Optional[str]:
        """Mark a token used. Returns an error message if it cannot be redeemed."""
        payload = decode_unlock_token(token)
        if payload is None or payload["sub"] != user_id:
            return "Invalid or expired verification token"

        result = await self.db.execute(
            select(UnlockToken).where(UnlockToken.jti == payload["jti"])
        )
        record = result.scalar_one_or_none()

        if record is None or record.user_id != user_id:
            return "Invalid or expired verification token"
        if record.used_at is not None:
            return "Verification token already used"
        if record.expires_at <= self.clock():
            return "Invalid or expired verification token"

        record.used_at = self.clock()
        return None

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    async def escalate_security_incident(self, event: LockoutEvent, alerts: list[SecurityAlert]) -> None:
        """File a high-severity incident for detected patterns and notify the team."""
        patterns = [alert.type for alert in alerts]
        try:
            self.db.add(SecurityIncident(
                incident_type="brute_force",
                severity=AlertSeverity.HIGH,
                user_id=event.user_id,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                description=f"Suspicious authentication activity detected: {', '.join(patterns)}",
                evidence={
                    "event_type": event.event_type,
                    "patterns": patterns,
                    "reason": event.reason,
                    "metadata": event.metadata,
                },
                automated_response="Account lockout applied",
                admin_notified=True,
                created_at=self.clock(),
            ))
            await self.db.commit()
        except Exception:
            logger.exception("Security incident escalation error")
            await self._safe_rollback()
            return

        await self._notify(self.notifier.send_incident_notification(event.user_id, event.ip_address, patterns))

    async def _create_security_incident(self, event: LockoutEvent, severity: str) -> None:
        try:
            self.db.add(SecurityIncident(
                incident_type=(
                    "admin_intervention_required" if event.event_type == EventType.MANUAL_LOCK else "brute_force"
                ),
                severity=severity,
                user_id=event.user_id,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                description=f"Account lockout triggered: {event.reason}",
                evidence={
                    "event_type": event.event_type,
                    "reason": event.reason,
                    "metadata": event.metadata,
                },
                automated_response="Account lockout applied",
                created_at=self.clock(),
            ))
            await self.db.commit()
        except Exception:
            logger.exception("Security incident creation error")
            await self._safe_rollback()

    async def get_security_incident_count(self, user_id: Optional[str], ip_address: Optional[str]) -> int:
        """Open incidents in the last 24 hours for the user (or the IP if no user)."""
        try:
            since = self.clock() - timedelta(hours=self.INCIDENT_LOOKBACK_HOURS)
            query = (
                select(func.count(SecurityIncident.id))
                .where(SecurityIncident.status == "open")
                .where(SecurityIncident.created_at >= since)
            )
            if user_id:
                query = query.where(SecurityIncident.user_id == user_id)
            elif ip_address:
                query = query.where(SecurityIncident.ip_address == ip_address)

            result = await self.db.execute(query)
            return result.scalar() or 0
        except Exception:
            logger.exception("Security incident count error")
            return 0

    async def resolve_incident(
        self,
        incident_id: int,
        resolved_by: str,
        notes: Optional[str] = None,
        status: str = "resolved",
    ) -> Optional[SecurityIncident]:
        """Annotate an incident with a reviewer's resolution."""
        result = await self.db.execute(
            select(SecurityIncident).where(SecurityIncident.id == incident_id)
        )
        incident = result.scalar_one_or_none()
        if incident is None:
            return None

        incident.status = status
        incident.resolved_by = resolved_by
        incident.resolution_notes = notes
        if status == "resolved":
            incident.resolved_at = self.clock()

        await self.db.commit()
        return incident

    async def get_incidents(
        self,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SecurityIncident]:
        query = select(SecurityIncident).order_by(SecurityIncident.created_at.desc())
        if status:
            query = query.where(SecurityIncident.status == status)
        query = query.limit(limit).offset(offset)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def get_user_role(self, user_id: Optional[str]) -> str:
        """Primary role of a user; 'user' when unknown or on lookup failure."""
        if not user_id:
            return DEFAULT_ROLE

        try:
            result = await self.db.execute(
                select(UserRole.role)
                .where(UserRole.user_id == user_id)
                .where(UserRole.is_primary == True)
                .limit(1)
            )
            return result.scalar_one_or_none() or DEFAULT_ROLE
        except Exception:
            logger.exception("User role lookup error")
            await self._safe_rollback()
            return DEFAULT_ROLE

    async def _notify(self, coro) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Lockout notification error")

    async def _safe_rollback(self) -> None:
        try:
            await self.db.rollback()
        except Exception:
            logger.exception("Rollback failed")
