"""
Role-based lockout policies and the pure lockout decision logic.

Nothing in this module touches the database: the service layer counts
failed attempts, hands the counts to ``evaluate_attempts`` and decides
whether to apply the resulting lock.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional


class LockoutType:
    """Why an account or IP is locked."""
    USER = "user"
    IP = "ip"
    GLOBAL = "global"
    ADMIN = "admin"
    SUSPICIOUS = "suspicious"

    ALL = (USER, IP, GLOBAL, ADMIN, SUSPICIOUS)


class EventType:
    """Event types written to account_security_events."""
    FAILED_LOGIN = "failed_login"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    BRUTE_FORCE_DETECTED = "brute_force_detected"
    MANUAL_LOCK = "manual_lock"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    PASSWORD_RESET_NONEXISTENT_USER = "password_reset_nonexistent_user"


@dataclass(frozen=True)
class LockoutPolicy:
    max_failed_attempts: int
    max_ip_attempts: int
    max_global_attempts: int
    attempt_window_minutes: int
    base_delay_ms: int
    max_delay_ms: int
    use_progressive_delay: bool
    exponential_factor: float
    auto_unlock_after_minutes: int
    require_admin_unlock: bool
    role: str = "user"


POLICIES: dict[str, LockoutPolicy] = {
    "user": LockoutPolicy(
        max_failed_attempts=5,
        max_ip_attempts=15,
        max_global_attempts=100,
        attempt_window_minutes=15,
        base_delay_ms=1000,  # 1 second
        max_delay_ms=300000,  # 5 minutes
        use_progressive_delay=True,
        exponential_factor=2,
        auto_unlock_after_minutes=30,
        require_admin_unlock=False,
        role="user",
    ),
    "business_owner": LockoutPolicy(
        max_failed_attempts=3,
        max_ip_attempts=10,
        max_global_attempts=50,
        attempt_window_minutes=15,
        base_delay_ms=2000,  # 2 seconds
        max_delay_ms=600000,  # 10 minutes
        use_progressive_delay=True,
        exponential_factor=2.5,
        auto_unlock_after_minutes=60,
        require_admin_unlock=False,
        role="business_owner",
    ),
    "admin": LockoutPolicy(
        max_failed_attempts=3,
        max_ip_attempts=5,
        max_global_attempts=20,
        attempt_window_minutes=10,
        base_delay_ms=5000,  # 5 seconds
        max_delay_ms=1800000,  # 30 minutes
        use_progressive_delay=True,
        exponential_factor=3,
        auto_unlock_after_minutes=120,
        require_admin_unlock=True,
        role="admin",
    ),
}

DEFAULT_ROLE = "user"

# Attempt count above which any lock needs an administrator
ADMIN_INTERVENTION_ATTEMPTS = 10


def get_policy_for_role(role: Optional[str]) -> LockoutPolicy:
    """Policy for a role; unknown roles fall back to the user policy."""
    return POLICIES.get(role or DEFAULT_ROLE, POLICIES[DEFAULT_ROLE])


def calculate_progressive_delay(attempt_count: int, policy: LockoutPolicy) -> int:
    """
    Delay in milliseconds to impose before the next attempt.

    base * factor ** (n - 1), capped at max_delay_ms. Flat base delay when
    progressive delay is disabled.
    """
    if not policy.use_progressive_delay:
        return policy.base_delay_ms

    exponent = max(attempt_count, 1) - 1
    try:
        delay = policy.base_delay_ms * policy.exponential_factor ** exponent
    except OverflowError:
        return policy.max_delay_ms

    return int(min(delay, policy.max_delay_ms))


def requires_admin_intervention(attempt_count: int, policy: LockoutPolicy) -> bool:
    return policy.require_admin_unlock or attempt_count > ADMIN_INTERVENTION_ATTEMPTS


def infer_lockout_type(reason: Optional[str]) -> str:
    """Lock type for rows written before lockout_type was stored explicitly."""
    reason = reason or ""
    if "admin" in reason:
        return LockoutType.ADMIN
    if "suspicious" in reason:
        return LockoutType.SUSPICIOUS
    if "IP" in reason:
        return LockoutType.IP
    if "global" in reason:
        return LockoutType.GLOBAL
    return LockoutType.USER


@dataclass
class LockoutDecision:
    """Outcome of evaluating attempt counts against a policy."""
    should_lock: bool
    attempt_count: int
    user_attempts: int
    ip_attempts: int
    lockout_type: Optional[str] = None
    next_attempt_delay: Optional[int] = None
    reason: Optional[str] = None


def evaluate_attempts(user_attempts: int, ip_attempts: int, policy: LockoutPolicy) -> LockoutDecision:
    """Decide whether the given failure counts cross the policy thresholds."""
    attempt_count = max(user_attempts, ip_attempts)
    user_exceeded = user_attempts >= policy.max_failed_attempts
    ip_exceeded = ip_attempts >= policy.max_ip_attempts

    delay = calculate_progressive_delay(attempt_count, policy) if attempt_count > 0 else None

    if not (user_exceeded or ip_exceeded):
        return LockoutDecision(
            should_lock=False,
            attempt_count=attempt_count,
            user_attempts=user_attempts,
            ip_attempts=ip_attempts,
            next_attempt_delay=delay,
        )

    if user_exceeded:
        lockout_type = LockoutType.USER
        reason = f"Too many failed attempts: {attempt_count}"
    else:
        lockout_type = LockoutType.IP
        reason = f"Too many failed attempts from IP: {attempt_count}"

    return LockoutDecision(
        should_lock=True,
        attempt_count=attempt_count,
        user_attempts=user_attempts,
        ip_attempts=ip_attempts,
        lockout_type=lockout_type,
        next_attempt_delay=delay,
        reason=reason,
    )


@dataclass
class LockoutStatus:
    """Derived view of the current lockout state; never stored."""
    is_locked: bool
    attempt_count: int
    max_attempts: int
    can_unlock: bool
    requires_admin_intervention: bool
    security_incidents: int = 0
    lockout_type: Optional[str] = None
    locked_until: Optional[datetime] = None
    reason: Optional[str] = None
    next_attempt_delay: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.locked_until is not None:
            data["locked_until"] = self.locked_until.isoformat()
        return data


def fail_open_status() -> LockoutStatus:
    """Status reported when the security store cannot be read."""
    return LockoutStatus(
        is_locked=False,
        attempt_count=0,
        max_attempts=POLICIES[DEFAULT_ROLE].max_failed_attempts,
        can_unlock=True,
        requires_admin_intervention=False,
        security_incidents=0,
    )


@dataclass
class LockoutEvent:
    """Input describing an authentication failure or lock request."""
    ip_address: Optional[str]
    reason: str
    event_type: str = EventType.FAILED_LOGIN
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    lockout_type: Optional[str] = None
    attempt_count: Optional[int] = None


class UnlockMethod:
    AUTOMATIC = "automatic"
    ADMIN = "admin"
    TIME_BASED = "time_based"
    VERIFICATION = "verification"

    ALL = (AUTOMATIC, ADMIN, TIME_BASED, VERIFICATION)


@dataclass
class UnlockRequest:
    method: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    admin_user_id: Optional[str] = None
    verification_token: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class UnlockResult:
    success: bool
    error: Optional[str] = None
    unlocked: int = 0


@dataclass
class FailedAttemptResult:
    locked: bool
    delay_ms: int
    status: LockoutStatus
