from lockguard.services.lockout_service import AccountLockoutService
from lockguard.services.session_monitoring import SessionMonitoringService
from lockguard.services.suspicious_activity import SuspiciousActivityDetector

__all__ = [
    "AccountLockoutService",
    "SessionMonitoringService",
    "SuspiciousActivityDetector",
]
