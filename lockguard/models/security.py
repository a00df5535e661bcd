"""
Security models for account lockout, incidents and alerts
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON

from lockguard.database import Base
from lockguard.utils.helpers import utcnow


class AccountSecurityEvent(Base):
    """Append-only authentication event log (failed logins, lockouts, unlocks)"""
    __tablename__ = "account_security_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    event_type = Column(String(50), index=True)  # failed_login, account_locked, account_unlocked, etc.
    ip_address = Column(String(45), nullable=True, index=True)  # IPv4 or IPv6
    user_agent = Column(Text, nullable=True)
    lockout_until = Column(DateTime, nullable=True)  # set only on account_locked rows
    lockout_reason = Column(String(255), nullable=True)
    lockout_type = Column(String(20), nullable=True)  # user, ip, global, admin, suspicious
    attempt_count = Column(Integer, nullable=True)
    risk_score = Column(Integer, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(64), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class SecurityIncident(Base):
    """Human-reviewable escalation record"""
    __tablename__ = "security_incidents"

    id = Column(Integer, primary_key=True, index=True)
    incident_type = Column(String(50), index=True)  # brute_force, admin_intervention_required
    severity = Column(String(10))  # low, medium, high, critical
    status = Column(String(20), default="open", index=True)  # open, investigating, resolved
    user_id = Column(String(64), nullable=True, index=True)
    ip_address = Column(String(45), nullable=True, index=True)
    user_agent = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    evidence = Column(JSON, nullable=True)
    automated_response = Column(String(255), nullable=True)
    admin_notified = Column(Boolean, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(64), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class SecurityEvent(Base):
    """Security alert log written by the detectors"""
    __tablename__ = "security_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(50), index=True)  # multiple_ip_attack, geographic_anomaly, etc.
    severity = Column(String(10))
    user_id = Column(String(64), nullable=True)
    description = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class SystemEvent(Base):
    """Background job audit log"""
    __tablename__ = "system_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(50), index=True)
    event_category = Column(String(50))
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class BlockedIP(Base):
    """Blocked IPs after repeated failed logins"""
    __tablename__ = "blocked_ips"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), index=True)
    reason = Column(String(255))  # "multiple_failed_logins"
    failed_attempts = Column(Integer, default=0)
    blocked_at = Column(DateTime, default=utcnow)
    blocked_until = Column(DateTime, nullable=True)  # null = permanent
    is_permanent = Column(Boolean, default=False)
    unblocked_at = Column(DateTime, nullable=True)
    unblocked_by = Column(String(100), nullable=True)  # admin username
    is_active = Column(Boolean, default=True)  # false = unblocked
    notes = Column(Text, nullable=True)


class UnlockToken(Base):
    """Issued verification-unlock tokens, tracked for single use"""
    __tablename__ = "unlock_tokens"

    id = Column(Integer, primary_key=True, index=True)
    jti = Column(String(64), unique=True, index=True)
    user_id = Column(String(64), index=True)
    expires_at = Column(DateTime)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
