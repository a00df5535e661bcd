"""
Attack pattern detection over the authentication event log.
"""
from datetime import timedelta
from unittest.mock import AsyncMock

from lockguard.models.security import AccountSecurityEvent
from lockguard.services.lockout_policy import EventType
from lockguard.services.suspicious_activity import PatternType, SuspiciousActivityDetector


async def add_events(db, clock, count, event_type=EventType.FAILED_LOGIN, user_id=None,
                     ip_address=None, ip_prefix=None, age=timedelta(0)):
    for i in range(count):
        db.add(AccountSecurityEvent(
            user_id=user_id,
            event_type=event_type,
            ip_address=f"{ip_prefix}{i}" if ip_prefix else ip_address,
            created_at=clock() - age,
        ))
    await db.commit()


async def test_failures_from_six_ips_raise_multiple_ip_alert(db_session, clock):
    await add_events(db_session, clock, 6, user_id="alice", ip_prefix="198.51.100.")
    detector = SuspiciousActivityDetector(db_session, clock=clock)

    alerts = await detector.detect(user_id="alice")

    assert len(alerts) == 1
    assert alerts[0].type == PatternType.MULTIPLE_IP_ATTACK
    assert alerts[0].severity == "high"
    assert alerts[0].details["unique_ips"] == 6
    assert alerts[0].affected_users == ["alice"]


async def test_failures_from_four_ips_are_not_suspicious(db_session, clock):
    await add_events(db_session, clock, 4, user_id="alice", ip_prefix="198.51.100.")
    detector = SuspiciousActivityDetector(db_session, clock=clock)

    assert await detector.detect(user_id="alice") == []


async def test_events_outside_window_are_ignored(db_session, clock):
    await add_events(db_session, clock, 8, user_id="alice", ip_prefix="198.51.100.", age=timedelta(hours=2))
    detector = SuspiciousActivityDetector(db_session, clock=clock)

    assert await detector.detect_multiple_ip_attack("alice") is None


async def test_high_frequency_threshold(db_session, clock):
    detector = SuspiciousActivityDetector(db_session, clock=clock)

    await add_events(db_session, clock, 10, user_id="bob", ip_address="203.0.113.7")
    assert await detector.detect_high_frequency_attack("203.0.113.7") is None

    await add_events(db_session, clock, 1, user_id="bob", ip_address="203.0.113.7")
    alert = await detector.detect_high_frequency_attack("203.0.113.7")
    assert alert is not None
    assert alert.details["attempt_count"] == 11


async def test_user_enumeration_is_medium_severity(db_session, clock):
    await add_events(
        db_session, clock, 6,
        event_type=EventType.PASSWORD_RESET_NONEXISTENT_USER,
        ip_address="192.0.2.44",
    )
    detector = SuspiciousActivityDetector(db_session, clock=clock)

    alerts = await detector.detect(ip_address="192.0.2.44")

    assert [a.type for a in alerts] == [PatternType.USER_ENUMERATION_ATTACK]
    assert alerts[0].severity == "medium"


async def test_scan_recent_covers_all_users_and_ips(db_session, clock):
    await add_events(db_session, clock, 6, user_id="alice", ip_prefix="198.51.100.")
    await add_events(db_session, clock, 11, user_id="bob", ip_address="203.0.113.7")
    await add_events(
        db_session, clock, 6,
        event_type=EventType.PASSWORD_RESET_NONEXISTENT_USER,
        ip_address="192.0.2.44",
    )
    detector = SuspiciousActivityDetector(db_session, clock=clock)

    alerts = await detector.scan_recent()

    assert sorted(a.type for a in alerts) == sorted([
        PatternType.MULTIPLE_IP_ATTACK,
        PatternType.HIGH_FREQUENCY_ATTACK,
        PatternType.USER_ENUMERATION_ATTACK,
    ])


async def test_detection_error_returns_empty_list(clock):
    db = AsyncMock()
    db.execute.side_effect = RuntimeError("database is locked")
    detector = SuspiciousActivityDetector(db, clock=clock)

    assert await detector.detect(user_id="alice", ip_address="203.0.113.7") == []
