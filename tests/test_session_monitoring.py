"""
Session monitoring sweeps, detectors and scheduler lifecycle.
"""
import logging
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select, func

from lockguard.models.security import AccountSecurityEvent, BlockedIP, SecurityEvent, SystemEvent
from lockguard.models.session import UserSession
from lockguard.services.alerting import AlertDispatcher, AlertSeverity
from lockguard.services.lockout_policy import EventType
from lockguard.services.session_monitoring import (
    MonitoringConfig,
    SessionMonitoringService,
    aggregate_by_device,
    aggregate_by_location,
    find_geographic_anomalies,
)

NEW_YORK = {"country": "US", "city": "New York", "latitude": 40.7128, "longitude": -74.0060}
CHICAGO = {"country": "US", "city": "Chicago", "latitude": 41.8781, "longitude": -87.6298}
NEWARK = {"country": "US", "city": "Newark", "latitude": 40.7357, "longitude": -74.1724}
BERLIN = {"country": "DE", "city": "Berlin", "latitude": 52.52, "longitude": 13.405}


class FakeScheduler:
    def __init__(self):
        self.jobs = {}
        self.started = False
        self.shut_down = False

    def add_job(self, func, trigger=None, args=None, id=None, name=None, replace_existing=False):
        self.jobs[id] = SimpleNamespace(id=id, name=name, func=func, args=args, trigger=trigger, next_run_time=None)

    def start(self):
        self.started = True

    def get_jobs(self):
        return list(self.jobs.values())

    def remove_all_jobs(self):
        self.jobs.clear()

    def shutdown(self, wait=True):
        self.shut_down = True


@pytest.fixture
def schedulers():
    return []


@pytest.fixture
def monitoring(session_factory, clock, schedulers):
    def scheduler_factory():
        scheduler = FakeScheduler()
        schedulers.append(scheduler)
        return scheduler

    return SessionMonitoringService(
        session_factory,
        config=MonitoringConfig(max_concurrent_sessions=2),
        scheduler_factory=scheduler_factory,
        dispatcher_factory=lambda db: AlertDispatcher(db, webhook_url=None, clock=clock),
        clock=clock,
    )


def make_session(clock, user_id="user-1", **kwargs):
    now = clock()
    values = dict(
        user_id=user_id,
        created_at=now,
        last_activity=now,
        expires_at=now + timedelta(hours=8),
        is_active=True,
    )
    values.update(kwargs)
    return UserSession(**values)


async def add_all(session_factory, rows):
    async with session_factory() as db:
        db.add_all(rows)
        await db.commit()


async def scalar(session_factory, query):
    async with session_factory() as db:
        return (await db.execute(query)).scalar()


# ----------------------------------------------------------------------
# Geographic anomalies
# ----------------------------------------------------------------------

def test_distant_sessions_close_in_time_raise_one_alert(clock):
    sessions = [
        make_session(clock, id="s1", location=NEW_YORK, created_at=clock() - timedelta(minutes=30)),
        make_session(clock, id="s2", location=CHICAGO),
    ]

    alerts = find_geographic_anomalies(sessions, clock=clock)

    assert len(alerts) == 1
    assert alerts[0].severity == AlertSeverity.HIGH
    assert alerts[0].type == "geographic_anomaly"
    assert alerts[0].details["distance_km"] > 1000
    assert alerts[0].details["time_minutes"] == 30


def test_nearby_sessions_do_not_alert(clock):
    sessions = [
        make_session(clock, id="s1", location=NEW_YORK, created_at=clock() - timedelta(minutes=30)),
        make_session(clock, id="s2", location=NEWARK),
    ]

    assert find_geographic_anomalies(sessions, clock=clock) == []


def test_distant_sessions_far_apart_in_time_do_not_alert(clock):
    sessions = [
        make_session(clock, id="s1", location=NEW_YORK, created_at=clock() - timedelta(hours=3)),
        make_session(clock, id="s2", location=CHICAGO),
    ]

    assert find_geographic_anomalies(sessions, clock=clock) == []


def test_sessions_without_coordinates_are_ignored(clock):
    sessions = [
        make_session(clock, id="s1", location={"country": "US"}, created_at=clock() - timedelta(minutes=5)),
        make_session(clock, id="s2", location=BERLIN),
        make_session(clock, id="s3", location=None),
    ]

    assert find_geographic_anomalies(sessions, clock=clock) == []


async def test_geographic_scan_reports_each_pair_once(monitoring, session_factory, clock):
    await add_all(session_factory, [
        make_session(clock, id="s1", location=NEW_YORK, created_at=clock() - timedelta(minutes=30)),
        make_session(clock, id="s2", location=CHICAGO),
    ])

    first = await monitoring.perform_security_scan()
    second = await monitoring.perform_security_scan()

    assert first.security_events_detected == 1
    assert second.security_events_detected == 0
    assert await scalar(
        session_factory,
        select(func.count(SecurityEvent.id)).where(SecurityEvent.event_type == "geographic_anomaly"),
    ) == 1


# ----------------------------------------------------------------------
# Cleanup sweeps
# ----------------------------------------------------------------------

async def test_cleanup_expired_sessions_is_idempotent(monitoring, session_factory, clock):
    await add_all(session_factory, [
        make_session(clock, id="expired", expires_at=clock() - timedelta(minutes=1)),
        make_session(clock, id="valid"),
    ])

    first = await monitoring.cleanup_expired_sessions()
    second = await monitoring.cleanup_expired_sessions()

    assert first.sessions_revoked == 1
    assert second.sessions_revoked == 0
    assert first.errors == []

    async with session_factory() as db:
        expired = await db.get(UserSession, "expired")
        valid = await db.get(UserSession, "valid")
    assert expired.is_active is False
    assert expired.revoke_reason == "expired"
    assert valid.is_active is True

    assert await scalar(
        session_factory,
        select(func.count(SystemEvent.id)).where(SystemEvent.event_type == "expired_sessions_cleanup"),
    ) == 1


async def test_cleanup_inactive_sessions(monitoring, session_factory, clock):
    await add_all(session_factory, [
        make_session(clock, id="idle", last_activity=clock() - timedelta(hours=25)),
        make_session(clock, id="busy", last_activity=clock() - timedelta(hours=1)),
    ])

    result = await monitoring.cleanup_inactive_sessions()

    assert result.sessions_revoked == 1
    async with session_factory() as db:
        idle = await db.get(UserSession, "idle")
    assert idle.revoke_reason == "inactive"


# ----------------------------------------------------------------------
# Security scan
# ----------------------------------------------------------------------

async def test_concurrent_session_abuse(monitoring, session_factory, clock):
    # max_concurrent_sessions=2: alert above 4, revoke above 6
    await add_all(session_factory, [make_session(clock, user_id="heavy") for _ in range(7)])
    await add_all(session_factory, [make_session(clock, user_id="busy") for _ in range(5)])
    await add_all(session_factory, [make_session(clock, user_id="normal") for _ in range(2)])

    result = await monitoring.perform_security_scan()

    assert result.errors == []
    assert result.security_events_detected == 2
    assert result.sessions_revoked == 7

    assert await scalar(
        session_factory,
        select(func.count(UserSession.id))
        .where(UserSession.user_id == "heavy")
        .where(UserSession.is_active == True),
    ) == 0
    assert await scalar(
        session_factory,
        select(func.count(UserSession.id))
        .where(UserSession.user_id == "busy")
        .where(UserSession.is_active == True),
    ) == 5


async def test_many_sessions_from_one_ip(monitoring, session_factory, clock):
    monitoring.config.max_concurrent_sessions = 100
    await add_all(session_factory, [
        make_session(clock, user_id=f"user-{i}", ip_address="192.0.2.50") for i in range(11)
    ])

    result = await monitoring.perform_security_scan()

    assert result.security_events_detected == 1
    assert await scalar(
        session_factory,
        select(SecurityEvent.severity).where(SecurityEvent.event_type == "suspicious_ip_activity"),
    ) == "medium"


async def test_failed_login_burst_blocks_ip_once(monitoring, session_factory, clock):
    await add_all(session_factory, [
        AccountSecurityEvent(
            user_id=f"user-{i}", event_type=EventType.FAILED_LOGIN,
            ip_address="203.0.113.77", created_at=clock() - timedelta(minutes=5),
        )
        for i in range(5)
    ])

    first = await monitoring.perform_security_scan()
    await monitoring.perform_security_scan()

    assert first.security_events_detected == 1
    async with session_factory() as db:
        blocks = (await db.execute(select(BlockedIP))).scalars().all()

    assert len(blocks) == 1
    assert blocks[0].ip_address == "203.0.113.77"
    assert blocks[0].blocked_until == clock() + timedelta(minutes=60)
    assert blocks[0].is_permanent is False


async def test_one_failing_detector_does_not_stop_the_scan(monitoring, session_factory, clock):
    async def broken(db, result):
        raise RuntimeError("detector exploded")

    monitoring._detect_suspicious_ip_activity = broken
    await add_all(session_factory, [make_session(clock, user_id="heavy") for _ in range(7)])

    result = await monitoring.perform_security_scan()

    assert len(result.errors) == 1
    assert "suspicious_ip_activity" in result.errors[0]
    assert result.sessions_revoked == 7


# ----------------------------------------------------------------------
# Analytics and retention
# ----------------------------------------------------------------------

def test_aggregations_sorted_by_count(clock):
    sessions = [
        make_session(clock, location=BERLIN, user_agent="Mozilla/5.0 (X11; Linux) Firefox/120.0"),
        make_session(clock, location=NEW_YORK, user_agent="Mozilla/5.0 (iPhone) Mobile/15E148"),
        make_session(clock, location=CHICAGO, user_agent="Mozilla/5.0 (iPhone) Mobile/15E148"),
        make_session(clock, location=None, user_agent=None),
    ]

    assert aggregate_by_location(sessions) == [
        {"country": "US", "count": 2},
        {"country": "DE", "count": 1},
        {"country": "Unknown", "count": 1},
    ]
    assert aggregate_by_device(sessions)[0] == {"device": "Mobile", "count": 2}


async def test_session_analytics(monitoring, session_factory, clock):
    await add_all(session_factory, [
        make_session(clock, user_id="a", location=NEW_YORK, created_at=clock() - timedelta(minutes=60)),
        make_session(clock, user_id="a", location=CHICAGO, created_at=clock() - timedelta(minutes=20)),
        make_session(clock, user_id="b", location=BERLIN, created_at=clock() - timedelta(minutes=10)),
        make_session(clock, user_id="c", is_active=False),
    ])
    await add_all(session_factory, [SecurityEvent(
        event_type="suspicious_ip_activity", severity="medium", description="test", details={},
        created_at=clock() - timedelta(hours=1),
    )])

    analytics = await monitoring.get_session_analytics()

    assert analytics.total_active_sessions == 3
    assert analytics.unique_users == 2
    assert analytics.average_session_duration == 30
    assert analytics.top_countries[0] == {"country": "US", "count": 2}
    assert [a.type for a in analytics.suspicious_activity] == ["suspicious_ip_activity"]


async def test_purge_old_records(monitoring, session_factory, clock):
    await add_all(session_factory, [
        SystemEvent(event_type="old", event_category="session_management", created_at=clock() - timedelta(days=91)),
        SystemEvent(event_type="recent", event_category="session_management", created_at=clock() - timedelta(days=1)),
        make_session(clock, id="gone", is_active=False, revoked_at=clock() - timedelta(days=31)),
        make_session(clock, id="kept", is_active=False, revoked_at=clock() - timedelta(days=2)),
    ])

    result = await monitoring.purge_old_records()

    assert result["errors"] == []
    assert result["deleted"]["system_events"] == 1
    assert result["deleted"]["user_sessions"] == 1
    async with session_factory() as db:
        assert await db.get(UserSession, "gone") is None
        assert await db.get(UserSession, "kept") is not None


async def test_purge_continues_past_a_failing_table(clock):
    db = AsyncMock()
    db.add = MagicMock()
    db.execute.side_effect = [
        MagicMock(rowcount=2),
        MagicMock(rowcount=3),
        RuntimeError("database is locked"),
        MagicMock(rowcount=1),
    ]
    session_factory = MagicMock()
    session_factory.return_value.__aenter__.return_value = db
    service = SessionMonitoringService(session_factory, config=MonitoringConfig(), clock=clock)

    result = await service.purge_old_records()

    assert result["deleted"] == {
        "system_events": 2,
        "account_security_events": 3,
        "user_sessions": 0,
        "security_events": 1,
    }
    assert result["errors"] == ["user_sessions: database is locked"]
    db.rollback.assert_awaited_once()


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------

async def test_start_registers_jobs_and_runs_initial_cleanup(monitoring, session_factory, clock, schedulers):
    await add_all(session_factory, [make_session(clock, id="expired", expires_at=clock() - timedelta(minutes=1))])

    await monitoring.start_monitoring()

    assert monitoring.is_running
    assert len(schedulers) == 1
    assert schedulers[0].started
    assert set(schedulers[0].jobs) == {"expired_sessions_cleanup", "inactive_sessions_cleanup", "security_scan"}

    async with session_factory() as db:
        assert (await db.get(UserSession, "expired")).is_active is False

    status = monitoring.get_status()
    assert status["running"] is True
    assert len(status["jobs"]) == 3


async def test_double_start_is_a_warning(monitoring, schedulers, caplog):
    await monitoring.start_monitoring()

    with caplog.at_level(logging.WARNING):
        await monitoring.start_monitoring()

    assert len(schedulers) == 1
    assert "already running" in caplog.text


async def test_stop_monitoring(monitoring, schedulers):
    await monitoring.start_monitoring()
    monitoring.stop_monitoring()

    assert not monitoring.is_running
    assert schedulers[0].shut_down
    assert schedulers[0].jobs == {}
    assert monitoring.get_status() == {"running": False, "started_at": None, "jobs": []}

    # Stopping twice is harmless
    monitoring.stop_monitoring()


async def test_scheduled_job_errors_are_logged_not_raised(monitoring, caplog):
    async def broken():
        raise RuntimeError("boom")

    monitoring.cleanup_expired_sessions = broken

    with caplog.at_level(logging.ERROR):
        await monitoring._run_job("cleanup_expired_sessions")

    assert "cleanup_expired_sessions failed" in caplog.text


async def test_run_job_now(monitoring):
    result = await monitoring.run_job_now("expired_sessions_cleanup")
    assert result["success"] is True
    assert result["result"]["sessions_revoked"] == 0

    missing = await monitoring.run_job_now("defragment_disks")
    assert missing == {"success": False, "error": "Job 'defragment_disks' not found"}
