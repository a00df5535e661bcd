"""
HTTP surface: admin login with lockout, admin security endpoints, public unlock.
"""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from lockguard.database import get_db
from lockguard.main import app
from lockguard.models import AdminUser
from lockguard.models.security import BlockedIP, SystemEvent
from lockguard.models.session import UserSession
from lockguard.utils.helpers import utcnow
from lockguard.utils.security import get_password_hash, create_access_token

PASSWORD = "correct-horse-battery"


@pytest.fixture
async def admin(session_factory):
    async with session_factory() as db:
        user = AdminUser(username="admin", password_hash=get_password_hash(PASSWORD), is_active=True)
        db.add(user)
        await db.commit()
        return user


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.session_factory = session_factory
    app.state.monitoring = None

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(admin):
    token = create_access_token(data={"sub": str(admin.id)})
    return {"Authorization": f"Bearer {token}"}


async def login(client, password=PASSWORD, username="admin"):
    return await client.post("/api/admin/auth/login", json={"username": username, "password": password})


async def test_login_and_me(client, admin):
    response = await login(client)
    assert response.status_code == 200
    token = response.json()["access_token"]

    me = await client.get("/api/admin/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["username"] == "admin"


async def test_bad_password_returns_401_with_retry_after(client, admin):
    response = await login(client, password="wrong")

    assert response.status_code == 401
    assert response.headers["Retry-After"] == "5"


async def test_admin_lockout_and_admin_unlock(client, admin, auth_headers):
    assert (await login(client, password="wrong")).status_code == 401
    assert (await login(client, password="wrong")).status_code == 401

    third = await login(client, password="wrong")
    assert third.status_code == 423
    assert third.json()["detail"]["requires_admin_intervention"] is True

    # Correct password is refused while locked
    assert (await login(client)).status_code == 423

    status = await client.get(
        "/api/admin/security/lockout-status", params={"user_id": "admin"}, headers=auth_headers
    )
    assert status.status_code == 200
    assert status.json()["is_locked"] is True

    unlock = await client.post(
        "/api/admin/security/unlock",
        json={"user_id": "admin", "ip_address": "127.0.0.1", "reason": "verified by phone"},
        headers=auth_headers,
    )
    assert unlock.status_code == 200
    assert unlock.json()["unlocked"] >= 1

    assert (await login(client)).status_code == 200


async def test_unlock_requires_target(client, auth_headers):
    response = await client.post("/api/admin/security/unlock", json={}, headers=auth_headers)
    assert response.status_code == 400


async def test_security_endpoints_require_auth(client):
    response = await client.get("/api/admin/security/incidents")
    assert response.status_code in (401, 403)


async def test_verification_unlock_via_public_endpoint(client, auth_headers):
    issued = await client.post(
        "/api/admin/security/unlock-token", json={"user_id": "user-42"}, headers=auth_headers
    )
    assert issued.status_code == 200
    token = issued.json()["token"]

    first = await client.post("/api/auth/unlock", json={"user_id": "user-42", "token": token})
    second = await client.post("/api/auth/unlock", json={"user_id": "user-42", "token": token})

    assert first.status_code == 200
    assert second.status_code == 400
    assert second.json()["detail"] == "Verification token already used"


async def test_incidents_list_and_resolve(client, admin, auth_headers):
    for _ in range(3):
        await login(client, password="wrong")

    incidents = await client.get("/api/admin/security/incidents", headers=auth_headers)
    assert incidents.status_code == 200
    assert len(incidents.json()) >= 1

    incident_id = incidents.json()[0]["id"]
    resolved = await client.post(
        f"/api/admin/security/incidents/{incident_id}/resolve",
        json={"status": "resolved", "notes": "admin typo"},
        headers=auth_headers,
    )
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "resolved"

    missing = await client.post(
        "/api/admin/security/incidents/9999/resolve", json={}, headers=auth_headers
    )
    assert missing.status_code == 404


async def test_blocked_ip_is_rejected_and_can_be_unblocked(client, admin, auth_headers, session_factory):
    async with session_factory() as db:
        db.add(BlockedIP(
            ip_address="127.0.0.1",
            reason="multiple_failed_logins",
            failed_attempts=5,
            blocked_until=utcnow() + timedelta(minutes=60),
            is_permanent=False,
            is_active=True,
        ))
        await db.commit()

    blocked = await login(client)
    assert blocked.status_code == 403

    listed = await client.get("/api/admin/security/blocked", headers=auth_headers)
    assert [b["ip_address"] for b in listed.json()] == ["127.0.0.1"]

    unblocked = await client.post(
        "/api/admin/security/blocked/127.0.0.1/unblock", json={"notes": "office NAT"}, headers=auth_headers
    )
    assert unblocked.status_code == 200
    assert unblocked.json()["is_active"] is False

    assert (await login(client)).status_code == 200


async def test_monitoring_endpoints_when_disabled(client, auth_headers):
    response = await client.get("/api/admin/security/monitoring", headers=auth_headers)
    assert response.status_code == 503


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_list_and_revoke_session(client, auth_headers, session_factory):
    now = utcnow()
    async with session_factory() as db:
        db.add(UserSession(
            id="sess-1", user_id="user-42", ip_address="198.51.100.7",
            created_at=now, last_activity=now, expires_at=now + timedelta(hours=8), is_active=True,
        ))
        await db.commit()

    listed = await client.get("/api/admin/security/sessions", params={"user_id": "user-42"}, headers=auth_headers)
    assert [s["id"] for s in listed.json()] == ["sess-1"]

    first = await client.post(
        "/api/admin/security/sessions/sess-1/revoke", json={"reason": "stolen_device"}, headers=auth_headers
    )
    assert first.status_code == 200
    assert first.json() == {"session_id": "sess-1", "revoked": True}

    # Already revoked: no-op
    second = await client.post("/api/admin/security/sessions/sess-1/revoke", json={}, headers=auth_headers)
    assert second.status_code == 200
    assert second.json()["revoked"] is False

    async with session_factory() as db:
        session = await db.get(UserSession, "sess-1")
        assert session.is_active is False
        assert session.revoke_reason == "stolen_device"
        events = (await db.execute(
            select(SystemEvent).where(SystemEvent.event_type == "session_revoked")
        )).scalars().all()
        assert len(events) == 1

    listed = await client.get("/api/admin/security/sessions", params={"user_id": "user-42"}, headers=auth_headers)
    assert listed.json() == []


async def test_revoke_unknown_session(client, auth_headers):
    response = await client.post("/api/admin/security/sessions/nope/revoke", json={}, headers=auth_headers)
    assert response.status_code == 404
