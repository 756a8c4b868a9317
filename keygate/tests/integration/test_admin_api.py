from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from keygate.domain.models import AuditEvent, TrackedUser
from keygate.persistence.db import SessionLocal
from keygate.services.key_backend import BackendSession
from keygate.tests.utils.api import api_client, build_app
from keygate.tests.utils.users import seed_user, session_cookie_for


async def _admin():
    async with SessionLocal() as session:
        return await seed_user(session, role="admin", username="root", remote_key_id=900)


async def test_non_admin_is_forbidden(backend) -> None:
    async with SessionLocal() as session:
        user = await seed_user(session, role="user")
    async with api_client(build_app(backend), cookies=session_cookie_for(user)) as client:
        response = await client.get("/v1/admin/settings")
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"


async def test_stale_admin_token_is_rechecked_against_db(backend) -> None:
    admin = await _admin()
    cookies = session_cookie_for(admin)
    async with SessionLocal() as session:
        stored = await session.get(TrackedUser, admin.id)
        stored.role = "user"
        await session.commit()
    async with api_client(build_app(backend), cookies=cookies) as client:
        response = await client.get("/v1/admin/settings")
    assert response.status_code == 403


async def test_get_settings_returns_policy(backend) -> None:
    admin = await _admin()
    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        response = await client.get("/v1/admin/settings")
    assert response.status_code == 200
    policy = response.json()["data"]["policy"]
    assert policy["inactivityThresholdHours"] == 5
    assert policy["dailyReactivateHour"] == 8
    assert policy["dailyReactivateMinute"] == 0
    assert datetime.fromisoformat(policy["nextReactivationInstant"]) > datetime.now(timezone.utc)


async def test_patch_settings_updates_policy(backend) -> None:
    admin = await _admin()
    body = {"inactivityHours": 12, "dailyReactivateHour": 6, "dailyReactivateMinute": 30}
    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        response = await client.patch("/v1/admin/settings", json=body)
        again = await client.get("/v1/admin/settings")

    assert response.status_code == 200
    policy = again.json()["data"]["policy"]
    assert policy["inactivityThresholdHours"] == 12
    assert policy["dailyReactivateLabel"] == "daily at 06:30 (UTC+08:00)"
    async with SessionLocal() as session:
        events = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "key_policy.config.updated"))
        ).scalars().all()
    assert len(events) == 1


async def test_patch_settings_rejects_out_of_range(backend) -> None:
    admin = await _admin()
    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        response = await client.patch(
            "/v1/admin/settings",
            json={"inactivityHours": 0, "dailyReactivateHour": 24, "dailyReactivateMinute": 0},
        )
        current = await client.get("/v1/admin/settings")
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert current.json()["data"]["policy"]["inactivityThresholdHours"] == 5


async def test_patch_settings_rejects_non_integer_values(backend) -> None:
    admin = await _admin()
    valid = {"inactivityHours": 12, "dailyReactivateHour": 6, "dailyReactivateMinute": 30}
    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        for field, value in (("inactivityHours", True), ("dailyReactivateHour", "7"), ("dailyReactivateMinute", 30.0)):
            response = await client.patch("/v1/admin/settings", json={**valid, field: value})
            assert response.status_code == 422, field
        current = await client.get("/v1/admin/settings")
    policy = current.json()["data"]["policy"]
    assert policy["inactivityThresholdHours"] == 5
    assert policy["dailyReactivateHour"] == 8


async def test_list_users_filters_and_paginates(backend) -> None:
    admin = await _admin()
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        for index in range(3):
            await seed_user(session, username=f"alpha-{index}", created_at=now - timedelta(minutes=index))
        await seed_user(session, username="beta", is_banned=True, ban_reason="spam")

    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        searched = await client.get("/v1/admin/users", params={"search": "ALPHA", "pageSize": 2})
        banned = await client.get("/v1/admin/users", params={"status": "banned"})
        admins = await client.get("/v1/admin/users", params={"role": "admin"})

    page = searched.json()["data"]
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert [item["username"] for item in page["items"]] == ["alpha-0", "alpha-1"]
    assert [item["username"] for item in banned.json()["data"]["items"]] == ["beta"]
    assert [item["id"] for item in admins.json()["data"]["items"]] == [admin.id]


async def test_ban_and_unban_toggle_backend_and_row(backend) -> None:
    admin = await _admin()
    async with SessionLocal() as session:
        target = await seed_user(
            session,
            remote_user_id=401,
            remote_key_id=501,
            key_auto_disabled=True,
            auto_disabled_at=datetime.now(timezone.utc),
        )

    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        banned = await client.post(f"/v1/admin/users/{target.id}/ban", json={"reason": "abuse"})
        async with SessionLocal() as session:
            stored = await session.get(TrackedUser, target.id)
            assert stored.is_banned is True
            assert stored.ban_reason == "abuse"
        unbanned = await client.delete(f"/v1/admin/users/{target.id}/ban")

    assert banned.status_code == 200
    assert unbanned.status_code == 200
    assert backend.calls_to("set_user_enabled") == [(401, False), (401, True)]
    assert backend.calls_to("set_key_enabled") == [(501, False), (501, True)]
    async with SessionLocal() as session:
        stored = await session.get(TrackedUser, target.id)
        assert stored.is_banned is False
        assert stored.ban_reason is None
        assert stored.key_auto_disabled is False


async def test_ban_requires_reason_and_rejects_self(backend) -> None:
    admin = await _admin()
    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        empty_reason = await client.post(f"/v1/admin/users/{admin.id}/ban", json={"reason": ""})
        self_ban = await client.post(f"/v1/admin/users/{admin.id}/ban", json={"reason": "oops"})
        missing = await client.post("/v1/admin/users/nope/ban", json={"reason": "x"})
    assert empty_reason.status_code == 422
    assert self_ban.status_code == 400
    assert self_ban.json()["error"]["code"] == "CANNOT_BAN_SELF"
    assert missing.status_code == 404


async def test_ban_backend_failure_leaves_row_untouched(backend) -> None:
    admin = await _admin()
    async with SessionLocal() as session:
        target = await seed_user(session, remote_key_id=501)
    backend.fail_disable.add(501)

    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        response = await client.post(f"/v1/admin/users/{target.id}/ban", json={"reason": "abuse"})

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "KEY_BACKEND_UNAVAILABLE"
    async with SessionLocal() as session:
        assert (await session.get(TrackedUser, target.id)).is_banned is False


async def test_stats_and_sessions_proxy_backend(backend) -> None:
    admin = await _admin()
    backend.sessions = [
        BackendSession(id="s1", user_id=401, username="alice", model="m1", started_at="2026-03-10T00:00:00Z")
    ]
    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        stats = await client.get("/v1/admin/stats")
        sessions = await client.get("/v1/admin/sessions")

    assert stats.status_code == 200
    data = stats.json()["data"]
    assert data["backend"]["active_sessions"] == 1
    assert data["local"]["tracked_users"] == 1
    assert sessions.json()["data"]["items"][0]["username"] == "alice"


async def test_stats_backend_failure_is_502(backend) -> None:
    admin = await _admin()
    backend.fail_statistics = True
    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        stats = await client.get("/v1/admin/stats")
        sessions = await client.get("/v1/admin/sessions")
    assert stats.status_code == 502
    assert sessions.status_code == 502
    assert "boom" not in stats.text


async def test_metrics_expose_request_and_backend_telemetry(backend) -> None:
    admin = await _admin()
    async with api_client(build_app(backend), cookies=session_cookie_for(admin)) as client:
        await client.get("/v1/health")
        response = await client.get("/v1/admin/metrics")
    data = response.json()["data"]
    assert response.status_code == 200
    assert data["requests"]["count"] >= 1
    assert "counters" in data
