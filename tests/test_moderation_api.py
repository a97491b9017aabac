"""Tests for the report & moderation HTTP API."""
from __future__ import annotations

import json
from datetime import timedelta

import pytest
from sqlalchemy import update

from src.db.tables import utcnow
from src.db.user_tables import UserRow


@pytest.fixture
async def team(make_user):
    """One reporter and three staff members, as (user_id, headers) pairs."""
    return {
        "u1": await make_user("reporter@test.com"),
        "s1": await make_user("s1@test.com", role="moderator"),
        "s2": await make_user("s2@test.com", role="staff"),
        "s3": await make_user("s3@test.com", role="admin"),
    }


async def _submit(client, headers, **body):
    body.setdefault("reported_user_id", "troll-9")
    body.setdefault("reason", "harassment")
    resp = await client.post("/api/v1/reports", headers=headers, json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _notifications(client, headers, **params):
    resp = await client.get("/api/v1/notifications", headers=headers, params=params)
    assert resp.status_code == 200
    return resp.json()


class TestSubmission:
    async def test_submit_report(self, client, team):
        _, auth = team["u1"]
        report = await _submit(client, auth, description="threatening messages", severity="high")
        assert report["status"] == "pending"
        assert report["target_kind"] == "user"
        assert report["version"] == 1

    async def test_requires_login(self, client):
        resp = await client.post("/api/v1/reports", json={"general": True, "reason": "other"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Authentication required"

    async def test_invalid_reason(self, client, team):
        _, auth = team["u1"]
        resp = await client.post("/api/v1/reports", headers=auth, json={"general": True, "reason": "boredom"})
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

    async def test_two_targets_rejected(self, client, team):
        _, auth = team["u1"]
        resp = await client.post("/api/v1/reports", headers=auth, json={
            "reported_user_id": "troll-9", "content_ref": "post:1", "reason": "spam",
        })
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

    async def test_submit_with_evidence(self, client, team):
        _, auth = team["u1"]
        resp = await client.post(
            "/api/v1/reports/evidence",
            headers=auth,
            data={"report": json.dumps({"content_ref": "post:7", "reason": "copyright"})},
            files=[("files", ("proof.png", b"\x89PNG fake", "image/png"))],
        )
        assert resp.status_code == 201, resp.text
        evidence = resp.json()["evidence"]
        assert len(evidence) == 1
        assert evidence[0].startswith("evidence/")

    async def test_evidence_payload_must_be_valid(self, client, team):
        _, auth = team["u1"]
        resp = await client.post(
            "/api/v1/reports/evidence", headers=auth, data={"report": json.dumps({"reason": "nope"})},
        )
        assert resp.status_code == 422

    async def test_my_reports(self, client, team):
        _, auth = team["u1"]
        await _submit(client, auth)
        await _submit(client, auth, reported_user_id=None, general=True, reason="other")
        resp = await client.get("/api/v1/reports/my", headers=auth)
        assert resp.status_code == 200
        assert resp.json()["total"] == 2

        _, other = team["s1"]
        resp = await client.get("/api/v1/reports/my", headers=other)
        assert resp.json()["reports"] == []


class TestStaffQueue:
    async def test_non_staff_forbidden(self, client, team):
        _, auth = team["u1"]
        report = await _submit(client, auth)
        resp = await client.get("/api/v1/admin/reports", headers=auth)
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"
        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/claim", headers=auth)
        assert resp.status_code == 403

    async def test_list_filter_by_status(self, client, team):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        a = await _submit(client, u1, reported_user_id="t-1")
        await _submit(client, u1, reported_user_id="t-2")
        await client.post(f"/api/v1/admin/reports/{a['id']}/claim", headers=s1)

        resp = await client.get("/api/v1/admin/reports?status=pending", headers=s1)
        assert resp.status_code == 200
        assert resp.json()["total"] == 1

        resp = await client.get("/api/v1/admin/reports?status=pending&status=in_progress", headers=s1)
        assert resp.json()["total"] == 2

    async def test_get_report_with_history(self, client, team):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        report = await _submit(client, u1)
        await client.post(f"/api/v1/admin/reports/{report['id']}/claim", headers=s1)
        resp = await client.get(f"/api/v1/admin/reports/{report['id']}", headers=s1)
        assert resp.status_code == 200
        assert [h["action"] for h in resp.json()["history"]] == ["claim_report", "submit_report"]

    async def test_missing_report_is_404(self, client, team):
        _, s1 = team["s1"]
        resp = await client.get("/api/v1/admin/reports/nope", headers=s1)
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    async def test_claim_conflict_names_holder(self, client, team):
        _, u1 = team["u1"]
        s1_id, s1 = team["s1"]
        _, s2 = team["s2"]
        report = await _submit(client, u1)
        assert (await client.post(f"/api/v1/admin/reports/{report['id']}/claim", headers=s1)).status_code == 200

        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/claim", headers=s2)
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "already_claimed"
        assert body["handled_by"] == s1_id

    async def test_resolve_twice(self, client, team):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        _, s2 = team["s2"]
        report = await _submit(client, u1)
        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/resolve", headers=s1, json={
            "outcome": "resolved", "note": "warned user",
        })
        assert resp.status_code == 200
        assert resp.json()["status"] == "resolved"

        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/resolve", headers=s2, json={
            "outcome": "dismissed",
        })
        assert resp.status_code == 409
        assert resp.json()["error"] == "already_handled"

    async def test_resolve_with_non_terminal_outcome(self, client, team):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        report = await _submit(client, u1)
        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/resolve", headers=s1, json={
            "outcome": "in_progress",
        })
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_transition"

    async def test_reopen_always_rejected(self, client, team):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        report = await _submit(client, u1)
        await client.post(f"/api/v1/admin/reports/{report['id']}/resolve", headers=s1, json={"outcome": "dismissed"})
        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/reopen", headers=s1)
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_transition"

    async def test_bulk(self, client, team):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        ids = [(await _submit(client, u1, reported_user_id=f"t-{i}"))["id"] for i in range(3)]
        resp = await client.post("/api/v1/admin/reports/bulk", headers=s1, json={
            "report_ids": ids + ["missing"], "action": "resolve", "note": "spam wave",
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["succeeded"] == 3
        assert body["failed"] == 1
        assert body["results"][-1]["error_code"] == "not_found"


class TestEndToEnd:
    async def test_report_claim_resolve_scenario(self, client, team):
        u1_id, u1 = team["u1"]
        s1_id, s1 = team["s1"]
        _, s2 = team["s2"]
        _, s3 = team["s3"]

        report = await _submit(client, u1)
        for _, auth in (team["s1"], team["s2"], team["s3"]):
            inbox = await _notifications(client, auth)
            assert [n["kind"] for n in inbox["notifications"]] == ["report_created"]
            assert inbox["unread_count"] == 1
        ack = await _notifications(client, u1)
        assert [n["kind"] for n in ack["notifications"]] == ["submission_ack"]

        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/claim", headers=s1)
        assert resp.status_code == 200
        assert resp.json()["handled_by"] == s1_id

        assert (await _notifications(client, s2))["notifications"] == []
        assert (await _notifications(client, s3))["notifications"] == []
        assert len((await _notifications(client, s1))["notifications"]) == 1

        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/claim", headers=s2)
        assert resp.status_code == 409
        assert resp.json()["handled_by"] == s1_id

        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/resolve", headers=s1, json={
            "outcome": "resolved", "note": "content removed",
        })
        assert resp.status_code == 200
        assert resp.json()["status"] == "resolved"

        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/resolve", headers=s3, json={
            "outcome": "dismissed",
        })
        assert resp.status_code == 409
        assert resp.json()["error"] == "already_handled"

        logs = (await client.get(
            "/api/v1/admin/moderation/logs", headers=s3, params={"report_id": report["id"]},
        )).json()["logs"]
        assert [e["action"] for e in logs] == ["resolve_report", "claim_report", "submit_report"]

        reporter_inbox = await _notifications(client, u1)
        assert {n["kind"] for n in reporter_inbox["notifications"]} == {
            "submission_ack", "report_claimed", "report_resolved",
        }
        assert (await _notifications(client, s1))["notifications"] == []
        assert u1_id != s1_id


class TestNotificationsApi:
    async def test_mark_read(self, client, team):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        _, s2 = team["s2"]
        await _submit(client, u1)
        note = (await _notifications(client, s1))["notifications"][0]

        resp = await client.post(f"/api/v1/notifications/{note['id']}/read", headers=s2)
        assert resp.status_code == 404

        resp = await client.post(f"/api/v1/notifications/{note['id']}/read", headers=s1)
        assert resp.status_code == 200
        assert resp.json()["read"] is True
        assert (await _notifications(client, s1))["unread_count"] == 0
        assert (await _notifications(client, s1, unread_only="true"))["notifications"] == []


class TestAnalyticsApi:
    async def test_stats(self, client, team):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        report = await _submit(client, u1)
        await client.post(f"/api/v1/admin/reports/{report['id']}/resolve", headers=s1, json={"outcome": "resolved"})

        resp = await client.get("/api/v1/admin/moderation/stats?hours=24", headers=s1)
        assert resp.status_code == 200
        body = resp.json()
        assert body["window_hours"] == 24
        assert body["total_reports"] == 1
        assert body["by_status"]["resolved"] == 1
        assert body["leaderboard"][0]["reports_handled"] == 1

    async def test_stats_window_bounded(self, client, team):
        _, s1 = team["s1"]
        resp = await client.get("/api/v1/admin/moderation/stats?hours=10000", headers=s1)
        assert resp.status_code == 422

    async def test_activity_and_export(self, client, team):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        await _submit(client, u1)

        resp = await client.get("/api/v1/admin/moderation/activity", headers=s1)
        assert resp.status_code == 200
        assert len(resp.json()["activity"]) == 2

        resp = await client.get("/api/v1/admin/moderation/export/reports", headers=s1)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "attachment" in resp.headers["content-disposition"]
        assert resp.text.splitlines()[0].startswith("id,reporter_id")

        resp = await client.get("/api/v1/admin/moderation/export/users", headers=s1)
        assert resp.status_code == 422


class TestRealtimeApi:
    async def test_unknown_topic(self, client, team):
        _, s1 = team["s1"]
        resp = await client.get("/api/v1/realtime/payments", headers=s1)
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

    async def test_reports_topic_is_staff_only(self, client, team):
        _, u1 = team["u1"]
        resp = await client.get("/api/v1/realtime/reports", headers=u1)
        assert resp.status_code == 403


class TestResolutionActionsApi:
    async def test_suspension_locks_out_until_it_expires(self, client, team, make_user, session_factory):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        troll_id, troll_auth = await make_user("troll@test.com")
        report = await _submit(client, u1, reported_user_id=troll_id)

        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/resolve", headers=s1, json={
            "outcome": "resolved",
            "action": {"type": "account", "action": "suspend", "duration_hours": 12, "reason": "spam wave"},
        })
        assert resp.status_code == 200, resp.text

        assert (await client.get("/api/v1/me", headers=troll_auth)).status_code == 401
        resp = await client.post("/api/v1/auth/login", json={"email": "troll@test.com", "password": "pass12345"})
        assert resp.status_code == 403
        assert resp.json()["message"] == "Account suspended"

        async with session_factory() as session:
            await session.execute(
                update(UserRow).where(UserRow.id == troll_id)
                .values(suspended_until=utcnow() - timedelta(minutes=1))
            )
            await session.commit()

        resp = await client.get("/api/v1/me", headers=troll_auth)
        assert resp.status_code == 200
        inbox = await _notifications(client, troll_auth)
        assert [n["kind"] for n in inbox["notifications"]] == ["account_action"]

    async def test_warning_on_dismissal_rejected(self, client, team):
        _, u1 = team["u1"]
        _, s1 = team["s1"]
        report = await _submit(client, u1)
        resp = await client.post(f"/api/v1/admin/reports/{report['id']}/resolve", headers=s1, json={
            "outcome": "dismissed", "action": {"type": "warning", "message": "be nice"},
        })
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"


class TestRoleManagement:
    async def test_admin_promotes_user_to_staff(self, client, team, make_user):
        _, s3 = team["s3"]
        new_id, new_auth = await make_user("newbie@test.com")
        resp = await client.put(f"/api/v1/admin/users/{new_id}/role", headers=s3, json={"role": "moderator"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "moderator"

        _, u1 = team["u1"]
        await _submit(client, u1)
        inbox = await _notifications(client, new_auth)
        assert [n["kind"] for n in inbox["notifications"]] == ["report_created"]

    async def test_only_admin_can_change_roles(self, client, team):
        u1_id, _ = team["u1"]
        _, s1 = team["s1"]
        resp = await client.put(f"/api/v1/admin/users/{u1_id}/role", headers=s1, json={"role": "admin"})
        assert resp.status_code == 403


class TestOps:
    async def test_health_reports_db_and_subscribers(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert set(body["subscribers"]) == {"reports", "notifications", "logs"}

    async def test_ready(self, client):
        resp = await client.get("/ready")
        assert resp.json() == {"ready": True}

    async def test_domain_errors_carry_request_id(self, client, team):
        _, s1 = team["s1"]
        resp = await client.get(
            "/api/v1/admin/reports/missing", headers={**s1, "X-Request-ID": "trace-404"},
        )
        assert resp.status_code == 404
        assert resp.json()["request_id"] == "trace-404"
