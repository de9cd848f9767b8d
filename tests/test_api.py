"""HTTP tests for the tracking-script and read-side endpoints."""

from __future__ import annotations

import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from funnel_backend.config import settings
from funnel_backend.services.bridge_store import record_association


class TestHealth:
    def test_healthz(self, client: TestClient):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestBridgeEndpoint:
    def test_associate(self, client: TestClient):
        resp = client.post(
            "/bridge/associate",
            json={"email": "Lead@Test.com", "visitor_id": "v_123", "source_action": "form_submit"},
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["email"] == "lead@test.com"
        assert body["visitor_id"] == "v_123"
        assert body["processed"] is False

    def test_associate_rejects_bad_email(self, client: TestClient):
        resp = client.post("/bridge/associate", json={"email": "not-an-email", "visitor_id": "v1"})
        assert resp.status_code == 422

    def test_purge_removes_expired_rows(self, client: TestClient, db: Session):
        client.post("/bridge/associate", json={"email": "keep@x.com", "visitor_id": "v1"})
        record_association(
            db, email="old@x.com", visitor_id="v2", ttl=datetime.timedelta(seconds=-5)
        )

        resp = client.post("/bridge/purge")

        assert resp.status_code == 200
        assert resp.json() == {"purged": 1}
        assert client.post("/bridge/purge").json() == {"purged": 0}

    def test_purge_requires_admin_secret_when_configured(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(settings, "admin_dashboard_secret", "s3cret")

        assert client.post("/bridge/purge").status_code == 401
        ok = client.post("/bridge/purge", headers={"X-Admin-Secret": "s3cret"})
        assert ok.status_code == 200


class TestTouchpointEndpoints:
    def test_create_and_read_back(self, client: TestClient):
        resp = client.post(
            "/touchpoints",
            json={"visitor_id": "v1", "event_type": "page_view", "page_url": "https://x.com/"},
            headers={"User-Agent": "pytest-agent", "Referer": "https://google.com/"},
        )
        assert resp.status_code == 201
        created = resp.json()
        assert created["user_agent"] == "pytest-agent"
        assert created["referrer"] == "https://google.com/"
        assert created["ip_address"]

        one = client.get(f"/touchpoints/{created['id']}")
        assert one.status_code == 200
        assert one.json()["event_type"] == "page_view"

        by_visitor = client.get("/touchpoints/visitor/v1")
        assert [tp["id"] for tp in by_visitor.json()] == [created["id"]]

    def test_list_paginates(self, client: TestClient):
        for i in range(3):
            client.post("/touchpoints", json={"visitor_id": f"v{i}", "event_type": "page_view"})

        resp = client.get("/touchpoints", params={"page": 1, "limit": 2})

        body = resp.json()
        assert body["total"] == 3
        assert len(body["items"]) == 2
        assert body["page"] == 1

    def test_missing_touchpoint_404(self, client: TestClient):
        assert client.get("/touchpoints/999").status_code == 404

    def test_blank_visitor_400(self, client: TestClient):
        resp = client.post("/touchpoints", json={"visitor_id": "   ", "event_type": "page_view"})
        assert resp.status_code == 400


class TestFunnelEndpoint:
    def test_unknown_visitor_has_null_progress(self, client: TestClient):
        resp = client.get("/funnel-progress/v_none")
        assert resp.status_code == 200
        assert resp.json() == {"visitor_id": "v_none", "progress": None}

    def test_progress_after_event(self, client: TestClient):
        client.post(
            "/webhooks/events",
            json={"event_type": "rdv_scheduled", "visitor_id": "v1", "email": "a@x.com"},
        )

        resp = client.get("/funnel-progress/v1")

        assert resp.json()["progress"]["current_stage"] == "rdv_scheduled"


class TestLeadEndpoints:
    def _stitch(self, client: TestClient, email: str, visitor_id: str) -> int:
        resp = client.post(
            "/webhooks/events",
            json={"event_type": "lead_capture", "email": email, "visitor_id": visitor_id},
        )
        return resp.json()["lead_id"]

    def test_read_lead_and_by_visitor(self, client: TestClient):
        lead_id = self._stitch(client, "a@x.com", "v1")

        lead = client.get(f"/leads/{lead_id}").json()
        assert lead["primary_email"] == "a@x.com"
        assert [v["visitor_id"] for v in lead["visitor_ids"]] == ["v1"]

        assert client.get("/leads/by-visitor/v1").json()["id"] == lead_id
        assert client.get("/leads/by-visitor/nobody").status_code == 404
        assert client.get("/leads/4242").status_code == 404

    def test_merge_endpoint(self, client: TestClient):
        target = self._stitch(client, "a@x.com", "v1")
        source = self._stitch(client, "b@x.com", "v2")

        resp = client.post(
            "/leads/merge",
            json={"source_lead_id": source, "target_lead_id": target, "reason": "dup"},
        )

        assert resp.status_code == 200
        assert resp.json()["moved_visitor_ids"] == 1
        assert client.get("/leads/by-visitor/v2").json()["id"] == target

        again = client.post("/leads/merge", json={"source_lead_id": source, "target_lead_id": target})
        assert again.status_code == 409

    def test_merge_requires_admin_secret_when_configured(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(settings, "admin_dashboard_secret", "s3cret")
        target = self._stitch(client, "a@x.com", "v1")
        source = self._stitch(client, "b@x.com", "v2")
        payload = {"source_lead_id": source, "target_lead_id": target}

        assert client.post("/leads/merge", json=payload).status_code == 401
        ok = client.post("/leads/merge", json=payload, headers={"X-Admin-Secret": "s3cret"})
        assert ok.status_code == 200

    def test_status_change_and_history(self, client: TestClient):
        lead_id = self._stitch(client, "a@x.com", "v1")

        resp = client.patch(
            f"/leads/{lead_id}/status",
            json={"status": "contacted", "changed_by": "rep-1", "comment": "intro call"},
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "contacted"
        history = client.get(f"/leads/{lead_id}/status-history").json()
        assert [(h["old_status"], h["new_status"]) for h in history] == [("new", "contacted")]
        assert history[0]["comment"] == "intro call"

    def test_illegal_status_change_is_400(self, client: TestClient):
        lead_id = self._stitch(client, "a@x.com", "v1")

        resp = client.patch(f"/leads/{lead_id}/status", json={"status": "won"})

        assert resp.status_code == 400
        assert client.get(f"/leads/{lead_id}").json()["status"] == "new"
        assert client.get(f"/leads/{lead_id}/status-history").json() == []

    def test_status_change_unknown_lead_is_404(self, client: TestClient):
        assert client.patch("/leads/4242/status", json={"status": "contacted"}).status_code == 404
        assert client.get("/leads/4242/status-history").status_code == 404

    def test_status_change_requires_admin_secret_when_configured(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(settings, "admin_dashboard_secret", "s3cret")
        lead_id = self._stitch(client, "a@x.com", "v1")

        assert client.patch(f"/leads/{lead_id}/status", json={"status": "contacted"}).status_code == 401
        ok = client.patch(
            f"/leads/{lead_id}/status",
            json={"status": "contacted"},
            headers={"X-Admin-Secret": "s3cret"},
        )
        assert ok.status_code == 200
