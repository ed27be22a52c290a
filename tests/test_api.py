"""
HTTP API 테스트
"""
import pytest
from fastapi.testclient import TestClient

from control_plane.deps import build_control_plane
from control_plane.main import create_app


@pytest.fixture
def client(settings, db_engine):
    cp = build_control_plane(settings, engine=db_engine)
    return TestClient(create_app(settings, control_plane=cp))


class TestValidateEndpoints:
    def test_stage_preview(self, client):
        resp = client.get("/bots/stages/validate", params={"from_stage": "CANARY", "to_stage": "LIVE"})
        body = resp.json()
        assert resp.status_code == 200
        assert body["allowed"] is False
        assert body["requires_approval"] is True
        assert body["code"] == "GOVERNANCE_REQUIRED"
        assert body["next_promotion"] == "LIVE"

    def test_disposition_preview(self, client):
        resp = client.get("/candidates/dispositions/validate",
                          params={"from_disposition": "RECYCLED", "to_disposition": "READY"})
        body = resp.json()
        assert body["allowed"] is False
        assert body["valid_targets"] == ["PENDING_REVIEW", "QUEUED"]

    def test_unknown_stage_422(self, client):
        resp = client.get("/bots/stages/validate", params={"from_stage": "MOON", "to_stage": "LIVE"})
        assert resp.status_code == 422


class TestStageTransitionEndpoint:
    def test_promote(self, client, make_bot):
        bot = make_bot(stage="TRIALS")
        resp = client.post(f"/bots/{bot.id}/stage", json={"to_stage": "PAPER", "triggered_by": "AUTO_PROMOTION"})
        assert resp.status_code == 200
        assert resp.json()["to"] == "PAPER"

        audit = client.get("/bots/transitions", params={"bot_id": bot.id}).json()["items"]
        assert audit[0]["allowed"] is True

    def test_governance_required_403(self, client, make_bot):
        bot = make_bot(stage="CANARY")
        resp = client.post(f"/bots/{bot.id}/stage", json={"to_stage": "LIVE"})
        assert resp.status_code == 403
        assert resp.json()["detail"]["requires_approval"] is True

    def test_not_found_404(self, client):
        resp = client.post("/bots/nope/stage", json={"to_stage": "PAPER"})
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "NOT_FOUND"

    def test_api_key_enforced(self, settings, db_engine, make_bot):
        settings.api_key = "secret"
        cp = build_control_plane(settings, engine=db_engine)
        client = TestClient(create_app(settings, control_plane=cp))
        bot = make_bot(stage="TRIALS")

        assert client.post(f"/bots/{bot.id}/stage", json={"to_stage": "PAPER"}).status_code == 401
        ok = client.post(f"/bots/{bot.id}/stage", json={"to_stage": "PAPER"}, headers={"X-API-Key": "secret"})
        assert ok.status_code == 200


class TestCandidateEndpoints:
    def test_conflict_409(self, client, make_candidate):
        c = make_candidate(disposition="READY")
        resp = client.post(f"/candidates/{c.id}/disposition",
                           json={"to_disposition": "READY", "expected": "QUEUED_FOR_QC"})
        assert resp.status_code == 409
        assert resp.json()["detail"]["retryable"] is True

    def test_reconcile_and_invariants(self, client, make_candidate):
        make_candidate(disposition="QUEUED_FOR_QC", hours_ago=60)

        dry = client.post("/candidates/reconcile").json()
        assert dry["dry_run"] is True
        assert dry["stuck_candidates"][0]["recommended_action"] == "MOVE_TO_READY"

        inv = client.get("/candidates/invariants").json()
        assert inv["passed"] is False

        live = client.post("/candidates/reconcile", params={"dry_run": "false"}).json()
        assert live["auto_repaired_count"] == 1
        assert client.get("/candidates/invariants").json()["passed"] is True

    def test_consistency(self, client, make_bot):
        make_bot(stage="LIVE")
        body = client.get("/bots/consistency").json()
        assert body["checked"] == 1
        assert body["total"] == 1
        assert body["complete"] is True
        assert body["items"][0]["recommendation"] == "Investigate missing runner"


def test_health(client):
    body = client.get("/health").json()
    assert body["ok"] is True
