import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from photo_analysis import main
from photo_analysis.db import get_session
from photo_analysis.models import User

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


@pytest.fixture
def api(engine, coordinator):
    def session_override():
        with Session(engine) as session:
            yield session

    main.app.dependency_overrides[main.get_coordinator] = lambda: coordinator
    main.app.dependency_overrides[get_session] = session_override
    # no context manager: startup hooks (real database, broker) stay off
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def owner_headers(report):
    return {"X-User-Id": report.owner_id}


def test_owner_enqueues_report(api, make_report):
    report = make_report(photos=2)
    resp = api.post(f"/queue/analyze-report/{report.id}", headers=owner_headers(report))
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "message": "Report added to the queue", "position": 1,
                           "totalImages": 2}

    status = api.get(f"/queue/status/{report.id}", headers=owner_headers(report)).json()
    assert status["inQueue"] is True
    assert status["position"] == 1


def test_enqueue_errors_carry_reason(api, make_report):
    report = make_report(photos=1)
    api.post(f"/queue/analyze-report/{report.id}", headers=owner_headers(report))
    resp = api.post(f"/queue/analyze-report/{report.id}", headers=owner_headers(report))
    assert resp.status_code == 400
    assert resp.json()["reason"] == "already_queued"
    assert resp.json()["success"] is False

    missing = api.post("/queue/analyze-report/nope", headers=owner_headers(report))
    assert missing.status_code == 404
    assert missing.json()["reason"] == "report_not_found"


def test_other_users_report_is_forbidden(api, make_report):
    report = make_report(photos=1)
    resp = api.post(f"/queue/analyze-report/{report.id}", headers={"X-User-Id": "intruder"})
    assert resp.status_code == 403


def test_operator_enqueues_on_behalf_of_owner(api, make_report, engine):
    report = make_report(photos=1)
    resp = api.post(f"/queue/analyze-report/{report.id}", headers=ADMIN)
    assert resp.status_code == 200
    status = api.get(f"/queue/status/{report.id}", headers=owner_headers(report)).json()
    assert status["inQueue"] is True


def test_identity_header_is_required(api):
    assert api.get("/queue/stats").status_code == 422


def test_cancel(api, make_report):
    report = make_report(photos=1)
    api.post(f"/queue/analyze-report/{report.id}", headers=owner_headers(report))
    assert api.delete(f"/queue/cancel/{report.id}", headers={"X-User-Id": "intruder"}).status_code == 404
    assert api.delete(f"/queue/cancel/{report.id}", headers=owner_headers(report)).json()["success"] is True
    assert api.get(f"/queue/status/{report.id}", headers=owner_headers(report)).json() == {"inQueue": False}


def test_admin_routes_require_operator(api):
    user = {"X-User-Id": "u1"}
    for path in ("/queue/admin/full", "/queue/admin/global-status", "/queue/admin/broker",
                 "/config/default-prompt"):
        assert api.get(path, headers=user).status_code == 403
    assert api.post("/queue/admin/resume", headers=user).status_code == 403


def test_admin_views(api, make_report, coordinator):
    report = make_report(photos=3)
    coordinator.enqueue(report.id, report.owner_id)

    full = api.get("/queue/admin/full", headers=ADMIN).json()
    assert [row["reportId"] for row in full] == [report.id]
    assert api.get("/queue/stats", headers=ADMIN).json()["pending"] == 1
    assert api.get("/queue/admin/broker", headers=ADMIN).json() == {"connected": False, "depth": 0}


def test_global_status_and_resume(api, make_report, coordinator):
    report = make_report(photos=1)
    coordinator.enqueue(report.id, report.owner_id)
    coordinator.pause_queue("401: API key invalid or expired")

    status = api.get("/queue/admin/global-status", headers=ADMIN).json()
    assert status["paused"] is True
    assert status["reason"] == "401: API key invalid or expired"
    assert status["pausedItems"] == 1

    resumed = api.post("/queue/admin/resume", headers=ADMIN).json()
    assert resumed["resumed"] == 1
    assert api.get("/queue/admin/global-status", headers=ADMIN).json()["paused"] is False


def test_default_prompt_roundtrip(api):
    resp = api.put("/config/default-prompt", headers=ADMIN, json={"value": "Answer in Portuguese."})
    assert resp.json()["success"] is True
    assert api.get("/config/default-prompt", headers=ADMIN).json() == {"value": "Answer in Portuguese."}


def test_short_api_key_is_rejected(api):
    resp = api.put("/config/openai-key", headers=ADMIN, json={"apiKey": "abc"})
    assert resp.json() == {"success": False, "message": "Invalid API key"}


def test_events_websocket_joins_report_room(api):
    with api.websocket_connect("/queue/events?reportId=r1") as ws:
        assert ws.receive_json() == {"event": "joined", "data": {"reportId": "r1"}}
        assert main.notifier.subscribers("r1") == 1


def test_events_websocket_requires_report_id(api):
    with api.websocket_connect("/queue/events") as ws:
        assert "error" in ws.receive_json()


def test_health(api):
    assert api.get("/health").json() == {"status": "ok", "broker": False}


def test_photo_credits_are_spent_and_topped_up(api, session):
    user = User(name="Carla", email="carla@example.com", photo_quota=1)
    session.add(user)
    session.commit()
    headers = {"X-User-Id": user.id}

    assert api.post("/credits/consume", headers=headers).json() == {"success": True, "photoQuota": 0}
    exhausted = api.post("/credits/consume", headers=headers)
    assert exhausted.status_code == 400
    assert exhausted.json()["reason"] == "quota_exhausted"

    assert api.post(f"/credits/{user.id}", headers=headers, json={"amount": 5}).status_code == 403
    topped = api.post(f"/credits/{user.id}", headers=ADMIN, json={"amount": 5})
    assert topped.json() == {"success": True, "photoQuota": 5}
    assert api.post("/credits/consume", headers=headers).json()["photoQuota"] == 4


def test_credits_for_unknown_user(api):
    resp = api.post("/credits/ghost", headers=ADMIN, json={"amount": 1})
    assert resp.status_code == 404
    assert resp.json()["reason"] == "user_not_found"
