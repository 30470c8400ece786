from datetime import timedelta

from conftest import ALICE, API_KEY, KIOSK_TOKEN
from lecture_attendance.models import to_iso, utc_now

AUTH = {"Authorization": f"Bearer {API_KEY}"}
KIOSK = {"X-Kiosk-Token": KIOSK_TOKEN}


def _create(client, collection, payload):
    response = client.post(f"/api/v1/{collection}", json=payload, headers=AUTH)
    assert response.status_code == 201, response.text
    return response.json()


def _lecture(client, enabled=True, starts_in=timedelta(hours=-1)):
    group = _create(client, "groups", {"code": "CS101", "title": "Algorithms"})
    starts_at = utc_now() + starts_in
    session = _create(
        client,
        "sessions",
        {
            "group_id": group["id"],
            "starts_at": to_iso(starts_at),
            "ends_at": to_iso(starts_at + timedelta(hours=2)),
            "events_enabled": enabled,
        },
    )
    subject = _create(client, "subjects", {"external_key": "R001", "display_name": "Alice", "embedding": ALICE})
    _create(client, "memberships", {"subject_id": subject["id"], "group_id": group["id"]})
    return group, session, subject


def test_health_endpoint(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True


def test_record_routes_require_api_key(client):
    assert client.get("/api/v1/subjects").status_code == 401
    assert client.get("/api/v1/subjects", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/api/v1/subjects", headers=AUTH).json() == []


def test_unknown_collection_is_404(client):
    assert client.get("/api/v1/courses", headers=AUTH).status_code == 404


def test_crud_round_trip(client):
    group, session, subject = _lecture(client, enabled=False)
    assert subject["embedding"] == ALICE
    assert session["events_enabled"] is False

    patched = client.patch(f"/api/v1/sessions/{session['id']}", json={"events_enabled": True}, headers=AUTH)
    assert patched.status_code == 200
    assert patched.json()["events_enabled"] is True
    assert patched.json()["group_id"] == group["id"]

    listed = client.get("/api/v1/sessions", params={"events_enabled": "true"}, headers=AUTH).json()
    assert [row["id"] for row in listed] == [session["id"]]

    count = client.get("/api/v1/memberships/count", params={"group_id": group["id"]}, headers=AUTH)
    assert count.json() == {"count": 1}

    assert client.get(f"/api/v1/subjects/{subject['id']}", headers=AUTH).json()["external_key"] == "R001"
    assert client.get("/api/v1/subjects/missing", headers=AUTH).status_code == 404


def test_filters_on_unindexed_fields_are_rejected(client):
    response = client.get("/api/v1/subjects", params={"display_name": "Alice"}, headers=AUTH)
    assert response.status_code == 400


def test_duplicate_unique_key_conflicts(client):
    _create(client, "subjects", {"external_key": "R001", "display_name": "Alice"})
    response = client.post("/api/v1/subjects", json={"external_key": "R001", "display_name": "Again"}, headers=AUTH)
    assert response.status_code == 409


def test_upsert_inserts_once(client):
    _, session, subject = _lecture(client)
    payload = {"session_id": session["id"], "subject_id": subject["id"], "confidence": 0.9, "method": "face"}

    first = client.post("/api/v1/presence_events/upsert", json=payload, headers=AUTH).json()
    second = client.post(
        "/api/v1/presence_events/upsert", json={**payload, "confidence": 0.4}, headers=AUTH
    ).json()

    assert first["created"] is True
    assert second["created"] is False
    assert second["record"]["id"] == first["record"]["id"]
    assert second["record"]["confidence"] == 0.9


def test_deleting_subject_cascades(client):
    group, session, subject = _lecture(client)
    client.post("/api/v1/presence/record", json={"session_id": session["id"], "subject_id": subject["id"]}, headers=KIOSK)

    assert client.delete(f"/api/v1/subjects/{subject['id']}", headers=AUTH).json() == {"deleted": True}
    assert client.get("/api/v1/memberships/count", params={"group_id": group["id"]}, headers=AUTH).json()["count"] == 0
    assert client.get("/api/v1/presence_events/count", headers=AUTH).json()["count"] == 0


def test_record_endpoint_is_idempotent(client):
    _, session, subject = _lecture(client)
    body = {"session_id": session["id"], "subject_id": subject["id"], "confidence": 0.82, "method": "face"}

    first = client.post("/api/v1/presence/record", json=body, headers=KIOSK)
    second = client.post("/api/v1/presence/record", json=body, headers=KIOSK)

    assert first.status_code == 200
    assert first.json()["created"] is True
    assert first.json()["total_count"] == 1
    assert second.json()["created"] is False
    assert second.json()["event"]["marked_at"] == first.json()["event"]["marked_at"]
    assert second.json()["total_count"] == 1


def test_record_endpoint_errors(client):
    _, session, subject = _lecture(client)
    body = {"session_id": session["id"], "subject_id": subject["id"]}

    assert client.post("/api/v1/presence/record", json=body).status_code == 401
    assert client.post("/api/v1/presence/record", json=body, headers={"X-Kiosk-Token": "nope"}).status_code == 401

    missing = client.post("/api/v1/presence/record", json={"session_id": session["id"]}, headers=KIOSK)
    assert missing.status_code == 400
    assert missing.json()["reason"] == "missing_fields"

    unknown = client.post("/api/v1/presence/record", json={**body, "session_id": "nope"}, headers=KIOSK)
    assert unknown.status_code == 404


def test_record_endpoint_rejects_closed_sessions(client):
    _, session, subject = _lecture(client, starts_in=timedelta(hours=3))
    body = {"session_id": session["id"], "subject_id": subject["id"]}

    response = client.post("/api/v1/presence/record", json=body, headers=KIOSK)
    assert response.status_code == 400
    assert response.json()["reason"] == "session_not_active"

    client.patch(f"/api/v1/sessions/{session['id']}", json={"events_enabled": False}, headers=AUTH)
    response = client.post("/api/v1/presence/record", json=body, headers=KIOSK)
    assert response.json()["reason"] == "events_disabled"
