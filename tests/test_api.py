from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from stagecall import api, database
from stagecall.crud import block_day, create_member
from stagecall.lifecycle import get_lifecycle
from stagecall.utils import parse_date


@pytest.fixture()
def client(monkeypatch, lifecycle):
    """FastAPI test client with the scheduler disabled and a fixed clock."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    api.app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    try:
        with TestClient(api.app) as test_client:
            yield test_client
    finally:
        api.app.dependency_overrides.clear()


def _auth(member) -> dict[str, str]:
    return {"Authorization": f"Bearer {member.api_token}"}


def _publish_payload(*invitees) -> dict:
    return {
        "title": "Tech rehearsal",
        "date": "2030-03-20",
        "time": "19:00",
        "location": "Studio B",
        "invitees": [member.id for member in invitees],
    }


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_draft_requires_token(client, roster):
    response = client.post("/api/v1/rehearsals/drafts")
    assert response.status_code == 401
    assert response.json()["error"] == "Unauthorized"

    forbidden = client.post("/api/v1/rehearsals/drafts", headers=_auth(roster["alice"]))
    assert forbidden.status_code == 403
    assert forbidden.json() == {
        "error": "Forbidden",
        "message": "You are not allowed to manage the rehearsal schedule.",
    }


def test_draft_publish_update_delete_flow(client, roster, clock, realtime):
    planner, alice, bob = roster["planner"], roster["alice"], roster["bob"]

    created = client.post("/api/v1/rehearsals/drafts", json={}, headers=_auth(planner))
    assert created.status_code == 201
    body = created.json()
    rehearsal_id = body["id"]
    assert body["rehearsal"]["status"] == "draft"
    assert body["warnings"] == []

    clock.advance(minutes=1)
    published = client.post(
        f"/api/v1/rehearsals/{rehearsal_id}/publish",
        json=_publish_payload(alice, bob),
        headers=_auth(planner),
    )
    assert published.status_code == 200
    rehearsal = published.json()["rehearsal"]
    assert rehearsal["status"] == "planned"
    assert rehearsal["required_roles"] == ["soprano", "tech", "tenor"]

    again = client.post(
        f"/api/v1/rehearsals/{rehearsal_id}/publish",
        json=_publish_payload(alice),
        headers=_auth(planner),
    )
    assert again.status_code == 409
    assert again.json()["error"] == "NotDraft"

    clock.advance(minutes=1)
    patched = client.patch(
        f"/api/v1/rehearsals/{rehearsal_id}",
        json={"location": "Main stage"},
        headers=_auth(planner),
    )
    assert patched.status_code == 200
    assert patched.json()["rehearsal"]["location"] == "Main stage"

    seen = client.get(f"/api/v1/rehearsals/{rehearsal_id}", headers=_auth(alice))
    assert seen.status_code == 200
    hidden = client.get(f"/api/v1/rehearsals/{rehearsal_id}", headers=_auth(roster["cleo"]))
    assert hidden.status_code == 404

    deleted = client.delete(f"/api/v1/rehearsals/{rehearsal_id}", headers=_auth(planner))
    assert deleted.status_code == 200
    assert deleted.json()["title"] == "Tech rehearsal"
    assert realtime.history(alice.id)[-1]["changes"]["status"] == "deleted"

    gone = client.get(f"/api/v1/rehearsals/{rehearsal_id}", headers=_auth(planner))
    assert gone.status_code == 404


def test_validation_errors_map_to_400(client, roster):
    planner = roster["planner"]
    created = client.post(
        "/api/v1/rehearsals",
        json={"title": "x", "date": "2030-03-20", "time": "19:00"},
        headers=_auth(planner),
    )
    assert created.status_code == 400
    assert created.json()["error"] == "ValidationFailed"

    bad_option = client.post(
        "/api/v1/rehearsals",
        json={"title": "Run", "date": "2030-03-20", "time": "19:00", "deadline_option": "3d"},
        headers=_auth(planner),
    )
    assert bad_option.status_code == 400


def test_discard_endpoint(client, roster):
    planner = roster["planner"]
    draft_id = client.post(
        "/api/v1/rehearsals/drafts", json={"title": "Scratch"}, headers=_auth(planner)
    ).json()["id"]

    discarded = client.post(f"/api/v1/rehearsals/{draft_id}/discard", headers=_auth(planner))
    assert discarded.status_code == 200
    missing = client.post(f"/api/v1/rehearsals/{draft_id}/discard", headers=_auth(planner))
    assert missing.status_code == 404


def test_notifications_feed_and_respond(client, roster, clock, push_sender):
    planner, alice = roster["planner"], roster["alice"]
    created = client.post(
        "/api/v1/rehearsals", json=_publish_payload(alice), headers=_auth(planner)
    )
    assert created.status_code == 201

    assert client.get("/api/v1/notifications").status_code == 401
    feed = client.get("/api/v1/notifications", headers=_auth(alice)).json()["notifications"]
    assert len(feed) == 1
    recipient_id = feed[0]["recipient_id"]

    clock.advance(minutes=10)
    answered = client.post(
        "/api/v1/notifications/respond",
        json={"recipient_id": recipient_id, "response": "no"},
        headers=_auth(alice),
    )
    assert answered.status_code == 200
    assert answered.json()["state"] == "responded"
    assert push_sender.titles_for(planner.id) == ["Absence: Alice cannot attend"]

    planner_feed = client.get(
        "/api/v1/notifications", headers=_auth(planner)
    ).json()["notifications"]
    assert planner_feed[0]["type"] == "rehearsal-attendance"

    alice_feed = client.get("/api/v1/notifications", headers=_auth(alice)).json()[
        "notifications"
    ]
    assert alice_feed[0]["attendance_status"] == "no"


def test_respond_after_deadline_returns_422(client, roster, clock):
    planner, alice = roster["planner"], roster["alice"]
    client.post("/api/v1/rehearsals", json=_publish_payload(alice), headers=_auth(planner))
    recipient_id = client.get(
        "/api/v1/notifications", headers=_auth(alice)
    ).json()["notifications"][0]["recipient_id"]

    clock.advance(days=30)
    response = client.post(
        "/api/v1/notifications/respond",
        json={"recipient_id": recipient_id, "response": "no"},
        headers=_auth(alice),
    )
    assert response.status_code == 422
    assert response.json()["error"] == "DeadlinePassed"


def test_availability(client, roster):
    planner, alice = roster["planner"], roster["alice"]
    with database.get_session() as session:
        block_day(session, member=alice, day=parse_date("2030-03-20"), reason="Trip")

    response = client.get("/api/v1/availability?date=2030-03-20", headers=_auth(planner))
    assert response.status_code == 200
    assert response.json() == {"date": "2030-03-20", "blocked_member_ids": [alice.id]}

    assert client.get(
        "/api/v1/availability?date=2030-03-20", headers=_auth(alice)
    ).status_code == 403
    assert client.get(
        "/api/v1/availability?date=20-03-2030", headers=_auth(planner)
    ).status_code == 400


def test_deadline_options(client):
    response = client.get("/api/v1/deadline-options")
    assert response.status_code == 200
    data = response.json()
    assert data["default"] == "1w"
    assert [option["value"] for option in data["options"]][:2] == ["none", "12h"]


def test_websocket_replays_history_and_answers_ping(client, roster, realtime, monkeypatch):
    planner, alice = roster["planner"], roster["alice"]
    monkeypatch.setattr(api, "hub", realtime)
    client.post("/api/v1/rehearsals", json=_publish_payload(alice), headers=_auth(planner))

    with client.websocket_connect(f"/ws/members/{alice.api_token}") as websocket:
        history = websocket.receive_json()
        assert history["type"] == "history"
        assert history["events"][0]["type"] == "rehearsal_created"
        websocket.send_text("ping")
        assert websocket.receive_text() == "pong"


def test_websocket_rejects_unknown_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/members/not-a-token") as websocket:
            websocket.receive_json()


def test_member_tokens_are_unique(roster):
    with database.get_session() as session:
        extra = create_member(session, name="Dora", role="bass")
    tokens = {member.api_token for member in roster.values()} | {extra.api_token}
    assert len(tokens) == 5
