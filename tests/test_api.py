import pytest
from fastapi.testclient import TestClient

from duet import db, main
from duet.main import app, optional_fanout
from duet.notifications import NEW_PUZZLE, UNLOCK_GRANTED, UNLOCK_REQUESTED, NotificationFanout
from duet.security import issue_token

MISSES = ["CRANE", "SLATE", "GRAPE", "TRADE", "CRAVE", "GRAVE"]


@pytest.fixture
def transport(make_transport):
    return make_transport()


@pytest.fixture
def client(transport):
    fanout = NotificationFanout(transport)
    app.dependency_overrides[optional_fanout] = lambda: fanout
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user_id):
    return {"X-Duet-Token": issue_token(user_id)}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requires_valid_token(client, puzzle):
    assert client.get(f"/api/puzzles/{puzzle.id}").status_code == 401
    assert client.get(f"/api/puzzles/{puzzle.id}", headers={"X-Duet-Token": "bob.forged"}).status_code == 401


def test_create_puzzle_notifies_partner(client, couple, transport):
    db.add_subscription("bob", "https://push.example/bob", "cDI1NmRo", "YXV0aA==")
    resp = client.post(
        "/api/puzzles",
        json={"target_word": "brave", "secret_message": "Dinner at eight?", "hint": "  Courageous "},
        headers=auth("alice"),
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["role"] == "setter"
    assert body["target_word"] == "BRAVE"
    assert body["hint"] == "Courageous"
    assert body["solver_id"] == "bob"
    assert transport.sent == [("https://push.example/bob", {"title": NEW_PUZZLE[0], "body": NEW_PUZZLE[1]})]

    today = client.get("/api/puzzles/today", params={"role": "received"}, headers=auth("bob"))
    assert today.status_code == 200
    assert today.json()["id"] == body["id"]
    assert today.json()["target_word"] is None
    assert today.json()["secret_message"] is None

    sent = client.get("/api/puzzles/today", params={"role": "sent"}, headers=auth("alice"))
    assert sent.json()["id"] == body["id"]


def test_create_puzzle_validation(client, couple):
    bad_word = client.post("/api/puzzles", json={"target_word": "BRAVES", "secret_message": "x"}, headers=auth("alice"))
    assert bad_word.status_code == 422
    empty = client.post("/api/puzzles", json={"target_word": "BRAVE", "secret_message": ""}, headers=auth("alice"))
    assert empty.status_code == 422


def test_create_puzzle_needs_partner(client):
    db.upsert_profile("carol", timezone="UTC")
    resp = client.post("/api/puzzles", json={"target_word": "BRAVE", "secret_message": "x"}, headers=auth("carol"))
    assert resp.status_code == 400


def test_duplicate_puzzle_conflicts(client, puzzle):
    resp = client.post(
        "/api/puzzles",
        json={"target_word": "HEART", "secret_message": "x", "date": "2026-02-14"},
        headers=auth("alice"),
    )
    assert resp.status_code == 409


def test_today_without_puzzle(client, couple):
    assert client.get("/api/puzzles/today", headers=auth("bob")).status_code == 404


def test_foreign_puzzle_is_not_found(client, puzzle):
    assert client.get(f"/api/puzzles/{puzzle.id}", headers=auth("mallory")).status_code == 404
    assert client.get("/api/puzzles/missing", headers=auth("bob")).status_code == 404


def test_guess_flow(client, puzzle):
    resp = client.post(f"/api/puzzles/{puzzle.id}/guess", json={"guess": "crane"}, headers=auth("bob"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["accepted"] is True
    assert body["feedback"] == {"guess": "CRANE", "marks": ["absent", "exact", "exact", "absent", "exact"]}
    assert body["puzzle"]["status"] == "playing"
    assert body["puzzle"]["target_word"] is None

    won = client.post(f"/api/puzzles/{puzzle.id}/guess", json={"guess": "BRAVE"}, headers=auth("bob")).json()
    assert won["puzzle"]["status"] == "won"
    assert won["puzzle"]["secret_message"] == "Dinner at eight?"

    late = client.post(f"/api/puzzles/{puzzle.id}/guess", json={"guess": "SLATE"}, headers=auth("bob")).json()
    assert late["accepted"] is False
    assert late["feedback"] is None
    assert [g["guess"] for g in late["puzzle"]["guesses"]] == ["CRANE", "BRAVE"]


def test_malformed_guess_rejected(client, puzzle):
    resp = client.post(f"/api/puzzles/{puzzle.id}/guess", json={"guess": "CR4NE"}, headers=auth("bob"))
    assert resp.status_code == 422
    assert db.get_puzzle(puzzle.id).guesses == []


def test_setter_cannot_guess(client, puzzle):
    resp = client.post(f"/api/puzzles/{puzzle.id}/guess", json={"guess": "BRAVE"}, headers=auth("alice"))
    assert resp.status_code == 200
    assert resp.json()["accepted"] is False
    assert db.get_puzzle(puzzle.id).guesses == []


def test_unlock_flow(client, puzzle, transport):
    db.add_subscription("alice", "https://push.example/alice", "cDI1NmRo", "YXV0aA==")
    db.add_subscription("bob", "https://push.example/bob", "cDI1NmRo", "YXV0aA==")

    early = client.post(f"/api/puzzles/{puzzle.id}/request-unlock", headers=auth("bob")).json()
    assert early["accepted"] is False

    db.update_puzzle(puzzle.id, {"guesses": MISSES})
    requested = client.post(f"/api/puzzles/{puzzle.id}/request-unlock", headers=auth("bob")).json()
    assert requested["accepted"] is True
    assert requested["puzzle"]["unlock_status"] == "requested"
    assert requested["puzzle"]["secret_message"] is None
    assert requested["puzzle"]["target_word"] == "BRAVE"

    # Only the setter may grant
    assert client.post(f"/api/puzzles/{puzzle.id}/grant-unlock", headers=auth("bob")).json()["accepted"] is False
    granted = client.post(f"/api/puzzles/{puzzle.id}/grant-unlock", headers=auth("alice")).json()
    assert granted["accepted"] is True
    assert granted["puzzle"]["unlock_status"] == "revealed"

    viewed = client.post(f"/api/puzzles/{puzzle.id}/viewed", headers=auth("bob")).json()
    assert viewed["accepted"] is True
    assert viewed["puzzle"]["unlock_status"] == "viewed"
    assert viewed["puzzle"]["secret_message"] == "Dinner at eight?"

    again = client.post(f"/api/puzzles/{puzzle.id}/viewed", headers=auth("bob")).json()
    assert again["accepted"] is False

    assert transport.sent == [
        ("https://push.example/alice", {"title": UNLOCK_REQUESTED[0], "body": UNLOCK_REQUESTED[1]}),
        ("https://push.example/bob", {"title": UNLOCK_GRANTED[0], "body": UNLOCK_GRANTED[1]}),
    ]


def test_register_device(client, couple):
    payload = {"endpoint": "https://push.example/bob", "p256dh": "cDI1NmRo", "auth": "YXV0aA==", "timezone": "Europe/Paris"}
    first = client.post("/api/devices", json=payload, headers=auth("bob"))
    assert first.status_code == 200
    assert first.json() == {"ok": True, "message": "Subscribed"}
    second = client.post("/api/devices", json=payload, headers=auth("bob")).json()
    assert second["message"] == "Already subscribed"
    assert len(db.list_subscriptions("bob")) == 1
    assert db.get_profile("bob")["timezone"] == "Europe/Paris"


@pytest.mark.parametrize("field,value", [("p256dh", "not base64!"), ("timezone", "Mars/Olympus")])
def test_register_device_validation(client, field, value):
    payload = {"endpoint": "https://push.example/bob", "p256dh": "cDI1NmRo", "auth": "YXV0aA=="}
    payload[field] = value
    assert client.post("/api/devices", json=payload, headers=auth("bob")).status_code == 422


def test_notify_partner_only(client, couple, transport):
    db.add_subscription("bob", "https://push.example/bob", "cDI1NmRo", "YXV0aA==")
    body = {"target_user_id": "bob", "title": "Hi", "body": "Thinking of you"}
    assert client.post("/api/notify", json=body, headers=auth("alice")).status_code == 202
    assert transport.sent == [("https://push.example/bob", {"title": "Hi", "body": "Thinking of you"})]

    stranger = {"target_user_id": "bob", "title": "Hi", "body": "spam"}
    assert client.post("/api/notify", json=stranger, headers=auth("mallory")).status_code == 403


def test_notify_without_push_configured(couple):
    app.dependency_overrides[optional_fanout] = lambda: None
    try:
        resp = TestClient(app).post(
            "/api/notify", json={"target_user_id": "bob", "title": "Hi", "body": "x"}, headers=auth("alice")
        )
    finally:
        app.dependency_overrides.clear()
    assert resp.status_code == 503


def test_run_reminders_requires_admin(client, couple):
    resp = client.post("/api/reminders/run", headers=auth("bob"))
    assert resp.status_code == 403


def test_run_reminders(client, couple, monkeypatch):
    monkeypatch.setattr(main, "REMINDER_ADMINS", ["alice"])
    resp = client.post("/api/reminders/run", headers=auth("alice"))
    assert resp.status_code == 200
    assert resp.json()["reminded"] == len(resp.json()["users"])


def test_favorites(client, puzzle):
    other = db.create_puzzle("bob", "alice", "2026-02-15", "HEART", "hey")
    assert client.post(f"/api/favorites/{puzzle.id}", headers=auth("alice")).json()["message"] == "Added"
    assert client.post(f"/api/favorites/{other.id}", headers=auth("alice")).json()["message"] == "Added"
    assert client.post(f"/api/favorites/{puzzle.id}", headers=auth("alice")).json()["message"] == "Already a favorite"
    assert client.post(f"/api/favorites/{puzzle.id}", headers=auth("mallory")).status_code == 404

    favorites = client.get("/api/favorites", headers=auth("alice")).json()
    assert [p["id"] for p in favorites["sent"]] == [puzzle.id]
    assert [p["id"] for p in favorites["received"]] == [other.id]

    assert client.delete(f"/api/favorites/{puzzle.id}", headers=auth("alice")).json()["message"] == "Removed"
    assert client.delete(f"/api/favorites/{puzzle.id}", headers=auth("alice")).json()["message"] == "Not a favorite"
