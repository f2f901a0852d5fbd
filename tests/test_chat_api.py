"""Tests for the chat persistence endpoints."""

import sqlite3

import pytest

from earthforus import database


def post(client, event_id=42, **body):
    payload = {"message": "hello", "event_id": event_id, "user_id": 1, "user_name": "Ada"}
    payload.update(body)
    return client.post(f"/api/events/{event_id}/messages", json=payload)


class TestCreateMessage:
    def test_creates_and_returns_message(self, client):
        resp = post(client, message="  see you at 9  ")
        assert resp.status_code == 201
        data = resp.json()
        assert data["id"] > 0
        assert data["event_id"] == 42
        assert data["user_id"] == 1
        assert data["user_name"] == "Ada"
        assert data["message"] == "see you at 9"
        assert data["is_system"] is False
        assert data["created_at"].endswith("Z")

    @pytest.mark.parametrize("message", ["", "   ", None])
    def test_empty_message_rejected(self, client, message):
        resp = post(client, message=message)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Message is required and cannot be empty"

    def test_too_long_message_rejected(self, client):
        resp = post(client, message="x" * 1001)
        assert resp.status_code == 400

    def test_max_length_message_accepted(self, client):
        assert post(client, message="x" * 1000).status_code == 201

    def test_missing_user_is_unauthorized(self, client):
        resp = post(client, user_id=None)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Authentication required"

    def test_missing_name_defaults(self, client):
        resp = post(client, user_name="  ")
        assert resp.json()["user_name"] == "Anonymous User"

    def test_body_event_id_must_match_path(self, client):
        resp = client.post(
            "/api/events/42/messages",
            json={"message": "hi", "event_id": 7, "user_id": 1, "user_name": "Ada"},
        )
        assert resp.status_code == 400

    def test_body_event_id_optional(self, client):
        resp = client.post(
            "/api/events/42/messages", json={"message": "hi", "user_id": 1}
        )
        assert resp.status_code == 201
        assert resp.json()["event_id"] == 42

    @pytest.mark.parametrize("event_id", [0, -5])
    def test_invalid_event_id(self, client, event_id):
        resp = post(client, event_id=event_id)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid event ID"


class TestListMessages:
    def test_returns_event_messages_in_order(self, client):
        first = post(client, message="one").json()
        post(client, event_id=7, message="elsewhere")
        second = post(client, message="two").json()

        resp = client.get("/api/events/42/messages")
        assert resp.status_code == 200
        assert [m["id"] for m in resp.json()] == [first["id"], second["id"]]

    def test_limit_and_offset(self, client):
        ids = [post(client, message=str(n)).json()["id"] for n in range(5)]

        resp = client.get("/api/events/42/messages", params={"limit": 2, "offset": 1})
        assert [m["id"] for m in resp.json()] == ids[1:3]

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 201}, {"offset": -1}])
    def test_bad_paging_rejected(self, client, params):
        assert client.get("/api/events/42/messages", params=params).status_code == 422

    def test_empty_event(self, client):
        assert client.get("/api/events/99/messages").json() == []

    def test_invalid_event_id(self, client):
        assert client.get("/api/events/0/messages").status_code == 400

    def test_storage_failure_is_logged(self, client, error_log, tmp_path, monkeypatch):
        broken = tmp_path / "broken.db"
        sqlite3.connect(broken).close()
        monkeypatch.setattr(database, "DB_PATH", str(broken))

        resp = client.get("/api/events/42/messages")

        assert resp.status_code == 500
        error_log.close()
        text = error_log.path.read_text(encoding="utf-8")
        assert "Chat Error" in text
        assert "Failed to load chat messages" in text
        assert '"eventId": 42' in text
