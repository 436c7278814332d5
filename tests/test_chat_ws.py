"""
Tests for the /chat/ws live chat socket.
"""

import base64

import pytest
from starlette.websockets import WebSocketDisconnect

from tests.conftest import TEST_API_KEY, VALID_PROFILE, auth_headers


def _receive_until(ws, frame_types, limit=10):
    """Read frames until every type in frame_types has been seen."""
    seen = {}
    for _ in range(limit):
        frame = ws.receive_json()
        seen.setdefault(frame["type"], frame)
        if all(t in seen for t in frame_types):
            return seen
    raise AssertionError(f"Did not receive {frame_types}, got {list(seen)}")


class TestChatSocket:

    def test_rejects_invalid_key(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/chat/ws", headers={"X-Api-Key": "wrong", "X-User-Id": "user-1"}) as ws:
                ws.receive_json()

    def test_precondition_without_profile(self, client):
        with client.websocket_connect("/chat/ws", headers=auth_headers("user-1")) as ws:
            frame = ws.receive_json()

        assert frame["type"] == "precondition"
        assert frame["code"] == "profile_incomplete"

    def test_snapshot_and_send(self, client):
        client.put("/profile", json=VALID_PROFILE, headers=auth_headers("user-1"))

        with client.websocket_connect("/chat/ws", headers=auth_headers("user-1")) as ws:
            snapshot = ws.receive_json()
            assert snapshot["type"] == "snapshot"
            assert snapshot["role"] == "customer"
            assert snapshot["messages"] == []

            ws.send_json({"type": "send", "text": "Hello"})
            frames = _receive_until(ws, {"sent", "message"})

        assert frames["sent"]["message"]["message"] == "Hello"
        assert frames["sent"]["message"]["receipt"] == "delivered"
        assert frames["message"]["message"]["message"] == "Hello"

        conversation_id = snapshot["conversation_id"]
        stored = client.get(
            f"/chat/conversations/{conversation_id}/messages", headers=auth_headers("user-1")
        ).json()
        assert [m["message"] for m in stored] == ["Hello"]

    def test_query_parameters_identify_caller(self, client):
        client.put("/profile", json=VALID_PROFILE, headers=auth_headers("user-1"))

        with client.websocket_connect(f"/chat/ws?apikey={TEST_API_KEY}&user_id=user-1") as ws:
            assert ws.receive_json()["type"] == "snapshot"

    def test_oversized_attachment_notifies(self, client):
        client.put("/profile", json=VALID_PROFILE, headers=auth_headers("user-1"))
        payload = base64.b64encode(b"x" * (6 * 1024 * 1024)).decode("ascii")

        with client.websocket_connect("/chat/ws", headers=auth_headers("user-1")) as ws:
            ws.receive_json()
            ws.send_json({"type": "attach", "filename": "big.pdf", "content_type": "application/pdf", "data": payload})
            frame = _receive_until(ws, {"notification"})["notification"]

        assert frame["level"] == "error"
        assert frame["text"] == "File size must be less than 5MB"

    def test_end_user_cannot_select(self, client):
        client.put("/profile", json=VALID_PROFILE, headers=auth_headers("user-1"))

        with client.websocket_connect("/chat/ws", headers=auth_headers("user-1")) as ws:
            ws.receive_json()
            ws.send_json({"type": "select", "conversation_id": "other"})
            frame = _receive_until(ws, {"notification"})["notification"]

        assert frame["text"] == "Only support staff can switch conversations"

    def test_malformed_frame_keeps_socket_open(self, client):
        client.put("/profile", json=VALID_PROFILE, headers=auth_headers("user-1"))

        with client.websocket_connect("/chat/ws", headers=auth_headers("user-1")) as ws:
            ws.receive_json()
            ws.send_text("not json")
            notification = _receive_until(ws, {"notification"})["notification"]

            ws.send_json({"type": "send", "text": "Still here"})
            frames = _receive_until(ws, {"sent"})

        assert notification["level"] == "error"
        assert notification["text"] == "Invalid frame"
        assert frames["sent"]["message"]["message"] == "Still here"
