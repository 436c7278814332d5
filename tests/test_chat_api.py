"""
Tests for the chat REST endpoints and attachment storage.

Tests cover:
- Conversation creation and reuse
- Sending and listing messages
- Read receipts
- Typing status upserts
- Attachment upload size limit and public download
"""

from pathlib import Path

import pytest

from tests.conftest import VALID_PROFILE, auth_headers, seed_profile


@pytest.fixture
def chat_client(client):
    """Client with a named end user and an admin."""
    client.put("/profile", json=VALID_PROFILE, headers=auth_headers("user-1"))
    seed_profile(client.app.state.platform, "admin-1", is_admin=True)
    return client


@pytest.fixture
def conversation_id(chat_client):
    return chat_client.get("/chat/conversation", headers=auth_headers("user-1")).json()["id"]


def _send(client, conversation_id, user_id, text, **extra):
    return client.post(
        f"/chat/conversations/{conversation_id}/messages",
        json=dict(message=text, **extra),
        headers=auth_headers(user_id),
    )


def _messages(client, conversation_id, user_id="user-1"):
    return client.get(
        f"/chat/conversations/{conversation_id}/messages", headers=auth_headers(user_id)
    ).json()


class TestConversation:

    def test_requires_profile_name(self, client):
        response = client.get("/chat/conversation", headers=auth_headers("user-1"))

        assert response.status_code == 412
        assert response.json()["detail"] == (
            "Please complete your profile information before starting a chat with support"
        )

    def test_reopen_reuses_conversation(self, chat_client, conversation_id):
        again = chat_client.get("/chat/conversation", headers=auth_headers("user-1")).json()
        assert again["id"] == conversation_id

        listed = chat_client.get("/admin/conversations", headers=auth_headers("admin-1")).json()
        assert [c["id"] for c in listed] == [conversation_id]

    def test_support_does_not_get_own_conversation(self, chat_client):
        response = chat_client.get("/chat/conversation", headers=auth_headers("admin-1"))
        assert response.status_code == 400

    def test_end_user_cannot_list_conversations(self, chat_client):
        response = chat_client.get("/admin/conversations", headers=auth_headers("user-1"))
        assert response.status_code == 403


class TestMessages:

    def test_send_hello(self, chat_client, conversation_id):
        response = _send(chat_client, conversation_id, "user-1", "Hello")

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "Hello"
        assert data["is_support"] is False
        assert data["attachment_url"] is None
        assert data["attachment_type"] is None
        assert data["read_at"] is None

        assert [m["message"] for m in _messages(chat_client, conversation_id)] == ["Hello"]

    def test_messages_in_creation_order(self, chat_client, conversation_id):
        for i in range(5):
            sender = "user-1" if i % 2 == 0 else "admin-1"
            _send(chat_client, conversation_id, sender, f"message {i}")

        messages = _messages(chat_client, conversation_id)

        assert [m["message"] for m in messages] == [f"message {i}" for i in range(5)]
        created = [m["created_at"] for m in messages]
        assert created == sorted(created)

    def test_support_messages_flagged(self, chat_client, conversation_id):
        data = _send(chat_client, conversation_id, "admin-1", "How can we help?").json()
        assert data["is_support"] is True
        assert data["user_id"] == "admin-1"

    def test_empty_message_rejected(self, chat_client, conversation_id):
        response = _send(chat_client, conversation_id, "user-1", "   ")

        assert response.status_code == 422
        assert response.json()["code"] == "empty_message"
        assert _messages(chat_client, conversation_id) == []

    def test_attachment_only_message_allowed(self, chat_client, conversation_id):
        response = _send(
            chat_client, conversation_id, "user-1", "",
            attachment_url="http://testserver/storage/profile-documents/user-1/abc.pdf",
            attachment_type="application/pdf",
        )
        assert response.status_code == 201
        assert response.json()["attachment_type"] == "application/pdf"

    def test_other_user_cannot_read_or_write(self, chat_client, conversation_id):
        response = chat_client.get(
            f"/chat/conversations/{conversation_id}/messages", headers=auth_headers("user-2")
        )
        assert response.status_code == 403

        response = _send(chat_client, conversation_id, "user-2", "Hi")
        assert response.status_code == 403

    def test_unknown_conversation(self, chat_client):
        response = chat_client.get("/chat/conversations/missing/messages", headers=auth_headers("user-1"))
        assert response.status_code == 404


class TestReadReceipts:

    def test_mark_read_is_idempotent(self, chat_client, conversation_id):
        message_id = _send(chat_client, conversation_id, "user-1", "Hello").json()["id"]

        first = chat_client.post(f"/chat/messages/{message_id}/read", headers=auth_headers("admin-1"))
        assert first.status_code == 200
        assert first.json()["read_at"] is not None

        second = chat_client.post(f"/chat/messages/{message_id}/read", headers=auth_headers("admin-1"))
        assert second.json()["read_at"] == first.json()["read_at"]

    def test_sender_does_not_mark_own_message(self, chat_client, conversation_id):
        message_id = _send(chat_client, conversation_id, "user-1", "Hello").json()["id"]

        response = chat_client.post(f"/chat/messages/{message_id}/read", headers=auth_headers("user-1"))

        assert response.status_code == 200
        assert response.json()["read_at"] is None

    def test_unknown_message(self, chat_client):
        response = chat_client.post("/chat/messages/9999/read", headers=auth_headers("admin-1"))
        assert response.status_code == 404


class TestTyping:

    def test_upserts_single_row(self, chat_client, conversation_id):
        url = f"/chat/conversations/{conversation_id}/typing"
        for flag in (True, False, True):
            response = chat_client.put(url, json={"is_typing": flag}, headers=auth_headers("user-1"))
            assert response.status_code == 200

        rows = chat_client.get(url, headers=auth_headers("user-1")).json()

        assert len(rows) == 1
        assert rows[0]["user_id"] == "user-1"
        assert rows[0]["is_typing"] is True

    def test_one_row_per_participant(self, chat_client, conversation_id):
        url = f"/chat/conversations/{conversation_id}/typing"
        chat_client.put(url, json={"is_typing": True}, headers=auth_headers("user-1"))
        chat_client.put(url, json={"is_typing": False}, headers=auth_headers("admin-1"))

        rows = chat_client.get(url, headers=auth_headers("admin-1")).json()

        assert {r["user_id"]: r["is_typing"] for r in rows} == {"user-1": True, "admin-1": False}


class TestAttachments:

    def test_upload_and_download(self, chat_client):
        response = chat_client.post(
            "/chat/attachments",
            content=b"%PDF-1.4 payslip",
            headers=dict(auth_headers("user-1"), **{"X-Filename": "payslip.pdf", "Content-Type": "application/pdf"}),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["path"].startswith("user-1/")
        assert data["path"].endswith(".pdf")
        assert data["size"] == len(b"%PDF-1.4 payslip")
        assert data["url"] == f"http://testserver/storage/profile-documents/{data['path']}"

        download = chat_client.get(f"/storage/profile-documents/{data['path']}")
        assert download.status_code == 200
        assert download.content == b"%PDF-1.4 payslip"

    def test_oversized_upload_rejected_before_storing(self, chat_client, settings):
        response = chat_client.post(
            "/chat/attachments",
            content=b"x" * (6 * 1024 * 1024),
            headers=dict(auth_headers("user-1"), **{"X-Filename": "big.bin"}),
        )

        assert response.status_code == 413
        assert response.json()["detail"] == "File size must be less than 5MB"
        assert not (Path(settings.STORAGE_DIR) / "profile-documents" / "user-1").exists()

    def test_unknown_object(self, chat_client):
        response = chat_client.get("/storage/profile-documents/user-1/missing.pdf")
        assert response.status_code == 404

    def test_path_traversal_refused(self, chat_client):
        response = chat_client.get("/storage/profile-documents/..%2F..%2Fetc%2Fpasswd")
        assert response.status_code == 404
