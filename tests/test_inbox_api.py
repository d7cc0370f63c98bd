import uuid
from datetime import UTC, datetime, timedelta

import pytest

from app.models.inbox import Message, MessageStatus
from app.services.auth_flow import decode_room_token, issue_access_token


def _wa_ok(vendor_id="wamid.OUT1"):
    return {"messaging_product": "whatsapp", "messages": [{"id": vendor_id}]}


class TestAuth:
    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": "Bearer not-a-jwt"},
            {"Authorization": "Basic b3A6cHc="},
        ],
    )
    def test_operator_token_required(self, client, headers):
        response = client.get("/api/v1/inbox/conversations", headers=headers)

        assert response.status_code == 401
        assert response.json()["code"] == "http_401"

    def test_expired_token_is_rejected(self, client):
        token = issue_access_token("operator-1", ttl_minutes=-1)

        response = client.get(
            "/api/v1/inbox/conversations", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401


class TestConversations:
    def test_list_and_get(self, client, operator_headers, whatsapp_conversation, messenger_conversation):
        response = client.get("/api/v1/inbox/conversations", headers=operator_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        assert {item["platform"] for item in body["items"]} == {"whatsapp", "messenger"}

        filtered = client.get(
            "/api/v1/inbox/conversations", params={"platform": "whatsapp"}, headers=operator_headers
        ).json()
        assert [item["id"] for item in filtered["items"]] == [str(whatsapp_conversation.id)]

        single = client.get(
            f"/api/v1/inbox/conversations/{whatsapp_conversation.id}", headers=operator_headers
        )
        assert single.status_code == 200
        assert single.json()["contact_name"] == "Aigerim"

    def test_unknown_conversation_is_404(self, client, operator_headers):
        response = client.get(f"/api/v1/inbox/conversations/{uuid.uuid4()}", headers=operator_headers)

        assert response.status_code == 404
        assert response.json()["code"] == "conversation_not_found"

    def test_patch_block_and_lead(self, client, operator_headers, whatsapp_conversation, published):
        lead_id = str(uuid.uuid4())

        response = client.patch(
            f"/api/v1/inbox/conversations/{whatsapp_conversation.id}",
            json={"is_blocked": True, "lead_id": lead_id},
            headers=operator_headers,
        )

        assert response.status_code == 200
        assert response.json()["is_blocked"] is True
        assert response.json()["lead_id"] == lead_id

    def test_mark_read(self, client, db_session, operator_headers, whatsapp_conversation, published):
        whatsapp_conversation.unread_count = 5
        db_session.commit()

        response = client.post(
            f"/api/v1/inbox/conversations/{whatsapp_conversation.id}/read", headers=operator_headers
        )

        assert response.status_code == 200
        assert response.json()["unread_count"] == 0


class TestMessages:
    def test_history_pages(self, client, operator_headers, whatsapp_conversation, outgoing_message):
        t0 = datetime(2025, 10, 9, 8, 0, tzinfo=UTC)
        for i in range(3):
            outgoing_message(whatsapp_conversation, f"wamid.{i}", created_at=t0 + timedelta(minutes=i))

        url = f"/api/v1/inbox/conversations/{whatsapp_conversation.id}/messages"
        first = client.get(url, params={"limit": 2}, headers=operator_headers).json()
        assert [m["vendor_message_id"] for m in first["items"]] == ["wamid.1", "wamid.2"]
        assert first["has_more"] is True

        second = client.get(
            url, params={"limit": 2, "cursor": first["next_cursor"]}, headers=operator_headers
        ).json()
        assert [m["vendor_message_id"] for m in second["items"]] == ["wamid.0"]
        assert second["has_more"] is False

    def test_send_text(self, client, operator_headers, whatsapp_conversation, graph, published):
        graph.add("POST", "/1098765432/messages", json=_wa_ok())

        response = client.post(
            f"/api/v1/inbox/conversations/{whatsapp_conversation.id}/messages",
            json={"text": "Hello"},
            headers=operator_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "sent"
        assert body["vendor_message_id"] == "wamid.OUT1"
        assert body["sent_by_id"] == "operator-1"

    def test_send_failure_shows_vendor_error(self, client, db_session, operator_headers, whatsapp_conversation, graph):
        graph.add(
            "POST",
            "/1098765432/messages",
            status_code=400,
            json={"error": {"message": "(#131047) Re-engagement message"}},
        )

        response = client.post(
            f"/api/v1/inbox/conversations/{whatsapp_conversation.id}/messages",
            json={"text": "Hello"},
            headers=operator_headers,
        )

        assert response.status_code == 502
        body = response.json()
        assert body["code"] == "send_failed"
        assert body["details"] == {"vendor_error": "(#131047) Re-engagement message"}
        assert db_session.query(Message).one().status == MessageStatus.failed

    def test_blocked_conversation_send_is_conflict(self, client, db_session, operator_headers, whatsapp_conversation, graph):
        whatsapp_conversation.is_blocked = True
        db_session.commit()

        response = client.post(
            f"/api/v1/inbox/conversations/{whatsapp_conversation.id}/messages",
            json={"text": "Hello"},
            headers=operator_headers,
        )

        assert response.status_code == 409
        assert graph.requests == []

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"text": "   "},
            {"text": "hi", "media_url": "https://cdn.example.com/a.jpg", "media_kind": "image"},
            {"media_url": "https://cdn.example.com/a.jpg", "media_kind": "text"},
            {"media_url": "file:///etc/passwd", "media_kind": "image"},
        ],
    )
    def test_invalid_send_payload(self, client, operator_headers, whatsapp_conversation, payload):
        response = client.post(
            f"/api/v1/inbox/conversations/{whatsapp_conversation.id}/messages",
            json=payload,
            headers=operator_headers,
        )

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_upload_media(self, client, operator_headers, whatsapp_conversation, graph, published):
        graph.add("POST", "/1098765432/media", json={"id": "media-9"})
        graph.add("POST", "/1098765432/messages", json=_wa_ok("wamid.DOC"))

        response = client.post(
            f"/api/v1/inbox/conversations/{whatsapp_conversation.id}/media",
            files={"file": ("timetable.pdf", b"%PDF-1.7", "application/pdf")},
            data={"caption": "Autumn timetable"},
            headers=operator_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["message_type"] == "document"
        assert body["media_ref"] == "media-9"
        assert body["media_filename"] == "timetable.pdf"

    def test_upload_to_messenger_is_rejected(self, client, operator_headers, messenger_conversation, graph):
        response = client.post(
            f"/api/v1/inbox/conversations/{messenger_conversation.id}/media",
            files={"file": ("a.jpg", b"\xff\xd8", "image/jpeg")},
            headers=operator_headers,
        )

        assert response.status_code == 400
        assert graph.requests == []

    def test_empty_upload_is_rejected(self, client, operator_headers, whatsapp_conversation, graph):
        response = client.post(
            f"/api/v1/inbox/conversations/{whatsapp_conversation.id}/media",
            files={"file": ("a.jpg", b"", "image/jpeg")},
            headers=operator_headers,
        )

        assert response.status_code == 400


class TestWhatsApp:
    def test_start_conversation(self, client, operator_headers, graph, published):
        graph.add("POST", "/1098765432/messages", json=_wa_ok())
        lead_id = str(uuid.uuid4())

        response = client.post(
            "/api/v1/inbox/whatsapp/conversations",
            json={"phone": "+7 701 555 00 11", "text": "Welcome", "contact_name": "Marat", "lead_id": lead_id},
            headers=operator_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["conversation"]["external_user_id"] == "77015550011"
        assert body["conversation"]["lead_id"] == lead_id
        assert body["conversation"]["last_message_preview"] == "Welcome"
        assert body["message"]["body"] == "Welcome"

    def test_invalid_phone(self, client, operator_headers, graph):
        response = client.post(
            "/api/v1/inbox/whatsapp/conversations",
            json={"phone": "+-()-  ", "text": "Welcome"},
            headers=operator_headers,
        )

        assert response.status_code == 400

    def test_list_templates(self, client, operator_headers, graph):
        graph.add(
            "GET",
            "/waba-1/message_templates",
            json={
                "data": [
                    {
                        "name": "enrolment_reminder",
                        "language": "ru",
                        "status": "APPROVED",
                        "category": "UTILITY",
                        "components": [{"type": "BODY", "text": "Hello {{1}}"}],
                    }
                ]
            },
        )

        response = client.get("/api/v1/inbox/whatsapp/templates", headers=operator_headers)

        assert response.status_code == 200
        assert response.json()[0]["name"] == "enrolment_reminder"
        (request,) = graph.requests
        assert request.url.params["status"] == "APPROVED"

    def test_send_template(self, client, operator_headers, graph, published):
        graph.add("POST", "/1098765432/messages", json=_wa_ok("wamid.TPL"))

        response = client.post(
            "/api/v1/inbox/whatsapp/templates/send",
            json={"phone": "77011234567", "template_name": "enrolment_reminder", "language_code": "ru"},
            headers=operator_headers,
        )

        assert response.status_code == 201
        assert response.json()["message"]["message_type"] == "template"


class TestRoomTokens:
    def test_issue_dispatch_token(self, client, operator_headers):
        response = client.post(
            "/api/v1/inbox/realtime/room-token", json={"room": "dispatch"}, headers=operator_headers
        )

        assert response.status_code == 200
        body = response.json()
        assert body["expires_in"] == 300
        assert decode_room_token(body["token"], "dispatch", "operator-1")["typ"] == "room"

    def test_conversation_room_requires_existing_conversation(self, client, operator_headers, whatsapp_conversation):
        ok = client.post(
            "/api/v1/inbox/realtime/room-token",
            json={"room": f"conversation:{whatsapp_conversation.id}"},
            headers=operator_headers,
        )
        missing = client.post(
            "/api/v1/inbox/realtime/room-token",
            json={"room": f"conversation:{uuid.uuid4()}"},
            headers=operator_headers,
        )
        unknown = client.post(
            "/api/v1/inbox/realtime/room-token", json={"room": "everything"}, headers=operator_headers
        )

        assert ok.status_code == 200
        assert missing.status_code == 404
        assert unknown.status_code == 400


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"status": "ok"}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "inbox_webhook_events_total" in metrics.text


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
