"""Tests for webhook payload normalization."""

from datetime import datetime, timezone

from app.models.inbox import MessageType, Platform
from app.services.inbox.normalizer import (
    DeliveryReceipt,
    MessageReceived,
    ReadReceipt,
    normalize_webhook,
    parse_vendor_timestamp,
)
from tests.mocks import (
    messenger_payload,
    messenger_text,
    whatsapp_payload,
    whatsapp_status,
    whatsapp_text,
)


def test_parse_vendor_timestamp_seconds_and_milliseconds():
    expected = datetime(2025, 10, 9, 8, 53, 20, tzinfo=timezone.utc)

    assert parse_vendor_timestamp("1760000000") == expected
    assert parse_vendor_timestamp(1760000000000) == expected
    assert parse_vendor_timestamp(None) is None
    assert parse_vendor_timestamp("not-a-number") is None


def test_whatsapp_text_message_with_contact_name():
    body = whatsapp_payload(
        contacts=[{"wa_id": "77011234567", "profile": {"name": "Aigerim"}}],
        messages=[whatsapp_text("77011234567", "wamid.IN1", "Salem!")],
    )

    events = list(normalize_webhook(body))

    assert len(events) == 1
    event = events[0]
    assert isinstance(event, MessageReceived)
    assert event.platform == Platform.whatsapp
    assert event.external_user_id == "77011234567"
    assert event.vendor_message_id == "wamid.IN1"
    assert event.message_type == MessageType.text
    assert event.text == "Salem!"
    assert event.contact_name == "Aigerim"
    assert event.contact_phone == "+77011234567"


def test_whatsapp_media_messages_map_to_internal_types():
    messages = [
        {"from": "1", "id": "m-img", "type": "image", "image": {"id": "media-1", "mime_type": "image/jpeg", "caption": "look"}},
        {"from": "1", "id": "m-doc", "type": "document", "document": {"id": "media-2", "filename": "a.pdf"}},
        {"from": "1", "id": "m-voice", "type": "audio", "audio": {"id": "media-3", "voice": True}},
        {"from": "1", "id": "m-sticker", "type": "sticker", "sticker": {"id": "media-4"}},
    ]

    events = list(normalize_webhook(whatsapp_payload(messages=messages)))

    by_id = {event.vendor_message_id: event for event in events}
    assert by_id["m-img"].message_type == MessageType.image
    assert by_id["m-img"].media.ref == "media-1"
    assert by_id["m-img"].media.caption == "look"
    assert by_id["m-doc"].message_type == MessageType.document
    assert by_id["m-doc"].media.filename == "a.pdf"
    assert by_id["m-voice"].message_type == MessageType.audio
    assert by_id["m-voice"].metadata == {"voice": True}
    assert by_id["m-sticker"].message_type == MessageType.sticker


def test_whatsapp_location_becomes_location_message():
    message = {
        "from": "1",
        "id": "m-loc",
        "type": "location",
        "location": {"latitude": 43.238949, "longitude": 76.889709, "name": "School"},
    }

    (event,) = list(normalize_webhook(whatsapp_payload(messages=[message])))

    assert event.message_type == MessageType.location
    assert event.text == "43.238949,76.889709 - School"
    assert event.metadata["location"]["latitude"] == 43.238949


def test_whatsapp_reply_context_is_carried():
    message = whatsapp_text("1", "m-reply", "yes")
    message["context"] = {"from": "15550001111", "id": "wamid.OUT1"}

    (event,) = list(normalize_webhook(whatsapp_payload(messages=[message])))

    assert event.reply_to_vendor_message_id == "wamid.OUT1"


def test_whatsapp_statuses_become_receipts():
    statuses = [
        whatsapp_status("wamid.OUT1", "sent"),
        whatsapp_status("wamid.OUT1", "delivered"),
        whatsapp_status("wamid.OUT1", "read"),
        whatsapp_status("wamid.OUT2", "failed"),
    ]

    events = list(normalize_webhook(whatsapp_payload(statuses=statuses)))

    assert [type(event) for event in events] == [DeliveryReceipt, ReadReceipt]
    assert events[0].vendor_message_id == "wamid.OUT1"
    assert events[1].up_to is True


def test_whatsapp_malformed_items_are_skipped_not_fatal():
    messages = [
        {"from": "1", "id": "m-bad", "type": "location", "location": {"name": "no coords"}},
        {"from": "1", "id": "m-unknown", "type": "reaction", "reaction": {"emoji": "+"}},
        {"id": "m-no-sender", "type": "text", "text": {"body": "x"}},
        whatsapp_text("1", "m-good", "still here"),
    ]

    events = list(normalize_webhook(whatsapp_payload(messages=messages)))

    assert [event.vendor_message_id for event in events] == ["m-good"]


def test_messenger_batch_keeps_valid_events_beside_a_malformed_one():
    broken = messenger_text("psid-2", "mid.broken", "lost")
    broken["sender"] = "psid-2"

    events = list(
        normalize_webhook(messenger_payload([messenger_text("psid-1", "mid.good", "hi"), broken]))
    )

    assert [event.vendor_message_id for event in events] == ["mid.good"]


def test_whatsapp_non_object_items_do_not_drop_the_change():
    body = whatsapp_payload(
        messages=[whatsapp_text("1", "m-good", "hi"), "garbage"],
        statuses=[None, whatsapp_status("wamid.OUT1", "delivered")],
        contacts=["x", {"wa_id": "1", "profile": {"name": "Aida"}}],
    )

    events = list(normalize_webhook(body))

    assert [type(event) for event in events] == [DeliveryReceipt, MessageReceived]
    assert events[1].vendor_message_id == "m-good"
    assert events[1].contact_name == "Aida"


def test_broken_entry_does_not_drop_sibling_entries():
    body = whatsapp_payload(messages=[whatsapp_text("1", "m-good", "hi")])
    body["entry"].append({"id": "waba-2", "changes": None})
    body["entry"].append("not-an-entry")
    body["entry"][0]["changes"].insert(0, "not-a-change")

    events = list(normalize_webhook(body))

    assert [event.vendor_message_id for event in events] == ["m-good"]


def test_messenger_text_and_attachments():
    events = [
        messenger_text("psid-1", "mid.1", "hello"),
        {
            "sender": {"id": "psid-1"},
            "recipient": {"id": "page-1"},
            "timestamp": 1760000000000,
            "message": {
                "mid": "mid.2",
                "attachments": [
                    {"type": "image", "payload": {"url": "https://scontent.xx.fbcdn.net/a.jpg"}},
                    {"type": "image", "payload": {"url": "https://scontent.xx.fbcdn.net/b.jpg"}},
                ],
            },
        },
        {
            "sender": {"id": "psid-1"},
            "recipient": {"id": "page-1"},
            "timestamp": 1760000000000,
            "message": {
                "mid": "mid.3",
                "attachments": [
                    {"type": "image", "payload": {"url": "https://scontent.xx.fbcdn.net/s.png", "sticker_id": 369239263222822}}
                ],
            },
        },
    ]

    result = list(normalize_webhook(messenger_payload(events)))

    assert [event.message_type for event in result] == [
        MessageType.text,
        MessageType.image,
        MessageType.sticker,
    ]
    assert result[0].platform == Platform.messenger
    assert result[1].media.ref == "https://scontent.xx.fbcdn.net/a.jpg"
    assert len(result[1].metadata["extra_attachments"]) == 1


def test_messenger_echo_and_self_messages_are_skipped():
    echo = messenger_text("page-1", "mid.echo", "from page")
    echo["message"]["is_echo"] = True
    self_sent = messenger_text("page-1", "mid.self", "from page too")

    assert list(normalize_webhook(messenger_payload([echo, self_sent]))) == []


def test_messenger_receipts():
    events = [
        {
            "sender": {"id": "psid-1"},
            "recipient": {"id": "page-1"},
            "timestamp": 1760000000000,
            "delivery": {"mids": ["mid.a", "mid.b"], "watermark": 1760000000000},
        },
        {
            "sender": {"id": "psid-1"},
            "recipient": {"id": "page-1"},
            "timestamp": 1760000000000,
            "read": {"watermark": 1760000000000},
        },
    ]

    result = list(normalize_webhook(messenger_payload(events)))

    assert [type(event) for event in result] == [DeliveryReceipt, DeliveryReceipt, ReadReceipt]
    assert [event.vendor_message_id for event in result[:2]] == ["mid.a", "mid.b"]
    assert result[2].watermark == datetime(2025, 10, 9, 8, 53, 20, tzinfo=timezone.utc)
    assert result[2].external_user_id == "psid-1"


def test_instagram_reply_to_is_carried():
    event = messenger_text("igsid-1", "mid.ig", "answer", page_id="ig-1")
    event["message"]["reply_to"] = {"mid": "mid.out"}

    (result,) = list(normalize_webhook(messenger_payload([event], page_id="ig-1", obj="instagram")))

    assert result.platform == Platform.instagram
    assert result.reply_to_vendor_message_id == "mid.out"


def test_unknown_shapes_yield_nothing():
    assert list(normalize_webhook({"object": "user", "entry": []})) == []
    assert list(normalize_webhook({"entry": "nope"})) == []
    assert list(normalize_webhook({"object": "page", "entry": [{"id": "p", "messaging": [{"typing": True}]}]})) == []


def test_normalizer_is_restartable_per_call():
    body = whatsapp_payload(messages=[whatsapp_text("1", "m-1", "hi")])

    assert len(list(normalize_webhook(body))) == 1
    assert len(list(normalize_webhook(body))) == 1
