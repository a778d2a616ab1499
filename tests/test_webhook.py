import asyncio
import base64
import time
from typing import Any, Dict, Optional

import pytest
from fastapi.testclient import TestClient

from relay import components as comp_registry
from relay import main
from relay.components import get_components
from relay.router import PDF_ACK_REPLY, UNSUPPORTED_MEDIA_REPLY

from conftest import FakeExtractor


CHAT = "15551234567@c.us"


def text_payload(text: str, msg_id: str = "MSG-1", chat: str = CHAT, **extra) -> Dict[str, Any]:
    payload = {
        "typeWebhook": "incomingMessageReceived",
        "instanceData": {"idInstance": 1101000001, "wid": "15550000000@c.us"},
        "timestamp": int(time.time()),
        "idMessage": msg_id,
        "senderData": {"chatId": chat, "sender": chat, "senderName": "Ann"},
        "messageData": {"typeMessage": "textMessage", "textMessageData": {"textMessage": text}},
    }
    payload.update(extra)
    return payload


def file_payload(
    type_message: str,
    mime: str,
    url: Optional[str] = "https://media.example/file",
    caption: str = "",
    msg_id: str = "MSG-F",
    file_name: str = "file.bin",
) -> Dict[str, Any]:
    file_data = {"caption": caption, "fileName": file_name, "mimeType": mime}
    if url:
        file_data["downloadUrl"] = url
    return {
        "typeWebhook": "incomingMessageReceived",
        "timestamp": int(time.time()),
        "idMessage": msg_id,
        "senderData": {"chatId": CHAT, "sender": CHAT},
        "messageData": {"typeMessage": type_message, "fileMessageData": file_data},
    }


def handle(payload, comps):
    return asyncio.run(main.handle_incoming_payload(payload, comps))


def test_text_message_is_answered_as_reply(comps, green_api, inference):
    res = handle(text_payload("hello bot"), comps)

    assert res == {"ok": True, "replied": True}
    assert inference.text_calls == [{"prompt": "hello bot", "context": None}]
    assert green_api.sent == [{"chat_id": CHAT, "message": "text reply", "quoted_message_id": "MSG-1"}]


def test_extended_text_message(comps, inference):
    payload = text_payload("")
    payload["messageData"] = {
        "typeMessage": "extendedTextMessage",
        "extendedTextMessageData": {"text": "see https://example.com", "description": "", "title": ""},
    }

    handle(payload, comps)

    assert inference.text_calls[0]["prompt"] == "see https://example.com"


def quoted_payload(text: str, msg_id: str = "MSG-Q") -> Dict[str, Any]:
    payload = text_payload("", msg_id=msg_id)
    payload["messageData"] = {
        "typeMessage": "quotedMessage",
        "extendedTextMessageData": {"text": text, "stanzaId": "BOT-REPLY-1", "participant": "15550000000@c.us"},
        "quotedMessage": {"stanzaId": "BOT-REPLY-1", "typeMessage": "textMessage", "textMessage": "text reply"},
    }
    return payload


def test_swipe_reply_keeps_question_and_document(comps, green_api, inference):
    comps.store.set(CHAT, "The invoice total is 42 EUR.")

    res = handle(quoted_payload("What is the total?"), comps)

    assert res == {"ok": True, "replied": True}
    assert inference.text_calls == [{"prompt": "What is the total?", "context": "The invoice total is 42 EUR."}]
    assert green_api.sent[0]["quoted_message_id"] == "MSG-Q"


def test_swipe_reply_with_control_prefix_is_ignored(comps, green_api, inference):
    res = handle(quoted_payload("!status"), comps)

    assert res["ignored"] is True
    assert inference.text_calls == []
    assert green_api.sent == []


@pytest.mark.parametrize(
    "message_data",
    [
        {"typeMessage": "reactionMessage", "extendedTextMessageData": {"text": "\U0001f44d"}},
        {"typeMessage": "locationMessage", "locationMessageData": {"latitude": 1.0, "longitude": 2.0}},
        {"typeMessage": "pollMessage", "pollMessageData": {"name": "lunch?", "options": []}},
        {},
    ],
)
def test_non_content_messages_are_not_answered(comps, green_api, inference, message_data):
    payload = text_payload("", msg_id="R-1")
    payload["messageData"] = message_data

    res = handle(payload, comps)

    assert res == {"ok": True, "ignored": True}
    assert inference.text_calls == []
    assert green_api.sent == []


def test_null_sender_data_falls_back_to_chat_id(comps, green_api):
    payload = text_payload("hi")
    payload["senderData"] = None

    missing = handle(payload, comps)
    payload["chatId"] = CHAT
    payload["idMessage"] = "MSG-2"
    answered = handle(payload, comps)

    assert missing == {"ok": True, "ignored": True}
    assert answered == {"ok": True, "replied": True}
    assert green_api.sent[0]["chat_id"] == CHAT


def test_pdf_then_question_uses_document(comps, green_api, inference, make_pdf):
    from relay.extractor import PdfExtractor

    comps.extractor = PdfExtractor()
    green_api.files["https://media.example/invoice.pdf"] = make_pdf("Invoice total 42 EUR")

    handle(
        file_payload("documentMessage", "application/pdf", url="https://media.example/invoice.pdf", msg_id="D1"),
        comps,
    )
    handle(text_payload("What is the total?", msg_id="Q1"), comps)

    assert green_api.sent[0]["message"] == PDF_ACK_REPLY
    assert "Invoice total 42 EUR" in comps.store.get(CHAT)
    assert "Invoice total 42 EUR" in inference.text_calls[0]["context"]


def test_image_is_downloaded_and_described(comps, green_api, inference):
    green_api.files["https://media.example/cat.jpg"] = b"jpeg-bytes"

    handle(file_payload("imageMessage", "image/jpeg", url="https://media.example/cat.jpg", caption="what animal?"), comps)

    assert inference.image_calls == [{"image": b"jpeg-bytes", "caption": "what animal?", "mime_type": "image/jpeg"}]
    assert green_api.sent[0]["message"] == "image reply"


def test_unsupported_media_is_not_downloaded(comps, green_api, inference):
    handle(file_payload("videoMessage", "video/mp4"), comps)

    assert green_api.downloads == []
    assert inference.image_calls == []
    assert green_api.sent[0]["message"] == UNSUPPORTED_MEDIA_REPLY


def test_audio_mime_parameters_are_stripped(comps, green_api):
    handle(file_payload("audioMessage", "audio/ogg; codecs=opus"), comps)

    assert green_api.sent[0]["message"] == UNSUPPORTED_MEDIA_REPLY


def test_missing_download_url_is_answered_with_error(comps, green_api, inference):
    handle(file_payload("imageMessage", "image/png", url=None), comps)

    assert inference.image_calls == []
    assert green_api.sent[0]["message"] == "Sorry, I encountered an error: No media URL in payload"


def test_control_prefix_skips_download_and_reply(comps, green_api, inference):
    res = handle(file_payload("imageMessage", "image/png", caption="!silent"), comps)
    handle(text_payload("!status", msg_id="MSG-2"), comps)

    assert res["ignored"] is True
    assert green_api.downloads == []
    assert green_api.sent == []
    assert inference.text_calls == []


def test_pdf_extraction_failure_is_answered(comps, green_api):
    comps.extractor = FakeExtractor(fail=True)
    green_api.files["https://media.example/file"] = b"broken"

    handle(file_payload("documentMessage", "application/pdf"), comps)

    assert green_api.sent[0]["message"] == "Sorry, I encountered an error: Failed to extract text from PDF"
    assert comps.store.get(CHAT) is None


@pytest.mark.parametrize("webhook_type", ["outgoingMessageReceived", "outgoingAPIMessageReceived", "outgoingMessageStatus"])
def test_outgoing_echoes_are_ignored(comps, green_api, webhook_type):
    res = handle(text_payload("echo", typeWebhook=webhook_type), comps)

    assert res == {"ok": True, "ignored": True}
    assert green_api.sent == []


def test_duplicate_delivery_is_routed_once(comps, green_api, inference):
    handle(text_payload("hi", msg_id="DUP"), comps)
    res = handle(text_payload("hi", msg_id="DUP"), comps)

    assert res["duplicate"] is True
    assert len(inference.text_calls) == 1
    assert len(green_api.sent) == 1


def test_stale_message_is_skipped(comps, green_api, inference):
    res = handle(text_payload("old", timestamp=int(time.time()) - 3600), comps)

    assert res["skipped"] == "outside_window"
    assert inference.text_calls == []
    assert green_api.sent == []


def test_millisecond_timestamps_are_understood(comps, inference):
    handle(text_payload("fresh", timestamp=int(time.time() * 1000)), comps)

    assert inference.text_calls[0]["prompt"] == "fresh"


def test_not_authorized_clears_all_contexts_and_saves_qr(comps, green_api, monkeypatch, tmp_path):
    qr_file = tmp_path / "qr.png"
    monkeypatch.setattr(main, "QR_FILE", qr_file)
    green_api.qr = {"type": "qrCode", "message": base64.b64encode(b"PNGDATA").decode("ascii")}
    comps.store.set("a@c.us", "doc a")
    comps.store.set("b@c.us", "doc b")

    res = handle({"typeWebhook": "stateInstanceChanged", "stateInstance": "notAuthorized"}, comps)

    assert res == {"ok": True, "state": "notAuthorized"}
    assert comps.store.get("a@c.us") is None
    assert comps.store.get("b@c.us") is None
    assert qr_file.read_bytes() == b"PNGDATA"


@pytest.mark.parametrize("state", ["authorized", "blocked", "sleepMode", "starting"])
def test_other_states_keep_contexts(comps, state):
    comps.store.set("a@c.us", "doc a")

    handle({"typeWebhook": "stateInstanceChanged", "stateInstance": state}, comps)

    assert comps.store.get("a@c.us") == "doc a"


# --- HTTP surface ---


@pytest.fixture
def client(comps):
    main.app.dependency_overrides[get_components] = lambda: comps
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def test_webhook_endpoint_routes_message(client, green_api):
    resp = client.post("/webhook", json=text_payload("hi there"))

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "replied": True}
    assert green_api.sent[0]["message"] == "text reply"


def test_webhook_rejects_invalid_json(client):
    resp = client.post("/webhook", content=b"{not json", headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_json"


def test_webhook_rejects_non_object(client):
    resp = client.post("/webhook", json=["a", "b"])

    assert resp.status_code == 400


def test_webhook_unavailable_before_startup(monkeypatch):
    monkeypatch.setattr(comp_registry, "current", None)

    resp = TestClient(main.app).post("/webhook", json=text_payload("hi"))

    assert resp.status_code == 503


def test_health():
    resp = TestClient(main.app).get("/health")

    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_poller_routes_and_acknowledges(comps, green_api):
    notes = [{"receiptId": 11, "body": text_payload("via polling", msg_id="P1")}]
    deleted = []

    async def receive_notification():
        if notes:
            return notes.pop()
        raise asyncio.CancelledError()

    async def delete_notification(receipt_id):
        deleted.append(receipt_id)

    green_api.receive_notification = receive_notification
    green_api.delete_notification = delete_notification

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(main.notification_poller(comps))

    assert deleted == [11]
    assert green_api.sent[0]["quoted_message_id"] == "P1"


def test_startup_state_check_fetches_qr_when_logged_out(comps, green_api, monkeypatch, tmp_path):
    qr_file = tmp_path / "qr.png"
    monkeypatch.setattr(main, "QR_FILE", qr_file)
    green_api.state = "notAuthorized"
    green_api.qr = {"type": "qrCode", "message": base64.b64encode(b"QR").decode("ascii")}

    asyncio.run(main.check_instance_state(comps))

    assert qr_file.read_bytes() == b"QR"
