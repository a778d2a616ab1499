import asyncio
import base64
import binascii
import logging
import mimetypes
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse

from . import components as comp_registry
from .components import Components, build_components, get_components
from .config import load_settings
from .errors import ConfigError
from .router import (
    Attachment,
    InboundMessage,
    format_error_reply,
    is_control_message,
    is_routable_media,
    route,
)
from .utils import configure_logging, json_log, preview
from .webui import QR_FILE, router as web_router

APP_TITLE = "WhatsApp AI Relay"
VERSION = "1.0.0"

# Green API message types that carry a file in fileMessageData
FILE_MESSAGE_TYPES = {
    "imagemessage",
    "documentmessage",
    "videomessage",
    "audiomessage",
    "stickermessage",
}

# Message types worth answering; reactions and other non-content types are dropped
CONTENT_MESSAGE_TYPES = {"textmessage", "extendedtextmessage", "quotedmessage"} | FILE_MESSAGE_TYPES

configure_logging()

app = FastAPI(title=APP_TITLE, version=VERSION)
app.include_router(web_router)

workers: List[asyncio.Task] = []


@app.on_event("startup")
async def on_startup():
    # ConfigError propagates: uvicorn aborts startup before serving anything
    settings = load_settings()
    comps = build_components(settings)
    comp_registry.current = comps
    json_log("startup", version=VERSION, model=comps.inference.model, context_store=settings.context_store)

    if not comps.client.configured:
        json_log("green_api_not_configured", hint="set GREEN_API_INSTANCE_ID and GREEN_API_API_TOKEN")
        return
    workers.append(asyncio.create_task(check_instance_state(comps)))
    if settings.poll_notifications:
        workers.append(asyncio.create_task(notification_poller(comps)))


@app.on_event("shutdown")
async def on_shutdown():
    json_log("shutdown")
    for w in workers:
        w.cancel()
    await asyncio.gather(*workers, return_exceptions=True)
    workers.clear()
    if comp_registry.current is not None:
        comp_registry.current.inference.close()


def _extract_text_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    """
    Extract human text from common Green-API payload shapes.
    Handles:
      - textMessageData.textMessage (typeMessage == textMessage)
      - extendedTextMessageData.text (typeMessage == extendedTextMessage or quotedMessage)
      - captions for image/file/document
    """
    md = payload.get("messageData") or {}
    if not md:
        return None

    t = (md.get("typeMessage") or "").lower()

    if t == "textmessage":
        tmd = md.get("textMessageData") or {}
        if tmd.get("textMessage"):
            return tmd.get("textMessage")

    if t in ("extendedtextmessage", "quotedmessage"):
        etd = md.get("extendedTextMessageData") or {}
        v = etd.get("text")
        if isinstance(v, str):
            return v

    if t in FILE_MESSAGE_TYPES:
        cap = (md.get("fileMessageData") or {}).get("caption")
        if isinstance(cap, str):
            return cap

    return None


def _file_message_data(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    md = payload.get("messageData") or {}
    if (md.get("typeMessage") or "").lower() not in FILE_MESSAGE_TYPES:
        return None
    fmd = md.get("fileMessageData")
    return fmd if isinstance(fmd, dict) else {}


def _mime_type_of(file_data: Dict[str, Any]) -> str:
    mime = file_data.get("mimeType") or file_data.get("mimetype") or ""
    if not mime and file_data.get("fileName"):
        mime = mimetypes.guess_type(str(file_data["fileName"]))[0] or ""
    # WhatsApp sends e.g. "audio/ogg; codecs=opus"
    return str(mime).split(";", 1)[0].strip().lower()


def _extract_event_time(payload: Dict[str, Any]) -> Optional[datetime]:
    """
    Message event time as UTC datetime, from the epoch 'timestamp' field.
    """
    candidates: List[Optional[Union[int, float, str]]] = [
        payload.get("timestamp"),
        (payload.get("messageData") or {}).get("timestamp"),
    ]
    for c in candidates:
        if c is None:
            continue
        if isinstance(c, (int, float)) or (isinstance(c, str) and c.isdigit()):
            sec = float(c)
            # treat values that look like ms
            if sec > 1e12:
                sec = sec / 1000.0
            return datetime.fromtimestamp(sec, tz=timezone.utc)
    return None


async def _deliver(comps: Components, chat_id: str, text: str, quoted_message_id: Optional[str]) -> bool:
    try:
        await comps.client.send_message(chat_id=chat_id, message=text, quoted_message_id=quoted_message_id)
    except httpx.HTTPError as e:
        json_log("reply_send_error", level=logging.ERROR, chat_id=chat_id, error=str(e))
        return False
    json_log("reply_sent", chat_id=chat_id, reply=preview(text))
    return True


async def handle_incoming_payload(payload: Dict[str, Any], comps: Components) -> Dict[str, Any]:
    webhook_type = payload.get("typeWebhook")
    if not webhook_type:
        json_log("webhook_ignored", reason="missing_typeWebhook")
        return {"ok": True, "ignored": True}

    kind = str(webhook_type).lower()
    if kind == "stateinstancechanged":
        return await handle_state_change(payload, comps)
    # Only process incoming messages; outgoing echoes would make us answer ourselves
    if kind != "incomingmessagereceived":
        json_log("webhook_ignored", reason="not_incoming", type=str(webhook_type))
        return {"ok": True, "ignored": True}

    message_data = payload.get("messageData") or {}
    sender_data = payload.get("senderData") or {}
    sender = (
        sender_data.get("chatId")
        or sender_data.get("sender")
        or payload.get("chatId")
    )
    if not sender:
        json_log("webhook_ignored", reason="missing_chat_id")
        return {"ok": True, "ignored": True}
    msg_id = payload.get("idMessage") or message_data.get("idMessage")

    type_message = str(message_data.get("typeMessage") or "").lower()
    if type_message not in CONTENT_MESSAGE_TYPES:
        json_log("webhook_ignored", reason="unsupported_message_type", type=type_message, chat_id=sender, msg_id=msg_id)
        return {"ok": True, "ignored": True}

    # Skip the backlog a restarted instance replays
    now = datetime.now(tz=timezone.utc)
    evt_time = _extract_event_time(payload) or now
    age = (now - evt_time).total_seconds()
    if age > comps.settings.message_window_seconds:
        json_log("message_skipped_outside_window", chat_id=sender, msg_id=msg_id, age_seconds=int(age))
        return {"ok": True, "skipped": "outside_window", "age_seconds": int(age)}

    if msg_id:
        if comps.db.has_processed(str(msg_id)):
            json_log("duplicate_message_skipped", msg_id=str(msg_id), chat_id=sender)
            return {"ok": True, "duplicate": True, "msg_id": str(msg_id)}
        # Mark early so a re-delivery racing this one is dropped
        comps.db.mark_processed(str(msg_id))

    text = _extract_text_from_payload(payload) or ""
    if is_control_message(text):
        json_log("message_ignored", chat_id=sender, reason="control_prefix")
        return {"ok": True, "ignored": True}

    attachment = None
    file_data = _file_message_data(payload)
    if file_data is not None:
        mime = _mime_type_of(file_data)
        data = b""
        if is_routable_media(mime):
            url = file_data.get("downloadUrl")
            try:
                if not url:
                    raise ValueError("No media URL in payload")
                data = await comps.client.download_file(url)
            except (httpx.HTTPError, ValueError) as e:
                json_log("media_download_error", level=logging.ERROR, chat_id=sender, msg_id=msg_id, error=str(e))
                await _deliver(comps, sender, format_error_reply(e), msg_id)
                return {"ok": True, "replied": True, "error": "media_download"}
        attachment = Attachment(mime_type=mime, data=data, file_name=file_data.get("fileName"))

    message = InboundMessage(conversation_id=sender, body_text=text, attachment=attachment, message_id=msg_id)
    json_log("message_received", chat_id=sender, msg_id=msg_id, has_attachment=message.has_attachment)

    # Router and its collaborators block; keep the loop responsive
    reply = await asyncio.to_thread(route, message, comps.store, comps.extractor, comps.inference)
    if reply is None:
        return {"ok": True, "ignored": True}

    sent = await _deliver(comps, sender, reply, msg_id)
    return {"ok": True, "replied": sent}


async def handle_state_change(payload: Dict[str, Any], comps: Components) -> Dict[str, Any]:
    state = str(payload.get("stateInstance") or "unknown")
    if state == "authorized":
        json_log("client_ready", state=state)
    elif state == "notAuthorized":
        json_log("client_disconnected", reason=state, contexts_cleared=len(comps.store))
        comps.store.clear()
        await refresh_qr(comps)
    elif state == "blocked":
        json_log("auth_failure", state=state)
    else:
        json_log("state_changed", state=state)
    return {"ok": True, "state": state}


async def refresh_qr(comps: Components) -> Optional[Path]:
    """
    Save the gateway's login QR code to storage/qr.png so it can be scanned from the web UI.
    """
    if not comps.client.configured:
        return None
    try:
        data = await comps.client.get_qr()
    except httpx.HTTPError as e:
        json_log("qr_fetch_error", error=str(e))
        return None

    kind = data.get("type")
    if kind == "qrCode":
        try:
            png = base64.b64decode(data.get("message") or "")
        except (binascii.Error, ValueError) as e:
            json_log("qr_decode_error", error=str(e))
            return None
        QR_FILE.parent.mkdir(parents=True, exist_ok=True)
        QR_FILE.write_bytes(png)
        json_log("qr_saved", path=str(QR_FILE), hint="scan it with WhatsApp (open /ui)")
        return QR_FILE
    if kind == "alreadyLogged":
        QR_FILE.unlink(missing_ok=True)
    else:
        json_log("qr_unavailable", type=kind, message=data.get("message"))
    return None


async def check_instance_state(comps: Components):
    try:
        state = await comps.client.get_state_instance()
    except httpx.HTTPError as e:
        json_log("state_check_error", error=str(e))
        return
    json_log("instance_state", state=state)
    if state == "authorized":
        json_log("client_ready", state=state)
    elif state == "notAuthorized":
        await refresh_qr(comps)


async def notification_poller(comps: Components):
    """
    Polls Green API ReceiveNotification for incoming messages and routes them
    through the same handler as the /webhook.
    """
    while True:
        client = comps.client  # may be replaced from the web UI
        try:
            data = await client.receive_notification()
            if not data:
                await asyncio.sleep(0.5)
                continue
            receipt_id = data.get("receiptId")
            body = data.get("body") or data
            res = await handle_incoming_payload(body, comps)
            json_log("receive_notification_handled", ok=res.get("ok", False))
            if receipt_id is not None:
                try:
                    await client.delete_notification(int(receipt_id))
                except httpx.HTTPError as e:
                    json_log("delete_notification_error", error=str(e), receipt_id=receipt_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            json_log("receive_notification_error", level=logging.ERROR, error=str(e))
            await asyncio.sleep(2.0)


@app.post("/webhook")
async def webhook(request: Request, comps: Components = Depends(get_components)):
    try:
        payload = await request.json()
    except ValueError:
        raw = await request.body()
        return JSONResponse({"ok": False, "error": "invalid_json", "raw": raw.decode("utf-8", "ignore")}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"ok": False, "error": "invalid_payload"}, status_code=400)

    res = await handle_incoming_payload(payload, comps)
    status = 200 if res.get("ok") else 400
    return JSONResponse(res, status_code=status)


@app.get("/")
async def root():
    return RedirectResponse(url="/ui")


@app.get("/health")
async def health():
    return {"ok": True, "version": VERSION, "started": comp_registry.current is not None}


def run():
    import uvicorn

    try:
        settings = load_settings()
    except ConfigError as e:
        json_log("startup_failed", level=logging.ERROR, error=str(e))
        sys.exit(1)
    uvicorn.run("relay.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
