"""
Message routing: decide what a single inbound WhatsApp message turns into.

`route()` is transport-agnostic. The caller (the Green API adapter in
`relay.main`) builds an `InboundMessage`, calls `route()` and delivers the
returned text. A `None` result means the message was ignored and nothing is
sent back.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from .context_store import ContextStore
from .errors import RelayError, UnsupportedMediaError
from .extractor import PDF_MIME_TYPE, PdfExtractor, as_bytes
from .inference import DEFAULT_IMAGE_PROMPT, OpenRouterClient
from .utils import json_log, preview


CONTROL_PREFIX = "!"

PDF_ACK_REPLY = "I've read the PDF document. You can now ask me questions about its content."
UNSUPPORTED_MEDIA_REPLY = "Sorry, I can only process PDF documents and image files."
ERROR_REPLY_PREFIX = "Sorry, I encountered an error: "


@dataclass
class Attachment:
    mime_type: str
    data: Union[bytes, str]  # raw bytes or base64 text
    file_name: Optional[str] = None


@dataclass
class InboundMessage:
    conversation_id: str
    body_text: str = ""
    attachment: Optional[Attachment] = None
    message_id: Optional[str] = None

    @property
    def has_attachment(self) -> bool:
        return self.attachment is not None


def is_control_message(text: Optional[str]) -> bool:
    """Bot-issued commands and echoes start with the control prefix and are never answered."""
    return bool(text) and text.startswith(CONTROL_PREFIX)


def is_routable_media(mime_type: Optional[str]) -> bool:
    """Attachments whose bytes the router actually reads (PDF and images)."""
    mime = (mime_type or "").lower()
    return mime == PDF_MIME_TYPE or mime.startswith("image/")


def format_error_reply(exc: BaseException) -> str:
    return ERROR_REPLY_PREFIX + str(exc)


def route(
    message: InboundMessage,
    store: ContextStore,
    extractor: PdfExtractor,
    inference: OpenRouterClient,
) -> Optional[str]:
    if is_control_message(message.body_text):
        json_log("message_ignored", chat_id=message.conversation_id, reason="control_prefix")
        return None

    try:
        return _dispatch(message, store, extractor, inference)
    except UnsupportedMediaError as e:
        json_log("unsupported_media", chat_id=message.conversation_id, mime_type=e.mime_type)
        return UNSUPPORTED_MEDIA_REPLY
    except RelayError as e:
        json_log("route_failed", chat_id=message.conversation_id, error_type=type(e).__name__, error=str(e))
        return format_error_reply(e)
    except Exception as e:
        # Anything a collaborator leaks still gets answered.
        json_log("route_unexpected_error", level=logging.ERROR, chat_id=message.conversation_id, error_type=type(e).__name__, error=str(e))
        return format_error_reply(e)


def _dispatch(
    message: InboundMessage,
    store: ContextStore,
    extractor: PdfExtractor,
    inference: OpenRouterClient,
) -> str:
    chat_id = message.conversation_id
    att = message.attachment

    if att is None:
        context = store.get(chat_id)
        json_log("route_text", chat_id=chat_id, has_context=context is not None, body=preview(message.body_text))
        return inference.complete_text(message.body_text, context)

    mime = (att.mime_type or "").lower()

    if mime == PDF_MIME_TYPE:
        json_log("route_pdf", chat_id=chat_id, file_name=att.file_name)
        text = extractor.extract_text(att.data)
        store.set(chat_id, text)
        json_log("pdf_context_stored", chat_id=chat_id, chars=len(text))
        return PDF_ACK_REPLY

    if mime.startswith("image/"):
        json_log("route_image", chat_id=chat_id, mime_type=mime, caption=preview(message.body_text))
        return inference.complete_image(as_bytes(att.data), caption=message.body_text or DEFAULT_IMAGE_PROMPT, mime_type=mime)

    raise UnsupportedMediaError(mime)
