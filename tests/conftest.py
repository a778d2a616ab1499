from typing import Any, Dict, List, Optional

import fitz
import pytest

from relay.config import Settings
from relay.context_store import MemoryContextStore
from relay.components import Components
from relay.db import Database
from relay.errors import ExtractionError


class FakeExtractor:
    def __init__(self, text: str = "extracted text", fail: bool = False):
        self.text = text
        self.fail = fail
        self.calls: List[Any] = []

    def extract_text(self, data) -> str:
        self.calls.append(data)
        if self.fail:
            raise ExtractionError("Failed to extract text from PDF")
        return self.text


class FakeInference:
    model = "fake/model"

    def __init__(self, text_reply: str = "text reply", image_reply: str = "image reply", error: Optional[Exception] = None):
        self.text_reply = text_reply
        self.image_reply = image_reply
        self.error = error
        self.text_calls: List[Dict[str, Any]] = []
        self.image_calls: List[Dict[str, Any]] = []

    def complete_text(self, prompt: str, context: Optional[str] = None) -> str:
        self.text_calls.append({"prompt": prompt, "context": context})
        if self.error:
            raise self.error
        return self.text_reply

    def complete_image(self, image, caption: Optional[str] = None, mime_type: str = "image/jpeg") -> str:
        self.image_calls.append({"image": image, "caption": caption, "mime_type": mime_type})
        if self.error:
            raise self.error
        return self.image_reply

    def close(self):
        pass


class FakeGreenAPI:
    configured = True

    def __init__(self, files: Optional[Dict[str, bytes]] = None):
        self.files = files or {}
        self.sent: List[Dict[str, Any]] = []
        self.downloads: List[str] = []
        self.state = "authorized"
        self.qr: Dict[str, Any] = {"type": "alreadyLogged", "message": ""}

    async def send_message(self, chat_id: str, message: str, quoted_message_id: Optional[str] = None):
        self.sent.append({"chat_id": chat_id, "message": message, "quoted_message_id": quoted_message_id})
        return {"idMessage": "OUT-1"}

    async def download_file(self, download_url: str) -> bytes:
        self.downloads.append(download_url)
        return self.files[download_url]

    async def get_state_instance(self) -> str:
        return self.state

    async def get_qr(self) -> Dict[str, Any]:
        return self.qr


@pytest.fixture
def store():
    return MemoryContextStore()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def inference():
    return FakeInference()


@pytest.fixture
def settings(tmp_path):
    return Settings(openrouter_api_key="test-key", db_path=str(tmp_path / "app.db"))


@pytest.fixture
def db(settings):
    database = Database(settings.db_path)
    database.init()
    return database


@pytest.fixture
def green_api():
    return FakeGreenAPI()


@pytest.fixture
def comps(settings, db, store, extractor, inference, green_api):
    return Components(
        settings=settings,
        db=db,
        store=store,
        extractor=extractor,
        inference=inference,
        client=green_api,
    )


@pytest.fixture
def make_pdf():
    """Factory for small real PDFs with one line of text per page."""

    def _make(*pages: str) -> bytes:
        doc = fitz.open()
        for text in pages:
            page = doc.new_page()
            page.insert_text((72, 72), text)
        data = doc.tobytes()
        doc.close()
        return data

    return _make
