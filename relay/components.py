from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import HTTPException

from .config import Settings
from .context_store import ContextStore, build_context_store
from .db import Database
from .extractor import PdfExtractor
from .green_api import GreenAPIClient
from .inference import OpenRouterClient


@dataclass
class Components:
    """Everything a request handler needs, built once at startup."""

    settings: Settings
    db: Database
    store: ContextStore
    extractor: PdfExtractor
    inference: OpenRouterClient
    client: GreenAPIClient


current: Optional[Components] = None


def build_components(settings: Settings) -> Components:
    db = Database(Path(settings.db_path))
    db.init()
    return Components(
        settings=settings,
        db=db,
        store=build_context_store(settings.context_store, db),
        extractor=PdfExtractor(),
        inference=OpenRouterClient(
            api_key=settings.openrouter_api_key,
            model=settings.openrouter_model,
            timeout=settings.openrouter_timeout,
        ),
        client=GreenAPIClient.from_env(db),
    )


def get_components() -> Components:
    if current is None:
        raise HTTPException(status_code=503, detail="Relay is not started")
    return current
