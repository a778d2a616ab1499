from typing import Dict, List, Optional, Tuple

from .db import Database


class ContextStore:
    """
    Per-conversation document context: the text of the last PDF a chat sent.

    One entry per conversation id. `set` overwrites, `get` never consumes,
    entries live until `clear` (a transport disconnect) or an explicit delete.
    """

    def get(self, conversation_id: str) -> Optional[str]:  # pragma: no cover - interface only
        raise NotImplementedError

    def set(self, conversation_id: str, document_text: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def delete(self, conversation_id: str) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    def clear(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def snapshot(self) -> List[Tuple[str, int]]:  # pragma: no cover - interface only
        """(conversation_id, text length) pairs for the admin UI."""
        raise NotImplementedError

    def __len__(self) -> int:  # pragma: no cover - interface only
        raise NotImplementedError


class MemoryContextStore(ContextStore):
    # No locking: writes for one chat are serialized by the transport.
    def __init__(self):
        self._items: Dict[str, str] = {}

    def get(self, conversation_id: str) -> Optional[str]:
        return self._items.get(conversation_id)

    def set(self, conversation_id: str, document_text: str) -> None:
        self._items[conversation_id] = document_text

    def delete(self, conversation_id: str) -> bool:
        return self._items.pop(conversation_id, None) is not None

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self) -> List[Tuple[str, int]]:
        return [(cid, len(text)) for cid, text in self._items.items()]

    def __len__(self) -> int:
        return len(self._items)


class DatabaseContextStore(ContextStore):
    """Keeps contexts in SQLite so they survive a process restart."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, conversation_id: str) -> Optional[str]:
        return self.db.get_context(conversation_id)

    def set(self, conversation_id: str, document_text: str) -> None:
        self.db.set_context(conversation_id, document_text)

    def delete(self, conversation_id: str) -> bool:
        return self.db.delete_context(conversation_id)

    def clear(self) -> None:
        self.db.clear_contexts()

    def snapshot(self) -> List[Tuple[str, int]]:
        return [(cid, len(text)) for cid, text in self.db.list_contexts()]

    def __len__(self) -> int:
        return len(self.db.list_contexts())


def build_context_store(backend: str, db: Database) -> ContextStore:
    backend = (backend or "memory").lower()
    if backend == "sqlite":
        return DatabaseContextStore(db)
    if backend == "memory":
        return MemoryContextStore()
    raise ValueError(f"Unknown context store backend: {backend}")
