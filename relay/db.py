import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple


DB_PATH = Path("storage/app.db")


class Database:
    def __init__(self, path: Path = DB_PATH):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def init(self):
        with self._conn() as con:
            cur = con.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_messages (
                    msg_id TEXT PRIMARY KEY,
                    processed_at TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS document_contexts (
                    conversation_id TEXT PRIMARY KEY,
                    document_text TEXT NOT NULL,
                    updated_at TEXT
                )
                """
            )
            con.commit()

    @contextmanager
    def _conn(self):
        con = sqlite3.connect(self.path)
        try:
            yield con
        finally:
            con.close()

    # --- duplicate delivery suppression ---

    def has_processed(self, msg_id: str) -> bool:
        with self._conn() as con:
            row = con.execute("SELECT 1 FROM processed_messages WHERE msg_id=?", (msg_id,)).fetchone()
            return row is not None

    def mark_processed(self, msg_id: str):
        with self._conn() as con:
            con.execute(
                "INSERT OR IGNORE INTO processed_messages (msg_id, processed_at) VALUES (?, ?)",
                (msg_id, datetime.utcnow().isoformat() + "Z"),
            )
            con.commit()

    # --- document contexts ---

    def get_context(self, conversation_id: str) -> Optional[str]:
        with self._conn() as con:
            row = con.execute(
                "SELECT document_text FROM document_contexts WHERE conversation_id=?", (conversation_id,)
            ).fetchone()
            return row[0] if row else None

    def set_context(self, conversation_id: str, document_text: str):
        with self._conn() as con:
            con.execute(
                "INSERT INTO document_contexts (conversation_id, document_text, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(conversation_id) DO UPDATE SET document_text=excluded.document_text, updated_at=excluded.updated_at",
                (conversation_id, document_text, datetime.utcnow().isoformat() + "Z"),
            )
            con.commit()

    def delete_context(self, conversation_id: str) -> bool:
        with self._conn() as con:
            cur = con.execute("DELETE FROM document_contexts WHERE conversation_id=?", (conversation_id,))
            con.commit()
            return cur.rowcount > 0

    def clear_contexts(self):
        with self._conn() as con:
            con.execute("DELETE FROM document_contexts")
            con.commit()

    def list_contexts(self) -> List[Tuple[str, str]]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT conversation_id, document_text FROM document_contexts ORDER BY updated_at DESC"
            ).fetchall()
            return [(r[0], r[1]) for r in rows]

    # --- settings ---

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._conn() as con:
            row = con.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
            if not row:
                return default
            return row[0]

    def set_setting(self, key: str, value: str):
        with self._conn() as con:
            con.execute(
                "INSERT INTO settings(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
            con.commit()

