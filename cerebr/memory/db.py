# cerebr/memory/db.py

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Mapping

from cerebr.memory.store import KeyValueStore, Keys, as_key_list


class SqliteKeyValueStore(KeyValueStore):
    """
    Key-value store persisted in a single SQLite table.

    Every call opens its own connection and runs in a worker thread, so the
    event loop never blocks on disk I/O. A set() of several keys commits in
    one statement batch.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    def get_connection(self) -> sqlite3.Connection:
        """
        Return a SQLite connection.
        Caller is responsible for closing.
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """
        Initialize the database schema if it does not exist.
        Safe to call multiple times.
        """
        conn = self.get_connection()
        cur = conn.cursor()

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL      -- JSON-encoded value
            )
            """
        )

        conn.commit()
        conn.close()

    # ---------- sync halves (run in a worker thread) ----------

    def _get_sync(self, keys: List[str]) -> Dict[str, Any]:
        if not keys:
            return {}
        conn = self.get_connection()
        cur = conn.cursor()

        placeholders = ",".join("?" for _ in keys)
        cur.execute(
            f"SELECT key, value FROM kv_store WHERE key IN ({placeholders})",
            keys,
        )
        rows = cur.fetchall()
        conn.close()

        return {row["key"]: json.loads(row["value"]) for row in rows}

    def _set_sync(self, items: Dict[str, str]) -> None:
        if not items:
            return
        conn = self.get_connection()
        cur = conn.cursor()

        cur.executemany(
            """
            INSERT INTO kv_store (key, value)
            VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            list(items.items()),
        )
        conn.commit()
        conn.close()

    def _remove_sync(self, keys: List[str]) -> None:
        if not keys:
            return
        conn = self.get_connection()
        cur = conn.cursor()

        cur.executemany("DELETE FROM kv_store WHERE key = ?", [(k,) for k in keys])
        conn.commit()
        conn.close()

    # ---------- async contract ----------

    async def get(self, keys: Keys) -> Dict[str, Any]:
        return await asyncio.to_thread(self._get_sync, as_key_list(keys))

    async def set(self, items: Mapping[str, Any]) -> None:
        # Encode on the loop thread so the snapshot is taken before any await.
        encoded = {k: json.dumps(v, ensure_ascii=False) for k, v in items.items()}
        await asyncio.to_thread(self._set_sync, encoded)

    async def remove(self, keys: Keys) -> None:
        await asyncio.to_thread(self._remove_sync, as_key_list(keys))
