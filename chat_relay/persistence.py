"""Async SQLite persistence for chats, messages, providers, settings and prompt logs."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

import aiosqlite

from .errors import PersistenceError


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return uuid4().hex


def _decode_provider(row: Dict[str, Any]) -> Dict[str, Any]:
    raw_models = row.get("models")
    models: List[str] = []
    if raw_models:
        try:
            parsed = json.loads(raw_models)
            if isinstance(parsed, list):
                models = [str(item) for item in parsed]
        except json.JSONDecodeError:
            models = []
    row["models"] = models
    row["enabled"] = bool(row.get("enabled"))
    return row


class ChatStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self.db_path)
            try:
                await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.execute("PRAGMA synchronous=NORMAL;")
                await conn.execute("PRAGMA foreign_keys=ON;")

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS system_prompts (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL UNIQUE,
                        content TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS chats (
                        id TEXT PRIMARY KEY,
                        title TEXT,
                        model TEXT NOT NULL,
                        system_prompt_id TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        FOREIGN KEY(system_prompt_id) REFERENCES system_prompts(id) ON DELETE SET NULL
                    )
                    """
                )

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        id TEXT NOT NULL UNIQUE,
                        chat_id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        content TEXT NOT NULL,
                        model TEXT,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY(chat_id) REFERENCES chats(id) ON DELETE CASCADE
                    )
                    """
                )

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS providers (
                        name TEXT PRIMARY KEY,
                        api_key TEXT,
                        base_url TEXT,
                        models TEXT,
                        enabled INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS settings (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                    """
                )

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS prompt_logs (
                        id TEXT PRIMARY KEY,
                        chat_id TEXT,
                        model TEXT NOT NULL,
                        messages TEXT NOT NULL,
                        rag_context TEXT,
                        collection_ids TEXT,
                        estimated_tokens INTEGER NOT NULL,
                        context_window_size INTEGER NOT NULL,
                        response_tokens INTEGER,
                        response TEXT,
                        response_time INTEGER,
                        error TEXT,
                        user_message TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )

                await conn.execute("CREATE INDEX IF NOT EXISTS idx_chats_updated ON chats(updated_at)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_msgs_chat ON messages(chat_id, created_at, seq)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_chat ON prompt_logs(chat_id, created_at)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_logs_created ON prompt_logs(created_at)")

                await conn.commit()
            finally:
                await conn.close()
            self._initialized = True

    async def _conn(self) -> aiosqlite.Connection:
        await self.init()
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    # Chats
    async def create_chat(self, *, model: str, system_prompt_id: Optional[str] = None, title: Optional[str] = None) -> Dict[str, Any]:
        chat_id = _new_id()
        now = _utc_now()
        conn = await self._conn()
        try:
            await conn.execute(
                """
                INSERT INTO chats (id, title, model, system_prompt_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (chat_id, title, model, system_prompt_id, now, now),
            )
            await conn.commit()
        finally:
            await conn.close()
        chat = await self.get_chat(chat_id)
        if chat is None:
            raise PersistenceError(f"Chat {chat_id} could not be read back after insert")
        return chat

    async def get_chat(self, chat_id: str) -> Optional[Dict[str, Any]]:
        conn = await self._conn()
        try:
            cur = await conn.execute(
                """
                SELECT c.*, p.name AS system_prompt_name, p.content AS system_prompt
                FROM chats c
                LEFT JOIN system_prompts p ON p.id = c.system_prompt_id
                WHERE c.id=?
                """,
                (chat_id,),
            )
            row = await cur.fetchone()
            return dict(row) if row else None
        finally:
            await conn.close()

    async def list_chats(self) -> List[Dict[str, Any]]:
        conn = await self._conn()
        try:
            cur = await conn.execute(
                """
                SELECT c.*, (SELECT COUNT(*) FROM messages m WHERE m.chat_id = c.id) AS message_count
                FROM chats c
                ORDER BY c.updated_at DESC
                """
            )
            rows = await cur.fetchall()
            return [dict(r) for r in rows]
        finally:
            await conn.close()

    async def update_chat(self, chat_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
        allowed = {key: value for key, value in fields.items() if key in {"title", "model", "system_prompt_id"}}
        if allowed:
            assignments = ", ".join(f"{key}=?" for key in allowed)
            conn = await self._conn()
            try:
                await conn.execute(
                    f"UPDATE chats SET {assignments}, updated_at=? WHERE id=?",
                    (*allowed.values(), _utc_now(), chat_id),
                )
                await conn.commit()
            finally:
                await conn.close()
        return await self.get_chat(chat_id)

    async def touch_chat(self, chat_id: str, *, model: Optional[str] = None) -> None:
        conn = await self._conn()
        try:
            if model:
                await conn.execute(
                    "UPDATE chats SET model=?, updated_at=? WHERE id=?",
                    (model, _utc_now(), chat_id),
                )
            else:
                await conn.execute("UPDATE chats SET updated_at=? WHERE id=?", (_utc_now(), chat_id))
            await conn.commit()
        finally:
            await conn.close()

    async def set_chat_title(self, chat_id: str, title: str) -> None:
        conn = await self._conn()
        try:
            await conn.execute(
                "UPDATE chats SET title=?, updated_at=? WHERE id=?",
                (title, _utc_now(), chat_id),
            )
            await conn.commit()
        finally:
            await conn.close()

    async def delete_chat(self, chat_id: str) -> bool:
        conn = await self._conn()
        try:
            cur = await conn.execute("DELETE FROM chats WHERE id=?", (chat_id,))
            await conn.commit()
            return (cur.rowcount or 0) > 0
        finally:
            await conn.close()

    # Messages
    async def append_message(
        self,
        chat_id: str,
        *,
        role: str,
        content: str,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        message_id = _new_id()
        now = _utc_now()
        conn = await self._conn()
        try:
            await conn.execute(
                """
                INSERT INTO messages (id, chat_id, role, content, model, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (message_id, chat_id, role, content, model, now),
            )
            await conn.execute("UPDATE chats SET updated_at=? WHERE id=?", (now, chat_id))
            await conn.commit()
        finally:
            await conn.close()
        return {
            "id": message_id,
            "chat_id": chat_id,
            "role": role,
            "content": content,
            "model": model,
            "created_at": now,
        }

    async def fetch_messages(self, chat_id: str) -> List[Dict[str, Any]]:
        conn = await self._conn()
        try:
            cur = await conn.execute(
                """
                SELECT id, chat_id, role, content, model, created_at
                FROM messages
                WHERE chat_id=?
                ORDER BY created_at ASC, seq ASC
                """,
                (chat_id,),
            )
            rows = await cur.fetchall()
            return [dict(r) for r in rows]
        finally:
            await conn.close()

    async def count_messages(self, chat_id: str) -> int:
        conn = await self._conn()
        try:
            cur = await conn.execute("SELECT COUNT(*) FROM messages WHERE chat_id=?", (chat_id,))
            row = await cur.fetchone()
            return int(row[0]) if row else 0
        finally:
            await conn.close()

    async def delete_message(self, message_id: str) -> bool:
        conn = await self._conn()
        try:
            cur = await conn.execute("DELETE FROM messages WHERE id=?", (message_id,))
            await conn.commit()
            return (cur.rowcount or 0) > 0
        finally:
            await conn.close()

    # System prompts
    async def create_system_prompt(self, *, name: str, content: str) -> Dict[str, Any]:
        prompt_id = _new_id()
        now = _utc_now()
        conn = await self._conn()
        try:
            await conn.execute(
                """
                INSERT INTO system_prompts (id, name, content, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (prompt_id, name, content, now, now),
            )
            await conn.commit()
        finally:
            await conn.close()
        return {"id": prompt_id, "name": name, "content": content, "created_at": now, "updated_at": now}

    async def get_system_prompt(self, prompt_id: str) -> Optional[Dict[str, Any]]:
        conn = await self._conn()
        try:
            cur = await conn.execute("SELECT * FROM system_prompts WHERE id=?", (prompt_id,))
            row = await cur.fetchone()
            return dict(row) if row else None
        finally:
            await conn.close()

    async def update_system_prompt(
        self,
        prompt_id: str,
        *,
        name: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        fields = {key: value for key, value in (("name", name), ("content", content)) if value is not None}
        if fields:
            assignments = ", ".join(f"{key}=?" for key in fields)
            conn = await self._conn()
            try:
                await conn.execute(
                    f"UPDATE system_prompts SET {assignments}, updated_at=? WHERE id=?",
                    (*fields.values(), _utc_now(), prompt_id),
                )
                await conn.commit()
            finally:
                await conn.close()
        return await self.get_system_prompt(prompt_id)

    async def list_system_prompts(self) -> List[Dict[str, Any]]:
        conn = await self._conn()
        try:
            cur = await conn.execute("SELECT * FROM system_prompts ORDER BY name ASC")
            rows = await cur.fetchall()
            return [dict(r) for r in rows]
        finally:
            await conn.close()

    async def delete_system_prompt(self, prompt_id: str) -> bool:
        conn = await self._conn()
        try:
            cur = await conn.execute("DELETE FROM system_prompts WHERE id=?", (prompt_id,))
            await conn.commit()
            return (cur.rowcount or 0) > 0
        finally:
            await conn.close()

    # Providers
    async def upsert_provider(
        self,
        name: str,
        *,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        models: Sequence[str] = (),
        enabled: bool = True,
    ) -> None:
        now = _utc_now()
        conn = await self._conn()
        try:
            await conn.execute(
                """
                INSERT INTO providers (name, api_key, base_url, models, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    api_key=COALESCE(excluded.api_key, providers.api_key),
                    base_url=excluded.base_url,
                    models=excluded.models,
                    enabled=excluded.enabled,
                    updated_at=excluded.updated_at
                """,
                (name, api_key, base_url, json.dumps(list(models)), 1 if enabled else 0, now, now),
            )
            await conn.commit()
        finally:
            await conn.close()

    async def get_provider(self, name: str) -> Optional[Dict[str, Any]]:
        conn = await self._conn()
        try:
            cur = await conn.execute("SELECT * FROM providers WHERE name=?", (name,))
            row = await cur.fetchone()
            return _decode_provider(dict(row)) if row else None
        finally:
            await conn.close()

    async def list_providers(self, *, enabled_only: bool = False) -> List[Dict[str, Any]]:
        conn = await self._conn()
        try:
            if enabled_only:
                cur = await conn.execute("SELECT * FROM providers WHERE enabled=1 ORDER BY name ASC")
            else:
                cur = await conn.execute("SELECT * FROM providers ORDER BY name ASC")
            rows = await cur.fetchall()
            return [_decode_provider(dict(r)) for r in rows]
        finally:
            await conn.close()

    async def delete_provider(self, name: str) -> bool:
        conn = await self._conn()
        try:
            cur = await conn.execute("DELETE FROM providers WHERE name=?", (name,))
            await conn.commit()
            return (cur.rowcount or 0) > 0
        finally:
            await conn.close()

    # Settings
    async def get_settings_rows(self, prefix: str = "") -> List[Tuple[str, str]]:
        conn = await self._conn()
        try:
            cur = await conn.execute(
                "SELECT key, value FROM settings WHERE key LIKE ? ORDER BY key ASC",
                (f"{prefix}%",),
            )
            rows = await cur.fetchall()
            return [(row["key"], row["value"]) for row in rows]
        finally:
            await conn.close()

    async def delete_settings_rows(self, prefix: str) -> int:
        conn = await self._conn()
        try:
            cur = await conn.execute("DELETE FROM settings WHERE key LIKE ?", (f"{prefix}%",))
            await conn.commit()
            return int(cur.rowcount or 0)
        finally:
            await conn.close()

    async def upsert_settings_rows(self, rows: Iterable[Tuple[str, str]]) -> None:
        conn = await self._conn()
        try:
            await conn.executemany(
                """
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                list(rows),
            )
            await conn.commit()
        finally:
            await conn.close()

    # Prompt logs
    async def insert_prompt_log(self, row: Dict[str, Any]) -> str:
        log_id = row.get("id") or _new_id()
        conn = await self._conn()
        try:
            await conn.execute(
                """
                INSERT INTO prompt_logs (
                    id, chat_id, model, messages, rag_context, collection_ids,
                    estimated_tokens, context_window_size, response_tokens, response,
                    response_time, error, user_message, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log_id,
                    row.get("chat_id"),
                    row["model"],
                    row["messages"],
                    row.get("rag_context"),
                    row.get("collection_ids"),
                    row["estimated_tokens"],
                    row["context_window_size"],
                    row.get("response_tokens"),
                    row.get("response"),
                    row.get("response_time"),
                    row.get("error"),
                    row["user_message"],
                    row.get("created_at") or _utc_now(),
                ),
            )
            await conn.commit()
        finally:
            await conn.close()
        return log_id

    async def list_prompt_logs(self, *, limit: int = 50, offset: int = 0, chat_id: Optional[str] = None) -> List[Dict[str, Any]]:
        conn = await self._conn()
        try:
            if chat_id:
                cur = await conn.execute(
                    "SELECT * FROM prompt_logs WHERE chat_id=? ORDER BY created_at DESC LIMIT ? OFFSET ?",
                    (chat_id, limit, offset),
                )
            else:
                cur = await conn.execute(
                    "SELECT * FROM prompt_logs ORDER BY created_at DESC LIMIT ? OFFSET ?",
                    (limit, offset),
                )
            rows = await cur.fetchall()
            return [dict(r) for r in rows]
        finally:
            await conn.close()

    async def count_prompt_logs(self, chat_id: Optional[str] = None) -> int:
        conn = await self._conn()
        try:
            if chat_id:
                cur = await conn.execute("SELECT COUNT(*) FROM prompt_logs WHERE chat_id=?", (chat_id,))
            else:
                cur = await conn.execute("SELECT COUNT(*) FROM prompt_logs")
            row = await cur.fetchone()
            return int(row[0]) if row else 0
        finally:
            await conn.close()

    async def get_prompt_log(self, log_id: str) -> Optional[Dict[str, Any]]:
        conn = await self._conn()
        try:
            cur = await conn.execute("SELECT * FROM prompt_logs WHERE id=?", (log_id,))
            row = await cur.fetchone()
            return dict(row) if row else None
        finally:
            await conn.close()

    async def delete_prompt_log(self, log_id: str) -> bool:
        conn = await self._conn()
        try:
            cur = await conn.execute("DELETE FROM prompt_logs WHERE id=?", (log_id,))
            await conn.commit()
            return (cur.rowcount or 0) > 0
        finally:
            await conn.close()

    async def delete_prompt_logs_for_chat(self, chat_id: str) -> int:
        conn = await self._conn()
        try:
            cur = await conn.execute("DELETE FROM prompt_logs WHERE chat_id=?", (chat_id,))
            await conn.commit()
            return int(cur.rowcount or 0)
        finally:
            await conn.close()

    async def prompt_log_stats(self) -> Dict[str, Any]:
        conn = await self._conn()
        try:
            cur = await conn.execute(
                """
                SELECT COUNT(*) AS total_logs,
                       COALESCE(SUM(estimated_tokens), 0) AS total_input_tokens,
                       COALESCE(SUM(response_tokens), 0) AS total_output_tokens,
                       COALESCE(AVG(response_time), 0) AS avg_response_time,
                       COALESCE(SUM(CASE WHEN error IS NOT NULL THEN 1 ELSE 0 END), 0) AS error_count
                FROM prompt_logs
                """
            )
            totals = dict(await cur.fetchone())
            cur = await conn.execute(
                """
                SELECT model,
                       COUNT(*) AS count,
                       COALESCE(AVG(estimated_tokens), 0) AS avg_input_tokens,
                       COALESCE(AVG(response_tokens), 0) AS avg_output_tokens,
                       COALESCE(AVG(response_time), 0) AS avg_response_time,
                       SUM(CASE WHEN error IS NOT NULL THEN 1 ELSE 0 END) AS error_count
                FROM prompt_logs
                GROUP BY model
                ORDER BY count DESC, model ASC
                """
            )
            totals["models"] = [dict(r) for r in await cur.fetchall()]
            return totals
        finally:
            await conn.close()
