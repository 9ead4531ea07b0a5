"""SQLite-backed store for chat history and custom agent records."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import aiosqlite

from ..schemas.chat import ChatMessage

AgentRecord = dict[str, Any]

_AGENT_FIELDS = ("name", "description", "system_prompt", "welcome_message")


def _normalize_db_timestamp(value: str | None) -> str | None:
    """Convert SQLite timestamp strings to ISO8601 in UTC."""

    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.isoformat()


class HistoryStore:
    """Persist conversation messages and custom agents."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id TEXT PRIMARY KEY,
                user_id TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL
                    REFERENCES conversations(conversation_id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation
                ON messages(conversation_id, id);

            CREATE TABLE IF NOT EXISTS custom_agents (
                agent_id TEXT PRIMARY KEY,
                owner_id TEXT,
                name TEXT NOT NULL,
                description TEXT,
                system_prompt TEXT NOT NULL,
                welcome_message TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def append_messages(
        self,
        conversation_id: str,
        messages: Iterable[ChatMessage],
        *,
        user_id: str | None = None,
    ) -> int:
        """Persist user and assistant text messages; returns the count stored."""

        assert self._connection is not None
        rows = [
            (conversation_id, message.role, message.content)
            for message in messages
            if message.role in ("user", "assistant") and message.content
        ]
        await self._connection.execute(
            "INSERT OR IGNORE INTO conversations(conversation_id, user_id) VALUES (?, ?)",
            (conversation_id, user_id),
        )
        if rows:
            await self._connection.executemany(
                "INSERT INTO messages(conversation_id, role, content) VALUES (?, ?, ?)",
                rows,
            )
        await self._connection.commit()
        return len(rows)

    async def get_messages(
        self, conversation_id: str, *, limit: Optional[int] = None
    ) -> list[ChatMessage]:
        """Return stored messages oldest first, optionally only the last ``limit``."""

        assert self._connection is not None
        if limit is not None:
            cursor = await self._connection.execute(
                """
                SELECT role, content FROM (
                    SELECT id, role, content FROM messages
                    WHERE conversation_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                ) ORDER BY id ASC
                """,
                (conversation_id, limit),
            )
        else:
            cursor = await self._connection.execute(
                "SELECT role, content FROM messages WHERE conversation_id = ? ORDER BY id ASC",
                (conversation_id,),
            )
        rows = await cursor.fetchall()
        await cursor.close()
        return [ChatMessage(role=row["role"], content=row["content"]) for row in rows]

    async def clear(self, conversation_id: str) -> None:
        assert self._connection is not None
        await self._connection.execute(
            "DELETE FROM conversations WHERE conversation_id = ?",
            (conversation_id,),
        )
        await self._connection.commit()

    async def get_agent(self, agent_id: str) -> AgentRecord | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT agent_id, owner_id, name, description, system_prompt,
                   welcome_message, created_at
            FROM custom_agents WHERE agent_id = ?
            """,
            (agent_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        record = dict(row)
        record["id"] = record.pop("agent_id")
        record["created_at"] = _normalize_db_timestamp(record.get("created_at"))
        return record

    async def save_agent(
        self, record: dict[str, Any], *, owner_id: str | None = None
    ) -> AgentRecord:
        """Insert or replace a custom agent; ``name`` and ``system_prompt`` are required."""

        assert self._connection is not None
        if not record.get("name") or not record.get("system_prompt"):
            raise ValueError("Custom agents need a name and a system_prompt")
        agent_id = str(record.get("id") or uuid.uuid4().hex)
        values = [record.get(field) for field in _AGENT_FIELDS]
        await self._connection.execute(
            """
            INSERT INTO custom_agents(
                agent_id, owner_id, name, description, system_prompt, welcome_message
            )
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(agent_id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                system_prompt = excluded.system_prompt,
                welcome_message = excluded.welcome_message
            """,
            (agent_id, owner_id, *values),
        )
        await self._connection.commit()
        stored = await self.get_agent(agent_id)
        assert stored is not None
        return stored


__all__ = ["AgentRecord", "HistoryStore"]
