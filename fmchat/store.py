"""
sqlite3 persistence for conversations, messages and rolling summaries.

The store follows a unit-of-work shape: conversations are registered with
:meth:`ChatStore.insert`, mutated in memory, and written out by
:meth:`ChatStore.save`. Messages are persisted through their conversation.
In-memory objects stay the source of truth if a save fails.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, Union, runtime_checkable

from .config import DEFAULT_DB_PATH
from .exceptions import PersistenceError
from .models import Attachment, Conversation, Message, utc_now

logger = logging.getLogger("fmchat")

__all__ = ["ChatStore", "StoreProtocol"]


@runtime_checkable
class StoreProtocol(Protocol):
    """Persistence collaborator used by the chat core."""

    def insert(self, conversation: Conversation) -> None: ...

    def delete(self, conversation: Conversation) -> None: ...

    def save(self) -> None:
        """Commit pending changes; raises PersistenceError on I/O failure."""
        ...


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _from_iso(raw: str) -> datetime:
    value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _format_for_display(value: datetime) -> str:
    return value.astimezone().strftime("%b %d, %Y %I:%M:%S %p %Z").replace(" 0", " ")


class ChatStore:
    """Thread-safe sqlite store implementing :class:`StoreProtocol`.

    Parameters
    ----------
    db_path:
        Path to the sqlite3 database file. Parent directories are created
        automatically. ``":memory:"`` keeps everything in memory.
    """

    def __init__(self, db_path: Union[str, Path, None] = None) -> None:
        self._db_path = db_path if db_path == ":memory:" else Path(db_path or DEFAULT_DB_PATH)
        self._lock = threading.Lock()
        self._tracked: dict[str, Conversation] = {}

        if isinstance(self._db_path, Path):
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._tune_pragmas()
        self._init_schema()

    def _tune_pragmas(self) -> None:
        """Tune sqlite for local low-latency usage."""
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                summary TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL
                    REFERENCES conversations(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                attachment_json TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation_timestamp
            ON messages(conversation_id, timestamp);
            """
        )
        self._conn.commit()

    # -- StoreProtocol -------------------------------------------------------

    def insert(self, conversation: Conversation) -> None:
        """Track *conversation*; it is written on the next :meth:`save`."""
        with self._lock:
            self._tracked[conversation.id] = conversation

    def delete(self, conversation: Conversation) -> None:
        """Delete *conversation* and all of its messages."""
        with self._lock:
            self._tracked.pop(conversation.id, None)
            try:
                with self._conn:
                    self._conn.execute("DELETE FROM conversations WHERE id = ?", (conversation.id,))
            except sqlite3.Error as exc:
                raise PersistenceError(
                    f"Could not delete conversation {conversation.id}: {exc}"
                ) from exc

    def save(self) -> None:
        """Upsert every tracked conversation with its messages in one transaction."""
        with self._lock:
            try:
                with self._conn:
                    for conversation in self._tracked.values():
                        self._write(conversation)
            except sqlite3.Error as exc:
                raise PersistenceError(f"Could not save conversations: {exc}") from exc

    def _write(self, conversation: Conversation) -> None:
        self._conn.execute(
            """
            INSERT INTO conversations (id, summary, created_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET summary = excluded.summary
            """,
            (conversation.id, conversation.summary, _to_iso(conversation.created_at)),
        )
        self._conn.executemany(
            """
            INSERT INTO messages (id, conversation_id, role, content, timestamp, attachment_json)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                content = excluded.content,
                attachment_json = excluded.attachment_json
            """,
            [
                (
                    message.id,
                    conversation.id,
                    message.role.value,
                    message.content,
                    _to_iso(message.timestamp),
                    None
                    if message.attachment is None
                    else json.dumps(vars(message.attachment), ensure_ascii=False),
                )
                for message in conversation.messages
            ],
        )

    # -- queries -------------------------------------------------------------

    def create_conversation(self, summary: str | None = None) -> Conversation:
        """Create, track and persist an empty conversation."""
        conversation = Conversation(summary=summary)
        self.insert(conversation)
        self.save()
        return conversation

    def load(self, conversation_id: str) -> Conversation | None:
        """Load a conversation and start tracking it."""
        with self._lock:
            tracked = self._tracked.get(conversation_id)
            if tracked is not None:
                return tracked
            row = self._conn.execute(
                "SELECT id, summary, created_at FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
            if row is None:
                return None
            conversation = self._hydrate(row)
            self._tracked[conversation.id] = conversation
            return conversation

    def list_conversations(self) -> list[Conversation]:
        """All stored conversations, most recent activity first (not tracked)."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, summary, created_at FROM conversations"
            ).fetchall()
            conversations = [self._hydrate(row) for row in rows]
        return sorted(
            conversations,
            key=lambda conversation: conversation.last_message_timestamp,
            reverse=True,
        )

    def _hydrate(self, row: sqlite3.Row) -> Conversation:
        message_rows = self._conn.execute(
            """
            SELECT id, role, content, timestamp, attachment_json
            FROM messages
            WHERE conversation_id = ?
            ORDER BY timestamp ASC, rowid ASC
            """,
            (row["id"],),
        ).fetchall()

        messages: list[Message] = []
        for message_row in message_rows:
            attachment = None
            if message_row["attachment_json"]:
                try:
                    attachment = Attachment(**json.loads(message_row["attachment_json"]))
                except (json.JSONDecodeError, TypeError) as exc:
                    logger.warning(
                        "[FMChat Store] Dropping unreadable attachment on message %s: %s",
                        message_row["id"],
                        exc,
                    )
            messages.append(
                Message(
                    content=str(message_row["content"]),
                    role=str(message_row["role"]),
                    timestamp=_from_iso(str(message_row["timestamp"])),
                    id=str(message_row["id"]),
                    attachment=attachment,
                    finalized=True,
                )
            )

        return Conversation(
            messages=messages,
            summary=row["summary"],
            id=str(row["id"]),
            created_at=_from_iso(str(row["created_at"])),
        )

    # -- export --------------------------------------------------------------

    def export_jsonl(self, conversation: Conversation, target: Path) -> None:
        """Export a conversation to JSONL: one metadata line, then one line per message."""
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8") as handle:
            header = {
                "type": "conversation",
                "id": conversation.id,
                "summary": conversation.summary,
                "exported_at": _to_iso(utc_now()),
            }
            handle.write(json.dumps(header, ensure_ascii=False) + "\n")
            for message in conversation.sorted_messages:
                record = {
                    "type": "message",
                    "role": message.role.value,
                    "timestamp": _to_iso(message.timestamp),
                    "content": message.content,
                    "attachment": None if message.attachment is None else vars(message.attachment),
                }
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")

    def export_markdown(self, conversation: Conversation, target: Path) -> None:
        """Export a conversation to a Markdown transcript."""
        target.parent.mkdir(parents=True, exist_ok=True)
        lines = ["# Conversation", ""]
        if conversation.summary:
            lines.extend([f"> {conversation.summary}", ""])
        lines.extend([f"Exported: {_format_for_display(utc_now())}", ""])
        for message in conversation.sorted_messages:
            lines.append(
                f"## {message.role.value.title()} ({_format_for_display(message.timestamp)})"
            )
            lines.append("")
            lines.append(message.content)
            attachment = message.attachment
            if attachment is not None and attachment.title:
                lines.append("")
                lines.append(f"**{attachment.title}**")
                if attachment.description:
                    lines.append(attachment.description)
                if attachment.thumbnail:
                    lines.append(f"![thumbnail]({attachment.thumbnail})")
            lines.append("")

        target.write_text("\n".join(lines), encoding="utf-8")

    def close(self) -> None:
        """Close the underlying sqlite3 connection."""
        self._conn.close()

    def __repr__(self) -> str:
        return f"ChatStore(db_path={self._db_path!r}, tracked={len(self._tracked)})"
