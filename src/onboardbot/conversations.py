"""Conversation sessions and their append-only message logs."""

from __future__ import annotations

import logging
import secrets
import sqlite3
import time
from pathlib import Path
from typing import Any, List
from uuid import uuid4

from .errors import PersistenceError
from .models import (
    ConversationSession,
    DeviceMetadata,
    Identity,
    Message,
    MessageRole,
    Role,
    SessionFeedback,
    utc_now_iso,
)
from .storage import SQLiteStore, dump_json, load_json

logger = logging.getLogger(__name__)

_SESSION_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


def new_session_token() -> str:
    """Return an opaque ``session_<epoch-ms>_<random>`` identifier."""

    suffix = "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class ConversationStore(SQLiteStore):
    """SQLite-backed sessions; every lookup is scoped by the owning user."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL UNIQUE,
            user_id TEXT NOT NULL,
            user_email TEXT NOT NULL,
            user_name TEXT NOT NULL,
            user_role TEXT NOT NULL,
            feedback TEXT,
            device_type TEXT NOT NULL DEFAULT 'desktop',
            browser TEXT NOT NULL DEFAULT 'unknown',
            ip_address TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_conversations_user_updated ON conversations (user_id, updated_at)",
        """
        CREATE TABLE IF NOT EXISTS conversation_messages (
            conversation_id TEXT NOT NULL REFERENCES conversations (id) ON DELETE CASCADE,
            seq INTEGER NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            quick_replies TEXT NOT NULL DEFAULT '[]',
            metadata TEXT NOT NULL DEFAULT '{}',
            PRIMARY KEY (conversation_id, seq)
        )
        """,
    )

    def __init__(self, db_path: Path | str) -> None:
        super().__init__(db_path)

    # Lookup -------------------------------------------------------------

    def find_session(self, session_id: str, user_id: str) -> ConversationSession | None:
        return self._load("c.session_id = ? AND c.user_id = ?", (session_id, user_id))

    def find_by_id(self, conversation_id: str, user_id: str) -> ConversationSession | None:
        return self._load("c.id = ? AND c.user_id = ?", (conversation_id, user_id))

    def find_by_user(self, user_id: str, limit: int = 20) -> List[ConversationSession]:
        """Return the caller's sessions, most recently updated first."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM conversations c WHERE c.user_id = ? ORDER BY c.updated_at DESC LIMIT ?",
                (user_id, max(1, limit)),
            ).fetchall()
            return [self._hydrate(conn, row) for row in rows]

    # Mutation -----------------------------------------------------------

    def create_session(self, identity: Identity, device: DeviceMetadata | None = None) -> ConversationSession:
        """Build a fresh in-memory session; nothing is written until :meth:`save`."""

        now = utc_now_iso()
        session = ConversationSession(
            id=uuid4().hex,
            session_id=new_session_token(),
            user_id=identity.id,
            user_email=identity.email,
            user_name=identity.name,
            user_role=identity.role,
            metadata=device or DeviceMetadata(),
            created_at=now,
            updated_at=now,
        )
        logger.debug("conversation.session.created session=%s user=%s", session.session_id, identity.id)
        return session

    @staticmethod
    def append_message(session: ConversationSession, message: Message) -> None:
        session.messages.append(message)

    def save(self, session: ConversationSession) -> ConversationSession:
        """Persist the session row and any messages appended since the last save."""

        pending = session.pending_messages
        updated_at = utc_now_iso()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO conversations (
                        id, session_id, user_id, user_email, user_name, user_role, feedback,
                        device_type, browser, ip_address, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        feedback = excluded.feedback,
                        updated_at = excluded.updated_at
                    """,
                    (
                        session.id,
                        session.session_id,
                        session.user_id,
                        session.user_email,
                        session.user_name,
                        session.user_role.value,
                        _dump_feedback(session.feedback),
                        session.metadata.device_type,
                        session.metadata.browser,
                        session.metadata.ip_address,
                        session.created_at,
                        updated_at,
                    ),
                )
                next_seq = conn.execute(
                    "SELECT COALESCE(MAX(seq), -1) + 1 FROM conversation_messages WHERE conversation_id = ?",
                    (session.id,),
                ).fetchone()[0]
                conn.executemany(
                    """
                    INSERT INTO conversation_messages (
                        conversation_id, seq, role, content, timestamp, quick_replies, metadata
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            session.id,
                            next_seq + offset,
                            message.role.value,
                            message.content,
                            message.timestamp,
                            dump_json(list(message.quick_replies)),
                            dump_json(message.metadata),
                        )
                        for offset, message in enumerate(pending)
                    ],
                )
        except sqlite3.Error as exc:
            logger.error("conversation.save.failed session=%s error=%s", session.session_id, exc)
            raise PersistenceError(f"failed to save session {session.session_id}") from exc
        session.persisted_count = len(session.messages)
        session.updated_at = updated_at
        logger.debug(
            "conversation.saved session=%s appended=%s total=%s",
            session.session_id,
            len(pending),
            len(session.messages),
        )
        return session

    def delete_session(self, session_id: str, user_id: str) -> ConversationSession | None:
        """Remove one owned session and return it, or ``None`` when not found."""

        session = self.find_session(session_id, user_id)
        if session is None:
            return None
        with self._connect() as conn:
            conn.execute("DELETE FROM conversation_messages WHERE conversation_id = ?", (session.id,))
            conn.execute("DELETE FROM conversations WHERE id = ?", (session.id,))
        logger.info("conversation.deleted session=%s user=%s", session_id, user_id)
        return session

    def delete_all_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM conversation_messages WHERE conversation_id IN "
                "(SELECT id FROM conversations WHERE user_id = ?)",
                (user_id,),
            )
            cursor = conn.execute("DELETE FROM conversations WHERE user_id = ?", (user_id,))
            deleted = cursor.rowcount
        logger.info("conversation.deleted_all user=%s count=%s", user_id, deleted)
        return deleted

    # Aggregates ---------------------------------------------------------

    def stats_for_user(self, user_id: str) -> dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS conversations,
                       COALESCE(SUM(counts.total), 0) AS messages,
                       MAX(c.updated_at) AS last_activity
                FROM conversations c
                LEFT JOIN (
                    SELECT conversation_id, COUNT(*) AS total
                    FROM conversation_messages GROUP BY conversation_id
                ) counts ON counts.conversation_id = c.id
                WHERE c.user_id = ?
                """,
                (user_id,),
            ).fetchone()
        conversations = int(row["conversations"] or 0)
        messages = int(row["messages"] or 0)
        return {
            "totalConversations": conversations,
            "totalMessages": messages,
            "avgMessagesPerConversation": round(messages / conversations, 2) if conversations else 0,
            "lastActivity": row["last_activity"],
        }

    # Internals ----------------------------------------------------------

    def _load(self, where: str, params: tuple[Any, ...]) -> ConversationSession | None:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM conversations c WHERE {where}", params).fetchone()
            if row is None:
                return None
            return self._hydrate(conn, row)

    @staticmethod
    def _hydrate(conn: sqlite3.Connection, row: sqlite3.Row) -> ConversationSession:
        message_rows = conn.execute(
            "SELECT role, content, timestamp, quick_replies, metadata FROM conversation_messages "
            "WHERE conversation_id = ? ORDER BY seq",
            (row["id"],),
        ).fetchall()
        messages = [
            Message(
                role=MessageRole(item["role"]),
                content=item["content"],
                timestamp=item["timestamp"],
                quick_replies=tuple(load_json(item["quick_replies"], [])),
                metadata=load_json(item["metadata"], {}),
            )
            for item in message_rows
        ]
        return ConversationSession(
            id=row["id"],
            session_id=row["session_id"],
            user_id=row["user_id"],
            user_email=row["user_email"],
            user_name=row["user_name"],
            user_role=Role.parse(row["user_role"], default=Role.EMPLOYEE),
            messages=messages,
            feedback=_load_feedback(row["feedback"]),
            metadata=DeviceMetadata(
                device_type=row["device_type"],
                browser=row["browser"],
                ip_address=row["ip_address"],
            ),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            persisted_count=len(messages),
        )


def _dump_feedback(feedback: SessionFeedback | None) -> str | None:
    if feedback is None:
        return None
    return dump_json(
        {"rating": feedback.rating, "comment": feedback.comment, "submittedAt": feedback.submitted_at}
    )


def _load_feedback(raw: str | None) -> SessionFeedback | None:
    data = load_json(raw, None)
    if not data:
        return None
    return SessionFeedback(
        rating=int(data.get("rating", 0)),
        comment=str(data.get("comment", "")),
        submitted_at=str(data.get("submittedAt", "")),
    )
