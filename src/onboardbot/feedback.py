"""Per-response ratings linked to a conversation."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any
from uuid import uuid4

from .errors import PersistenceError
from .models import FeedbackRecord, Role, utc_now_iso
from .storage import SQLiteStore, dump_json

logger = logging.getLogger(__name__)


class FeedbackStore(SQLiteStore):
    schema = (
        """
        CREATE TABLE IF NOT EXISTS feedback (
            id TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            user_email TEXT NOT NULL,
            user_role TEXT NOT NULL,
            question TEXT NOT NULL DEFAULT '',
            bot_response TEXT NOT NULL DEFAULT '',
            rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
            comment TEXT NOT NULL DEFAULT '',
            is_helpful INTEGER NOT NULL,
            category TEXT NOT NULL DEFAULT 'general',
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_feedback_user ON feedback (user_id)",
        "CREATE INDEX IF NOT EXISTS idx_feedback_conversation ON feedback (conversation_id)",
    )

    def __init__(self, db_path: Path | str) -> None:
        super().__init__(db_path)

    def add(
        self,
        *,
        conversation_id: str,
        user_id: str,
        user_email: str,
        user_role: Role,
        rating: int,
        question: str = "",
        bot_response: str = "",
        comment: str = "",
        is_helpful: bool | None = None,
        category: str = "general",
        metadata: dict[str, Any] | None = None,
    ) -> FeedbackRecord:
        record = FeedbackRecord(
            id=uuid4().hex,
            conversation_id=conversation_id,
            user_id=user_id,
            user_email=user_email,
            user_role=user_role,
            question=question,
            bot_response=bot_response,
            rating=rating,
            comment=comment,
            is_helpful=rating >= 4 if is_helpful is None else bool(is_helpful),
            category=category,
            metadata=dict(metadata or {}),
            created_at=utc_now_iso(),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO feedback (
                        id, conversation_id, user_id, user_email, user_role, question, bot_response,
                        rating, comment, is_helpful, category, metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.conversation_id,
                        record.user_id,
                        record.user_email,
                        record.user_role.value,
                        record.question,
                        record.bot_response,
                        record.rating,
                        record.comment,
                        int(record.is_helpful),
                        record.category,
                        dump_json(record.metadata),
                        record.created_at,
                    ),
                )
        except sqlite3.Error as exc:
            logger.error("feedback.save.failed conversation=%s error=%s", conversation_id, exc)
            raise PersistenceError(f"failed to record feedback for {conversation_id}") from exc
        logger.info(
            "feedback.recorded id=%s conversation=%s rating=%s helpful=%s",
            record.id,
            record.conversation_id,
            record.rating,
            record.is_helpful,
        )
        return record

    def delete(self, feedback_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM feedback WHERE id = ?", (feedback_id,))
            return cursor.rowcount > 0

    def delete_for_conversation(self, conversation_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM feedback WHERE conversation_id = ?", (conversation_id,))
            return cursor.rowcount

    def delete_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM feedback WHERE user_id = ?", (user_id,))
            return cursor.rowcount

    def stats_for_user(self, user_id: str) -> dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       AVG(rating) AS avg_rating,
                       SUM(CASE WHEN is_helpful = 1 THEN 1 ELSE 0 END) AS helpful
                FROM feedback WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        total = int(row["total"] or 0)
        average = row["avg_rating"]
        return {
            "totalFeedback": total,
            "avgRating": round(float(average), 2) if average is not None else 0,
            "helpfulCount": int(row["helpful"] or 0),
        }
