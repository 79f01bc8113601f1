"""Role-gated knowledge entries backed by SQLite with an FTS5 relevance index."""

from __future__ import annotations

import logging
import re
import sqlite3
from pathlib import Path
from typing import Any, Iterable, List
from uuid import uuid4

from .models import Category, KnowledgeEntry, Role, Source, utc_now_iso
from .storage import SQLiteStore, dump_json, load_json

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

# bm25 weights per FTS column: entry_id, title, tags, summary, body
_BM25_WEIGHTS = (0.0, 10.0, 5.0, 3.0, 1.0)

_STOPWORDS = frozenset(
    {
        "a", "about", "an", "and", "are", "as", "at", "be", "by", "can", "do", "does",
        "for", "from", "how", "i", "in", "is", "me", "my", "of", "on", "or",
        "our", "should", "the", "there", "this", "to", "was", "we", "what", "when",
        "where", "which", "who", "why", "will", "with", "you", "your",
    }
)

_SORT_COLUMNS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "title": "title",
    "category": "category",
    "viewCount": "view_count",
}

_UNSET: Any = object()

_SELECT_COLUMNS = (
    "e.id, e.title, e.content, e.summary, e.category, e.source, e.tags, e.access_roles, "
    "e.is_active, e.view_count, e.last_accessed, e.created_by, e.created_at, e.updated_at"
)


def build_match_expression(query: str) -> str:
    """Turn free text into an OR-of-terms FTS5 expression.

    Stopwords are dropped unless nothing else remains. Returns an empty string
    when the text has no searchable tokens.
    """

    terms: list[str] = []
    for match in _TOKEN_RE.findall((query or "").lower()):
        if match not in terms:
            terms.append(match)
    meaningful = [term for term in terms if term not in _STOPWORDS]
    selected = meaningful or terms
    return " OR ".join(f'"{term}"' for term in selected)


class KnowledgeStore(SQLiteStore):
    """Knowledge entries plus a weighted full-text index kept in the same database."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS knowledge_entries (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            summary TEXT NOT NULL DEFAULT '',
            category TEXT NOT NULL,
            source TEXT NOT NULL,
            tags TEXT NOT NULL DEFAULT '[]',
            access_roles TEXT NOT NULL DEFAULT '[]',
            is_active INTEGER NOT NULL DEFAULT 1,
            view_count INTEGER NOT NULL DEFAULT 0,
            last_accessed TEXT,
            created_by TEXT NOT NULL DEFAULT 'system',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_knowledge_active_category ON knowledge_entries (is_active, category)",
        """
        CREATE VIRTUAL TABLE IF NOT EXISTS knowledge_search USING fts5(
            entry_id UNINDEXED,
            title,
            tags,
            summary,
            body,
            tokenize = 'porter unicode61'
        )
        """,
    )

    def __init__(self, db_path: Path | str) -> None:
        super().__init__(db_path)

    # Retrieval --------------------------------------------------------

    def search_by_role(self, query: str, role: Role, limit: int = 10) -> List[KnowledgeEntry]:
        """Return active entries visible to ``role``, most relevant first."""

        expression = build_match_expression(query)
        if not expression or limit <= 0:
            return []
        weights = ", ".join(str(weight) for weight in _BM25_WEIGHTS)
        sql = f"""
            SELECT {_SELECT_COLUMNS}, bm25(knowledge_search, {weights}) AS score
            FROM knowledge_search
            JOIN knowledge_entries e ON e.id = knowledge_search.entry_id
            WHERE knowledge_search MATCH ?
              AND e.is_active = 1
              AND (
                NOT EXISTS (SELECT 1 FROM json_each(e.access_roles))
                OR EXISTS (SELECT 1 FROM json_each(e.access_roles) WHERE json_each.value = ?)
              )
            ORDER BY score
            LIMIT ?
        """
        with self._connect() as conn:
            try:
                rows = conn.execute(sql, (expression, Role.parse(role).value, limit)).fetchall()
            except sqlite3.OperationalError as exc:
                logger.debug("knowledge.search.skip query=%r", query, exc_info=exc)
                return []
        entries = [_row_to_entry(row) for row in rows]
        logger.debug(
            "knowledge.search role=%s hits=%s titles=%s",
            role.value if isinstance(role, Role) else role,
            len(entries),
            [entry.title for entry in entries],
        )
        return entries

    def increment_view(self, entry_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE knowledge_entries SET view_count = view_count + 1, last_accessed = ? WHERE id = ?",
                    (utc_now_iso(), entry_id),
                )
        except sqlite3.Error as exc:
            logger.warning("knowledge.view.increment_failed entry=%s error=%s", entry_id, exc)

    def increment_views(self, entry_ids: Iterable[str]) -> None:
        for entry_id in entry_ids:
            self.increment_view(entry_id)

    # Administration ---------------------------------------------------

    def create(
        self,
        *,
        title: str,
        content: str,
        summary: str = "",
        category: Category = Category.GENERAL,
        source: Source = Source.MANUAL,
        tags: Iterable[str] | None = None,
        access_roles: Iterable[Role] | None = None,
        created_by: str = "system",
        is_active: bool = True,
    ) -> KnowledgeEntry:
        category = Category(category)
        now = utc_now_iso()
        roles = frozenset(Role.parse(role) for role in access_roles) if access_roles is not None else None
        entry = KnowledgeEntry(
            id=uuid4().hex,
            title=title.strip(),
            content=content,
            summary=(summary or "").strip(),
            category=category,
            source=Source(source),
            tags=_normalize_tags(tags),
            access_roles=roles if roles is not None else category.default_access_roles(),
            is_active=is_active,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO knowledge_entries (
                    id, title, content, summary, category, source, tags, access_roles,
                    is_active, view_count, last_accessed, created_by, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.title,
                    entry.content,
                    entry.summary,
                    entry.category.value,
                    entry.source.value,
                    dump_json(sorted(entry.tags)),
                    dump_json(sorted(role.value for role in entry.access_roles)),
                    int(entry.is_active),
                    entry.created_by,
                    entry.created_at,
                    entry.updated_at,
                ),
            )
            self._index(conn, entry)
        logger.info("knowledge.created id=%s category=%s title=%s", entry.id, entry.category.value, entry.title)
        return entry

    def get(self, entry_id: str) -> KnowledgeEntry | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM knowledge_entries e WHERE e.id = ?",
                (entry_id,),
            ).fetchone()
        return _row_to_entry(row) if row else None

    def update(
        self,
        entry_id: str,
        *,
        title: str | Any = _UNSET,
        content: str | Any = _UNSET,
        summary: str | Any = _UNSET,
        category: Category | Any = _UNSET,
        tags: Iterable[str] | Any = _UNSET,
        access_roles: Iterable[Role] | Any = _UNSET,
        is_active: bool | Any = _UNSET,
    ) -> KnowledgeEntry | None:
        entry = self.get(entry_id)
        if entry is None:
            return None
        if title is not _UNSET and title:
            entry.title = str(title).strip()
        if content is not _UNSET and content:
            entry.content = str(content)
        if summary is not _UNSET and summary is not None:
            entry.summary = str(summary).strip()
        if category is not _UNSET and category:
            entry.category = Category(category)
        if tags is not _UNSET and tags is not None:
            entry.tags = _normalize_tags(tags)
        if access_roles is not _UNSET and access_roles is not None:
            entry.access_roles = frozenset(Role.parse(role) for role in access_roles)
        if is_active is not _UNSET and is_active is not None:
            entry.is_active = bool(is_active)
        entry.updated_at = utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE knowledge_entries
                SET title = ?, content = ?, summary = ?, category = ?, tags = ?,
                    access_roles = ?, is_active = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    entry.title,
                    entry.content,
                    entry.summary,
                    entry.category.value,
                    dump_json(sorted(entry.tags)),
                    dump_json(sorted(role.value for role in entry.access_roles)),
                    int(entry.is_active),
                    entry.updated_at,
                    entry.id,
                ),
            )
            self._index(conn, entry)
        logger.info("knowledge.updated id=%s active=%s", entry.id, entry.is_active)
        return entry

    def delete(self, entry_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM knowledge_entries WHERE id = ?", (entry_id,))
            conn.execute("DELETE FROM knowledge_search WHERE entry_id = ?", (entry_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("knowledge.deleted id=%s", entry_id)
        return deleted

    def list_entries(
        self,
        *,
        category: str | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> tuple[list[KnowledgeEntry], int]:
        """Page through active entries for the admin listing."""

        clauses = ["e.is_active = 1"]
        params: list[Any] = []
        if category and category != "all":
            clauses.append("e.category = ?")
            params.append(Category(category).value)
        if search:
            expression = build_match_expression(search)
            if not expression:
                return [], 0
            clauses.append(
                "e.id IN (SELECT entry_id FROM knowledge_search WHERE knowledge_search MATCH ?)"
            )
            params.append(expression)
        where = " AND ".join(clauses)
        column = _SORT_COLUMNS.get(sort_by, "created_at")
        direction = "ASC" if str(sort_order).lower() == "asc" else "DESC"
        limit = max(1, limit)
        offset = (max(1, page) - 1) * limit
        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM knowledge_entries e WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM knowledge_entries e WHERE {where} "
                f"ORDER BY e.{column} {direction} LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return [_row_to_entry(row) for row in rows], int(total)

    def categories(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT DISTINCT category FROM knowledge_entries ORDER BY category").fetchall()
        return [row[0] for row in rows]

    def export_all(self) -> list[KnowledgeEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM knowledge_entries e ORDER BY e.created_at"
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def delete_by_source(self, source: Source) -> int:
        with self._connect() as conn:
            ids = [row[0] for row in conn.execute(
                "SELECT id FROM knowledge_entries WHERE source = ?", (Source(source).value,)
            )]
            conn.executemany("DELETE FROM knowledge_search WHERE entry_id = ?", [(item,) for item in ids])
            conn.execute("DELETE FROM knowledge_entries WHERE source = ?", (Source(source).value,))
        return len(ids)

    @staticmethod
    def _index(conn: sqlite3.Connection, entry: KnowledgeEntry) -> None:
        conn.execute("DELETE FROM knowledge_search WHERE entry_id = ?", (entry.id,))
        conn.execute(
            "INSERT INTO knowledge_search (entry_id, title, tags, summary, body) VALUES (?, ?, ?, ?, ?)",
            (entry.id, entry.title, " ".join(sorted(entry.tags)), entry.summary, entry.content),
        )


def _normalize_tags(tags: Iterable[str] | None) -> frozenset[str]:
    return frozenset(tag.strip().lower() for tag in (tags or []) if tag and tag.strip())


def _row_to_entry(row: sqlite3.Row) -> KnowledgeEntry:
    keys = row.keys()
    score = row["score"] if "score" in keys else None
    return KnowledgeEntry(
        id=row["id"],
        title=row["title"],
        content=row["content"],
        summary=row["summary"] or "",
        category=Category(row["category"]),
        source=Source(row["source"]),
        tags=frozenset(load_json(row["tags"], [])),
        access_roles=frozenset(Role.parse(value) for value in load_json(row["access_roles"], [])),
        is_active=bool(row["is_active"]),
        view_count=int(row["view_count"]),
        last_accessed=row["last_accessed"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        # bm25 is lower-is-better; flip it so callers read higher-is-more-relevant
        score=-float(score) if score is not None else None,
    )
