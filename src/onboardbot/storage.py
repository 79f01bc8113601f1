"""SQLite plumbing shared by the knowledge, conversation, and feedback stores."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Sequence

logger = logging.getLogger(__name__)


class SQLiteStore:
    """Base class opening one short-lived connection per operation."""

    schema: Sequence[str] = ()

    def __init__(self, db_path: Path | str, *, timeout: float = 10.0) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self._db_path), timeout=self._timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in self.schema:
                conn.execute(statement)
        logger.debug("storage.schema.ready store=%s path=%s", type(self).__name__, self._db_path)


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("storage.json.decode_failed value=%r", raw[:80])
        return default
