from __future__ import annotations

import datetime as _dt
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import (
    CrawlConfig,
    CrawlSession,
    CrawlStats,
    ExtractedContent,
    FrontierItem,
    FrontierStatus,
    SessionStatus,
    StructuredData,
    _iso,
    _parse_iso,
    utcnow,
)

# (url, depth, parent_url, priority)
FrontierEntry = Tuple[str, int, Optional[str], int]

STAT_FIELDS = ("total_urls", "processed_urls", "failed_urls", "extracted_items")


class StorageBase(ABC):
    """Abstract durable store for crawl sessions, frontier items and content.

    The store is the single source of truth for crawl progress: counters are
    updated in place (``increment_stats``) so concurrent workers never
    overwrite each other's totals.
    """

    # sessions

    @abstractmethod
    def create_session(self, session: CrawlSession) -> None:
        """Persist a new session record."""

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[CrawlSession]:
        ...

    @abstractmethod
    def list_sessions(self) -> List[CrawlSession]:
        ...

    @abstractmethod
    def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        start_time: Optional[_dt.datetime] = None,
        end_time: Optional[_dt.datetime] = None,
    ) -> None:
        ...

    @abstractmethod
    def increment_stats(self, session_id: str, **deltas: int) -> None:
        ...

    @abstractmethod
    def delete_session(self, session_id: str) -> bool:
        """Remove the session together with its frontier items and content."""

    # frontier

    @abstractmethod
    def insert_frontier(self, session_id: str, entries: Iterable[FrontierEntry]) -> int:
        """Insert entries not already present; return how many were new."""

    @abstractmethod
    def claim_next(self, session_id: str, max_attempts: int) -> Optional[FrontierItem]:
        """Atomically flip the best pending item to processing and return it."""

    @abstractmethod
    def set_frontier_status(self, item_id: int, status: FrontierStatus, error: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def get_frontier_item(self, item_id: int) -> Optional[FrontierItem]:
        ...

    @abstractmethod
    def release_claim(self, item_id: int) -> bool:
        """Return a claimed item to pending and give back the attempt it used."""

    @abstractmethod
    def requeue_processing(self, session_id: str) -> int:
        ...

    @abstractmethod
    def frontier_counts(self, session_id: str, max_attempts: int) -> Dict[str, int]:
        ...

    @abstractmethod
    def frontier_items(
        self, session_id: str, status: Optional[FrontierStatus] = None, depth: Optional[int] = None
    ) -> List[FrontierItem]:
        ...

    @abstractmethod
    def retry_failed(self, session_id: str, max_attempts: int) -> int:
        ...

    @abstractmethod
    def purge_frontier(self, session_id: str, older_than: Optional[_dt.datetime] = None) -> int:
        ...

    # content

    @abstractmethod
    def save_content(
        self,
        session_id: str,
        content: ExtractedContent,
        method: Optional[str] = None,
        quality_score: Optional[int] = None,
        structured: Optional[StructuredData] = None,
    ) -> None:
        ...

    @abstractmethod
    def list_content(self, session_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def close(self) -> None:
        """Flush pending writes and release resources."""


_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    domain TEXT NOT NULL,
    start_url TEXT NOT NULL,
    config TEXT NOT NULL,
    status TEXT NOT NULL,
    total_urls INTEGER NOT NULL DEFAULT 0,
    processed_urls INTEGER NOT NULL DEFAULT 0,
    failed_urls INTEGER NOT NULL DEFAULT 0,
    extracted_items INTEGER NOT NULL DEFAULT 0,
    start_time TEXT,
    end_time TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS frontier (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    url TEXT NOT NULL,
    depth INTEGER NOT NULL,
    parent_url TEXT,
    priority INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    discovered_at TEXT NOT NULL,
    processed_at TEXT,
    UNIQUE (session_id, url)
);
CREATE INDEX IF NOT EXISTS idx_frontier_claim ON frontier (session_id, status, priority DESC, depth, discovered_at);
CREATE TABLE IF NOT EXISTS content (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    url TEXT NOT NULL,
    title TEXT,
    description TEXT,
    text_content TEXT,
    markdown_content TEXT,
    content_hash TEXT,
    internal_links TEXT,
    external_links TEXT,
    images TEXT,
    structured_data TEXT,
    method TEXT,
    quality_score INTEGER,
    created_at TEXT NOT NULL,
    UNIQUE (session_id, url)
);
"""

_FRONTIER_COLUMNS = (
    "id, session_id, url, depth, parent_url, priority, status, attempts, last_error, discovered_at, processed_at"
)


class SqliteStorage(StorageBase):
    """SQLite-backed store: one connection in WAL mode, serialised by a lock."""

    def __init__(self, path: str = "crawler.db") -> None:
        self._path = path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.executescript(_SCHEMA)

    # ------------------------------------------------------------ helpers

    def _run(self, sql: str, params: Iterable[Any] = ()) -> int:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).rowcount

    def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchone()

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def _transaction(self):
        return _Transaction(self._conn, self._lock)

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> FrontierItem:
        return FrontierItem(
            id=row["id"],
            session_id=row["session_id"],
            url=row["url"],
            depth=row["depth"],
            parent_url=row["parent_url"],
            priority=row["priority"],
            status=FrontierStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            discovered_at=_parse_iso(row["discovered_at"]),
            processed_at=_parse_iso(row["processed_at"]),
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> CrawlSession:
        return CrawlSession(
            session_id=row["session_id"],
            domain=row["domain"],
            start_url=row["start_url"],
            config=CrawlConfig.from_dict(json.loads(row["config"])),
            status=SessionStatus(row["status"]),
            stats=CrawlStats(
                total_urls=row["total_urls"],
                processed_urls=row["processed_urls"],
                failed_urls=row["failed_urls"],
                extracted_items=row["extracted_items"],
                start_time=_parse_iso(row["start_time"]),
                end_time=_parse_iso(row["end_time"]),
            ),
            created_at=_parse_iso(row["created_at"]),
            updated_at=_parse_iso(row["updated_at"]),
        )

    # ------------------------------------------------------------ sessions

    def create_session(self, session: CrawlSession) -> None:
        stats = session.stats
        self._run(
            "INSERT INTO sessions (session_id, domain, start_url, config, status, total_urls, processed_urls, "
            "failed_urls, extracted_items, start_time, end_time, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session.session_id,
                session.domain,
                session.start_url,
                json.dumps(session.config.to_dict()),
                session.status.value,
                stats.total_urls,
                stats.processed_urls,
                stats.failed_urls,
                stats.extracted_items,
                _iso(stats.start_time),
                _iso(stats.end_time),
                _iso(session.created_at),
                _iso(session.updated_at),
            ),
        )

    def get_session(self, session_id: str) -> Optional[CrawlSession]:
        row = self._fetchone("SELECT * FROM sessions WHERE session_id = ?", (session_id,))
        return self._row_to_session(row) if row else None

    def list_sessions(self) -> List[CrawlSession]:
        rows = self._fetchall("SELECT * FROM sessions ORDER BY created_at DESC")
        return [self._row_to_session(r) for r in rows]

    def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        start_time: Optional[_dt.datetime] = None,
        end_time: Optional[_dt.datetime] = None,
    ) -> None:
        self._run(
            "UPDATE sessions SET status = ?, start_time = COALESCE(?, start_time), "
            "end_time = COALESCE(?, end_time), updated_at = ? WHERE session_id = ?",
            (SessionStatus(status).value, _iso(start_time), _iso(end_time), _iso(utcnow()), session_id),
        )

    def increment_stats(self, session_id: str, **deltas: int) -> None:
        unknown = set(deltas) - set(STAT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown stat fields: {sorted(unknown)}")
        if not deltas:
            return
        assignments = ", ".join(f"{name} = {name} + ?" for name in deltas)
        self._run(
            f"UPDATE sessions SET {assignments}, updated_at = ? WHERE session_id = ?",
            (*deltas.values(), _iso(utcnow()), session_id),
        )

    def delete_session(self, session_id: str) -> bool:
        with self._transaction() as conn:
            conn.execute("DELETE FROM frontier WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM content WHERE session_id = ?", (session_id,))
            deleted = conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,)).rowcount
        return deleted > 0

    # ------------------------------------------------------------ frontier

    def insert_frontier(self, session_id: str, entries: Iterable[FrontierEntry]) -> int:
        inserted = 0
        now = _iso(utcnow())
        with self._transaction() as conn:
            for url, depth, parent_url, priority in entries:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO frontier (session_id, url, depth, parent_url, priority, status, "
                    "attempts, discovered_at) VALUES (?, ?, ?, ?, ?, 'pending', 0, ?)",
                    (session_id, url, depth, parent_url, priority, now),
                )
                inserted += cursor.rowcount
        return inserted

    def claim_next(self, session_id: str, max_attempts: int) -> Optional[FrontierItem]:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_FRONTIER_COLUMNS} FROM frontier WHERE session_id = ? AND status = 'pending' "
                "AND attempts < ? ORDER BY priority DESC, depth ASC, discovered_at ASC, id ASC LIMIT 1",
                (session_id, max_attempts),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE frontier SET status = 'processing', attempts = attempts + 1 WHERE id = ?",
                (row["id"],),
            )
            claimed = conn.execute(f"SELECT {_FRONTIER_COLUMNS} FROM frontier WHERE id = ?", (row["id"],)).fetchone()
        return self._row_to_item(claimed)

    def set_frontier_status(self, item_id: int, status: FrontierStatus, error: Optional[str] = None) -> None:
        status = FrontierStatus(status)
        processed_at = _iso(utcnow()) if status in (FrontierStatus.COMPLETED, FrontierStatus.FAILED) else None
        self._run(
            "UPDATE frontier SET status = ?, last_error = COALESCE(?, last_error), processed_at = ? WHERE id = ?",
            (status.value, error, processed_at, item_id),
        )

    def get_frontier_item(self, item_id: int) -> Optional[FrontierItem]:
        row = self._fetchone(f"SELECT {_FRONTIER_COLUMNS} FROM frontier WHERE id = ?", (item_id,))
        return self._row_to_item(row) if row else None

    def release_claim(self, item_id: int) -> bool:
        return bool(
            self._run(
                "UPDATE frontier SET status = 'pending', attempts = MAX(attempts - 1, 0) "
                "WHERE id = ? AND status = 'processing'",
                (item_id,),
            )
        )

    def requeue_processing(self, session_id: str) -> int:
        return self._run(
            "UPDATE frontier SET status = 'pending', attempts = MAX(attempts - 1, 0) "
            "WHERE session_id = ? AND status = 'processing'",
            (session_id,),
        )

    def frontier_counts(self, session_id: str, max_attempts: int) -> Dict[str, int]:
        counts = {status.value: 0 for status in FrontierStatus}
        rows = self._fetchall(
            "SELECT status, COUNT(*) AS n FROM frontier WHERE session_id = ? GROUP BY status", (session_id,)
        )
        for row in rows:
            counts[row["status"]] = row["n"]
        counts["total"] = sum(counts[s.value] for s in FrontierStatus)
        counts["retryable"] = self._fetchone(
            "SELECT COUNT(*) FROM frontier WHERE session_id = ? AND status = 'pending' AND attempts < ?",
            (session_id, max_attempts),
        )[0]
        return counts

    def frontier_items(
        self, session_id: str, status: Optional[FrontierStatus] = None, depth: Optional[int] = None
    ) -> List[FrontierItem]:
        sql = f"SELECT {_FRONTIER_COLUMNS} FROM frontier WHERE session_id = ?"
        params: List[Any] = [session_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(FrontierStatus(status).value)
        if depth is not None:
            sql += " AND depth = ?"
            params.append(depth)
        sql += " ORDER BY priority DESC, depth ASC, discovered_at ASC, id ASC"
        return [self._row_to_item(r) for r in self._fetchall(sql, params)]

    def retry_failed(self, session_id: str, max_attempts: int) -> int:
        return self._run(
            "UPDATE frontier SET status = 'pending', last_error = NULL "
            "WHERE session_id = ? AND status = 'failed' AND attempts < ?",
            (session_id, max_attempts),
        )

    def purge_frontier(self, session_id: str, older_than: Optional[_dt.datetime] = None) -> int:
        if older_than is None:
            return self._run("DELETE FROM frontier WHERE session_id = ?", (session_id,))
        return self._run(
            "DELETE FROM frontier WHERE session_id = ? AND status IN ('completed', 'failed') AND processed_at < ?",
            (session_id, _iso(older_than)),
        )

    # ------------------------------------------------------------ content

    def save_content(
        self,
        session_id: str,
        content: ExtractedContent,
        method: Optional[str] = None,
        quality_score: Optional[int] = None,
        structured: Optional[StructuredData] = None,
    ) -> None:
        structured_json = None
        if structured is not None:
            structured_json = json.dumps(
                {
                    "schema": structured.schema,
                    "fields": structured.fields,
                    "quality_score": structured.quality_score,
                    "nested_structures": structured.nested_structures,
                },
                default=str,
            )
        self._run(
            "INSERT OR REPLACE INTO content (session_id, url, title, description, text_content, markdown_content, "
            "content_hash, internal_links, external_links, images, structured_data, method, quality_score, "
            "created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session_id,
                content.url,
                content.title,
                content.description,
                content.text_content,
                content.markdown_content,
                content.content_hash,
                json.dumps(content.internal_links),
                json.dumps(content.external_links),
                json.dumps(content.images),
                structured_json,
                method,
                quality_score,
                _iso(utcnow()),
            ),
        )

    def list_content(self, session_id: str) -> List[Dict[str, Any]]:
        rows = self._fetchall("SELECT * FROM content WHERE session_id = ? ORDER BY id", (session_id,))
        records = []
        for row in rows:
            record = dict(row)
            for key in ("internal_links", "external_links", "images"):
                record[key] = json.loads(record[key] or "[]")
            if record.get("structured_data"):
                record["structured_data"] = json.loads(record["structured_data"])
            records.append(record)
        return records

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class _Transaction:
    """BEGIN IMMEDIATE ... COMMIT under the storage lock; rolls back on error."""

    def __init__(self, conn: sqlite3.Connection, lock: threading.RLock) -> None:
        self._conn = conn
        self._lock = lock

    def __enter__(self) -> sqlite3.Connection:
        self._lock.acquire()
        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except Exception:
            self._lock.release()
            raise
        return self._conn

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self._conn.execute("COMMIT")
            else:
                self._conn.execute("ROLLBACK")
        finally:
            self._lock.release()
