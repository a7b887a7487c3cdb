"""
Database connection management and schema initialization.
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator

from ..models import log


class Database:
    """One process-wide SQLite connection with WAL and foreign keys enabled."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            parent = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(parent, exist_ok=True)
        self._lock = threading.RLock()
        self._connection = sqlite3.connect(db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")
        self._connection.execute("PRAGMA journal_mode = WAL")
        self._init_schema()
        log.info(f"Database ready at {db_path}")

    @contextmanager
    def conn(self) -> Iterator[sqlite3.Connection]:
        """Connection for one unit of work; commits on success, rolls back on error."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database is closed")
        with self._lock:
            try:
                yield self._connection
                self._connection.commit()
            except BaseException:
                self._connection.rollback()
                raise

    def pragma(self, name: str):
        with self.conn() as connection:
            row = connection.execute(f"PRAGMA {name}").fetchone()
            return row[0] if row else None

    def close(self):
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
                log.info("Database connection closed")

    def _init_schema(self):
        with self.conn() as connection:
            connection.executescript("""
                CREATE TABLE IF NOT EXISTS articles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT UNIQUE NOT NULL,
                    title TEXT NOT NULL,
                    original_url TEXT,
                    content_html TEXT,
                    content_text TEXT,
                    excerpt TEXT,
                    author TEXT,
                    site_name TEXT,
                    published_at TEXT,
                    language TEXT DEFAULT 'en',
                    word_count INTEGER DEFAULT 0,
                    reading_time_minutes INTEGER DEFAULT 1,
                    has_images INTEGER DEFAULT 0,
                    image_count INTEGER DEFAULT 0,
                    capture_success INTEGER DEFAULT 1,
                    capture_error TEXT,
                    is_archived INTEGER DEFAULT 0,
                    is_favorite INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS article_images (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    article_id INTEGER NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
                    original_url TEXT NOT NULL,
                    local_path TEXT NOT NULL,
                    alt_text TEXT,
                    width INTEGER,
                    height INTEGER,
                    size_bytes INTEGER,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tags (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT UNIQUE NOT NULL,
                    color TEXT DEFAULT '#6B7280',
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS article_tags (
                    article_id INTEGER NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
                    tag_id INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (article_id, tag_id)
                );

                CREATE TABLE IF NOT EXISTS epub_exports (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    article_count INTEGER NOT NULL,
                    file_path TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    sent_to_kindle INTEGER DEFAULT 0,
                    sent_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_articles_created ON articles(created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_articles_published ON articles(published_at);
                CREATE INDEX IF NOT EXISTS idx_articles_archived ON articles(is_archived);
                CREATE INDEX IF NOT EXISTS idx_articles_favorite ON articles(is_favorite);
                CREATE INDEX IF NOT EXISTS idx_images_article ON article_images(article_id);
                CREATE INDEX IF NOT EXISTS idx_article_tags_tag ON article_tags(tag_id);
                CREATE INDEX IF NOT EXISTS idx_exports_created ON epub_exports(created_at DESC);
            """)
