"""
Article repository - CRUD for captured articles and their images.
"""

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models import (
    log, Article, ArticleFilter, ExtractedArticle, ImageDescriptor, StoredImage,
    IMAGE_URL_PREFIX, FAILURE_SNAPSHOT_CHARS, FAILED_CAPTURE_TITLE, utcnow_iso
)
from ..errors import NotFound, ValidationError
from ..utils.formatting import resolve_local_image
from .connection import Database
from .tag_repository import attach_tags, clean_tag_names, normalize_tag_name, tag_names_for

SORT_ORDERS = {
    "created_at_desc": "created_at DESC",
    "created_at_asc": "created_at ASC",
    "title_asc": "title COLLATE NOCASE ASC",
    "title_desc": "title COLLATE NOCASE DESC",
    "reading_time_asc": "reading_time_minutes ASC",
}
DEFAULT_SORT = "created_at_desc"
MUTABLE_FIELDS = ("title", "is_archived", "is_favorite")
MAX_PAGE_SIZE = 100

_BOOL_COLUMNS = ("has_images", "capture_success", "is_archived", "is_favorite")


class ArticleRepository:
    """Repository for articles and the images rehosted for them."""

    def __init__(self, db: Database, images_dir: Optional[str] = None):
        self._db = db
        self.images_dir = images_dir

    def upsert(self, record: ExtractedArticle, images: Optional[Sequence[ImageDescriptor]] = None,
               tags: Optional[Sequence[str]] = None) -> int:
        """Insert or update by canonical URL; the article row, its image set and tags commit together.

        Image rows from an earlier capture are replaced by ``images``. Tags are added to any the
        article already carries.
        """
        images = list(record.images if images is None else images)
        tag_names = clean_tag_names(tags)
        for image in images:
            if not (image.local_path or '').startswith(IMAGE_URL_PREFIX):
                raise ValidationError(f"Image local_path must start with {IMAGE_URL_PREFIX}: {image.local_path}")

        now = utcnow_iso()
        published_at = _iso(record.published_at)
        with self._db.conn() as conn:
            conn.execute(
                """INSERT INTO articles (
                       url, title, original_url, content_html, content_text, excerpt,
                       author, site_name, published_at, language, word_count,
                       reading_time_minutes, has_images, image_count,
                       capture_success, capture_error, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, NULL, ?, ?)
                   ON CONFLICT(url) DO UPDATE SET
                       title = excluded.title,
                       original_url = excluded.original_url,
                       content_html = excluded.content_html,
                       content_text = excluded.content_text,
                       excerpt = excluded.excerpt,
                       author = excluded.author,
                       site_name = excluded.site_name,
                       published_at = excluded.published_at,
                       language = excluded.language,
                       word_count = excluded.word_count,
                       reading_time_minutes = excluded.reading_time_minutes,
                       has_images = excluded.has_images,
                       image_count = excluded.image_count,
                       capture_success = 1,
                       capture_error = NULL,
                       updated_at = excluded.updated_at""",
                (
                    record.url, record.title, record.original_url or record.url,
                    record.content_html, record.content_text, record.excerpt,
                    record.author, record.site_name, published_at, record.language or "en",
                    record.word_count, record.reading_time_minutes,
                    1 if images else 0, len(images), now, now,
                )
            )
            article_id = conn.execute("SELECT id FROM articles WHERE url = ?", (record.url,)).fetchone()["id"]

            conn.execute("DELETE FROM article_images WHERE article_id = ?", (article_id,))
            conn.executemany(
                """INSERT INTO article_images (
                       article_id, original_url, local_path, alt_text, width, height, size_bytes, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (article_id, img.original_url, img.local_path, img.alt_text,
                     img.width, img.height, img.size_bytes, now)
                    for img in images
                ]
            )
            if tag_names:
                attach_tags(conn, article_id, tag_names, now)
        log.info(f"Saved article {article_id}: {record.title} ({len(images)} images)")
        return article_id

    def record_failure(self, url: str, error: str, raw_html: Optional[str] = None,
                       title: Optional[str] = None) -> int:
        """Persist a failed capture; existing image rows stay as they are."""
        now = utcnow_iso()
        snapshot = raw_html[:FAILURE_SNAPSHOT_CHARS] if raw_html else None
        with self._db.conn() as conn:
            conn.execute(
                """INSERT INTO articles (
                       url, title, original_url, content_html, capture_success,
                       capture_error, created_at, updated_at)
                   VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                   ON CONFLICT(url) DO UPDATE SET
                       title = excluded.title,
                       content_html = excluded.content_html,
                       capture_success = 0,
                       capture_error = excluded.capture_error,
                       updated_at = excluded.updated_at""",
                (url, title or FAILED_CAPTURE_TITLE, url, snapshot, error, now, now)
            )
            article_id = conn.execute("SELECT id FROM articles WHERE url = ?", (url,)).fetchone()["id"]
        log.warning(f"Recorded failed capture {article_id} for {url}: {error}")
        return article_id

    def get(self, article_id: int) -> Article:
        with self._db.conn() as conn:
            row = conn.execute("SELECT * FROM articles WHERE id = ?", (article_id,)).fetchone()
            if row is None:
                raise NotFound(f"Article {article_id} not found")
            tags = tag_names_for(conn, [article_id])
        return _row_to_article(row, tags.get(article_id))

    def get_by_url(self, url: str) -> Optional[Article]:
        with self._db.conn() as conn:
            row = conn.execute("SELECT * FROM articles WHERE url = ?", (url,)).fetchone()
            if row is None:
                return None
            tags = tag_names_for(conn, [row["id"]])
        return _row_to_article(row, tags.get(row["id"]))

    def list(self, filters: Optional[ArticleFilter] = None, page: int = 1,
             limit: int = 20) -> Tuple[List[Article], int]:
        filters = filters or ArticleFilter()
        if not isinstance(page, int) or page < 1:
            raise ValidationError(f"page must be >= 1, got {page}")
        if not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be within 1-{MAX_PAGE_SIZE}, got {limit}")

        conditions: List[str] = []
        params: List[Any] = []
        if filters.capture_success is not None:
            conditions.append("capture_success = ?")
            params.append(1 if filters.capture_success else 0)
        if filters.is_archived is not None:
            conditions.append("is_archived = ?")
            params.append(1 if filters.is_archived else 0)
        if filters.is_favorite is not None:
            conditions.append("is_favorite = ?")
            params.append(1 if filters.is_favorite else 0)
        if filters.tag:
            conditions.append(
                "EXISTS (SELECT 1 FROM article_tags at JOIN tags t ON t.id = at.tag_id"
                " WHERE at.article_id = articles.id AND t.name = ?)"
            )
            params.append(normalize_tag_name(filters.tag))
        if filters.search:
            conditions.append(
                "(title LIKE ? ESCAPE '\\' OR content_text LIKE ? ESCAPE '\\' OR excerpt LIKE ? ESCAPE '\\')"
            )
            pattern = f"%{escape_like(filters.search)}%"
            params.extend([pattern, pattern, pattern])

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        sort_key = filters.sort_by if filters.sort_by in SORT_ORDERS else DEFAULT_SORT
        if sort_key != filters.sort_by:
            log.debug(f"Unknown sort key {filters.sort_by!r}, using {DEFAULT_SORT}")

        with self._db.conn() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM articles {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM articles {where} ORDER BY {SORT_ORDERS[sort_key]}, id DESC LIMIT ? OFFSET ?",
                params + [limit, (page - 1) * limit]
            ).fetchall()
            tags = tag_names_for(conn, [r["id"] for r in rows])
        return [_row_to_article(r, tags.get(r["id"])) for r in rows], total

    def update(self, article_id: int, patch: Dict[str, Any]) -> Article:
        unknown = set(patch) - set(MUTABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}")
        if not patch:
            raise ValidationError("No fields to update")
        if "title" in patch and not (isinstance(patch["title"], str) and patch["title"].strip()):
            raise ValidationError("title must be a non-empty string")

        assignments = []
        params: List[Any] = []
        for name in MUTABLE_FIELDS:
            if name not in patch:
                continue
            value = patch[name]
            if name != "title":
                value = 1 if value else 0
            assignments.append(f"{name} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.extend([utcnow_iso(), article_id])

        with self._db.conn() as conn:
            cursor = conn.execute(f"UPDATE articles SET {', '.join(assignments)} WHERE id = ?", params)
            if cursor.rowcount == 0:
                raise NotFound(f"Article {article_id} not found")
        return self.get(article_id)

    def delete(self, article_id: int):
        """Delete an article; image files are unlinked best-effort before the row goes."""
        images = self.images_for(self.get(article_id).id)
        if self.images_dir:
            for image in images:
                path = resolve_local_image(image.local_path, self.images_dir)
                if path is None:
                    continue
                try:
                    os.remove(path)
                except OSError as e:
                    log.warning(f"Could not remove image file {path}: {e}")
        with self._db.conn() as conn:
            cursor = conn.execute("DELETE FROM articles WHERE id = ?", (article_id,))
            if cursor.rowcount == 0:
                raise NotFound(f"Article {article_id} not found")
        log.info(f"Deleted article {article_id} ({len(images)} images)")

    def get_for_export(self, article_ids: Sequence[int]) -> List[Article]:
        """Successful captures among ``article_ids``, oldest publication first."""
        if not article_ids:
            return []
        placeholders = ",".join("?" for _ in article_ids)
        with self._db.conn() as conn:
            rows = conn.execute(
                f"""SELECT * FROM articles
                    WHERE id IN ({placeholders}) AND capture_success = 1
                    ORDER BY published_at ASC, created_at ASC""",
                list(article_ids)
            ).fetchall()
        return [_row_to_article(r) for r in rows]

    def images_for(self, article_id: int) -> List[StoredImage]:
        with self._db.conn() as conn:
            rows = conn.execute(
                "SELECT * FROM article_images WHERE article_id = ? ORDER BY id", (article_id,)
            ).fetchall()
        return [
            StoredImage(
                id=r["id"], article_id=r["article_id"], original_url=r["original_url"],
                local_path=r["local_path"], alt_text=r["alt_text"], width=r["width"],
                height=r["height"], size_bytes=r["size_bytes"],
            )
            for r in rows
        ]

    def stats(self) -> Dict[str, int]:
        with self._db.conn() as conn:
            row = conn.execute(
                """SELECT
                       COUNT(*) AS total_articles,
                       COALESCE(SUM(is_archived), 0) AS archived_count,
                       COALESCE(SUM(is_favorite), 0) AS favorite_count,
                       COALESCE(SUM(has_images), 0) AS with_images_count,
                       COALESCE(SUM(word_count), 0) AS total_words,
                       COALESCE(SUM(reading_time_minutes), 0) AS total_reading_time
                   FROM articles WHERE capture_success = 1"""
            ).fetchone()
            failed = conn.execute("SELECT COUNT(*) FROM articles WHERE capture_success = 0").fetchone()[0]
        stats = dict(row)
        stats["failed_count"] = failed
        return stats


def _iso(value) -> Optional[str]:
    """ISO-8601 in UTC so that text ordering in SQLite matches time ordering."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return str(value)


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input matches literally (used with ESCAPE '\\')."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_article(row: sqlite3.Row, tags: Optional[List[str]] = None) -> Article:
    data = dict(row)
    for name in _BOOL_COLUMNS:
        data[name] = bool(data[name])
    return Article(tags=list(tags or []), **data)
