"""
Tag repository - lowercase labels attached to articles.
"""

import sqlite3
from typing import Dict, Iterable, List, Optional, Sequence

from ..models import log, Tag, DEFAULT_TAG_COLOR, utcnow_iso
from ..errors import Conflict, NotFound, ValidationError
from .connection import Database

MAX_TAG_LENGTH = 50


def normalize_tag_name(name) -> str:
    if not isinstance(name, str):
        raise ValidationError(f"Tag name must be a string, got {type(name).__name__}")
    clean = name.strip().lower()
    if len(clean) > MAX_TAG_LENGTH:
        raise ValidationError(f"Tag name longer than {MAX_TAG_LENGTH} characters: {clean[:20]}...")
    return clean


def clean_tag_names(names: Optional[Iterable[str]]) -> List[str]:
    """Normalized, de-duplicated names in first-seen order; blanks are dropped."""
    cleaned: List[str] = []
    for name in names or ():
        clean = normalize_tag_name(name)
        if clean and clean not in cleaned:
            cleaned.append(clean)
    return cleaned


def attach_tags(conn: sqlite3.Connection, article_id: int, names: Sequence[str], now: str):
    """Create missing tags and link them to the article; runs inside the caller's transaction."""
    for name in names:
        conn.execute(
            "INSERT OR IGNORE INTO tags (name, color, created_at) VALUES (?, ?, ?)",
            (name, DEFAULT_TAG_COLOR, now)
        )
        tag_id = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()["id"]
        conn.execute(
            "INSERT OR IGNORE INTO article_tags (article_id, tag_id, created_at) VALUES (?, ?, ?)",
            (article_id, tag_id, now)
        )


def tag_names_for(conn: sqlite3.Connection, article_ids: Sequence[int]) -> Dict[int, List[str]]:
    if not article_ids:
        return {}
    placeholders = ",".join("?" for _ in article_ids)
    rows = conn.execute(
        f"""SELECT at.article_id, t.name FROM article_tags at
            JOIN tags t ON t.id = at.tag_id
            WHERE at.article_id IN ({placeholders})
            ORDER BY t.name""",
        list(article_ids)
    ).fetchall()
    names: Dict[int, List[str]] = {}
    for row in rows:
        names.setdefault(row["article_id"], []).append(row["name"])
    return names


class TagRepository:

    def __init__(self, db: Database):
        self._db = db

    def list(self) -> List[Tag]:
        """Every tag with its article count, most used first."""
        with self._db.conn() as conn:
            rows = conn.execute(
                f"""{_SELECT_WITH_COUNT}
                    GROUP BY t.id
                    ORDER BY article_count DESC, t.name ASC"""
            ).fetchall()
        return [_row_to_tag(r) for r in rows]

    def popular(self, limit: int = 20) -> List[Tag]:
        return self.list()[:limit]

    def get(self, tag_id: int) -> Tag:
        with self._db.conn() as conn:
            row = conn.execute(
                f"{_SELECT_WITH_COUNT} WHERE t.id = ? GROUP BY t.id", (tag_id,)
            ).fetchone()
        if row is None:
            raise NotFound(f"Tag {tag_id} not found")
        return _row_to_tag(row)

    def create(self, name: str, color: Optional[str] = None) -> Tag:
        clean = normalize_tag_name(name)
        if not clean:
            raise ValidationError("Tag name cannot be empty")
        try:
            with self._db.conn() as conn:
                cursor = conn.execute(
                    "INSERT INTO tags (name, color, created_at) VALUES (?, ?, ?)",
                    (clean, color or DEFAULT_TAG_COLOR, utcnow_iso())
                )
                tag_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise Conflict(f"Tag already exists: {clean}") from e
        log.info(f"Created tag {tag_id}: {clean}")
        return self.get(tag_id)

    def update(self, tag_id: int, name: Optional[str] = None, color: Optional[str] = None) -> Tag:
        assignments = []
        params: List[object] = []
        if name is not None:
            clean = normalize_tag_name(name)
            if not clean:
                raise ValidationError("Tag name cannot be empty")
            assignments.append("name = ?")
            params.append(clean)
        if color is not None:
            assignments.append("color = ?")
            params.append(color)
        if not assignments:
            raise ValidationError("No fields to update")
        params.append(tag_id)

        try:
            with self._db.conn() as conn:
                cursor = conn.execute(f"UPDATE tags SET {', '.join(assignments)} WHERE id = ?", params)
                if cursor.rowcount == 0:
                    raise NotFound(f"Tag {tag_id} not found")
        except sqlite3.IntegrityError as e:
            raise Conflict(f"Tag name already exists: {name}") from e
        log.info(f"Updated tag {tag_id}")
        return self.get(tag_id)

    def delete(self, tag_id: int):
        with self._db.conn() as conn:
            cursor = conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))
            if cursor.rowcount == 0:
                raise NotFound(f"Tag {tag_id} not found")
        log.info(f"Deleted tag {tag_id}")

    def for_article(self, article_id: int) -> List[Tag]:
        with self._db.conn() as conn:
            rows = conn.execute(
                f"""{_SELECT_WITH_COUNT}
                    WHERE t.id IN (SELECT tag_id FROM article_tags WHERE article_id = ?)
                    GROUP BY t.id
                    ORDER BY t.name""",
                (article_id,)
            ).fetchall()
        return [_row_to_tag(r) for r in rows]

    def add_to_article(self, article_id: int, names: Sequence[str]) -> List[Tag]:
        if isinstance(names, str) or not names:
            raise ValidationError("Tags must be a non-empty list")
        cleaned = clean_tag_names(names)
        if not cleaned:
            raise ValidationError("Tags must contain at least one non-blank name")
        with self._db.conn() as conn:
            if conn.execute("SELECT 1 FROM articles WHERE id = ?", (article_id,)).fetchone() is None:
                raise NotFound(f"Article {article_id} not found")
            attach_tags(conn, article_id, cleaned, utcnow_iso())
        log.info(f"Tagged article {article_id}: {', '.join(cleaned)}")
        return self.for_article(article_id)

    def remove_from_article(self, article_id: int, tag_id: int):
        with self._db.conn() as conn:
            cursor = conn.execute(
                "DELETE FROM article_tags WHERE article_id = ? AND tag_id = ?", (article_id, tag_id)
            )
            if cursor.rowcount == 0:
                raise NotFound(f"Tag {tag_id} not found on article {article_id}")
        log.info(f"Removed tag {tag_id} from article {article_id}")


_SELECT_WITH_COUNT = """SELECT t.id, t.name, t.color, t.created_at, COUNT(at.article_id) AS article_count
                        FROM tags t LEFT JOIN article_tags at ON at.tag_id = t.id"""


def _row_to_tag(row) -> Tag:
    return Tag(
        id=row["id"],
        name=row["name"],
        color=row["color"] or DEFAULT_TAG_COLOR,
        created_at=row["created_at"],
        article_count=row["article_count"],
    )
