"""
Export repository - bookkeeping for generated EPUB files.
"""

import os
from typing import List

from ..models import log, Export, utcnow_iso
from ..errors import NotFound, ValidationError
from .connection import Database


class ExportRepository:

    def __init__(self, db: Database):
        self._db = db

    def insert(self, name: str, article_count: int, file_path: str, file_size: int) -> int:
        with self._db.conn() as conn:
            cursor = conn.execute(
                """INSERT INTO epub_exports (name, article_count, file_path, file_size, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (name, article_count, file_path, file_size, utcnow_iso())
            )
            export_id = cursor.lastrowid
        log.info(f"Recorded export {export_id}: {name} ({article_count} articles, {file_size} bytes)")
        return export_id

    def get(self, export_id: int) -> Export:
        with self._db.conn() as conn:
            row = conn.execute("SELECT * FROM epub_exports WHERE id = ?", (export_id,)).fetchone()
        if row is None:
            raise NotFound(f"Export {export_id} not found")
        return _row_to_export(row)

    def list(self, limit: int = 50) -> List[Export]:
        if not isinstance(limit, int) or limit < 1:
            raise ValidationError(f"limit must be >= 1, got {limit}")
        with self._db.conn() as conn:
            rows = conn.execute(
                "SELECT * FROM epub_exports ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [_row_to_export(r) for r in rows]

    def delete(self, export_id: int):
        """Unlink the EPUB file (best effort), then drop the row."""
        export = self.get(export_id)
        try:
            os.remove(export.file_path)
        except FileNotFoundError:
            log.debug(f"Export file already gone: {export.file_path}")
        except OSError as e:
            log.warning(f"Could not remove export file {export.file_path}: {e}")
        with self._db.conn() as conn:
            conn.execute("DELETE FROM epub_exports WHERE id = ?", (export_id,))
        log.info(f"Deleted export {export_id}")

    def mark_sent(self, export_id: int) -> Export:
        with self._db.conn() as conn:
            cursor = conn.execute(
                "UPDATE epub_exports SET sent_to_kindle = 1, sent_at = ? WHERE id = ?",
                (utcnow_iso(), export_id)
            )
            if cursor.rowcount == 0:
                raise NotFound(f"Export {export_id} not found")
        return self.get(export_id)


def _row_to_export(row) -> Export:
    return Export(
        id=row["id"],
        name=row["name"],
        article_count=row["article_count"],
        file_path=row["file_path"],
        file_size=row["file_size"],
        created_at=row["created_at"],
        sent_to_kindle=bool(row["sent_to_kindle"]),
        sent_at=row["sent_at"],
    )
