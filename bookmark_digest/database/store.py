"""
ArticleStore - single entry point over the article, tag, export and settings repositories.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models import Article, ArticleFilter, Export, ExtractedArticle, ImageDescriptor, StoredImage, Tag
from .connection import Database
from .article_repository import ArticleRepository
from .export_repository import ExportRepository
from .settings_repository import SettingsRepository
from .tag_repository import TagRepository


class ArticleStore:

    def __init__(self, db: Database, images_dir: Optional[str] = None):
        self.db = db
        self.articles = ArticleRepository(db, images_dir)
        self.tags = TagRepository(db)
        self.exports = ExportRepository(db)
        self.settings = SettingsRepository(db)

    @classmethod
    def open(cls, db_path: str, images_dir: Optional[str] = None) -> "ArticleStore":
        return cls(Database(db_path), images_dir)

    def close(self):
        self.db.close()

    # Articles
    def upsert_article(self, record: ExtractedArticle,
                       images: Optional[Sequence[ImageDescriptor]] = None,
                       tags: Optional[Sequence[str]] = None) -> int:
        return self.articles.upsert(record, images, tags)

    def record_failure(self, url: str, error: str, raw_html: Optional[str] = None,
                       title: Optional[str] = None) -> int:
        return self.articles.record_failure(url, error, raw_html, title)

    def get(self, article_id: int) -> Article:
        return self.articles.get(article_id)

    def list(self, filters: Optional[ArticleFilter] = None, page: int = 1,
             limit: int = 20) -> Tuple[List[Article], int]:
        return self.articles.list(filters, page, limit)

    def update(self, article_id: int, patch: Dict[str, Any]) -> Article:
        return self.articles.update(article_id, patch)

    def delete(self, article_id: int):
        self.articles.delete(article_id)

    def get_for_export(self, article_ids: Sequence[int]) -> List[Article]:
        return self.articles.get_for_export(article_ids)

    def images_for(self, article_id: int) -> List[StoredImage]:
        return self.articles.images_for(article_id)

    def stats(self) -> Dict[str, int]:
        return self.articles.stats()

    # Tags
    def list_tags(self) -> List[Tag]:
        return self.tags.list()

    def get_tag(self, tag_id: int) -> Tag:
        return self.tags.get(tag_id)

    def create_tag(self, name: str, color: Optional[str] = None) -> Tag:
        return self.tags.create(name, color)

    def update_tag(self, tag_id: int, name: Optional[str] = None, color: Optional[str] = None) -> Tag:
        return self.tags.update(tag_id, name, color)

    def delete_tag(self, tag_id: int):
        self.tags.delete(tag_id)

    def add_tags(self, article_id: int, names: Sequence[str]) -> List[Tag]:
        return self.tags.add_to_article(article_id, names)

    def remove_tag(self, article_id: int, tag_id: int):
        self.tags.remove_from_article(article_id, tag_id)

    def tags_for(self, article_id: int) -> List[Tag]:
        return self.tags.for_article(article_id)

    def articles_for_tag(self, tag_id: int, page: int = 1, limit: int = 20) -> Tuple[Tag, List[Article], int]:
        """Successful captures carrying the tag, newest first."""
        tag = self.tags.get(tag_id)
        rows, total = self.articles.list(ArticleFilter(tag=tag.name), page, limit)
        return tag, rows, total

    # Exports
    def insert_export(self, name: str, article_count: int, file_path: str, file_size: int) -> int:
        return self.exports.insert(name, article_count, file_path, file_size)

    def get_export(self, export_id: int) -> Export:
        return self.exports.get(export_id)

    def list_exports(self, limit: int = 50) -> List[Export]:
        return self.exports.list(limit)

    def delete_export(self, export_id: int):
        self.exports.delete(export_id)

    def mark_export_sent(self, export_id: int) -> Export:
        return self.exports.mark_sent(export_id)

    # Settings
    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.settings.get(key, default)

    def set_setting(self, key: str, value):
        self.settings.set(key, value)
