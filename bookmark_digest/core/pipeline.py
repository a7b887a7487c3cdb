from typing import Optional, Sequence, Union

from ..config import DigestConfig
from ..models import (
    log, Article, ComposeOptions, ExportDescriptor, ExtractionFailure,
    ExtractionOptions, FAILED_CAPTURE_TITLE
)
from ..database.connection import Database
from ..database.store import ArticleStore
from ..database.tag_repository import clean_tag_names
from .cover import CoverSynthesizer
from .extractor import ArticleExtractor
from .image_processor import ImageAcquirer
from .writer import EpubComposer


class Digest:
    """Composition root: one store handle plus the pipeline stages built on it."""

    def __init__(self, config: Optional[DigestConfig] = None, session=None):
        self.config = config or DigestConfig.load()
        self.store = ArticleStore(Database(self.config.db_path), self.config.images_dir)
        self.acquirer = ImageAcquirer.from_config(self.config, session=session)
        self.extractor = ArticleExtractor.from_config(self.config, acquirer=self.acquirer)
        self.cover = CoverSynthesizer.from_config(self.config)
        self.composer = EpubComposer(self.store, self.cover, self.config.images_dir, self.config.export_dir,
                                     acquirer=self.acquirer)

    async def ingest(self, raw_html: str, url: str, preserve_images: bool = True,
                     tags: Optional[Sequence[str]] = None) -> Union[Article, ExtractionFailure]:
        """Extract, rehost images and persist. A readability miss is stored as a failed capture."""
        tag_names = clean_tag_names(tags)
        result = await self.extractor.extract(raw_html, url, ExtractionOptions(preserve_images=preserve_images))
        if not result.success:
            self.store.record_failure(
                url, result.error, result.original_html,
                title=result.title if result.has_document_title else FAILED_CAPTURE_TITLE,
            )
            return result
        article_id = self.store.upsert_article(result, result.images, tag_names)
        log.info(f"Captured {url} as article {article_id} ({result.word_count} words, {result.image_count} images)")
        return self.store.get(article_id)

    async def export(self, article_ids: Sequence[int], title: Optional[str] = None,
                     author: Optional[str] = None, cover_path: Optional[str] = None) -> ExportDescriptor:
        return await self.composer.compose(article_ids, ComposeOptions(title=title, author=author, cover_path=cover_path))

    def close(self):
        self.store.close()
