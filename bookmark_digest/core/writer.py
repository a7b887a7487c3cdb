import os
import re
import asyncio
import mimetypes
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from bs4 import BeautifulSoup
from ebooklib import epub

from ..models import (
    log, Article, ComposeOptions, ExportDescriptor, BRAND, EPUB_LANGUAGE,
    MAX_EXPORT_ARTICLES, slugify, unix_millis
)
from ..errors import ValidationError, NoArticles, ExportError
from ..utils.formatting import escape_xml, html_to_xhtml, to_xhtml_string, format_date
from .cover import CoverSynthesizer
from .image_processor import ImageAcquirer

REMOTE_IMAGE = re.compile(r'^https?://', re.IGNORECASE)
ENCODED_MEDIA_TYPES = {'png': 'image/png', 'jpg': 'image/jpeg'}

EPUB_CSS = """
body { font-family: Georgia, 'Times New Roman', Times, serif; line-height: 1.65; margin: 0 auto; padding: 0 0.5em; color: #333; text-align: justify; hyphens: auto; -webkit-hyphens: auto; }
h1 { font-size: 1.8em; margin-top: 1.2em; margin-bottom: 0.8em; line-height: 1.3; text-align: left; page-break-after: avoid; }
h2, h3, h4, h5, h6 { margin-top: 1.4em; margin-bottom: 0.7em; text-align: left; page-break-after: avoid; }
p { margin-top: 0; margin-bottom: 1em; }
img { max-width: 100%; height: auto; display: block; margin: 1.5em auto; page-break-inside: avoid; }
figure { margin: 2em 0; text-align: center; page-break-inside: avoid; }
figcaption { font-size: 0.9em; color: #666; font-style: italic; margin-top: 0.5em; }
pre { background: #f8f9fa; padding: 1em; overflow-x: auto; border: 1px solid #e9ecef; font-family: 'Courier New', Courier, monospace; font-size: 0.9em; line-height: 1.5; text-align: left; white-space: pre-wrap; page-break-inside: avoid; }
code { background: #f8f9fa; font-family: 'Courier New', Courier, monospace; font-size: 0.9em; }
blockquote { border-left: 4px solid #6c757d; margin: 1.5em 0; padding: 0.5em 1em; color: #495057; font-style: italic; page-break-inside: avoid; }
table { border-collapse: collapse; width: 100%; margin: 1.5em 0; }
th, td { border: 1px solid #dee2e6; padding: 0.5em; text-align: left; }
hr { border: none; border-top: 1px solid #eee; margin: 2em 0; }
a { color: #0066cc; text-decoration: none; }
.metadata { color: #666; font-size: 0.9em; margin-bottom: 2em; padding-bottom: 1em; border-bottom: 1px solid #eee; text-align: left; page-break-after: avoid; }
.metadata p { margin-bottom: 0.3em; }
.original-url { word-break: break-all; font-size: 0.85em; color: #888; }
"""


def validate_article_ids(article_ids) -> List[int]:
    """1-100 positive integer ids; duplicates collapse, first occurrence wins."""
    if not isinstance(article_ids, (list, tuple)):
        raise ValidationError("articleIds must be a list of article ids")
    if not 1 <= len(article_ids) <= MAX_EXPORT_ARTICLES:
        raise ValidationError(f"articleIds must contain between 1 and {MAX_EXPORT_ARTICLES} ids, got {len(article_ids)}")
    ids: List[int] = []
    for value in article_ids:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValidationError(f"Invalid article id: {value!r}")
        if value not in ids:
            ids.append(value)
    return ids


def default_title() -> str:
    now = datetime.now()
    return f"{BRAND} - {now.month}/{now.day}/{now.year}"


def chapter_fragment(article: Article, number: int, images_dir: str) -> str:
    meta = []
    if article.author:
        meta.append(f"<p><strong>Author:</strong> {escape_xml(article.author)}</p>")
    if article.site_name:
        meta.append(f"<p><strong>Source:</strong> {escape_xml(article.site_name)}</p>")
    if article.published_at:
        meta.append(f"<p><strong>Published:</strong> {escape_xml(format_date(article.published_at))}</p>")
    meta.append(f'<p class="original-url"><strong>Original URL:</strong> {escape_xml(article.original_url or article.url)}</p>')

    return (
        f"<h1>Chapter {number}: {escape_xml(article.title)}</h1>\n"
        f"<div class=\"metadata\">\n{''.join(meta)}\n</div>\n"
        f"<div class=\"content\">\n{html_to_xhtml(article.content_html, images_dir)}\n</div>"
    )


class EpubComposer:
    """Bundles stored articles into one EPUB 3 file and records the export."""

    def __init__(self, store, cover: Optional[CoverSynthesizer], images_dir: str, export_dir: str,
                 acquirer: Optional[ImageAcquirer] = None):
        self.store = store
        self.cover = cover
        self.images_dir = images_dir
        self.export_dir = export_dir
        self.acquirer = acquirer

    async def compose(self, article_ids: Sequence[int], options: Optional[ComposeOptions] = None) -> ExportDescriptor:
        options = options or ComposeOptions()
        ids = validate_article_ids(article_ids)
        articles = self.store.get_for_export(ids)
        if not articles:
            raise NoArticles("No valid articles found for EPUB generation")

        title = options.title or default_title()
        author = options.author or BRAND
        os.makedirs(self.export_dir, exist_ok=True)
        log.info(f"Generating EPUB '{title}' from {len(articles)} articles")

        remote_images = await self._fetch_remote_images(articles)
        loop = asyncio.get_running_loop()
        cover_path, generated_cover = await loop.run_in_executor(
            None, self._resolve_cover, title, len(articles), author, options.cover_path
        )

        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H-%M-%S-%f')[:-3] + 'Z'
        filename = f"{slugify(title)}-{timestamp}.epub"
        file_path = os.path.join(self.export_dir, filename)

        try:
            file_size = await loop.run_in_executor(
                None, self._write, articles, title, author, cover_path, file_path, remote_images
            )
        except Exception:
            if generated_cover:
                _remove_quietly(cover_path)
            raise

        try:
            export_id = self.store.insert_export(title, len(articles), file_path, file_size)
        except Exception:
            _remove_quietly(file_path)
            raise

        log.info(f"EPUB generation completed: export {export_id}, {filename} ({file_size} bytes)")
        return ExportDescriptor(
            id=export_id,
            name=title,
            filename=filename,
            file_path=file_path,
            file_size=file_size,
            article_count=len(articles),
            cover_path=cover_path,
        )

    def _resolve_cover(self, title: str, article_count: int, author: str,
                       cover_path: Optional[str]) -> Tuple[Optional[str], bool]:
        """Returns (path, generated). A failed synthesis yields no cover."""
        if cover_path and os.path.isfile(cover_path) and os.access(cover_path, os.R_OK):
            return cover_path, False
        if self.cover is None:
            return None, False
        try:
            return self.cover.synthesize(title, article_count, author), True
        except Exception as e:
            log.warning(f"Failed to generate cover image, continuing without cover: {e}")
            return None, False

    def _write(self, articles: List[Article], title: str, author: str,
               cover_path: Optional[str], file_path: str,
               remote_images: Optional[Dict[str, Tuple]] = None) -> int:
        book = self.build_book(articles, title, author, cover_path, remote_images)
        tmp_path = f"{file_path}.tmp"
        try:
            epub.write_epub(tmp_path, book, {"epub3_pages": False})
            os.replace(tmp_path, file_path)
        except Exception as e:
            _remove_quietly(tmp_path)
            log.error(f"EPUB generation failed for '{title}': {e}")
            if isinstance(e, OSError):
                raise ExportError(f"Failed to write EPUB: {e}") from e
            raise
        log.info(f"Wrote EPUB: {file_path}")
        return os.path.getsize(file_path)

    def build_book(self, articles: List[Article], title: str, author: str,
                   cover_path: Optional[str] = None,
                   remote_images: Optional[Dict[str, Tuple]] = None) -> epub.EpubBook:
        stamp = unix_millis()
        book = epub.EpubBook()
        book.set_identifier(f"bookmark-digest-{stamp}")
        book.set_title(title)
        book.set_language(EPUB_LANGUAGE)
        book.add_author(author)
        book.add_metadata('DC', 'publisher', BRAND)
        book.add_metadata('DC', 'description', f"Collection of {len(articles)} articles from {BRAND}")
        book.add_metadata('DC', 'date', datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'))

        if cover_path:
            with open(cover_path, 'rb') as f:
                cover_ext = os.path.splitext(cover_path)[1].lower() or '.png'
                book.set_cover(f"images/cover{cover_ext}", f.read(), create_page=False)

        css_item = epub.EpubItem(uid="style_default", file_name="style/default.css",
                                 media_type="text/css", content=EPUB_CSS)
        book.add_item(css_item)

        embedded: Dict[str, str] = {}
        chapters = []
        for number, article in enumerate(articles, start=1):
            fragment = self._embed_images(
                book, chapter_fragment(article, number, self.images_dir), embedded, remote_images or {}
            )
            chapter = epub.EpubHtml(title=article.title, file_name=f"chapter-{number}.xhtml", lang=EPUB_LANGUAGE)
            chapter.content = f"<html><body>{fragment}</body></html>"
            chapter.add_item(css_item)
            book.add_item(chapter)
            chapters.append(chapter)
            log.debug(f"Chapter {number} prepared: {article.title}")

        book.toc = tuple(chapters)
        book.add_item(epub.EpubNcx())
        book.add_item(epub.EpubNav())
        book.spine = ['nav'] + chapters
        return book

    async def _fetch_remote_images(self, articles: List[Article]) -> Dict[str, Tuple]:
        """Downloads http(s) images still referenced by the articles so they can be packaged."""
        urls: List[str] = []
        for article in articles:
            soup = BeautifulSoup(article.content_html or '', 'html.parser')
            for img in soup.find_all('img'):
                src = (img.get('src') or '').strip()
                if REMOTE_IMAGE.match(src) and src not in urls:
                    urls.append(src)
        if not urls:
            return {}
        if self.acquirer is None:
            log.warning(f"No image fetcher configured, {len(urls)} remote images will be dropped")
            return {}
        return await self.acquirer.fetch_all(urls)

    def _embed_images(self, book: epub.EpubBook, fragment: str, embedded: Dict[str, str],
                      remote_images: Dict[str, Tuple]) -> str:
        """Packs every image into the book; an <img> whose source cannot be packaged is removed."""
        root = os.path.abspath(self.images_dir) + os.sep
        soup = BeautifulSoup(fragment, 'html.parser')
        for img in soup.find_all('img'):
            src = (img.get('src') or '').strip()
            if src not in embedded:
                if src.startswith(root):
                    relative = os.path.relpath(src, root).replace(os.sep, '/')
                    href = f"images/{relative}"
                    media_type = mimetypes.guess_type(src)[0] or 'image/jpeg'
                    with open(src, 'rb') as f:
                        content = f.read()
                elif src in remote_images:
                    content, ext = remote_images[src][:2]
                    href = f"images/remote/remote-{len(embedded)}.{ext}"
                    media_type = ENCODED_MEDIA_TYPES.get(ext, 'image/jpeg')
                else:
                    log.debug(f"Dropping image that cannot be packaged: {src[:100]}")
                    img.decompose()
                    continue
                book.add_item(epub.EpubImage(uid=f"img_{len(embedded)}", file_name=href,
                                             media_type=media_type, content=content))
                embedded[src] = href
            img['src'] = embedded[src]
        return to_xhtml_string(soup)


def _remove_quietly(path: Optional[str]):
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning(f"Could not remove {path}: {e}")
