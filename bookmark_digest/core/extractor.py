import re
import asyncio
import trafilatura
import lxml.html
from lxml import etree
from datetime import datetime, timezone
from bs4 import BeautifulSoup, Comment
from readability import Document
from readability.readability import Unparseable
from typing import Optional, Sequence, Union

from ..models import (
    log, ExtractionOptions, ExtractedArticle, ExtractionFailure,
    UNTITLED, IMAGE_URL_PREFIX, count_words, reading_time_minutes
)
from ..errors import HtmlTooLarge, ParseError
from .image_processor import ImageAcquirer

ALLOWED_TAGS = {
    'a', 'abbr', 'address', 'article', 'aside', 'b', 'bdi', 'bdo', 'blockquote', 'br',
    'caption', 'cite', 'code', 'col', 'colgroup', 'dd', 'del', 'details', 'dfn', 'div',
    'dl', 'dt', 'em', 'figcaption', 'figure', 'footer', 'h1', 'h2', 'h3', 'h4', 'h5',
    'h6', 'header', 'hr', 'i', 'img', 'ins', 'kbd', 'li', 'main', 'mark', 'ol', 'p',
    'picture', 'pre', 'q', 's', 'samp', 'section', 'small', 'source', 'span', 'strong',
    'sub', 'summary', 'sup', 'table', 'tbody', 'td', 'tfoot', 'th', 'thead', 'time',
    'tr', 'u', 'ul', 'var', 'wbr',
}
# Removed together with everything inside them
DROP_TAGS = [
    'script', 'style', 'noscript', 'iframe', 'frame', 'frameset', 'object', 'embed',
    'applet', 'form', 'input', 'button', 'select', 'textarea', 'svg', 'math', 'canvas',
    'video', 'audio', 'template', 'link', 'meta', 'base', 'title', 'head',
]
ALLOWED_ATTRS = {
    'href', 'src', 'alt', 'title', 'width', 'height', 'class', 'style', 'loading',
    'target', 'rel', 'colspan', 'rowspan', 'datetime',
}
UNSAFE_URL = re.compile(r'^\s*(javascript|vbscript|file):', re.IGNORECASE)
SAFE_IMG_SRC = re.compile(r'^(data:|https?://)', re.IGNORECASE)
XML_DECLARATION = re.compile(r'^\s*<\?xml[^>]*\?>')

class ArticleExtractor:
    """Turns raw captured HTML into a sanitized, indexable article record."""

    def __init__(
        self,
        acquirer: Optional[ImageAcquirer] = None,
        max_html_bytes: int = 10 * 1024 * 1024,
        max_content_chars: int = 500000,
        min_content_chars: int = 500,
    ):
        self.acquirer = acquirer
        self.max_html_bytes = max_html_bytes
        self.max_content_chars = max_content_chars
        self.min_content_chars = min_content_chars

    @classmethod
    def from_config(cls, config, acquirer: Optional[ImageAcquirer] = None) -> "ArticleExtractor":
        return cls(
            acquirer=acquirer,
            max_html_bytes=config.max_html_bytes,
            max_content_chars=config.max_article_content_chars,
            min_content_chars=config.min_content_chars,
        )

    async def extract(self, raw_html: Union[str, bytes], source_url: str,
                      options: Optional[ExtractionOptions] = None) -> Union[ExtractedArticle, ExtractionFailure]:
        options = options or ExtractionOptions()
        html = self.check_size(raw_html)

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self.extract_from_html, html, source_url)
        if not result.success:
            return result

        if options.preserve_images and self.acquirer is not None:
            try:
                content_html, images = await self.acquirer.acquire(result.content_html, source_url, result.title)
            except OSError as e:
                log.error(f"Image processing failed for {source_url}: {e}")
            else:
                result.content_html = content_html
                result.images = images
                log.info(f"Images processed for {source_url}: {len(images)}")
        return result

    def check_size(self, raw_html: Union[str, bytes]) -> str:
        size = len(raw_html) if isinstance(raw_html, bytes) else len(raw_html.encode('utf-8'))
        if size > self.max_html_bytes:
            raise HtmlTooLarge(f"HTML too large: {size} bytes (max {self.max_html_bytes})")
        if isinstance(raw_html, bytes):
            return raw_html.decode('utf-8', errors='replace')
        return raw_html

    def extract_from_html(self, html: str, source_url: str) -> Union[ExtractedArticle, ExtractionFailure]:
        html = XML_DECLARATION.sub('', html, count=1)
        try:
            lxml.html.document_fromstring(html)
        except (etree.ParserError, ValueError) as e:
            log.error(f"HTML parsing failed for {source_url}: {e}")
            raise ParseError(f"Failed to parse HTML: {e}") from e

        page = BeautifulSoup(html, 'lxml')
        doc_title = page.title.get_text(strip=True) if page.title else ''

        try:
            doc = Document(html, url=source_url, retry_length=self.min_content_chars)
            content = doc.summary(html_partial=True)
        except Unparseable as e:
            log.warning(f"Readability failed for {source_url}: {e}")
            return self._failure(source_url, html, doc_title, f"Readability extraction failed - {e}")

        if len(content) > self.max_content_chars:
            log.warning(f"Article too long, truncating {source_url}: {len(content)} > {self.max_content_chars}")
            content = truncate_content(content, self.max_content_chars)

        soup = BeautifulSoup(content, 'html.parser')
        sanitize_soup(soup)
        content_text = soup.get_text()

        if len(content_text.strip()) < self.min_content_chars:
            log.warning(f"Readability failed to extract article from {source_url}")
            return self._failure(source_url, html, doc_title,
                                 "Readability extraction failed - content could not be extracted")

        metadata = self._metadata(html, source_url)
        title = _first_text(
            _readability_title(doc),
            doc_title,
            getattr(metadata, 'title', None),
            _first_heading(page),
        ) or UNTITLED

        word_count = count_words(content_text)
        return ExtractedArticle(
            url=source_url,
            original_url=source_url,
            title=title,
            content_html=str(soup),
            content_text=content_text,
            excerpt=self._excerpt(metadata, soup),
            author=_first_text(getattr(metadata, 'author', None), _meta_content(page, 'author')),
            site_name=_first_text(getattr(metadata, 'sitename', None), _meta_content(page, 'og:site_name')),
            published_at=self._published_at(page, metadata),
            language=_language(page),
            word_count=word_count,
            reading_time_minutes=reading_time_minutes(word_count),
        )

    def _failure(self, url: str, html: str, doc_title: str, error: str) -> ExtractionFailure:
        return ExtractionFailure(
            url=url,
            error=error,
            title=doc_title or UNTITLED,
            original_html=html,
            has_document_title=bool(doc_title),
        )

    @staticmethod
    def _metadata(html: str, url: str):
        try:
            return trafilatura.extract_metadata(html, default_url=url)
        except Exception as e:
            log.debug(f"Metadata extraction failed for {url}: {e}")
            return None

    @staticmethod
    def _excerpt(metadata, soup: BeautifulSoup) -> str:
        description = getattr(metadata, 'description', None)
        if description:
            return description.strip()
        for p in soup.find_all('p'):
            text = p.get_text(" ", strip=True)
            if text:
                return text[:500]
        return ''

    @staticmethod
    def _published_at(page: BeautifulSoup, metadata) -> Optional[datetime]:
        candidates = [
            _meta_content(page, 'article:published_time'),
            _meta_content(page, 'datePublished'),
            getattr(metadata, 'date', None),
        ]
        time_tag = page.find('time', attrs={'datetime': True})
        if time_tag:
            candidates.append(time_tag['datetime'])
        for value in candidates:
            parsed = parse_datetime(value)
            if parsed:
                return parsed
        return None

def sanitize_soup(soup: BeautifulSoup, allowed_tags: Sequence[str] = ALLOWED_TAGS) -> BeautifulSoup:
    """Allow-list sanitizer; mutates and returns ``soup``."""
    for tag in soup(DROP_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    for tag in soup.find_all(True):
        if tag.name not in allowed_tags:
            tag.unwrap()
            continue
        for attr in list(tag.attrs.keys()):
            lowered = attr.lower()
            if lowered.startswith('on') or (lowered not in ALLOWED_ATTRS and not lowered.startswith('data-')):
                del tag[attr]
        for attr in ('href', 'src'):
            value = tag.get(attr)
            if isinstance(value, str) and UNSAFE_URL.match(value):
                del tag[attr]
        if tag.name == 'img' and tag.get('src'):
            src = tag['src'].strip()
            if not (SAFE_IMG_SRC.match(src) or src.startswith(IMAGE_URL_PREFIX)):
                del tag['src']
    return soup

def truncate_content(content: str, limit: int) -> str:
    return content[:limit]

def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

def _readability_title(doc: Document) -> Optional[str]:
    try:
        title = doc.short_title()
    except Exception:
        return None
    if not title or title == '[no-title]':
        return None
    return title

def _first_heading(page: BeautifulSoup) -> Optional[str]:
    h1 = page.find('h1')
    return h1.get_text(" ", strip=True) if h1 else None

def _meta_content(page: BeautifulSoup, name: str) -> Optional[str]:
    tag = (page.find('meta', attrs={'property': name})
           or page.find('meta', attrs={'name': name})
           or page.find('meta', attrs={'itemprop': name}))
    if tag and tag.get('content'):
        return tag['content'].strip()
    return None

def _language(page: BeautifulSoup) -> str:
    html_tag = page.find('html')
    lang = html_tag.get('lang') if html_tag else None
    if not lang:
        lang = _meta_content(page, 'og:locale')
    if not lang or not isinstance(lang, str):
        return 'en'
    return lang.strip().replace('_', '-') or 'en'

def _first_text(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value and isinstance(value, str) and value.strip():
            return value.strip()
    return None
