import os
import re
import math
import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

# --- Constants ---
USER_AGENT = "Mozilla/5.0 (compatible; BookmarkDigest/1.0; +https://github.com/bookmark-digest)"
ALLOWED_IMAGE_MIMES = {'image/jpeg', 'image/png', 'image/gif', 'image/webp'}
DEFAULT_IMAGE_SRC_ATTRIBUTES = ('src', 'data-src', 'data-lazy-src', 'data-original')
IMAGE_URL_PREFIX = "/images/"
WORDS_PER_MINUTE = 200
FAILURE_SNAPSHOT_CHARS = 10000
UNTITLED = "Untitled"
FAILED_CAPTURE_TITLE = "Failed Capture"
BRAND = "Bookmark Digest"
EPUB_LANGUAGE = "en-US"
MAX_EXPORT_ARTICLES = 100
SLUG_MAX_LENGTH = 50
DEFAULT_TAG_COLOR = "#6B7280"

# Cover
DEFAULT_COVER_SIZE = (1200, 1600)

# --- Logging ---
_LOGLEVEL = os.getenv("LOGLEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, _LOGLEVEL, logging.INFO),
                    format='%(asctime)s - %(levelname)s - %(message)s')
log = logging.getLogger(__name__)

# --- Data Structures ---

@dataclass
class ExtractionOptions:
    """Per-call switches for the extractor."""
    preserve_images: bool = True

@dataclass
class ImageDescriptor:
    original_url: str
    local_path: Optional[str] = None
    alt_text: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    size_bytes: Optional[int] = None

@dataclass
class ExtractedArticle:
    """Successful extraction: every Article attribute except ids and timestamps."""
    url: str
    original_url: str
    title: str
    content_html: str
    content_text: str
    excerpt: str
    author: Optional[str] = None
    site_name: Optional[str] = None
    published_at: Optional[datetime] = None
    language: str = "en"
    word_count: int = 0
    reading_time_minutes: int = 1
    images: List[ImageDescriptor] = field(default_factory=list)
    success: bool = field(default=True, init=False)

    @property
    def image_count(self) -> int:
        return len(self.images)

    @property
    def has_images(self) -> bool:
        return bool(self.images)

@dataclass
class ExtractionFailure:
    """Readability could not isolate content; kept so the caller may record it."""
    url: str
    error: str
    title: str = UNTITLED
    original_html: Optional[str] = None
    has_document_title: bool = False
    success: bool = field(default=False, init=False)

@dataclass
class Article:
    id: int
    url: str
    title: str
    original_url: Optional[str] = None
    content_html: Optional[str] = None
    content_text: Optional[str] = None
    excerpt: Optional[str] = None
    author: Optional[str] = None
    site_name: Optional[str] = None
    published_at: Optional[str] = None
    language: str = "en"
    word_count: int = 0
    reading_time_minutes: int = 1
    has_images: bool = False
    image_count: int = 0
    capture_success: bool = True
    capture_error: Optional[str] = None
    is_archived: bool = False
    is_favorite: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def to_public(self) -> Dict[str, Any]:
        """Projection returned to API callers (no content bodies)."""
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "excerpt": self.excerpt,
            "author": self.author,
            "site_name": self.site_name,
            "published_at": self.published_at,
            "language": self.language,
            "word_count": self.word_count,
            "reading_time_minutes": self.reading_time_minutes,
            "has_images": self.has_images,
            "image_count": self.image_count,
            "capture_success": self.capture_success,
            "capture_error": self.capture_error,
            "is_archived": self.is_archived,
            "is_favorite": self.is_favorite,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "tags": list(self.tags),
        }

@dataclass
class StoredImage:
    id: int
    article_id: int
    original_url: str
    local_path: str
    alt_text: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    size_bytes: Optional[int] = None

@dataclass
class Export:
    id: int
    name: str
    article_count: int
    file_path: str
    file_size: int
    created_at: Optional[str] = None
    sent_to_kindle: bool = False
    sent_at: Optional[str] = None

@dataclass
class Tag:
    id: int
    name: str
    color: str = DEFAULT_TAG_COLOR
    created_at: Optional[str] = None
    article_count: int = 0

@dataclass
class ArticleFilter:
    search: Optional[str] = None
    is_archived: Optional[bool] = None
    is_favorite: Optional[bool] = None
    capture_success: Optional[bool] = True
    tag: Optional[str] = None
    sort_by: str = "created_at_desc"

@dataclass
class ComposeOptions:
    title: Optional[str] = None
    author: Optional[str] = None
    cover_path: Optional[str] = None

@dataclass
class ExportDescriptor:
    id: int
    name: str
    filename: str
    file_path: str
    file_size: int
    article_count: int
    cover_path: Optional[str] = None

# --- Helper Functions ---

def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")

def unix_millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)

def count_words(text: Optional[str]) -> int:
    if not text:
        return 0
    return len([w for w in re.split(r'\s+', text) if w])

def reading_time_minutes(word_count: int) -> int:
    return max(1, math.ceil(word_count / WORDS_PER_MINUTE))

def slugify(name: Optional[str]) -> str:
    """Filesystem-safe slug: lowercase, [a-z0-9-], at most 50 chars, no edge hyphens."""
    if not name:
        return "untitled"
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    slug = slug[:SLUG_MAX_LENGTH].strip('-')
    return slug or "untitled"
