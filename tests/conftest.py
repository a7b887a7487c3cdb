import io
import pytest
from datetime import datetime, timezone
from PIL import Image as PillowImage

from bookmark_digest.config import DigestConfig
from bookmark_digest.database.store import ArticleStore
from bookmark_digest.models import ExtractedArticle, ImageDescriptor, count_words, reading_time_minutes

@pytest.fixture
def config(tmp_path):
    return DigestConfig(data_dir=str(tmp_path / "data"))

@pytest.fixture
def store(config):
    s = ArticleStore.open(config.db_path, config.images_dir)
    yield s
    s.close()

def make_article(url="https://example.com/a", title="Hello", body=None, published_at=None,
                 images=None, author=None, site_name=None) -> ExtractedArticle:
    body = body if body is not None else "<p>" + "word " * 300 + "</p>"
    text = body.replace("<p>", "").replace("</p>", "")
    wc = count_words(text)
    return ExtractedArticle(
        url=url,
        original_url=url,
        title=title,
        content_html=body,
        content_text=text,
        excerpt=text[:100],
        author=author,
        site_name=site_name,
        published_at=published_at,
        word_count=wc,
        reading_time_minutes=reading_time_minutes(wc),
        images=list(images or []),
    )

def make_image(slug="hello", index=0, url=None) -> ImageDescriptor:
    return ImageDescriptor(
        original_url=url or f"https://example.com/img{index}.jpg",
        local_path=f"/images/{slug}/image-{index}-1700000000000.jpg",
        alt_text=f"image {index}",
        width=10,
        height=10,
        size_bytes=100,
    )

def image_bytes(fmt="PNG", size=(40, 30), mode="RGB", color=(200, 30, 30)) -> bytes:
    if mode == "RGBA" and len(color) == 3:
        color = color + (128,)
    buf = io.BytesIO()
    PillowImage.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()

def utc(year, month, day) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)

ARTICLE_HTML = (
    "<html><head><title>Hello</title></head><body><article><h1>Hello</h1><p>"
    + "word " * 300
    + "</p></article></body></html>"
)
