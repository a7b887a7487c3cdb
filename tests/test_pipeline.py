import os
import pytest
from aioresponses import aioresponses

from bookmark_digest.core.pipeline import Digest
from bookmark_digest.errors import HtmlTooLarge, ValidationError
from bookmark_digest.models import ArticleFilter, ExtractionFailure
from conftest import ARTICLE_HTML, image_bytes

@pytest.fixture
def digest(config):
    d = Digest(config)
    yield d
    d.close()

@pytest.mark.asyncio
async def test_ingest_and_recapture(digest):
    first = await digest.ingest(ARTICLE_HTML, "https://example.com/a", preserve_images=False)
    assert first.title == "Hello"
    assert first.capture_success is True
    assert first.reading_time_minutes == 2

    changed = ARTICLE_HTML.replace("word word", "other word", 1)
    second = await digest.ingest(changed, "https://example.com/a", preserve_images=False)
    assert second.id == first.id
    assert second.updated_at > second.created_at
    assert "other" in second.content_text

@pytest.mark.asyncio
async def test_ingest_failure_recorded(digest):
    result = await digest.ingest("<html><body><script>alert(1)</script></body></html>", "https://example.com/s3")
    assert isinstance(result, ExtractionFailure)

    rows, total = digest.store.list(ArticleFilter(capture_success=None))
    assert total == 1
    assert rows[0].capture_success is False
    assert rows[0].title == "Failed Capture"
    assert rows[0].capture_error == result.error

@pytest.mark.asyncio
async def test_oversize_writes_nothing(config):
    config.max_html_size_mb = 0.001
    d = Digest(config)
    try:
        with pytest.raises(HtmlTooLarge):
            await d.ingest("x" * 2000, "https://example.com/big")
        assert d.store.list(ArticleFilter(capture_success=None))[1] == 0
    finally:
        d.close()

@pytest.mark.asyncio
async def test_ingest_with_images_then_export(digest, config):
    html = ARTICLE_HTML.replace("</h1>", '</h1><figure><img src="/pic.png" alt="pic"></figure>')
    with aioresponses() as m:
        m.get("https://example.com/pic.png", status=200, body=image_bytes(), content_type="image/png")
        article = await digest.ingest(html, "https://example.com/with-pic")

    assert article.image_count == 1
    images = digest.store.images_for(article.id)
    assert images[0].local_path.startswith("/images/hello/")
    assert images[0].local_path in article.content_html
    assert os.path.isfile(os.path.join(config.images_dir, images[0].local_path[len("/images/"):]))

    result = await digest.export([article.id], title="With Pictures")
    assert os.path.isfile(result.file_path)
    assert digest.store.get_export(result.id).article_count == 1

@pytest.mark.asyncio
async def test_ingest_with_tags(digest):
    article = await digest.ingest(ARTICLE_HTML, "https://example.com/tagged", preserve_images=False,
                                  tags=["Essays", "essays", "Long Reads"])
    assert article.tags == ["essays", "long reads"]
    with pytest.raises(ValidationError):
        await digest.ingest(ARTICLE_HTML, "https://example.com/bad-tags", preserve_images=False, tags=[42])
    assert digest.store.articles.get_by_url("https://example.com/bad-tags") is None
