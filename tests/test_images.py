import os
import io
import pytest
from aioresponses import aioresponses
from PIL import Image as PillowImage

from bookmark_digest.core.image_processor import ImageAcquirer, resolve_image_url
from bookmark_digest.errors import ImageRejected
from conftest import image_bytes

BASE = "https://example.com/post"

def acquirer(tmp_path, **kwargs):
    return ImageAcquirer(images_dir=str(tmp_path / "images"), **kwargs)

def saved_file(tmp_path, local_path):
    return tmp_path / "images" / local_path[len("/images/"):]

@pytest.mark.asyncio
async def test_png_jpeg_webp_rehosted(tmp_path):
    html = ('<p>intro</p><img src="/a.png" alt="A"><img src="https://cdn.example.com/b.jpg">'
            '<img src="c.webp">')
    with aioresponses() as m:
        m.get("https://example.com/a.png", status=200, body=image_bytes("PNG", mode="RGBA"), content_type="image/png")
        m.get("https://cdn.example.com/b.jpg", status=200, body=image_bytes("JPEG"), content_type="image/jpeg")
        m.get("https://example.com/c.webp", status=200, body=image_bytes("WEBP", mode="RGBA"), content_type="image/webp")
        fragment, images = await acquirer(tmp_path).acquire(html, BASE, "My Post")

    assert [i.original_url for i in images] == [
        "https://example.com/a.png", "https://cdn.example.com/b.jpg", "https://example.com/c.webp"
    ]
    assert images[0].local_path.startswith("/images/my-post/image-0-")
    assert images[0].local_path.endswith(".png")
    assert images[1].local_path.endswith(".jpg")
    assert images[2].local_path.endswith(".jpg")
    assert images[0].alt_text == "A"
    for img in images:
        assert img.local_path in fragment
        path = saved_file(tmp_path, img.local_path)
        assert path.is_file()
        assert path.stat().st_size == img.size_bytes
    with PillowImage.open(saved_file(tmp_path, images[2].local_path)) as im:
        assert im.format == "JPEG"

@pytest.mark.asyncio
async def test_failed_images_leave_tags_untouched(tmp_path):
    html = ('<img src="https://example.com/ok.png"><img src="https://example.com/missing.png">'
            '<img src="https://example.com/page.html"><img src="https://example.com/last.png">')
    with aioresponses() as m:
        m.get("https://example.com/ok.png", status=200, body=image_bytes(), content_type="image/png")
        m.get("https://example.com/missing.png", status=404)
        m.get("https://example.com/page.html", status=200, body="<html></html>", content_type="text/html")
        m.get("https://example.com/last.png", status=200, body=image_bytes(), content_type="image/png")
        fragment, images = await acquirer(tmp_path).acquire(html, BASE, "Mixed")

    assert len(images) == 2
    assert "/image-0-" in images[0].local_path
    assert "/image-3-" in images[1].local_path
    assert 'src="https://example.com/missing.png"' in fragment
    assert 'src="https://example.com/page.html"' in fragment

@pytest.mark.asyncio
async def test_oversize_images_skipped(tmp_path):
    html = '<img src="https://example.com/advertised.png"><img src="https://example.com/streamed.png">'
    with aioresponses() as m:
        m.get("https://example.com/advertised.png", status=200, body=image_bytes(),
              content_type="image/png", headers={"Content-Length": str(10 * 1024 * 1024)})
        m.get("https://example.com/streamed.png", status=200, body=b"\x89PNG" + b"0" * 5000,
              content_type="image/png")
        fragment, images = await acquirer(tmp_path, max_bytes=1024).acquire(html, BASE, "Big")

    assert images == []
    assert 'src="https://example.com/advertised.png"' in fragment
    assert 'src="https://example.com/streamed.png"' in fragment

@pytest.mark.asyncio
async def test_lazy_attributes_and_data_uris(tmp_path):
    html = ('<img src="data:image/gif;base64,R0lGODlhAQABAAAAACw=" data-src="https://example.com/lazy.png">'
            '<img src="data:image/png;base64,AAAA">'
            '<img data-lazy-src="https://example.com/lazier.png">')
    with aioresponses() as m:
        m.get("https://example.com/lazy.png", status=200, body=image_bytes(), content_type="image/png")
        m.get("https://example.com/lazier.png", status=200, body=image_bytes(), content_type="image/png")
        fragment, images = await acquirer(tmp_path).acquire(html, BASE, "Lazy")

    assert [i.original_url for i in images] == ["https://example.com/lazy.png", "https://example.com/lazier.png"]
    assert 'src="data:image/png;base64,AAAA"' in fragment

@pytest.mark.asyncio
async def test_source_attribute_order_is_configurable(tmp_path):
    html = '<img src="https://example.com/small.png" data-original="https://example.com/full.png">'
    with aioresponses() as m:
        m.get("https://example.com/full.png", status=200, body=image_bytes(), content_type="image/png")
        _, images = await acquirer(tmp_path, src_attributes=("data-original", "src")).acquire(html, BASE, "Order")
    assert images[0].original_url == "https://example.com/full.png"

@pytest.mark.asyncio
async def test_large_images_resized(tmp_path):
    html = '<img src="https://example.com/wide.png">'
    with aioresponses() as m:
        m.get("https://example.com/wide.png", status=200, body=image_bytes("PNG", size=(2400, 1000)),
              content_type="image/png")
        _, images = await acquirer(tmp_path).acquire(html, BASE, "Wide")

    assert images[0].width == 1200
    assert images[0].height == 500
    with PillowImage.open(saved_file(tmp_path, images[0].local_path)) as im:
        assert im.size == (1200, 500)
        assert im.format == "JPEG"

@pytest.mark.asyncio
async def test_no_images_returns_fragment_unchanged(tmp_path):
    fragment, images = await acquirer(tmp_path).acquire("<p>Just text</p>", BASE, "Plain")
    assert fragment == "<p>Just text</p>"
    assert images == []
    assert not os.path.exists(tmp_path / "images" / "plain")

def test_encode_rejects_garbage(tmp_path):
    with pytest.raises(ImageRejected):
        acquirer(tmp_path).encode_image(b"not an image", "image/png")

def test_encode_keeps_transparency_as_png(tmp_path):
    data, ext, w, h = acquirer(tmp_path).encode_image(image_bytes("PNG", mode="RGBA"), "image/png")
    assert ext == "png"
    with PillowImage.open(io.BytesIO(data)) as im:
        assert im.mode == "RGBA"

@pytest.mark.asyncio
async def test_unresolvable_url_skipped_and_others_acquired(tmp_path):
    html = '<img src="http://[broken/pic.png"><img src="https://example.com/fine.png">'
    with aioresponses() as m:
        m.get("https://example.com/fine.png", status=200, body=image_bytes(), content_type="image/png")
        fragment, images = await acquirer(tmp_path).acquire(html, BASE, "Bad URL")

    assert [i.original_url for i in images] == ["https://example.com/fine.png"]
    assert 'src="http://[broken/pic.png"' in fragment
    assert images[0].local_path in fragment

@pytest.mark.asyncio
async def test_only_unresolvable_url_leaves_fragment_intact(tmp_path):
    fragment, images = await acquirer(tmp_path).acquire('<img src="http://[broken/pic.png">', BASE, "Bad URL")
    assert images == []
    assert 'src="http://[broken/pic.png"' in fragment

@pytest.mark.asyncio
async def test_unexpected_error_isolated_to_one_image(tmp_path, monkeypatch):
    acq = acquirer(tmp_path)
    real_encode = acq.encode_image

    def flaky_encode(data, content_type):
        if content_type == "image/gif":
            raise RuntimeError("encoder crashed")
        return real_encode(data, content_type)

    monkeypatch.setattr(acq, "encode_image", flaky_encode)
    html = '<img src="https://example.com/a.gif"><img src="https://example.com/b.png">'
    with aioresponses() as m:
        m.get("https://example.com/a.gif", status=200, body=image_bytes("GIF"), content_type="image/gif")
        m.get("https://example.com/b.png", status=200, body=image_bytes(), content_type="image/png")
        fragment, images = await acq.acquire(html, BASE, "Flaky")

    assert [i.original_url for i in images] == ["https://example.com/b.png"]
    assert 'src="https://example.com/a.gif"' in fragment

def test_resolve_image_url():
    assert resolve_image_url("/a.png", BASE) == "https://example.com/a.png"
    assert resolve_image_url("http://[broken/pic.png", BASE) is None
    assert resolve_image_url("ftp://example.com/a.png", BASE) is None
    assert resolve_image_url("a.png", None) is None
