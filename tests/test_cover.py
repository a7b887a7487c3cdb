import os
import pytest
from PIL import Image as PillowImage

from bookmark_digest.core.cover import CoverSynthesizer, truncate_text, word_wrap, badge_label

def test_truncate_text():
    assert truncate_text("short") == "short"
    long_title = "x" * 80
    assert truncate_text(long_title) == "x" * 47 + "..."
    assert len(truncate_text(long_title)) == 50
    assert truncate_text(None) == ""

def test_word_wrap():
    assert word_wrap("The quick brown fox jumps over the lazy dog") == [
        "The quick brown fox", "jumps over the lazy dog"
    ]
    lines = word_wrap("one two three four five six seven eight nine ten eleven twelve thirteen fourteen")
    assert len(lines) == 3
    assert all(len(line) <= 25 for line in lines)
    assert word_wrap("Supercalifragilisticexpialidocious!") == ["Supercalifragilisticexpialidocious!"]

def test_badge_label():
    assert badge_label(1) == "1 ARTICLE"
    assert badge_label(7) == "7 ARTICLES"

def test_default_background(tmp_path):
    cover = CoverSynthesizer(str(tmp_path / "exports"))
    path = cover.synthesize("Weekly <Digest> & More", 3, "Ada")
    assert os.path.basename(path).startswith("cover-")
    assert path.endswith(".png")
    with PillowImage.open(path) as im:
        assert im.format == "PNG"
        assert im.size == (1200, 1600)

def test_custom_background_keeps_dimensions(tmp_path):
    bg = tmp_path / "bg.jpg"
    PillowImage.new("RGB", (600, 900), (10, 120, 200)).save(bg, format="JPEG")
    cover = CoverSynthesizer(str(tmp_path / "exports"))
    path = cover.synthesize("Custom", 1, "Ada", background_path=str(bg))
    with PillowImage.open(path) as im:
        assert im.size == (600, 900)

def test_unreadable_background_falls_back(tmp_path):
    not_image = tmp_path / "bg.png"
    not_image.write_text("nope")
    cover = CoverSynthesizer(str(tmp_path / "exports"), default_background=str(tmp_path / "missing.png"))
    path = cover.synthesize("Fallback", 2, "Ada", background_path=str(not_image))
    with PillowImage.open(path) as im:
        assert im.size == (1200, 1600)
