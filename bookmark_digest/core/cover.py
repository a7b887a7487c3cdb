import os
from datetime import datetime
from typing import List, Optional, Tuple
from PIL import Image as PillowImage, ImageDraw, ImageFont, ImageOps

from ..models import log, unix_millis, BRAND, DEFAULT_COVER_SIZE

TITLE_MAX_CHARS = 50
TITLE_LINE_CHARS = 25
TITLE_MAX_LINES = 3
PADDING = 80

# Colors (RGBA)
OVERLAY_TOP = (15, 23, 42, 191)
OVERLAY_BOTTOM = (15, 23, 42, 217)
ACCENT = (20, 184, 166, 230)
DATE_COLOR = (148, 163, 184, 255)
TITLE_COLOR = (241, 245, 249, 255)
RULE_COLOR = (51, 65, 85, 255)
AUTHOR_COLOR = (203, 213, 225, 255)
BRAND_COLOR = (100, 116, 139, 255)
WHITE = (255, 255, 255, 255)


def truncate_text(text: Optional[str], max_length: int = TITLE_MAX_CHARS) -> str:
    if not text:
        return ''
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + '...'


def word_wrap(text: str, max_length: int = TITLE_LINE_CHARS, max_lines: int = TITLE_MAX_LINES) -> List[str]:
    """Greedy wrap on spaces; a single long word keeps its own line."""
    lines: List[str] = []
    current: List[str] = []
    for word in text.split(' '):
        candidate = ' '.join(current + [word])
        if len(candidate) <= max_length or not current:
            current.append(word)
        else:
            lines.append(' '.join(current))
            current = [word]
    if current:
        lines.append(' '.join(current))
    return [line for line in lines if line][:max_lines]


def badge_label(article_count: int) -> str:
    return f"{article_count} {'ARTICLE' if article_count == 1 else 'ARTICLES'}"


class CoverSynthesizer:
    """Renders the EPUB cover: background image plus a dark text overlay."""

    def __init__(self, export_dir: str, default_background: Optional[str] = None,
                 font_path: Optional[str] = None):
        self.export_dir = export_dir
        self.default_background = default_background
        self.font_path = font_path

    @classmethod
    def from_config(cls, config) -> "CoverSynthesizer":
        return cls(config.export_dir, config.cover_background, config.cover_font)

    def synthesize(self, title: str, article_count: int, author: str = BRAND,
                   background_path: Optional[str] = None) -> str:
        os.makedirs(self.export_dir, exist_ok=True)
        cover_path = os.path.join(self.export_dir, f"cover-{unix_millis()}.png")

        background = self._load_background(background_path)
        width, height = background.size
        overlay = self._render_overlay(title, article_count, author or BRAND, (width, height))

        cover = ImageOps.fit(background, (width, height), method=PillowImage.Resampling.LANCZOS)
        cover = PillowImage.alpha_composite(cover, overlay).convert('RGB')
        cover.save(cover_path, format='PNG', optimize=True)
        log.info(f"Cover generated: {cover_path} ({article_count} articles)")
        return cover_path

    def _load_background(self, background_path: Optional[str]) -> PillowImage.Image:
        for candidate in (background_path, self.default_background):
            if not candidate:
                continue
            if not os.access(candidate, os.R_OK):
                log.warning(f"Background image not found, trying fallback: {candidate}")
                continue
            try:
                with PillowImage.open(candidate) as img:
                    img.load()
                    return img.convert('RGBA')
            except OSError as e:
                log.warning(f"Unreadable background image {candidate}: {e}")
        return default_background(DEFAULT_COVER_SIZE)

    def _font(self, size: int):
        if self.font_path:
            try:
                return ImageFont.truetype(self.font_path, size)
            except OSError as e:
                log.warning(f"Could not load font {self.font_path}: {e}")
        return ImageFont.load_default(size=size)

    def _render_overlay(self, title: str, article_count: int, author: str,
                        size: Tuple[int, int]) -> PillowImage.Image:
        width, height = size
        overlay = PillowImage.new('RGBA', size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)

        # Darkening gradient for text contrast
        for y in range(height):
            t = y / max(1, height - 1)
            color = tuple(int(a + (b - a) * t) for a, b in zip(OVERLAY_TOP, OVERLAY_BOTTOM))
            draw.line([(0, y), (width, y)], fill=color)

        date = datetime.now().strftime('%B %d, %Y').replace(' 0', ' ')
        draw.text((PADDING, PADDING + 40), date, font=self._font(20), fill=DATE_COLOR, anchor='ls')

        badge_w, badge_h = 150, 50
        badge_x, badge_y = width - PADDING - badge_w, PADDING + 10
        draw.rounded_rectangle([badge_x, badge_y, badge_x + badge_w, badge_y + badge_h],
                               radius=25, fill=ACCENT)
        draw.text((badge_x + badge_w / 2, badge_y + badge_h / 2), badge_label(article_count),
                  font=self._font(18), fill=WHITE, anchor='mm')

        title_y = int(height * 0.45)
        draw.line([(PADDING, title_y - 30), (PADDING + 80, title_y - 30)], fill=ACCENT, width=3)
        title_font = self._font(56)
        for i, line in enumerate(word_wrap(truncate_text(title))):
            draw.text((PADDING, title_y + i * 70), line, font=title_font, fill=TITLE_COLOR, anchor='ls')
        rule_y = title_y + 100 + 70 * (TITLE_MAX_LINES - 1)
        for x in range(PADDING, width - PADDING, 8):
            draw.line([(x, rule_y), (min(x + 4, width - PADDING), rule_y)], fill=RULE_COLOR, width=1)

        bottom_y = height - PADDING - 20
        draw.text((PADDING, bottom_y), author, font=self._font(22), fill=AUTHOR_COLOR, anchor='ls')
        draw.text((PADDING, bottom_y + 35), BRAND.upper(), font=self._font(16), fill=BRAND_COLOR, anchor='ls')
        draw.line([(PADDING, bottom_y + 55), (PADDING + 60, bottom_y + 55)], fill=ACCENT, width=2)
        return overlay


def default_background(size: Tuple[int, int] = DEFAULT_COVER_SIZE) -> PillowImage.Image:
    """Vertical slate-to-teal gradient used when no background image is readable."""
    width, height = size
    top, bottom = (30, 41, 59), (15, 118, 110)
    gradient = PillowImage.new('RGBA', size)
    draw = ImageDraw.Draw(gradient)
    for y in range(height):
        t = y / max(1, height - 1)
        color = tuple(int(a + (b - a) * t) for a, b in zip(top, bottom)) + (255,)
        draw.line([(0, y), (width, y)], fill=color)
    return gradient
