import io
import os
import asyncio
import aiohttp
from urllib.parse import urljoin, urlparse
from bs4 import BeautifulSoup, Tag
from typing import Dict, List, Optional, Sequence, Tuple
from tqdm.asyncio import tqdm_asyncio
from PIL import Image as PillowImage

from ..models import (
    log, ImageDescriptor, IMAGE_URL_PREFIX, DEFAULT_IMAGE_SRC_ATTRIBUTES,
    slugify, unix_millis
)
from ..errors import ImageRejected
from .session import fetch_image, get_session

class ImageAcquirer:
    """Fetches the images an article references and rehosts them on disk.

    Each ``<img>`` walks Requested -> Fetched -> Validated -> Encoded ->
    Persisted -> Rewritten; a failure at any step leaves the tag as it was.
    """

    def __init__(
        self,
        images_dir: str,
        timeout_seconds: float = 10,
        max_bytes: int = 5 * 1024 * 1024,
        quality: int = 85,
        max_dimension: int = 1200,
        concurrency: int = 4,
        src_attributes: Sequence[str] = DEFAULT_IMAGE_SRC_ATTRIBUTES,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.images_dir = images_dir
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max_bytes
        self.quality = quality
        self.max_dimension = max_dimension
        self.concurrency = concurrency
        self.src_attributes = tuple(src_attributes)
        self.session = session

    @classmethod
    def from_config(cls, config, session: Optional[aiohttp.ClientSession] = None) -> "ImageAcquirer":
        return cls(
            images_dir=config.images_dir,
            timeout_seconds=config.image_timeout_seconds,
            max_bytes=config.max_image_bytes,
            quality=config.image_quality,
            max_dimension=config.image_max_dimension,
            concurrency=config.image_concurrency,
            src_attributes=config.image_src_attributes,
            session=session,
        )

    def resolve_source(self, img_tag: Tag) -> Optional[str]:
        """First configured attribute with a usable value; data: URIs never qualify."""
        for attr in self.src_attributes:
            value = (img_tag.get(attr) or '').strip()
            if value and not value.lower().startswith('data:'):
                return value
        return None

    async def acquire(self, fragment: str, base_url: str, article_title: str) -> Tuple[str, List[ImageDescriptor]]:
        soup = BeautifulSoup(fragment, 'html.parser')
        img_tags = soup.find_all('img')
        if not img_tags:
            return fragment, []

        slug = slugify(article_title)
        article_dir = os.path.join(self.images_dir, slug)
        os.makedirs(article_dir, exist_ok=True)

        if self.session is not None:
            results = await self._process_all(self.session, img_tags, base_url, article_dir, slug)
        else:
            async with get_session() as session:
                results = await self._process_all(session, img_tags, base_url, article_dir, slug)

        images = [r for r in results if r is not None]
        log.info(f"Acquired {len(images)}/{len(img_tags)} images for '{article_title}'")
        return str(soup), images

    async def fetch_all(self, urls: Sequence[str]) -> Dict[str, Tuple[bytes, str, int, int]]:
        """Fetch and re-encode each URL without touching disk; URLs that fail are left out."""
        if not urls:
            return {}
        if self.session is not None:
            results = await self._fetch_all(self.session, urls)
        else:
            async with get_session() as session:
                results = await self._fetch_all(session, urls)
        fetched = {url: r for url, r in zip(urls, results) if r is not None}
        log.info(f"Fetched {len(fetched)}/{len(urls)} remote images")
        return fetched

    async def _fetch_all(self, session, urls):
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(url):
            async with semaphore:
                try:
                    return await self.fetch_encoded(session, url)
                except Exception as e:
                    log.warning(f"Unexpected error on image {url}: {type(e).__name__} {e}")
                    return None

        return await tqdm_asyncio.gather(*[_bounded(u) for u in urls], desc="Packing Images", unit="img", leave=False)

    async def _process_all(self, session, img_tags, base_url, article_dir, slug):
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(index, img_tag):
            async with semaphore:
                try:
                    return await self._process_tag(session, index, img_tag, base_url, article_dir, slug)
                except Exception as e:
                    log.warning(f"Unexpected error on image {index}: {type(e).__name__} {e}")
                    return None

        tasks = [_bounded(i, tag) for i, tag in enumerate(img_tags)]
        # gather keeps task order, so descriptors follow DOM order
        return await tqdm_asyncio.gather(*tasks, desc="Fetching Images", unit="img", leave=False)

    async def _process_tag(self, session, index: int, img_tag: Tag, base_url: str,
                           article_dir: str, slug: str) -> Optional[ImageDescriptor]:
        src = self.resolve_source(img_tag)
        if not src:
            return None

        image_url = resolve_image_url(src, base_url)
        if image_url is None:
            log.debug(f"Skipping image with unresolvable URL: {src}")
            return None

        fetched = await self.fetch_encoded(session, image_url, referer=base_url)
        if fetched is None:
            return None
        encoded, ext, width, height = fetched

        filename = f"image-{index}-{unix_millis()}.{ext}"
        file_path = os.path.join(article_dir, filename)
        with open(file_path, 'wb') as f:
            f.write(encoded)

        local_path = f"{IMAGE_URL_PREFIX}{slug}/{filename}"
        img_tag['src'] = local_path
        log.debug(f"Image {index} saved: {image_url} -> {local_path}")

        return ImageDescriptor(
            original_url=image_url,
            local_path=local_path,
            alt_text=img_tag.get('alt') or None,
            width=width,
            height=height,
            size_bytes=len(encoded),
        )

    async def fetch_encoded(self, session, image_url: str,
                            referer: Optional[str] = None) -> Optional[Tuple[bytes, str, int, int]]:
        """Download and re-encode one image; None when it cannot be used."""
        try:
            content_type, data = await fetch_image(
                session, image_url, self.timeout_seconds, self.max_bytes, referer=referer
            )
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self.encode_image, data, content_type)
        except ImageRejected as e:
            log.warning(f"Skipped image {image_url}: {e.message}")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log.warning(f"Failed to download image {image_url}: {type(e).__name__} {e}")
        return None

    def encode_image(self, data: bytes, content_type: str) -> Tuple[bytes, str, int, int]:
        """Re-encode for EPUB readers: longer edge capped, baseline JPEG or PNG.

        WebP is always flattened to JPEG; other inputs with transparency stay PNG.
        """
        try:
            with PillowImage.open(io.BytesIO(data)) as img:
                img.load()
                if content_type == 'image/webp' or img.format == 'WEBP':
                    img = self._flatten(img)
                    keep_png = False
                else:
                    keep_png = self._has_alpha(img)

                if max(img.width, img.height) > self.max_dimension:
                    img.thumbnail((self.max_dimension, self.max_dimension), PillowImage.Resampling.LANCZOS)

                out_io = io.BytesIO()
                if keep_png:
                    if img.mode not in ('RGBA', 'LA', 'RGB', 'L', 'P'):
                        img = img.convert('RGBA')
                    img.save(out_io, format='PNG', optimize=True)
                    ext = 'png'
                else:
                    img = self._flatten(img)
                    img.save(out_io, format='JPEG', quality=self.quality, optimize=True, progressive=False)
                    ext = 'jpg'
                return out_io.getvalue(), ext, img.width, img.height
        except (OSError, ValueError, PillowImage.DecompressionBombError) as e:
            raise ImageRejected(f"Optimization Error: {e}") from e

    @staticmethod
    def _has_alpha(img) -> bool:
        return img.mode in ('RGBA', 'LA', 'PA') or (img.mode == 'P' and 'transparency' in img.info)

    @staticmethod
    def _flatten(img):
        if ImageAcquirer._has_alpha(img):
            rgba = img.convert('RGBA')
            background = PillowImage.new("RGB", rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[3])
            return background
        if img.mode != 'RGB':
            return img.convert('RGB')
        return img


def resolve_image_url(src: str, base_url: Optional[str]) -> Optional[str]:
    """Absolute http(s) URL for an image source, or None when it cannot be resolved."""
    try:
        image_url = urljoin(base_url or '', src.strip())
        scheme = urlparse(image_url).scheme
    except ValueError:
        return None
    if scheme not in ('http', 'https'):
        return None
    return image_url
