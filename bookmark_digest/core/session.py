import socket
import aiohttp
from contextlib import asynccontextmanager
from typing import Dict, Optional, Tuple
from aiohttp.resolver import ThreadedResolver

from ..models import log, USER_AGENT, ALLOWED_IMAGE_MIMES
from ..errors import ImageRejected, ImageTooLarge

IMAGE_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "image/jpeg,image/png,image/gif,image/webp,image/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

@asynccontextmanager
async def get_session(timeout_seconds: float = 45):
    # Threaded DNS sidesteps pycares issues on some platforms; IPv4 only
    connector = aiohttp.TCPConnector(
        resolver=ThreadedResolver(),
        ttl_dns_cache=300,
        family=socket.AF_INET
    )
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout_seconds), connector=connector) as session:
        yield session

async def fetch_image(
    session: aiohttp.ClientSession,
    url: str,
    timeout_seconds: float,
    max_bytes: int,
    referer: Optional[str] = None,
) -> Tuple[str, bytes]:
    """Fetch one image and return (content_type, body).

    Raises ImageRejected for non-2xx responses, unsupported content types and
    oversize bodies; aiohttp.ClientError / asyncio.TimeoutError pass through.
    """
    headers: Dict[str, str] = dict(IMAGE_HEADERS)
    if referer:
        headers['Referer'] = referer

    async with session.get(url, headers=headers, allow_redirects=True,
                           timeout=aiohttp.ClientTimeout(total=timeout_seconds)) as response:
        if not 200 <= response.status < 300:
            raise ImageRejected(f"HTTP {response.status}")

        content_type = response.headers.get('Content-Type', '').split(';')[0].strip().lower()
        if not content_type:
            raise ImageRejected("No content-type header")
        if content_type not in ALLOWED_IMAGE_MIMES:
            raise ImageRejected(f"Unsupported format: {content_type}")

        advertised = response.headers.get('Content-Length')
        if advertised and advertised.isdigit() and int(advertised) > max_bytes:
            raise ImageTooLarge(f"Image too large: {advertised} bytes")

        data = bytearray()
        async for chunk in response.content.iter_chunked(64 * 1024):
            data.extend(chunk)
            if len(data) > max_bytes:
                raise ImageTooLarge(f"Image too large: more than {max_bytes} bytes")

    log.debug(f"Fetched {len(data)} bytes ({content_type}) from {url}")
    return content_type, bytes(data)
