import os
from datetime import datetime
from bs4 import BeautifulSoup, Comment
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter
from typing import Optional

from ..models import log, IMAGE_URL_PREFIX

# Named HTML entities with no XML meaning, written back as numeric references
NUMERIC_ENTITIES = {
    0x00A0: '&#160;',   # nbsp
    0x2013: '&#8211;',  # ndash
    0x2014: '&#8212;',  # mdash
    0x2018: '&#8216;',  # lsquo
    0x2019: '&#8217;',  # rsquo
    0x201C: '&#8220;',  # ldquo
    0x201D: '&#8221;',  # rdquo
    0x2026: '&#8230;',  # hellip
}

_XML_ESCAPES = {'&': '&amp;', '<': '&lt;', '>': '&gt;', '"': '&quot;', "'": '&apos;'}

def escape_xml(text: Optional[str]) -> str:
    if not text:
        return ''
    return ''.join(_XML_ESCAPES.get(ch, ch) for ch in text)

def _xhtml_substitution(text: str) -> str:
    return EntitySubstitution.substitute_xml(text).translate(NUMERIC_ENTITIES)

XHTML_FORMATTER = HTMLFormatter(
    entity_substitution=_xhtml_substitution,
    void_element_close_prefix='/',
    empty_attributes_are_booleans=False,
)

def to_xhtml_string(soup) -> str:
    return soup.decode(formatter=XHTML_FORMATTER)

def html_to_xhtml(html: Optional[str], images_dir: str) -> str:
    """Normalize a sanitized HTML fragment into well-formed XHTML for EPUB chapters.

    - entities with no XML meaning become numeric references
    - void elements are self-closed, attribute values quoted
    - <picture> wrappers collapse to their <img>; <source> tags are dropped
    - srcset/sizes are removed, only the single src is packaged
    - <img src="/images/..."> points at the file under ``images_dir``; if that
      file is not readable the <img> is removed
    """
    if not html:
        return ''

    soup = BeautifulSoup(html, 'html.parser')
    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    for pic in soup.find_all('picture'):
        img = pic.find('img')
        if img:
            pic.replace_with(img.extract())
        else:
            pic.decompose()
    for source in soup.find_all('source'):
        source.decompose()

    for img in soup.find_all('img'):
        src = (img.get('src') or '').strip()
        if not src:
            img.decompose()
            continue
        if src.startswith(IMAGE_URL_PREFIX):
            local_file = resolve_local_image(src, images_dir)
            if local_file is None:
                log.warning(f"Image file not found, removing img tag: {src}")
                img.decompose()
                continue
            img['src'] = local_file
        for attr in ('srcset', 'sizes'):
            if attr in img.attrs:
                del img[attr]
        if not img.get('alt'):
            img['alt'] = ''

    return to_xhtml_string(soup)

def resolve_local_image(src: str, images_dir: str) -> Optional[str]:
    """Absolute path for an ``/images/...`` reference, or None if unreadable or outside ``images_dir``."""
    relative = src[len(IMAGE_URL_PREFIX):].split('?', 1)[0].split('#', 1)[0]
    root = os.path.abspath(images_dir)
    absolute = os.path.abspath(os.path.join(root, relative))
    if not absolute.startswith(root + os.sep):
        return None
    if not os.path.isfile(absolute) or not os.access(absolute, os.R_OK):
        return None
    return absolute

def format_date(value: Optional[str]) -> str:
    """Human date (``March 5, 2024``) for an ISO string; unparseable input comes back as given."""
    if not value:
        return ''
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return value
    return f"{parsed.strftime('%B')} {parsed.day}, {parsed.year}"
