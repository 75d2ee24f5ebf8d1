"""
Post-processing for extracted content: URL resolution, HTML-to-text
formatting for prose chapters, image URL collection for image sources and the
newline-separated replace rules a source can attach to its content.
"""
import html
import logging
import re
from typing import Iterable, List, Optional
from urllib.parse import urljoin, urlparse

from rule_errors import RuleSyntaxError
from rule_parser import compile_js_regex

logger = logging.getLogger(__name__)

PARAGRAPH_INDENT = '　　'

_SCHEME_RE = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.-]*:')
_IMG_TAG_RE = re.compile(r'<img[^>]*\s(?:data-src|data-original|src)\s*=\s*[\'"]([^\'"]+)[\'"][^>]*>', re.I)
_BARE_IMAGE_URL_RE = re.compile(r'(https?://[^\s<>"\']+\.(?:jpg|jpeg|png|gif|webp|bmp)(?:\?[^\s<>"\']*)?)', re.I)
_IMAGE_EXT_RE = re.compile(r'\.(?:jpg|jpeg|png|gif|webp|bmp)(?:[?#].*)?$', re.I)


def origin_of(url: str) -> str:
    parsed = urlparse(url or '')
    if not parsed.scheme or not parsed.netloc:
        return ''
    return f"{parsed.scheme}://{parsed.netloc}"


def resolve_url(url: Optional[str], base: Optional[str]) -> str:
    url = (url or '').strip()
    if not url:
        return ''
    if url.startswith('//'):
        scheme = urlparse(base or '').scheme or 'https'
        return f"{scheme}:{url}"
    if _SCHEME_RE.match(url):
        return url
    if not base:
        return url
    return urljoin(base, url)


def format_html(content: str) -> str:
    """Flatten chapter HTML into indented paragraphs."""
    if not content:
        return ''

    cleanup_patterns = [
        (r'(&nbsp;)+', ' '),
        (r'&ensp;|&emsp;', ' '),
        (r'&thinsp;|&zwnj;|&zwj;|[\u2009\u200c\u200d]', ''),
        (r'<!--[\s\S]*?-->', ''),
        (r'<(script|style)[^>]*>[\s\S]*?</\1>', ''),
        (r'</?(?:div|p|br|hr|h\d|article|dd|dl|li|section)\b[^>]*>', '\n'),
    ]
    text = content
    for pattern, replacement in cleanup_patterns:
        text = re.sub(pattern, replacement, text, flags=re.I)

    text = re.sub(r'</?[a-zA-Z][a-zA-Z0-9]*(?=[\s/>])[^<>]*>', '', text)
    text = re.sub(r'\s*\n+\s*', '\n' + PARAGRAPH_INDENT, text)
    text = re.sub(r'^[\n\s]+', PARAGRAPH_INDENT, text)
    text = re.sub(r'[\n\s]+$', '', text)
    if '&' in text:
        text = html.unescape(text)
    return text


def format_content(content: str) -> str:
    """Text-source chapter body: one indented paragraph per line."""
    if not content:
        return ''
    lines = []
    for line in format_html(content).split('\n'):
        line = line.strip()
        if not line:
            continue
        lines.append(line if line.startswith(PARAGRAPH_INDENT) else PARAGRAPH_INDENT + line)
    return '\n'.join(lines)


def extract_image_urls(content: str, base_url: str) -> List[str]:
    """Image URLs from <img> tags, falling back to bare image links."""
    if not content:
        return []
    images = []
    for src in _IMG_TAG_RE.findall(content):
        url = resolve_url(html.unescape(src), base_url)
        if url and url not in images:
            images.append(url)
    if not images:
        for url in _BARE_IMAGE_URL_RE.findall(content):
            if url not in images:
                images.append(url)
    return images


def looks_like_url(value: str) -> bool:
    value = value.strip()
    if not value or '<' in value or '\n' in value or ' ' in value:
        return False
    return value.startswith(('http://', 'https://', '//', '/', 'data:image')) or bool(_IMAGE_EXT_RE.search(value))


def collect_image_urls(values: Iterable[str], base_url: str) -> List[str]:
    """Image URLs from rule output that may be plain URLs, HTML or both."""
    images = []
    for value in values:
        if value is None:
            continue
        value = str(value)
        if looks_like_url(value):
            found = [resolve_url(value, base_url)]
        else:
            found = extract_image_urls(value, base_url)
        for url in found:
            if url and url not in images:
                images.append(url)
    return images


def apply_replace_rules(content: str, rules: Optional[str]) -> str:
    """Apply newline-separated `##pattern##replacement` (or `pattern##replacement`) lines in order."""
    if not content or not rules:
        return content
    for line in rules.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith('##'):
            line = line[2:]
        pattern, _, replacement = line.partition('##')
        if not pattern:
            continue
        try:
            regex = compile_js_regex(pattern)
        except RuleSyntaxError as e:
            logger.warning(f"[Content] Skipping replace rule {line!r}: {e}")
            continue
        content = regex.sub(lambda _m: replacement, content)
    return content
