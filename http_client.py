"""
Fetch client used by every debugging stage.

One call, one request: default headers, a bounded timeout and redirect count,
charset correction from the raw bytes. Failures come back as a FetchResult
with success=False; nothing in here raises to the caller.
"""
import base64
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union
from urllib.parse import unquote_to_bytes

import requests

logger = logging.getLogger(__name__)

DESKTOP_USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36'
MOBILE_USER_AGENT = 'Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Mobile Safari/537.36'

DEFAULT_HEADERS = {
    'User-Agent': DESKTOP_USER_AGENT,
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,application/json;q=0.8,*/*;q=0.7',
    'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
    'Accept-Encoding': 'gzip, deflate',
    'Connection': 'keep-alive',
}

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_REDIRECTS = 5
SNIFF_BYTES = 2000

# Legacy labels that should decode with a wider codec
CHARSET_ALIASES = {
    'gb2312': 'gbk',
    'gb_2312-80': 'gbk',
    'x-gbk': 'gbk',
}

_TOKEN_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_CONTENT_TYPE_CHARSET_RE = re.compile(r'charset\s*=\s*["\']?([\w.:-]+)', re.I)
_META_CHARSET_RE = re.compile(r'<meta[^>]+charset\s*=\s*["\']?\s*([\w.:-]+)', re.I)


@dataclass(frozen=True)
class FetchResult:
    success: bool
    url: str
    status: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ''
    raw: bytes = field(default=b'', repr=False)
    charset: Optional[str] = None
    error: Optional[str] = None
    elapsed_ms: int = 0
    final_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'url': self.url,
            'status': self.status,
            'headers': dict(self.headers),
            'body': self.body,
            'charset': self.charset,
            'error': self.error,
            'elapsed_ms': self.elapsed_ms,
            'final_url': self.final_url,
        }


def normalize_charset(charset: Optional[str]) -> Optional[str]:
    if not charset:
        return None
    charset = charset.strip().strip('"\'').lower()
    return CHARSET_ALIASES.get(charset, charset)


def detect_charset(content_type: Optional[str], raw: bytes) -> str:
    """Pick a charset: Content-Type first, then an in-body meta tag, else utf-8."""
    if content_type:
        m = _CONTENT_TYPE_CHARSET_RE.search(content_type)
        if m:
            return normalize_charset(m.group(1))
    head = raw[:SNIFF_BYTES].decode('ascii', errors='ignore')
    m = _META_CHARSET_RE.search(head)
    if m:
        return normalize_charset(m.group(1))
    return 'utf-8'


def decode_body(raw: bytes, charset: Optional[str]) -> str:
    charset = normalize_charset(charset) or 'utf-8'
    try:
        return raw.decode(charset)
    except (LookupError, UnicodeDecodeError) as e:
        logger.debug(f"[Fetch] Decode with {charset} failed ({e}), falling back to utf-8")
        return raw.decode('utf-8', errors='replace')


def filter_headers(headers: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Drop headers that requests would reject or that only make sense in a browser capture."""
    cleaned = {}
    for key, value in (headers or {}).items():
        key = str(key).strip()
        if not key or key.startswith((':', '@', '<')):
            continue
        if key.lower() == 'host' or not _TOKEN_RE.match(key):
            continue
        if value is None:
            continue
        value = str(value).replace('\r', '').replace('\n', '').strip().strip('"\'')
        cleaned[key] = value
    return cleaned


def parse_headers(text: Union[str, Dict[str, Any], None]) -> Dict[str, str]:
    """Accepts a JSON object or 'Key: value' lines."""
    if not text:
        return {}
    if isinstance(text, dict):
        return filter_headers(text)
    text = str(text).strip()
    if text.startswith('{'):
        try:
            parsed = json.loads(text)
            if isinstance(parsed, dict):
                return filter_headers(parsed)
        except json.JSONDecodeError:
            logger.debug("[Fetch] Header text is not valid JSON, trying line format")
    headers = {}
    for line in text.splitlines():
        if ':' not in line:
            continue
        key, value = line.split(':', 1)
        headers[key.strip()] = value.strip()
    return filter_headers(headers)


def decode_data_url(url: str) -> FetchResult:
    """Turn a data: URL into a successful result without touching the network."""
    start = time.monotonic()
    try:
        meta, _, payload = url[5:].partition(',')
        params = [p.strip() for p in meta.split(';')]
        if 'base64' in params:
            raw = base64.b64decode(payload + '=' * (-len(payload) % 4))
        else:
            raw = unquote_to_bytes(payload)
        charset = None
        for param in params:
            if param.lower().startswith('charset='):
                charset = normalize_charset(param.split('=', 1)[1])
        charset = charset or detect_charset(None, raw)
        return FetchResult(
            success=True,
            url=url,
            status=200,
            headers={'Content-Type': params[0] or 'text/plain'},
            body=decode_body(raw, charset),
            raw=raw,
            charset=charset,
            elapsed_ms=int((time.monotonic() - start) * 1000),
            final_url=url,
        )
    except (ValueError, TypeError) as e:
        return FetchResult(success=False, url=url, error=f"Invalid data URL: {e}",
                           elapsed_ms=int((time.monotonic() - start) * 1000))


def fetch(url: str,
          method: str = 'GET',
          headers: Optional[Dict[str, Any]] = None,
          body: Union[str, Dict[str, Any], None] = None,
          timeout: Optional[float] = None,
          charset: Optional[str] = None,
          proxy: Optional[str] = None,
          max_redirects: Optional[int] = None,
          session: Optional[requests.Session] = None) -> FetchResult:
    """Issue one request and return a FetchResult. Never raises.

    Args:
        url: absolute http(s) or data: URL
        method: GET or POST
        headers: merged over DEFAULT_HEADERS after filtering
        body: a dict is form-encoded, a string is sent as-is
        timeout: seconds
        charset: force the response charset (also used to encode string bodies)
        proxy: proxy URL applied to both schemes
        max_redirects: redirect cap for this request
        session: reuse cookies across stages; a private session is used otherwise
    """
    if url.startswith('data:'):
        return decode_data_url(url)

    method = (method or 'GET').upper()
    merged = dict(DEFAULT_HEADERS)
    merged.update(filter_headers(headers))
    data = None
    if body is not None:
        if isinstance(body, dict):
            data = body
        else:
            data = str(body).encode(normalize_charset(charset) or 'utf-8')
            if method == 'POST' and not any(k.lower() == 'content-type' for k in merged):
                merged['Content-Type'] = 'application/x-www-form-urlencoded'

    own_session = session is None
    sess = session or requests.Session()
    sess.max_redirects = DEFAULT_MAX_REDIRECTS if max_redirects is None else max_redirects
    proxies = {'http': proxy, 'https': proxy} if proxy else None

    start = time.monotonic()
    logger.debug(f"[Fetch] {method} {url}")
    try:
        resp = sess.request(
            method,
            url,
            headers=merged,
            data=data,
            timeout=timeout or DEFAULT_TIMEOUT,
            proxies=proxies,
            allow_redirects=True,
        )
        elapsed = int((time.monotonic() - start) * 1000)
        raw = resp.content or b''
        used_charset = normalize_charset(charset) or detect_charset(resp.headers.get('Content-Type'), raw)
        text = decode_body(raw, used_charset)
        ok = 200 <= resp.status_code < 300
        if ok:
            logger.info(f"[Fetch] ✓ HTTP {resp.status_code} {url} ({elapsed}ms, {len(raw)} bytes)")
        else:
            logger.warning(f"[Fetch] HTTP {resp.status_code} for {url}")
        return FetchResult(
            success=ok,
            url=url,
            status=resp.status_code,
            headers=dict(resp.headers),
            body=text,
            raw=raw,
            charset=used_charset,
            error=None if ok else f"HTTP {resp.status_code} {resp.reason or ''}".strip(),
            elapsed_ms=elapsed,
            final_url=resp.url,
        )
    except requests.RequestException as e:
        elapsed = int((time.monotonic() - start) * 1000)
        logger.warning(f"[Fetch] ✗ {url}: {e}")
        return FetchResult(success=False, url=url, error=f"{type(e).__name__}: {e}", elapsed_ms=elapsed)
    except Exception as e:
        elapsed = int((time.monotonic() - start) * 1000)
        logger.error(f"[Fetch] Unexpected failure for {url}: {e}")
        return FetchResult(success=False, url=url, error=f"{type(e).__name__}: {e}", elapsed_ms=elapsed)
    finally:
        if own_session:
            sess.close()
