"""
Browser rendering fallback for content pages that build their text with
JavaScript. Uses sync Playwright with the stealth patches applied; only one
browser runs at a time.
"""
import logging
import threading
from typing import Dict, Optional

from http_client import DESKTOP_USER_AGENT, filter_headers

logger = logging.getLogger(__name__)

# Threading lock so concurrent debuggers never launch two browsers at once
_sync_pw_lock = threading.Lock()

DEFAULT_WAIT_MS = 2000


def render_page(url: str, headers: Optional[Dict[str, str]] = None, timeout: int = 30000,
                wait_ms: int = DEFAULT_WAIT_MS, wait_for_selector: Optional[str] = None) -> Optional[str]:
    """Render `url` in headless Chromium and return the final HTML.

    Args:
        url: page to load
        headers: extra request headers; a User-Agent entry sets the browser UA
        timeout: navigation timeout in milliseconds
        wait_ms: settle time after the network goes idle
        wait_for_selector: optional CSS selector to wait for

    Returns:
        HTML content as string, or None if rendering failed
    """
    headers = filter_headers(headers)
    user_agent = DESKTOP_USER_AGENT
    for key in list(headers):
        if key.lower() == 'user-agent':
            user_agent = headers.pop(key)

    with _sync_pw_lock:
        try:
            from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
            from playwright.sync_api import sync_playwright
            from playwright_stealth import Stealth

            with sync_playwright() as p:
                browser = p.chromium.launch(headless=True)
                try:
                    context = browser.new_context(user_agent=user_agent)
                    if headers:
                        context.set_extra_http_headers(headers)
                    page = context.new_page()
                    Stealth().apply_stealth_sync(page)

                    page.goto(url, timeout=timeout, wait_until='networkidle')
                    page.wait_for_timeout(wait_ms)
                    if wait_for_selector:
                        try:
                            page.wait_for_selector(wait_for_selector, timeout=10000)
                        except PlaywrightTimeoutError:
                            logger.debug(f"[WebView] Selector {wait_for_selector!r} never appeared on {url}")

                    html = page.content()
                    logger.info(f"[WebView] Rendered {url} ({len(html)} chars)")
                    return html
                finally:
                    browser.close()
        except Exception as e:
            logger.error(f"[WebView] Rendering failed for {url}: {e}")
            return None
