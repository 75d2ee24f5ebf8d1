"""Shared fixtures: quiet settings and canned fetch results."""

import pytest

from debug_settings import DebugSettings
from http_client import FetchResult
from rule_engine import ExtractionContext, RuleEngine


@pytest.fixture
def settings():
    return DebugSettings(request_timeout=5.0, script_timeout=2.0, item_limit=20, use_webview=False)


@pytest.fixture
def engine():
    return RuleEngine()


@pytest.fixture
def make_ctx():
    def _make(body, url='https://example.com/page', **kwargs):
        return ExtractionContext.for_body(body, base_url=url, **kwargs)
    return _make


def ok_fetch(url, body, status=200):
    return FetchResult(success=True, url=url, status=status, body=body, raw=body.encode('utf-8'),
                       charset='utf-8', final_url=url)


def failed_fetch(url, error='ConnectionError: refused'):
    return FetchResult(success=False, url=url, error=error)


@pytest.fixture
def pages():
    """Route fetch(url) to canned bodies; unknown URLs fail like an unreachable host."""
    routes = {}
    calls = []

    def fake_fetch(url, method='GET', headers=None, body=None, **kwargs):
        calls.append({'url': url, 'method': method, 'headers': dict(headers or {}), 'body': body})
        if url in routes:
            return ok_fetch(url, routes[url])
        return failed_fetch(url)

    fake_fetch.routes = routes
    fake_fetch.calls = calls
    return fake_fetch
