"""
Stage runner shared by both source dialects.

A debugger instance owns one VariableStore and one requests.Session, which is
what lets a search result feed the detail, toc and content stages of the same
work. Every stage returns an immutable DebugResult with the log trail; only a
bad URL template or a failed primary fetch make a stage fail.
"""
import abc
import copy
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from content_format import origin_of, resolve_url
from debug_settings import DebugSettings
from http_client import FetchResult, fetch
from rule_engine import ElementHandle, ExtractionContext, RuleEngine, VariableStore, to_text
from rule_errors import NetworkError, TemplateError
from script_sandbox import QuickJsSandbox, ScriptSandbox

logger = logging.getLogger(__name__)

LEVELS = {
    'info': logging.INFO,
    'success': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}

# Fields that only one of the two configuration shapes uses
BOOK_SOURCE_FIELDS = ('ruleSearch', 'ruleExplore', 'ruleBookInfo', 'ruleToc', 'ruleContent',
                      'searchUrl', 'exploreUrl')
MANGA_SOURCE_FIELDS = ('ruleSearchUrl', 'ruleSearchList', 'ruleSearchName', 'ruleSearchNoteUrl',
                       'ruleBookContent', 'ruleFindUrl', 'ruleChapterUrl', 'ruleIntroduce',
                       'bookSingleThread', 'httpUserAgent')

BOOK_DIALECT = 'book'
MANGA_DIALECT = 'manga'

PREVIEW_CHARS = 80


@dataclass(frozen=True)
class DebugLog:
    time: str
    level: str
    category: str
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        entry = {'time': self.time, 'level': self.level, 'category': self.category, 'message': self.message}
        if self.details:
            entry['details'] = self.details
        return entry


@dataclass(frozen=True)
class DebugResult:
    success: bool
    stage: str
    logs: Tuple[DebugLog, ...] = ()
    fetch: Optional[FetchResult] = None
    payload: Any = None
    error: Optional[str] = None
    next_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'stage': self.stage,
            'logs': [entry.to_dict() for entry in self.logs],
            'fetch': self.fetch.to_dict() if self.fetch else None,
            'payload': self.payload,
            'error': self.error,
            'next_url': self.next_url,
        }


def _preview(value: Any, limit: int = PREVIEW_CHARS) -> str:
    text = to_text(value).replace('\n', ' ')
    return text if len(text) <= limit else text[:limit] + '…'


def _is_set(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return bool(value)
    return True


def detect_dialect(source: Dict[str, Any]) -> str:
    """Guess which configuration shape a record uses. Ties go to the book dialect."""
    book_hits = sum(1 for name in BOOK_SOURCE_FIELDS if _is_set(source.get(name)))
    manga_hits = sum(1 for name in MANGA_SOURCE_FIELDS if _is_set(source.get(name)))
    return MANGA_DIALECT if manga_hits > book_hits else BOOK_DIALECT


def split_explore_entries(text: str) -> List[Tuple[str, str]]:
    """Parse `Title::url` entries separated by newlines or `&&`."""
    entries = []
    for line in re.split(r'\n|&&', text or ''):
        line = line.strip()
        if not line:
            continue
        title, sep, url = line.partition('::')
        entries.append((title.strip(), url.strip()) if sep else ('', title.strip()))
    return entries


def create_debugger(source: Dict[str, Any], **kwargs) -> 'SourceDebugger':
    if detect_dialect(source) == MANGA_DIALECT:
        from manga_source import MangaSourceDebugger
        return MangaSourceDebugger(source, **kwargs)
    from book_source import BookSourceDebugger
    return BookSourceDebugger(source, **kwargs)


class SourceDebugger(abc.ABC):
    """Base class: logging, fetching, field extraction and the stage wrapper."""

    dialect = ''
    log_tag = 'Debug'

    def __init__(self, source: Dict[str, Any], settings: Optional[DebugSettings] = None,
                 sandbox: Optional[ScriptSandbox] = None, session: Optional[requests.Session] = None):
        self.source = source
        self.settings = settings or DebugSettings.from_env()
        self.variables = VariableStore()
        self.session = session or requests.Session()
        self.engine = RuleEngine(
            sandbox or QuickJsSandbox(timeout=self.settings.script_timeout),
            js_lib=source.get('jsLib') or '',
            on_log=self._engine_log,
        )
        self._logs: List[DebugLog] = []
        self._stage = ''
        self._fetch: Optional[FetchResult] = None
        self._next_url: Optional[str] = None

    # -- session ----------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.source.get('bookSourceName') or self.source.get('bookSourceUrl') or '(unnamed)'

    @property
    def origin(self) -> str:
        return origin_of(self.source.get('bookSourceUrl') or '')

    def reset(self) -> None:
        """Forget variables before debugging an unrelated work."""
        self.variables.clear()

    def source_headers(self) -> Dict[str, str]:
        return {}

    # -- logging ----------------------------------------------------------------

    def log(self, level: str, category: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        entry = DebugLog(datetime.now(timezone.utc).isoformat(), level, category, message, details)
        self._logs.append(entry)
        logger.log(LEVELS.get(level, logging.INFO), f"[{self.log_tag}:{self._stage}] {message}")

    def _engine_log(self, level: str, category: str, message: str, details: Optional[Dict[str, Any]]) -> None:
        self.log(level, category, message, details)

    # -- stage plumbing -----------------------------------------------------------

    def _run(self, stage: str, work: Callable[[], Any]) -> DebugResult:
        self._logs = []
        self._stage = stage
        self._fetch = None
        self._next_url = None
        try:
            payload = work()
            return self._finish(True, payload)
        except TemplateError as e:
            self.log('error', 'error', f"URL template error: {e}")
            return self._finish(False, error=str(e))
        except NetworkError as e:
            if e.fetch is not None:
                self._fetch = e.fetch
            self.log('error', 'request', str(e))
            return self._finish(False, error=str(e))
        except Exception as e:
            logger.exception(f"[{self.log_tag}:{stage}] Unexpected failure")
            self.log('error', 'error', f"Unexpected error: {type(e).__name__}: {e}")
            return self._finish(False, error=str(e))

    def _finish(self, success: bool, payload: Any = None, error: Optional[str] = None) -> DebugResult:
        return DebugResult(
            success=success,
            stage=self._stage,
            logs=tuple(self._logs),
            fetch=self._fetch,
            payload=copy.deepcopy(payload),
            error=error,
            next_url=self._next_url,
        )

    def request(self, url: str, method: str = 'GET', body: Any = None, headers: Optional[Dict[str, str]] = None,
                charset: Optional[str] = None, primary: bool = True) -> FetchResult:
        """Fetch with the source headers. A failed primary fetch raises NetworkError."""
        merged = self.source_headers()
        merged.update(headers or {})
        self.log('info', 'request', f"{method} {url}", {'headers': merged} if merged else None)
        if body is not None:
            self.log('info', 'request', f"Body: {_preview(body, 200)}")
        result = fetch(
            url,
            method=method,
            headers=merged,
            body=body,
            timeout=self.settings.request_timeout,
            charset=charset,
            proxy=self.settings.proxy,
            max_redirects=self.settings.max_redirects,
            session=self.session,
        )
        if primary:
            self._fetch = result
        if not result.success:
            message = f"Request failed: {result.error} ({url})"
            if primary:
                raise NetworkError(message, result)
            self.log('warning', 'request', message)
            return result
        self.log('success', 'request',
                 f"HTTP {result.status} ({result.elapsed_ms}ms, {len(result.body)} chars, {result.charset})",
                 {'final_url': result.final_url})
        return result

    def context(self, body: str, page_url: str, **kwargs) -> ExtractionContext:
        return ExtractionContext.for_body(body, base_url=page_url or self.origin, variables=self.variables, **kwargs)

    def resolve(self, url: Optional[str], base: Optional[str] = None) -> str:
        return resolve_url(url, base or self.origin)

    # -- rule helpers -------------------------------------------------------------

    def field(self, ctx: ExtractionContext, name: str, rule: Optional[str], prefix: str = '',
              join: Optional[str] = None, quiet: bool = False) -> Optional[str]:
        """Evaluate one field rule; failures and empty matches are logged and give None.

        With quiet=True only rule errors are logged (long chapter lists).
        """
        if not rule:
            return None
        result = self.engine.evaluate(ctx, rule)
        if not result.success:
            self.log('warning', 'parse', f"{prefix}{name}: rule error: {result.error}", {'rule': rule})
            return None
        texts = [t for t in result.texts() if t]
        if not texts:
            if not quiet:
                self.log('warning', 'field', f"{prefix}{name}: empty", {'rule': rule, 'matched': 0})
            return None
        value = join.join(texts) if join is not None else texts[0]
        if quiet:
            return value
        self.log('success', 'field', f"{prefix}{name}: {_preview(value)}",
                 {'rule': rule, 'matched': len(texts), 'value': _preview(texts[0], 200)})
        return value

    def element_list(self, ctx: ExtractionContext, rule: Optional[str], what: str) -> List[ElementHandle]:
        if not rule:
            self.log('warning', 'parse', f"No {what} rule configured")
            return []
        result = self.engine.evaluate_list(ctx, rule)
        if not result.success:
            self.log('warning', 'parse', f"{what} rule error: {result.error}", {'rule': rule})
            return []
        if result.empty:
            self.log('warning', 'parse', f"{what} rule matched 0 elements", {'rule': rule, 'matched': 0})
            return []
        self.log('info', 'parse', f"{what} rule matched {result.count} elements",
                 {'rule': rule, 'matched': result.count, 'first': _preview(result.first, 200)})
        return list(result.values)

    def parse_book_list(self, ctx: ExtractionContext, list_rule: Optional[str], field_rules: Dict[str, str],
                        what: str = 'Book list') -> List[Dict[str, Any]]:
        """Apply `field_rules` to every list element. bookUrl is parsed last, with the partial book bound."""
        elements = self.element_list(ctx, list_rule, what)
        limit = self.settings.item_limit
        if len(elements) > limit:
            self.log('info', 'parse', f"Parsing the first {limit} of {len(elements)} elements")
        books = []
        for i, element in enumerate(elements[:limit], start=1):
            book: Dict[str, Any] = {}
            item_ctx = ctx.with_element(element)
            for name, rule in field_rules.items():
                if name == 'bookUrl' or not rule:
                    continue
                value = self.field(item_ctx, name, rule, prefix=f"[{i}] ", join=',' if name == 'kind' else None)
                if value:
                    book[name] = self.resolve(value, ctx.base_url) if name == 'coverUrl' else value
            url_rule = field_rules.get('bookUrl')
            if url_rule:
                url_ctx = ExtractionContext(item_ctx.document, item_ctx.variables, item_ctx.base_url,
                                            element, book=dict(book), extra=dict(ctx.extra))
                value = self.field(url_ctx, 'bookUrl', url_rule, prefix=f"[{i}] ")
                if value:
                    book['bookUrl'] = self.resolve(value, ctx.base_url)
            if book.get('name') or book.get('bookUrl'):
                books.append(book)
            else:
                self.log('warning', 'parse', f"[{i}] dropped: neither name nor bookUrl")
        self.log('success', 'parse', f"Parsed {len(books)} books")
        return books

    def log_chapters(self, chapters: List[Dict[str, Any]]) -> None:
        """Log the first five chapters and the last one."""
        total = len(chapters)
        for i, chapter in enumerate(chapters):
            if i < 5 or i == total - 1:
                self.log('info', 'parse',
                         f"[{i + 1}] {chapter.get('name') or '(no name)'} | {chapter.get('url') or '(no url)'}")
            elif i == 5:
                self.log('info', 'parse', f"... {total - 6} more chapters ...")
        with_name = sum(1 for c in chapters if c.get('name'))
        with_url = sum(1 for c in chapters if c.get('url'))
        self.log('success', 'parse', f"Parsed {total} chapters (named: {with_name}, linked: {with_url})")

    # -- stages ---------------------------------------------------------------------

    @abc.abstractmethod
    def search(self, keyword: str, page: int = 1) -> DebugResult:
        """Fetch and parse one page of search results for keyword."""

    @abc.abstractmethod
    def detail(self, url: str, book: Optional[Dict[str, Any]] = None) -> DebugResult:
        """Fetch the book page at url and extract its info fields."""

    @abc.abstractmethod
    def toc(self, url: str, book: Optional[Dict[str, Any]] = None) -> DebugResult:
        """Fetch the chapter list, following next-page links."""

    @abc.abstractmethod
    def content(self, url: str, chapter: Optional[Dict[str, Any]] = None,
                book: Optional[Dict[str, Any]] = None, use_webview: bool = False) -> DebugResult:
        """Fetch one chapter body and format it."""

    @abc.abstractmethod
    def explore(self, url: str = '') -> DebugResult:
        """Fetch a discovery page, defaulting to the first explore entry."""

    def explore_entries(self) -> List[Tuple[str, str]]:
        return []

    def run(self, keyword: str, use_webview: bool = False) -> List[DebugResult]:
        """Walk search -> detail -> toc -> content on the first item of each stage.

        Stops at the first failed or empty stage; the variable store is shared
        by every stage of the walk.
        """
        results = [self.search(keyword)]
        books = results[-1].payload if results[-1].success else None
        if not books:
            return results
        book = books[0]

        results.append(self.detail(book.get('bookUrl') or '', book=book))
        if not results[-1].success:
            return results
        book = dict(book, **results[-1].payload)

        results.append(self.toc(book.get('tocUrl') or '', book=book))
        chapters = results[-1].payload if results[-1].success else None
        chapter = next((c for c in chapters or [] if c.get('url') and not c.get('isVolume')), None)
        if chapter is None:
            return results

        results.append(self.content(chapter['url'], chapter=chapter, book=book, use_webview=use_webview))
        return results
