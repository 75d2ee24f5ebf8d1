"""
Debugger for book sources: nested rule groups (ruleSearch, ruleBookInfo,
ruleToc, ruleContent) and `{{key}}` / `{{page}}` URL templates with an
optional `,{json options}` suffix.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlparse

import webview
from content_format import (
    apply_replace_rules, collect_image_urls, extract_image_urls, format_content,
)
from http_client import parse_headers
from rule_engine import Document, ExtractionContext, parse_json, to_text
from rule_errors import ScriptError, TemplateError
from rule_parser import compile_js_regex, has_script, split_script_steps
from source_debugger import BOOK_DIALECT, DebugResult, SourceDebugger, split_explore_entries

logger = logging.getLogger(__name__)


class BookSourceType:
    TEXT = 0
    AUDIO = 1
    IMAGE = 2
    FILE = 3


SEARCH_FIELDS = ('name', 'author', 'intro', 'kind', 'lastChapter', 'updateTime', 'coverUrl', 'wordCount', 'bookUrl')
DETAIL_FIELDS = ('name', 'author', 'intro', 'kind', 'lastChapter', 'updateTime', 'coverUrl', 'tocUrl', 'wordCount')
FALSY_TEXT = ('', 'false', '0', 'null', 'undefined')

_PAGE_PATTERN_RE = re.compile(r'<([^<>]*,[^<>]*)>')
_OPTIONS_RE = re.compile(r',\s*(?=\{(?!\{))')
_KEY_RE = re.compile(r'\{\{\s*key\s*\}\}')
_PAGE_RE = re.compile(r'\{\{\s*page\s*\}\}')
_TEXT_FALLBACK_RE = re.compile(r'@(?:html|innerHTML|textNodes|ownText)(?=##|\s*$)', re.I)
_PATH_ID_RE = re.compile(r'/(\d+)(?:/|\.html?|$)')


@dataclass(frozen=True)
class UrlRequest:
    url: str
    method: str = 'GET'
    body: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    charset: Optional[str] = None
    webview: bool = False


def apply_page_pattern(template: str, page: int) -> str:
    """`<1,2,3>` picks the page-th entry, sticking to the last one past the end."""
    def repl(m):
        options = [opt.strip() for opt in m.group(1).split(',')]
        return options[min(max(page, 1), len(options)) - 1]
    return _PAGE_PATTERN_RE.sub(repl, template)


def split_url_options(template: str) -> Tuple[str, Dict[str, Any]]:
    """Split `url,{"method":"POST",...}` into the URL and its options dict."""
    candidate = None
    for m in _OPTIONS_RE.finditer(template):
        candidate = template[m.end():].strip()
        try:
            options = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(options, dict):
            return template[:m.start()].strip(), options
    if candidate and candidate.lstrip('{').lstrip().startswith(('"', "'")):
        logger.warning(f"[Book] URL options are not valid JSON: {candidate[:100]}")
    return template, {}


def text_fallback_rule(rule: str) -> Optional[str]:
    """Swap a trailing html/textNodes/ownText accessor for text."""
    fallback = _TEXT_FALLBACK_RE.sub('@text', rule)
    return fallback if fallback != rule else None


def is_truthy(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() not in FALSY_TEXT


class BookSourceDebugger(SourceDebugger):
    dialect = BOOK_DIALECT
    log_tag = 'Book'

    def __init__(self, source: Dict[str, Any], **kwargs):
        super().__init__(source, **kwargs)
        self._headers: Optional[Dict[str, str]] = None

    @property
    def is_image_source(self) -> bool:
        try:
            return int(self.source.get('bookSourceType') or 0) == BookSourceType.IMAGE
        except (TypeError, ValueError):
            return False

    def _rules(self, group: str) -> Dict[str, Any]:
        rules = self.source.get(group)
        if isinstance(rules, str):
            rules = parse_json(rules)
        return rules if isinstance(rules, dict) else {}

    def source_headers(self) -> Dict[str, str]:
        if self._headers is None:
            raw = self.source.get('header') or ''
            if raw and has_script(raw):
                ctx = self.context('', self.origin)
                raw = self.engine.evaluate(ctx, raw).first or ''
            self._headers = parse_headers(raw if isinstance(raw, (str, dict)) else to_text(raw))
        return dict(self._headers)

    # -- URL templates ------------------------------------------------------------

    def _fill(self, ctx: ExtractionContext, text: str, key: str, page: int, charset: Optional[str]) -> str:
        try:
            encoded = quote(key or '', safe='', encoding=charset or 'utf-8')
        except LookupError as e:
            raise TemplateError(f"Unknown charset {charset!r}") from e
        text = _KEY_RE.sub(lambda _m: encoded, text)
        text = _PAGE_RE.sub(lambda _m: str(page), text)
        if '{{' in text:
            text = self.engine.interpolate(ctx, text)
        return text

    def build_request(self, template: Optional[str], key: str = '', page: int = 1,
                      book: Optional[Dict[str, Any]] = None) -> UrlRequest:
        """Turn a URL template into a request, or raise TemplateError."""
        template = (template or '').strip()
        if not template:
            raise TemplateError("URL template is empty")
        ctx = self.context('', self.origin, book=book, extra={'key': key, 'page': page})

        if template.startswith('@js:') or template.lower().startswith('<js>'):
            value = None
            for kind, code in split_script_steps(template):
                if kind != 'js':
                    continue
                try:
                    value = self.engine.run_script(ctx, code, value, strict=True)
                except ScriptError as e:
                    raise TemplateError(f"URL script failed: {e}") from e
            template = to_text(value).strip()
            if not template:
                raise TemplateError("URL script returned nothing")

        template = apply_page_pattern(template, page)
        template, options = split_url_options(template)
        charset = options.get('charset') or None

        url = self._fill(ctx, template, key, page, charset).strip()
        body = options.get('body')
        if body is not None:
            body = self._fill(ctx, body if isinstance(body, str) else json.dumps(body, ensure_ascii=False),
                              key, page, charset)

        url = self.resolve(url)
        if not url.startswith(('http://', 'https://', 'data:')):
            raise TemplateError(f"Cannot build an absolute URL from {template!r}")
        method = str(options.get('method') or ('POST' if body else 'GET')).upper()
        return UrlRequest(
            url=url,
            method=method,
            body=body,
            headers=parse_headers(options.get('headers')),
            charset=charset,
            webview=bool(options.get('webView')),
        )

    def _fetch_request(self, req: UrlRequest):
        return self.request(req.url, req.method, req.body, req.headers, req.charset)

    def extract_url_params(self, url: str) -> None:
        """Copy query parameters and a numeric path id into the variable store."""
        parsed = urlparse(url)
        for key, value in parse_qsl(parsed.query):
            if key not in self.variables:
                self.variables.put(key, value)
                self.log('info', 'parse', f"URL parameter {key}={value}")
        m = _PATH_ID_RE.search(parsed.path)
        if m and 'id' not in self.variables:
            self.variables.put('id', m.group(1))
            self.log('info', 'parse', f"URL path id={m.group(1)}")

    # -- stages -------------------------------------------------------------------

    def search(self, keyword: str, page: int = 1) -> DebugResult:
        def work():
            req = self.build_request(self.source.get('searchUrl'), key=keyword, page=page)
            self.log('info', 'request', f"Search URL: {req.url}")
            fetched = self._fetch_request(req)
            page_url = fetched.final_url or req.url
            ctx = self.context(fetched.body, page_url, extra={'key': keyword, 'page': page})
            return self._book_list(ctx, self._rules('ruleSearch'), page_url, 'Search list')
        return self._run('search', work)

    def explore_entries(self) -> List[Tuple[str, str]]:
        raw = self.source.get('exploreUrl') or ''
        if isinstance(raw, str) and has_script(raw):
            result = self.engine.evaluate(self.context('', self.origin), raw)
            raw = list(result.values) if isinstance(result.first, dict) else (result.first or '')
        if isinstance(raw, str):
            parsed = parse_json(raw)
            if isinstance(parsed, list):
                raw = parsed
        if isinstance(raw, list):
            return [(str(item.get('title') or ''), str(item['url']))
                    for item in raw if isinstance(item, dict) and item.get('url')]
        return split_explore_entries(to_text(raw))

    def explore(self, url: str = '') -> DebugResult:
        def work():
            target = url
            if not target:
                entries = self.explore_entries()
                target = entries[0][1] if entries else ''
            if '::' in target:
                title, target = target.split('::', 1)
                self.log('info', 'request', f"Explore category: {title}")
            req = self.build_request(target, page=1)
            fetched = self._fetch_request(req)
            page_url = fetched.final_url or req.url
            ctx = self.context(fetched.body, page_url, extra={'key': '', 'page': 1})
            rules = self._rules('ruleExplore')
            if not rules.get('bookList'):
                self.log('warning', 'parse', "No ruleExplore configured, using ruleSearch")
                rules = self._rules('ruleSearch')
            return self._book_list(ctx, rules, page_url, 'Explore list')
        return self._run('explore', work)

    def _book_list(self, ctx: ExtractionContext, rules: Dict[str, Any], page_url: str,
                   what: str) -> List[Dict[str, Any]]:
        field_rules = {name: rules.get(name) for name in SEARCH_FIELDS if rules.get(name)}
        books = self.parse_book_list(ctx, rules.get('bookList'), field_rules, what)
        for book in books:
            if not book.get('bookUrl'):
                book['bookUrl'] = page_url
        return books

    def _apply_init(self, ctx: ExtractionContext, init: str) -> ExtractionContext:
        """Run ruleBookInfo.init and return the context the field rules should see."""
        if init.startswith(':'):
            try:
                m = compile_js_regex(init[1:]).search(ctx.raw_body)
            except Exception as e:
                self.log('warning', 'parse', f"init rule error: {e}", {'rule': init})
                return ctx
            if not m:
                self.log('warning', 'parse', "init rule matched nothing", {'rule': init})
                return ctx
            groups = {chr(ord('a') + i): (g or '') for i, g in enumerate(m.groups()[:26])}
            self.variables.put('_bookInfoInit', groups)
            self.log('success', 'parse', f"init extracted {len(groups)} groups", {'rule': init})
            return ctx.with_value(groups)
        if has_script(init):
            result = self.engine.evaluate(ctx, init)
            if result.empty:
                self.log('warning', 'parse', "init script returned nothing", {'rule': init})
                return ctx
            self.log('success', 'parse', "init script applied", {'rule': init})
            value = result.first
            if isinstance(value, str):
                return self.context(value, ctx.base_url, book=ctx.book)
            return ctx.with_value(value)
        result = self.engine.evaluate_list(ctx, init)
        if result.empty:
            self.log('warning', 'parse', "init rule matched nothing", {'rule': init, 'error': result.error})
            return ctx
        self.log('success', 'parse', f"init narrowed to {result.count} elements", {'rule': init})
        return ctx.with_element(result.first)

    def detail(self, url: str, book: Optional[Dict[str, Any]] = None) -> DebugResult:
        def work():
            req = self.build_request(url, book=book)
            fetched = self._fetch_request(req)
            page_url = fetched.final_url or req.url
            self.extract_url_params(req.url)
            ctx = self.context(fetched.body, page_url, book=book)
            rules = self._rules('ruleBookInfo')
            if not rules:
                self.log('warning', 'parse', "No ruleBookInfo configured")
            init = rules.get('init')
            if init:
                ctx = self._apply_init(ctx, init)

            info: Dict[str, Any] = {}
            for name in DETAIL_FIELDS:
                value = self.field(ctx, name, rules.get(name), join=',' if name == 'kind' else None)
                if value:
                    info[name] = value
            if info.get('coverUrl'):
                info['coverUrl'] = self.resolve(info['coverUrl'], page_url)
            if info.get('tocUrl'):
                info['tocUrl'] = self.resolve(info['tocUrl'], page_url)
            else:
                info['tocUrl'] = page_url
                self.log('info', 'field', f"tocUrl defaults to the detail URL: {page_url}")
            return info
        return self._run('detail', work)

    def toc(self, url: str, book: Optional[Dict[str, Any]] = None) -> DebugResult:
        def work():
            req = self.build_request(url, book=book)
            fetched = self._fetch_request(req)
            page_url = fetched.final_url or req.url
            self.extract_url_params(req.url)
            ctx = self.context(fetched.body, page_url, book=book)
            rules = self._rules('ruleToc')

            chapters = []
            for i, element in enumerate(self.element_list(ctx, rules.get('chapterList'), 'Chapter list'), start=1):
                item_ctx = ctx.with_element(element)
                quiet = i > 3
                prefix = f"[{i}] "
                name = self.field(item_ctx, 'chapterName', rules.get('chapterName'), prefix, quiet=quiet)
                link = self.field(item_ctx, 'chapterUrl', rules.get('chapterUrl'), prefix, quiet=quiet)
                is_volume = is_truthy(self.field(item_ctx, 'isVolume', rules.get('isVolume'), prefix, quiet=quiet))
                chapter = {'name': name or '', 'url': self.resolve(link, page_url) if link else '',
                           'isVolume': is_volume}
                updated = self.field(item_ctx, 'updateTime', rules.get('updateTime'), prefix, quiet=quiet)
                if updated:
                    chapter['updateTime'] = updated
                if chapter['name'] or chapter['url']:
                    chapters.append(chapter)
            self.log_chapters(chapters)

            next_url = self.field(ctx, 'nextTocUrl', rules.get('nextTocUrl'))
            if next_url:
                next_url = self.resolve(next_url, page_url)
                if next_url != page_url:
                    self._next_url = next_url
            return chapters
        return self._run('toc', work)

    def content(self, url: str, chapter: Optional[Dict[str, Any]] = None,
                book: Optional[Dict[str, Any]] = None, use_webview: bool = False) -> DebugResult:
        def work():
            req = self.build_request(url, book=book)
            fetched = self._fetch_request(req)
            page_url = fetched.final_url or req.url
            body = fetched.body
            body_is_json = Document(body).is_json
            if (use_webview or req.webview) and not body_is_json:
                body = self._render(page_url, req.headers) or body

            rules = self._rules('ruleContent')
            rule = rules.get('content')
            if not rule:
                self.log('warning', 'parse', "No ruleContent.content configured")
                return [] if self.is_image_source else ''

            ctx = self.context(body, page_url, book=book, chapter=chapter)
            texts = self._content_values(ctx, rule)
            if not texts and self.settings.use_webview and not body_is_json and not (use_webview or req.webview):
                self.log('info', 'parse', "Content still empty, trying WebView")
                rendered = self._render(page_url, req.headers)
                if rendered:
                    ctx = self.context(rendered, page_url, book=book, chapter=chapter)
                    texts = self._content_values(ctx, rule)

            next_url = self.field(ctx, 'nextContentUrl', rules.get('nextContentUrl'))
            if next_url:
                next_url = self.resolve(next_url, page_url)
                if next_url != page_url:
                    self._next_url = next_url

            if self.is_image_source:
                images = collect_image_urls(texts, page_url)
                if not images:
                    images = extract_image_urls(ctx.raw_body, page_url)
                    if images:
                        self.log('info', 'field', f"Found {len(images)} images in the raw response")
                if images:
                    self.log('success', 'field', f"Extracted {len(images)} images", {'first': images[0]})
                else:
                    self.log('warning', 'field', "No images found")
                return images

            text = format_content('\n'.join(texts))
            replace_rules = rules.get('replaceRegex')
            if replace_rules and text:
                text = apply_replace_rules(text, replace_rules)
                self.log('info', 'parse', "Applied replaceRegex", {'rule': replace_rules})
            self.log('success' if text else 'warning', 'field', f"Content length: {len(text)}")
            return text
        return self._run('content', work)

    def _content_values(self, ctx: ExtractionContext, rule: str) -> List[str]:
        result = self.engine.evaluate(ctx, rule)
        if not result.success:
            self.log('warning', 'parse', f"content rule error: {result.error}", {'rule': rule})
        texts = [t for t in result.texts() if t]
        if texts:
            self.log('info', 'field', f"content matched {len(texts)} values",
                     {'rule': rule, 'matched': len(texts), 'value': texts[0][:200]})
            return texts
        fallback = text_fallback_rule(rule)
        if fallback:
            self.log('info', 'parse', f"content empty, retrying with {fallback!r}")
            texts = [t for t in self.engine.evaluate(ctx, fallback).texts() if t]
            if texts:
                self.log('info', 'field', f"fallback matched {len(texts)} values", {'rule': fallback})
                return texts
        self.log('warning', 'field', "content: empty", {'rule': rule, 'matched': 0})
        return []

    def _render(self, url: str, headers: Dict[str, str]) -> Optional[str]:
        merged = self.source_headers()
        merged.update(headers)
        self.log('info', 'request', f"WebView render: {url}")
        html = webview.render_page(url, headers=merged, timeout=int(self.settings.request_timeout * 1000))
        if html:
            self.log('success', 'request', f"WebView rendered {len(html)} chars")
        else:
            self.log('warning', 'request', "WebView rendering failed")
        return html
