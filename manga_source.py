"""
Debugger for manga sources: flat `rule*` fields, literal searchKey/searchPage
tokens in the search URL, optional `@Header:{...}` suffixes on rules and image
mode for every content page.
"""
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlparse

from content_format import collect_image_urls, extract_image_urls
from http_client import parse_headers
from rule_engine import ExtractionContext
from rule_errors import TemplateError
from rule_parser import first_line, split_header_override
from source_debugger import MANGA_DIALECT, DebugResult, SourceDebugger, split_explore_entries

SEARCH_FIELDS = {
    'name': 'ruleSearchName',
    'author': 'ruleSearchAuthor',
    'kind': 'ruleSearchKind',
    'lastChapter': 'ruleSearchLastChapter',
    'coverUrl': 'ruleSearchCoverUrl',
    'bookUrl': 'ruleSearchNoteUrl',
}

DETAIL_FIELDS = {
    'name': 'ruleBookName',
    'author': 'ruleBookAuthor',
    'intro': 'ruleIntroduce',
    'kind': 'ruleBookKind',
    'lastChapter': 'ruleBookLastChapter',
    'coverUrl': 'ruleCoverUrl',
}


def preprocess(rule: Optional[str]) -> Tuple[str, Dict[str, str]]:
    """Strip a trailing @Header override and, for non-script rules, keep only the first line."""
    rule, headers = split_header_override(rule or '')
    return first_line(rule), headers


class MangaSourceDebugger(SourceDebugger):
    dialect = MANGA_DIALECT
    log_tag = 'Manga'

    def source_headers(self) -> Dict[str, str]:
        headers = parse_headers(self.source.get('header'))
        user_agent = self.source.get('httpUserAgent')
        if user_agent:
            headers['User-Agent'] = user_agent
        return headers

    def rule(self, name: str) -> str:
        return preprocess(self.source.get(name))[0]

    def absolute(self, url: str) -> str:
        url = (url or '').strip()
        if not url:
            raise TemplateError("URL is empty")
        url = self.resolve(url)
        if not url.startswith(('http://', 'https://', 'data:')):
            raise TemplateError(f"Cannot build an absolute URL from {url!r}")
        return url

    def build_search_url(self, keyword: str, page: int = 1) -> str:
        """Substitute the searchKey/searchPage tokens; the keyword is not percent-encoded."""
        template = self.source.get('ruleSearchUrl') or ''
        if not template.strip():
            raise TemplateError("ruleSearchUrl is empty")
        url = template.replace('searchKey', keyword).replace('searchPage', str(page))
        return self.absolute(url)

    def extract_url_params(self, url: str) -> None:
        for key, value in parse_qsl(urlparse(url).query):
            if value and not self.variables.get(key):
                self.variables.put(key, value)
                self.log('info', 'parse', f"URL parameter {key}={value}")

    def _book_list(self, ctx: ExtractionContext, what: str) -> List[Dict[str, Any]]:
        field_rules = {name: self.rule(key) for name, key in SEARCH_FIELDS.items() if self.rule(key)}
        return self.parse_book_list(ctx, self.rule('ruleSearchList'), field_rules, what)

    # -- stages -------------------------------------------------------------------

    def search(self, keyword: str, page: int = 1) -> DebugResult:
        def work():
            url = self.build_search_url(keyword, page)
            self.log('info', 'request', f"Search URL: {url}")
            fetched = self.request(url)
            ctx = self.context(fetched.body, fetched.final_url or url)
            return self._book_list(ctx, 'Search list')
        return self._run('search', work)

    def explore_entries(self) -> List[Tuple[str, str]]:
        return split_explore_entries(self.source.get('ruleFindUrl') or '')

    def explore(self, url: str = '') -> DebugResult:
        def work():
            target = url
            if not target:
                entries = self.explore_entries()
                target = entries[0][1] if entries else ''
            if '::' in target:
                title, target = target.split('::', 1)
                self.log('info', 'request', f"Explore category: {title}")
            target = self.absolute(target.replace('searchPage', '1'))
            fetched = self.request(target)
            ctx = self.context(fetched.body, fetched.final_url or target)
            return self._book_list(ctx, 'Explore list')
        return self._run('explore', work)

    def detail(self, url: str, book: Optional[Dict[str, Any]] = None) -> DebugResult:
        def work():
            target = self.absolute(url)
            self.extract_url_params(target)
            fetched = self.request(target)
            page_url = fetched.final_url or target
            ctx = self.context(fetched.body, page_url, book=book)

            info: Dict[str, Any] = {}
            for name, key in DETAIL_FIELDS.items():
                value = self.field(ctx, name, self.rule(key), join=',' if name == 'kind' else None)
                if value:
                    info[name] = self.resolve(value, page_url) if name == 'coverUrl' else value
            toc_url = self.field(ctx, 'tocUrl', self.rule('ruleChapterUrl'))
            if toc_url:
                info['tocUrl'] = self.resolve(toc_url, page_url)
            else:
                info['tocUrl'] = page_url
                self.log('info', 'field', f"tocUrl defaults to the detail URL: {page_url}")
            return info
        return self._run('detail', work)

    def _chapter_api_body(self, ctx: ExtractionContext, page_url: str) -> Optional[str]:
        """Follow ruleChapterUrl when it points somewhere else; None keeps the current page."""
        rule, headers = preprocess(self.source.get('ruleChapterUrl'))
        if not rule:
            return None
        api_url = self.field(ctx, 'chapterApiUrl', rule)
        if not api_url:
            return None
        api_url = self.resolve(api_url, page_url)
        if api_url == page_url or not api_url.startswith(('http://', 'https://')):
            return None
        extra = {'Referer': self.origin + '/'}
        for key, value in headers.items():
            extra[key] = self.origin if value == 'host' else value
        self.log('info', 'request', f"Requesting chapter API: {api_url}")
        result = self.request(api_url, headers=extra, primary=False)
        if not result.success:
            self.log('warning', 'request', "Chapter API failed, parsing the table-of-contents page instead")
            return None
        return result.body

    def toc(self, url: str, book: Optional[Dict[str, Any]] = None) -> DebugResult:
        def work():
            target = self.absolute(url)
            self.extract_url_params(target)
            fetched = self.request(target)
            page_url = fetched.final_url or target
            ctx = self.context(fetched.body, page_url, book=book)
            api_body = self._chapter_api_body(ctx, page_url)
            if api_body is not None:
                ctx = self.context(api_body, page_url, book=book)

            name_rule = self.rule('ruleChapterName')
            url_rule = self.rule('ruleContentUrl')
            chapters = []
            for i, element in enumerate(self.element_list(ctx, self.rule('ruleChapterList'), 'Chapter list'), start=1):
                item_ctx = ctx.with_element(element)
                quiet = i > 3
                name = self.field(item_ctx, 'chapterName', name_rule, f"[{i}] ", quiet=quiet)
                link = self.field(item_ctx, 'chapterUrl', url_rule, f"[{i}] ", quiet=quiet)
                chapter = {'name': name or '', 'url': self.resolve(link, page_url) if link else ''}
                if chapter['name'] or chapter['url']:
                    chapters.append(chapter)
            self.log_chapters(chapters)

            next_url = self.field(ctx, 'nextTocUrl', self.rule('ruleChapterUrlNext'))
            if next_url:
                next_url = self.resolve(next_url, page_url)
                if next_url != page_url:
                    self._next_url = next_url
            return chapters
        return self._run('toc', work)

    def content(self, url: str, chapter: Optional[Dict[str, Any]] = None,
                book: Optional[Dict[str, Any]] = None, use_webview: bool = False) -> DebugResult:
        """Image pages only; use_webview is accepted for a uniform signature and ignored."""
        def work():
            target = self.absolute(url)
            fetched = self.request(target)
            page_url = fetched.final_url or target
            ctx = self.context(fetched.body, page_url, book=book, chapter=chapter)

            rule = self.rule('ruleBookContent')
            texts: List[str] = []
            if rule:
                result = self.engine.evaluate(ctx, rule)
                if not result.success:
                    self.log('warning', 'parse', f"content rule error: {result.error}", {'rule': rule})
                texts = [t for t in result.texts() if t]
                self.log('info', 'field', f"content matched {len(texts)} values",
                         {'rule': rule, 'matched': len(texts)})
            else:
                self.log('warning', 'parse', "No ruleBookContent configured")

            images = collect_image_urls(texts, page_url)
            if not images and texts:
                images = extract_image_urls('\n'.join(texts), page_url)
            if not images:
                images = extract_image_urls(ctx.raw_body, page_url)
                if images:
                    self.log('info', 'field', f"Found {len(images)} images in the raw response")
            if images:
                self.log('success', 'field', f"Extracted {len(images)} images", {'first': images[0]})
            else:
                self.log('warning', 'field', "No images found")

            next_url = self.field(ctx, 'nextContentUrl', self.rule('ruleContentUrlNext'))
            if next_url:
                next_url = self.resolve(next_url, page_url)
                if next_url != page_url:
                    self._next_url = next_url
            return images
        return self._run('content', work)
