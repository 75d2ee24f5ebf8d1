"""Stage tests for manga sources."""

from unittest.mock import patch

import pytest

from manga_source import MangaSourceDebugger, preprocess

ORIGIN = 'https://manga.example.com'

SOURCE = {
    'bookSourceName': 'Manga Example',
    'bookSourceUrl': ORIGIN,
    'httpUserAgent': 'manga-agent',
    'ruleSearchUrl': '/search?kw=searchKey&page=searchPage',
    'ruleSearchList': 'class.comic',
    'ruleSearchName': 'tag.h3@text',
    'ruleSearchAuthor': 'class.author@text',
    'ruleSearchCoverUrl': 'tag.img@src',
    'ruleSearchNoteUrl': 'tag.a@href\nclass.backup@href',
    'ruleBookName': 'h1@text',
    'ruleIntroduce': 'class.desc@text',
    'ruleChapterUrl': '$.api@Header:{Referer:host;X-Requested-With:XMLHttpRequest}',
    'ruleChapterList': '$.chapters[*]',
    'ruleChapterName': 'title',
    'ruleContentUrl': 'url',
    'ruleBookContent': 'class.page@tag.img@data-src',
    'ruleContentUrlNext': 'class.next@href',
    'ruleFindUrl': '热门::/hot/searchPage\n最新::/new/searchPage',
}

SEARCH_PAGE = """
<div class="comic"><a href="/comic/1"><h3>海贼王</h3></a><span class="author">尾田</span><img src="/c/1.jpg"></div>
<div class="comic"><a href="/comic/2"><h3>火影</h3></a><span class="author">岸本</span></div>
"""

TOC_JSON = '{"chapters": [{"title": "第1话", "url": "/read/1"}, {"title": "第2话", "url": "/read/2"}]}'

CONTENT_PAGE = """
<div class="page"><img data-src="//img.example.com/1.webp"><img data-src="/i/2.webp"></div>
<a class="next" href="/read/1?p=2">下一页</a>
"""


@pytest.fixture
def debugger(settings):
    return MangaSourceDebugger(dict(SOURCE), settings=settings)


class TestPreprocess:

    def test_header_suffix_and_first_line(self):
        assert preprocess('tag.a@href\nclass.backup@href') == ('tag.a@href', {})
        rule, headers = preprocess('$.api@Header:{Referer:host}')
        assert rule == '$.api'
        assert headers == {'Referer': 'host'}

    def test_scripts_keep_every_line(self):
        script = '@js:\nvar a = 1;\na'
        assert preprocess(script) == (script, {})


class TestSearch:

    def test_keyword_is_not_encoded(self, debugger):
        assert debugger.build_search_url('海贼王', 2) == f'{ORIGIN}/search?kw=海贼王&page=2'

    def test_search(self, debugger, pages):
        url = f'{ORIGIN}/search?kw=海贼王&page=1'
        pages.routes[url] = SEARCH_PAGE
        with patch('source_debugger.fetch', pages):
            result = debugger.search('海贼王')
        assert result.success
        assert [book['name'] for book in result.payload] == ['海贼王', '火影']
        assert result.payload[0]['bookUrl'] == f'{ORIGIN}/comic/1'
        assert result.payload[0]['coverUrl'] == f'{ORIGIN}/c/1.jpg'
        assert pages.calls[0]['headers']['User-Agent'] == 'manga-agent'

    def test_empty_search_url(self, settings):
        source = dict(SOURCE, ruleSearchUrl='')
        result = MangaSourceDebugger(source, settings=settings).search('x')
        assert not result.success
        assert result.error


class TestDetail:

    def test_detail_defaults_toc_url(self, debugger, pages):
        url = f'{ORIGIN}/comic/1'
        pages.routes[url] = '<h1>海贼王</h1><p class="desc">伟大航路</p>'
        with patch('source_debugger.fetch', pages):
            result = debugger.detail(url)
        assert result.payload == {'name': '海贼王', 'intro': '伟大航路', 'tocUrl': url}


class TestToc:

    def test_secondary_fetch_with_header_override(self, debugger, pages):
        toc_url = f'{ORIGIN}/comic/1'
        api_url = f'{ORIGIN}/api/chapters/1'
        pages.routes[toc_url] = '{"api": "/api/chapters/1"}'
        pages.routes[api_url] = TOC_JSON
        with patch('source_debugger.fetch', pages):
            result = debugger.toc(toc_url)
        assert result.success
        assert [c['name'] for c in result.payload] == ['第1话', '第2话']
        assert result.payload[1]['url'] == f'{ORIGIN}/read/2'
        api_call = pages.calls[1]
        assert api_call['url'] == api_url
        assert api_call['headers']['Referer'] == ORIGIN
        assert api_call['headers']['X-Requested-With'] == 'XMLHttpRequest'

    def test_failed_secondary_fetch_keeps_primary_body(self, debugger, pages):
        toc_url = f'{ORIGIN}/comic/2'
        pages.routes[toc_url] = ('{"api": "/api/gone", "chapters": [{"title": "本页", "url": "/read/9"}]}')
        with patch('source_debugger.fetch', pages):
            result = debugger.toc(toc_url)
        assert result.success
        assert [c['name'] for c in result.payload] == ['本页']
        assert any(e.level == 'warning' and e.category == 'request' for e in result.logs)


class TestContent:

    def test_always_images(self, debugger, pages):
        url = f'{ORIGIN}/read/1'
        pages.routes[url] = CONTENT_PAGE
        with patch('source_debugger.fetch', pages):
            result = debugger.content(url)
        assert result.payload == ['https://img.example.com/1.webp', f'{ORIGIN}/i/2.webp']
        assert result.next_url == f'{ORIGIN}/read/1?p=2'


class TestExplore:

    def test_entries(self, debugger):
        assert debugger.explore_entries() == [('热门', '/hot/searchPage'), ('最新', '/new/searchPage')]

    def test_explore_first_entry(self, debugger, pages):
        pages.routes[f'{ORIGIN}/hot/1'] = SEARCH_PAGE
        with patch('source_debugger.fetch', pages):
            result = debugger.explore()
        assert [book['name'] for book in result.payload] == ['海贼王', '火影']
