"""Dialect detection and the shared stage plumbing."""

from unittest.mock import patch

import pytest

from book_source import BookSourceDebugger
from manga_source import MangaSourceDebugger
from source_debugger import (
    BOOK_DIALECT, MANGA_DIALECT, DebugResult, SourceDebugger, create_debugger, detect_dialect,
    split_explore_entries,
)


BOOK = {
    'bookSourceUrl': 'https://example.com',
    'searchUrl': '/s?q={{key}}',
    'ruleSearch': {'bookList': 'class.item', 'name': 'tag.a@text'},
    'ruleToc': {'chapterList': 'tag.li'},
}

MANGA = {
    'bookSourceUrl': 'https://manga.example.com',
    'ruleSearchUrl': '/s?kw=searchKey',
    'ruleSearchList': 'class.comic',
    'ruleSearchName': 'tag.h3@text',
    'ruleBookContent': 'tag.img@src',
}


class TestDetect:

    def test_book_shape(self):
        assert detect_dialect(BOOK) == BOOK_DIALECT

    def test_manga_shape(self):
        assert detect_dialect(MANGA) == MANGA_DIALECT

    def test_empty_values_do_not_count(self):
        source = dict(MANGA, ruleSearchUrl='', ruleSearchList='', ruleSearchName='', ruleBookContent='')
        assert detect_dialect(source) == BOOK_DIALECT

    def test_tie_goes_to_book(self):
        assert detect_dialect({'searchUrl': '/s', 'ruleSearchUrl': '/s'}) == BOOK_DIALECT
        assert detect_dialect({}) == BOOK_DIALECT

    def test_create_debugger(self, settings):
        assert isinstance(create_debugger(BOOK, settings=settings), BookSourceDebugger)
        assert isinstance(create_debugger(MANGA, settings=settings), MangaSourceDebugger)

    def test_base_class_needs_every_stage(self, settings):
        with pytest.raises(TypeError):
            SourceDebugger(BOOK, settings=settings)

        class SearchOnly(SourceDebugger):
            def search(self, keyword, page=1):
                return None

        with pytest.raises(TypeError):
            SearchOnly(BOOK, settings=settings)


class TestExploreEntries:

    def test_newlines_and_ampersands(self):
        text = '玄幻::/a\n\n都市::/b&&/c'
        assert split_explore_entries(text) == [('玄幻', '/a'), ('都市', '/b'), ('', '/c')]

    def test_empty(self):
        assert split_explore_entries('') == []
        assert split_explore_entries(None) == []


class TestStageResults:

    def test_results_are_detached_from_later_stages(self, settings, pages):
        pages.routes['https://example.com/s?q=x'] = '<div class="item"><a href="/b/1">B1</a></div>'
        debugger = create_debugger(BOOK, settings=settings)
        with patch('source_debugger.fetch', pages):
            first = debugger.search('x')
            first.payload[0]['name'] = 'changed'
            second = debugger.search('x')
        assert second.payload[0]['name'] == 'B1'
        assert first.logs is not second.logs

    def test_to_dict(self, settings, pages):
        debugger = create_debugger(BOOK, settings=settings)
        with patch('source_debugger.fetch', pages):
            result = debugger.search('x')
        assert isinstance(result, DebugResult)
        data = result.to_dict()
        assert data['success'] is False
        assert data['stage'] == 'search'
        assert data['fetch']['url'] == 'https://example.com/s?q=x'
        assert all({'time', 'level', 'category', 'message'} <= set(entry) for entry in data['logs'])

    def test_variables_persist_until_reset(self, settings):
        debugger = create_debugger(BOOK, settings=settings)
        debugger.variables.put('token', 'abc')
        assert debugger.variables.get('token') == 'abc'
        debugger.reset()
        assert debugger.variables.get('token') is None

    def test_unexpected_errors_become_failed_results(self, settings):
        debugger = create_debugger(BOOK, settings=settings)

        def boom():
            raise RuntimeError('boom')

        result = debugger._run('detail', boom)
        assert not result.success
        assert result.error == 'boom'
        assert result.logs[-1].level == 'error'
