"""Tests for the rule-debug command line."""

import json
from unittest.mock import patch

import pytest

from rule_debug import build_parser, load_source, main

SOURCE = {
    'bookSourceName': 'Example',
    'bookSourceUrl': 'https://example.com',
    'searchUrl': '/search?q={{key}}',
    'ruleSearch': {'bookList': 'class.item', 'name': 'tag.a@text', 'bookUrl': 'tag.a@href'},
}

SEARCH_PAGE = '<div class="item"><a href="/book/1/">T1</a></div>'


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / 'sources.json'
    path.write_text(json.dumps([SOURCE, dict(SOURCE, bookSourceName='Second')]), encoding='utf-8')
    return str(path)


class TestLoadSource:

    def test_list_index(self, source_file):
        assert load_source(source_file)['bookSourceName'] == 'Example'
        assert load_source(source_file, 1)['bookSourceName'] == 'Second'

    def test_index_out_of_range(self, source_file):
        with pytest.raises(ValueError):
            load_source(source_file, 5)

    def test_single_object(self, tmp_path):
        path = tmp_path / 'one.json'
        path.write_text(json.dumps(SOURCE), encoding='utf-8')
        assert load_source(str(path))['bookSourceUrl'] == 'https://example.com'


class TestParser:

    def test_stage_arguments(self):
        args = build_parser().parse_args(['s.json', '--index', '1', 'content', 'https://x.com/1', '--webview'])
        assert args.index == 1
        assert args.stage == 'content'
        assert args.webview

    def test_explore_url_is_optional(self):
        assert build_parser().parse_args(['s.json', 'explore']).url == ''


class TestMain:

    def test_search_prints_payload(self, source_file, pages, capsys):
        pages.routes['https://example.com/search?q=abc'] = SEARCH_PAGE
        with patch('source_debugger.fetch', pages):
            code = main([source_file, 'search', 'abc'])
        out = capsys.readouterr().out
        assert code == 0
        assert '=== search [OK] ===' in out
        assert '"name": "T1"' in out

    def test_failed_stage_exit_code(self, source_file, pages, capsys):
        with patch('source_debugger.fetch', pages):
            code = main([source_file, 'search', 'abc'])
        assert code == 1
        assert '[FAILED]' in capsys.readouterr().out

    def test_missing_file(self, tmp_path):
        assert main([str(tmp_path / 'missing.json'), 'search', 'abc']) == 2
