"""Tests for content post-processing."""

from content_format import (
    PARAGRAPH_INDENT, apply_replace_rules, collect_image_urls, extract_image_urls,
    format_content, origin_of, resolve_url,
)

BASE = 'https://example.com/book/1/'


class TestUrls:

    def test_resolve(self):
        assert resolve_url('2.html', BASE) == 'https://example.com/book/1/2.html'
        assert resolve_url('/b/2', BASE) == 'https://example.com/b/2'
        assert resolve_url('//cdn.example.com/a.jpg', BASE) == 'https://cdn.example.com/a.jpg'
        assert resolve_url('https://other.com/x', BASE) == 'https://other.com/x'
        assert resolve_url('', BASE) == ''

    def test_origin(self):
        assert origin_of('https://example.com/a/b?c=1') == 'https://example.com'
        assert origin_of('not a url') == ''


class TestText:

    def test_paragraphs(self):
        html = '<div id="content">第一段<br/>第二段&nbsp;&nbsp;<p>第三段</p><script>ad()</script></div>'
        assert format_content(html) == '\n'.join(PARAGRAPH_INDENT + p for p in ('第一段', '第二段', '第三段'))

    def test_entities(self):
        assert format_content('a &amp; b') == PARAGRAPH_INDENT + 'a & b'

    def test_empty(self):
        assert format_content('') == ''

    def test_replace_rules_in_order(self):
        text = '正文 广告一 内容 广告二'
        rules = '##广告\\S\n内容##正文'
        assert apply_replace_rules(text, rules) == '正文  正文 '

    def test_bad_replace_rule_is_skipped(self):
        assert apply_replace_rules('abc', '##(\nb##B') == 'aBc'


class TestImages:

    def test_img_tags(self):
        html = '<img data-original="/p/1.jpg"><img src="https://cdn.example.com/2.png">'
        assert extract_image_urls(html, BASE) == ['https://example.com/p/1.jpg', 'https://cdn.example.com/2.png']

    def test_bare_links(self):
        assert extract_image_urls('see https://cdn.example.com/a.webp?x=1 now', BASE) == [
            'https://cdn.example.com/a.webp?x=1',
        ]

    def test_collect_mixed_values(self):
        values = ['/p/1.jpg', '<img src="/p/2.jpg">', '/p/1.jpg']
        assert collect_image_urls(values, BASE) == ['https://example.com/p/1.jpg', 'https://example.com/p/2.jpg']
