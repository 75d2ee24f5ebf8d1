"""Tests for rule evaluation across dialects and operators."""

import json

from rule_engine import ElementHandle, ExtractionContext, RuleEngine, VariableStore
from script_sandbox import ScriptOutcome

LIST_PAGE = """
<html><body>
  <div class="a">A1</div><div class="a">A2</div>
  <div class="b">B1</div>
  <ul id="books">
    <li><span class="title">T1</span><a href="/b/1">go</a></li>
    <li><span class="title">T2</span><a href="/b/2">go</a></li>
    <li><span class="title">T3</span><a href="/b/3">go</a></li>
  </ul>
</body></html>
"""

JSON_BODY = json.dumps({"data": {"list": [{"title": "A", "id": 1}, {"title": "B", "id": 2}]}})


class TestCssDialect:

    def test_class_returns_one_handle_with_text(self, engine, make_ctx):
        ctx = make_ctx('<div class="NAME">X</div>')
        result = engine.evaluate_list(ctx, "class.NAME")
        assert result.success
        assert result.count == 1
        assert isinstance(result.first, ElementHandle)
        assert result.first.text() == "X"

    def test_nested_evaluation_on_handle(self, engine, make_ctx):
        ctx = make_ctx(LIST_PAGE)
        items = engine.evaluate_list(ctx, "id.books@tag.li")
        titles = [engine.evaluate_element(ctx, item, "class.title@text").first for item in items.values]
        links = [engine.evaluate_element(ctx, item, "tag.a@href").first for item in items.values]
        assert titles == ["T1", "T2", "T3"]
        assert links == ["https://example.com/b/1", "https://example.com/b/2", "https://example.com/b/3"]

    def test_reverse_prefix(self, engine, make_ctx):
        result = engine.evaluate(make_ctx(LIST_PAGE), "-class.title@text")
        assert result.values == ("T3", "T2", "T1")

    def test_handle_from_other_document_fails(self, engine, make_ctx):
        first = make_ctx(LIST_PAGE)
        handle = engine.evaluate_list(first, "class.a").first
        other = make_ctx("<p>other</p>")
        result = engine.evaluate(other.with_element(handle), "text")
        assert not result.success

    def test_bad_selector_is_a_failure_not_an_exception(self, engine, make_ctx):
        result = engine.evaluate(make_ctx(LIST_PAGE), "div[[@text")
        assert not result.success
        assert result.error


class TestOperators:

    def test_or_prefers_first_non_empty(self, engine, make_ctx):
        ctx = make_ctx(LIST_PAGE)
        assert engine.evaluate(ctx, "class.missing@text||class.b@text").values == ("B1",)
        assert engine.evaluate(ctx, "class.b@text||class.a@text").values == ("B1",)
        assert engine.evaluate(ctx, "class.x@text||class.y@text").values == ()

    def test_and_length_is_sum(self, engine, make_ctx):
        ctx = make_ctx(LIST_PAGE)
        a = engine.evaluate_list(ctx, "class.a").count
        b = engine.evaluate_list(ctx, "class.b").count
        both = engine.evaluate_list(ctx, "class.a&&class.b")
        assert both.count == a + b == 3
        assert [h.text() for h in both.values] == ["A1", "A2", "B1"]

    def test_mod_interleaves(self, engine, make_ctx):
        result = engine.evaluate(make_ctx(LIST_PAGE), "class.a@text%%class.b@text")
        assert result.values == ("A1", "B1", "A2")


class TestJsonDialect:

    def test_wildcard_path(self, engine, make_ctx):
        result = engine.evaluate(make_ctx(JSON_BODY), "$.data.list[*].title")
        assert list(result.values) == ["A", "B"]

    def test_list_then_bare_fields(self, engine, make_ctx):
        ctx = make_ctx(JSON_BODY)
        items = engine.evaluate_list(ctx, "$.data.list")
        assert items.count == 2
        assert engine.evaluate_element(ctx, items.values[1], "title").first == "B"
        assert engine.evaluate_element(ctx, items.values[1], "id").texts() == ["2"]

    def test_json_prefix(self, engine, make_ctx):
        assert engine.evaluate(make_ctx(JSON_BODY), "@json:data.list[0].title").first == "A"


class TestXPathAndRegex:

    def test_xpath_text(self, engine, make_ctx):
        result = engine.evaluate(make_ctx(LIST_PAGE), "//span[@class='title']/text()")
        assert list(result.values) == ["T1", "T2", "T3"]

    def test_xpath_href_resolved(self, engine, make_ctx):
        result = engine.evaluate(make_ctx(LIST_PAGE), "@xpath://ul/li[1]/a/@href")
        assert result.first == "https://example.com/b/1"

    def test_regex_all_in_one_groups(self, engine, make_ctx):
        ctx = make_ctx(LIST_PAGE)
        items = engine.evaluate_list(ctx, r':<span class="title">(T\d)</span><a href="([^"]+)"')
        assert items.count == 3
        assert engine.evaluate_element(ctx, items.values[0], "$1").first == "T1"
        assert engine.evaluate_element(ctx, items.values[2], "/book$2").first == "/book/b/3"

    def test_scalar_regex_takes_first_group(self, engine, make_ctx):
        result = engine.evaluate(make_ctx("id=12;id=34"), r":id=(\d+)")
        assert list(result.values) == ["12", "34"]


class TestPostFilter:

    def test_strip_prefix(self, engine, make_ctx):
        assert engine.evaluate(make_ctx("foobar"), "##^foo##").first == "bar"

    def test_filter_after_selector(self, engine, make_ctx):
        assert engine.evaluate(make_ctx(LIST_PAGE), "class.b@text##B").first == "1"

    def test_empty_after_filter_is_dropped(self, engine, make_ctx):
        assert engine.evaluate(make_ctx(LIST_PAGE), "class.b@text##B1").empty

    def test_list_mode_filters_json_values(self, engine, make_ctx):
        ctx = make_ctx(json.dumps({"list": [{"n": "ch-1"}, {"n": "ch-2"}, {"n": "ch-"}]}))
        result = engine.evaluate_list(ctx, "$.list[*].n##ch-")
        assert result.texts() == ["1", "2"]
        assert all(isinstance(v, ElementHandle) for v in result.values)

    def test_list_mode_filters_accessor_values(self, engine, make_ctx):
        ctx = make_ctx('<a href="/a?x=1">go</a>', url="https://ex.com/page")
        assert engine.evaluate_list(ctx, "tag.a@href##\\?.*").texts() == ["https://ex.com/a"]
        assert engine.evaluate(ctx, "tag.a@href##\\?.*").first == "https://ex.com/a"

    def test_list_mode_keeps_element_nodes(self, engine, make_ctx):
        result = engine.evaluate_list(make_ctx(LIST_PAGE), "class.a##A")
        assert [v.kind for v in result.values] == [ElementHandle.HTML, ElementHandle.HTML]


class TestVariables:

    def test_script_put_then_later_rule_reads(self, make_ctx):
        store = VariableStore()
        engine = RuleEngine()
        first = make_ctx("<p>ignored</p>", variables=store)
        engine.evaluate(first, "@js:java.put('id', '7')")
        assert store.get("id") == "7"

        later = make_ctx("item-6 item-7 item-8", variables=store)
        assert engine.evaluate(later, ":item-(@get:{id})").first == "7"
        assert engine.evaluate(later, "https://example.com/book/{{id}}").first == "https://example.com/book/7"

    def test_put_directive(self, engine, make_ctx):
        ctx = make_ctx(LIST_PAGE)
        result = engine.evaluate(ctx, "class.b@text@put:{first:class.a@text}")
        assert result.first == "B1"
        assert ctx.variables.get("first") == "A1"

    def test_fresh_store_per_context(self, engine, make_ctx):
        a = make_ctx(LIST_PAGE)
        b = make_ctx(LIST_PAGE)
        engine.evaluate(a, "class.b@text@put:{k:class.a@text}")
        assert "k" in a.variables
        assert "k" not in b.variables


class TestScripts:

    def test_rule_then_script(self, engine, make_ctx):
        result = engine.evaluate(make_ctx(LIST_PAGE), "class.b@text@js:result + '!'")
        assert result.first == "B1!"

    def test_script_then_rule(self, engine, make_ctx):
        result = engine.evaluate(make_ctx(JSON_BODY), "<js>JSON.parse(result).data.list</js>$[1].title")
        assert result.first == "B"

    def test_failed_script_yields_empty_and_logs(self, make_ctx):
        logs = []
        engine = RuleEngine(on_log=lambda *entry: logs.append(entry))
        result = engine.evaluate(make_ctx("x"), "@js:throw new Error('boom')")
        assert result.success
        assert result.empty
        assert logs and logs[0][1] == "script"

    def test_sandbox_is_pluggable(self, make_ctx):
        class Fixed:
            def run(self, source, bindings):
                return ScriptOutcome("fixed:" + source.strip())

        engine = RuleEngine(sandbox=Fixed())
        assert engine.evaluate(make_ctx("x"), "@js:anything").first == "fixed:anything"

    def test_template_expression(self, engine, make_ctx):
        ctx = make_ctx(JSON_BODY, extra={"page": 2})
        assert engine.interpolate(ctx, "/list?p={{page + 1}}&t={{$.data.list[0].title}}") == "/list?p=3&t=A"


class TestMultiLine:

    def test_line_chain(self, engine, make_ctx):
        rule = "id.books@tag.li.1\nclass.title@text\n##T##Title-"
        assert engine.evaluate(make_ctx(LIST_PAGE), rule).first == "Title-2"


def test_context_raw_body(make_ctx):
    ctx = make_ctx("<p>x</p>")
    assert isinstance(ctx, ExtractionContext)
    assert ctx.raw_body == "<p>x</p>"
