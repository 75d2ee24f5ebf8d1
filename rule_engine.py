"""
Rule engine: evaluates rule strings against a fetched body.

Two entry points:
    evaluate(ctx, rule)       -> RuleResult of scalars (detail/content fields)
    evaluate_list(ctx, rule)  -> RuleResult of ElementHandles (search/toc lists)

A rule is split on its top-level operator (|| && %%), each branch goes through
directives (@put/@get), templates ({{...}}), the ## post-filter and finally one
dialect evaluator picked by rule_parser.classify_rule. Evaluation errors never
escape: they come back as RuleResult.failure(reason).
"""
import json
import logging
import re
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup, Tag
from jsonpath_ng.ext import parse as jsonpath_parse
from lxml import etree
from lxml import html as lxml_html

from content_format import resolve_url
from rule_errors import RuleSyntaxError, ScriptError
from rule_parser import (
    CssChainRule, JsonPathRule, RegexRule, ScriptRule, XPathRule,
    apply_replace, classify_rule, combine, compile_js_regex, extract_put_directives,
    has_script, split_operators, split_replace, split_script_steps, strip_reverse,
    substitute_get,
)
from script_sandbox import QuickJsSandbox, ScriptBindings, ScriptSandbox
from segment_chain import evaluate_chain

logger = logging.getLogger(__name__)

# Inner {{...}} text starting with one of these is a rule, not a script
TEMPLATE_RULE_PREFIXES = ('$.', '$[', '@json:', '@xpath:', '//', '@css:', '@@')

_TEMPLATE_RE = re.compile(r'\{\{([\s\S]*?)\}\}')
_GROUP_REF_RE = re.compile(r'\$(\d)')
_IDENTIFIER_RE = re.compile(r'^[A-Za-z_]\w*$')
_XML_DECL_RE = re.compile(r'^\s*<\?xml[^>]*\?>')

_NOT_JSON = object()

LogSink = Callable[[str, str, str, Optional[Dict[str, Any]]], None]


def to_text(value: Any) -> str:
    """Render a rule value the way it would appear in a field."""
    if value is None:
        return ''
    if isinstance(value, ElementHandle):
        return value.text()
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


class VariableStore:
    """Per-session key/value map shared by rules, scripts and stages."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def put(self, key: str, value: Any) -> Any:
        self._values[key] = value
        return value

    def update(self, values: Dict[str, Any]) -> None:
        self._values.update(values)

    def clear(self) -> None:
        self._values.clear()

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"VariableStore({self._values!r})"


class Document:
    """One fetched body with lazily built HTML, XPath and JSON views."""

    def __init__(self, body: str, url: str = ''):
        self.body = body or ''
        self.url = url
        self._soup: Optional[BeautifulSoup] = None
        self._tree = None
        self._tree_built = False
        self._json: Any = None
        self._json_parsed = False

    @property
    def soup(self) -> BeautifulSoup:
        if self._soup is None:
            self._soup = BeautifulSoup(self.body, 'html.parser')
        return self._soup

    @property
    def tree(self):
        if not self._tree_built:
            self._tree = parse_lxml(self.body)
            self._tree_built = True
        return self._tree

    @property
    def json_value(self) -> Any:
        if not self._json_parsed:
            self._json = parse_json(self.body)
            self._json_parsed = True
        return self._json

    @property
    def is_json(self) -> bool:
        return self.json_value is not _NOT_JSON


def parse_json(text: str) -> Any:
    stripped = (text or '').strip()
    if not stripped.startswith(('{', '[')):
        return _NOT_JSON
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return _NOT_JSON


def parse_lxml(markup: str):
    markup = _XML_DECL_RE.sub('', markup or '')
    if not markup.strip():
        return None
    try:
        return lxml_html.fromstring(markup)
    except (etree.ParserError, ValueError) as e:
        logger.debug(f"[XPath] Could not parse document: {e}")
        return None


class ElementHandle:
    """Opaque reference to one node or value of the document that produced it."""

    HTML = 'html'    # BeautifulSoup Tag
    XML = 'xml'      # lxml element
    VALUE = 'value'  # JSON value or plain string
    MATCH = 'match'  # regex match: [group0, group1, ...]

    __slots__ = ('document', 'kind', 'node')

    def __init__(self, document: Document, kind: str, node: Any):
        self.document = document
        self.kind = kind
        self.node = node

    def markup(self) -> str:
        if self.kind == self.HTML:
            return str(self.node)
        if self.kind == self.XML:
            return lxml_html.tostring(self.node, encoding='unicode')
        if self.kind == self.MATCH:
            return self.node[0] or ''
        return to_text(self.node)

    def text(self) -> str:
        if self.kind == self.HTML:
            return self.node.get_text().strip()
        if self.kind == self.XML:
            return ''.join(self.node.itertext()).strip()
        return self.markup()

    def __repr__(self) -> str:
        return f"ElementHandle({self.kind}, {self.markup()[:60]!r})"


@dataclass
class ExtractionContext:
    document: Document
    variables: VariableStore
    base_url: str = ''
    element: Optional[ElementHandle] = None
    book: Optional[Dict[str, Any]] = None
    chapter: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_body(cls, body: str, base_url: str = '', variables: Optional[VariableStore] = None,
                 **kwargs) -> 'ExtractionContext':
        return cls(Document(body, base_url), variables if variables is not None else VariableStore(),
                   base_url, **kwargs)

    @property
    def raw_body(self) -> str:
        return self.document.body

    def with_element(self, element: Optional['ElementHandle']) -> 'ExtractionContext':
        return replace(self, element=element)

    def with_value(self, value: Any) -> 'ExtractionContext':
        if isinstance(value, ElementHandle):
            return self.with_element(value)
        return self.with_element(ElementHandle(self.document, ElementHandle.VALUE, value))


@dataclass(frozen=True)
class RuleResult:
    success: bool
    values: Tuple[Any, ...] = ()
    error: Optional[str] = None

    @classmethod
    def ok(cls, values) -> 'RuleResult':
        return cls(True, tuple(values))

    @classmethod
    def failure(cls, reason: str) -> 'RuleResult':
        return cls(False, (), reason)

    @property
    def count(self) -> int:
        return len(self.values)

    @property
    def empty(self) -> bool:
        return not self.values

    @property
    def first(self) -> Any:
        return self.values[0] if self.values else None

    def texts(self) -> List[str]:
        return [to_text(v) for v in self.values]

    def text(self, sep: str = '\n') -> str:
        return sep.join(t for t in self.texts() if t)


@lru_cache(maxsize=256)
def _compile_json_path(path: str):
    try:
        return jsonpath_parse(path)
    except Exception as e:
        raise RuleSyntaxError(f"Invalid JSONPath {path!r}: {e}") from e


class RuleEngine:
    """Evaluates rules; owns the script sandbox but not the variable store."""

    def __init__(self, sandbox: Optional[ScriptSandbox] = None, js_lib: str = '',
                 on_log: Optional[LogSink] = None):
        self.sandbox = sandbox or QuickJsSandbox()
        self.js_lib = js_lib or ''
        self.on_log = on_log
        self._dialects = {
            CssChainRule: self._eval_css,
            XPathRule: self._eval_xpath,
            JsonPathRule: self._eval_json,
            RegexRule: self._eval_regex,
            ScriptRule: lambda ctx, parsed, as_list: self._script_rule(ctx, parsed.source, as_list),
        }

    # -- public API ---------------------------------------------------------

    def evaluate(self, ctx: ExtractionContext, rule: Optional[str]) -> RuleResult:
        return self._evaluate(ctx, rule, as_list=False)

    def evaluate_list(self, ctx: ExtractionContext, rule: Optional[str]) -> RuleResult:
        return self._evaluate(ctx, rule, as_list=True)

    def evaluate_element(self, ctx: ExtractionContext, element: ElementHandle, rule: Optional[str]) -> RuleResult:
        return self.evaluate(ctx.with_element(element), rule)

    def run_script(self, ctx: ExtractionContext, code: str, result: Any = None, strict: bool = False) -> Any:
        """Run one script with the context's bindings.

        Failures are logged and yield None, or raise ScriptError when strict.
        """
        bindings = ScriptBindings(
            store=ctx.variables,
            result=result,
            src=ctx.document.body,
            base_url=ctx.base_url,
            book=ctx.book,
            chapter=ctx.chapter,
            extra=dict(ctx.extra),
            js_lib=self.js_lib,
        )
        outcome = self.sandbox.run(code, bindings)
        if not outcome.ok:
            self._emit('warning', 'script', f"Script failed: {outcome.error}", {'script': code.strip()[:200]})
            if strict:
                raise ScriptError(outcome.error or 'script failed')
        return outcome.value

    # -- internals ------------------------------------------------------------

    def _emit(self, level: str, category: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        if self.on_log:
            self.on_log(level, category, message, details)
        else:
            logger.debug(f"[Rule] {message}")

    def _evaluate(self, ctx: ExtractionContext, rule: Optional[str], as_list: bool) -> RuleResult:
        if ctx.element is not None and ctx.element.document is not ctx.document:
            return RuleResult.failure("Element handle belongs to a different document")
        rule = (rule or '').strip()
        if not rule:
            return RuleResult.ok([])
        try:
            body, reverse = strip_reverse(rule)
            op, branches = split_operators(body)
            values = combine(op, [self._branch(ctx, branch, as_list) for branch in branches])
            if reverse:
                values.reverse()
            return RuleResult.ok(values)
        except RuleSyntaxError as e:
            logger.debug(f"[Rule] {e} (rule: {rule[:100]})")
            return RuleResult.failure(str(e))

    def _branch(self, ctx: ExtractionContext, rule: str, as_list: bool) -> list:
        if has_script(rule):
            return self._script_rule(ctx, rule, as_list)
        lines = [line.strip() for line in rule.splitlines() if line.strip()]
        if len(lines) > 1:
            return self._line_chain(ctx, lines, as_list)
        return self._single(ctx, rule.strip(), as_list)

    def _single(self, ctx: ExtractionContext, rule: str, as_list: bool) -> list:
        rule = self._apply_directives(ctx, rule)
        body, post_filter = split_replace(rule)
        body = body.strip()

        element = ctx.element
        if not body:
            values = [self._content_text(ctx)] if post_filter else []
        elif element is not None and element.kind == ElementHandle.MATCH and _GROUP_REF_RE.search(body):
            values = [self._expand_groups(body, element.node)]
        elif '{{' in body:
            values = [self.interpolate(ctx, body)]
        else:
            parsed = classify_rule(body, json_content=self._is_json(ctx))
            values = self._dialects[type(parsed)](ctx, parsed, as_list)

        if post_filter is not None:
            values = self._filter_values(ctx, values, post_filter)
        return values

    def _filter_values(self, ctx: ExtractionContext, values: list, post_filter) -> list:
        """Apply a ## filter to every string result; node handles and JSON containers pass through."""
        filtered = []
        for value in values:
            handle = isinstance(value, ElementHandle)
            if handle and (value.kind in (ElementHandle.HTML, ElementHandle.XML)
                           or (value.kind == ElementHandle.VALUE and isinstance(value.node, (dict, list)))):
                filtered.append(value)
                continue
            text = apply_replace(to_text(value), post_filter)
            if not text:
                continue
            filtered.append(ElementHandle(ctx.document, ElementHandle.VALUE, text) if handle else text)
        return filtered

    def _line_chain(self, ctx: ExtractionContext, lines: List[str], as_list: bool) -> list:
        values = self._single(ctx, lines[0], True)
        for i, line in enumerate(lines[1:], start=2):
            last = i == len(lines)
            if line.startswith('##'):
                _, post_filter = split_replace(line)
                if last and not as_list:
                    values = [t for t in (apply_replace(to_text(v), post_filter) for v in values) if t]
                else:
                    values = self._filter_values(ctx, values, post_filter)
                continue
            chained = []
            for value in values:
                chained.extend(self._branch(ctx.with_value(value), line, as_list or not last))
            values = chained
        return values

    def _apply_directives(self, ctx: ExtractionContext, rule: str) -> str:
        rule, puts = extract_put_directives(rule)
        for key, sub_rule in puts.items():
            result = self.evaluate(ctx, sub_rule)
            value = to_text(result.first) if result.success else ''
            ctx.variables.put(key, value)
            self._emit('info', 'parse', f"@put {key} = {value[:80]!r}", {'rule': sub_rule})
        if '@get:' in rule.lower():
            rule = substitute_get(rule, lambda key: to_text(ctx.variables.get(key)))
        return rule

    def interpolate(self, ctx: ExtractionContext, template: str) -> str:
        """Fill every {{...}} in `template` from rules, variables or script expressions."""
        def repl(m):
            inner = m.group(1).strip()
            if inner.startswith(TEMPLATE_RULE_PREFIXES):
                return to_text(self.evaluate(ctx, inner).first)
            if _IDENTIFIER_RE.match(inner):
                if inner in ctx.extra:
                    return to_text(ctx.extra[inner])
                if inner in ctx.variables:
                    return to_text(ctx.variables.get(inner))
            return to_text(self.run_script(ctx, inner, self._script_input(ctx)))

        return _TEMPLATE_RE.sub(repl, template)

    @staticmethod
    def _expand_groups(template: str, groups: List[Optional[str]]) -> str:
        def repl(m):
            idx = int(m.group(1))
            return (groups[idx] or '') if idx < len(groups) else m.group(0)
        return _GROUP_REF_RE.sub(repl, template)

    def _is_json(self, ctx: ExtractionContext) -> bool:
        element = ctx.element
        if element is None:
            return ctx.document.is_json
        return element.kind == ElementHandle.VALUE and isinstance(element.node, (dict, list))

    def _content_text(self, ctx: ExtractionContext) -> str:
        return ctx.element.markup() if ctx.element is not None else ctx.document.body

    def _script_input(self, ctx: ExtractionContext) -> Any:
        element = ctx.element
        if element is None:
            return ctx.document.body
        if element.kind == ElementHandle.VALUE:
            return element.node
        return element.markup()

    def _wrap(self, ctx: ExtractionContext, values: list) -> List[ElementHandle]:
        return [v if isinstance(v, ElementHandle) else ElementHandle(ctx.document, ElementHandle.VALUE, v)
                for v in values]

    # -- dialects -------------------------------------------------------------

    def _soup_start(self, ctx: ExtractionContext) -> Tuple[List[Tag], bool]:
        element = ctx.element
        if element is None:
            return [ctx.document.soup], False
        if element.kind == ElementHandle.HTML:
            return [element.node], True
        fragment = BeautifulSoup(element.markup(), 'html.parser')
        if element.kind == ElementHandle.XML:
            top = fragment.find(True)
            return ([top], True) if top is not None else ([fragment], False)
        return [fragment], False

    def _eval_css(self, ctx: ExtractionContext, parsed: CssChainRule, as_list: bool) -> list:
        start, from_element = self._soup_start(ctx)
        found = evaluate_chain(start, parsed.chain, ctx.base_url, scalar=not as_list, from_element=from_element)
        if not as_list:
            return found
        return [ElementHandle(ctx.document, ElementHandle.HTML, v) if isinstance(v, Tag)
                else ElementHandle(ctx.document, ElementHandle.VALUE, v) for v in found]

    def _eval_xpath(self, ctx: ExtractionContext, parsed: XPathRule, as_list: bool) -> list:
        root = ctx.document.tree if ctx.element is None else parse_lxml(ctx.element.markup())
        if root is None:
            return []
        try:
            found = root.xpath(parsed.expression)
        except etree.XPathError as e:
            raise RuleSyntaxError(f"Invalid XPath {parsed.expression!r}: {e}") from e
        if not isinstance(found, list):
            found = [found]

        values = []
        for item in found:
            if isinstance(item, etree._Element):
                if as_list:
                    values.append(ElementHandle(ctx.document, ElementHandle.XML, item))
                else:
                    text = ''.join(item.itertext()).strip()
                    if text:
                        values.append(text)
                continue
            text = to_text(item).strip()
            if getattr(item, 'attrname', None) in ('href', 'src'):
                text = resolve_url(text, ctx.base_url)
            if text:
                values.append(text)
        return self._wrap(ctx, values) if as_list else values

    def _eval_json(self, ctx: ExtractionContext, parsed: JsonPathRule, as_list: bool) -> list:
        element = ctx.element
        if element is None:
            data = ctx.document.json_value
            if data is _NOT_JSON:
                data = ctx.document.body
        elif element.kind == ElementHandle.VALUE and not isinstance(element.node, str):
            data = element.node
        else:
            data = parse_json(element.markup())
            if data is _NOT_JSON:
                data = element.markup()

        expression = _compile_json_path(parsed.path)
        try:
            matches = [m.value for m in expression.find(data)]
        except Exception as e:
            raise RuleSyntaxError(f"JSONPath {parsed.path!r} failed: {e}") from e
        if len(matches) == 1 and isinstance(matches[0], list):
            matches = matches[0]
        matches = [m for m in matches if m is not None and m != '']
        return self._wrap(ctx, matches) if as_list else matches

    def _eval_regex(self, ctx: ExtractionContext, parsed: RegexRule, as_list: bool) -> list:
        regex = compile_js_regex(parsed.pattern)
        text = self._content_text(ctx)
        if as_list:
            return [ElementHandle(ctx.document, ElementHandle.MATCH, [m.group(0)] + list(m.groups()))
                    for m in regex.finditer(text)]
        values = []
        for m in regex.finditer(text):
            value = (m.group(1) or '') if regex.groups else m.group(0)
            if value:
                values.append(value)
        return values

    def _script_rule(self, ctx: ExtractionContext, rule: str, as_list: bool) -> list:
        steps = split_script_steps(rule)
        current = ctx
        result: Any = None
        started = False
        for i, (kind, text) in enumerate(steps):
            last = i == len(steps) - 1
            if kind == 'js':
                result = self.run_script(current, text, result if started else self._script_input(current))
                started = True
                if result is None:
                    return []
                current = ctx.with_value(result)
                continue
            if started:
                text = text.replace('@result', to_text(result))
            values = self._branch(current, text, as_list and last)
            started = True
            if not values:
                return []
            result = values[0] if len(values) == 1 else values
            if not last:
                current = ctx.with_value(result)

        if result is None:
            return []
        values = result if isinstance(result, list) else [result]
        return self._wrap(ctx, values) if as_list else values
