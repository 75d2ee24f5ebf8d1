"""
Pure parsing helpers for the rule language.

Nothing in here touches a document or the network: these functions take a rule
string apart (operators, reverse prefix, regex post-filter, index expressions,
directives, header suffixes) and classify what is left into one dialect.
"""
import json
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from rule_errors import RuleSyntaxError

OPERATORS = ('||', '&&', '%%')

# Segment prefixes that must never be read as a JSON member path
RESERVED_SEGMENT_PREFIXES = ('class.', 'id.', 'tag.', 'text.', 'children')

_SCRIPT_MARKER_RE = re.compile(r'<js>|@js:', re.I)
_BARE_PATH_RE = re.compile(r'^[A-Za-z_][\w-]*(?:\.[A-Za-z_][\w-]*|\[(?:-?\d+|\*)\])*$')
_INDEX_PART_RE = re.compile(r'^\s*-?\d*\s*(?::\s*-?\d*\s*){0,2}$')
_JS_NAMED_GROUP_RE = re.compile(r'\(\?<(?![=!])([A-Za-z_]\w*)>')
_PUT_RE = re.compile(r'@put:(\{[^}]*\})', re.I)
_GET_RE = re.compile(r'@get:\{([^}]*)\}', re.I)
_HEADER_SUFFIX_RE = re.compile(r'@Header:\{([^}]+)\}\s*$', re.I)


# ---------------------------------------------------------------------------
# Dialects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CssChainRule:
    source: str
    chain: str


@dataclass(frozen=True)
class XPathRule:
    source: str
    expression: str


@dataclass(frozen=True)
class JsonPathRule:
    source: str
    path: str


@dataclass(frozen=True)
class RegexRule:
    source: str
    pattern: str


@dataclass(frozen=True)
class ScriptRule:
    source: str
    steps: Tuple[Tuple[str, str], ...]


ParsedRule = Union[CssChainRule, XPathRule, JsonPathRule, RegexRule, ScriptRule]


@dataclass(frozen=True)
class ReplaceFilter:
    pattern: str
    replacement: str = ''
    first_only: bool = False


def has_script(rule: str) -> bool:
    return bool(rule) and _SCRIPT_MARKER_RE.search(rule) is not None


def is_bare_path(rule: str) -> bool:
    """True for `name` or `data.list[0].title` style member paths."""
    if not _BARE_PATH_RE.match(rule):
        return False
    return not rule.startswith(RESERVED_SEGMENT_PREFIXES)


def _as_json_path(path: str) -> str:
    path = path.strip()
    if path.startswith('$'):
        return path
    if path.startswith('['):
        return '$' + path
    return '$.' + path


def classify_rule(rule: str, json_content: bool = False) -> ParsedRule:
    """Map a single rule (no operators, no ## suffix) onto exactly one dialect.

    The script check runs first so script bodies full of dots and colons never
    look like a JSON path or a segment chain. Bare member paths only count as
    JSON when the content being evaluated is itself JSON.
    """
    text = rule.strip()
    lower = text.lower()
    if has_script(text):
        return ScriptRule(text, tuple(split_script_steps(text)))
    if lower.startswith('@json:'):
        return JsonPathRule(text, _as_json_path(text[6:]))
    if text == '$' or text.startswith(('$.', '$[')):
        return JsonPathRule(text, text)
    if json_content and is_bare_path(text):
        return JsonPathRule(text, _as_json_path(text))
    if lower.startswith('@xpath:'):
        return XPathRule(text, text[7:].strip())
    if text.startswith('/'):
        return XPathRule(text, text)
    if text.startswith(':'):
        return RegexRule(text, text[1:])
    if lower.startswith('@css:'):
        return CssChainRule(text, text[5:].strip())
    if text.startswith('@@'):
        return CssChainRule(text, text[2:].strip())
    return CssChainRule(text, text)


def split_script_steps(rule: str) -> List[Tuple[str, str]]:
    """Split `rule<js>code</js>rule@js:code` into ('rule', ...) / ('js', ...) steps."""
    steps = []
    rest = rule
    while rest:
        m = _SCRIPT_MARKER_RE.search(rest)
        if not m:
            if rest.strip():
                steps.append(('rule', rest.strip()))
            break
        before = rest[:m.start()]
        if before.strip():
            steps.append(('rule', before.strip()))
        if m.group(0).lower() == '@js:':
            steps.append(('js', rest[m.end():]))
            break
        end = rest.lower().find('</js>', m.end())
        if end == -1:
            steps.append(('js', rest[m.end():]))
            break
        steps.append(('js', rest[m.end():end]))
        rest = rest[end + len('</js>'):]
    return steps


# ---------------------------------------------------------------------------
# Operators and prefixes
# ---------------------------------------------------------------------------

def _split_top_level(rule: str, op: str) -> List[str]:
    parts = []
    depth = 0
    start = 0
    i = 0
    while i < len(rule):
        if rule.startswith('{{', i):
            depth += 1
            i += 2
            continue
        if rule.startswith('}}', i) and depth:
            depth -= 1
            i += 2
            continue
        if depth == 0 and rule.startswith(op, i):
            parts.append(rule[start:i])
            i += len(op)
            start = i
            continue
        i += 1
    parts.append(rule[start:])
    return parts


def split_operators(rule: str) -> Tuple[Optional[str], List[str]]:
    """Return (operator, branches). Rules with a script marker are never split."""
    if has_script(rule):
        return None, [rule]
    for op in OPERATORS:
        parts = _split_top_level(rule, op)
        if len(parts) > 1:
            return op, [p.strip() for p in parts if p.strip()]
    return None, [rule]


def strip_reverse(rule: str) -> Tuple[str, bool]:
    rule = rule.strip()
    if rule.startswith('-'):
        return rule[1:].strip(), True
    if rule.startswith('+'):
        return rule[1:].strip(), False
    return rule, False


def combine(op: Optional[str], branches: List[list]) -> list:
    """Merge per-branch result lists for ||, && or %%."""
    if op is None:
        return list(branches[0]) if branches else []
    if op == '||':
        for values in branches:
            if values:
                return list(values)
        return []
    if op == '&&':
        merged = []
        for values in branches:
            merged.extend(values)
        return merged
    # %%: round-robin; leftovers of longer branches keep their order
    merged = []
    longest = max((len(v) for v in branches), default=0)
    for i in range(longest):
        for values in branches:
            if i < len(values):
                merged.append(values[i])
    return merged


# ---------------------------------------------------------------------------
# Regex post-filter
# ---------------------------------------------------------------------------

def compile_js_regex(pattern: str, flags: int = 0) -> 're.Pattern':
    """Compile a regex written for a JavaScript engine."""
    try:
        return re.compile(_JS_NAMED_GROUP_RE.sub(r'(?P<\1>', pattern), flags)
    except re.error as e:
        raise RuleSyntaxError(f"Invalid regex {pattern!r}: {e}") from e


def split_replace(rule: str) -> Tuple[str, Optional[ReplaceFilter]]:
    """`body##pattern##replacement###` -> (body, ReplaceFilter)."""
    if '##' not in rule:
        return rule, None
    parts = rule.split('##')
    body = parts[0]
    pattern = parts[1] if len(parts) > 1 else ''
    replacement = parts[2] if len(parts) > 2 else ''
    if not pattern:
        return body, None
    return body, ReplaceFilter(pattern, replacement, len(parts) > 3)


def _expand_groups(template: str, match: 're.Match') -> str:
    def group(m):
        idx = int(m.group(1))
        if idx > (match.re.groups or 0):
            return m.group(0)
        return match.group(idx) or ''
    return re.sub(r'\$(\d)', group, template)


def apply_replace(text: str, post_filter: Optional[ReplaceFilter]) -> str:
    if post_filter is None:
        return text
    regex = compile_js_regex(post_filter.pattern)
    if post_filter.first_only:
        m = regex.search(text)
        return _expand_groups(post_filter.replacement, m) if m else ''
    return regex.sub(lambda _m: post_filter.replacement, text)


# ---------------------------------------------------------------------------
# Index expressions
# ---------------------------------------------------------------------------

def is_index_expression(expr: str) -> bool:
    text = expr.strip()
    if text.startswith('!'):
        text = text[1:]
    if not text or not any(ch.isdigit() or ch == ':' for ch in text):
        return False
    return all(_INDEX_PART_RE.match(part) for part in text.split(','))


def _to_int(text: str) -> Optional[int]:
    text = text.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError as e:
        raise RuleSyntaxError(f"Invalid index {text!r}") from e


def parse_index_expression(expr: str, length: int) -> List[int]:
    """Resolve `[a:b:c]`, `[1,3]`, `[!0]` or `-1` against a list of `length`.

    Always returns indices within range(length) in ascending order. Slices
    follow Python semantics; a negative step counts as its absolute value
    (reversal is the job of the `-` rule prefix).
    """
    text = expr.strip()
    if text.startswith('[') and text.endswith(']'):
        text = text[1:-1].strip()
    exclude = text.startswith('!')
    if exclude:
        text = text[1:]
    selected = set()
    for part in text.split(','):
        part = part.strip()
        if not part:
            continue
        if ':' in part:
            bits = part.split(':')
            if len(bits) > 3:
                raise RuleSyntaxError(f"Invalid slice {part!r}")
            bits += [''] * (3 - len(bits))
            start, stop, step = (_to_int(b) for b in bits)
            if step == 0:
                continue
            step = abs(step) if step else 1
            selected.update(range(length)[slice(start, stop, step)])
        else:
            idx = _to_int(part)
            if idx < 0:
                idx += length
            if 0 <= idx < length:
                selected.add(idx)
    if exclude:
        return [i for i in range(length) if i not in selected]
    return sorted(selected)


def select_indices(items: list, expr: str) -> list:
    return [items[i] for i in parse_index_expression(expr, len(items))]


# ---------------------------------------------------------------------------
# Directives and suffixes
# ---------------------------------------------------------------------------

def _parse_put_body(body: str) -> Dict[str, str]:
    try:
        parsed = json.loads(body)
        if isinstance(parsed, dict):
            return {str(k): str(v) for k, v in parsed.items()}
    except json.JSONDecodeError:
        pass
    pairs = {}
    for item in body.strip().strip('{}').split(','):
        if ':' not in item:
            continue
        key, value = item.split(':', 1)
        key = key.strip().strip('"\'')
        if key:
            pairs[key] = value.strip().strip('"\'')
    return pairs


def extract_put_directives(rule: str) -> Tuple[str, Dict[str, str]]:
    """Pull every `@put:{key:rule}` out of a rule; returns (rest, {key: rule})."""
    puts = {}
    for m in _PUT_RE.finditer(rule):
        puts.update(_parse_put_body(m.group(1)))
    return _PUT_RE.sub('', rule).strip(), puts


def substitute_get(rule: str, lookup: Callable[[str], str]) -> str:
    return _GET_RE.sub(lambda m: lookup(m.group(1).strip()), rule)


def split_header_override(rule: str) -> Tuple[str, Dict[str, str]]:
    """`rule@Header:{Referer:host;X-Token:abc}` -> (rule, headers).

    The literal value `host` is left as-is for the caller to replace with the
    current origin.
    """
    if not rule:
        return '', {}
    m = _HEADER_SUFFIX_RE.search(rule)
    if not m:
        return rule, {}
    headers = {}
    for pair in re.split(r'[;,]', m.group(1)):
        if ':' not in pair:
            continue
        key, value = pair.split(':', 1)
        key = key.strip().strip('"\'')
        if key:
            headers[key] = value.strip().strip('"\'')
    return rule[:m.start()].strip(), headers


def first_line(rule: str) -> str:
    """Keep the first non-empty line of a rule unless it carries a script."""
    if not rule or has_script(rule):
        return rule or ''
    for line in rule.splitlines():
        if line.strip():
            return line.strip()
    return ''
