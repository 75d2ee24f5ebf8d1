"""
CSS / segment chain evaluation over BeautifulSoup.

A chain like `class.list@tag.li.0@a@href` is split on `@` and walked left to
right; each segment narrows the nodes produced by the previous one. The last
segment may instead be an accessor that turns nodes into strings.
"""
import copy
import logging
import re
from typing import List, Optional, Sequence, Tuple, Union

from bs4 import BeautifulSoup, NavigableString, Tag

from content_format import resolve_url
from rule_errors import RuleSyntaxError
from rule_parser import is_index_expression, select_indices

logger = logging.getLogger(__name__)

ACCESSORS = {
    'text', 'textnodes', 'owntext', 'html', 'innerhtml', 'outerhtml', 'all',
    'href', 'src', 'content', 'alt', 'title', 'value',
}
URL_ACCESSORS = {'href', 'src'}

# Names treated as selectors even when they end a multi-segment scalar rule
COMMON_TAGS = {
    'a', 'p', 'b', 'i', 'em', 'strong', 'span', 'div', 'font', 'small', 'label',
    'ul', 'ol', 'li', 'dl', 'dt', 'dd', 'img', 'table', 'thead', 'tbody', 'tr',
    'td', 'th', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'section', 'article', 'nav',
    'header', 'footer', 'main', 'figure', 'pre', 'code', 'option', 'select',
    'input', 'button', 'form', 'body', 'head', 'meta', 'link', 'script', 'style',
    'iframe', 'picture', 'source', 'video', 'audio', 'aside', 'cite', 'children',
}

_PLAIN_NAME_RE = re.compile(r'^[A-Za-z][\w-]*$')
_BRACKET_INDEX_RE = re.compile(r'^(.+?)\.?\[([^\[\]]*)\]$')
_DOT_INDEX_RE = re.compile(r'^(.+)\.([^.]+)$')
_BANG_INDEX_RE = re.compile(r'^(.+?)!([-\d,:]+)$')

Node = Tag
ChainValue = Union[str, Tag]


def split_chain(chain: str) -> List[str]:
    return [seg.strip() for seg in chain.split('@') if seg.strip()]


def is_accessor(segment: str, ends_scalar_chain: bool = False) -> bool:
    low = segment.lower()
    if low in ACCESSORS or low.startswith('data-'):
        return True
    return ends_scalar_chain and bool(_PLAIN_NAME_RE.match(segment)) and low not in COMMON_TAGS


def split_accessor(segments: Sequence[str], scalar: bool) -> Tuple[List[str], Optional[str]]:
    if not segments:
        return [], None
    last = segments[-1]
    if is_accessor(last, scalar and len(segments) > 1):
        return list(segments[:-1]), last
    return list(segments), None


def _unique(nodes) -> List[Tag]:
    seen = set()
    out = []
    for node in nodes:
        if id(node) not in seen:
            seen.add(id(node))
            out.append(node)
    return out


def _split_index(segment: str) -> Tuple[str, Optional[str]]:
    m = _BRACKET_INDEX_RE.match(segment)
    if m and is_index_expression(m.group(2)):
        return m.group(1), m.group(2)
    m = _DOT_INDEX_RE.match(segment)
    if m:
        tail = m.group(2)
        if tail.startswith('[') and tail.endswith(']'):
            tail = tail[1:-1]
        if is_index_expression(tail):
            return m.group(1), tail
    m = _BANG_INDEX_RE.match(segment)
    if m and is_index_expression(m.group(2)):
        return m.group(1), '!' + m.group(2)
    return segment, None


def _has_classes(node: Tag, names: List[str]) -> bool:
    classes = node.get('class') or []
    return all(name in classes for name in names)


def _select_base(nodes: List[Tag], base: str) -> List[Tag]:
    found = []
    if base.startswith('class.'):
        names = base[6:].split()
        for node in nodes:
            found.extend(node.find_all(lambda t: _has_classes(t, names)))
    elif base.startswith('id.'):
        for node in nodes:
            found.extend(node.find_all(id=base[3:]))
    elif base.startswith('tag.'):
        for node in nodes:
            found.extend(node.find_all(base[4:]))
    else:
        for node in nodes:
            try:
                found.extend(node.select(base))
            except Exception as e:
                raise RuleSyntaxError(f"Invalid CSS selector {base!r}: {e}") from e
    return _unique(found)


def _matches_self(node: Tag, base: str) -> bool:
    if isinstance(node, BeautifulSoup):
        return False
    if base.startswith('class.'):
        return _has_classes(node, base[6:].split())
    if base.startswith('id.'):
        return node.get('id') == base[3:]
    if base.startswith('tag.'):
        return node.name == base[4:]
    try:
        return node.css.match(base)
    except Exception:
        return False


def _own_text(node: Tag) -> str:
    return ''.join(s for s in node.find_all(string=True, recursive=False) if type(s) is NavigableString)


def select_segment(nodes: List[Tag], segment: str, include_self: bool = False) -> List[Tag]:
    """Apply one selector segment to every node in `nodes`."""
    if segment == 'children':
        return _unique(c for node in nodes for c in node.find_all(True, recursive=False))

    if segment.startswith('[') and segment.endswith(']') and is_index_expression(segment[1:-1]):
        picked = []
        for node in nodes:
            picked.extend(select_indices(node.find_all(True, recursive=False), segment[1:-1]))
        return picked

    if segment.startswith('text.'):
        needle = segment[5:]
        picked = []
        for node in nodes:
            for candidate in node.find_all(True):
                if needle in _own_text(candidate):
                    picked.append(candidate)
                    break
        return _unique(picked)

    base, index = _split_index(segment)
    found = _select_base(nodes, base)
    if not found and include_self:
        found = [node for node in nodes if _matches_self(node, base)]
    if index is not None:
        found = select_indices(found, index)
    return found


def inner_html(node: Tag) -> str:
    clone = copy.copy(node)
    for unwanted in clone.find_all(['script', 'style']):
        unwanted.decompose()
    return ''.join(str(child) for child in clone.contents).strip()


def read_accessor(node: Tag, accessor: str, base_url: str = '') -> str:
    name = accessor.lower()
    if name == 'text':
        return node.get_text().strip()
    if name == 'textnodes':
        parts = [s.strip() for s in node.find_all(string=True, recursive=False) if type(s) is NavigableString]
        return '\n'.join(p for p in parts if p)
    if name == 'owntext':
        return _own_text(node).strip()
    if name in ('html', 'innerhtml'):
        return inner_html(node)
    if name in ('outerhtml', 'all'):
        return str(node)
    value = node.get(name)
    if value is None:
        value = node.get(accessor)
    if value is None:
        return ''
    if isinstance(value, list):
        value = ' '.join(value)
    value = value.strip()
    if name in URL_ACCESSORS:
        return resolve_url(value, base_url)
    return value


def evaluate_chain(start: List[Tag], chain: str, base_url: str = '', scalar: bool = True,
                   from_element: bool = False) -> List[ChainValue]:
    """Walk a segment chain from `start`.

    Scalar mode returns non-empty strings (text when no accessor is given).
    List mode returns nodes, or strings when the chain ends in a known accessor.
    """
    segments = split_chain(chain)
    selectors, accessor = split_accessor(segments, scalar)

    nodes = list(start)
    if not selectors:
        nodes = [n.body if isinstance(n, BeautifulSoup) and n.body else n for n in nodes]
    for i, segment in enumerate(selectors):
        nodes = select_segment(nodes, segment, include_self=from_element and i == 0)
        if not nodes:
            logger.debug(f"[Chain] Segment {segment!r} matched nothing in {chain!r}")
            break

    if accessor is None and not scalar:
        return nodes
    name = accessor or 'text'
    values = []
    for node in nodes:
        value = read_accessor(node, name, base_url)
        if value:
            values.append(value)
    return values
