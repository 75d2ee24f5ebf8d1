#!/usr/bin/env python3
"""
Command-line rule debugger.

    rule-debug sources.json search 斗破苍穹
    rule-debug sources.json --index 2 toc https://example.com/book/1/
    rule-debug manga.json run 海贼王

Prints the log trail of each stage followed by its JSON payload.
"""
import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from debug_settings import DebugSettings
from source_debugger import DebugResult, create_debugger

logger = logging.getLogger(__name__)

LEVEL_MARKS = {
    'info': ' ',
    'success': '+',
    'warning': '!',
    'error': 'x',
}


def load_source(path: str, index: int = 0) -> Dict[str, Any]:
    """Read one source definition; files holding a list pick entry `index`."""
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if isinstance(data, list):
        if not data:
            raise ValueError(f"{path} holds an empty list")
        if not 0 <= index < len(data):
            raise ValueError(f"--index {index} is out of range (0-{len(data) - 1})")
        data = data[index]
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not hold a source definition")
    return data


def print_result(result: DebugResult, out=None) -> None:
    out = out or sys.stdout
    status = 'OK' if result.success else 'FAILED'
    print(f"=== {result.stage} [{status}] ===", file=out)
    for entry in result.logs:
        print(f"{LEVEL_MARKS.get(entry.level, ' ')} [{entry.category}] {entry.message}", file=out)
    if result.error:
        print(f"error: {result.error}", file=out)
    if result.next_url:
        print(f"next: {result.next_url}", file=out)
    print(json.dumps(result.payload, ensure_ascii=False, indent=2), file=out)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='rule-debug', description='Debug book and manga source rules')
    parser.add_argument('source', help='JSON file with one source definition or a list of them')
    parser.add_argument('--index', type=int, default=0, help='entry to use when the file holds a list')
    stages = parser.add_subparsers(dest='stage', required=True)

    search = stages.add_parser('search', help='run the search stage')
    search.add_argument('keyword')
    search.add_argument('--page', type=int, default=1)

    for name in ('detail', 'toc'):
        stage = stages.add_parser(name, help=f"run the {name} stage on URL")
        stage.add_argument('url')

    content = stages.add_parser('content', help='run the content stage on URL')
    content.add_argument('url')
    content.add_argument('--webview', action='store_true', help='render the page in a browser first')

    explore = stages.add_parser('explore', help='run the explore stage (first entry when URL is omitted)')
    explore.add_argument('url', nargs='?', default='')

    run = stages.add_parser('run', help='search, then follow the first result down to its first chapter')
    run.add_argument('keyword')
    run.add_argument('--webview', action='store_true')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = DebugSettings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
    )

    try:
        source = load_source(args.source, args.index)
    except (OSError, ValueError) as e:
        logger.error(f"Could not load {args.source}: {e}")
        return 2

    debugger = create_debugger(source, settings=settings)
    logger.info(f"Debugging {debugger.name} ({debugger.dialect} dialect)")

    if args.stage == 'search':
        results = [debugger.search(args.keyword, page=args.page)]
    elif args.stage == 'detail':
        results = [debugger.detail(args.url)]
    elif args.stage == 'toc':
        results = [debugger.toc(args.url)]
    elif args.stage == 'content':
        results = [debugger.content(args.url, use_webview=args.webview)]
    elif args.stage == 'explore':
        results = [debugger.explore(args.url)]
    else:
        results = debugger.run(args.keyword, use_webview=args.webview)

    for result in results:
        print_result(result)
    return 0 if all(r.success for r in results) else 1


if __name__ == '__main__':
    sys.exit(main())
