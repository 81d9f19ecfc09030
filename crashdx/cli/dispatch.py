"""Command dispatch for crashdxctl CLI."""

from __future__ import annotations

import sys
from typing import Optional

from crashdx.cli.helpers import _configure_logging, _print_error
from crashdx.cli.parser import _build_parser, _preprocess_argv
from crashdx.config import load_config
from crashdx.errors import ConfigError


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the ``crashdxctl`` CLI.

    Args:
        argv: Argument list to parse.  Defaults to ``sys.argv[1:]``.

    Returns:
        Exit code: 0 on success, non-zero on error.
    """
    if argv is None:
        argv = sys.argv[1:]

    argv = _preprocess_argv(argv)

    # Late import to allow tests to monkeypatch crashdx.cli.cmd_xxx
    import crashdx.cli as cli

    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        _print_error(str(e), json_mode=args.json)
        return 1

    if args.cmd == "analyze":
        return cli.cmd_analyze(
            crash_log=args.crash_log,
            dsym=args.dsym,
            bundle_id=args.bundle_id,
            skip_symbolication=args.skip_symbolication,
            include_raw_log=args.include_raw_log,
            config=config,
            json_mode=args.json,
        )
    if args.cmd == "symbolicate":
        return cli.cmd_symbolicate(
            crash_log=args.crash_log,
            dsym=args.dsym,
            arch=args.arch,
            config=config,
            json_mode=args.json,
        )
    if args.cmd == "patterns":
        return cli.cmd_patterns(config=config, json_mode=args.json)

    parser.error(f"unknown command: {args.cmd}")
    return 2
