"""Argument parser for crashdxctl."""

from __future__ import annotations

import argparse

from crashdx import __version__

_GLOBAL_FLAGS = ("--json", "--verbose", "-v")
_GLOBAL_OPTIONS = ("--config",)


def _preprocess_argv(argv: list[str]) -> list[str]:
    """Reorder global flags (--json, --verbose, --config) before the subcommand.

    argparse doesn't accept parent-parser flags after a subcommand, so
    agents writing ``crashdxctl analyze x.ips --json`` get them moved.

    Args:
        argv: Raw argument list (without ``sys.argv[0]``).

    Returns:
        Reordered argument list with global flags moved to the front.
    """
    global_args: list[str] = []
    rest: list[str] = []
    i = 0
    while i < len(argv):
        token = argv[i]
        if token in _GLOBAL_FLAGS:
            global_args.append(token)
            i += 1
            continue
        if any(token.startswith(opt + "=") for opt in _GLOBAL_OPTIONS):
            global_args.append(token)
            i += 1
            continue
        if token in _GLOBAL_OPTIONS:
            # Needs a value.
            if i + 1 >= len(argv):
                rest.append(token)
                i += 1
                continue
            global_args.extend([token, argv[i + 1]])
            i += 2
            continue

        rest.append(token)
        i += 1

    return global_args + rest


def _build_parser() -> argparse.ArgumentParser:
    """Build the full argparse parser with all subcommands."""
    parser = argparse.ArgumentParser(prog="crashdxctl", description="Crash log analysis for agents")
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__} (crashdx)",
    )
    parser.add_argument("--json", action="store_true", help="Output machine-parseable JSON")
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file (default: $CRASHDX_CONFIG, then built-in defaults)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")

    sub = parser.add_subparsers(dest="cmd", required=True)

    p_analyze = sub.add_parser("analyze", help="Analyze a .ips or .crash crash log")
    p_analyze.add_argument("crash_log", help="Path to the crash log")
    p_analyze.add_argument("--dsym", default=None, help="dSYM bundle or directory containing dSYMs")
    p_analyze.add_argument("--bundle-id", default=None, help="App bundle id (helps locate the dSYM)")
    p_analyze.add_argument(
        "--skip-symbolication",
        action="store_true",
        help="Skip symbolication (faster, less detailed)",
    )
    p_analyze.add_argument(
        "--include-raw-log",
        action="store_true",
        help="Include the raw crash log in JSON output",
    )

    p_sym = sub.add_parser("symbolicate", help="Resolve app frame addresses with atos")
    p_sym.add_argument("crash_log", help="Path to the crash log")
    p_sym.add_argument("--dsym", required=True, help="dSYM bundle or directory containing dSYMs")
    p_sym.add_argument("--arch", default=None, help="Architecture override (default: from the app image)")

    sub.add_parser("patterns", help="List known crash signatures")

    return parser
