"""
crashdxctl: Agent-friendly CLI for crash log analysis.

Design goals:
- Tiny, stable surface area for LLM agents
- Optional JSON output for reliable parsing

Main commands:
- analyze: Parse, symbolicate and classify a crash log
- symbolicate: Resolve app frames of a crash log against a dSYM
- patterns: List the known crash signatures

Entry points:
- crashdxctl: Main CLI entry point (installed via pip)
- Can also be imported and called programmatically via main(argv)
"""

from __future__ import annotations

from crashdx.cli.helpers import _print
from crashdx.cli.crash_cmds import (
    cmd_analyze,
    cmd_patterns,
    cmd_symbolicate,
)
from crashdx.cli.dispatch import main

__all__ = [
    "_print",
    "cmd_analyze",
    "cmd_patterns",
    "cmd_symbolicate",
    "main",
]
