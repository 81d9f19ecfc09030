"""Shared utilities for crashdxctl CLI commands."""

from __future__ import annotations

import json
import logging
from typing import Any


def _print(obj: Any, *, json_mode: bool) -> None:
    if json_mode:
        print(json.dumps(obj, indent=2, sort_keys=True, default=str))
    else:
        if isinstance(obj, str):
            print(obj)
        else:
            print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _print_error(message: str, *, json_mode: bool) -> None:
    if json_mode:
        _print({"error": message}, json_mode=True)
    else:
        print(f"ERROR: {message}")


def _configure_logging(verbose: bool) -> None:
    # Library modules only create loggers; handlers are the CLI's job.
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
