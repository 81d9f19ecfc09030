"""Crash log commands for crashdxctl."""

from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from crashdx.cli.helpers import _print, _print_error
from crashdx.config import CrashDxConfig
from crashdx.crash_analyzer import analyze_crash, format_analysis
from crashdx.crash_parser import parse_crash_file
from crashdx.errors import CrashDxError
from crashdx.pattern_detector import build_signatures
from crashdx.symbolicate import Symbolicator


def cmd_analyze(
    *,
    crash_log: str,
    dsym: Optional[str],
    bundle_id: Optional[str],
    skip_symbolication: bool,
    include_raw_log: bool,
    config: CrashDxConfig,
    json_mode: bool,
) -> int:
    """Parse, symbolicate and classify a crash log.

    Args:
        crash_log: Path to a .ips or .crash file.
        dsym: Optional dSYM bundle or directory of bundles.
        bundle_id: Bundle id used to fill the report and find a dSYM.
        skip_symbolication: Analyze the log as-is.
        include_raw_log: Include the raw crash log in JSON output.
        config: Loaded configuration.
        json_mode: Emit machine-parseable JSON output.

    Returns:
        Exit code: 0 on success, 1 on error.
    """
    try:
        analysis = analyze_crash(
            crash_log,
            dsym_path=dsym,
            bundle_id=bundle_id,
            skip_symbolication=skip_symbolication,
            include_raw_log=include_raw_log,
            config=config,
        )
    except CrashDxError as e:
        _print_error(str(e), json_mode=json_mode)
        return 1

    if json_mode:
        out = analysis.to_dict()
        out["schema_version"] = 1
        _print(out, json_mode=True)
    else:
        _print(format_analysis(analysis), json_mode=False)
    return 0


def cmd_symbolicate(
    *,
    crash_log: str,
    dsym: str,
    arch: Optional[str],
    config: CrashDxConfig,
    json_mode: bool,
) -> int:
    """Resolve app frame addresses in a crash log with atos.

    Returns:
        Exit code: 0 when frames were resolved (or nothing needed resolving),
        1 otherwise.
    """
    try:
        report = parse_crash_file(crash_log)
    except CrashDxError as e:
        _print_error(str(e), json_mode=json_mode)
        return 1

    outcome = Symbolicator(config=config).run(report, dsym, arch=arch)
    frames = outcome.report.app_frames()

    if json_mode:
        _print({
            "schema_version": 1,
            "status": outcome.status,
            "resolved": outcome.resolved,
            "dsym_file": outcome.dsym_file,
            "message": outcome.message,
            "is_symbolicated": outcome.report.is_symbolicated,
            "frames": [asdict(f) for f in frames],
        }, json_mode=True)
    else:
        print(f"Symbolication: {outcome.status} ({outcome.resolved} frames resolved)")
        if outcome.dsym_file:
            print(f"dSYM: {outcome.dsym_file}")
        if outcome.message:
            print(f"Note: {outcome.message}")
        for frame in frames:
            location = f" ({frame.location})" if frame.location else ""
            print(f"  {frame.index:3d}  {frame.address}  {frame.symbol}{location}")

    return 0 if outcome.status in ("found", "no_work") else 1


def cmd_patterns(*, config: CrashDxConfig, json_mode: bool) -> int:
    """List the crash signature catalog in evaluation order."""
    signatures = build_signatures(config)

    if json_mode:
        _print({
            "schema_version": 1,
            "signatures": [
                {
                    "id": s.id,
                    "name": s.name,
                    "severity": s.severity,
                    "description": s.description,
                    "likely_cause": s.likely_cause,
                    "suggestion": s.suggestion,
                }
                for s in signatures
            ],
        }, json_mode=True)
    else:
        for s in signatures:
            print(f"{s.id:<30} {s.severity:<9} {s.name}")
    return 0
