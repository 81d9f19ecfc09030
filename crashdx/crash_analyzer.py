"""End-to-end crash analysis for a single crash log.

Architecture:
    analyze_crash()
        -> parse_crash_file() / parse_crash_log()
        -> Symbolicator.run() against --dsym or a dSYM from common locations
        -> detect_patterns() with the configured catalog
        -> analyze_patterns() / generate_summary()
        -> returns CrashAnalysis

Only an unreadable or unrecognised crash log raises; symbolication problems
are reported through ``dsym_status``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from .config import CrashDxConfig
from .crash_parser import find_app_binary, get_unsymbolicated_frames, parse_crash_file, parse_crash_log
from .crash_report import CrashPattern, CrashReport, StackFrame
from .crash_summary import (
    analyze_patterns,
    describe_crash,
    generate_summary,
    get_top_suspects,
    is_likely_reproducible,
)
from .pattern_detector import build_signatures, detect_patterns
from .symbolicate import (
    STATUS_FAILED,
    STATUS_FOUND,
    STATUS_MISMATCH,
    STATUS_NO_WORK,
    STATUS_NOT_FOUND,
    Symbolicator,
    find_dsym_file,
    find_dsym_in_common_locations,
)

logger = logging.getLogger(__name__)

DSYM_SKIPPED = "skipped"

_DSYM_STATUS = {
    STATUS_FOUND: STATUS_FOUND,
    STATUS_NO_WORK: STATUS_FOUND,
    STATUS_NOT_FOUND: STATUS_NOT_FOUND,
    STATUS_MISMATCH: STATUS_MISMATCH,
    STATUS_FAILED: STATUS_FAILED,
}


@dataclass
class CrashAnalysis:
    """Full analysis of one crash log."""
    report: CrashReport
    summary: str
    description: str
    category: str
    severity: str
    patterns: list[CrashPattern] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    suspects: list[str] = field(default_factory=list)
    key_frames: list[StackFrame] = field(default_factory=list)
    reproducible: bool = True
    is_user_reportable: bool = False
    dsym_status: str = DSYM_SKIPPED
    """found | not_found | mismatch | skipped | failed"""
    dsym_file: Optional[str] = None
    symbolicated_frames: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "report": self.report.to_dict(),
            "summary": self.summary,
            "description": self.description,
            "category": self.category,
            "severity": self.severity,
            "patterns": [p.to_dict() for p in self.patterns],
            "suggestions": list(self.suggestions),
            "suspects": list(self.suspects),
            "key_frames": [asdict(f) for f in self.key_frames],
            "reproducible": self.reproducible,
            "is_user_reportable": self.is_user_reportable,
            "dsym_status": self.dsym_status,
            "dsym_file": self.dsym_file,
            "symbolicated_frames": self.symbolicated_frames,
            "duration_ms": self.duration_ms,
        }


def _attempt_symbolication(
    report: CrashReport,
    dsym_path: Optional[str],
    bundle_id: Optional[str],
    config: CrashDxConfig,
    symbolicator: Optional[Symbolicator],
) -> tuple[CrashReport, str, Optional[str], int]:
    """Returns (report, dsym_status, dsym_file, resolved_frames)."""
    if not get_unsymbolicated_frames(report):
        logger.info("No app frames need symbolication")
        return report, DSYM_SKIPPED, None, 0

    app_binary = find_app_binary(report)
    if app_binary is None:
        logger.warning("Could not find app binary in crash report")
        return report, STATUS_NOT_FOUND, None, 0

    dsym = None
    if dsym_path:
        dsym = find_dsym_file(dsym_path, app_binary.name)
        if dsym is None:
            logger.warning("dSYM not found at specified path: %s", dsym_path)

    search_id = bundle_id or report.bundle_id
    if dsym is None and search_id:
        dsym = find_dsym_in_common_locations(search_id, config.dsym_search_paths)

    if dsym is None:
        return report, STATUS_NOT_FOUND, None, 0

    symbolicator = symbolicator or Symbolicator(config=config)
    outcome = symbolicator.run(report, dsym)
    return outcome.report, _DSYM_STATUS.get(outcome.status, STATUS_FAILED), outcome.dsym_file, outcome.resolved


def analyze_crash(
    crash_log_path: Optional[str] = None,
    *,
    text: Optional[str] = None,
    dsym_path: Optional[str] = None,
    bundle_id: Optional[str] = None,
    skip_symbolication: bool = False,
    include_raw_log: bool = False,
    config: Optional[CrashDxConfig] = None,
    symbolicator: Optional[Symbolicator] = None,
) -> CrashAnalysis:
    """Parse, symbolicate and classify one crash log.

    Args:
        crash_log_path: Path to a .ips or .crash file.
        text: Crash log contents, instead of a path.
        dsym_path: dSYM bundle or directory; common locations are searched otherwise.
        bundle_id: Fills a missing bundle id and drives the dSYM search.
        skip_symbolication: Analyze the report as parsed.
        include_raw_log: Keep the raw crash log text on the returned report.
        config: Thresholds and timeouts (defaults when None).
        symbolicator: Symbolicator to use (one is created when None).

    Returns:
        CrashAnalysis for the crash log.

    Raises:
        CrashLogNotFoundError: if ``crash_log_path`` does not exist.
        UnrecognizedCrashFormatError: if the log matches neither grammar.
        ValueError: unless exactly one of ``crash_log_path`` / ``text`` is given.
    """
    if (crash_log_path is None) == (text is None):
        raise ValueError("Provide exactly one of crash_log_path or text")

    config = config or CrashDxConfig()
    start = time.monotonic()

    report = parse_crash_file(crash_log_path) if crash_log_path is not None else parse_crash_log(text)

    if bundle_id and not report.bundle_id:
        report.bundle_id = bundle_id

    dsym_status, dsym_file, resolved = DSYM_SKIPPED, None, 0
    if not skip_symbolication:
        report, dsym_status, dsym_file, resolved = _attempt_symbolication(
            report, dsym_path, bundle_id, config, symbolicator
        )

    patterns = detect_patterns(report, build_signatures(config))
    report.patterns = patterns
    analysis = analyze_patterns(report, patterns, key_frame_limit=config.key_frame_limit)

    result = CrashAnalysis(
        report=report,
        summary=generate_summary(report, patterns),
        description=describe_crash(report, patterns),
        category=analysis.category,
        severity=analysis.severity,
        patterns=patterns,
        suggestions=analysis.suggestions,
        suspects=get_top_suspects(report),
        key_frames=analysis.key_frames,
        reproducible=is_likely_reproducible(report, patterns),
        is_user_reportable=analysis.is_user_reportable,
        dsym_status=dsym_status,
        dsym_file=dsym_file,
        symbolicated_frames=resolved,
    )

    if not include_raw_log:
        report.raw_log = None

    result.duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "Analyzed %s crash in %dms: %s (dsym %s)",
        report.process_name, result.duration_ms, result.description, dsym_status,
    )
    return result


def format_analysis(analysis: CrashAnalysis) -> str:
    """Format a CrashAnalysis as a markdown report.

    Args:
        analysis: Result from analyze_crash().

    Returns:
        Multi-line markdown string.
    """
    lines = []
    lines.append("## Crash Analysis")
    lines.append("")
    lines.append(f"**Description**: {analysis.description}")
    lines.append(f"**Category**: {analysis.category}")
    lines.append(f"**Severity**: {analysis.severity}")
    lines.append(f"**Reproducible**: {'Likely' if analysis.reproducible else 'May be flaky'}")
    symbolication = analysis.dsym_status
    if analysis.symbolicated_frames:
        symbolication += f" ({analysis.symbolicated_frames} frames resolved)"
    lines.append(f"**Symbolication**: {symbolication}")
    lines.append("")

    if analysis.suspects:
        lines.append("### Suspect Functions")
        lines.append("")
        for suspect in analysis.suspects:
            lines.append(f"- `{suspect}`")
        lines.append("")

    lines.append(analysis.summary)

    if analysis.suggestions:
        lines.append("")
        lines.append("### Recommended Actions")
        lines.append("")
        for suggestion in analysis.suggestions:
            lines.append(f"- {suggestion}")

    return "\n".join(lines)
