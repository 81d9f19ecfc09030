"""Crash brief and suggestion rendering.

Turns a CrashReport plus its detected patterns into:
- a markdown brief (identity, crashed thread frames, detected patterns)
- a deduplicated list of next steps
- coarse triage facts: category, severity, suspects, reproducibility
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .crash_report import CrashPattern, CrashReport, StackFrame
from .pattern_detector import detect_patterns, severity_rank

logger = logging.getLogger(__name__)

CATEGORY_MEMORY = "memory"
CATEGORY_THREADING = "threading"
CATEGORY_ASSERTION = "assertion"
CATEGORY_EXCEPTION = "exception"
CATEGORY_RESOURCE = "resource"
CATEGORY_WATCHDOG = "watchdog"
CATEGORY_UNKNOWN = "unknown"

SYMBOLICATE_FIRST = "Symbolicate the crash log with the matching dSYM to get detailed stack traces"
CHECK_LOGS = "Check application logs around crash time for context"
CRITICAL_NOTE = "This is a critical crash - prioritize investigation"

_PATTERN_CATEGORIES = {
    "exc_bad_access_null": CATEGORY_MEMORY,
    "exc_bad_access_kern_invalid": CATEGORY_MEMORY,
    "sigbus_alignment": CATEGORY_MEMORY,
    "stack_overflow": CATEGORY_MEMORY,
    "dispatch_queue_crash": CATEGORY_THREADING,
    "sigabrt_assertion": CATEGORY_ASSERTION,
    "swift_runtime_failure": CATEGORY_ASSERTION,
    "sigabrt_uncaught_exception": CATEGORY_EXCEPTION,
    "oom_jetsam": CATEGORY_RESOURCE,
    "watchdog_timeout": CATEGORY_WATCHDOG,
}

_CATEGORY_HINTS = {
    CATEGORY_MEMORY: [
        ("Address Sanitizer", "Run the app with Address Sanitizer enabled to catch memory issues"),
        ("Zombie", "Enable Zombie Objects in Xcode to detect use-after-free"),
    ],
    CATEGORY_THREADING: [
        ("Thread Sanitizer", "Use Thread Sanitizer to detect race conditions"),
        ("background threads", "Check for UI updates from background threads"),
    ],
    CATEGORY_RESOURCE: [
        ("Allocations", "Profile memory usage with Instruments Allocations tool"),
        ("caching", "Check for image and data caching strategies"),
    ],
    CATEGORY_WATCHDOG: [
        ("Time Profiler", "Profile main thread blocking with Time Profiler"),
        ("synchronous network", "Check for synchronous network calls or file I/O on main thread"),
    ],
    CATEGORY_ASSERTION: [
        ("preconditions", "Review preconditions and fatalError calls on the crashing code path"),
    ],
    CATEGORY_EXCEPTION: [
        ("exception breakpoint", "Add an Objective-C exception breakpoint in Xcode to stop where the exception is thrown"),
    ],
}

# Length-prefixed identifier inside a Swift mangled name: "14ViewController"
_SWIFT_LENGTH_RE = re.compile(r"\d+")
# Nominal type markers following a type name (class, struct, enum)
_SWIFT_TYPE_MARKERS = "CVO"
# Objective-C method: "-[ViewController buttonTapped:]"
_OBJC_METHOD_RE = re.compile(r"[-+]\[(\w+)\s+([\w:]+?):*\]")

_FRAME_PREVIEW = 5


@dataclass
class PatternAnalysis:
    """Triage view of a report's detected patterns."""
    patterns: list[CrashPattern]
    suggestions: list[str]
    category: str
    severity: str
    is_user_reportable: bool
    key_frames: list[StackFrame] = field(default_factory=list)


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _crashed_frames_with(report: CrashReport, *markers: str) -> bool:
    return any(
        m in (f.symbol or "")
        for f in report.crashed_thread.frames
        for m in markers
    )


def _has_pattern(patterns: list[CrashPattern], *ids: str) -> bool:
    return any(p.id in ids for p in patterns)


# =============================================================================
# Classification
# =============================================================================

def determine_category(report: CrashReport, patterns: list[CrashPattern]) -> str:
    """Coarse category of the dominant (highest ranked) pattern.

    Without a recognised pattern the exception type and crashed thread
    frames decide.
    """
    for pattern in patterns[:1]:
        category = _PATTERN_CATEGORIES.get(pattern.id)
        if category:
            return category

    exc = report.exception
    if exc.type in ("EXC_BAD_ACCESS", "SIGSEGV", "SIGBUS") or exc.signal in ("SIGSEGV", "SIGBUS"):
        return CATEGORY_MEMORY
    if _crashed_frames_with(report, "dispatch_", "pthread_"):
        return CATEGORY_THREADING
    if exc.type == "EXC_RESOURCE":
        return CATEGORY_RESOURCE
    if exc.type == "SIGABRT" or exc.signal == "SIGABRT":
        return CATEGORY_EXCEPTION
    return CATEGORY_UNKNOWN


def determine_severity(report: CrashReport, patterns: list[CrashPattern]) -> str:
    """Highest pattern severity; without patterns, medium for app-code crashes."""
    if patterns:
        return min((p.severity for p in patterns), key=severity_rank)
    if any(f.is_app_code for f in report.crashed_thread.frames):
        return "medium"
    return "low"


def is_user_reportable(report: CrashReport, patterns: list[CrashPattern]) -> bool:
    if _has_pattern(patterns, "watchdog_timeout", "oom_jetsam"):
        return True
    return any(f.is_app_code for f in report.crashed_thread.frames)


def is_likely_reproducible(report: CrashReport, patterns: Optional[list[CrashPattern]] = None) -> bool:
    """Guess whether the crash will recur deterministically.

    Null dereferences and assertions usually do; dispatch crashes and
    memory pressure tend to depend on timing.
    """
    if patterns is None:
        patterns = detect_patterns(report)
    if _has_pattern(patterns, "exc_bad_access_null", "sigabrt_assertion"):
        return True
    if _crashed_frames_with(report, "dispatch_"):
        return False
    if _has_pattern(patterns, "oom_jetsam"):
        return False
    return True


# =============================================================================
# Frames and symbols
# =============================================================================

def _swift_names(symbol: str) -> list[str]:
    """Identifiers of a "$s" mangled name: $s5MyApp14ViewControllerC11viewDidLoadyyF."""
    start = symbol.find("$s")
    if start < 0:
        return []
    names: list[str] = []
    pos = start + 2
    while pos < len(symbol):
        match = _SWIFT_LENGTH_RE.match(symbol, pos)
        if not match:
            break
        length = int(match.group(0))
        name = symbol[match.end():match.end() + length]
        if len(name) < length:
            break
        names.append(name)
        pos = match.end() + length
        if pos < len(symbol) and symbol[pos] in _SWIFT_TYPE_MARKERS:
            pos += 1
    return names


def clean_symbol_name(symbol: str) -> str:
    """Shorten Swift mangled and Objective-C symbols to ``Type.method()``."""
    names = _swift_names(symbol)
    if len(names) >= 2:
        return f"{names[-2]}.{names[-1]}()"
    match = _OBJC_METHOD_RE.search(symbol)
    if match:
        return f"{match.group(1)}.{match.group(2).split(':')[0]}()"
    return symbol


def find_key_frames(report: CrashReport, limit: int = 5) -> list[StackFrame]:
    """Distinct app frames of the crashed thread, padded with its top frames."""
    key_frames: list[StackFrame] = []
    seen: set[str] = set()
    frames = report.crashed_thread.frames

    for frame in frames:
        if frame.is_app_code and frame.symbol not in seen:
            key_frames.append(frame)
            seen.add(frame.symbol)
            if len(key_frames) >= limit:
                break

    padded = min(3, limit)
    for frame in frames[:3]:
        if len(key_frames) >= padded:
            break
        if frame.symbol not in seen:
            key_frames.append(frame)
            seen.add(frame.symbol)

    return key_frames


def get_top_suspects(report: CrashReport, limit: int = 3) -> list[str]:
    """Cleaned names of the first resolved app functions on the crashed thread."""
    suspects: list[str] = []
    for frame in report.crashed_thread.frames:
        if not frame.is_app_code or frame.needs_symbolication:
            continue
        cleaned = clean_symbol_name(frame.symbol)
        if cleaned not in suspects:
            suspects.append(cleaned)
        if len(suspects) >= limit:
            break
    return suspects


def describe_crash(report: CrashReport, patterns: Optional[list[CrashPattern]] = None) -> str:
    """One-line description: the dominant pattern, else the exception."""
    if patterns is None:
        patterns = detect_patterns(report)
    if patterns:
        return f"{patterns[0].name}: {patterns[0].description}"
    if report.exception.signal:
        return f"{report.exception.type} ({report.exception.signal})"
    return report.exception.type


# =============================================================================
# Rendering
# =============================================================================

def _render_frame(frame: StackFrame, with_binary: bool) -> str:
    location = f" ({frame.location})" if frame.location else ""
    if with_binary:
        return f"  {frame.index}: {frame.binary} - {frame.symbol}{location}"
    return f"  {frame.index}: {frame.symbol}{location}"


def generate_summary(report: CrashReport, patterns: Optional[list[CrashPattern]] = None) -> str:
    """Render the markdown crash brief.

    Args:
        report: Parsed (optionally symbolicated) report.
        patterns: Detected patterns; defaults to ``report.patterns``.
    """
    if patterns is None:
        patterns = report.patterns
    exc = report.exception
    lines = []

    lines.append("## Crash Summary")
    lines.append("")
    version = f" {report.app_version}" if report.app_version else ""
    lines.append(f"**Process**: {report.process_name}{version} ({report.bundle_id or 'unknown'})")
    codes = f" ({exc.codes})" if exc.codes else ""
    signal = f" [{exc.signal}]" if exc.signal else ""
    lines.append(f"**Exception**: {exc.type}{signal}{codes}")
    if exc.termination_reason:
        lines.append(f"**Termination**: {exc.termination_reason}")
    lines.append(f"**Device**: {report.device_model or 'Unknown'} - {report.os_version or 'Unknown'}")
    lines.append(f"**Time**: {report.timestamp.isoformat() if report.timestamp else 'Unknown'}")
    lines.append(f"**Symbolicated**: {'yes' if report.is_symbolicated else 'no'}")
    lines.append("")

    crashed = report.crashed_thread
    lines.append(f"### Crashed Thread ({crashed.index})")
    lines.append("")
    if crashed.name:
        lines.append(f"*{crashed.name}*")
        lines.append("")

    app_frames = [f for f in crashed.frames if f.is_app_code][:_FRAME_PREVIEW]
    if app_frames:
        lines.append("**App Code:**")
        lines.extend(_render_frame(f, with_binary=False) for f in app_frames)
    else:
        lines.append("**Stack:**")
        lines.extend(_render_frame(f, with_binary=True) for f in crashed.frames[:_FRAME_PREVIEW])
    lines.append("")

    lines.append("### Detected Patterns")
    lines.append("")
    if patterns:
        for pattern in patterns:
            lines.append(
                f"- **{pattern.name}** ({pattern.severity}, confidence {pattern.confidence:.2f}): "
                f"{pattern.description}"
            )
            lines.append(f"  *Likely cause*: {pattern.likely_cause}")
    else:
        lines.append("No known crash patterns detected.")
    lines.append("")

    return "\n".join(lines)


def generate_suggestions(report: CrashReport, patterns: list[CrashPattern]) -> list[str]:
    """Ordered, duplicate-free next steps for the crash.

    Order: symbolicate first (when needed), pattern suggestions, a generic
    hint when nothing matched, category hints, then the critical note.
    """
    suggestions: list[str] = []

    if not report.is_symbolicated:
        suggestions.append(SYMBOLICATE_FIRST)

    suggestions.extend(p.suggestion for p in patterns)
    if not patterns:
        suggestions.append(CHECK_LOGS)

    category = determine_category(report, patterns)
    for marker, hint in _CATEGORY_HINTS.get(category, []):
        if not any(marker in s for s in suggestions):
            suggestions.append(hint)

    if any(p.severity == "critical" for p in patterns):
        suggestions.append(CRITICAL_NOTE)

    return _dedupe(suggestions)


def analyze_patterns(
    report: CrashReport,
    patterns: Optional[list[CrashPattern]] = None,
    key_frame_limit: int = 5,
) -> PatternAnalysis:
    """Bundle the triage facts for ``report``; detects patterns when not given."""
    if patterns is None:
        patterns = detect_patterns(report)
    return PatternAnalysis(
        patterns=patterns,
        suggestions=generate_suggestions(report, patterns),
        category=determine_category(report, patterns),
        severity=determine_severity(report, patterns),
        is_user_reportable=is_user_reportable(report, patterns),
        key_frames=find_key_frames(report, limit=key_frame_limit),
    )
