"""Known crash signature catalog and detection.

Each CrashSignature pairs a pure predicate over a CrashReport with the text
shown when it matches. detect_patterns() runs every predicate in catalog
order and returns the matches ranked for triage: severity first
(critical before low), then confidence.

Confidence is a fixed heuristic, not a statistical estimate:
    0.7 base, +0.1 when the report is symbolicated, +0.1 for critical
    signatures, capped at 1.0.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Optional

from .config import CrashDxConfig
from .crash_report import SEVERITIES, SEVERITY_ORDER, CrashPattern, CrashReport, StackFrame

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.7
SYMBOLICATED_BONUS = 0.1
CRITICAL_BONUS = 0.1

Matcher = Callable[[CrashReport], bool]
FrameFilter = Callable[[CrashReport], list[StackFrame]]


@dataclass(frozen=True)
class CrashSignature:
    """Static catalog entry: predicate plus the text shown on a match."""
    id: str
    name: str
    severity: str
    matcher: Matcher
    description: str
    likely_cause: str
    suggestion: str
    frame_filter: Optional[FrameFilter] = None
    """Selects the crashed-thread frames reported as evidence."""


def severity_rank(severity: str) -> int:
    """Sort key for a severity tier; unknown tiers sort last."""
    return SEVERITY_ORDER.get(severity, len(SEVERITIES))


# =============================================================================
# Predicate helpers
# =============================================================================

def _is_exception(report: CrashReport, name: str) -> bool:
    """Match an exception family by type or by BSD signal name."""
    exc = report.exception
    return exc.type == name or exc.signal == name


def _report_text(report: CrashReport) -> str:
    parts = [report.raw_log or "", report.exception.termination_reason or ""]
    return "\n".join(parts)


def _exception_codes(report: CrashReport) -> str:
    exc = report.exception
    return " ".join(c for c in (exc.codes, exc.signal_code) if c)


def _frames_with(report: CrashReport, *markers: str) -> list[StackFrame]:
    return [
        f for f in report.crashed_thread.frames
        if any(m in (f.symbol or "") for m in markers)
    ]


def _is_null_fault(report: CrashReport, null_page_limit: int) -> bool:
    address = report.exception.fault_address_value()
    return address is not None and address < null_page_limit


def _most_repeated_symbol(frames: list[StackFrame]) -> tuple[Optional[str], int]:
    counts = Counter(f.symbol for f in frames)
    if not counts:
        return None, 0
    return counts.most_common(1)[0]


# =============================================================================
# Catalog
# =============================================================================

def build_signatures(config: Optional[CrashDxConfig] = None) -> list[CrashSignature]:
    """Build the ordered signature catalog with thresholds from ``config``."""
    config = config or CrashDxConfig()
    null_page_limit = config.null_page_limit
    min_frames = config.stack_overflow_min_frames
    min_repeats = config.stack_overflow_min_repeats
    frame_limit = config.key_frame_limit

    def crashed_app_frames(r: CrashReport) -> list[StackFrame]:
        return [f for f in r.crashed_thread.frames if f.is_app_code][:frame_limit]

    def is_null_deref(r: CrashReport) -> bool:
        return r.exception.type == "EXC_BAD_ACCESS" and _is_null_fault(r, null_page_limit)

    def is_invalid_address(r: CrashReport) -> bool:
        return (
            r.exception.type == "EXC_BAD_ACCESS"
            and "KERN_INVALID_ADDRESS" in _exception_codes(r)
        )

    def is_assertion(r: CrashReport) -> bool:
        return _is_exception(r, "SIGABRT") and bool(_frames_with(r, "assert", "fatalError"))

    def is_uncaught_exception(r: CrashReport) -> bool:
        return _is_exception(r, "SIGABRT") and bool(_frames_with(r, "objc_exception_throw", "NSException"))

    def is_watchdog(r: CrashReport) -> bool:
        text = _report_text(r)
        return r.exception.type == "EXC_CRASH" and ("8badf00d" in text or "watchdog" in text.lower())

    def is_jetsam(r: CrashReport) -> bool:
        text = _report_text(r)
        return r.exception.type == "EXC_RESOURCE" or "jetsam" in text or "EXC_RESOURCE" in text

    def is_stack_overflow(r: CrashReport) -> bool:
        frames = r.crashed_thread.frames
        if len(frames) < min_frames:
            return False
        _, count = _most_repeated_symbol(frames)
        return count > min_repeats

    def recursive_frames(r: CrashReport) -> list[StackFrame]:
        symbol, _ = _most_repeated_symbol(r.crashed_thread.frames)
        return [f for f in r.crashed_thread.frames if f.symbol == symbol]

    def is_dispatch(r: CrashReport) -> bool:
        return bool(dispatch_frames(r))

    def dispatch_frames(r: CrashReport) -> list[StackFrame]:
        return [
            f for f in r.crashed_thread.frames
            if "dispatch_" in (f.symbol or "") or "libdispatch" in f.binary
        ]

    swift_markers = ("swift_fatalError", "swift_unexpectedError", "_swift_stdlib_")

    return [
        CrashSignature(
            id="exc_bad_access_null",
            name="Null Pointer Dereference",
            severity="critical",
            matcher=is_null_deref,
            description="Attempted to access memory at a null pointer address",
            likely_cause="Force-unwrapping nil optional or accessing deallocated object",
            suggestion="Check for optional binding before accessing. Use guard let or if let.",
            frame_filter=crashed_app_frames,
        ),
        CrashSignature(
            id="exc_bad_access_kern_invalid",
            name="Invalid Memory Access",
            severity="critical",
            matcher=is_invalid_address,
            description="Attempted to access invalid memory region",
            likely_cause="Use-after-free, dangling pointer, or buffer overflow",
            suggestion="Enable Address Sanitizer in Xcode to catch memory issues at development time.",
            frame_filter=crashed_app_frames,
        ),
        CrashSignature(
            id="sigabrt_assertion",
            name="Assertion Failure",
            severity="high",
            matcher=is_assertion,
            description="Application terminated due to assertion or fatalError",
            likely_cause="Precondition failed or explicit abort in code",
            suggestion="Check the assertion message in crash log for specific failure condition.",
            frame_filter=lambda r: _frames_with(r, "assert", "fatalError"),
        ),
        CrashSignature(
            id="sigabrt_uncaught_exception",
            name="Uncaught Exception",
            severity="high",
            matcher=is_uncaught_exception,
            description="Uncaught Objective-C exception caused crash",
            likely_cause="NSException thrown but not caught (array bounds, invalid selector, etc.)",
            suggestion="Check Last Exception Backtrace in crash log for exception type and message.",
            frame_filter=lambda r: _frames_with(r, "objc_exception_throw", "NSException"),
        ),
        CrashSignature(
            id="watchdog_timeout",
            name="Watchdog Timeout",
            severity="critical",
            matcher=is_watchdog,
            description="App was terminated by iOS watchdog for taking too long",
            likely_cause="Main thread blocked for too long (network, heavy computation, deadlock)",
            suggestion="Move long-running operations to background threads. Use async/await.",
            frame_filter=crashed_app_frames,
        ),
        CrashSignature(
            id="oom_jetsam",
            name="Out of Memory (Jetsam)",
            severity="high",
            matcher=is_jetsam,
            description="App was terminated due to excessive memory usage",
            likely_cause="Memory leak, loading large assets, or insufficient memory management",
            suggestion="Profile with Instruments. Check for retain cycles and large allocations.",
        ),
        CrashSignature(
            id="sigbus_alignment",
            name="Bus Error (Alignment)",
            severity="critical",
            matcher=lambda r: _is_exception(r, "SIGBUS"),
            description="Memory alignment or hardware access error",
            likely_cause="Misaligned memory access or corrupted memory",
            suggestion="Check for pointer casting issues or corrupted data structures.",
            frame_filter=crashed_app_frames,
        ),
        CrashSignature(
            id="stack_overflow",
            name="Stack Overflow",
            severity="high",
            matcher=is_stack_overflow,
            description="Stack exhausted due to deep or infinite recursion",
            likely_cause="Recursive function without proper base case",
            suggestion="Check for infinite recursion. Consider using iterative approach.",
            frame_filter=recursive_frames,
        ),
        CrashSignature(
            id="swift_runtime_failure",
            name="Swift Runtime Error",
            severity="high",
            matcher=lambda r: bool(_frames_with(r, *swift_markers)),
            description="Swift runtime detected an unrecoverable error",
            likely_cause="Force unwrap of nil, array index out of bounds, or precondition failure",
            suggestion="Look for force unwrap (!) or subscript access in the code path.",
            frame_filter=lambda r: _frames_with(r, *swift_markers),
        ),
        CrashSignature(
            id="dispatch_queue_crash",
            name="GCD/Dispatch Crash",
            severity="medium",
            matcher=is_dispatch,
            description="Crash in Grand Central Dispatch",
            likely_cause="Thread safety issue, accessing UI from background, or dispatch_sync deadlock",
            suggestion="Ensure UI updates on main thread. Check for dispatch_sync from same queue.",
            frame_filter=dispatch_frames,
        ),
    ]


CRASH_SIGNATURES: list[CrashSignature] = build_signatures()


# =============================================================================
# Detection
# =============================================================================

def calculate_confidence(signature: CrashSignature, report: CrashReport) -> float:
    """Heuristic confidence for a signature match, in [0, 1]."""
    confidence = BASE_CONFIDENCE
    if report.is_symbolicated:
        confidence += SYMBOLICATED_BONUS
    if signature.severity == "critical":
        confidence += CRITICAL_BONUS
    return round(min(confidence, 1.0), 2)


def detect_patterns(
    report: CrashReport,
    signatures: Optional[list[CrashSignature]] = None,
) -> list[CrashPattern]:
    """Evaluate every signature against ``report`` and rank the matches.

    A predicate that raises counts as no match for that signature only.
    The report is not modified; callers attach the result to
    ``report.patterns`` themselves.

    Returns:
        Matches sorted by severity tier, then confidence (highest first),
        then catalog order.
    """
    detected: list[CrashPattern] = []

    for signature in signatures if signatures is not None else CRASH_SIGNATURES:
        try:
            if not signature.matcher(report):
                continue
            matched = signature.frame_filter(report) if signature.frame_filter else []
        except Exception as e:
            logger.debug("Signature %s failed: %s", signature.id, e)
            continue

        detected.append(CrashPattern(
            id=signature.id,
            name=signature.name,
            severity=signature.severity,
            description=signature.description,
            likely_cause=signature.likely_cause,
            suggestion=signature.suggestion,
            confidence=calculate_confidence(signature, report),
            matched_frames=tuple(matched),
        ))

    detected.sort(key=lambda p: (severity_rank(p.severity), -p.confidence))
    if detected:
        logger.info("Detected %d crash pattern(s): %s", len(detected), ", ".join(p.id for p in detected))
    return detected
