"""Platform-neutral crash report model.

Both crash log grammars (.ips JSON and classic .crash text) are parsed into
these dataclasses. The symbolicator refines a copy of the report, the pattern
detector reads it, and the summary generator renders it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

SEVERITIES = ("critical", "high", "medium", "low")

# Lower rank sorts first
SEVERITY_ORDER = {name: rank for rank, name in enumerate(SEVERITIES)}

UNRESOLVED_SYMBOL = "???"


def looks_like_address(symbol: Optional[str]) -> bool:
    """True when a symbol field still holds a raw address (or nothing useful)."""
    if not symbol:
        return True
    symbol = symbol.strip()
    return symbol == UNRESOLVED_SYMBOL or symbol.lower().startswith("0x")


def normalize_uuid(uuid: Optional[str]) -> str:
    """Strip hyphens and upper-case a UUID for comparison."""
    return (uuid or "").replace("-", "").strip().upper()


def format_uuid(uuid: Optional[str]) -> str:
    """Format a UUID as 8-4-4-4-12 upper-case; odd lengths pass through."""
    clean = normalize_uuid(uuid)
    if len(clean) != 32:
        return uuid or ""
    return f"{clean[0:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


@dataclass
class StackFrame:
    """A single stack frame of a crash thread."""
    index: int
    """Frame number, 0 is the crash point."""

    binary: str
    """Owning binary / library name."""

    address: str
    """Instruction address as a hex string."""

    symbol: str
    """Raw address before symbolication, function name after."""

    offset: Optional[int] = None
    """Byte offset from the symbol start."""

    file: Optional[str] = None
    """Source file, once resolved."""

    line: Optional[int] = None
    """Source line, once resolved."""

    is_app_code: bool = False
    """True for frames inside the crashed application's own executable."""

    @property
    def needs_symbolication(self) -> bool:
        return looks_like_address(self.symbol)

    @property
    def location(self) -> Optional[str]:
        if self.file and self.line:
            return f"{self.file}:{self.line}"
        return None


@dataclass
class ThreadInfo:
    """A thread and its frames, innermost first."""
    index: int
    name: Optional[str] = None
    crashed: bool = False
    frames: list[StackFrame] = field(default_factory=list)
    queue: Optional[str] = None


@dataclass
class CrashException:
    """Exception / signal information for the fatal event."""
    type: str = "UNKNOWN"
    codes: Optional[str] = None
    signal: Optional[str] = None
    signal_code: Optional[str] = None
    fault_address: Optional[str] = None
    termination_reason: Optional[str] = None

    def fault_address_value(self) -> Optional[int]:
        """Faulting address as an int, or None if absent or unparseable."""
        if not self.fault_address:
            return None
        try:
            return int(self.fault_address, 16)
        except ValueError:
            return None


@dataclass
class BinaryImage:
    """A binary loaded in the process at crash time."""
    name: str
    arch: str
    uuid: str
    load_address: str
    end_address: Optional[str] = None
    path: str = ""


@dataclass(frozen=True)
class CrashPattern:
    """A signature that matched a report. Created fresh on every detection run."""
    id: str
    name: str
    severity: str
    description: str
    likely_cause: str
    suggestion: str
    confidence: float
    matched_frames: tuple[StackFrame, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["matched_frames"] = [asdict(f) for f in self.matched_frames]
        return data


@dataclass
class CrashReport:
    """Unified crash report.

    The crashed thread is stored as a position in ``threads`` rather than a
    second copy, so ``report.crashed_thread`` is always a member of
    ``report.threads``. ``__post_init__`` keeps exactly one thread flagged
    as crashed.
    """

    process_name: str = "Unknown"
    exception: CrashException = field(default_factory=CrashException)
    threads: list[ThreadInfo] = field(default_factory=list)
    crashed_thread_index: int = 0
    binary_images: list[BinaryImage] = field(default_factory=list)
    timestamp: Optional[datetime] = None
    platform: str = "ios"
    report_id: Optional[str] = None
    bundle_id: Optional[str] = None
    app_version: Optional[str] = None
    device_model: Optional[str] = None
    os_version: Optional[str] = None
    code_type: Optional[str] = None
    is_symbolicated: bool = False
    patterns: list[CrashPattern] = field(default_factory=list)
    raw_log: Optional[str] = None
    source_format: str = "unknown"

    def __post_init__(self) -> None:
        if not self.threads:
            self.threads = [ThreadInfo(index=0, crashed=True)]
        if not 0 <= self.crashed_thread_index < len(self.threads):
            self.crashed_thread_index = 0
        for position, thread in enumerate(self.threads):
            thread.crashed = position == self.crashed_thread_index

    @property
    def crashed_thread(self) -> ThreadInfo:
        return self.threads[self.crashed_thread_index]

    def app_frames(self) -> list[StackFrame]:
        """All application-owned frames across every thread."""
        return [f for t in self.threads for f in t.frames if f.is_app_code]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat() if self.timestamp else None
        data["crashed_thread"] = self.crashed_thread.index
        return data
