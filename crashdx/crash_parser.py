"""Crash log parsing for Apple platform crash reports.

Detects and parses two report grammars into a CrashReport:
- .ips JSON (iOS 15+): a one-line header document followed by the report
  body, or a single JSON object with an "exception" key
- Classic .crash text: "Key:  Value" header, exception block,
  "Thread N Crashed:" sections and a trailing "Binary Images:" table

Parsing is tolerant: frame, image or thread entries that don't have the
expected shape are skipped. Only input that matches neither grammar is an
error (UnrecognizedCrashFormatError).
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from .crash_report import (
    BinaryImage,
    CrashException,
    CrashReport,
    StackFrame,
    ThreadInfo,
    format_uuid,
)
from .errors import CrashLogNotFoundError, UnrecognizedCrashFormatError

logger = logging.getLogger(__name__)

FORMAT_IPS = "ips"
FORMAT_CRASH = "crash"
FORMAT_UNKNOWN = "unknown"


# =============================================================================
# Pattern Matchers
# =============================================================================

# Detection marker for the classic grammar: "Thread 0 Crashed:"
_THREAD_CRASHED_RE = re.compile(r"^\s*Thread\s+\d+\s+Crashed:", re.MULTILINE)

# Thread section header: "Thread 3:", "Thread 0 Crashed:" or the macOS form
# "Thread 0 Crashed:: Dispatch queue: com.apple.main-thread"
_THREAD_HEADER_RE = re.compile(r"^Thread\s+(\d+)(\s+Crashed)?::?(?:\s*(.*))?$")

_DISPATCH_QUEUE_PREFIX = "Dispatch queue:"

# Thread name line preceding a section: "Thread 0 name:  Dispatch queue: com.apple.main-thread"
_THREAD_NAME_RE = re.compile(r"^Thread\s+(\d+)\s+name:\s*(.*)$")

# Frame line: "0   MyApp   0x0000000100001250 -[ViewController crash] + 28 (ViewController.m:42)"
# Unsymbolicated frames carry the image base as symbol: "0x100000000 + 4688"
_FRAME_RE = re.compile(
    r"^(\d+)\s+(\S+)\s+(0x[0-9a-fA-F]+)\s+(.+?)"
    r"(?:\s+\+\s+(\d+))?"
    r"(?:\s+\(([^()]+?):(\d+)\))?\s*$"
)

# Binary image line: "0x100000000 - 0x100003fff MyApp arm64  <a1b2c3d4...> /private/var/.../MyApp"
_IMAGE_RE = re.compile(
    r"^(0x[0-9a-fA-F]+)\s*-\s*(0x[0-9a-fA-F]+)\s+\+?(\S+)\s+(\S+)\s+"
    r"<?([0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12})>?\s+(.+)$"
)

# "Exception Type:  EXC_BAD_ACCESS (SIGSEGV)"
_EXCEPTION_TYPE_RE = re.compile(r"^(\S+)(?:\s+\((\S+?)\))?")

# Faulting address inside a subtype: "KERN_INVALID_ADDRESS at 0x0000000000000000"
_FAULT_ADDRESS_RE = re.compile(r"\bat\s+(0x[0-9a-fA-F]+)", re.IGNORECASE)

_WHITESPACE_RE = re.compile(r"\s*")

# Line prefixes that end the classic header scan and any open thread section
_SECTION_STARTS = ("Binary Images:", "Thread ", "Last Exception Backtrace:")

_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S.%f %z",
    "%Y-%m-%d %H:%M:%S %z",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
)


# =============================================================================
# Shared helpers
# =============================================================================

def _to_int(value: Any) -> Optional[int]:
    """Coerce an int or decimal/hex string; None when not a number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.lower().startswith("0x"):
                return int(text, 16)
            return int(text, 10)
        except ValueError:
            return None
    return None


def _str(value: Any) -> Optional[str]:
    """A non-empty string field, else None."""
    return value if isinstance(value, str) and value else None


def _first(sources: tuple[dict, ...], *keys: str) -> Any:
    """First non-empty value for any of ``keys`` across ``sources``."""
    for source in sources:
        for key in keys:
            value = source.get(key)
            if value not in (None, ""):
                return value
    return None


def _first_str(sources: tuple[dict, ...], *keys: str) -> Optional[str]:
    """First non-empty string value for any of ``keys`` across ``sources``."""
    for source in sources:
        for key in keys:
            value = _str(source.get(key))
            if value:
                return value
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse crash report timestamps ("2024-01-15 10:30:45.12 -0800", ISO 8601)."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    logger.debug("Unparseable crash timestamp: %r", text)
    return None


def extract_fault_address(subtype: Optional[str]) -> Optional[str]:
    """Pull the faulting address out of "KERN_INVALID_ADDRESS at 0x..."."""
    if not subtype:
        return None
    match = _FAULT_ADDRESS_RE.search(subtype)
    return match.group(1) if match else None


def _has_resolved_symbols(threads: list[ThreadInfo]) -> bool:
    """True if app frames (or, with none, any frames) already carry symbols."""
    frames = [f for t in threads for f in t.frames]
    app_frames = [f for f in frames if f.is_app_code]
    return any(not f.needs_symbolication for f in (app_frames or frames))


# =============================================================================
# Format Detection
# =============================================================================

def _load_ips_documents(text: str) -> Optional[tuple[dict, dict]]:
    """Return (header, body) when ``text`` holds .ips JSON, else None.

    A .ips file is a single-line header document followed by the body
    document; older tools emit a single object. The body is the first
    object carrying an "exception" key.
    """
    stripped = text.strip()
    if not stripped.startswith("{"):
        return None

    decoder = json.JSONDecoder()
    docs: list[Any] = []
    pos = 0
    while pos < len(stripped) and len(docs) < 2:
        try:
            obj, pos = decoder.raw_decode(stripped, pos)
        except json.JSONDecodeError:
            break
        docs.append(obj)
        pos = _WHITESPACE_RE.match(stripped, pos).end()

    for i, doc in enumerate(docs):
        if isinstance(doc, dict) and "exception" in doc:
            header = docs[0] if i == 1 and isinstance(docs[0], dict) else {}
            return header, doc
    return None


def detect_format(text: str) -> str:
    """Detect crash log grammar by structure.

    Returns:
        'ips', 'crash', or 'unknown'.
    """
    if not text or not text.strip():
        return FORMAT_UNKNOWN
    if _load_ips_documents(text) is not None:
        return FORMAT_IPS
    if _THREAD_CRASHED_RE.search(text):
        return FORMAT_CRASH
    return FORMAT_UNKNOWN


def parse_crash_log(text: Union[str, bytes]) -> CrashReport:
    """Parse raw crash log text of either grammar into a CrashReport.

    Raises:
        UnrecognizedCrashFormatError: if the text matches neither grammar.
    """
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")

    fmt = detect_format(text)
    if fmt == FORMAT_IPS:
        return parse_ips_format(text)
    if fmt == FORMAT_CRASH:
        return parse_classic_format(text)

    preview = text.strip()[:80]
    raise UnrecognizedCrashFormatError(preview=preview)


def parse_crash_file(path: Union[str, Path]) -> CrashReport:
    """Read and parse a crash log file (.ips or .crash, detected by content)."""
    crash_path = Path(path).expanduser()
    if not crash_path.is_file():
        raise CrashLogNotFoundError(str(path))
    logger.info("Parsing crash log %s", crash_path)
    return parse_crash_log(crash_path.read_text(encoding="utf-8", errors="replace"))


# =============================================================================
# .ips JSON Grammar
# =============================================================================

def _parse_ips_image(img: Any) -> Optional[BinaryImage]:
    if not isinstance(img, dict):
        return None
    base = _to_int(_first((img,), "base", "base_addr", "load_address"))
    size = _to_int(img.get("size"))
    end = _format_address(img.get("end_addr"))
    if not end and base is not None and size:
        end = f"0x{base + size - 1:x}"
    path = _str(img.get("path")) or ""
    name = _str(img.get("name")) or (path.rsplit("/", 1)[-1] if path else "unknown")
    return BinaryImage(
        name=name,
        arch=_str(img.get("arch")) or "arm64",
        uuid=format_uuid(_str(img.get("uuid"))),
        load_address=f"0x{base:x}" if base is not None else "0x0",
        end_address=end,
        path=path,
    )


def _format_address(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    number = _to_int(value)
    return f"0x{number:016x}" if number is not None else None


def _parse_ips_frame(
    frame: dict,
    index: int,
    images: list[Optional[BinaryImage]],
    app_names: set[str],
) -> StackFrame:
    image_index = _to_int(frame.get("imageIndex"))
    image = images[image_index] if image_index is not None and 0 <= image_index < len(images) else None
    binary = _str(frame.get("image_name")) or (image.name if image else "unknown")

    address = _format_address(_first((frame,), "instruction_addr", "address"))
    if address is None:
        image_offset = _to_int(frame.get("imageOffset"))
        base = _to_int(image.load_address) if image else None
        if image_offset is not None and base is not None:
            address = f"0x{base + image_offset:016x}"
        else:
            address = _format_address(frame.get("symbol_addr")) or "0x0"

    return StackFrame(
        index=index,
        binary=binary,
        address=address,
        symbol=_str(frame.get("symbol")) or address,
        offset=_to_int(frame.get("symbolLocation")),
        file=_str(frame.get("sourceFile")),
        line=_to_int(frame.get("sourceLine")),
        is_app_code=binary in app_names,
    )


def _parse_ips_threads(
    raw_threads: Any,
    images: list[Optional[BinaryImage]],
    app_names: set[str],
) -> list[ThreadInfo]:
    threads: list[ThreadInfo] = []
    if not isinstance(raw_threads, list):
        return threads

    for position, raw in enumerate(raw_threads):
        if not isinstance(raw, dict):
            logger.debug("Skipping malformed .ips thread #%d", position)
            continue
        raw_frames = raw.get("frames")
        frames = [
            _parse_ips_frame(f, i, images, app_names)
            for i, f in enumerate(raw_frames if isinstance(raw_frames, list) else [])
            if isinstance(f, dict)
        ]
        # Renumber so frame indices stay contiguous after skipped entries
        for i, frame in enumerate(frames):
            frame.index = i
        threads.append(ThreadInfo(
            index=position,
            name=_str(raw.get("name")),
            crashed=bool(raw.get("triggered") or raw.get("crashed")),
            frames=frames,
            queue=_str(raw.get("queue")),
        ))
    return threads


def _format_termination(termination: Any) -> Optional[str]:
    """Render the .ips termination object like the classic "Termination Reason:" line."""
    if isinstance(termination, str):
        return termination or None
    if not isinstance(termination, dict):
        return None
    parts = []
    if termination.get("namespace"):
        parts.append(f"Namespace {termination['namespace']}")
    code = _to_int(termination.get("code"))
    if code is not None:
        parts.append(f"Code 0x{code:x}")
    for key in ("indicator", "reason"):
        if termination.get(key):
            parts.append(str(termination[key]))
    return ", ".join(parts) or None


def _format_os_version(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        train = _str(value.get("train"))
        build = _str(value.get("build"))
        if train and build:
            return f"{train} ({build})"
        return train or build
    return value if isinstance(value, str) and value else None


def parse_ips_format(text: str) -> CrashReport:
    """Parse .ips JSON (header line + body, or a single object)."""
    docs = _load_ips_documents(text)
    if docs is None:
        raise UnrecognizedCrashFormatError(
            "Input is not an .ips JSON crash report (no JSON object with an 'exception' key)",
            preview=text.strip()[:80],
        )
    header, body = docs
    bundle_info = body.get("bundleInfo") if isinstance(body.get("bundleInfo"), dict) else {}
    sources = (body, bundle_info, header)

    process_name = _first_str(sources, "procName", "app_name", "name") or "Unknown"
    executable = _str(bundle_info.get("CFBundleExecutable"))
    app_names = {process_name} | ({executable} if executable else set())

    raw_images = _first((body,), "usedImages", "binary_images")
    images = [_parse_ips_image(img) for img in (raw_images if isinstance(raw_images, list) else [])]

    threads = _parse_ips_threads(body.get("threads"), images, app_names)

    crashed_index = next((i for i, t in enumerate(threads) if t.crashed), None)
    if crashed_index is None:
        faulting = _to_int(_first((body,), "faultingThread", "faulting_thread"))
        crashed_index = next((i for i, t in enumerate(threads) if t.index == faulting), 0)

    raw_exception = body.get("exception") if isinstance(body.get("exception"), dict) else {}
    subtype = _str(raw_exception.get("subtype"))
    codes = _str(raw_exception.get("codes"))
    exception = CrashException(
        type=_str(raw_exception.get("type")) or "UNKNOWN",
        codes=subtype or codes,
        signal=_str(raw_exception.get("signal")),
        signal_code=codes,
        fault_address=extract_fault_address(subtype) or extract_fault_address(codes),
        termination_reason=_format_termination(body.get("termination")),
    )

    return CrashReport(
        report_id=_first_str((header, body), "incident_id", "incident"),
        timestamp=parse_timestamp(_first((body, header), "captureTime", "timestamp")),
        platform="ios",
        device_model=_first_str((body, header), "modelCode", "hardware_model"),
        os_version=_format_os_version(_first((body, header), "osVersion", "os_version")),
        process_name=process_name,
        bundle_id=_first_str(sources, "CFBundleIdentifier", "bundle_id", "bundleID"),
        app_version=_first_str(sources, "CFBundleShortVersionString", "app_version"),
        code_type=_first_str((body,), "cpuType"),
        exception=exception,
        threads=threads,
        crashed_thread_index=crashed_index,
        binary_images=[img for img in images if img is not None],
        is_symbolicated=_has_resolved_symbols(threads),
        raw_log=text,
        source_format=FORMAT_IPS,
    )


# =============================================================================
# Classic .crash Grammar
# =============================================================================

def _parse_classic_preamble(lines: list[str]) -> dict[str, str]:
    """Collect "Key: Value" pairs before the first thread/image section."""
    fields: dict[str, str] = {}
    for line in lines:
        trimmed = line.strip()
        if trimmed.startswith(_SECTION_STARTS):
            break
        key, sep, value = trimmed.partition(":")
        if not sep or not key.strip():
            continue
        fields.setdefault(key.strip(), value.strip())
    return fields


def _parse_classic_exception(fields: dict[str, str]) -> CrashException:
    exc_type = "UNKNOWN"
    signal = None
    raw_type = fields.get("Exception Type")
    if raw_type:
        match = _EXCEPTION_TYPE_RE.match(raw_type)
        if match:
            exc_type, signal = match.group(1), match.group(2)

    subtype = fields.get("Exception Subtype") or None
    raw_codes = fields.get("Exception Codes") or None
    return CrashException(
        type=exc_type,
        codes=subtype or raw_codes,
        signal=signal,
        signal_code=raw_codes,
        fault_address=extract_fault_address(subtype) or extract_fault_address(raw_codes),
        termination_reason=fields.get("Termination Reason") or None,
    )


def _parse_classic_threads(lines: list[str], app_names: set[str]) -> list[ThreadInfo]:
    threads: list[ThreadInfo] = []
    names: dict[int, str] = {}
    current: Optional[ThreadInfo] = None

    for line in lines:
        trimmed = line.strip()

        name_match = _THREAD_NAME_RE.match(trimmed)
        if name_match:
            names[int(name_match.group(1))] = name_match.group(2).strip()
            current = None
            continue

        header_match = _THREAD_HEADER_RE.match(trimmed)
        if header_match:
            idx = int(header_match.group(1))
            name = names.get(idx) or (header_match.group(3) or "").strip() or None
            queue = None
            if name and name.startswith(_DISPATCH_QUEUE_PREFIX):
                queue = name[len(_DISPATCH_QUEUE_PREFIX):].strip() or None
            current = ThreadInfo(index=idx, name=name, crashed=bool(header_match.group(2)), queue=queue)
            threads.append(current)
            continue

        if current is None:
            continue

        # Blank line, register dump or image table ends the section
        if not trimmed or trimmed.startswith(_SECTION_STARTS):
            current = None
            continue

        frame_match = _FRAME_RE.match(trimmed)
        if not frame_match:
            logger.debug("Skipping malformed frame line: %r", trimmed)
            continue

        binary = frame_match.group(2)
        current.frames.append(StackFrame(
            index=int(frame_match.group(1)),
            binary=binary,
            address=frame_match.group(3),
            symbol=frame_match.group(4).strip(),
            offset=int(frame_match.group(5)) if frame_match.group(5) else None,
            file=frame_match.group(6),
            line=int(frame_match.group(7)) if frame_match.group(7) else None,
            is_app_code=binary in app_names,
        ))

    return threads


def _parse_classic_binary_images(lines: list[str]) -> list[BinaryImage]:
    images: list[BinaryImage] = []
    in_images = False

    for line in lines:
        trimmed = line.strip()
        if trimmed.startswith("Binary Images:"):
            in_images = True
            continue
        if not in_images or not trimmed:
            continue

        match = _IMAGE_RE.match(trimmed)
        if not match:
            logger.debug("Skipping malformed binary image line: %r", trimmed)
            continue
        images.append(BinaryImage(
            name=match.group(3),
            arch=match.group(4),
            uuid=format_uuid(match.group(5)),
            load_address=match.group(1),
            end_address=match.group(2),
            path=match.group(6).strip(),
        ))

    return images


def parse_classic_format(text: str) -> CrashReport:
    """Parse the classic line-oriented .crash grammar."""
    lines = text.splitlines()
    fields = _parse_classic_preamble(lines)

    process_field = fields.get("Process", "")
    process_name = process_field.split()[0] if process_field.split() else "Unknown"

    threads = _parse_classic_threads(lines, {process_name})

    crashed_index = next((i for i, t in enumerate(threads) if t.crashed), None)
    if crashed_index is None:
        triggered = _to_int(fields.get("Triggered by Thread", ""))
        crashed_index = next((i for i, t in enumerate(threads) if t.index == triggered), 0)

    return CrashReport(
        report_id=fields.get("Incident Identifier") or None,
        timestamp=parse_timestamp(fields.get("Date/Time")),
        platform="ios",
        device_model=fields.get("Hardware Model") or None,
        os_version=fields.get("OS Version") or None,
        process_name=process_name,
        bundle_id=fields.get("Identifier") or None,
        app_version=fields.get("Version") or None,
        code_type=fields.get("Code Type") or None,
        exception=_parse_classic_exception(fields),
        threads=threads,
        crashed_thread_index=crashed_index,
        binary_images=_parse_classic_binary_images(lines),
        is_symbolicated=_has_resolved_symbols(threads),
        raw_log=text,
        source_format=FORMAT_CRASH,
    )


# =============================================================================
# Report Queries
# =============================================================================

def find_app_binary(report: CrashReport) -> Optional[BinaryImage]:
    """Find the crashed application's own image among the loaded binaries."""
    for image in report.binary_images:
        if image.name == report.process_name:
            return image
    if report.bundle_id:
        for image in report.binary_images:
            if report.bundle_id in image.path:
                return image
    for image in report.binary_images:
        if ".app/" in image.path:
            return image
    return None


def get_unsymbolicated_frames(report: CrashReport) -> list[StackFrame]:
    """App-owned frames across all threads whose symbol is still an address."""
    return [f for f in report.app_frames() if f.needs_symbolication]
