"""Crash report symbolication with atos and dSYM bundles.

Resolves the raw addresses of app-owned frames into function, file and line
using the DWARF file inside a .dSYM bundle:

    <App>.app.dSYM/Contents/Resources/DWARF/<App>

All addresses are resolved in one batched atos invocation
(``atos -arch arm64 -o <dwarf> -l <load address> <addr> <addr> ...``), which
prints one line per address in input order. atos echoes the address back
when it cannot resolve it.

Nothing in here raises on a missing dSYM, a UUID mismatch or a failed atos
run: the report comes back with the affected frames left unresolved.
"""

from __future__ import annotations

import copy
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .config import CrashDxConfig
from .crash_parser import find_app_binary
from .crash_report import BinaryImage, CrashReport, normalize_uuid
from .toolchain import which_or_xcode

logger = logging.getLogger(__name__)

DSYM_SUFFIX = ".dSYM"
DWARF_SUBPATH = ("Contents", "Resources", "DWARF")

STATUS_FOUND = "found"
STATUS_NOT_FOUND = "not_found"
STATUS_MISMATCH = "mismatch"
STATUS_NO_WORK = "no_work"
STATUS_FAILED = "failed"


@dataclass
class AtosResult:
    """Resolution of a single address."""
    address: str
    symbol: str
    file: Optional[str] = None
    line: Optional[int] = None
    offset: Optional[int] = None
    success: bool = False


@dataclass
class SymbolicationOutcome:
    """Refined report plus what happened while producing it."""
    report: CrashReport
    status: str
    resolved: int = 0
    dsym_file: Optional[str] = None
    message: Optional[str] = None


# =============================================================================
# atos / dwarfdump Output Parsing
# =============================================================================

# "-[ViewController buttonTapped:] (in MyApp) (ViewController.m:42)"
_ATOS_FULL_RE = re.compile(r"^(.+?)\s+\(in\s+.+?\)\s+\((.+?):(\d+)\)$")
# "-[ViewController buttonTapped:] (in MyApp) + 28"
_ATOS_SIMPLE_RE = re.compile(r"^(.+?)\s+\(in\s+.+?\)(?:\s+\+\s+(\d+))?")
# "UUID: A1B2C3D4-E5F6-7890-ABCD-EF1234567890 (arm64) /path/to/dwarf"
_DWARFDUMP_UUID_RE = re.compile(r"UUID:\s+([0-9A-Fa-f-]{32,36})\s+\(([^)]+)\)")


def parse_atos_line(address: str, line: Optional[str]) -> AtosResult:
    """Parse one line of atos output for ``address``.

    A line that is missing, empty, or just an address is a failed lookup.
    """
    if line is None or not line.strip():
        return AtosResult(address=address, symbol=address)

    trimmed = line.strip()
    if trimmed == address or trimmed.lower().startswith("0x"):
        return AtosResult(address=address, symbol=address)

    match = _ATOS_FULL_RE.match(trimmed)
    if match:
        return AtosResult(
            address=address,
            symbol=match.group(1),
            file=match.group(2),
            line=int(match.group(3)),
            success=True,
        )

    match = _ATOS_SIMPLE_RE.match(trimmed)
    if match:
        return AtosResult(
            address=address,
            symbol=match.group(1),
            offset=int(match.group(2)) if match.group(2) else None,
            success=True,
        )

    return AtosResult(address=address, symbol=trimmed, success=True)


def uuids_match(first: Optional[str], second: Optional[str]) -> bool:
    """Case- and hyphen-insensitive UUID comparison; empty never matches."""
    a, b = normalize_uuid(first), normalize_uuid(second)
    return bool(a) and a == b


# =============================================================================
# dSYM Discovery
# =============================================================================

def find_dsym_file(dsym_path: str, binary_name: str) -> Optional[str]:
    """Locate the dSYM bundle for ``binary_name``.

    ``dsym_path`` is either a .dSYM bundle or a directory holding bundles.
    In a directory, an exact name match wins over a substring match, which
    wins over any bundle at all.
    """
    path = Path(dsym_path).expanduser()
    if not path.exists():
        return None
    if path.name.endswith(DSYM_SUFFIX) and path.is_dir():
        return str(path)
    if not path.is_dir():
        return None

    try:
        bundles = sorted(p for p in path.iterdir() if p.is_dir() and p.name.endswith(DSYM_SUFFIX))
    except OSError as e:
        logger.warning("Cannot list dSYM directory %s: %s", path, e)
        return None

    exact_names = (f"{binary_name}.app{DSYM_SUFFIX}", f"{binary_name}{DSYM_SUFFIX}")
    for bundle in bundles:
        if bundle.name in exact_names:
            return str(bundle)
    if binary_name:
        for bundle in bundles:
            if binary_name in bundle.name:
                return str(bundle)
    return str(bundles[0]) if bundles else None


def find_dsym_in_common_locations(
    bundle_id: str,
    search_paths: Iterable[str] = (),
    home: Optional[str] = None,
) -> Optional[str]:
    """Look for a dSYM in configured paths and the usual Xcode output folders."""
    home_dir = Path(home) if home else Path.home()
    locations = [Path(p).expanduser() for p in search_paths] + [
        home_dir / "Library" / "Developer" / "Xcode" / "DerivedData",
        home_dir / "Library" / "Developer" / "Xcode" / "Archives",
        home_dir / "Downloads",
        home_dir / "Desktop",
    ]
    app_name = bundle_id.rsplit(".", 1)[-1] if bundle_id else ""

    for location in locations:
        if not location.is_dir():
            continue
        dsym = find_dsym_file(str(location), app_name)
        if dsym:
            logger.info("Found dSYM %s in %s", dsym, location)
            return dsym
    return None


def find_dwarf_file(dsym_path: str, binary_name: Optional[str] = None) -> Optional[str]:
    """Return the DWARF file inside a dSYM, preferring one named after the binary."""
    dwarf_dir = Path(dsym_path).joinpath(*DWARF_SUBPATH)
    if not dwarf_dir.is_dir():
        return None
    try:
        files = sorted(p for p in dwarf_dir.iterdir() if p.is_file())
    except OSError as e:
        logger.warning("Cannot list DWARF directory %s: %s", dwarf_dir, e)
        return None

    for candidate in files:
        if binary_name and candidate.name == binary_name:
            return str(candidate)
    return str(files[0]) if files else None


def read_dsym_uuids(
    dwarf_file: str,
    dwarfdump: Optional[str] = None,
    timeout: float = 10.0,
) -> dict[str, str]:
    """Read ``{arch: UUID}`` from a DWARF file with ``dwarfdump --uuid``.

    Returns an empty dict when the UUIDs cannot be read.
    """
    tool = dwarfdump or which_or_xcode("dwarfdump")
    if not tool:
        logger.warning("dwarfdump not found (dSYM UUID cannot be verified)")
        return {}

    try:
        result = subprocess.run(
            [tool, "--uuid", dwarf_file],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.error("dwarfdump timed out after %.0fs", timeout)
        return {}
    except (subprocess.SubprocessError, OSError) as e:
        logger.error("dwarfdump failed: %s", e)
        return {}

    if result.returncode != 0:
        logger.warning("dwarfdump failed: %s", result.stderr.strip())
        return {}

    return {arch: normalize_uuid(uuid) for uuid, arch in _DWARFDUMP_UUID_RE.findall(result.stdout)}


# =============================================================================
# atos
# =============================================================================

def run_atos(
    dwarf_file: str,
    load_address: str,
    addresses: list[str],
    arch: str = "arm64",
    atos: Optional[str] = None,
    timeout: float = 30.0,
) -> list[AtosResult]:
    """Resolve ``addresses`` in one atos call.

    Always returns one AtosResult per address, in order. A missing tool,
    timeout, or non-zero exit leaves every address unresolved.
    """
    if not addresses:
        return []

    def unresolved() -> list[AtosResult]:
        return [AtosResult(address=a, symbol=a) for a in addresses]

    tool = atos or which_or_xcode("atos")
    if not tool:
        logger.warning("atos not found (cannot resolve addresses)")
        return unresolved()

    cmd = [tool, "-arch", arch, "-o", dwarf_file, "-l", load_address] + list(addresses)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.error("atos timed out after %.0fs", timeout)
        return unresolved()
    except (subprocess.SubprocessError, OSError) as e:
        logger.error("atos failed: %s", e)
        return unresolved()

    if result.returncode != 0:
        logger.warning("atos failed: %s", result.stderr.strip())
        return unresolved()

    lines = result.stdout.splitlines()
    return [parse_atos_line(addr, lines[i] if i < len(lines) else None) for i, addr in enumerate(addresses)]


# =============================================================================
# Symbolicator
# =============================================================================

class Symbolicator:
    """Symbolicate the app frames of a CrashReport against a dSYM.

    The input report is never modified; a refined deep copy is returned.

    Usage:
        symbolicator = Symbolicator()
        outcome = symbolicator.run(report, "build/MyApp.app.dSYM")
        if outcome.status == "found":
            report = outcome.report
    """

    def __init__(
        self,
        atos_path: Optional[str] = None,
        dwarfdump_path: Optional[str] = None,
        config: Optional[CrashDxConfig] = None,
    ):
        """Initialize Symbolicator.

        Args:
            atos_path: Optional explicit path to the atos binary.
            dwarfdump_path: Optional explicit path to dwarfdump (UUID checks).
            config: Timeouts and default architecture.
        """
        self.config = config or CrashDxConfig()
        self._atos = atos_path or which_or_xcode("atos")
        self._dwarfdump = dwarfdump_path or which_or_xcode("dwarfdump")

        if not self._atos:
            logger.warning("atos not found (symbolication disabled)")

    def _uuid_matches(self, dwarf_file: str, image: BinaryImage) -> bool:
        if not normalize_uuid(image.uuid):
            return True

        dsym_uuids = {}
        if self._dwarfdump:
            dsym_uuids = read_dsym_uuids(dwarf_file, dwarfdump=self._dwarfdump, timeout=self.config.uuid_timeout)
        if not dsym_uuids:
            logger.warning("Could not read dSYM UUID for %s, continuing unverified", dwarf_file)
            return True

        if any(uuids_match(image.uuid, uuid) for uuid in dsym_uuids.values()):
            return True

        logger.warning(
            "dSYM UUID mismatch for %s: crash report has %s, dSYM has %s",
            image.name,
            image.uuid,
            ", ".join(sorted(dsym_uuids.values())),
        )
        return False

    def run(self, report: CrashReport, dsym_path: str, arch: Optional[str] = None) -> SymbolicationOutcome:
        """Symbolicate ``report`` and describe the result.

        Args:
            report: Parsed crash report.
            dsym_path: .dSYM bundle or directory containing bundles.
            arch: Architecture override; defaults to the app image's arch.

        Returns:
            SymbolicationOutcome whose report is the input itself when no
            usable dSYM was found, otherwise a refined copy.
        """
        app_binary = find_app_binary(report)
        if app_binary is None:
            logger.warning("Could not find app binary in crash report")
            return SymbolicationOutcome(report, STATUS_NOT_FOUND, message="app binary not found in crash report")

        dsym = find_dsym_file(dsym_path, app_binary.name)
        if dsym is None:
            logger.warning("dSYM not found for %s in %s", app_binary.name, dsym_path)
            return SymbolicationOutcome(report, STATUS_NOT_FOUND, message=f"dSYM not found in {dsym_path}")

        dwarf_file = find_dwarf_file(dsym, app_binary.name)
        if dwarf_file is None:
            logger.warning("DWARF file not found in %s", dsym)
            return SymbolicationOutcome(report, STATUS_NOT_FOUND, dsym_file=dsym, message="no DWARF file in dSYM")

        if not self._uuid_matches(dwarf_file, app_binary):
            return SymbolicationOutcome(report, STATUS_MISMATCH, dsym_file=dsym, message="dSYM UUID does not match")

        refined = copy.deepcopy(report)
        app_frames = refined.app_frames()
        pending = [f for f in app_frames if f.needs_symbolication]

        if not pending:
            logger.info("No frames need symbolication")
            if app_frames:
                refined.is_symbolicated = True
            return SymbolicationOutcome(refined, STATUS_NO_WORK, dsym_file=dsym)

        addresses = [f.address for f in pending]
        if not self._atos:
            results = [AtosResult(address=a, symbol=a) for a in addresses]
        else:
            results = run_atos(
                dwarf_file,
                app_binary.load_address,
                addresses,
                arch=arch or app_binary.arch or self.config.default_arch,
                atos=self._atos,
                timeout=self.config.atos_timeout,
            )

        resolved = 0
        for frame, result in zip(pending, results):
            if not result.success:
                continue
            frame.symbol = result.symbol
            frame.offset = result.offset
            if result.file:
                frame.file = result.file
            if result.line:
                frame.line = result.line
            resolved += 1

        refined.is_symbolicated = refined.is_symbolicated or resolved > 0
        logger.info("Symbolicated %d of %d frames using %s", resolved, len(pending), dsym)
        return SymbolicationOutcome(
            refined,
            STATUS_FOUND if resolved else STATUS_FAILED,
            resolved=resolved,
            dsym_file=dsym,
        )

    def symbolicate(self, report: CrashReport, dsym_path: str, arch: Optional[str] = None) -> CrashReport:
        """Return a symbolicated copy of ``report`` (or ``report`` itself if nothing could be done)."""
        return self.run(report, dsym_path, arch=arch).report
