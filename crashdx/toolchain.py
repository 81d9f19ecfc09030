"""Developer tool resolution for symbolication.

Searches PATH, ``xcrun --find`` and known Xcode install directories for the
binaries used to symbolicate crash reports (atos, dwarfdump), which are
often not on the user's PATH.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Developer directories that ship atos / dwarfdump
_XCODE_TOOL_DIRS = (
    "/Applications/Xcode.app/Contents/Developer/usr/bin",
    "/Applications/Xcode.app/Contents/Developer/Toolchains/XcodeDefault.xctoolchain/usr/bin",
    "/Library/Developer/CommandLineTools/usr/bin",
)


def _find_with_xcrun(name: str) -> Optional[str]:
    """Ask xcrun for the active developer directory's copy of a tool."""
    xcrun = shutil.which("xcrun")
    if not xcrun:
        return None
    try:
        result = subprocess.run(
            [xcrun, "--find", name],
            capture_output=True,
            text=True,
            timeout=5.0,
        )
    except (subprocess.SubprocessError, OSError) as e:
        logger.debug("xcrun --find %s failed: %s", name, e)
        return None
    path = result.stdout.strip()
    if result.returncode == 0 and path and Path(path).is_file():
        return path
    return None


def _find_in_xcode_dirs(name: str) -> Optional[str]:
    """Search for a tool in standard Xcode install locations beyond PATH."""
    for tool_dir in _XCODE_TOOL_DIRS:
        candidate = Path(tool_dir) / name
        if candidate.is_file():
            return str(candidate)
    # Side-by-side Xcode installs (Xcode-beta.app, Xcode_15.2.app, ...)
    for app in sorted(Path("/Applications").glob("Xcode*.app"), reverse=True):
        candidate = app / "Contents" / "Developer" / "usr" / "bin" / name
        if candidate.is_file():
            return str(candidate)
    return None


def which_or_xcode(name: str) -> Optional[str]:
    """Find a developer tool on PATH, via xcrun, or in Xcode directories.

    Args:
        name: Binary name to search for (e.g., atos).

    Returns:
        Absolute path to the binary, or None if not found.
    """
    return shutil.which(name) or _find_with_xcrun(name) or _find_in_xcode_dirs(name)
