"""
crashdx - Crash Diagnosis

Parses Apple platform crash logs (.ips and .crash), symbolicates them with
dSYM bundles, and classifies them against known crash signatures.
"""

__version__ = "1.0.0"

from .errors import (
    CrashDxError,
    UnrecognizedCrashFormatError,
    CrashLogNotFoundError,
    ConfigError,
)

from .crash_report import (
    StackFrame,
    ThreadInfo,
    CrashException,
    BinaryImage,
    CrashPattern,
    CrashReport,
)
from .config import CrashDxConfig, load_config
from .crash_parser import detect_format, parse_crash_log, parse_crash_file
from .symbolicate import Symbolicator, SymbolicationOutcome
from .pattern_detector import CrashSignature, CRASH_SIGNATURES, build_signatures, detect_patterns
from .crash_summary import generate_summary, generate_suggestions, analyze_patterns
from .crash_analyzer import CrashAnalysis, analyze_crash, format_analysis

__all__ = [
    "__version__",
    "CrashDxError",
    "UnrecognizedCrashFormatError",
    "CrashLogNotFoundError",
    "ConfigError",
    "StackFrame",
    "ThreadInfo",
    "CrashException",
    "BinaryImage",
    "CrashPattern",
    "CrashReport",
    "CrashDxConfig",
    "load_config",
    "detect_format",
    "parse_crash_log",
    "parse_crash_file",
    "Symbolicator",
    "SymbolicationOutcome",
    "CrashSignature",
    "CRASH_SIGNATURES",
    "build_signatures",
    "detect_patterns",
    "generate_summary",
    "generate_suggestions",
    "analyze_patterns",
    "CrashAnalysis",
    "analyze_crash",
    "format_analysis",
]
