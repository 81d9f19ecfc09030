"""Shared pytest configuration and crash log fixtures for crashdx tests."""

from __future__ import annotations

import json
from typing import Optional

import pytest

from crashdx.crash_report import (
    BinaryImage,
    CrashException,
    CrashReport,
    StackFrame,
    ThreadInfo,
)

APP_UUID = "A1B2C3D4-E5F6-7890-ABCD-EF1234567890"

CLASSIC_CRASH = """\
Incident Identifier: 7A3C1B2D-0000-4000-8000-123456789ABC
Hardware Model:      iPhone14,2
Process:             MyApp [1234]
Path:                /private/var/containers/Bundle/Application/ABCD/MyApp.app/MyApp
Identifier:          com.example.MyApp
Version:             1.2.3 (45)
Code Type:           ARM-64 (Native)
Date/Time:           2024-01-15 10:30:45.123 -0800
OS Version:          iPhone OS 17.2 (21C62)

Exception Type:  EXC_BAD_ACCESS (SIGSEGV)
Exception Subtype: KERN_INVALID_ADDRESS at 0x0000000000000000
Exception Codes: 0x0000000000000001, 0x0000000000000000
Termination Reason: SIGNAL 11 Segmentation fault: 11
Triggered by Thread:  0

Thread 0 name:  Dispatch queue: com.apple.main-thread
Thread 0 Crashed:
0   MyApp                         0x0000000100004f50 0x100000000 + 20304
1   MyApp                         0x0000000100005a10 0x100000000 + 23056
2   UIKitCore                     0x00000001a2b3c4d5 -[UIApplication sendAction:to:from:forEvent:] + 100
3   libdyld.dylib                 0x00000001a0001234 start + 4

Thread 1:
0   libsystem_kernel.dylib        0x00000001b0000100 __workq_kernreturn + 8
1   libsystem_pthread.dylib       0x00000001b0100200 _pthread_wqthread + 288

Binary Images:
0x100000000 - 0x100007fff MyApp arm64  <a1b2c3d4e5f67890abcdef1234567890> /private/var/containers/Bundle/Application/ABCD/MyApp.app/MyApp
0x1a2b00000 - 0x1a3bfffff UIKitCore arm64e  <11112222333344445555666677778888> /System/Library/PrivateFrameworks/UIKitCore.framework/UIKitCore
"""

_IPS_HEADER = {
    "app_name": "MyApp",
    "timestamp": "2024-01-15 10:30:45.00 -0800",
    "app_version": "1.2.3",
    "bundleID": "com.example.MyApp",
    "os_version": "iPhone OS 17.2 (21C62)",
    "incident_id": "7A3C1B2D-0000-4000-8000-123456789ABC",
    "name": "MyApp",
}

_IPS_BODY = {
    "procName": "MyApp",
    "modelCode": "iPhone14,2",
    "cpuType": "ARM-64",
    "captureTime": "2024-01-15 10:30:45.1234 -0800",
    "osVersion": {"train": "iPhone OS 17.2", "build": "21C62"},
    "bundleInfo": {
        "CFBundleIdentifier": "com.example.MyApp",
        "CFBundleShortVersionString": "1.2.3",
        "CFBundleExecutable": "MyApp",
    },
    "exception": {
        "type": "EXC_CRASH",
        "signal": "SIGABRT",
        "codes": "0x0000000000000000, 0x0000000000000000",
    },
    "faultingThread": 0,
    "threads": [
        {
            "triggered": True,
            "queue": "com.apple.main-thread",
            "frames": [
                {"imageOffset": 1234, "symbol": "__pthread_kill", "symbolLocation": 8, "imageIndex": 1},
                {"imageOffset": 5678, "symbol": "abort", "symbolLocation": 180, "imageIndex": 1},
                {"imageOffset": 9012, "symbol": "objc_exception_throw", "symbolLocation": 60, "imageIndex": 1},
                {"imageOffset": 20304, "imageIndex": 0},
                {"imageOffset": 23056, "imageIndex": 0},
            ],
        },
        {
            "frames": [
                {"imageOffset": 100, "symbol": "__workq_kernreturn", "imageIndex": 1},
            ],
        },
    ],
    "usedImages": [
        {
            "uuid": "a1b2c3d4-e5f6-7890-abcd-ef1234567890",
            "base": 4294967296,
            "size": 32768,
            "arch": "arm64",
            "path": "/private/var/containers/Bundle/Application/ABCD/MyApp.app/MyApp",
            "name": "MyApp",
        },
        {
            "uuid": "99990000-1111-2222-3333-444455556666",
            "base": 6979321856,
            "size": 65536,
            "arch": "arm64e",
            "path": "/usr/lib/system/libsystem_kernel.dylib",
            "name": "libsystem_kernel.dylib",
        },
    ],
}


@pytest.fixture
def classic_crash_text() -> str:
    """Classic .crash log: null dereference in unsymbolicated MyApp frames."""
    return CLASSIC_CRASH


@pytest.fixture
def ips_body() -> dict:
    """Fresh copy of the .ips report body (uncaught exception)."""
    return json.loads(json.dumps(_IPS_BODY))


@pytest.fixture
def ips_crash_text(ips_body) -> str:
    """Two-document .ips file: one-line header followed by the body."""
    return json.dumps(_IPS_HEADER) + "\n" + json.dumps(ips_body, indent=2)


@pytest.fixture
def make_report():
    """Factory for small in-memory reports.

    ``frames`` are symbols for the crashed thread; symbols starting with
    "MyApp." are app code.
    """

    def _make(
        frames: Optional[list[str]] = None,
        *,
        exc_type: str = "EXC_BAD_ACCESS",
        signal: Optional[str] = None,
        codes: Optional[str] = None,
        fault_address: Optional[str] = None,
        termination_reason: Optional[str] = None,
        symbolicated: bool = False,
        raw_log: Optional[str] = None,
        binary: str = "MyApp",
    ) -> CrashReport:
        stack = []
        for i, symbol in enumerate(frames or []):
            is_app = symbol.startswith("MyApp.") or symbol.startswith("0x")
            stack.append(StackFrame(
                index=i,
                binary=binary if is_app else "libsystem_kernel.dylib",
                address=f"0x{0x100004000 + i * 16:016x}",
                symbol=symbol,
                is_app_code=is_app,
            ))
        return CrashReport(
            process_name="MyApp",
            bundle_id="com.example.MyApp",
            exception=CrashException(
                type=exc_type,
                signal=signal,
                codes=codes,
                fault_address=fault_address,
                termination_reason=termination_reason,
            ),
            threads=[ThreadInfo(index=0, crashed=True, frames=stack), ThreadInfo(index=1)],
            crashed_thread_index=0,
            binary_images=[
                BinaryImage(
                    name="MyApp",
                    arch="arm64",
                    uuid=APP_UUID,
                    load_address="0x100000000",
                    end_address="0x100007fff",
                    path="/private/var/containers/Bundle/Application/ABCD/MyApp.app/MyApp",
                ),
            ],
            is_symbolicated=symbolicated,
            raw_log=raw_log,
        )

    return _make
