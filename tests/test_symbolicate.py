"""Tests for dSYM discovery and atos symbolication.

atos and dwarfdump are never executed: subprocess.run is patched and the
dSYM bundles are empty directory trees under tmp_path.
"""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from crashdx.config import CrashDxConfig
from crashdx.crash_parser import parse_crash_log
from crashdx.symbolicate import (
    AtosResult,
    Symbolicator,
    find_dsym_file,
    find_dsym_in_common_locations,
    find_dwarf_file,
    parse_atos_line,
    read_dsym_uuids,
    run_atos,
    uuids_match,
)

from conftest import APP_UUID

ATOS = "/usr/bin/atos"
DWARFDUMP = "/usr/bin/dwarfdump"

MATCHING_UUID_OUTPUT = f"UUID: {APP_UUID} (arm64) /tmp/MyApp.app.dSYM/Contents/Resources/DWARF/MyApp\n"
OTHER_UUID_OUTPUT = "UUID: 00000000-1111-2222-3333-444444444444 (arm64) /tmp/Other\n"
ATOS_OUTPUT = (
    "-[ViewController viewDidLoad] (in MyApp) (ViewController.m:42)\n"
    "-[AppDelegate application:didFinishLaunchingWithOptions:] (in MyApp) + 100\n"
)


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> MagicMock:
    result = MagicMock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


def _fake_tools(dwarfdump_output: str = MATCHING_UUID_OUTPUT, atos_output=ATOS_OUTPUT):
    """subprocess.run stand-in answering for dwarfdump and atos."""

    def run(cmd, **kwargs):
        if cmd[0].endswith("dwarfdump"):
            return _completed(dwarfdump_output)
        if isinstance(atos_output, BaseException):
            raise atos_output
        return _completed(atos_output)

    return run


def _atos_calls(mock_run) -> list:
    return [c for c in mock_run.call_args_list if c[0][0][0].endswith("atos")]


@pytest.fixture
def dsym_bundle(tmp_path):
    dwarf_dir = tmp_path / "MyApp.app.dSYM" / "Contents" / "Resources" / "DWARF"
    dwarf_dir.mkdir(parents=True)
    (dwarf_dir / "MyApp").write_bytes(b"fake DWARF")
    return tmp_path / "MyApp.app.dSYM"


@pytest.fixture
def symbolicator():
    return Symbolicator(atos_path=ATOS, dwarfdump_path=DWARFDUMP, config=CrashDxConfig())


# =============================================================================
# atos Output Parsing
# =============================================================================

class TestParseAtosLine:
    def test_symbol_with_file_and_line(self):
        result = parse_atos_line("0x1000", "-[ViewController viewDidLoad] (in MyApp) (ViewController.m:42)")

        assert result.success is True
        assert result.symbol == "-[ViewController viewDidLoad]"
        assert result.file == "ViewController.m"
        assert result.line == 42

    def test_symbol_with_offset(self):
        result = parse_atos_line("0x1000", "main (in MyApp) + 28")

        assert result.success is True
        assert result.symbol == "main"
        assert result.offset == 28
        assert result.file is None

    def test_swift_symbol_with_file(self):
        result = parse_atos_line("0x1000", "ContentView.body.getter (in MyApp) (ContentView.swift:17)")
        assert result.symbol == "ContentView.body.getter"
        assert result.line == 17

    def test_bare_symbol(self):
        result = parse_atos_line("0x1000", "some_function")
        assert result.success is True
        assert result.symbol == "some_function"

    def test_echoed_address_is_failure(self):
        result = parse_atos_line("0x0000000100004f50", "0x0000000100004f50")
        assert result.success is False
        assert result.symbol == "0x0000000100004f50"

    def test_other_hex_output_is_failure(self):
        assert parse_atos_line("0x1000", "0x100000000 (in MyApp)").success is False

    def test_missing_line(self):
        assert parse_atos_line("0x1000", None).success is False
        assert parse_atos_line("0x1000", "   ").success is False


class TestUuidsMatch:
    def test_case_and_hyphen_insensitive(self):
        assert uuids_match(APP_UUID, APP_UUID.lower().replace("-", "")) is True

    def test_different(self):
        assert uuids_match(APP_UUID, "00000000-1111-2222-3333-444444444444") is False

    def test_empty_never_matches(self):
        assert uuids_match("", "") is False
        assert uuids_match(None, APP_UUID) is False


# =============================================================================
# dSYM Discovery
# =============================================================================

class TestFindDsymFile:
    def test_direct_bundle_path(self, dsym_bundle):
        assert find_dsym_file(str(dsym_bundle), "MyApp") == str(dsym_bundle)

    def test_exact_name_wins(self, tmp_path):
        for name in ("Aaa.dSYM", "MyAppKit.framework.dSYM", "MyApp.app.dSYM"):
            (tmp_path / name).mkdir()
        assert find_dsym_file(str(tmp_path), "MyApp") == str(tmp_path / "MyApp.app.dSYM")

    def test_plain_dsym_name(self, tmp_path):
        for name in ("Aaa.dSYM", "MyApp.dSYM"):
            (tmp_path / name).mkdir()
        assert find_dsym_file(str(tmp_path), "MyApp") == str(tmp_path / "MyApp.dSYM")

    def test_substring_match(self, tmp_path):
        for name in ("Aaa.dSYM", "build-MyApp-release.dSYM"):
            (tmp_path / name).mkdir()
        assert find_dsym_file(str(tmp_path), "MyApp") == str(tmp_path / "build-MyApp-release.dSYM")

    def test_any_dsym_sorted(self, tmp_path):
        for name in ("Bbb.dSYM", "Aaa.dSYM"):
            (tmp_path / name).mkdir()
        assert find_dsym_file(str(tmp_path), "MyApp") == str(tmp_path / "Aaa.dSYM")

    def test_ignores_files_and_other_dirs(self, tmp_path):
        (tmp_path / "MyApp.app.dSYM.zip").write_bytes(b"zip")
        (tmp_path / "MyApp.app").mkdir()
        assert find_dsym_file(str(tmp_path), "MyApp") is None

    def test_missing_path(self, tmp_path):
        assert find_dsym_file(str(tmp_path / "nope"), "MyApp") is None


class TestFindDwarfFile:
    def test_prefers_binary_name(self, tmp_path):
        dwarf_dir = tmp_path / "X.dSYM" / "Contents" / "Resources" / "DWARF"
        dwarf_dir.mkdir(parents=True)
        (dwarf_dir / "Aaa").write_bytes(b"")
        (dwarf_dir / "MyApp").write_bytes(b"")

        assert find_dwarf_file(str(tmp_path / "X.dSYM"), "MyApp") == str(dwarf_dir / "MyApp")
        assert find_dwarf_file(str(tmp_path / "X.dSYM")) == str(dwarf_dir / "Aaa")

    def test_no_dwarf_dir(self, tmp_path):
        (tmp_path / "Empty.dSYM").mkdir()
        assert find_dwarf_file(str(tmp_path / "Empty.dSYM"), "MyApp") is None


class TestFindDsymInCommonLocations:
    def test_downloads(self, tmp_path):
        (tmp_path / "Downloads" / "MyApp.app.dSYM").mkdir(parents=True)
        found = find_dsym_in_common_locations("com.example.MyApp", home=str(tmp_path))
        assert found == str(tmp_path / "Downloads" / "MyApp.app.dSYM")

    def test_configured_paths_first(self, tmp_path):
        (tmp_path / "Downloads" / "MyApp.app.dSYM").mkdir(parents=True)
        (tmp_path / "builds" / "MyApp.app.dSYM").mkdir(parents=True)
        found = find_dsym_in_common_locations(
            "com.example.MyApp",
            search_paths=[str(tmp_path / "builds")],
            home=str(tmp_path),
        )
        assert found == str(tmp_path / "builds" / "MyApp.app.dSYM")

    def test_nothing_found(self, tmp_path):
        assert find_dsym_in_common_locations("com.example.MyApp", home=str(tmp_path)) is None


# =============================================================================
# dwarfdump / atos Invocation
# =============================================================================

class TestReadDsymUuids:
    @patch("crashdx.symbolicate.subprocess.run")
    def test_multiple_architectures(self, mock_run):
        mock_run.return_value = _completed(
            "UUID: A1B2C3D4-E5F6-7890-ABCD-EF1234567890 (arm64) /x/MyApp\n"
            "UUID: 11112222-3333-4444-5555-666677778888 (x86_64) /x/MyApp\n"
        )
        uuids = read_dsym_uuids("/x/MyApp", dwarfdump=DWARFDUMP)

        assert uuids == {
            "arm64": "A1B2C3D4E5F67890ABCDEF1234567890",
            "x86_64": "11112222333344445555666677778888",
        }
        assert mock_run.call_args[0][0] == [DWARFDUMP, "--uuid", "/x/MyApp"]

    @patch("crashdx.symbolicate.which_or_xcode", return_value=None)
    def test_tool_missing(self, mock_which):
        assert read_dsym_uuids("/x/MyApp") == {}

    @patch("crashdx.symbolicate.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired("dwarfdump", 10.0)
        assert read_dsym_uuids("/x/MyApp", dwarfdump=DWARFDUMP) == {}


class TestRunAtos:
    @patch("crashdx.symbolicate.subprocess.run")
    def test_batched_call(self, mock_run):
        mock_run.return_value = _completed(ATOS_OUTPUT)

        results = run_atos("/x/MyApp", "0x100000000", ["0x1004f50", "0x1005a10"], arch="arm64", atos=ATOS)

        mock_run.assert_called_once()
        assert mock_run.call_args[0][0] == [
            ATOS, "-arch", "arm64", "-o", "/x/MyApp", "-l", "0x100000000", "0x1004f50", "0x1005a10",
        ]
        assert mock_run.call_args[1]["timeout"] == 30.0
        assert [r.success for r in results] == [True, True]
        assert results[1].symbol == "-[AppDelegate application:didFinishLaunchingWithOptions:]"

    @patch("crashdx.symbolicate.subprocess.run")
    def test_no_addresses(self, mock_run):
        assert run_atos("/x/MyApp", "0x100000000", [], atos=ATOS) == []
        mock_run.assert_not_called()

    @patch("crashdx.symbolicate.subprocess.run")
    def test_nonzero_exit(self, mock_run):
        mock_run.return_value = _completed("", returncode=1, stderr="atos: bad arch")

        results = run_atos("/x/MyApp", "0x100000000", ["0x1", "0x2"], atos=ATOS)

        assert results == [AtosResult(address="0x1", symbol="0x1"), AtosResult(address="0x2", symbol="0x2")]

    @patch("crashdx.symbolicate.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired("atos", 30.0)
        results = run_atos("/x/MyApp", "0x100000000", ["0x1"], atos=ATOS, timeout=30.0)
        assert results[0].success is False

    @patch("crashdx.symbolicate.subprocess.run")
    def test_os_error(self, mock_run):
        mock_run.side_effect = OSError("exec format error")
        assert run_atos("/x/MyApp", "0x100000000", ["0x1"], atos=ATOS)[0].success is False

    @patch("crashdx.symbolicate.subprocess.run")
    def test_short_output(self, mock_run):
        mock_run.return_value = _completed("main (in MyApp) + 4\n")

        results = run_atos("/x/MyApp", "0x100000000", ["0x1", "0x2"], atos=ATOS)

        assert results[0].success is True
        assert results[1].success is False
        assert results[1].symbol == "0x2"

    @patch("crashdx.symbolicate.which_or_xcode", return_value=None)
    def test_tool_missing(self, mock_which):
        results = run_atos("/x/MyApp", "0x100000000", ["0x1"])
        assert results[0].success is False


# =============================================================================
# Symbolicator
# =============================================================================

class TestSymbolicator:
    @patch("crashdx.symbolicate.subprocess.run")
    def test_resolves_app_frames(self, mock_run, symbolicator, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools()
        report = parse_crash_log(classic_crash_text)

        outcome = symbolicator.run(report, str(dsym_bundle))

        assert outcome.status == "found"
        assert outcome.resolved == 2
        assert outcome.dsym_file == str(dsym_bundle)
        frames = outcome.report.crashed_thread.frames
        assert frames[0].symbol == "-[ViewController viewDidLoad]"
        assert frames[0].file == "ViewController.m"
        assert frames[0].line == 42
        assert frames[0].offset is None
        assert frames[1].symbol == "-[AppDelegate application:didFinishLaunchingWithOptions:]"
        assert frames[1].offset == 100
        assert outcome.report.is_symbolicated is True

        atos_cmd = _atos_calls(mock_run)[0][0][0]
        assert atos_cmd[atos_cmd.index("-l") + 1] == "0x100000000"
        assert atos_cmd[atos_cmd.index("-arch") + 1] == "arm64"
        assert atos_cmd[-2:] == ["0x0000000100004f50", "0x0000000100005a10"]

    @patch("crashdx.symbolicate.subprocess.run")
    def test_input_report_not_mutated(self, mock_run, symbolicator, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools()
        report = parse_crash_log(classic_crash_text)

        outcome = symbolicator.run(report, str(dsym_bundle))

        assert outcome.report is not report
        assert report.crashed_thread.frames[0].symbol == "0x100000000"
        assert report.is_symbolicated is False

    @patch("crashdx.symbolicate.subprocess.run")
    def test_uuid_mismatch_skips_symbolication(self, mock_run, symbolicator, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools(dwarfdump_output=OTHER_UUID_OUTPUT)
        report = parse_crash_log(classic_crash_text)
        before = report.to_dict()

        outcome = symbolicator.run(report, str(dsym_bundle))

        assert outcome.status == "mismatch"
        assert outcome.report is report
        assert report.is_symbolicated is False
        assert report.to_dict() == before
        assert _atos_calls(mock_run) == []

    @patch("crashdx.symbolicate.subprocess.run")
    def test_unreadable_uuid_continues(self, mock_run, symbolicator, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools(dwarfdump_output="")
        outcome = symbolicator.run(parse_crash_log(classic_crash_text), str(dsym_bundle))
        assert outcome.status == "found"

    @patch("crashdx.symbolicate.subprocess.run")
    def test_image_without_uuid_skips_verification(self, mock_run, symbolicator, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools(dwarfdump_output=OTHER_UUID_OUTPUT)
        report = parse_crash_log(classic_crash_text)
        report.binary_images[0].uuid = ""

        outcome = symbolicator.run(report, str(dsym_bundle))

        assert outcome.status == "found"
        assert all(not c[0][0][0].endswith("dwarfdump") for c in mock_run.call_args_list)

    @patch("crashdx.symbolicate.subprocess.run")
    def test_atos_timeout_leaves_frames_unresolved(self, mock_run, symbolicator, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools(atos_output=subprocess.TimeoutExpired("atos", 30.0))

        outcome = symbolicator.run(parse_crash_log(classic_crash_text), str(dsym_bundle))

        assert outcome.status == "failed"
        assert outcome.resolved == 0
        assert outcome.report.is_symbolicated is False
        assert outcome.report.crashed_thread.frames[0].symbol == "0x100000000"

    @patch("crashdx.symbolicate.subprocess.run")
    @patch("crashdx.symbolicate.which_or_xcode", return_value=None)
    def test_missing_tools_looked_up_once(self, mock_which, mock_run, dsym_bundle, classic_crash_text):
        symbolicator = Symbolicator(config=CrashDxConfig())

        outcome = symbolicator.run(parse_crash_log(classic_crash_text), str(dsym_bundle))

        assert outcome.status == "failed"
        assert outcome.resolved == 0
        assert outcome.report.crashed_thread.frames[0].symbol == "0x100000000"
        assert [c[0][0] for c in mock_which.call_args_list] == ["atos", "dwarfdump"]
        mock_run.assert_not_called()

    @patch("crashdx.symbolicate.subprocess.run")
    def test_echoed_addresses_not_counted(self, mock_run, symbolicator, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools(atos_output="0x0000000100004f50\n0x0000000100005a10\n")

        outcome = symbolicator.run(parse_crash_log(classic_crash_text), str(dsym_bundle))

        assert outcome.status == "failed"
        assert outcome.report.is_symbolicated is False

    @patch("crashdx.symbolicate.subprocess.run")
    def test_partial_symbolication(self, mock_run, symbolicator, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools(atos_output="main (in MyApp) + 4\n0x0000000100005a10\n")

        outcome = symbolicator.run(parse_crash_log(classic_crash_text), str(dsym_bundle))

        assert outcome.status == "found"
        assert outcome.resolved == 1
        assert outcome.report.is_symbolicated is True
        assert outcome.report.crashed_thread.frames[1].needs_symbolication is True

    def test_dsym_not_found(self, symbolicator, tmp_path, classic_crash_text):
        report = parse_crash_log(classic_crash_text)
        outcome = symbolicator.run(report, str(tmp_path / "missing"))

        assert outcome.status == "not_found"
        assert outcome.report is report

    def test_app_binary_not_found(self, symbolicator, dsym_bundle, classic_crash_text):
        report = parse_crash_log(classic_crash_text)
        report.binary_images = []

        outcome = symbolicator.run(report, str(dsym_bundle))

        assert outcome.status == "not_found"
        assert outcome.report is report

    def test_dsym_without_dwarf(self, symbolicator, tmp_path, classic_crash_text):
        (tmp_path / "MyApp.app.dSYM").mkdir()
        outcome = symbolicator.run(parse_crash_log(classic_crash_text), str(tmp_path))
        assert outcome.status == "not_found"

    @patch("crashdx.symbolicate.subprocess.run")
    def test_nothing_to_resolve(self, mock_run, symbolicator, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools()
        text = classic_crash_text.replace("0x100000000 + 20304", "main + 4").replace(
            "0x100000000 + 23056", "start + 8"
        )

        outcome = symbolicator.run(parse_crash_log(text), str(dsym_bundle))

        assert outcome.status == "no_work"
        assert outcome.report.is_symbolicated is True
        assert _atos_calls(mock_run) == []

    @patch("crashdx.symbolicate.subprocess.run")
    def test_idempotent(self, mock_run, symbolicator, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools()
        first = symbolicator.run(parse_crash_log(classic_crash_text), str(dsym_bundle))

        second = symbolicator.run(first.report, str(dsym_bundle))

        assert second.status == "no_work"
        assert second.report.to_dict() == first.report.to_dict()
        assert len(_atos_calls(mock_run)) == 1

    @patch("crashdx.symbolicate.subprocess.run")
    def test_arch_override_and_timeout(self, mock_run, dsym_bundle, classic_crash_text):
        mock_run.side_effect = _fake_tools()
        sym = Symbolicator(atos_path=ATOS, dwarfdump_path=DWARFDUMP, config=CrashDxConfig(atos_timeout=5.0))

        sym.run(parse_crash_log(classic_crash_text), str(dsym_bundle), arch="arm64e")

        call = _atos_calls(mock_run)[0]
        assert call[0][0][call[0][0].index("-arch") + 1] == "arm64e"
        assert call[1]["timeout"] == 5.0

    @patch("crashdx.symbolicate.subprocess.run")
    def test_symbolicate_returns_report(self, mock_run, symbolicator, dsym_bundle, ips_crash_text):
        mock_run.side_effect = _fake_tools()

        report = symbolicator.symbolicate(parse_crash_log(ips_crash_text), str(dsym_bundle))

        app_frames = report.app_frames()
        assert app_frames[0].symbol == "-[ViewController viewDidLoad]"
        assert report.is_symbolicated is True
