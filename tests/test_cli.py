"""CLI behavior tests."""
from __future__ import annotations

import json

from click.testing import CliRunner

from evm_lens import __version__
from evm_lens.cli import main

BLOCKED_CALLER = "0x33" + "73" + "bb" * 20 + "14" + "15" + "601e" + "57" + "5f5ffd" + "5b00"
FEE_PRODUCT = "600154600254026003" + "5500"
DORMANT_BRANCH = "5f35600c57" + "600254601357" + "00" + "5b600160025500" + "5b335f5500"


def _write(tmp_path, name: str, text: str):
    path = tmp_path / name
    path.write_text(text)
    return path


def test_cli_reports_package_version():
    result = CliRunner().invoke(main, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_analyze_json_output(tmp_path):
    code = _write(tmp_path, "honeypot.hex", BLOCKED_CALLER)
    result = CliRunner().invoke(main, ["analyze", str(code), "--format", "json"])

    assert result.exit_code == 0
    report = json.loads(result.output)
    assert report["contract_id"] == "honeypot"
    assert report["risk_score"] == 15
    assert report["findings"][0]["severity"] == "high"


def test_analyze_table_output(tmp_path):
    code = _write(tmp_path, "honeypot.hex", BLOCKED_CALLER)
    result = CliRunner().invoke(main, ["analyze", str(code)])

    assert result.exit_code == 0
    assert "HIGH" in result.output
    assert "Risk score: 15" in result.output


def test_analyze_writes_report_file(tmp_path):
    code = _write(tmp_path, "clean.hex", "0x60025f03f3")
    out = tmp_path / "report.json"
    result = CliRunner().invoke(main, ["analyze", str(code), "--format", "json", "--output", str(out)])

    assert result.exit_code == 0
    assert json.loads(out.read_text())["total"] == 0


def test_analyze_with_layout_and_snapshot(tmp_path):
    fee = _write(tmp_path, "fee.hex", FEE_PRODUCT)
    layout = _write(tmp_path, "layout.json", json.dumps({"storage": [{"label": "rate", "slot": "1", "public": True}]}))
    result = CliRunner().invoke(main, ["analyze", str(fee), "-l", str(layout), "--format", "json"])
    assert json.loads(result.output)["findings"][0]["severity"] == "medium"

    dormant = _write(tmp_path, "dormant.hex", DORMANT_BRANCH)
    snapshot = _write(tmp_path, "storage.json", "{}")
    result = CliRunner().invoke(main, ["analyze", str(dormant), "-s", str(snapshot), "--format", "json"])
    findings = json.loads(result.output)["findings"]
    assert [(f["rule_id"], f["severity"]) for f in findings] == [("UnreachableOwnerBackdoor", "critical")]


def test_analyze_rejects_malformed_hex(tmp_path):
    code = _write(tmp_path, "bad.hex", "0x123")
    result = CliRunner().invoke(main, ["analyze", str(code)])

    assert result.exit_code == 1
    assert "Failed to analyze bytecode" in result.output


def test_analyze_rejects_bad_snapshot(tmp_path):
    code = _write(tmp_path, "clean.hex", "0x60025f03f3")
    snapshot = _write(tmp_path, "storage.json", "[1, 2]")
    result = CliRunner().invoke(main, ["analyze", str(code), "--storage", str(snapshot)])

    assert result.exit_code == 1


def test_analyze_rejects_unknown_rule(tmp_path):
    code = _write(tmp_path, "clean.hex", "0x60025f03f3")
    result = CliRunner().invoke(main, ["analyze", str(code), "--rules", "NoSuchRule"])

    assert result.exit_code == 2
    assert "Unknown rule(s): NoSuchRule" in result.output


def test_cli_fails_when_score_gate_is_triggered(tmp_path):
    code = _write(tmp_path, "honeypot.hex", BLOCKED_CALLER)
    result = CliRunner().invoke(main, ["analyze", str(code), "--fail-on-score", "10"])

    assert result.exit_code == 3
    assert "Risk score gate failed" in result.output


def test_cli_fails_when_severity_gate_is_triggered(tmp_path):
    code = _write(tmp_path, "honeypot.hex", BLOCKED_CALLER)
    passing = CliRunner().invoke(main, ["analyze", str(code), "--fail-on-severity", "critical"])
    failing = CliRunner().invoke(main, ["analyze", str(code), "--fail-on-severity", "HIGH"])

    assert passing.exit_code == 0
    assert failing.exit_code == 3
    assert "Max severity gate failed" in failing.output


def test_invalid_limit_is_a_usage_error(tmp_path):
    code = _write(tmp_path, "clean.hex", "0x60025f03f3")
    result = CliRunner().invoke(main, ["analyze", str(code), "--jump-window", "0"])

    assert result.exit_code == 2


def test_disasm_lists_instructions(tmp_path):
    code = _write(tmp_path, "code.hex", "0x60025f03f361aa")
    result = CliRunner().invoke(main, ["disasm", str(code)])

    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert lines[0] == "0x0000 PUSH1 0x02"
    assert lines[-1].endswith("; truncated")


def test_cfg_prints_blocks_and_summary(tmp_path):
    code = _write(tmp_path, "code.hex", "0x6003565b00")
    result = CliRunner().invoke(main, ["cfg", str(code)])

    assert result.exit_code == 0
    assert "Basic Blocks" in result.output
    assert "2 blocks, 1 edges, 0 unresolved jumps" in result.output


def test_batch_analyzes_directory(tmp_path):
    contracts = tmp_path / "contracts"
    contracts.mkdir()
    _write(contracts, "a.hex", BLOCKED_CALLER)
    _write(contracts, "b.hex", "0x60025f03f3")
    reports = tmp_path / "reports"
    result = CliRunner().invoke(main, ["batch", str(contracts), "--output", str(reports), "--workers", "2"])

    assert result.exit_code == 0
    assert json.loads((reports / "a.json").read_text())["risk_score"] == 15
    assert json.loads((reports / "b.json").read_text())["risk_score"] == 0


def test_batch_exits_nonzero_when_a_contract_fails(tmp_path):
    _write(tmp_path, "bad.hex", "0xzz")
    result = CliRunner().invoke(main, ["batch", str(tmp_path)])

    assert result.exit_code == 1
