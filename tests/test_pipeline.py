"""Tests for the analysis pipeline and batch orchestration."""
from __future__ import annotations

import asyncio

import pytest

from evm_lens.errors import FatalInputError
from evm_lens.evm.layout import StorageLayout, StorageVariable
from evm_lens.evm.sources import DirectorySource
from evm_lens.pipeline import (
    AnalysisStatus,
    BatchJob,
    Stage,
    analyze_addresses,
    analyze_batch,
    analyze_batch_async,
    analyze_bytecode,
    select_rules,
)
from evm_lens.report import ReportGenerator
from evm_lens.rules import Severity

BLOCKED_CALLER = "0x33" + "73" + "bb" * 20 + "14" + "15" + "601e" + "57" + "5f5ffd" + "5b00"

# if (calldata) goto owner-check else delegatecall(SLOAD(1)); owner-check guards SSTORE(1, calldata[4])
UPGRADEABLE_PROXY = "5f35600f57" + "5f5f5f5f600154" + "5af400" + "5b335f541460" + "1a57" + "5f5ffd" + "5b6004356001" + "5500"

FEE_PRODUCT = "600154600254026003" + "5500"


def _counter(limit: int):
    calls = {"n": 0}

    def should_abort() -> bool:
        calls["n"] += 1
        return calls["n"] >= limit

    return should_abort


def test_push_sub_return_has_no_findings():
    contract = analyze_bytecode("0x60025f03f3")

    assert contract.is_complete
    assert contract.findings == []
    assert contract.risk_score == 0
    assert contract.cfg_summary()["block_count"] == 1


def test_blocked_caller_is_one_high_finding():
    contract = analyze_bytecode(BLOCKED_CALLER)

    (f,) = contract.risk.findings
    assert f.rule_id == "ForcedRevertOnPath"
    assert f.severity == Severity.HIGH
    assert (f.block, f.offset) == (0, 26)
    assert contract.risk_score == 15


def test_hidden_fee_with_layout_is_medium():
    layout = StorageLayout([StorageVariable(name="rate", slot=1, public=True), StorageVariable(name="_fee", slot=2)])
    contract = analyze_bytecode(FEE_PRODUCT, layout=layout)

    assert [(f.rule_id, f.severity, f.offset) for f in contract.risk.findings] == [
        ("DynamicFeeMultiplier", Severity.MEDIUM, 6)
    ]


def test_owner_only_upgrade_is_high_finding():
    contract = analyze_bytecode(UPGRADEABLE_PROXY)

    findings = {f.rule_id: f for f in contract.risk.findings}
    assert sorted(findings) == ["ForcedRevertOnPath", "MutableDelegateTarget"]
    assert findings["MutableDelegateTarget"].severity == Severity.HIGH
    # The owner gate on the upgrade path is surfaced for review only.
    assert findings["ForcedRevertOnPath"].severity == Severity.INFO
    assert contract.risk_score == 15


@pytest.mark.parametrize("bad", ["", "0x", "0x123", "0xnothex", b""])
def test_malformed_input_is_fatal(bad):
    with pytest.raises(FatalInputError):
        analyze_bytecode(bad)


def test_raw_bytes_are_accepted():
    contract = analyze_bytecode(bytes.fromhex("60025f03f3"))

    assert len(contract.instructions) == 4


def test_rule_selection():
    contract = analyze_bytecode(BLOCKED_CALLER, rules=["DecodeAnomaly"])

    assert contract.findings == []
    with pytest.raises(KeyError, match="NoSuchRule"):
        select_rules(["NoSuchRule", "DecodeAnomaly"])
    assert list(select_rules(None))[0] == "ForcedRevertOnPath"


def test_abort_before_storage_returns_partial_result():
    contract = analyze_bytecode(BLOCKED_CALLER, should_abort=_counter(3))

    assert contract.status == AnalysisStatus.ABORTED
    assert contract.aborted_stage == Stage.STORAGE
    assert contract.completed_stages == [Stage.DECODE, Stage.CFG]
    assert contract.cfg is not None
    assert contract.storage is None
    assert ReportGenerator(contract).to_dict()["aborted_stage"] == "storage"


def test_abort_between_rules_keeps_findings_so_far():
    contract = analyze_bytecode(BLOCKED_CALLER, should_abort=_counter(5))

    assert contract.aborted_stage == Stage.RULES
    assert [f.rule_id for f in contract.risk.findings] == ["ForcedRevertOnPath"]
    assert contract.risk_score == 15


def test_repeated_analysis_is_identical():
    reports = {ReportGenerator(analyze_bytecode(UPGRADEABLE_PROXY)).to_json() for _ in range(3)}

    assert len(reports) == 1


def test_batch_preserves_order_and_isolates_errors():
    jobs = [
        BatchJob(contract_id="a", bytecode=BLOCKED_CALLER),
        BatchJob(contract_id="bad", bytecode="0xzz"),
        BatchJob(contract_id="b", bytecode="0x60025f03f3"),
    ]
    results = analyze_batch(jobs, max_workers=2)

    assert [r.contract_id for r in results] == ["a", "bad", "b"]
    assert [r.ok for r in results] == [True, False, True]
    assert results[0].contract.risk_score == 15
    assert results[1].error


def test_batch_timeout_aborts_contracts():
    (result,) = analyze_batch([BatchJob(contract_id="a", bytecode=BLOCKED_CALLER)], timeout=0)

    assert result.contract.status == AnalysisStatus.ABORTED
    assert result.contract.aborted_stage == Stage.DECODE


def test_batch_rejects_unknown_rule_up_front():
    with pytest.raises(KeyError):
        analyze_batch([BatchJob(contract_id="a", bytecode=BLOCKED_CALLER)], rules=["Nope"])


def test_async_batch_matches_sync_batch():
    jobs = [BatchJob(contract_id=str(i), bytecode=code) for i, code in enumerate([BLOCKED_CALLER, UPGRADEABLE_PROXY])]
    sync = analyze_batch(jobs)
    concurrent = asyncio.run(analyze_batch_async(jobs, max_workers=2))

    assert [r.contract.risk_score for r in concurrent] == [r.contract.risk_score for r in sync]


def test_addresses_are_fetched_from_directory(tmp_path):
    (tmp_path / "fee.hex").write_text(FEE_PRODUCT)
    (tmp_path / "fee.layout.json").write_text('{"1": {"label": "rate", "public": true}, "2": "_fee"}')
    (tmp_path / "broken.hex").write_text("0x6")
    source = DirectorySource(tmp_path)

    assert source.addresses() == ["broken", "fee"]
    results = analyze_addresses(source, ["fee", "missing", "broken"])

    assert [r.contract_id for r in results] == ["fee", "missing", "broken"]
    assert results[0].contract.risk.findings[0].severity == Severity.MEDIUM
    assert not results[1].ok
    assert "missing" in results[1].error
    assert not results[2].ok
