"""Report generator - structured JSON output."""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from ..rules.base import SEVERITY_RANK, SEVERITY_WEIGHT, Finding, Severity

if TYPE_CHECKING:
    from ..pipeline import Contract

__all__ = ["ReportGenerator"]


class ReportGenerator:
    """Serializes an analyzed contract.

    The document holds no timestamps or other run-dependent values, so the
    same bytecode and inputs always serialize to the same bytes.
    """

    def __init__(self, contract: Contract) -> None:
        self.contract = contract

    @staticmethod
    def _risk_profile(findings: tuple[Finding, ...]) -> dict[str, Any]:
        if not findings:
            return {"overall_max_severity": None, "rule_max_severity": {}, "review_count": 0}

        overall = min((f.severity for f in findings), key=lambda s: SEVERITY_RANK[s])
        per_rule: dict[str, Severity] = {}
        for f in findings:
            current = per_rule.get(f.rule_id)
            if current is None or SEVERITY_RANK[f.severity] < SEVERITY_RANK[current]:
                per_rule[f.rule_id] = f.severity
        return {
            "overall_max_severity": overall.value,
            "rule_max_severity": {rule: sev.value for rule, sev in sorted(per_rule.items())},
            "review_count": sum(1 for f in findings if f.needs_review),
        }

    def to_dict(self) -> dict[str, Any]:
        contract = self.contract
        risk = contract.risk
        return {
            "contract_id": contract.contract_id,
            "status": contract.status.value,
            "aborted_stage": contract.aborted_stage.value if contract.aborted_stage else None,
            "completed_stages": [stage.value for stage in contract.completed_stages],
            "bytecode_size": len(contract.bytecode),
            "instruction_count": len(contract.instructions),
            "risk_score": risk.score,
            "severity_weights": {sev.value: weight for sev, weight in SEVERITY_WEIGHT.items()},
            "summary": risk.counts(),
            "risk_profile": self._risk_profile(risk.findings),
            "total": len(risk.findings),
            "findings": [f.to_dict() for f in risk.findings],
            "cfg_summary": contract.cfg_summary(),
            "decode_warnings": [
                {"kind": w.kind.value, "offset": w.offset, "detail": w.detail} for w in contract.warnings
            ],
        }

    def to_json(self) -> str:
        """Return the report as a pretty-printed JSON string with sorted keys."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)
