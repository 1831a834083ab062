"""Risk aggregation: weighted score plus an ordered finding list."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from ..rules.base import SEVERITY_RANK, SEVERITY_WEIGHT, Finding, Severity

__all__ = ["RiskSummary", "aggregate", "dedupe_findings", "sort_findings"]


@dataclass(slots=True, frozen=True)
class RiskSummary:
    score: int
    findings: tuple[Finding, ...] = field(default_factory=tuple)

    def counts(self) -> dict[str, int]:
        by_severity = {severity.value: 0 for severity in Severity}
        for item in self.findings:
            by_severity[item.severity.value] += 1
        return by_severity

    @property
    def max_severity(self) -> Severity | None:
        if not self.findings:
            return None
        return min((item.severity for item in self.findings), key=lambda s: SEVERITY_RANK[s])


def _preference(item: Finding) -> tuple[int, float, int, str]:
    return (SEVERITY_RANK[item.severity], -item.confidence, item.offset, item.message)


def dedupe_findings(findings: Iterable[Finding]) -> list[Finding]:
    """Keep one finding per ``(rule_id, block)``: the most severe, then the most confident."""
    unique: dict[tuple[str, int], Finding] = {}
    for item in findings:
        key = (item.rule_id, item.block)
        existing = unique.get(key)
        if existing is None or _preference(item) < _preference(existing):
            unique[key] = item
    return list(unique.values())


def sort_findings(findings: Iterable[Finding]) -> list[Finding]:
    return sorted(
        findings,
        key=lambda item: (SEVERITY_RANK[item.severity], item.block, item.offset, item.rule_id, item.message),
    )


def aggregate(findings: Iterable[Finding]) -> RiskSummary:
    ordered = sort_findings(dedupe_findings(findings))
    score = sum(SEVERITY_WEIGHT[item.severity] for item in ordered)
    return RiskSummary(score=score, findings=tuple(ordered))
