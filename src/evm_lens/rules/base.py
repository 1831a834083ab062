"""Finding model and the context shared by every rule."""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from ..cfg.graph import ControlFlowGraph
from ..config import DEFAULT_CONFIG, AnalysisConfig
from ..evm.decoder import Instruction
from ..evm.layout import StorageLayout
from ..storage.model import StorageAnalysis

__all__ = [
    "SEVERITY_RANK",
    "SEVERITY_WEIGHT",
    "Finding",
    "Rule",
    "RuleContext",
    "Severity",
    "finding",
]


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


SEVERITY_RANK: dict[Severity, int] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
    Severity.INFO: 4,
}

SEVERITY_WEIGHT: dict[Severity, int] = {
    Severity.CRITICAL: 40,
    Severity.HIGH: 15,
    Severity.MEDIUM: 5,
    Severity.LOW: 1,
    Severity.INFO: 0,
}

NEEDS_REVIEW = "needs-manual-review"


@dataclass(slots=True, frozen=True)
class Finding:
    rule_id: str
    title: str
    severity: Severity
    message: str
    block: int
    offset: int = -1
    evidence: tuple[int, ...] = ()
    recommendation: str | None = None
    confidence: float = 0.7
    tags: tuple[str, ...] = field(default_factory=tuple)

    @property
    def needs_review(self) -> bool:
        return NEEDS_REVIEW in self.tags

    def to_dict(self) -> dict[str, object]:
        return {
            "rule_id": self.rule_id,
            "title": self.title,
            "severity": self.severity.value,
            "message": self.message,
            "block": self.block,
            "offset": self.offset,
            "evidence": list(self.evidence),
            "recommendation": self.recommendation,
            "confidence": self.confidence,
            "tags": list(self.tags),
        }


@dataclass(slots=True, frozen=True)
class RuleContext:
    """Read-only inputs a rule may look at."""

    instructions: tuple[Instruction, ...]
    cfg: ControlFlowGraph
    storage: StorageAnalysis
    layout: StorageLayout | None = None
    snapshot: Mapping[int, int] | None = None
    config: AnalysisConfig = DEFAULT_CONFIG

    def reachable(self) -> frozenset[int]:
        return self.cfg.reachable()


Rule = Callable[[RuleContext], list[Finding]]


def finding(
    rule_id: str,
    *,
    title: str,
    severity: Severity,
    message: str,
    block: int,
    offset: int = -1,
    evidence: Iterable[int] = (),
    recommendation: str | None = None,
    confidence: float = 0.7,
    tags: Iterable[str] = (),
    review: bool = False,
) -> Finding:
    """Build a Finding; ``review=True`` marks an insufficient-evidence report."""
    tag_list = list(tags)
    if review and NEEDS_REVIEW not in tag_list:
        tag_list.append(NEEDS_REVIEW)
    return Finding(
        rule_id=rule_id,
        title=title,
        severity=severity,
        message=message,
        block=block,
        offset=offset,
        evidence=tuple(sorted({ref for ref in evidence if ref >= 0})),
        recommendation=recommendation,
        confidence=confidence,
        tags=tuple(tag_list),
    )
