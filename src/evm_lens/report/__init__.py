"""Risk aggregation and report serialization."""

from .aggregator import RiskSummary, aggregate, dedupe_findings, sort_findings
from .generator import ReportGenerator

__all__ = ["ReportGenerator", "RiskSummary", "aggregate", "dedupe_findings", "sort_findings"]
