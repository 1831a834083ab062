"""Storage access tracking."""

from __future__ import annotations

from .model import (
    AUTHORITY_KINDS,
    AccessKind,
    BranchCondition,
    ConditionRef,
    Guard,
    GuardStatus,
    Provenance,
    ProvenanceKind,
    StorageAnalysis,
    StorageSlotUsage,
)
from .provenance import peel, provenance, split_condition
from .tracker import StorageTracker, track_storage

__all__ = [
    "AUTHORITY_KINDS",
    "AccessKind",
    "BranchCondition",
    "ConditionRef",
    "Guard",
    "GuardStatus",
    "Provenance",
    "ProvenanceKind",
    "StorageAnalysis",
    "StorageSlotUsage",
    "StorageTracker",
    "peel",
    "provenance",
    "split_condition",
    "track_storage",
]
