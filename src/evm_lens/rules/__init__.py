"""Pattern detection rules."""

from .base import SEVERITY_RANK, SEVERITY_WEIGHT, Finding, Rule, RuleContext, Severity, finding
from .dynamic_fee import detect_dynamic_fee
from .forced_revert import detect_forced_revert
from .hidden_authority import canonical_owner_slots, detect_hidden_authority
from .mutable_delegate import detect_mutable_delegate
from .owner_backdoor import detect_owner_backdoor
from .structural import detect_decode_anomalies, detect_invalid_jump_targets, detect_unresolved_jumps

ALL_RULES: dict[str, Rule] = {
    "ForcedRevertOnPath": detect_forced_revert,
    "HiddenAuthoritySlot": detect_hidden_authority,
    "DynamicFeeMultiplier": detect_dynamic_fee,
    "MutableDelegateTarget": detect_mutable_delegate,
    "UnreachableOwnerBackdoor": detect_owner_backdoor,
    "InvalidJumpTargetAtDesignTime": detect_invalid_jump_targets,
    "UnresolvedIndirectJump": detect_unresolved_jumps,
    "DecodeAnomaly": detect_decode_anomalies,
}

__all__ = [
    "ALL_RULES",
    "SEVERITY_RANK",
    "SEVERITY_WEIGHT",
    "Finding",
    "Rule",
    "RuleContext",
    "Severity",
    "canonical_owner_slots",
    "finding",
]
