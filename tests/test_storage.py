"""Tests for storage access tracking."""
from __future__ import annotations

from evm_lens.cfg import EdgeKind, build_cfg
from evm_lens.config import AnalysisConfig
from evm_lens.engine.state import SymbolicValue
from evm_lens.evm.decoder import decode
from evm_lens.evm.opcodes import OpCode
from evm_lens.storage import AccessKind, GuardStatus, ProvenanceKind, peel, provenance, split_condition, track_storage


def _analyze(code: list[int], config: AnalysisConfig | None = None):
    cfg = build_cfg(decode(bytes(code)))
    storage = track_storage(cfg, config) if config else track_storage(cfg)
    return cfg, storage


def _owner_gated_write() -> list[int]:
    # require(msg.sender == SLOAD(0)); SSTORE(1, CALLDATALOAD(4))
    return [
        OpCode.CALLER, OpCode.PUSH0, OpCode.SLOAD, OpCode.EQ, OpCode.PUSH1, 0x0A, OpCode.JUMPI,
        OpCode.PUSH0, OpCode.PUSH0, OpCode.REVERT,
        OpCode.JUMPDEST, OpCode.PUSH1, 0x04, OpCode.CALLDATALOAD, OpCode.PUSH1, 0x01, OpCode.SSTORE, OpCode.STOP,
    ]


def _diamond() -> list[int]:
    # Two equal-length paths reach the SLOAD block at offset 9.
    return [
        OpCode.PUSH0, OpCode.CALLDATALOAD, OpCode.PUSH1, 0x08, OpCode.JUMPI,
        OpCode.PUSH1, 0x09, OpCode.JUMP,
        OpCode.JUMPDEST,
        OpCode.JUMPDEST, OpCode.PUSH0, OpCode.SLOAD, OpCode.POP, OpCode.STOP,
    ]


def test_reads_and_writes_are_recorded_with_slots():
    _, storage = _analyze(_owner_gated_write())

    (read,) = storage.reads()
    (write,) = storage.writes()
    assert (read.slot, read.offset, read.access) == (0, 2, AccessKind.READ)
    assert (write.slot, write.offset, write.access) == (1, 16, AccessKind.WRITE)
    assert write.value.op == "CALLDATALOAD"
    assert storage.written_slots() == {1}


def test_guarding_conditions_name_caller_and_owner_slot():
    cfg, storage = _analyze(_owner_gated_write())

    (write,) = storage.writes(1)
    assert write.guard.status == GuardStatus.KNOWN
    (cond,) = write.guarding_conditions
    assert cond.block == cfg.entry.id
    assert cond.branch == EdgeKind.CONDITIONAL_TAKEN
    assert cond.comparison == "EQ"
    assert cond.asserted
    kinds = {op.kind for op in cond.operands}
    assert kinds == {ProvenanceKind.SLOAD, ProvenanceKind.CALLER}
    assert any(op.slot == 0 for op in cond.operands)
    assert write.is_caller_gated
    assert cond.describe() in ("SLOAD(slot 0x0) == CALLER", "CALLER == SLOAD(slot 0x0)")


def test_iszero_flips_asserted_side():
    code = [
        OpCode.CALLER, OpCode.PUSH0, OpCode.SLOAD, OpCode.EQ, OpCode.ISZERO, OpCode.PUSH1, 0x0B, OpCode.JUMPI,
        OpCode.PUSH0, OpCode.SLOAD, OpCode.STOP,
        OpCode.JUMPDEST, OpCode.PUSH0, OpCode.PUSH0, OpCode.REVERT,
    ]
    _, storage = _analyze(code)

    fallthrough_read = [u for u in storage.reads(0) if u.offset == 9][0]
    (cond,) = fallthrough_read.guarding_conditions
    assert cond.branch == EdgeKind.CONDITIONAL_NOT_TAKEN
    assert cond.asserted
    assert not storage.conditions[0].ref(EdgeKind.CONDITIONAL_TAKEN).asserted


def test_entry_block_accesses_have_empty_guard():
    _, storage = _analyze(_owner_gated_write())

    (read,) = storage.reads(0)
    assert read.guard.is_known
    assert read.guarding_conditions == ()


def test_too_many_shortest_paths_degrades_guard():
    _, bounded = _analyze(_diamond(), AnalysisConfig(max_guard_paths=1))
    _, default = _analyze(_diamond())

    (bounded_read,) = bounded.reads(0)
    assert bounded_read.guard.status == GuardStatus.TOO_MANY_PATHS
    assert bounded_read.guarding_conditions is None
    (default_read,) = default.reads(0)
    assert default_read.guard.status == GuardStatus.KNOWN
    assert len(default_read.guarding_conditions) == 1


def test_path_step_ceiling_degrades_guard():
    _, storage = _analyze(_diamond(), AnalysisConfig(max_path_steps=1))

    (read,) = storage.reads(0)
    assert read.guard.status == GuardStatus.TOO_MANY_PATHS


def test_unreachable_access_is_marked_unreached():
    code = [OpCode.STOP, OpCode.JUMPDEST, OpCode.PUSH0, OpCode.SLOAD, OpCode.POP, OpCode.STOP]
    _, storage = _analyze(code)

    (read,) = storage.reads()
    assert read.guard.status == GuardStatus.UNREACHED
    assert read.guarding_conditions is None


def test_slot_pushed_in_predecessor_is_resolved():
    # PUSH1 7, PUSH1 5, JUMP | JUMPDEST SLOAD POP STOP
    code = [OpCode.PUSH1, 0x07, OpCode.PUSH1, 0x05, OpCode.JUMP, OpCode.JUMPDEST, OpCode.SLOAD, OpCode.POP, OpCode.STOP]
    _, storage = _analyze(code)
    _, isolated = _analyze(code, AnalysisConfig(max_context_blocks=0))

    (read,) = storage.reads()
    assert read.slot == 7
    (unseeded,) = isolated.reads()
    assert unseeded.is_symbolic
    assert unseeded.key.op == "entry"


def test_mapping_key_is_symbolic():
    code = [
        OpCode.CALLER, OpCode.PUSH0, OpCode.MSTORE, OpCode.PUSH0, OpCode.PUSH1, 0x20, OpCode.MSTORE,
        OpCode.PUSH1, 0x40, OpCode.PUSH0, OpCode.KECCAK256, OpCode.SLOAD, OpCode.POP, OpCode.STOP,
    ]
    _, storage = _analyze(code)

    (read,) = storage.reads()
    assert read.is_symbolic
    assert read.key.op == "KECCAK256"
    assert read.key.depends_on("CALLER")


def test_self_loop_tracking_terminates():
    _, storage = _analyze([OpCode.JUMPDEST, OpCode.PUSH0, OpCode.SLOAD, OpCode.PUSH1, 0x00, OpCode.JUMP])

    (read,) = storage.reads()
    assert read.slot == 0


def test_public_getter_discovered_from_dispatcher():
    code = [
        OpCode.PUSH0, OpCode.CALLDATALOAD, OpCode.PUSH1, 0xE0, OpCode.SHR,
        OpCode.PUSH4, 0x8D, 0xA5, 0xCB, 0x5B, OpCode.EQ, OpCode.PUSH1, 0x11, OpCode.JUMPI,
        OpCode.PUSH0, OpCode.PUSH0, OpCode.REVERT,
        OpCode.JUMPDEST, OpCode.PUSH0, OpCode.SLOAD, OpCode.PUSH0, OpCode.MSTORE,
        OpCode.PUSH1, 0x20, OpCode.PUSH0, OpCode.RETURN,
    ]
    _, storage = _analyze(code)

    assert storage.dispatcher_found
    assert storage.getters == {0: [0x8DA5CB5B]}
    assert storage.has_getter(0)


def test_function_body_with_sstore_is_not_a_getter():
    code = [
        OpCode.PUSH0, OpCode.CALLDATALOAD, OpCode.PUSH1, 0xE0, OpCode.SHR,
        OpCode.PUSH4, 0x12, 0x34, 0x56, 0x78, OpCode.EQ, OpCode.PUSH1, 0x11, OpCode.JUMPI,
        OpCode.PUSH0, OpCode.PUSH0, OpCode.REVERT,
        OpCode.JUMPDEST, OpCode.PUSH0, OpCode.SLOAD, OpCode.PUSH1, 0x01, OpCode.SSTORE, OpCode.STOP,
    ]
    _, storage = _analyze(code)

    assert storage.dispatcher_found
    assert storage.getters == {}


def test_provenance_peels_address_mask():
    caller = SymbolicValue.env("CALLER", 0)
    mask = SymbolicValue.const((1 << 160) - 1)
    masked = SymbolicValue(op="AND", args=(mask, caller))

    assert peel(masked) is caller
    assert provenance(masked).kind == ProvenanceKind.CALLER


def test_provenance_peels_packed_slot_shift():
    sload = SymbolicValue(op="SLOAD", args=(SymbolicValue.const(3),))
    shifted = SymbolicValue(op="SHR", args=(SymbolicValue.const(8), sload))
    prov = provenance(shifted)

    assert prov.kind == ProvenanceKind.SLOAD
    assert prov.slot == 3


def test_provenance_of_unknowns_and_environment():
    assert provenance(SymbolicValue.entry(0)).is_unknown
    assert provenance(SymbolicValue.env("TIMESTAMP")).kind == ProvenanceKind.TIME
    assert provenance(SymbolicValue.env("CALLVALUE")).kind == ProvenanceKind.CALLVALUE
    assert provenance(SymbolicValue.const(5)).value == 5
    added = SymbolicValue(op="ADD", args=(SymbolicValue.entry(0), SymbolicValue.entry(1)))
    assert provenance(added).kind == ProvenanceKind.COMPUTED


def test_split_condition_counts_negations():
    eq = SymbolicValue(op="EQ", args=(SymbolicValue.env("CALLER"), SymbolicValue.const(1)))
    doubled = SymbolicValue(op="ISZERO", args=(SymbolicValue(op="ISZERO", args=(eq,)),))

    comparison, operands, negations = split_condition(doubled)
    assert comparison == "EQ"
    assert negations == 2
    assert [op.kind for op in operands] == [ProvenanceKind.CALLER, ProvenanceKind.CONSTANT]
    assert split_condition(SymbolicValue.env("CALLVALUE"))[0] == "NONZERO"
