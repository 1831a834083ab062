"""Tests for control-flow graph construction."""
from __future__ import annotations

from evm_lens.cfg import Confidence, EdgeKind, SinkKind, build_cfg, check_jump_validity, resolve_jump_target
from evm_lens.config import AnalysisConfig
from evm_lens.evm.decoder import decode
from evm_lens.evm.opcodes import OpCode


def _cfg(code: list[int], config: AnalysisConfig | None = None):
    instructions = decode(bytes(code))
    return build_cfg(instructions, config) if config else build_cfg(instructions)


def _branching_code() -> list[int]:
    # 0: PUSH0 CALLDATALOAD PUSH1 0x08 JUMPI | 5: PUSH0 PUSH0 REVERT | 8: JUMPDEST STOP
    return [
        OpCode.PUSH0, OpCode.CALLDATALOAD, OpCode.PUSH1, 0x08, OpCode.JUMPI,
        OpCode.PUSH0, OpCode.PUSH0, OpCode.REVERT,
        OpCode.JUMPDEST, OpCode.STOP,
    ]


def test_blocks_split_at_terminators_and_jumpdests():
    cfg = _cfg(_branching_code())

    code_blocks = cfg.code_blocks()
    assert [(b.start_offset, b.end_offset) for b in code_blocks] == [(0, 4), (5, 7), (8, 9)]
    offsets = [i.offset for b in code_blocks for i in b.instructions]
    assert offsets == sorted(set(offsets))
    assert cfg.entry is code_blocks[0]


def test_jumpi_produces_taken_and_not_taken_edges():
    cfg = _cfg(_branching_code())

    edges = cfg.entry.successors
    assert [e.kind for e in edges] == [EdgeKind.CONDITIONAL_TAKEN, EdgeKind.CONDITIONAL_NOT_TAKEN]
    assert cfg.block(edges[0].target).start_offset == 8
    assert edges[0].confidence == Confidence.EXACT
    assert cfg.block(edges[1].target).start_offset == 5
    assert cfg.summary() == {"block_count": 3, "edge_count": 2, "unresolved_jump_count": 0}


def test_block_ending_before_jumpdest_falls_through():
    cfg = _cfg([OpCode.PUSH1, 0x01, OpCode.POP, OpCode.JUMPDEST, OpCode.STOP])

    (edge,) = cfg.entry.successors
    assert edge.kind == EdgeKind.FALLTHROUGH
    assert cfg.block(edge.target).is_jumpdest


def test_running_off_the_end_reaches_code_end_sink():
    cfg = _cfg([OpCode.PUSH1, 0x01, OpCode.POP])

    (edge,) = cfg.entry.successors
    sink = cfg.block(edge.target)
    assert sink.sink == SinkKind.CODE_END
    assert cfg.exits_from(cfg.entry.id).has_normal_exit


def test_derived_target_through_arithmetic():
    # PUSH1 2, PUSH1 4, ADD, JUMP -> 6 which is a JUMPDEST
    code = [OpCode.PUSH1, 0x02, OpCode.PUSH1, 0x04, OpCode.ADD, OpCode.JUMP, OpCode.JUMPDEST, OpCode.STOP]
    cfg = _cfg(code)

    (edge,) = cfg.entry.successors
    assert edge.kind == EdgeKind.INDIRECT_JUMP
    assert edge.confidence == Confidence.DERIVED
    assert cfg.block(edge.target).start_offset == 6
    assert cfg.violations == []


def test_derived_target_through_dup_and_swap():
    code = [
        OpCode.PUSH1, 0x09, OpCode.PUSH1, 0x33, OpCode.SWAP1, OpCode.DUP1, OpCode.SWAP2, OpCode.POP, OpCode.JUMP,
        OpCode.JUMPDEST, OpCode.STOP,
    ]
    target, confidence = resolve_jump_target(decode(bytes(code))[:-2])

    assert (target, confidence) == (9, Confidence.DERIVED)


def test_jump_on_calldata_stays_unresolved_with_superset_bound():
    code = [OpCode.PUSH0, OpCode.CALLDATALOAD, OpCode.JUMP, OpCode.JUMPDEST, OpCode.STOP, OpCode.JUMPDEST, OpCode.STOP]
    cfg = _cfg(code)

    (edge,) = cfg.entry.successors
    assert edge.target is None
    assert edge.confidence == Confidence.UNRESOLVED
    assert cfg.summary()["unresolved_jump_count"] == 1
    assert cfg.reachable() == {cfg.entry.id}
    upper = cfg.reachable(upper_bound=True)
    assert {cfg.block_at(3).id, cfg.block_at(5).id} <= upper
    assert cfg.exits_from(cfg.entry.id).unresolved


def test_window_limit_leaves_far_target_unresolved():
    code = [OpCode.PUSH1, 0x0B, *([OpCode.PUSH0, OpCode.POP] * 4), OpCode.JUMP, OpCode.JUMPDEST, OpCode.STOP]
    narrow = _cfg(code, AnalysisConfig(jump_window=4))
    wide = _cfg(code)

    assert narrow.entry.successors[0].confidence == Confidence.UNRESOLVED
    assert wide.entry.successors[0].confidence == Confidence.DERIVED


def test_jump_to_non_jumpdest_goes_to_invalid_sink_and_is_reported():
    cfg = _cfg([OpCode.PUSH1, 0x03, OpCode.JUMP, OpCode.STOP])

    (edge,) = cfg.entry.successors
    assert cfg.block(edge.target).sink == SinkKind.INVALID_JUMP_TARGET
    (violation,) = cfg.violations
    assert violation.jump_offset == 2
    assert violation.target_offset == 3
    assert "not a JUMPDEST" in violation.reason


def test_jump_past_code_end_is_reported():
    cfg = _cfg([OpCode.PUSH1, 0xFF, OpCode.JUMP])

    (violation,) = cfg.violations
    assert "outside the code" in violation.reason


def test_jump_into_push_data_is_invalid():
    # The 0x5b at offset 4 is PUSH1 data, not a JUMPDEST.
    cfg = _cfg([OpCode.PUSH1, 0x04, OpCode.JUMP, OpCode.PUSH1, OpCode.JUMPDEST, OpCode.STOP])

    assert cfg.jumpdests == frozenset()
    assert [v.target_offset for v in cfg.violations] == [4]


def test_every_resolved_edge_targets_jumpdest_or_is_reported():
    samples = [
        _branching_code(),
        [OpCode.PUSH1, 0x03, OpCode.JUMP, OpCode.STOP],
        [OpCode.PUSH1, 0x02, OpCode.PUSH1, 0x04, OpCode.ADD, OpCode.JUMP, OpCode.JUMPDEST, OpCode.STOP],
        [OpCode.PUSH1, 0x05, OpCode.PUSH1, 0x01, OpCode.JUMPI, OpCode.STOP],
    ]
    for code in samples:
        cfg = _cfg(code)
        reported = {(v.block, v.jump_offset) for v in cfg.violations}
        for block in cfg.blocks:
            for edge in block.successors:
                if not edge.is_jump or edge.target is None:
                    continue
                if not cfg.block(edge.target).is_jumpdest:
                    assert (block.id, block.last.offset) in reported
        assert check_jump_validity(cfg) == cfg.violations


def test_self_referential_jump_terminates():
    # JUMPDEST PUSH1 0 JUMP: the block jumps to itself forever.
    cfg = _cfg([OpCode.JUMPDEST, OpCode.PUSH1, 0x00, OpCode.JUMP])

    (edge,) = cfg.entry.successors
    assert edge.target == cfg.entry.id
    assert cfg.exits_from(cfg.entry.id).normal_offsets == []
    assert cfg.predecessors(cfg.entry.id)[0][0] == cfg.entry.id


def test_unreachable_blocks_still_get_edges():
    cfg = _cfg([OpCode.STOP, OpCode.PUSH1, 0x05, OpCode.JUMP, OpCode.STOP, OpCode.JUMPDEST, OpCode.STOP])

    orphan = cfg.block_at(1)
    assert orphan.successors
    assert orphan.id not in cfg.reachable()


def test_exits_from_separates_failing_and_normal_branches():
    cfg = _cfg(_branching_code())

    revert_block = cfg.block_at(5)
    stop_block = cfg.block_at(8)
    assert cfg.exits_from(revert_block.id).only_failing
    assert cfg.exits_from(stop_block.id).has_normal_exit
    entry_exits = cfg.exits_from(cfg.entry.id)
    assert entry_exits.failing_offsets == [7]
    assert entry_exits.normal_offsets == [9]


def test_exit_search_is_bounded():
    cfg = _cfg(_branching_code())

    summary = cfg.exits_from(cfg.entry.id, limit=1)
    assert summary.truncated
    assert not summary.only_failing


def test_upper_bound_reachability_with_many_computed_jumps():
    cfg = _cfg([OpCode.JUMPDEST, OpCode.PUSH0, OpCode.CALLDATALOAD, OpCode.JUMP] * 3000)

    assert cfg.summary()["unresolved_jump_count"] == 3000
    upper = cfg.reachable(upper_bound=True)
    assert len(upper) == 3000
    assert cfg.reachable(upper_bound=True) is upper
    assert cfg.reachable() == {cfg.entry.id}


def test_block_containing_maps_offsets_to_blocks():
    cfg = _cfg([OpCode.PUSH1, 0x03, OpCode.JUMP, OpCode.JUMPDEST, OpCode.STOP])

    assert cfg.block_containing(1).id == cfg.entry.id
    assert cfg.block_containing(4).id == cfg.block_at(3).id
    assert cfg.block_containing(5) is None
