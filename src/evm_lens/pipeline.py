"""Analysis pipeline: decode, CFG, storage tracking, rules, aggregation.

A single contract is analyzed on one thread with no shared mutable state.
Batches fan contracts out over a thread pool; the async entry point only
wraps submission and collection.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum

from .cfg import ControlFlowGraph, build_cfg
from .config import DEFAULT_CONFIG, AnalysisConfig
from .errors import FatalInputError
from .evm.decoder import DecodeWarning, Instruction, decode, decode_warnings, parse_hex
from .evm.layout import StorageLayout
from .evm.sources import BytecodeSource
from .report.aggregator import RiskSummary, aggregate
from .rules import ALL_RULES, Finding, RuleContext
from .storage import StorageAnalysis, track_storage

__all__ = [
    "AnalysisStatus",
    "BatchJob",
    "BatchResult",
    "Contract",
    "Stage",
    "analyze_addresses",
    "analyze_batch",
    "analyze_batch_async",
    "analyze_bytecode",
    "select_rules",
]

logger = logging.getLogger(__name__)


class Stage(StrEnum):
    DECODE = "decode"
    CFG = "cfg"
    STORAGE = "storage"
    RULES = "rules"
    AGGREGATE = "aggregate"


class AnalysisStatus(StrEnum):
    COMPLETE = "Complete"
    ABORTED = "Aborted"


@dataclass(slots=True)
class Contract:
    """Everything one analysis produced; partial when ``status`` is Aborted."""

    contract_id: str
    bytecode: bytes
    instructions: list[Instruction] = field(default_factory=list)
    warnings: list[DecodeWarning] = field(default_factory=list)
    cfg: ControlFlowGraph | None = None
    storage: StorageAnalysis | None = None
    findings: list[Finding] = field(default_factory=list)
    risk: RiskSummary = field(default_factory=lambda: RiskSummary(score=0))
    status: AnalysisStatus = AnalysisStatus.COMPLETE
    aborted_stage: Stage | None = None
    completed_stages: list[Stage] = field(default_factory=list)

    @property
    def risk_score(self) -> int:
        return self.risk.score

    @property
    def is_complete(self) -> bool:
        return self.status == AnalysisStatus.COMPLETE

    def cfg_summary(self) -> dict[str, int]:
        if self.cfg is None:
            return {"block_count": 0, "edge_count": 0, "unresolved_jump_count": 0}
        return self.cfg.summary()


def select_rules(names: Iterable[str] | None = None) -> dict[str, Callable[[RuleContext], list[Finding]]]:
    """Resolve rule ids to rule functions; raises KeyError naming the unknown ids."""
    if names is None:
        return dict(ALL_RULES)
    selected = [name.strip() for name in names if name.strip()]
    unknown = [name for name in selected if name not in ALL_RULES]
    if unknown:
        raise KeyError(", ".join(unknown))
    return {name: ALL_RULES[name] for name in selected}


def _coerce_bytecode(bytecode: bytes | str) -> bytes:
    if isinstance(bytecode, str):
        return parse_hex(bytecode)
    if not bytecode:
        raise FatalInputError("Bytecode is empty")
    return bytes(bytecode)


def analyze_bytecode(
    bytecode: bytes | str,
    *,
    contract_id: str = "contract",
    layout: StorageLayout | None = None,
    snapshot: Mapping[int, int] | None = None,
    config: AnalysisConfig = DEFAULT_CONFIG,
    rules: Iterable[str] | None = None,
    should_abort: Callable[[], bool] | None = None,
) -> Contract:
    """Run the full pipeline over one contract.

    Raises FatalInputError for empty or malformed input before any stage
    runs. *should_abort* is polled between stages; when it returns True the
    partial result is returned with status Aborted.
    """
    data = _coerce_bytecode(bytecode)
    selected = select_rules(rules)
    contract = Contract(contract_id=contract_id, bytecode=data)

    def abort_requested(stage: Stage) -> bool:
        if should_abort is not None and should_abort():
            contract.status = AnalysisStatus.ABORTED
            contract.aborted_stage = stage
            logger.warning("Analysis of %s aborted before stage %s", contract_id, stage)
            return True
        return False

    if abort_requested(Stage.DECODE):
        return contract
    contract.instructions = decode(data)
    contract.warnings = decode_warnings(contract.instructions)
    contract.completed_stages.append(Stage.DECODE)
    logger.debug("%s: decoded %d instructions", contract_id, len(contract.instructions))

    if abort_requested(Stage.CFG):
        return contract
    contract.cfg = build_cfg(contract.instructions, config)
    contract.completed_stages.append(Stage.CFG)

    if abort_requested(Stage.STORAGE):
        return contract
    contract.storage = track_storage(contract.cfg, config)
    contract.completed_stages.append(Stage.STORAGE)

    context = RuleContext(
        instructions=tuple(contract.instructions),
        cfg=contract.cfg,
        storage=contract.storage,
        layout=layout,
        snapshot=dict(snapshot) if snapshot is not None else None,
        config=config,
    )
    for name, rule in selected.items():
        if abort_requested(Stage.RULES):
            contract.risk = aggregate(contract.findings)
            return contract
        found = rule(context)
        logger.debug("%s: rule %s produced %d finding(s)", contract_id, name, len(found))
        contract.findings.extend(found)
    contract.completed_stages.append(Stage.RULES)

    if abort_requested(Stage.AGGREGATE):
        return contract
    contract.risk = aggregate(contract.findings)
    contract.completed_stages.append(Stage.AGGREGATE)
    logger.info(
        "%s: %d finding(s), risk score %d", contract_id, len(contract.risk.findings), contract.risk.score
    )
    return contract


@dataclass(slots=True, frozen=True)
class BatchJob:
    contract_id: str
    bytecode: bytes | str
    layout: StorageLayout | None = None
    snapshot: Mapping[int, int] | None = None


@dataclass(slots=True)
class BatchResult:
    contract_id: str
    contract: Contract | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.contract is not None


def _run_job(
    job: BatchJob,
    config: AnalysisConfig,
    rules: Sequence[str] | None,
    deadline: float | None,
) -> BatchResult:
    def expired() -> bool:
        return deadline is not None and time.monotonic() >= deadline

    try:
        contract = analyze_bytecode(
            job.bytecode,
            contract_id=job.contract_id,
            layout=job.layout,
            snapshot=job.snapshot,
            config=config,
            rules=rules,
            should_abort=expired,
        )
    except FatalInputError as exc:
        logger.warning("Skipping %s: %s", job.contract_id, exc)
        return BatchResult(contract_id=job.contract_id, error=str(exc))
    return BatchResult(contract_id=job.contract_id, contract=contract)


def analyze_batch(
    jobs: Iterable[BatchJob],
    *,
    config: AnalysisConfig = DEFAULT_CONFIG,
    rules: Iterable[str] | None = None,
    max_workers: int = 4,
    timeout: float | None = None,
) -> list[BatchResult]:
    """Analyze every job on a thread pool; results keep the input order.

    *timeout* is a per-contract budget in seconds, enforced at stage
    boundaries: a contract that runs over it comes back Aborted.
    """
    job_list = list(jobs)
    rule_names = list(rules) if rules is not None else None
    select_rules(rule_names)
    if not job_list:
        return []

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures: list[Future[BatchResult]] = []
        for job in job_list:
            deadline = time.monotonic() + timeout if timeout is not None else None
            futures.append(pool.submit(_run_job, job, config, rule_names, deadline))
        return [future.result() for future in futures]


async def analyze_batch_async(
    jobs: Iterable[BatchJob],
    *,
    config: AnalysisConfig = DEFAULT_CONFIG,
    rules: Iterable[str] | None = None,
    max_workers: int = 4,
    timeout: float | None = None,
) -> list[BatchResult]:
    """Async framing over the worker pool; the analyses themselves stay synchronous."""
    job_list = list(jobs)
    rule_names = list(rules) if rules is not None else None
    select_rules(rule_names)
    loop = asyncio.get_running_loop()
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        tasks = []
        for job in job_list:
            deadline = time.monotonic() + timeout if timeout is not None else None
            tasks.append(loop.run_in_executor(pool, _run_job, job, config, rule_names, deadline))
        return list(await asyncio.gather(*tasks))


def analyze_addresses(
    source: BytecodeSource,
    addresses: Iterable[str],
    *,
    config: AnalysisConfig = DEFAULT_CONFIG,
    rules: Iterable[str] | None = None,
    max_workers: int = 4,
    timeout: float | None = None,
) -> list[BatchResult]:
    """Fetch bytecode and layouts through *source*, then analyze them as a batch.

    Fetching happens here, before any pipeline runs; a failed fetch becomes
    an errored result instead of stopping the batch.
    """
    jobs: list[BatchJob] = []
    failed: dict[str, BatchResult] = {}
    order: list[str] = []
    for address in addresses:
        order.append(address)
        try:
            bytecode = source.fetch(address)
        except FatalInputError as exc:
            logger.warning("Fetch failed for %s: %s", address, exc)
            failed[address] = BatchResult(contract_id=address, error=str(exc))
            continue
        jobs.append(BatchJob(contract_id=address, bytecode=bytecode, layout=source.fetch_layout(address)))

    analyzed = {
        result.contract_id: result
        for result in analyze_batch(jobs, config=config, rules=rules, max_workers=max_workers, timeout=timeout)
    }
    return [failed.get(address) or analyzed[address] for address in order]
