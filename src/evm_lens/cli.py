"""CLI entry point for evm-lens."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .cfg import build_cfg
from .config import DEFAULT_CONFIG, AnalysisConfig
from .errors import FatalInputError, LayoutError, SnapshotError
from .evm.decoder import decode_hex
from .evm.layout import parse_layout, parse_snapshot
from .evm.sources import DirectorySource
from .pipeline import Contract, analyze_addresses, analyze_bytecode, select_rules
from .report.generator import ReportGenerator
from .rules import ALL_RULES, SEVERITY_RANK, Severity

console = Console()

_SEVERITY_RANK_BY_NAME: dict[str, int] = {s.value: r for s, r in SEVERITY_RANK.items()}
_SEV_COLORS = {"critical": "red", "high": "bright_red", "medium": "yellow", "low": "blue", "info": "white"}
_LOG_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)


def _configure_logging(verbosity: int) -> None:
    level = _LOG_LEVELS[min(verbosity, len(_LOG_LEVELS) - 1)]
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _limit_options(func):
    options = [
        click.option("--jump-window", type=int, default=None, help="Instructions simulated to resolve a computed jump"),
        click.option("--max-block-steps", type=int, default=None, help="Instructions interpreted per block"),
        click.option("--max-guard-paths", type=int, default=None, help="Shortest paths counted before a guard is unknown"),
        click.option("--max-path-steps", type=int, default=None, help="Edge visits allowed for guard enumeration"),
        click.option("--solver-timeout", "solver_timeout_ms", type=int, default=None, help="z3 timeout in milliseconds"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_config(**limits: int | None) -> AnalysisConfig:
    try:
        return DEFAULT_CONFIG.replace(**limits)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


def _parse_rule_names(rules: str | None) -> list[str] | None:
    if not rules:
        return None
    selected = [name.strip() for name in rules.split(",") if name.strip()]
    try:
        select_rules(selected)
    except KeyError as exc:
        console.print(f"[red]Unknown rule(s): {exc.args[0]}[/]")
        console.print(f"Available: {', '.join(ALL_RULES)}")
        sys.exit(2)
    return selected


def _read_bytecode(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        console.print(f"[red]Failed to read bytecode: {exc}[/]")
        sys.exit(1)


def _findings_table(contract: Contract) -> Table:
    table = Table(title=f"Findings: {contract.contract_id}")
    table.add_column("Severity", style="bold")
    table.add_column("Rule")
    table.add_column("Block", justify="right")
    table.add_column("Offset")
    table.add_column("Message")
    for f in contract.risk.findings:
        table.add_row(
            f"[{_SEV_COLORS[f.severity.value]}]{f.severity.value.upper()}[/]",
            f.rule_id,
            str(f.block),
            f"0x{f.offset:04X}" if f.offset >= 0 else "-",
            escape(f.message),
        )
    return table


def _gate_violations(contract: Contract, fail_on_score: int | None, fail_on_severity: str | None) -> list[str]:
    violations: list[str] = []
    if fail_on_score is not None and contract.risk_score >= fail_on_score:
        violations.append(f"Risk score gate failed: {contract.risk_score} >= threshold {fail_on_score}.")
    worst = contract.risk.max_severity
    if (
        fail_on_severity is not None
        and worst is not None
        and SEVERITY_RANK[worst] <= _SEVERITY_RANK_BY_NAME[fail_on_severity.lower()]
    ):
        violations.append(f"Max severity gate failed: {worst.value} >= threshold {fail_on_severity.lower()}.")
    return violations


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-v info, -vv debug)")
def main(verbose: int) -> None:
    """EVM bytecode static analyzer for deceptive contract patterns."""
    _configure_logging(verbose)


@main.command()
@click.argument("bytecode_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--layout", "-l", type=click.Path(exists=True, dir_okay=False), help="Storage layout JSON file")
@click.option("--storage", "-s", type=click.Path(exists=True, dir_okay=False), help="Observed storage snapshot JSON")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write the JSON report here")
@click.option("--format", "fmt", type=click.Choice(["json", "table"]), default="table")
@click.option("--rules", "-r", type=str, default=None, help="Comma-separated rule ids")
@_limit_options
@click.option("--fail-on-score", type=int, default=None, help="Exit with code 3 if the risk score reaches this value.")
@click.option(
    "--fail-on-severity",
    type=click.Choice([severity.value for severity in Severity], case_sensitive=False),
    default=None,
    help="Exit with code 3 if any finding is at least this severe.",
)
def analyze(
    bytecode_file: str,
    layout: str | None,
    storage: str | None,
    output: str | None,
    fmt: str,
    rules: str | None,
    jump_window: int | None,
    max_block_steps: int | None,
    max_guard_paths: int | None,
    max_path_steps: int | None,
    solver_timeout_ms: int | None,
    fail_on_score: int | None,
    fail_on_severity: str | None,
) -> None:
    """Analyze a hex-encoded runtime bytecode file."""
    config = _build_config(
        jump_window=jump_window,
        max_block_steps=max_block_steps,
        max_guard_paths=max_guard_paths,
        max_path_steps=max_path_steps,
        solver_timeout_ms=solver_timeout_ms,
    )
    selected = _parse_rule_names(rules)
    source = _read_bytecode(bytecode_file)

    storage_layout = None
    if layout:
        try:
            storage_layout = parse_layout(Path(layout).read_text(encoding="utf-8"))
        except LayoutError as exc:
            console.print(f"[red]Failed to parse layout: {exc}[/]")
            sys.exit(1)
    snapshot = None
    if storage:
        try:
            snapshot = parse_snapshot(Path(storage).read_text(encoding="utf-8"))
        except SnapshotError as exc:
            console.print(f"[red]Failed to parse storage snapshot: {exc}[/]")
            sys.exit(1)

    try:
        contract = analyze_bytecode(
            source,
            contract_id=Path(bytecode_file).stem,
            layout=storage_layout,
            snapshot=snapshot,
            config=config,
            rules=selected,
        )
    except FatalInputError as exc:
        console.print(f"[red]Failed to analyze bytecode: {exc}[/]")
        sys.exit(1)

    report = ReportGenerator(contract).to_json()
    if fmt == "json":
        if not output:
            click.echo(report)
    else:
        summary = contract.cfg_summary()
        console.print(f"[bold blue]evm-lens v{__version__}[/]")
        console.print(f"Analyzing: {bytecode_file}\n")
        console.print(f"  Bytecode size: {len(contract.bytecode)} bytes")
        console.print(f"  Instructions: {len(contract.instructions)}")
        console.print(
            f"  Blocks: {summary['block_count']}, edges: {summary['edge_count']}, "
            f"unresolved jumps: {summary['unresolved_jump_count']}\n"
        )
        if contract.risk.findings:
            console.print(_findings_table(contract))
        else:
            console.print("[green]No findings.[/]")
        console.print(f"\n[bold]Risk score: {contract.risk_score}[/]\n")
    if output:
        Path(output).write_text(report + "\n", encoding="utf-8")
        console.print(f"[green]Report saved to {output}[/]")

    violations = _gate_violations(contract, fail_on_score, fail_on_severity)
    if violations:
        for violation in violations:
            console.print(f"[red]{violation}[/]")
        sys.exit(3)


@main.command()
@click.argument("bytecode_file", type=click.Path(exists=True, dir_okay=False))
def disasm(bytecode_file: str) -> None:
    """Print the decoded instruction listing."""
    try:
        instructions = decode_hex(_read_bytecode(bytecode_file))
    except FatalInputError as exc:
        console.print(f"[red]Failed to decode bytecode: {exc}[/]")
        sys.exit(1)
    for instr in instructions:
        marker = "  ; truncated" if instr.truncated else ""
        click.echo(f"{instr}{marker}")


@main.command()
@click.argument("bytecode_file", type=click.Path(exists=True, dir_okay=False))
@_limit_options
def cfg(
    bytecode_file: str,
    jump_window: int | None,
    max_block_steps: int | None,
    max_guard_paths: int | None,
    max_path_steps: int | None,
    solver_timeout_ms: int | None,
) -> None:
    """Print basic blocks and their edges."""
    config = _build_config(
        jump_window=jump_window,
        max_block_steps=max_block_steps,
        max_guard_paths=max_guard_paths,
        max_path_steps=max_path_steps,
        solver_timeout_ms=solver_timeout_ms,
    )
    try:
        instructions = decode_hex(_read_bytecode(bytecode_file))
    except FatalInputError as exc:
        console.print(f"[red]Failed to decode bytecode: {exc}[/]")
        sys.exit(1)
    graph = build_cfg(instructions, config)

    table = Table(title="Basic Blocks")
    table.add_column("Block", justify="right")
    table.add_column("Range")
    table.add_column("Exit")
    table.add_column("Successors")
    for block in graph.blocks:
        if block.is_sink:
            label, exit_name = f"sink:{block.sink}", "-"
        else:
            label = f"0x{block.start_offset:04X}-0x{block.end_offset:04X}"
            exit_name = block.last.mnemonic if block.last is not None else "-"
        edges = ", ".join(
            f"{edge.kind}->{edge.target if edge.target is not None else '?'} ({edge.confidence})"
            for edge in block.successors
        )
        table.add_row(str(block.id), label, exit_name, edges or "-")
    console.print(table)
    for violation in graph.violations:
        console.print(f"[red]Invalid jump at 0x{violation.jump_offset:04X}: {violation.reason}[/]")
    summary = graph.summary()
    console.print(
        f"\n[bold]{summary['block_count']} blocks, {summary['edge_count']} edges, "
        f"{summary['unresolved_jump_count']} unresolved jumps[/]"
    )


@main.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("--workers", "-w", type=int, default=4, show_default=True, help="Worker threads")
@click.option("--timeout", "-t", type=float, default=None, help="Per-contract time budget in seconds")
@click.option("--rules", "-r", type=str, default=None, help="Comma-separated rule ids")
@click.option("--output", "-o", type=click.Path(file_okay=False), help="Write one JSON report per contract here")
def batch(directory: str, workers: int, timeout: float | None, rules: str | None, output: str | None) -> None:
    """Analyze every ``*.hex`` file in DIRECTORY."""
    selected = _parse_rule_names(rules)
    source = DirectorySource(directory)
    addresses = source.addresses()
    if not addresses:
        console.print(f"[yellow]No .hex files found in {directory}[/]")
        return

    with console.status(f"[bold green]Analyzing {len(addresses)} contract(s)..."):
        results = analyze_addresses(source, addresses, rules=selected, max_workers=workers, timeout=timeout)

    out_dir = Path(output) if output else None
    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)

    table = Table(title="Batch Results")
    table.add_column("Contract")
    table.add_column("Status")
    table.add_column("Score", justify="right")
    table.add_column("Findings", justify="right")
    failures = 0
    for result in results:
        if result.contract is None:
            failures += 1
            table.add_row(result.contract_id, f"[red]error: {result.error}[/]", "-", "-")
            continue
        contract = result.contract
        status = contract.status.value
        if not contract.is_complete:
            status = f"[yellow]{status} ({contract.aborted_stage})[/]"
        table.add_row(contract.contract_id, status, str(contract.risk_score), str(len(contract.risk.findings)))
        if out_dir is not None:
            (out_dir / f"{contract.contract_id}.json").write_text(
                ReportGenerator(contract).to_json() + "\n", encoding="utf-8"
            )
    console.print(table)
    if failures:
        sys.exit(1)


if __name__ == "__main__":
    main()
