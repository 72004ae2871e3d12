"""CLI entry point for Driftwatch."""

from __future__ import annotations

import asyncio
import json
import os
from collections import Counter
from pathlib import Path
from typing import Annotated, Any

import httpx
import typer
import yaml
from rich import print as rprint
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from driftwatch.config import DEFAULT_CONFIG_TEMPLATE, load_config
from driftwatch.logging_setup import setup_logging
from driftwatch_core.config import DriftwatchConfig
from driftwatch_core.fetch import AsyncFetcherAdapter, AsyncHttpNodeFetcher, LocalNodeFetcher
from driftwatch_core.fingerprint import LeafSet, Ruleset, RulesetContract, check_deterministic
from driftwatch_core.mst import Change, DriftError, MerkleSearchTree, from_hex, to_hex
from driftwatch_core.report import (
    ReconciliationReport,
    ReportLimits,
    Verdict,
    areconcile,
    reconcile,
)

app = typer.Typer(
    name="driftwatch",
    help="Detect record drift between services with Merkle Search Trees.",
)

config_app = typer.Typer(help="Manage Driftwatch configuration.")
app.add_typer(config_app, name="config")

# Global state
_config: DriftwatchConfig | None = None

EXIT_DRIFT = 1
EXIT_UNVERIFIED = 2


def _get_config() -> DriftwatchConfig:
    if _config is None:
        return load_config()
    return _config


@app.callback()
def main(
    config: Annotated[
        str | None, typer.Option("--config", "-c", help="Path to driftwatch.yaml")
    ] = None,
) -> None:
    """Global options."""
    global _config
    try:
        _config = load_config(config)
    except ValueError as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    setup_logging(_config.log_level, _config.log_format)


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Parse a JSON Lines file into a list of objects, skipping blank lines."""
    rows: list[dict[str, Any]] = []
    with open(path) as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{lineno}: invalid JSON: {e}") from e
            if not isinstance(obj, dict):
                raise ValueError(f"{path}:{lineno}: expected a JSON object")
            rows.append(obj)
    return rows


def _parse_change(obj: dict[str, Any]) -> Change:
    try:
        fp = obj.get("fingerprint")
        return Change(obj["op"], int(obj["key"]), from_hex(fp) if fp else None)
    except KeyError as e:
        raise ValueError(f"change {obj!r} is missing {e}") from e


def _load_tree(path: Path) -> MerkleSearchTree:
    if not path.is_file():
        raise ValueError(f"Tree file not found: {path}")
    return MerkleSearchTree.load(path)


# ---------------------------------------------------------------------------
# Leaf set and tree commands
# ---------------------------------------------------------------------------


@app.command()
def fingerprint(
    records: Annotated[Path, typer.Argument(help="Records as JSON Lines")],
    ruleset: Annotated[Path, typer.Option("--ruleset", "-r", help="Ruleset YAML")],
    out: Annotated[Path, typer.Option("--out", "-o", help="Leaf set output (JSON Lines)")],
    last_wins: Annotated[
        bool, typer.Option("--last-wins", help="Keep the last record on duplicate keys")
    ] = False,
    check: Annotated[
        bool, typer.Option("--check", help="Fingerprint twice and fail on any difference")
    ] = False,
) -> None:
    """Fingerprint records into a leaf set."""
    try:
        contract = RulesetContract(Ruleset.load(ruleset))
        rows = _read_jsonl(records)
        if check:
            check_deterministic(contract, rows)
        leafset = LeafSet.from_records(rows, contract, on_duplicate="last" if last_wins else "error")
        leafset.save_jsonl(out)
    except (DriftError, ValueError, OSError) as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    rprint(f"[green]Fingerprinted[/green] {len(leafset)} records ({contract.ruleset_tag}) -> {out}")


@app.command()
def build(
    leaves: Annotated[Path, typer.Argument(help="Leaf set (JSON Lines)")],
    out: Annotated[Path, typer.Option("--out", "-o", help="Tree output (JSON)")],
    ruleset_tag: Annotated[
        str | None, typer.Option("--ruleset-tag", help="Override the ruleset tag")
    ] = None,
) -> None:
    """Build a Merkle Search Tree from a leaf set."""
    cfg = _get_config()
    try:
        leafset = LeafSet.load_jsonl(leaves)
        leafset.ruleset = ruleset_tag or leafset.ruleset or cfg.ruleset
        tree = leafset.to_tree(params=cfg.tree)
        tree.save(out)
    except (DriftError, ValueError, OSError) as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    rprint(f"[green]Built[/green] {out} ({len(tree)} leaves, root {to_hex(tree.root_hash)[:16]})")


@app.command()
def show(
    tree_path: Annotated[Path, typer.Argument(help="Tree file (JSON)")],
) -> None:
    """Show a tree's root hash, shape and parameters."""
    try:
        tree = _load_tree(tree_path)
    except (DriftError, ValueError, OSError) as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    per_height = Counter(node.height for node in tree.nodes())
    shape = ", ".join(f"h{h}: {n}" for h, n in sorted(per_height.items(), reverse=True)) or "-"
    panel_text = (
        f"[bold]{to_hex(tree.root_hash)}[/bold]\n\n"
        f"[dim]Leaves:[/dim]      {len(tree)}\n"
        f"[dim]Height:[/dim]      {tree.height}\n"
        f"[dim]Nodes:[/dim]       {shape}\n"
        f"[dim]Ruleset:[/dim]     {tree.ruleset or '(none)'}\n"
        f"[dim]Key width:[/dim]   {tree.params.key_width} bytes\n"
        f"[dim]Fanout bits:[/dim] {tree.params.fanout_bits}"
    )
    rprint(Panel(panel_text, title=str(tree_path), border_style="blue"))


@app.command()
def apply(
    tree_path: Annotated[Path, typer.Argument(help="Tree file (JSON)")],
    changes: Annotated[Path, typer.Argument(help="Changes as JSON Lines {op, key, fingerprint}")],
    out: Annotated[
        Path | None, typer.Option("--out", "-o", help="Output tree (default: overwrite input)")
    ] = None,
) -> None:
    """Apply a batch of inserts, updates and deletes to a tree."""
    try:
        tree = _load_tree(tree_path)
        batch = [_parse_change(obj) for obj in _read_jsonl(changes)]
        new_tree = tree.apply(batch)
        new_tree.save(out or tree_path)
    except (DriftError, ValueError, OSError) as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    rprint(
        f"[green]Applied[/green] {len(batch)} changes: "
        f"{to_hex(tree.root_hash)[:16]} -> {to_hex(new_tree.root_hash)[:16]}"
    )


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------


async def _diff_peer(
    left: MerkleSearchTree,
    base_url: str,
    cfg: DriftwatchConfig,
    limits: ReportLimits,
) -> ReconciliationReport:
    token = os.environ.get(cfg.peer.token_env)
    async with AsyncHttpNodeFetcher(
        base_url, token=token, timeout=cfg.peer.timeout, verify=cfg.peer.verify_tls
    ) as remote:
        right_manifest = await remote.manifest()
        return await areconcile(
            left.manifest(),
            AsyncFetcherAdapter(LocalNodeFetcher(left.store)),
            right_manifest,
            remote,
            limits,
            fetch_timeout=cfg.diff.fetch_timeout,
            diff_timeout=cfg.diff.diff_timeout,
        )


def _display_report(report: ReconciliationReport) -> None:
    table = Table(title=f"Divergent keys ({report.total})")
    table.add_column("Key", justify="right", style="cyan")
    table.add_column("Category")
    table.add_column("Left", style="dim")
    table.add_column("Right", style="dim")
    styles = {"hash_mismatch": "yellow", "missing_left": "red", "missing_right": "magenta"}
    for entry in report.entries:
        style = styles[entry.category.value]
        table.add_row(
            str(entry.key),
            f"[{style}]{entry.category.value}[/{style}]",
            entry.left[:16] if entry.left else "-",
            entry.right[:16] if entry.right else "-",
        )
    if report.entries:
        rprint(table)
    if report.truncated:
        rprint(f"[yellow]Showing {len(report.entries)} of {report.total} divergences (truncated).[/yellow]")

    for rng in report.unverified:
        span = "whole tree" if rng.low is None else f"keys {rng.low}..{rng.high}"
        rprint(f"[red]Unverified[/red] {rng.side} {span}: {rng.reason}")

    rprint(
        f"\n[dim]Left root:[/dim]  {report.left_root}\n"
        f"[dim]Right root:[/dim] {report.right_root}\n"
        f"[dim]Counts:[/dim]     hash_mismatch={report.hash_mismatch} "
        f"missing_left={report.missing_left} missing_right={report.missing_right}"
    )
    if report.verdict is Verdict.identical:
        rprint("\n[green]Trees are identical.[/green]")
    elif report.verdict is Verdict.divergent:
        rprint(f"\n[red]{report.total} divergent key(s) found.[/red]")
    else:
        rprint("\n[yellow]Comparison incomplete; no conclusion about equality.[/yellow]")


def _echo_ci(report: ReconciliationReport) -> None:
    # Plain text, one divergent key per line
    for entry in report.entries:
        typer.echo(f"{entry.category.value.upper()} {entry.key}")
    for rng in report.unverified:
        low = "*" if rng.low is None else rng.low
        high = "*" if rng.high is None else rng.high
        typer.echo(f"UNVERIFIED {rng.side} {low}..{high}")
    typer.echo(f"verdict={report.verdict.value} total={report.total} truncated={str(report.truncated).lower()}")
    typer.echo(f"left_root={report.left_root}")
    typer.echo(f"right_root={report.right_root}")


@app.command()
def diff(
    left: Annotated[Path, typer.Argument(help="Local tree file (JSON)")],
    right: Annotated[Path | None, typer.Argument(help="Second tree file (omit with --peer)")] = None,
    peer: Annotated[
        str | None, typer.Option("--peer", help="Base URL of a peer serving the node fetch protocol")
    ] = None,
    ci: Annotated[bool, typer.Option("--ci", help="Machine-readable output")] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Print the report as JSON")] = False,
    fail_on_drift: Annotated[
        bool, typer.Option("--fail-on-drift", help="Exit 1 on drift, 2 if the diff is incomplete")
    ] = False,
    max_entries: Annotated[
        int | None, typer.Option("--max-entries", min=1, help="Cap on listed divergences")
    ] = None,
) -> None:
    """Diff two trees, or a local tree against a remote peer."""
    cfg = _get_config()
    limits = ReportLimits(
        max_entries=max_entries or cfg.report.max_entries,
        max_divergences=cfg.report.max_divergences,
        time_budget=cfg.report.time_budget,
    )
    base_url = peer or cfg.peer.base_url
    if right is None and base_url is None:
        rprint("[red]Error:[/red] give a second tree or --peer URL")
        raise typer.Exit(1)

    try:
        left_tree = _load_tree(left)
        if right is not None:
            report = reconcile(left_tree, _load_tree(right), limits)
        else:
            report = asyncio.run(_diff_peer(left_tree, base_url, cfg, limits))
    except (DriftError, ValueError, OSError) as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except httpx.HTTPError as e:
        rprint(f"[red]Peer error:[/red] {e}")
        raise typer.Exit(1)

    if as_json:
        typer.echo(report.model_dump_json(indent=2))
    elif ci:
        _echo_ci(report)
    else:
        _display_report(report)

    if fail_on_drift:
        if report.verdict is Verdict.divergent:
            raise typer.Exit(code=EXIT_DRIFT)
        if report.verdict is Verdict.unverified:
            raise typer.Exit(code=EXIT_UNVERIFIED)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show() -> None:
    """Show current resolved configuration."""
    cfg = _get_config()
    rprint(Syntax(yaml.dump(cfg.model_dump(), default_flow_style=False), "yaml"))


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite existing config"),
) -> None:
    """Create default driftwatch.yaml in current directory."""
    target = Path("driftwatch.yaml")
    if target.exists() and not force:
        rprint("[yellow]driftwatch.yaml already exists.[/yellow] Use --force to overwrite.")
        raise typer.Exit(1)
    target.write_text(DEFAULT_CONFIG_TEMPLATE)
    rprint(f"[green]Created[/green] {target}")


if __name__ == "__main__":
    app()
