#!/usr/bin/env python3
"""
Main CLI entry point for clusterform.

Commands:
- run: one orchestration run against a registry and live node endpoints
- plan: offline slot partition for a set of masters
- agent: serve a node control endpoint (for demos and local clusters)

Exit codes of ``run``: 0 succeeded (or aborted in favour of a newer run),
1 failed, 2 succeeded degraded.
"""

import asyncio
import sys
from typing import Any

import click
import orjson
from loguru import logger
from rich.console import Console
from rich.table import Table

from clusterform.control.agent import NodeAgent
from clusterform.control.websocket import NodeAgentServer, WebSocketControlPlane
from clusterform.core.config import ExcessReplicaPolicy, OrchestratorSettings, load_settings
from clusterform.core.errors import ClusterformError, ConfigurationError
from clusterform.core.logging import configure_logging
from clusterform.discovery.registry import HttpRegistry, Registry, StaticFileRegistry
from clusterform.orchestrator.controller import run_orchestration
from clusterform.orchestrator.results import RunResult, RunState
from clusterform.topology.partitioner import fresh_partition
from clusterform.topology.types import Topology, slot_count

console = Console()

EXIT_CODES = {
    RunState.SUCCEEDED: 0,
    RunState.ABORTED: 0,
    RunState.FAILED: 1,
    RunState.DEGRADED_SUCCEEDED: 2,
}

_STATE_STYLES = {
    RunState.SUCCEEDED: "green",
    RunState.DEGRADED_SUCCEEDED: "yellow",
    RunState.FAILED: "red",
    RunState.ABORTED: "cyan",
}


def _dump_json(payload: Any) -> None:
    click.echo(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())


def _build_settings(overrides: dict[str, Any]) -> OrchestratorSettings:
    try:
        return load_settings(
            **{key: value for key, value in overrides.items() if value is not None}
        )
    except ConfigurationError as e:
        raise click.UsageError(e.message) from e


def _build_registry(registry_file: str | None, registry_url: str | None) -> Registry:
    if bool(registry_file) == bool(registry_url):
        raise click.UsageError("pass exactly one of --registry-file or --registry-url")
    if registry_file:
        return StaticFileRegistry(registry_file)
    assert registry_url is not None
    return HttpRegistry(registry_url)


def display_run_result(result: RunResult) -> None:
    style = _STATE_STYLES.get(result.state, "white")
    console.print(
        f"[bold {style}]Run {result.run_id}: {result.state.value}[/bold {style}]"
        f" epoch={result.epoch} pushes={result.pushes}"
        f" moved_slots={result.moved_slots} ({result.duration_seconds:.2f}s)"
    )

    if result.topology is not None:
        table = Table(title=f"Topology epoch {result.topology.epoch}")
        table.add_column("Master", style="cyan")
        table.add_column("Slots")
        table.add_column("Count", justify="right")
        table.add_column("Replicas")
        for master_id, ranges in result.topology.slot_map.items():
            table.add_row(
                master_id,
                ", ".join(str(slot_range) for slot_range in ranges),
                str(slot_count(ranges)),
                ", ".join(result.topology.replicas_of(master_id)) or "-",
            )
        console.print(table)

    if result.node_reports:
        table = Table(title="Nodes")
        table.add_column("Node", style="cyan")
        table.add_column("Role")
        table.add_column("Outcome")
        table.add_column("Epoch", justify="right")
        table.add_column("Detail")
        for node_id in sorted(result.node_reports):
            report = result.node_reports[node_id]
            table.add_row(
                node_id,
                report.role.value,
                report.outcome.value,
                str(report.epoch),
                report.detail,
            )
        console.print(table)

    if result.unassigned_replicas:
        console.print(
            f"[yellow]Pending replica candidates: {', '.join(result.unassigned_replicas)}[/yellow]"
        )
    for reason in result.degraded_reasons:
        console.print(f"[yellow]Degraded: {reason}[/yellow]")
    for error in result.errors:
        console.print(f"[red]{error}[/red]")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--debug-scope",
    multiple=True,
    help="Log DEBUG for one module only (e.g. orchestrator.convergence)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug_scope: tuple[str, ...]) -> None:
    """
    clusterform cluster bootstrap and topology orchestration.

    Discovers nodes, partitions the slot space across masters, links
    replicas, and drives every node to an epoch-stamped topology.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug_scopes"] = debug_scope


@cli.command()
@click.option("--registry-file", type=click.Path(dir_okay=False), help="Registry JSON file")
@click.option("--registry-url", help="HTTP URL serving the registry document")
@click.option("--total-slots", type=int, help="Keyspace size (default 16384)")
@click.option("--min-masters", type=int, help="Fewest masters a run may plan with")
@click.option("--target-masters", type=int, help="Masters to promote up to")
@click.option("--replicas", "replicas_per_master_target", type=int, help="Replicas per master")
@click.option(
    "--excess-replicas",
    "excess_replica_policy",
    type=click.Choice([policy.value for policy in ExcessReplicaPolicy]),
    help="Surplus replica candidates: leave pending or overprovision",
)
@click.option("--probe-timeout", type=float, help="Seconds per node probe")
@click.option("--converge-timeout", type=float, help="Seconds allowed for convergence")
@click.option("--run-timeout", type=float, help="Deadline for the whole run")
@click.option("--max-concurrency", type=int, help="Concurrent node operations")
@click.option("--expected-epoch", type=int, help="Abort if nodes are past this epoch")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def run(
    ctx: click.Context,
    registry_file: str | None,
    registry_url: str | None,
    output: str,
    **overrides: Any,
) -> None:
    """Run one orchestration: discover, probe, plan, converge."""
    settings = _build_settings(overrides)
    level = "DEBUG" if ctx.obj["verbose"] else settings.log_level
    configure_logging(level, debug_scopes=ctx.obj["debug_scopes"], colorize=False)
    registry = _build_registry(registry_file, registry_url)

    async def _run() -> RunResult:
        control_plane = WebSocketControlPlane(open_timeout=settings.probe_timeout)
        try:
            return await run_orchestration(settings, registry, control_plane)
        finally:
            await control_plane.close()

    result = asyncio.run(_run())
    if output == "json":
        _dump_json(result.to_dict())
    else:
        display_run_result(result)
    sys.exit(EXIT_CODES[result.state])


@cli.command()
@click.argument("masters", nargs=-1)
@click.option("--count", "-n", type=int, help="Plan for N masters named master-0..N-1")
@click.option("--total-slots", type=int, default=16384, show_default=True)
@click.option("--slot", "slots", type=int, multiple=True, help="Also report who owns SLOT")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
def plan(
    masters: tuple[str, ...],
    count: int | None,
    total_slots: int,
    slots: tuple[int, ...],
    output: str,
) -> None:
    """Print a fresh slot partition for MASTERS (or --count masters)."""
    master_ids = list(masters)
    if count is not None:
        master_ids.extend(f"master-{index}" for index in range(count))
    if not master_ids:
        raise click.UsageError("name at least one master or pass --count")

    try:
        assignment = fresh_partition(master_ids, total_slots)
    except (ClusterformError, ValueError) as e:
        console.print(f"[red]Cannot partition: {e}[/red]")
        sys.exit(1)
    for slot in slots:
        if not 0 <= slot < total_slots:
            raise click.BadParameter(
                f"slot {slot} outside 0..{total_slots - 1}", param_hint="--slot"
            )
    topology = Topology.create(epoch=1, total_slots=total_slots, slot_map=assignment)
    owners = {slot: topology.owner_of(slot) for slot in slots}

    if output == "json":
        ranges_by_master = {
            node_id: [slot_range.to_dict() for slot_range in ranges]
            for node_id, ranges in assignment.items()
        }
        if owners:
            _dump_json(
                {
                    "slot_map": ranges_by_master,
                    "owners": {str(slot): owner for slot, owner in owners.items()},
                }
            )
        else:
            _dump_json(ranges_by_master)
        return

    table = Table(title=f"{len(assignment)} master(s) over {total_slots} slots")
    table.add_column("Master", style="cyan")
    table.add_column("Slots")
    table.add_column("Count", justify="right")
    for node_id, ranges in assignment.items():
        table.add_row(
            node_id,
            ", ".join(str(slot_range) for slot_range in ranges),
            str(slot_count(ranges)),
        )
    console.print(table)
    for slot, owner in owners.items():
        console.print(f"slot {slot} -> [cyan]{owner}[/cyan]")


@cli.command()
@click.argument("node_id")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=7000, show_default=True)
@click.pass_context
def agent(ctx: click.Context, node_id: str, host: str, port: int) -> None:
    """Serve a control endpoint for NODE_ID until interrupted."""
    configure_logging(
        "DEBUG" if ctx.obj["verbose"] else "INFO",
        debug_scopes=ctx.obj["debug_scopes"],
    )
    server = NodeAgentServer(NodeAgent(node_id=node_id), host=host, port=port)
    logger.info("Starting control endpoint for {}", node_id)
    asyncio.run(server.serve_forever())


def main() -> None:
    """Main CLI entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
