"""Deployment orchestrator CLI (orchestrator).

One command per pipeline phase. Every command takes a run identifier and
reads/writes the artifact store under ``--state-dir``.

Usage:
    orchestrator plan RUN_ID --graph graph.yaml
    orchestrator validate RUN_ID [--ruleset rules.yaml]
    orchestrator approve RUN_ID --approver alice@example.com --ack <warning-id>
    orchestrator deploy RUN_ID --provider mypkg.azure:Provisioner
    orchestrator confirm RUN_ID --probe mypkg.azure:Probe --weight network=2

Exit codes:
    0  phase succeeded
    1  validation Fail, approval rejected or refused, or unusable input
    2  deployment failed or was cancelled
    3  health score below the configured threshold
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import replace
from pathlib import Path
from typing import Any, TypeVar

import click

from .approval import ApprovalDecision, GateError
from .artifacts import ArtifactError, FileArtifactStore
from .compiler import CompileError
from .config import Config, ConfigurationError, parse_weights
from .executor import RunStatus
from .graph_loader import GraphLoadError, load_graph, load_ruleset
from .health import HealthState
from .interfaces import Provisioner, StatusProbe
from .main import setup_logging
from .pipeline import Pipeline, PipelineError
from .policy import Verdict
from .providers import DEFAULT_PROVIDER, ProviderLoadError, load_provider
from .state import CancellationToken

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_VALIDATION_FAILED = 1
EXIT_DEPLOY_FAILED = 2
EXIT_HEALTH_BELOW_THRESHOLD = 3

T = TypeVar("T")


def run_cancellable(factory: Callable[[CancellationToken], Awaitable[T]]) -> T:
    """Run ``factory(cancel)`` with SIGINT/SIGTERM wired to the cancel token."""

    async def runner() -> T:
        cancel = CancellationToken()
        loop = asyncio.get_running_loop()

        def signal_handler(sig: signal.Signals) -> None:
            logger.info("Received signal", extra={"signal": sig.name})
            cancel.cancel(f"received {sig.name}")

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        try:
            return await factory(cancel)
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

    return asyncio.run(runner())


def get_pipeline(ctx: click.Context, ruleset_path: str | None = None) -> Pipeline:
    config: Config = ctx.obj["config"]
    ruleset = None
    if ruleset_path:
        try:
            ruleset = load_ruleset(Path(ruleset_path))
        except GraphLoadError as e:
            raise click.ClickException(str(e)) from e
    return Pipeline(FileArtifactStore(config.state_dir), config=config, ruleset=ruleset)


def get_provider(reference: str, protocol: type) -> Any:
    try:
        provider = load_provider(reference)
    except ProviderLoadError as e:
        raise click.ClickException(str(e)) from e
    if not isinstance(provider, protocol):
        raise click.ClickException(
            f"'{reference}' does not implement {protocol.__name__}"
        )
    return provider


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="orchestrator")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Artifact store root (default: $ORCHESTRATOR_STATE_DIR or .orchestrator)",
)
@click.option("--log-level", default=None, help="Log level (default: $ORCHESTRATOR_LOG_LEVEL)")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default=None,
    help="Log output format (default: json)",
)
@click.pass_context
def cli(
    ctx: click.Context, state_dir: str | None, log_level: str | None, log_format: str | None
) -> None:
    """Dependency-ordered deployment orchestrator.

    \b
    Quick Start:
        orchestrator plan demo --graph graph.yaml
        orchestrator validate demo
        orchestrator approve demo --approver you@example.com
        orchestrator deploy demo
        orchestrator confirm demo
    """
    try:
        config = Config.from_env()
        overrides: dict[str, Any] = {}
        if state_dir:
            overrides["state_dir"] = Path(state_dir)
        if log_level:
            overrides["log_level"] = log_level.upper()
        if log_format:
            overrides["json_logs"] = log_format == "json"
        if overrides:
            config = replace(config, **overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config.log_level, config.json_logs)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# =============================================================================
# Phase Commands
# =============================================================================


@cli.command()
@click.argument("run_id")
@click.option(
    "--graph", "graph_path", type=click.Path(exists=True, dir_okay=False), required=True,
    help="Resource graph YAML document",
)
@click.pass_context
def plan(ctx: click.Context, run_id: str, graph_path: str) -> None:
    """Compile a resource graph into an execution plan."""
    pipeline = get_pipeline(ctx)
    try:
        graph = load_graph(Path(graph_path))
        execution_plan = pipeline.plan(run_id, graph)
    except (GraphLoadError, CompileError, ArtifactError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Plan {execution_plan.plan_hash}")
    for index, level in enumerate(execution_plan.levels):
        click.echo(f"  level {index}: {', '.join(level)}")


@cli.command()
@click.argument("run_id")
@click.option(
    "--ruleset", "ruleset_path", type=click.Path(exists=True, dir_okay=False),
    help="Rule set YAML document (default: built-in rules)",
)
@click.pass_context
def validate(ctx: click.Context, run_id: str, ruleset_path: str | None) -> None:
    """Validate the planned graph against the rule set."""
    pipeline = get_pipeline(ctx, ruleset_path)
    try:
        report = pipeline.validate(run_id)
    except (ArtifactError, PipelineError, CompileError) as e:
        raise click.ClickException(str(e)) from e

    for finding in report.findings:
        click.echo(
            f"  [{finding.severity.value}] {finding.finding_id} "
            f"({finding.category.value}): {finding.message}"
        )
    click.echo(f"Verdict: {report.verdict.value}")

    if report.verdict == Verdict.FAIL:
        click.echo("Fix the configuration, recompile the plan and revalidate.", err=True)
        ctx.exit(EXIT_VALIDATION_FAILED)


@cli.command()
@click.argument("run_id")
@click.option(
    "--approver", envvar="ORCHESTRATOR_APPROVER", required=True,
    help="Approver identity (default: $ORCHESTRATOR_APPROVER)",
)
@click.option("--reject", is_flag=True, help="Record a rejection instead of an approval")
@click.option("--ack", "acknowledged", multiple=True, help="Acknowledge a warning finding id")
@click.option("--reason", default="", help="Justification stored with the record")
@click.pass_context
def approve(
    ctx: click.Context,
    run_id: str,
    approver: str,
    reject: bool,
    acknowledged: tuple[str, ...],
    reason: str,
) -> None:
    """Approve (or reject) the validated plan."""
    pipeline = get_pipeline(ctx)
    decision = ApprovalDecision.REJECTED if reject else ApprovalDecision.APPROVED
    try:
        record = pipeline.approve(run_id, decision, approver, acknowledged, reason)
    except GateError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_VALIDATION_FAILED)
    except (ArtifactError, PipelineError, CompileError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Plan {record.plan_hash} {record.decision.value} by {record.approver}")
    if not record.approved:
        ctx.exit(EXIT_VALIDATION_FAILED)


@cli.command()
@click.argument("run_id")
@click.option(
    "--provider", default=DEFAULT_PROVIDER, show_default=True,
    help="Provisioner as module:attribute",
)
@click.pass_context
def deploy(ctx: click.Context, run_id: str, provider: str) -> None:
    """Apply the approved plan level by level."""
    pipeline = get_pipeline(ctx)
    provisioner = get_provider(provider, Provisioner)
    try:
        result = run_cancellable(lambda cancel: pipeline.deploy(run_id, provisioner, cancel=cancel))
    except GateError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_VALIDATION_FAILED)
    except (ArtifactError, PipelineError, CompileError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Succeeded: {', '.join(result.succeeded) or '-'}")
    click.echo(f"Failed:    {', '.join(result.failed) or '-'}")
    click.echo(f"Skipped:   {', '.join(result.skipped) or '-'}")
    click.echo(f"Run status: {result.status.value}")

    if result.status != RunStatus.SUCCEEDED:
        click.echo("Fix the configuration, recompile the plan and revalidate.", err=True)
        ctx.exit(EXIT_DEPLOY_FAILED)


@cli.command()
@click.argument("run_id")
@click.option(
    "--probe", default=DEFAULT_PROVIDER, show_default=True,
    help="Status probe as module:attribute",
)
@click.option("--timeout", type=float, default=None, help="Seconds before a node is Unreachable")
@click.option("--weight", "weights", multiple=True, help="Category weight, e.g. network=2")
@click.pass_context
def confirm(
    ctx: click.Context,
    run_id: str,
    probe: str,
    timeout: float | None,
    weights: tuple[str, ...],
) -> None:
    """Verify convergence and score deployment health."""
    config: Config = ctx.obj["config"]
    pipeline = get_pipeline(ctx)
    status_probe = get_provider(probe, StatusProbe)
    try:
        weight_overrides = parse_weights(",".join(weights))
        report = run_cancellable(
            lambda cancel: pipeline.confirm(
                run_id, status_probe, timeout=timeout, weights=weight_overrides, cancel=cancel
            )
        )
    except (ConfigurationError, ArtifactError, PipelineError, CompileError) as e:
        raise click.ClickException(str(e)) from e

    for node_id in sorted(report.nodes):
        health = report.nodes[node_id]
        suffix = ""
        if health.message and health.state != HealthState.HEALTHY:
            suffix = f" ({health.message})"
        click.echo(f"  {node_id}: {health.state.value}{suffix}")
    click.echo(f"Health score: {report.score:.1f} (threshold {config.health_threshold:.1f})")

    if not report.passed(config.health_threshold):
        ctx.exit(EXIT_HEALTH_BELOW_THRESHOLD)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
