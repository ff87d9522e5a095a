from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from contentfactory.aggregator import StatusAggregator
from contentfactory.config import FactoryConfig, dumps_toml, load_config, save_config
from contentfactory.coordinator import Coordinator, CycleResult
from contentfactory.errors import DispatchError
from contentfactory.executors import SimulatedExecutor, SimulatedMetricsSource
from contentfactory.gate import AutonomyGate, AutonomyRules, BudgetLedger
from contentfactory.logging_utils import configure_logging
from contentfactory.models import AutonomyDecision, Proposal
from contentfactory.registry import DepartmentRegistry


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: FactoryConfig
    executors: dict[str, SimulatedExecutor]
    registry: DepartmentRegistry
    aggregator: StatusAggregator
    gate: AutonomyGate
    coordinator: Coordinator


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


async def _approve_all(decision: AutonomyDecision) -> bool:
    _ = decision
    return True


def _load_runtime(
    config_path: Path,
    *,
    seed: int | None = None,
    failure_rate: float = 0.0,
    auto_approve: bool = False,
) -> Runtime:
    config = load_config(config_path)
    configure_logging(config.logging.level, config.logging.format, stream=sys.stderr, force=True)

    executors = {
        name: SimulatedExecutor(
            name,
            seed=None if seed is None else seed + index,
            failure_rate=failure_rate,
        )
        for index, name in enumerate(config.planning.departments)
    }
    registry = DepartmentRegistry.from_config(config, executors)
    aggregator = StatusAggregator(
        registry.names(),
        ewma_alpha=config.monitoring.response_time_alpha,
    )
    gate = AutonomyGate(
        AutonomyRules.from_config(config.autonomy),
        BudgetLedger(config.budget.daily_limit),
        approver=_approve_all if auto_approve else None,
        approval_timeout_seconds=config.autonomy.approval_timeout_seconds,
    )
    coordinator = Coordinator(
        registry,
        aggregator,
        gate,
        config,
        metrics_source=SimulatedMetricsSource(executors.values()),
    )
    return Runtime(
        config_path=config_path,
        config=config,
        executors=executors,
        registry=registry,
        aggregator=aggregator,
        gate=gate,
        coordinator=coordinator,
    )


def _parse_proposal(raw: str) -> Proposal:
    """``action[:cost[:department]]``"""
    action, _, rest = raw.partition(":")
    cost_text, _, department = rest.partition(":")
    if not action.strip():
        raise click.BadParameter(f"Empty proposal: {raw!r}")
    try:
        cost = float(cost_text) if cost_text.strip() else 0.0
    except ValueError as exc:
        raise click.BadParameter(f"Invalid proposal cost in {raw!r}") from exc
    return Proposal(action=action.strip(), cost=cost, department=department.strip() or None)


async def _run_cycles(
    coordinator: Coordinator,
    cycles: int,
    interval: float,
    proposals: list[Proposal],
) -> list[CycleResult]:
    results: list[CycleResult] = []
    for index in range(cycles):
        results.append(await coordinator.run_cycle(proposals))
        if index < cycles - 1 and interval > 0:
            await asyncio.sleep(interval)
    return results


def _write_report(output_dir: Path, result: CycleResult) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"report-{result.cycle_id}.json"
    path.write_text(json.dumps(result.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def _cycle_summary(result: CycleResult) -> dict[str, Any]:
    summary: dict[str, Any] = {"cycle_id": result.cycle_id, "status": result.status}
    if result.error:
        summary["error"] = result.error
    if result.report is not None:
        summary["completed"] = len(result.report.completed_tasks)
        summary["failed"] = len(result.report.failed_tasks)
        summary["issues"] = len(result.report.issues)
        summary["budget"] = dict(result.report.budget)
    return summary


@click.group()
def cli() -> None:
    """Content factory coordinator CLI."""


@cli.command("init")
@click.option("--config", "config_value", default="factory.toml", show_default=True)
@click.option("--daily-limit", type=float, default=None)
def init_command(config_value: str, daily_limit: float | None) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    if daily_limit is not None:
        config.budget.daily_limit = daily_limit
    save_config(config_path, config)

    click.echo(f"Config: {config_path}")
    click.echo(f"Departments: {', '.join(config.planning.departments)}")
    click.echo(f"Daily limit: {config.budget.daily_limit:.2f}")


@cli.command("plan")
@click.option("--proposal", "proposal_values", multiple=True)
@click.option("--auto-approve", is_flag=True, default=False)
@click.option("--config", "config_value", default="factory.toml", show_default=True)
def plan_command(proposal_values: tuple[str, ...], auto_approve: bool, config_value: str) -> None:
    runtime = _load_runtime(_resolve_config_path(config_value), auto_approve=auto_approve)
    proposals = [_parse_proposal(value) for value in proposal_values]
    try:
        plan = asyncio.run(runtime.coordinator.plan(proposals))
    except DispatchError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(plan.to_dict(), ensure_ascii=False, indent=2))


@cli.command("run")
@click.option("--cycles", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--interval", type=float, default=0.0, show_default=True)
@click.option("--seed", type=int, default=None)
@click.option("--failure-rate", type=click.FloatRange(0.0, 1.0), default=0.0, show_default=True)
@click.option("--output", "output_dir", type=click.Path(file_okay=False), default=None)
@click.option("--proposal", "proposal_values", multiple=True)
@click.option("--auto-approve", is_flag=True, default=False)
@click.option("--config", "config_value", default="factory.toml", show_default=True)
def run_command(
    cycles: int,
    interval: float,
    seed: int | None,
    failure_rate: float,
    output_dir: str | None,
    proposal_values: tuple[str, ...],
    auto_approve: bool,
    config_value: str,
) -> None:
    runtime = _load_runtime(
        _resolve_config_path(config_value),
        seed=seed,
        failure_rate=failure_rate,
        auto_approve=auto_approve,
    )
    proposals = [_parse_proposal(value) for value in proposal_values]
    try:
        results = asyncio.run(
            _run_cycles(runtime.coordinator, cycles, max(0.0, interval), proposals)
        )
    except KeyboardInterrupt as exc:
        raise click.ClickException("Interrupted.") from exc

    if output_dir is None:
        payload: Any = [result.to_dict() for result in results]
        click.echo(json.dumps(payload if cycles > 1 else payload[0], ensure_ascii=False, indent=2))
        return

    summaries = []
    for result in results:
        summary = _cycle_summary(result)
        summary["report_path"] = str(_write_report(Path(output_dir), result))
        summaries.append(summary)
    click.echo(json.dumps(summaries, ensure_ascii=False, indent=2))


@cli.command("status")
@click.option("--config", "config_value", default="factory.toml", show_default=True)
def status_command(config_value: str) -> None:
    """Show the configured departments, workers and budget.

    This builds a fresh runtime from the config file; it does not attach to a
    coordinator running in another process.
    """
    runtime = _load_runtime(_resolve_config_path(config_value))
    click.echo(json.dumps(runtime.coordinator.status(), ensure_ascii=False, indent=2))


@cli.command("config")
@click.option("--config", "config_value", default="factory.toml", show_default=True)
def config_command(config_value: str) -> None:
    config = load_config(_resolve_config_path(config_value))
    click.echo(dumps_toml(config), nl=False)
