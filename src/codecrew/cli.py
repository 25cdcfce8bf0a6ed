from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from codecrew.backends import AgentBackend, ClaudeCodeBackend, ResilientBackend, RetryPolicy
from codecrew.backlog_generator import BacklogGenerator
from codecrew.config import CrewConfig, load_config, save_config
from codecrew.context_gate import ContextGate
from codecrew.drift import DriftMonitor
from codecrew.errors import CrewError, RunCancelledError
from codecrew.health import HealthProbe
from codecrew.planning import PlanningCoordinator
from codecrew.rebase import RebaseEngine
from codecrew.routing import ModelRouter
from codecrew.scheduler import RunSummary, Scheduler
from codecrew.sessions import AgentSessionBroker
from codecrew.specialists import RebaserAgent
from codecrew.state import BacklogStore, SpecRepository
from codecrew.workspace import WorkspaceManager

logger = logging.getLogger("codecrew")
T = TypeVar("T")

DEFAULT_CONFIG = "codecrew.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: CrewConfig
    broker: AgentSessionBroker
    gate: ContextGate
    store: BacklogStore
    specs: SpecRepository
    workspaces: WorkspaceManager
    rebase: RebaseEngine


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _record_backend_event(event: dict[str, Any]) -> None:
    if event.get("event") == "backend_retry":
        logger.info(
            "Retrying %s on %s in %.1fs (attempt %s)",
            event.get("call"),
            event.get("backend"),
            event.get("delay_seconds", 0.0),
            event.get("attempt"),
        )
    else:
        logger.warning("Backend event: %s", json.dumps(event, ensure_ascii=False))


def _build_backend(config: CrewConfig, repo_root: Path) -> AgentBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        ClaudeCodeBackend(binary=config.backend.binary, working_directory=repo_root),
        policy,
        event_hook=_record_backend_event,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    broker = AgentSessionBroker(
        _build_backend(config, repo_root),
        poll_interval_seconds=config.backend.poll_interval_seconds,
    )
    gate = ContextGate(config.context)
    specs = SpecRepository(repo_root / config.state.specs_dir)
    rebase = RebaseEngine(
        config.rebase,
        gate,
        specs=specs,
        broker=broker,
        agent=RebaserAgent(model=config.agents.rebase_model),
        timeout_seconds=config.planning.timeout_seconds,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        broker=broker,
        gate=gate,
        store=BacklogStore(
            repo_root / config.state.backlog_file,
            lock_timeout_seconds=config.state.lock_timeout_seconds,
        ),
        specs=specs,
        workspaces=WorkspaceManager(repo_root, config.workspace),
        rebase=rebase,
    )


def _build_scheduler(runtime: Runtime, cancel_event: asyncio.Event) -> Scheduler:
    config = runtime.config
    return Scheduler(
        config=config,
        repo_root=runtime.repo_root,
        store=runtime.store,
        broker=runtime.broker,
        workspaces=runtime.workspaces,
        gate=runtime.gate,
        drift=DriftMonitor(config.drift.max_growth),
        health=HealthProbe(config.project),
        rebase=runtime.rebase,
        router=ModelRouter(config.agents),
        cancel_event=cancel_event,
    )


def _runtime_from_context(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _run(coroutine: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coroutine)
    except CrewError as exc:
        raise click.ClickException(exc.describe()) from exc


def _install_signal_handlers(cancel_event: asyncio.Event) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal %s cannot be handled on this platform.", signum.name)
            continue
        installed.append(signum)
    return installed


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Codecrew task orchestration CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--binary", default=None, help="Agent CLI binary to run.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(binary: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if binary:
        config.backend.binary = binary
    save_config(config_path, config)

    (repo_root / config.planning.output_dir).mkdir(parents=True, exist_ok=True)
    (repo_root / config.state.specs_dir).mkdir(parents=True, exist_ok=True)
    gitignore = repo_root / ".gitignore"
    existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    if ".codecrew/" not in existing.splitlines():
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        gitignore.write_text(f"{existing}{prefix}.codecrew/\n", encoding="utf-8")

    click.echo(f"Initialized codecrew in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backlog: {repo_root / config.state.backlog_file}")


@cli.command("plan")
@click.argument("context_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def plan_command(context_file: Path, config_value: str) -> None:
    runtime = _runtime_from_context(config_value)
    config = runtime.config
    coordinator = PlanningCoordinator(
        runtime.broker,
        runtime.repo_root / config.planning.output_dir,
        timeout_seconds=config.planning.timeout_seconds,
        model=config.agents.planning_model,
    )
    result = _run(coordinator.run_planning(context_file.read_text(encoding="utf-8")))
    click.echo(f"Plan: {result.plan_file}")
    click.echo(f"Inputs: {result.spec_file.name}, {result.arch_file.name}, {result.qa_file.name}")
    click.echo(f"Duration: {result.duration_seconds:.1f}s; sessions confirmed absent.")


@cli.command("backlog")
@click.argument("track_id")
@click.option("--plan", "plan_file", type=click.Path(path_type=Path), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def backlog_command(track_id: str, plan_file: Path | None, config_value: str) -> None:
    runtime = _runtime_from_context(config_value)
    config = runtime.config
    plan_path = plan_file or runtime.repo_root / config.planning.output_dir / "PLAN.md"
    if not plan_path.exists():
        raise click.ClickException(f"Plan not found: {plan_path}. Run `crew plan` first.")
    generator = BacklogGenerator(
        runtime.broker,
        runtime.gate,
        runtime.store,
        timeout_seconds=config.planning.timeout_seconds,
        model=config.agents.planning_model,
    )
    backlog = _run(generator.generate(plan_path.read_text(encoding="utf-8"), track_id))
    runtime.specs.snapshot_backlog(backlog, "generated")
    click.echo(f"Backlog {backlog.track_id}: {len(backlog.tasks)} tasks -> {runtime.store.path}")


async def _implement(runtime: Runtime) -> RunSummary:
    cancel_event = asyncio.Event()
    installed = _install_signal_handlers(cancel_event)
    scheduler = _build_scheduler(runtime, cancel_event)
    try:
        summary = await scheduler.run()
    finally:
        loop = asyncio.get_running_loop()
        for signum in installed:
            loop.remove_signal_handler(signum)
    if summary.cancelled:
        raise RunCancelledError(
            "Run cancelled; in-flight tasks stay in_progress until the next run recovers them.",
            reason="signal",
        )
    return summary


@cli.command("implement")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def implement_command(config_value: str) -> None:
    runtime = _runtime_from_context(config_value)
    summary = _run(_implement(runtime))
    click.echo(f"Track: {summary.track_id}")
    click.echo(
        f"Dispatched: {summary.dispatched}  completed: {summary.completed}  "
        f"failed: {summary.failed}  review: {summary.review}  rebased: {summary.rebased}"
    )
    if summary.recovered:
        click.echo(f"Recovered interrupted tasks: {summary.recovered}")
    backlog = runtime.store.load()
    analysis = runtime.rebase.analyze_batch(
        [(backlog.require(result.task_id), result) for result in summary.results]
    )
    for task_id, reason in analysis.recommendations:
        click.echo(f"  {task_id}: {reason}")


@cli.command("rebase")
@click.argument("task_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def rebase_command(task_id: str, config_value: str) -> None:
    runtime = _runtime_from_context(config_value)
    scheduler = _build_scheduler(runtime, asyncio.Event())
    task = _run(scheduler.rebase_task(task_id))
    click.echo(f"Rebased {task.id} to revision {task.revision}; status {task.status}.")


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(as_json: bool, config_value: str) -> None:
    runtime = _runtime_from_context(config_value)
    try:
        backlog = runtime.store.load()
    except CrewError as exc:
        raise click.ClickException(exc.describe()) from exc
    if as_json:
        payload = {"track_id": backlog.track_id, "stats": backlog.stats(), "tasks": []}
        payload["tasks"] = [
            {"id": task.id, "status": task.status, "attempts": task.attempts}
            for task in backlog.tasks
        ]
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    stats = backlog.stats()
    click.echo(f"Track: {backlog.track_id} ({stats['total']} tasks)")
    click.echo(
        "  ".join(f"{name}: {count}" for name, count in stats.items() if name != "total")
    )
    for task in backlog.tasks:
        line = f"{task.id:<8} {task.status:<11} attempts={task.attempts} {task.title}"
        click.echo(line if not task.last_error else f"{line}\n         {task.last_error}")


@cli.command("health")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def health_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    try:
        report = HealthProbe(config.project).verify_healthy(repo_root)
    except CrewError as exc:
        raise click.ClickException(exc.describe()) from exc
    for check in report.checks:
        click.echo(f"{check.name:<11} ok  ({check.result.command})")


@cli.command("spec-history")
@click.argument("task_id")
@click.option("--compare", nargs=2, type=int, default=None, help="Diff two versions.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def spec_history_command(
    task_id: str, compare: tuple[int, int] | None, config_value: str
) -> None:
    runtime = _runtime_from_context(config_value)
    try:
        if compare:
            changes = runtime.specs.compare_versions(task_id, compare[0], compare[1])
            if not changes:
                click.echo("No differences.")
            for name, (before, after) in changes.items():
                click.echo(f"{name}:\n  - {before}\n  + {after}")
            return
        history = runtime.specs.history(task_id)
    except CrewError as exc:
        raise click.ClickException(exc.describe()) from exc
    if not history:
        click.echo(f"No stored versions for {task_id}.")
        return
    for entry in history:
        click.echo(f"v{entry.version}  {entry.timestamp}  {entry.reason}")


def main() -> None:
    cli()
