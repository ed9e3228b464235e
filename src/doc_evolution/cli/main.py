from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from doc_evolution.config.loader import build_engine_config
from doc_evolution.core.errors import EvolutionError
from doc_evolution.core.types import EvolutionJob, NoOp, Rating
from doc_evolution.service import EvolutionService, create_service
from doc_evolution.strategies import get_strategy, list_strategies

console = Console()


def _setup_logging(data_dir: Path, verbose: bool) -> Path | None:
    de_logger = logging.getLogger("doc_evolution")
    de_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not any(isinstance(h, RichHandler) for h in de_logger.handlers):
        handler = RichHandler(console=console, show_path=False)
        handler.setLevel(logging.INFO)
        de_logger.addHandler(handler)

    if not verbose:
        return None
    data_dir.mkdir(parents=True, exist_ok=True)
    log_path = data_dir / "debug.log"
    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("%(asctime)s [%(name)s]\n%(message)s\n"))
    de_logger.addHandler(fh)
    return log_path


def _service(ctx: click.Context, **overrides: Any) -> EvolutionService:
    opts = ctx.obj
    try:
        config = build_engine_config(opts["config"], overrides)
    except ValueError as e:
        raise click.ClickException(f"Invalid config: {e}") from e
    return create_service(config, opts["data_dir"], opts["docs_dir"])


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    try:
        return asyncio.run(coro)
    except EvolutionError as e:
        raise click.ClickException(str(e)) from e


def _print_jobs(jobs: list[EvolutionJob], title: str) -> None:
    table = Table(title=title)
    table.add_column("Job", style="cyan")
    table.add_column("Document")
    table.add_column("Strategy")
    table.add_column("Status")
    table.add_column("Candidates", justify="right")
    table.add_column("Best win rate", justify="right")
    table.add_column("Winner")
    table.add_column("Applied")
    table.add_column("Error", style="red")

    for job in jobs:
        best = max((r.win_rate for r in job.evaluation_results), default=None)
        table.add_row(
            job.id[:8],
            job.document_id,
            job.strategy,
            job.status.value,
            str(len(job.candidates)),
            f"{best:.0%}" if best is not None else "-",
            job.winner_id[:8] if job.winner_id else "-",
            "yes" if job.applied else "no",
            job.error or "",
        )
    console.print(table)


def _print_skipped(skipped: list[NoOp]) -> None:
    if not skipped:
        return
    table = Table(title="Skipped")
    table.add_column("Document", style="cyan")
    table.add_column("Reason")
    table.add_column("Detail")
    for noop in skipped:
        table.add_row(noop.document_id, noop.reason.value, noop.detail)
    console.print(table)


@click.group()
@click.option("--data-dir", default="./data", type=click.Path(path_type=Path), help="Store directory")
@click.option("--docs-dir", default="./docs", type=click.Path(path_type=Path), help="Markdown document directory")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, path_type=Path),
              help="YAML config file")
@click.option("--verbose", "-v", is_flag=True, help="Log full prompts and responses to debug.log in the data dir")
@click.pass_context
def cli(ctx: click.Context, data_dir: Path, docs_dir: Path, config_path: Path | None, verbose: bool) -> None:
    """Doc Evolution: improve documents from user feedback via pairwise judging."""
    load_dotenv()
    log_path = _setup_logging(data_dir, verbose)
    ctx.obj = {
        "data_dir": data_dir,
        "docs_dir": docs_dir,
        "config": config_path,
        "log_path": log_path,
    }


@cli.command("sync")
@click.pass_context
def sync_cmd(ctx: click.Context) -> None:
    """Register documents from the docs directory."""
    added = _run(_service(ctx).sync_documents())
    for document in added:
        console.print(f"[green]+[/green] {document.document_id} ({document.name})")
    console.print(f"[bold]{len(added)}[/bold] new document(s) registered.")


@cli.command("run")
@click.option("--document", default=None, help="Only evolve this document")
@click.option("--strategy", default=None, type=click.Choice(list_strategies()), help="Evolution strategy")
@click.option("--auto-apply/--manual", default=None, help="Apply winners immediately or wait for approval")
@click.option("--min-win-margin", default=None, type=float, help="Win rate needed above 0.5")
@click.option("--threshold", default=None, type=int, help="Unprocessed BAD ratings needed")
@click.pass_context
def run_cmd(
    ctx: click.Context,
    document: str | None,
    strategy: str | None,
    auto_apply: bool | None,
    min_win_margin: float | None,
    threshold: int | None,
) -> None:
    """Run feedback-driven evolution."""
    service = _service(
        ctx,
        strategy=strategy,
        auto_apply=auto_apply,
        min_win_margin=min_win_margin,
        bad_feedback_threshold=threshold,
    )
    config = service.config
    console.print(f"[bold]Strategy:[/bold] {config.strategy}")
    console.print(f"[bold]Generator:[/bold] {config.generator_model}")
    console.print(f"[bold]Judge:[/bold] {config.judge_model}")
    console.print(f"[bold]Win threshold:[/bold] {config.win_threshold:.0%}")
    console.print(f"[bold]Auto-apply:[/bold] {config.auto_apply}")

    async def go() -> tuple[list[NoOp], list[EvolutionJob]]:
        orchestrator = service.orchestrator()
        scan = await orchestrator.identify_targets(document)
        jobs = await orchestrator.run_targets(scan.targets)
        return scan.skipped, jobs

    skipped, jobs = _run(go())
    _print_skipped(skipped)
    if jobs:
        _print_jobs(jobs, "Evolution Jobs")
    else:
        console.print("[yellow]Nothing to evolve.[/yellow]")
    if ctx.obj["log_path"]:
        console.print(f"[bold]Debug log:[/bold] {ctx.obj['log_path']}")


@cli.command("self-evolve")
@click.option("--document", default=None, help="Only this document (default: all registered)")
@click.pass_context
def self_evolve_cmd(ctx: click.Context, document: str | None) -> None:
    """Improve interpretation rules using synthetic questions."""
    outcomes = _run(_service(ctx).run_self_evolution(document))

    table = Table(title="Self-Evolution")
    table.add_column("Document", style="cyan")
    table.add_column("Status")
    table.add_column("Questions", justify="right")
    table.add_column("Weaknesses", justify="right")
    table.add_column("Candidates", justify="right")
    table.add_column("Adopted", justify="right")
    table.add_column("Avg improvement", justify="right")
    for outcome in outcomes:
        if isinstance(outcome, NoOp):
            table.add_row(outcome.document_id, f"skipped: {outcome.reason.value}", "", "", "", "", "")
            continue
        table.add_row(
            outcome.document_id,
            outcome.status.value if not outcome.error else f"{outcome.status.value}: {outcome.error}",
            str(len(outcome.questions)),
            str(len(outcome.weaknesses)),
            str(len(outcome.candidates)),
            str(len(outcome.adopted_rules)),
            f"{outcome.avg_improvement:+.1%}",
        )
    console.print(table)


@cli.command("log-response")
@click.option("--message-id", required=True)
@click.option("--document", required=True)
@click.option("--query", required=True)
@click.option("--response", required=True)
@click.option("--rule-id", "rule_ids", multiple=True, help="Rule applied to the response (repeatable)")
@click.pass_context
def log_response_cmd(
    ctx: click.Context,
    message_id: str,
    document: str,
    query: str,
    response: str,
    rule_ids: tuple[str, ...],
) -> None:
    """Record an answered message and the rules used for it."""
    application = _run(
        _service(ctx).record_application(message_id, document, query, response, list(rule_ids))
    )
    console.print(f"[green]Recorded[/green] message {application.message_id}")


@cli.command("feedback")
@click.argument("message_id")
@click.option("--rating", required=True, type=click.Choice(["good", "bad"], case_sensitive=False))
@click.option("--text", default=None, help="Why the answer was good or bad")
@click.pass_context
def feedback_cmd(ctx: click.Context, message_id: str, rating: str, text: str | None) -> None:
    """Rate the answer to a recorded message."""
    signal = _run(_service(ctx).record_feedback(message_id, Rating(rating.upper()), text))
    console.print(f"[green]Recorded[/green] {signal.rating.value} feedback for {signal.document_id}")


@cli.command("rules")
@click.option("--document", default=None, help="Document id")
@click.option("--query", default=None, help="Only rules that would apply to this query")
@click.pass_context
def rules_cmd(ctx: click.Context, document: str | None, query: str | None) -> None:
    """List interpretation rules."""
    service = _service(ctx)
    if query is not None:
        if document is None:
            raise click.UsageError("--query needs --document")
        rules = _run(service.get_applicable_rules(document, query))
    else:
        rules = _run(service.list_rules(document))

    table = Table(title="Interpretation Rules")
    table.add_column("Rule", style="cyan")
    table.add_column("Document")
    table.add_column("Type")
    table.add_column("Score", justify="right")
    table.add_column("Enabled")
    table.add_column("Trigger")
    table.add_column("Content")
    for rule in rules:
        table.add_row(
            rule.id[:8],
            rule.document_id,
            rule.rule_type.value,
            f"{rule.score:.2f}",
            "yes" if rule.enabled else "no",
            rule.trigger_pattern or "-",
            rule.content[:80],
        )
    console.print(table)


def _set_enabled(ctx: click.Context, rule_id: str, enabled: bool) -> None:
    rule = _run(_service(ctx).set_rule_enabled(rule_id, enabled))
    state = "[green]enabled[/green]" if rule.enabled else "[yellow]disabled[/yellow]"
    console.print(f"Rule {rule.id} {state}")


@cli.command("enable-rule")
@click.argument("rule_id")
@click.pass_context
def enable_rule_cmd(ctx: click.Context, rule_id: str) -> None:
    """Enable a rule."""
    _set_enabled(ctx, rule_id, True)


@cli.command("disable-rule")
@click.argument("rule_id")
@click.pass_context
def disable_rule_cmd(ctx: click.Context, rule_id: str) -> None:
    """Disable a rule (kept for audit)."""
    _set_enabled(ctx, rule_id, False)


@cli.command("approve")
@click.argument("job_id")
@click.pass_context
def approve_cmd(ctx: click.Context, job_id: str) -> None:
    """Adopt the winner of a job that awaits approval."""
    record = _run(_service(ctx).approve_job(job_id))
    console.print(
        f"[green]Adopted[/green] {record.kind} for {record.document_id}, "
        f"now generation {record.generation} (history {record.id})"
    )


@cli.command("approve-self")
@click.argument("job_id")
@click.pass_context
def approve_self_cmd(ctx: click.Context, job_id: str) -> None:
    """Adopt the rules a self-evolution run left for approval."""
    for record in _run(_service(ctx).approve_self_evolution(job_id)):
        console.print(
            f"[green]Adopted[/green] {record.kind} rule {record.rule_id} for {record.document_id} "
            f"(history {record.id})"
        )


@cli.command("rollback")
@click.argument("history_id")
@click.pass_context
def rollback_cmd(ctx: click.Context, history_id: str) -> None:
    """Undo an adoption recorded in history."""
    record = _run(_service(ctx).rollback(history_id))
    console.print(
        f"[yellow]Rolled back[/yellow] {record.kind} for {record.document_id}, "
        f"now generation {record.generation}"
    )


@cli.command("jobs")
@click.option("--document", default=None, help="Document id")
@click.pass_context
def jobs_cmd(ctx: click.Context, document: str | None) -> None:
    """List evolution jobs, newest first."""
    jobs = _run(_service(ctx).list_jobs(document))
    _print_jobs(jobs, "Evolution Jobs")


@cli.command("stats")
@click.pass_context
def stats_cmd(ctx: click.Context) -> None:
    """Show rule statistics."""
    stats = _run(_service(ctx).rule_stats())

    table = Table(title="Rule Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total rules", str(stats.total_rules))
    table.add_row("Enabled rules", str(stats.enabled_rules))
    for rule_type, count in sorted(stats.rules_by_type.items()):
        table.add_row(f"  {rule_type}", str(count))
    table.add_row("Average score", f"{stats.avg_score:.2f}")
    table.add_row("Responses using rules", str(stats.total_applications))
    table.add_row("Positive feedback rate", f"{stats.positive_feedback_rate:.0%}")
    console.print(table)


@cli.command("list-strategies")
def list_strategies_cmd() -> None:
    """List available evolution strategies."""
    table = Table(title="Available Strategies")
    table.add_column("Name", style="cyan")
    table.add_column("Description")

    for name in list_strategies():
        plugin = get_strategy(name)
        table.add_row(name, plugin.description)

    console.print(table)


if __name__ == "__main__":
    cli()
