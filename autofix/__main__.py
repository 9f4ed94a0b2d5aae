"""CLI entry point: python -m autofix [command]"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

console = Console()


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _load_checked_settings():
    from autofix.config import load_settings

    settings = load_settings()
    setup_logging(settings.log_level)

    errors = settings.validate()
    if errors:
        for err in errors:
            console.print(f"[red]Config error: {err}[/red]")
        console.print("\n[dim]Copy .env.example to .env and configure your provider API keys.[/dim]")
        sys.exit(1)
    return settings


def _print_outcome(outcome) -> None:
    from autofix.models import Phase

    color = {Phase.PUBLISHED: "green", Phase.EXHAUSTED: "yellow"}.get(outcome.phase, "red")
    console.print("━" * 50)
    console.print(f"[{color}]{outcome.phase.value.upper()}[/{color}]: {outcome.reason}")
    for line in outcome.summary.splitlines()[1:]:
        console.print(f"  {line}")
    tokens_in = sum(a.input_tokens for a in outcome.analyses)
    tokens_out = sum(a.output_tokens for a in outcome.analyses)
    console.print(f"  Tokens used: {tokens_in} in / {tokens_out} out")


def cmd_fix(args):
    """Remediate a single failing workflow run and wait for the result."""
    from autofix.models import Phase, SubmitResult
    from autofix.pipeline import Pipeline

    settings = _load_checked_settings()
    checkout = Path(args.checkout) if args.checkout else None

    pipeline = Pipeline(settings, checkout=checkout)
    try:
        console.print(f"\n[bold cyan]AUTOFIX[/bold cyan] - Remediating [green]{args.repo}#{args.run_id}[/green]")
        console.print(f"  Providers: {', '.join(settings.providers)}")
        console.print("━" * 50)
        result = pipeline.remediate(args.repo, args.run_id)
        if isinstance(result, SubmitResult):
            console.print(f"[red]Not accepted ({result.status.value}): {result.detail}[/red]")
            sys.exit(1)
        _print_outcome(result)
        if result.phase != Phase.PUBLISHED:
            sys.exit(2)
    finally:
        pipeline.close(cancel_running=True)


def prune_seen(seen: set[int], runs: list[dict]) -> None:
    """Forget run ids the listing no longer returns, so `seen` stays bounded by the poll limit."""
    seen.intersection_update(run.get("id") for run in runs)


def cmd_watch(args):
    """Poll a repository for failed runs and remediate each one."""
    from autofix.errors import AutofixError
    from autofix.models import SubmitStatus
    from autofix.pipeline import Pipeline

    settings = _load_checked_settings()
    repository = args.repo or settings.github_repository
    if not repository:
        console.print("[red]No repository given (pass REPO or set GITHUB_REPOSITORY)[/red]")
        sys.exit(1)
    interval = args.interval or settings.poll_interval_seconds

    console.print(f"\n[bold cyan]AUTOFIX[/bold cyan] - Watching [green]{repository}[/green] (every {interval}s)")

    # Graceful shutdown
    running = True

    def handle_signal(sig, frame):
        nonlocal running
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        running = False

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    pipeline = Pipeline(settings)
    pipeline.start()
    seen: set[int] = set()
    cycle_num = 0

    try:
        while running:
            cycle_num += 1
            console.print(f"\n[cyan]--- Poll {cycle_num} ---[/cyan]")
            try:
                runs = pipeline.scm.list_failed_runs(repository, limit=args.limit)
            except AutofixError as e:
                console.print(f"[red]Could not list failed runs: {e}[/red]")
                runs = []
            else:
                prune_seen(seen, runs)

            for run in runs:
                run_id = run.get("id")
                if not isinstance(run_id, int) or run_id in seen:
                    continue
                result = pipeline.submit(repository, run_id)
                if result.status == SubmitStatus.ACCEPTED:
                    seen.add(run_id)
                    console.print(f"  [green]Queued run #{run_id}[/green] ({run.get('name', '')})")
                elif result.status == SubmitStatus.DUPLICATE:
                    seen.add(run_id)
                else:
                    console.print(f"  [yellow]Run #{run_id} rejected: {result.detail}[/yellow]")

            active = pipeline.dispatcher.active()
            if active:
                console.print(f"  [dim]In flight: {', '.join(f'#{s.run_id} ({s.phase.value})' for s in active)}[/dim]")

            if running:
                # Sleep in small increments so we can respond to signals
                for _ in range(int(interval)):
                    if not running:
                        break
                    time.sleep(1)
    finally:
        pipeline.close(cancel_running=True)


def cmd_history(args):
    """Show recent remediation outcomes."""
    from autofix.config import load_settings
    from autofix.db import Database

    settings = load_settings()
    db = Database(settings.db_path)

    rows = db.get_recent_outcomes(repository=args.repo, limit=args.limit)
    if not rows:
        console.print("[yellow]No remediation runs recorded yet[/yellow]")
        db.close()
        return

    table = Table(title=f"Recent Remediations ({len(rows)})")
    table.add_column("Finished", style="dim")
    table.add_column("Run")
    table.add_column("Phase")
    table.add_column("Attempts", justify="right")
    table.add_column("Providers")
    table.add_column("PR / Reason", max_width=60)

    colors = {"published": "green", "exhausted": "yellow", "aborted": "red"}
    for r in rows:
        color = colors.get(r["phase"], "white")
        table.add_row(
            r["finished_at"][:19],
            f"{r['repository']}#{r['run_id']}",
            f"[{color}]{r['phase']}[/{color}]",
            str(r["total_attempts"]),
            ", ".join(r["providers_tried"]),
            r["pr_url"] or (r["reason"] or "")[:60],
        )
    console.print(table)

    rate = db.get_success_rate(repository=args.repo)
    console.print(f"\nSuccess rate: {rate:.0%}")

    stats = db.get_provider_stats()
    if stats:
        console.print("\n[bold]Provider calls[/bold]")
        for s in stats:
            avg = s["avg_duration_seconds"] or 0.0
            console.print(f"  {s['provider']}: {s['successes']}/{s['calls']} ok, avg {avg:.1f}s")
    db.close()


def cmd_check_config(args):
    """Validate configuration without contacting any backend."""
    from autofix.config import load_settings

    settings = load_settings()
    setup_logging(settings.log_level)

    console.print("\n[bold cyan]AUTOFIX CONFIG CHECK[/bold cyan]")
    console.print("━" * 40)
    console.print(f"  Providers (priority order): {', '.join(settings.providers) or 'none'}")
    policy = settings.policy()
    console.print(
        f"  Caps: {policy.max_total_attempts} total attempts, "
        f"{policy.max_attempts_per_provider} per provider, {policy.max_concurrent_runs} concurrent runs"
    )
    console.print(f"  Validation timeout: {policy.validation_timeout_seconds:.0f}s")
    console.print(f"  Protected paths: {len(settings.protected_paths)} patterns")

    errors = settings.validate()
    console.print("━" * 40)
    if errors:
        for err in errors:
            console.print(f"  [red]✗ {err}[/red]")
        sys.exit(1)
    console.print("[green]Configuration OK[/green]")


def main():
    parser = argparse.ArgumentParser(
        prog="autofix",
        description="Autofix - automated CI failure remediation",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # fix
    fix_parser = subparsers.add_parser("fix", help="Remediate one failing workflow run")
    fix_parser.add_argument("repo", help="Repository as owner/name")
    fix_parser.add_argument("run_id", type=int, help="Workflow run ID")
    fix_parser.add_argument("--checkout", type=str, help="Local checkout to read sources and validate from")
    fix_parser.set_defaults(func=cmd_fix)

    # watch
    watch_parser = subparsers.add_parser("watch", help="Poll a repository and remediate failed runs")
    watch_parser.add_argument("repo", nargs="?", help="Repository as owner/name (default: GITHUB_REPOSITORY)")
    watch_parser.add_argument("--interval", type=int, help="Seconds between polls (default: from config)")
    watch_parser.add_argument("--limit", type=int, default=10, help="Failed runs to inspect per poll")
    watch_parser.set_defaults(func=cmd_watch)

    # history
    history_parser = subparsers.add_parser("history", help="Show recent remediation outcomes")
    history_parser.add_argument("--repo", type=str, help="Filter by repository")
    history_parser.add_argument("--limit", type=int, default=20, help="Rows to show")
    history_parser.set_defaults(func=cmd_history)

    # check-config
    check_parser = subparsers.add_parser("check-config", help="Validate configuration")
    check_parser.set_defaults(func=cmd_check_config)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == "__main__":
    main()
