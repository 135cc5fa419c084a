import json
import time
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console

from merchwatch.config import ConfigLoaderError
from merchwatch.logger import configure_logging, get_logger
from merchwatch.workflow.runner import CRAWL_MODES, MerchRunner, RunnerOptions

console = Console()
cli = typer.Typer(help="Merch on Demand listing monitor: crawl, SERP snapshots and metrics.")
logger = get_logger(__name__)


def _print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def _common_options() -> dict:
    return dict(
        config_path=typer.Option(
            None,
            "--config",
            "-c",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
            envvar="MERCHWATCH_CONFIG_PATH",
            help="Application config (YAML/JSON). Environment variables are used when omitted.",
        ),
        settings_path=typer.Option(
            None,
            "--settings",
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
            envvar="CRAWLER_SETTINGS_PATH",
            help="Crawler settings file; replaces the settings row stored in the database.",
        ),
        log_level=typer.Option(
            "INFO",
            "--log-level",
            envvar="LOG_LEVEL",
            help="DEBUG/INFO/WARNING/ERROR/CRITICAL.",
        ),
    )


def _options(
    config_path: Optional[Path],
    settings_path: Optional[Path] = None,
    **kwargs: Any,
) -> RunnerOptions:
    return RunnerOptions(config_path=config_path, settings_path=settings_path, **kwargs)


def _run_or_exit(func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except ConfigLoaderError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        raise typer.Exit(code=2) from exc


@cli.command("crawl")
def crawl(
    config_path: Optional[Path] = _common_options()["config_path"],
    settings_path: Optional[Path] = _common_options()["settings_path"],
    log_level: str = _common_options()["log_level"],
    mode: str = typer.Option("default", "--mode", help=f"One of: {', '.join(CRAWL_MODES)}."),
    bypass_limits: bool = typer.Option(
        False, "--bypass-limits", help="Lift the max-items-per-run cap (admin runs)."
    ),
) -> None:
    """One discovery + extraction + persistence sweep."""
    configure_logging(log_level.upper())  # type: ignore[arg-type]
    options = _options(config_path, settings_path, mode=mode, bypass_limits=bypass_limits)
    summary = _run_or_exit(MerchRunner().run_crawl, options)
    _print_json(summary.as_dict())


@cli.command("serp")
def serp(
    config_path: Optional[Path] = _common_options()["config_path"],
    log_level: str = _common_options()["log_level"],
) -> None:
    """Process pending keyword SERP jobs."""
    configure_logging(log_level.upper())  # type: ignore[arg-type]
    summary = _run_or_exit(MerchRunner().run_serp, _options(config_path))
    _print_json(summary.as_dict())


@cli.command("metrics")
def metrics(
    config_path: Optional[Path] = _common_options()["config_path"],
    log_level: str = _common_options()["log_level"],
) -> None:
    """Recompute trend momentum and daily keyword metrics."""
    configure_logging(log_level.upper())  # type: ignore[arg-type]
    summary = _run_or_exit(MerchRunner().run_metrics, _options(config_path))
    _print_json(summary.as_dict())


@cli.command("jobs")
def jobs(
    config_path: Optional[Path] = _common_options()["config_path"],
    settings_path: Optional[Path] = _common_options()["settings_path"],
    log_level: str = _common_options()["log_level"],
    only: Optional[str] = typer.Option(
        None, "--only", help="Comma-separated job names (crawl,serp,metrics)."
    ),
    mode: str = typer.Option("default", "--mode", help=f"Crawl mode: {', '.join(CRAWL_MODES)}."),
    dry_run: bool = typer.Option(False, "--dry-run", help="List the jobs without running them."),
    allow_missing_env: bool = typer.Option(
        False,
        "--allow-missing-env",
        help="Skip jobs whose required environment variables are missing instead of failing.",
    ),
) -> None:
    """Run the selected batch jobs in order."""
    configure_logging(log_level.upper())  # type: ignore[arg-type]
    selected = [name.strip() for name in (only or "").split(",") if name.strip()] or None
    options = _options(
        config_path,
        settings_path,
        only=selected,
        mode=mode,
        dry_run=dry_run,
        allow_missing_env=allow_missing_env,
    )
    results = _run_or_exit(MerchRunner().run_jobs, options)
    _print_json({"jobs": [result.as_dict() for result in results]})


@cli.command("enqueue")
def enqueue(
    term: str = typer.Argument(..., help="Keyword to snapshot."),
    alias: Optional[str] = typer.Option(
        None,
        "--alias",
        help="Marketplace alias (us, uk, de, ...). Defaults to every configured alias.",
    ),
    priority: int = typer.Option(0, "--priority", help="Higher runs first."),
    config_path: Optional[Path] = _common_options()["config_path"],
    log_level: str = _common_options()["log_level"],
) -> None:
    """Queue a keyword SERP job."""
    configure_logging(log_level.upper())  # type: ignore[arg-type]
    try:
        job_ids = _run_or_exit(
            MerchRunner().enqueue, _options(config_path), term, alias=alias, priority=priority
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="TERM") from exc
    _print_json({"jobIds": job_ids})


@cli.command("settings")
def settings(
    config_path: Optional[Path] = _common_options()["config_path"],
    settings_path: Optional[Path] = _common_options()["settings_path"],
    log_level: str = _common_options()["log_level"],
    mode: str = typer.Option("default", "--mode", help=f"Crawl mode: {', '.join(CRAWL_MODES)}."),
) -> None:
    """Print the effective crawler settings and which fields env overrides."""
    configure_logging(log_level.upper())  # type: ignore[arg-type]
    payload = _run_or_exit(
        MerchRunner().show_settings, _options(config_path, settings_path, mode=mode)
    )
    _print_json(payload)


@cli.command("watch")
def watch(
    config_path: Optional[Path] = _common_options()["config_path"],
    settings_path: Optional[Path] = _common_options()["settings_path"],
    log_level: str = _common_options()["log_level"],
    only: Optional[str] = typer.Option(None, "--only", help="Comma-separated job names."),
    mode: str = typer.Option("default", "--mode", help=f"Crawl mode: {', '.join(CRAWL_MODES)}."),
    success_delay: float = typer.Option(
        3600.0, "--success-delay", min=0.0, help="Pause between successful cycles (seconds)."
    ),
    error_delay: float = typer.Option(
        300.0, "--error-delay", min=0.0, help="Pause before retrying after a failed cycle (seconds)."
    ),
    max_runs: Optional[int] = typer.Option(
        None, "--max-runs", min=1, help="Stop after this many cycles."
    ),
) -> None:
    """Keep running the jobs, pausing between cycles."""
    configure_logging(log_level.upper())  # type: ignore[arg-type]
    selected = [name.strip() for name in (only or "").split(",") if name.strip()] or None
    options = _options(config_path, settings_path, only=selected, mode=mode)
    runner = MerchRunner()
    runs_completed = 0
    console.print(
        f"[cyan]Watch mode[/cyan]: success_delay={success_delay}s, "
        f"error_delay={error_delay}s, max_runs={max_runs or 'unlimited'}"
    )
    try:
        while max_runs is None or runs_completed < max_runs:
            wait_time = success_delay
            try:
                results = runner.run_jobs(options)
                _print_json({"jobs": [result.as_dict() for result in results]})
            except ConfigLoaderError as exc:
                console.print(f"[bold red]Configuration error:[/bold red] {exc}")
                raise typer.Exit(code=2) from exc
            except Exception:  # pragma: no cover - depends on the runtime environment
                logger.exception("Cycle failed, retrying in %s seconds", error_delay)
                wait_time = error_delay
            runs_completed += 1
            if max_runs is not None and runs_completed >= max_runs:
                break
            if wait_time > 0:
                typer.echo(f"Next cycle in {wait_time:.0f} seconds")
                time.sleep(wait_time)
    except KeyboardInterrupt:
        console.print("[yellow]Watch mode stopped[/yellow]")


def entrypoint() -> None:
    cli()
