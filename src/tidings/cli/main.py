import os
from pathlib import Path
from typing import Callable, List, Optional

import typer
from rich.console import Console
from rich.status import Status
from rich.table import Table

from tidings.cli.config_manager import get_config_manager
from tidings.core.discovery import SourceDiscovery, get_discovery_config
from tidings.core.errors import TidingsError
from tidings.core.logging_config import configure_logging
from tidings.core.pipeline import (
    BatchResult,
    ProgressEvent,
    StopFlag,
    build_pipeline,
    reprocess as reprocess_issues,
    scan_and_ingest,
)
from tidings.core.store import IssueStatus, PostgresStore, Series, get_database_url
from tidings.core.uploads import issue_from_upload

app = typer.Typer(help="Tidings: newsletter and bulletin ingestion for church search")
console = Console()

get_config_manager().apply_to_environment()

configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true"
)


def _stop_flag() -> StopFlag:
    return StopFlag(Path(os.getenv("TIDINGS_STOP_FILE", "./.tidings/stop")))


# Steps printed as lines; every other step only updates the spinner.
MILESTONE_STEPS = {"issue_done", "issue_failed", "skip", "skip_page", "stopped", "quota"}


def _status_reporter(spinner: Status) -> Callable[[ProgressEvent], None]:
    """Progress callback that drives a console.status spinner."""
    def report(event: ProgressEvent) -> None:
        spinner.update(f"[bold green]{event.percent:>3}% {event.message}")
        if event.step in MILESTONE_STEPS:
            console.print(f"[dim]{event.percent:>3}%[/] [cyan]{event.step}[/] {event.message}")
    return report


def _print_summary(result: BatchResult) -> None:
    console.print()
    console.print("[bold]📊 Batch summary[/]")
    console.print(f"  Processed: {result.processed}")
    console.print(f"  Skipped:   {result.skipped}")
    console.print(f"  Failed:    {result.failed}")
    console.print(f"  Chunks:    {result.chunks}")
    if result.remaining:
        console.print(f"  Remaining: {result.remaining}")
    if result.first_error:
        console.print(f"[red]First error:[/] {result.first_error}")
    if result.failed_issues:
        numbers = " ".join(str(n) for n in result.failed_issues)
        console.print(f"[yellow]Retry with:[/] tidings reprocess {numbers}")
    if result.quota_exhausted:
        console.print("[red]Embedding quota exhausted; run stopped. Do not retry until the quota resets.[/]")
    elif result.stopped:
        console.print("[yellow]Stopped on request.[/]")


def _discovery(store: PostgresStore, series: Optional[Series], listing_url: Optional[str]) -> SourceDiscovery:
    config = get_discovery_config()
    if series is not None:
        config.series = series
    if listing_url:
        config.listing_url = listing_url
    return SourceDiscovery(store, config)


@app.command()
def scan(
    full: bool = typer.Option(False, "--full", help="Scan the whole range instead of only new issues"),
    start_url: Optional[str] = typer.Option(None, help="Detail URL of the newest issue to include"),
    end_url: Optional[str] = typer.Option(None, help="Detail URL of the oldest issue to include"),
    max_pages: Optional[int] = typer.Option(None, help="Maximum listing pages to walk"),
    series: Optional[Series] = typer.Option(None, help="newsletter or bulletin"),
    listing_url: Optional[str] = typer.Option(None, help="Listing page URL"),
):
    """List the issues a run would process, without processing them."""
    store = PostgresStore()
    try:
        with console.status("[bold green]Scanning listing..."):
            discovery = _discovery(store, series, listing_url)
            if full:
                upper, lower = discovery.resolve_range(start_url, end_url)
                issues = discovery.scan(upper, lower, max_pages)
            else:
                issues = discovery.discover(start_url=start_url, end_url=end_url, max_pages=max_pages)
    except TidingsError as e:
        console.print(f"[red]Error during scan:[/] {e}")
        raise typer.Exit(1)

    if not issues:
        console.print("[green]Nothing new to process.[/]")
        return

    table = Table(title=f"{len(issues)} issues")
    table.add_column("No.", justify="right")
    table.add_column("Date")
    table.add_column("Pages", justify="right")
    table.add_column("Status")
    table.add_column("URL", overflow="fold")
    for issue in issues:
        table.add_row(str(issue.issue_number), issue.issue_date, str(issue.page_count),
                      issue.status.value, issue.detail_url or "")
    console.print(table)


@app.command()
def ingest(
    full: bool = typer.Option(False, "--full", help="Full rescan: drop incomplete cached issues and rescan"),
    force: bool = typer.Option(False, "--force", help="Reprocess issues that already completed"),
    verify: Optional[bool] = typer.Option(None, "--verify/--no-verify", help="Cross-check recognition with a second provider"),
    start_url: Optional[str] = typer.Option(None, help="Detail URL of the newest issue to include"),
    end_url: Optional[str] = typer.Option(None, help="Detail URL of the oldest issue to include"),
    max_pages: Optional[int] = typer.Option(None, help="Maximum listing pages to walk"),
    series: Optional[Series] = typer.Option(None, help="newsletter or bulletin"),
    listing_url: Optional[str] = typer.Option(None, help="Listing page URL"),
):
    """Discover new issues and run them through the pipeline."""
    console.print(f"[bold]Ingesting issues[/] ({'full rescan' if full else 'incremental'})")
    store = PostgresStore()
    stop_flag = _stop_flag()
    stop_flag.clear()

    try:
        with console.status("[bold green]Ingesting issues...") as spinner:
            pipeline = build_pipeline(store, verify=verify, progress=_status_reporter(spinner), stop_flag=stop_flag)
            if not pipeline.chain.available():
                console.print("[red]Error:[/] No recognition provider has an API key configured")
                raise typer.Exit(1)
            result = scan_and_ingest(
                _discovery(store, series, listing_url),
                pipeline,
                full_rescan=full,
                force=force,
                start_url=start_url,
                end_url=end_url,
                max_pages=max_pages,
            )
    except TidingsError as e:
        console.print(f"[red]Error during ingestion:[/] {e}")
        raise typer.Exit(1)

    _print_summary(result)
    if result.failed:
        raise typer.Exit(1)


@app.command()
def reprocess(
    issue_numbers: List[int] = typer.Argument(..., help="Issue numbers to reprocess"),
    series: Series = typer.Option(Series.NEWSLETTER, help="newsletter or bulletin"),
    verify: Optional[bool] = typer.Option(None, "--verify/--no-verify", help="Cross-check recognition with a second provider"),
):
    """Force reprocessing of cached issues, completed ones included."""
    store = PostgresStore()
    stop_flag = _stop_flag()
    stop_flag.clear()

    try:
        with console.status("[bold green]Reprocessing issues...") as spinner:
            pipeline = build_pipeline(store, verify=verify, progress=_status_reporter(spinner), stop_flag=stop_flag)
            result = reprocess_issues(store, pipeline, issue_numbers, series=series)
    except TidingsError as e:
        console.print(f"[red]Error during reprocessing:[/] {e}")
        raise typer.Exit(1)

    _print_summary(result)
    if result.failed:
        raise typer.Exit(1)


@app.command()
def upload(
    path: str = typer.Argument(..., help="Scanned PDF, image file, or directory of page images"),
    year: int = typer.Option(..., help="Publication year"),
    month: int = typer.Option(..., help="Publication month"),
    day: Optional[int] = typer.Option(None, help="Publication day (bulletins)"),
    series: Series = typer.Option(Series.NEWSLETTER, help="newsletter or bulletin"),
    force: bool = typer.Option(False, "--force", help="Replace an issue that already completed"),
    verify: Optional[bool] = typer.Option(None, "--verify/--no-verify", help="Cross-check recognition with a second provider"),
):
    """Ingest a locally scanned edition."""
    input_path = Path(path)
    if not input_path.exists():
        console.print(f"[red]Error:[/] Path {path} does not exist")
        raise typer.Exit(1)

    try:
        issue, images = issue_from_upload(input_path, year, month, day, series)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)

    console.print(f"[bold]Uploading issue {issue.issue_number}[/] ({issue.issue_date}, {len(images)} pages)")
    store = PostgresStore()
    stop_flag = _stop_flag()
    stop_flag.clear()

    try:
        with console.status("[bold green]Processing upload...") as spinner:
            pipeline = build_pipeline(store, verify=verify, progress=_status_reporter(spinner), stop_flag=stop_flag)
            result = pipeline.run([issue], force=force, images={issue.issue_number: images})
    except TidingsError as e:
        console.print(f"[red]Error during upload:[/] {e}")
        raise typer.Exit(1)

    _print_summary(result)
    if result.failed:
        raise typer.Exit(1)


@app.command()
def status(
    failed: bool = typer.Option(False, "--failed", help="List issues that need a retry"),
):
    """Show issue and content statistics."""
    store = PostgresStore()
    try:
        counts = store.status_counts()
        failed_issues = store.list_issues(status=IssueStatus.FAILED) if failed else []
    except TidingsError as e:
        console.print(f"[red]Error getting status:[/] {e}")
        raise typer.Exit(1)

    console.print("[bold]📰 Tidings Status[/]")
    console.print()
    console.print("[bold]Issues:[/]")
    if not counts["issues"]:
        console.print("  (none)")
    for key, total in sorted(counts["issues"].items()):
        console.print(f"  {key}: {total}")
    console.print()
    console.print(f"[bold]Pages:[/] {counts['pages']}")
    console.print(f"[bold]Segments:[/] {counts['segments']}")
    console.print(f"[bold]Chunks:[/] {counts['chunks']}")

    if failed_issues:
        console.print()
        console.print("[bold red]Failed issues:[/]")
        for issue in failed_issues:
            console.print(f"  {issue.series.value} {issue.issue_number} ({issue.issue_date}): {issue.error or ''}")

    console.print()
    console.print(f"[bold]🗄️  Database:[/] {get_database_url()}")


@app.command()
def stop():
    """Ask a running ingestion to stop after its current issue."""
    flag = _stop_flag()
    flag.request()
    console.print(f"[yellow]Stop requested[/] ({flag.path}); the current issue will finish first.")


@app.command()
def config(
    action: str = typer.Argument(..., help="Action: show, set, reset, validate"),
    key: Optional[str] = typer.Argument(None, help="Configuration key"),
    value: Optional[str] = typer.Argument(None, help="Configuration value")
):
    """Manage persisted settings."""
    manager = get_config_manager()

    if action == "show":
        console.print("\n[bold]Current Configuration:[/]")
        for name, current in manager.get_all().items():
            console.print(f"  [blue]{name}:[/] {current}")
        for env_key in ("OPENAI_API_KEY", "GOOGLE_API_KEY", "ANTHROPIC_API_KEY"):
            console.print(f"  [blue]{env_key}:[/] {'***' if os.getenv(env_key) else 'Not set'}")
    elif action == "set":
        if not key or value is None:
            console.print("[red]Error:[/] Both key and value required for 'set' action")
            raise typer.Exit(1)
        try:
            stored = manager.set(key, value)
        except ValueError as e:
            console.print(f"[red]Error:[/] Invalid value for {key}: {e}")
            raise typer.Exit(1)
        console.print(f"[green]✅ Set {key} = {stored}[/]")
    elif action == "reset":
        if not key:
            console.print("[red]Error:[/] Key required for 'reset' action")
            raise typer.Exit(1)
        if manager.reset(key):
            console.print(f"[green]✅ Reset {key} to default[/]")
        else:
            console.print(f"[yellow]Note:[/] {key} has no default")
    elif action == "validate":
        _validate_configuration(manager)
    else:
        console.print(f"[red]Error:[/] Unknown action: {action}")
        console.print("Available actions: show, set, reset, validate")
        raise typer.Exit(1)


def _validate_configuration(manager):
    console.print("[bold]Validating configuration...[/]")
    validation = manager.validate()
    issues = list(validation["issues"])

    try:
        PostgresStore().status_counts()
        console.print("[green]✅ Database connection: OK[/]")
    except TidingsError as e:
        issues.append(str(e))

    for warning in validation["warnings"]:
        console.print(f"[yellow]Warning:[/] {warning}")

    if issues:
        console.print(f"\n[red]❌ Configuration issues found:[/]")
        for issue in issues:
            console.print(f"  • {issue}")
        raise typer.Exit(1)
    console.print(f"\n[green]✅ Configuration validation passed![/]")


if __name__ == "__main__":
    app()
