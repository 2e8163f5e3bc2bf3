"""CLI client for groupme-download.

Provides commands to configure the API token, list groups, archive group
histories and export archived photos.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import requests
import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from groupme_download.archive.export import ImageExporter
from groupme_download.archive.pipeline import GroupArchiver, GroupArchiveResult, RunContext
from groupme_download.models.config import AppConfig, ArchiveConfig, ConfigLoader, CrawlMode
from groupme_download.sources.errors import ArchiveWriteError, CrawlCancelled, GroupMeDownloadError
from groupme_download.sources.groupme import GroupMeClient

# Configure logging to stay quiet by default, will be adjusted by verbose flag
logging.basicConfig(
    level=logging.WARNING, format="%(message)s", datefmt="[%X]", handlers=[RichHandler(rich_tracebacks=True)]
)

app = typer.Typer(help="groupme-download - archive GroupMe conversations to local storage")
console = Console()

APP_NAME = "groupme-download"
TOKEN_ENV_VAR = "GROUPME_TOKEN"

EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


class State:
    """Application state container."""

    def __init__(self) -> None:
        """Initialize application state."""
        self.config: AppConfig = AppConfig()
        self.config_path: Path = default_config_path()
        self.verbose: bool = False


def default_config_path() -> Path:
    return Path(typer.get_app_dir(APP_NAME)) / "config.yaml"


state = State()


def create_session() -> requests.Session:
    """HTTP session used for every command."""
    session = requests.Session()
    session.headers["User-Agent"] = APP_NAME
    return session


def _resolve_token() -> str:
    token = os.environ.get(TOKEN_ENV_VAR) or state.config.user.api_token
    if not token:
        console.print(
            f"[red]No GroupMe API token configured.[/red] Run `{APP_NAME} set-config` or set {TOKEN_ENV_VAR}."
        )
        raise typer.Exit(code=EXIT_CONFIG)
    return token


def _resolve_output(output: Optional[Path]) -> Path:
    if output is not None:
        return output
    if state.config.user.output_dir:
        return Path(state.config.user.output_dir)
    console.print(f"[red]No output directory given.[/red] Use --output or run `{APP_NAME} set-config`.")
    raise typer.Exit(code=EXIT_CONFIG)


@app.callback()  # type: ignore[misc]
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="Path to configuration file"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logging (DEBUG level)"),
) -> None:
    """groupme-download - archive GroupMe conversations to local storage."""
    state.verbose = verbose
    state.config_path = config or default_config_path()

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.getLogger("groupme_download").setLevel(logging.DEBUG)
    else:
        logging.getLogger().setLevel(logging.WARNING)
        logging.getLogger("groupme_download").setLevel(logging.INFO)

    try:
        state.config = ConfigLoader.load(str(state.config_path))
    except (ValidationError, yaml.YAMLError, TypeError) as e:
        console.print(f"[red]Invalid configuration file {state.config_path}:[/red] {e}")
        raise typer.Exit(code=EXIT_CONFIG)


@app.command("set-config")  # type: ignore[misc]
def set_config(
    token: str = typer.Option(..., "--token", prompt="GroupMe API token", hide_input=True, help="GroupMe API token"),
    output_dir: Optional[str] = typer.Option(None, "--output-dir", help="Default archive directory"),
) -> None:
    """Update your user configuration: API token and preferred download directory."""
    if output_dir is None:
        output_dir = typer.prompt(
            "Default output directory", default=state.config.user.output_dir or str(Path.cwd() / "groupme-archive")
        )
    state.config.user.api_token = token.strip()
    state.config.user.output_dir = str(Path(str(output_dir)).expanduser())
    ConfigLoader.save(str(state.config_path), state.config)
    console.print(f"[green]Configuration saved to {state.config_path}[/green]")


@app.command()  # type: ignore[misc]
def groups(
    max_groups: Optional[int] = typer.Option(None, "--max", min=1, help="Show at most this many groups"),
) -> None:
    """List your GroupMe groups."""
    token = _resolve_token()
    try:
        with GroupMeClient(token, session=create_session()) as client:
            with Progress(SpinnerColumn(), TextColumn("[bold blue]Fetching groups..."), transient=True) as progress:
                progress.add_task("groups", total=None)
                items = client.list_groups(max_groups=max_groups)
    except GroupMeDownloadError as e:
        console.print(f"[red]Could not list groups: {e}[/red]")
        raise typer.Exit(code=EXIT_FATAL)

    if not items:
        console.print("[yellow]No groups found.[/yellow]")
        return

    table = Table(title="GroupMe Groups")
    table.add_column("Name", style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Members", justify="right")
    for group in items:
        table.add_row(group.name, group.id, str(len(group.members)))
    console.print(table)


def _summary_table(results: List[GroupArchiveResult]) -> Table:
    table = Table(title="Archive Summary")
    table.add_column("Group", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Messages", justify="right")
    table.add_column("Downloaded", justify="right")
    table.add_column("Reused", justify="right")
    table.add_column("Tombstones", justify="right")
    table.add_column("Status")
    for r in results:
        status = "[green]ok[/green]" if r.ok else f"[red]{r.error}[/red]"
        table.add_row(
            r.group_id,
            r.group_name,
            str(r.messages_written),
            str(r.attachments_stored),
            str(r.attachments_reused),
            str(r.tombstones),
            status,
        )
    return table


@app.command()  # type: ignore[misc]
def download(
    group_ids: List[str] = typer.Argument(..., help="GroupMe group ids to archive"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Archive directory"),
    concurrency: int = typer.Option(4, "--concurrency", help="Parallel attachment downloads"),
    mode: CrawlMode = typer.Option(CrawlMode.oldest_first, "--mode", help="Crawl order"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Only the most recent N messages (newest-first)"),
) -> None:
    """Archive the history of one or more groups.

    Runs are incremental: an interrupted or repeated oldest-first run resumes
    after the last committed batch.
    """
    token = _resolve_token()
    try:
        config = ArchiveConfig(
            group_ids=group_ids,
            output_dir=_resolve_output(output),
            concurrency=concurrency,
            mode=mode,
            limit=limit,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid arguments:[/red] {e}")
        raise typer.Exit(code=EXIT_CONFIG)

    context = RunContext.create(
        config,
        token,
        rate_config=state.config.rate_limit,
        retry_config=state.config.retry,
        session=create_session(),
    )
    results: List[GroupArchiveResult] = []
    try:
        with GroupArchiver(context) as archiver:
            with Progress(
                SpinnerColumn(), TextColumn("[progress.description]{task.description}"), transient=True
            ) as progress:
                task = progress.add_task(description=f"Archiving {len(config.group_ids)} group(s)...", total=None)

                def _on_group_done(result: GroupArchiveResult) -> None:
                    results.append(result)
                    progress.update(task, description=f"Archived {result.group_id} ({result.messages_written} new)")

                archiver.run(on_group_done=_on_group_done)
    except (KeyboardInterrupt, CrawlCancelled):
        context.cancel()
        console.print("[yellow]Interrupted; progress up to the last committed batch is saved.[/yellow]")
        raise typer.Exit(code=EXIT_INTERRUPTED)
    except ArchiveWriteError as e:
        console.print(f"[red]Archive write failed: {e}[/red]")
        if state.verbose:
            logging.exception("Archive write error")
        raise typer.Exit(code=EXIT_FATAL)
    finally:
        context.close()

    console.print(_summary_table(results))
    failed = [r for r in results if not r.ok]
    for r in failed:
        console.print(f"[red]Group {r.group_id} failed: {r.error}[/red]")
    if failed:
        raise typer.Exit(code=EXIT_FATAL)


@app.command("export-images")  # type: ignore[misc]
def export_images(
    group_id: str = typer.Argument(..., help="Archived group id"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Archive directory"),
    dest: Optional[Path] = typer.Option(None, "--dest", help="Directory receiving the images"),
    start: Optional[datetime] = typer.Option(None, "--start", formats=["%Y-%m-%d"], help="First day (YYYY-MM-DD)"),
    end: Optional[datetime] = typer.Option(None, "--end", formats=["%Y-%m-%d"], help="Day after the last (YYYY-MM-DD)"),
) -> None:
    """Copy archived photos and videos into a flat directory named by date and sender."""
    output_dir = _resolve_output(output)
    destination = dest or output_dir / group_id / "images"
    if start and end and end <= start:
        console.print("[red]--end must be after --start[/red]")
        raise typer.Exit(code=EXIT_CONFIG)

    exporter = ImageExporter(output_dir)
    try:
        created = exporter.export(
            group_id,
            destination,
            start=start.date() if start else None,
            end=end.date() if end else None,
        )
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=EXIT_FATAL)
    console.print(f"[green]Exported {len(created)} file(s) to {destination}[/green]")


if __name__ == "__main__":
    app()
