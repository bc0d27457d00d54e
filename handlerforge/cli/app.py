"""Main Typer application.

Entry point: ``handlerforge`` (configured via pyproject.toml scripts).

Commands: update, status, mark-updated.
"""

from __future__ import annotations

import logging
from pathlib import Path

import boto3
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from handlerforge.config import UpdaterSettings
from handlerforge.core.tarball_repository import AlreadyUpToDateError, S3TarballRepository
from handlerforge.core.updater import Updater

app = typer.Typer(
    name="handlerforge",
    help="handlerforge: keep a plugin-composed Lambda in line with its handler tarballs.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

console = Console()


def _settings(
    repository_url: str | None,
    function_name: str | None = None,
    code_upload_url: str | None = None,
    base_package: Path | None = None,
) -> UpdaterSettings:
    overrides = {
        "handler_repository_url": repository_url,
        "function_name": function_name,
        "code_upload_url": code_upload_url,
        "base_package_path": base_package,
    }
    settings = UpdaterSettings(**{k: v for k, v in overrides.items() if v is not None})
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    return settings


def _repository(settings: UpdaterSettings) -> S3TarballRepository:
    return S3TarballRepository.from_url(
        settings.handler_repository_url,
        boto3.Session(region_name=settings.aws_region).client("s3"),
        settings.list_page_size,
        update_tag_key=settings.update_tag_key,
        deletion_tag_key=settings.deletion_tag_key,
    )


@app.command(name="update", help="Deploy the latest handler tarballs if needed.")
def update_cmd(
    repository_url: str = typer.Option(None, "--repository", "-r", help="S3 folder URL of handler tarballs."),
    function_name: str = typer.Option(None, "--function", "-f", help="Name of the Lambda function."),
    code_upload_url: str = typer.Option(None, "--upload", "-u", help="S3 folder URL for code uploads."),
    base_package: Path = typer.Option(None, "--base-package", "-b", help="Base runtime package tarball."),
) -> None:
    """Run one reconciliation: scan, build, deploy, mark."""
    settings = _settings(repository_url, function_name, code_upload_url, base_package)
    result = Updater.from_settings(settings).update_to_latest_handlers()

    if not result.updated:
        console.print(f"[green]Up to date[/green] (mark {result.update_mark})")
        return
    console.print(
        f"[bold green]Deployed[/bold green] {len(result.tarballs)} handler tarball(s) "
        f"to {settings.function_name}"
    )
    if result.receipt is not None:
        console.print(f"  code:     s3://{result.receipt.bucket}/{result.receipt.key}")
        console.print(f"  handler:  {result.receipt.handler}")
        console.print(f"  revision: {result.receipt.revision_id}")


@app.command(name="status", help="Show tracked handler tarballs and their marks.")
def status_cmd(
    repository_url: str = typer.Option(None, "--repository", "-r", help="S3 folder URL of handler tarballs."),
) -> None:
    """List every tracked tarball with its deployment mark."""
    repository = _repository(_settings(repository_url))
    repository.initialize()

    table = Table(title="Handler tarballs")
    table.add_column("Name", style="cyan")
    table.add_column("Latest version")
    table.add_column("Deleted", justify="center")
    table.add_column("Mark")

    for ledger in repository.ledgers:
        deleted = "[red]Yes[/red]" if ledger.is_deleted else "No"
        mark = ledger.get_mark() or "[yellow]not deployed[/yellow]"
        version = ledger.latest.version_id if ledger.latest else ""
        table.add_row(ledger.name, version, deleted, mark)

    console.print(table)
    if repository.is_up_to_date:
        console.print(f"[green]Up to date[/green] (mark {repository.update_mark})")
    else:
        console.print("[yellow]Deployment due[/yellow]")


@app.command(name="mark-updated", help="Mark the current tarballs as deployed without deploying.")
def mark_updated_cmd(
    repository_url: str = typer.Option(None, "--repository", "-r", help="S3 folder URL of handler tarballs."),
) -> None:
    """Tag every unmarked tarball version with a new update mark."""
    repository = _repository(_settings(repository_url))
    repository.initialize()
    try:
        mark = repository.mark_updated()
    except AlreadyUpToDateError as exc:
        console.print(f"[yellow]{exc}[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]Marked as updated[/green] at {mark}")


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
