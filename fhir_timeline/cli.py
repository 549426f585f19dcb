"""Command Line Interface for the FHIR Timeline importer.

This module provides a Typer CLI for inventorying exported social media
archives, importing them into clinical-record resources, and trying the
clinical text classifier.

Security Impact:
    - Archives are read locally; excluded files are never parsed
    - Post and message content is not echoed, only counts and job state
"""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from fhir_timeline import __version__
from fhir_timeline.adapters.archive import ArchiveReader, ArchiveScanner
from fhir_timeline.adapters.storage import StorageAdapters, create_storage_adapters
from fhir_timeline.domain.enums import FileCategory, JobStatus
from fhir_timeline.domain.import_job import ImportJob
from fhir_timeline.domain.ports import TimelineImportError, UserAccount
from fhir_timeline.domain.services.clinical_classifier import ClinicalTextClassifier
from fhir_timeline.infrastructure.logging_config import setup_logging
from fhir_timeline.infrastructure.settings import settings
from fhir_timeline.worker import ImportWorker

# Initialize Typer app and Rich console
app = typer.Typer(
    name="fhir-timeline",
    help="FHIR Timeline: import social media archives as clinical records",
    add_completion=False
)
console = Console()


def create_storage_cli() -> StorageAdapters:
    """Create storage adapters from configuration (CLI wrapper)."""
    try:
        return create_storage_adapters(settings.db_config, source_label=settings.source_label)
    except (TimelineImportError, ValueError) as e:
        console.print(f"[red]✗[/red] Failed to create storage: {str(e)}")
        raise typer.Exit(code=1)


def print_job(job: ImportJob) -> None:
    """Print a job's state and per-type resource counts."""
    colour = {
        JobStatus.COMPLETED: "green",
        JobStatus.FAILED: "red",
        JobStatus.CANCELLED: "yellow",
    }.get(job.status, "blue")

    job_table = Table(show_header=False, box=None, padding=(0, 2))
    job_table.add_row("Job ID:", job.job_id)
    job_table.add_row("Status:", f"[{colour}]{job.status.value}[/{colour}]")
    if job.current_phase is not None:
        job_table.add_row("Phase:", job.current_phase.value)
    job_table.add_row("Progress:", f"{job.progress}%")
    job_table.add_row("Records:", f"{job.processed_records:,} / {job.total_records:,}")
    job_table.add_row("Errors:", f"[red]{job.error_count:,}[/red]" if job.error_count else "0")
    if job.failure_reason:
        job_table.add_row("Failure:", job.failure_reason)
    console.print(job_table)

    results = job.results
    if results is None:
        return

    results_table = Table(show_header=True, header_style="bold")
    results_table.add_column("Resource", style="cyan")
    results_table.add_column("Created", justify="right")
    for label, count in (
        ("Patient", results.patients),
        ("Communication", results.communications),
        ("ClinicalImpression", results.clinical_impressions),
        ("Media", results.media),
        ("Person", results.persons),
        ("CareTeam", results.care_teams),
    ):
        results_table.add_row(label, f"{count:,}")
    results_table.add_row("[bold]Total[/bold]", f"[bold]{results.total:,}[/bold]")
    console.print(results_table)


@app.command()
def scan(
    archive: Path = typer.Argument(..., help="Archive (.zip) or extracted directory", exists=True),
    budget_mb: Optional[int] = typer.Option(None, "--budget-mb", "-b", help="Size budget for the test subset (MB)"),
) -> None:
    """Inventory an archive and recommend files for a test import.

    Examples:
        fhir-timeline scan facebook-export.zip
        fhir-timeline scan export/ --budget-mb 20
    """
    budget = budget_mb * 1024 * 1024 if budget_mb else settings.test_parse_size
    scanner = ArchiveScanner(test_parse_size=budget, working_directory=settings.working_directory)

    try:
        inventory = scanner.scan(str(archive))
    except (TimelineImportError, OSError, ValueError) as e:
        console.print(f"[red]✗[/red] Scan failed: {str(e)}")
        raise typer.Exit(code=1)

    console.print(f"\n[bold blue]Archive:[/bold blue] {inventory.source}")

    category_table = Table(show_header=True, header_style="bold")
    category_table.add_column("Category", style="cyan")
    category_table.add_column("Files", justify="right")
    category_table.add_column("Size", justify="right")
    for category in FileCategory:
        entries = inventory.categories.get(category, [])
        size = sum(entry.size for entry in entries)
        category_table.add_row(category.value, f"{len(entries):,}", f"{size:,}")
    console.print(category_table)

    summary = inventory.summary
    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Total files:", f"[bold]{summary.total_files:,}[/bold]")
    summary_table.add_row("Total size:", summary.total_size_formatted)
    summary_table.add_row("Excluded files:", f"{summary.excluded_files:,}")
    console.print(summary_table)

    recommendation = summary.test_parse_recommendation
    if recommendation is not None:
        console.print(f"\n[bold]Test import:[/bold] {recommendation.reason}")
        for entry in recommendation.suggested:
            console.print(f"  • {entry.path} [dim]({entry.size_formatted})[/dim]")


@app.command("import")
def import_archive(
    archive: Path = typer.Argument(..., help="Archive (.zip), extracted directory, or JSON payload", exists=True),
    user_id: str = typer.Option(..., "--user-id", "-u", help="Importing user's id"),
    name: Optional[str] = typer.Option(None, "--name", help="User display name"),
    email: Optional[str] = typer.Option(None, "--email", help="User email"),
    phone: Optional[str] = typer.Option(None, "--phone", help="User phone number"),
    files: Optional[List[str]] = typer.Option(None, "--file", "-f", help="Only import this archive entry (repeatable)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Import an archive as clinical-record resources.

    Examples:
        fhir-timeline import export.zip --user-id u1 --name "Jane Doe"
        fhir-timeline import export/ -u u1 -f posts/your_posts_1.json
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        console.print("[dim]Verbose logging enabled[/dim]")

    console.print("\n[bold blue]FHIR Timeline Import[/bold blue]")
    console.print(f"[dim]Archive:[/dim] {archive}")
    console.print(f"[dim]Storage:[/dim] {settings.db_config.db_type}")
    console.print()

    try:
        payload = ArchiveReader().load(str(archive), selected_files=files or None)
    except (TimelineImportError, OSError, ValueError) as e:
        console.print(f"[red]✗[/red] Failed to read archive: {str(e)}")
        raise typer.Exit(code=1)

    storage = create_storage_cli()
    try:
        storage.register_user(UserAccount(user_id=user_id, display_name=name, email=email, phone=phone))

        with ImportWorker(
            storage,
            max_workers=1,
            classifier_config=settings.config_manager.get_classifier_config(),
        ) as worker:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console
            ) as progress:
                task = progress.add_task("Importing records...", total=None)
                job_id = worker.submit(user_id, archive.name, payload)
                job = worker.wait(job_id)
                progress.update(task, completed=True)

        console.print("\n[bold]Import Summary:[/bold]")
        print_job(job)

        if job.status != JobStatus.COMPLETED:
            console.print(f"\n[red]✗[/red] Import {job.status.value}")
            raise typer.Exit(code=1)
        if job.error_count:
            console.print(f"\n[yellow]⚠[/yellow] Import completed with {job.error_count} record errors")
        else:
            console.print("\n[green]✓[/green] Import completed successfully")

    except KeyboardInterrupt:
        console.print("\n[yellow]⚠[/yellow] Import interrupted by user")
        raise typer.Exit(code=130)
    except TimelineImportError as e:
        console.print(f"\n[red]✗[/red] Import failed: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        storage.close()


@app.command()
def classify(
    text: str = typer.Argument(..., help="Text to classify"),
) -> None:
    """Show the clinical findings the classifier extracts from some text.

    Examples:
        fhir-timeline classify "Terrible headache since this morning"
    """
    classifier = ClinicalTextClassifier(settings.config_manager.get_classifier_config())

    if not classifier.is_clinically_relevant(text):
        console.print("[dim]Not clinically relevant[/dim]")
        return

    findings = classifier.extract_findings(text)
    if not findings:
        console.print("[yellow]⚠[/yellow] Relevant, but no findings above the confidence floor")
        return

    findings_table = Table(show_header=True, header_style="bold")
    findings_table.add_column("Term", style="cyan")
    findings_table.add_column("Type")
    findings_table.add_column("SNOMED", justify="right")
    findings_table.add_column("Confidence", justify="right")
    findings_table.add_column("Severity")
    findings_table.add_column("Temporal")
    for finding in findings:
        findings_table.add_row(
            finding.term,
            finding.finding_type.value,
            finding.code or "-",
            f"{finding.confidence:.2f}",
            finding.severity.value,
            finding.temporal.value,
        )
    console.print(findings_table)

    summary = classifier.summarize_findings(findings)
    console.print(
        f"\n{summary.total_findings} findings, {summary.high_confidence} high confidence"
    )


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Import job id"),
) -> None:
    """Show an import job's state (persistent DuckDB storage only)."""
    storage = create_storage_cli()
    try:
        job = storage.jobs.find_job(job_id)
        if job is None:
            console.print(f"[red]✗[/red] Import job not found: {job_id}")
            raise typer.Exit(code=1)
        print_job(job)
    finally:
        storage.close()


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Version:", __version__)
    info_table.add_row("Storage Type:", settings.db_config.db_type)
    if settings.db_config.db_type == "duckdb":
        info_table.add_row("Database Path:", settings.get_db_path())
    info_table.add_row("Working Directory:", settings.working_directory)
    info_table.add_row("Test Parse Size:", f"{settings.test_parse_size / (1024 * 1024):.0f} MB")
    info_table.add_row("Progress Interval:", f"{settings.progress_update_interval} records")
    info_table.add_row("Posts Error Threshold:", f"{settings.posts_error_threshold_percent:.1f}%")
    info_table.add_row("Workers:", str(settings.max_workers))

    console.print(info_table)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"FHIR Timeline v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", help="Show version information", callback=version_callback, is_eager=True
    )
) -> None:
    """FHIR Timeline: import social media archives as clinical records."""
    setup_logging(use_json=settings.log_json, log_level=settings.log_level)


if __name__ == "__main__":
    app()
