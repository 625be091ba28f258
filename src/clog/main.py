"""clog command-line interface."""

import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from clog.config import BuildOptions, MissingVariablePolicy, settings
from clog.core.builder import Builder, BuildReport

app = typer.Typer(
    name="clog",
    help="Build a static blog from a directory of markdown documents.",
    add_completion=False,
)

console = Console()
logger = logging.getLogger(__name__)

EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def setup_logging(verbose: bool = False) -> None:
    """Send log records through rich, once per process."""
    level = logging.DEBUG if verbose else settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def print_report(report: BuildReport) -> None:
    """Print issue counts, each issue, and what was written."""
    counts = report.counts()
    if counts:
        summary = Table(title="Errors by kind")
        summary.add_column("Kind")
        summary.add_column("Count", justify="right")
        for kind, count in sorted(counts.items()):
            summary.add_row(kind, str(count))
        console.print(summary)

        details = Table(title="Errors")
        details.add_column("Kind")
        details.add_column("Path")
        details.add_column("Reason")
        issues = list(report.issues)
        if report.error is not None:
            issues.append(report.error)
        for issue in issues:
            location = issue.path or "-"
            if issue.line is not None:
                location = f"{location}:{issue.line}"
            details.add_row(issue.kind, escape(location), escape(issue.reason))
        console.print(details)

    for warning in report.warnings:
        console.print(f"[yellow]warning:[/yellow] {escape(warning)}")

    if report.write is not None:
        write = report.write
        console.print(
            f"{len(write.written)} written, {len(write.unchanged)} unchanged, "
            f"{len(write.removed)} removed, {len(write.orphaned)} orphaned"
        )
        for path in write.orphaned:
            console.print(f"[dim]orphaned: {escape(path)}[/dim]")

    if report.succeeded:
        console.print(f"[bold green]Build succeeded[/bold green] ({report.documents} documents)")
    else:
        stage = report.failed_stage.value if report.failed_stage else "unknown"
        console.print(f"[bold red]Build failed[/bold red] while {stage}")


@app.command()
def build(
    input_dir: Annotated[Path, typer.Argument(help="Site source directory.")],
    output_dir: Annotated[Path, typer.Argument(help="Directory to write the site to.")],
    clean: Annotated[
        bool | None,
        typer.Option("--clean/--no-clean", help="Remove output files this build did not produce."),
    ] = None,
    strict: Annotated[
        bool | None,
        typer.Option("--strict/--no-strict", help="Fail the build on the first error."),
    ] = None,
    concurrency: Annotated[
        int | None,
        typer.Option("--concurrency", "-j", min=1, help="Worker threads for parsing and rendering."),
    ] = None,
    missing_variable: Annotated[
        MissingVariablePolicy | None,
        typer.Option("--missing-variable", help="What to do with undefined template variables."),
    ] = None,
    io_timeout: Annotated[
        float | None,
        typer.Option("--io-timeout", min=0.001, help="Seconds before a file operation times out."),
    ] = None,
    max_errors: Annotated[
        int | None,
        typer.Option("--max-errors", min=0, help="Fail the build if more errors than this occur."),
    ] = None,
    drafts: Annotated[
        bool | None,
        typer.Option("--drafts/--no-drafts", help="Include documents marked as drafts."),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose logging.")] = False,
) -> None:
    """Build the site in INPUT_DIR into OUTPUT_DIR."""
    setup_logging(verbose)
    options = BuildOptions.from_settings(
        settings,
        clean=clean,
        strict=strict,
        concurrency=concurrency,
        missing_variable_policy=missing_variable,
        io_timeout=io_timeout,
        max_errors=max_errors,
        include_drafts=drafts,
    )
    logger.debug("Options: %s", options)

    try:
        report = Builder(input_dir, output_dir, options).run()
    except KeyboardInterrupt:
        console.print("[red]Interrupted, output left unchanged.[/red]")
        raise typer.Exit(EXIT_INTERRUPTED)

    print_report(report)
    if not report.succeeded:
        raise typer.Exit(EXIT_FAILED)


@app.command()
def check(
    input_dir: Annotated[Path, typer.Argument(help="Site source directory.")],
    strict: Annotated[
        bool | None,
        typer.Option("--strict/--no-strict", help="Treat any error as a failure."),
    ] = None,
    drafts: Annotated[
        bool | None,
        typer.Option("--drafts/--no-drafts", help="Include documents marked as drafts."),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable verbose logging.")] = False,
) -> None:
    """Validate documents, links and templates without writing anything."""
    setup_logging(verbose)
    options = BuildOptions.from_settings(settings, strict=strict, include_drafts=drafts)
    report = Builder(input_dir, input_dir, options).check()
    print_report(report)
    if not report.succeeded:
        raise typer.Exit(EXIT_FAILED)


if __name__ == "__main__":
    app()
