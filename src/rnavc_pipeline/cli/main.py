"""
Main command-line interface for the RNA-seq variant calling pipeline.
"""

import configparser
import sys
from pathlib import Path
from typing import Optional
import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..config.settings import PipelineConfig, load_pipeline_config
from ..core.pipeline import Pipeline
from ..core.stages import stage_names
from ..exceptions import MissingInputError, MissingReferenceError, UnknownStageError
from ..models.results import PipelineResult, StageStatus
from ..utils import setup_logging
from .. import __version__


console = Console()

# Exit statuses of the CLI
EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_USAGE = 2
EXIT_MISSING_REFERENCE = 3
EXIT_MISSING_INPUT = 4

STATUS_STYLES = {
    StageStatus.SUCCESS: "green",
    StageStatus.FAILED: "red",
    StageStatus.SKIPPED: "cyan",
    StageStatus.NOT_RUN: "yellow",
    StageStatus.PLANNED: "blue",
}


@click.group()
@click.version_option(version=__version__, prog_name="RNA-seq Variant Calling Pipeline")
def cli():
    """RNA-seq variant calling pipeline following the GATK best practices."""
    pass


@cli.command()
@click.argument("sample_id", type=str)
@click.argument("working_root", type=click.Path(file_okay=False, path_type=Path))
@click.option(
    "--config",
    help="Configuration file path (INI)",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--from-stage",
    type=click.Choice(stage_names()),
    help="First stage to run",
)
@click.option(
    "--to-stage",
    type=click.Choice(stage_names()),
    help="Last stage to run",
)
@click.option(
    "--threads",
    type=click.IntRange(min=1),
    help="Number of threads for STAR",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Print the commands without executing them",
)
@click.option(
    "--keep-going",
    is_flag=True,
    help="Launch the remaining stages after a stage fails",
)
@click.option(
    "--resume",
    is_flag=True,
    help="Skip stages whose outputs already exist",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (default: from configuration, INFO)",
)
@click.option(
    "--log-file",
    help="Log file path",
    type=click.Path(dir_okay=False, path_type=Path),
)
@click.option(
    "--log-format",
    default="console",
    type=click.Choice(["console", "json"]),
    help="Log output format",
)
def run(
    sample_id: str,
    working_root: Path,
    config: Optional[Path],
    from_stage: Optional[str],
    to_stage: Optional[str],
    threads: Optional[int],
    dry_run: bool,
    keep_going: bool,
    resume: bool,
    log_level: Optional[str],
    log_file: Optional[Path],
    log_format: str
):
    """Run the pipeline for SAMPLE_ID under WORKING_ROOT."""
    pipeline_config = _load_config(config, threads, log_level, log_file)

    logger = setup_logging(
        log_level=pipeline_config.log_level,
        log_file=pipeline_config.log_file,
        log_format=log_format
    )

    console.print(f"[bold blue]RNA-seq Variant Calling Pipeline v{__version__}[/bold blue]")
    console.print(f"Sample: {sample_id}")
    console.print(f"Working root: {working_root}")
    if dry_run:
        console.print("[yellow]Dry run mode - no tool will be executed[/yellow]")

    pipeline = Pipeline(pipeline_config, logger)

    try:
        result = pipeline.run_sample(
            sample_id,
            working_root,
            from_stage=from_stage,
            to_stage=to_stage,
            dry_run=dry_run,
            keep_going=keep_going,
            resume=resume,
        )
    except MissingReferenceError as e:
        console.print(f"[red]Missing reference: {escape(str(e))}[/red]")
        sys.exit(EXIT_MISSING_REFERENCE)
    except MissingInputError as e:
        console.print(f"[red]Missing input: {escape(str(e))}[/red]")
        sys.exit(EXIT_MISSING_INPUT)
    except (UnknownStageError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(EXIT_USAGE)

    display_results(result)

    if dry_run:
        for stage in result.stages:
            for line in stage.commands:
                click.echo(line)

    if not result.succeeded:
        failed = result.failed_stage
        console.print(f"[red]Pipeline failed at stage '{failed.name}' "
                      f"(exit status {result.exit_code})[/red]")
        sys.exit(EXIT_STAGE_FAILED)

    console.print("[green]DONE[/green]")


@cli.command()
@click.argument("working_root", type=click.Path(file_okay=False, path_type=Path))
@click.option(
    "--samples",
    required=True,
    help="Comma-separated list of sample identifiers (e.g., sample01,sample02)",
    type=str,
)
@click.option(
    "--config",
    help="Configuration file path (INI)",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--threads",
    type=click.IntRange(min=1),
    help="Number of threads for STAR",
)
@click.option(
    "--keep-going",
    is_flag=True,
    help="Launch the remaining stages after a stage fails",
)
@click.option(
    "--resume",
    is_flag=True,
    help="Skip stages whose outputs already exist",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (default: from configuration, INFO)",
)
@click.option(
    "--log-file",
    help="Log file path",
    type=click.Path(dir_okay=False, path_type=Path),
)
def batch(
    working_root: Path,
    samples: str,
    config: Optional[Path],
    threads: Optional[int],
    keep_going: bool,
    resume: bool,
    log_level: Optional[str],
    log_file: Optional[Path]
):
    """Run the pipeline for several samples under WORKING_ROOT, one after the other."""
    sample_list = [s.strip() for s in samples.split(",") if s.strip()]
    if not sample_list:
        console.print("[red]Error: No valid sample identifiers provided[/red]")
        sys.exit(EXIT_USAGE)

    console.print(f"[green]Processing {len(sample_list)} samples: {', '.join(sample_list)}[/green]")

    pipeline_config = _load_config(config, threads, log_level, log_file)
    logger = setup_logging(
        log_level=pipeline_config.log_level,
        log_file=pipeline_config.log_file,
    )

    pipeline = Pipeline(pipeline_config, logger)
    try:
        results = pipeline.run_batch(sample_list, working_root,
                                     keep_going=keep_going, resume=resume)
    except MissingReferenceError as e:
        console.print(f"[red]Missing reference: {escape(str(e))}[/red]")
        sys.exit(EXIT_MISSING_REFERENCE)

    for result in results:
        display_results(result)

    failed = [r.sample_id for r in results if not r.succeeded]
    not_started = [s for s in sample_list if s not in {r.sample_id for r in results}]
    console.print(f"Processed {len(results)} of {len(sample_list)} samples")
    if failed or not_started:
        if failed:
            console.print(f"[red]Failed samples: {', '.join(failed)}[/red]")
        if not_started:
            console.print(f"[red]Samples that could not start: {', '.join(not_started)}[/red]")
        sys.exit(EXIT_STAGE_FAILED)

    console.print("[green]DONE[/green]")


@cli.command()
@click.option(
    "--config",
    help="Configuration file path (INI)",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def validate(config: Optional[Path]):
    """Validate pipeline configuration, references and tools."""
    pipeline_config = _load_config(config)

    console.print("[bold blue]Validating pipeline configuration...[/bold blue]")

    errors = pipeline_config.validate_setup()

    display_config_summary(pipeline_config)

    if errors:
        console.print("[red]Configuration validation failed:[/red]")
        for error in errors:
            console.print(f"  [red]• {escape(error)}[/red]")
        sys.exit(EXIT_STAGE_FAILED)

    console.print("[green]✓ Configuration validation passed[/green]")


@cli.command()
@click.argument("sample_id", type=str)
@click.argument("working_root", type=click.Path(file_okay=False, path_type=Path))
@click.option(
    "--config",
    help="Configuration file path (INI)",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def stages(sample_id: str, working_root: Path, config: Optional[Path]):
    """Show the stages, their inputs and outputs for SAMPLE_ID."""
    pipeline_config = _load_config(config)
    logger = setup_logging(log_level="WARNING")
    pipeline = Pipeline(pipeline_config, logger)

    try:
        stage_list = pipeline.plan(sample_id, working_root)
    except ValueError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(EXIT_USAGE)

    table = Table(title=f"Stages for {sample_id}")
    table.add_column("#", style="dim")
    table.add_column("Stage", style="cyan")
    table.add_column("Tool", style="magenta")
    table.add_column("Inputs")
    table.add_column("Outputs")

    for i, stage in enumerate(stage_list, start=1):
        table.add_row(
            str(i),
            stage.name,
            stage.tool,
            "\n".join(p.name for p in stage.inputs),
            "\n".join(p.name for p in stage.outputs),
        )

    console.print(table)


def display_results(result: PipelineResult):
    """Display pipeline results in a formatted table."""
    title = "Planned Stages" if result.dry_run else "Pipeline Results"
    table = Table(title=f"{title}: {result.sample_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Tool", style="magenta")
    table.add_column("Status")
    table.add_column("Exit", justify="right")
    table.add_column("Time (s)", justify="right")

    for stage in result.stages:
        style = STATUS_STYLES.get(stage.status, "white")
        table.add_row(
            stage.name,
            stage.tool,
            f"[{style}]{stage.status.value}[/{style}]",
            "" if stage.return_code is None else str(stage.return_code),
            f"{stage.duration_seconds:.1f}",
        )

    console.print(table)


def display_config_summary(config: PipelineConfig):
    """Display configuration summary."""
    references = config.get_reference_bundle()

    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")

    for name, path in references.as_dict().items():
        table.add_row(f"Reference: {name}", str(path))
    table.add_row("Threads", str(config.threads))
    table.add_row("Java memory (GB)", str(config.java_memory_gb))
    table.add_row("ANNOVAR build", config.annovar_buildver)
    table.add_row("Picard", str(config.picard_jar) if config.picard_jar else "picard (PATH)")
    table.add_row("Environment modules", "enabled" if config.use_env_modules else "disabled")
    table.add_row("Max retries", str(config.max_retries))

    console.print(table)


def _load_config(
    config: Optional[Path],
    threads: Optional[int] = None,
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None
) -> PipelineConfig:
    """Load configuration from file and environment, then apply CLI overrides."""
    try:
        if config:
            pipeline_config = load_pipeline_config(config)
        else:
            pipeline_config = PipelineConfig()
    except configparser.Error as e:
        # Catch errors like malformed lines, unknown keys, etc.
        console.print(f"[red]Error reading configuration file {config}: {escape(str(e))}[/red]")
        sys.exit(EXIT_USAGE)
    except (ValidationError, FileNotFoundError) as e:
        console.print(f"[red]Error loading configuration: {escape(str(e))}[/red]")
        sys.exit(EXIT_USAGE)

    # Override config with CLI options
    if threads:
        pipeline_config.threads = threads
    if log_level:
        pipeline_config.log_level = log_level
    if log_file:
        pipeline_config.log_file = log_file

    return pipeline_config


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
