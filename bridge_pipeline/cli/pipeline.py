"""CLI commands for running and inspecting the ingestion pipeline."""

import asyncio
import json
import sys
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from ..models.sources import LoaderType, PipelinePhase, Priority, SourceType
from ..pipelines.discovery.direct_urls import DirectUrlDiscoverer
from ..pipelines.filters import FilterCriteria
from ..pipelines.orchestrator import PipelineConfigurationError, PipelineOrchestrator
from ..pipelines.packaging.packager import VersionPackager
from ..pipelines.registry import SnapshotCorruptedError, SourceRegistry
from ..pipelines.validation import BlockingPipelineError

EXIT_CONFIGURATION_ERROR = 1
EXIT_BLOCKED = 2


def _build_orchestrator(
    state_file: Optional[str] = None,
    sources_file: Optional[str] = None,
    max_concurrent: Optional[int] = None,
    package_version: Optional[str] = None,
) -> PipelineOrchestrator:
    kwargs: Dict[str, Any] = {}
    if state_file:
        kwargs["registry"] = SourceRegistry(state_path=state_file)
    if sources_file:
        kwargs["discoverer"] = DirectUrlDiscoverer(sources_file=sources_file)
    if package_version:
        kwargs["packager"] = VersionPackager(version=package_version)
    if max_concurrent:
        kwargs["collection_concurrency"] = max_concurrent
        kwargs["distillation_concurrency"] = max_concurrent
    return PipelineOrchestrator(**kwargs)


def _criteria(source_type, loader_type, priority, min_relevance) -> Optional[FilterCriteria]:
    if not any([source_type, loader_type, priority, min_relevance is not None]):
        return None
    return FilterCriteria(
        source_type=SourceType(source_type) if source_type else None,
        loader_type=LoaderType(loader_type) if loader_type else None,
        priority=Priority(priority) if priority else None,
        min_relevance=min_relevance,
    )


def _execute(label: str, run):
    """Run an async command body, mapping pipeline errors to exit codes."""
    try:
        return asyncio.run(run())
    except BlockingPipelineError as e:
        click.echo(e.render(), err=True)
        sys.exit(EXIT_BLOCKED)
    except (PipelineConfigurationError, SnapshotCorruptedError) as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(EXIT_CONFIGURATION_ERROR)
    except Exception as e:
        click.echo(f"❌ {label} failed: {e}")
        raise


def _echo_summary(summary: Dict[str, Any]) -> None:
    phase = summary["phase"]
    icon = "✅" if not summary["failed"] else "⚠️ "
    click.echo(
        f"{icon} {phase}: {summary['succeeded']} succeeded, {summary['failed']} failed "
        f"({summary['considered']} considered)"
    )
    for url in summary.get("failed_urls", [])[:5]:
        click.echo(f"   ❌ {url}")
    for warning in summary.get("warnings", []):
        click.echo(f"   ⚠️  {warning}")


def state_option(func):
    return click.option("--state-file", help="Pipeline snapshot (defaults to STATE_FILE)")(func)


def run_options(func):
    func = click.option(
        "--force-proceed",
        is_flag=True,
        help="Continue despite failed sources (not recommended)",
    )(func)
    func = click.option(
        "--resume", is_flag=True, help="Also retry sources that failed in this phase"
    )(func)
    return func


def filter_options(func):
    func = click.option("--min-relevance", type=float, help="Minimum relevance score (0-1)")(func)
    func = click.option("--priority", type=click.Choice([p.value for p in Priority]))(func)
    func = click.option("--loader-type", type=click.Choice([t.value for t in LoaderType]))(func)
    func = click.option("--source-type", type=click.Choice([t.value for t in SourceType]))(func)
    return func


@click.group()
def pipeline():
    """Ingestion pipeline commands: discover, collect, distill, package, bundle."""
    pass


@pipeline.command()
@state_option
@click.option("--sources-file", type=click.Path(exists=True), help="JSON list of source URLs")
@click.option("--force-proceed", is_flag=True, help="Continue despite validation failures")
def discover(state_file: str, sources_file: str, force_proceed: bool):
    """Discover sources and add them to the pipeline state."""
    click.echo("🔍 Starting discovery...")

    async def _run():
        orchestrator = _build_orchestrator(state_file, sources_file=sources_file)
        summary = await orchestrator.run_discovery(force_proceed=force_proceed)
        _echo_summary(summary)
        click.echo(f"   New sources: {summary['details'].get('new_sources', 0)}")
        return summary

    _execute("Discovery", _run)


@pipeline.command()
@state_option
@filter_options
@run_options
@click.option("--max-concurrent", type=int, help="Maximum simultaneous downloads")
def collect(
    state_file, source_type, loader_type, priority, min_relevance, resume, force_proceed,
    max_concurrent,
):
    """Download content for discovered sources."""
    click.echo("📥 Starting collection...")
    criteria = _criteria(source_type, loader_type, priority, min_relevance)

    async def _run():
        orchestrator = _build_orchestrator(state_file, max_concurrent=max_concurrent)
        summary = await orchestrator.run_collection(
            criteria=criteria, resume=resume, force_proceed=force_proceed
        )
        _echo_summary(summary)
        return summary

    _execute("Collection", _run)


@pipeline.command()
@state_option
@filter_options
@run_options
@click.option("--max-concurrent", type=int, help="Maximum simultaneous model calls")
def distill(
    state_file, source_type, loader_type, priority, min_relevance, resume, force_proceed,
    max_concurrent,
):
    """Distill collected content into structured porting data."""
    click.echo("🧪 Starting distillation...")
    criteria = _criteria(source_type, loader_type, priority, min_relevance)

    async def _run():
        orchestrator = _build_orchestrator(state_file, max_concurrent=max_concurrent)
        summary = await orchestrator.run_distillation(
            criteria=criteria, resume=resume, force_proceed=force_proceed
        )
        _echo_summary(summary)
        out_of_band = summary["details"].get("out_of_band", [])
        if out_of_band:
            click.echo(f"   Skipped (already distilled or marked to skip): {len(out_of_band)}")
        return summary

    _execute("Distillation", _run)


@pipeline.command()
@state_option
@run_options
@click.option("--version", "package_version", help="Package version (defaults to YYYY.MM.DD)")
def package(state_file: str, resume: bool, force_proceed: bool, package_version: str):
    """Package distilled sources into a versioned package."""
    click.echo("📦 Starting packaging...")

    async def _run():
        orchestrator = _build_orchestrator(state_file, package_version=package_version)
        summary = await orchestrator.run_packaging(resume=resume, force_proceed=force_proceed)
        _echo_summary(summary)
        if summary["details"].get("package_path"):
            click.echo(f"   Package: {summary['details']['package_path']}")
        return summary

    _execute("Packaging", _run)


@pipeline.command()
@state_option
@run_options
def bundle(state_file: str, resume: bool, force_proceed: bool):
    """Archive the packaged sources into the distributable bundle."""
    click.echo("🗜️  Starting bundling...")

    async def _run():
        orchestrator = _build_orchestrator(state_file)
        summary = await orchestrator.run_bundling(resume=resume, force_proceed=force_proceed)
        _echo_summary(summary)
        if summary["details"].get("archive_path"):
            click.echo(f"   Bundle: {summary['details']['archive_path']}")
        return summary

    _execute("Bundling", _run)


@pipeline.command("run")
@state_option
@filter_options
@run_options
@click.option("--sources-file", type=click.Path(exists=True), help="JSON list of source URLs")
@click.option("--skip-discovery", is_flag=True, help="Skip the discovery phase")
@click.option("--skip-collection", is_flag=True, help="Skip the collection phase")
@click.option("--skip-distillation", is_flag=True, help="Skip the distillation phase")
@click.option("--skip-packaging", is_flag=True, help="Skip the packaging phase")
@click.option("--skip-bundling", is_flag=True, help="Skip the bundling phase")
def run_all(
    state_file,
    source_type,
    loader_type,
    priority,
    min_relevance,
    resume,
    force_proceed,
    sources_file,
    skip_discovery,
    skip_collection,
    skip_distillation,
    skip_packaging,
    skip_bundling,
):
    """Run every phase in order: discovery through bundling."""
    click.echo("🚀 Starting full pipeline...")
    criteria = _criteria(source_type, loader_type, priority, min_relevance)
    skip_flags = {
        PipelinePhase.DISCOVERY: skip_discovery,
        PipelinePhase.COLLECTION: skip_collection,
        PipelinePhase.DISTILLATION: skip_distillation,
        PipelinePhase.PACKAGING: skip_packaging,
        PipelinePhase.BUNDLING: skip_bundling,
    }
    skip_phases = [phase for phase, skipped in skip_flags.items() if skipped]

    async def _run():
        orchestrator = _build_orchestrator(state_file, sources_file=sources_file)
        results = await orchestrator.run_full_pipeline(
            skip_phases=skip_phases,
            force_proceed=force_proceed,
            criteria=criteria,
            resume=resume,
        )
        for summary in results["phases"].values():
            _echo_summary(summary)
        for phase in results["skipped_phases"]:
            click.echo(f"⏭️  {phase}: skipped")
        click.echo(f"✅ Full pipeline completed: {results['completion_percentage']}% bundled")
        return results

    _execute("Pipeline", _run)


@pipeline.command()
@state_option
@click.option("--json", "as_json", is_flag=True, help="Output JSON")
def status(state_file: str, as_json: bool):
    """Show the current pipeline state."""

    async def _run():
        orchestrator = _build_orchestrator(state_file)
        status_info = orchestrator.get_pipeline_status()

        if as_json:
            click.echo(json.dumps(status_info, indent=2))
            return status_info

        console = Console()
        table = Table(title="Pipeline Status")
        table.add_column("Status", no_wrap=True)
        table.add_column("Sources", justify="right")
        for name, count in status_info["phase_counts"].items():
            table.add_row(name, str(count))
        console.print(table)

        click.echo(f"Total sources: {status_info['total_sources']}")
        click.echo(f"Completion: {status_info['completion_percentage']}%")
        if status_info.get("last_updated"):
            click.echo(f"Last updated: {status_info['last_updated']}")

        if status_info["failed_sources"]:
            failed = Table(title="Failed Sources")
            failed.add_column("URL")
            failed.add_column("Phase", no_wrap=True)
            failed.add_column("Error")
            for entry in status_info["failed_sources"]:
                failed.add_row(
                    entry["url"], entry["phase"] or "-", f"{entry['code']}: {entry['message']}"
                )
            console.print(failed)

        for warning in status_info.get("warnings", [])[-5:]:
            click.echo(f"⚠️  {warning}")
        return status_info

    _execute("Status", _run)
