"""CLI for homework page analysis."""
import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table
from tqdm import tqdm

from agents.backends import build_extractor
from agents.errors import HomeworkAnalysisError
from agents.orchestrator import analyze_page, analyze_pdf
from archive.store import ArchiveStore
from config import PipelineConfig, load_config
from schemas.homework import AnalysisReport
from segmentation.coordinates import load_ocr_result
from segmentation.segmenter import segment_page

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)
console = Console()


def parse_pages(spec: Optional[str]) -> Optional[List[int]]:
    """Parse a page selection like "1,3-5" into page numbers."""
    if not spec:
        return None
    pages = set()
    for part in spec.split(","):
        part = part.strip()
        try:
            if "-" in part:
                first, last = (int(p) for p in part.split("-", 1))
                pages.update(range(first, last + 1))
            else:
                pages.add(int(part))
        except ValueError:
            raise click.BadParameter(f"Invalid page selection: {part!r}")
    return sorted(pages)


def build_config(config_path: Optional[Path], **overrides) -> PipelineConfig:
    """Load the pipeline config and apply CLI overrides; exit on invalid settings."""
    try:
        config = load_config(config_path)
        updates = {key: value for key, value in overrides.items() if value is not None}
        if not updates:
            return config
        return PipelineConfig.model_validate({**config.model_dump(), **updates})
    except (ValidationError, yaml.YAMLError) as e:
        click.echo(f"Error: invalid configuration: {e}", err=True)
        sys.exit(1)


def check_backend(config: PipelineConfig):
    """Exit early when the backend is missing and OCR-only fallback is off."""
    extractor = build_extractor(config)
    if extractor.is_available() or config.ocr_only_fallback:
        return
    click.echo(f"Error: extraction backend '{config.backend}' is not available.", err=True)
    if config.backend == "claude-cli":
        click.echo("Please install Claude Code: https://claude.ai/download", err=True)
    else:
        click.echo("Set ANTHROPIC_API_KEY to use the Anthropic backend.", err=True)
    sys.exit(1)


def show_report(report: AnalysisReport, verbose: bool):
    result, metadata = report.result, report.metadata
    click.echo(f"  Method: {metadata.method.value} via {metadata.service_used}")
    if metadata.routing is not None:
        routing = metadata.routing
        click.echo(
            f"  Routing: {routing.subject_detail or routing.subject.value} -> {routing.agent_used}"
            f"{' (fallback)' if routing.fallback else ''}"
        )
    click.echo(f"  Result: {result.summary()}")
    for unit in result.lessons:
        click.echo(f"    [lesson]   {unit.topic or '-':<20} Y {unit.start_y:.3f}-{unit.end_y:.3f}")
    for unit in result.exercises:
        kind = unit.input_type.value if unit.input_type else "-"
        click.echo(f"    [exercise] {unit.number or '-':<20} Y {unit.start_y:.3f}-{unit.end_y:.3f} ({kind})")

    if metadata.failures:
        click.echo(f"\n  Skipped segments ({len(metadata.failures)}):")
        for failure in metadata.failures:
            click.echo(f"    - segment {failure.segment_index}: {failure.kind.value}: {failure.message[:80]}")

    if verbose and metadata.timing:
        click.echo("\n  Timing:")
        for stage, seconds in metadata.timing.items():
            click.echo(f"    {stage:<30} {seconds:>7.2f}s")


@click.group()
def cli():
    """Homework page segmentation and extraction CLI."""
    pass


@cli.command()
@click.argument("ocr_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None,
              help="YAML pipeline configuration")
@click.option("--gap-threshold", type=float, default=None, help="Whitespace fraction that splits segments")
@click.option("--min-height", type=float, default=None, help="Minimum segment height before merging")
def segment(ocr_json: Path, config_path: Optional[Path], gap_threshold: Optional[float], min_height: Optional[float]):
    """
    Print the segments of an OCR JSON file without calling any model.

    OCR_JSON holds {"fullText", "blocks", "origin"}.
    """
    try:
        config = build_config(config_path, gap_threshold=gap_threshold, min_segment_height=min_height)
        ocr = load_ocr_result(ocr_json)
    except HomeworkAnalysisError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    segments = segment_page(ocr.blocks, config.gap_threshold, config.min_segment_height)
    click.echo(f"{len(ocr.blocks)} blocks -> {len(segments)} segments")
    for seg in segments:
        preview = seg.text.replace("\n", " ")[:60]
        click.echo(f"  [{seg.index}] Y {seg.start_y:.3f}-{seg.end_y:.3f} ({len(seg.ocr_blocks)} blocks) {preview}")


@cli.command()
@click.argument("ocr_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--image", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None,
              help="Page image sent to the model alongside the OCR text")
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None,
              help="YAML pipeline configuration")
@click.option("--mode", type=click.Choice(["segmented", "agentic"]), default=None, help="Extraction mode")
@click.option("--backend", type=click.Choice(["anthropic", "claude-cli"]), default=None, help="Model backend")
@click.option("--context", "additional_context", type=str, default=None, help="Assignment description")
@click.option("--output", "-o", type=click.Path(path_type=Path), default=None,
              help="Write the AnalysisReport JSON here")
@click.option("--store", "source_id", type=str, default=None, help="Save the report in the archive store under this id")
@click.option("--verbose", "-v", is_flag=True, help="Show timing details")
def analyze(
    ocr_json: Path,
    image: Optional[Path],
    config_path: Optional[Path],
    mode: Optional[str],
    backend: Optional[str],
    additional_context: Optional[str],
    output: Optional[Path],
    source_id: Optional[str],
    verbose: bool,
):
    """
    Analyze one homework page into lessons and exercises.

    OCR_JSON is the OCR output for the page.
    """
    config = build_config(config_path, mode=mode, backend=backend)
    check_backend(config)

    def on_progress(current: int, total: int):
        click.echo(f"  segment {current}/{total} done")

    try:
        ocr = load_ocr_result(ocr_json)
        image_bytes = image.read_bytes() if image else None
        click.echo(f"Analyzing {ocr_json.name} ({config.mode}, {config.backend})...")
        report = analyze_page(
            ocr, image_bytes, config, progress=on_progress, additional_context=additional_context
        )
    except HomeworkAnalysisError as e:
        click.echo(f"Error [{e.kind.value}]: {e}", err=True)
        if e.raw_excerpt and verbose:
            click.echo(f"Raw output: {e.raw_excerpt}", err=True)
        sys.exit(1)

    show_report(report, verbose)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(report.model_dump_json(by_alias=True, indent=2))
        click.echo(f"\nSaved report to: {output}")
    if source_id:
        path = ArchiveStore(config.store_dir).save_report(source_id, report)
        click.echo(f"Stored as {source_id}: {path}")


@cli.command("analyze-pdf")
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--pages", type=str, default=None, help="Pages to analyze, e.g. 1,3-5 (default: all)")
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), default=None,
              help="YAML pipeline configuration")
@click.option("--mode", type=click.Choice(["segmented", "agentic"]), default=None, help="Extraction mode")
@click.option("--source-id", type=str, default=None, help="Archive id (default: PDF file name)")
@click.option("--carry-over", is_flag=True, help="Keep stored answers that still match re-analyzed exercises")
def analyze_pdf_cmd(
    pdf_path: Path,
    pages: Optional[str],
    config_path: Optional[Path],
    mode: Optional[str],
    source_id: Optional[str],
    carry_over: bool,
):
    """
    Analyze pages of a PDF and update its page archive.

    Re-analyzing a page replaces only that page's entry.
    """
    config = build_config(config_path, mode=mode)
    check_backend(config)
    page_list = parse_pages(pages)
    source_id = source_id or pdf_path.stem
    store = ArchiveStore(config.store_dir)
    archive = store.load_archive(source_id)

    try:
        with tqdm(total=len(page_list) if page_list else None, desc="Analyzing pages") as bar:
            archive, failures = analyze_pdf(
                pdf_path,
                config=config,
                pages=page_list,
                archive=archive,
                carry_over_answers=carry_over,
                on_page=lambda _page: bar.update(1),
            )
    except HomeworkAnalysisError as e:
        click.echo(f"Error [{e.kind.value}]: {e}", err=True)
        sys.exit(1)

    archive.source_id = source_id
    path = store.save_archive(archive)
    click.echo(f"Analyzed pages: {archive.analyzed_pages}")
    click.echo(f"Archive saved to: {path}")
    if failures:
        click.echo(f"\nFailed pages ({len(failures)}):", err=True)
        for page_number, error in sorted(failures.items()):
            click.echo(f"  page {page_number}: [{error.kind.value}] {error}", err=True)
        sys.exit(1)


@cli.command("show-archive")
@click.argument("source_id")
@click.option("--store-dir", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Archive store directory (default: from config)")
def show_archive(source_id: str, store_dir: Optional[Path]):
    """Print stored results for SOURCE_ID."""
    store = ArchiveStore(store_dir or build_config(None).store_dir)
    archive = store.load_archive(source_id)
    if archive is not None:
        table = Table(title=f"{source_id}: {len(archive.analyzed_pages)} analyzed pages")
        table.add_column("Page", justify="right", style="cyan")
        table.add_column("Lessons", justify="right")
        table.add_column("Exercises", justify="right")
        table.add_column("Answers", justify="right")
        table.add_column("Method")
        table.add_column("Analyzed")
        for page_number in archive.analyzed_pages:
            analysis = archive.page_analyses[page_number]
            result = analysis.analysis_result
            table.add_row(
                str(page_number),
                str(len(result.lessons)),
                str(len(result.exercises)),
                str(len(analysis.exercise_answers)),
                analysis.analysis_method.value,
                f"{analysis.analyzed_at:%Y-%m-%d %H:%M}",
            )
        console.print(table)
        return

    report = store.load_report(source_id)
    if report is None:
        click.echo(f"Error: nothing stored for {source_id}", err=True)
        sys.exit(1)
    click.echo(f"{source_id}:")
    show_report(report, verbose=False)


if __name__ == "__main__":
    cli()
