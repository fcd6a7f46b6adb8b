import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError
import typer

from scanflow.agents import ExtractionAgent, RegionDetectionAgent
from scanflow.config import Settings
from scanflow.export import EXPORT_FORMATS, write_export
from scanflow.geometry import BoundingBox, Point, RegionCanvas
from scanflow.orchestrator import Batch, BatchOrchestrator, ConfigurationError
from scanflow.preprocess import DocumentPreprocessor
from scanflow.schema import FieldRegistry
from scanflow.sync import FirestoreStore, GoogleSheetsAppender
from scanflow.templates import MappingTemplate

load_dotenv()


app = typer.Typer(add_completion=False)


def _setup_logging(log_level: str, log_path: Optional[Path] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=handlers,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=2)


def build_orchestrator(settings: Settings) -> BatchOrchestrator:
    store = None
    if settings.persistence_enabled:
        store = FirestoreStore(
            settings.firestore_project,
            database=settings.firestore_database,
            collection=settings.firestore_collection,
            access_token=settings.firestore_access_token,
            timeout=settings.http_timeout,
        )
    target = settings.spreadsheet_target
    spreadsheet = (
        GoogleSheetsAppender(range_=settings.sheets_range, timeout=settings.http_timeout) if target else None
    )
    return BatchOrchestrator(
        extractor=ExtractionAgent(settings.extraction_model),
        detector=RegionDetectionAgent(settings.detection_model or settings.extraction_model),
        store=store,
        spreadsheet=spreadsheet,
        spreadsheet_target=target,
        preprocessor=DocumentPreprocessor(dpi=settings.render_dpi),
        on_update=lambda f: logging.getLogger(__name__).info(
            "%s: %s / %s", f.name, f.status.value, f.sync_status.value
        ),
    )


@app.command()
def run(
    files: List[Path],
    template: Optional[Path] = typer.Option(
        None, "--template", "-t", help="Mapping template JSON; auto-detects fields when omitted"
    ),
    hints: Optional[str] = typer.Option(None, "--hints", help="Extra instructions for the vision model"),
    output: Path = typer.Option(Path("results.xlsx"), "--output", "-o", help="Export file path"),
    fmt: str = typer.Option("xlsx", "--format", "-f", help=f"Export format ({', '.join(EXPORT_FORMATS)})"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
):
    """
    Extract the template's fields from every file and export the results.
    """
    settings = _load_settings()
    _setup_logging(log_level or settings.log_level, output.with_suffix(".log"))
    if fmt not in EXPORT_FORMATS:
        raise typer.BadParameter(f"Unsupported format: {fmt}", param_hint="--format")

    batch = Batch(ai_hints=hints)
    if template is not None:
        tmpl = MappingTemplate.load(template)
        batch.regions = tmpl.to_registry()
        batch.ai_hints = hints or tmpl.instructions or None

    orchestrator = build_orchestrator(settings)

    async def _run():
        await orchestrator.enqueue(batch, files)
        return await orchestrator.process_all(batch)

    try:
        report = asyncio.run(_run())
    except ConfigurationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)

    write_export(batch.files, list(batch.regions), output, fmt)
    for f in batch.files:
        typer.echo(f"{f.name}: {f.status.value} [{f.sync_status.value}] ({f.error or 'ok'})")
    typer.echo(
        f"Batch {report.batch_id}: {report.completed} completed, {report.errors} failed. Wrote {output}"
    )


@app.command()
def detect(
    file: Path,
    output: Path = typer.Option(Path("template.json"), "--output", "-o", help="Template file to write"),
    name: str = typer.Option("Detected layout", "--name", help="Template name"),
    hints: Optional[str] = typer.Option(None, "--hints", help="Fields to prioritize"),
    log_level: Optional[str] = typer.Option(None, "--log-level"),
):
    """
    Seed a mapping template by auto-detecting fields on one sample document.
    """
    settings = _load_settings()
    _setup_logging(log_level or settings.log_level)
    batch = Batch(ai_hints=hints)
    batch.enqueue([file])
    orchestrator = build_orchestrator(settings)
    regions = asyncio.run(orchestrator.auto_detect(batch))
    if not regions:
        typer.echo("No fields detected.", err=True)
        raise typer.Exit(code=1)
    MappingTemplate.from_registry(name, batch.regions, hints or "").save(output)
    for r in regions:
        typer.echo(f"{r.name}: x={r.x:.1f} y={r.y:.1f} w={r.width:.1f} h={r.height:.1f}")
    typer.echo(f"Wrote template to {output}")


def _parse_floats(value: str, count: int, option: str) -> List[float]:
    try:
        numbers = [float(v) for v in value.split(",")]
    except ValueError:
        raise typer.BadParameter(f"Expected {count} comma-separated numbers, got {value!r}", param_hint=option)
    if len(numbers) != count:
        raise typer.BadParameter(f"Expected {count} comma-separated numbers, got {value!r}", param_hint=option)
    return numbers


@app.command()
def draw(
    box: str = typer.Option(..., "--box", help="Displayed image size as W,H"),
    drags: List[str] = typer.Option(..., "--drag", help="Pointer drag as X0,Y0,X1,Y1 within the box"),
    names: List[str] = typer.Option([], "--name", help="Field names, in drag order"),
    output: Path = typer.Option(Path("template.json"), "--output", "-o"),
    template_name: str = typer.Option("Manual layout", "--template-name"),
    hints: str = typer.Option("", "--hints"),
):
    """
    Build a mapping template from scripted pointer drags over a displayed page.
    """
    width, height = _parse_floats(box, 2, "--box")
    canvas = RegionCanvas(FieldRegistry(), BoundingBox(0, 0, width, height))
    created = []
    for drag in drags:
        x0, y0, x1, y1 = _parse_floats(drag, 4, "--drag")
        canvas.begin_drag(Point(x0, y0))
        region = canvas.commit_drag(Point(x1, y1))
        if region is None:
            typer.echo(f"Ignoring drag {drag}: too small", err=True)
            continue
        created.append(region)
    for region, field_name in zip(created, names):
        canvas.rename_region(region.id, field_name)
    if not created:
        typer.echo("No fields drawn.", err=True)
        raise typer.Exit(code=1)
    MappingTemplate.from_registry(template_name, canvas.registry, hints).save(output)
    typer.echo(f"Wrote {len(created)} field(s) to {output}")


def main():
    app()


if __name__ == "__main__":
    main()
