"""CLI interface for the PDF-to-EPUB converter."""

from __future__ import annotations

import json
import logging
import os
import shutil

import click
from pydantic import TypeAdapter

from pdf_to_epub_converter.models import (
    AlignmentConfig,
    AudioSync,
    Chapter,
    ConversionConfig,
    JobStatus,
    WordTiming,
)

_CHAPTERS = TypeAdapter(list[Chapter])
_SYNCS = TypeAdapter(list[AudioSync])


def _check_dependencies() -> list[str]:
    """Check for missing dependencies and return a list of issues."""
    issues: list[str] = []

    if shutil.which("tesseract") is None:
        issues.append(
            "tesseract is not installed or not on PATH. "
            "Install it via your package manager:\n"
            "  macOS:   brew install tesseract\n"
            "  Ubuntu:  sudo apt-get install tesseract-ocr\n"
            "  Windows: download from https://github.com/tesseract-ocr/tesseract"
        )

    required_packages = {
        "fitz": "PyMuPDF",
        "pytesseract": "pytesseract",
        "PIL": "Pillow",
    }
    for module_name, pip_name in required_packages.items():
        try:
            __import__(module_name)
        except ImportError:
            issues.append(
                f"Python package '{pip_name}' is not installed. "
                f"Install it with: pip install {pip_name}"
            )

    return issues


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _load_structure(path: str):
    from pdf_to_epub_converter.structure import loads_structure

    if not os.path.exists(path):
        click.echo(f"Error: File not found: {path}", err=True)
        raise SystemExit(1)
    with open(path, encoding="utf-8") as f:
        try:
            return loads_structure(f.read())
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            raise SystemExit(1)


def _write_output(text: str, output_path: str | None) -> None:
    if output_path:
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(text)
        click.echo(f"Output written to {output_path}", err=True)
    else:
        click.echo(text)


def _echo_chapters(chapters: list[Chapter]) -> None:
    for chapter in chapters:
        confidence = f" ({chapter.confidence:.2f})" if chapter.confidence is not None else ""
        click.echo(f"  {chapter.start_page:>4}-{chapter.end_page:<4} {chapter.title}{confidence}")


@click.group()
def cli() -> None:
    """PDF-to-EPUB Converter: structure textbooks and align narration."""


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=False))
@click.option("-o", "--output", "output_path", default=None, type=click.Path(), help="Write the document structure JSON here. Writes to stdout if omitted.")
@click.option("--workdir", default=".pdf_to_epub", show_default=True, type=click.Path(), help="Storage directory for uploads and artifacts.")
@click.option("--stage-timeout", default=600.0, type=float, show_default=True, help="Wall-clock limit per stage, in seconds.")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable detailed progress logging.")
def convert(pdf_path: str, output_path: str | None, workdir: str, stage_timeout: float, verbose: bool) -> None:
    """Run the conversion pipeline on a PDF file.

    PDF_PATH is the path to the PDF file to convert.
    """
    _configure_logging(verbose)
    issues = _check_dependencies()
    if issues:
        for issue in issues:
            click.echo(issue, err=True)
        raise SystemExit(1)

    if not os.path.exists(pdf_path):
        click.echo(f"Error: File not found: {pdf_path}", err=True)
        raise SystemExit(1)

    from pdf_to_epub_converter.orchestrator import ConversionOrchestrator
    from pdf_to_epub_converter.repositories import DocumentRepository, JobRepository
    from pdf_to_epub_converter.storage import LocalFileStorage
    from pdf_to_epub_converter.structure import dumps_structure

    storage = LocalFileStorage(workdir)
    file_name = os.path.basename(pdf_path)
    with open(pdf_path, "rb") as f:
        storage.write_bytes(f"uploads/{file_name}", f.read())

    documents = DocumentRepository()
    record = documents.add(f"uploads/{file_name}", original_file_name=file_name)
    config = ConversionConfig.from_env()
    config.stage_timeout_seconds = stage_timeout

    orchestrator = ConversionOrchestrator(documents, JobRepository(), storage, config=config)
    try:
        job = orchestrator.start(record.id)
        job = orchestrator.wait(job.id)
        structure = orchestrator.get_structure(job.id)
    finally:
        orchestrator.shutdown()

    if structure is not None:
        _write_output(dumps_structure(structure, indent=2), output_path)

    step = job.current_step.value if job.current_step else "-"
    confidence = f"{job.confidence_score:.2f}" if job.confidence_score is not None else "-"
    click.echo(
        f"\nConversion summary:\n"
        f"  Status:     {job.status.value}\n"
        f"  Stage:      {step}\n"
        f"  Progress:   {job.progress_percentage}%\n"
        f"  Confidence: {confidence}",
        err=True,
    )
    if job.status == JobStatus.REVIEW_REQUIRED:
        click.echo(f"  Review:     {job.review_reason}", err=True)
    if job.status == JobStatus.FAILED:
        click.echo(f"Error: {job.error_message}", err=True)
        raise SystemExit(1)


@cli.group()
def chapters() -> None:
    """Detect, validate and generate chapter configurations."""


@chapters.command("detect")
@click.argument("structure_path", type=click.Path(exists=False))
@click.option("--ai", "use_ai", is_flag=True, default=False, help="Merge suggestions from the embedding topic classifier.")
@click.option("--min-similarity", default=0.35, type=float, show_default=True, help="Page similarity below which the classifier suggests a new chapter.")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable detailed progress logging.")
def detect_chapters(structure_path: str, use_ai: bool, min_similarity: float, verbose: bool) -> None:
    """Detect chapter boundaries in a document structure JSON file."""
    _configure_logging(verbose)
    from pdf_to_epub_converter.chapter_detector import ChapterDetector

    structure = _load_structure(structure_path)
    classifier = None
    if use_ai:
        from pdf_to_epub_converter.topic_classifier import EmbeddingTopicClassifier

        classifier = EmbeddingTopicClassifier(min_similarity=min_similarity)

    result = ChapterDetector(classifier=classifier).detect(structure, use_ai=use_ai)
    click.echo(f"Detected {len(result.chapters)} chapters ({result.method}):")
    _echo_chapters(result.chapters)
    for note in result.review_notes:
        click.echo(f"  - {note}", err=True)


@chapters.command("validate")
@click.argument("config_path", type=click.Path(exists=False))
@click.option("--total-pages", required=True, type=int, help="Number of pages in the document.")
def validate_config(config_path: str, total_pages: int) -> None:
    """Validate a chapter configuration JSON file.

    The file holds a list of chapters, each with a title and either
    "pageRange", "pages" or "startPage"/"endPage".
    """
    from pdf_to_epub_converter.chapter_config import chapter_from_mapping, validate_chapters
    from pdf_to_epub_converter.errors import ChapterValidationError

    if not os.path.exists(config_path):
        click.echo(f"Error: File not found: {config_path}", err=True)
        raise SystemExit(1)
    with open(config_path, encoding="utf-8") as f:
        try:
            entries = json.load(f)
        except json.JSONDecodeError as exc:
            click.echo(f"Error: {config_path} is not valid JSON: {exc}", err=True)
            raise SystemExit(1)
    if isinstance(entries, dict):
        entries = entries.get("chapters", [])

    try:
        parsed = [chapter_from_mapping(entry) for entry in entries]
    except ChapterValidationError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)

    result = validate_chapters(parsed, total_pages)
    click.echo(f"Valid: {'yes' if result.is_valid else 'no'}")
    click.echo(f"Coverage: {result.coverage:.1f}%")
    for error in result.errors:
        click.echo(f"  error: {error}")
    for warning in result.warnings:
        click.echo(f"  warning: {warning}")
    if not result.is_valid:
        raise SystemExit(1)


@chapters.command("auto")
@click.option("--total-pages", required=True, type=int, help="Number of pages in the document.")
@click.option("--pages-per-chapter", default=10, type=int, show_default=True, help="Pages in each generated chapter.")
def auto_chapters(total_pages: int, pages_per_chapter: int) -> None:
    """Generate equal-size chapters and print them as JSON."""
    from pdf_to_epub_converter.chapter_config import auto_generate_chapters

    try:
        generated = auto_generate_chapters(total_pages, pages_per_chapter)
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)
    click.echo(_CHAPTERS.dump_json(generated, indent=2).decode("utf-8"))


@cli.command()
@click.argument("structure_path", type=click.Path(exists=False))
@click.argument("audio_path", type=click.Path(exists=False))
@click.option("--timings", "timings_path", default=None, type=click.Path(), help='JSON list of {"word", "start"} word timings.')
@click.option("-o", "--output", "output_path", default=None, type=click.Path(), help="Output file path. Writes to stdout if omitted.")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable detailed progress logging.")
def align(structure_path: str, audio_path: str, timings_path: str | None, output_path: str | None, verbose: bool) -> None:
    """Align narration audio to the text blocks of a document structure.

    STRUCTURE_PATH is a structure JSON file written by ``convert``.
    AUDIO_PATH is the narration audio file.
    """
    _configure_logging(verbose)
    from pdf_to_epub_converter.alignment import NarrationAligner

    structure = _load_structure(structure_path)
    if not os.path.exists(audio_path):
        click.echo(f"Error: File not found: {audio_path}", err=True)
        raise SystemExit(1)

    timings = None
    if timings_path:
        with open(timings_path, encoding="utf-8") as f:
            timings = [
                WordTiming(word=item["word"], start_time=float(item.get("start", item.get("start_time", 0.0))))
                for item in json.load(f)
            ]

    syncs = NarrationAligner(AlignmentConfig()).align(structure, audio_path, timings)
    _write_output(_SYNCS.dump_json(syncs, indent=2).decode("utf-8"), output_path)
    click.echo(f"Aligned {len(syncs)} segments", err=True)


@cli.command()
@click.argument("structure_path", type=click.Path(exists=False))
@click.option("--wpm", default=200.0, type=float, show_default=True, help="Narration speed in words per minute.")
@click.option("-o", "--output", "output_path", default=None, type=click.Path(), help="Output file path. Writes to stdout if omitted.")
def plan(structure_path: str, wpm: float, output_path: str | None) -> None:
    """Estimate narration timing for a document structure without audio."""
    from pdf_to_epub_converter.alignment import plan_narration

    structure = _load_structure(structure_path)
    syncs = plan_narration(structure, AlignmentConfig(words_per_minute=wpm))
    _write_output(_SYNCS.dump_json(syncs, indent=2).decode("utf-8"), output_path)
    total = syncs[-1].end_time if syncs else 0.0
    click.echo(f"Planned {len(syncs)} segments, {total:.1f}s total", err=True)
