"""Validation, auto-generation and storage of manual chapter configurations."""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import TypeAdapter

from pdf_to_epub_converter.errors import ChapterValidationError
from pdf_to_epub_converter.models import (
    Chapter,
    ChapterConfiguration,
    DocumentStructure,
    PageStructure,
    ValidationResult,
)
from pdf_to_epub_converter.storage import Storage

logger = logging.getLogger(__name__)

_PAGE_RANGE_RE = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d+)\s*)?$")
_CONFIG_NAME_RE = re.compile(r"document_(\d+)\.json$")
_CONFIGURATION = TypeAdapter(ChapterConfiguration)


def validate_chapters(chapters: list[Chapter], total_pages: int) -> ValidationResult:
    """Validate chapters against a document's page count.

    Overlaps between adjacent chapters, chapters outside ``[1, total_pages]``,
    inverted ranges and missing titles are errors. Gaps between adjacent
    chapters and uncovered leading or trailing pages are warnings.

    Args:
        chapters: Chapters in any order.
        total_pages: Number of pages in the document.

    Returns:
        ValidationResult with ``coverage`` as the percentage of distinct pages
        covered by at least one chapter. It is unrounded, so it reaches
        100 only when every page is covered.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if total_pages <= 0:
        return ValidationResult(
            is_valid=False, coverage=0.0, errors=[f"Total pages must be positive, got {total_pages}"]
        )
    if not chapters:
        return ValidationResult(is_valid=False, coverage=0.0, errors=["No chapters defined"])

    ordered = sorted(chapters, key=lambda c: (c.start_page, c.end_page))

    for chapter in ordered:
        label = chapter.title.strip() or f"pages {chapter.start_page}-{chapter.end_page}"
        if not chapter.title.strip():
            errors.append(f"Chapter starting on page {chapter.start_page} has no title")
        if chapter.start_page > chapter.end_page:
            errors.append(
                f"Chapter '{label}' starts after it ends ({chapter.start_page} > {chapter.end_page})"
            )
        if chapter.start_page < 1 or chapter.end_page > total_pages:
            errors.append(
                f"Chapter '{label}' ({chapter.start_page}-{chapter.end_page}) "
                f"is outside pages 1-{total_pages}"
            )

    for prev, nxt in zip(ordered, ordered[1:]):
        if nxt.start_page <= prev.end_page:
            errors.append(
                f"Chapters '{prev.title}' and '{nxt.title}' overlap on pages "
                f"{nxt.start_page}-{min(prev.end_page, nxt.end_page)}"
            )
        elif nxt.start_page > prev.end_page + 1:
            warnings.append(
                f"Gap between '{prev.title}' and '{nxt.title}': pages "
                f"{prev.end_page + 1}-{nxt.start_page - 1} are not in any chapter"
            )

    covered: set[int] = set()
    for chapter in ordered:
        covered.update(range(max(1, chapter.start_page), min(total_pages, chapter.end_page) + 1))

    if ordered[0].start_page > 1:
        warnings.append(f"Pages 1-{min(ordered[0].start_page - 1, total_pages)} come before the first chapter")
    last_end = max(c.end_page for c in ordered)
    if last_end < total_pages:
        warnings.append(f"Pages {max(last_end + 1, 1)}-{total_pages} come after the last chapter")

    coverage = 100.0 * len(covered) / total_pages
    return ValidationResult(is_valid=not errors, coverage=coverage, errors=errors, warnings=warnings)


def auto_generate_chapters(total_pages: int, pages_per_chapter: int = 10) -> list[Chapter]:
    """Partition pages into consecutive equal windows titled "Chapter N".

    The last window holds whatever pages remain.

    Raises:
        ValueError: If either argument is not positive.
    """
    if total_pages <= 0:
        raise ValueError(f"total_pages must be positive, got {total_pages}")
    if pages_per_chapter <= 0:
        raise ValueError(f"pages_per_chapter must be positive, got {pages_per_chapter}")

    return [
        Chapter(
            title=f"Chapter {number}",
            start_page=start,
            end_page=min(start + pages_per_chapter - 1, total_pages),
            reason="auto-generated",
            is_manual=True,
        )
        for number, start in enumerate(range(1, total_pages + 1, pages_per_chapter), start=1)
    ]


def chapter_from_mapping(data: dict[str, Any]) -> Chapter:
    """Build a chapter from user input.

    Page bounds may be given as ``pageRange`` ("3-9" or "4"), as a ``pages``
    list of contiguous page numbers, or as ``startPage``/``endPage``.

    Raises:
        ChapterValidationError: If the page bounds cannot be read.
    """
    title = str(data.get("title") or "").strip()
    if data.get("pageRange") is not None:
        match = _PAGE_RANGE_RE.match(str(data["pageRange"]))
        if not match:
            raise ChapterValidationError([f"Invalid page range '{data['pageRange']}'"])
        start = int(match.group(1))
        end = int(match.group(2) or start)
    elif data.get("pages"):
        pages = sorted({int(p) for p in data["pages"]})
        if pages != list(range(pages[0], pages[-1] + 1)):
            raise ChapterValidationError([f"Pages of chapter '{title}' are not contiguous"])
        start, end = pages[0], pages[-1]
    elif data.get("startPage") is not None:
        start = int(data["startPage"])
        end = int(data.get("endPage", start))
    else:
        raise ChapterValidationError([f"Chapter '{title}' has no page range"])
    return Chapter(title=title, start_page=start, end_page=end, reason="manual", is_manual=True)


def apply_configuration(
    structure: DocumentStructure, chapters: list[Chapter]
) -> list[tuple[Chapter, list[PageStructure]]]:
    """Group the pages of *structure* under the chapters that contain them.

    Args:
        structure: The converted document.
        chapters: A chapter configuration, in any order.

    Returns:
        ``(chapter, pages)`` pairs ordered by start page. Pages missing from
        the structure (e.g. the second half of a two-page spread) are skipped.

    Raises:
        ChapterValidationError: If the chapters do not validate against the
            document's last page number.
    """
    total_pages = max((p.page_number for p in structure.pages), default=0)
    result = validate_chapters(chapters, total_pages)
    if not result.is_valid:
        raise ChapterValidationError(result.errors)

    pages = sorted(structure.pages, key=lambda p: p.page_number)
    return [
        (chapter, [p for p in pages if chapter.start_page <= p.page_number <= chapter.end_page])
        for chapter in sorted(chapters, key=lambda c: c.start_page)
    ]


class ChapterConfigStore:
    """Stores validated chapter configurations as JSON through a ``Storage``."""

    def __init__(self, storage: Storage, prefix: str = "chapters") -> None:
        self.storage = storage
        self.prefix = prefix

    def save(self, document_id: int, chapters: list[Chapter], total_pages: int) -> ChapterConfiguration:
        """Validate and persist a configuration.

        Raises:
            ChapterValidationError: If validation reports errors. Nothing is
                written in that case.
        """
        result = validate_chapters(chapters, total_pages)
        if not result.is_valid:
            raise ChapterValidationError(result.errors)
        for warning in result.warnings:
            logger.warning("Document %d chapters: %s", document_id, warning)

        ordered = sorted(chapters, key=lambda c: c.start_page)
        configuration = ChapterConfiguration(document_id=document_id, chapters=ordered, total_pages=total_pages)
        self.storage.write_bytes(self._path(document_id), _CONFIGURATION.dump_json(configuration, indent=2))
        return configuration

    def load(self, document_id: int) -> ChapterConfiguration | None:
        path = self._path(document_id)
        if not self.storage.exists(path):
            return None
        return _CONFIGURATION.validate_json(self.storage.read_bytes(path))

    def delete(self, document_id: int) -> bool:
        path = self._path(document_id)
        if not self.storage.exists(path):
            return False
        self.storage.delete(path)
        return True

    def list_documents(self) -> list[int]:
        """Return the ids of documents that have a stored configuration."""
        ids = []
        for path in self.storage.list(self.prefix):
            match = _CONFIG_NAME_RE.search(path)
            if match:
                ids.append(int(match.group(1)))
        return sorted(ids)

    def _path(self, document_id: int) -> str:
        return f"{self.prefix}/document_{document_id}.json"
