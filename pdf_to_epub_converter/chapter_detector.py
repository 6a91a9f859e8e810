"""Chapter boundary detection over a document structure.

Two strategies are available: a heuristic scan for chapter markers and
major headings, and an AI-assisted mode that merges the suggestions of an
external classifier into the heuristic result. The AI mode degrades to the
heuristic result whenever the classifier is missing or fails.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
import statistics
from typing import Any, Callable, Protocol

from pdf_to_epub_converter.models import (
    BlockType,
    Chapter,
    ChapterDetectionConfig,
    ChapterDetectionResult,
    DocumentStructure,
    PageStructure,
    TextBlock,
)

logger = logging.getLogger(__name__)

_CHAPTER_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^chapter\s+\d+",
        r"^chapter\s+[ivxlcdm]+\b",
        r"^part\s+(\d+|[ivxlcdm]+\b)",
        r"^section\s+\d+",
        r"^\d+\.\s+\S",
        r"^[ivxlcdm]+\.\s+\S",
        r"^(introduction|conclusion|prologue|epilogue|preface|foreword)\s*$",
        r"^appendix\b",
        r"^(bibliography|references|index|glossary)\s*$",
    )
]


class ChapterClassifier(Protocol):
    """External collaborator that suggests chapters from page summaries."""

    def suggest_chapters(self, pages: list[dict[str, Any]]) -> list[Chapter]:
        ...


def matches_chapter_pattern(text: str) -> bool:
    """Return True if the first line of *text* looks like a chapter marker."""
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    return any(pattern.search(first_line) for pattern in _CHAPTER_PATTERNS)


def summarize_pages_for_classification(
    structure: DocumentStructure, config: ChapterDetectionConfig | None = None
) -> list[dict[str, Any]]:
    """Build the compact page payload handed to a chapter classifier.

    Args:
        structure: The document to summarize.
        config: Limits on pages, blocks per page and characters per block.

    Returns:
        A list of ``{"page": n, "blocks": [{"text", "type", "level", "font_size"}]}``.
    """
    config = config or ChapterDetectionConfig()
    summary: list[dict[str, Any]] = []
    for page in structure.pages[: config.summary_max_pages]:
        blocks = []
        for block in _ordered_text_blocks(page)[: config.summary_blocks_per_page]:
            blocks.append(
                {
                    "text": block.text[: config.summary_chars_per_block],
                    "type": block.block_type.value,
                    "level": block.level,
                    "font_size": block.font_size,
                }
            )
        summary.append({"page": page.page_number, "blocks": blocks})
    return summary


def parse_classifier_response(text: str) -> list[Chapter]:
    """Parse a JSON chapter list, tolerating Markdown code fences.

    Accepts either a bare list or an object with a ``chapters`` key. Entries
    use ``title`` plus ``startPage``/``endPage`` (or snake_case) and an
    optional ``confidence``.

    Raises:
        ValueError: If the text is not a JSON chapter list.
    """
    cleaned = text.strip()
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
    cleaned = re.sub(r"\s*```$", "", cleaned)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Classifier response is not JSON: {exc}") from exc

    if isinstance(data, dict):
        data = data.get("chapters", [])
    if not isinstance(data, list):
        raise ValueError("Classifier response must be a list of chapters")

    chapters: list[Chapter] = []
    for entry in data:
        start = entry.get("startPage", entry.get("start_page"))
        if start is None:
            continue
        end = entry.get("endPage", entry.get("end_page", start))
        chapters.append(
            Chapter(
                title=str(entry.get("title") or f"Chapter {len(chapters) + 1}"),
                start_page=int(start),
                end_page=int(end),
                confidence=float(entry["confidence"]) if entry.get("confidence") is not None else None,
                reason=entry.get("reason") or "ai suggestion",
            )
        )
    return chapters


class PromptChapterClassifier:
    """Adapts a text-completion callable into a ``ChapterClassifier``.

    The callable receives a prompt and returns the model's raw answer.
    """

    def __init__(self, complete: Callable[[str], str]) -> None:
        self._complete = complete

    def suggest_chapters(self, pages: list[dict[str, Any]]) -> list[Chapter]:
        prompt = (
            "Identify the chapter boundaries of this book. Answer with a JSON list of "
            'objects {"title", "startPage", "endPage", "confidence"}.\n\n'
            + json.dumps(pages, ensure_ascii=False)
        )
        return parse_classifier_response(self._complete(prompt))


class ChapterDetector:
    """Detects chapter boundaries heuristically or with an AI classifier."""

    def __init__(
        self,
        classifier: ChapterClassifier | None = None,
        config: ChapterDetectionConfig | None = None,
    ) -> None:
        self.classifier = classifier
        self.config = config or ChapterDetectionConfig()

    def detect(self, structure: DocumentStructure, use_ai: bool = False) -> ChapterDetectionResult:
        """Detect chapters with the requested strategy."""
        if use_ai:
            return self.detect_with_ai(structure)
        return ChapterDetectionResult(chapters=self.detect_heuristic(structure), method="heuristic")

    def detect_heuristic(self, structure: DocumentStructure) -> list[Chapter]:
        """Scan pages in order for chapter markers and major headings.

        Returns:
            Chapters covering the whole document, the first starting on the
            first page. A document without any marker yields a single
            "Content" chapter.
        """
        pages = sorted(structure.pages, key=lambda p: p.page_number)
        if not pages:
            return []
        mean_font = _mean_font_size(structure)

        candidates: list[tuple[PageStructure, TextBlock, int]] = []
        for page in pages:
            for block in _ordered_text_blocks(page)[: self.config.candidate_blocks_per_page]:
                signals = self._signals(block, page, mean_font)
                if signals:
                    candidates.append((page, block, signals))
                    break

        candidates = self._merge_adjacent_title_pages(candidates)
        first_page = pages[0].page_number
        last_page = pages[-1].page_number

        if not candidates:
            return [
                Chapter(
                    title="Content",
                    start_page=first_page,
                    end_page=last_page,
                    confidence=self.config.fallback_confidence,
                    reason="no chapter markers found",
                )
            ]

        chapters = [
            Chapter(
                title=self._title(block.text),
                start_page=page.page_number,
                end_page=page.page_number,
                confidence=min(0.95, 0.4 + 0.15 * signals),
                reason=f"heuristic ({signals} signal{'s' if signals != 1 else ''})",
            )
            for page, block, signals in candidates
        ]

        if chapters[0].start_page != first_page:
            opening = _ordered_text_blocks(pages[0])
            chapters.insert(
                0,
                Chapter(
                    title=self._title(opening[0].text) if opening else "Front Matter",
                    start_page=first_page,
                    end_page=first_page,
                    confidence=0.5,
                    reason="first page",
                ),
            )
        return _close_ranges(chapters, last_page)

    def detect_with_ai(self, structure: DocumentStructure) -> ChapterDetectionResult:
        """Merge classifier suggestions into the heuristic chapters.

        A start page proposed by both sources keeps the classifier's chapter.
        A start page proposed by only one source is kept when its confidence
        reaches ``agreement_threshold`` and is otherwise dropped and noted for
        review.
        """
        heuristic = self.detect_heuristic(structure)
        if self.classifier is None:
            logger.info("No chapter classifier configured, using heuristic detection")
            return ChapterDetectionResult(
                chapters=heuristic,
                method="heuristic",
                review_notes=["AI classifier unavailable; heuristic result used"],
            )

        try:
            suggestions = self.classifier.suggest_chapters(
                summarize_pages_for_classification(structure, self.config)
            )
        except Exception as exc:
            logger.warning("Chapter classifier failed, falling back to heuristics: %s", exc)
            return ChapterDetectionResult(
                chapters=heuristic,
                method="heuristic",
                review_notes=[f"AI classifier failed: {exc}"],
            )

        if not heuristic:
            return ChapterDetectionResult(chapters=[], method="ai_assisted")
        return self._merge(heuristic, suggestions)

    # ---- Private helpers ----

    def _signals(self, block: TextBlock, page: PageStructure, mean_font: float | None) -> int:
        """Count the independent boundary signals a block fires."""
        text = block.text.strip()
        if not text:
            return 0
        signals = 1 if matches_chapter_pattern(text) else 0
        if block.block_type is BlockType.HEADING:
            if mean_font and block.font_size and block.font_size > mean_font * self.config.major_heading_font_ratio:
                signals += 1
            if block.bbox is not None and page.height and block.bbox.y < page.height * self.config.top_of_page_fraction:
                signals += 1
            if block.level == 1:
                signals += 1
        return signals

    @staticmethod
    def _merge_adjacent_title_pages(
        candidates: list[tuple[PageStructure, TextBlock, int]],
    ) -> list[tuple[PageStructure, TextBlock, int]]:
        """Drop a candidate that directly follows a page holding only a title."""
        merged: list[tuple[PageStructure, TextBlock, int]] = []
        for candidate in candidates:
            if merged:
                prev_page, prev_block, prev_signals = merged[-1]
                page = candidate[0]
                title_only = all(
                    not b.text.strip() or b.id == prev_block.id for b in prev_page.text_blocks
                )
                if page.page_number == prev_page.page_number + 1 and title_only:
                    merged[-1] = (prev_page, prev_block, max(prev_signals, candidate[2]))
                    continue
            merged.append(candidate)
        return merged

    def _title(self, text: str) -> str:
        lines = text.strip().splitlines()
        title = " ".join(lines[0].split()) if lines else ""
        limit = self.config.max_title_length
        if len(title) > limit:
            title = title[: limit - 3] + "..."
        return title or "Untitled"

    def _merge(self, heuristic: list[Chapter], suggestions: list[Chapter]) -> ChapterDetectionResult:
        first_page = heuristic[0].start_page
        last_page = heuristic[-1].end_page
        threshold = self.config.agreement_threshold
        notes: list[str] = []

        by_start_h = {c.start_page: c for c in heuristic}
        by_start_ai: dict[int, Chapter] = {}
        for chapter in suggestions:
            if not first_page <= chapter.start_page <= last_page:
                notes.append(f"Ignored AI chapter '{chapter.title}' starting outside the document")
                continue
            if chapter.confidence is None:
                chapter = dataclasses.replace(chapter, confidence=self.config.ai_default_confidence)
            by_start_ai.setdefault(chapter.start_page, chapter)

        kept: list[Chapter] = []
        for start in sorted(set(by_start_h) | set(by_start_ai)):
            h, ai = by_start_h.get(start), by_start_ai.get(start)
            if h is not None and ai is not None:
                kept.append(
                    Chapter(
                        title=ai.title,
                        start_page=start,
                        end_page=start,
                        confidence=max(ai.confidence or 0.0, h.confidence or 0.0),
                        reason="heuristic and AI agree",
                    )
                )
                continue
            chapter = ai if ai is not None else h
            source = "AI" if ai is not None else "heuristic"
            if (chapter.confidence or 0.0) >= threshold or start == first_page:
                kept.append(
                    Chapter(
                        title=chapter.title,
                        start_page=start,
                        end_page=start,
                        confidence=chapter.confidence,
                        reason=f"{source} only",
                    )
                )
            else:
                notes.append(
                    f"Low-confidence {source} boundary at page {start} "
                    f"('{chapter.title}', {chapter.confidence or 0.0:.2f}) was dropped"
                )

        return ChapterDetectionResult(
            chapters=_close_ranges(kept, last_page),
            method="ai_assisted",
            needs_review=any(note.startswith("Low-confidence") for note in notes),
            review_notes=notes,
        )


def _ordered_text_blocks(page: PageStructure) -> list[TextBlock]:
    """Return a page's non-empty text blocks in reading order."""
    blocks = [b for b in page.text_blocks if b.text.strip()]
    if page.reading_order.block_ids:
        rank = {block_id: i for i, block_id in enumerate(page.reading_order.block_ids)}
        return sorted(blocks, key=lambda b: (rank.get(b.id, len(rank)), b.reading_order))
    return sorted(blocks, key=lambda b: b.reading_order)


def _mean_font_size(structure: DocumentStructure) -> float | None:
    sizes = [b.font_size for _, b in structure.iter_text_blocks() if b.font_size]
    return statistics.fmean(sizes) if sizes else None


def _close_ranges(chapters: list[Chapter], last_page: int) -> list[Chapter]:
    """Set each chapter's end page to the page before the next chapter starts."""
    chapters = sorted(chapters, key=lambda c: c.start_page)
    for current, following in zip(chapters, chapters[1:]):
        current.end_page = following.start_page - 1
    if chapters:
        chapters[-1].end_page = last_page
    return chapters
