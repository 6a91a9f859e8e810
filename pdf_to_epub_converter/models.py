"""Core data models for the PDF-to-EPUB converter."""

from __future__ import annotations

import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class PageClassification(Enum):
    """Classification of a PDF page based on text coverage ratio."""

    NATIVE_TEXT = "native_text"
    SCANNED = "scanned"
    MIXED = "mixed"


class JobStatus(str, Enum):
    """Lifecycle states of a conversion job."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    CANCELLED = "CANCELLED"


class ConversionStep(str, Enum):
    """The nine conversion stages. Ordering lives in ``pipeline.PIPELINE``."""

    CLASSIFICATION = "CLASSIFICATION"
    TEXT_EXTRACTION = "TEXT_EXTRACTION"
    LAYOUT_ANALYSIS = "LAYOUT_ANALYSIS"
    SEMANTIC_STRUCTURING = "SEMANTIC_STRUCTURING"
    ACCESSIBILITY = "ACCESSIBILITY"
    CONTENT_CLEANUP = "CONTENT_CLEANUP"
    SPECIAL_CONTENT = "SPECIAL_CONTENT"
    EPUB_GENERATION = "EPUB_GENERATION"
    QA_REVIEW = "QA_REVIEW"


class BlockType(Enum):
    """Semantic type of a text block."""

    HEADING = "heading"
    PARAGRAPH = "paragraph"
    LIST_ITEM = "list_item"
    LIST_ORDERED = "list_ordered"
    LIST_UNORDERED = "list_unordered"
    CAPTION = "caption"
    FOOTNOTE = "footnote"
    SIDEBAR = "sidebar"
    CALLOUT = "callout"
    QUESTION = "question"
    EXERCISE = "exercise"
    ANSWER = "answer"
    EXAMPLE = "example"
    NOTE = "note"
    TIP = "tip"
    WARNING = "warning"
    GLOSSARY_TERM = "glossary_term"
    LEARNING_OBJECTIVE = "learning_objective"
    OTHER = "other"


class ImageType(Enum):
    """Kind of image found on a page."""

    FIGURE = "figure"
    CHART = "chart"
    DIAGRAM = "diagram"
    PHOTO = "photo"
    ILLUSTRATION = "illustration"
    DECORATIVE = "decorative"
    FORMULA_IMAGE = "formula_image"
    OTHER = "other"


class SemanticType(Enum):
    """Kind of semantic annotation attached to one or more blocks."""

    LEARNING_OBJECTIVE = "learning_objective"
    KEY_TERM = "key_term"
    GLOSSARY_ENTRY = "glossary_entry"
    EXERCISE = "exercise"
    EXERCISE_ANSWER = "exercise_answer"
    EXAMPLE = "example"
    NOTE = "note"
    TIP = "tip"
    WARNING = "warning"
    CHAPTER_BOUNDARY = "chapter_boundary"
    SECTION_BOUNDARY = "section_boundary"
    INTERNAL_LINK = "internal_link"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Document structure
# ---------------------------------------------------------------------------


@dataclass
class BoundingBox:
    """Axis-aligned box in page coordinates (points, origin top-left)."""

    x: float
    y: float
    width: float
    height: float
    page_number: int | None = None

    @classmethod
    def from_rect(
        cls,
        rect: tuple[float, float, float, float],
        page_number: int | None = None,
    ) -> BoundingBox:
        x0, y0, x1, y1 = rect
        return cls(x=x0, y=y0, width=max(0.0, x1 - x0), height=max(0.0, y1 - y0), page_number=page_number)

    def as_rect(self) -> tuple[float, float, float, float]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass
class TextBlock:
    """A block of text with position, font and segmentation information.

    ``words``, ``sentences`` and ``phrases`` are kept in step with their
    counts by ``text_segmenter.apply_segmentation``.
    """

    id: str
    text: str
    block_type: BlockType = BlockType.PARAGRAPH
    level: int | None = None  # heading level 1-6
    bbox: BoundingBox | None = None
    font_name: str | None = None
    font_size: float | None = None
    is_bold: bool = False
    is_italic: bool = False
    reading_order: int = 0
    confidence: float | None = None
    languages: list[str] = field(default_factory=list)
    words: list[str] = field(default_factory=list)
    sentences: list[str] = field(default_factory=list)
    phrases: list[str] = field(default_factory=list)
    word_count: int = 0
    sentence_count: int = 0
    phrase_count: int = 0


@dataclass
class ImageBlock:
    """An image placed on a page."""

    id: str
    bbox: BoundingBox | None = None
    image_path: str | None = None
    alt_text: str | None = None
    caption: str | None = None
    image_type: ImageType = ImageType.OTHER
    confidence: float | None = None
    requires_alt_text: bool = True


@dataclass
class TableCell:
    """A single table cell."""

    content: str
    row: int
    column: int
    row_span: int = 1
    col_span: int = 1
    is_header: bool = False


@dataclass
class TableBlock:
    """A table placed on a page."""

    id: str
    bbox: BoundingBox | None = None
    rows: int = 0
    columns: int = 0
    cells: list[TableCell] = field(default_factory=list)
    headers: list[str] = field(default_factory=list)
    caption: str | None = None
    confidence: float | None = None
    has_header_row: bool = False


@dataclass
class ReadingOrder:
    """Ordered block ids of a page plus column layout."""

    block_ids: list[str] = field(default_factory=list)
    is_multi_column: bool = False
    column_count: int = 1


@dataclass
class PageStructure:
    """Content and layout of a single page."""

    page_number: int
    text_blocks: list[TextBlock] = field(default_factory=list)
    image_blocks: list[ImageBlock] = field(default_factory=list)
    table_blocks: list[TableBlock] = field(default_factory=list)
    reading_order: ReadingOrder = field(default_factory=ReadingOrder)
    is_scanned: bool = False
    ocr_confidence: float | None = None
    is_two_page_spread: bool = False
    content_type: PageClassification | None = None
    width: float | None = None
    height: float | None = None

    def block_ids(self) -> set[str]:
        """Return the ids of every block placed on this page."""
        ids = {b.id for b in self.text_blocks}
        ids.update(b.id for b in self.image_blocks)
        ids.update(b.id for b in self.table_blocks)
        return ids


@dataclass
class TocEntry:
    """A table-of-contents entry pointing at a block id."""

    title: str
    target_id: str
    level: int = 1
    children: list[TocEntry] = field(default_factory=list)


@dataclass
class DocumentMetadata:
    """Bibliographic metadata of a document."""

    title: str | None = None
    authors: list[str] = field(default_factory=list)
    isbn: str | None = None
    language: str = "en"
    languages: list[str] = field(default_factory=list)
    subject: str | None = None
    grade_level: str | None = None
    publisher: str | None = None
    publication_date: str | None = None
    description: str | None = None
    keywords: list[str] = field(default_factory=list)


@dataclass
class ImageReference:
    """Document-level reference to an image block."""

    id: str
    block_id: str
    original_path: str | None = None
    epub_path: str | None = None
    alt_text: str | None = None
    caption: str | None = None
    image_type: ImageType = ImageType.OTHER


@dataclass
class TableStructure:
    """Document-level reference to a table block with its rendered HTML."""

    id: str
    block_id: str
    html_content: str | None = None
    confidence: float | None = None


@dataclass
class MathEquation:
    """An equation found in the text."""

    id: str
    original_text: str
    block_id: str | None = None
    latex: str | None = None
    mathml: str | None = None
    bbox: BoundingBox | None = None
    is_inline: bool = False
    confidence: float | None = None


@dataclass
class SemanticBlock:
    """A semantic annotation referencing page blocks by id."""

    id: str
    semantic_type: SemanticType
    content: str = ""
    related_block_ids: list[str] = field(default_factory=list)
    confidence: float | None = None


@dataclass
class DocumentStructure:
    """The intermediate representation every stage reads and augments."""

    pages: list[PageStructure] = field(default_factory=list)
    table_of_contents: list[TocEntry] = field(default_factory=list)
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)
    images: list[ImageReference] = field(default_factory=list)
    tables: list[TableStructure] = field(default_factory=list)
    equations: list[MathEquation] = field(default_factory=list)
    semantic_blocks: list[SemanticBlock] = field(default_factory=list)
    schema_version: int = 1

    def iter_text_blocks(self) -> Iterator[tuple[PageStructure, TextBlock]]:
        """Yield ``(page, block)`` pairs in page order."""
        for page in self.pages:
            for block in page.text_blocks:
                yield page, block

    def find_page(self, page_number: int) -> PageStructure | None:
        for page in self.pages:
            if page.page_number == page_number:
                return page
        return None


@dataclass
class PageExtraction:
    """Blocks extracted from a single page by the native text extractor."""

    text_blocks: list[TextBlock]
    table_blocks: list[TableBlock]
    image_blocks: list[ImageBlock]
    headers: list[str] = field(default_factory=list)
    footers: list[str] = field(default_factory=list)


@dataclass
class OCRResult:
    """Result of OCR processing on a page image."""

    text: str
    confidence: float
    blocks: list[TextBlock]


# ---------------------------------------------------------------------------
# Jobs and documents
# ---------------------------------------------------------------------------


@dataclass
class DocumentRecord:
    """An uploaded source document known to the converter."""

    id: int
    file_path: str  # path inside the storage collaborator
    original_file_name: str | None = None
    total_pages: int | None = None


@dataclass
class ConversionJob:
    """Conversion state of one document."""

    id: int
    document_id: int
    status: JobStatus = JobStatus.PENDING
    current_step: ConversionStep | None = None
    progress_percentage: int = 0
    intermediate_data: str | None = None
    confidence_score: float | None = None
    requires_review: bool = False
    review_reason: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    error_message: str | None = None
    error_kind: str | None = None  # "stage_failure" | "timeout"
    epub_file_path: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class StageOutcome:
    """What a stage processor hands back to the orchestrator."""

    structure: DocumentStructure
    confidence: float | None = None
    review_reason: str | None = None
    artifact: bytes | None = None


@dataclass
class BulkSubmission:
    """Result of submitting several documents at once."""

    jobs: list[ConversionJob] = field(default_factory=list)
    errors: list[tuple[int, str]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Narration and chapters
# ---------------------------------------------------------------------------


@dataclass
class AudioSync:
    """A narration segment aligned to a block (or a whole page)."""

    page_number: int
    start_time: float
    end_time: float
    block_id: str | None = None  # None means page-level granularity
    document_id: int | None = None
    job_id: int | None = None
    audio_file_path: str | None = None
    notes: str | None = None
    custom_text: str | None = None
    is_custom_segment: bool = False
    id: int | None = None

    def __post_init__(self) -> None:
        if self.end_time <= self.start_time:
            raise ValueError(
                f"end_time ({self.end_time}) must be greater than start_time ({self.start_time})"
            )

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class WordTiming:
    """Start time of a single narrated word."""

    word: str
    start_time: float


@dataclass
class Chapter:
    """A chapter spanning inclusive 1-based pages."""

    title: str
    start_page: int
    end_page: int
    confidence: float | None = None
    reason: str | None = None
    is_manual: bool = False


@dataclass
class ChapterConfiguration:
    """Ordered chapters plus the page count they were validated against."""

    document_id: int
    chapters: list[Chapter]
    total_pages: int


@dataclass
class ValidationResult:
    """Outcome of validating a chapter configuration."""

    is_valid: bool
    coverage: float
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ChapterDetectionResult:
    """Chapters found by the detector and whether a human should look."""

    chapters: list[Chapter]
    method: str  # "heuristic" | "ai_assisted"
    needs_review: bool = False
    review_notes: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class ConversionConfig:
    """Configuration for the conversion orchestrator."""

    max_concurrent_jobs: int = 2
    stage_timeout_seconds: float = 600.0
    epub_output_dir: str = "epub"

    @classmethod
    def from_env(cls) -> ConversionConfig:
        """Build a config from ``MAX_CONCURRENT_JOBS`` / ``STAGE_TIMEOUT_SECONDS``."""
        config = cls()
        if os.environ.get("MAX_CONCURRENT_JOBS"):
            config.max_concurrent_jobs = max(1, int(os.environ["MAX_CONCURRENT_JOBS"]))
        if os.environ.get("STAGE_TIMEOUT_SECONDS"):
            config.stage_timeout_seconds = float(os.environ["STAGE_TIMEOUT_SECONDS"])
        return config


@dataclass
class AlignmentConfig:
    """Constants of the narration alignment engine."""

    words_per_minute: float = 200.0
    silence_threshold: float = 0.01  # RMS, fraction of full scale
    silence_window_seconds: float = 0.1
    min_silence_seconds: float = 0.3
    pause_buffer_seconds: float = 0.2
    min_block_seconds: float = 0.3
    snap_window_seconds: float = 0.5
    tail_seconds: float = 0.25
    empty_page_seconds: float = 1.0
    punctuation_pause_seconds: float = 0.3
    sentence_pause_seconds: float = 0.5
    min_text_seconds: float = 0.5
    # Bytes per second assumed when duration must be guessed from file size.
    assumed_byte_rates: dict[str, float] = field(
        default_factory=lambda: {
            ".mp3": 1_000_000 / 60,
            ".wav": 176_400.0,
        }
    )
    default_byte_rate: float = 1_000_000 / 60

    def byte_rate_for(self, path: str) -> float:
        ext = os.path.splitext(path)[1].lower()
        return self.assumed_byte_rates.get(ext, self.default_byte_rate)


@dataclass
class ChapterDetectionConfig:
    """Tunables for chapter boundary detection."""

    major_heading_font_ratio: float = 1.5
    top_of_page_fraction: float = 0.2
    candidate_blocks_per_page: int = 1
    max_title_length: int = 100
    agreement_threshold: float = 0.7
    fallback_confidence: float = 0.6
    # Confidence assumed for AI suggestions that carry none.
    ai_default_confidence: float = 0.8
    summary_max_pages: int = 20
    summary_blocks_per_page: int = 5
    summary_chars_per_block: int = 200
