"""Built-in processors for the nine conversion stages.

Every processor takes the raw PDF bytes and the structure produced by the
previous stage, and returns a ``StageOutcome`` (or a bare structure). A
processor signals trouble by raising; low confidence or ambiguous content is
reported through ``StageOutcome.confidence`` and ``review_reason`` instead.
"""

from __future__ import annotations

import copy
import html
import logging
import re
import statistics
from typing import Protocol

import fitz  # PyMuPDF
from PIL import Image

from pdf_to_epub_converter.chapter_detector import ChapterDetector
from pdf_to_epub_converter.content_merger import ContentMerger
from pdf_to_epub_converter.errors import StageFailure
from pdf_to_epub_converter.models import (
    BlockType,
    ConversionStep,
    DocumentMetadata,
    DocumentStructure,
    ImageReference,
    ImageType,
    MathEquation,
    PageClassification,
    PageStructure,
    ReadingOrder,
    SemanticBlock,
    SemanticType,
    StageOutcome,
    TableBlock,
    TableStructure,
    TextBlock,
    TocEntry,
)
from pdf_to_epub_converter.ocr_engine import OCREngine
from pdf_to_epub_converter.page_classifier import PageClassifier
from pdf_to_epub_converter.text_extractor import TextExtractor
from pdf_to_epub_converter.text_segmenter import apply_segmentation

logger = logging.getLogger(__name__)

# Resolution used when rendering pages for OCR.
_OCR_ZOOM = 2.0


class StageProcessor(Protocol):
    """Contract shared by all stage processors."""

    def process(self, pdf_bytes: bytes, structure: DocumentStructure) -> StageOutcome | DocumentStructure:
        ...


class EpubPackager(Protocol):
    """Turns a finished structure into EPUB bytes."""

    def package(self, structure: DocumentStructure) -> bytes:
        ...


def open_pdf(pdf_bytes: bytes) -> fitz.Document:
    """Open PDF bytes with PyMuPDF.

    Raises:
        StageFailure: If the bytes are not a readable PDF.
    """
    try:
        return fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as exc:
        raise StageFailure(f"Not a valid PDF: {exc}") from exc


def render_page_to_image(page: fitz.Page, zoom: float = _OCR_ZOOM) -> Image.Image:
    """Render a PDF page to a PIL Image via PyMuPDF pixmap."""
    pixmap = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom))
    return Image.frombytes("RGB", (pixmap.width, pixmap.height), pixmap.samples)


# ---------------------------------------------------------------------------
# 1. Classification
# ---------------------------------------------------------------------------


class ClassificationStage:
    """Creates one page skeleton per PDF page and reads document metadata."""

    def __init__(self, classifier: PageClassifier | None = None) -> None:
        self.classifier = classifier or PageClassifier()

    def process(self, pdf_bytes: bytes, structure: DocumentStructure) -> StageOutcome:
        doc = open_pdf(pdf_bytes)
        try:
            if doc.page_count == 0:
                raise StageFailure("Document has no pages")
            pages = [self.classifier.describe(page) for page in doc]
            metadata = _read_metadata(doc.metadata or {})
        finally:
            doc.close()

        scanned = sum(1 for p in pages if p.content_type is PageClassification.SCANNED)
        logger.info("Classified %d pages (%d scanned)", len(pages), scanned)
        return StageOutcome(structure=DocumentStructure(pages=pages, metadata=metadata))


def _read_metadata(raw: dict) -> DocumentMetadata:
    authors = [a.strip() for a in re.split(r"[;,&]| and ", raw.get("author") or "") if a.strip()]
    keywords = [k.strip() for k in re.split(r"[;,]", raw.get("keywords") or "") if k.strip()]
    return DocumentMetadata(
        title=(raw.get("title") or "").strip() or None,
        authors=authors,
        subject=(raw.get("subject") or "").strip() or None,
        keywords=keywords,
        publisher=(raw.get("producer") or "").strip() or None,
        publication_date=(raw.get("creationDate") or "").strip() or None,
    )


# ---------------------------------------------------------------------------
# 2. Text extraction
# ---------------------------------------------------------------------------


class TextExtractionStage:
    """Extracts text natively, through OCR, or both, depending on page type."""

    def __init__(
        self,
        text_extractor: TextExtractor | None = None,
        ocr_engine: OCREngine | None = None,
        content_merger: ContentMerger | None = None,
    ) -> None:
        self.text_extractor = text_extractor or TextExtractor()
        self.ocr_engine = ocr_engine or OCREngine()
        self.content_merger = content_merger or ContentMerger()

    def process(self, pdf_bytes: bytes, structure: DocumentStructure) -> StageOutcome:
        result = copy.deepcopy(structure)
        doc = open_pdf(pdf_bytes)
        ocr_confidences: list[float] = []
        try:
            for page_struct in result.pages:
                page = doc[page_struct.page_number - 1]
                self._extract_page(page, page_struct)
                if page_struct.ocr_confidence is not None:
                    ocr_confidences.append(page_struct.ocr_confidence)
        finally:
            doc.close()

        for page_struct in result.pages:
            for image in page_struct.image_blocks:
                result.images.append(
                    ImageReference(id=f"ref-{image.id}", block_id=image.id, original_path=image.image_path)
                )
            for table in page_struct.table_blocks:
                result.tables.append(TableStructure(id=f"ref-{table.id}", block_id=table.id, confidence=table.confidence))

        confidence = statistics.fmean(ocr_confidences) if ocr_confidences else None
        if confidence is not None:
            logger.info("Mean OCR confidence over %d pages: %.2f", len(ocr_confidences), confidence)
        return StageOutcome(structure=result, confidence=confidence)

    def _extract_page(self, page: fitz.Page, page_struct: PageStructure) -> None:
        """Route a page to the extractor(s) matching its classification.

        - NATIVE_TEXT: native extraction only
        - SCANNED: OCR only (page rendered to image first)
        - MIXED: both, then merged with native text preferred
        """
        number = page_struct.page_number
        classification = page_struct.content_type or PageClassification.NATIVE_TEXT

        if classification is PageClassification.SCANNED:
            ocr = self.ocr_engine.ocr_page(render_page_to_image(page), number, scale=_OCR_ZOOM)
            page_struct.text_blocks = ocr.blocks
            page_struct.ocr_confidence = ocr.confidence
            page_struct.is_scanned = True
        else:
            extraction = self.text_extractor.extract(page, number)
            text_blocks = extraction.text_blocks
            if classification is PageClassification.MIXED:
                ocr = self.ocr_engine.ocr_page(render_page_to_image(page), number, scale=_OCR_ZOOM)
                text_blocks = self.content_merger.merge(text_blocks, ocr.blocks)
                page_struct.ocr_confidence = ocr.confidence
            page_struct.text_blocks = text_blocks
            page_struct.table_blocks = extraction.table_blocks
            page_struct.image_blocks = extraction.image_blocks

        for rank, block in enumerate(page_struct.text_blocks):
            block.reading_order = rank
        page_struct.reading_order = ReadingOrder(
            block_ids=[b.id for b in page_struct.text_blocks]
            + [b.id for b in page_struct.table_blocks]
            + [b.id for b in page_struct.image_blocks]
        )


# ---------------------------------------------------------------------------
# 3. Layout analysis
# ---------------------------------------------------------------------------

_BULLET_RE = re.compile(r"^\s*[•◦▪▸\-\*–]\s+")
_ORDERED_RE = re.compile(r"^\s*(\d+|[a-z]|[ivx]+)[.)]\s+", re.IGNORECASE)


class LayoutAnalysisStage:
    """Assigns heading levels, list types and multi-column reading order."""

    def process(self, pdf_bytes: bytes, structure: DocumentStructure) -> StageOutcome:
        result = copy.deepcopy(structure)
        level_for_size = _heading_levels(result)

        for page in result.pages:
            for block in page.text_blocks:
                if block.block_type is BlockType.HEADING and block.font_size:
                    block.level = level_for_size.get(round(block.font_size, 1), block.level or 1)
                elif block.block_type in (BlockType.LIST_ITEM, BlockType.PARAGRAPH):
                    if _BULLET_RE.match(block.text):
                        block.block_type = BlockType.LIST_UNORDERED
                    elif block.block_type is BlockType.LIST_ITEM and _ORDERED_RE.match(block.text):
                        block.block_type = BlockType.LIST_ORDERED
            page.reading_order = order_page_blocks(page)
            rank = {block_id: i for i, block_id in enumerate(page.reading_order.block_ids)}
            for block in page.text_blocks:
                block.reading_order = rank.get(block.id, block.reading_order)
        return StageOutcome(structure=result)


def _heading_levels(structure: DocumentStructure) -> dict[float, int]:
    """Map heading font sizes to levels 1-6, largest first."""
    sizes = sorted(
        {round(b.font_size, 1) for _, b in structure.iter_text_blocks() if b.block_type is BlockType.HEADING and b.font_size},
        reverse=True,
    )
    return {size: min(index + 1, 6) for index, size in enumerate(sizes)}


def order_page_blocks(page: PageStructure) -> ReadingOrder:
    """Compute a page's reading order, detecting a two-column layout.

    Blocks spanning the page's middle split the page into horizontal bands;
    within a band the left column is read before the right one.
    """
    placed = [(b.id, b.bbox) for b in page.text_blocks]
    placed += [(b.id, b.bbox) for b in page.table_blocks]
    placed += [(b.id, b.bbox) for b in page.image_blocks]
    unplaced = [block_id for block_id, bbox in placed if bbox is None]
    boxes = [(block_id, bbox.as_rect()) for block_id, bbox in placed if bbox is not None]
    if not boxes:
        return ReadingOrder(block_ids=unplaced)

    width = page.width or max(rect[2] for _, rect in boxes)
    middle = width / 2.0
    tolerance = width * 0.02
    left = [item for item in boxes if item[1][2] <= middle + tolerance]
    right = [item for item in boxes if item[1][0] >= middle - tolerance]
    is_multi_column = len(left) >= 2 and len(right) >= 2

    if not is_multi_column:
        ordered = sorted(boxes, key=lambda item: (round(item[1][1], 1), item[1][0]))
        return ReadingOrder(block_ids=[i for i, _ in ordered] + unplaced)

    ordered_ids: list[str] = []
    band: list[tuple[str, tuple[float, float, float, float]]] = []

    def flush() -> None:
        ordered_ids.extend(i for i, r in sorted(band, key=lambda item: (item[1][0] >= middle - tolerance, item[1][1])))
        band.clear()

    for block_id, rect in sorted(boxes, key=lambda item: (item[1][1], item[1][0])):
        spans_middle = rect[0] < middle - tolerance and rect[2] > middle + tolerance
        if spans_middle:
            flush()
            ordered_ids.append(block_id)
        else:
            band.append((block_id, rect))
    flush()
    return ReadingOrder(block_ids=ordered_ids + unplaced, is_multi_column=True, column_count=2)


# ---------------------------------------------------------------------------
# 4. Semantic structuring
# ---------------------------------------------------------------------------

_SEMANTIC_MARKERS: list[tuple[re.Pattern[str], SemanticType, BlockType]] = [
    (re.compile(r"^(learning objectives?|objectives?|by the end of this (chapter|section))\b", re.I),
     SemanticType.LEARNING_OBJECTIVE, BlockType.LEARNING_OBJECTIVE),
    (re.compile(r"^(exercise|practice|problem|activity)\b\s*\d*[.:)]?", re.I), SemanticType.EXERCISE, BlockType.EXERCISE),
    (re.compile(r"^(answer|solution)s?\b", re.I), SemanticType.EXERCISE_ANSWER, BlockType.ANSWER),
    (re.compile(r"^example\b\s*\d*[.:)]?", re.I), SemanticType.EXAMPLE, BlockType.EXAMPLE),
    (re.compile(r"^note\b[.:]?", re.I), SemanticType.NOTE, BlockType.NOTE),
    (re.compile(r"^tip\b[.:]?", re.I), SemanticType.TIP, BlockType.TIP),
    (re.compile(r"^(warning|caution)\b[.:]?", re.I), SemanticType.WARNING, BlockType.WARNING),
    (re.compile(r"^(key terms?|glossary)\b", re.I), SemanticType.KEY_TERM, BlockType.GLOSSARY_TERM),
]
_DEFINITION_RE = re.compile(r"^([A-Z][\w\- ]{1,40})\s*[:–—]\s+\S")
_CROSS_REF_RE = re.compile(r"\bsee\s+(chapter|section)\s+(\d+(?:\.\d+)*)", re.I)


class SemanticStructuringStage:
    """Annotates educational elements, builds the TOC and marks chapters.

    Chapter detection runs heuristically unless the detector has a
    classifier, in which case low-confidence disagreements between the two
    are reported for review.
    """

    def __init__(self, chapter_detector: ChapterDetector | None = None) -> None:
        self.chapter_detector = chapter_detector or ChapterDetector()

    def process(self, pdf_bytes: bytes, structure: DocumentStructure) -> StageOutcome:
        result = copy.deepcopy(structure)
        result.semantic_blocks = [
            s for s in result.semantic_blocks
            if s.semantic_type not in (SemanticType.CHAPTER_BOUNDARY, SemanticType.INTERNAL_LINK)
        ]
        existing = {s.id for s in result.semantic_blocks}

        for page, block in list(result.iter_text_blocks()):
            for pattern, semantic_type, block_type in _SEMANTIC_MARKERS:
                if pattern.match(block.text.strip()):
                    if block.block_type is not BlockType.HEADING:
                        block.block_type = block_type
                    _add_semantic(result, existing, SemanticBlock(
                        id=f"sem-{block.id}", semantic_type=semantic_type,
                        content=block.text[:500], related_block_ids=[block.id], confidence=0.8,
                    ))
                    break
            else:
                if block.block_type is BlockType.GLOSSARY_TERM or (
                    block.block_type is BlockType.LIST_UNORDERED and _DEFINITION_RE.match(block.text)
                ):
                    _add_semantic(result, existing, SemanticBlock(
                        id=f"sem-{block.id}", semantic_type=SemanticType.GLOSSARY_ENTRY,
                        content=block.text[:500], related_block_ids=[block.id], confidence=0.6,
                    ))

        result.table_of_contents = build_table_of_contents(result)

        detection = self.chapter_detector.detect(result, use_ai=self.chapter_detector.classifier is not None)
        for chapter in detection.chapters:
            page = result.find_page(chapter.start_page)
            blocks = _first_text_block_ids(page)
            result.semantic_blocks.append(SemanticBlock(
                id=f"chapter-{chapter.start_page}", semantic_type=SemanticType.CHAPTER_BOUNDARY,
                content=chapter.title, related_block_ids=blocks, confidence=chapter.confidence,
            ))

        _link_cross_references(result)

        confidences = [c.confidence for c in detection.chapters if c.confidence is not None]
        review_reason = None
        if detection.needs_review:
            review_reason = "Conflicting chapter boundaries: " + "; ".join(detection.review_notes)
        return StageOutcome(
            structure=result,
            confidence=statistics.fmean(confidences) if confidences else None,
            review_reason=review_reason,
        )


def build_table_of_contents(structure: DocumentStructure) -> list[TocEntry]:
    """Build a hierarchical TOC from heading blocks in reading order."""
    root: list[TocEntry] = []
    stack: list[TocEntry] = []
    for page in sorted(structure.pages, key=lambda p: p.page_number):
        for block in sorted(page.text_blocks, key=lambda b: b.reading_order):
            if block.block_type is not BlockType.HEADING or not block.text.strip():
                continue
            entry = TocEntry(title=" ".join(block.text.split())[:200], target_id=block.id, level=block.level or 1)
            while stack and stack[-1].level >= entry.level:
                stack.pop()
            if stack:
                stack[-1].children.append(entry)
            else:
                root.append(entry)
            stack.append(entry)
    return root


def _add_semantic(structure: DocumentStructure, existing: set[str], semantic: SemanticBlock) -> None:
    if semantic.id not in existing:
        existing.add(semantic.id)
        structure.semantic_blocks.append(semantic)


def _first_text_block_ids(page: PageStructure | None) -> list[str]:
    if page is None or not page.text_blocks:
        return []
    first = min(page.text_blocks, key=lambda b: b.reading_order)
    return [first.id]


def _link_cross_references(structure: DocumentStructure) -> None:
    """Add internal links for "see Chapter N" / "see Section N.M" references."""
    targets: dict[str, str] = {}
    for _, block in structure.iter_text_blocks():
        if block.block_type is BlockType.HEADING:
            match = re.match(r"^(chapter|section)?\s*(\d+(?:\.\d+)*)", block.text.strip(), re.I)
            if match:
                targets.setdefault(match.group(2), block.id)

    for _, block in structure.iter_text_blocks():
        for match in _CROSS_REF_RE.finditer(block.text):
            target = targets.get(match.group(2))
            if target is None or target == block.id:
                continue
            structure.semantic_blocks.append(SemanticBlock(
                id=f"link-{block.id}-{match.start()}", semantic_type=SemanticType.INTERNAL_LINK,
                content=match.group(0), related_block_ids=[block.id, target], confidence=0.7,
            ))


# ---------------------------------------------------------------------------
# 5. Accessibility
# ---------------------------------------------------------------------------

_IMAGE_TYPE_WORDS: list[tuple[tuple[str, ...], ImageType]] = [
    (("chart", "graph", "plot"), ImageType.CHART),
    (("diagram", "schematic", "flowchart"), ImageType.DIAGRAM),
    (("photo", "photograph"), ImageType.PHOTO),
    (("illustration", "drawing"), ImageType.ILLUSTRATION),
    (("equation", "formula"), ImageType.FORMULA_IMAGE),
    (("figure", "fig."), ImageType.FIGURE),
]


class AccessibilityStage:
    """Fills in alt text, captions and image types; sets document language."""

    def process(self, pdf_bytes: bytes, structure: DocumentStructure) -> StageOutcome:
        result = copy.deepcopy(structure)
        references = {ref.block_id: ref for ref in result.images}
        described = 0
        total = 0

        for page in result.pages:
            captions = [b for b in page.text_blocks if b.block_type is BlockType.CAPTION]
            for image in page.image_blocks:
                total += 1
                caption = _nearest_caption(image.bbox, captions)
                if caption is not None:
                    image.caption = caption.text
                    image.image_type = _guess_image_type(caption.text)
                    if not image.alt_text:
                        image.alt_text = caption.text
                    image.requires_alt_text = False
                    described += 1
                elif _is_decorative(image, page):
                    image.image_type = ImageType.DECORATIVE
                    image.alt_text = ""
                    image.requires_alt_text = False
                    described += 1
                elif not image.alt_text:
                    image.alt_text = f"Image on page {page.page_number}"
                    image.requires_alt_text = True

                reference = references.get(image.id)
                if reference is not None:
                    reference.alt_text = image.alt_text
                    reference.caption = image.caption
                    reference.image_type = image.image_type

            for table in page.table_blocks:
                caption = _nearest_caption(table.bbox, captions)
                if caption is not None and not table.caption:
                    table.caption = caption.text

        if not result.metadata.languages:
            result.metadata.languages = [result.metadata.language]
        for _, block in result.iter_text_blocks():
            if not block.languages:
                block.languages = [result.metadata.language]

        if total:
            logger.info("Described %d of %d images", described, total)
        return StageOutcome(structure=result)


def _nearest_caption(bbox, captions: list[TextBlock]) -> TextBlock | None:
    if bbox is None:
        return None
    best, best_distance = None, None
    x0, y0, x1, y1 = bbox.as_rect()
    for caption in captions:
        if caption.bbox is None:
            continue
        cx0, cy0, cx1, cy1 = caption.bbox.as_rect()
        distance = min(abs(cy0 - y1), abs(y0 - cy1))
        if best_distance is None or distance < best_distance:
            best, best_distance = caption, distance
    return best if best_distance is not None and best_distance <= 72 else None


def _guess_image_type(caption: str) -> ImageType:
    lowered = caption.lower()
    for words, image_type in _IMAGE_TYPE_WORDS:
        if any(word in lowered for word in words):
            return image_type
    return ImageType.FIGURE


def _is_decorative(image, page: PageStructure) -> bool:
    """Tiny images (rules, ornaments) need no description."""
    if image.bbox is None or not page.width or not page.height:
        return False
    return image.bbox.width * image.bbox.height < 0.005 * page.width * page.height


# ---------------------------------------------------------------------------
# 6. Content cleanup
# ---------------------------------------------------------------------------

_LIGATURES = {"ﬀ": "ff", "ﬁ": "fi", "ﬂ": "fl", "ﬃ": "ffi", "ﬄ": "ffl", "ﬅ": "st", "ﬆ": "st"}
_CLEANUP_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile("\u00ad"), ""),  # soft hyphen
    (re.compile(r"(\w)-\n(\w)"), r"\1\2"),  # hyphenated line break
    (re.compile(r"(?<!\n)\n(?!\n)"), " "),  # single line break inside a paragraph
    (re.compile("[ \t\u00a0]+"), " "),
    (re.compile(r"\s+([,.;:!?])"), r"\1"),
    (re.compile(r"([,;:])(?=[A-Za-z])"), r"\1 "),
    (re.compile(r"\.{4,}"), "..."),
]


def clean_text(text: str) -> str:
    """Normalize ligatures, hyphenation, spacing and punctuation spacing."""
    for ligature, replacement in _LIGATURES.items():
        text = text.replace(ligature, replacement)
    for pattern, replacement in _CLEANUP_RULES:
        text = pattern.sub(replacement, text)
    return text.strip()


class ContentCleanupStage:
    """Cleans extracted text and refreshes segmentations."""

    def process(self, pdf_bytes: bytes, structure: DocumentStructure) -> StageOutcome:
        result = copy.deepcopy(structure)
        changed = 0
        for _, block in result.iter_text_blocks():
            cleaned = clean_text(block.text)
            if block.block_type in (BlockType.LIST_UNORDERED, BlockType.LIST_ITEM):
                cleaned = _BULLET_RE.sub("", cleaned)
            if cleaned != block.text:
                changed += 1
                block.text = cleaned
            apply_segmentation(block)
        logger.info("Cleaned text of %d blocks", changed)
        return StageOutcome(structure=result)


# ---------------------------------------------------------------------------
# 7. Special content (math and tables)
# ---------------------------------------------------------------------------

_LATEX_SYMBOLS = {
    "√": r"\sqrt", "≤": r"\leq", "≥": r"\geq", "≠": r"\neq", "×": r"\times", "÷": r"\div",
    "±": r"\pm", "π": r"\pi", "∑": r"\sum", "∫": r"\int", "∞": r"\infty", "α": r"\alpha",
    "β": r"\beta", "γ": r"\gamma", "θ": r"\theta", "λ": r"\lambda", "μ": r"\mu", "σ": r"\sigma",
    "Δ": r"\Delta", "→": r"\rightarrow", "≈": r"\approx",
}
_OPERAND = r"[\w()^+\-*/.√π²³]+"
_INLINE_EQUATION_RE = re.compile(_OPERAND + r"(?:\s*[=≤≥≠≈<>]\s*" + _OPERAND + r")+")
_MATH_TOKEN_RE = re.compile(r"\d+(?:\.\d+)?|[A-Za-z]|[^\sA-Za-z0-9]")


def to_latex(expression: str) -> str:
    """Translate plain-text math symbols to LaTeX."""
    latex = expression.strip()
    for symbol, command in _LATEX_SYMBOLS.items():
        latex = latex.replace(symbol, f"{command} ")
    latex = re.sub(r"\^(\w+)", r"^{\1}", latex)
    return " ".join(latex.split())


def to_mathml(expression: str) -> str:
    """Render a plain-text expression as presentation MathML."""
    parts: list[str] = []
    for token in _MATH_TOKEN_RE.findall(expression.strip()):
        escaped = html.escape(token)
        if token[0].isdigit():
            parts.append(f"<mn>{escaped}</mn>")
        elif token.isalpha():
            parts.append(f"<mi>{escaped}</mi>")
        else:
            parts.append(f"<mo>{escaped}</mo>")
    return '<math xmlns="http://www.w3.org/1998/Math/MathML"><mrow>' + "".join(parts) + "</mrow></math>"


def looks_like_equation(text: str) -> bool:
    """Return True for short text dominated by an equation or inequality."""
    stripped = text.strip()
    if not stripped or len(stripped) > 120:
        return False
    if not any(op in stripped for op in "=≤≥≠≈<>"):
        return False
    letters = sum(ch.isalpha() for ch in stripped)
    symbols = sum(not ch.isalnum() and not ch.isspace() for ch in stripped)
    words = len(re.findall(r"[A-Za-z]{4,}", stripped))
    return symbols >= 1 and words <= 2 and letters <= 3 * (symbols + sum(ch.isdigit() for ch in stripped))


def table_to_html(table: TableBlock) -> str:
    """Render a table block as accessible HTML."""
    grid: dict[int, list] = {}
    for cell in sorted(table.cells, key=lambda c: (c.row, c.column)):
        grid.setdefault(cell.row, []).append(cell)

    lines = ["<table>"]
    if table.caption:
        lines.append(f"  <caption>{html.escape(table.caption)}</caption>")
    for row_index in sorted(grid):
        cells = grid[row_index]
        header_row = table.has_header_row and row_index == 0
        if header_row:
            lines.append("  <thead>")
        row_html = []
        for cell in cells:
            tag = "th" if cell.is_header or header_row else "td"
            attrs = ' scope="col"' if header_row else ""
            if cell.row_span > 1:
                attrs += f' rowspan="{cell.row_span}"'
            if cell.col_span > 1:
                attrs += f' colspan="{cell.col_span}"'
            row_html.append(f"<{tag}{attrs}>{html.escape(cell.content)}</{tag}>")
        lines.append("    <tr>" + "".join(row_html) + "</tr>")
        if header_row:
            lines.append("  </thead>")
    lines.append("</table>")
    return "\n".join(lines)


class SpecialContentStage:
    """Converts equations to LaTeX/MathML and tables to HTML."""

    def process(self, pdf_bytes: bytes, structure: DocumentStructure) -> StageOutcome:
        result = copy.deepcopy(structure)
        result.equations = []

        for _, block in result.iter_text_blocks():
            if block.block_type is BlockType.HEADING:
                continue
            if looks_like_equation(block.text):
                expressions = [(block.text.strip(), False)]
            else:
                expressions = [(m.group(0).strip(), True) for m in _INLINE_EQUATION_RE.finditer(block.text)
                               if looks_like_equation(m.group(0))]
            for index, (expression, inline) in enumerate(expressions, start=1):
                result.equations.append(MathEquation(
                    id=f"eq-{block.id}-{index}", original_text=expression, block_id=block.id,
                    latex=to_latex(expression), mathml=to_mathml(expression),
                    bbox=None if inline else block.bbox, is_inline=inline, confidence=0.7,
                ))

        tables = {t.id: t for page in result.pages for t in page.table_blocks}
        for reference in result.tables:
            table = tables.get(reference.block_id)
            if table is not None:
                reference.html_content = table_to_html(table)

        logger.info("Found %d equations and rendered %d tables", len(result.equations), len(result.tables))
        return StageOutcome(structure=result)


# ---------------------------------------------------------------------------
# 8. EPUB generation
# ---------------------------------------------------------------------------


class EpubGenerationStage:
    """Hands the structure to an ``EpubPackager`` and returns the artifact."""

    def __init__(self, packager: EpubPackager | None = None) -> None:
        self.packager = packager

    def process(self, pdf_bytes: bytes, structure: DocumentStructure) -> StageOutcome:
        if self.packager is None:
            logger.warning("No EPUB packager configured, no artifact will be produced")
            return StageOutcome(structure=structure)

        result = copy.deepcopy(structure)
        for reference in result.images:
            if reference.epub_path is None and reference.original_path:
                reference.epub_path = "OEBPS/" + reference.original_path
        artifact = self.packager.package(result)
        if not artifact:
            raise StageFailure("EPUB packager returned no data")
        return StageOutcome(structure=result, artifact=artifact)


# ---------------------------------------------------------------------------
# 9. QA review
# ---------------------------------------------------------------------------


class QAReviewStage:
    """Scores the finished structure; low scores send the job to review."""

    def __init__(self, default_confidence: float = 0.8) -> None:
        self.default_confidence = default_confidence

    def process(self, pdf_bytes: bytes, structure: DocumentStructure) -> StageOutcome:
        confidence = overall_confidence(structure, self.default_confidence)
        unlabeled = sum(1 for p in structure.pages for i in p.image_blocks if i.requires_alt_text)
        if unlabeled:
            logger.info("%d images still need human-written alt text", unlabeled)
        return StageOutcome(structure=structure, confidence=confidence)


def overall_confidence(structure: DocumentStructure, default: float = 0.8) -> float:
    """Mean of page OCR confidences and block confidences.

    Returns *default* when nothing in the structure reports a confidence.
    """
    scores = [p.ocr_confidence for p in structure.pages if p.ocr_confidence is not None]
    scores += [b.confidence for _, b in structure.iter_text_blocks() if b.confidence is not None]
    if not scores:
        return default
    return round(statistics.fmean(scores), 4)


def default_stage_processors(
    packager: EpubPackager | None = None,
    chapter_detector: ChapterDetector | None = None,
) -> dict[ConversionStep, StageProcessor]:
    """Return the built-in processor for every stage."""
    return {
        ConversionStep.CLASSIFICATION: ClassificationStage(),
        ConversionStep.TEXT_EXTRACTION: TextExtractionStage(),
        ConversionStep.LAYOUT_ANALYSIS: LayoutAnalysisStage(),
        ConversionStep.SEMANTIC_STRUCTURING: SemanticStructuringStage(chapter_detector),
        ConversionStep.ACCESSIBILITY: AccessibilityStage(),
        ConversionStep.CONTENT_CLEANUP: ContentCleanupStage(),
        ConversionStep.SPECIAL_CONTENT: SpecialContentStage(),
        ConversionStep.EPUB_GENERATION: EpubGenerationStage(packager),
        ConversionStep.QA_REVIEW: QAReviewStage(),
    }
