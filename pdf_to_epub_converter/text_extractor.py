"""Text extractor for native PDF text content.

Uses PyMuPDF for block-level text extraction with font attributes,
bounding boxes, images and table detection. Running headers and footers
are detected by vertical position and kept out of the content blocks.
"""

from __future__ import annotations

import re

import fitz  # PyMuPDF

from pdf_to_epub_converter.models import (
    BlockType,
    BoundingBox,
    ImageBlock,
    PageExtraction,
    TableBlock,
    TableCell,
    TextBlock,
)
from pdf_to_epub_converter.text_segmenter import apply_segmentation

# Fraction of page height used to detect headers and footers.
_HEADER_ZONE = 0.10  # top 10%
_FOOTER_ZONE = 0.90  # bottom 10%

# Font-size ratio relative to the median that triggers heading detection.
_HEADING_SIZE_RATIO = 1.25
_TITLE_SIZE_RATIO = 1.8

# PyMuPDF span flags
_FLAG_ITALIC = 1 << 1
_FLAG_BOLD = 1 << 4

_BULLETS = "•◦▪▸–-*"
_CAPTION_RE = re.compile(r"^(figure|fig\.|table|chart|diagram|photo)\s*\d", re.IGNORECASE)


class TextExtractor:
    """Extract native text, tables and image placements from a PDF page."""

    def extract(self, page: fitz.Page, page_number: int | None = None) -> PageExtraction:
        """Extract the blocks of a page in top-to-bottom order.

        1. Uses ``page.find_tables()`` for table detection.
        2. Uses ``page.get_text("dict")`` for block-level extraction.
        3. Drops running headers and footers found in the page margins.
        4. Classifies body blocks as heading, list item, caption, footnote or
           paragraph and records font attributes.

        Args:
            page: A PyMuPDF page object.
            page_number: 1-based page number used in block ids. Defaults to
                the page's own index + 1.

        Returns:
            A PageExtraction with segmented text blocks.
        """
        number = page_number if page_number is not None else page.number + 1
        page_height = page.rect.height
        header_limit = page_height * _HEADER_ZONE
        footer_limit = page_height * _FOOTER_ZONE

        table_blocks = self._extract_tables(page, number)
        table_rects = [t.bbox.as_rect() for t in table_blocks if t.bbox is not None]

        text_dict = page.get_text("dict", flags=fitz.TEXTFLAGS_DICT)
        median_size = self._median_font_size(text_dict)

        headers: list[str] = []
        footers: list[str] = []
        text_blocks: list[TextBlock] = []
        image_blocks: list[ImageBlock] = []

        for block in text_dict.get("blocks", []):
            rect = tuple(block["bbox"])
            if block.get("type") == 1:
                image_blocks.append(
                    ImageBlock(
                        id=f"p{number}-img{len(image_blocks) + 1}",
                        bbox=BoundingBox.from_rect(rect, number),
                        image_path=f"images/page{number}_img{len(image_blocks) + 1}.{block.get('ext', 'png')}",
                    )
                )
                continue
            if block.get("type") != 0:
                continue

            # Skip blocks that fall inside a detected table region.
            if self._overlaps_any(rect, table_rects):
                continue

            text = self._block_text(block).strip()
            if not text:
                continue

            first_span = self._first_span(block)
            size = float(first_span.get("size", 0.0)) if first_span else 0.0
            flags = int(first_span.get("flags", 0)) if first_span else 0
            block_type, level = self._classify_block(text, size, flags, median_size)

            mid_y = (rect[1] + rect[3]) / 2.0
            if block_type is not BlockType.HEADING:
                if mid_y < header_limit:
                    headers.append(text)
                    continue
                if mid_y > footer_limit:
                    if size and size < median_size:
                        block_type = BlockType.FOOTNOTE
                    else:
                        footers.append(text)
                        continue

            text_block = TextBlock(
                id=f"p{number}-t{len(text_blocks) + 1}",
                text=text,
                block_type=block_type,
                level=level,
                bbox=BoundingBox.from_rect(rect, number),
                font_name=first_span.get("font") if first_span else None,
                font_size=size or None,
                is_bold=bool(flags & _FLAG_BOLD),
                is_italic=bool(flags & _FLAG_ITALIC),
                reading_order=len(text_blocks),
                confidence=1.0,
            )
            text_blocks.append(apply_segmentation(text_block))

        return PageExtraction(
            text_blocks=text_blocks,
            table_blocks=table_blocks,
            image_blocks=image_blocks,
            headers=headers,
            footers=footers,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _extract_tables(self, page: fitz.Page, page_number: int) -> list[TableBlock]:
        """Detect tables on the page and convert them to ``TableBlock``s."""
        try:
            found = page.find_tables()
        except Exception:
            return []

        table_blocks: list[TableBlock] = []
        for tbl in found.tables:
            rows = [[cell if cell is not None else "" for cell in row] for row in tbl.extract()]
            if not rows:
                continue
            has_header = all(cell.strip() for cell in rows[0])
            cells = [
                TableCell(content=content, row=r, column=c, is_header=has_header and r == 0)
                for r, row in enumerate(rows)
                for c, content in enumerate(row)
            ]
            table_blocks.append(
                TableBlock(
                    id=f"p{page_number}-tbl{len(table_blocks) + 1}",
                    bbox=BoundingBox.from_rect(tuple(tbl.bbox), page_number),
                    rows=len(rows),
                    columns=max(len(row) for row in rows),
                    cells=cells,
                    headers=list(rows[0]) if has_header else [],
                    confidence=1.0,
                    has_header_row=has_header,
                )
            )
        return table_blocks

    @staticmethod
    def _block_text(block: dict) -> str:
        """Concatenate all span texts in a block preserving line breaks."""
        lines: list[str] = []
        for line in block.get("lines", []):
            spans_text = "".join(span.get("text", "") for span in line.get("spans", []))
            lines.append(spans_text)
        return "\n".join(lines)

    @staticmethod
    def _first_span(block: dict) -> dict | None:
        for line in block.get("lines", []):
            for span in line.get("spans", []):
                if span.get("text", "").strip():
                    return span
        return None

    @staticmethod
    def _median_font_size(text_dict: dict) -> float:
        """Compute the median font size across all spans on the page."""
        sizes: list[float] = []
        for block in text_dict.get("blocks", []):
            if block.get("type") != 0:
                continue
            for line in block.get("lines", []):
                for span in line.get("spans", []):
                    sizes.append(span.get("size", 0.0))
        if not sizes:
            return 12.0  # sensible default
        sizes.sort()
        return sizes[len(sizes) // 2]

    @staticmethod
    def _classify_block(
        text: str, size: float, flags: int, median_size: float
    ) -> tuple[BlockType, int | None]:
        """Return the block type and heading level for a block."""
        is_bold = bool(flags & _FLAG_BOLD)
        single_line = "\n" not in text and len(text) < 200

        if size > median_size * _TITLE_SIZE_RATIO:
            return BlockType.HEADING, 1
        if size > median_size * _HEADING_SIZE_RATIO:
            return BlockType.HEADING, 2
        if is_bold and size >= median_size and single_line:
            return BlockType.HEADING, 3

        if text[0] in _BULLETS or _starts_with_number(text):
            return BlockType.LIST_ITEM, None
        if _CAPTION_RE.match(text):
            return BlockType.CAPTION, None
        return BlockType.PARAGRAPH, None

    @staticmethod
    def _overlaps_any(
        rect: tuple[float, float, float, float],
        others: list[tuple[float, float, float, float]],
    ) -> bool:
        """Return True if *rect* overlaps any of *others* by > 50% of its area."""
        bx0, by0, bx1, by1 = rect
        b_area = max((bx1 - bx0) * (by1 - by0), 1e-6)
        for rx0, ry0, rx1, ry1 in others:
            ix0 = max(bx0, rx0)
            iy0 = max(by0, ry0)
            ix1 = min(bx1, rx1)
            iy1 = min(by1, ry1)
            if ix0 < ix1 and iy0 < iy1:
                if (ix1 - ix0) * (iy1 - iy0) / b_area > 0.5:
                    return True
        return False


def _starts_with_number(text: str) -> bool:
    """Check if text starts with a numbered-list pattern like '1.' or '1)'."""
    stripped = text.lstrip()
    i = 0
    while i < len(stripped) and stripped[i].isdigit():
        i += 1
    if i == 0:
        return False
    return i < len(stripped) and stripped[i] in ".)"
