"""Content merger for combining native text and OCR blocks on mixed pages."""

from __future__ import annotations

from pdf_to_epub_converter.models import BoundingBox, TextBlock


def _bbox_area(bbox: BoundingBox) -> float:
    return max(0.0, bbox.width) * max(0.0, bbox.height)


def _intersection_area(a: BoundingBox, b: BoundingBox) -> float:
    ax0, ay0, ax1, ay1 = a.as_rect()
    bx0, by0, bx1, by1 = b.as_rect()
    width = max(0.0, min(ax1, bx1) - max(ax0, bx0))
    height = max(0.0, min(ay1, by1) - max(ay0, by0))
    return width * height


def _overlap_ratio(a: BoundingBox | None, b: BoundingBox | None) -> float:
    """Compute the overlap ratio as intersection / min(area_a, area_b).

    Returns a value in [0.0, 1.0]. Missing or zero-area boxes give 0.0.
    """
    if a is None or b is None:
        return 0.0
    area_a = _bbox_area(a)
    area_b = _bbox_area(b)
    if area_a == 0.0 or area_b == 0.0:
        return 0.0
    return _intersection_area(a, b) / min(area_a, area_b)


class ContentMerger:
    """Merges native text blocks and OCR blocks for mixed pages."""

    def __init__(self, duplicate_overlap: float = 0.5) -> None:
        self.duplicate_overlap = duplicate_overlap

    def merge(self, native_blocks: list[TextBlock], ocr_blocks: list[TextBlock]) -> list[TextBlock]:
        """Merge native and OCR blocks, preferring native text where they overlap.

        An OCR block overlapping any native block by more than
        ``duplicate_overlap`` is a duplicate and is discarded. The remaining
        OCR blocks are appended after the native blocks and renumbered so
        every id stays unique on the page.
        """
        merged = list(native_blocks)
        used_ids = {block.id for block in native_blocks}
        for ocr_block in ocr_blocks:
            if any(
                _overlap_ratio(native.bbox, ocr_block.bbox) > self.duplicate_overlap
                for native in native_blocks
            ):
                continue
            if ocr_block.id in used_ids:
                ocr_block.id = f"{ocr_block.id}-m{len(merged) + 1}"
            used_ids.add(ocr_block.id)
            ocr_block.reading_order = len(merged)
            merged.append(ocr_block)
        return merged
