"""Page classifier deciding whether a page needs OCR."""

from __future__ import annotations

import fitz

from pdf_to_epub_converter.models import PageClassification, PageStructure

# Threshold boundaries for classification
_NATIVE_TEXT_THRESHOLD = 0.8
_SCANNED_THRESHOLD = 0.2

# A page wider than this multiple of its height is treated as a two-page spread.
_SPREAD_ASPECT_RATIO = 1.3


def classify_by_ratio(ratio: float) -> PageClassification:
    """Classify a page based on the share of its content that is real text.

    Args:
        ratio: Text coverage ratio in [0.0, 1.0].

    Returns:
        PageClassification based on threshold boundaries.
    """
    if ratio > _NATIVE_TEXT_THRESHOLD:
        return PageClassification.NATIVE_TEXT
    if ratio < _SCANNED_THRESHOLD:
        return PageClassification.SCANNED
    return PageClassification.MIXED


class PageClassifier:
    """Builds page skeletons and classifies each page by text coverage."""

    def classify(self, page: fitz.Page) -> PageClassification:
        """Classify a page as native text, scanned or mixed.

        The ratio compares the area covered by text blocks to the area covered
        by any content (text or images). A page with no content at all counts
        as native text: there is nothing to OCR.

        Args:
            page: A PyMuPDF page object.

        Returns:
            PageClassification indicating the page content type.
        """
        text_area, image_area = self._content_areas(page)
        content_area = text_area + image_area
        if content_area <= 0:
            return PageClassification.NATIVE_TEXT
        return classify_by_ratio(min(text_area / content_area, 1.0))

    def describe(self, page: fitz.Page) -> PageStructure:
        """Return an empty ``PageStructure`` carrying the page's classification."""
        classification = self.classify(page)
        rect = page.rect
        return PageStructure(
            page_number=page.number + 1,
            is_scanned=classification == PageClassification.SCANNED,
            is_two_page_spread=is_two_page_spread(rect.width, rect.height),
            content_type=classification,
            width=rect.width,
            height=rect.height,
        )

    # ---- Private helpers ----

    @staticmethod
    def _content_areas(page: fitz.Page) -> tuple[float, float]:
        text_area = 0.0
        image_area = 0.0
        for block in page.get_text("blocks"):
            # blocks are tuples: (x0, y0, x1, y1, text, block_no, block_type)
            x0, y0, x1, y1 = block[:4]
            area = max(0.0, x1 - x0) * max(0.0, y1 - y0)
            if block[6] == 0:
                if str(block[4]).strip():
                    text_area += area
            else:
                image_area += area
        return text_area, image_area


def is_two_page_spread(width: float, height: float) -> bool:
    """Return True when a page's aspect ratio looks like two facing pages."""
    if height <= 0:
        return False
    return width > height * _SPREAD_ASPECT_RATIO
