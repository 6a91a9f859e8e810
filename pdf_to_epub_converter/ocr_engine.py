"""OCR engine for scanned pages."""

from __future__ import annotations

import logging

import pytesseract
from PIL import Image, ImageFilter, ImageOps

from pdf_to_epub_converter.models import BlockType, BoundingBox, OCRResult, TextBlock
from pdf_to_epub_converter.text_segmenter import apply_segmentation

logger = logging.getLogger(__name__)


class OCREngine:
    """Performs OCR on page images and groups recognised words into paragraphs."""

    def __init__(self, preprocessing: bool = True, language: str = "eng") -> None:
        self.preprocessing = preprocessing
        self.language = language

    def ocr_page(self, page_image: Image.Image, page_number: int, scale: float = 1.0) -> OCRResult:
        """Run OCR on a rendered page.

        Args:
            page_image: The page rendered to an image.
            page_number: 1-based page number used for block ids and boxes.
            scale: Pixels per PDF point of the rendering; boxes are divided
                by it so they share the native text coordinate space.

        Returns:
            OCRResult with one text block per recognised paragraph and the
            mean word confidence on a 0.0-1.0 scale.
        """
        image = self._preprocess(page_image) if self.preprocessing else page_image
        data = pytesseract.image_to_data(image, lang=self.language, output_type=pytesseract.Output.DICT)
        return self._build_result(data, page_number, scale)

    # ---- Private helpers ----

    def _preprocess(self, image: Image.Image) -> Image.Image:
        """Apply preprocessing pipeline: grayscale, deskew, contrast, noise reduction."""
        img = image.convert("L")

        # Deskew via pytesseract OSD angle detection
        try:
            osd = pytesseract.image_to_osd(img)
            angle = 0
            for line in osd.splitlines():
                if line.startswith("Rotate:"):
                    angle = int(line.split(":")[1].strip())
                    break
            if angle != 0:
                img = img.rotate(-angle, expand=True, fillcolor=255)
        except pytesseract.TesseractError:
            logger.debug("OSD detection failed, skipping deskew")

        img = ImageOps.autocontrast(img)
        return img.filter(ImageFilter.MedianFilter(size=3))

    @staticmethod
    def _build_result(data: dict, page_number: int, scale: float) -> OCRResult:
        # Words grouped by (block_num, par_num), keeping first-seen order.
        paragraphs: dict[tuple[int, int], list[int]] = {}
        word_confidences: list[float] = []

        n_items = len(data["text"])
        block_nums = data.get("block_num") or [0] * n_items
        par_nums = data.get("par_num") or [0] * n_items

        for i in range(n_items):
            text = str(data["text"][i]).strip()
            conf = float(data["conf"][i])
            # Skip non-word elements (confidence == -1) and empty text
            if conf < 0 or not text:
                continue
            word_confidences.append(conf)
            key = (int(block_nums[i]), int(par_nums[i]))
            paragraphs.setdefault(key, []).append(i)

        blocks: list[TextBlock] = []
        for indices in paragraphs.values():
            x0 = min(float(data["left"][i]) for i in indices) / scale
            y0 = min(float(data["top"][i]) for i in indices) / scale
            x1 = max(float(data["left"][i]) + float(data["width"][i]) for i in indices) / scale
            y1 = max(float(data["top"][i]) + float(data["height"][i]) for i in indices) / scale
            confs = [float(data["conf"][i]) for i in indices]
            block = TextBlock(
                id=f"p{page_number}-ocr{len(blocks) + 1}",
                text=" ".join(str(data["text"][i]).strip() for i in indices),
                block_type=BlockType.PARAGRAPH,
                bbox=BoundingBox.from_rect((x0, y0, x1, y1), page_number),
                reading_order=len(blocks),
                confidence=max(0.0, min(1.0, sum(confs) / len(confs) / 100.0)),
            )
            blocks.append(apply_segmentation(block))

        if word_confidences:
            confidence = sum(word_confidences) / len(word_confidences) / 100.0
        else:
            confidence = 0.0
        confidence = max(0.0, min(1.0, confidence))

        full_text = "\n".join(block.text for block in blocks)
        return OCRResult(text=full_text, confidence=confidence, blocks=blocks)
