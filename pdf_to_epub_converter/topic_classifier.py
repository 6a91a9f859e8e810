"""Embedding-based chapter classifier using sentence similarity between pages."""

from __future__ import annotations

import logging
from typing import Any

import numpy as np
from sentence_transformers import SentenceTransformer

from pdf_to_epub_converter.models import Chapter

logger = logging.getLogger(__name__)


class EmbeddingTopicClassifier:
    """Suggests chapter starts where consecutive pages change topic.

    Each page summary is embedded with a sentence-transformers model. A
    cosine similarity to the previous page below ``min_similarity`` marks a
    topic shift, reported as a chapter start with confidence
    ``1 - similarity``.
    """

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        min_similarity: float = 0.35,
        model: Any | None = None,
    ) -> None:
        self._model = model if model is not None else SentenceTransformer(model_name)
        self.min_similarity = min_similarity

    def suggest_chapters(self, pages: list[dict[str, Any]]) -> list[Chapter]:
        """Return chapter suggestions for a list of page summaries."""
        texts: list[str] = []
        page_numbers: list[int] = []
        titles: list[str] = []
        for page in pages:
            block_texts = [b["text"].strip() for b in page.get("blocks", []) if b.get("text", "").strip()]
            if not block_texts:
                continue
            texts.append(" ".join(block_texts))
            page_numbers.append(int(page["page"]))
            titles.append(block_texts[0].splitlines()[0][:100])

        if not texts:
            return []

        embeddings = self._model.encode(texts, convert_to_numpy=True)
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        norms = np.where(norms == 0, 1, norms)
        embeddings = embeddings / norms

        # Similarity of each page to the one before it.
        similarities = np.clip(np.sum(embeddings[1:] * embeddings[:-1], axis=1), 0.0, 1.0)

        chapters = [
            Chapter(
                title=titles[0],
                start_page=page_numbers[0],
                end_page=page_numbers[0],
                confidence=1.0,
                reason="topic start",
            )
        ]
        for i, similarity in enumerate(similarities, start=1):
            score = float(similarity)
            if score >= self.min_similarity:
                continue
            chapters.append(
                Chapter(
                    title=titles[i],
                    start_page=page_numbers[i],
                    end_page=page_numbers[i],
                    confidence=round(1.0 - score, 3),
                    reason=f"topic shift (similarity {score:.2f})",
                )
            )
        logger.debug("Topic classifier suggested %d chapter starts", len(chapters))

        for current, following in zip(chapters, chapters[1:]):
            current.end_page = following.start_page - 1
        chapters[-1].end_page = page_numbers[-1]
        return chapters
