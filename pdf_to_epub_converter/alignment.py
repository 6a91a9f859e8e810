"""Narration alignment: assigns audio start/end times to text blocks.

Two strategies produce the same ``AudioSync`` records:

* timing-driven alignment, when word-level start times are known;
* estimation-driven alignment, when only the total duration is known. Time
  is shared out by word count and nudged towards detected silences.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from typing import Callable

import numpy as np

from pdf_to_epub_converter.audio_analysis import (
    detect_silence_intervals,
    estimate_text_duration,
    get_audio_duration,
    load_audio,
)
from pdf_to_epub_converter.errors import AlignmentDegraded
from pdf_to_epub_converter.models import (
    AlignmentConfig,
    AudioSync,
    DocumentStructure,
    PageStructure,
    TextBlock,
    WordTiming,
)
from pdf_to_epub_converter.text_segmenter import count_tokens

logger = logging.getLogger(__name__)


def iter_blocks_in_reading_order(structure: DocumentStructure) -> Iterator[tuple[PageStructure, TextBlock]]:
    """Yield ``(page, text_block)`` pairs in narration order."""
    for page in sorted(structure.pages, key=lambda p: p.page_number):
        for block in _page_blocks(page):
            yield page, block


def align_with_timings(
    structure: DocumentStructure,
    timings: Sequence[WordTiming],
    config: AlignmentConfig | None = None,
    *,
    document_id: int | None = None,
    job_id: int | None = None,
    audio_file_path: str | None = None,
) -> list[AudioSync]:
    """Align blocks using word-level start times.

    Each word ends where the next one starts; the final word gets
    ``config.tail_seconds``. Blocks claim as many consecutive words as they
    have whitespace-separated tokens, in reading order. Blocks left over
    once the timings run out get no sync.

    Args:
        structure: The document whose text blocks are narrated.
        timings: Start time of every narrated word, in order.
        config: Alignment constants.

    Returns:
        One sync per aligned block, times rounded to milliseconds.
    """
    config = config or AlignmentConfig()
    if not timings:
        return []

    ends = [t.start_time for t in timings[1:]] + [timings[-1].start_time + config.tail_seconds]
    syncs: list[AudioSync] = []
    index = 0
    for page, block in iter_blocks_in_reading_order(structure):
        word_count = count_tokens(block.text)
        if word_count == 0:
            continue
        if index >= len(timings):
            break
        last = min(index + word_count - 1, len(timings) - 1)
        clip_begin = round(timings[index].start_time, 3)
        clip_end = round(ends[last], 3)
        index += word_count
        if clip_end <= clip_begin:
            logger.debug("Skipping block %s with empty clip at %.3fs", block.id, clip_begin)
            continue
        syncs.append(
            AudioSync(
                page_number=page.page_number,
                block_id=block.id,
                start_time=clip_begin,
                end_time=clip_end,
                document_id=document_id,
                job_id=job_id,
                audio_file_path=audio_file_path,
            )
        )

    if index < len(timings):
        logger.info("%d narrated words were not claimed by any block", len(timings) - index)
    return syncs


def align_by_estimation(
    structure: DocumentStructure,
    total_duration: float,
    silence_points: Sequence[float] = (),
    config: AlignmentConfig | None = None,
    *,
    document_id: int | None = None,
    job_id: int | None = None,
    audio_file_path: str | None = None,
) -> list[AudioSync]:
    """Align blocks by sharing the track's duration out by word count.

    Args:
        structure: The document whose text blocks are narrated.
        total_duration: Length of the narration in seconds.
        silence_points: Midpoints of detected silences, in seconds.
        config: Alignment constants.

    Returns:
        Sequential syncs lying within ``[0, total_duration]``. Pages without
        text get a short page-level sync. When the document has no words the
        duration is split equally between pages; if estimation fails the
        split is proportional to page word counts and silences are ignored.
    """
    config = config or AlignmentConfig()
    if total_duration <= 0:
        return []
    context = {"document_id": document_id, "job_id": job_id, "audio_file_path": audio_file_path}
    pages = sorted(structure.pages, key=lambda p: p.page_number)

    total_words = sum(count_tokens(b.text) for _, b in iter_blocks_in_reading_order(structure))
    if total_words == 0:
        return _split_by_page(pages, total_duration, weighted=False, context=context)

    try:
        return _estimate(pages, total_words, total_duration, sorted(silence_points), config, context)
    except Exception:
        logger.warning("Estimated alignment failed, using a page-level split", exc_info=True)
        return _split_by_page(pages, total_duration, weighted=True, context=context)


def plan_narration(
    structure: DocumentStructure,
    config: AlignmentConfig | None = None,
    *,
    document_id: int | None = None,
    job_id: int | None = None,
) -> list[AudioSync]:
    """Lay out block syncs back to back from reading-speed estimates.

    Used when no audio exists yet, e.g. to budget a speech synthesis run.
    """
    config = config or AlignmentConfig()
    cursor = 0.0
    syncs: list[AudioSync] = []
    for page, block in iter_blocks_in_reading_order(structure):
        duration = estimate_text_duration(block.text, config)
        if duration <= 0:
            continue
        syncs.append(
            AudioSync(
                page_number=page.page_number,
                block_id=block.id,
                start_time=round(cursor, 3),
                end_time=round(cursor + duration, 3),
                document_id=document_id,
                job_id=job_id,
                notes="planned",
            )
        )
        cursor += duration
    return syncs


class NarrationAligner:
    """Chooses an alignment strategy from the inputs at hand."""

    def __init__(
        self,
        config: AlignmentConfig | None = None,
        duration_probe: Callable[[str, AlignmentConfig], float] = get_audio_duration,
        audio_loader: Callable[[str], tuple[np.ndarray, int]] = load_audio,
    ) -> None:
        self.config = config or AlignmentConfig()
        self._duration_probe = duration_probe
        self._audio_loader = audio_loader

    def align(
        self,
        structure: DocumentStructure,
        audio_path: str,
        timings: Sequence[WordTiming] | None = None,
        *,
        document_id: int | None = None,
        job_id: int | None = None,
    ) -> list[AudioSync]:
        """Align *structure* against the narration in *audio_path*.

        Word timings, when given, take precedence. Otherwise the duration is
        read from the file and silences are detected in its samples; if the
        audio cannot be decoded the estimate proceeds without silences.

        Raises:
            FileNotFoundError: If the audio file does not exist.
        """
        context = {"document_id": document_id, "job_id": job_id, "audio_file_path": audio_path}
        if timings:
            return align_with_timings(structure, timings, self.config, **context)

        total_duration = self._duration_probe(audio_path, self.config)
        try:
            samples, sample_rate = self._audio_loader(audio_path)
            silence_points = detect_silence_intervals(samples, sample_rate, self.config)
        except AlignmentDegraded as exc:
            logger.warning("Silence detection unavailable, aligning without it: %s", exc)
            silence_points = []
        logger.info(
            "Aligning %.2fs of narration using %d silence points", total_duration, len(silence_points)
        )
        return align_by_estimation(structure, total_duration, silence_points, self.config, **context)


# ---- Private helpers ----


def _page_blocks(page: PageStructure) -> list[TextBlock]:
    if page.reading_order.block_ids:
        rank = {block_id: i for i, block_id in enumerate(page.reading_order.block_ids)}
        return sorted(page.text_blocks, key=lambda b: (rank.get(b.id, len(rank)), b.reading_order))
    return sorted(page.text_blocks, key=lambda b: b.reading_order)


def _estimate(
    pages: list[PageStructure],
    total_words: int,
    total_duration: float,
    silence_points: list[float],
    config: AlignmentConfig,
    context: dict,
) -> list[AudioSync]:
    syncs: list[AudioSync] = []
    cursor = 0.0

    for page in pages:
        if cursor >= total_duration:
            break
        blocks = [(b, count_tokens(b.text)) for b in _page_blocks(page)]
        blocks = [(b, wc) for b, wc in blocks if wc > 0]
        page_words = sum(wc for _, wc in blocks)

        if page_words == 0:
            end = min(cursor + config.empty_page_seconds, total_duration)
            _emit(syncs, page.page_number, None, cursor, end, context, total_duration)
            cursor = end
            continue

        page_duration = page_words / total_words * total_duration
        window_end = cursor + page_duration
        pauses = sum(1 for point in silence_points if cursor <= point <= window_end)
        page_duration += pauses * config.pause_buffer_seconds

        for block, word_count in blocks:
            if cursor >= total_duration:
                break
            start = cursor
            duration = max(config.min_block_seconds, word_count / page_words * page_duration)
            end = _snap_to_silence(start, start + duration, silence_points, config.snap_window_seconds)
            end = min(end, total_duration)
            _emit(syncs, page.page_number, block.id, start, end, context, total_duration)
            cursor = max(cursor, end)

    return syncs


def _snap_to_silence(start: float, end: float, silence_points: list[float], window: float) -> float:
    """Move *end* to the nearest silence within *window*, never before *start*."""
    best = end
    best_distance = window
    for point in silence_points:
        distance = abs(point - end)
        if point > start and distance < best_distance:
            best, best_distance = point, distance
    return best


def _emit(
    syncs: list[AudioSync],
    page_number: int,
    block_id: str | None,
    start: float,
    end: float,
    context: dict,
    limit: float,
) -> None:
    start, end = round(start, 3), min(round(end, 3), limit)
    if end <= start:
        return
    syncs.append(AudioSync(page_number=page_number, block_id=block_id, start_time=start, end_time=end, **context))


def _split_by_page(
    pages: list[PageStructure], total_duration: float, weighted: bool, context: dict
) -> list[AudioSync]:
    """Page-level syncs sharing the duration equally or by word count."""
    if not pages:
        return []
    if weighted:
        weights = [sum(count_tokens(b.text) for b in page.text_blocks) for page in pages]
        if sum(weights) == 0:
            weights = [1] * len(pages)
    else:
        weights = [1] * len(pages)
    total_weight = sum(weights)

    syncs: list[AudioSync] = []
    cursor = 0.0
    for page, weight in zip(pages, weights):
        end = min(total_duration, cursor + weight / total_weight * total_duration)
        _emit(syncs, page.page_number, None, cursor, end, context, total_duration)
        cursor = end
    return syncs
